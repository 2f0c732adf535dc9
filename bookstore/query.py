"""
bookstore.query
===============

Filter matching, projection and sorting for plain ``dict`` documents, using
MongoDB query-document syntax. This is the read path of
:mod:`bookstore.fake_mongo` and the ``$match``/``$sort``/``$project`` stages
of :mod:`bookstore.aggregation`.
"""

from __future__ import annotations

import copy
import json
from typing import Any, Callable, Dict, Iterable, List, Mapping, Sequence, Tuple, Union

ASCENDING = 1
DESCENDING = -1

_MISSING = object()

SortSpec = Union[str, Sequence[Tuple[str, int]], Mapping[str, int]]


def get_path(document: Mapping[str, Any], path: str) -> Any:
    """Resolve a dotted ``path`` inside ``document``.

    Returns a sentinel when any segment is absent. A list met along the way is
    fanned out, so ``"tags.name"`` on ``{"tags": [{"name": "a"}]}`` gives
    ``["a"]``.
    """
    current: Any = document
    for part in path.split("."):
        if isinstance(current, Mapping):
            current = current.get(part, _MISSING)
        elif isinstance(current, list):
            if part.isdigit():
                index = int(part)
                current = current[index] if index < len(current) else _MISSING
            else:
                values = [
                    item.get(part, _MISSING)
                    for item in current
                    if isinstance(item, Mapping)
                ]
                current = [v for v in values if v is not _MISSING] or _MISSING
        else:
            return _MISSING
        if current is _MISSING:
            return _MISSING
    return current


def is_missing(value: Any) -> bool:
    return value is _MISSING


def type_rank(value: Any) -> int:
    # BSON comparison order, restricted to JSON-representable types
    if value is None or value is _MISSING:
        return 1
    if isinstance(value, bool):
        return 8
    if isinstance(value, (int, float)):
        return 2
    if isinstance(value, str):
        return 3
    if isinstance(value, Mapping):
        return 4
    if isinstance(value, list):
        return 5
    return 10


def sort_key(value: Any) -> Tuple[int, Any]:
    rank = type_rank(value)
    if rank == 1:
        return (rank, 0)
    if rank in (4, 5, 10):
        return (rank, json.dumps(value, sort_keys=True, default=str))
    return (rank, value)


def _compare(left: Any, right: Any, op: Callable[[Any, Any], bool]) -> bool:
    if left is _MISSING or type_rank(left) != type_rank(right):
        return False
    return op(sort_key(left)[1], sort_key(right)[1])


def _candidates(value: Any) -> List[Any]:
    # an array field matches when the array itself or any element matches
    if isinstance(value, list):
        return [value, *value]
    return [value]


def _equals(value: Any, expected: Any) -> bool:
    if value is _MISSING:
        return expected is None
    return any(
        candidate == expected and type_rank(candidate) == type_rank(expected)
        for candidate in _candidates(value)
    )


def _apply_operator(value: Any, op: str, arg: Any) -> bool:
    if op == "$eq":
        return _equals(value, arg)
    if op == "$ne":
        return not _equals(value, arg)
    if op in _COMPARISONS:
        if value is _MISSING:
            return False
        return any(
            _compare(candidate, arg, _COMPARISONS[op])
            for candidate in _candidates(value)
        )
    if op == "$in":
        if not isinstance(arg, list):
            raise ValueError("$in needs an array")
        return any(_equals(value, item) for item in arg)
    if op == "$nin":
        if not isinstance(arg, list):
            raise ValueError("$nin needs an array")
        return not any(_equals(value, item) for item in arg)
    if op == "$exists":
        return (value is not _MISSING) == bool(arg)
    if op == "$not":
        if not isinstance(arg, Mapping):
            raise ValueError("$not needs an operator expression")
        return not _match_condition(value, arg)
    raise ValueError(f"unknown query operator '{op}'")


_COMPARISONS: Dict[str, Callable[[Any, Any], bool]] = {
    "$gt": lambda a, b: a > b,
    "$gte": lambda a, b: a >= b,
    "$lt": lambda a, b: a < b,
    "$lte": lambda a, b: a <= b,
}


def _is_operator_doc(condition: Any) -> bool:
    return (
        isinstance(condition, Mapping)
        and bool(condition)
        and all(str(key).startswith("$") for key in condition)
    )


def _match_condition(value: Any, condition: Any) -> bool:
    if _is_operator_doc(condition):
        return all(_apply_operator(value, op, arg) for op, arg in condition.items())
    return _equals(value, condition)


def _logical(document: Mapping[str, Any], op: str, clauses: Any) -> bool:
    if not isinstance(clauses, list) or not clauses:
        raise ValueError(f"{op} needs a non-empty array")
    results = (match(document, clause) for clause in clauses)
    if op == "$and":
        return all(results)
    if op == "$or":
        return any(results)
    return not any(results)


def match(document: Mapping[str, Any], filter: Mapping[str, Any] | None) -> bool:
    """Return ``True`` when ``document`` satisfies the query ``filter``.

    Top-level keys are ANDed. ``None`` and ``{}`` match every document.
    """
    if not filter:
        return True
    if not isinstance(filter, Mapping):
        raise ValueError("filter must be a mapping")
    for key, condition in filter.items():
        if key in ("$and", "$or", "$nor"):
            if not _logical(document, key, condition):
                return False
        elif key.startswith("$"):
            raise ValueError(f"unknown top-level operator '{key}'")
        elif not _match_condition(get_path(document, key), condition):
            return False
    return True


def equality_fields(filter: Mapping[str, Any] | None) -> List[str]:
    """Fields pinned to a single value by ``filter`` (used for index selection)."""
    fields = []
    for key, condition in (filter or {}).items():
        if key.startswith("$"):
            continue
        if not _is_operator_doc(condition) or set(condition) == {"$eq"}:
            fields.append(key)
    return fields


def project(
    document: Mapping[str, Any], projection: Mapping[str, Any] | None
) -> Dict[str, Any]:
    """Apply an inclusion or exclusion ``projection`` to ``document``.

    ``_id`` is kept unless explicitly excluded. Mixing inclusion and exclusion
    of fields other than ``_id`` raises :class:`ValueError`.
    """
    if not projection:
        return dict(document)
    flags = {key: bool(value) for key, value in projection.items()}
    id_flag = flags.pop("_id", True)
    if flags and len(set(flags.values())) > 1:
        raise ValueError("cannot mix inclusion and exclusion in a projection")
    inclusive = bool(flags) and next(iter(flags.values()))
    if inclusive:
        result: Dict[str, Any] = {}
        if id_flag and "_id" in document:
            result["_id"] = document["_id"]
        for key in flags:
            value = get_path(document, key)
            if value is not _MISSING:
                _set_path(result, key, value)
        return result
    result = copy.deepcopy(dict(document))
    for key in flags:
        _unset_path(result, key)
    if not id_flag:
        result.pop("_id", None)
    return result


def _set_path(document: Dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    target = document
    for part in parts[:-1]:
        target = target.setdefault(part, {})
    target[parts[-1]] = value


def _unset_path(document: Dict[str, Any], path: str) -> None:
    parts = path.split(".")
    target: Any = document
    for part in parts[:-1]:
        target = target.get(part) if isinstance(target, dict) else None
        if target is None:
            return
    if isinstance(target, dict):
        target.pop(parts[-1], None)


def normalize_sort(key_or_list: SortSpec, direction: int | None = None) -> List[Tuple[str, int]]:
    """Turn the accepted ``sort`` argument shapes into ``[(field, direction)]``."""
    if isinstance(key_or_list, str):
        spec = [(key_or_list, ASCENDING if direction is None else direction)]
    elif isinstance(key_or_list, Mapping):
        spec = list(key_or_list.items())
    else:
        spec = [tuple(item) for item in key_or_list]
    for field, value in spec:
        if value not in (ASCENDING, DESCENDING):
            raise ValueError(f"bad sort direction {value!r} for '{field}'")
    return spec


def sort_documents(
    documents: Iterable[Mapping[str, Any]], spec: Sequence[Tuple[str, int]]
) -> List[Mapping[str, Any]]:
    ordered = list(documents)
    # stable sorts applied from the least significant key
    for field, direction in reversed(list(spec)):
        ordered.sort(
            key=lambda doc: sort_key(_sort_value(get_path(doc, field), direction)),
            reverse=direction == DESCENDING,
        )
    return ordered


def _sort_value(value: Any, direction: int) -> Any:
    # arrays sort by their smallest element ascending, largest descending
    if isinstance(value, list) and value:
        keyed = sorted(value, key=sort_key)
        return keyed[0] if direction == ASCENDING else keyed[-1]
    return value
