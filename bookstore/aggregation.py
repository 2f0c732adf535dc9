"""
bookstore.aggregation
=====================

In-memory evaluation of MongoDB aggregation pipelines over plain ``dict``
documents. Supports the stages and operators needed for grouping and
ranking (``$match``, ``$group``, ``$sort``, ``$skip``, ``$limit``,
``$project``, ``$count``) together with arithmetic expressions.
"""

from __future__ import annotations

import json
from typing import Any, Callable, Dict, Iterable, List, Mapping, Sequence

from .query import get_path, is_missing, match, normalize_sort, project, sort_documents


def _number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def evaluate(expression: Any, document: Mapping[str, Any]) -> Any:
    """Evaluate an aggregation ``expression`` against ``document``.

    ``"$field"`` strings are field paths, single-key ``{"$op": args}``
    mappings are operators and anything else is a literal. Arithmetic on a
    missing or ``None`` operand yields ``None``.
    """
    if isinstance(expression, str) and expression.startswith("$"):
        value = get_path(document, expression[1:])
        return None if is_missing(value) else value
    if isinstance(expression, Mapping):
        if len(expression) == 1:
            (op, args), = expression.items()
            if op.startswith("$"):
                if op == "$literal":
                    return args
                if op not in _OPERATORS:
                    raise ValueError(f"unknown expression operator '{op}'")
                if not isinstance(args, list):
                    args = [args]
                values = [evaluate(arg, document) for arg in args]
                return _OPERATORS[op](values)
        return {key: evaluate(value, document) for key, value in expression.items()}
    if isinstance(expression, list):
        return [evaluate(item, document) for item in expression]
    return expression


def _arith(name: str, arity: int | None, fn: Callable[[List[Any]], Any]):
    def apply(values: List[Any]) -> Any:
        if arity is not None and len(values) != arity:
            raise ValueError(f"{name} takes exactly {arity} arguments")
        if any(value is None for value in values):
            return None
        if not all(_number(value) for value in values):
            raise ValueError(f"{name} only supports numeric types")
        return fn(values)

    return apply


def _divide(values: List[Any]) -> Any:
    if values[1] == 0:
        raise ValueError("can't $divide by zero")
    return values[0] / values[1]


def _mod(values: List[Any]) -> Any:
    if values[1] == 0:
        raise ValueError("can't $mod by zero")
    # truncated remainder, the sign follows the dividend
    dividend, divisor = values
    result = abs(dividend) % abs(divisor)
    return -result if dividend < 0 else result


def _multiply(values: List[Any]) -> Any:
    product: Any = 1
    for value in values:
        product *= value
    return product


_OPERATORS: Dict[str, Callable[[List[Any]], Any]] = {
    "$add": _arith("$add", None, sum),
    "$subtract": _arith("$subtract", 2, lambda v: v[0] - v[1]),
    "$multiply": _arith("$multiply", None, _multiply),
    "$divide": _arith("$divide", 2, _divide),
    "$mod": _arith("$mod", 2, _mod),
}


class _Accumulator:
    """Running state of one ``$group`` output field."""

    def __init__(self, op: str, expression: Any) -> None:
        if op not in _ACCUMULATORS:
            raise ValueError(f"unknown group operator '{op}'")
        self.op = op
        self.expression = expression
        self.values: List[Any] = []

    def add(self, document: Mapping[str, Any]) -> None:
        self.values.append(evaluate(self.expression, document))

    def result(self) -> Any:
        return _ACCUMULATORS[self.op](self.values)


def _sum(values: List[Any]) -> Any:
    return sum(value for value in values if _number(value))


def _avg(values: List[Any]) -> Any:
    numbers = [value for value in values if _number(value)]
    if not numbers:
        return None
    return sum(numbers) / len(numbers)


def _extreme(pick: Callable[..., Any]) -> Callable[[List[Any]], Any]:
    def apply(values: List[Any]) -> Any:
        present = [value for value in values if value is not None]
        return pick(present) if present else None

    return apply


_ACCUMULATORS: Dict[str, Callable[[List[Any]], Any]] = {
    "$sum": _sum,
    "$avg": _avg,
    "$min": _extreme(min),
    "$max": _extreme(max),
    "$first": lambda values: values[0] if values else None,
    "$last": lambda values: values[-1] if values else None,
    "$push": list,
}


def _normalize_key(value: Any) -> Any:
    # numerically equal values share a group: 1940.0 groups with 1940
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, Mapping):
        return {key: _normalize_key(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_normalize_key(item) for item in value]
    return value


def _group_key(value: Any) -> str:
    return json.dumps(_normalize_key(value), sort_keys=True, default=str)


def _group(documents: Iterable[Mapping[str, Any]], spec: Mapping[str, Any]) -> List[Dict[str, Any]]:
    if "_id" not in spec:
        raise ValueError("a group specification must include an _id")
    fields: Dict[str, tuple] = {}
    for name, accumulator in spec.items():
        if name == "_id":
            continue
        if not isinstance(accumulator, Mapping) or len(accumulator) != 1:
            raise ValueError(f"the field '{name}' must be an accumulator object")
        fields[name] = next(iter(accumulator.items()))

    groups: Dict[str, Dict[str, Any]] = {}
    for document in documents:
        key_value = evaluate(spec["_id"], document)
        key = _group_key(key_value)
        if key not in groups:
            groups[key] = {
                "_id": key_value,
                "accumulators": {
                    name: _Accumulator(op, expr) for name, (op, expr) in fields.items()
                },
            }
        for acc in groups[key]["accumulators"].values():
            acc.add(document)

    results = []
    for group in groups.values():
        row = {"_id": group["_id"]}
        for name, acc in group["accumulators"].items():
            row[name] = acc.result()
        results.append(row)
    return results


def _project_stage(documents: Iterable[Mapping[str, Any]], spec: Mapping[str, Any]) -> List[Dict[str, Any]]:
    computed = {
        key: value
        for key, value in spec.items()
        if not isinstance(value, (bool, int, float))
    }
    plain = {key: value for key, value in spec.items() if key not in computed}
    only_id = set(plain) <= {"_id"}
    results = []
    for document in documents:
        if computed and only_id:
            row = {"_id": document.get("_id")} if plain.get("_id", True) else {}
        else:
            row = project(document, plain)
        for key, expression in computed.items():
            row[key] = evaluate(expression, document)
        results.append(row)
    return results


def _non_negative_int(stage: str, value: Any) -> int:
    if not isinstance(value, int) or isinstance(value, bool) or value < 0:
        raise ValueError(f"{stage} needs a non-negative integer")
    return value


def run_pipeline(
    documents: Iterable[Mapping[str, Any]], pipeline: Sequence[Mapping[str, Any]]
) -> List[Dict[str, Any]]:
    """Run ``pipeline`` over ``documents`` and return the resulting documents."""
    current: List[Any] = [dict(document) for document in documents]
    for stage in pipeline:
        if not isinstance(stage, Mapping) or len(stage) != 1:
            raise ValueError("each pipeline stage must be a single-key mapping")
        (name, spec), = stage.items()
        if name == "$match":
            current = [doc for doc in current if match(doc, spec)]
        elif name == "$group":
            current = _group(current, spec)
        elif name == "$sort":
            current = sort_documents(current, normalize_sort(spec))
        elif name == "$skip":
            current = current[_non_negative_int(name, spec):]
        elif name == "$limit":
            limit = _non_negative_int(name, spec)
            if limit == 0:
                raise ValueError("$limit must be positive")
            current = current[:limit]
        elif name == "$project":
            current = _project_stage(current, spec)
        elif name == "$count":
            if not isinstance(spec, str) or not spec:
                raise ValueError("$count needs a field name")
            current = [{spec: len(current)}] if current else []
        else:
            raise ValueError(f"unrecognized pipeline stage name: '{name}'")
    return current
