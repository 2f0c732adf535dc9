"""
bookstore.model_adapters
========================

Conversions between pydantic models (v1 or v2) and the plain dictionaries
stored as documents.
"""

from __future__ import annotations

from typing import Any, Dict, Mapping, Type, TypeVar

T = TypeVar("T")


def pydantic_model_dump(obj: Any) -> Dict[str, Any]:
    """Return ``obj`` as a dict using ``model_dump`` (v2) or ``dict`` (v1)."""
    if hasattr(obj, "model_dump"):
        return obj.model_dump()
    if hasattr(obj, "dict"):
        return obj.dict()
    raise TypeError(f"{type(obj).__name__} is not a pydantic model")


def pydantic_model_validate(model: Type[T], data: Mapping[str, Any]) -> T:
    """Build ``model`` from ``data`` using ``model_validate`` or ``parse_obj``."""
    if hasattr(model, "model_validate"):
        return model.model_validate(data)
    if hasattr(model, "parse_obj"):
        return model.parse_obj(data)
    raise TypeError(f"{getattr(model, '__name__', model)!r} is not a pydantic model")


def is_pydantic_model(obj: Any) -> bool:
    return hasattr(obj, "model_dump") or (
        hasattr(obj, "dict") and hasattr(type(obj), "__fields__")
    )


def document_to_dict(obj: Any) -> Dict[str, Any]:
    """Coerce something insertable into a new, shallow-copied ``dict``.

    Accepts mappings, pydantic models and plain objects carrying a
    ``__dict__``. Anything else raises :class:`TypeError`.
    """
    if isinstance(obj, Mapping):
        return dict(obj)
    if is_pydantic_model(obj):
        return pydantic_model_dump(obj)
    if hasattr(obj, "__dict__"):
        return {k: v for k, v in vars(obj).items() if not k.startswith("_")}
    raise TypeError(f"cannot store an object of type {type(obj).__name__}")
