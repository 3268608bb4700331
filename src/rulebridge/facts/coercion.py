"""Value coercion from JSON values to declared field kinds."""

from __future__ import annotations

import json
from typing import Any, Callable, Mapping, Optional

from rulebridge.errors import MaterializationError
from rulebridge.schema.definitions import FieldDefinition, FieldKind

NestedResolver = Callable[[str, Mapping[str, Any]], Optional[Any]]

_TRUE_TEXT = {"true", "1", "yes", "y", "on"}
_FALSE_TEXT = {"false", "0", "no", "n", "off"}


def coerce_value(
    field: FieldDefinition,
    value: Any,
    *,
    type_name: str,
    resolve_nested: Optional[NestedResolver] = None,
) -> Any:
    """Convert ``value`` to the kind declared by ``field``.

    ``resolve_nested`` materialises nested mappings for object fields; when it
    returns None the mapping is passed through unchanged.
    """
    if value is None:
        return None
    try:
        if field.kind is FieldKind.STRING:
            return _to_text(value)
        if field.kind in (FieldKind.INT, FieldKind.LONG):
            return _to_int(value)
        if field.kind is FieldKind.DOUBLE:
            return _to_float(value)
        if field.kind is FieldKind.BOOLEAN:
            return _to_bool(value)
        if field.kind is FieldKind.LIST:
            return _to_list(value)
        if field.kind is FieldKind.MAP:
            if not isinstance(value, Mapping):
                raise ValueError("expected an object")
            return dict(value)
    except (TypeError, ValueError) as exc:
        raise MaterializationError(
            f"Cannot convert {value!r} for field '{field.name}' of type '{type_name}' "
            f"to {field.type_text}: {exc}",
            phase="materialize",
        ) from exc
    if isinstance(value, Mapping) and resolve_nested is not None and field.ref_type:
        nested = resolve_nested(field.ref_type, value)
        if nested is not None:
            return nested
    return value


def _to_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, dict)):
        return json.dumps(value, ensure_ascii=False)
    return str(value)


def _to_int(value: Any) -> int:
    if isinstance(value, bool):
        raise ValueError("boolean is not a number")
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not value.is_integer():
            raise ValueError("not an integral number")
        return int(value)
    if isinstance(value, str):
        text = value.strip()
        try:
            return int(text)
        except ValueError:
            number = float(text)
            if not number.is_integer():
                raise ValueError("not an integral number") from None
            return int(number)
    raise TypeError(f"unsupported value type {type(value).__name__}")


def _to_float(value: Any) -> float:
    if isinstance(value, bool):
        raise ValueError("boolean is not a number")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        return float(value.strip())
    raise TypeError(f"unsupported value type {type(value).__name__}")


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        text = value.strip().lower()
        if text in _TRUE_TEXT:
            return True
        if text in _FALSE_TEXT:
            return False
    raise ValueError("not a boolean")


def _to_list(value: Any) -> list:
    if isinstance(value, list):
        return list(value)
    if isinstance(value, (tuple, set, frozenset)):
        return list(value)
    if isinstance(value, Mapping):
        raise ValueError("expected an array")
    return [value]
