"""Fact type and field definitions."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import json
import re
from typing import Any, Iterable, Mapping, Optional

from rulebridge.errors import SchemaError, SourceSyntaxError
from rulebridge.lang.lexer import STRING, tokenize


_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_QUALIFIED_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)*$")
_GENERIC_RE = re.compile(r"<.*>$")
_JAVA_PREFIXES = ("java.lang.", "java.util.", "java.math.")
_INT_LITERAL_RE = re.compile(r"^[+-]?\d+[lL]?$")
_FLOAT_LITERAL_RE = re.compile(r"^[+-]?(\d+\.\d*|\.\d+|\d+)([eE][+-]?\d+)?[dDfF]?$")
_NEW_CONTAINER_RE = re.compile(r"^new\s+(?:java\.util\.)?(\w+)\s*(<.*>)?\s*\(\s*\)$")


class FieldKind(str, Enum):
    STRING = "string"
    INT = "int"
    LONG = "long"
    DOUBLE = "double"
    BOOLEAN = "boolean"
    LIST = "list"
    MAP = "map"
    OBJECT = "object"


_KIND_BY_TYPE_TEXT: dict[str, FieldKind] = {
    "String": FieldKind.STRING,
    "char": FieldKind.STRING,
    "Character": FieldKind.STRING,
    "int": FieldKind.INT,
    "Integer": FieldKind.INT,
    "short": FieldKind.INT,
    "Short": FieldKind.INT,
    "byte": FieldKind.INT,
    "Byte": FieldKind.INT,
    "long": FieldKind.LONG,
    "Long": FieldKind.LONG,
    "BigInteger": FieldKind.LONG,
    "double": FieldKind.DOUBLE,
    "Double": FieldKind.DOUBLE,
    "float": FieldKind.DOUBLE,
    "Float": FieldKind.DOUBLE,
    "BigDecimal": FieldKind.DOUBLE,
    "Number": FieldKind.DOUBLE,
    "boolean": FieldKind.BOOLEAN,
    "Boolean": FieldKind.BOOLEAN,
    "List": FieldKind.LIST,
    "ArrayList": FieldKind.LIST,
    "LinkedList": FieldKind.LIST,
    "Set": FieldKind.LIST,
    "HashSet": FieldKind.LIST,
    "Collection": FieldKind.LIST,
    "Map": FieldKind.MAP,
    "HashMap": FieldKind.MAP,
    "LinkedHashMap": FieldKind.MAP,
    "TreeMap": FieldKind.MAP,
}

_KIND_BY_JSON_TYPE: dict[str, FieldKind] = {
    "string": FieldKind.STRING,
    "str": FieldKind.STRING,
    "int": FieldKind.INT,
    "integer": FieldKind.INT,
    "long": FieldKind.LONG,
    "double": FieldKind.DOUBLE,
    "float": FieldKind.DOUBLE,
    "number": FieldKind.DOUBLE,
    "decimal": FieldKind.DOUBLE,
    "boolean": FieldKind.BOOLEAN,
    "bool": FieldKind.BOOLEAN,
    "list": FieldKind.LIST,
    "array": FieldKind.LIST,
    "map": FieldKind.MAP,
    "dict": FieldKind.MAP,
    "object": FieldKind.OBJECT,
}

_TYPE_TEXT_BY_KIND: dict[FieldKind, str] = {
    FieldKind.STRING: "String",
    FieldKind.INT: "Integer",
    FieldKind.LONG: "Long",
    FieldKind.DOUBLE: "Double",
    FieldKind.BOOLEAN: "Boolean",
    FieldKind.LIST: "java.util.List",
    FieldKind.MAP: "java.util.Map",
}


def kind_for_type_text(type_text: str) -> tuple[FieldKind, Optional[str]]:
    """Map declared type text to a field kind and, for OBJECT, its type name."""
    text = type_text.strip()
    if not text:
        raise SchemaError("Field type must be a non-empty string.")
    base = _GENERIC_RE.sub("", text).strip()
    if base.endswith("[]"):
        return FieldKind.LIST, None
    for prefix in _JAVA_PREFIXES:
        if base.startswith(prefix):
            base = base[len(prefix) :]
            break
    kind = _KIND_BY_TYPE_TEXT.get(base)
    if kind is not None:
        return kind, None
    if not _QUALIFIED_RE.match(base):
        raise SchemaError(f"Invalid field type: {type_text!r}")
    return FieldKind.OBJECT, base


def kind_for_json_type(
    type_name: str, object_type: Optional[str] = None
) -> tuple[FieldKind, Optional[str]]:
    key = type_name.strip().lower()
    kind = _KIND_BY_JSON_TYPE.get(key)
    if kind is None:
        # Anything else is treated as declared type text ("Integer", "Address").
        return kind_for_type_text(type_name)
    if kind is FieldKind.OBJECT:
        if not object_type:
            return FieldKind.MAP, None
        return FieldKind.OBJECT, object_type
    return kind, None


def decode_literal(text: Optional[str]) -> Any:
    """Decode a default literal as written in a declare block."""
    if text is None:
        return None
    raw = text.strip()
    if raw == "null":
        return None
    if raw in ("true", "false"):
        return raw == "true"
    if len(raw) >= 2 and raw[0] == raw[-1] and raw[0] in "\"'":
        try:
            tokens = tokenize(raw)
        except SourceSyntaxError:
            return raw[1:-1]
        if len(tokens) == 1 and tokens[0].kind == STRING:
            return tokens[0].value
        return raw[1:-1]
    if _INT_LITERAL_RE.match(raw):
        return int(raw.rstrip("lL"))
    if _FLOAT_LITERAL_RE.match(raw):
        return float(raw.rstrip("dDfF"))
    container = _NEW_CONTAINER_RE.match(raw)
    if container is not None:
        kind = _KIND_BY_TYPE_TEXT.get(container.group(1))
        if kind is FieldKind.LIST:
            return []
        if kind is FieldKind.MAP:
            return {}
    return raw


def encode_literal(value: Any) -> Optional[str]:
    """Inverse of ``decode_literal`` for plain JSON values."""
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return repr(value)
    if isinstance(value, str):
        return json.dumps(value, ensure_ascii=False)
    if isinstance(value, list) and not value:
        return "new java.util.ArrayList()"
    if isinstance(value, dict) and not value:
        return "new java.util.HashMap()"
    raise SchemaError(f"Unsupported default value: {value!r}")


@dataclass(frozen=True)
class FieldDefinition:
    """A single typed field of a fact type."""

    name: str
    kind: FieldKind
    type_text: str = ""
    ref_type: Optional[str] = None
    default: Optional[str] = None
    required: bool = False

    def __post_init__(self) -> None:
        if not isinstance(self.name, str) or not _NAME_RE.match(self.name):
            raise SchemaError(f"Invalid field name: {self.name!r}")
        if not isinstance(self.kind, FieldKind):
            try:
                object.__setattr__(self, "kind", FieldKind(self.kind))
            except ValueError as exc:
                raise SchemaError(f"Unknown field kind for '{self.name}': {self.kind!r}") from exc
        if self.kind is FieldKind.OBJECT:
            ref = self.ref_type or self.type_text
            if not ref:
                raise SchemaError(f"Object field '{self.name}' must reference a type.")
            object.__setattr__(self, "ref_type", ref)
        elif self.ref_type is not None:
            raise SchemaError(f"Only object fields may reference a type: '{self.name}'.")
        if not self.type_text:
            text = self.ref_type if self.kind is FieldKind.OBJECT else _TYPE_TEXT_BY_KIND[self.kind]
            object.__setattr__(self, "type_text", text)

    @classmethod
    def of_type(
        cls,
        name: str,
        type_text: str,
        *,
        default: Optional[str] = None,
        required: bool = False,
    ) -> "FieldDefinition":
        kind, ref = kind_for_type_text(type_text)
        return cls(
            name=name,
            kind=kind,
            type_text=type_text.strip(),
            ref_type=ref,
            default=default,
            required=required,
        )

    @property
    def has_default(self) -> bool:
        return self.default is not None

    def default_value(self) -> Any:
        return decode_literal(self.default)

    def is_compatible_with(self, other: "FieldDefinition") -> bool:
        if self.kind is not other.kind:
            return False
        if self.kind is FieldKind.OBJECT:
            return _simple(self.ref_type) == _simple(other.ref_type)
        return True

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "name": self.name,
            "kind": self.kind.value,
            "type": self.type_text,
            "required": self.required,
        }
        if self.ref_type is not None:
            data["ref_type"] = self.ref_type
        if self.default is not None:
            data["default"] = self.default
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "FieldDefinition":
        return cls(
            name=data["name"],
            kind=FieldKind(data["kind"]),
            type_text=data.get("type", ""),
            ref_type=data.get("ref_type"),
            default=data.get("default"),
            required=bool(data.get("required", False)),
        )


@dataclass(frozen=True)
class TypeDefinition:
    """A named fact type with ordered fields."""

    name: str
    package: Optional[str] = None
    fields: tuple[FieldDefinition, ...] = ()
    metadata: Mapping[str, str] = field(default_factory=dict, hash=False)
    revision: int = field(default=0, compare=False)

    def __post_init__(self) -> None:
        if not isinstance(self.name, str) or not _NAME_RE.match(self.name):
            raise SchemaError(f"Invalid type name: {self.name!r}")
        if self.package is not None and not _QUALIFIED_RE.match(self.package):
            raise SchemaError(f"Invalid package for '{self.name}': {self.package!r}")
        fields = tuple(self.fields)
        seen: set[str] = set()
        for item in fields:
            if not isinstance(item, FieldDefinition):
                raise SchemaError(f"Type '{self.name}' fields must be FieldDefinition.")
            if item.name in seen:
                raise SchemaError(f"Duplicate field '{item.name}' in type '{self.name}'.")
            seen.add(item.name)
        object.__setattr__(self, "fields", fields)
        object.__setattr__(self, "metadata", dict(self.metadata or {}))

    @property
    def qualified_name(self) -> str:
        if self.package:
            return f"{self.package}.{self.name}"
        return self.name

    def get_field(self, name: str) -> Optional[FieldDefinition]:
        for item in self.fields:
            if item.name == name:
                return item
        return None

    def has_field(self, name: str) -> bool:
        return self.get_field(name) is not None

    def field_names(self) -> list[str]:
        return [item.name for item in self.fields]

    def required_fields(self) -> list[FieldDefinition]:
        return [item for item in self.fields if item.required]

    def with_revision(self, revision: int) -> "TypeDefinition":
        return TypeDefinition(
            name=self.name,
            package=self.package,
            fields=self.fields,
            metadata=self.metadata,
            revision=revision,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "package": self.package,
            "fields": [item.to_dict() for item in self.fields],
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "TypeDefinition":
        return cls(
            name=data["name"],
            package=data.get("package"),
            fields=tuple(FieldDefinition.from_dict(item) for item in data.get("fields", [])),
            metadata=data.get("metadata") or {},
        )


def incompatible_fields(
    existing: TypeDefinition, fields: Iterable[FieldDefinition]
) -> list[str]:
    """Names of overlapping fields whose kinds disagree."""
    conflicts = []
    for item in fields:
        current = existing.get_field(item.name)
        if current is not None and not current.is_compatible_with(item):
            conflicts.append(f"{item.name} ({current.type_text} vs {item.type_text})")
    return conflicts


def _simple(name: Optional[str]) -> Optional[str]:
    if name is None:
        return None
    return name.rsplit(".", 1)[-1]
