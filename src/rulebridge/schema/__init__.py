"""Declarative fact type schemas."""

from rulebridge.schema.definitions import (
    FieldDefinition,
    FieldKind,
    TypeDefinition,
    decode_literal,
    kind_for_type_text,
)
from rulebridge.schema.declare import parse_declarations, render_type, render_types
from rulebridge.schema.registry import TypeRegistry

__all__ = [
    "FieldDefinition",
    "FieldKind",
    "TypeDefinition",
    "decode_literal",
    "kind_for_type_text",
    "parse_declarations",
    "render_type",
    "render_types",
    "TypeRegistry",
]
