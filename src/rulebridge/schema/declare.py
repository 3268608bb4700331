"""Tokenizer-based parser and renderer for ``declare`` blocks.

Grammar::

    declare [package.]Name [extends Super]
        [@annotation[(...)]]*
        field : Type [= default] [@key | @required]*
    end

A block ends at the first bare ``end`` identifier token. ``end`` inside a
quoted string never closes a block, and a default value always stops at the
end of its line.
"""

from __future__ import annotations

from typing import Iterable, Optional

from rulebridge.errors import SchemaError, SourceSyntaxError
from rulebridge.lang.lexer import Token, tokenize
from rulebridge.lang.source import read_qualified_name, source_slice
from rulebridge.schema.definitions import FieldDefinition, TypeDefinition


_REQUIRED_ANNOTATIONS = {"key", "required"}


def parse_declarations(
    source: str,
    *,
    package: Optional[str] = None,
    tokens: Optional[list[Token]] = None,
) -> list[TypeDefinition]:
    """Parse every declare block found in ``source``."""
    if tokens is None:
        tokens = tokenize(source)
    definitions: list[TypeDefinition] = []
    index = 0
    while index < len(tokens):
        if is_declare_start(tokens, index):
            definition, index = parse_declare_block(source, tokens, index, package=package)
            definitions.append(definition)
            continue
        index += 1
    return definitions


def is_declare_start(tokens: list[Token], index: int) -> bool:
    token = tokens[index]
    if not token.is_ident("declare"):
        return False
    if index > 0 and tokens[index - 1].is_punct("."):
        return False
    return index + 1 < len(tokens) and tokens[index + 1].is_ident()


def parse_declare_block(
    source: str,
    tokens: list[Token],
    index: int,
    *,
    package: Optional[str] = None,
) -> tuple[TypeDefinition, int]:
    """Parse the block starting at ``tokens[index]`` (the ``declare`` keyword)."""
    header = tokens[index]
    index += 1
    if index >= len(tokens) or not tokens[index].is_ident():
        raise SourceSyntaxError("Expected a type name after 'declare'", header.line)
    if tokens[index].is_ident("trait") and index + 1 < len(tokens) and tokens[index + 1].is_ident():
        index += 1
    qualified, index = read_qualified_name(tokens, index)
    type_package = package
    name = qualified
    if "." in qualified:
        type_package, name = qualified.rsplit(".", 1)

    metadata: dict[str, str] = {}
    if index < len(tokens) and tokens[index].is_ident("extends"):
        if index + 1 >= len(tokens) or not tokens[index + 1].is_ident():
            raise SourceSyntaxError(f"Expected a supertype for '{name}'", tokens[index].line)
        metadata["extends"], index = read_qualified_name(tokens, index + 1)

    fields: list[FieldDefinition] = []
    while True:
        if index >= len(tokens):
            raise SourceSyntaxError(
                f"Unterminated declare block '{name}': missing 'end'", header.line
            )
        token = tokens[index]
        if token.is_ident("end"):
            index += 1
            break
        if token.is_punct("@"):
            key, value, index = _read_annotation(source, tokens, index)
            metadata[key] = value
            continue
        if _is_field_start(tokens, index):
            item, index = _read_field(source, tokens, index)
            fields.append(item)
            continue
        raise SourceSyntaxError(
            f"Unexpected '{token.text}' in declare block '{name}'", token.line
        )

    try:
        definition = TypeDefinition(
            name=name, package=type_package, fields=tuple(fields), metadata=metadata
        )
    except SchemaError as exc:
        raise SourceSyntaxError(exc.message, header.line) from exc
    return definition, index


def _is_field_start(tokens: list[Token], index: int) -> bool:
    return (
        tokens[index].is_ident()
        and index + 1 < len(tokens)
        and tokens[index + 1].is_punct(":")
    )


def _read_field(source: str, tokens: list[Token], index: int) -> tuple[FieldDefinition, int]:
    name_token = tokens[index]
    index += 2
    if index >= len(tokens) or not tokens[index].is_ident():
        raise SourceSyntaxError(f"Expected a type for field '{name_token.text}'", name_token.line)
    type_start = index
    _, index = read_qualified_name(tokens, index)
    if index < len(tokens) and tokens[index].is_op("<"):
        depth = 0
        while index < len(tokens):
            if tokens[index].is_op("<"):
                depth += 1
            elif tokens[index].is_op(">"):
                depth -= 1
            index += 1
            if depth == 0:
                break
        if depth != 0:
            raise SourceSyntaxError(
                f"Unclosed generic type for field '{name_token.text}'", name_token.line
            )
    if (
        index + 1 < len(tokens)
        and tokens[index].is_punct("[")
        and tokens[index + 1].is_punct("]")
    ):
        index += 2
    type_text = source_slice(source, tokens[type_start:index])
    last_line = tokens[index - 1].line

    default: Optional[str] = None
    if index < len(tokens) and tokens[index].is_op("="):
        equals = tokens[index]
        index += 1
        start = index
        while (
            index < len(tokens)
            and tokens[index].line == equals.line
            and not tokens[index].is_punct("@")
            and not tokens[index].is_punct(";")
            and not tokens[index].is_ident("end")
            and not _is_field_start(tokens, index)
        ):
            index += 1
        if index == start:
            raise SourceSyntaxError(
                f"Missing default value for field '{name_token.text}'", equals.line
            )
        default = source_slice(source, tokens[start:index])
        last_line = tokens[index - 1].line

    required = False
    while (
        index < len(tokens)
        and tokens[index].is_punct("@")
        and tokens[index].line == last_line
    ):
        key, _, index = _read_annotation(source, tokens, index)
        if key in _REQUIRED_ANNOTATIONS:
            required = True
    if index < len(tokens) and tokens[index].is_punct(";"):
        index += 1

    try:
        item = FieldDefinition.of_type(
            name_token.text, type_text, default=default, required=required
        )
    except SchemaError as exc:
        raise SourceSyntaxError(exc.message, name_token.line) from exc
    return item, index


def _read_annotation(source: str, tokens: list[Token], index: int) -> tuple[str, str, int]:
    at = tokens[index]
    index += 1
    if index >= len(tokens) or not tokens[index].is_ident():
        raise SourceSyntaxError("Expected an annotation name after '@'", at.line)
    key = tokens[index].text
    index += 1
    value = ""
    if index < len(tokens) and tokens[index].is_punct("("):
        open_index = index
        depth = 0
        while index < len(tokens):
            if tokens[index].is_punct("("):
                depth += 1
            elif tokens[index].is_punct(")"):
                depth -= 1
                if depth == 0:
                    break
            index += 1
        if index >= len(tokens):
            raise SourceSyntaxError(f"Unclosed annotation '@{key}'", at.line)
        value = source_slice(source, tokens[open_index + 1 : index])
        index += 1
    return key, value, index


def render_type(definition: TypeDefinition) -> str:
    """Render one canonical declare block."""
    header = f"declare {definition.name}"
    lines: list[str] = []
    for key, value in definition.metadata.items():
        if key == "extends":
            header += f" extends {value}"
            continue
        lines.append(f"    @{key}({value})" if value else f"    @{key}")
    for item in definition.fields:
        line = f"    {item.name} : {item.type_text}"
        if item.default is not None:
            line += f" = {item.default}"
        if item.required:
            line += " @key"
        lines.append(line)
    return "\n".join([header, *lines, "end"])


def render_types(definitions: Iterable[TypeDefinition]) -> str:
    return "\n\n".join(render_type(item) for item in definitions)
