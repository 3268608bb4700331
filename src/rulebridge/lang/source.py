"""Helpers for inspecting raw rule source text."""

from __future__ import annotations

import re
from typing import Optional

from rulebridge.errors import SourceSyntaxError
from rulebridge.lang.lexer import PUNCT, Token


_PACKAGE_RE = re.compile(r"^\s*package\s+([A-Za-z_][\w.]*)\s*;?", re.MULTILINE)
_BUILTIN_PREFIXES = ("java.lang.", "java.util.", "java.math.")

BUILTIN_TYPES = frozenset(
    {
        "Object",
        "String",
        "Character",
        "Integer",
        "Long",
        "Short",
        "Byte",
        "Double",
        "Float",
        "Number",
        "Boolean",
        "BigDecimal",
        "BigInteger",
        "Date",
        "LocalDate",
        "LocalDateTime",
        "List",
        "ArrayList",
        "LinkedList",
        "Collection",
        "Set",
        "HashSet",
        "Map",
        "HashMap",
        "LinkedHashMap",
        "TreeMap",
    }
)


def extract_package_name(source: str) -> Optional[str]:
    """Return the name given by the first ``package`` statement, if any."""
    if not source:
        return None
    match = _PACKAGE_RE.search(source)
    if match is None:
        return None
    return match.group(1).rstrip(".")


def is_blank(source: Optional[str]) -> bool:
    return source is None or not source.strip()


def simple_name(name: str) -> str:
    return name.rsplit(".", 1)[-1]


def read_qualified_name(tokens: list[Token], index: int) -> tuple[str, int]:
    """Read ``a.b.C`` starting at ``index``; returns the name and next index."""
    parts = [tokens[index].text]
    index += 1
    while (
        index + 1 < len(tokens)
        and tokens[index].is_punct(".")
        and tokens[index + 1].is_ident()
    ):
        parts.append(tokens[index + 1].text)
        index += 2
    return ".".join(parts), index


def source_slice(source: str, tokens: list[Token]) -> str:
    if not tokens:
        return ""
    return source[tokens[0].start : tokens[-1].end]


def enclosed(tokens: list[Token], start: int) -> tuple[list[Token], int]:
    """Tokens inside the parenthesis at ``start``; returns them and the next index."""
    if start >= len(tokens) or not tokens[start].is_punct("("):
        found = tokens[start].text if start < len(tokens) else "end of input"
        raise SourceSyntaxError(f"Expected '(' but found '{found}'")
    depth = 0
    for index in range(start, len(tokens)):
        if tokens[index].is_punct("("):
            depth += 1
        elif tokens[index].is_punct(")"):
            depth -= 1
            if depth == 0:
                return tokens[start + 1 : index], index + 1
    raise SourceSyntaxError("Missing ')'")


def split_arguments(tokens: list[Token]) -> list[list[Token]]:
    """Split on commas outside of any brackets."""
    if not tokens:
        return []
    parts: list[list[Token]] = [[]]
    depth = 0
    for token in tokens:
        if token.kind == PUNCT and token.text in "({[":
            depth += 1
        elif token.kind == PUNCT and token.text in ")}]":
            depth -= 1
        if depth == 0 and token.is_punct(","):
            parts.append([])
            continue
        parts[-1].append(token)
    if any(not part for part in parts):
        raise SourceSyntaxError("Empty argument")
    return parts


def token_text(tokens: list[Token]) -> str:
    return " ".join(token.text for token in tokens)


def is_builtin_type(name: str) -> bool:
    """Primitive, boxed, collection, date and decimal types need no declaration."""
    for prefix in _BUILTIN_PREFIXES:
        if name.startswith(prefix):
            name = name[len(prefix) :]
            break
    else:
        if "." in name and name.startswith("java."):
            name = simple_name(name)
    return name in BUILTIN_TYPES
