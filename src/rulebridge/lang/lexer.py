"""Tokenizer for rule and declare source text."""

from __future__ import annotations

from dataclasses import dataclass
import re
from typing import Iterator, Optional

from rulebridge.errors import SourceSyntaxError


IDENT = "ident"
VAR = "var"
STRING = "string"
NUMBER = "number"
OP = "op"
PUNCT = "punct"

_OPERATORS = ("==", "!=", "<=", ">=", "&&", "||", "<", ">", "!", "=", "+", "-", "*", "/", "%")
_PUNCTUATION = "(){}[],;:.@?"
_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", "b": "\b", "f": "\f", "0": "\0"}
_NUMBER_RE = re.compile(r"\d+(\.\d+)?([eE][+-]?\d+)?([lLdDfF])?")
_IDENT_START = re.compile(r"[A-Za-z_]")
_IDENT_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")
_VAR_RE = re.compile(r"\$[A-Za-z_][A-Za-z0-9_]*")


@dataclass(frozen=True)
class Token:
    kind: str
    text: str
    line: int
    start: int
    end: int
    value: object = None

    def is_ident(self, *names: str) -> bool:
        return self.kind == IDENT and (not names or self.text in names)

    def is_punct(self, text: str) -> bool:
        return self.kind == PUNCT and self.text == text

    def is_op(self, text: str) -> bool:
        return self.kind == OP and self.text == text


def tokenize(source: str) -> list[Token]:
    """Split source into tokens, dropping whitespace and comments."""
    return list(_scan(source))


def _scan(source: str) -> Iterator[Token]:
    pos = 0
    line = 1
    length = len(source)
    while pos < length:
        ch = source[pos]
        if ch == "\n":
            line += 1
            pos += 1
            continue
        if ch.isspace():
            pos += 1
            continue
        if source.startswith("//", pos) or ch == "#":
            newline = source.find("\n", pos)
            pos = length if newline < 0 else newline
            continue
        if source.startswith("/*", pos):
            close = source.find("*/", pos + 2)
            if close < 0:
                raise SourceSyntaxError("Unterminated block comment", line)
            line += source.count("\n", pos, close)
            pos = close + 2
            continue
        if ch in "\"'":
            token, pos = _scan_string(source, pos, line)
            yield token
            continue
        if ch.isdigit():
            match = _NUMBER_RE.match(source, pos)
            assert match is not None
            yield Token(NUMBER, match.group(0), line, pos, match.end(), _number_value(match))
            pos = match.end()
            continue
        if ch == "$":
            match = _VAR_RE.match(source, pos)
            if match is None:
                raise SourceSyntaxError("Expected a variable name after '$'", line)
            yield Token(VAR, match.group(0), line, pos, match.end())
            pos = match.end()
            continue
        if _IDENT_START.match(ch):
            match = _IDENT_RE.match(source, pos)
            assert match is not None
            yield Token(IDENT, match.group(0), line, pos, match.end())
            pos = match.end()
            continue
        op = _match_operator(source, pos)
        if op is not None:
            yield Token(OP, op, line, pos, pos + len(op))
            pos += len(op)
            continue
        if ch in _PUNCTUATION:
            yield Token(PUNCT, ch, line, pos, pos + 1)
            pos += 1
            continue
        raise SourceSyntaxError(f"Unexpected character {ch!r}", line)


def _scan_string(source: str, pos: int, line: int) -> tuple[Token, int]:
    quote = source[pos]
    chars: list[str] = []
    index = pos + 1
    while index < len(source):
        ch = source[index]
        if ch == "\n":
            break
        if ch == "\\":
            if index + 1 >= len(source):
                break
            escaped = source[index + 1]
            if escaped == "u":
                code = source[index + 2 : index + 6]
                if not re.fullmatch(r"[0-9A-Fa-f]{4}", code):
                    raise SourceSyntaxError("Invalid unicode escape in string literal", line)
                chars.append(chr(int(code, 16)))
                index += 6
                continue
            chars.append(_ESCAPES.get(escaped, escaped))
            index += 2
            continue
        if ch == quote:
            end = index + 1
            return Token(STRING, source[pos:end], line, pos, end, "".join(chars)), end
        chars.append(ch)
        index += 1
    raise SourceSyntaxError("Unterminated string literal", line)


def _number_value(match: re.Match[str]) -> object:
    digits = match.group(0)
    suffix = match.group(3)
    if suffix:
        digits = digits[:-1]
    if match.group(1) or match.group(2) or (suffix and suffix in "dDfF"):
        return float(digits)
    return int(digits)


def _match_operator(source: str, pos: int) -> Optional[str]:
    for op in _OPERATORS:
        if source.startswith(op, pos):
            return op
    return None
