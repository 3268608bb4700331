"""Locate the line that breaks a rule source by bisecting over line prefixes."""

from __future__ import annotations

import logging
import re
from typing import Optional

from rulebridge.diagnostics import FaultLocation
from rulebridge.engine.base import CompileOutcome, RuleEngine
from rulebridge.errors import FaultIsolationError
from rulebridge.lang.source import is_blank

logger = logging.getLogger(__name__)

_KEYWORD_RE = re.compile(r"\b(rule|declare|query|when|then|end)\b")
_STRING_RE = re.compile(r'"(?:\\.|[^"\\])*"?|\'(?:\\.|[^\'\\])*\'?')

# Lines appended to a prefix that stops inside an open block.
_CLOSERS = {
    "rule": ["when", "then", "end"],
    "when": ["then", "end"],
    "then": ["end"],
    "declare": ["end"],
    "query": ["end"],
}


class FaultIsolator:
    """Find the first line whose inclusion makes a source fail to compile.

    Each probe compiles the prefix ending at line ``k`` after closing any
    block it leaves open, so a half-written rule does not count as a fault.
    The smallest failing ``k`` is found by bisection.
    """

    def __init__(self, engine: RuleEngine) -> None:
        self.engine = engine
        self.compile_count = 0

    def find_faulty_line(self, source: Optional[str]) -> Optional[FaultLocation]:
        if is_blank(source):
            raise FaultIsolationError(
                "Cannot isolate a fault in empty rule source", phase="isolate"
            )
        self.compile_count = 0
        full = self._compile(source)
        if full.ok:
            return None

        lines = source.splitlines()
        messages: dict[int, str] = {}
        closed = _closed_prefixes(lines)
        joined = "\n".join(lines)

        def fails(k: int) -> bool:
            prefix = closed[k - 1]
            if is_blank(prefix):
                return False
            if prefix == joined:
                outcome = full
            else:
                outcome = self._compile(prefix)
            if outcome.ok:
                return False
            messages[k] = _first_message(outcome)
            return True

        low, high = 1, len(lines)
        if not fails(high):
            logger.debug("Every closed prefix compiles; reporting the last line")
            return FaultLocation(lines[-1], len(lines), _first_message(full))
        while low < high:
            middle = (low + high) // 2
            if fails(middle):
                high = middle
            else:
                low = middle + 1
        logger.debug(
            "Isolated fault at line %d after %d compilations", low, self.compile_count
        )
        return FaultLocation(lines[low - 1], low, messages[low])

    def _compile(self, text: str) -> CompileOutcome:
        self.compile_count += 1
        return self.engine.compile(text)


def _first_message(outcome: CompileOutcome) -> str:
    errors = outcome.errors()
    if errors:
        return errors[0].message
    return "Rule source failed to compile"


def _closed_prefixes(lines: list[str]) -> list[str]:
    """For each k, lines[:k] followed by whatever closes the open block."""
    prefixes: list[str] = []
    state: Optional[str] = None
    in_comment = False
    for k, line in enumerate(lines, start=1):
        code, in_comment = _strip_line(line, in_comment)
        for match in _KEYWORD_RE.finditer(code):
            state = _advance(state, match.group(1))
        text = "\n".join(lines[:k])
        if state is not None:
            text += "\n" + "\n".join(_CLOSERS[state])
        prefixes.append(text)
    return prefixes


def _advance(state: Optional[str], word: str) -> Optional[str]:
    if state is None:
        if word in ("rule", "declare", "query"):
            return word
        return None
    if word == "end":
        return None
    if state == "rule" and word in ("when", "then"):
        return word
    if state == "when" and word == "then":
        return word
    return state


def _strip_line(line: str, in_comment: bool) -> tuple[str, bool]:
    """Drop string literals and comments, tracking ``/* */`` across lines."""
    out: list[str] = []
    pos = 0
    while pos < len(line):
        if in_comment:
            close = line.find("*/", pos)
            if close < 0:
                return "".join(out), True
            pos = close + 2
            in_comment = False
            continue
        ch = line[pos]
        if ch in "\"'":
            match = _STRING_RE.match(line, pos)
            pos = match.end()
            out.append(" ")
        elif line.startswith("/*", pos):
            in_comment = True
            pos += 2
        elif line.startswith("//", pos) or ch == "#":
            break
        else:
            out.append(ch)
            pos += 1
    return "".join(out), in_comment
