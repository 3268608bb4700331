"""Schema-aware structural checks for rule source.

The validator works on the token stream and the block layout only; it never
calls an engine. Findings are returned, never raised.
"""

from __future__ import annotations

import logging
from typing import Optional

from rulebridge.diagnostics import Diagnostic, error, warning
from rulebridge.errors import SourceSyntaxError
from rulebridge.lang.blocks import RuleBlock, SourceLayout, scan_source
from rulebridge.lang.lexer import IDENT, VAR, Token
from rulebridge.lang.source import (
    enclosed,
    is_blank,
    is_builtin_type,
    read_qualified_name,
    simple_name,
    split_arguments,
)
from rulebridge.schema.definitions import TypeDefinition
from rulebridge.schema.registry import TypeRegistry

logger = logging.getLogger(__name__)

# Identifiers that are operators or literals inside a constraint.
_RESERVED = {"null", "true", "false", "this", "matches", "contains", "memberOf", "in", "not"}
_CONDITION_WORDS = {"and", "eval", "not", "exists"}


class StructuralValidator:
    """Validate rule source against declared and registered types."""

    def __init__(self, registry: Optional[TypeRegistry] = None) -> None:
        self.registry = registry if registry is not None else TypeRegistry()

    def validate(self, source: str) -> list[Diagnostic]:
        if is_blank(source):
            return [error("Rule source is empty", code="empty_source", phase="validate")]
        lines = source.splitlines()
        layout = scan_source(source)
        run = _Run(self, layout, lines)
        for problem in layout.problems:
            run.error(problem.message, problem.line, code="syntax")
        seen: set[str] = set()
        for block in layout.rules:
            run.check_rule(block, seen)
        logger.debug("Validated source: %d diagnostics", len(run.diagnostics))
        return run.diagnostics

    def lookup_type(self, layout: SourceLayout, name: str) -> Optional[TypeDefinition]:
        wanted = simple_name(name)
        for definition in layout.declarations:
            if definition.name == wanted:
                return definition
        return self.registry.get(name)


class _Run:
    """State of one ``validate`` call."""

    def __init__(
        self, validator: StructuralValidator, layout: SourceLayout, lines: list[str]
    ) -> None:
        self.validator = validator
        self.layout = layout
        self.lines = lines
        self.diagnostics: list[Diagnostic] = []

    def error(self, message: str, line: Optional[int], *, code: str) -> None:
        self.diagnostics.append(
            error(message, line=line, excerpt=self._excerpt(line), code=code, phase="validate")
        )

    def warn(self, message: str, line: Optional[int], *, code: str) -> None:
        self.diagnostics.append(
            warning(message, line=line, excerpt=self._excerpt(line), code=code, phase="validate")
        )

    def _excerpt(self, line: Optional[int]) -> Optional[str]:
        if line is None or line > len(self.lines):
            return None
        return self.lines[line - 1]

    def check_rule(self, block: RuleBlock, seen: set[str]) -> None:
        if block.name is None:
            self.error("Rule is missing a name", block.line, code="structure")
        else:
            if block.name in seen:
                self.error(f"Duplicate rule name '{block.name}'", block.line, code="duplicate_rule")
            seen.add(block.name)
            if not block.name[:1].isupper():
                self.warn(
                    f"The rule name '{block.name}' needs to start with a capital letter",
                    block.line,
                    code="naming",
                )
        label = block.name or "<unnamed>"
        for present, keyword in (
            (block.has_when, "when"),
            (block.has_then, "then"),
            (block.terminated, "end"),
        ):
            if not present:
                self.error(f"Rule '{label}' is missing '{keyword}'", block.line, code="structure")
        if not block.balanced:
            self.error(
                f"Rule '{label}' has unbalanced brackets in its consequence",
                block.line,
                code="structure",
            )
        variables: set[str] = set()
        self._conditions(block.lhs, variables)
        for token in block.rhs:
            if token.kind == VAR and token.text not in variables:
                self.error(
                    f"Variable '{token.text}' used in rule '{label}' is not bound",
                    token.line,
                    code="unbound_variable",
                )

    def _conditions(self, tokens: list[Token], variables: set[str]) -> None:
        index = 0
        while index < len(tokens):
            token = tokens[index]
            if token.is_ident("eval"):
                _, index = self._group(tokens, index + 1, token)
                continue
            if token.is_ident("not", "exists"):
                index += 1
                if index < len(tokens) and tokens[index].is_punct("("):
                    inner, index = self._group(tokens, index, token)
                    self._conditions(inner, set(variables))
                continue
            if token.kind == VAR:
                variables.add(token.text)
                index += 1
                continue
            if token.kind != IDENT or token.text in _CONDITION_WORDS:
                index += 1
                continue
            type_name, after = read_qualified_name(tokens, index)
            if after >= len(tokens) or not tokens[after].is_punct("("):
                index = after
                continue
            try:
                inner, index = enclosed(tokens, after)
            except SourceSyntaxError:
                self.error(f"Missing ')' in pattern '{type_name}'", token.line, code="structure")
                return
            self._pattern(token, type_name, inner, variables)

    def _group(
        self, tokens: list[Token], index: int, keyword: Token
    ) -> tuple[list[Token], int]:
        try:
            return enclosed(tokens, index)
        except SourceSyntaxError:
            self.error(f"Missing ')' after '{keyword.text}'", keyword.line, code="structure")
            return [], len(tokens)

    def _pattern(
        self, head: Token, type_name: str, inner: list[Token], variables: set[str]
    ) -> None:
        definition: Optional[TypeDefinition] = None
        if not is_builtin_type(type_name):
            definition = self.validator.lookup_type(self.layout, type_name)
            if definition is None:
                self.error(
                    f"Fact type '{type_name}' used in pattern but no declaration",
                    head.line,
                    code="undeclared_type",
                )
        try:
            parts = split_arguments(inner)
        except SourceSyntaxError as exc:
            self.error(f"{exc.message} in pattern '{type_name}'", head.line, code="structure")
            return
        for part in parts:
            for token in _variables_used(part):
                if token.text not in variables:
                    self.error(
                        f"Variable '{token.text}' is not bound",
                        token.line,
                        code="unbound_variable",
                    )
            if part[0].kind == VAR and len(part) > 2 and part[1].is_punct(":"):
                variables.add(part[0].text)
            if definition is None:
                continue
            for token in _field_references(part):
                if not definition.has_field(token.text):
                    self.error(
                        f"Field '{token.text}' used in rule but not declared in type "
                        f"'{definition.name}'",
                        token.line,
                        code="undeclared_field",
                    )


def _variables_used(part: list[Token]) -> list[Token]:
    """Variables read by a constraint, leaving out the one it binds."""
    start = 2 if part[0].kind == VAR and len(part) > 2 and part[1].is_punct(":") else 0
    return [token for token in part[start:] if token.kind == VAR]


def _field_references(part: list[Token]) -> list[Token]:
    """First segments of field paths used by one constraint."""
    if part[0].kind == VAR and len(part) > 2 and part[1].is_punct(":"):
        part = part[2:]
    found: list[Token] = []
    seen: set[str] = set()
    for index, token in enumerate(part):
        if token.kind != IDENT or token.text in _RESERVED:
            continue
        previous = part[index - 1] if index > 0 else None
        following = part[index + 1] if index + 1 < len(part) else None
        if previous is not None and previous.is_punct("."):
            continue
        if following is not None and following.is_punct("("):
            continue
        if following is not None and following.is_punct(".") and is_builtin_type(token.text):
            continue
        if token.text not in seen:
            seen.add(token.text)
            found.append(token)
    return found
