"""Compilation of scanned rule blocks into executable rules."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Optional

from rulebridge.engine.actions import Action, parse_consequence
from rulebridge.engine.expr import CompiledExpression, ExpressionError, compile_expression
from rulebridge.errors import SourceSyntaxError
from rulebridge.lang.blocks import RuleBlock
from rulebridge.lang.lexer import NUMBER, VAR, Token
from rulebridge.lang.source import (
    enclosed,
    is_builtin_type,
    read_qualified_name,
    split_arguments,
    token_text,
)
from rulebridge.schema.definitions import TypeDefinition

TypeLookup = Callable[[str], Optional[TypeDefinition]]

_UNSUPPORTED_CONDITIONS = {"or", "from", "accumulate", "collect", "forall"}


@dataclass
class ConstraintItem:
    expression: CompiledExpression
    # When set, the expression value is bound to this variable instead of tested.
    binding: Optional[str] = None


@dataclass
class Pattern:
    type_name: str
    mode: str = "match"
    binding: Optional[str] = None
    items: list[ConstraintItem] = field(default_factory=list)


@dataclass
class Rule:
    name: str
    index: int
    salience: int = 0
    no_loop: bool = False
    enabled: bool = True
    patterns: list[Pattern] = field(default_factory=list)
    actions: list[Action] = field(default_factory=list)
    line: int = 1


class RuleCompiler:
    """Compile RuleBlocks. Errors raise SourceSyntaxError without a line."""

    def __init__(self, source: str, lookup_type: TypeLookup) -> None:
        self.source = source
        self.lookup_type = lookup_type

    def compile(self, block: RuleBlock, index: int) -> Rule:
        if block.name is None:
            raise SourceSyntaxError("Missing rule name")
        if not block.balanced:
            raise SourceSyntaxError("Unbalanced parentheses in consequence")
        if not block.has_when:
            raise SourceSyntaxError("Missing 'when'")
        if not block.has_then:
            raise SourceSyntaxError("Missing 'then'")
        if not block.terminated:
            raise SourceSyntaxError("Missing 'end'")
        rule = Rule(name=block.name, index=index, line=block.line)
        self._attributes(rule, block.attributes)
        variables: dict[str, Optional[str]] = {}
        rule.patterns = self._patterns(block.lhs, variables)
        rule.actions = parse_consequence(
            self.source, block.rhs, variables=variables, lookup_type=self.lookup_type
        )
        return rule

    def _attributes(self, rule: Rule, tokens: list[Token]) -> None:
        index = 0
        while index < len(tokens):
            token = tokens[index]
            if token.is_ident("salience"):
                index += 1
                negative = index < len(tokens) and tokens[index].is_op("-")
                if negative:
                    index += 1
                if index >= len(tokens) or tokens[index].kind != NUMBER:
                    raise SourceSyntaxError("Expected an integer after 'salience'")
                value = tokens[index].value
                if not isinstance(value, int):
                    raise SourceSyntaxError("Salience must be an integer")
                rule.salience = -value if negative else value
                index += 1
            elif (
                token.is_ident("no")
                and index + 2 < len(tokens)
                and tokens[index + 1].is_op("-")
                and tokens[index + 2].is_ident("loop")
            ):
                index += 3
                rule.no_loop, index = _optional_flag(tokens, index)
            elif token.is_ident("enabled"):
                rule.enabled, index = _optional_flag(tokens, index + 1)
            else:
                raise SourceSyntaxError(f"Unknown rule attribute '{token.text}'")

    def _patterns(
        self, tokens: list[Token], variables: dict[str, Optional[str]]
    ) -> list[Pattern]:
        patterns: list[Pattern] = []
        index = 0
        while index < len(tokens):
            token = tokens[index]
            if token.is_ident("and"):
                index += 1
                continue
            if token.text in _UNSUPPORTED_CONDITIONS:
                raise SourceSyntaxError(f"Unsupported condition '{token.text}'")
            if token.is_ident("eval"):
                inner, index = enclosed(tokens, index + 1)
                pattern = Pattern(type_name="", mode="eval")
                pattern.items.append(ConstraintItem(self._expression(inner, variables)))
                patterns.append(pattern)
                continue
            mode = "match"
            if token.is_ident("not", "exists"):
                mode = token.text
                index += 1
                if index < len(tokens) and tokens[index].is_punct("("):
                    inner, index = enclosed(tokens, index)
                    nested = self._patterns(inner, dict(variables))
                    if len(nested) != 1 or nested[0].mode != "match" or nested[0].binding:
                        raise SourceSyntaxError(f"'{mode}' expects a single unbound pattern")
                    nested[0].mode = mode
                    patterns.append(nested[0])
                    continue
            binding: Optional[str] = None
            if index < len(tokens) and tokens[index].kind == VAR:
                if index + 1 >= len(tokens) or not tokens[index + 1].is_punct(":"):
                    raise SourceSyntaxError(f"Expected ':' after '{tokens[index].text}'")
                if mode != "match":
                    raise SourceSyntaxError(f"Cannot bind a variable inside '{mode}'")
                binding = tokens[index].text
                index += 2
            if index >= len(tokens) or not tokens[index].is_ident():
                found = tokens[index].text if index < len(tokens) else "end of conditions"
                raise SourceSyntaxError(f"Expected a fact type but found '{found}'")
            type_name, index = read_qualified_name(tokens, index)
            definition = self._resolve_type(type_name)
            if index >= len(tokens) or not tokens[index].is_punct("("):
                raise SourceSyntaxError(f"Expected '(' after '{type_name}'")
            try:
                inner, index = enclosed(tokens, index)
            except SourceSyntaxError as exc:
                raise SourceSyntaxError(f"Missing ')' in pattern '{type_name}'") from exc
            scope = variables if mode == "match" else dict(variables)
            pattern = Pattern(type_name=type_name, mode=mode, binding=binding)
            for part in split_arguments(inner):
                pattern.items.extend(self._constraint(part, definition, type_name, scope))
            if binding is not None:
                if binding in variables:
                    raise SourceSyntaxError(f"Duplicate variable '{binding}'")
                variables[binding] = type_name if definition is not None else None
            patterns.append(pattern)
        return patterns

    def _resolve_type(self, type_name: str) -> Optional[TypeDefinition]:
        definition = self.lookup_type(type_name)
        if definition is None and not is_builtin_type(type_name):
            raise SourceSyntaxError(f"Unable to resolve ObjectType '{type_name}'")
        return definition

    def _constraint(
        self,
        tokens: list[Token],
        definition: Optional[TypeDefinition],
        type_name: str,
        variables: dict[str, Optional[str]],
    ) -> list[ConstraintItem]:
        binding: Optional[str] = None
        path: list[Token] = []
        if tokens[0].kind == VAR and len(tokens) > 2 and tokens[1].is_punct(":"):
            binding = tokens[0].text
            tokens = tokens[2:]
            path_end = 1
            while (
                path_end + 1 < len(tokens)
                and tokens[path_end].is_punct(".")
                and tokens[path_end + 1].is_ident()
            ):
                path_end += 2
            path = tokens[:path_end]
            if path_end == len(tokens):
                tokens = []
        items: list[ConstraintItem] = []
        if binding is not None:
            value = self._checked(path, definition, type_name, variables)
            items.append(ConstraintItem(value, binding))
        if tokens:
            items.append(ConstraintItem(self._checked(tokens, definition, type_name, variables)))
        if binding is not None:
            if binding in variables:
                raise SourceSyntaxError(f"Duplicate variable '{binding}'")
            variables[binding] = None
        return items

    def _checked(
        self,
        tokens: list[Token],
        definition: Optional[TypeDefinition],
        type_name: str,
        variables: dict[str, Optional[str]],
    ) -> CompiledExpression:
        expression = self._expression(tokens, variables)
        if definition is not None:
            for name in sorted(expression.field_refs):
                if not definition.has_field(name):
                    raise SourceSyntaxError(
                        f"Unable to find field '{name}' on type '{type_name}'"
                    )
        return expression

    def _expression(
        self, tokens: list[Token], variables: dict[str, Optional[str]]
    ) -> CompiledExpression:
        if not tokens:
            raise SourceSyntaxError("Empty constraint")
        text = self.source[tokens[0].start : tokens[-1].end]
        try:
            expression = compile_expression(tokens, text)
        except ExpressionError as exc:
            raise SourceSyntaxError(str(exc)) from exc
        for variable in sorted(expression.variables):
            if variable not in variables:
                raise SourceSyntaxError(f"Variable '{variable}' is not bound")
        return expression


def _optional_flag(tokens: list[Token], index: int) -> tuple[bool, int]:
    if index < len(tokens) and tokens[index].is_ident("true", "false"):
        return tokens[index].text == "true", index + 1
    return True, index
