"""Consequence statements of the reference engine."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Optional, Sequence

from rulebridge.engine.expr import (
    CompiledExpression,
    ExpressionError,
    accessor_field,
    compile_expression,
    java_str,
)
from rulebridge.errors import EngineError, SourceSyntaxError
from rulebridge.lang.lexer import VAR, Token
from rulebridge.lang.source import enclosed, read_qualified_name, split_arguments, token_text

if TYPE_CHECKING:
    from rulebridge.engine.session import FiringContext

TypeLookup = Callable[[str], Optional[Any]]


class Action:
    def execute(self, context: "FiringContext") -> None:
        raise NotImplementedError


@dataclass
class InsertAction(Action):
    expression: Optional[CompiledExpression] = None
    new_type: Optional[str] = None
    arguments: Sequence[CompiledExpression] = ()

    def execute(self, context: "FiringContext") -> None:
        if self.new_type is not None:
            values = [arg.evaluate(context.scope()) for arg in self.arguments]
            fact = context.new_fact(self.new_type, values)
        else:
            assert self.expression is not None
            fact = self.expression.evaluate(context.scope())
            if fact is None:
                raise EngineError("Cannot insert null", phase="fire")
        context.insert(fact)


@dataclass
class ModifyAction(Action):
    variable: str
    assignments: Sequence[tuple[str, CompiledExpression]]

    def execute(self, context: "FiringContext") -> None:
        fact = context.bound(self.variable)
        values = [(name, expr.evaluate(context.scope())) for name, expr in self.assignments]
        for name, value in values:
            context.assign(fact, name, value)
        context.update(fact)


@dataclass
class SetFieldAction(Action):
    variable: str
    field: str
    expression: CompiledExpression

    def execute(self, context: "FiringContext") -> None:
        fact = context.bound(self.variable)
        context.assign(fact, self.field, self.expression.evaluate(context.scope()))


@dataclass
class UpdateAction(Action):
    variable: str

    def execute(self, context: "FiringContext") -> None:
        context.update(context.bound(self.variable))


@dataclass
class DeleteAction(Action):
    variable: str

    def execute(self, context: "FiringContext") -> None:
        context.delete(context.bound(self.variable))


@dataclass
class PrintAction(Action):
    expression: Optional[CompiledExpression]

    def execute(self, context: "FiringContext") -> None:
        text = "" if self.expression is None else java_str(
            self.expression.evaluate(context.scope())
        )
        context.emit(text)


@dataclass
class ExpressionAction(Action):
    """A bare expression statement such as ``$p.getName()``."""

    expression: CompiledExpression

    def execute(self, context: "FiringContext") -> None:
        self.expression.evaluate(context.scope(allow_set=True))


def parse_consequence(
    source: str,
    tokens: list[Token],
    *,
    variables: dict[str, Optional[str]],
    lookup_type: TypeLookup,
) -> list[Action]:
    """Compile ``then`` block tokens into actions.

    ``variables`` maps bound variables to the type name of their pattern, or
    None for field bindings. ``lookup_type`` returns the TypeDefinition of a
    declared or registered type.
    """
    parser = _ConsequenceParser(source, variables, lookup_type)
    return [parser.statement(statement) for statement in _split_statements(tokens)]


def _split_statements(tokens: list[Token]) -> list[list[Token]]:
    statements: list[list[Token]] = []
    current: list[Token] = []
    depth = 0
    for token in tokens:
        if token.kind == "punct" and token.text in "({[":
            depth += 1
        elif token.kind == "punct" and token.text in ")}]":
            depth -= 1
            if depth < 0:
                raise SourceSyntaxError(f"Unbalanced '{token.text}' in consequence")
        if depth == 0 and token.is_punct(";"):
            if current:
                statements.append(current)
            current = []
            continue
        current.append(token)
        if depth == 0 and token.is_punct("}") and current[0].is_ident("modify"):
            statements.append(current)
            current = []
    if depth != 0:
        raise SourceSyntaxError("Unbalanced parentheses in consequence")
    if current:
        raise SourceSyntaxError(f"Missing ';' after '{token_text(current)}'")
    return statements


class _ConsequenceParser:
    def __init__(
        self,
        source: str,
        variables: dict[str, Optional[str]],
        lookup_type: TypeLookup,
    ) -> None:
        self.source = source
        self.variables = variables
        self.lookup_type = lookup_type

    def statement(self, tokens: list[Token]) -> Action:
        head = tokens[0]
        if head.is_ident("insert", "insertLogical"):
            return self._insert(tokens)
        if head.is_ident("modify"):
            return self._modify(tokens)
        if head.is_ident("update", "delete", "retract"):
            args, end = enclosed(tokens, 1)
            self._expect_end(tokens, end)
            variable = self._variable(args)
            if head.text == "update":
                return UpdateAction(variable)
            return DeleteAction(variable)
        if head.is_ident("System"):
            return self._print(tokens)
        if head.kind == VAR:
            return self._variable_statement(tokens)
        raise SourceSyntaxError(f"Unsupported statement '{token_text(tokens)}'")

    def _insert(self, tokens: list[Token]) -> Action:
        args, end = enclosed(tokens, 1)
        self._expect_end(tokens, end)
        if not args:
            raise SourceSyntaxError("insert requires an argument")
        if args[0].is_ident("new"):
            if len(args) < 2 or not args[1].is_ident():
                raise SourceSyntaxError("Expected a type after 'new'")
            type_name, index = read_qualified_name(args, 1)
            ctor_args, after = enclosed(args, index)
            self._expect_end(args, after)
            definition = self.lookup_type(type_name)
            if definition is None:
                raise SourceSyntaxError(f"Unable to resolve type '{type_name}' in 'new'")
            arguments = [self._expression(part) for part in split_arguments(ctor_args)]
            if arguments and len(arguments) != len(definition.fields):
                raise SourceSyntaxError(
                    f"No constructor of '{type_name}' takes {len(arguments)} arguments"
                )
            return InsertAction(new_type=definition.name, arguments=arguments)
        return InsertAction(expression=self._expression(args))

    def _modify(self, tokens: list[Token]) -> Action:
        args, end = enclosed(tokens, 1)
        variable = self._variable(args)
        if end >= len(tokens) or not tokens[end].is_punct("{") or not tokens[-1].is_punct("}"):
            raise SourceSyntaxError(f"Expected '{{ ... }}' after modify({variable})")
        assignments: list[tuple[str, CompiledExpression]] = []
        for part in split_arguments(tokens[end + 1 : -1]):
            if part[0].is_ident() and len(part) > 1 and part[1].is_punct("("):
                field = accessor_field(part[0].text, "set")
                call_args, after = enclosed(part, 1)
                if field is None or after != len(part):
                    raise SourceSyntaxError(f"Unsupported modification '{token_text(part)}'")
                value = self._expression(call_args)
            elif part[0].is_ident() and len(part) > 2 and part[1].is_op("="):
                field = part[0].text
                value = self._expression(part[2:])
            else:
                raise SourceSyntaxError(f"Unsupported modification '{token_text(part)}'")
            self._check_field(variable, field)
            assignments.append((field, value))
        return ModifyAction(variable, assignments)

    def _print(self, tokens: list[Token]) -> Action:
        name, index = read_qualified_name(tokens, 0)
        if name not in ("System.out.println", "System.out.print", "System.err.println"):
            raise SourceSyntaxError(f"Unsupported call '{name}'")
        args, end = enclosed(tokens, index)
        self._expect_end(tokens, end)
        expression = self._expression(args) if args else None
        return PrintAction(expression)

    def _variable_statement(self, tokens: list[Token]) -> Action:
        variable = tokens[0].text
        self._check_bound(variable)
        if (
            len(tokens) > 3
            and tokens[1].is_punct(".")
            and tokens[2].is_ident()
            and tokens[3].is_punct("(")
        ):
            field = accessor_field(tokens[2].text, "set")
            if field is not None:
                args, end = enclosed(tokens, 3)
                self._expect_end(tokens, end)
                self._check_field(variable, field)
                return SetFieldAction(variable, field, self._expression(args))
        return ExpressionAction(self._expression(tokens))

    def _variable(self, tokens: list[Token]) -> str:
        if len(tokens) != 1 or tokens[0].kind != VAR:
            raise SourceSyntaxError(f"Expected a bound variable, got '{token_text(tokens)}'")
        self._check_bound(tokens[0].text)
        return tokens[0].text

    def _check_bound(self, variable: str) -> None:
        if variable not in self.variables:
            raise SourceSyntaxError(f"Variable '{variable}' is not bound")

    def _check_field(self, variable: str, field: str) -> None:
        type_name = self.variables.get(variable)
        if type_name is None:
            return
        definition = self.lookup_type(type_name)
        if definition is not None and not definition.has_field(field):
            raise SourceSyntaxError(f"Field '{field}' is not declared on type '{type_name}'")

    def _expression(self, tokens: list[Token]) -> CompiledExpression:
        text = self.source[tokens[0].start : tokens[-1].end] if tokens else ""
        try:
            compiled = compile_expression(tokens, text)
        except ExpressionError as exc:
            raise SourceSyntaxError(str(exc)) from exc
        for variable in compiled.variables:
            self._check_bound(variable)
        return compiled

    def _expect_end(self, tokens: list[Token], index: int) -> None:
        if index != len(tokens):
            raise SourceSyntaxError(f"Unexpected '{tokens[index].text}' in '{token_text(tokens)}'")
