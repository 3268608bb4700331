"""Constraint and action expressions.

Rule expressions are translated token by token into Python expression text,
parsed with :mod:`ast` and evaluated by a small whitelisting interpreter.
Operators without a Python counterpart are mapped onto otherwise unused
ones: ``matches`` becomes ``@``, ``contains`` becomes ``<<`` and
``memberOf`` becomes ``>>``.
"""

from __future__ import annotations

import ast
from dataclasses import dataclass, field
import keyword
import operator
import re
from typing import Any, Callable, Mapping, Optional

from rulebridge.errors import EngineError
from rulebridge.facts.base import MaterializedFact
from rulebridge.lang.lexer import IDENT, NUMBER, OP, PUNCT, STRING, VAR, Token

_VAR_PREFIX = "_b_"
_KEYWORD_PREFIX = "_k_"
_THIS = "_this"

_OP_TEXT = {
    "&&": " and ",
    "||": " or ",
    "!": " not ",
    "==": "==",
    "!=": "!=",
    "<": "<",
    ">": ">",
    "<=": "<=",
    ">=": ">=",
    "+": "+",
    "-": "-",
    "*": "*",
    "/": "/",
    "%": "%",
}
_IDENT_TEXT = {
    "null": "None",
    "true": "True",
    "false": "False",
    "this": _THIS,
    "matches": "@",
    "contains": "<<",
    "memberOf": ">>",
    "in": " in ",
}
_PUNCT_TEXT = {"(": "(", ")": ")", ",": ",", ".": ".", "[": "[", "]": "]"}
_CONSTANTS = {
    ("Boolean", "TRUE"): True,
    ("Boolean", "FALSE"): False,
    ("Integer", "MAX_VALUE"): 2**31 - 1,
    ("Integer", "MIN_VALUE"): -(2**31),
    ("Long", "MAX_VALUE"): 2**63 - 1,
    ("Long", "MIN_VALUE"): -(2**63),
    ("Double", "MAX_VALUE"): 1.7976931348623157e308,
}
_ALLOWED_NODES = (
    ast.Expression,
    ast.BoolOp,
    ast.And,
    ast.Or,
    ast.UnaryOp,
    ast.Not,
    ast.USub,
    ast.UAdd,
    ast.BinOp,
    ast.Add,
    ast.Sub,
    ast.Mult,
    ast.Div,
    ast.Mod,
    ast.MatMult,
    ast.LShift,
    ast.RShift,
    ast.Compare,
    ast.Eq,
    ast.NotEq,
    ast.Lt,
    ast.LtE,
    ast.Gt,
    ast.GtE,
    ast.In,
    ast.NotIn,
    ast.Name,
    ast.Load,
    ast.Attribute,
    ast.Call,
    ast.Constant,
    ast.Tuple,
    ast.List,
    ast.Subscript,
)
_COMPARE: dict[type, Callable[[Any, Any], bool]] = {
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
}


class ExpressionError(ValueError):
    """Raised when an expression cannot be compiled."""


@dataclass
class Scope:
    this: Any = None
    bindings: Mapping[str, Any] = field(default_factory=dict)
    on_set: Optional[Callable[[Any, str, Any], None]] = None


@dataclass(frozen=True)
class CompiledExpression:
    text: str
    tree: ast.Expression
    field_refs: frozenset[str]
    variables: frozenset[str]

    def evaluate(self, scope: Scope) -> Any:
        return _Evaluator(scope, self.text).visit(self.tree.body)

    def test(self, scope: Scope) -> bool:
        result = self.evaluate(scope)
        if not isinstance(result, bool):
            raise EngineError(f"Constraint '{self.text}' is not a boolean expression", phase="fire")
        return result


def compile_expression(tokens: list[Token], text: str) -> CompiledExpression:
    """Compile rule-language tokens into an evaluable expression."""
    if not tokens:
        raise ExpressionError("Empty expression")
    parts: list[str] = []
    for index, token in enumerate(tokens):
        parts.append(_translate(token, tokens, index))
    python_text = " ".join(parts)
    try:
        tree = ast.parse(python_text, mode="eval")
    except SyntaxError as exc:
        raise ExpressionError(f"Invalid expression '{text}'") from exc
    for node in ast.walk(tree):
        if not isinstance(node, _ALLOWED_NODES):
            raise ExpressionError(f"Unsupported construct in expression '{text}'")
        if isinstance(node, ast.Call) and (
            node.keywords or not isinstance(node.func, (ast.Name, ast.Attribute))
        ):
            raise ExpressionError(f"Unsupported call in expression '{text}'")
    refs, variables = _references(tree)
    return CompiledExpression(text=text, tree=tree, field_refs=refs, variables=variables)


def _translate(token: Token, tokens: list[Token], index: int) -> str:
    if token.kind == VAR:
        return _VAR_PREFIX + token.text[1:]
    if token.kind in (STRING, NUMBER):
        return repr(token.value)
    if token.kind == OP:
        if token.text == "=":
            raise ExpressionError("Assignment is not allowed in an expression")
        return _OP_TEXT[token.text]
    if token.kind == PUNCT:
        text = _PUNCT_TEXT.get(token.text)
        if text is None:
            raise ExpressionError(f"Unexpected '{token.text}' in expression")
        return text
    if token.kind == IDENT:
        if token.text == "not" and index + 1 < len(tokens) and tokens[index + 1].is_ident("in"):
            return " not"
        if token.text in _IDENT_TEXT:
            return _IDENT_TEXT[token.text]
        if token.text in ("instanceof", "new", "from"):
            raise ExpressionError(f"Unsupported operator '{token.text}'")
        if keyword.iskeyword(token.text) or token.text.startswith(("_b_", "_k_", "_this")):
            return _KEYWORD_PREFIX + token.text
        return token.text
    raise ExpressionError(f"Unexpected token '{token.text}'")


def _references(tree: ast.Expression) -> tuple[frozenset[str], frozenset[str]]:
    """Collect first-segment field names and bound variables."""
    refs: set[str] = set()
    variables: set[str] = set()
    skip: set[int] = set()
    for node in ast.walk(tree):
        if isinstance(node, ast.Call) and isinstance(node.func, ast.Name):
            skip.add(id(node.func))
        if (
            isinstance(node, ast.Attribute)
            and isinstance(node.value, ast.Name)
            and (node.value.id, node.attr) in _CONSTANTS
        ):
            skip.add(id(node.value))
    for node in ast.walk(tree):
        if not isinstance(node, ast.Name) or id(node) in skip:
            continue
        if node.id.startswith(_VAR_PREFIX):
            variables.add("$" + node.id[len(_VAR_PREFIX) :])
        elif node.id == _THIS:
            continue
        elif node.id.startswith(_KEYWORD_PREFIX):
            refs.add(node.id[len(_KEYWORD_PREFIX) :])
        else:
            refs.add(node.id)
    return frozenset(refs), frozenset(variables)


def read_field(obj: Any, name: str) -> Any:
    if obj is None:
        return None
    if isinstance(obj, MaterializedFact):
        return obj.get(name)
    if isinstance(obj, Mapping):
        return obj.get(name)
    return getattr(obj, name, None)


def accessor_field(method: str, prefix: str) -> Optional[str]:
    """``getFirstName`` -> ``firstName``; ``getURL`` keeps ``URL``."""
    if not method.startswith(prefix) or len(method) == len(prefix):
        return None
    rest = method[len(prefix) :]
    if not rest[0].isupper():
        return None
    if len(rest) > 1 and rest[1].isupper():
        return rest
    return rest[0].lower() + rest[1:]


def java_str(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, MaterializedFact):
        return value.describe()
    if isinstance(value, (list, tuple)):
        return "[" + ", ".join(java_str(item) for item in value) + "]"
    if isinstance(value, Mapping):
        return "{" + ", ".join(f"{java_str(k)}={java_str(v)}" for k, v in value.items()) + "}"
    return str(value)


class _Evaluator:
    def __init__(self, scope: Scope, text: str) -> None:
        self.scope = scope
        self.text = text

    def fail(self, message: str) -> EngineError:
        return EngineError(f"{message} in '{self.text}'", phase="fire")

    def visit(self, node: ast.AST) -> Any:
        method = getattr(self, f"visit_{type(node).__name__}", None)
        if method is None:
            raise self.fail(f"Unsupported expression node {type(node).__name__}")
        return method(node)

    def visit_Constant(self, node: ast.Constant) -> Any:
        return node.value

    def visit_Tuple(self, node: ast.Tuple) -> Any:
        return tuple(self.visit(item) for item in node.elts)

    def visit_List(self, node: ast.List) -> Any:
        return [self.visit(item) for item in node.elts]

    def visit_Name(self, node: ast.Name) -> Any:
        name = node.id
        if name == _THIS:
            return self.scope.this
        if name.startswith(_VAR_PREFIX):
            var = "$" + name[len(_VAR_PREFIX) :]
            if var not in self.scope.bindings:
                raise self.fail(f"Unbound variable {var}")
            return self.scope.bindings[var]
        if name.startswith(_KEYWORD_PREFIX):
            name = name[len(_KEYWORD_PREFIX) :]
        return read_field(self.scope.this, name)

    def visit_Attribute(self, node: ast.Attribute) -> Any:
        if isinstance(node.value, ast.Name):
            constant = _CONSTANTS.get((node.value.id, node.attr))
            if constant is not None:
                return constant
        return read_field(self.visit(node.value), node.attr)

    def visit_Subscript(self, node: ast.Subscript) -> Any:
        container = self.visit(node.value)
        key = self.visit(node.slice)
        try:
            return container[key]
        except (KeyError, IndexError):
            return None
        except TypeError as exc:
            raise self.fail(f"Cannot index {java_str(container)}") from exc

    def visit_BoolOp(self, node: ast.BoolOp) -> Any:
        is_and = isinstance(node.op, ast.And)
        for item in node.values:
            value = self._boolean(self.visit(item))
            if is_and and not value:
                return False
            if not is_and and value:
                return True
        return is_and

    def visit_UnaryOp(self, node: ast.UnaryOp) -> Any:
        value = self.visit(node.operand)
        if isinstance(node.op, ast.Not):
            return not self._boolean(value)
        self._number(value)
        return -value if isinstance(node.op, ast.USub) else +value

    def visit_BinOp(self, node: ast.BinOp) -> Any:
        left = self.visit(node.left)
        right = self.visit(node.right)
        op = node.op
        if isinstance(op, ast.MatMult):
            if left is None or right is None:
                return False
            try:
                return re.fullmatch(str(right), java_str(left)) is not None
            except re.error as exc:
                raise self.fail(f"Invalid pattern {right!r}") from exc
        if isinstance(op, ast.LShift):
            return _contains(left, right)
        if isinstance(op, ast.RShift):
            return _contains(right, left)
        if isinstance(op, ast.Add) and (isinstance(left, str) or isinstance(right, str)):
            return java_str(left) + java_str(right)
        self._number(left)
        self._number(right)
        try:
            if isinstance(op, ast.Add):
                return left + right
            if isinstance(op, ast.Sub):
                return left - right
            if isinstance(op, ast.Mult):
                return left * right
            if isinstance(op, ast.Div):
                if isinstance(left, int) and isinstance(right, int):
                    quotient = abs(left) // abs(right)
                    return quotient if (left >= 0) == (right >= 0) else -quotient
                return left / right
            if isinstance(op, ast.Mod):
                if isinstance(left, int) and isinstance(right, int):
                    return left - right * int(left / right)
                return left % right
        except ZeroDivisionError as exc:
            raise self.fail("Division by zero") from exc
        raise self.fail(f"Unsupported operator {type(op).__name__}")

    def visit_Compare(self, node: ast.Compare) -> Any:
        left = self.visit(node.left)
        for op, comparator in zip(node.ops, node.comparators):
            right = self.visit(comparator)
            if not self._compare(op, left, right):
                return False
            left = right
        return True

    def _compare(self, op: ast.cmpop, left: Any, right: Any) -> bool:
        if isinstance(op, ast.Eq):
            return left == right
        if isinstance(op, ast.NotEq):
            return left != right
        if isinstance(op, (ast.In, ast.NotIn)):
            found = _contains(right, left)
            return found if isinstance(op, ast.In) else not found
        if left is None or right is None:
            return False
        compare = _COMPARE[type(op)]
        try:
            return compare(left, right)
        except TypeError as exc:
            raise self.fail(
                f"Cannot compare {java_str(left)} with {java_str(right)}"
            ) from exc

    def visit_Call(self, node: ast.Call) -> Any:
        if isinstance(node.func, ast.Attribute):
            target = self.visit(node.func.value)
            method = node.func.attr
        else:
            target = self.scope.this
            method = node.func.id
            if method.startswith(_KEYWORD_PREFIX):
                method = method[len(_KEYWORD_PREFIX) :]
        args = [self.visit(item) for item in node.args]
        return self._invoke(target, method, args)

    def _invoke(self, target: Any, method: str, args: list[Any]) -> Any:
        setter = accessor_field(method, "set")
        if setter is not None and len(args) == 1:
            if self.scope.on_set is None:
                raise self.fail(f"Setter {method} is not allowed here")
            self.scope.on_set(target, setter, args[0])
            return None
        if not args:
            getter = accessor_field(method, "get") or accessor_field(method, "is")
            if getter is not None:
                return read_field(target, getter)
        if target is None:
            raise self.fail(f"Method {method} called on null")
        if method in ("size", "length") and not args:
            return len(target)
        if method == "isEmpty" and not args:
            return len(target) == 0
        if method == "contains" and len(args) == 1:
            return _contains(target, args[0])
        if method == "containsKey" and len(args) == 1 and isinstance(target, Mapping):
            return args[0] in target
        if method == "equals" and len(args) == 1:
            return target == args[0]
        if method == "toString" and not args:
            return java_str(target)
        if isinstance(target, str):
            if method == "startsWith" and len(args) == 1:
                return target.startswith(str(args[0]))
            if method == "endsWith" and len(args) == 1:
                return target.endswith(str(args[0]))
            if method == "toUpperCase" and not args:
                return target.upper()
            if method == "toLowerCase" and not args:
                return target.lower()
            if method == "trim" and not args:
                return target.strip()
        if method == "get" and len(args) == 1 and isinstance(target, (list, Mapping)):
            try:
                return target[args[0]]
            except (KeyError, IndexError, TypeError):
                return None
        raise self.fail(f"Unsupported method {method}")

    def _boolean(self, value: Any) -> bool:
        if not isinstance(value, bool):
            raise self.fail(f"Expected a boolean, got {java_str(value)}")
        return value

    def _number(self, value: Any) -> None:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise self.fail(f"Expected a number, got {java_str(value)}")


def _contains(container: Any, item: Any) -> bool:
    if container is None:
        return False
    if isinstance(container, str):
        return item is not None and str(item) in container
    try:
        return item in container
    except TypeError:
        return False
