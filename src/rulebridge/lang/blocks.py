"""Top-level block layout of rule source.

The scanner only recognises block boundaries (``package``, ``import``,
``global``, ``declare ... end`` and ``rule ... when ... then ... end``). What
goes inside a block is left to the caller.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from rulebridge.errors import SourceSyntaxError
from rulebridge.lang.lexer import STRING, Token, tokenize
from rulebridge.lang.source import read_qualified_name
from rulebridge.schema.declare import is_declare_start, parse_declare_block
from rulebridge.schema.definitions import TypeDefinition


_TOP_LEVEL = {"package", "import", "global", "declare", "rule", "query", "function"}
_OPENERS = {"(": ")", "{": "}", "[": "]"}
_CLOSERS = {")", "}", "]"}


@dataclass
class Problem:
    message: str
    line: Optional[int]
    rule: Optional[str] = None


@dataclass
class RuleBlock:
    keyword: Token
    name: Optional[str]
    name_token: Optional[Token]
    attributes: list[Token] = field(default_factory=list)
    lhs: list[Token] = field(default_factory=list)
    rhs: list[Token] = field(default_factory=list)
    has_when: bool = False
    has_then: bool = False
    terminated: bool = False
    balanced: bool = True

    @property
    def line(self) -> int:
        return self.keyword.line


@dataclass
class SourceLayout:
    package: Optional[str] = None
    imports: list[str] = field(default_factory=list)
    globals: dict[str, str] = field(default_factory=dict)
    declarations: list[TypeDefinition] = field(default_factory=list)
    declaration_lines: dict[str, int] = field(default_factory=dict)
    rules: list[RuleBlock] = field(default_factory=list)
    problems: list[Problem] = field(default_factory=list)


def scan_source(source: str, *, package: Optional[str] = None) -> SourceLayout:
    """Split ``source`` into blocks; lexical errors become a single problem."""
    layout = SourceLayout()
    try:
        tokens = tokenize(source)
    except SourceSyntaxError as exc:
        layout.problems.append(Problem(exc.message, exc.line))
        return layout
    _Scanner(source, tokens, layout, package).run()
    return layout


class _Scanner:
    def __init__(
        self,
        source: str,
        tokens: list[Token],
        layout: SourceLayout,
        package: Optional[str],
    ) -> None:
        self.source = source
        self.tokens = tokens
        self.layout = layout
        self.package = package
        self.index = 0

    def run(self) -> None:
        while self.index < len(self.tokens):
            token = self.tokens[self.index]
            if token.is_ident("package"):
                self._package()
            elif token.is_ident("import"):
                self._import()
            elif token.is_ident("global"):
                self._global()
            elif is_declare_start(self.tokens, self.index):
                self._declare()
            elif token.is_ident("rule"):
                self._rule()
            elif token.is_ident("query", "function"):
                self._problem(f"Unsupported top-level construct '{token.text}'", token.line)
                self.index += 1
                self._skip_to_top_level()
            else:
                self._problem(f"Unexpected '{token.text}' outside of a rule", token.line)
                self.index += 1
                self._skip_to_top_level()

    def _package(self) -> None:
        keyword = self._advance()
        if not self._peek_ident():
            self._problem("Expected a package name", keyword.line)
            self._skip_to_top_level()
            return
        name, self.index = read_qualified_name(self.tokens, self.index)
        self.layout.package = name
        if self.package is None:
            self.package = name
        self._skip_semicolon()

    def _import(self) -> None:
        keyword = self._advance()
        if self._peek_ident("function", "static"):
            self.index += 1
        if not self._peek_ident():
            self._problem("Expected a class name after 'import'", keyword.line)
            self._skip_to_top_level()
            return
        name, self.index = read_qualified_name(self.tokens, self.index)
        if (
            self.index + 1 < len(self.tokens)
            and self.tokens[self.index].is_punct(".")
            and self.tokens[self.index + 1].is_op("*")
        ):
            name += ".*"
            self.index += 2
        self.layout.imports.append(name)
        self._skip_semicolon()

    def _global(self) -> None:
        keyword = self._advance()
        if not self._peek_ident():
            self._problem("Expected a type after 'global'", keyword.line)
            self._skip_to_top_level()
            return
        type_name, self.index = read_qualified_name(self.tokens, self.index)
        if not self._peek_ident():
            self._problem("Expected a name for the global", keyword.line)
            self._skip_to_top_level()
            return
        self.layout.globals[self._advance().text] = type_name
        self._skip_semicolon()

    def _declare(self) -> None:
        keyword = self.tokens[self.index]
        try:
            definition, self.index = parse_declare_block(
                self.source, self.tokens, self.index, package=self.package
            )
        except SourceSyntaxError as exc:
            self._problem(exc.message, exc.line or keyword.line)
            self.index += 1
            while self.index < len(self.tokens) and not self.tokens[self.index].is_ident("end"):
                self.index += 1
            self.index += 1
            return
        if definition.name in self.layout.declaration_lines:
            self._problem(f"Duplicate declaration of type '{definition.name}'", keyword.line)
            return
        self.layout.declarations.append(definition)
        self.layout.declaration_lines[definition.name] = keyword.line

    def _rule(self) -> None:
        keyword = self._advance()
        block = RuleBlock(keyword=keyword, name=None, name_token=None)
        if self.index < len(self.tokens) and self.tokens[self.index].kind == STRING:
            block.name_token = self._advance()
            block.name = str(block.name_token.value)
        elif self._peek_ident() and not self._peek_ident("when", "then", "end"):
            block.name_token = self._advance()
            block.name = block.name_token.text
        self.layout.rules.append(block)

        while self.index < len(self.tokens):
            token = self.tokens[self.index]
            if token.is_ident("when", "then", "end") or self._at_top_level(token):
                break
            block.attributes.append(token)
            self.index += 1

        if self._peek_ident("when"):
            block.has_when = True
            self.index += 1
            while self.index < len(self.tokens):
                token = self.tokens[self.index]
                if token.is_ident("then", "end") or self._at_top_level(token):
                    break
                block.lhs.append(token)
                self.index += 1

        if self._peek_ident("then"):
            block.has_then = True
            self.index += 1
            stack: list[str] = []
            while self.index < len(self.tokens):
                token = self.tokens[self.index]
                if (not stack and token.is_ident("end")) or self._at_top_level(token):
                    break
                if token.kind == "punct" and token.text in _OPENERS:
                    stack.append(_OPENERS[token.text])
                elif token.kind == "punct" and token.text in _CLOSERS:
                    if not stack or stack[-1] != token.text:
                        block.balanced = False
                    else:
                        stack.pop()
                block.rhs.append(token)
                self.index += 1
            if stack:
                block.balanced = False

        if self._peek_ident("end"):
            block.terminated = True
            self.index += 1

    def _at_top_level(self, token: Token) -> bool:
        """A top-level keyword that starts its own line ends an unterminated rule."""
        if not token.is_ident(*_TOP_LEVEL):
            return False
        if token.is_ident("declare") and not is_declare_start(self.tokens, self.index):
            return False
        previous = self.tokens[self.index - 1] if self.index > 0 else None
        return previous is None or previous.line < token.line

    def _skip_to_top_level(self) -> None:
        while self.index < len(self.tokens):
            token = self.tokens[self.index]
            if token.is_ident(*_TOP_LEVEL) and self._at_top_level(token):
                return
            self.index += 1

    def _skip_semicolon(self) -> None:
        if self.index < len(self.tokens) and self.tokens[self.index].is_punct(";"):
            self.index += 1

    def _advance(self) -> Token:
        token = self.tokens[self.index]
        self.index += 1
        return token

    def _peek_ident(self, *names: str) -> bool:
        return self.index < len(self.tokens) and self.tokens[self.index].is_ident(*names)

    def _problem(self, message: str, line: Optional[int]) -> None:
        self.layout.problems.append(Problem(message, line))
