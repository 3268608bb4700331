"""Reference rule engine: a naive forward-chaining interpreter for a DRL subset."""

from __future__ import annotations

import hashlib
import logging
from typing import Optional

from rulebridge.diagnostics import Diagnostic, error, has_errors
from rulebridge.engine.base import CompileOutcome
from rulebridge.engine.parser import Rule, RuleCompiler
from rulebridge.engine.session import ReferenceSession
from rulebridge.errors import SourceSyntaxError
from rulebridge.lang.blocks import SourceLayout, scan_source
from rulebridge.lang.source import is_blank, simple_name
from rulebridge.schema.definitions import TypeDefinition
from rulebridge.schema.registry import TypeRegistry

logger = logging.getLogger(__name__)


class ReferenceContainer:
    """Compiled rules plus the types they were compiled against."""

    def __init__(
        self,
        *,
        release_id: str,
        layout: SourceLayout,
        rules: list[Rule],
        registry: Optional[TypeRegistry],
    ) -> None:
        self.release_id = release_id
        self.package = layout.package
        self.imports = list(layout.imports)
        self.globals = dict(layout.globals)
        self.rules = rules
        self._declared = {item.name: item for item in layout.declarations}
        self._registry = registry

    @property
    def rule_names(self) -> list[str]:
        return [rule.name for rule in self.rules]

    @property
    def declared_types(self) -> list[TypeDefinition]:
        return list(self._declared.values())

    def lookup_type(self, name: str) -> Optional[TypeDefinition]:
        declared = self._declared.get(simple_name(name))
        if declared is not None:
            return declared
        if self._registry is not None:
            return self._registry.get(name)
        return None

    def new_session(self) -> ReferenceSession:
        return ReferenceSession(self)


class ReferenceEngine:
    """Compile rule source into ReferenceContainers.

    Types are resolved against the source's own declare blocks first, then
    the optional registry. Errors inside a rule body are reported without a
    line number; header, declare and lexical errors carry one.
    """

    def __init__(self, registry: Optional[TypeRegistry] = None) -> None:
        self.registry = registry

    def compile(self, source: str) -> CompileOutcome:
        if is_blank(source):
            empty = error("Rule source is empty", code="empty_source", phase="compile")
            return CompileOutcome(None, [empty])
        lines = source.splitlines()
        layout = scan_source(source)
        diagnostics: list[Diagnostic] = []
        for problem in layout.problems:
            excerpt = None
            if problem.line is not None and problem.line <= len(lines):
                excerpt = lines[problem.line - 1]
            diagnostics.append(
                error(
                    problem.message,
                    line=problem.line,
                    excerpt=excerpt,
                    code="syntax",
                    phase="compile",
                )
            )

        container = ReferenceContainer(
            release_id=_release_id(layout.package, source),
            layout=layout,
            rules=[],
            registry=self.registry,
        )
        compiler = RuleCompiler(source, container.lookup_type)
        seen: set[str] = set()
        for block in layout.rules:
            label = block.name or "<unnamed>"
            if block.name is not None and block.name in seen:
                diagnostics.append(
                    error(
                        f"Duplicate rule name '{label}'",
                        line=block.line,
                        excerpt=lines[block.line - 1],
                        code="duplicate_rule",
                        phase="compile",
                    )
                )
                continue
            seen.add(label)
            try:
                container.rules.append(compiler.compile(block, len(container.rules)))
            except SourceSyntaxError as exc:
                diagnostics.append(
                    error(f"Rule '{label}': {exc.message}", code="rule", phase="compile")
                )

        if has_errors(diagnostics):
            logger.debug("Compilation failed with %d diagnostics", len(diagnostics))
            return CompileOutcome(None, diagnostics)
        logger.debug(
            "Compiled %s with %d rules and %d declared types",
            container.release_id,
            len(container.rules),
            len(layout.declarations),
        )
        return CompileOutcome(container, diagnostics)


def _release_id(package: Optional[str], source: str) -> str:
    digest = hashlib.sha256(source.encode("utf-8")).hexdigest()[:12]
    return f"rulebridge:{package or 'defaultpkg'}:{digest}"
