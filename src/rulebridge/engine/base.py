"""Protocol of the rule evaluation engine consumed by the executor."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional, Protocol, runtime_checkable

from rulebridge.diagnostics import Diagnostic, has_errors


@runtime_checkable
class Session(Protocol):
    id: int

    def insert(self, fact: Any) -> Any: ...

    def fire_all_rules(self, max_firings: Optional[int] = None) -> int: ...

    def get_objects(self) -> list[Any]: ...

    def get_fact_handles(self) -> list[Any]: ...

    def delete(self, handle: Any) -> None: ...

    def fact_count(self) -> int: ...

    def dispose(self) -> None: ...


@runtime_checkable
class Container(Protocol):
    release_id: str

    def new_session(self) -> Session: ...


@runtime_checkable
class RuleEngine(Protocol):
    def compile(self, source: str) -> "CompileOutcome": ...


@dataclass
class CompileOutcome:
    container: Optional[Container]
    diagnostics: list[Diagnostic] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.container is not None and not has_errors(self.diagnostics)

    def errors(self) -> list[Diagnostic]:
        return [item for item in self.diagnostics if item.is_error]
