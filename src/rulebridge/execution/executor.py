"""Compile, insert, fire, collect and dispose."""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field
import logging
from typing import Any, Iterable, Iterator, Mapping, Optional

from rulebridge.config import RuntimeConfig
from rulebridge.diagnostics import Diagnostic
from rulebridge.engine.base import Container, RuleEngine, Session
from rulebridge.errors import CompilationError, ExecutionError, InputError, RuleBridgeError
from rulebridge.facts.base import MaterializedFact
from rulebridge.facts.materializer import FactMaterializer
from rulebridge.lang.source import is_blank
from rulebridge.schema.registry import TypeRegistry
from rulebridge.validation.fault_isolator import FaultIsolator

logger = logging.getLogger(__name__)


@dataclass
class ExecutionResult:
    """Working set after firing plus the number of activations fired."""

    facts: list[Any] = field(default_factory=list)
    fired: int = 0
    diagnostics: list[Diagnostic] = field(default_factory=list)

    def facts_of_type(self, type_name: str) -> list[MaterializedFact]:
        return [
            fact
            for fact in self.facts
            if isinstance(fact, MaterializedFact) and fact.type_name == type_name
        ]

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "executionStatus": "success",
            "factsCount": len(self.facts),
            "firedRules": self.fired,
            "facts": [_fact_entry(fact) for fact in self.facts],
        }
        if self.diagnostics:
            payload["diagnostics"] = [item.to_dict() for item in self.diagnostics]
        return payload


def _fact_entry(fact: Any) -> dict[str, Any]:
    if isinstance(fact, MaterializedFact):
        entry = fact.to_dict()
        entry["isDynamicObject"] = True
        return entry
    if isinstance(fact, Mapping):
        return {"type": "Map", "value": dict(fact)}
    if isinstance(fact, bool):
        return {"type": "Boolean", "value": fact}
    if isinstance(fact, int):
        return {"type": "Integer", "value": fact}
    if isinstance(fact, float):
        return {"type": "Double", "value": fact}
    if isinstance(fact, str):
        return {"type": "String", "value": fact}
    return {"type": type(fact).__name__, "value": str(fact)}


@contextmanager
def engine_phase(phase: str) -> Iterator[None]:
    """Report any engine failure inside the block as an ExecutionError."""
    try:
        yield
    except ExecutionError:
        raise
    except Exception as exc:
        detail = exc.message if isinstance(exc, RuleBridgeError) else str(exc)
        raise ExecutionError(f"Engine failure: {detail}", phase=phase) from exc


def fire(session: Session, max_firings: int, watchdog: int = 0) -> int:
    """Fire with ``max_firings <= 0`` meaning unbounded unless a watchdog is set."""
    limit = max_firings if max_firings > 0 else watchdog
    with engine_phase("fire"):
        fired = session.fire_all_rules(limit if limit > 0 else None)
    if max_firings <= 0 < watchdog <= fired:
        logger.warning(
            "Firing watchdog stopped session %s after %d activations", session.id, fired
        )
    return fired


class RuleSessionExecutor:
    """Drive one rule source through the engine lifecycle.

    Every session opened here is disposed before the call returns, whether
    it succeeded or not.
    """

    def __init__(
        self,
        engine: RuleEngine,
        *,
        registry: Optional[TypeRegistry] = None,
        isolator: Optional[FaultIsolator] = None,
        config: Optional[RuntimeConfig] = None,
        materializer: Optional[FactMaterializer] = None,
    ) -> None:
        self.engine = engine
        self.config = config or RuntimeConfig()
        if registry is None:
            registry = materializer.registry if materializer is not None else TypeRegistry()
        self.registry = registry
        self.isolator = isolator
        if self.isolator is None and self.config.isolate_faults:
            self.isolator = FaultIsolator(engine)
        self.materializer = materializer or FactMaterializer.from_config(registry, self.config)

    def build_container(self, source: str) -> Container:
        if is_blank(source):
            raise InputError("Rule source is empty", phase="compile")
        outcome = self.engine.compile(source)
        errors = outcome.errors()
        if outcome.container is not None and not errors:
            for item in outcome.diagnostics:
                logger.debug("Compiler %s: %s", item.severity.value, item.render())
            return outcome.container
        fault = None
        if self.isolator is not None and not any(item.line for item in errors):
            fault = self.isolator.find_faulty_line(source)
            if fault is not None:
                logger.info(
                    "Fault isolated at line %d after %d compilations",
                    fault.line_number,
                    self.isolator.compile_count,
                )
        raise CompilationError(outcome.diagnostics, fault=fault)

    def execute_with_container(
        self,
        container: Container,
        facts: Iterable[Any],
        max_firings: int = 0,
    ) -> ExecutionResult:
        session = container.new_session()
        try:
            with engine_phase("insert"):
                for fact in facts:
                    session.insert(fact)
            fired = fire(session, max_firings, self.config.firing_watchdog)
            with engine_phase("collect"):
                working_set = list(session.get_objects())
        finally:
            session.dispose()
        logger.info("Session %s fired %d rules; %d facts", session.id, fired, len(working_set))
        return ExecutionResult(facts=working_set, fired=fired)

    def execute(self, source: str, facts: Iterable[Any], max_firings: int = 0) -> ExecutionResult:
        container = self.build_container(source)
        return self.execute_with_container(container, facts, max_firings)

    def execute_json(
        self, source: str, facts_json: str | Iterable[Any], max_firings: int = 0
    ) -> ExecutionResult:
        """Register the source's declare blocks, materialise JSON facts and run."""
        container = self.build_container(source)
        self.registry.load_from_source(source)
        detected = self.materializer.materialize_auto_detect(facts_json)
        result = self.execute_with_container(container, detected.facts, max_firings)
        result.diagnostics.extend(detected.diagnostics)
        return result
