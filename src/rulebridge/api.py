"""Unified entrypoint for type schemas, facts, validation and execution."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Iterable, Optional

from rulebridge.config import RuntimeConfig, load_config
from rulebridge.diagnostics import Diagnostic, FaultLocation, Severity
from rulebridge.engine.base import CompileOutcome, Container, RuleEngine, Session
from rulebridge.engine.reference import ReferenceContainer, ReferenceEngine
from rulebridge.errors import (
    CompilationError,
    EngineError,
    ExecutionError,
    FaultIsolationError,
    InputError,
    MaterializationError,
    MissingRequiredFields,
    RuleBridgeError,
    SchemaConflict,
    SchemaError,
)
from rulebridge.execution.executor import ExecutionResult, RuleSessionExecutor
from rulebridge.execution.store import KnowledgeBaseInfo, KnowledgeBaseStore
from rulebridge.facts.base import MaterializedFact, PropertyBagFact
from rulebridge.facts.compiled import CompiledFact, CompiledTypeCache
from rulebridge.facts.materializer import AutoDetectResult, FactMaterializer
from rulebridge.schema.definitions import FieldDefinition, FieldKind, TypeDefinition
from rulebridge.schema.registry import TypeRegistry
from rulebridge.validation.fault_isolator import FaultIsolator
from rulebridge.validation.structural import StructuralValidator


class RuleBridge:
    """All collaborators wired around one TypeRegistry.

    Nothing here is global: two RuleBridge objects share no state unless
    they are handed the same registry, engine or store.
    """

    def __init__(
        self,
        config: Optional[RuntimeConfig] = None,
        *,
        registry: Optional[TypeRegistry] = None,
        engine: Optional[RuleEngine] = None,
        store: Optional[KnowledgeBaseStore] = None,
        compiled_cache: Optional[CompiledTypeCache] = None,
    ) -> None:
        self.config = config or RuntimeConfig()
        self.registry = registry if registry is not None else TypeRegistry()
        self.engine = engine if engine is not None else ReferenceEngine(self.registry)
        self.materializer = FactMaterializer.from_config(
            self.registry, self.config, compiled_cache=compiled_cache
        )
        self.validator = StructuralValidator(self.registry)
        self.isolator = FaultIsolator(self.engine) if self.config.isolate_faults else None
        self.executor = RuleSessionExecutor(
            self.engine,
            registry=self.registry,
            isolator=self.isolator,
            config=self.config,
            materializer=self.materializer,
        )
        self.store = store if store is not None else KnowledgeBaseStore()

    @classmethod
    def from_config_file(cls, path: Optional[Path] = None, **kwargs: Any) -> "RuleBridge":
        return cls(load_config(path), **kwargs)

    def load_types(self, source: str, package: Optional[str] = None) -> int:
        return self.registry.load_from_source(source, package)

    def render_types(self, names: Optional[Iterable[str]] = None) -> str:
        return self.registry.render(names)

    def validate(self, source: str) -> list[Diagnostic]:
        return self.validator.validate(source)

    def find_faulty_line(self, source: str) -> Optional[FaultLocation]:
        isolator = self.isolator or FaultIsolator(self.engine)
        return isolator.find_faulty_line(source)

    def execute(self, source: str, facts: Iterable[Any], max_firings: int = 0) -> ExecutionResult:
        return self.executor.execute(source, facts, max_firings)

    def execute_json(self, source: str, facts_json: Any, max_firings: int = 0) -> ExecutionResult:
        return self.executor.execute_json(source, facts_json, max_firings)

    def build_knowledge_base(
        self, name: str, source: str, source_description: Optional[str] = None
    ) -> Optional[KnowledgeBaseInfo]:
        return self.store.build(self.executor, name, source, source_description)

    def persist_types(self) -> int:
        return self.registry.persist(self.config.cache_dir)

    def restore_types(self) -> int:
        return self.registry.restore(self.config.cache_dir)


__all__ = [
    "RuleBridge",
    "RuntimeConfig",
    "load_config",
    "Diagnostic",
    "FaultLocation",
    "Severity",
    "CompileOutcome",
    "Container",
    "RuleEngine",
    "Session",
    "ReferenceContainer",
    "ReferenceEngine",
    "RuleBridgeError",
    "InputError",
    "SchemaError",
    "SchemaConflict",
    "MaterializationError",
    "MissingRequiredFields",
    "CompilationError",
    "FaultIsolationError",
    "ExecutionError",
    "EngineError",
    "ExecutionResult",
    "RuleSessionExecutor",
    "KnowledgeBaseInfo",
    "KnowledgeBaseStore",
    "MaterializedFact",
    "PropertyBagFact",
    "CompiledFact",
    "CompiledTypeCache",
    "AutoDetectResult",
    "FactMaterializer",
    "FieldDefinition",
    "FieldKind",
    "TypeDefinition",
    "TypeRegistry",
    "FaultIsolator",
    "StructuralValidator",
]
