"""JSON to fact materialisation against a TypeRegistry."""

from __future__ import annotations

from dataclasses import dataclass, field
import json
import logging
from typing import Any, Iterable, Literal, Mapping, Optional

from rulebridge.config import RuntimeConfig
from rulebridge.diagnostics import Diagnostic, warning
from rulebridge.errors import (
    InputError,
    MaterializationError,
    MissingRequiredFields,
    SchemaError,
)
from rulebridge.facts.base import MaterializedFact, PropertyBagFact
from rulebridge.facts.coercion import coerce_value
from rulebridge.facts.compiled import CompiledTypeCache, default_compiled_cache
from rulebridge.facts.detect import FieldNameDetector, TypeDetector
from rulebridge.schema.definitions import TypeDefinition
from rulebridge.schema.registry import TypeRegistry

logger = logging.getLogger(__name__)

_STRATEGIES = ("bag", "compiled")
_UNRESOLVED = ("raw", "skip")


@dataclass
class AutoDetectResult:
    facts: list[Any] = field(default_factory=list)
    diagnostics: list[Diagnostic] = field(default_factory=list)


def parse_json_array(payload: str | Iterable[Any]) -> list[Any]:
    """Parse JSON text (or accept a ready list) holding an array."""
    if isinstance(payload, (str, bytes)):
        try:
            data = json.loads(payload)
        except json.JSONDecodeError as exc:
            raise InputError(
                f"Malformed JSON: {exc.msg} (line {exc.lineno})", phase="parse"
            ) from exc
    elif isinstance(payload, Mapping):
        data = payload
    else:
        data = list(payload)
    if not isinstance(data, list):
        raise InputError("Expected a JSON array of objects", phase="parse")
    return data


class FactMaterializer:
    """Turn JSON objects into MaterializedFacts.

    ``strategy="bag"`` produces PropertyBagFacts; ``strategy="compiled"``
    produces instances of pydantic classes generated per type and cached in
    a CompiledTypeCache bound to the registry.
    """

    def __init__(
        self,
        registry: TypeRegistry,
        *,
        strategy: Literal["bag", "compiled"] = "bag",
        type_key: str = "_type",
        detector: Optional[TypeDetector] = None,
        unresolved: Literal["raw", "skip"] = "raw",
        compiled_cache: Optional[CompiledTypeCache] = None,
    ) -> None:
        if strategy not in _STRATEGIES:
            raise ValueError(f"Unknown materialization strategy: {strategy!r}")
        if unresolved not in _UNRESOLVED:
            raise ValueError(f"Unknown unresolved policy: {unresolved!r}")
        self._registry = registry
        self.strategy = strategy
        self.type_key = type_key
        self._detector = detector or FieldNameDetector(ignore_keys=(type_key,))
        self.unresolved = unresolved
        self._cache = compiled_cache if compiled_cache is not None else default_compiled_cache()
        if strategy == "compiled":
            self._cache.bind(registry)

    @classmethod
    def from_config(
        cls,
        registry: TypeRegistry,
        config: RuntimeConfig,
        **kwargs: Any,
    ) -> "FactMaterializer":
        return cls(
            registry,
            strategy=config.strategy,
            type_key=config.type_key,
            unresolved=config.unresolved,
            **kwargs,
        )

    @property
    def registry(self) -> TypeRegistry:
        return self._registry

    def materialize(self, type_name: str, field_map: Mapping[str, Any]) -> MaterializedFact:
        if not isinstance(field_map, Mapping):
            raise MaterializationError(
                f"Expected a JSON object for '{type_name}', got {type(field_map).__name__}",
                phase="materialize",
            )
        definition = self._registry.require(type_name)
        values = self._resolve_values(definition, field_map)
        if self.strategy == "compiled":
            compiled = self._cache.get(definition)
            return compiled.populate(values)
        return PropertyBagFact(definition.name, values)

    def materialize_array(
        self, type_name: str, json_array: str | Iterable[Any]
    ) -> list[MaterializedFact]:
        """Materialise every element as ``type_name``; the first failure aborts."""
        items = parse_json_array(json_array)
        facts: list[MaterializedFact] = []
        for index, element in enumerate(items):
            try:
                facts.append(self.materialize(type_name, element))
            except MissingRequiredFields as exc:
                raise MissingRequiredFields(exc.type_name, exc.fields, index=index) from exc
            except (MaterializationError, SchemaError) as exc:
                raise MaterializationError(
                    f"Element {index}: {exc.message}", phase="materialize"
                ) from exc
        return facts

    def materialize_auto_detect(self, json_array: str | Iterable[Any]) -> AutoDetectResult:
        """Best-effort materialisation; problems become warnings, not errors."""
        items = parse_json_array(json_array)
        result = AutoDetectResult()
        for index, element in enumerate(items):
            if not isinstance(element, Mapping):
                result.diagnostics.append(
                    warning(
                        f"Element {index} is not a JSON object; skipped",
                        code="not_an_object",
                        phase="materialize",
                    )
                )
                continue
            type_name = self._resolve_type(index, element, result.diagnostics)
            if type_name is None:
                if self.unresolved == "raw":
                    result.facts.append(dict(element))
                continue
            try:
                result.facts.append(self.materialize(type_name, element))
            except (MaterializationError, SchemaError) as exc:
                result.diagnostics.append(
                    warning(
                        f"Element {index} skipped: {exc.message}",
                        code="materialization_failed",
                        phase="materialize",
                    )
                )
        for diagnostic in result.diagnostics:
            logger.warning("%s", diagnostic.message)
        return result

    def _resolve_type(
        self,
        index: int,
        element: Mapping[str, Any],
        diagnostics: list[Diagnostic],
    ) -> Optional[str]:
        action = "inserted as a raw map" if self.unresolved == "raw" else "skipped"
        hint = element.get(self.type_key)
        if hint is not None:
            if isinstance(hint, str) and self._registry.has(hint):
                return hint
            diagnostics.append(
                warning(
                    f"Element {index} names unknown type {hint!r}; {action}",
                    code="unknown_type",
                    phase="materialize",
                )
            )
            return None
        detected = self._detector.detect(element, self._registry)
        if detected is None:
            diagnostics.append(
                warning(
                    f"Element {index} has no '{self.type_key}' and no type could be "
                    f"detected; {action}",
                    code="unresolved_type",
                    phase="materialize",
                )
            )
        return detected

    def _resolve_values(
        self, definition: TypeDefinition, field_map: Mapping[str, Any]
    ) -> dict[str, Any]:
        missing = [
            item.name
            for item in definition.fields
            if item.required and item.name not in field_map and not item.has_default
        ]
        if missing:
            raise MissingRequiredFields(definition.name, missing)
        values: dict[str, Any] = {}
        for item in definition.fields:
            if item.name in field_map:
                raw = field_map[item.name]
            elif item.has_default:
                raw = item.default_value()
            else:
                raw = None
            values[item.name] = coerce_value(
                item,
                raw,
                type_name=definition.name,
                resolve_nested=self._nested,
            )
        return values

    def _nested(self, type_name: str, value: Mapping[str, Any]) -> Optional[MaterializedFact]:
        if not self._registry.has(type_name):
            return None
        return self.materialize(type_name, value)
