"""Compiled fact classes synthesised from type definitions with pydantic."""

from __future__ import annotations

import hashlib
import json
import logging
import threading
from typing import Any, Callable, ClassVar, Optional
import warnings
import weakref

from pydantic import BaseModel, ConfigDict, Field, ValidationError, create_model

from rulebridge.errors import MaterializationError
from rulebridge.facts.base import MaterializedFact
from rulebridge.schema.definitions import FieldKind, TypeDefinition

logger = logging.getLogger(__name__)


class FactPopulationWarning(UserWarning):
    """Emitted when a single field cannot be set on a compiled fact."""


_ANNOTATIONS: dict[FieldKind, Any] = {
    FieldKind.STRING: Optional[str],
    FieldKind.INT: Optional[int],
    FieldKind.LONG: Optional[int],
    FieldKind.DOUBLE: Optional[float],
    FieldKind.BOOLEAN: Optional[bool],
    FieldKind.LIST: Optional[list],
    FieldKind.MAP: Optional[dict],
    FieldKind.OBJECT: Any,
}


class CompiledFact(BaseModel, MaterializedFact):
    """Base class of every generated fact class.

    Generated classes expose each declared field as a validated attribute.
    Field names that would clash with model internals are stored under a
    ``field_`` prefixed attribute and stay reachable through ``get``/``set``.
    """

    model_config = ConfigDict(
        validate_assignment=True,
        extra="forbid",
        arbitrary_types_allowed=True,
        protected_namespaces=(),
    )

    __type_name__: ClassVar[str] = ""
    __fingerprint__: ClassVar[str] = ""
    __field_attrs__: ClassVar[dict[str, str]] = {}

    __hash__ = None  # type: ignore[assignment]
    __eq__ = MaterializedFact.__eq__

    @property
    def type_name(self) -> str:
        return type(self).__type_name__

    def get(self, field: str) -> Any:
        attr = self.__field_attrs__.get(field)
        if attr is None:
            return None
        return getattr(self, attr)

    def set(self, field: str, value: Any) -> None:
        attr = self.__field_attrs__.get(field)
        if attr is None:
            raise MaterializationError(
                f"Type '{self.type_name}' has no field '{field}'", phase="materialize"
            )
        try:
            setattr(self, attr, value)
        except ValidationError as exc:
            raise MaterializationError(
                f"Invalid value {value!r} for field '{field}' of type '{self.type_name}'",
                phase="materialize",
            ) from exc

    def snapshot(self) -> dict[str, Any]:
        return {field: getattr(self, attr) for field, attr in self.__field_attrs__.items()}

    def field_names(self) -> list[str]:
        return list(self.__field_attrs__)

    @classmethod
    def populate(cls, values: dict[str, Any]) -> "CompiledFact":
        """Create an instance setting each field separately.

        A value that fails validation is skipped with a FactPopulationWarning
        and the field keeps None.
        """
        instance = cls.model_construct()
        for field, value in values.items():
            try:
                instance.set(field, value)
            except MaterializationError as exc:
                warnings.warn(
                    f"Skipping field '{field}' on {cls.__type_name__}: {exc.message}",
                    FactPopulationWarning,
                    stacklevel=2,
                )
        return instance

    def __str__(self) -> str:
        return self.describe()


_RESERVED = set(dir(CompiledFact))


def definition_fingerprint(definition: TypeDefinition) -> str:
    payload = [
        [item.name, item.kind.value, item.ref_type] for item in definition.fields
    ]
    text = json.dumps([definition.name, payload], separators=(",", ":"))
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def compile_fact_class(definition: TypeDefinition) -> type[CompiledFact]:
    """Build the pydantic class for ``definition``."""
    field_attrs: dict[str, str] = {}
    field_defs: dict[str, Any] = {}
    for item in definition.fields:
        attr = item.name
        if attr.startswith("_") or attr.startswith("model_") or attr in _RESERVED:
            attr = f"field_{item.name.lstrip('_')}"
        while attr in field_defs or attr in _RESERVED:
            attr = f"{attr}_"
        field_attrs[item.name] = attr
        field_defs[attr] = (_ANNOTATIONS[item.kind], Field(default=None))
    model = create_model(
        definition.name,
        __base__=CompiledFact,
        __module__=__name__,
        **field_defs,
    )
    model.__type_name__ = definition.name
    model.__fingerprint__ = definition_fingerprint(definition)
    model.__field_attrs__ = field_attrs
    logger.debug("Compiled fact class %s (%d fields)", definition.name, len(field_attrs))
    return model


class _InFlight:
    def __init__(self) -> None:
        self.done = threading.Event()
        self.result: Optional[type[CompiledFact]] = None
        self.error: Optional[BaseException] = None


class CompiledTypeCache:
    """Thread-safe, single-flight cache of compiled fact classes by type name.

    A cached class is only served while its fingerprint matches the requested
    definition. ``invalidate`` evicts a name; a compilation that was already
    running for an invalidated name finishes for its own callers but is not
    stored.
    """

    def __init__(
        self,
        compiler: Callable[[TypeDefinition], type[CompiledFact]] = compile_fact_class,
    ) -> None:
        self._compiler = compiler
        self._lock = threading.Lock()
        self._classes: dict[str, type[CompiledFact]] = {}
        self._in_flight: dict[tuple[str, str], _InFlight] = {}
        self._generations: dict[str, int] = {}
        self._bound: weakref.WeakSet[Any] = weakref.WeakSet()
        self.compilations = 0

    def bind(self, registry: Any) -> None:
        """Invalidate entries whenever ``registry`` changes a type."""
        with self._lock:
            if registry in self._bound:
                return
            self._bound.add(registry)
        registry.add_listener(self.invalidate)

    def get(self, definition: TypeDefinition) -> type[CompiledFact]:
        name = definition.name
        fingerprint = definition_fingerprint(definition)
        key = (name, fingerprint)
        with self._lock:
            cached = self._classes.get(name)
            if cached is not None and cached.__fingerprint__ == fingerprint:
                return cached
            flight = self._in_flight.get(key)
            owner = flight is None
            if owner:
                flight = _InFlight()
                self._in_flight[key] = flight
                generation = self._generations.get(name, 0)
        assert flight is not None
        if not owner:
            flight.done.wait()
            if flight.error is not None:
                raise flight.error
            assert flight.result is not None
            return flight.result
        try:
            compiled = self._compiler(definition)
        except BaseException as exc:
            flight.error = exc
            with self._lock:
                self._in_flight.pop(key, None)
            flight.done.set()
            raise
        flight.result = compiled
        with self._lock:
            self.compilations += 1
            self._in_flight.pop(key, None)
            if self._generations.get(name, 0) == generation:
                self._classes[name] = compiled
            else:
                logger.debug("Discarding stale compilation of %s", name)
        flight.done.set()
        return compiled

    def invalidate(self, name: str) -> None:
        with self._lock:
            self._generations[name] = self._generations.get(name, 0) + 1
            if self._classes.pop(name, None) is not None:
                logger.debug("Invalidated compiled class %s", name)

    def clear(self) -> None:
        with self._lock:
            for name in self._classes:
                self._generations[name] = self._generations.get(name, 0) + 1
            self._classes.clear()

    def cached(self, name: str) -> Optional[type[CompiledFact]]:
        with self._lock:
            return self._classes.get(name)

    def __len__(self) -> int:
        with self._lock:
            return len(self._classes)


_DEFAULT_CACHE = CompiledTypeCache()


def default_compiled_cache() -> CompiledTypeCache:
    return _DEFAULT_CACHE
