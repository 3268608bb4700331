"""In-memory registry of declarative fact types."""

from __future__ import annotations

import itertools
import json
import logging
from pathlib import Path
import threading
from typing import Any, Callable, Iterable, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from rulebridge.errors import SchemaConflict, SchemaError
from rulebridge.lang.source import extract_package_name, simple_name
from rulebridge.schema.cache import cache_type_definitions, load_type_definitions_from_cache
from rulebridge.schema.declare import parse_declarations, render_types
from rulebridge.schema.definitions import (
    FieldDefinition,
    TypeDefinition,
    encode_literal,
    incompatible_fields,
    kind_for_json_type,
)

logger = logging.getLogger(__name__)

ChangeListener = Callable[[str], None]


class _FieldSpec(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str
    type: str = "string"
    required: bool = False
    default: Any = None
    object_type: Optional[str] = Field(default=None, alias="objectType")


class _TypeSpec(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str
    package: Optional[str] = None
    fields: list[_FieldSpec] = Field(default_factory=list)
    metadata: dict[str, str] = Field(default_factory=dict)


_TYPE_SPECS = TypeAdapter(list[_TypeSpec])


class TypeRegistry:
    """Thread-safe store of TypeDefinitions keyed by simple type name.

    Updates merge into an existing definition when the overlapping fields
    agree on their kinds, and replace it otherwise. Every change gets a new
    revision number and is announced to registered listeners.
    """

    def __init__(self, definitions: Iterable[TypeDefinition] = ()) -> None:
        self._lock = threading.RLock()
        self._types: dict[str, TypeDefinition] = {}
        self._listeners: list[ChangeListener] = []
        self._revisions = itertools.count(1)
        for definition in definitions:
            self.register(definition)

    def add_listener(self, listener: ChangeListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: ChangeListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def upsert(
        self,
        name: str,
        package: Optional[str] = None,
        fields: Iterable[FieldDefinition] = (),
        *,
        metadata: Optional[Mapping[str, str]] = None,
        strict: bool = False,
    ) -> TypeDefinition:
        candidate = TypeDefinition(
            name=name, package=package, fields=tuple(fields), metadata=metadata or {}
        )
        with self._lock:
            existing = self._types.get(name)
            if existing is None:
                stored = candidate.with_revision(next(self._revisions))
                logger.debug("Registered type %s with %d fields", name, len(stored.fields))
            else:
                conflicts = incompatible_fields(existing, candidate.fields)
                if conflicts and strict:
                    raise SchemaConflict(name, conflicts)
                if conflicts:
                    logger.info("Replacing type %s: %s", name, ", ".join(conflicts))
                    stored = candidate.with_revision(next(self._revisions))
                else:
                    merged = _merge(existing, candidate)
                    if merged == existing:
                        return existing
                    stored = merged.with_revision(next(self._revisions))
                    logger.debug("Merged type %s (%d fields)", name, len(stored.fields))
            self._types[name] = stored
            listeners = list(self._listeners)
        self._notify(listeners, name)
        return stored

    def register(self, definition: TypeDefinition, *, strict: bool = False) -> TypeDefinition:
        return self.upsert(
            definition.name,
            definition.package,
            definition.fields,
            metadata=definition.metadata,
            strict=strict,
        )

    def get(self, name: str) -> Optional[TypeDefinition]:
        with self._lock:
            found = self._types.get(name)
            if found is None and "." in name:
                found = self._types.get(simple_name(name))
            return found

    def require(self, name: str) -> TypeDefinition:
        found = self.get(name)
        if found is None:
            raise SchemaError(f"Unknown type: '{name}'", phase="materialize")
        return found

    def has(self, name: str) -> bool:
        return self.get(name) is not None

    def remove(self, name: str) -> bool:
        with self._lock:
            removed = self._types.pop(simple_name(name), None)
            listeners = list(self._listeners)
        if removed is None:
            return False
        self._notify(listeners, removed.name)
        return True

    def clear(self) -> None:
        with self._lock:
            names = list(self._types)
            self._types.clear()
            listeners = list(self._listeners)
        for name in names:
            self._notify(listeners, name)

    def size(self) -> int:
        with self._lock:
            return len(self._types)

    def __len__(self) -> int:
        return self.size()

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self.has(name)

    def names(self) -> list[str]:
        with self._lock:
            return list(self._types)

    def definitions(self) -> list[TypeDefinition]:
        with self._lock:
            return list(self._types.values())

    def render(self, names: Optional[Iterable[str]] = None) -> str:
        """Render declare blocks for all types, or for the known ones among ``names``."""
        with self._lock:
            if names is None:
                selected = list(self._types.values())
            else:
                selected = [self._types[n] for n in names if n in self._types]
        return render_types(selected)

    def load_from_source(self, text: str, package: Optional[str] = None) -> int:
        """Register every declare block found in ``text``; returns how many were parsed."""
        if package is None:
            package = extract_package_name(text)
        definitions = parse_declarations(text, package=package)
        for definition in definitions:
            self.register(definition)
        logger.debug("Loaded %d declared types", len(definitions))
        return len(definitions)

    def load_from_json(self, payload: str | list | dict) -> int:
        """Register types given as ``[{"name", "package", "fields": [...]}]``."""
        if isinstance(payload, str):
            try:
                payload = json.loads(payload)
            except json.JSONDecodeError as exc:
                raise SchemaError(f"Invalid type schema JSON: {exc.msg}") from exc
        if isinstance(payload, dict):
            payload = payload.get("types", [payload])
        try:
            specs = _TYPE_SPECS.validate_python(payload)
        except ValidationError as exc:
            raise SchemaError(f"Invalid type schema: {exc}") from exc
        for spec in specs:
            self.upsert(
                spec.name,
                spec.package,
                [_field_from_spec(item) for item in spec.fields],
                metadata=spec.metadata,
            )
        return len(specs)

    def copy(self) -> "TypeRegistry":
        return TypeRegistry(self.definitions())

    def merge(self, other: "TypeRegistry", *, strict: bool = False) -> int:
        definitions = other.definitions()
        for definition in definitions:
            self.register(definition, strict=strict)
        return len(definitions)

    def persist(self, directory: Optional[str | Path] = None) -> int:
        return cache_type_definitions(self.definitions(), directory, replace=True)

    def restore(self, directory: Optional[str | Path] = None) -> int:
        definitions = load_type_definitions_from_cache(directory)
        for definition in definitions:
            self.register(definition)
        return len(definitions)

    def _notify(self, listeners: list[ChangeListener], name: str) -> None:
        for listener in listeners:
            listener(name)


def _merge(existing: TypeDefinition, update: TypeDefinition) -> TypeDefinition:
    fields = list(existing.fields)
    known = set(existing.field_names())
    for item in update.fields:
        if item.name not in known:
            fields.append(item)
            known.add(item.name)
    metadata = dict(existing.metadata)
    metadata.update(update.metadata)
    return TypeDefinition(
        name=existing.name,
        package=update.package or existing.package,
        fields=tuple(fields),
        metadata=metadata,
        revision=existing.revision,
    )


def _field_from_spec(spec: _FieldSpec) -> FieldDefinition:
    kind, ref = kind_for_json_type(spec.type, spec.object_type)
    return FieldDefinition(
        name=spec.name,
        kind=kind,
        ref_type=ref,
        default=encode_literal(spec.default),
        required=spec.required,
    )
