"""Type detection for JSON elements that carry no explicit type hint."""

from __future__ import annotations

from typing import Any, Iterable, Mapping, Optional, Protocol

from rulebridge.schema.registry import TypeRegistry


class TypeDetector(Protocol):
    def detect(self, element: Mapping[str, Any], registry: TypeRegistry) -> Optional[str]: ...


class FieldNameDetector:
    """Pick the registered type whose fields fit the element's keys.

    A type fits when it declares every key of the element and each of its
    required fields without a default is present. When several types fit,
    the one with the fewest fields wins; a tie is left unresolved.
    """

    def __init__(self, ignore_keys: Iterable[str] = ("_type",)) -> None:
        self._ignore = set(ignore_keys)

    def detect(self, element: Mapping[str, Any], registry: TypeRegistry) -> Optional[str]:
        keys = {key for key in element if key not in self._ignore}
        if not keys:
            return None
        candidates = []
        for definition in registry.definitions():
            names = set(definition.field_names())
            if not keys <= names:
                continue
            if any(
                item.required and not item.has_default and item.name not in keys
                for item in definition.fields
            ):
                continue
            candidates.append((len(names), definition.name))
        if not candidates:
            return None
        candidates.sort()
        if len(candidates) > 1 and candidates[0][0] == candidates[1][0]:
            return None
        return candidates[0][1]


class KeyPatternDetector:
    """Map marker key sets to type names, e.g. ``{"Order": ("orderId", "amount")}``.

    The first pattern whose keys are all present and whose type is registered
    wins.
    """

    def __init__(self, patterns: Mapping[str, Iterable[str]]) -> None:
        self._patterns = [(name, frozenset(keys)) for name, keys in patterns.items()]

    def detect(self, element: Mapping[str, Any], registry: TypeRegistry) -> Optional[str]:
        keys = set(element)
        for name, required in self._patterns:
            if required <= keys and registry.has(name):
                return name
        return None


class ChainedDetector:
    def __init__(self, *detectors: TypeDetector) -> None:
        self._detectors = detectors

    def detect(self, element: Mapping[str, Any], registry: TypeRegistry) -> Optional[str]:
        for detector in self._detectors:
            found = detector.detect(element, registry)
            if found is not None:
                return found
        return None
