"""Runtime fact contract and the property-bag implementation."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Iterator, Mapping, Optional


class MaterializedFact(ABC):
    """A runtime value bound to a type name plus a field map.

    Facts compare equal when their type names and snapshots match. They are
    mutable (rules may modify them), so they are not hashable.
    """

    __hash__ = None  # type: ignore[assignment]

    @property
    @abstractmethod
    def type_name(self) -> str: ...

    @abstractmethod
    def get(self, field: str) -> Any: ...

    @abstractmethod
    def set(self, field: str, value: Any) -> None: ...

    @abstractmethod
    def snapshot(self) -> dict[str, Any]: ...

    def field_names(self) -> list[str]:
        return list(self.snapshot())

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, MaterializedFact):
            return NotImplemented
        return self.type_name == other.type_name and self.snapshot() == other.snapshot()

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type_name,
            "fields": {key: _plain(value) for key, value in self.snapshot().items()},
        }

    def describe(self) -> str:
        body = ", ".join(f"{key}={value}" for key, value in self.snapshot().items())
        return f"{self.type_name}{{{body}}}"


class PropertyBagFact(MaterializedFact):
    """Generic fact holding an ordered field map."""

    __slots__ = ("_type_name", "_values")

    def __init__(self, type_name: str, values: Optional[Mapping[str, Any]] = None) -> None:
        self._type_name = type_name
        self._values: dict[str, Any] = dict(values or {})

    @property
    def type_name(self) -> str:
        return self._type_name

    def get(self, field: str) -> Any:
        return self._values.get(field)

    def set(self, field: str, value: Any) -> None:
        self._values[field] = value

    def snapshot(self) -> dict[str, Any]:
        return dict(self._values)

    def field_names(self) -> list[str]:
        return list(self._values)

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __repr__(self) -> str:
        return f"PropertyBagFact({self._type_name!r}, {self._values!r})"

    def __str__(self) -> str:
        return self.describe()


def _plain(value: Any) -> Any:
    if isinstance(value, MaterializedFact):
        return value.to_dict()
    if isinstance(value, list):
        return [_plain(item) for item in value]
    if isinstance(value, dict):
        return {key: _plain(item) for key, item in value.items()}
    return value
