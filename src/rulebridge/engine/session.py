"""Working memory and firing loop of the reference engine."""

from __future__ import annotations

from dataclasses import dataclass
import itertools
import logging
from typing import TYPE_CHECKING, Any, Iterator, Mapping, Optional

from rulebridge.engine.expr import Scope
from rulebridge.engine.parser import Pattern, Rule
from rulebridge.errors import EngineError, MaterializationError
from rulebridge.facts.base import MaterializedFact, PropertyBagFact
from rulebridge.lang.source import simple_name

if TYPE_CHECKING:
    from rulebridge.engine.reference import ReferenceContainer

logger = logging.getLogger(__name__)

_session_ids = itertools.count(1)

_NUMBER_TYPES = {"Number", "BigDecimal", "Double", "Float"}
_INTEGER_TYPES = {"Integer", "Long", "Short", "Byte", "BigInteger"}
_LIST_TYPES = {"List", "ArrayList", "LinkedList", "Collection", "Set", "HashSet"}
_MAP_TYPES = {"Map", "HashMap", "LinkedHashMap", "TreeMap"}


@dataclass(eq=False)
class FactHandle:
    id: int
    fact: Any
    version: int = 0
    stamp: int = 0
    modified_by: Optional[int] = None


class ReferenceSession:
    """A stateful session over one container.

    Every cycle recomputes the activations of all rules, drops the ones that
    already fired for the same fact versions and fires the best remaining one
    by salience, then recency, then rule order.
    """

    def __init__(self, container: "ReferenceContainer") -> None:
        self.id = next(_session_ids)
        self._container = container
        self._handles: dict[int, FactHandle] = {}
        self._by_object: dict[int, FactHandle] = {}
        self._fired: set[tuple[int, tuple[tuple[int, int], ...]]] = set()
        self._ids = itertools.count(1)
        self._clock = itertools.count(1)
        self._disposed = False
        self.output: list[str] = []

    @property
    def container(self) -> "ReferenceContainer":
        return self._container

    @property
    def disposed(self) -> bool:
        return self._disposed

    def insert(self, fact: Any) -> FactHandle:
        self._check_open()
        if fact is None:
            raise EngineError("Cannot insert null", phase="insert")
        existing = self._by_object.get(id(fact))
        if existing is not None:
            return existing
        handle = FactHandle(id=next(self._ids), fact=fact, stamp=next(self._clock))
        self._handles[handle.id] = handle
        self._by_object[id(fact)] = handle
        logger.debug("Session %d inserted %s", self.id, _describe(fact))
        return handle

    def fire_all_rules(self, max_firings: Optional[int] = None) -> int:
        self._check_open()
        limit = max_firings if max_firings is not None and max_firings > 0 else None
        fired = 0
        while limit is None or fired < limit:
            activation = self._next_activation()
            if activation is None:
                break
            rule, bindings, key = activation
            self._fired.add(key)
            context = FiringContext(self, rule, bindings)
            for action in rule.actions:
                action.execute(context)
            fired += 1
        return fired

    def get_objects(self) -> list[Any]:
        self._check_open()
        return [handle.fact for handle in self._handles.values()]

    def get_fact_handles(self) -> list[FactHandle]:
        self._check_open()
        return list(self._handles.values())

    def delete(self, handle: FactHandle) -> None:
        self._check_open()
        if self._handles.pop(handle.id, None) is None:
            raise EngineError(f"Unknown fact handle {handle.id}", phase="delete")
        self._by_object.pop(id(handle.fact), None)

    def fact_count(self) -> int:
        self._check_open()
        return len(self._handles)

    def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        self._handles.clear()
        self._by_object.clear()
        self._fired.clear()
        logger.debug("Session %d disposed", self.id)

    def handle_of(self, fact: Any) -> FactHandle:
        handle = self._by_object.get(id(fact))
        if handle is None:
            raise EngineError(f"{_describe(fact)} is not in working memory", phase="fire")
        return handle

    def update(self, fact: Any, rule_index: Optional[int] = None) -> None:
        handle = self.handle_of(fact)
        handle.version += 1
        handle.stamp = next(self._clock)
        handle.modified_by = rule_index

    def _check_open(self) -> None:
        if self._disposed:
            raise EngineError(f"Session {self.id} has been disposed")

    def _next_activation(self) -> Optional[tuple[Rule, dict[str, Any], Any]]:
        best: Optional[tuple[tuple[int, int, int], Rule, dict[str, Any], Any]] = None
        for rule in self._container.rules:
            if not rule.enabled:
                continue
            for bindings, handles in self._matches(rule.patterns, 0, {}, ()):
                key = (rule.index, tuple((h.id, h.version) for h in handles))
                if key in self._fired:
                    continue
                if rule.no_loop and any(h.modified_by == rule.index for h in handles):
                    continue
                recency = max((h.stamp for h in handles), default=0)
                rank = (rule.salience, recency, -rule.index)
                if best is None or rank > best[0]:
                    best = (rank, rule, bindings, key)
        if best is None:
            return None
        return best[1], best[2], best[3]

    def _matches(
        self,
        patterns: list[Pattern],
        index: int,
        bindings: dict[str, Any],
        handles: tuple[FactHandle, ...],
    ) -> Iterator[tuple[dict[str, Any], tuple[FactHandle, ...]]]:
        if index == len(patterns):
            yield bindings, handles
            return
        pattern = patterns[index]
        if pattern.mode == "eval":
            if pattern.items[0].expression.test(Scope(bindings=bindings)):
                yield from self._matches(patterns, index + 1, bindings, handles)
            return
        candidates = [
            handle
            for handle in list(self._handles.values())
            if self._is_instance(pattern.type_name, handle.fact)
        ]
        if pattern.mode in ("not", "exists"):
            found = any(self._satisfy(pattern, h.fact, bindings) is not None for h in candidates)
            if found == (pattern.mode == "exists"):
                yield from self._matches(patterns, index + 1, bindings, handles)
            return
        for handle in candidates:
            extended = self._satisfy(pattern, handle.fact, bindings)
            if extended is not None:
                yield from self._matches(patterns, index + 1, extended, handles + (handle,))

    def _satisfy(
        self, pattern: Pattern, fact: Any, bindings: dict[str, Any]
    ) -> Optional[dict[str, Any]]:
        local = dict(bindings)
        for item in pattern.items:
            scope = Scope(this=fact, bindings=local)
            if item.binding is not None:
                local[item.binding] = item.expression.evaluate(scope)
            elif not item.expression.test(scope):
                return None
        if pattern.binding is not None:
            local[pattern.binding] = fact
        return local

    def _is_instance(self, type_name: str, fact: Any) -> bool:
        name = simple_name(type_name)
        if name == "Object":
            return True
        if isinstance(fact, MaterializedFact):
            current: Optional[str] = fact.type_name
            seen: set[str] = set()
            while current is not None and current not in seen:
                if current == name:
                    return True
                seen.add(current)
                definition = self._container.lookup_type(current)
                parent = definition.metadata.get("extends") if definition else None
                current = simple_name(parent) if parent else None
            return False
        if isinstance(fact, bool):
            return name == "Boolean"
        if isinstance(fact, int):
            return name in _INTEGER_TYPES or name in _NUMBER_TYPES
        if isinstance(fact, float):
            return name in _NUMBER_TYPES
        if isinstance(fact, str):
            return name in ("String", "CharSequence")
        if isinstance(fact, Mapping):
            return name in _MAP_TYPES
        if isinstance(fact, (list, tuple, set)):
            return name in _LIST_TYPES
        return type(fact).__name__ == name


class FiringContext:
    """What a consequence can see and do while one activation fires."""

    def __init__(self, session: ReferenceSession, rule: Rule, bindings: dict[str, Any]) -> None:
        self.session = session
        self.rule = rule
        self.bindings = bindings

    def scope(self, allow_set: bool = False) -> Scope:
        return Scope(bindings=self.bindings, on_set=self.assign if allow_set else None)

    def bound(self, variable: str) -> Any:
        return self.bindings[variable]

    def new_fact(self, type_name: str, values: list[Any]) -> PropertyBagFact:
        definition = self.session.container.lookup_type(type_name)
        if definition is None:
            raise EngineError(f"Unknown type '{type_name}'", phase="fire")
        if values:
            fields = dict(zip(definition.field_names(), values))
        else:
            fields = {item.name: item.default_value() for item in definition.fields}
        return PropertyBagFact(definition.name, fields)

    def insert(self, fact: Any) -> None:
        self.session.insert(fact)

    def assign(self, fact: Any, field: str, value: Any) -> None:
        if isinstance(fact, MaterializedFact):
            try:
                fact.set(field, value)
            except MaterializationError as exc:
                raise EngineError(
                    f"Rule '{self.rule.name}' failed to set {field}: {exc.message}",
                    phase="fire",
                ) from exc
        elif isinstance(fact, dict):
            fact[field] = value
        elif fact is None:
            raise EngineError(f"Rule '{self.rule.name}' set {field} on null", phase="fire")
        else:
            setattr(fact, field, value)

    def update(self, fact: Any) -> None:
        self.session.update(fact, self.rule.index)

    def delete(self, fact: Any) -> None:
        self.session.delete(self.session.handle_of(fact))

    def emit(self, text: str) -> None:
        self.session.output.append(text)
        logger.info("[%s] %s", self.rule.name, text)


def _describe(fact: Any) -> str:
    if isinstance(fact, MaterializedFact):
        return fact.describe()
    return repr(fact)
