"""Holder of the single live knowledge base session."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Any, Iterable, Optional

from rulebridge.engine.base import Container, Session
from rulebridge.errors import ExecutionError
from rulebridge.execution.executor import (
    ExecutionResult,
    RuleSessionExecutor,
    engine_phase,
    fire,
)
from rulebridge.execution.locks import ReadWriteLock

logger = logging.getLogger(__name__)


@dataclass
class SessionHandle:
    name: str
    container: Container
    session: Optional[Session]
    created_at: datetime
    source_description: Optional[str] = None


@dataclass(frozen=True)
class KnowledgeBaseInfo:
    name: str
    release_id: str
    session_id: int
    fact_count: int
    created_at: datetime
    source_description: Optional[str]
    session_active: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "releaseId": self.release_id,
            "sessionId": self.session_id,
            "factCount": self.fact_count,
            "createdAt": self.created_at.isoformat(),
            "sourceDescription": self.source_description,
            "sessionActive": self.session_active,
        }


class KnowledgeBaseStore:
    """At most one SessionHandle, guarded by a reader/writer lock.

    ``store``, ``clear_facts``, ``dispose`` and ``run`` take the write lock;
    the query methods take the read lock.
    """

    def __init__(self) -> None:
        self._lock = ReadWriteLock()
        self._handle: Optional[SessionHandle] = None

    def store(
        self,
        name: str,
        container: Container,
        session: Optional[Session],
        source_description: Optional[str] = None,
    ) -> None:
        with self._lock.write_locked():
            previous = self._handle
            try:
                if (
                    previous is not None
                    and previous.session is not None
                    and previous.session is not session
                ):
                    logger.info("Replacing knowledge base '%s' with '%s'", previous.name, name)
                    previous.session.dispose()
            finally:
                self._handle = SessionHandle(
                    name=name,
                    container=container,
                    session=session,
                    created_at=datetime.now(timezone.utc),
                    source_description=source_description,
                )

    def get_info(self) -> Optional[KnowledgeBaseInfo]:
        with self._lock.read_locked():
            handle = self._handle
            if handle is None:
                return None
            session = handle.session
            return KnowledgeBaseInfo(
                name=handle.name,
                release_id=handle.container.release_id,
                session_id=session.id if session is not None else -1,
                fact_count=session.fact_count() if session is not None else 0,
                created_at=handle.created_at,
                source_description=handle.source_description,
                session_active=session is not None,
            )

    def has_knowledge_base(self) -> bool:
        with self._lock.read_locked():
            return self._handle is not None

    def has_session(self) -> bool:
        with self._lock.read_locked():
            return self._handle is not None and self._handle.session is not None

    def clear_facts(self) -> int:
        with self._lock.write_locked():
            return self._clear_facts()

    def dispose(self) -> None:
        with self._lock.write_locked():
            handle, self._handle = self._handle, None
            if handle is not None and handle.session is not None:
                handle.session.dispose()
                logger.info("Disposed knowledge base '%s'", handle.name)

    def build(
        self,
        executor: RuleSessionExecutor,
        name: str,
        source: str,
        source_description: Optional[str] = None,
    ) -> Optional[KnowledgeBaseInfo]:
        """Compile ``source`` and install a fresh session for it."""
        container = executor.build_container(source)
        session = container.new_session()
        self.store(name, container, session, source_description)
        return self.get_info()

    def run(self, facts: Iterable[Any], max_firings: int = 0) -> ExecutionResult:
        """Insert into the live session and fire; the session stays open."""
        with self._lock.write_locked():
            return self._run(facts, max_firings)

    def run_batches(
        self, batches: Iterable[Iterable[Any]], max_firings: int = 0
    ) -> list[ExecutionResult]:
        results: list[ExecutionResult] = []
        with self._lock.write_locked():
            for batch in batches:
                self._clear_facts()
                results.append(self._run(batch, max_firings))
        return results

    def _live_session(self) -> Session:
        if self._handle is None or self._handle.session is None:
            raise ExecutionError("No knowledge base session is available", phase="run")
        return self._handle.session

    def _clear_facts(self) -> int:
        if self._handle is None or self._handle.session is None:
            return 0
        session = self._handle.session
        count = session.fact_count()
        for handle in list(session.get_fact_handles()):
            session.delete(handle)
        return count

    def _run(self, facts: Iterable[Any], max_firings: int) -> ExecutionResult:
        session = self._live_session()
        with engine_phase("insert"):
            for fact in facts:
                session.insert(fact)
        fired = fire(session, max_firings)
        with engine_phase("collect"):
            working_set = list(session.get_objects())
        return ExecutionResult(facts=working_set, fired=fired)
