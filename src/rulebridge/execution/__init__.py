"""Rule session execution and the shared knowledge base store."""

from rulebridge.execution.executor import ExecutionResult, RuleSessionExecutor
from rulebridge.execution.locks import ReadWriteLock
from rulebridge.execution.store import KnowledgeBaseInfo, KnowledgeBaseStore, SessionHandle

__all__ = [
    "ExecutionResult",
    "RuleSessionExecutor",
    "ReadWriteLock",
    "KnowledgeBaseInfo",
    "KnowledgeBaseStore",
    "SessionHandle",
]
