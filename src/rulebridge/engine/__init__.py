"""Rule evaluation engine protocol and the bundled reference engine."""

from rulebridge.engine.base import CompileOutcome, Container, RuleEngine, Session
from rulebridge.engine.reference import ReferenceContainer, ReferenceEngine
from rulebridge.engine.session import FactHandle, ReferenceSession

__all__ = [
    "CompileOutcome",
    "Container",
    "RuleEngine",
    "Session",
    "ReferenceContainer",
    "ReferenceEngine",
    "FactHandle",
    "ReferenceSession",
]
