"""Engine-independent validation and line-level fault isolation."""

from rulebridge.validation.fault_isolator import FaultIsolator
from rulebridge.validation.structural import StructuralValidator

__all__ = ["FaultIsolator", "StructuralValidator"]
