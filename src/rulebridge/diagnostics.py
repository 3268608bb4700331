"""Diagnostic value objects shared by the validator, isolator and engine."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Optional


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


@dataclass(frozen=True)
class Diagnostic:
    """One finding about a rule source or a JSON input."""

    severity: Severity
    message: str
    line: Optional[int] = None
    excerpt: Optional[str] = None
    code: Optional[str] = None
    phase: Optional[str] = None

    def __post_init__(self) -> None:
        if not isinstance(self.severity, Severity):
            object.__setattr__(self, "severity", Severity(self.severity))
        if self.line is not None and self.line < 1:
            raise ValueError("Diagnostic line numbers are 1-based.")

    @property
    def is_error(self) -> bool:
        return self.severity is Severity.ERROR

    def render(self) -> str:
        if self.line is None:
            return self.message
        return f"line {self.line}: {self.message}"

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "severity": self.severity.value,
            "message": self.message,
        }
        if self.line is not None:
            payload["line"] = self.line
        if self.excerpt is not None:
            payload["excerpt"] = self.excerpt
        if self.code is not None:
            payload["code"] = self.code
        if self.phase is not None:
            payload["phase"] = self.phase
        return payload


def error(message: str, **kwargs: Any) -> Diagnostic:
    return Diagnostic(Severity.ERROR, message, **kwargs)


def warning(message: str, **kwargs: Any) -> Diagnostic:
    return Diagnostic(Severity.WARNING, message, **kwargs)


def has_errors(diagnostics: Iterable[Diagnostic]) -> bool:
    return any(diag.is_error for diag in diagnostics)


@dataclass(frozen=True)
class FaultLocation:
    """The first line whose inclusion makes a rule source fail to compile."""

    content: str
    line_number: int
    message: str

    def to_diagnostic(self) -> Diagnostic:
        return Diagnostic(
            Severity.ERROR,
            self.message,
            line=self.line_number,
            excerpt=self.content,
            code="fault_isolated",
            phase="compile",
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "content": self.content,
            "lineNumber": self.line_number,
            "message": self.message,
        }
