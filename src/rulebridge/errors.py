"""Custom exceptions for the rule bridge."""

from __future__ import annotations

from typing import TYPE_CHECKING, Iterable, Optional

if TYPE_CHECKING:
    from rulebridge.diagnostics import Diagnostic, FaultLocation


class RuleBridgeError(Exception):
    """Base exception for rule bridge failures.

    ``phase`` names the lifecycle step that failed (``compile``, ``insert``,
    ``fire``...) and is prefixed to the rendered message.
    """

    def __init__(self, message: str, *, phase: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.phase = phase

    def __str__(self) -> str:
        if self.phase:
            return f"[{self.phase}] {self.message}"
        return self.message


class InputError(RuleBridgeError):
    """Raised for blank rule source or malformed JSON input."""


class SchemaError(RuleBridgeError):
    """Raised when a type definition is invalid or unknown."""


class SchemaConflict(SchemaError):
    """Raised when a strict merge meets an incompatible field type."""

    def __init__(self, type_name: str, conflicts: Iterable[str]) -> None:
        self.type_name = type_name
        self.conflicts = list(conflicts)
        super().__init__(
            f"Incompatible redefinition of type '{type_name}': "
            + ", ".join(self.conflicts)
        )


class SourceSyntaxError(RuleBridgeError):
    """Raised when rule or declare source cannot be tokenized or parsed."""

    def __init__(self, message: str, line: Optional[int] = None) -> None:
        self.line = line
        super().__init__(message, phase="parse")


class MaterializationError(RuleBridgeError):
    """Raised when JSON values cannot be turned into a fact."""


class MissingRequiredFields(MaterializationError):
    def __init__(
        self,
        type_name: str,
        fields: Iterable[str],
        *,
        index: Optional[int] = None,
    ) -> None:
        self.type_name = type_name
        self.fields = list(fields)
        self.index = index
        message = f"Missing required fields for '{type_name}': [{', '.join(self.fields)}]"
        if index is not None:
            message = f"Element {index}: {message}"
        super().__init__(message, phase="materialize")


class CompilationError(RuleBridgeError):
    """Raised when the engine reports error-level messages for a rule source."""

    def __init__(
        self,
        diagnostics: Iterable["Diagnostic"],
        *,
        fault: Optional["FaultLocation"] = None,
    ) -> None:
        self.diagnostics = list(diagnostics)
        self.fault = fault
        super().__init__(self._summary(), phase="compile")

    def _summary(self) -> str:
        if self.fault is not None:
            return (
                f"Error at line {self.fault.line_number}: {self.fault.message} "
                f"(line content: {self.fault.content.strip()!r})"
            )
        errors = [diag for diag in self.diagnostics if diag.is_error]
        if not errors:
            return "Rule source failed to compile."
        return "; ".join(diag.render() for diag in errors)


class FaultIsolationError(InputError):
    """Raised when the fault isolator cannot run on the given input."""


class ExecutionError(RuleBridgeError):
    """Raised when the engine fails while inserting, firing or collecting."""


class EngineError(RuleBridgeError):
    """Raised by the reference engine for runtime failures inside a session."""
