"""Exception taxonomy shared by the parser, matchers, and simulation engine."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class FieldError:
    """A single field-level problem found in a policy document."""

    type: str  # syntax | schema | field
    message: str
    field: str | None = None
    line: int | None = None

    def to_dict(self) -> dict:
        data: dict = {"type": self.type, "message": self.message}
        if self.field is not None:
            data["field"] = self.field
        if self.line is not None:
            data["line"] = self.line
        return data


class PolicyHubError(Exception):
    """Base class for all Policy Hub errors."""


class ParseError(PolicyHubError, ValueError):
    """A policy document could not be turned into a parsed policy.

    Raised before any simulation work begins. ``errors`` holds the
    field-level details (field path + message) for display.
    """

    error_type = "schema"

    def __init__(
        self,
        message: str,
        field: str | None = None,
        line: int | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.field = field
        self.line = line

    @property
    def errors(self) -> tuple[FieldError, ...]:
        return (FieldError(self.error_type, self.message, self.field, self.line),)


class InvalidYAML(ParseError):
    """The text is not YAML, or its root is not a mapping."""

    error_type = "syntax"


class MissingField(ParseError):
    """A required field is absent."""

    error_type = "field"

    def __init__(self, field: str, message: str | None = None) -> None:
        super().__init__(message or f"Missing required field: {field}", field=field)


class KindMismatch(ParseError):
    """The YAML ``kind`` does not correspond to the declared policy type."""

    def __init__(self, message: str) -> None:
        super().__init__(message, field="kind")


class InvalidField(ParseError):
    """A field is present but has the wrong shape or value."""

    error_type = "field"


class EvaluationError(PolicyHubError):
    """One record could not be evaluated. Collected, never fatal to a batch."""

    def __init__(self, message: str, index: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.index = index

    def __str__(self) -> str:
        if self.index is None:
            return self.message
        return f"record {self.index}: {self.message}"


class SimulationFailed(PolicyHubError):
    """A simulation ended in the FAILED state."""


class SimulationCancelled(PolicyHubError):
    """Evaluation stopped because the simulation was cancelled."""


class PreconditionFailed(PolicyHubError):
    """An operation was attempted from a state that does not allow it."""
