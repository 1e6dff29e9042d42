"""Error taxonomy for the reasoning engine.

Divergence is never an error: it is ordinary data that drives strategy
selection.  These exceptions cover structural failures only.  Components
raise them; the top-level loops turn them into Failure outcomes.
"""

from __future__ import annotations

from typing import Any

from backtrack_reason.domain.enums import ErrorKind


class ReasoningError(Exception):
    """Base class for every engine error."""

    kind: ErrorKind = ErrorKind.VALIDATION_ERROR

    def context(self) -> dict[str, Any]:
        """Structured detail surfaced in Failure outcomes."""
        return {"message": str(self)}


class ValidationError(ReasoningError):
    """The validator itself failed, as opposed to reporting divergence."""

    kind = ErrorKind.VALIDATION_ERROR

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Validator failed: {reason}")

    def context(self) -> dict[str, Any]:
        return {"reason": self.reason}


class InsufficientBudgetError(ReasoningError):
    """A budget transition asked for more units than are available."""

    kind = ErrorKind.INSUFFICIENT_BUDGET

    def __init__(self, requested: int, available: int) -> None:
        self.requested = requested
        self.available = available
        super().__init__(f"Requested {requested} budget units, {available} available")

    def context(self) -> dict[str, Any]:
        return {"requested": self.requested, "available": self.available}


class InsufficientPriorityBudgetError(InsufficientBudgetError):
    """The priority reserve cannot cover the request."""

    kind = ErrorKind.INSUFFICIENT_PRIORITY_BUDGET


class EmptyStackError(ReasoningError):
    """Pop below the root of a snapshot stack."""

    kind = ErrorKind.EMPTY_STACK

    def __init__(self) -> None:
        super().__init__("Cannot pop from an empty state stack")


class CallTimeoutError(ReasoningError, TimeoutError):
    """An injected function exceeded its deadline."""

    kind = ErrorKind.TIMEOUT

    def __init__(self, call: str, timeout: float) -> None:
        self.call = call
        self.timeout = timeout
        super().__init__(f"Call {call} timed out after {timeout}s")

    def context(self) -> dict[str, Any]:
        return {"call": self.call, "timeout": self.timeout}


class NotFoundError(ReasoningError, KeyError):
    """Persistence lookup miss."""

    kind = ErrorKind.NOT_FOUND

    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(f"No entry stored under key '{key}'")

    def __str__(self) -> str:
        return f"No entry stored under key '{self.key}'"

    def context(self) -> dict[str, Any]:
        return {"key": self.key}


class PersistenceError(ReasoningError):
    """A state stack could not be serialised or deserialised."""

    kind = ErrorKind.PERSISTENCE_ERROR

    def __init__(self, key: str, reason: str) -> None:
        self.key = key
        self.reason = reason
        super().__init__(f"Persistence failed for '{key}': {reason}")

    def context(self) -> dict[str, Any]:
        return {"key": self.key, "reason": self.reason}


class ExhaustedAlternativesError(ReasoningError):
    """No sufficiently diverse, untried alternative could be produced."""

    kind = ErrorKind.EXHAUSTED_ALTERNATIVES

    def __init__(self, attempts: int) -> None:
        self.attempts = attempts
        super().__init__(f"No diverse alternative found after {attempts} attempts")

    def context(self) -> dict[str, Any]:
        return {"attempts": self.attempts}
