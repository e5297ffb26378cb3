"""changeflow exception classes."""

from typing import TYPE_CHECKING, List, Optional

if TYPE_CHECKING:
    from changeflow.orchestrator.escalation import EscalationEvent


class ChangeflowError(Exception):
    """Base exception for all changeflow errors."""

    pass


class ConfigurationError(ChangeflowError):
    """Raised when configuration is invalid."""

    pass


class TemplateError(ChangeflowError):
    """Raised when a change template or phase graph definition is invalid."""

    pass


class ChangeStateError(ChangeflowError):
    """Raised when a change state violates one of its invariants."""

    pass


class ExecutionError(ChangeflowError):
    """Raised when phase execution fails."""

    pass


class ActivityTrackingError(ChangeflowError):
    """Raised when activity tracking fails."""

    pass


class WorkerError(ExecutionError):
    """Raised when a worker call fails or returns malformed output."""

    pass


class WorkerTimeoutError(WorkerError):
    """Raised when a worker call exceeds its wall-clock timeout."""

    pass


class WorkerOutputParseError(WorkerError):
    """Raised when worker output cannot be parsed."""

    pass


class StructuralBlock(ExecutionError):
    """Raised when a phase precondition cannot be satisfied by any retry.

    Examples are a required upstream artifact that was never produced or a
    worker that is not configured. A structural block escalates immediately
    without consuming the retry budget.
    """

    def __init__(self, message: str, missing: Optional[List[str]] = None):
        """
        Args:
            message: Human-readable description of the block
            missing: Names of the missing preconditions
        """
        super().__init__(message)
        self.missing = list(missing or [])


class EscalationRequired(ExecutionError):
    """Raised when a phase needs a human decision to make progress."""

    def __init__(self, event: "EscalationEvent"):
        """
        Args:
            event: The escalation event describing the blocked phase
        """
        super().__init__(event.summary)
        self.event = event
