"""Phase status definitions and transitions."""

from enum import Enum
from typing import Dict, List

from .exceptions import ChangeflowError


class StateTransitionError(ChangeflowError):
    """Raised when an invalid phase status transition is attempted."""

    pass


class PhaseStatus(str, Enum):
    """Phase lifecycle states."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    BLOCKED = "blocked"


class ChangeStatus(str, Enum):
    """Change lifecycle states."""

    ACTIVE = "active"
    AWAITING_HUMAN = "awaiting_human"
    BLOCKED = "blocked"
    READY_TO_ARCHIVE = "ready_to_archive"
    ARCHIVED = "archived"


# Valid phase status transitions
VALID_TRANSITIONS: Dict[PhaseStatus, List[PhaseStatus]] = {
    PhaseStatus.PENDING: [
        PhaseStatus.IN_PROGRESS,
        PhaseStatus.SKIPPED,
        PhaseStatus.BLOCKED,  # Structural block before dispatch
    ],
    PhaseStatus.IN_PROGRESS: [
        PhaseStatus.COMPLETED,
        PhaseStatus.SKIPPED,
        PhaseStatus.BLOCKED,
    ],
    PhaseStatus.BLOCKED: [
        PhaseStatus.IN_PROGRESS,  # Retry after escalation
        PhaseStatus.SKIPPED,
        PhaseStatus.PENDING,  # Abort of a deferred escalation
    ],
    PhaseStatus.COMPLETED: [],  # Terminal state
    PhaseStatus.SKIPPED: [],  # Terminal state
}


def is_valid_transition(from_status: PhaseStatus, to_status: PhaseStatus) -> bool:
    """Check if a phase status transition is valid."""
    return to_status in VALID_TRANSITIONS.get(from_status, [])


def get_valid_next_states(current: PhaseStatus) -> List[PhaseStatus]:
    """Get list of valid next statuses for a given status."""
    return VALID_TRANSITIONS.get(current, [])


def is_terminal_state(status: PhaseStatus) -> bool:
    """Check if a status is terminal (no further transitions allowed)."""
    return len(VALID_TRANSITIONS.get(status, [])) == 0
