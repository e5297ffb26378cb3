"""Change and phase state models.

A ``ChangeState`` is the durable record of one change: its ordered phases,
their statuses and timings, and aggregate progress metrics. The model only
knows how to read, mutate and check itself; persistence lives in
``state_persistence`` and scheduling in ``phase_graph``.
"""

from datetime import datetime, timezone
from typing import Annotated, Any, Dict, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .exceptions import ChangeStateError
from .phase_state import (
    ChangeStatus,
    PhaseStatus,
    StateTransitionError,
    get_valid_next_states,
    is_terminal_state,
    is_valid_transition,
)

HUMAN_AGENT = "human"


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


# =============================================================================
# Worker assignment (tagged variant)
# =============================================================================


class SingleWorker(BaseModel):
    """Phase handled by exactly one worker."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["single"] = "single"
    worker: str

    @property
    def worker_ids(self) -> Tuple[str, ...]:
        return (self.worker,)

    def label(self) -> str:
        return self.worker


class ParallelWorkers(BaseModel):
    """Phase fanned out to several workers that must all succeed."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["parallel"] = "parallel"
    workers: List[str]

    @field_validator("workers")
    @classmethod
    def validate_workers(cls, v: List[str]) -> List[str]:
        """Require at least two distinct workers."""
        cleaned = [w.strip() for w in v if w and w.strip()]
        if len(cleaned) < 2:
            raise ValueError("A parallel assignment needs at least two workers")
        if len(set(cleaned)) != len(cleaned):
            raise ValueError("Parallel workers must be distinct")
        return cleaned

    @property
    def worker_ids(self) -> Tuple[str, ...]:
        return tuple(self.workers)

    def label(self) -> str:
        return "+".join(self.workers)


class HumanAssignment(BaseModel):
    """Phase that waits for an explicit human continuation signal."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["human"] = "human"

    @property
    def worker_ids(self) -> Tuple[str, ...]:
        return ()

    def label(self) -> str:
        return HUMAN_AGENT


WorkerAssignment = Annotated[
    Union[SingleWorker, ParallelWorkers, HumanAssignment],
    Field(discriminator="kind"),
]


def coerce_assignment(value: Any) -> Any:
    """Convert the legacy agent notations into a tagged assignment.

    Accepts ``"backend"``, ``"frontend+backend"``, ``"human"``, a list of
    worker ids, an assignment model or an already tagged dict.
    """
    if isinstance(value, (SingleWorker, ParallelWorkers, HumanAssignment, dict)):
        return value

    if isinstance(value, str):
        text = value.strip()
        if not text:
            raise ValueError("Agent assignment cannot be empty")
        if text.lower() == HUMAN_AGENT:
            return {"kind": "human"}
        parts = [p.strip() for p in text.split("+") if p.strip()]
        value = parts

    if isinstance(value, (list, tuple)):
        workers = [str(w).strip() for w in value if str(w).strip()]
        if not workers:
            raise ValueError("Agent assignment cannot be empty")
        if len(workers) == 1:
            if workers[0].lower() == HUMAN_AGENT:
                return {"kind": "human"}
            return {"kind": "single", "worker": workers[0]}
        return {"kind": "parallel", "workers": workers}

    raise ValueError(f"Unsupported agent assignment: {value!r}")


# =============================================================================
# Phase and change records
# =============================================================================


class PhaseTransition(BaseModel):
    """Represents a phase status transition event."""

    phase_id: str
    from_status: PhaseStatus
    to_status: PhaseStatus
    timestamp: datetime = Field(default_factory=utcnow)
    reason: Optional[str] = None


class PhaseRecord(BaseModel):
    """Persisted state of one phase of a change."""

    phase_id: str
    number: int = Field(..., ge=1, description="1-based ordinal position")
    name: str
    agent: WorkerAssignment
    status: PhaseStatus = PhaseStatus.PENDING
    estimated_minutes: int = Field(default=0, ge=0)
    actual_minutes: Optional[float] = None
    retry_count: int = Field(default=0, ge=0)
    artifacts: List[str] = Field(default_factory=list)
    feedback: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @field_validator("agent", mode="before")
    @classmethod
    def parse_agent(cls, v: Any) -> Any:
        """Accept the string and list agent notations."""
        return coerce_assignment(v)

    @property
    def is_terminal(self) -> bool:
        return is_terminal_state(self.status)

    @property
    def is_human(self) -> bool:
        return isinstance(self.agent, HumanAssignment)


class ChangeMeta(BaseModel):
    """Aggregate progress counters, always derived from the phase list."""

    total_phases: int = 0
    completed_phases: int = 0
    skipped_phases: int = 0
    progress_percentage: float = 0.0
    total_estimated_minutes: int = 0
    total_actual_minutes: float = 0.0


class ChangeState(BaseModel):
    """Complete durable state of a change."""

    change_id: str
    template: str
    description: str = ""
    status: ChangeStatus = ChangeStatus.ACTIVE
    current_phase: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    phases: Dict[str, PhaseRecord] = Field(default_factory=dict)
    meta: ChangeMeta = Field(default_factory=ChangeMeta)
    history: List[PhaseTransition] = Field(default_factory=list)

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def ordered_phases(self) -> List[PhaseRecord]:
        """Phases in ordinal order."""
        return sorted(self.phases.values(), key=lambda p: p.number)

    def get_phase(self, phase_id: str) -> PhaseRecord:
        """Get a phase by id.

        Raises:
            ChangeStateError: If the phase does not exist
        """
        try:
            return self.phases[phase_id]
        except KeyError:
            raise ChangeStateError(
                f"Change {self.change_id} has no phase '{phase_id}'"
            ) from None

    def in_progress_phases(self) -> List[PhaseRecord]:
        return [p for p in self.ordered_phases() if p.status == PhaseStatus.IN_PROGRESS]

    @property
    def all_terminal(self) -> bool:
        return all(p.is_terminal for p in self.phases.values())

    @property
    def is_ready_to_archive(self) -> bool:
        return self.status in (ChangeStatus.READY_TO_ARCHIVE, ChangeStatus.ARCHIVED)

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    def transition_phase(
        self,
        phase_id: str,
        to_status: PhaseStatus,
        reason: Optional[str] = None,
    ) -> PhaseRecord:
        """Move a phase to a new status, recording the transition.

        Raises:
            StateTransitionError: If the transition is not allowed or would put
                a second phase in progress
        """
        if self.status == ChangeStatus.ARCHIVED:
            raise StateTransitionError(f"Change {self.change_id} is archived")

        phase = self.get_phase(phase_id)
        from_status = phase.status

        if not is_valid_transition(from_status, to_status):
            valid = get_valid_next_states(from_status)
            raise StateTransitionError(
                f"Invalid transition for phase {phase_id}: "
                f"{from_status.value} -> {to_status.value}. "
                f"Valid next states: {[s.value for s in valid]}"
            )

        if to_status == PhaseStatus.IN_PROGRESS:
            others = [p.phase_id for p in self.in_progress_phases() if p.phase_id != phase_id]
            if others:
                raise StateTransitionError(
                    f"Cannot start phase {phase_id}: phase {others[0]} is already in progress"
                )

        self.history.append(
            PhaseTransition(
                phase_id=phase_id,
                from_status=from_status,
                to_status=to_status,
                reason=reason,
            )
        )
        phase.status = to_status
        self.updated_at = utcnow()
        return phase

    def start_phase(self, phase_id: str, reason: Optional[str] = None) -> PhaseRecord:
        """Mark a phase as dispatched."""
        phase = self.transition_phase(phase_id, PhaseStatus.IN_PROGRESS, reason=reason)
        if phase.started_at is None:
            phase.started_at = utcnow()
        self.refresh()
        return phase

    def settle_phase(
        self,
        phase_id: str,
        status: PhaseStatus,
        actual_minutes: Optional[float] = None,
        retry_count: Optional[int] = None,
        artifacts: Optional[List[str]] = None,
        feedback: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> bool:
        """Commit the terminal outcome of a phase.

        Settlement is idempotent: settling a phase into the status it already
        holds changes nothing, so counters and elapsed time are never counted
        twice.

        Args:
            phase_id: Phase identifier
            status: ``COMPLETED`` or ``SKIPPED``
            actual_minutes: Elapsed minutes (completed phases only)
            retry_count: Retries used
            artifacts: Artifact references produced by the phase
            feedback: Optional human note attached on approval
            reason: Reason recorded in the transition history

        Returns:
            True if the state changed, False if the outcome was already committed

        Raises:
            ChangeStateError: If status is not terminal
            StateTransitionError: If the phase already settled differently
        """
        if status not in (PhaseStatus.COMPLETED, PhaseStatus.SKIPPED):
            raise ChangeStateError(f"Cannot settle phase into {status.value}")

        phase = self.get_phase(phase_id)
        if phase.status == status:
            return False

        if status == PhaseStatus.COMPLETED and phase.status in (
            PhaseStatus.PENDING,
            PhaseStatus.BLOCKED,
        ):
            self.start_phase(phase_id, reason=reason)

        self.transition_phase(phase_id, status, reason=reason)

        if status == PhaseStatus.COMPLETED:
            phase.actual_minutes = round(actual_minutes or 0.0, 2)
            phase.artifacts = list(artifacts or [])
        if retry_count is not None:
            phase.retry_count = retry_count
        if feedback:
            phase.feedback = feedback
        phase.completed_at = utcnow()

        self.refresh()
        return True

    def block_phase(
        self, phase_id: str, retry_count: Optional[int] = None, reason: Optional[str] = None
    ) -> PhaseRecord:
        """Mark a phase as waiting for an escalation decision."""
        phase = self.transition_phase(phase_id, PhaseStatus.BLOCKED, reason=reason)
        if retry_count is not None:
            phase.retry_count = retry_count
        self.status = ChangeStatus.BLOCKED
        self.refresh()
        return phase

    def refresh(self) -> None:
        """Recompute derived fields: meta, current phase and change status."""
        ordered = self.ordered_phases()
        completed = [p for p in ordered if p.status == PhaseStatus.COMPLETED]
        skipped = [p for p in ordered if p.status == PhaseStatus.SKIPPED]
        total = len(ordered)

        self.meta = ChangeMeta(
            total_phases=total,
            completed_phases=len(completed),
            skipped_phases=len(skipped),
            progress_percentage=(
                round(100.0 * (len(completed) + len(skipped)) / total, 1) if total else 0.0
            ),
            total_estimated_minutes=sum(p.estimated_minutes for p in ordered),
            total_actual_minutes=round(sum(p.actual_minutes or 0.0 for p in completed), 2),
        )

        pending = [p for p in ordered if not p.is_terminal]
        self.current_phase = pending[0].phase_id if pending else None

        if self.status == ChangeStatus.ARCHIVED:
            return
        if not pending:
            self.status = ChangeStatus.READY_TO_ARCHIVE
        elif self.status == ChangeStatus.READY_TO_ARCHIVE:
            self.status = ChangeStatus.ACTIVE
        elif self.status == ChangeStatus.BLOCKED and pending[0].status != PhaseStatus.BLOCKED:
            self.status = ChangeStatus.ACTIVE

    # -------------------------------------------------------------------------
    # Invariants
    # -------------------------------------------------------------------------

    def check_invariants(self) -> List[str]:
        """Return a list of invariant violations (empty if consistent)."""
        errors = []
        ordered = self.ordered_phases()

        numbers = [p.number for p in ordered]
        if numbers != list(range(1, len(ordered) + 1)):
            errors.append(f"Phase numbers must be 1..{len(ordered)}, got {numbers}")

        for key, phase in self.phases.items():
            if key != phase.phase_id:
                errors.append(f"Phase key '{key}' does not match phase_id '{phase.phase_id}'")

        if len(self.in_progress_phases()) > 1:
            errors.append("More than one phase is in progress")

        seen_open = False
        for phase in ordered:
            if not phase.is_terminal:
                seen_open = True
            elif seen_open:
                errors.append(
                    f"Phase {phase.phase_id} is {phase.status.value} after an unfinished phase"
                )

        if self.current_phase is None:
            if not self.all_terminal:
                errors.append("current_phase is unset while phases remain")
            elif self.status not in (ChangeStatus.READY_TO_ARCHIVE, ChangeStatus.ARCHIVED):
                errors.append("All phases are terminal but change is not ready_to_archive")
        else:
            phase = self.phases.get(self.current_phase)
            if phase is None:
                errors.append(f"current_phase '{self.current_phase}' does not exist")
            elif phase.is_terminal:
                errors.append(
                    f"current_phase '{self.current_phase}' is already {phase.status.value}"
                )

        return errors

    def validate_invariants(self) -> None:
        """Raise if any invariant is violated.

        Raises:
            ChangeStateError: With every violation listed
        """
        errors = self.check_invariants()
        if errors:
            raise ChangeStateError(
                f"Change {self.change_id} is inconsistent:\n"
                + "\n".join(f"  - {e}" for e in errors)
            )
