"""Escalation events, human decisions and the pure decision transition."""

from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Prompt
from rich.table import Table

from changeflow.core.change_state import ChangeState, utcnow
from changeflow.core.exceptions import ChangeflowError
from changeflow.core.phase_state import ChangeStatus, PhaseStatus
from changeflow.core.worker import WorkerInvocation

if TYPE_CHECKING:
    from changeflow.core.state_persistence import ChangeStateStore
    from changeflow.tracking.activity_logger import ActivityLogger


class EscalationCause(str, Enum):
    """Why a phase needs a human."""

    RETRIES_EXHAUSTED = "retries_exhausted"
    STRUCTURAL_BLOCK = "structural_block"


class Decision(str, Enum):
    """Human answer to an escalation."""

    RETRY = "retry"
    SKIP = "skip"
    ABORT = "abort"


class EscalationAlreadyResolved(ChangeflowError):
    """Raised when resolving an escalation a second time."""

    pass


class EscalationEvent(BaseModel):
    """A phase that automated recovery could not finish."""

    event_id: str = Field(default_factory=lambda: uuid4().hex[:12])
    change_id: str
    phase_id: str
    phase_name: str
    cause: EscalationCause
    invocations: List[WorkerInvocation] = Field(default_factory=list)
    summary: str
    suspected_cause: str
    raised_at: datetime = Field(default_factory=utcnow)
    decision: Optional[Decision] = None
    resolved_at: Optional[datetime] = None

    @property
    def is_resolved(self) -> bool:
        return self.decision is not None

    def resolve(self, decision: Decision) -> "EscalationEvent":
        """
        Record the decision.

        Raises:
            EscalationAlreadyResolved: If a decision was already recorded
        """
        if self.is_resolved:
            raise EscalationAlreadyResolved(
                f"Escalation {self.event_id} was already resolved with '{self.decision.value}'"
            )
        self.decision = decision
        self.resolved_at = utcnow()
        return self


def apply_decision(state: ChangeState, phase_id: str, decision: Decision) -> ChangeState:
    """
    Apply a human decision to a change.

    Pure: the input state is left untouched and a new state is returned.

    Args:
        state: Current change state
        phase_id: Escalated phase
        decision: Human decision

    Returns:
        ``retry``: the phase back in progress; ``skip``: the phase skipped and
        the change advanced; ``abort``: an unchanged copy
    """
    new_state = state.model_copy(deep=True)
    if decision == Decision.ABORT:
        return new_state

    phase = new_state.get_phase(phase_id)
    if new_state.status in (ChangeStatus.BLOCKED, ChangeStatus.AWAITING_HUMAN):
        new_state.status = ChangeStatus.ACTIVE

    if decision == Decision.RETRY:
        if phase.status != PhaseStatus.IN_PROGRESS:
            new_state.start_phase(phase_id, reason="retry after escalation")
        else:
            new_state.refresh()
    elif decision == Decision.SKIP:
        new_state.settle_phase(phase_id, PhaseStatus.SKIPPED, reason="skipped after escalation")

    return new_state


# =============================================================================
# Presentation
# =============================================================================


def render_event(event: EscalationEvent, console: Console) -> None:
    """Show an escalation: phase, attempt table and suspected cause."""
    console.print(
        Panel(
            f"[bold]{event.phase_name}[/bold] ({event.phase_id}) needs a decision\n"
            f"{event.summary}",
            title=f"[bold yellow]Escalation {event.event_id}[/bold yellow]",
            border_style="yellow",
        )
    )

    if event.invocations:
        table = Table(title="Attempts", show_lines=False)
        table.add_column("#", justify="right")
        table.add_column("Worker", style="cyan")
        table.add_column("Outcome")
        table.add_column("Time", justify="right")
        table.add_column("Detail", overflow="fold")

        for invocation in event.invocations:
            detail = invocation.failure_reason() or "ok"
            style = "green" if invocation.succeeded else "red"
            table.add_row(
                str(invocation.attempt),
                invocation.worker_id,
                f"[{style}]{invocation.outcome.value}[/{style}]",
                f"{invocation.duration_seconds:.1f}s",
                detail,
            )
        console.print(table)

    console.print(f"[bold]Suspected cause:[/bold] {event.suspected_cause}")


# =============================================================================
# Decision providers
# =============================================================================


class DecisionProvider(ABC):
    """Source of human decisions."""

    @abstractmethod
    def decide(self, event: EscalationEvent) -> Optional[Decision]:
        """Return a decision, or None to leave the escalation open."""


class StaticDecisionProvider(DecisionProvider):
    """Always answers with the same decision."""

    def __init__(self, decision: Decision):
        self.decision = decision

    def decide(self, event: EscalationEvent) -> Optional[Decision]:
        return self.decision


class DeferredDecisionProvider(DecisionProvider):
    """Leaves every escalation open for a later explicit resolution."""

    def decide(self, event: EscalationEvent) -> Optional[Decision]:
        return None


class ConsoleDecisionProvider(DecisionProvider):
    """Asks on the terminal."""

    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console()

    def decide(self, event: EscalationEvent) -> Optional[Decision]:
        render_event(event, self.console)
        answer = Prompt.ask(
            "\n[bold]How should this phase proceed?[/bold]",
            choices=[d.value for d in Decision],
            default=Decision.ABORT.value,
            console=self.console,
        )
        return Decision(answer)


class EscalationHandler:
    """Presents escalations and records their resolution."""

    def __init__(
        self,
        provider: DecisionProvider,
        store: Optional["ChangeStateStore"] = None,
        logger: Optional["ActivityLogger"] = None,
    ):
        """
        Args:
            provider: Where decisions come from
            store: Receives resolved events in the change's escalation log
            logger: Activity logger
        """
        self.provider = provider
        self.store = store
        self.logger = logger

    def escalate(self, event: EscalationEvent) -> Optional[Decision]:
        """
        Ask for a decision on an escalation.

        Returns:
            The decision, or None if the provider deferred it
        """
        if self.logger:
            self.logger.log_escalation_raised(
                change_id=event.change_id,
                phase_id=event.phase_id,
                event_id=event.event_id,
                cause=event.cause.value,
                attempts=len(event.invocations),
                suspected_cause=event.suspected_cause,
            )

        decision = self.provider.decide(event)
        if decision is None:
            if self.store:
                self.store.save_pending_escalation(event.change_id, event)
            return None

        self.resolve(event, decision)
        return decision

    def resolve(self, event: EscalationEvent, decision: Decision) -> EscalationEvent:
        """Resolve an event exactly once and record it."""
        event.resolve(decision)
        if self.store:
            self.store.append_escalation(event.change_id, event)
            self.store.clear_pending_escalation(event.change_id)
        if self.logger:
            self.logger.log_escalation_resolved(
                change_id=event.change_id,
                phase_id=event.phase_id,
                event_id=event.event_id,
                decision=decision.value,
            )
        return event

    def pending(self, change_id: str) -> Optional[EscalationEvent]:
        """The open escalation of a change, if one was deferred."""
        if self.store is None:
            return None
        data = self.store.load_pending_escalation(change_id)
        if data is None:
            return None
        return EscalationEvent.model_validate(data)
