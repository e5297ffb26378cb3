"""Driver loop that walks a change through its phases.

Per iteration the driver asks the phase graph what runs next, then either
waits for a human, applies a pending resolution, or dispatches the phase to
the retry controller and commits the outcome. Only one non-human phase of a
change is ever in flight.
"""

import threading
import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Dict, List, Optional

from rich.console import Console

from changeflow.core.change_state import ChangeMeta, ChangeState, utcnow
from changeflow.core.exceptions import ChangeStateError, EscalationRequired
from changeflow.core.phase_graph import PhaseGraph, RunnablePhase
from changeflow.core.phase_state import ChangeStatus, PhaseStatus
from changeflow.core.state_persistence import ChangeStateStore
from changeflow.core.templates import ChangeTemplate, find_template
from changeflow.core.validation_gate import ValidationGate
from changeflow.core.worker import WorkerRegistry, WorkerRequest
from changeflow.core.worker_invoker import WorkerInvoker, build_registry

from .escalation import (
    ConsoleDecisionProvider,
    Decision,
    DecisionProvider,
    DeferredDecisionProvider,
    EscalationCause,
    EscalationEvent,
    EscalationHandler,
    apply_decision,
)
from .retry_controller import PhaseCancelled, RetryController
from .retry_strategy import RetryStrategy

if TYPE_CHECKING:
    from changeflow.config.models import ChangeflowConfig
    from changeflow.tracking.activity_logger import ActivityLogger


class DriverState(str, Enum):
    """Where the driver loop is, or where it stopped."""

    IDLE = "idle"
    DISPATCHING = "dispatching"
    AWAITING_HUMAN = "awaiting_human"
    SETTLING = "settling"
    BLOCKED = "blocked"
    ABORTED = "aborted"
    READY_TO_ARCHIVE = "ready_to_archive"


class HumanAction(str, Enum):
    """Continuation signals for a human phase."""

    CONTINUE = "continue"
    APPROVE_WITH_FEEDBACK = "approve_with_feedback"


@dataclass(frozen=True)
class HumanSignal:
    """A human's go-ahead for the current human phase."""

    action: HumanAction
    feedback: Optional[str] = None

    @classmethod
    def proceed(cls) -> "HumanSignal":
        return cls(HumanAction.CONTINUE)

    @classmethod
    def approve(cls, feedback: str) -> "HumanSignal":
        return cls(HumanAction.APPROVE_WITH_FEEDBACK, feedback)


@dataclass
class PhaseOutcome:
    """What one driver step committed."""

    phase_id: str
    status: PhaseStatus
    retry_count: int = 0
    actual_minutes: Optional[float] = None
    artifacts: List[str] = field(default_factory=list)


@dataclass
class DevelopResult:
    """Result of one ``run`` of the driver."""

    change_id: str
    outcome: DriverState
    status: ChangeStatus
    current_phase: Optional[str]
    meta: ChangeMeta
    settled: List[PhaseOutcome] = field(default_factory=list)
    escalation: Optional[EscalationEvent] = None
    message: str = ""
    duration_seconds: float = 0.0


@dataclass
class _Dispatch:
    """Internal result of dispatching one phase."""

    state: ChangeState
    outcome: Optional[PhaseOutcome] = None
    stop: Optional[DriverState] = None
    escalation: Optional[EscalationEvent] = None
    message: str = ""


class ChangeOrchestrator:
    """Drives a change through its phase graph."""

    def __init__(
        self,
        store: ChangeStateStore,
        controller: RetryController,
        escalation: EscalationHandler,
        logger: Optional["ActivityLogger"] = None,
        templates_dir: Optional[Path] = None,
        templates: Optional[Dict[str, ChangeTemplate]] = None,
        max_retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
    ):
        """Initialize the orchestrator.

        Args:
            store: Change state store
            controller: Retry controller used for worker phases
            escalation: Escalation handler
            logger: Activity logger
            templates_dir: Directory of project templates
            templates: Templates by name, consulted before templates_dir
            max_retries: Retry budget override (default: controller strategy)
            retry_delay: Fixed retry delay override (default: backoff curve)
        """
        self.store = store
        self.controller = controller
        self.escalation = escalation
        self.logger = logger
        self.templates_dir = templates_dir
        self.templates = dict(templates or {})
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.driver_state = DriverState.IDLE
        self._graphs: Dict[str, PhaseGraph] = {}
        self._cancel: Optional[threading.Event] = None

    # -------------------------------------------------------------------------
    # Setup
    # -------------------------------------------------------------------------

    def graph_for(self, template_name: str) -> PhaseGraph:
        """Phase graph for a template, built once and cached."""
        graph = self._graphs.get(template_name)
        if graph is None:
            template = self.templates.get(template_name) or find_template(
                template_name, self.templates_dir
            )
            graph = PhaseGraph.from_template(template)
            self._graphs[template_name] = graph
        return graph

    def setup(self, change_id: str, template_name: str, description: str = "") -> ChangeState:
        """
        Create and persist a new change.

        Raises:
            ChangeStateError: If the change already exists
            TemplateError: If the template cannot be resolved
        """
        if self.store.exists(change_id) or self.store.archived_file(change_id).exists():
            raise ChangeStateError(f"Change '{change_id}' already exists")

        graph = self.graph_for(template_name)
        state = graph.create_change(change_id, description)
        self.store.save(state)

        if self.logger:
            self.logger.log_change_setup(
                change_id, template_name, [p.phase_id for p in graph.phases]
            )
        return state

    # -------------------------------------------------------------------------
    # Driver loop
    # -------------------------------------------------------------------------

    def cancel(self) -> None:
        """Cancel the phase in flight; the run ends as aborted."""
        if self._cancel is not None:
            self._cancel.set()

    def run(
        self,
        change_id: str,
        max_steps: Optional[int] = None,
        human_signal: Optional[HumanSignal] = None,
        resolution: Optional[Decision] = None,
    ) -> DevelopResult:
        """
        Drive a change until it needs a human, is blocked, or is done.

        Args:
            change_id: Change identifier
            max_steps: Stop after this many phase steps (None: no limit)
            human_signal: Continuation for a human phase, consumed once
            resolution: Decision for a blocked phase, consumed once

        Returns:
            DevelopResult describing where the driver stopped

        Raises:
            ChangeStateError: If the change is archived
            StatePersistenceError: If the change does not exist
        """
        start = time.monotonic()
        state = self.store.require(change_id)
        if state.status == ChangeStatus.ARCHIVED:
            raise ChangeStateError(f"Change '{change_id}' is archived")

        graph = self.graph_for(state.template)
        graph.check_matches(state)

        settled: List[PhaseOutcome] = []
        steps = 0
        self.driver_state = DriverState.IDLE

        def finish(
            outcome: DriverState, message: str = "", event: Optional[EscalationEvent] = None
        ) -> DevelopResult:
            self.driver_state = outcome
            return DevelopResult(
                change_id=change_id,
                outcome=outcome,
                status=state.status,
                current_phase=state.current_phase,
                meta=state.meta.model_copy(),
                settled=settled,
                escalation=event,
                message=message,
                duration_seconds=time.monotonic() - start,
            )

        while True:
            self.driver_state = DriverState.IDLE
            if steps > 0:
                # Signals only answer the phase that was waiting when the run began
                human_signal = resolution = None
            runnable = graph.next_runnable(state)

            if runnable is None:
                state.refresh()
                self.store.save(state)
                return finish(DriverState.READY_TO_ARCHIVE, "All phases are complete")

            if max_steps is not None and steps >= max_steps:
                return finish(DriverState.IDLE, f"Stopped after {steps} step(s)")

            snapshot: Optional[bytes] = None
            resumed_attempts = 0

            if runnable.is_blocked:
                if resolution is None:
                    state.status = ChangeStatus.BLOCKED
                    self.store.save(state)
                    return finish(
                        DriverState.BLOCKED,
                        f"Phase '{runnable.phase_id}' is blocked; use --retry, --skip or --abort",
                        self.escalation.pending(change_id),
                    )

                decision, resolution = resolution, None
                pre_dispatch = self.store.load_pre_dispatch(change_id)
                snapshot = pre_dispatch or self.store.snapshot(change_id)
                resumed_attempts = runnable.record.retry_count + 1
                self._resolve_pending(state, runnable, decision)
                self.store.clear_pre_dispatch(change_id)

                if decision == Decision.ABORT:
                    if pre_dispatch is not None:
                        self.store.restore(change_id, pre_dispatch)
                        state = self.store.require(change_id)
                        message = (
                            f"Phase '{runnable.phase_id}' aborted; "
                            "change restored to its pre-dispatch state"
                        )
                    else:
                        state.transition_phase(
                            runnable.phase_id,
                            PhaseStatus.PENDING,
                            reason="aborted after escalation",
                        )
                        state.status = ChangeStatus.ACTIVE
                        self.store.save(state)
                        message = f"Phase '{runnable.phase_id}' reset to pending"
                    if self.logger:
                        self.logger.log_change_aborted(
                            change_id, runnable.phase_id, "blocked phase aborted"
                        )
                    return finish(DriverState.ABORTED, message)

                state = apply_decision(state, runnable.phase_id, decision)
                self.store.save(state)
                if decision == Decision.SKIP:
                    settled.append(PhaseOutcome(runnable.phase_id, PhaseStatus.SKIPPED))
                    steps += 1
                    continue

            elif runnable.is_human:
                if human_signal is None:
                    state.status = ChangeStatus.AWAITING_HUMAN
                    self.store.save(state)
                    if self.logger:
                        self.logger.log_awaiting_human(
                            change_id, runnable.phase_id, runnable.definition.name
                        )
                    return finish(
                        DriverState.AWAITING_HUMAN,
                        f"Waiting for human on '{runnable.definition.name}'",
                    )

                signal, human_signal = human_signal, None
                settled.append(self._settle_human(state, runnable, signal))
                steps += 1
                continue

            steps += 1
            dispatch = self._dispatch(state, graph, runnable, snapshot, resumed_attempts)
            state = dispatch.state
            if dispatch.outcome is not None:
                settled.append(dispatch.outcome)
            if dispatch.stop is not None:
                return finish(dispatch.stop, dispatch.message, dispatch.escalation)

    def _settle_human(
        self, state: ChangeState, runnable: RunnablePhase, signal: HumanSignal
    ) -> PhaseOutcome:
        """Complete a human phase from a continuation signal."""
        phase_id = runnable.phase_id
        feedback = signal.feedback if signal.action == HumanAction.APPROVE_WITH_FEEDBACK else None
        minutes = self._minutes_since(self._waiting_since(state, runnable))

        state.status = ChangeStatus.ACTIVE
        state.settle_phase(
            phase_id,
            PhaseStatus.COMPLETED,
            actual_minutes=minutes,
            feedback=feedback,
            reason=signal.action.value,
        )
        self.store.save(state)
        if self.logger:
            self.logger.log_phase_settled(
                state.change_id, phase_id, PhaseStatus.COMPLETED.value, minutes
            )
        return PhaseOutcome(phase_id, PhaseStatus.COMPLETED, 0, minutes)

    def _dispatch(
        self,
        state: ChangeState,
        graph: PhaseGraph,
        runnable: RunnablePhase,
        snapshot: Optional[bytes],
        attempts_so_far: int,
    ) -> _Dispatch:
        """Run a worker phase through the retry controller and commit the result."""
        change_id = state.change_id
        phase = runnable.definition
        phase_id = phase.phase_id

        if snapshot is None:
            snapshot = self.store.snapshot(change_id)

        self.driver_state = DriverState.DISPATCHING
        if state.get_phase(phase_id).status != PhaseStatus.IN_PROGRESS:
            state.start_phase(phase_id, reason="dispatch")
        state.status = ChangeStatus.ACTIVE
        self.store.save(state)

        elapsed = 0.0
        while True:
            request = WorkerRequest(
                change_id=change_id,
                phase_id=phase_id,
                phase_name=phase.name,
                instructions=phase.instructions,
                description=state.description,
                upstream_artifacts=graph.upstream_artifacts(phase, state),
                attempt=attempts_so_far + 1,
            )
            if self.logger:
                self.logger.log_phase_dispatch(
                    change_id, phase_id, list(runnable.workers), request.attempt
                )

            self._cancel = threading.Event()
            try:
                result = self.controller.run_with_retry(
                    phase,
                    request,
                    max_retries=self.max_retries,
                    retry_delay=self.retry_delay,
                    cancel_event=self._cancel,
                    missing_inputs=graph.missing_inputs(phase, state),
                )
            except EscalationRequired as e:
                event = e.event
                attempts_so_far += _attempts_per_worker(event)
                elapsed += sum(i.duration_seconds for i in event.invocations)
                decision = self.escalation.escalate(event)

                if decision is None:
                    self.store.save_pre_dispatch(change_id, snapshot)
                    state.block_phase(
                        phase_id, retry_count=max(attempts_so_far - 1, 0), reason=event.summary
                    )
                    self.store.save(state)
                    return _Dispatch(
                        state,
                        stop=DriverState.BLOCKED,
                        escalation=event,
                        message=f"Phase '{phase_id}' is blocked awaiting a decision",
                    )

                if decision == Decision.ABORT:
                    return self._abort(state, phase_id, snapshot, event, "aborted after escalation")

                state = apply_decision(state, phase_id, decision)
                if decision == Decision.SKIP:
                    retry_count = max(attempts_so_far - 1, 0)
                    state.get_phase(phase_id).retry_count = retry_count
                    self.store.save(state)
                    if self.logger:
                        self.logger.log_phase_settled(
                            change_id, phase_id, PhaseStatus.SKIPPED.value, retry_count=retry_count
                        )
                    return _Dispatch(
                        state, outcome=PhaseOutcome(phase_id, PhaseStatus.SKIPPED, retry_count)
                    )

                # Retry with a fresh budget
                self.store.save(state)
                continue
            except PhaseCancelled:
                return self._abort(state, phase_id, snapshot, None, "cancelled")
            except KeyboardInterrupt:
                self._cancel.set()
                self._abort(state, phase_id, snapshot, None, "interrupted")
                raise
            finally:
                self._cancel = None

            break

        self.driver_state = DriverState.SETTLING
        attempts_so_far += result.retries_used + 1
        elapsed += result.elapsed_seconds
        retry_count = attempts_so_far - 1
        minutes = elapsed / 60.0

        state.settle_phase(
            phase_id,
            PhaseStatus.COMPLETED,
            actual_minutes=minutes,
            retry_count=retry_count,
            artifacts=result.artifacts,
            reason="validated",
        )
        self.store.save(state)
        if self.logger:
            self.logger.log_phase_settled(
                change_id, phase_id, PhaseStatus.COMPLETED.value, round(minutes, 2), retry_count
            )
        return _Dispatch(
            state,
            outcome=PhaseOutcome(
                phase_id, PhaseStatus.COMPLETED, retry_count, round(minutes, 2), result.artifacts
            ),
        )

    def _abort(
        self,
        state: ChangeState,
        phase_id: str,
        snapshot: bytes,
        event: Optional[EscalationEvent],
        reason: str,
    ) -> _Dispatch:
        """Put the pre-dispatch bytes back so the change is resumable."""
        self.store.restore(state.change_id, snapshot)
        if self.logger:
            self.logger.log_change_aborted(state.change_id, phase_id, reason)
        return _Dispatch(
            self.store.require(state.change_id),
            stop=DriverState.ABORTED,
            escalation=event,
            message=f"Phase '{phase_id}' {reason}; change restored to its pre-dispatch state",
        )

    def _resolve_pending(
        self, state: ChangeState, runnable: RunnablePhase, decision: Decision
    ) -> None:
        """Resolve the deferred escalation of a blocked phase."""
        event = self.escalation.pending(state.change_id)
        if event is None or event.phase_id != runnable.phase_id:
            event = EscalationEvent(
                change_id=state.change_id,
                phase_id=runnable.phase_id,
                phase_name=runnable.definition.name,
                cause=EscalationCause.RETRIES_EXHAUSTED,
                summary=f"Phase '{runnable.definition.name}' was blocked",
                suspected_cause="Escalation record unavailable",
            )
        self.escalation.resolve(event, decision)

    @staticmethod
    def _waiting_since(state: ChangeState, runnable: RunnablePhase) -> datetime:
        previous = [
            p for p in state.ordered_phases()
            if p.number < runnable.record.number and p.completed_at is not None
        ]
        return previous[-1].completed_at if previous else state.created_at

    @staticmethod
    def _minutes_since(moment: datetime) -> float:
        return max((utcnow() - moment).total_seconds() / 60.0, 0.0)


def _attempts_per_worker(event: EscalationEvent) -> int:
    """Attempts made by the busiest worker in an escalation."""
    counts = Counter(i.worker_id for i in event.invocations)
    return max(counts.values()) if counts else 0


def build_orchestrator(
    config: "ChangeflowConfig",
    store: Optional[ChangeStateStore] = None,
    logger: Optional["ActivityLogger"] = None,
    provider: Optional[DecisionProvider] = None,
    registry: Optional[WorkerRegistry] = None,
    console: Optional[Console] = None,
) -> ChangeOrchestrator:
    """Wire an orchestrator from configuration.

    Args:
        config: Loaded configuration
        store: State store (default: under ``storage.root_dir``)
        logger: Activity logger
        provider: Decision provider (default follows ``escalation.mode``)
        registry: Worker registry (default: subprocess workers from ``workers``)
        console: Console for interactive prompts
    """
    store = store or ChangeStateStore(config.get_root_dir())
    registry = registry or build_registry(
        config.workers, default_timeout=config.engine.worker_timeout_seconds()
    )

    controller = RetryController(
        registry=registry,
        invoker=WorkerInvoker(default_timeout=config.engine.worker_timeout_seconds()),
        gate=ValidationGate(config.validation.checklists),
        strategy=RetryStrategy(config.engine.to_retry_config()),
        logger=logger,
        worker_timeouts=config.get_worker_timeouts(),
        max_parallel_workers=config.engine.max_parallel_workers,
    )

    if provider is None:
        if config.escalation.mode == "defer":
            provider = DeferredDecisionProvider()
        else:
            provider = ConsoleDecisionProvider(console)

    return ChangeOrchestrator(
        store=store,
        controller=controller,
        escalation=EscalationHandler(provider, store=store, logger=logger),
        logger=logger,
        templates_dir=store.root_dir / "templates",
    )
