"""Bounded retry loop for one phase, with feedback and fan-out.

Each worker of a phase runs its own loop: invoke, validate, and on failure
feed the reason back into the next attempt. A phase assigned to several
workers runs them concurrently and succeeds only if all of them do; the
first member to give up cancels its siblings and the phase escalates.
"""

import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Dict, List, Optional

from changeflow.core.exceptions import EscalationRequired, ExecutionError, StructuralBlock
from changeflow.core.templates import PhaseDefinition
from changeflow.core.validation_gate import ValidationGate
from changeflow.core.worker import (
    InvocationLog,
    InvocationOutcome,
    ValidationReport,
    WorkerInvocation,
    WorkerRegistry,
    WorkerRequest,
)
from changeflow.core.worker_invoker import WorkerInvoker

from .escalation import EscalationCause, EscalationEvent
from .retry_strategy import FailureClassifier, RetryDecision, RetryStrategy

if TYPE_CHECKING:
    from changeflow.tracking.activity_logger import ActivityLogger


class PhaseCancelled(ExecutionError):
    """Raised when a phase run is cancelled from outside."""

    pass


@dataclass
class MemberResult:
    """Outcome of one worker's retry loop."""

    worker_id: str
    success: bool
    attempts: int
    final_report: Optional[ValidationReport] = None
    artifacts: List[str] = field(default_factory=list)
    cancelled: bool = False

    @property
    def retries_used(self) -> int:
        return max(self.attempts - 1, 0)


@dataclass
class PhaseRunResult:
    """Result of running a phase to success."""

    phase_id: str
    success: bool
    retries_used: int
    final_report: Optional[ValidationReport]
    artifacts: List[str]
    invocations: List[WorkerInvocation]
    elapsed_seconds: float
    members: Dict[str, MemberResult] = field(default_factory=dict)


class RetryController:
    """Runs a phase's workers until they pass validation or the budget runs out."""

    def __init__(
        self,
        registry: WorkerRegistry,
        invoker: Optional[WorkerInvoker] = None,
        gate: Optional[ValidationGate] = None,
        strategy: Optional[RetryStrategy] = None,
        logger: Optional["ActivityLogger"] = None,
        worker_timeouts: Optional[Dict[str, float]] = None,
        max_parallel_workers: int = 4,
    ):
        """
        Args:
            registry: Configured workers
            invoker: Worker invoker (default timeout 600s)
            gate: Validation gate with the default checklists
            strategy: Retry strategy (budget and delay curve)
            logger: Activity logger
            worker_timeouts: Per-worker timeout overrides in seconds
            max_parallel_workers: Fan-out concurrency limit
        """
        self.registry = registry
        self.invoker = invoker or WorkerInvoker()
        self.gate = gate or ValidationGate()
        self.strategy = strategy or RetryStrategy()
        self.logger = logger
        self.worker_timeouts = dict(worker_timeouts or {})
        self.max_parallel_workers = max(1, max_parallel_workers)

    def run_with_retry(
        self,
        phase: PhaseDefinition,
        request: WorkerRequest,
        max_retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
        missing_inputs: Optional[List[str]] = None,
    ) -> PhaseRunResult:
        """
        Run a phase until every worker succeeds.

        Args:
            phase: Phase to run
            request: Request for the first attempt; failure reasons are
                appended to its feedback
            max_retries: Retry budget per worker (default: strategy config)
            retry_delay: Fixed delay between attempts (default: backoff curve)
            cancel_event: Shared cancellation flag
            missing_inputs: Upstream inputs known to be unavailable

        Returns:
            PhaseRunResult for the successful run

        Raises:
            EscalationRequired: If the budget is exhausted or the phase is
                structurally blocked
            PhaseCancelled: If ``cancel_event`` was set from outside
        """
        workers = phase.agent.worker_ids
        if not workers:
            raise ExecutionError(f"Phase {phase.phase_id} is a human phase and cannot be dispatched")

        strategy = self.strategy
        if max_retries is not None:
            strategy = RetryStrategy(replace(self.strategy.config, max_retries=max_retries))

        cancel = cancel_event or threading.Event()
        log = InvocationLog(phase.phase_id)
        start = time.monotonic()

        if missing_inputs:
            raise EscalationRequired(
                self._structural_event(
                    phase,
                    request,
                    log,
                    f"required inputs unavailable: {', '.join(missing_inputs)}",
                )
            )

        unknown = self.registry.missing(workers)
        if unknown:
            raise EscalationRequired(
                self._structural_event(
                    phase, request, log, f"worker(s) not configured: {', '.join(unknown)}"
                )
            )

        try:
            if len(workers) == 1:
                members = {
                    workers[0]: self._run_member(
                        workers[0], request, strategy, retry_delay, log, cancel
                    )
                }
            else:
                members = self._fan_out(workers, request, strategy, retry_delay, log, cancel)
        except StructuralBlock as e:
            cancel.set()
            raise EscalationRequired(self._structural_event(phase, request, log, str(e))) from e

        failed = [m for m in members.values() if not m.success and not m.cancelled]
        if failed:
            attempts = sum(m.attempts for m in failed)
            names = ", ".join(m.worker_id for m in failed)
            raise EscalationRequired(
                EscalationEvent(
                    change_id=request.change_id,
                    phase_id=phase.phase_id,
                    phase_name=phase.name,
                    cause=EscalationCause.RETRIES_EXHAUSTED,
                    invocations=list(log.entries),
                    summary=(
                        f"Phase '{phase.name}' failed: {names} exhausted "
                        f"the retry budget after {attempts} attempt(s)"
                    ),
                    suspected_cause=FailureClassifier.suspected_cause(log.entries),
                )
            )

        if any(m.cancelled for m in members.values()):
            raise PhaseCancelled(f"Phase {phase.phase_id} was cancelled")

        artifacts: List[str] = []
        for worker_id in workers:
            for ref in members[worker_id].artifacts:
                if ref not in artifacts:
                    artifacts.append(ref)

        return PhaseRunResult(
            phase_id=phase.phase_id,
            success=True,
            retries_used=max(m.retries_used for m in members.values()),
            final_report=members[workers[-1]].final_report,
            artifacts=artifacts,
            invocations=list(log.entries),
            elapsed_seconds=time.monotonic() - start,
            members=members,
        )

    def _fan_out(
        self,
        workers,
        request: WorkerRequest,
        strategy: RetryStrategy,
        retry_delay: Optional[float],
        log: InvocationLog,
        cancel: threading.Event,
    ) -> Dict[str, MemberResult]:
        """Run every member concurrently; the first failure cancels the rest."""
        members: Dict[str, MemberResult] = {}
        pool_size = min(len(workers), self.max_parallel_workers)

        with ThreadPoolExecutor(max_workers=pool_size, thread_name_prefix="fan-out") as pool:
            futures = {
                pool.submit(
                    self._run_member,
                    worker_id,
                    request.for_worker(worker_id),
                    strategy,
                    retry_delay,
                    log,
                    cancel,
                ): worker_id
                for worker_id in workers
            }
            try:
                for future in as_completed(futures):
                    result = future.result()
                    members[result.worker_id] = result
                    if not result.success and not result.cancelled:
                        cancel.set()
            except StructuralBlock:
                cancel.set()
                raise

        return members

    def _run_member(
        self,
        worker_id: str,
        request: WorkerRequest,
        strategy: RetryStrategy,
        retry_delay: Optional[float],
        log: InvocationLog,
        cancel: threading.Event,
    ) -> MemberResult:
        """Retry loop for one worker."""
        worker = self.registry.get(worker_id)
        timeout = self.worker_timeouts.get(worker_id)
        if not request.worker_type:
            request.worker_type = worker_id
        first_attempt = request.attempt
        attempts: List[WorkerInvocation] = []

        while True:
            if cancel.is_set():
                return MemberResult(worker_id, False, len(attempts), cancelled=True)

            request.attempt = first_attempt + len(attempts)
            invocation, output = self.invoker.run(
                worker, request, timeout=timeout, log=log, cancel_event=cancel
            )

            if cancel.is_set():
                # Discard whatever came back once the phase is cancelled
                return MemberResult(worker_id, False, len(attempts), cancelled=True)

            report: Optional[ValidationReport] = None
            if invocation.outcome == InvocationOutcome.SUCCESS and output is not None:
                report = self.gate.validate(worker_id, output.pre_work_report, output)
                invocation = log.attach_validation(worker_id, report)

            attempts.append(invocation)
            if self.logger:
                self.logger.log_worker_invocation(request.change_id, invocation)

            decision = strategy.should_retry(attempts)
            if decision == RetryDecision.COMPLETE:
                return MemberResult(
                    worker_id,
                    True,
                    len(attempts),
                    final_report=report,
                    artifacts=list(output.artifacts) if output else [],
                )
            if decision == RetryDecision.ESCALATE:
                return MemberResult(worker_id, False, len(attempts), final_report=report)

            reason = invocation.failure_reason() or f"{worker_id} attempt failed"
            request.feedback.append(reason)

            if retry_delay is not None:
                delay = retry_delay
            else:
                delay = strategy.calculate_retry_delay(len(attempts) - 1)

            if self.logger:
                self.logger.log_retry(
                    change_id=request.change_id,
                    phase_id=request.phase_id,
                    worker_id=worker_id,
                    attempt=request.attempt + 1,
                    reason=reason,
                    delay_seconds=delay,
                )

            if delay > 0 and cancel.wait(delay):
                return MemberResult(worker_id, False, len(attempts), cancelled=True)

    @staticmethod
    def _structural_event(
        phase: PhaseDefinition, request: WorkerRequest, log: InvocationLog, reason: str
    ) -> EscalationEvent:
        return EscalationEvent(
            change_id=request.change_id,
            phase_id=phase.phase_id,
            phase_name=phase.name,
            cause=EscalationCause.STRUCTURAL_BLOCK,
            invocations=list(log.entries),
            summary=f"Phase '{phase.name}' cannot run: {reason}",
            suspected_cause=f"Structural block: {reason}",
        )
