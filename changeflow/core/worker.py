"""Worker boundary: requests, outputs and the invocation log.

Workers are opaque. The engine hands a worker a ``WorkerRequest`` and gets
back a ``WorkerOutput``; everything else (timing, outcome, validation
verdict) is recorded by the engine as an immutable ``WorkerInvocation``.
"""

import threading
from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Dict, Iterator, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from .exceptions import StructuralBlock


class ChecklistStage(str, Enum):
    """When a checklist item is checked."""

    PRE_WORK = "pre_work"
    OUTPUT = "output"


class ChecklistResult(BaseModel):
    """Verdict for one checklist item."""

    model_config = ConfigDict(frozen=True)

    key: str
    description: str
    stage: ChecklistStage
    satisfied: bool


class ValidationReport(BaseModel):
    """Binary per-item verdict of the validation gate."""

    model_config = ConfigDict(frozen=True)

    worker_type: str
    items: Tuple[ChecklistResult, ...] = ()

    @property
    def passed(self) -> bool:
        return all(item.satisfied for item in self.items)

    @property
    def missing(self) -> List[str]:
        return [item.description for item in self.items if not item.satisfied]

    def feedback(self) -> str:
        """Text appended to the next attempt's request."""
        if self.passed:
            return ""
        return f"{self.worker_type} output is missing: " + "; ".join(self.missing)


class WorkerRequest(BaseModel):
    """Everything a worker receives for one attempt."""

    change_id: str
    phase_id: str
    phase_name: str
    worker_type: str = ""
    instructions: str = ""
    description: str = Field(default="", description="Change context")
    upstream_artifacts: List[str] = Field(default_factory=list)
    attempt: int = Field(default=1, ge=1)
    feedback: List[str] = Field(default_factory=list)

    def for_worker(self, worker_id: str) -> "WorkerRequest":
        """Independent copy addressed to one worker of a fan-out."""
        return self.model_copy(deep=True, update={"worker_type": worker_id})

    def render(self) -> str:
        """Render the request as the text sent to a subprocess worker."""
        lines = [
            f"# Change: {self.change_id}",
            f"## Phase: {self.phase_name} ({self.phase_id})",
            f"Worker type: {self.worker_type}",
            f"Attempt: {self.attempt}",
            "",
        ]

        if self.description:
            lines += ["## Context", self.description, ""]
        if self.instructions:
            lines += ["## Instructions", self.instructions, ""]
        if self.upstream_artifacts:
            lines.append("## Inputs")
            lines += [f"- {ref}" for ref in self.upstream_artifacts]
            lines.append("")
        if self.feedback:
            lines.append("## Feedback from previous attempts")
            lines += [f"- {note}" for note in self.feedback]
            lines.append("")

        lines += [
            "## Output format",
            "Start with a '## Pre-work' section, then do the work, then finish with",
            "a JSON object: {\"artifacts\": [...], \"summary\": \"...\"}.",
        ]
        return "\n".join(lines)


class WorkerOutput(BaseModel):
    """What a worker returns."""

    pre_work_report: str = ""
    artifacts: List[str] = Field(default_factory=list)
    summary: str = ""
    raw_output: str = ""


class InvocationOutcome(str, Enum):
    """Outcome of one worker call."""

    SUCCESS = "success"
    VALIDATION_FAILED = "validation_failed"
    RUNTIME_ERROR = "runtime_error"
    TIMEOUT = "timeout"


class WorkerInvocation(BaseModel):
    """Immutable record of one worker call."""

    model_config = ConfigDict(frozen=True)

    worker_id: str
    phase_id: str
    attempt: int = Field(..., ge=1)
    started_at: datetime
    ended_at: datetime
    outcome: InvocationOutcome
    artifacts: Tuple[str, ...] = ()
    summary: str = ""
    error: Optional[str] = None
    validation: Optional[ValidationReport] = None

    @property
    def duration_seconds(self) -> float:
        return (self.ended_at - self.started_at).total_seconds()

    @property
    def is_open(self) -> bool:
        """The worker returned normally but no verdict is attached yet."""
        return self.outcome == InvocationOutcome.SUCCESS and self.validation is None

    @property
    def succeeded(self) -> bool:
        return self.outcome == InvocationOutcome.SUCCESS and (
            self.validation is None or self.validation.passed
        )

    def with_validation(self, report: ValidationReport) -> "WorkerInvocation":
        """Settled copy carrying the validation verdict."""
        outcome = (
            InvocationOutcome.SUCCESS if report.passed else InvocationOutcome.VALIDATION_FAILED
        )
        return self.model_copy(update={"validation": report, "outcome": outcome})

    def failure_reason(self) -> Optional[str]:
        """One-line reason this attempt failed, or None if it succeeded."""
        if self.outcome == InvocationOutcome.TIMEOUT:
            return f"{self.worker_id} timed out on attempt {self.attempt}"
        if self.outcome == InvocationOutcome.RUNTIME_ERROR:
            return f"{self.worker_id} failed on attempt {self.attempt}: {self.error}"
        if self.outcome == InvocationOutcome.VALIDATION_FAILED and self.validation:
            return self.validation.feedback()
        return None


class InvocationLog:
    """
    Append-only log of the invocations of one phase.

    Fan-out members share the log, so appends are serialized with a lock.
    The only in-place change allowed is replacing an open attempt with its
    settled copy once the validation verdict is known.
    """

    def __init__(self, phase_id: str):
        self.phase_id = phase_id
        self._entries: List[WorkerInvocation] = []
        self._lock = threading.Lock()

    def append(self, invocation: WorkerInvocation) -> None:
        with self._lock:
            self._entries.append(invocation)

    def attach_validation(self, worker_id: str, report: ValidationReport) -> WorkerInvocation:
        """
        Attach a verdict to the latest open attempt of ``worker_id``.

        Returns:
            The settled invocation

        Raises:
            ValueError: If the worker has no open attempt
        """
        with self._lock:
            for index in range(len(self._entries) - 1, -1, -1):
                entry = self._entries[index]
                if entry.worker_id == worker_id and entry.is_open:
                    settled = entry.with_validation(report)
                    self._entries[index] = settled
                    return settled
        raise ValueError(f"No open invocation for worker {worker_id}")

    @property
    def entries(self) -> Tuple[WorkerInvocation, ...]:
        with self._lock:
            return tuple(self._entries)

    def for_worker(self, worker_id: str) -> List[WorkerInvocation]:
        return [e for e in self.entries if e.worker_id == worker_id]

    def last(self, worker_id: Optional[str] = None) -> Optional[WorkerInvocation]:
        entries = self.for_worker(worker_id) if worker_id else list(self.entries)
        return entries[-1] if entries else None

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __iter__(self) -> Iterator[WorkerInvocation]:
        return iter(self.entries)


class WorkerInterface(ABC):
    """A worker the engine can dispatch a phase to."""

    worker_id: str

    @abstractmethod
    def run(self, request: WorkerRequest) -> WorkerOutput:
        """Perform one attempt.

        Implementations may raise ``StructuralBlock`` when the request can
        never succeed; any other exception counts as a failed attempt.
        """

    def cancel(self) -> None:
        """Stop the attempt in flight, if any.

        Called by the invoker when an attempt times out or the phase is
        cancelled. Its result is discarded either way.
        """


class WorkerRegistry:
    """Worker lookup by id."""

    def __init__(self, workers: Optional[List[WorkerInterface]] = None):
        self._workers: Dict[str, WorkerInterface] = {}
        for worker in workers or []:
            self.register(worker)

    def register(self, worker: WorkerInterface) -> None:
        self._workers[worker.worker_id] = worker

    def get(self, worker_id: str) -> WorkerInterface:
        """
        Raises:
            StructuralBlock: If no worker with that id is configured
        """
        worker = self._workers.get(worker_id)
        if worker is None:
            raise StructuralBlock(
                f"Worker '{worker_id}' is not configured", missing=[worker_id]
            )
        return worker

    def missing(self, worker_ids: Tuple[str, ...]) -> List[str]:
        return [w for w in worker_ids if w not in self._workers]

    def __contains__(self, worker_id: str) -> bool:
        return worker_id in self._workers

    def ids(self) -> List[str]:
        return sorted(self._workers)
