"""Retry strategy for phase attempts.

This module decides whether a failed attempt is retried, how long to wait
before the next one, and how to summarize a run of failures for a human.
"""

from collections import Counter
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Sequence

from changeflow.core.worker import InvocationOutcome, WorkerInvocation


class RetryDecision(Enum):
    """Decision after an attempt settles."""

    RETRY = "retry"  # Try again with feedback
    ESCALATE = "escalate"  # Budget exhausted, ask a human
    COMPLETE = "complete"  # Attempt succeeded


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""

    max_retries: int = 2
    """Retries allowed after the first attempt"""

    retry_delay: float = 5.0
    """Base delay before a retry, in seconds"""

    backoff_factor: float = 2.0
    """Multiplier applied to the delay for each further retry"""

    max_retry_delay: float = 60.0
    """Upper bound for the delay, in seconds"""

    timeout_weight: float = 1.5
    """Budget units consumed by a timed-out attempt"""


class RetryStrategy:
    """Determines retry behavior for worker attempts."""

    def __init__(self, config: Optional[RetryConfig] = None):
        """Initialize retry strategy.

        Args:
            config: Retry configuration (uses defaults if None)
        """
        self.config = config or RetryConfig()

    @property
    def max_attempts(self) -> int:
        return self.config.max_retries + 1

    def budget_used(self, attempts: Sequence[WorkerInvocation]) -> float:
        """Retry budget consumed by failed attempts.

        A failed attempt costs one unit, a timeout costs ``timeout_weight``.
        """
        used = 0.0
        for attempt in attempts:
            if attempt.succeeded:
                continue
            if attempt.outcome == InvocationOutcome.TIMEOUT:
                used += self.config.timeout_weight
            else:
                used += 1.0
        return used

    def should_retry(self, attempts: Sequence[WorkerInvocation]) -> RetryDecision:
        """Decide what follows the latest attempt of one worker.

        Args:
            attempts: Every settled attempt of the worker, oldest first

        Returns:
            RetryDecision indicating what action to take
        """
        if not attempts:
            return RetryDecision.RETRY

        if attempts[-1].succeeded:
            return RetryDecision.COMPLETE

        if len(attempts) >= self.max_attempts:
            return RetryDecision.ESCALATE

        if self.budget_used(attempts) > self.config.max_retries:
            return RetryDecision.ESCALATE

        return RetryDecision.RETRY

    def get_retry_message(
        self,
        decision: RetryDecision,
        retries_used: int,
        reason: Optional[str] = None,
    ) -> str:
        """Get a human-readable message about the retry decision."""
        if decision == RetryDecision.RETRY:
            msg = f"Retrying (attempt {retries_used + 2}/{self.max_attempts})"
            if reason:
                msg += f": {reason}"
            return msg

        if decision == RetryDecision.ESCALATE:
            msg = f"Escalating after {retries_used + 1} attempt(s)"
            if reason:
                msg += f": {reason}"
            return msg

        if retries_used > 0:
            return f"Completed after {retries_used} retries"
        return "Completed on first attempt"

    def calculate_retry_delay(self, retry_count: int) -> float:
        """Delay before retry number ``retry_count + 1``, in seconds.

        Exponential backoff: 5s, 10s, 20s, 40s, capped at ``max_retry_delay``.
        """
        delay = self.config.retry_delay * (self.config.backoff_factor ** retry_count)
        return min(delay, self.config.max_retry_delay)


class FailureClassifier:
    """Summarizes a run of failed attempts."""

    @staticmethod
    def suspected_cause(attempts: Sequence[WorkerInvocation]) -> str:
        """One-line guess at why the attempts failed.

        Args:
            attempts: Invocations of a phase, oldest first

        Returns:
            Short sentence suitable for an escalation prompt
        """
        failed = [a for a in attempts if not a.succeeded]
        if not failed:
            return "No failed attempts recorded"

        outcomes = Counter(a.outcome for a in failed)
        workers = sorted({a.worker_id for a in failed})
        who = ", ".join(workers)

        if outcomes[InvocationOutcome.TIMEOUT] == len(failed):
            return f"{who} repeatedly exceeded the worker timeout"

        if outcomes[InvocationOutcome.RUNTIME_ERROR] == len(failed):
            errors = Counter((a.error or "unknown error").splitlines()[0] for a in failed)
            error, count = errors.most_common(1)[0]
            if count == len(failed):
                return f"{who} fails the same way every time: {error}"
            if FailureClassifier.is_transient_error(error):
                return f"{who} hit what looks like a transient error: {error}"
            return f"{who} raised errors on every attempt, most recently: {failed[-1].error}"

        missing: Counter = Counter()
        for attempt in failed:
            if attempt.validation is not None:
                missing.update(attempt.validation.missing)
        if missing:
            items = [item for item, _ in missing.most_common(3)]
            return f"Output repeatedly missing: {', '.join(items)}"

        last = failed[-1]
        return last.failure_reason() or f"{last.worker_id} failed ({last.outcome.value})"

    @staticmethod
    def is_transient_error(error_message: str) -> bool:
        """Check if an error is likely transient."""
        transient_patterns = [
            "timeout",
            "network",
            "connection",
            "temporary",
            "unavailable",
            "rate limit",
        ]

        error_lower = error_message.lower()
        return any(pattern in error_lower for pattern in transient_patterns)
