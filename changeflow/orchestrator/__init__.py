"""Orchestration layer for driving changes through their phases.

This package provides the retry loop around worker calls, escalation to a
human decision point, and the driver that walks a change's phase graph.
"""

from .driver import (
    ChangeOrchestrator,
    DevelopResult,
    DriverState,
    HumanAction,
    HumanSignal,
    PhaseOutcome,
    build_orchestrator,
)
from .escalation import (
    ConsoleDecisionProvider,
    Decision,
    DecisionProvider,
    DeferredDecisionProvider,
    EscalationCause,
    EscalationEvent,
    EscalationHandler,
    StaticDecisionProvider,
    apply_decision,
)
from .retry_controller import MemberResult, PhaseCancelled, PhaseRunResult, RetryController
from .retry_strategy import FailureClassifier, RetryConfig, RetryDecision, RetryStrategy

__all__ = [
    "ChangeOrchestrator",
    "DevelopResult",
    "DriverState",
    "HumanAction",
    "HumanSignal",
    "PhaseOutcome",
    "build_orchestrator",
    "Decision",
    "DecisionProvider",
    "ConsoleDecisionProvider",
    "StaticDecisionProvider",
    "DeferredDecisionProvider",
    "EscalationCause",
    "EscalationEvent",
    "EscalationHandler",
    "apply_decision",
    "RetryController",
    "PhaseRunResult",
    "MemberResult",
    "PhaseCancelled",
    "RetryStrategy",
    "RetryConfig",
    "RetryDecision",
    "FailureClassifier",
]
