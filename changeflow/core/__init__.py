"""Core changeflow functionality."""

from .change_state import (
    ChangeMeta,
    ChangeState,
    HumanAssignment,
    ParallelWorkers,
    PhaseRecord,
    PhaseTransition,
    SingleWorker,
    WorkerAssignment,
    coerce_assignment,
)
from .exceptions import (
    ActivityTrackingError,
    ChangeflowError,
    ChangeStateError,
    ConfigurationError,
    EscalationRequired,
    ExecutionError,
    StructuralBlock,
    TemplateError,
    WorkerError,
    WorkerOutputParseError,
    WorkerTimeoutError,
)
from .output_parser import OutputParser
from .phase_graph import PhaseGraph, RunnablePhase
from .phase_state import (
    ChangeStatus,
    PhaseStatus,
    StateTransitionError,
    get_valid_next_states,
    is_terminal_state,
    is_valid_transition,
)
from .state_persistence import ChangeStateStore, StatePersistenceError
from .templates import (
    BUILTIN_TEMPLATES,
    ChangeTemplate,
    PhaseDefinition,
    builtin_template,
    find_template,
    list_templates,
    load_template_from_yaml,
    parse_template,
    template_to_yaml,
)
from .validation_gate import Checklist, ChecklistItem, ChecklistOverride, ValidationGate
from .worker import (
    ChecklistResult,
    InvocationLog,
    InvocationOutcome,
    ValidationReport,
    WorkerInterface,
    WorkerInvocation,
    WorkerOutput,
    WorkerRegistry,
    WorkerRequest,
)
from .worker_invoker import SubprocessWorker, WorkerInvoker, build_registry

__all__ = [
    # Exceptions
    "ChangeflowError",
    "ConfigurationError",
    "TemplateError",
    "ChangeStateError",
    "ExecutionError",
    "ActivityTrackingError",
    "WorkerError",
    "WorkerTimeoutError",
    "WorkerOutputParseError",
    "StructuralBlock",
    "EscalationRequired",
    "StateTransitionError",
    "StatePersistenceError",
    # Change state
    "ChangeState",
    "ChangeMeta",
    "PhaseRecord",
    "PhaseTransition",
    "ChangeStatus",
    "PhaseStatus",
    "is_valid_transition",
    "get_valid_next_states",
    "is_terminal_state",
    "ChangeStateStore",
    # Assignments
    "WorkerAssignment",
    "SingleWorker",
    "ParallelWorkers",
    "HumanAssignment",
    "coerce_assignment",
    # Templates and graph
    "ChangeTemplate",
    "PhaseDefinition",
    "BUILTIN_TEMPLATES",
    "find_template",
    "list_templates",
    "load_template_from_yaml",
    "parse_template",
    "builtin_template",
    "template_to_yaml",
    "PhaseGraph",
    "RunnablePhase",
    # Worker boundary
    "WorkerRequest",
    "WorkerOutput",
    "WorkerInterface",
    "WorkerRegistry",
    "WorkerInvocation",
    "InvocationOutcome",
    "InvocationLog",
    "WorkerInvoker",
    "SubprocessWorker",
    "build_registry",
    "OutputParser",
    # Validation
    "ValidationGate",
    "ValidationReport",
    "ChecklistResult",
    "Checklist",
    "ChecklistItem",
    "ChecklistOverride",
]
