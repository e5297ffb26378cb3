"""Worker-type checklists and the binary validation gate.

Every worker type has a fixed checklist. Pre-work items are checked
against the worker's pre-work report, output requirements against what the
worker produced. Each item is either satisfied or not; there are no
warnings and no partial credit.
"""

from enum import Enum
from typing import Dict, Iterable, List, Optional

from pydantic import BaseModel, Field, field_validator

from .output_parser import OutputParser
from .worker import ChecklistResult, ChecklistStage, ValidationReport, WorkerOutput

GENERIC_WORKER_TYPE = "generic"


class OutputRequirement(str, Enum):
    """Checks applied to what a worker produced."""

    COMPLETION_MARKER = "completion_marker"
    CODE_BLOCK = "code_block"
    TEST_SUMMARY = "test_summary"
    ARTIFACTS = "artifacts"

    @property
    def description(self) -> str:
        return {
            OutputRequirement.COMPLETION_MARKER: "an explicit completion statement",
            OutputRequirement.CODE_BLOCK: "at least one code block",
            OutputRequirement.TEST_SUMMARY: "a test run summary (passed/failed counts)",
            OutputRequirement.ARTIFACTS: "at least one artifact reference",
        }[self]


class ChecklistItem(BaseModel):
    """A pre-work item the worker must address before doing the work."""

    key: str
    description: str
    keywords: List[str] = Field(default_factory=list)

    @field_validator("keywords")
    @classmethod
    def lower_keywords(cls, v: List[str]) -> List[str]:
        return [k.strip().lower() for k in v if k.strip()]


class Checklist(BaseModel):
    """Fixed checklist for one worker type."""

    worker_type: str
    pre_work: List[ChecklistItem] = Field(default_factory=list)
    output: List[OutputRequirement] = Field(default_factory=list)


class ChecklistOverride(BaseModel):
    """Configuration change to a worker type's checklist."""

    pre_work: List[ChecklistItem] = Field(default_factory=list)
    output: List[OutputRequirement] = Field(default_factory=list)
    replace: bool = Field(
        default=False, description="Replace the built-in items instead of extending them"
    )


def _item(key: str, description: str, *keywords: str) -> ChecklistItem:
    return ChecklistItem(key=key, description=description, keywords=list(keywords))


_A = OutputRequirement.ARTIFACTS
_CM = OutputRequirement.COMPLETION_MARKER
_CB = OutputRequirement.CODE_BLOCK
_TS = OutputRequirement.TEST_SUMMARY

DEFAULT_CHECKLISTS: Dict[str, Checklist] = {
    "ux-ui-frontend": Checklist(
        worker_type="ux-ui-frontend",
        pre_work=[
            _item("design_system", "design system review", "design system", "style guide", "tokens"),
            _item("accessibility", "accessibility considerations", "accessibility", "a11y", "aria"),
            _item("responsive", "responsive layout plan", "responsive", "breakpoint", "mobile"),
        ],
        output=[_A, _CM],
    ),
    "frontend": Checklist(
        worker_type="frontend",
        pre_work=[
            _item("components", "component breakdown", "component"),
            _item("api_contract", "API contract review", "api", "endpoint", "contract"),
            _item("state_management", "state management plan", "state"),
        ],
        output=[_A, _CB, _CM],
    ),
    "backend": Checklist(
        worker_type="backend",
        pre_work=[
            _item("api_design", "API design", "endpoint", "api", "route"),
            _item("error_handling", "error handling plan", "error", "exception"),
            _item("auth", "authorization check", "auth", "permission"),
        ],
        output=[_A, _CB, _CM],
    ),
    "database": Checklist(
        worker_type="database",
        pre_work=[
            _item("schema", "schema design", "schema", "table", "column"),
            _item("migration", "migration plan", "migration"),
            _item("indexes", "index review", "index"),
        ],
        output=[_A, _CM],
    ),
    "test-debug": Checklist(
        worker_type="test-debug",
        pre_work=[
            _item("test_plan", "test plan", "test plan", "test cases", "coverage"),
            _item("reproduction", "reproduction steps for failures", "reproduce", "repro", "failing"),
        ],
        output=[_A, _TS, _CM],
    ),
    "integration": Checklist(
        worker_type="integration",
        pre_work=[
            _item("contracts", "interface contracts between parts", "contract", "interface"),
            _item("environment", "environment setup", "environment", "config"),
        ],
        output=[_A, _TS],
    ),
    GENERIC_WORKER_TYPE: Checklist(
        worker_type=GENERIC_WORKER_TYPE,
        pre_work=[_item("plan", "plan of approach", "plan", "approach")],
        output=[_A, _CM],
    ),
}


def apply_override(checklist: Checklist, override: ChecklistOverride) -> Checklist:
    """Extend or replace a checklist with configured items."""
    if override.replace:
        return Checklist(
            worker_type=checklist.worker_type,
            pre_work=list(override.pre_work),
            output=list(override.output),
        )

    keys = {item.key for item in override.pre_work}
    pre_work = [item for item in checklist.pre_work if item.key not in keys]
    pre_work.extend(override.pre_work)

    output = list(checklist.output)
    for requirement in override.output:
        if requirement not in output:
            output.append(requirement)

    return Checklist(worker_type=checklist.worker_type, pre_work=pre_work, output=output)


class ValidationGate:
    """Checks a worker's pre-work report and output against its checklist."""

    def __init__(self, overrides: Optional[Dict[str, ChecklistOverride]] = None):
        """
        Args:
            overrides: Checklist changes keyed by worker type. A key with no
                built-in checklist defines a new one on top of the generic list.
        """
        self.checklists: Dict[str, Checklist] = dict(DEFAULT_CHECKLISTS)
        for worker_type, override in (overrides or {}).items():
            base = self.checklists.get(
                worker_type,
                Checklist(
                    worker_type=worker_type,
                    pre_work=list(DEFAULT_CHECKLISTS[GENERIC_WORKER_TYPE].pre_work),
                    output=list(DEFAULT_CHECKLISTS[GENERIC_WORKER_TYPE].output),
                ),
            )
            self.checklists[worker_type] = apply_override(base, override)

    def checklist_for(self, worker_type: str) -> Checklist:
        """Checklist for a worker type, falling back to the generic one."""
        checklist = self.checklists.get(worker_type)
        if checklist is None:
            generic = self.checklists[GENERIC_WORKER_TYPE]
            checklist = Checklist(
                worker_type=worker_type, pre_work=generic.pre_work, output=generic.output
            )
        return checklist

    def validate(
        self, worker_type: str, pre_work_report: str, output: WorkerOutput
    ) -> ValidationReport:
        """
        Validate one attempt.

        Args:
            worker_type: Worker that produced the output
            pre_work_report: The worker's pre-work report
            output: The worker's output

        Returns:
            Report with one verdict per checklist item, in checklist order
        """
        checklist = self.checklist_for(worker_type)
        items: List[ChecklistResult] = []

        report_text = pre_work_report or ""
        sections = set(OutputParser.extract_sections(report_text))
        lowered = report_text.lower()
        for item in checklist.pre_work:
            satisfied = item.key in sections or any(k in lowered for k in item.keywords)
            items.append(
                ChecklistResult(
                    key=item.key,
                    description=item.description,
                    stage=ChecklistStage.PRE_WORK,
                    satisfied=satisfied,
                )
            )

        for requirement in checklist.output:
            items.append(
                ChecklistResult(
                    key=requirement.value,
                    description=requirement.description,
                    stage=ChecklistStage.OUTPUT,
                    satisfied=self._check_output(requirement, output),
                )
            )

        return ValidationReport(worker_type=worker_type, items=tuple(items))

    @staticmethod
    def _check_output(requirement: OutputRequirement, output: WorkerOutput) -> bool:
        text = "\n".join(part for part in (output.summary, output.raw_output) if part)
        if requirement == OutputRequirement.ARTIFACTS:
            return bool(output.artifacts)
        if requirement == OutputRequirement.CODE_BLOCK:
            return bool(OutputParser.extract_code_blocks(text))
        if requirement == OutputRequirement.TEST_SUMMARY:
            return OutputParser.has_test_summary(text)
        if requirement == OutputRequirement.COMPLETION_MARKER:
            return OutputParser.has_completion_marker(text)
        return False

    def known_worker_types(self) -> Iterable[str]:
        return sorted(self.checklists)
