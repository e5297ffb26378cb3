"""Change template schema, built-in templates and template lookup."""

import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from .change_state import WorkerAssignment, coerce_assignment
from .exceptions import TemplateError

TEMPLATE_SUFFIXES = (".yaml", ".yml")


class PhaseDefinition(BaseModel):
    """One phase of a change template."""

    phase_id: str = Field(..., description="Unique phase identifier")
    name: str = Field(..., description="Human readable phase name")
    agent: WorkerAssignment = Field(..., description="Who performs the phase")
    estimated_minutes: int = Field(default=0, ge=0)
    instructions: str = Field(default="", description="Instructions given to the worker")
    requires: List[str] = Field(
        default_factory=list,
        description="Earlier phases whose artifacts are required inputs",
    )

    @field_validator("phase_id")
    @classmethod
    def validate_phase_id(cls, v: str) -> str:
        """Validate phase ID format."""
        if not re.match(r"^[a-z0-9][a-z0-9-]*$", v):
            raise ValueError(
                "Phase ID must contain only lowercase letters, numbers, and hyphens"
            )
        return v

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Phase name cannot be empty")
        return v.strip()

    @field_validator("agent", mode="before")
    @classmethod
    def parse_agent(cls, v: Any) -> Any:
        """Parse legacy agent notations once, at load time."""
        return coerce_assignment(v)

    @field_validator("estimated_minutes", mode="before")
    @classmethod
    def parse_estimate(cls, v: Any) -> Any:
        """Accept plain minutes or a duration like '1h30m'."""
        if isinstance(v, str) and not v.strip().isdigit():
            minutes = parse_minutes(v)
            if minutes is None:
                raise ValueError(
                    "Invalid duration format. Use minutes or formats like '2h', '30m', '1h30m'"
                )
            return minutes
        return v

    @property
    def is_human(self) -> bool:
        return self.agent.kind == "human"


class ChangeTemplate(BaseModel):
    """Ordered list of phases a change goes through."""

    name: str
    description: str = ""
    phases: List[PhaseDefinition]

    @field_validator("phases")
    @classmethod
    def validate_phases(cls, v: List[PhaseDefinition]) -> List[PhaseDefinition]:
        if not v:
            raise ValueError("A template needs at least one phase")
        return v

    @model_validator(mode="after")
    def validate_references(self) -> "ChangeTemplate":
        """Phase IDs are unique and requires only point backwards."""
        seen: List[str] = []
        for phase in self.phases:
            if phase.phase_id in seen:
                raise ValueError(f"Duplicate phase ID: {phase.phase_id}")
            for required in phase.requires:
                if required not in seen:
                    raise ValueError(
                        f"Phase '{phase.phase_id}' requires '{required}', "
                        f"which is not an earlier phase"
                    )
            seen.append(phase.phase_id)
        return self

    def get_phase(self, phase_id: str) -> Optional[PhaseDefinition]:
        for phase in self.phases:
            if phase.phase_id == phase_id:
                return phase
        return None


def parse_minutes(duration_str: str) -> Optional[int]:
    """Parse a duration string like '1h30m' into whole minutes."""
    duration_str = duration_str.strip().lower()
    match = re.match(r"^(?:(\d+)h)?(?:(\d+)m)?$", duration_str)
    if not match or not duration_str:
        return None

    hours_str, minutes_str = match.groups()
    hours = int(hours_str) if hours_str else 0
    minutes = int(minutes_str) if minutes_str else 0
    return hours * 60 + minutes


# Built-in templates
BUILTIN_TEMPLATES: Dict[str, Dict[str, Any]] = {
    "full-stack": {
        "name": "full-stack",
        "description": "UI mockup, backend and database, integration, tests and review",
        "phases": [
            {
                "phase_id": "ui-mockup",
                "name": "UI Mockup",
                "agent": "ux-ui-frontend",
                "estimated_minutes": 30,
                "instructions": "Design the user-facing screens and components for the change.",
            },
            {
                "phase_id": "ui-review",
                "name": "UI Review",
                "agent": "human",
                "estimated_minutes": 5,
                "instructions": "Review the mockup and approve it or leave feedback.",
            },
            {
                "phase_id": "backend-database",
                "name": "Backend & Database",
                "agent": "backend+database",
                "estimated_minutes": 60,
                "instructions": "Implement the API endpoints and the schema changes they need.",
            },
            {
                "phase_id": "frontend-integration",
                "name": "Frontend Integration",
                "agent": "frontend",
                "estimated_minutes": 45,
                "instructions": "Wire the approved UI to the new backend endpoints.",
                "requires": ["ui-mockup", "backend-database"],
            },
            {
                "phase_id": "tests",
                "name": "Tests",
                "agent": "test-debug",
                "estimated_minutes": 30,
                "instructions": "Write and run tests covering the change end to end.",
                "requires": ["frontend-integration"],
            },
            {
                "phase_id": "final-review",
                "name": "Final Review",
                "agent": "human",
                "estimated_minutes": 10,
                "instructions": "Review the finished change before it is archived.",
            },
        ],
    },
    "backend-only": {
        "name": "backend-only",
        "description": "Backend and database work with tests and review",
        "phases": [
            {
                "phase_id": "backend-database",
                "name": "Backend & Database",
                "agent": "backend+database",
                "estimated_minutes": 60,
                "instructions": "Implement the API endpoints and the schema changes they need.",
            },
            {
                "phase_id": "tests",
                "name": "Tests",
                "agent": "test-debug",
                "estimated_minutes": 30,
                "instructions": "Write and run tests for the new endpoints.",
                "requires": ["backend-database"],
            },
            {
                "phase_id": "final-review",
                "name": "Final Review",
                "agent": "human",
                "estimated_minutes": 10,
                "instructions": "Review the finished change before it is archived.",
            },
        ],
    },
    "frontend-only": {
        "name": "frontend-only",
        "description": "UI work with a review gate, tests and final review",
        "phases": [
            {
                "phase_id": "ui-mockup",
                "name": "UI Mockup",
                "agent": "ux-ui-frontend",
                "estimated_minutes": 30,
                "instructions": "Design the user-facing screens and components for the change.",
            },
            {
                "phase_id": "ui-review",
                "name": "UI Review",
                "agent": "human",
                "estimated_minutes": 5,
                "instructions": "Review the mockup and approve it or leave feedback.",
            },
            {
                "phase_id": "frontend",
                "name": "Frontend Implementation",
                "agent": "frontend",
                "estimated_minutes": 45,
                "instructions": "Implement the approved UI.",
                "requires": ["ui-mockup"],
            },
            {
                "phase_id": "tests",
                "name": "Tests",
                "agent": "test-debug",
                "estimated_minutes": 20,
                "instructions": "Write and run UI tests.",
                "requires": ["frontend"],
            },
            {
                "phase_id": "final-review",
                "name": "Final Review",
                "agent": "human",
                "estimated_minutes": 10,
                "instructions": "Review the finished change before it is archived.",
            },
        ],
    },
}


def parse_template(data: Dict[str, Any], source: str = "<data>") -> ChangeTemplate:
    """Validate raw template data.

    Raises:
        TemplateError: If the data is not a valid template
    """
    if not isinstance(data, dict):
        raise TemplateError(f"Template {source} must be a YAML object, got {type(data).__name__}")
    try:
        return ChangeTemplate(**data)
    except ValidationError as e:
        raise TemplateError(f"Invalid template {source}: {e}") from e


def load_template_from_yaml(file_path: Union[str, Path]) -> ChangeTemplate:
    """Load a change template from a YAML file."""
    file_path = Path(file_path)

    if not file_path.exists():
        raise TemplateError(f"Template file not found: {file_path}")

    try:
        with open(file_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise TemplateError(f"Invalid YAML in {file_path}: {e}") from e

    template = parse_template(data, source=str(file_path))
    if template.name != file_path.stem:
        raise TemplateError(
            f"Template name '{template.name}' does not match file name '{file_path.name}'"
        )
    return template


def builtin_template(name: str) -> Optional[ChangeTemplate]:
    data = BUILTIN_TEMPLATES.get(name)
    if data is None:
        return None
    return parse_template(data, source=f"builtin:{name}")


def list_templates(templates_dir: Optional[Path] = None) -> Dict[str, ChangeTemplate]:
    """
    List available templates.

    Project templates in ``templates_dir`` override built-ins with the
    same name.

    Args:
        templates_dir: Directory of project template files

    Returns:
        Mapping of template name to template
    """
    templates = {name: builtin_template(name) for name in BUILTIN_TEMPLATES}

    if templates_dir is not None and Path(templates_dir).exists():
        for path in sorted(Path(templates_dir).iterdir()):
            if path.suffix in TEMPLATE_SUFFIXES:
                template = load_template_from_yaml(path)
                templates[template.name] = template

    return templates


def find_template(name: str, templates_dir: Optional[Path] = None) -> ChangeTemplate:
    """
    Resolve a template by name.

    Raises:
        TemplateError: If no template with that name exists
    """
    if templates_dir is not None:
        for suffix in TEMPLATE_SUFFIXES:
            path = Path(templates_dir) / f"{name}{suffix}"
            if path.exists():
                return load_template_from_yaml(path)

    template = builtin_template(name)
    if template is None:
        available = ", ".join(sorted(list_templates(templates_dir)))
        raise TemplateError(f"Unknown template '{name}'. Available: {available}")
    return template


def template_to_yaml(template: ChangeTemplate) -> str:
    """Render a template in the compact file format."""
    phases = []
    for phase in template.phases:
        entry: Dict[str, Any] = {
            "phase_id": phase.phase_id,
            "name": phase.name,
            "agent": phase.agent.label(),
            "estimated_minutes": phase.estimated_minutes,
        }
        if phase.instructions:
            entry["instructions"] = phase.instructions
        if phase.requires:
            entry["requires"] = list(phase.requires)
        phases.append(entry)

    data = {"name": template.name, "description": template.description, "phases": phases}
    return yaml.safe_dump(data, sort_keys=False, default_flow_style=False)
