"""Immutable phase chain built from a change template."""

from dataclasses import dataclass
from typing import List, Optional, Tuple

from .change_state import ChangeState, PhaseRecord
from .exceptions import TemplateError
from .phase_state import PhaseStatus
from .templates import ChangeTemplate, PhaseDefinition


@dataclass(frozen=True)
class RunnablePhase:
    """The phase a driver should act on next."""

    definition: PhaseDefinition
    record: PhaseRecord

    @property
    def phase_id(self) -> str:
        return self.definition.phase_id

    @property
    def workers(self) -> Tuple[str, ...]:
        """Every worker assigned to the phase (empty for human phases)."""
        return self.definition.agent.worker_ids

    @property
    def is_human(self) -> bool:
        return self.definition.is_human

    @property
    def is_fan_out(self) -> bool:
        return len(self.workers) > 1

    @property
    def is_blocked(self) -> bool:
        return self.record.status == PhaseStatus.BLOCKED


class PhaseGraph:
    """
    Ordered chain of phase definitions.

    The graph is built once per change from its template and never changes
    afterwards. It answers "what runs next" for a given ``ChangeState``;
    it never mutates state itself.
    """

    def __init__(self, template_name: str, phases: Tuple[PhaseDefinition, ...]):
        if not phases:
            raise TemplateError(f"Template '{template_name}' has no phases")
        self.template_name = template_name
        self._phases = tuple(phases)
        self._index = {p.phase_id: i for i, p in enumerate(self._phases)}

    @classmethod
    def from_template(cls, template: ChangeTemplate) -> "PhaseGraph":
        return cls(template.name, tuple(template.phases))

    @property
    def phases(self) -> Tuple[PhaseDefinition, ...]:
        return self._phases

    def __len__(self) -> int:
        return len(self._phases)

    def get(self, phase_id: str) -> PhaseDefinition:
        try:
            return self._phases[self._index[phase_id]]
        except KeyError:
            raise TemplateError(
                f"Template '{self.template_name}' has no phase '{phase_id}'"
            ) from None

    def predecessor(self, phase_id: str) -> Optional[PhaseDefinition]:
        index = self._index[phase_id]
        return self._phases[index - 1] if index > 0 else None

    def create_change(self, change_id: str, description: str = "") -> ChangeState:
        """Build the initial state of a change: every phase pending."""
        state = ChangeState(
            change_id=change_id,
            template=self.template_name,
            description=description,
        )
        for number, phase in enumerate(self._phases, start=1):
            state.phases[phase.phase_id] = PhaseRecord(
                phase_id=phase.phase_id,
                number=number,
                name=phase.name,
                agent=phase.agent,
                estimated_minutes=phase.estimated_minutes,
            )
        state.refresh()
        return state

    def check_matches(self, state: ChangeState) -> None:
        """
        Ensure a persisted change still lines up with this graph.

        Raises:
            TemplateError: If phase ids or order differ
        """
        expected = [p.phase_id for p in self._phases]
        actual = [p.phase_id for p in state.ordered_phases()]
        if expected != actual:
            raise TemplateError(
                f"Change {state.change_id} phases {actual} do not match "
                f"template '{self.template_name}' phases {expected}"
            )

    def next_runnable(self, state: ChangeState) -> Optional[RunnablePhase]:
        """
        Find the phase to act on next.

        Args:
            state: Current change state

        Returns:
            The first non-terminal phase whose predecessor is completed or
            skipped, or None when every phase is terminal
        """
        for phase in self._phases:
            record = state.get_phase(phase.phase_id)
            if record.is_terminal:
                continue

            previous = self.predecessor(phase.phase_id)
            if previous is not None and not state.get_phase(previous.phase_id).is_terminal:
                return None
            return RunnablePhase(definition=phase, record=record)

        return None

    def missing_inputs(self, phase: PhaseDefinition, state: ChangeState) -> List[str]:
        """
        List required upstream phases whose output is unavailable.

        A required phase counts as missing when it was skipped or completed
        without producing any artifacts.
        """
        missing = []
        for required in phase.requires:
            record = state.get_phase(required)
            if record.status == PhaseStatus.SKIPPED:
                missing.append(f"{required} (skipped)")
            elif record.status != PhaseStatus.COMPLETED:
                missing.append(f"{required} ({record.status.value})")
            elif not record.artifacts:
                missing.append(f"{required} (no artifacts)")
        return missing

    def upstream_artifacts(self, phase: PhaseDefinition, state: ChangeState) -> List[str]:
        """Artifacts of every completed phase before ``phase``, in order."""
        artifacts: List[str] = []
        for previous in self._phases[: self._index[phase.phase_id]]:
            record = state.get_phase(previous.phase_id)
            if record.status == PhaseStatus.COMPLETED:
                artifacts.extend(record.artifacts)
        return artifacts
