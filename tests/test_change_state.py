"""Tests for phase statuses and the change state model."""

import pytest
from pydantic import ValidationError

from changeflow.core import (
    ChangeState,
    ChangeStateError,
    ChangeStatus,
    HumanAssignment,
    ParallelWorkers,
    PhaseGraph,
    PhaseRecord,
    PhaseStatus,
    SingleWorker,
    StateTransitionError,
    get_valid_next_states,
    is_terminal_state,
    is_valid_transition,
)


class TestPhaseStatus:
    """Test PhaseStatus enum and helper functions."""

    def test_valid_transitions(self):
        assert is_valid_transition(PhaseStatus.PENDING, PhaseStatus.IN_PROGRESS)
        assert is_valid_transition(PhaseStatus.PENDING, PhaseStatus.SKIPPED)
        assert is_valid_transition(PhaseStatus.IN_PROGRESS, PhaseStatus.COMPLETED)
        assert is_valid_transition(PhaseStatus.IN_PROGRESS, PhaseStatus.BLOCKED)
        assert is_valid_transition(PhaseStatus.BLOCKED, PhaseStatus.IN_PROGRESS)
        assert is_valid_transition(PhaseStatus.BLOCKED, PhaseStatus.PENDING)

    def test_invalid_transitions(self):
        assert not is_valid_transition(PhaseStatus.PENDING, PhaseStatus.COMPLETED)
        assert not is_valid_transition(PhaseStatus.COMPLETED, PhaseStatus.IN_PROGRESS)
        assert not is_valid_transition(PhaseStatus.SKIPPED, PhaseStatus.PENDING)

    def test_terminal_states(self):
        assert is_terminal_state(PhaseStatus.COMPLETED)
        assert is_terminal_state(PhaseStatus.SKIPPED)
        assert not is_terminal_state(PhaseStatus.BLOCKED)
        assert not is_terminal_state(PhaseStatus.PENDING)

        assert get_valid_next_states(PhaseStatus.COMPLETED) == []
        assert get_valid_next_states(PhaseStatus.SKIPPED) == []


class TestWorkerAssignment:
    """Test the tagged agent notation."""

    def _record(self, agent) -> PhaseRecord:
        return PhaseRecord(phase_id="p", number=1, name="P", agent=agent)

    def test_single_worker(self):
        record = self._record("backend")
        assert isinstance(record.agent, SingleWorker)
        assert record.agent.worker_ids == ("backend",)
        assert not record.is_human

    def test_parallel_workers_from_plus_notation(self):
        record = self._record("frontend+backend")
        assert isinstance(record.agent, ParallelWorkers)
        assert record.agent.worker_ids == ("frontend", "backend")
        assert record.agent.label() == "frontend+backend"

    def test_parallel_workers_from_list(self):
        record = self._record(["frontend", "database"])
        assert isinstance(record.agent, ParallelWorkers)

    def test_human(self):
        record = self._record("Human")
        assert isinstance(record.agent, HumanAssignment)
        assert record.agent.worker_ids == ()
        assert record.is_human

    def test_round_trips_through_json(self):
        record = self._record("frontend+backend")
        restored = PhaseRecord.model_validate_json(record.model_dump_json())
        assert restored.agent == record.agent

    def test_duplicate_parallel_workers_rejected(self):
        with pytest.raises(ValidationError):
            self._record("backend+backend")

    def test_empty_agent_rejected(self):
        with pytest.raises(ValidationError):
            self._record("  ")


@pytest.fixture
def state(three_phase_template) -> ChangeState:
    return PhaseGraph.from_template(three_phase_template).create_change("demo", "Demo change")


class TestChangeState:
    """Test state mutations and derived fields."""

    def test_initial_state(self, state):
        assert state.status == ChangeStatus.ACTIVE
        assert state.current_phase == "a"
        assert [p.number for p in state.ordered_phases()] == [1, 2, 3]
        assert state.meta.total_phases == 3
        assert state.meta.total_estimated_minutes == 80
        assert state.meta.progress_percentage == 0.0
        assert state.check_invariants() == []

    def test_get_unknown_phase(self, state):
        with pytest.raises(ChangeStateError):
            state.get_phase("zzz")

    def test_start_and_complete(self, state):
        state.start_phase("a")
        assert state.get_phase("a").started_at is not None

        changed = state.settle_phase(
            "a", PhaseStatus.COMPLETED, actual_minutes=12.346, retry_count=1, artifacts=["x.py"]
        )

        phase = state.get_phase("a")
        assert changed is True
        assert phase.status == PhaseStatus.COMPLETED
        assert phase.actual_minutes == 12.35
        assert phase.retry_count == 1
        assert phase.artifacts == ["x.py"]
        assert state.current_phase == "b"
        assert state.meta.completed_phases == 1
        assert state.meta.progress_percentage == 33.3

    def test_settle_is_idempotent(self, state):
        state.start_phase("a")
        assert state.settle_phase("a", PhaseStatus.COMPLETED, actual_minutes=5.0)
        history_length = len(state.history)

        assert state.settle_phase("a", PhaseStatus.COMPLETED, actual_minutes=99.0) is False
        assert state.get_phase("a").actual_minutes == 5.0
        assert state.meta.completed_phases == 1
        assert len(state.history) == history_length

    def test_settle_completed_then_skipped_rejected(self, state):
        state.start_phase("a")
        state.settle_phase("a", PhaseStatus.COMPLETED)
        with pytest.raises(StateTransitionError):
            state.settle_phase("a", PhaseStatus.SKIPPED)

    def test_settle_into_non_terminal_rejected(self, state):
        with pytest.raises(ChangeStateError):
            state.settle_phase("a", PhaseStatus.BLOCKED)

    def test_skip_counts_toward_progress(self, state):
        state.settle_phase("a", PhaseStatus.SKIPPED)
        assert state.get_phase("a").status == PhaseStatus.SKIPPED
        assert state.meta.skipped_phases == 1
        assert state.meta.completed_phases == 0
        assert state.current_phase == "b"

    def test_only_one_phase_in_progress(self, state):
        state.start_phase("a")
        with pytest.raises(StateTransitionError, match="already in progress"):
            state.start_phase("b")

    def test_block_and_resume(self, state):
        state.start_phase("a")
        state.block_phase("a", retry_count=2, reason="retries exhausted")

        assert state.status == ChangeStatus.BLOCKED
        assert state.get_phase("a").retry_count == 2

        state.start_phase("a")
        state.refresh()
        assert state.status == ChangeStatus.ACTIVE

    def test_all_terminal_is_ready_to_archive(self, state):
        for phase_id in ("a", "b", "c"):
            state.start_phase(phase_id)
            state.settle_phase(phase_id, PhaseStatus.COMPLETED)

        assert state.current_phase is None
        assert state.status == ChangeStatus.READY_TO_ARCHIVE
        assert state.is_ready_to_archive
        assert state.meta.progress_percentage == 100.0
        assert state.check_invariants() == []

    def test_archived_change_rejects_transitions(self, state):
        state.status = ChangeStatus.ARCHIVED
        with pytest.raises(StateTransitionError):
            state.start_phase("a")

    def test_history_records_transitions(self, state):
        state.start_phase("a", reason="dispatch")
        state.settle_phase("a", PhaseStatus.COMPLETED, reason="validated")

        assert [(t.from_status, t.to_status) for t in state.history] == [
            (PhaseStatus.PENDING, PhaseStatus.IN_PROGRESS),
            (PhaseStatus.IN_PROGRESS, PhaseStatus.COMPLETED),
        ]
        assert state.history[-1].reason == "validated"


class TestInvariants:
    """Test invariant checking on hand-corrupted states."""

    def test_gap_in_numbering(self, state):
        state.phases["c"].number = 5
        assert any("numbers" in e for e in state.check_invariants())

    def test_terminal_after_open_phase(self, state):
        state.phases["b"].status = PhaseStatus.COMPLETED
        errors = state.check_invariants()
        assert any("after an unfinished phase" in e for e in errors)

    def test_two_in_progress(self, state):
        state.phases["a"].status = PhaseStatus.IN_PROGRESS
        state.phases["b"].status = PhaseStatus.IN_PROGRESS
        assert "More than one phase is in progress" in state.check_invariants()

    def test_validate_invariants_raises(self, state):
        state.current_phase = "missing"
        with pytest.raises(ChangeStateError, match="inconsistent"):
            state.validate_invariants()
