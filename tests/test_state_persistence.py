"""Tests for the file-backed change state store."""

import json
import os

import pytest

from changeflow.core import (
    ChangeStateError,
    ChangeStateStore,
    ChangeStatus,
    PhaseGraph,
    PhaseStatus,
    StatePersistenceError,
)
from changeflow.orchestrator import Decision, EscalationCause, EscalationEvent


@pytest.fixture
def graph(three_phase_template) -> PhaseGraph:
    return PhaseGraph.from_template(three_phase_template)


def _finish(state):
    for phase in state.ordered_phases():
        state.settle_phase(phase.phase_id, PhaseStatus.COMPLETED)


class TestChangeStateStore:
    """Test saving, loading and listing changes."""

    def test_creates_directories(self, tmp_path):
        store = ChangeStateStore(tmp_path / "root")
        assert store.changes_dir.is_dir()
        assert store.archive_dir.is_dir()

    def test_save_and_load(self, store, graph):
        state = graph.create_change("demo", "Demo")
        store.save(state)

        assert store.exists("demo")
        loaded = store.load("demo")
        assert loaded is not None
        assert loaded.change_id == "demo"
        assert loaded.phases["b"].agent.worker_ids == ("frontend", "database")
        assert loaded.meta.total_phases == 3

    def test_state_file_layout(self, store, graph):
        store.save(graph.create_change("demo"))
        data = json.loads(store.state_file("demo").read_text())

        assert data["change_id"] == "demo"
        assert data["template"] == "three-phase"
        assert data["current_phase"] == "a"
        assert data["status"] == "active"
        assert data["phases"]["a"]["number"] == 1
        assert data["phases"]["b"]["agent"] == {
            "kind": "parallel",
            "workers": ["frontend", "database"],
        }
        assert data["meta"]["total_phases"] == 3

    def test_load_missing_returns_none(self, store):
        assert store.load("nope") is None

    def test_require_missing_raises(self, store):
        with pytest.raises(StatePersistenceError, match="changeflow setup nope"):
            store.require("nope")

    def test_load_corrupt_file(self, store):
        store.state_file("broken").write_text("{not json")
        with pytest.raises(StatePersistenceError):
            store.load("broken")

    def test_save_rejects_inconsistent_state(self, store, graph):
        state = graph.create_change("demo")
        state.phases["c"].number = 7
        with pytest.raises(ChangeStateError):
            store.save(state)
        assert not store.exists("demo")

    def test_no_temp_files_left(self, store, graph):
        store.save(graph.create_change("demo"))
        assert not list(store.changes_dir.glob("*.tmp"))

    def test_list_change_ids(self, store, graph):
        store.save(graph.create_change("beta"))
        store.save(graph.create_change("alpha"))
        store.pending_escalation_file("alpha").write_text("{}")
        store.save_pre_dispatch("alpha", store.snapshot("alpha"))

        assert store.list_change_ids() == ["alpha", "beta"]
        assert set(store.load_all()) == {"alpha", "beta"}

    def test_snapshot_restore_is_byte_identical(self, store, graph):
        state = graph.create_change("demo")
        store.save(state)
        before = store.snapshot("demo")

        state.start_phase("a")
        store.save(state)
        assert store.state_file("demo").read_bytes() != before

        store.restore("demo", before)
        assert store.state_file("demo").read_bytes() == before

    def test_snapshot_missing_change(self, store):
        with pytest.raises(StatePersistenceError):
            store.snapshot("nope")

    def test_pre_dispatch_round_trip(self, store, graph):
        store.save(graph.create_change("demo"))
        before = store.snapshot("demo")

        store.save_pre_dispatch("demo", before)
        assert store.load_pre_dispatch("demo") == before

        store.clear_pre_dispatch("demo")
        assert store.load_pre_dispatch("demo") is None
        store.clear_pre_dispatch("demo")


class TestEscalationLog:
    """Test escalation records kept next to the state file."""

    def _event(self) -> EscalationEvent:
        return EscalationEvent(
            change_id="demo",
            phase_id="a",
            phase_name="Phase A",
            cause=EscalationCause.RETRIES_EXHAUSTED,
            summary="failed",
            suspected_cause="missing tests",
        )

    def test_append_and_read(self, store):
        event = self._event().resolve(Decision.SKIP)
        store.append_escalation("demo", event)

        records = store.read_escalations("demo")
        assert len(records) == 1
        assert records[0]["event_id"] == event.event_id
        assert records[0]["decision"] == "skip"

    def test_pending_round_trip(self, store):
        event = self._event()
        store.save_pending_escalation("demo", event)

        data = store.load_pending_escalation("demo")
        assert data["event_id"] == event.event_id

        store.clear_pending_escalation("demo")
        assert store.load_pending_escalation("demo") is None


class TestArchive:
    """Test moving finished changes to the archive."""

    def test_archive_requires_ready_change(self, store, graph):
        store.save(graph.create_change("demo"))
        with pytest.raises(StatePersistenceError, match="ready_to_archive"):
            store.archive("demo")

    def test_archive_moves_and_locks_file(self, store, graph):
        state = graph.create_change("demo")
        _finish(state)
        store.save(state)
        store.append_escalation(
            "demo",
            EscalationEvent(
                change_id="demo",
                phase_id="a",
                phase_name="Phase A",
                cause=EscalationCause.STRUCTURAL_BLOCK,
                summary="blocked",
                suspected_cause="worker missing",
            ).resolve(Decision.RETRY),
        )

        target = store.archive("demo")

        assert target == store.archived_file("demo")
        assert not store.exists("demo")
        assert not os.access(target, os.W_OK) or os.geteuid() == 0
        archived = store.load_archived("demo")
        assert archived.status == ChangeStatus.ARCHIVED
        assert len(store.read_escalations("demo")) == 1
        assert store.list_change_ids() == []
        assert store.list_change_ids(include_archived=True) == ["demo"]

    def test_archive_twice(self, store, graph):
        state = graph.create_change("demo")
        _finish(state)
        store.save(state)
        store.archive("demo")

        with pytest.raises(StatePersistenceError, match="already archived"):
            store.archive("demo")
