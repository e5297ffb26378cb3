"""Integration tests: full change lifecycles over the built-in templates."""

import pytest

from changeflow.config import ChangeflowConfig
from changeflow.core import ChangeStateStore, ChangeStatus, PhaseStatus, WorkerRegistry
from changeflow.orchestrator import (
    Decision,
    DeferredDecisionProvider,
    DriverState,
    HumanSignal,
    StaticDecisionProvider,
    build_orchestrator,
)
from changeflow.tracking import ActivityLogger, find_change_events
from tests.mocks import ScriptedWorker, bad_output, good_output

FULL_STACK_WORKERS = ("ux-ui-frontend", "backend", "database", "frontend", "test-debug")


@pytest.fixture
def config(tmp_path):
    return ChangeflowConfig(
        engine={"retry_delay": "0s", "worker_timeout": "30s"},
        storage={"root_dir": str(tmp_path / ".changeflow")},
        logging={"output_dir": str(tmp_path / "logs")},
    )


def orchestrator_for(config, workers, provider=None):
    logger = ActivityLogger("e2e", config.get_log_dir(), level="DEBUG")
    return build_orchestrator(
        config,
        logger=logger,
        provider=provider or DeferredDecisionProvider(),
        registry=WorkerRegistry(workers),
    )


@pytest.mark.integration
class TestFullStackLifecycle:
    """Drive a full-stack change from setup to archive."""

    def test_complete_lifecycle(self, config):
        workers = {w: ScriptedWorker(w, [good_output(f"{w}/out.txt")]) for w in FULL_STACK_WORKERS}
        orchestrator = orchestrator_for(config, list(workers.values()))
        orchestrator.setup("login-page", "full-stack", "Add a login page")

        # 1. UI mockup runs, then the UI review waits for a human
        result = orchestrator.run("login-page")
        assert result.outcome == DriverState.AWAITING_HUMAN
        assert result.current_phase == "ui-review"

        # 2. Approve; backend and database fan out, then integration and tests run
        result = orchestrator.run("login-page", human_signal=HumanSignal.approve("Use the brand colors"))
        assert result.outcome == DriverState.AWAITING_HUMAN
        assert result.current_phase == "final-review"
        assert [o.phase_id for o in result.settled] == [
            "ui-review",
            "backend-database",
            "frontend-integration",
            "tests",
        ]

        integration_request = workers["frontend"].requests[0]
        assert integration_request.upstream_artifacts == [
            "ux-ui-frontend/out.txt",
            "backend/out.txt",
            "database/out.txt",
        ]

        # 3. Final review, then archive
        result = orchestrator.run("login-page", human_signal=HumanSignal.proceed())
        assert result.outcome == DriverState.READY_TO_ARCHIVE
        assert result.meta.progress_percentage == 100.0

        store = orchestrator.store
        archive_path = store.archive("login-page")
        assert archive_path.exists()
        assert not store.exists("login-page")

        archived = store.load_archived("login-page")
        assert archived.status == ChangeStatus.ARCHIVED
        assert archived.get_phase("ui-review").feedback == "Use the brand colors"
        assert all(p.is_terminal for p in archived.phases.values())

        events = find_change_events(config.get_log_dir(), "login-page", limit=500)
        types = {e.event_type.value for e in events}
        assert {"change_setup", "phase_dispatch", "worker_invocation", "awaiting_human"} <= types

    def test_reloaded_store_sees_same_state(self, config):
        workers = [ScriptedWorker(w) for w in FULL_STACK_WORKERS]
        orchestrator_for(config, workers).setup("demo", "backend-only")
        orchestrator_for(config, workers).run("demo")

        state = ChangeStateStore(config.get_root_dir()).require("demo")
        assert state.status == ChangeStatus.AWAITING_HUMAN
        assert state.current_phase == "final-review"
        assert state.validate_invariants() is None


@pytest.mark.integration
class TestRecoveryLifecycle:
    """Escalations decided across separate runs."""

    def test_deferred_retry_then_success(self, config):
        backend = ScriptedWorker("backend", [bad_output()] * 3 + [good_output()])
        workers = [backend] + [ScriptedWorker(w) for w in ("database", "test-debug")]
        orchestrator = orchestrator_for(config, workers)
        orchestrator.setup("api", "backend-only")

        blocked = orchestrator.run("api")
        assert blocked.outcome == DriverState.BLOCKED

        # A fresh orchestrator picks up the pending escalation from disk
        resumed = orchestrator_for(config, workers).run("api", resolution=Decision.RETRY)
        assert resumed.outcome == DriverState.AWAITING_HUMAN

        store = ChangeStateStore(config.get_root_dir())
        phase = store.require("api").get_phase("backend-database")
        assert phase.status == PhaseStatus.COMPLETED
        assert phase.retry_count == 3
        assert [r["decision"] for r in store.read_escalations("api")] == ["retry"]

    def test_skip_everything(self, config):
        workers = [ScriptedWorker(w, [bad_output()]) for w in FULL_STACK_WORKERS]
        orchestrator = orchestrator_for(config, workers, StaticDecisionProvider(Decision.SKIP))
        orchestrator.setup("doomed", "backend-only")

        result = orchestrator.run("doomed")
        assert result.outcome == DriverState.AWAITING_HUMAN
        assert result.meta.skipped_phases == 2

        result = orchestrator.run("doomed", human_signal=HumanSignal.proceed())
        assert result.outcome == DriverState.READY_TO_ARCHIVE
        assert result.meta.completed_phases == 1
