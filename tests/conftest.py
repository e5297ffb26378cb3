"""Shared pytest fixtures and utilities for changeflow tests."""

from pathlib import Path
from typing import Callable, Generator, List, Optional

import pytest

from changeflow.core import ChangeStateStore, ChangeTemplate, parse_template
from changeflow.core.worker import WorkerInterface
from changeflow.orchestrator import (
    ChangeOrchestrator,
    DecisionProvider,
    DeferredDecisionProvider,
    EscalationHandler,
)
from changeflow.tracking import ActivityLogger
from tests.mocks import ScriptedWorker, make_controller


# ============================================================================
# Directory and Store Fixtures
# ============================================================================


@pytest.fixture
def root_dir(tmp_path: Path) -> Generator[Path, None, None]:
    """Create a temporary .changeflow directory.

    Yields:
        Path to the storage root
    """
    root = tmp_path / ".changeflow"
    root.mkdir(parents=True, exist_ok=True)
    yield root


@pytest.fixture
def store(root_dir: Path) -> ChangeStateStore:
    return ChangeStateStore(root_dir)


@pytest.fixture
def logger(tmp_path: Path) -> ActivityLogger:
    return ActivityLogger(session_id="test-session", logs_dir=tmp_path / "logs", level="DEBUG")


@pytest.fixture(autouse=True)
def isolated_global_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep the user's global config out of every test."""
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))


# ============================================================================
# Template Fixtures
# ============================================================================


@pytest.fixture
def three_phase_template() -> ChangeTemplate:
    """A single-worker phase, a two-worker fan-out and a human review."""
    return parse_template(
        {
            "name": "three-phase",
            "description": "Three sequential phases",
            "phases": [
                {"phase_id": "a", "name": "Phase A", "agent": "backend", "estimated_minutes": 30},
                {
                    "phase_id": "b",
                    "name": "Phase B",
                    "agent": "frontend+database",
                    "estimated_minutes": 45,
                },
                {"phase_id": "c", "name": "Phase C", "agent": "human", "estimated_minutes": 5},
            ],
        }
    )


@pytest.fixture
def chained_template() -> ChangeTemplate:
    """Phase B requires the artifacts of phase A."""
    return parse_template(
        {
            "name": "chained",
            "phases": [
                {"phase_id": "a", "name": "Phase A", "agent": "backend"},
                {"phase_id": "b", "name": "Phase B", "agent": "frontend", "requires": ["a"]},
            ],
        }
    )


# ============================================================================
# Engine Fixtures
# ============================================================================


@pytest.fixture
def make_orchestrator(
    store: ChangeStateStore, logger: ActivityLogger
) -> Callable[..., ChangeOrchestrator]:
    """Factory for orchestrators over scripted workers.

    Workers default to passing ``ScriptedWorker``s for every worker id used
    by the fixture templates.
    """

    def _make(
        template: ChangeTemplate,
        workers: Optional[List[WorkerInterface]] = None,
        provider: Optional[DecisionProvider] = None,
        max_retries: int = 2,
    ) -> ChangeOrchestrator:
        if workers is None:
            workers = [ScriptedWorker(w) for w in ("backend", "frontend", "database")]
        return ChangeOrchestrator(
            store=store,
            controller=make_controller(workers, max_retries=max_retries, logger=logger),
            escalation=EscalationHandler(
                provider or DeferredDecisionProvider(), store=store, logger=logger
            ),
            logger=logger,
            templates={template.name: template},
            retry_delay=0.0,
        )

    return _make
