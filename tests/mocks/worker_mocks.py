"""Scripted workers and canned worker output for tests.

Workers here never spawn processes. Each call pops the next entry of a
script: a ``WorkerOutput`` is returned, an exception is raised, and a
``Delayed`` entry sleeps before resolving its inner entry.
"""

import json
import threading
import time
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence

from changeflow.core.worker import WorkerInterface, WorkerOutput, WorkerRequest

# Mentions every keyword of the built-in checklists
FULL_PRE_WORK = """\
- Plan and approach: follow the design system tokens and the style guide
- Accessibility: aria labels, keyboard focus
- Responsive breakpoints for mobile
- Component breakdown and state management
- API endpoint contract and route review, error and exception handling
- Auth and permission checks
- Schema: new table and column, migration plan, index review
- Test plan: test cases and coverage, reproduce the failing case
- Interface contract and environment config
"""


def good_output(*artifacts: str, summary: str = "Phase complete. 12 tests passed.") -> WorkerOutput:
    """Output that passes every built-in checklist."""
    refs = list(artifacts) or ["src/feature.py"]
    raw = (
        "## Pre-work\n"
        f"{FULL_PRE_WORK}\n"
        "```python\n"
        "def feature():\n"
        "    return True\n"
        "```\n"
        f"{summary}\n"
    )
    return WorkerOutput(pre_work_report=FULL_PRE_WORK, artifacts=refs, summary=summary, raw_output=raw)


def bad_output() -> WorkerOutput:
    """Output that fails every built-in checklist."""
    return WorkerOutput(pre_work_report="", artifacts=[], summary="", raw_output="")


@dataclass
class Delayed:
    """Script entry that sleeps before resolving ``then``."""

    seconds: float
    then: Any


class ScriptedWorker(WorkerInterface):
    """Worker that replays a fixed script of outcomes.

    The last entry repeats once the script runs out.
    """

    def __init__(self, worker_id: str, script: Optional[Sequence[Any]] = None):
        self.worker_id = worker_id
        self.script: List[Any] = list(script or [good_output()])
        self.requests: List[WorkerRequest] = []
        self._lock = threading.Lock()

    @property
    def calls(self) -> int:
        return len(self.requests)

    def run(self, request: WorkerRequest) -> WorkerOutput:
        with self._lock:
            self.requests.append(request.model_copy(deep=True))
            index = min(len(self.requests) - 1, len(self.script) - 1)
            entry = self.script[index]
        return self._resolve(entry)

    def _resolve(self, entry: Any) -> WorkerOutput:
        if isinstance(entry, Delayed):
            time.sleep(entry.seconds)
            return self._resolve(entry.then)
        if isinstance(entry, BaseException):
            raise entry
        return entry


class MockResponseLibrary:
    """Library of raw worker stdout for subprocess-level tests."""

    @staticmethod
    def worker_success(artifacts: Optional[List[str]] = None, fenced: bool = True) -> str:
        data = {"artifacts": artifacts or ["src/api/users.py"], "summary": "Work complete. 4 tests passed."}
        body = json.dumps(data, indent=2)
        result = f"```json\n{body}\n```" if fenced else json.dumps(data)
        return (
            "## Pre-work\n"
            f"{FULL_PRE_WORK}\n"
            "## Implementation\n"
            "```python\n"
            "def list_users():\n"
            "    return []\n"
            "```\n\n"
            f"{result}\n"
        )

    @staticmethod
    def worker_without_json() -> str:
        return "## Pre-work\nplan\n\nI could not finish the task.\n"

    @staticmethod
    def worker_bad_artifacts() -> str:
        return '```json\n{"artifacts": "src/a.py", "summary": "done"}\n```\n'
