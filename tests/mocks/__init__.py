"""Mock utilities for testing."""

from .engine_mocks import make_controller
from .worker_mocks import (
    Delayed,
    MockResponseLibrary,
    ScriptedWorker,
    bad_output,
    good_output,
)

__all__ = [
    "Delayed",
    "MockResponseLibrary",
    "ScriptedWorker",
    "bad_output",
    "good_output",
    "make_controller",
]
