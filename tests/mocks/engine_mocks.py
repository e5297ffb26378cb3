"""Engine wiring over scripted workers."""

from typing import Dict, List, Optional

from changeflow.core import ValidationGate, WorkerInvoker, WorkerRegistry
from changeflow.core.worker import WorkerInterface
from changeflow.orchestrator import RetryConfig, RetryController, RetryStrategy
from changeflow.tracking import ActivityLogger


def make_controller(
    workers: List[WorkerInterface],
    max_retries: int = 2,
    logger: Optional[ActivityLogger] = None,
    timeout: float = 5.0,
    worker_timeouts: Optional[Dict[str, float]] = None,
) -> RetryController:
    """Retry controller over scripted workers with no retry delay."""
    return RetryController(
        registry=WorkerRegistry(workers),
        invoker=WorkerInvoker(default_timeout=timeout),
        gate=ValidationGate(),
        strategy=RetryStrategy(RetryConfig(max_retries=max_retries, retry_delay=0.0)),
        logger=logger,
        worker_timeouts=worker_timeouts,
    )
