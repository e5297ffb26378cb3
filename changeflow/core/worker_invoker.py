"""Invoke workers under a hard wall-clock timeout.

The invoker owns nothing but the call: it starts the worker on a daemon
thread, waits at most ``timeout`` seconds and records exactly one
``WorkerInvocation``. A call that overruns is stopped through the worker's
``cancel`` hook. Retrying is the retry controller's job.
"""

import os
import shlex
import subprocess
import threading
import time
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

from .change_state import utcnow
from .exceptions import StructuralBlock, WorkerError, WorkerTimeoutError
from .output_parser import OutputParser
from .worker import (
    InvocationLog,
    InvocationOutcome,
    WorkerInterface,
    WorkerInvocation,
    WorkerOutput,
    WorkerRegistry,
    WorkerRequest,
)

DEFAULT_TIMEOUT_SECONDS = 600
CANCEL_POLL_SECONDS = 0.05


class WorkerInvoker:
    """Run one worker call and turn whatever happens into an invocation record."""

    def __init__(self, default_timeout: float = DEFAULT_TIMEOUT_SECONDS):
        """
        Args:
            default_timeout: Timeout in seconds when the caller passes none
        """
        self.default_timeout = default_timeout

    def invoke(
        self,
        worker: WorkerInterface,
        request: WorkerRequest,
        timeout: Optional[float] = None,
        log: Optional[InvocationLog] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> WorkerInvocation:
        """Invoke a worker once.

        Args:
            worker: Worker to call
            request: Request for this attempt
            timeout: Wall-clock limit in seconds (default: invoker default)
            log: Log that receives exactly one record (none if cancelled)
            cancel_event: Stops the call early when set

        Returns:
            Invocation record (validation not yet attached)

        Raises:
            StructuralBlock: If the worker reports an unsatisfiable precondition
        """
        invocation, _ = self.run(worker, request, timeout=timeout, log=log, cancel_event=cancel_event)
        return invocation

    def run(
        self,
        worker: WorkerInterface,
        request: WorkerRequest,
        timeout: Optional[float] = None,
        log: Optional[InvocationLog] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Tuple[WorkerInvocation, Optional[WorkerOutput]]:
        """Like ``invoke`` but also returns the worker output on success."""
        if timeout is None:
            timeout = self.default_timeout

        box: Dict[str, Any] = {}
        done = threading.Event()

        def target() -> None:
            try:
                box["output"] = worker.run(request)
            except Exception as e:
                box["error"] = e
            finally:
                done.set()

        started_at = utcnow()
        thread = threading.Thread(
            target=target,
            name=f"worker-{worker.worker_id}-{request.attempt}",
            daemon=True,
        )
        thread.start()

        finished, cancelled = self._wait(done, timeout, cancel_event)
        ended_at = utcnow()
        if not finished:
            worker.cancel()

        output: Optional[WorkerOutput] = None
        error: Optional[str] = None

        if cancelled:
            outcome = InvocationOutcome.RUNTIME_ERROR
            error = "cancelled"
        elif not finished:
            outcome = InvocationOutcome.TIMEOUT
            error = f"timed out after {timeout:g}s"
        elif "error" in box:
            exc = box["error"]
            if isinstance(exc, StructuralBlock):
                raise exc
            if isinstance(exc, WorkerTimeoutError):
                outcome = InvocationOutcome.TIMEOUT
            else:
                outcome = InvocationOutcome.RUNTIME_ERROR
            error = str(exc) or type(exc).__name__
        elif not isinstance(box.get("output"), WorkerOutput):
            outcome = InvocationOutcome.RUNTIME_ERROR
            error = f"malformed output: expected WorkerOutput, got {type(box.get('output')).__name__}"
        else:
            outcome = InvocationOutcome.SUCCESS
            output = box["output"]

        invocation = WorkerInvocation(
            worker_id=worker.worker_id,
            phase_id=request.phase_id,
            attempt=request.attempt,
            started_at=started_at,
            ended_at=ended_at,
            outcome=outcome,
            artifacts=tuple(output.artifacts) if output else (),
            summary=output.summary if output else "",
            error=error,
        )
        # A cancelled call never counts as an attempt
        if log is not None and not cancelled:
            log.append(invocation)
        return invocation, output

    @staticmethod
    def _wait(
        done: threading.Event, timeout: float, cancel_event: Optional[threading.Event]
    ) -> Tuple[bool, bool]:
        """Wait for ``done``. Returns (finished, cancelled)."""
        if cancel_event is None:
            return done.wait(timeout), False

        deadline = time.monotonic() + timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return done.is_set(), False
            if done.wait(min(CANCEL_POLL_SECONDS, remaining)):
                return True, False
            if cancel_event.is_set():
                return False, True


class SubprocessWorker(WorkerInterface):
    """Worker backed by an external command.

    The rendered request goes to stdin; stdout is parsed with
    ``OutputParser.parse_worker_output``. ``cancel`` kills the running
    process.
    """

    def __init__(
        self,
        worker_id: str,
        command: str,
        working_dir: Optional[Path] = None,
        timeout: Optional[float] = None,
        env: Optional[Mapping[str, str]] = None,
    ):
        """
        Args:
            worker_id: Worker type this command implements
            command: Command line to run
            working_dir: Working directory for the command
            timeout: Process timeout in seconds
            env: Extra environment for the process
        """
        self.worker_id = worker_id
        self.command = command
        self.working_dir = Path(working_dir) if working_dir else Path.cwd()
        self.timeout = timeout
        self.env = dict(env) if env else None
        self._process: Optional[subprocess.Popen] = None
        self._lock = threading.Lock()

    def run(self, request: WorkerRequest) -> WorkerOutput:
        """
        Raises:
            StructuralBlock: If the command does not exist
            WorkerTimeoutError: If the process exceeds its timeout
            WorkerError: If the process exits non-zero or was cancelled
            WorkerOutputParseError: If stdout has no valid result object
        """
        cmd = shlex.split(self.command)
        env = None
        if self.env:
            env = {**os.environ, **self.env}

        with self._lock:
            try:
                process = subprocess.Popen(
                    cmd,
                    stdin=subprocess.PIPE,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    cwd=str(self.working_dir),
                    env=env,
                    text=True,
                )
            except FileNotFoundError as e:
                raise StructuralBlock(
                    f"Worker command not found for '{self.worker_id}': {self.command}",
                    missing=[cmd[0] if cmd else self.command],
                ) from e
            self._process = process

        try:
            stdout, stderr = process.communicate(input=request.render(), timeout=self.timeout)
        except subprocess.TimeoutExpired as e:
            process.kill()
            process.communicate()
            raise WorkerTimeoutError(
                f"Worker '{self.worker_id}' timed out after {self.timeout}s"
            ) from e
        finally:
            with self._lock:
                if self._process is process:
                    self._process = None

        if process.returncode != 0:
            message = f"Worker '{self.worker_id}' exited with code {process.returncode}"
            if stderr:
                message += f": {OutputParser.sanitize_output(stderr, max_length=500)}"
            raise WorkerError(message)

        return OutputParser.parse_worker_output(stdout)

    def cancel(self) -> None:
        with self._lock:
            process = self._process
            if process is not None and process.poll() is None:
                process.kill()


def build_registry(
    workers: Mapping[str, Any], default_timeout: Optional[float] = None
) -> WorkerRegistry:
    """Build a registry of ``SubprocessWorker``s from worker configuration.

    Args:
        workers: Mapping of worker id to config objects exposing ``command``,
            ``working_dir``, ``env`` and ``timeout_seconds()``
        default_timeout: Process timeout for workers that configure none
    """
    registry = WorkerRegistry()
    for worker_id, config in workers.items():
        timeout = config.timeout_seconds()
        registry.register(
            SubprocessWorker(
                worker_id=worker_id,
                command=config.command,
                working_dir=config.working_dir,
                timeout=timeout if timeout is not None else default_timeout,
                env=config.env,
            )
        )
    return registry
