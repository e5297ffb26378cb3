"""Activity logging for changeflow operations."""

import json
import shutil
import threading
import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field, ValidationError

from changeflow.core.worker import WorkerInvocation

LEVELS = {"DEBUG": 10, "INFO": 20, "WARN": 30, "ERROR": 40}


class EventType(str, Enum):
    """Types of events that can be logged."""

    SESSION_START = "session_start"
    SESSION_END = "session_end"
    CHANGE_SETUP = "change_setup"
    PHASE_DISPATCH = "phase_dispatch"
    WORKER_INVOCATION = "worker_invocation"
    RETRY = "retry"
    PHASE_SETTLED = "phase_settled"
    AWAITING_HUMAN = "awaiting_human"
    ESCALATION_RAISED = "escalation_raised"
    ESCALATION_RESOLVED = "escalation_resolved"
    CHANGE_ABORTED = "change_aborted"
    CHANGE_ARCHIVED = "change_archived"
    ERROR = "error"
    INFO = "info"
    DEBUG = "debug"


EVENT_LEVELS: Dict[EventType, str] = {
    EventType.RETRY: "WARN",
    EventType.ESCALATION_RAISED: "WARN",
    EventType.CHANGE_ABORTED: "WARN",
    EventType.ERROR: "ERROR",
    EventType.DEBUG: "DEBUG",
}


class ActivityEvent(BaseModel):
    """Activity event model."""

    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    event_type: EventType = Field(..., description="Type of event")
    level: str = Field(default="INFO", description="Severity")
    session_id: str = Field(..., description="Session identifier")
    change_id: Optional[str] = Field(None, description="Change identifier")
    phase_id: Optional[str] = Field(None, description="Phase identifier")
    message: str = Field(..., description="Event message")

    # Additional event data
    data: Dict[str, Any] = Field(default_factory=dict, description="Additional event data")

    duration_ms: Optional[int] = Field(None, description="Duration in milliseconds")


def new_session_id() -> str:
    """Session identifier: UTC timestamp plus a short random suffix."""
    now = datetime.now(timezone.utc)
    return f"{now.strftime('%Y%m%d-%H%M%S')}-{uuid.uuid4().hex[:6]}"


class ActivityLogger:
    """Thread-safe JSONL activity logger."""

    def __init__(self, session_id: str, logs_dir: Path, level: str = "INFO"):
        """Initialize activity logger.

        Args:
            session_id: Current session identifier
            logs_dir: Directory to store log files
            level: Events below this level are dropped
        """
        self.session_id = session_id
        self.logs_dir = Path(logs_dir)
        self.session_log_dir = self.logs_dir / "sessions" / session_id
        self.min_level = LEVELS.get(level.upper(), LEVELS["INFO"])

        self.session_log_dir.mkdir(parents=True, exist_ok=True)

        self.main_log_file = self.session_log_dir / "activity.jsonl"
        self.invocations_log_file = self.session_log_dir / "invocations.jsonl"

        # Thread lock for safe concurrent logging
        self._lock = threading.Lock()

    def log_event(
        self,
        event_type: EventType,
        message: str,
        change_id: Optional[str] = None,
        phase_id: Optional[str] = None,
        duration_ms: Optional[int] = None,
        **kwargs,
    ) -> None:
        """Log a general activity event.

        Args:
            event_type: Type of event
            message: Event message
            change_id: Optional change identifier
            phase_id: Optional phase identifier
            duration_ms: Optional duration
            **kwargs: Additional event data
        """
        level = EVENT_LEVELS.get(event_type, "INFO")
        if LEVELS[level] < self.min_level:
            return

        event = ActivityEvent(
            event_type=event_type,
            level=level,
            session_id=self.session_id,
            change_id=change_id,
            phase_id=phase_id,
            message=message,
            duration_ms=duration_ms,
            data=kwargs,
        )
        self._write_event(self.main_log_file, event)

    def log_session_start(self, working_directory: str) -> None:
        self.log_event(
            EventType.SESSION_START,
            f"changeflow session started: {self.session_id}",
            working_directory=working_directory,
        )

    def log_session_end(self, duration_ms: int, **stats) -> None:
        self.log_event(
            EventType.SESSION_END,
            f"changeflow session ended: {self.session_id}",
            duration_ms=duration_ms,
            **stats,
        )

    def log_change_setup(self, change_id: str, template: str, phases: List[str]) -> None:
        self.log_event(
            EventType.CHANGE_SETUP,
            f"Change set up from template '{template}' with {len(phases)} phases",
            change_id=change_id,
            template=template,
            phases=phases,
        )

    def log_phase_dispatch(
        self, change_id: str, phase_id: str, workers: List[str], attempt: int
    ) -> None:
        self.log_event(
            EventType.PHASE_DISPATCH,
            f"Dispatching {phase_id} to {', '.join(workers)}",
            change_id=change_id,
            phase_id=phase_id,
            workers=workers,
            attempt=attempt,
        )

    def log_worker_invocation(self, change_id: str, invocation: WorkerInvocation) -> None:
        """Log one worker call to the activity log and its full record to invocations.jsonl.

        Args:
            change_id: Change identifier
            invocation: Settled invocation record
        """
        duration_ms = int(invocation.duration_seconds * 1000)
        self.log_event(
            EventType.WORKER_INVOCATION,
            f"{invocation.worker_id} attempt {invocation.attempt}: {invocation.outcome.value}",
            change_id=change_id,
            phase_id=invocation.phase_id,
            duration_ms=duration_ms,
            worker_id=invocation.worker_id,
            attempt=invocation.attempt,
            outcome=invocation.outcome.value,
        )
        record = invocation.model_dump(mode="json")
        record["change_id"] = change_id
        self._write_event(self.invocations_log_file, record)

    def log_retry(
        self,
        change_id: str,
        phase_id: str,
        worker_id: str,
        attempt: int,
        reason: str,
        delay_seconds: float,
    ) -> None:
        self.log_event(
            EventType.RETRY,
            f"Retrying {worker_id} (attempt {attempt}) in {delay_seconds:g}s: {reason}",
            change_id=change_id,
            phase_id=phase_id,
            worker_id=worker_id,
            attempt=attempt,
            reason=reason,
            delay_seconds=delay_seconds,
        )

    def log_phase_settled(
        self,
        change_id: str,
        phase_id: str,
        status: str,
        actual_minutes: Optional[float] = None,
        retry_count: int = 0,
    ) -> None:
        self.log_event(
            EventType.PHASE_SETTLED,
            f"Phase {phase_id} {status}",
            change_id=change_id,
            phase_id=phase_id,
            status=status,
            actual_minutes=actual_minutes,
            retry_count=retry_count,
        )

    def log_awaiting_human(self, change_id: str, phase_id: str, phase_name: str) -> None:
        self.log_event(
            EventType.AWAITING_HUMAN,
            f"Waiting for human on '{phase_name}'",
            change_id=change_id,
            phase_id=phase_id,
        )

    def log_escalation_raised(
        self,
        change_id: str,
        phase_id: str,
        event_id: str,
        cause: str,
        attempts: int,
        suspected_cause: str,
    ) -> None:
        self.log_event(
            EventType.ESCALATION_RAISED,
            f"Escalation {event_id} ({cause}) after {attempts} attempt(s): {suspected_cause}",
            change_id=change_id,
            phase_id=phase_id,
            event_id=event_id,
            cause=cause,
            attempts=attempts,
        )

    def log_escalation_resolved(
        self, change_id: str, phase_id: str, event_id: str, decision: str
    ) -> None:
        self.log_event(
            EventType.ESCALATION_RESOLVED,
            f"Escalation {event_id} resolved: {decision}",
            change_id=change_id,
            phase_id=phase_id,
            event_id=event_id,
            decision=decision,
        )

    def log_change_aborted(self, change_id: str, phase_id: Optional[str], reason: str) -> None:
        self.log_event(
            EventType.CHANGE_ABORTED,
            f"Aborted: {reason}",
            change_id=change_id,
            phase_id=phase_id,
            reason=reason,
        )

    def log_change_archived(self, change_id: str, archive_path: str) -> None:
        self.log_event(
            EventType.CHANGE_ARCHIVED,
            f"Change archived to {archive_path}",
            change_id=change_id,
            archive_path=archive_path,
        )

    def log_error(self, error: str, change_id: Optional[str] = None, **kwargs) -> None:
        self.log_event(EventType.ERROR, error, change_id=change_id, error=error, **kwargs)

    def log_info(self, message: str, change_id: Optional[str] = None, **kwargs) -> None:
        self.log_event(EventType.INFO, message, change_id=change_id, **kwargs)

    def get_change_events(self, change_id: str) -> List[ActivityEvent]:
        """Get this session's events for one change."""
        return [e for e in _read_events(self.main_log_file) if e.change_id == change_id]

    def get_recent_events(self, limit: int = 100) -> List[ActivityEvent]:
        """Get recent events from the session."""
        return _read_events(self.main_log_file)[-limit:]

    def _write_event(
        self,
        log_file: Path,
        event: Union[ActivityEvent, BaseModel, Dict[str, Any]],
    ) -> None:
        """Write event to log file in a thread-safe manner."""
        with self._lock:
            try:
                if isinstance(event, BaseModel):
                    event_dict = event.model_dump(mode="json")
                else:
                    event_dict = dict(event)

                if "timestamp" not in event_dict:
                    event_dict["timestamp"] = datetime.now(timezone.utc).isoformat()

                with open(log_file, "a", encoding="utf-8") as f:
                    json.dump(event_dict, f, default=str, separators=(",", ":"))
                    f.write("\n")

            except (OSError, TypeError, ValueError) as e:
                # Fallback: record the failure in the main log if possible
                try:
                    error_event = {
                        "timestamp": datetime.now(timezone.utc).isoformat(),
                        "event_type": "error",
                        "level": "ERROR",
                        "message": f"Failed to write log event: {e}",
                        "session_id": self.session_id,
                    }
                    with open(self.main_log_file, "a", encoding="utf-8") as f:
                        json.dump(error_event, f, separators=(",", ":"))
                        f.write("\n")
                except OSError:
                    pass


def _read_events(log_file: Path) -> List[ActivityEvent]:
    events: List[ActivityEvent] = []
    if not log_file.exists():
        return events

    with open(log_file, "r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                events.append(ActivityEvent(**json.loads(line)))
            except (json.JSONDecodeError, ValidationError):
                continue
    return events


def find_change_events(logs_dir: Path, change_id: str, limit: int = 50) -> List[ActivityEvent]:
    """Collect a change's events across every session, oldest first.

    Args:
        logs_dir: Root log directory
        change_id: Change identifier
        limit: Maximum number of (most recent) events to return
    """
    sessions_dir = Path(logs_dir) / "sessions"
    if not sessions_dir.exists():
        return []

    events: List[ActivityEvent] = []
    for session_dir in sessions_dir.iterdir():
        if session_dir.is_dir():
            events.extend(
                e for e in _read_events(session_dir / "activity.jsonl") if e.change_id == change_id
            )
    events.sort(key=lambda e: e.timestamp)
    return events[-limit:]


def cleanup_old_sessions(logs_dir: Path, retention_days: int) -> int:
    """Delete session directories older than the retention window.

    Returns:
        Number of session directories removed
    """
    sessions_dir = Path(logs_dir) / "sessions"
    if not sessions_dir.exists():
        return 0

    cutoff = datetime.now(timezone.utc) - timedelta(days=retention_days)
    removed = 0
    for session_dir in sessions_dir.iterdir():
        if not session_dir.is_dir():
            continue
        modified = datetime.fromtimestamp(session_dir.stat().st_mtime, tz=timezone.utc)
        if modified < cutoff:
            shutil.rmtree(session_dir)
            removed += 1
    return removed
