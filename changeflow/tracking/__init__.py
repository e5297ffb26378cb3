"""Activity tracking for changeflow."""

from .activity_logger import (
    ActivityEvent,
    ActivityLogger,
    EventType,
    cleanup_old_sessions,
    find_change_events,
    new_session_id,
)

__all__ = [
    "ActivityEvent",
    "ActivityLogger",
    "EventType",
    "cleanup_old_sessions",
    "find_change_events",
    "new_session_id",
]
