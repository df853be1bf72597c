"""Sync status tracking - job/batch state machine and history."""

from core.status.tracker import (
    StatusTracker,
    SQLiteStatusTracker,
    JOB_TRANSITIONS,
    BATCH_TRANSITIONS,
)

__all__ = [
    "StatusTracker",
    "SQLiteStatusTracker",
    "JOB_TRANSITIONS",
    "BATCH_TRANSITIONS",
]
