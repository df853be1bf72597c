"""SQLite connection helper shared by the mapping store and status tracker.

Each store owns one connection for its lifetime and serializes access with
a lock, so the same store can be used from the event loop and from worker
threads. ``":memory:"`` gives an isolated, non-durable database (tests).
"""

import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union


def connect(db_path: Union[str, Path]) -> sqlite3.Connection:
    """Open a connection configured for the sync stores.

    Args:
        db_path: Database file path, or ":memory:"

    Returns:
        Connection with Row factory and foreign keys enabled
    """
    path = str(db_path)
    if path != ":memory:":
        Path(path).parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(path, check_same_thread=False, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    if path != ":memory:":
        conn.execute("PRAGMA journal_mode = WAL")
    return conn


def to_db_time(value: Optional[datetime]) -> Optional[str]:
    """Aware datetime -> ISO string in UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def from_db_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
