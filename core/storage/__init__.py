"""Core storage - local record stores and the SQLite connection helper."""

from core.storage.records import (
    LocalRecordStore,
    InMemoryRecordStore,
    JSONFileRecordStore,
)

__all__ = [
    "LocalRecordStore",
    "InMemoryRecordStore",
    "JSONFileRecordStore",
]
