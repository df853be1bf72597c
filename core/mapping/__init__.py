"""Mapping store - durable CRM id <-> ERP id correspondence."""

from core.mapping.store import (
    MappingStore,
    SQLiteMappingStore,
)

__all__ = [
    "MappingStore",
    "SQLiteMappingStore",
]
