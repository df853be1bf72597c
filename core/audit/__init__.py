"""Core audit module - sync event publishing and persistence."""

from core.audit.events import (
    EventPublisher,
    EventBackend,
    JSONFileEventBackend,
    InMemoryEventBackend,
    CallbackEventBackend,
    SyncEventType,
    create_sync_event,
    event_from_transition,
)

__all__ = [
    "EventPublisher",
    "EventBackend",
    "JSONFileEventBackend",
    "InMemoryEventBackend",
    "CallbackEventBackend",
    "SyncEventType",
    "create_sync_event",
    "event_from_transition",
]
