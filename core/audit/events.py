"""Sync event publishing and persistence.

Every status transition recorded by the tracker is turned into a SyncEvent
and handed to the registered backends (the notification/UI layer, a daily
JSON Lines file, memory for tests). Publishing never raises into the engine
and never waits on a consumer.
"""

import json
import threading
import uuid
from abc import ABC, abstractmethod
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional, Union

from core.models.events import EventSeverity, SyncEvent
from core.models.sync import (
    ClassifiedError,
    EntityType,
    StatusTransition,
    SyncBatch,
    SyncJob,
    SyncState,
    utcnow,
)
from core.observability.logging import get_logger

logger = get_logger(__name__)


class SyncEventType(str, Enum):
    """Standard sync event types."""
    # Job events
    JOB_QUEUED = "JOB_QUEUED"
    JOB_STARTED = "JOB_STARTED"
    JOB_COMPLETED = "JOB_COMPLETED"
    JOB_FAILED = "JOB_FAILED"
    JOB_REQUEUED = "JOB_REQUEUED"

    # Batch events
    BATCH_QUEUED = "BATCH_QUEUED"
    BATCH_STARTED = "BATCH_STARTED"
    BATCH_COMPLETED = "BATCH_COMPLETED"
    BATCH_PARTIAL = "BATCH_PARTIAL"
    BATCH_FAILED = "BATCH_FAILED"
    BATCH_CANCEL_REQUESTED = "BATCH_CANCEL_REQUESTED"

    # Mapping events
    MAPPING_UNLINKED = "MAPPING_UNLINKED"


_JOB_EVENTS = {
    SyncState.QUEUED: SyncEventType.JOB_QUEUED,
    SyncState.IN_PROGRESS: SyncEventType.JOB_STARTED,
    SyncState.COMPLETED: SyncEventType.JOB_COMPLETED,
    SyncState.FAILED: SyncEventType.JOB_FAILED,
}

_BATCH_EVENTS = {
    SyncState.QUEUED: SyncEventType.BATCH_QUEUED,
    SyncState.IN_PROGRESS: SyncEventType.BATCH_STARTED,
    SyncState.COMPLETED: SyncEventType.BATCH_COMPLETED,
    SyncState.PARTIAL: SyncEventType.BATCH_PARTIAL,
    SyncState.FAILED: SyncEventType.BATCH_FAILED,
}


def create_sync_event(
    event_type: SyncEventType,
    message: str,
    tenant_id: str,
    entity_type: EntityType,
    severity: EventSeverity = EventSeverity.INFO,
    job_id: Optional[str] = None,
    batch_id: Optional[str] = None,
    local_id: Optional[str] = None,
    remote_id: Optional[str] = None,
    from_state: Optional[SyncState] = None,
    to_state: Optional[SyncState] = None,
    detail: Optional[str] = None,
    error: Optional[ClassifiedError] = None,
    timestamp: Optional[datetime] = None,
) -> SyncEvent:
    """Create a new sync event with auto-generated ID and timestamp."""
    return SyncEvent(
        event_id=str(uuid.uuid4()),
        timestamp=timestamp or utcnow(),
        event_type=event_type.value,
        severity=severity,
        tenant_id=tenant_id,
        entity_type=entity_type,
        job_id=job_id,
        batch_id=batch_id,
        local_id=local_id,
        remote_id=remote_id,
        from_state=from_state,
        to_state=to_state,
        message=message,
        detail=detail,
        error=error,
    )


def event_from_transition(transition: StatusTransition,
                          subject: Union[SyncJob, SyncBatch]) -> SyncEvent:
    """Build the event for one tracker transition."""
    if isinstance(subject, SyncJob):
        if transition.from_state == SyncState.FAILED and transition.to_state == SyncState.QUEUED:
            event_type = SyncEventType.JOB_REQUEUED
        else:
            event_type = _JOB_EVENTS[transition.to_state]
        message = (
            f"{subject.entity_type.value} {subject.record_id}: "
            f"{transition.from_state.value} -> {transition.to_state.value}"
        )
        job_id, batch_id = subject.job_id, subject.batch_id
        local_id, remote_id = subject.local_id, subject.remote_id
    else:
        event_type = _BATCH_EVENTS[transition.to_state]
        message = (
            f"Batch {subject.batch_id} ({subject.entity_type.value}): "
            f"{transition.to_state.value}, {subject.succeeded_count}/{subject.total_count} succeeded"
        )
        job_id, batch_id = None, subject.batch_id
        local_id = remote_id = None

    if transition.to_state == SyncState.FAILED:
        severity = EventSeverity.ERROR
    elif transition.to_state == SyncState.PARTIAL:
        severity = EventSeverity.WARN
    else:
        severity = EventSeverity.INFO

    return create_sync_event(
        event_type,
        message,
        tenant_id=transition.tenant_id,
        entity_type=transition.entity_type,
        severity=severity,
        job_id=job_id,
        batch_id=batch_id,
        local_id=local_id,
        remote_id=remote_id,
        from_state=transition.from_state,
        to_state=transition.to_state,
        detail=transition.detail,
        error=transition.error,
        timestamp=transition.timestamp,
    )


# =============================================================================
# Backends
# =============================================================================

class EventBackend(ABC):
    """Abstract base class for event persistence/delivery backends."""

    @abstractmethod
    def log(self, event: SyncEvent) -> None:
        """Persist or deliver an event."""
        pass

    def query(
        self,
        tenant_id: str,
        event_type: Optional[str] = None,
        job_id: Optional[str] = None,
        batch_id: Optional[str] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[SyncEvent]:
        """Query events with filters. Delivery-only backends return nothing."""
        return []


def _matches(event: SyncEvent, tenant_id: str, event_type: Optional[str], job_id: Optional[str],
             batch_id: Optional[str], start_time: Optional[datetime], end_time: Optional[datetime]) -> bool:
    if event.tenant_id != tenant_id:
        return False
    if event_type and event.event_type != event_type:
        return False
    if job_id and event.job_id != job_id:
        return False
    if batch_id and event.batch_id != batch_id:
        return False
    if start_time and event.timestamp < start_time:
        return False
    if end_time and event.timestamp > end_time:
        return False
    return True


class JSONFileEventBackend(EventBackend):
    """Event backend that stores events in JSON Lines files.

    Stores one file per day in YYYY-MM-DD.jsonl format.
    """

    def __init__(self, base_path: Path):
        """Initialize with base directory for event files."""
        self.base_path = Path(base_path)
        self.base_path.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def _get_file_path(self, day: date) -> Path:
        """Get file path for a given date."""
        return self.base_path / f"{day.strftime('%Y-%m-%d')}.jsonl"

    def log(self, event: SyncEvent) -> None:
        """Append event to daily file."""
        line = event.model_dump_json()
        with self._lock:
            with open(self._get_file_path(event.timestamp.date()), "a", encoding="utf-8") as f:
                f.write(line + "\n")

    def query(
        self,
        tenant_id: str,
        event_type: Optional[str] = None,
        job_id: Optional[str] = None,
        batch_id: Optional[str] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[SyncEvent]:
        """Query events from the daily files."""
        results: List[SyncEvent] = []

        end_time = end_time or utcnow()
        if start_time is None:
            days = sorted(p.stem for p in self.base_path.glob("*.jsonl"))
            current = date.fromisoformat(days[0]) if days else end_time.date()
        else:
            current = start_time.date()

        while current <= end_time.date() and len(results) < limit:
            file_path = self._get_file_path(current)
            if file_path.exists():
                with open(file_path, "r", encoding="utf-8") as f:
                    for line in f:
                        if not line.strip():
                            continue
                        event = SyncEvent.model_validate(json.loads(line))
                        if not _matches(event, tenant_id, event_type, job_id, batch_id, start_time, end_time):
                            continue
                        results.append(event)
                        if len(results) >= limit:
                            break
            current = current + timedelta(days=1)

        return results


class InMemoryEventBackend(EventBackend):
    """In-memory event backend for testing."""

    def __init__(self):
        self._events: List[SyncEvent] = []
        self._lock = threading.Lock()

    def log(self, event: SyncEvent) -> None:
        with self._lock:
            self._events.append(event)

    @property
    def events(self) -> List[SyncEvent]:
        with self._lock:
            return list(self._events)

    def query(
        self,
        tenant_id: str,
        event_type: Optional[str] = None,
        job_id: Optional[str] = None,
        batch_id: Optional[str] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[SyncEvent]:
        results = []
        for event in self.events:
            if not _matches(event, tenant_id, event_type, job_id, batch_id, start_time, end_time):
                continue
            results.append(event)
            if len(results) >= limit:
                break
        return results

    def clear(self) -> None:
        """Clear all events (for testing)."""
        with self._lock:
            self._events.clear()


class CallbackEventBackend(EventBackend):
    """Hands each event to a callable (notification/UI layer)."""

    def __init__(self, callback: Callable[[SyncEvent], None]):
        self._callback = callback

    def log(self, event: SyncEvent) -> None:
        self._callback(event)


# =============================================================================
# Publisher
# =============================================================================

class EventPublisher:
    """Fans sync events out to every registered backend.

    Usage:
        publisher = EventPublisher()
        publisher.add_backend(JSONFileEventBackend(Path("./events")))
        tracker.add_listener(publisher.publish_transition)
    """

    def __init__(self):
        self._backends: List[EventBackend] = []

    def add_backend(self, backend: EventBackend) -> None:
        """Add an event backend."""
        self._backends.append(backend)

    def publish(self, event: SyncEvent) -> None:
        """Deliver event to all backends; backend failures are logged, not raised."""
        for backend in self._backends:
            try:
                backend.log(event)
            except Exception as e:
                logger.warning(f"Event delivery failed for backend {type(backend).__name__}: {e}")

    def publish_transition(self, transition: StatusTransition,
                           subject: Union[SyncJob, SyncBatch]) -> None:
        """Tracker listener: publish the event for a committed transition."""
        self.publish(event_from_transition(transition, subject))

    def publish_unlink(self, tenant_id: str, entity_type: EntityType,
                       local_id: str, remote_id: Optional[str]) -> None:
        self.publish(create_sync_event(
            SyncEventType.MAPPING_UNLINKED,
            f"{EntityType(entity_type).value} {local_id} unlinked from {remote_id}",
            tenant_id=tenant_id,
            entity_type=entity_type,
            local_id=local_id,
            remote_id=remote_id,
        ))

    def publish_cancel_requested(self, batch: SyncBatch) -> None:
        self.publish(create_sync_event(
            SyncEventType.BATCH_CANCEL_REQUESTED,
            f"Cancel requested for batch {batch.batch_id}",
            tenant_id=batch.tenant_id,
            entity_type=batch.entity_type,
            severity=EventSeverity.WARN,
            batch_id=batch.batch_id,
        ))

    def query(
        self,
        tenant_id: str,
        event_type: Optional[str] = None,
        job_id: Optional[str] = None,
        batch_id: Optional[str] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[SyncEvent]:
        """Query events from the first queryable backend."""
        for backend in self._backends:
            results = backend.query(tenant_id, event_type, job_id, batch_id, start_time, end_time, limit)
            if results:
                return results
        return []
