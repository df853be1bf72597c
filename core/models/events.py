"""Sync event model published to the notification layer."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from core.models.sync import ClassifiedError, EntityType, SyncState, utcnow


class EventSeverity(str, Enum):
    """Severity levels for sync events."""
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"


class SyncEvent(BaseModel):
    """A status/history event for display and troubleshooting."""
    event_id: str = Field(..., description="Unique event identifier")
    timestamp: datetime = Field(default_factory=utcnow)
    event_type: str = Field(..., description="Type of event (JOB_COMPLETED, BATCH_PARTIAL, ...)")
    severity: EventSeverity = Field(default=EventSeverity.INFO)

    # Context
    tenant_id: str
    entity_type: EntityType
    job_id: Optional[str] = None
    batch_id: Optional[str] = None
    local_id: Optional[str] = None
    remote_id: Optional[str] = None

    # Transition
    from_state: Optional[SyncState] = None
    to_state: Optional[SyncState] = None

    message: str
    detail: Optional[str] = None
    error: Optional[ClassifiedError] = None
