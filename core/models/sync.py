"""Sync engine data models.

Mappings, jobs, batches and the status history that the engine persists.
All timestamps are timezone-aware UTC.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


# =============================================================================
# Enums
# =============================================================================

class EntityType(str, Enum):
    """Business record types kept in sync with the ERP."""
    CONTACT = "contact"
    PRODUCT = "product"
    SALES_DOCUMENT = "salesDocument"


class SyncDirection(str, Enum):
    """Which side is written by a sync."""
    TO_REMOTE = "toRemote"          # push CRM -> ERP
    FROM_REMOTE = "fromRemote"      # pull ERP -> CRM
    BIDIRECTIONAL = "bidirectional"  # decided per record by the conflict policy


class SyncState(str, Enum):
    """Job and batch states.

    PARTIAL is only ever used for batches.
    """
    IDLE = "idle"
    QUEUED = "queued"
    IN_PROGRESS = "inProgress"
    COMPLETED = "completed"
    FAILED = "failed"
    PARTIAL = "partial"


class ErrorCategory(str, Enum):
    """Classification of a sync failure."""
    VALIDATION = "validation"
    CONFLICT = "conflict"
    TRANSIENT_NETWORK = "transient-network"
    TRANSIENT_RATE_LIMIT = "transient-rate-limit"
    AUTH = "auth"
    DEPENDENCY_UNMAPPED = "dependency-unmapped"
    TIMEOUT = "timeout"
    REMOTE_REJECTED = "remote-rejected"
    CANCELLED = "cancelled"
    INTERNAL = "internal"


TRANSIENT_CATEGORIES = frozenset({
    ErrorCategory.TRANSIENT_NETWORK,
    ErrorCategory.TRANSIENT_RATE_LIMIT,
    ErrorCategory.TIMEOUT,
})

PERMANENT_CATEGORIES = frozenset({
    ErrorCategory.VALIDATION,
    ErrorCategory.CONFLICT,
    ErrorCategory.DEPENDENCY_UNMAPPED,
    ErrorCategory.REMOTE_REJECTED,
    ErrorCategory.CANCELLED,
    ErrorCategory.INTERNAL,
})


# =============================================================================
# Errors as data
# =============================================================================

class FieldError(BaseModel):
    """A single field-level violation found during conversion."""
    field: str = Field(..., description="Dotted path of the offending field")
    code: str = Field(..., description="Machine-readable violation code")
    message: str

    class Config:
        frozen = True


class ClassifiedError(BaseModel):
    """An error attached to a job, with its retry classification.

    Surfaced verbatim to callers: entity ids, remote error body and category.
    """
    category: ErrorCategory
    message: str
    status_code: Optional[int] = Field(default=None, description="Remote HTTP status, if any")
    remote_body: Optional[str] = Field(default=None, description="Raw remote error body")
    retry_after: Optional[float] = Field(default=None, description="Remote Retry-After hint in seconds")
    field_errors: List[FieldError] = Field(default_factory=list)
    entity_type: Optional[EntityType] = None
    local_id: Optional[str] = None
    remote_id: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)

    class Config:
        frozen = True

    @property
    def is_transient(self) -> bool:
        return self.category in TRANSIENT_CATEGORIES

    @property
    def is_permanent(self) -> bool:
        return self.category in PERMANENT_CATEGORIES

    @property
    def requires_reauth(self) -> bool:
        return self.category == ErrorCategory.AUTH


# =============================================================================
# Mapping / Job / Batch
# =============================================================================

class SyncMapping(BaseModel):
    """Correspondence between one CRM record and one ERP record.

    Unique per (tenant_id, entity_type, local_id) and per
    (tenant_id, entity_type, remote_id).
    """
    tenant_id: str
    entity_type: EntityType
    local_id: str
    remote_id: str
    last_local_hash: Optional[str] = Field(default=None, description="Local content hash at last successful sync")
    last_remote_version: Optional[str] = Field(default=None, description="Opaque remote version token")
    last_synced_at: datetime = Field(default_factory=utcnow)
    sync_direction: SyncDirection = SyncDirection.TO_REMOTE


class SyncJob(BaseModel):
    """One unit of sync work for a single record."""
    job_id: str
    tenant_id: str
    entity_type: EntityType
    direction: SyncDirection
    local_id: Optional[str] = None
    remote_id: Optional[str] = None
    batch_id: Optional[str] = None
    status: SyncState = SyncState.IDLE
    attempt: int = 0
    last_error: Optional[ClassifiedError] = None
    detail: Optional[str] = Field(default=None, description="Outcome detail, e.g. 'created' or 'skipped-local-newer'")
    created_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    @property
    def record_id(self) -> Optional[str]:
        return self.local_id or self.remote_id

    @property
    def is_terminal(self) -> bool:
        """True once the job can no longer change."""
        if self.status == SyncState.COMPLETED:
            return True
        return self.status == SyncState.FAILED and self.last_error is not None and self.last_error.is_permanent


class FailedItem(BaseModel):
    """A failed job inside a batch, for selective retry."""
    job_id: str
    local_id: Optional[str] = None
    remote_id: Optional[str] = None
    error: Optional[ClassifiedError] = None


class SyncBatch(BaseModel):
    """Aggregate of jobs submitted together."""
    batch_id: str
    tenant_id: str
    entity_type: EntityType
    direction: SyncDirection
    job_ids: List[str] = Field(default_factory=list)
    total_count: int = 0
    succeeded_count: int = 0
    failed_count: int = 0
    status: SyncState = SyncState.IDLE
    cancel_requested: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    failed_items: List[FailedItem] = Field(default_factory=list)

    @property
    def pending_count(self) -> int:
        return self.total_count - self.succeeded_count - self.failed_count


class StatusTransition(BaseModel):
    """One immutable entry in the status history log."""
    sequence: int
    record_id: str = Field(..., description="Job or batch id")
    record_kind: str = Field(..., description="'job' or 'batch'")
    tenant_id: str
    entity_type: EntityType
    from_state: SyncState
    to_state: SyncState
    timestamp: datetime = Field(default_factory=utcnow)
    detail: Optional[str] = None
    error: Optional[ClassifiedError] = None

    class Config:
        frozen = True


class StatusReport(BaseModel):
    """Answer to getStatus: current state plus full history."""
    record_id: str
    record_kind: str
    status: SyncState
    job: Optional[SyncJob] = None
    batch: Optional[SyncBatch] = None
    history: List[StatusTransition] = Field(default_factory=list)
