"""Core data models for the sync engine.

Sync state (mappings, jobs, batches, history), CRM-side records and the
result values that flow through the pipeline.
"""

from core.models.sync import (
    EntityType,
    SyncDirection,
    SyncState,
    ErrorCategory,
    FieldError,
    ClassifiedError,
    SyncMapping,
    SyncJob,
    SyncBatch,
    FailedItem,
    StatusTransition,
    StatusReport,
    utcnow,
)

from core.models.records import (
    ContactRecord,
    ProductRecord,
    SalesDocumentRecord,
    SalesDocumentItem,
    LocalRecord,
    record_class,
)

from core.models.result import Ok, Err, Result, JobOutcome

from core.models.events import SyncEvent, EventSeverity

__all__ = [
    # Sync state
    "EntityType",
    "SyncDirection",
    "SyncState",
    "ErrorCategory",
    "FieldError",
    "ClassifiedError",
    "SyncMapping",
    "SyncJob",
    "SyncBatch",
    "FailedItem",
    "StatusTransition",
    "StatusReport",
    "utcnow",

    # Records
    "ContactRecord",
    "ProductRecord",
    "SalesDocumentRecord",
    "SalesDocumentItem",
    "LocalRecord",
    "record_class",

    # Results
    "Ok",
    "Err",
    "Result",
    "JobOutcome",

    # Events
    "SyncEvent",
    "EventSeverity",
]
