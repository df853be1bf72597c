"""Sync activities for the scheduled sync workflow.

Activities are methods of SyncActivities so that the worker can hand them
the orchestrator it built; nothing here reaches for a global.
"""

import time
from dataclasses import dataclass, field
from typing import List, Optional

from temporalio import activity
from temporalio.exceptions import ApplicationError

from core.errors import NotFoundError, PermissionDeniedError, RetryNotAllowedError, SyncDisabledError
from core.models.sync import EntityType, SyncBatch, SyncDirection
from core.observability.logging import (
    log_activity_complete,
    log_activity_error,
    log_activity_start,
    with_correlation,
)
from core.security.tenant import TenantContext
from core.sync import SyncOrchestrator

# Role the scheduler acts with; bulk sync needs an elevated role
SCHEDULER_ROLES = ["admin"]
SCHEDULER_USER = "scheduler"

# Engine errors that a Temporal retry cannot fix
NON_RETRYABLE_ERRORS = (SyncDisabledError, PermissionDeniedError, NotFoundError, RetryNotAllowedError)


@dataclass
class SyncEntityInput:
    """Input for the sync_entity activity.

    Attributes:
        tenant_id: Tenant to sync
        entity_type: contact, product or salesDocument
        direction: toRemote, fromRemote or bidirectional
        record_ids: Subset to sync; every record of the type when None
        roles: Roles the scheduler acts with
    """
    tenant_id: str
    entity_type: str
    direction: str = SyncDirection.TO_REMOTE.value
    record_ids: Optional[List[str]] = None
    roles: List[str] = field(default_factory=lambda: list(SCHEDULER_ROLES))


@dataclass
class RetryBatchInput:
    """Input for the retry_failed_items activity."""
    tenant_id: str
    batch_id: str
    roles: List[str] = field(default_factory=lambda: list(SCHEDULER_ROLES))


@dataclass
class SyncEntityOutput:
    """Outcome of one batch."""
    batch_id: str
    entity_type: str
    status: str
    total_count: int
    succeeded_count: int
    failed_count: int
    failed_job_ids: List[str] = field(default_factory=list)
    duration_ms: Optional[int] = None


def _output(batch: SyncBatch, duration_ms: int) -> SyncEntityOutput:
    return SyncEntityOutput(
        batch_id=batch.batch_id,
        entity_type=batch.entity_type.value,
        status=batch.status.value,
        total_count=batch.total_count,
        succeeded_count=batch.succeeded_count,
        failed_count=batch.failed_count,
        failed_job_ids=[item.job_id for item in batch.failed_items],
        duration_ms=duration_ms,
    )


def _tenant(tenant_id: str, roles: List[str]) -> TenantContext:
    return TenantContext(tenant_id=tenant_id, roles=tuple(roles), user_id=SCHEDULER_USER)


class SyncActivities:
    """Temporal activities backed by one SyncOrchestrator.

    Usage:
        activities = SyncActivities(orchestrator)
        Worker(client, task_queue=TASK_QUEUE_SYNC,
               workflows=[ScheduledSyncWorkflow],
               activities=[activities.sync_entity, activities.retry_failed_items])
    """

    def __init__(self, orchestrator: SyncOrchestrator):
        self.orchestrator = orchestrator

    @activity.defn(name="sync_entity")
    async def sync_entity(self, input: SyncEntityInput) -> SyncEntityOutput:
        """Run syncAll for one entity type and report the batch outcome."""
        name = "sync_entity"
        start = time.monotonic()
        with with_correlation(
            tenant_id=input.tenant_id,
            entity_type=input.entity_type,
            direction=input.direction,
            activity_name=name,
        ):
            log_activity_start(name, attempt=activity.info().attempt)
            try:
                batch = await self.orchestrator.sync_all(
                    _tenant(input.tenant_id, input.roles),
                    EntityType(input.entity_type),
                    SyncDirection(input.direction),
                    input.record_ids,
                )
            except NON_RETRYABLE_ERRORS as e:
                log_activity_error(name, str(e))
                raise ApplicationError(str(e), type=type(e).__name__, non_retryable=True)

            duration_ms = int((time.monotonic() - start) * 1000)
            log_activity_complete(
                name,
                duration_ms=duration_ms,
                batch_id=batch.batch_id,
                status=batch.status.value,
                succeeded=batch.succeeded_count,
                failed=batch.failed_count,
            )
            return _output(batch, duration_ms)

    @activity.defn(name="retry_failed_items")
    async def retry_failed_items(self, input: RetryBatchInput) -> SyncEntityOutput:
        """Re-run the failed items of a finished batch as a new batch."""
        name = "retry_failed_items"
        start = time.monotonic()
        with with_correlation(tenant_id=input.tenant_id, batch_id=input.batch_id, activity_name=name):
            log_activity_start(name, attempt=activity.info().attempt)
            try:
                batch = await self.orchestrator.retry_failed(
                    _tenant(input.tenant_id, input.roles), input.batch_id,
                )
            except NON_RETRYABLE_ERRORS as e:
                log_activity_error(name, str(e))
                raise ApplicationError(str(e), type=type(e).__name__, non_retryable=True)

            duration_ms = int((time.monotonic() - start) * 1000)
            log_activity_complete(name, duration_ms=duration_ms, batch_id=batch.batch_id,
                                  status=batch.status.value)
            return _output(batch, duration_ms)
