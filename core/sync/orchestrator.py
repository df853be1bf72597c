"""Sync Orchestrator.

Public entry point of the engine. Every operation takes the calling tenant's
TenantContext and is scoped to that tenant.

    sync_one        one record, waits for the job to finish
    sync_all        every record of an entity type (or a given subset), waits for the batch
    start_sync_all  same, but returns the queued batch and runs it in the background
    get_status      current state and full history of a job or batch
    cancel_batch    stop scheduling a batch's jobs that have not started
    unlink          forget a mapping so the next push creates a new ERP record
    retry_failed    new batch with only the failed items of a finished batch
    retry_job       re-run a job that failed for a transient reason
"""

import asyncio
import functools
from typing import Dict, List, Optional, Set, Tuple

from core.errors import PermissionDeniedError, RetryNotAllowedError
from core.models.sync import (
    ClassifiedError,
    EntityType,
    ErrorCategory,
    StatusReport,
    SyncBatch,
    SyncDirection,
    SyncJob,
    SyncState,
)
from core.observability.logging import get_logger, with_correlation
from core.security.tenant import TenantContext, require_bulk_permission, require_sync_enabled
from core.status.tracker import BATCH, FINISHED_STATES
from core.sync.batch import BatchItem, BatchProcessor, Target
from core.sync.context import SyncContext
from core.sync.pipeline import Reference, SyncPipeline
from core.sync.registry import record_key
from core.sync.runner import JobRunner

logger = get_logger(__name__)


class SyncOrchestrator:
    """Coordinates pipeline, runner and batches over one SyncContext.

    Usage:
        async with SyncContext(settings) as context:
            orchestrator = SyncOrchestrator(context)
            batch = await orchestrator.sync_all(tenant, EntityType.CONTACT)
            report = orchestrator.get_status(tenant, batch.batch_id)
    """

    def __init__(self, context: SyncContext):
        self.context = context
        settings = context.settings

        inline_resolver = None
        batch_resolver = None
        if settings.resolve_dependencies:
            # Dependencies resolved from inside a running job must not wait for a
            # pool slot: the job already holds one.
            inline_resolver = functools.partial(self.resolve_dependencies, use_slot=False)
            batch_resolver = functools.partial(self.resolve_dependencies, use_slot=True)

        self.pipeline = SyncPipeline(
            records=context.records,
            mappings=context.mappings,
            remote=context.remote,
            converter=context.converter,
            classifier=context.classifier,
            strategy=context.strategy,
            resolver=inline_resolver,
        )
        self.runner = JobRunner(
            tracker=context.tracker,
            pipeline=self.pipeline,
            classifier=context.classifier,
            metrics=context.metrics,
            pool=context.pool,
            timeout_seconds=settings.job_timeout_seconds,
        )
        self.batches = BatchProcessor(
            tracker=context.tracker,
            runner=self.runner,
            registry=context.registry,
            records=context.records,
            mappings=context.mappings,
            converter=context.converter,
            metrics=context.metrics,
            chunk_size=settings.chunk_size,
            resolver=batch_resolver,
        )
        self._background: Set[asyncio.Task] = set()

    @property
    def tracker(self):
        return self.context.tracker

    @property
    def registry(self):
        return self.context.registry

    # =========================================================================
    # Single record
    # =========================================================================

    async def sync_one(
        self,
        tenant: TenantContext,
        entity_type: EntityType,
        record_id: str,
        direction: SyncDirection = SyncDirection.TO_REMOTE,
    ) -> SyncJob:
        """Sync one record and return the finished job.

        Args:
            tenant: Calling tenant
            entity_type: contact, product or salesDocument
            record_id: Local id for toRemote; remote id (or a mapped local id)
                for fromRemote; either for bidirectional
            direction: Sync direction

        Returns:
            The job in its final state. If the record already has a job in
            flight, that job is returned instead of starting a second one.

        Raises:
            SyncDisabledError: Sync is disabled for the tenant
        """
        require_sync_enabled(tenant)
        entity_type = EntityType(entity_type)
        direction = SyncDirection(direction)
        local_id, remote_id = self._target(tenant.tenant_id, entity_type, record_id, direction)
        return await self._sync_record(tenant.tenant_id, entity_type, direction, local_id, remote_id)

    async def _sync_record(
        self,
        tenant_id: str,
        entity_type: EntityType,
        direction: SyncDirection,
        local_id: Optional[str],
        remote_id: Optional[str],
        use_slot: bool = True,
    ) -> SyncJob:
        key = record_key(tenant_id, entity_type, local_id, remote_id)
        if key in self.registry:
            running = self.registry.get(key)
            logger.info(f"{entity_type.value} {local_id or remote_id} already in flight as job {running.job_id}")
            return await self.registry.wait(key)

        job = self.runner.create_job(tenant_id, entity_type, direction, local_id, remote_id)
        self.registry.register(key, job.job_id)
        try:
            await self.runner.run(job, use_slot=use_slot)
        finally:
            job = self.tracker.get_job(job.job_id)
            self.registry.release(key, job)
        return job

    def _target(self, tenant_id: str, entity_type: EntityType, record_id: str,
                direction: SyncDirection) -> Tuple[Optional[str], Optional[str]]:
        """Resolve a caller-supplied id to (local_id, remote_id)."""
        mappings = self.context.mappings
        if direction == SyncDirection.TO_REMOTE:
            mapping = mappings.find(tenant_id, entity_type, local_id=record_id)
            return record_id, mapping.remote_id if mapping else None

        if direction == SyncDirection.FROM_REMOTE:
            mapping = mappings.find(tenant_id, entity_type, remote_id=record_id)
            if mapping is not None:
                return mapping.local_id, record_id
            mapping = mappings.find(tenant_id, entity_type, local_id=record_id)
            if mapping is not None:
                return record_id, mapping.remote_id
            return None, record_id

        mapping = mappings.find(tenant_id, entity_type, local_id=record_id)
        if mapping is not None:
            return record_id, mapping.remote_id
        if self.context.records.get_by_id(tenant_id, entity_type, record_id) is not None:
            return record_id, None
        mapping = mappings.find(tenant_id, entity_type, remote_id=record_id)
        if mapping is not None:
            return mapping.local_id, record_id
        return None, record_id

    # =========================================================================
    # Batches
    # =========================================================================

    async def sync_all(
        self,
        tenant: TenantContext,
        entity_type: EntityType,
        direction: SyncDirection = SyncDirection.TO_REMOTE,
        record_ids: Optional[List[str]] = None,
    ) -> SyncBatch:
        """Sync every record of an entity type (or record_ids) and return the finished batch.

        Raises:
            SyncDisabledError: Sync is disabled for the tenant
            PermissionDeniedError: The caller has no elevated role
        """
        batch, items = await self._prepare_batch(tenant, entity_type, direction, record_ids)
        return await self.batches.run(batch, items)

    async def start_sync_all(
        self,
        tenant: TenantContext,
        entity_type: EntityType,
        direction: SyncDirection = SyncDirection.TO_REMOTE,
        record_ids: Optional[List[str]] = None,
    ) -> SyncBatch:
        """Queue a batch and run it in the background. Returns the queued batch."""
        batch, items = await self._prepare_batch(tenant, entity_type, direction, record_ids)
        task = asyncio.create_task(self.batches.run(batch, items), name=f"batch-{batch.batch_id}")
        self._background.add(task)
        task.add_done_callback(self._on_background_done)
        return batch

    def _on_background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            logger.warning(f"Background {task.get_name()} was cancelled")
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Background {task.get_name()} crashed: {error}", exc_info=error)

    async def wait_for_background(self) -> None:
        """Wait until background batches and dependency jobs have finished."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def _prepare_batch(
        self,
        tenant: TenantContext,
        entity_type: EntityType,
        direction: SyncDirection,
        record_ids: Optional[List[str]],
    ) -> Tuple[SyncBatch, List[BatchItem]]:
        require_bulk_permission(tenant)
        entity_type = EntityType(entity_type)
        direction = SyncDirection(direction)
        if record_ids is None:
            record_ids = await self._all_ids(tenant.tenant_id, entity_type, direction)
        targets = [self._target(tenant.tenant_id, entity_type, record_id, direction) for record_id in record_ids]
        return self.batches.create(tenant.tenant_id, entity_type, direction, targets)

    async def _all_ids(self, tenant_id: str, entity_type: EntityType,
                       direction: SyncDirection) -> List[str]:
        local_ids = self.context.records.list_ids(tenant_id, entity_type)
        if direction == SyncDirection.TO_REMOTE:
            return local_ids

        remote_ids = [r.remote_id for r in await self.context.remote.list(tenant_id, entity_type)]
        if direction == SyncDirection.FROM_REMOTE:
            return remote_ids

        mapped = {m.remote_id for m in self.context.mappings.list(tenant_id, entity_type)}
        return local_ids + [remote_id for remote_id in remote_ids if remote_id not in mapped]

    # =========================================================================
    # Dependencies
    # =========================================================================

    async def resolve_dependencies(
        self,
        tenant_id: str,
        refs: List[Reference],
        direction: SyncDirection,
        use_slot: bool = True,
    ) -> Dict[Reference, ClassifiedError]:
        """Sync referenced records that have no mapping yet.

        Returns:
            The error of every reference that could not be synced
        """
        async def sync_ref(ref: Reference) -> Tuple[Reference, SyncJob]:
            entity_type, ref_id = ref
            local_id, remote_id = self._target(tenant_id, entity_type, ref_id, direction)
            job = await self._sync_record(tenant_id, entity_type, direction, local_id, remote_id, use_slot)
            return ref, job

        # Dependency jobs run as their own tasks; a timeout of the job that
        # needed them stops the wait, not the jobs.
        tasks = [asyncio.ensure_future(sync_ref(ref)) for ref in refs]
        for task in tasks:
            self._background.add(task)
            task.add_done_callback(self._on_background_done)
        results = await asyncio.shield(asyncio.gather(*tasks))
        failures: Dict[Reference, ClassifiedError] = {}
        for ref, job in results:
            if job.status == SyncState.COMPLETED:
                continue
            failures[ref] = job.last_error or ClassifiedError(
                category=ErrorCategory.INTERNAL,
                message=f"Dependency job {job.job_id} ended {job.status.value}",
                entity_type=ref[0],
            )
        return failures

    # =========================================================================
    # Status / control
    # =========================================================================

    def get_status(self, tenant: TenantContext, record_id: str) -> StatusReport:
        """Current state and full history of a job or batch.

        Raises:
            NotFoundError: No such job or batch for this tenant
        """
        kind = self.tracker.record_kind(record_id)
        if kind == BATCH:
            batch = self.tracker.get_batch(record_id, tenant.tenant_id)
            job = None
            status = batch.status
        else:
            job = self.tracker.get_job(record_id, tenant.tenant_id)
            batch = None
            status = job.status
        return StatusReport(
            record_id=record_id,
            record_kind=kind,
            status=status,
            job=job,
            batch=batch,
            history=list(self.tracker.history(record_id)),
        )

    def cancel_batch(self, tenant: TenantContext, batch_id: str) -> SyncBatch:
        """Stop scheduling the batch's jobs that have not started.

        Jobs already running finish; cancelled jobs fail with category
        ``cancelled``. Cancelling a finished batch changes nothing.
        """
        if not tenant.has_elevated_role:
            raise PermissionDeniedError("Cancelling a batch requires an owner, admin or manager role")
        batch = self.tracker.get_batch(batch_id, tenant.tenant_id)
        if batch.status in FINISHED_STATES or batch.cancel_requested:
            return batch
        batch = self.tracker.request_cancel(batch_id, tenant.tenant_id)
        self.context.events.publish_cancel_requested(batch)
        with with_correlation(tenant_id=tenant.tenant_id, batch_id=batch_id):
            logger.warning(f"Cancel requested for batch {batch_id} ({batch.pending_count} pending)")
        return batch

    def unlink(self, tenant: TenantContext, entity_type: EntityType, local_id: str) -> bool:
        """Delete the mapping of a local record.

        Returns:
            False if the record was not mapped
        """
        entity_type = EntityType(entity_type)
        mapping = self.context.mappings.find(tenant.tenant_id, entity_type, local_id=local_id)
        if mapping is None:
            return False
        removed = self.context.mappings.unlink(tenant.tenant_id, entity_type, local_id)
        if removed:
            self.context.events.publish_unlink(tenant.tenant_id, entity_type, local_id, mapping.remote_id)
            logger.info(f"Unlinked {entity_type.value} {local_id} from {mapping.remote_id}")
        return removed

    async def retry_failed(self, tenant: TenantContext, batch_id: str) -> SyncBatch:
        """Run a new batch containing only the failed items of a finished batch.

        Raises:
            RetryNotAllowedError: The batch is still running
        """
        require_bulk_permission(tenant)
        batch = self.tracker.get_batch(batch_id, tenant.tenant_id)
        if batch.status not in FINISHED_STATES:
            raise RetryNotAllowedError(f"Batch {batch_id} is {batch.status.value}; wait for it to finish")
        targets: List[Target] = [(item.local_id, item.remote_id) for item in batch.failed_items]
        logger.info(f"Retrying {len(targets)} failed item(s) of batch {batch_id}")
        new_batch, items = self.batches.create(tenant.tenant_id, batch.entity_type, batch.direction, targets)
        return await self.batches.run(new_batch, items)

    async def retry_job(self, tenant: TenantContext, job_id: str) -> SyncJob:
        """Re-run a failed job whose error was not permanent.

        Raises:
            NotFoundError: No such job for this tenant
            RetryNotAllowedError: The job did not fail, or failed permanently
        """
        require_sync_enabled(tenant)
        job = self.tracker.get_job(job_id, tenant.tenant_id)
        if job.status != SyncState.FAILED:
            raise RetryNotAllowedError(f"Job {job_id} is {job.status.value}, not failed")
        if job.last_error is not None and job.last_error.is_permanent:
            raise RetryNotAllowedError(
                f"Job {job_id} failed permanently ({job.last_error.category.value}); start a new sync instead"
            )

        key = record_key(job.tenant_id, job.entity_type, job.local_id, job.remote_id)
        if key in self.registry:
            return await self.registry.wait(key)

        self.tracker.record_transition(job_id, SyncState.FAILED, SyncState.QUEUED, detail="manual retry")
        self.registry.register(key, job_id)
        try:
            await self.runner.run(self.tracker.get_job(job_id))
        finally:
            job = self.tracker.get_job(job_id)
            self.registry.release(key, job)
        return job

    async def close(self) -> None:
        await self.wait_for_background()

