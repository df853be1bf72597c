"""Batch processing.

A batch is split into chunks of ``chunk_size`` jobs. Jobs inside a chunk run
concurrently (bounded by the tenant pool); the next chunk starts once every
job of the current one has finished. A rate-limit response pauses the rest of
the batch through its ChunkGate. Cancellation stops jobs that have not
started; running jobs finish.

Final batch state: ``completed`` when nothing failed (including an empty
batch), ``failed`` when nothing succeeded, ``partial`` otherwise.
"""

import asyncio
import time
import uuid
from dataclasses import dataclass
from typing import List, Optional, Tuple

from core.conversion import RecordConverter
from core.errors import SyncError
from core.mapping import MappingStore
from core.models.sync import (
    ClassifiedError,
    EntityType,
    ErrorCategory,
    SyncBatch,
    SyncDirection,
    SyncJob,
    SyncState,
)
from core.observability.logging import get_logger, with_correlation
from core.observability.metrics import MetricsCollector
from core.status.tracker import SQLiteStatusTracker
from core.storage.records import LocalRecordStore
from core.sync.pipeline import DependencyResolver, Reference
from core.sync.pool import ChunkGate
from core.sync.registry import InFlightRegistry, RecordKey, record_key
from core.sync.runner import JobRunner

logger = get_logger(__name__)

# (local_id, remote_id)
Target = Tuple[Optional[str], Optional[str]]


@dataclass
class BatchItem:
    """One job slot in a batch; ``owned`` is False when the batch joined a job already in flight."""
    job_id: str
    key: RecordKey
    owned: bool = True


class BatchProcessor:
    """Creates and runs batches."""

    def __init__(
        self,
        tracker: SQLiteStatusTracker,
        runner: JobRunner,
        registry: InFlightRegistry,
        records: LocalRecordStore,
        mappings: MappingStore,
        converter: RecordConverter,
        metrics: MetricsCollector,
        chunk_size: int = 10,
        resolver: Optional[DependencyResolver] = None,
    ):
        self.tracker = tracker
        self.runner = runner
        self.registry = registry
        self.records = records
        self.mappings = mappings
        self.converter = converter
        self.metrics = metrics
        self.chunk_size = chunk_size
        self.resolver = resolver

    # =========================================================================
    # Creation
    # =========================================================================

    def create(
        self,
        tenant_id: str,
        entity_type: EntityType,
        direction: SyncDirection,
        targets: List[Target],
    ) -> Tuple[SyncBatch, List[BatchItem]]:
        """Register a batch and queue one job per distinct record.

        Runs without awaiting, so every job is registered as in flight before
        anyone else can look the record up.
        """
        entity_type = EntityType(entity_type)
        direction = SyncDirection(direction)
        batch = SyncBatch(
            batch_id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            entity_type=entity_type,
            direction=direction,
        )
        self.tracker.register_batch(batch)

        items: List[BatchItem] = []
        seen = set()
        for local_id, remote_id in targets:
            key = record_key(tenant_id, entity_type, local_id, remote_id)
            if key in seen:
                continue
            seen.add(key)

            running = self.registry.get(key)
            if running is not None:
                items.append(BatchItem(job_id=running.job_id, key=key, owned=False))
                continue

            job = self.runner.create_job(tenant_id, entity_type, direction, local_id, remote_id,
                                         batch_id=batch.batch_id)
            self.registry.register(key, job.job_id)
            items.append(BatchItem(job_id=job.job_id, key=key))

        self.tracker.add_batch_jobs(batch.batch_id, [item.job_id for item in items])
        self.tracker.record_transition(batch.batch_id, SyncState.IDLE, SyncState.QUEUED,
                                       detail=f"{len(items)} job(s)")
        self.metrics.record_batch_submitted(entity_type.value, len(items))
        logger.info(
            f"Batch {batch.batch_id} queued: {len(items)} {entity_type.value} job(s), {direction.value}",
        )
        return self.tracker.get_batch(batch.batch_id), items

    # =========================================================================
    # Execution
    # =========================================================================

    async def run(self, batch: SyncBatch, items: List[BatchItem]) -> SyncBatch:
        """Run every chunk of a queued batch and settle its final state."""
        start = time.monotonic()
        batch_id = batch.batch_id

        with with_correlation(
            tenant_id=batch.tenant_id,
            entity_type=batch.entity_type,
            direction=batch.direction,
            batch_id=batch_id,
        ):
            self.tracker.record_transition(batch_id, SyncState.QUEUED, SyncState.IN_PROGRESS)
            gate = ChunkGate()

            try:
                await self._resolve_dependencies(batch, items)
            except Exception:
                logger.exception("Dependency pre-pass failed; documents will resolve inline")

            for index in range(0, len(items), self.chunk_size):
                chunk = items[index:index + self.chunk_size]
                logger.debug(f"Starting chunk {index // self.chunk_size + 1} ({len(chunk)} job(s))")
                await asyncio.gather(*(self._run_item(batch, item, gate) for item in chunk))

            current = self.tracker.get_batch(batch_id)
            if current.failed_count == 0:
                final = SyncState.COMPLETED
            elif current.succeeded_count == 0:
                final = SyncState.FAILED
            else:
                final = SyncState.PARTIAL

            self.tracker.record_transition(
                batch_id, SyncState.IN_PROGRESS, final,
                detail=f"{current.succeeded_count}/{current.total_count} succeeded",
            )
            duration_ms = (time.monotonic() - start) * 1000
            self.metrics.record_batch_finished(batch.entity_type.value, final.value, duration_ms)
            if current.cancel_requested:
                self.metrics.record_batch_cancelled(batch.entity_type.value)
            if gate.pauses:
                logger.info(f"Batch paused {gate.pauses} time(s) for rate limits")
            logger.info(
                f"Batch {final.value}: {current.succeeded_count} succeeded, {current.failed_count} failed",
                extra_fields={"duration_ms": round(duration_ms, 1)},
            )
            return self.tracker.get_batch(batch_id)

    async def _run_item(self, batch: SyncBatch, item: BatchItem, gate: ChunkGate) -> SyncJob:
        try:
            if item.owned:
                job = self.tracker.get_job(item.job_id)
                try:
                    job = await self.runner.run(
                        job,
                        gate=gate,
                        cancel_check=lambda: self.tracker.is_cancel_requested(batch.batch_id),
                    )
                finally:
                    self.registry.release(item.key, self.tracker.get_job(item.job_id))
            else:
                job = await self.registry.wait(item.key) or self.tracker.get_job(item.job_id)
        except Exception as e:
            logger.exception(f"Job {item.job_id} crashed")
            job = self._fail_crashed(item, e)

        self.tracker.record_batch_outcome(batch.batch_id, job.status == SyncState.COMPLETED)
        return job

    def _fail_crashed(self, item: BatchItem, exc: Exception) -> SyncJob:
        job = self.tracker.get_job(item.job_id)
        if job.status in (SyncState.QUEUED, SyncState.IN_PROGRESS):
            error = ClassifiedError(
                category=ErrorCategory.INTERNAL,
                message=f"{type(exc).__name__}: {exc}",
                entity_type=job.entity_type,
                local_id=job.local_id,
                remote_id=job.remote_id,
            )
            try:
                self.tracker.record_transition(job.job_id, job.status, SyncState.FAILED,
                                               detail=ErrorCategory.INTERNAL.value, error=error)
            except SyncError as e:
                logger.error(f"Could not mark job {job.job_id} failed: {e}")
        return self.tracker.get_job(item.job_id)

    async def _resolve_dependencies(self, batch: SyncBatch, items: List[BatchItem]) -> None:
        """Push unmapped contacts and products referenced by the batch's documents."""
        if (
            self.resolver is None
            or batch.entity_type != EntityType.SALES_DOCUMENT
            or batch.direction == SyncDirection.FROM_REMOTE
        ):
            return

        unmapped: List[Reference] = []
        for item in items:
            if not item.owned:
                continue
            job = self.tracker.get_job(item.job_id)
            if not job.local_id:
                continue
            record = self.records.get_by_id(batch.tenant_id, batch.entity_type, job.local_id)
            if record is None:
                continue
            for ref in self.converter.references(record):
                if ref in unmapped:
                    continue
                if self.mappings.find(batch.tenant_id, ref[0], local_id=ref[1]) is None:
                    unmapped.append(ref)

        if not unmapped or self.tracker.is_cancel_requested(batch.batch_id):
            return
        logger.info(f"Syncing {len(unmapped)} referenced record(s) before documents")
        failures = await self.resolver(batch.tenant_id, unmapped, SyncDirection.TO_REMOTE)
        for (entity_type, ref_id), error in failures.items():
            logger.warning(f"Dependency {entity_type.value} {ref_id} failed: {error.message}")
