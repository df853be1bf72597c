"""Job runner.

Drives one SyncJob through the state machine:

    queued -> inProgress -> completed
                         -> failed -> queued -> inProgress -> ...   (transient, attempts left)
                         -> failed                                  (permanent or exhausted)
    queued -> failed                                                (batch cancelled first)
    queued | inProgress -> failed                                   (task cancelled, as timeout)

Each attempt holds a tenant pool slot and is bounded by the job timeout.
"""

import asyncio
import time
import uuid
from typing import Callable, Optional

from core.models.result import Err, Result
from core.models.sync import (
    ClassifiedError,
    EntityType,
    ErrorCategory,
    SyncDirection,
    SyncJob,
    SyncState,
)
from core.observability.logging import get_logger, with_correlation
from core.observability.metrics import MetricsCollector
from core.retry import ErrorClassifier
from core.status.tracker import SQLiteStatusTracker
from core.sync.pipeline import SyncPipeline
from core.sync.pool import ChunkGate, TenantPool

logger = get_logger(__name__)

CancelCheck = Callable[[], bool]


class JobRunner:
    """Runs jobs with retries, timeouts and tenant-bounded concurrency."""

    def __init__(
        self,
        tracker: SQLiteStatusTracker,
        pipeline: SyncPipeline,
        classifier: ErrorClassifier,
        metrics: MetricsCollector,
        pool: TenantPool,
        timeout_seconds: float = 30.0,
    ):
        self.tracker = tracker
        self.pipeline = pipeline
        self.classifier = classifier
        self.metrics = metrics
        self.pool = pool
        self.timeout_seconds = timeout_seconds

    def create_job(
        self,
        tenant_id: str,
        entity_type: EntityType,
        direction: SyncDirection,
        local_id: Optional[str] = None,
        remote_id: Optional[str] = None,
        batch_id: Optional[str] = None,
    ) -> SyncJob:
        """Register a new job and queue it."""
        job = SyncJob(
            job_id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            entity_type=entity_type,
            direction=direction,
            local_id=local_id,
            remote_id=remote_id,
            batch_id=batch_id,
        )
        self.tracker.register_job(job)
        self.tracker.record_transition(job.job_id, SyncState.IDLE, SyncState.QUEUED)
        return self.tracker.get_job(job.job_id)

    def cancel(self, job: SyncJob) -> SyncJob:
        """Fail a job that never started."""
        error = self.classifier.cancelled(job.entity_type, job.local_id, job.remote_id)
        self.tracker.record_transition(job.job_id, SyncState.QUEUED, SyncState.FAILED,
                                       detail="cancelled", error=error)
        logger.info(f"Job {job.job_id} cancelled before start")
        return self.tracker.get_job(job.job_id)

    async def run(
        self,
        job: SyncJob,
        gate: Optional[ChunkGate] = None,
        use_slot: bool = True,
        cancel_check: Optional[CancelCheck] = None,
    ) -> SyncJob:
        """Run a queued job until it completes or fails for good.

        Args:
            job: Job in the queued state
            gate: Batch gate honored before every attempt
            use_slot: Take a tenant pool slot per attempt. Dependency syncs
                started from inside a running job pass False.
            cancel_check: Returns True when the job should not start

        Returns:
            The job in its final state
        """
        entity = job.entity_type.value
        tries = 0

        with with_correlation(
            tenant_id=job.tenant_id,
            entity_type=job.entity_type,
            direction=job.direction,
            batch_id=job.batch_id,
            job_id=job.job_id,
            record_id=job.record_id,
        ):
            try:
                while True:
                    if gate is not None:
                        await gate.wait()

                    if tries == 0 and cancel_check is not None and cancel_check():
                        return self.cancel(job)

                    if use_slot:
                        async with self.pool.slot(job.tenant_id):
                            if gate is not None:
                                await gate.wait()
                            result, duration_ms = await self._attempt(job)
                    else:
                        result, duration_ms = await self._attempt(job)
                    tries += 1

                    if result.ok:
                        outcome = result.value
                        self.tracker.update_job(job.job_id, local_id=outcome.local_id, remote_id=outcome.remote_id)
                        self.tracker.record_transition(job.job_id, SyncState.IN_PROGRESS, SyncState.COMPLETED,
                                                       detail=outcome.detail)
                        self.metrics.record_job_completed(entity, duration_ms)
                        logger.info(
                            f"Job completed: {outcome.detail}",
                            extra_fields={"duration_ms": round(duration_ms, 1), "attempt": tries},
                        )
                        return self.tracker.get_job(job.job_id)

                    error = result.error
                    if self.classifier.should_retry(error, tries):
                        delay = self.classifier.delay_for(tries, error)
                        self.tracker.record_transition(
                            job.job_id, SyncState.IN_PROGRESS, SyncState.FAILED,
                            detail=f"attempt {tries} failed, retrying", error=error,
                        )
                        self.metrics.record_job_retry(entity, tries, error.category.value)
                        if error.category == ErrorCategory.TRANSIENT_RATE_LIMIT and gate is not None:
                            gate.pause(delay)
                            self.metrics.record_rate_limit_pause(delay)
                        self.tracker.record_transition(
                            job.job_id, SyncState.FAILED, SyncState.QUEUED,
                            detail=f"retry {tries + 1} in {delay:.2f}s",
                        )
                        logger.warning(
                            f"Attempt {tries} failed ({error.category.value}): {error.message}; "
                            f"retrying in {delay:.2f}s"
                        )
                        if delay > 0:
                            await asyncio.sleep(delay)
                        job = self.tracker.get_job(job.job_id)
                        continue

                    self.tracker.record_transition(
                        job.job_id, SyncState.IN_PROGRESS, SyncState.FAILED,
                        detail=error.category.value, error=error,
                    )
                    self.metrics.record_job_failed(entity, error.category.value)
                    logger.error(
                        f"Job failed ({error.category.value}) after {tries} attempt(s): {error.message}",
                        extra_fields={"status_code": error.status_code},
                    )
                    return self.tracker.get_job(job.job_id)
            except asyncio.CancelledError:
                self._interrupted(job.job_id)
                raise

    def _interrupted(self, job_id: str) -> None:
        """Fail a job whose task was cancelled while it was queued or running."""
        job = self.tracker.get_job(job_id)
        if job.status not in (SyncState.QUEUED, SyncState.IN_PROGRESS):
            return
        error = self.classifier.interrupted(job.entity_type, job.local_id, job.remote_id)
        self.tracker.record_transition(job_id, job.status, SyncState.FAILED,
                                       detail="interrupted", error=error)
        self.metrics.record_job_failed(job.entity_type.value, error.category.value)
        logger.warning(f"Job {job_id} interrupted while {job.status.value}")

    async def _attempt(self, job: SyncJob):
        self.tracker.record_transition(job.job_id, SyncState.QUEUED, SyncState.IN_PROGRESS)
        self.metrics.record_job_started(job.entity_type.value)
        start = time.monotonic()
        try:
            result: Result = await asyncio.wait_for(self.pipeline.run(job), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            result = Err(ClassifiedError(
                category=ErrorCategory.TIMEOUT,
                message=f"Attempt exceeded {self.timeout_seconds:g}s",
                entity_type=job.entity_type,
                local_id=job.local_id,
                remote_id=job.remote_id,
            ))
        duration_ms = (time.monotonic() - start) * 1000
        self.metrics.record_processing_time(f"attempt.{job.entity_type.value}", duration_ms)
        return result, duration_ms
