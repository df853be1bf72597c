"""Sync Status Tracker.

Per-job and per-batch state machine with an append-only transition history.

    idle -> queued -> inProgress -> completed | failed
    failed -> queued            (manual or scheduled retry)
    queued -> failed            (cancelled before it started)

Batches follow the same machine and may also end ``partial`` (some jobs
completed, some failed). ``partial`` is never a job state.

``record_transition`` is a compare-and-swap on the current state: the caller
states what it believes the current state is, and the transition is refused
if that is stale. Job and batch rows are mutable only for their current-state
pointer and counters; transitions are never updated or deleted.
"""

import json
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable, Dict, FrozenSet, Iterator, List, Optional, Tuple, Union

from core.errors import InvalidTransitionError, JobImmutableError, NotFoundError
from core.models.sync import (
    ClassifiedError,
    EntityType,
    FailedItem,
    StatusTransition,
    SyncBatch,
    SyncDirection,
    SyncJob,
    SyncState,
    utcnow,
)
from core.observability.logging import get_logger
from core.storage.database import connect, from_db_time, to_db_time

logger = get_logger(__name__)

JOB = "job"
BATCH = "batch"

JOB_TRANSITIONS: Dict[SyncState, FrozenSet[SyncState]] = {
    SyncState.IDLE: frozenset({SyncState.QUEUED}),
    SyncState.QUEUED: frozenset({SyncState.IN_PROGRESS, SyncState.FAILED}),
    SyncState.IN_PROGRESS: frozenset({SyncState.COMPLETED, SyncState.FAILED}),
    SyncState.FAILED: frozenset({SyncState.QUEUED}),
    SyncState.COMPLETED: frozenset(),
}

BATCH_TRANSITIONS: Dict[SyncState, FrozenSet[SyncState]] = {
    SyncState.IDLE: frozenset({SyncState.QUEUED}),
    SyncState.QUEUED: frozenset({SyncState.IN_PROGRESS, SyncState.FAILED}),
    SyncState.IN_PROGRESS: frozenset({SyncState.COMPLETED, SyncState.PARTIAL, SyncState.FAILED}),
    SyncState.FAILED: frozenset({SyncState.QUEUED}),
    SyncState.COMPLETED: frozenset(),
    SyncState.PARTIAL: frozenset(),
}

FINISHED_STATES = frozenset({SyncState.COMPLETED, SyncState.FAILED, SyncState.PARTIAL})

TransitionListener = Callable[[StatusTransition, Union[SyncJob, SyncBatch]], None]


class StatusTracker(ABC):
    """Contract for job/batch state and history."""

    @abstractmethod
    def register_job(self, job: SyncJob) -> SyncJob:
        pass

    @abstractmethod
    def register_batch(self, batch: SyncBatch) -> SyncBatch:
        pass

    @abstractmethod
    def record_transition(
        self,
        record_id: str,
        from_state: SyncState,
        to_state: SyncState,
        detail: Optional[str] = None,
        error: Optional[ClassifiedError] = None,
    ) -> StatusTransition:
        """Move a job or batch from from_state to to_state.

        Raises:
            NotFoundError: Unknown id
            InvalidTransitionError: Stale from_state or transition not allowed
            JobImmutableError: The job is completed or failed permanently
        """
        pass

    @abstractmethod
    def current_status(self, record_id: str) -> SyncState:
        pass

    @abstractmethod
    def history(self, record_id: str) -> Iterator[StatusTransition]:
        """Transitions of one job or batch, oldest first."""
        pass


class SQLiteStatusTracker(StatusTracker):
    """SQLite-backed status tracker.

    Usage:
        tracker = SQLiteStatusTracker(Path("sync.db"))
        tracker.register_job(job)
        tracker.record_transition(job.job_id, SyncState.IDLE, SyncState.QUEUED)
        for transition in tracker.history(job.job_id):
            print(transition.from_state, "->", transition.to_state)
    """

    HISTORY_PAGE_SIZE = 100
    # Stays under SQLite's bound-parameter limit
    IN_CLAUSE_SIZE = 500

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = db_path
        self._conn = connect(db_path)
        self._lock = threading.RLock()
        self._listeners: List[TransitionListener] = []
        self._init_db()

    def _init_db(self) -> None:
        with self._lock:
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS sync_job (
                    job_id TEXT PRIMARY KEY,
                    tenant_id TEXT NOT NULL,
                    entity_type TEXT NOT NULL,
                    direction TEXT NOT NULL,
                    local_id TEXT,
                    remote_id TEXT,
                    batch_id TEXT,
                    status TEXT NOT NULL,
                    attempt INTEGER NOT NULL DEFAULT 0,
                    last_error TEXT,
                    detail TEXT,
                    created_at TEXT NOT NULL,
                    completed_at TEXT
                )
            """)
            self._conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_sync_job_batch
                ON sync_job(batch_id)
            """)
            self._conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_sync_job_tenant_status
                ON sync_job(tenant_id, entity_type, status)
            """)

            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS sync_batch (
                    batch_id TEXT PRIMARY KEY,
                    tenant_id TEXT NOT NULL,
                    entity_type TEXT NOT NULL,
                    direction TEXT NOT NULL,
                    job_ids TEXT NOT NULL DEFAULT '[]',
                    total_count INTEGER NOT NULL DEFAULT 0,
                    succeeded_count INTEGER NOT NULL DEFAULT 0,
                    failed_count INTEGER NOT NULL DEFAULT 0,
                    status TEXT NOT NULL,
                    cancel_requested INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    completed_at TEXT
                )
            """)

            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS sync_transition (
                    sequence INTEGER PRIMARY KEY AUTOINCREMENT,
                    record_id TEXT NOT NULL,
                    record_kind TEXT NOT NULL,
                    tenant_id TEXT NOT NULL,
                    entity_type TEXT NOT NULL,
                    from_state TEXT NOT NULL,
                    to_state TEXT NOT NULL,
                    timestamp TEXT NOT NULL,
                    detail TEXT,
                    error TEXT
                )
            """)
            self._conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_sync_transition_record
                ON sync_transition(record_id, sequence)
            """)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def add_listener(self, listener: TransitionListener) -> None:
        """Register a callback invoked after every committed transition."""
        self._listeners.append(listener)

    # =========================================================================
    # Registration
    # =========================================================================

    def register_job(self, job: SyncJob) -> SyncJob:
        with self._lock:
            self._conn.execute("""
                INSERT INTO sync_job
                (job_id, tenant_id, entity_type, direction, local_id, remote_id, batch_id,
                 status, attempt, last_error, detail, created_at, completed_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                job.job_id,
                job.tenant_id,
                EntityType(job.entity_type).value,
                SyncDirection(job.direction).value,
                job.local_id,
                job.remote_id,
                job.batch_id,
                SyncState(job.status).value,
                job.attempt,
                _error_to_json(job.last_error),
                job.detail,
                to_db_time(job.created_at),
                to_db_time(job.completed_at),
            ))
        return job

    def register_batch(self, batch: SyncBatch) -> SyncBatch:
        with self._lock:
            self._conn.execute("""
                INSERT INTO sync_batch
                (batch_id, tenant_id, entity_type, direction, job_ids, total_count,
                 succeeded_count, failed_count, status, cancel_requested, created_at, completed_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                batch.batch_id,
                batch.tenant_id,
                EntityType(batch.entity_type).value,
                SyncDirection(batch.direction).value,
                json.dumps(batch.job_ids),
                batch.total_count,
                batch.succeeded_count,
                batch.failed_count,
                SyncState(batch.status).value,
                int(batch.cancel_requested),
                to_db_time(batch.created_at),
                to_db_time(batch.completed_at),
            ))
        return batch

    # =========================================================================
    # State machine
    # =========================================================================

    def record_transition(
        self,
        record_id: str,
        from_state: SyncState,
        to_state: SyncState,
        detail: Optional[str] = None,
        error: Optional[ClassifiedError] = None,
    ) -> StatusTransition:
        from_state = SyncState(from_state)
        to_state = SyncState(to_state)
        now = utcnow()

        with self._lock:
            kind, row = self._find_row(record_id)
            current = SyncState(row["status"])
            if current != from_state:
                raise InvalidTransitionError(
                    f"{kind} {record_id} is {current.value}, not {from_state.value}"
                )

            allowed = JOB_TRANSITIONS if kind == JOB else BATCH_TRANSITIONS
            if to_state not in allowed.get(from_state, frozenset()):
                if kind == JOB and to_state == SyncState.PARTIAL:
                    raise InvalidTransitionError("partial is a batch-only state")
                raise InvalidTransitionError(
                    f"{kind} {record_id}: {from_state.value} -> {to_state.value} is not allowed"
                )

            if kind == JOB and from_state == SyncState.FAILED:
                last_error = _error_from_json(row["last_error"])
                if last_error is not None and last_error.is_permanent:
                    raise JobImmutableError(
                        f"Job {record_id} failed permanently ({last_error.category.value})"
                    )

            self._conn.execute("BEGIN IMMEDIATE")
            try:
                if kind == JOB:
                    self._apply_job_transition(record_id, to_state, now, detail, error)
                else:
                    self._apply_batch_transition(record_id, to_state, now)

                cursor = self._conn.execute("""
                    INSERT INTO sync_transition
                    (record_id, record_kind, tenant_id, entity_type, from_state, to_state,
                     timestamp, detail, error)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    record_id,
                    kind,
                    row["tenant_id"],
                    row["entity_type"],
                    from_state.value,
                    to_state.value,
                    to_db_time(now),
                    detail,
                    _error_to_json(error),
                ))
                self._conn.execute("COMMIT")
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise

            transition = StatusTransition(
                sequence=cursor.lastrowid,
                record_id=record_id,
                record_kind=kind,
                tenant_id=row["tenant_id"],
                entity_type=EntityType(row["entity_type"]),
                from_state=from_state,
                to_state=to_state,
                timestamp=now,
                detail=detail,
                error=error,
            )
            subject = self.get_job(record_id) if kind == JOB else self.get_batch(record_id)

        self._notify(transition, subject)
        return transition

    def _apply_job_transition(self, job_id: str, to_state: SyncState, now,
                              detail: Optional[str], error: Optional[ClassifiedError]) -> None:
        if to_state == SyncState.IN_PROGRESS:
            self._conn.execute(
                "UPDATE sync_job SET status = ?, attempt = attempt + 1 WHERE job_id = ?",
                (to_state.value, job_id),
            )
        elif to_state == SyncState.COMPLETED:
            self._conn.execute(
                "UPDATE sync_job SET status = ?, detail = COALESCE(?, detail), completed_at = ? WHERE job_id = ?",
                (to_state.value, detail, to_db_time(now), job_id),
            )
        elif to_state == SyncState.FAILED:
            self._conn.execute(
                "UPDATE sync_job SET status = ?, last_error = ?, detail = COALESCE(?, detail), "
                "completed_at = ? WHERE job_id = ?",
                (to_state.value, _error_to_json(error), detail, to_db_time(now), job_id),
            )
        else:
            self._conn.execute(
                "UPDATE sync_job SET status = ?, completed_at = NULL WHERE job_id = ?",
                (to_state.value, job_id),
            )

    def _apply_batch_transition(self, batch_id: str, to_state: SyncState, now) -> None:
        completed_at = to_db_time(now) if to_state in FINISHED_STATES else None
        self._conn.execute(
            "UPDATE sync_batch SET status = ?, completed_at = ? WHERE batch_id = ?",
            (to_state.value, completed_at, batch_id),
        )

    def _notify(self, transition: StatusTransition, subject) -> None:
        for listener in self._listeners:
            try:
                listener(transition, subject)
            except Exception:
                logger.exception(f"Transition listener failed for {transition.record_id}")

    # =========================================================================
    # Queries
    # =========================================================================

    def current_status(self, record_id: str) -> SyncState:
        with self._lock:
            _, row = self._find_row(record_id)
        return SyncState(row["status"])

    def record_kind(self, record_id: str) -> str:
        with self._lock:
            kind, _ = self._find_row(record_id)
        return kind

    def history(self, record_id: str) -> Iterator[StatusTransition]:
        """Lazily page through the transitions of a job or batch.

        Each call starts from the beginning, so the history can be replayed.
        """
        last_sequence = 0
        while True:
            with self._lock:
                rows = self._conn.execute(
                    "SELECT * FROM sync_transition WHERE record_id = ? AND sequence > ? "
                    "ORDER BY sequence LIMIT ?",
                    (record_id, last_sequence, self.HISTORY_PAGE_SIZE),
                ).fetchall()
            for row in rows:
                last_sequence = row["sequence"]
                yield _row_to_transition(row)
            if len(rows) < self.HISTORY_PAGE_SIZE:
                return

    def get_job(self, job_id: str, tenant_id: Optional[str] = None) -> SyncJob:
        with self._lock:
            row = self._conn.execute("SELECT * FROM sync_job WHERE job_id = ?", (job_id,)).fetchone()
        if row is None or (tenant_id is not None and row["tenant_id"] != tenant_id):
            raise NotFoundError(f"Job not found: {job_id}")
        return _row_to_job(row)

    def get_batch(self, batch_id: str, tenant_id: Optional[str] = None) -> SyncBatch:
        """Load a batch with its failed items.

        Failed items come from the batch's own job list, so a job the batch
        joined while it was already in flight is reported too.
        """
        with self._lock:
            row = self._conn.execute("SELECT * FROM sync_batch WHERE batch_id = ?", (batch_id,)).fetchone()
            if row is None or (tenant_id is not None and row["tenant_id"] != tenant_id):
                raise NotFoundError(f"Batch not found: {batch_id}")
            batch = _row_to_batch(row)
            failed_rows = []
            for index in range(0, len(batch.job_ids), self.IN_CLAUSE_SIZE):
                chunk = batch.job_ids[index:index + self.IN_CLAUSE_SIZE]
                placeholders = ", ".join("?" for _ in chunk)
                failed_rows.extend(self._conn.execute(
                    "SELECT job_id, local_id, remote_id, last_error FROM sync_job "
                    f"WHERE job_id IN ({placeholders}) AND status = ?",
                    (*chunk, SyncState.FAILED.value),
                ).fetchall())
        position = {job_id: index for index, job_id in enumerate(batch.job_ids)}
        failed_rows = sorted(failed_rows, key=lambda r: position[r["job_id"]])
        batch.failed_items = [
            FailedItem(
                job_id=r["job_id"],
                local_id=r["local_id"],
                remote_id=r["remote_id"],
                error=_error_from_json(r["last_error"]),
            )
            for r in failed_rows
        ]
        return batch

    def jobs_for_batch(self, batch_id: str) -> List[SyncJob]:
        """Jobs attached to a batch, in submission order."""
        batch = self.get_batch(batch_id)
        return [self.get_job(job_id) for job_id in batch.job_ids]

    def list_jobs(
        self,
        tenant_id: str,
        entity_type: Optional[EntityType] = None,
        status: Optional[SyncState] = None,
        limit: int = 100,
    ) -> List[SyncJob]:
        query = "SELECT * FROM sync_job WHERE tenant_id = ?"
        params: list = [tenant_id]
        if entity_type is not None:
            query += " AND entity_type = ?"
            params.append(EntityType(entity_type).value)
        if status is not None:
            query += " AND status = ?"
            params.append(SyncState(status).value)
        query += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [_row_to_job(row) for row in rows]

    # =========================================================================
    # Pointer/counter updates
    # =========================================================================

    def update_job(self, job_id: str, local_id: Optional[str] = None,
                   remote_id: Optional[str] = None, detail: Optional[str] = None) -> SyncJob:
        """Fill in ids learned while the job runs.

        Raises:
            JobImmutableError: The job is completed or failed permanently
        """
        with self._lock:
            job = self.get_job(job_id)
            if job.is_terminal:
                raise JobImmutableError(f"Job {job_id} is {job.status.value} and can no longer change")
            self._conn.execute(
                "UPDATE sync_job SET local_id = COALESCE(?, local_id), "
                "remote_id = COALESCE(?, remote_id), detail = COALESCE(?, detail) WHERE job_id = ?",
                (local_id, remote_id, detail, job_id),
            )
            return self.get_job(job_id)

    def add_batch_jobs(self, batch_id: str, job_ids: List[str]) -> SyncBatch:
        """Attach the ordered job ids to a batch and set its total count."""
        with self._lock:
            self._conn.execute(
                "UPDATE sync_batch SET job_ids = ?, total_count = ? WHERE batch_id = ?",
                (json.dumps(job_ids), len(job_ids), batch_id),
            )
            return self.get_batch(batch_id)

    def record_batch_outcome(self, batch_id: str, succeeded: bool) -> Tuple[int, int, int]:
        """Count one finished job against its batch.

        Returns:
            (succeeded_count, failed_count, total_count) after the update
        """
        column = "succeeded_count" if succeeded else "failed_count"
        with self._lock:
            cursor = self._conn.execute(
                f"UPDATE sync_batch SET {column} = {column} + 1 "
                "WHERE batch_id = ? AND succeeded_count + failed_count < total_count",
                (batch_id,),
            )
            if cursor.rowcount == 0:
                raise InvalidTransitionError(f"Batch {batch_id} has no pending jobs left to count")
            row = self._conn.execute(
                "SELECT succeeded_count, failed_count, total_count FROM sync_batch WHERE batch_id = ?",
                (batch_id,),
            ).fetchone()
        return row["succeeded_count"], row["failed_count"], row["total_count"]

    def request_cancel(self, batch_id: str, tenant_id: Optional[str] = None) -> SyncBatch:
        with self._lock:
            self.get_batch(batch_id, tenant_id)
            self._conn.execute(
                "UPDATE sync_batch SET cancel_requested = 1 WHERE batch_id = ?", (batch_id,)
            )
            return self.get_batch(batch_id)

    def is_cancel_requested(self, batch_id: str) -> bool:
        with self._lock:
            row = self._conn.execute(
                "SELECT cancel_requested FROM sync_batch WHERE batch_id = ?", (batch_id,)
            ).fetchone()
        return bool(row and row["cancel_requested"])

    def _find_row(self, record_id: str):
        row = self._conn.execute("SELECT * FROM sync_job WHERE job_id = ?", (record_id,)).fetchone()
        if row is not None:
            return JOB, row
        row = self._conn.execute("SELECT * FROM sync_batch WHERE batch_id = ?", (record_id,)).fetchone()
        if row is not None:
            return BATCH, row
        raise NotFoundError(f"No job or batch with id {record_id}")


# =============================================================================
# Row helpers
# =============================================================================

def _error_to_json(error: Optional[ClassifiedError]) -> Optional[str]:
    return error.model_dump_json() if error is not None else None


def _error_from_json(value: Optional[str]) -> Optional[ClassifiedError]:
    return ClassifiedError.model_validate_json(value) if value else None


def _row_to_job(row) -> SyncJob:
    return SyncJob(
        job_id=row["job_id"],
        tenant_id=row["tenant_id"],
        entity_type=EntityType(row["entity_type"]),
        direction=SyncDirection(row["direction"]),
        local_id=row["local_id"],
        remote_id=row["remote_id"],
        batch_id=row["batch_id"],
        status=SyncState(row["status"]),
        attempt=row["attempt"],
        last_error=_error_from_json(row["last_error"]),
        detail=row["detail"],
        created_at=from_db_time(row["created_at"]),
        completed_at=from_db_time(row["completed_at"]),
    )


def _row_to_batch(row) -> SyncBatch:
    return SyncBatch(
        batch_id=row["batch_id"],
        tenant_id=row["tenant_id"],
        entity_type=EntityType(row["entity_type"]),
        direction=SyncDirection(row["direction"]),
        job_ids=json.loads(row["job_ids"]),
        total_count=row["total_count"],
        succeeded_count=row["succeeded_count"],
        failed_count=row["failed_count"],
        status=SyncState(row["status"]),
        cancel_requested=bool(row["cancel_requested"]),
        created_at=from_db_time(row["created_at"]),
        completed_at=from_db_time(row["completed_at"]),
    )


def _row_to_transition(row) -> StatusTransition:
    return StatusTransition(
        sequence=row["sequence"],
        record_id=row["record_id"],
        record_kind=row["record_kind"],
        tenant_id=row["tenant_id"],
        entity_type=EntityType(row["entity_type"]),
        from_state=SyncState(row["from_state"]),
        to_state=SyncState(row["to_state"]),
        timestamp=from_db_time(row["timestamp"]),
        detail=row["detail"],
        error=_error_from_json(row["error"]),
    )
