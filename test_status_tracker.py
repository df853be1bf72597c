"""
Status Tracker Tests

1. Jobs follow idle -> queued -> inProgress -> completed | failed
2. Stale or illegal transitions are refused
3. partial is a batch-only state
4. Completed and permanently failed jobs are immutable
5. Every transition is kept, in order, and can be replayed
6. Batch counters never exceed the total
"""

import pytest

from core.errors import InvalidTransitionError, JobImmutableError, NotFoundError
from core.models.sync import (
    ClassifiedError,
    EntityType,
    ErrorCategory,
    SyncBatch,
    SyncDirection,
    SyncJob,
    SyncState,
)
from core.status.tracker import SQLiteStatusTracker


@pytest.fixture
def tracker():
    tracker = SQLiteStatusTracker(":memory:")
    yield tracker
    tracker.close()


def _job(job_id="job-1", tenant_id="tenant-a", batch_id=None) -> SyncJob:
    return SyncJob(job_id=job_id, tenant_id=tenant_id, entity_type=EntityType.CONTACT,
                   direction=SyncDirection.TO_REMOTE, local_id=f"c-{job_id}", batch_id=batch_id)


def _batch(batch_id="batch-1") -> SyncBatch:
    return SyncBatch(batch_id=batch_id, tenant_id="tenant-a", entity_type=EntityType.CONTACT,
                     direction=SyncDirection.TO_REMOTE)


def _error(category) -> ClassifiedError:
    return ClassifiedError(category=category, message=category.value)


class TestJobStateMachine:

    def test_happy_path(self, tracker):
        tracker.register_job(_job())
        tracker.record_transition("job-1", SyncState.IDLE, SyncState.QUEUED)
        tracker.record_transition("job-1", SyncState.QUEUED, SyncState.IN_PROGRESS)
        tracker.record_transition("job-1", SyncState.IN_PROGRESS, SyncState.COMPLETED, detail="created")

        job = tracker.get_job("job-1")
        assert job.status == SyncState.COMPLETED
        assert job.attempt == 1
        assert job.detail == "created"
        assert job.completed_at is not None
        assert tracker.current_status("job-1") == SyncState.COMPLETED

    def test_stale_from_state_refused(self, tracker):
        tracker.register_job(_job())
        tracker.record_transition("job-1", SyncState.IDLE, SyncState.QUEUED)

        with pytest.raises(InvalidTransitionError):
            tracker.record_transition("job-1", SyncState.IDLE, SyncState.QUEUED)

    def test_illegal_transition_refused(self, tracker):
        tracker.register_job(_job())
        with pytest.raises(InvalidTransitionError):
            tracker.record_transition("job-1", SyncState.IDLE, SyncState.COMPLETED)

    def test_partial_is_batch_only(self, tracker):
        tracker.register_job(_job())
        tracker.record_transition("job-1", SyncState.IDLE, SyncState.QUEUED)
        tracker.record_transition("job-1", SyncState.QUEUED, SyncState.IN_PROGRESS)

        with pytest.raises(InvalidTransitionError, match="batch-only"):
            tracker.record_transition("job-1", SyncState.IN_PROGRESS, SyncState.PARTIAL)

    def test_transient_failure_can_be_requeued(self, tracker):
        tracker.register_job(_job())
        tracker.record_transition("job-1", SyncState.IDLE, SyncState.QUEUED)
        tracker.record_transition("job-1", SyncState.QUEUED, SyncState.IN_PROGRESS)
        tracker.record_transition("job-1", SyncState.IN_PROGRESS, SyncState.FAILED,
                                  error=_error(ErrorCategory.TRANSIENT_NETWORK))
        tracker.record_transition("job-1", SyncState.FAILED, SyncState.QUEUED)
        tracker.record_transition("job-1", SyncState.QUEUED, SyncState.IN_PROGRESS)

        job = tracker.get_job("job-1")
        assert job.attempt == 2
        assert job.last_error.category == ErrorCategory.TRANSIENT_NETWORK
        assert job.completed_at is None

    def test_permanent_failure_is_immutable(self, tracker):
        tracker.register_job(_job())
        tracker.record_transition("job-1", SyncState.IDLE, SyncState.QUEUED)
        tracker.record_transition("job-1", SyncState.QUEUED, SyncState.IN_PROGRESS)
        tracker.record_transition("job-1", SyncState.IN_PROGRESS, SyncState.FAILED,
                                  error=_error(ErrorCategory.VALIDATION))

        with pytest.raises(JobImmutableError):
            tracker.record_transition("job-1", SyncState.FAILED, SyncState.QUEUED)
        with pytest.raises(JobImmutableError):
            tracker.update_job("job-1", remote_id="mk-1")

    def test_history_is_ordered_and_replayable(self, tracker):
        tracker.HISTORY_PAGE_SIZE = 2
        tracker.register_job(_job())
        tracker.record_transition("job-1", SyncState.IDLE, SyncState.QUEUED)
        tracker.record_transition("job-1", SyncState.QUEUED, SyncState.IN_PROGRESS)
        tracker.record_transition("job-1", SyncState.IN_PROGRESS, SyncState.FAILED,
                                  error=_error(ErrorCategory.TIMEOUT))
        tracker.record_transition("job-1", SyncState.FAILED, SyncState.QUEUED, detail="retry")
        tracker.record_transition("job-1", SyncState.QUEUED, SyncState.IN_PROGRESS)

        first = [(t.from_state, t.to_state) for t in tracker.history("job-1")]
        second = [(t.from_state, t.to_state) for t in tracker.history("job-1")]

        assert first == second
        assert first == [
            (SyncState.IDLE, SyncState.QUEUED),
            (SyncState.QUEUED, SyncState.IN_PROGRESS),
            (SyncState.IN_PROGRESS, SyncState.FAILED),
            (SyncState.FAILED, SyncState.QUEUED),
            (SyncState.QUEUED, SyncState.IN_PROGRESS),
        ]
        history = list(tracker.history("job-1"))
        assert history[2].error.category == ErrorCategory.TIMEOUT
        assert [t.sequence for t in history] == sorted(t.sequence for t in history)

    def test_listener_receives_transitions(self, tracker):
        seen = []
        tracker.add_listener(lambda transition, subject: seen.append((transition.to_state, subject.job_id)))
        tracker.register_job(_job())
        tracker.record_transition("job-1", SyncState.IDLE, SyncState.QUEUED)

        assert seen == [(SyncState.QUEUED, "job-1")]

    def test_failing_listener_does_not_break_transition(self, tracker):
        def broken(transition, subject):
            raise RuntimeError("listener down")

        tracker.add_listener(broken)
        tracker.register_job(_job())
        tracker.record_transition("job-1", SyncState.IDLE, SyncState.QUEUED)
        assert tracker.current_status("job-1") == SyncState.QUEUED

    def test_tenant_scoped_lookup(self, tracker):
        tracker.register_job(_job())
        with pytest.raises(NotFoundError):
            tracker.get_job("job-1", tenant_id="tenant-b")
        with pytest.raises(NotFoundError):
            tracker.current_status("missing")

    def test_list_jobs_filters(self, tracker):
        tracker.register_job(_job("job-1"))
        tracker.register_job(_job("job-2"))
        tracker.register_job(_job("job-3", tenant_id="tenant-b"))
        tracker.record_transition("job-2", SyncState.IDLE, SyncState.QUEUED)

        assert {j.job_id for j in tracker.list_jobs("tenant-a")} == {"job-1", "job-2"}
        assert [j.job_id for j in tracker.list_jobs("tenant-a", status=SyncState.QUEUED)] == ["job-2"]


class TestBatchTracking:

    def test_counters_and_failed_items(self, tracker):
        tracker.register_batch(_batch())
        for job_id in ("j1", "j2"):
            tracker.register_job(_job(job_id, batch_id="batch-1"))
        tracker.add_batch_jobs("batch-1", ["j1", "j2"])

        tracker.record_transition("j2", SyncState.IDLE, SyncState.QUEUED)
        tracker.record_transition("j2", SyncState.QUEUED, SyncState.FAILED,
                                  error=_error(ErrorCategory.CANCELLED))

        assert tracker.record_batch_outcome("batch-1", True) == (1, 0, 2)
        assert tracker.record_batch_outcome("batch-1", False) == (1, 1, 2)
        with pytest.raises(InvalidTransitionError):
            tracker.record_batch_outcome("batch-1", True)

        batch = tracker.get_batch("batch-1")
        assert batch.pending_count == 0
        assert [item.job_id for item in batch.failed_items] == ["j2"]
        assert batch.failed_items[0].error.category == ErrorCategory.CANCELLED

    def test_batch_partial(self, tracker):
        tracker.register_batch(_batch())
        tracker.record_transition("batch-1", SyncState.IDLE, SyncState.QUEUED)
        tracker.record_transition("batch-1", SyncState.QUEUED, SyncState.IN_PROGRESS)
        tracker.record_transition("batch-1", SyncState.IN_PROGRESS, SyncState.PARTIAL)

        batch = tracker.get_batch("batch-1")
        assert batch.status == SyncState.PARTIAL
        assert batch.completed_at is not None
        assert tracker.record_kind("batch-1") == "batch"

    def test_cancel_flag(self, tracker):
        tracker.register_batch(_batch())
        assert tracker.is_cancel_requested("batch-1") is False
        assert tracker.request_cancel("batch-1").cancel_requested is True
        assert tracker.is_cancel_requested("batch-1") is True
