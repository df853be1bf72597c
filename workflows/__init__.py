"""Workflow definitions module."""

from workflows.scheduled_sync_workflow import (
    ScheduledSyncWorkflow,
    ScheduledSyncInput,
    ScheduledSyncOutput,
    TASK_QUEUE_SYNC,
)

__all__ = ["ScheduledSyncWorkflow", "ScheduledSyncInput", "ScheduledSyncOutput", "TASK_QUEUE_SYNC"]
