"""Temporal activities for scheduled CRM/ERP sync."""

from activities.sync import (
    RetryBatchInput,
    SyncActivities,
    SyncEntityInput,
    SyncEntityOutput,
)

__all__ = [
    "RetryBatchInput",
    "SyncActivities",
    "SyncEntityInput",
    "SyncEntityOutput",
]
