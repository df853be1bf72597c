"""
Scheduled Sync Workflow

Runs syncAll for each entity type of one tenant, in dependency order:
contacts -> products -> sales documents. Documents go last so that the
customers and products they reference are already mapped.

A batch that ends partial can be retried once, failed items only. Temporal
retries an activity only when it raised; a batch with failed items is a
normal result.
"""

from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Optional

from temporalio import workflow
from temporalio.common import RetryPolicy
from temporalio.exceptions import ActivityError

# Import activities
with workflow.unsafe.imports_passed_through():
    from activities.sync import (
        RetryBatchInput,
        SyncActivities,
        SyncEntityInput,
        SyncEntityOutput,
    )


TASK_QUEUE_SYNC = "erp-sync"

SYNC_ORDER = ["contact", "product", "salesDocument"]


# =============================================================================
# Workflow Input/Output
# =============================================================================

@dataclass
class ScheduledSyncInput:
    """Input for one scheduled sync run"""
    tenant_id: str
    entity_types: List[str] = field(default_factory=lambda: list(SYNC_ORDER))
    direction: str = "toRemote"

    # Re-run failed items of a partial batch once
    retry_failed: bool = True


@dataclass
class ScheduledSyncOutput:
    """Output from a scheduled sync run"""
    tenant_id: str
    status: str  # completed, partial, failed
    batches: List[SyncEntityOutput] = field(default_factory=list)
    error_message: Optional[str] = None


# =============================================================================
# Scheduled Sync Workflow
# =============================================================================

@workflow.defn
class ScheduledSyncWorkflow:
    """
    Per-tenant scheduled sync.

    Stages, one activity each:
    1. SYNC contacts
    2. SYNC products
    3. SYNC sales documents
    with an optional RETRY_FAILED after any stage that ended partial.
    """

    def __init__(self):
        self.current_entity: Optional[str] = None
        self.batches: List[SyncEntityOutput] = []

    @workflow.query
    def progress(self) -> Dict[str, Any]:
        """Current entity type and the batches finished so far."""
        return {
            "current_entity": self.current_entity,
            "batches": [
                {"entity_type": b.entity_type, "batch_id": b.batch_id, "status": b.status}
                for b in self.batches
            ],
        }

    @workflow.run
    async def run(self, input: ScheduledSyncInput) -> ScheduledSyncOutput:
        """Execute the scheduled sync."""
        workflow.logger.info(f"Starting scheduled sync for tenant {input.tenant_id}")

        unknown = [e for e in input.entity_types if e not in SYNC_ORDER]
        if unknown:
            return ScheduledSyncOutput(
                tenant_id=input.tenant_id,
                status="failed",
                error_message=f"Unknown entity types: {unknown}",
            )
        ordered = [e for e in SYNC_ORDER if e in input.entity_types]

        # Batches can be long: one job per record, chunked and rate-limited
        activity_options = {
            "start_to_close_timeout": timedelta(minutes=30),
            "retry_policy": RetryPolicy(
                maximum_attempts=3,
                initial_interval=timedelta(seconds=10),
                maximum_interval=timedelta(minutes=5),
                backoff_coefficient=2.0,
                # Tenant/permission errors won't self-heal
                non_retryable_error_types=[
                    "SyncDisabledError",
                    "PermissionDeniedError",
                    "NotFoundError",
                    "RetryNotAllowedError",
                ],
            ),
        }

        final_status: Dict[str, str] = {}
        try:
            for entity_type in ordered:
                self.current_entity = entity_type

                result = await workflow.execute_activity_method(
                    SyncActivities.sync_entity,
                    SyncEntityInput(
                        tenant_id=input.tenant_id,
                        entity_type=entity_type,
                        direction=input.direction,
                    ),
                    **activity_options,
                )
                self.batches.append(result)
                final_status[entity_type] = result.status
                workflow.logger.info(
                    f"{entity_type}: {result.status} ({result.succeeded_count}/{result.total_count})"
                )

                if result.status == "partial" and input.retry_failed:
                    retry = await workflow.execute_activity_method(
                        SyncActivities.retry_failed_items,
                        RetryBatchInput(tenant_id=input.tenant_id, batch_id=result.batch_id),
                        **activity_options,
                    )
                    self.batches.append(retry)
                    if retry.status == "completed":
                        final_status[entity_type] = "completed"

        except ActivityError as e:
            workflow.logger.error(f"Scheduled sync failed at {self.current_entity}: {e}")
            return ScheduledSyncOutput(
                tenant_id=input.tenant_id,
                status="failed",
                batches=self.batches,
                error_message=f"{self.current_entity}: {e.cause or e}",
            )

        self.current_entity = None
        return ScheduledSyncOutput(
            tenant_id=input.tenant_id,
            status=_overall_status(list(final_status.values())),
            batches=self.batches,
        )


def _overall_status(statuses: List[str]) -> str:
    if all(s == "completed" for s in statuses):
        return "completed"
    if all(s == "failed" for s in statuses):
        return "failed"
    return "partial"
