"""Worker for scheduled CRM/ERP sync.

Connects to Temporal, builds one SyncContext from environment settings and
polls the sync task queue with ScheduledSyncWorkflow and its activities.

Run with --queue <name> to poll a different task queue.
"""

import argparse
import asyncio
import sys
from pathlib import Path

from temporalio.worker import Worker

# Add repo root to path
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from activities.sync import SyncActivities
from core.config import SyncSettings
from core.observability.logging import configure_logging, get_logger
from core.sync import SyncContext, SyncOrchestrator
from temporal_client import get_temporal_client
from workflows.scheduled_sync_workflow import ScheduledSyncWorkflow, TASK_QUEUE_SYNC


logger = get_logger(__name__)


def build_worker(client, orchestrator: SyncOrchestrator, task_queue: str = TASK_QUEUE_SYNC) -> Worker:
    """Worker polling task_queue with the sync workflow and activities."""
    activities = SyncActivities(orchestrator)
    return Worker(
        client,
        task_queue=task_queue,
        workflows=[ScheduledSyncWorkflow],
        activities=[activities.sync_entity, activities.retry_failed_items],
    )


async def run_worker(task_queue: str = TASK_QUEUE_SYNC):
    """Start a worker listening on the task queue.

    Raises:
        Exception: If connection to Temporal fails
    """
    settings = SyncSettings.from_env()
    configure_logging(json_format=settings.log_json, force=True)

    client = await get_temporal_client()
    logger.info(f"Connected to Temporal: {client.namespace}")

    async with SyncContext(settings) as context:
        orchestrator = SyncOrchestrator(context)
        worker = build_worker(client, orchestrator, task_queue)
        logger.info(f"Worker running on queue '{task_queue}'... (Ctrl+C to stop)")
        try:
            await worker.run()
        finally:
            await orchestrator.close()


def main():
    """Entry point for worker with CLI args."""
    parser = argparse.ArgumentParser(description="CRM/ERP Sync Temporal Worker")
    parser.add_argument(
        "--queue", "-q",
        default=TASK_QUEUE_SYNC,
        help=f"Task queue to poll (default: {TASK_QUEUE_SYNC})"
    )

    args = parser.parse_args()
    try:
        asyncio.run(run_worker(task_queue=args.queue))
    except KeyboardInterrupt:
        logger.info("Worker interrupted by user")


if __name__ == "__main__":
    main()
