"""Sync engine: pipeline, job runner, batches and the orchestrator."""

from core.sync.conflict import ConflictStrategy, Decision, LastWriterByTimestamp, SyncAction
from core.sync.context import SyncContext
from core.sync.orchestrator import SyncOrchestrator
from core.sync.pipeline import SyncPipeline, idempotency_key
from core.sync.pool import ChunkGate, TenantPool
from core.sync.registry import InFlightRegistry, record_key

__all__ = [
    "ConflictStrategy",
    "Decision",
    "LastWriterByTimestamp",
    "SyncAction",
    "SyncContext",
    "SyncOrchestrator",
    "SyncPipeline",
    "idempotency_key",
    "ChunkGate",
    "TenantPool",
    "InFlightRegistry",
    "record_key",
]
