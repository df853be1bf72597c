"""In-flight job registry.

At most one job per (tenant, entity type, record) runs at a time. A second
request for the same record while a job is in flight gets that job back
instead of starting another one.

Every method is synchronous: lookup and registration happen in the same
event-loop step, so two requests can never both register the same key.
"""

import asyncio
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from core.models.sync import EntityType, SyncJob

RecordKey = Tuple[str, EntityType, str, str]


def record_key(tenant_id: str, entity_type: EntityType,
               local_id: Optional[str] = None, remote_id: Optional[str] = None) -> RecordKey:
    """Key a record by its local id, or by its remote id while it has no local counterpart."""
    if local_id:
        return (tenant_id, EntityType(entity_type), "local", local_id)
    if remote_id:
        return (tenant_id, EntityType(entity_type), "remote", remote_id)
    raise ValueError("local_id or remote_id is required")


@dataclass
class InFlight:
    job_id: str
    done: "asyncio.Future[SyncJob]"


class InFlightRegistry:
    """Tracks the running job for each record key."""

    def __init__(self):
        self._entries: Dict[RecordKey, InFlight] = {}

    def get(self, key: RecordKey) -> Optional[InFlight]:
        return self._entries.get(key)

    def register(self, key: RecordKey, job_id: str) -> InFlight:
        if key in self._entries:
            raise ValueError(f"Record already in flight: {key}")
        entry = InFlight(job_id=job_id, done=asyncio.get_running_loop().create_future())
        self._entries[key] = entry
        return entry

    def release(self, key: RecordKey, job: SyncJob) -> None:
        """Drop the key and hand the finished job to everyone waiting on it."""
        entry = self._entries.get(key)
        if entry is None or entry.job_id != job.job_id:
            return
        del self._entries[key]
        if not entry.done.done():
            entry.done.set_result(job)

    async def wait(self, key: RecordKey) -> Optional[SyncJob]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        return await asyncio.shield(entry.done)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: RecordKey) -> bool:
        return key in self._entries
