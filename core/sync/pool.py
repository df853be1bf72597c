"""Per-tenant concurrency control.

TenantPool bounds how many jobs of one tenant talk to the ERP at once.
ChunkGate holds back the rest of a batch chunk after the ERP signals a rate
limit.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Dict


class TenantPool:
    """One semaphore per tenant, created on first use.

    Usage:
        pool = TenantPool(size=4)
        async with pool.slot("tenant-1"):
            await remote.create(...)
    """

    def __init__(self, size: int = 4):
        if size < 1:
            raise ValueError("Pool size must be >= 1")
        self.size = size
        self._semaphores: Dict[str, asyncio.Semaphore] = {}
        self._in_use: Dict[str, int] = {}

    def _semaphore(self, tenant_id: str) -> asyncio.Semaphore:
        semaphore = self._semaphores.get(tenant_id)
        if semaphore is None:
            semaphore = asyncio.Semaphore(self.size)
            self._semaphores[tenant_id] = semaphore
        return semaphore

    @asynccontextmanager
    async def slot(self, tenant_id: str):
        """Hold one of the tenant's slots for the duration of the block."""
        async with self._semaphore(tenant_id):
            self._in_use[tenant_id] = self._in_use.get(tenant_id, 0) + 1
            try:
                yield
            finally:
                self._in_use[tenant_id] -= 1

    def in_use(self, tenant_id: str) -> int:
        return self._in_use.get(tenant_id, 0)


class ChunkGate:
    """Shared pause point for the jobs of one batch.

    A rate-limited job calls ``pause(delay)``; every job of the batch waits at
    ``wait()`` before starting its next attempt. Overlapping pauses extend to
    the latest resume time, they never shorten it.
    """

    def __init__(self):
        self._resume_at = 0.0
        self.pauses = 0

    @staticmethod
    def _now() -> float:
        return asyncio.get_running_loop().time()

    def pause(self, delay: float) -> None:
        if delay <= 0:
            return
        self._resume_at = max(self._resume_at, self._now() + delay)
        self.pauses += 1

    @property
    def paused(self) -> bool:
        return self._resume_at > self._now()

    async def wait(self) -> None:
        while True:
            remaining = self._resume_at - self._now()
            if remaining <= 0:
                return
            await asyncio.sleep(remaining)
