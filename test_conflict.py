"""
Conflict Policy and Concurrency Primitive Tests

LastWriterByTimestamp:
1. push skips records whose content hash did not change
2. pull keeps a CRM record edited after the last sync
3. bidirectional pushes local edits and pulls remote edits

TenantPool / ChunkGate / InFlightRegistry:
4. a tenant never exceeds its slot count; other tenants are unaffected
5. overlapping pauses extend to the latest resume time
6. a record key can only be registered once at a time
"""

import asyncio
from datetime import timedelta

import pytest

from connectors.remote_base import RemoteRecord
from core.models.records import ContactRecord
from core.models.sync import EntityType, SyncJob, SyncDirection, SyncMapping, utcnow
from core.sync import ChunkGate, InFlightRegistry, LastWriterByTimestamp, SyncAction, TenantPool, record_key


def _mapping(last_local_hash="h1", last_remote_version="1", synced_ago=60) -> SyncMapping:
    return SyncMapping(
        tenant_id="tenant-a",
        entity_type=EntityType.CONTACT,
        local_id="c-1",
        remote_id="mk-1",
        last_local_hash=last_local_hash,
        last_remote_version=last_remote_version,
        last_synced_at=utcnow() - timedelta(seconds=synced_ago),
    )


def _local(edited_ago=120) -> ContactRecord:
    return ContactRecord(id="c-1", full_name="Ada", updated_at=utcnow() - timedelta(seconds=edited_ago))


def _remote(version="1") -> RemoteRecord:
    return RemoteRecord(remote_id="mk-1", payload={"name": "Ada"}, version=version)


class TestLastWriterByTimestamp:

    def setup_method(self):
        self.policy = LastWriterByTimestamp()

    def test_push_new_record(self):
        assert self.policy.decide_push(_local(), None, "h1").action == SyncAction.PUSH

    def test_push_unchanged_is_skipped(self):
        decision = self.policy.decide_push(_local(), _mapping(), "h1")
        assert decision.action == SyncAction.SKIP
        assert decision.detail == "unchanged"

    def test_push_changed(self):
        assert self.policy.decide_push(_local(), _mapping(), "h2").action == SyncAction.PUSH

    def test_pull_unmapped(self):
        assert self.policy.decide_pull(None, None, _remote()).action == SyncAction.PULL

    def test_pull_up_to_date(self):
        decision = self.policy.decide_pull(_local(), _mapping(), _remote("1"))
        assert decision.action == SyncAction.SKIP
        assert decision.detail == "up-to-date"

    def test_pull_remote_changed(self):
        assert self.policy.decide_pull(_local(), _mapping(), _remote("2")).action == SyncAction.PULL

    def test_pull_keeps_newer_local_edit(self):
        """A CRM edit after the last sync wins over a remote change."""
        decision = self.policy.decide_pull(_local(edited_ago=10), _mapping(synced_ago=60), _remote("2"))
        assert decision.action == SyncAction.SKIP
        assert decision.detail == "skipped-local-newer"

    def test_pull_without_version_tokens(self):
        mapping = _mapping(last_remote_version=None)
        assert self.policy.decide_pull(_local(), mapping, _remote(None)).action == SyncAction.PULL

    def test_bidirectional(self):
        policy = self.policy
        assert policy.decide_bidirectional(_local(), None, None, "h1").action == SyncAction.PUSH
        assert policy.decide_bidirectional(None, None, _remote(), None).action == SyncAction.PULL
        assert policy.decide_bidirectional(
            _local(edited_ago=10), _mapping(synced_ago=60), _remote("2"), "h2",
        ).action == SyncAction.PUSH
        assert policy.decide_bidirectional(
            _local(), _mapping(), _remote("2"), "h1",
        ).action == SyncAction.PULL
        decision = policy.decide_bidirectional(_local(), _mapping(), _remote("1"), "h1")
        assert decision.action == SyncAction.SKIP
        assert decision.detail == "up-to-date"

    def test_bidirectional_touch_without_change_pulls(self):
        """A re-save with identical content does not count as a local edit."""
        decision = self.policy.decide_bidirectional(
            _local(edited_ago=10), _mapping(synced_ago=60), _remote("2"), "h1",
        )
        assert decision.action == SyncAction.PULL


class TestTenantPool:

    def test_slots_are_bounded_per_tenant(self):
        async def scenario():
            pool = TenantPool(size=2)
            peak = {"tenant-a": 0, "tenant-b": 0}

            async def work(tenant_id):
                async with pool.slot(tenant_id):
                    peak[tenant_id] = max(peak[tenant_id], pool.in_use(tenant_id))
                    await asyncio.sleep(0.01)

            await asyncio.gather(*[work("tenant-a") for _ in range(6)], *[work("tenant-b") for _ in range(2)])
            return peak, pool

        peak, pool = asyncio.run(scenario())
        assert peak == {"tenant-a": 2, "tenant-b": 2}
        assert pool.in_use("tenant-a") == 0

    def test_size_must_be_positive(self):
        with pytest.raises(ValueError):
            TenantPool(size=0)


class TestChunkGate:

    def test_pause_extends_never_shortens(self):
        async def scenario():
            gate = ChunkGate()
            loop = asyncio.get_running_loop()
            gate.pause(0.05)
            gate.pause(0.01)
            assert gate.paused
            start = loop.time()
            await gate.wait()
            return loop.time() - start, gate

        waited, gate = asyncio.run(scenario())
        assert waited >= 0.04
        assert gate.pauses == 2

    def test_zero_delay_is_ignored(self):
        async def scenario():
            gate = ChunkGate()
            gate.pause(0)
            return gate.paused, gate.pauses

        assert asyncio.run(scenario()) == (False, 0)


class TestInFlightRegistry:

    def test_record_key(self):
        assert record_key("t", EntityType.CONTACT, "c-1", "mk-1") == ("t", EntityType.CONTACT, "local", "c-1")
        assert record_key("t", "contact", None, "mk-1") == ("t", EntityType.CONTACT, "remote", "mk-1")
        with pytest.raises(ValueError):
            record_key("t", EntityType.CONTACT)

    def test_waiters_receive_the_finished_job(self):
        async def scenario():
            registry = InFlightRegistry()
            key = record_key("t", EntityType.CONTACT, "c-1")
            registry.register(key, "job-1")
            with pytest.raises(ValueError):
                registry.register(key, "job-2")

            waiter = asyncio.ensure_future(registry.wait(key))
            await asyncio.sleep(0)
            job = SyncJob(job_id="job-1", tenant_id="t", entity_type=EntityType.CONTACT,
                          direction=SyncDirection.TO_REMOTE, local_id="c-1")
            registry.release(key, job)
            return await waiter, registry, key

        job, registry, key = asyncio.run(scenario())
        assert job.job_id == "job-1"
        assert key not in registry
        assert len(registry) == 0

    def test_release_by_other_job_is_ignored(self):
        async def scenario():
            registry = InFlightRegistry()
            key = record_key("t", EntityType.CONTACT, "c-1")
            registry.register(key, "job-1")
            other = SyncJob(job_id="job-2", tenant_id="t", entity_type=EntityType.CONTACT,
                            direction=SyncDirection.TO_REMOTE, local_id="c-1")
            registry.release(key, other)
            return key in registry

        assert asyncio.run(scenario()) is True
