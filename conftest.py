"""Shared pytest fixtures for the sync engine tests.

Every engine fixture runs against in-memory SQLite, an in-memory record store
and the sandbox ERP, with retry delays shrunk to milliseconds.
"""

import asyncio
from typing import List

import pytest

from connectors.sandbox import SandboxRemoteApi
from core.audit.events import EventPublisher, InMemoryEventBackend
from core.config import SyncSettings
from core.retry.classifier import RetryPolicy
from core.security.tenant import TenantContext
from core.storage.records import InMemoryRecordStore
from core.sync import SyncContext, SyncOrchestrator


def fast_settings(**overrides) -> SyncSettings:
    """Settings with millisecond backoff; keyword arguments override fields."""
    values = dict(
        db_path=":memory:",
        chunk_size=10,
        max_concurrency=4,
        job_timeout_seconds=5.0,
        retry_policy=RetryPolicy(max_attempts=4, base_delay=0.001, max_delay=0.05, jitter=0.0),
    )
    values.update(overrides)
    return SyncSettings(**values)


class Engine:
    """One wired-up engine: sandbox remote, stores, events and orchestrator."""

    def __init__(self, settings: SyncSettings, sandbox: SandboxRemoteApi, notifier=None):
        self.settings = settings
        self.sandbox = sandbox
        self.records = InMemoryRecordStore()
        self.event_log = InMemoryEventBackend()
        events = EventPublisher()
        events.add_backend(self.event_log)
        self.context = SyncContext(settings, remote=sandbox, records=self.records, events=events,
                                   notifier=notifier)
        self.orchestrator = SyncOrchestrator(self.context)

    @property
    def mappings(self):
        return self.context.mappings

    @property
    def tracker(self):
        return self.context.tracker

    @property
    def metrics(self):
        return self.context.metrics


@pytest.fixture
def settings() -> SyncSettings:
    return fast_settings()


@pytest.fixture
def sandbox() -> SandboxRemoteApi:
    return SandboxRemoteApi()


@pytest.fixture
def make_engine():
    """Factory for engines; make_engine(latency=0.01, notifier=received.append, chunk_size=5, ...)."""
    engines: List[Engine] = []

    def factory(latency: float = 0.0, notifier=None, **overrides) -> Engine:
        engine = Engine(fast_settings(**overrides), SandboxRemoteApi(latency=latency), notifier)
        engines.append(engine)
        return engine

    yield factory

    for engine in engines:
        asyncio.run(engine.context.close())


@pytest.fixture
def engine(make_engine) -> Engine:
    return make_engine()


@pytest.fixture
def admin() -> TenantContext:
    return TenantContext(tenant_id="tenant-a", roles=("admin",), user_id="u-admin")


@pytest.fixture
def member() -> TenantContext:
    """Same tenant, no elevated role."""
    return TenantContext(tenant_id="tenant-a", roles=("sales",), user_id="u-sales")


@pytest.fixture
def other_tenant() -> TenantContext:
    return TenantContext(tenant_id="tenant-b", roles=("owner",), user_id="u-other")
