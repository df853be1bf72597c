"""SyncContext: the collaborators of one engine instance.

Stores, remote client, tracker, event publisher, metrics and the
concurrency primitives are created here and passed down explicitly; nothing
in the engine reaches for a module-level singleton.
"""

from pathlib import Path
from typing import Callable, Optional

from connectors import RemoteApiClient, RemoteConfig, create_connector
from core.audit import CallbackEventBackend, EventPublisher, JSONFileEventBackend
from core.config import SyncSettings
from core.conversion import RecordConverter
from core.mapping import MappingStore, SQLiteMappingStore
from core.models.events import SyncEvent
from core.observability.logging import get_logger
from core.observability.metrics import MetricsCollector
from core.retry import ErrorClassifier
from core.status.tracker import SQLiteStatusTracker
from core.storage.records import InMemoryRecordStore, JSONFileRecordStore, LocalRecordStore
from core.sync.conflict import ConflictStrategy, LastWriterByTimestamp
from core.sync.pool import TenantPool
from core.sync.registry import InFlightRegistry

logger = get_logger(__name__)


class SyncContext:
    """Owns every collaborator the sync engine needs.

    Any collaborator can be injected; the rest are built from settings.
    ``notifier`` receives every published SyncEvent (the notification/UI
    layer); it is called inline and must not block.

    Usage:
        async with SyncContext(SyncSettings(db_path=":memory:")) as context:
            orchestrator = SyncOrchestrator(context)
            job = await orchestrator.sync_one(tenant, EntityType.CONTACT, "c-1")
    """

    def __init__(
        self,
        settings: Optional[SyncSettings] = None,
        remote: Optional[RemoteApiClient] = None,
        records: Optional[LocalRecordStore] = None,
        mappings: Optional[MappingStore] = None,
        tracker: Optional[SQLiteStatusTracker] = None,
        events: Optional[EventPublisher] = None,
        metrics: Optional[MetricsCollector] = None,
        converter: Optional[RecordConverter] = None,
        classifier: Optional[ErrorClassifier] = None,
        strategy: Optional[ConflictStrategy] = None,
        notifier: Optional[Callable[[SyncEvent], None]] = None,
    ):
        self.settings = settings or SyncSettings()
        settings = self.settings

        self.remote = remote or create_connector(RemoteConfig(
            connector_type=settings.remote_connector,
            base_url=settings.remote_base_url,
            timeout_seconds=settings.remote_timeout_seconds,
        ))
        if records is None:
            records = JSONFileRecordStore(settings.records_dir) if settings.records_dir else InMemoryRecordStore()
        self.records = records
        self.mappings = mappings or SQLiteMappingStore(settings.db_path)
        self.tracker = tracker or SQLiteStatusTracker(settings.db_path)

        if events is None:
            events = EventPublisher()
            if settings.events_dir:
                events.add_backend(JSONFileEventBackend(Path(settings.events_dir)))
        if notifier is not None:
            events.add_backend(CallbackEventBackend(notifier))
        self.events = events
        self.tracker.add_listener(self.events.publish_transition)

        self.metrics = metrics or MetricsCollector(settings.db_path)
        self.converter = converter or RecordConverter()
        self.classifier = classifier or ErrorClassifier(settings.retry_policy)
        self.strategy = strategy or LastWriterByTimestamp()
        self.pool = TenantPool(settings.max_concurrency)
        self.registry = InFlightRegistry()
        self._started = False

    async def start(self) -> None:
        if self._started:
            return
        await self.remote.connect()
        self._started = True
        logger.info(f"Sync context started with remote {self.remote.get_connector_name()}")

    async def close(self) -> None:
        if self._started:
            await self.remote.disconnect()
            self._started = False
        self.mappings.close()
        self.tracker.close()

    async def __aenter__(self) -> "SyncContext":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
