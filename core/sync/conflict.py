"""Conflict resolution policies.

A policy looks at the local record, the remote record and the mapping from
the last successful sync, and decides whether a sync writes the ERP, writes
the CRM, or does nothing. Policies are pure: they never touch a store.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from connectors.remote_base import RemoteRecord
from core.models.records import LocalRecordBase
from core.models.sync import SyncMapping

# Outcome details
UNCHANGED = "unchanged"
UP_TO_DATE = "up-to-date"
SKIPPED_LOCAL_NEWER = "skipped-local-newer"


class SyncAction(str, Enum):
    PUSH = "push"
    PULL = "pull"
    SKIP = "skip"


@dataclass(frozen=True)
class Decision:
    action: SyncAction
    detail: Optional[str] = None

    @classmethod
    def push(cls) -> "Decision":
        return cls(SyncAction.PUSH)

    @classmethod
    def pull(cls) -> "Decision":
        return cls(SyncAction.PULL)

    @classmethod
    def skip(cls, detail: str) -> "Decision":
        return cls(SyncAction.SKIP, detail)


class ConflictStrategy(ABC):
    """Decides what a sync does when both sides may have changed."""

    @abstractmethod
    def decide_push(self, local: LocalRecordBase, mapping: Optional[SyncMapping],
                    local_hash: str) -> Decision:
        """Decision for an explicit CRM -> ERP sync."""
        pass

    @abstractmethod
    def decide_pull(self, local: Optional[LocalRecordBase], mapping: Optional[SyncMapping],
                    remote: RemoteRecord) -> Decision:
        """Decision for an explicit ERP -> CRM sync."""
        pass

    @abstractmethod
    def decide_bidirectional(
        self,
        local: Optional[LocalRecordBase],
        mapping: Optional[SyncMapping],
        remote: Optional[RemoteRecord],
        local_hash: Optional[str],
    ) -> Decision:
        """Decision when the sync may go either way."""
        pass


class LastWriterByTimestamp(ConflictStrategy):
    """Default policy.

    The ERP wins for mapped fields, unless the CRM record was edited after
    the last successful sync, in which case the CRM side is kept (and pushed,
    for bidirectional syncs).
    """

    @staticmethod
    def _local_newer(local: Optional[LocalRecordBase], mapping: SyncMapping) -> bool:
        return (
            local is not None
            and local.updated_at is not None
            and local.updated_at > mapping.last_synced_at
        )

    @staticmethod
    def _remote_changed(remote: RemoteRecord, mapping: SyncMapping) -> bool:
        if remote.version is None or mapping.last_remote_version is None:
            return True
        return remote.version != mapping.last_remote_version

    def decide_push(self, local: LocalRecordBase, mapping: Optional[SyncMapping],
                    local_hash: str) -> Decision:
        if mapping is None:
            return Decision.push()
        if mapping.last_local_hash == local_hash:
            return Decision.skip(UNCHANGED)
        return Decision.push()

    def decide_pull(self, local: Optional[LocalRecordBase], mapping: Optional[SyncMapping],
                    remote: RemoteRecord) -> Decision:
        if mapping is None or local is None:
            return Decision.pull()
        if self._local_newer(local, mapping):
            return Decision.skip(SKIPPED_LOCAL_NEWER)
        if not self._remote_changed(remote, mapping):
            return Decision.skip(UP_TO_DATE)
        return Decision.pull()

    def decide_bidirectional(
        self,
        local: Optional[LocalRecordBase],
        mapping: Optional[SyncMapping],
        remote: Optional[RemoteRecord],
        local_hash: Optional[str],
    ) -> Decision:
        if mapping is None or remote is None:
            if local is not None:
                return Decision.push()
            if remote is not None:
                return Decision.pull()
            return Decision.skip(UP_TO_DATE)
        if local is None:
            return Decision.pull()

        local_changed = local_hash != mapping.last_local_hash and self._local_newer(local, mapping)
        if local_changed:
            return Decision.push()
        if self._remote_changed(remote, mapping):
            return Decision.pull()
        return Decision.skip(UP_TO_DATE)
