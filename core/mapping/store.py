"""Mapping Store.

Durable local-id <-> remote-id correspondence, per tenant and entity type.

Uniqueness is enforced on both sides: at most one mapping per
(tenant_id, entity_type, local_id) and at most one per
(tenant_id, entity_type, remote_id). ``upsert`` is a compare-and-swap keyed
on the local id; it never overwrites a mapping that points somewhere else.
Mappings are only removed through an explicit ``unlink``.
"""

import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Union

from core.errors import MappingConflictError
from core.models.sync import EntityType, SyncDirection, SyncMapping
from core.observability.logging import get_logger
from core.storage.database import connect, from_db_time, to_db_time

logger = get_logger(__name__)


class MappingStore(ABC):
    """Contract for mapping persistence. Every operation is tenant-scoped."""

    @abstractmethod
    def find(
        self,
        tenant_id: str,
        entity_type: EntityType,
        local_id: Optional[str] = None,
        remote_id: Optional[str] = None,
    ) -> Optional[SyncMapping]:
        """Find a mapping by local id or by remote id (exactly one must be given)."""
        pass

    @abstractmethod
    def upsert(self, mapping: SyncMapping) -> SyncMapping:
        """Insert or update a mapping atomically.

        Raises:
            MappingConflictError: The local id is mapped to a different remote
                id, or the remote id is mapped to a different local id
        """
        pass

    @abstractmethod
    def unlink(self, tenant_id: str, entity_type: EntityType, local_id: str) -> bool:
        """Delete a mapping. Returns False if none existed."""
        pass

    @abstractmethod
    def list(self, tenant_id: str, entity_type: EntityType) -> List[SyncMapping]:
        """All mappings of one entity type for a tenant."""
        pass

    def remote_ids_for(self, tenant_id: str, entity_type: EntityType,
                       local_ids: Iterable[str]) -> Dict[str, str]:
        """local_id -> remote_id for the given ids that are mapped."""
        result = {}
        for local_id in local_ids:
            mapping = self.find(tenant_id, entity_type, local_id=local_id)
            if mapping:
                result[local_id] = mapping.remote_id
        return result

    def local_ids_for(self, tenant_id: str, entity_type: EntityType,
                      remote_ids: Iterable[str]) -> Dict[str, str]:
        """remote_id -> local_id for the given ids that are mapped."""
        result = {}
        for remote_id in remote_ids:
            mapping = self.find(tenant_id, entity_type, remote_id=remote_id)
            if mapping:
                result[remote_id] = mapping.local_id
        return result

    def close(self) -> None:
        pass


class SQLiteMappingStore(MappingStore):
    """SQLite-backed mapping store.

    The table's primary key is (tenant_id, entity_type, local_id) and a
    unique index covers (tenant_id, entity_type, remote_id).

    Usage:
        store = SQLiteMappingStore(Path("sync.db"))
        store.upsert(SyncMapping(tenant_id="t1", entity_type="contact",
                                 local_id="c-1", remote_id="mk-100"))
        store.find("t1", EntityType.CONTACT, local_id="c-1")
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = db_path
        self._conn = connect(db_path)
        self._lock = threading.RLock()
        self._init_db()

    def _init_db(self) -> None:
        with self._lock:
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS sync_mapping (
                    tenant_id TEXT NOT NULL,
                    entity_type TEXT NOT NULL,
                    local_id TEXT NOT NULL,
                    remote_id TEXT NOT NULL,
                    last_local_hash TEXT,
                    last_remote_version TEXT,
                    last_synced_at TEXT NOT NULL,
                    sync_direction TEXT NOT NULL,
                    PRIMARY KEY (tenant_id, entity_type, local_id)
                )
            """)
            self._conn.execute("""
                CREATE UNIQUE INDEX IF NOT EXISTS idx_sync_mapping_remote
                ON sync_mapping(tenant_id, entity_type, remote_id)
            """)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # =========================================================================
    # Queries
    # =========================================================================

    def find(
        self,
        tenant_id: str,
        entity_type: EntityType,
        local_id: Optional[str] = None,
        remote_id: Optional[str] = None,
    ) -> Optional[SyncMapping]:
        if (local_id is None) == (remote_id is None):
            raise ValueError("Exactly one of local_id or remote_id is required")

        column, value = ("local_id", local_id) if local_id is not None else ("remote_id", remote_id)
        with self._lock:
            row = self._conn.execute(
                f"SELECT * FROM sync_mapping WHERE tenant_id = ? AND entity_type = ? AND {column} = ?",
                (tenant_id, EntityType(entity_type).value, value),
            ).fetchone()
        return _row_to_mapping(row) if row else None

    def list(self, tenant_id: str, entity_type: EntityType) -> List[SyncMapping]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM sync_mapping WHERE tenant_id = ? AND entity_type = ? ORDER BY local_id",
                (tenant_id, EntityType(entity_type).value),
            ).fetchall()
        return [_row_to_mapping(row) for row in rows]

    # =========================================================================
    # Mutations
    # =========================================================================

    def upsert(self, mapping: SyncMapping) -> SyncMapping:
        entity_type = EntityType(mapping.entity_type).value
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                existing = self._conn.execute(
                    "SELECT * FROM sync_mapping WHERE tenant_id = ? AND entity_type = ? AND local_id = ?",
                    (mapping.tenant_id, entity_type, mapping.local_id),
                ).fetchone()
                if existing is not None and existing["remote_id"] != mapping.remote_id:
                    raise MappingConflictError(
                        f"{entity_type} {mapping.local_id} is already mapped to "
                        f"{existing['remote_id']}, refusing to remap to {mapping.remote_id}",
                        tenant_id=mapping.tenant_id,
                        entity_type=entity_type,
                        local_id=mapping.local_id,
                        remote_id=mapping.remote_id,
                        existing_remote_id=existing["remote_id"],
                    )

                owner = self._conn.execute(
                    "SELECT local_id FROM sync_mapping WHERE tenant_id = ? AND entity_type = ? AND remote_id = ?",
                    (mapping.tenant_id, entity_type, mapping.remote_id),
                ).fetchone()
                if owner is not None and owner["local_id"] != mapping.local_id:
                    raise MappingConflictError(
                        f"Remote {entity_type} {mapping.remote_id} is already mapped to "
                        f"local {owner['local_id']}",
                        tenant_id=mapping.tenant_id,
                        entity_type=entity_type,
                        local_id=mapping.local_id,
                        remote_id=mapping.remote_id,
                        existing_local_id=owner["local_id"],
                    )

                params = (
                    mapping.last_local_hash,
                    mapping.last_remote_version,
                    to_db_time(mapping.last_synced_at),
                    SyncDirection(mapping.sync_direction).value,
                    mapping.tenant_id,
                    entity_type,
                    mapping.local_id,
                )
                if existing is None:
                    self._conn.execute("""
                        INSERT INTO sync_mapping
                        (last_local_hash, last_remote_version, last_synced_at, sync_direction,
                         tenant_id, entity_type, local_id, remote_id)
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """, params + (mapping.remote_id,))
                else:
                    self._conn.execute("""
                        UPDATE sync_mapping
                        SET last_local_hash = ?, last_remote_version = ?,
                            last_synced_at = ?, sync_direction = ?
                        WHERE tenant_id = ? AND entity_type = ? AND local_id = ?
                    """, params)
                self._conn.execute("COMMIT")
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise

        logger.debug(
            f"Mapping {'created' if existing is None else 'updated'}: "
            f"{entity_type} {mapping.local_id} -> {mapping.remote_id}",
            extra_fields={"tenant_id": mapping.tenant_id},
        )
        return mapping

    def unlink(self, tenant_id: str, entity_type: EntityType, local_id: str) -> bool:
        with self._lock:
            cursor = self._conn.execute(
                "DELETE FROM sync_mapping WHERE tenant_id = ? AND entity_type = ? AND local_id = ?",
                (tenant_id, EntityType(entity_type).value, local_id),
            )
        removed = cursor.rowcount > 0
        if removed:
            logger.info(
                f"Mapping unlinked: {EntityType(entity_type).value} {local_id}",
                extra_fields={"tenant_id": tenant_id},
            )
        return removed


def _row_to_mapping(row) -> SyncMapping:
    return SyncMapping(
        tenant_id=row["tenant_id"],
        entity_type=EntityType(row["entity_type"]),
        local_id=row["local_id"],
        remote_id=row["remote_id"],
        last_local_hash=row["last_local_hash"],
        last_remote_version=row["last_remote_version"],
        last_synced_at=from_db_time(row["last_synced_at"]),
        sync_direction=SyncDirection(row["sync_direction"]),
    )
