"""Local record storage.

The CRM side of the sync, seen by the engine as a simple keyed store:
``get_by_id``, ``save`` and ``list``, all scoped by tenant.

Two implementations:
- InMemoryRecordStore: development and tests
- JSONFileRecordStore: one JSON file per record, with a SHA-256 content hash
  verified on every read
"""

import hashlib
import json
import threading
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

from core.models.records import LocalRecordBase, entity_type_of, record_class
from core.models.sync import EntityType, utcnow


def _compute_sha256(data: bytes) -> str:
    """Compute SHA256 hash of bytes."""
    return hashlib.sha256(data).hexdigest()


class LocalRecordStore(ABC):
    """Contract for CRM record persistence."""

    @abstractmethod
    def get_by_id(self, tenant_id: str, entity_type: EntityType,
                  record_id: str) -> Optional[LocalRecordBase]:
        pass

    @abstractmethod
    def save(self, tenant_id: str, record: LocalRecordBase, touch: bool = True) -> LocalRecordBase:
        """Insert or replace a record.

        Args:
            tenant_id: Owning tenant
            record: Record to save; an id is assigned if missing
            touch: Stamp updated_at with the current time

        Returns:
            The saved record
        """
        pass

    @abstractmethod
    def list(self, tenant_id: str, entity_type: EntityType) -> List[LocalRecordBase]:
        pass

    def list_ids(self, tenant_id: str, entity_type: EntityType) -> List[str]:
        return [r.id for r in self.list(tenant_id, entity_type)]

    @staticmethod
    def _prepare(record: LocalRecordBase, touch: bool) -> LocalRecordBase:
        updates = {}
        if not record.id:
            updates["id"] = str(uuid.uuid4())
        if touch or record.updated_at is None:
            updates["updated_at"] = utcnow()
        return record.model_copy(update=updates, deep=True) if updates else record.model_copy(deep=True)


class InMemoryRecordStore(LocalRecordStore):
    """In-memory record store."""

    def __init__(self):
        self._records: Dict[Tuple[str, EntityType], Dict[str, LocalRecordBase]] = {}
        self._lock = threading.Lock()

    def _table(self, tenant_id: str, entity_type: EntityType) -> Dict[str, LocalRecordBase]:
        return self._records.setdefault((tenant_id, EntityType(entity_type)), {})

    def get_by_id(self, tenant_id: str, entity_type: EntityType,
                  record_id: str) -> Optional[LocalRecordBase]:
        with self._lock:
            record = self._table(tenant_id, entity_type).get(record_id)
        return record.model_copy(deep=True) if record else None

    def save(self, tenant_id: str, record: LocalRecordBase, touch: bool = True) -> LocalRecordBase:
        saved = self._prepare(record, touch)
        with self._lock:
            self._table(tenant_id, entity_type_of(saved))[saved.id] = saved
        return saved.model_copy(deep=True)

    def list(self, tenant_id: str, entity_type: EntityType) -> List[LocalRecordBase]:
        with self._lock:
            records = list(self._table(tenant_id, entity_type).values())
        return [r.model_copy(deep=True) for r in sorted(records, key=lambda r: r.id)]


def _check_segment(label: str, value: str) -> None:
    """Reject ids that would escape their directory."""
    if not value or "/" in value or "\\" in value or value in (".", ".."):
        raise ValueError(f"Invalid {label}: {value!r}")


class JSONFileRecordStore(LocalRecordStore):
    """Record store with one JSON file per record.

    Layout: {base_path}/{tenant_id}/{entity_type}/{record_id}.json
    Each file holds {"content_hash": ..., "record": {...}}; the hash is
    verified on read.
    """

    def __init__(self, base_path: Union[str, Path]):
        self.base_path = Path(base_path)
        self.base_path.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def _dir(self, tenant_id: str, entity_type: EntityType) -> Path:
        _check_segment("tenant id", tenant_id)
        return self.base_path / tenant_id / EntityType(entity_type).value

    def _path(self, tenant_id: str, entity_type: EntityType, record_id: str) -> Path:
        _check_segment("record id", record_id)
        return self._dir(tenant_id, entity_type) / f"{record_id}.json"

    def _read(self, path: Path, entity_type: EntityType) -> LocalRecordBase:
        envelope = json.loads(path.read_text(encoding="utf-8"))
        record_json = json.dumps(envelope["record"], sort_keys=True).encode("utf-8")
        actual_hash = _compute_sha256(record_json)
        if actual_hash != envelope.get("content_hash"):
            raise ValueError(
                f"Hash mismatch for {path}: "
                f"expected {envelope.get('content_hash')}, got {actual_hash}"
            )
        return record_class(entity_type).model_validate(envelope["record"])

    def get_by_id(self, tenant_id: str, entity_type: EntityType,
                  record_id: str) -> Optional[LocalRecordBase]:
        path = self._path(tenant_id, entity_type, record_id)
        with self._lock:
            if not path.exists():
                return None
            return self._read(path, entity_type)

    def save(self, tenant_id: str, record: LocalRecordBase, touch: bool = True) -> LocalRecordBase:
        saved = self._prepare(record, touch)
        entity_type = entity_type_of(saved)
        data = saved.model_dump(mode="json")
        record_json = json.dumps(data, sort_keys=True).encode("utf-8")
        envelope = {"content_hash": _compute_sha256(record_json), "record": data}

        path = self._path(tenant_id, entity_type, saved.id)
        with self._lock:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp = path.with_suffix(".json.tmp")
            tmp.write_text(json.dumps(envelope, indent=2), encoding="utf-8")
            tmp.replace(path)
        return saved

    def list(self, tenant_id: str, entity_type: EntityType) -> List[LocalRecordBase]:
        directory = self._dir(tenant_id, entity_type)
        with self._lock:
            if not directory.exists():
                return []
            return [self._read(path, entity_type) for path in sorted(directory.glob("*.json"))]
