"""Sandbox Remote API.

In-memory ERP stand-in for local development, the API's sandbox mode and
tests. Honors the full RemoteApiClient contract, including idempotency keys
and version tokens, and supports fault injection:

    sandbox = SandboxRemoteApi()
    sandbox.fail_when(lambda call: RemoteRateLimitError("slow down", 0)
                      if call.operation == "create" and 10 <= call.index <= 12 else None)

Every call is recorded in ``sandbox.calls``.
"""

import asyncio
import copy
import itertools
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from connectors.remote_base import (
    RemoteApiClient,
    RemoteConfig,
    RemoteNotFoundError,
    RemoteRecord,
    RemoteWriteResult,
    register_connector,
)
from core.models.sync import EntityType

ID_FIELD = "mk_id"
VERSION_FIELD = "version"


@dataclass(frozen=True)
class SandboxCall:
    """One call made against the sandbox."""
    operation: str          # create, update, get_by_id, list
    index: int              # 0-based count of calls of this operation
    tenant_id: str
    entity_type: EntityType
    remote_id: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None


FaultHook = Callable[[SandboxCall], Optional[Exception]]


@register_connector("sandbox")
class SandboxRemoteApi(RemoteApiClient):
    """In-memory remote with per-tenant isolation."""

    def __init__(self, config: Optional[RemoteConfig] = None, latency: float = 0.0):
        super().__init__(config or RemoteConfig(connector_type="sandbox"))
        self.latency = latency or float(self.config.custom_settings.get("latency", 0.0))
        self.calls: List[SandboxCall] = []
        self._records: Dict[Tuple[str, EntityType], Dict[str, Dict[str, Any]]] = {}
        self._idempotency: Dict[Tuple[str, EntityType, str], str] = {}
        self._counters: Dict[str, int] = {}
        self._ids = itertools.count(1000)
        self._faults: List[FaultHook] = []
        self._active = 0
        self.max_concurrency_seen = 0

    # =========================================================================
    # Test helpers
    # =========================================================================

    def fail_when(self, hook: FaultHook) -> None:
        """Register a hook; a returned exception is raised for that call."""
        self._faults.append(hook)

    def clear_faults(self) -> None:
        self._faults.clear()

    def seed(self, tenant_id: str, entity_type: EntityType, payload: Dict[str, Any]) -> str:
        """Create a remote record directly, without recording a call."""
        remote_id = f"mk-{next(self._ids)}"
        record = copy.deepcopy(payload)
        record[ID_FIELD] = remote_id
        record[VERSION_FIELD] = "1"
        self._table(tenant_id, entity_type)[remote_id] = record
        return remote_id

    def edit(self, tenant_id: str, entity_type: EntityType, remote_id: str,
             changes: Dict[str, Any]) -> str:
        """Simulate an edit made directly in the ERP. Returns the new version."""
        record = self._require(tenant_id, entity_type, remote_id)
        record.update(copy.deepcopy(changes))
        record[VERSION_FIELD] = str(int(record[VERSION_FIELD]) + 1)
        return record[VERSION_FIELD]

    def records(self, tenant_id: str, entity_type: EntityType) -> Dict[str, Dict[str, Any]]:
        return copy.deepcopy(self._table(tenant_id, entity_type))

    def calls_for(self, operation: str) -> List[SandboxCall]:
        return [c for c in self.calls if c.operation == operation]

    # =========================================================================
    # Internals
    # =========================================================================

    def _table(self, tenant_id: str, entity_type: EntityType) -> Dict[str, Dict[str, Any]]:
        return self._records.setdefault((tenant_id, EntityType(entity_type)), {})

    def _require(self, tenant_id: str, entity_type: EntityType, remote_id: str) -> Dict[str, Any]:
        record = self._table(tenant_id, entity_type).get(remote_id)
        if record is None:
            raise RemoteNotFoundError(
                f"{EntityType(entity_type).value} {remote_id} not found", 404,
                f'{{"error": "not_found", "id": "{remote_id}"}}',
            )
        return record

    async def _enter(self, operation: str, tenant_id: str, entity_type: EntityType,
                     remote_id: Optional[str] = None,
                     payload: Optional[Dict[str, Any]] = None) -> None:
        index = self._counters.get(operation, 0)
        self._counters[operation] = index + 1
        call = SandboxCall(
            operation=operation,
            index=index,
            tenant_id=tenant_id,
            entity_type=EntityType(entity_type),
            remote_id=remote_id,
            payload=copy.deepcopy(payload) if payload is not None else None,
        )
        self.calls.append(call)

        self._active += 1
        self.max_concurrency_seen = max(self.max_concurrency_seen, self._active)
        try:
            if self.latency:
                await asyncio.sleep(self.latency)
            for hook in self._faults:
                error = hook(call)
                if error is not None:
                    raise error
        finally:
            self._active -= 1

    # =========================================================================
    # Contract
    # =========================================================================

    async def create(
        self,
        tenant_id: str,
        entity_type: EntityType,
        payload: Dict[str, Any],
        idempotency_key: Optional[str] = None,
    ) -> RemoteWriteResult:
        await self._enter("create", tenant_id, entity_type, payload=payload)

        if idempotency_key:
            existing = self._idempotency.get((tenant_id, EntityType(entity_type), idempotency_key))
            if existing is not None:
                record = self._require(tenant_id, entity_type, existing)
                return RemoteWriteResult(remote_id=existing, version=record[VERSION_FIELD])

        remote_id = self.seed(tenant_id, entity_type, payload)
        if idempotency_key:
            self._idempotency[(tenant_id, EntityType(entity_type), idempotency_key)] = remote_id
        return RemoteWriteResult(remote_id=remote_id, version="1")

    async def update(
        self,
        tenant_id: str,
        entity_type: EntityType,
        remote_id: str,
        payload: Dict[str, Any],
    ) -> RemoteWriteResult:
        await self._enter("update", tenant_id, entity_type, remote_id=remote_id, payload=payload)
        version = self.edit(tenant_id, entity_type, remote_id, payload)
        return RemoteWriteResult(remote_id=remote_id, version=version)

    async def get_by_id(
        self,
        tenant_id: str,
        entity_type: EntityType,
        remote_id: str,
    ) -> RemoteRecord:
        await self._enter("get_by_id", tenant_id, entity_type, remote_id=remote_id)
        record = copy.deepcopy(self._require(tenant_id, entity_type, remote_id))
        return RemoteRecord(remote_id=remote_id, payload=record, version=record[VERSION_FIELD])

    async def list(
        self,
        tenant_id: str,
        entity_type: EntityType,
        filters: Optional[Dict[str, Any]] = None,
    ) -> List[RemoteRecord]:
        await self._enter("list", tenant_id, entity_type)
        results = []
        for remote_id, record in self._table(tenant_id, entity_type).items():
            if filters and any(str(record.get(k)) != str(v) for k, v in filters.items()):
                continue
            results.append(RemoteRecord(
                remote_id=remote_id, payload=copy.deepcopy(record), version=record[VERSION_FIELD],
            ))
        return results
