"""Single-attempt sync pipeline.

One call to ``SyncPipeline.run`` is one attempt at one job: read both sides,
let the conflict policy decide, convert, write, then record the mapping.
Every failure comes back as an ``Err`` carrying a ClassifiedError; retrying
is the runner's business.

Write order on pull: the CRM record is saved first and the mapping second,
so the mapping's last_synced_at is never older than the record it describes.
"""

import hashlib
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from connectors.remote_base import RemoteApiClient, RemoteRecord
from core.conversion import RecordConverter, References, content_hash
from core.mapping import MappingStore
from core.models.records import LocalRecordBase
from core.models.result import Err, JobOutcome, Ok, Result
from core.models.sync import (
    ClassifiedError,
    EntityType,
    ErrorCategory,
    FieldError,
    SyncDirection,
    SyncJob,
    SyncMapping,
    utcnow,
)
from core.observability.logging import get_logger
from core.retry import ErrorClassifier
from core.storage.records import LocalRecordStore
from core.sync.conflict import ConflictStrategy, LastWriterByTimestamp, SyncAction, UNCHANGED

logger = get_logger(__name__)

Reference = Tuple[EntityType, str]

# (tenant_id, references, direction) -> failures keyed by reference
DependencyResolver = Callable[
    [str, List[Reference], SyncDirection],
    Awaitable[Dict[Reference, ClassifiedError]],
]

CREATED = "created"
UPDATED = "updated"


def idempotency_key(tenant_id: str, entity_type: EntityType, local_id: str, local_hash: str) -> str:
    """Deterministic key for a create, so a retried attempt cannot duplicate the ERP record."""
    raw = "|".join([tenant_id, EntityType(entity_type).value, local_id, local_hash])
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class SyncPipeline:
    """Executes one attempt of a sync job.

    Usage:
        pipeline = SyncPipeline(records, mappings, remote, RecordConverter(), ErrorClassifier())
        result = await pipeline.run(job)
        if result.ok:
            print(result.value.detail)     # created, updated, unchanged, ...
        else:
            print(result.error.category)
    """

    def __init__(
        self,
        records: LocalRecordStore,
        mappings: MappingStore,
        remote: RemoteApiClient,
        converter: RecordConverter,
        classifier: ErrorClassifier,
        strategy: Optional[ConflictStrategy] = None,
        resolver: Optional[DependencyResolver] = None,
    ):
        self.records = records
        self.mappings = mappings
        self.remote = remote
        self.converter = converter
        self.classifier = classifier
        self.strategy = strategy or LastWriterByTimestamp()
        self.resolver = resolver

    async def run(self, job: SyncJob) -> Result:
        """Run one attempt. Never raises for sync failures."""
        try:
            direction = SyncDirection(job.direction)
            if direction == SyncDirection.TO_REMOTE:
                return await self.push(job)
            if direction == SyncDirection.FROM_REMOTE:
                return await self.pull(job)
            return await self.bidirectional(job)
        except Exception as e:
            return Err(self.classifier.classify(e, job.entity_type, job.local_id, job.remote_id))

    # =========================================================================
    # Directions
    # =========================================================================

    async def push(self, job: SyncJob) -> Result:
        local = self.records.get_by_id(job.tenant_id, job.entity_type, job.local_id) if job.local_id else None
        if local is None:
            return Err(self._not_found(job, "Local record not found"))
        mapping = self.mappings.find(job.tenant_id, job.entity_type, local_id=local.id)
        return await self._push_record(job, local, mapping)

    async def pull(self, job: SyncJob) -> Result:
        mapping = None
        remote_id = job.remote_id
        if job.local_id:
            mapping = self.mappings.find(job.tenant_id, job.entity_type, local_id=job.local_id)
            if mapping is not None:
                remote_id = mapping.remote_id
        if remote_id is None:
            return Err(self._not_found(job, "Record has no ERP counterpart to pull"))
        if mapping is None:
            mapping = self.mappings.find(job.tenant_id, job.entity_type, remote_id=remote_id)

        remote = await self.remote.get_by_id(job.tenant_id, job.entity_type, remote_id)
        local = None
        if mapping is not None:
            local = self.records.get_by_id(job.tenant_id, job.entity_type, mapping.local_id)
        return await self._pull_record(job, local, mapping, remote)

    async def bidirectional(self, job: SyncJob) -> Result:
        local = None
        mapping = None
        if job.local_id:
            local = self.records.get_by_id(job.tenant_id, job.entity_type, job.local_id)
            mapping = self.mappings.find(job.tenant_id, job.entity_type, local_id=job.local_id)

        remote_id = mapping.remote_id if mapping else job.remote_id
        if mapping is None and remote_id:
            mapping = self.mappings.find(job.tenant_id, job.entity_type, remote_id=remote_id)
            if mapping is not None and local is None:
                local = self.records.get_by_id(job.tenant_id, job.entity_type, mapping.local_id)

        remote = None
        if remote_id:
            remote = await self.remote.get_by_id(job.tenant_id, job.entity_type, remote_id)
        if local is None and remote is None:
            return Err(self._not_found(job, "Record not found on either side"))

        local_hash = content_hash(local) if local is not None else None
        decision = self.strategy.decide_bidirectional(local, mapping, remote, local_hash)
        if decision.action == SyncAction.PUSH:
            return await self._push_record(job, local, mapping, decide=False)
        if decision.action == SyncAction.PULL:
            return await self._pull_record(job, local, mapping, remote, decide=False)
        return Ok(JobOutcome(
            detail=decision.detail,
            local_id=local.id if local else None,
            remote_id=remote_id,
            remote_version=remote.version if remote else None,
        ))

    # =========================================================================
    # Writers
    # =========================================================================

    async def _push_record(self, job: SyncJob, local: LocalRecordBase,
                           mapping: Optional[SyncMapping], decide: bool = True) -> Result:
        local_hash = content_hash(local)
        if decide:
            decision = self.strategy.decide_push(local, mapping, local_hash)
            if decision.action == SyncAction.SKIP:
                return Ok(JobOutcome(
                    detail=decision.detail,
                    local_id=local.id,
                    remote_id=mapping.remote_id if mapping else None,
                    remote_version=mapping.last_remote_version if mapping else None,
                ))

        references, failures = await self._local_references(job, local)
        conversion = self.converter.to_remote(local, job.entity_type, references)
        if not conversion.ok:
            error = self.classifier.from_conversion(
                conversion, job.entity_type, local.id, mapping.remote_id if mapping else None,
            )
            return Err(_with_dependency_failures(error, failures))

        if mapping is not None:
            written = await self.remote.update(job.tenant_id, job.entity_type, mapping.remote_id, conversion.payload)
            detail = UPDATED
        else:
            written = await self.remote.create(
                job.tenant_id,
                job.entity_type,
                conversion.payload,
                idempotency_key=idempotency_key(job.tenant_id, job.entity_type, local.id, local_hash),
            )
            detail = CREATED

        self.mappings.upsert(SyncMapping(
            tenant_id=job.tenant_id,
            entity_type=job.entity_type,
            local_id=local.id,
            remote_id=written.remote_id,
            last_local_hash=local_hash,
            last_remote_version=written.version,
            last_synced_at=utcnow(),
            sync_direction=job.direction,
        ))
        logger.debug(f"Pushed {job.entity_type.value} {local.id} -> {written.remote_id} ({detail})")
        return Ok(JobOutcome(detail=detail, local_id=local.id, remote_id=written.remote_id,
                             remote_version=written.version))

    async def _pull_record(self, job: SyncJob, local: Optional[LocalRecordBase],
                           mapping: Optional[SyncMapping], remote: RemoteRecord,
                           decide: bool = True) -> Result:
        if decide:
            decision = self.strategy.decide_pull(local, mapping, remote)
            if decision.action == SyncAction.SKIP:
                return Ok(JobOutcome(
                    detail=decision.detail,
                    local_id=mapping.local_id if mapping else None,
                    remote_id=remote.remote_id,
                    remote_version=remote.version,
                ))

        references, failures = await self._remote_references(job, remote.payload)
        conversion = self.converter.to_local(remote.payload, job.entity_type, references, existing=local)
        if not conversion.ok:
            error = self.classifier.from_conversion(
                conversion, job.entity_type, mapping.local_id if mapping else None, remote.remote_id,
            )
            return Err(_with_dependency_failures(error, failures))

        record = conversion.record
        if mapping is not None:
            record = record.model_copy(update={"id": mapping.local_id})

        if local is not None and content_hash(local) == content_hash(record):
            saved = local
            detail = UNCHANGED
        else:
            saved = self.records.save(job.tenant_id, record)
            detail = UPDATED if local is not None else CREATED

        self.mappings.upsert(SyncMapping(
            tenant_id=job.tenant_id,
            entity_type=job.entity_type,
            local_id=saved.id,
            remote_id=remote.remote_id,
            last_local_hash=content_hash(saved),
            last_remote_version=remote.version,
            last_synced_at=utcnow(),
            sync_direction=job.direction,
        ))
        logger.debug(f"Pulled {job.entity_type.value} {remote.remote_id} -> {saved.id} ({detail})")
        return Ok(JobOutcome(detail=detail, local_id=saved.id, remote_id=remote.remote_id,
                             remote_version=remote.version))

    # =========================================================================
    # References
    # =========================================================================

    async def _local_references(self, job: SyncJob, record: LocalRecordBase):
        refs = self.converter.references(record)
        if not refs:
            return {}, {}
        failures = await self._resolve(job, refs, SyncDirection.TO_REMOTE, by_local=True)
        references: References = {}
        for entity_type in {et for et, _ in refs}:
            ids = [ref_id for et, ref_id in refs if et == entity_type]
            references[entity_type] = self.mappings.remote_ids_for(job.tenant_id, entity_type, ids)
        return references, failures

    async def _remote_references(self, job: SyncJob, payload):
        refs = self.converter.remote_references(payload, job.entity_type)
        if not refs:
            return {}, {}
        failures = await self._resolve(job, refs, SyncDirection.FROM_REMOTE, by_local=False)
        references: References = {}
        for entity_type in {et for et, _ in refs}:
            ids = [ref_id for et, ref_id in refs if et == entity_type]
            references[entity_type] = self.mappings.local_ids_for(job.tenant_id, entity_type, ids)
        return references, failures

    async def _resolve(self, job: SyncJob, refs: List[Reference], direction: SyncDirection,
                       by_local: bool) -> Dict[Reference, ClassifiedError]:
        """Sync referenced records that have no mapping yet, if a resolver is set."""
        if self.resolver is None:
            return {}
        unmapped = []
        for entity_type, ref_id in refs:
            if by_local:
                mapping = self.mappings.find(job.tenant_id, entity_type, local_id=ref_id)
            else:
                mapping = self.mappings.find(job.tenant_id, entity_type, remote_id=ref_id)
            if mapping is None:
                unmapped.append((entity_type, ref_id))
        if not unmapped:
            return {}
        logger.info(f"Resolving {len(unmapped)} unmapped dependencies of {job.record_id}")
        return await self.resolver(job.tenant_id, unmapped, direction)

    def _not_found(self, job: SyncJob, message: str) -> ClassifiedError:
        return ClassifiedError(
            category=ErrorCategory.VALIDATION,
            message=f"{message}: {job.entity_type.value} {job.record_id}",
            field_errors=[FieldError(field="id", code="not_found", message=message)],
            entity_type=job.entity_type,
            local_id=job.local_id,
            remote_id=job.remote_id,
        )


def _with_dependency_failures(error: ClassifiedError,
                              failures: Dict[Reference, ClassifiedError]) -> ClassifiedError:
    if not failures:
        return error
    details = dict(error.details)
    details["dependency_failures"] = [
        {
            "entity_type": entity_type.value,
            "id": ref_id,
            "category": failure.category.value,
            "message": failure.message,
        }
        for (entity_type, ref_id), failure in failures.items()
    ]
    return error.model_copy(update={"details": details})
