"""Sync endpoints.

The caller's tenant arrives pre-authenticated in headers set by the gateway:

    X-Tenant-Id       tenant identifier (required)
    X-Tenant-Roles    comma-separated roles, e.g. "admin,sales"
    X-Sync-Enabled    "false" when the tenant's plan has no ERP sync
    X-User-Id         acting user, for logs
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, Response
from pydantic import BaseModel, Field

from core.models.events import SyncEvent
from core.models.sync import (
    EntityType,
    StatusReport,
    SyncBatch,
    SyncDirection,
    SyncJob,
    SyncMapping,
    SyncState,
)
from core.security.tenant import TenantContext
from core.sync import SyncOrchestrator


router = APIRouter()


def get_tenant(
    x_tenant_id: str = Header(..., description="Tenant identifier"),
    x_tenant_roles: str = Header("", description="Comma-separated caller roles"),
    x_sync_enabled: str = Header("true", description="Whether the tenant may sync"),
    x_user_id: Optional[str] = Header(None, description="Acting user"),
) -> TenantContext:
    """Build the TenantContext from gateway headers."""
    if not x_tenant_id.strip():
        raise HTTPException(status_code=400, detail="X-Tenant-Id must not be empty")
    roles = tuple(role.strip() for role in x_tenant_roles.split(",") if role.strip())
    return TenantContext(
        tenant_id=x_tenant_id.strip(),
        roles=roles,
        sync_enabled=x_sync_enabled.strip().lower() not in ("0", "false", "no", "off"),
        user_id=x_user_id,
    )


def get_orchestrator(request: Request) -> SyncOrchestrator:
    return request.app.state.orchestrator


class SyncAllRequest(BaseModel):
    """Request to sync many records of one entity type."""
    direction: SyncDirection = SyncDirection.TO_REMOTE
    record_ids: Optional[List[str]] = Field(
        None, description="Records to sync; all records of the type when omitted"
    )
    wait: bool = Field(False, description="Block until the batch has finished")


class UnlinkResponse(BaseModel):
    entity_type: EntityType
    local_id: str
    unlinked: bool


# =============================================================================
# Sync
# =============================================================================

@router.post("/{entity_type}/records/{record_id}", response_model=SyncJob)
async def sync_one(
    entity_type: EntityType,
    record_id: str,
    direction: SyncDirection = Query(SyncDirection.TO_REMOTE),
    tenant: TenantContext = Depends(get_tenant),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> SyncJob:
    """Sync one record and return the finished job."""
    return await orchestrator.sync_one(tenant, entity_type, record_id, direction)


@router.post("/{entity_type}/batches", response_model=SyncBatch)
async def sync_all(
    entity_type: EntityType,
    response: Response,
    request: Optional[SyncAllRequest] = None,
    tenant: TenantContext = Depends(get_tenant),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> SyncBatch:
    """Submit a batch. Returns 202 with the queued batch unless ``wait`` is set."""
    request = request or SyncAllRequest()
    if request.wait:
        return await orchestrator.sync_all(tenant, entity_type, request.direction, request.record_ids)
    response.status_code = 202
    return await orchestrator.start_sync_all(tenant, entity_type, request.direction, request.record_ids)


# =============================================================================
# Status
# =============================================================================

@router.get("/status/{record_id}", response_model=StatusReport)
async def get_status(
    record_id: str,
    tenant: TenantContext = Depends(get_tenant),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> StatusReport:
    """Current state and history of a job or batch."""
    return orchestrator.get_status(tenant, record_id)


@router.get("/jobs", response_model=List[SyncJob])
async def list_jobs(
    entity_type: Optional[EntityType] = None,
    status: Optional[SyncState] = None,
    limit: int = Query(100, ge=1, le=1000),
    tenant: TenantContext = Depends(get_tenant),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> List[SyncJob]:
    """Most recent jobs of the tenant."""
    return orchestrator.tracker.list_jobs(tenant.tenant_id, entity_type, status, limit)


@router.get("/events", response_model=List[SyncEvent])
async def list_events(
    event_type: Optional[str] = None,
    job_id: Optional[str] = None,
    batch_id: Optional[str] = None,
    start_time: Optional[datetime] = None,
    end_time: Optional[datetime] = None,
    limit: int = Query(100, ge=1, le=1000),
    tenant: TenantContext = Depends(get_tenant),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> List[SyncEvent]:
    """Sync events of the tenant, from the first queryable event backend."""
    return orchestrator.context.events.query(
        tenant.tenant_id, event_type, job_id, batch_id, start_time, end_time, limit,
    )


# =============================================================================
# Control
# =============================================================================

@router.post("/batches/{batch_id}/cancel", response_model=SyncBatch)
async def cancel_batch(
    batch_id: str,
    tenant: TenantContext = Depends(get_tenant),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> SyncBatch:
    """Stop scheduling jobs of a batch that have not started."""
    return orchestrator.cancel_batch(tenant, batch_id)


@router.post("/batches/{batch_id}/retry", response_model=SyncBatch)
async def retry_failed(
    batch_id: str,
    tenant: TenantContext = Depends(get_tenant),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> SyncBatch:
    """Run a new batch with the failed items of a finished batch."""
    return await orchestrator.retry_failed(tenant, batch_id)


@router.post("/jobs/{job_id}/retry", response_model=SyncJob)
async def retry_job(
    job_id: str,
    tenant: TenantContext = Depends(get_tenant),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> SyncJob:
    """Re-run a job that failed for a transient reason."""
    return await orchestrator.retry_job(tenant, job_id)


# =============================================================================
# Mappings
# =============================================================================

@router.get("/{entity_type}/mappings", response_model=List[SyncMapping])
async def list_mappings(
    entity_type: EntityType,
    tenant: TenantContext = Depends(get_tenant),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> List[SyncMapping]:
    """All CRM/ERP id pairs of one entity type."""
    return orchestrator.context.mappings.list(tenant.tenant_id, entity_type)


@router.delete("/{entity_type}/mappings/{local_id}", response_model=UnlinkResponse)
async def unlink(
    entity_type: EntityType,
    local_id: str,
    tenant: TenantContext = Depends(get_tenant),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> UnlinkResponse:
    """Forget the ERP counterpart of a CRM record."""
    if not orchestrator.unlink(tenant, entity_type, local_id):
        raise HTTPException(status_code=404, detail=f"{entity_type.value} {local_id} is not mapped")
    return UnlinkResponse(entity_type=entity_type, local_id=local_id, unlinked=True)


@router.get("/metrics")
async def metrics_summary(
    stage: Optional[str] = Query(default=None, description="Timing stage, e.g. attempt.contact"),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    """Job, batch and timing metrics of this process, or the timing stats of one stage."""
    if stage:
        return orchestrator.context.metrics.get_timing_stats(stage)
    return orchestrator.context.metrics.get_summary()
