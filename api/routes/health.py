"""Health check endpoints."""

from typing import Dict

from fastapi import APIRouter, Request, Response
from pydantic import BaseModel

from core import __version__
from core.models.sync import utcnow


router = APIRouter()


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    timestamp: str
    version: str
    services: Dict[str, str]


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request) -> HealthResponse:
    """Health check endpoint."""
    context = getattr(request.app.state, "sync_context", None)
    return HealthResponse(
        status="healthy" if context is not None else "starting",
        timestamp=utcnow().isoformat(),
        version=__version__,
        services={
            "api": "up",
            "remote": context.remote.get_connector_name() if context else "unknown",
            "storage": "up" if context else "unknown",
        }
    )


@router.get("/ready")
async def readiness_check(request: Request, response: Response) -> Dict[str, str]:
    """Readiness check for Kubernetes."""
    if getattr(request.app.state, "orchestrator", None) is None:
        response.status_code = 503
        return {"status": "starting"}
    return {"status": "ready"}


@router.get("/live")
async def liveness_check() -> Dict[str, str]:
    """Liveness check for Kubernetes."""
    return {"status": "alive"}

