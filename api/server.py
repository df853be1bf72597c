"""FastAPI server for the CRM/ERP sync engine.

Main entry point for the API server.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from api.routes import health, sync
from connectors import RemoteApiError
from core.config import SyncSettings
from core.errors import (
    InvalidTransitionError,
    JobImmutableError,
    MappingConflictError,
    NotFoundError,
    PermissionDeniedError,
    RetryNotAllowedError,
    SyncDisabledError,
    SyncError,
)
from core.observability.logging import configure_logging, get_logger
from core.sync import SyncContext, SyncOrchestrator

logger = get_logger(__name__)

_STATUS_CODES = [
    (NotFoundError, 404),
    (PermissionDeniedError, 403),
    (SyncDisabledError, 403),
    (RetryNotAllowedError, 409),
    (JobImmutableError, 409),
    (InvalidTransitionError, 409),
    (MappingConflictError, 409),
]


def _status_for(exc: SyncError) -> int:
    for error_type, status_code in _STATUS_CODES:
        if isinstance(exc, error_type):
            return status_code
    return 400


def create_app(context: Optional[SyncContext] = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        context: Prebuilt SyncContext (tests, embedding). When omitted, one is
            built from environment settings at startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        sync_context = context
        if sync_context is None:
            settings = SyncSettings.from_env()
            configure_logging(json_format=settings.log_json, force=True)
            sync_context = SyncContext(settings)

        await sync_context.start()
        app.state.sync_context = sync_context
        app.state.orchestrator = SyncOrchestrator(sync_context)
        logger.info("Sync API starting up...")

        yield

        logger.info("Sync API shutting down...")
        await app.state.orchestrator.close()
        await sync_context.close()

    app = FastAPI(
        title="CRM-ERP Sync API",
        description="Bidirectional sync of contacts, products and sales documents between the CRM and the ERP",
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(SyncError)
    async def sync_error_handler(request: Request, exc: SyncError) -> JSONResponse:
        return JSONResponse(status_code=_status_for(exc), content={"detail": str(exc)})

    @app.exception_handler(RemoteApiError)
    async def remote_error_handler(request: Request, exc: RemoteApiError) -> JSONResponse:
        logger.warning(f"ERP request failed: {exc}")
        return JSONResponse(
            status_code=502,
            content={"detail": str(exc), "remote_status": exc.status_code or None},
        )

    # Include routers
    app.include_router(health.router, tags=["Health"])
    app.include_router(sync.router, prefix="/sync", tags=["Sync"])

    return app


# Default app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("api.server:app", host="0.0.0.0", port=8000, reload=True)
