"""Exceptions raised at the edges of the sync engine.

Inside the engine, failures travel as ``ClassifiedError`` values (see
core.models.result). These exceptions are what stores, connectors and the
tenant gate raise, and what the public API lets callers catch.
"""

from typing import Optional


class SyncError(Exception):
    """Base exception for the sync engine."""
    pass


class MappingConflictError(SyncError):
    """An upsert would overwrite an existing, different correspondence."""
    def __init__(self, message: str, tenant_id: str = "", entity_type: str = "",
                 local_id: Optional[str] = None, remote_id: Optional[str] = None,
                 existing_remote_id: Optional[str] = None, existing_local_id: Optional[str] = None):
        super().__init__(message)
        self.tenant_id = tenant_id
        self.entity_type = entity_type
        self.local_id = local_id
        self.remote_id = remote_id
        self.existing_remote_id = existing_remote_id
        self.existing_local_id = existing_local_id


class InvalidTransitionError(SyncError):
    """A status transition is not allowed, or its from-state is stale."""
    pass


class JobImmutableError(SyncError):
    """A completed or permanently failed job was modified."""
    pass


class NotFoundError(SyncError):
    """Job, batch, record or mapping does not exist for this tenant."""
    pass


class PermissionDeniedError(SyncError):
    """The tenant context lacks the role required for the operation."""
    pass


class SyncDisabledError(SyncError):
    """The tenant does not have the sync capability enabled."""
    pass


class RetryNotAllowedError(SyncError):
    """A job failed permanently and cannot be requeued."""
    pass
