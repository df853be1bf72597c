"""Security module - tenant context and permission checks."""

from core.security.tenant import (
    TenantContext,
    ELEVATED_ROLES,
    require_sync_enabled,
    require_bulk_permission,
)

__all__ = [
    "TenantContext",
    "ELEVATED_ROLES",
    "require_sync_enabled",
    "require_bulk_permission",
]
