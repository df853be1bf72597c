"""Tenant context consumed by the sync engine.

Authentication and billing live outside the engine. Callers hand in a
pre-validated TenantContext; the engine only checks the capability flag and
the role needed for bulk operations.
"""

from typing import FrozenSet, Optional, Tuple

from pydantic import BaseModel, Field

from core.errors import PermissionDeniedError, SyncDisabledError

# Roles allowed to run bulk operations (syncAll, retry of a batch)
ELEVATED_ROLES: FrozenSet[str] = frozenset({"owner", "admin", "manager"})


class TenantContext(BaseModel):
    """Pre-validated caller identity for one request."""
    tenant_id: str = Field(..., min_length=1)
    roles: Tuple[str, ...] = Field(default_factory=tuple)
    sync_enabled: bool = Field(default=True, description="Billing/feature capability for ERP sync")
    user_id: Optional[str] = None

    class Config:
        frozen = True

    @property
    def has_elevated_role(self) -> bool:
        return any(role.lower() in ELEVATED_ROLES for role in self.roles)


def require_sync_enabled(tenant: TenantContext) -> None:
    """Raises SyncDisabledError if the tenant lacks the sync capability."""
    if not tenant.sync_enabled:
        raise SyncDisabledError(f"ERP sync is not enabled for tenant {tenant.tenant_id}")


def require_bulk_permission(tenant: TenantContext) -> None:
    """Raises PermissionDeniedError unless the caller holds an elevated role."""
    require_sync_enabled(tenant)
    if not tenant.has_elevated_role:
        raise PermissionDeniedError(
            f"Bulk sync requires one of the roles {sorted(ELEVATED_ROLES)}"
        )
