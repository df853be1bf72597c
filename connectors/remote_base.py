"""Abstract Remote API Client Interface.

This module defines the contract every ERP connector implements for the sync
engine. It is intentionally ERP-agnostic: the engine treats the remote system
as an opaque API honoring create / update / read-by-id / list semantics.

Key Design Principles:
- Connectors raise the typed RemoteApiError hierarchy below and never retry
  internally; retry policy belongs to the engine's classifier
- Every call is scoped by tenant_id; credentials come from a collaborator
  (credentials_provider), never from the engine
- Payloads are the ERP-shaped dicts produced by the record converter
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from core.models.sync import EntityType


# =============================================================================
# Errors
# =============================================================================

class RemoteApiError(Exception):
    """Base exception for remote API errors."""
    def __init__(self, message: str, status_code: int = 0, response_body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body


class RemoteAuthError(RemoteApiError):
    """Authentication/authorization failed (401/403)."""
    pass


class RemoteNotFoundError(RemoteApiError):
    """Resource not found (404)."""
    pass


class RemoteValidationError(RemoteApiError):
    """Payload rejected by the remote (400/422)."""
    pass


class RemoteRateLimitError(RemoteApiError):
    """Rate limit exceeded (429)."""
    def __init__(self, message: str, retry_after: Optional[float] = None, response_body: str = ""):
        super().__init__(message, 429, response_body)
        self.retry_after = retry_after


class RemoteServerError(RemoteApiError):
    """Remote failed with a 5xx status."""
    pass


class RemoteConnectionError(RemoteApiError):
    """The remote could not be reached."""
    pass


class RemoteTimeoutError(RemoteApiError):
    """The remote did not answer in time."""
    pass


# =============================================================================
# Results
# =============================================================================

@dataclass(frozen=True)
class RemoteWriteResult:
    """Outcome of a create or update."""
    remote_id: str
    version: Optional[str] = None


@dataclass(frozen=True)
class RemoteRecord:
    """A record read from the remote."""
    remote_id: str
    payload: Dict[str, Any]
    version: Optional[str] = None


# Resource path per entity type
RESOURCES = {
    EntityType.CONTACT: "partners",
    EntityType.PRODUCT: "products",
    EntityType.SALES_DOCUMENT: "sales-documents",
}


# =============================================================================
# Configuration
# =============================================================================

# tenant_id -> extra request headers (e.g. Authorization)
CredentialsProvider = Callable[[str], Dict[str, str]]


@dataclass
class RemoteConfig:
    """Configuration for a remote connector."""
    connector_type: str                     # "http", "sandbox"
    base_url: Optional[str] = None
    timeout_seconds: float = 30.0
    credentials_provider: Optional[CredentialsProvider] = None
    custom_settings: Dict[str, Any] = field(default_factory=dict)

    def credentials_for(self, tenant_id: str) -> Dict[str, str]:
        if self.credentials_provider is None:
            return {}
        return dict(self.credentials_provider(tenant_id))


# =============================================================================
# Abstract Client
# =============================================================================

class RemoteApiClient(ABC):
    """Abstract base class for remote ERP clients.

    Implementations:
    - connectors/http/client.py (aiohttp)
    - connectors/sandbox.py (in-memory, fault injection)
    """

    def __init__(self, config: RemoteConfig):
        self.config = config

    async def connect(self) -> None:
        """Open network resources (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Release network resources (no-op by default)."""
        pass

    @abstractmethod
    async def create(
        self,
        tenant_id: str,
        entity_type: EntityType,
        payload: Dict[str, Any],
        idempotency_key: Optional[str] = None,
    ) -> RemoteWriteResult:
        """Create a remote record.

        A repeated call with the same idempotency_key must return the record
        created by the first call instead of creating a second one.
        """
        pass

    @abstractmethod
    async def update(
        self,
        tenant_id: str,
        entity_type: EntityType,
        remote_id: str,
        payload: Dict[str, Any],
    ) -> RemoteWriteResult:
        """Replace the mapped fields of an existing remote record."""
        pass

    @abstractmethod
    async def get_by_id(
        self,
        tenant_id: str,
        entity_type: EntityType,
        remote_id: str,
    ) -> RemoteRecord:
        """Read one remote record.

        Raises:
            RemoteNotFoundError: No such record
        """
        pass

    @abstractmethod
    async def list(
        self,
        tenant_id: str,
        entity_type: EntityType,
        filters: Optional[Dict[str, Any]] = None,
    ) -> List[RemoteRecord]:
        """List remote records, optionally filtered."""
        pass

    def get_connector_name(self) -> str:
        return self.config.connector_type


# =============================================================================
# Connector Factory
# =============================================================================

_connector_registry: Dict[str, type] = {}


def register_connector(connector_type: str):
    """Decorator to register a connector implementation."""
    def decorator(cls):
        _connector_registry[connector_type] = cls
        return cls
    return decorator


def create_connector(config: RemoteConfig) -> RemoteApiClient:
    """Create a connector instance from configuration.

    Raises:
        ValueError: If connector_type is not registered
    """
    connector_type = config.connector_type.lower()

    if connector_type not in _connector_registry:
        available = list(_connector_registry.keys())
        raise ValueError(
            f"Unknown connector type: {connector_type}. "
            f"Available: {available}"
        )

    connector_class = _connector_registry[connector_type]
    return connector_class(config)


def list_available_connectors() -> List[str]:
    """List all registered connector types."""
    return list(_connector_registry.keys())
