"""Remote connectors - pluggable ERP API clients.

This package contains the abstract remote API contract used by the sync
engine and the concrete clients:

- http: aiohttp client for REST-style ERP APIs
- sandbox: in-memory ERP with fault injection (development and tests)

Key Design Principle:
- The sync engine depends ONLY on RemoteApiClient
- Clients raise the RemoteApiError hierarchy and never retry on their own

To add a new ERP:
1. Create a new module (e.g., connectors/sap/)
2. Implement RemoteApiClient
3. Register using @register_connector decorator
"""

from connectors.remote_base import (
    # Core interface
    RemoteApiClient,
    RemoteConfig,
    RemoteRecord,
    RemoteWriteResult,
    RESOURCES,

    # Errors
    RemoteApiError,
    RemoteAuthError,
    RemoteNotFoundError,
    RemoteValidationError,
    RemoteRateLimitError,
    RemoteServerError,
    RemoteConnectionError,
    RemoteTimeoutError,

    # Factory functions
    create_connector,
    register_connector,
    list_available_connectors,
)

# Register built-in connectors
from connectors.http import HttpRemoteClient
from connectors.sandbox import SandboxRemoteApi, SandboxCall

__all__ = [
    # Core interface
    "RemoteApiClient",
    "RemoteConfig",
    "RemoteRecord",
    "RemoteWriteResult",
    "RESOURCES",

    # Errors
    "RemoteApiError",
    "RemoteAuthError",
    "RemoteNotFoundError",
    "RemoteValidationError",
    "RemoteRateLimitError",
    "RemoteServerError",
    "RemoteConnectionError",
    "RemoteTimeoutError",

    # Factory
    "create_connector",
    "register_connector",
    "list_available_connectors",

    # Implementations
    "HttpRemoteClient",
    "SandboxRemoteApi",
    "SandboxCall",
]
