"""ERP HTTP Client.

aiohttp client for a REST-style ERP API:

    POST   {base_url}/{resource}            create  (Idempotency-Key header)
    PUT    {base_url}/{resource}/{id}       update
    GET    {base_url}/{resource}/{id}       read by id
    GET    {base_url}/{resource}?...        list    ({"value": [...]} or a bare list)

Records carry their id in ``mk_id``. The version token is read from the body
("version") or, failing that, from the ETag header.

HTTP statuses are mapped to the RemoteApiError hierarchy. The client does not
retry; the engine's classifier decides what is retried and when.
"""

import asyncio
import json
from typing import Any, Dict, List, Optional

import aiohttp

from connectors.remote_base import (
    RESOURCES,
    RemoteApiClient,
    RemoteApiError,
    RemoteAuthError,
    RemoteConfig,
    RemoteConnectionError,
    RemoteNotFoundError,
    RemoteRateLimitError,
    RemoteRecord,
    RemoteServerError,
    RemoteTimeoutError,
    RemoteValidationError,
    RemoteWriteResult,
    register_connector,
)
from core.models.sync import EntityType
from core.observability.logging import get_logger

logger = get_logger(__name__)

ID_FIELD = "mk_id"
VERSION_FIELD = "version"


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


@register_connector("http")
class HttpRemoteClient(RemoteApiClient):
    """HTTP client for the ERP REST API.

    Usage:
        client = HttpRemoteClient(RemoteConfig(connector_type="http",
                                               base_url="https://erp.example.com/api"))
        await client.connect()
        result = await client.create("tenant-1", EntityType.CONTACT, payload,
                                     idempotency_key="...")
        record = await client.get_by_id("tenant-1", EntityType.CONTACT, result.remote_id)
        await client.disconnect()
    """

    def __init__(self, config: RemoteConfig, session: Optional[aiohttp.ClientSession] = None):
        super().__init__(config)
        if not config.base_url:
            raise ValueError("HTTP connector requires base_url")
        self._session = session
        self._owns_session = session is None

    async def connect(self) -> None:
        """Initialize the HTTP session."""
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=self.config.timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True

    async def disconnect(self) -> None:
        """Close the HTTP session if this client created it."""
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None

    def _build_url(self, entity_type: EntityType, remote_id: Optional[str] = None) -> str:
        base = self.config.base_url.rstrip("/")
        resource = RESOURCES[EntityType(entity_type)]
        if remote_id is None:
            return f"{base}/{resource}"
        return f"{base}/{resource}/{remote_id}"

    def _get_headers(self, tenant_id: str) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "X-Tenant-Id": tenant_id,
        }
        headers.update(self.config.credentials_for(tenant_id))
        return headers

    async def _request(
        self,
        method: str,
        url: str,
        tenant_id: str,
        params: Optional[Dict[str, str]] = None,
        data: Optional[Dict[str, Any]] = None,
        extra_headers: Optional[Dict[str, str]] = None,
    ):
        """Make a single API request.

        Returns:
            (parsed JSON body, response headers)

        Raises:
            RemoteAuthError: 401/403
            RemoteNotFoundError: 404
            RemoteRateLimitError: 429
            RemoteValidationError: 400/422
            RemoteServerError: 5xx
            RemoteConnectionError: Connection failure
            RemoteTimeoutError: Request timed out
            RemoteApiError: Any other error status
        """
        if self._session is None:
            raise RemoteApiError("Not connected. Call connect() first.")

        headers = self._get_headers(tenant_id)
        if extra_headers:
            headers.update(extra_headers)

        try:
            async with self._session.request(
                method,
                url,
                headers=headers,
                params=params,
                json=data,
            ) as response:
                response_text = await response.text()
                status = response.status

                if status < 400:
                    body = json.loads(response_text) if response_text else {}
                    return body, response.headers

                logger.warning(
                    f"{method} {url} failed with {status}",
                    extra_fields={"tenant_id": tenant_id, "status_code": status},
                )

                if status in (401, 403):
                    raise RemoteAuthError(f"Authentication failed: {response_text}", status, response_text)
                if status == 404:
                    raise RemoteNotFoundError(f"Resource not found: {url}", status, response_text)
                if status == 429:
                    raise RemoteRateLimitError(
                        "Rate limit exceeded",
                        _parse_retry_after(response.headers.get("Retry-After")),
                        response_text,
                    )
                if status in (400, 422):
                    raise RemoteValidationError(f"Validation error: {response_text}", status, response_text)
                if status >= 500:
                    raise RemoteServerError(f"Server error {status}: {response_text}", status, response_text)
                raise RemoteApiError(f"API error {status}: {response_text}", status, response_text)

        except asyncio.TimeoutError as e:
            raise RemoteTimeoutError(f"{method} {url} timed out") from e
        except aiohttp.ClientError as e:
            raise RemoteConnectionError(f"{method} {url} failed: {e}") from e

    @staticmethod
    def _version(body: Dict[str, Any], headers) -> Optional[str]:
        version = body.get(VERSION_FIELD) if isinstance(body, dict) else None
        if version is None and headers is not None:
            etag = headers.get("ETag")
            version = etag.strip('"') if etag else None
        return str(version) if version is not None else None

    def _to_record(self, body: Dict[str, Any], headers=None) -> RemoteRecord:
        if ID_FIELD not in body:
            raise RemoteApiError(f"Remote record without {ID_FIELD}", 0, json.dumps(body))
        return RemoteRecord(
            remote_id=str(body[ID_FIELD]),
            payload=body,
            version=self._version(body, headers),
        )

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
        extra = {"Idempotency-Key": idempotency_key} if idempotency_key else None
        body, headers = await self._request(
            "POST", self._build_url(entity_type), tenant_id, data=payload, extra_headers=extra
        )
        if ID_FIELD not in body:
            raise RemoteApiError(f"Create response without {ID_FIELD}", 0, json.dumps(body))
        return RemoteWriteResult(remote_id=str(body[ID_FIELD]), version=self._version(body, headers))

    async def update(
        self,
        tenant_id: str,
        entity_type: EntityType,
        remote_id: str,
        payload: Dict[str, Any],
    ) -> RemoteWriteResult:
        body, headers = await self._request(
            "PUT", self._build_url(entity_type, remote_id), tenant_id, data=payload
        )
        return RemoteWriteResult(remote_id=remote_id, version=self._version(body, headers))

    async def get_by_id(
        self,
        tenant_id: str,
        entity_type: EntityType,
        remote_id: str,
    ) -> RemoteRecord:
        body, headers = await self._request("GET", self._build_url(entity_type, remote_id), tenant_id)
        return self._to_record(body, headers)

    async def list(
        self,
        tenant_id: str,
        entity_type: EntityType,
        filters: Optional[Dict[str, Any]] = None,
    ) -> List[RemoteRecord]:
        params = {k: str(v) for k, v in (filters or {}).items()}
        body, _ = await self._request("GET", self._build_url(entity_type), tenant_id, params=params)
        items = body.get("value", []) if isinstance(body, dict) else body
        return [self._to_record(item) for item in items]
