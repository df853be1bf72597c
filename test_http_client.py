"""
HTTP Remote Client Tests

HttpRemoteClient against a fake ERP served by aiohttp's TestServer:
1. create sends the Idempotency-Key, tenant and credential headers
2. version tokens come from the body or the ETag header
3. HTTP statuses map onto the RemoteApiError hierarchy, Retry-After included
4. list accepts {"value": [...]} and passes filters as query parameters
"""

import asyncio
import json

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer as ErpTestServer

from connectors.http import HttpRemoteClient
from connectors.remote_base import (
    RemoteApiError,
    RemoteAuthError,
    RemoteConfig,
    RemoteNotFoundError,
    RemoteRateLimitError,
    RemoteServerError,
    RemoteValidationError,
)
from core.models.sync import EntityType


def _fake_erp(seen):
    async def create_partner(request):
        seen.append({
            "method": request.method,
            "path": request.path,
            "headers": dict(request.headers),
            "body": await request.json(),
        })
        return web.json_response({"mk_id": 501, "version": 1}, status=201)

    async def get_partner(request):
        remote_id = request.match_info["remote_id"]
        if remote_id == "missing":
            return web.json_response({"error": "not_found"}, status=404)
        return web.json_response({"mk_id": remote_id, "name": "Acme"}, headers={"ETag": '"7"'})

    async def update_partner(request):
        seen.append({"method": request.method, "path": request.path, "body": await request.json()})
        return web.json_response({}, headers={"ETag": '"8"'})

    async def list_partners(request):
        seen.append({"method": request.method, "query": dict(request.query)})
        return web.json_response({"value": [
            {"mk_id": "mk-1", "name": "Acme", "version": "3"},
            {"mk_id": "mk-2", "name": "Globex", "version": "1"},
        ]})

    async def rate_limited(request):
        return web.Response(status=429, text="slow down", headers={"Retry-After": "3"})

    async def rejected(request):
        return web.json_response({"field": "partner_name", "error": "required"}, status=422)

    async def unavailable(request):
        return web.Response(status=503, text="maintenance")

    async def forbidden(request):
        return web.Response(status=401, text="token expired")

    app = web.Application()
    app.router.add_post("/api/partners", create_partner)
    app.router.add_get("/api/partners", list_partners)
    app.router.add_get("/api/partners/{remote_id}", get_partner)
    app.router.add_put("/api/partners/{remote_id}", update_partner)
    app.router.add_post("/api/products", rate_limited)
    app.router.add_put("/api/products/{remote_id}", unavailable)
    app.router.add_post("/api/sales-documents", rejected)
    app.router.add_get("/api/sales-documents/{remote_id}", forbidden)
    return app


def _run_against_erp(scenario):
    """Run scenario(client, seen) with a connected client and a live fake ERP."""
    async def main():
        seen = []
        server = ErpTestServer(_fake_erp(seen))
        await server.start_server()
        client = HttpRemoteClient(RemoteConfig(
            connector_type="http",
            base_url=str(server.make_url("/api")),
            timeout_seconds=5,
            credentials_provider=lambda tenant_id: {"Authorization": f"Bearer {tenant_id}-token"},
        ))
        await client.connect()
        try:
            return await scenario(client, seen)
        finally:
            await client.disconnect()
            await server.close()

    return asyncio.run(main())


class TestHttpRemoteClient:

    def test_requires_base_url(self):
        with pytest.raises(ValueError):
            HttpRemoteClient(RemoteConfig(connector_type="http"))

    def test_create_sends_headers(self):
        async def scenario(client, seen):
            result = await client.create("tenant-a", EntityType.CONTACT, {"name": "Acme"}, idempotency_key="k-1")
            return result, seen

        result, seen = _run_against_erp(scenario)

        assert result.remote_id == "501"
        assert result.version == "1"
        request = seen[0]
        assert request["path"] == "/api/partners"
        assert request["body"] == {"name": "Acme"}
        assert request["headers"]["Idempotency-Key"] == "k-1"
        assert request["headers"]["X-Tenant-Id"] == "tenant-a"
        assert request["headers"]["Authorization"] == "Bearer tenant-a-token"

    def test_version_from_etag(self):
        async def scenario(client, seen):
            record = await client.get_by_id("tenant-a", EntityType.CONTACT, "mk-9")
            written = await client.update("tenant-a", EntityType.CONTACT, "mk-9", {"name": "Acme 2"})
            return record, written

        record, written = _run_against_erp(scenario)

        assert record.remote_id == "mk-9"
        assert record.payload["name"] == "Acme"
        assert record.version == "7"
        assert written.remote_id == "mk-9"
        assert written.version == "8"

    def test_list_with_filters(self):
        async def scenario(client, seen):
            records = await client.list("tenant-a", EntityType.CONTACT, {"partner_type": "B"})
            return records, seen

        records, seen = _run_against_erp(scenario)

        assert [(r.remote_id, r.version) for r in records] == [("mk-1", "3"), ("mk-2", "1")]
        assert seen[0]["query"] == {"partner_type": "B"}

    def test_not_found(self):
        async def scenario(client, seen):
            await client.get_by_id("tenant-a", EntityType.CONTACT, "missing")

        with pytest.raises(RemoteNotFoundError) as exc_info:
            _run_against_erp(scenario)
        assert exc_info.value.status_code == 404

    def test_rate_limit_with_retry_after(self):
        async def scenario(client, seen):
            await client.create("tenant-a", EntityType.PRODUCT, {"name": "Widget"})

        with pytest.raises(RemoteRateLimitError) as exc_info:
            _run_against_erp(scenario)
        assert exc_info.value.status_code == 429
        assert exc_info.value.retry_after == 3.0

    def test_validation_body_is_kept(self):
        async def scenario(client, seen):
            await client.create("tenant-a", EntityType.SALES_DOCUMENT, {"doc_type": "sales_bill"})

        with pytest.raises(RemoteValidationError) as exc_info:
            _run_against_erp(scenario)
        assert exc_info.value.status_code == 422
        assert json.loads(exc_info.value.response_body) == {"field": "partner_name", "error": "required"}

    def test_server_error(self):
        async def scenario(client, seen):
            await client.update("tenant-a", EntityType.PRODUCT, "mk-3", {"name": "Widget"})

        with pytest.raises(RemoteServerError) as exc_info:
            _run_against_erp(scenario)
        assert exc_info.value.status_code == 503

    def test_auth_error(self):
        async def scenario(client, seen):
            await client.get_by_id("tenant-a", EntityType.SALES_DOCUMENT, "mk-4")

        with pytest.raises(RemoteAuthError):
            _run_against_erp(scenario)

    def test_not_connected(self):
        client = HttpRemoteClient(RemoteConfig(connector_type="http", base_url="http://erp.invalid/api"))

        with pytest.raises(RemoteApiError, match="Not connected"):
            asyncio.run(client.get_by_id("tenant-a", EntityType.CONTACT, "mk-1"))
