"""
Sync API Tests

HTTP surface over the orchestrator, driven through FastAPI's TestClient:
1. Tenant identity comes from gateway headers
2. Engine errors map onto 403 / 404 / 409
3. Batches run synchronously with wait=true, in the background otherwise
4. Mappings, events, jobs and metrics are readable per tenant
"""

from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from api.server import create_app
from core.models.records import ContactRecord, ProductRecord

ADMIN = {"X-Tenant-Id": "tenant-a", "X-Tenant-Roles": "admin", "X-User-Id": "u-admin"}
MEMBER = {"X-Tenant-Id": "tenant-a", "X-Tenant-Roles": "sales"}
OTHER = {"X-Tenant-Id": "tenant-b", "X-Tenant-Roles": "owner"}


@pytest.fixture
def api(engine):
    """(engine, client) with the app bound to the engine's context."""
    engine.records.save("tenant-a", ContactRecord(id="c-1", first_name="Ada", last_name="Lovelace"))
    engine.records.save("tenant-a", ContactRecord(id="c-2", company="Acme d.o.o."))
    with TestClient(create_app(engine.context)) as client:
        yield engine, client


def _sync_contact(client, record_id="c-1", headers=ADMIN):
    response = client.post(f"/sync/contact/records/{record_id}", headers=headers)
    assert response.status_code == 200, response.text
    return response.json()


class TestHealth:

    def test_health_endpoints(self, api):
        _, client = api

        health = client.get("/health").json()
        assert health["status"] == "healthy"
        assert health["services"]["remote"] == "sandbox"
        assert client.get("/ready").json() == {"status": "ready"}
        assert client.get("/live").json() == {"status": "alive"}


class TestSyncEndpoints:

    def test_sync_one_record(self, api):
        engine, client = api

        job = _sync_contact(client)

        assert job["status"] == "completed"
        assert job["detail"] == "created"
        assert job["tenant_id"] == "tenant-a"
        assert job["entity_type"] == "contact"
        assert len(engine.sandbox.records("tenant-a", "contact")) == 1

    def test_pull_direction_query(self, api):
        engine, client = api
        remote_id = engine.sandbox.seed("tenant-a", "product", {"name": "Gadget", "price": "3.00"})

        response = client.post(
            f"/sync/product/records/{remote_id}", params={"direction": "fromRemote"}, headers=ADMIN,
        )

        assert response.status_code == 200
        job = response.json()
        assert job["detail"] == "created"
        product = engine.records.get_by_id("tenant-a", "product", job["local_id"])
        assert isinstance(product, ProductRecord)
        assert product.unit_price == Decimal("3.00")

    def test_missing_tenant_header(self, api):
        _, client = api
        assert client.post("/sync/contact/records/c-1").status_code == 422

    def test_unknown_entity_type(self, api):
        _, client = api
        assert client.post("/sync/invoice/records/c-1", headers=ADMIN).status_code == 422

    def test_sync_disabled_is_forbidden(self, api):
        _, client = api
        headers = dict(ADMIN, **{"X-Sync-Enabled": "false"})

        response = client.post("/sync/contact/records/c-1", headers=headers)

        assert response.status_code == 403
        assert "not enabled" in response.json()["detail"]

    def test_failed_job_is_a_normal_response(self, api):
        """A sync that fails is reported in the job, not as an HTTP error."""
        engine, client = api
        engine.records.save("tenant-a", ContactRecord(id="c-bad"))

        job = _sync_contact(client, "c-bad")

        assert job["status"] == "failed"
        assert job["last_error"]["category"] == "validation"


class TestBatchEndpoints:

    def test_batch_with_wait(self, api):
        _, client = api

        response = client.post("/sync/contact/batches", json={"wait": True}, headers=ADMIN)

        assert response.status_code == 200
        batch = response.json()
        assert batch["status"] == "completed"
        assert batch["total_count"] == 2
        assert batch["succeeded_count"] == 2

    def test_batch_in_background(self, api):
        _, client = api

        response = client.post("/sync/contact/batches", json={"record_ids": ["c-1"]}, headers=ADMIN)

        assert response.status_code == 202
        batch = response.json()
        assert batch["status"] == "queued"
        assert batch["total_count"] == 1

        report = client.get(f"/sync/status/{batch['batch_id']}", headers=ADMIN).json()
        assert report["record_kind"] == "batch"

    def test_batch_requires_elevated_role(self, api):
        _, client = api
        response = client.post("/sync/contact/batches", json={"wait": True}, headers=MEMBER)
        assert response.status_code == 403

    def test_cancel(self, api):
        _, client = api
        batch = client.post("/sync/contact/batches", json={"wait": True}, headers=ADMIN).json()

        assert client.post(f"/sync/batches/{batch['batch_id']}/cancel", headers=MEMBER).status_code == 403
        response = client.post(f"/sync/batches/{batch['batch_id']}/cancel", headers=ADMIN)
        assert response.status_code == 200
        assert response.json()["cancel_requested"] is False
        assert client.post("/sync/batches/missing/cancel", headers=ADMIN).status_code == 404

    def test_retry_failed_items(self, api):
        engine, client = api
        engine.records.save("tenant-a", ContactRecord(id="c-bad"))
        first = client.post("/sync/contact/batches", json={"wait": True}, headers=ADMIN).json()
        assert first["status"] == "partial"

        engine.records.save("tenant-a", ContactRecord(id="c-bad", last_name="Fixed"))
        response = client.post(f"/sync/batches/{first['batch_id']}/retry", headers=ADMIN)

        assert response.status_code == 200
        retry = response.json()
        assert retry["batch_id"] != first["batch_id"]
        assert retry["total_count"] == 1
        assert retry["status"] == "completed"


class TestStatusEndpoints:

    def test_job_status_and_history(self, api):
        _, client = api
        job = _sync_contact(client)

        report = client.get(f"/sync/status/{job['job_id']}", headers=ADMIN).json()

        assert report["record_kind"] == "job"
        assert report["status"] == "completed"
        assert [t["to_state"] for t in report["history"]] == ["queued", "inProgress", "completed"]

    def test_status_of_other_tenant_is_not_found(self, api):
        _, client = api
        job = _sync_contact(client)

        assert client.get(f"/sync/status/{job['job_id']}", headers=OTHER).status_code == 404

    def test_retry_completed_job_is_conflict(self, api):
        _, client = api
        job = _sync_contact(client)

        response = client.post(f"/sync/jobs/{job['job_id']}/retry", headers=ADMIN)

        assert response.status_code == 409

    def test_list_jobs(self, api):
        engine, client = api
        engine.records.save("tenant-a", ContactRecord(id="c-bad"))
        _sync_contact(client)
        _sync_contact(client, "c-bad")

        jobs = client.get("/sync/jobs", headers=ADMIN).json()
        failed = client.get("/sync/jobs", params={"status": "failed"}, headers=ADMIN).json()

        assert len(jobs) == 2
        assert [j["local_id"] for j in failed] == ["c-bad"]
        assert client.get("/sync/jobs", headers=OTHER).json() == []

    def test_events(self, api):
        _, client = api
        job = _sync_contact(client)

        events = client.get("/sync/events", params={"job_id": job["job_id"]}, headers=ADMIN).json()

        assert [e["event_type"] for e in events][-1] == "JOB_COMPLETED"
        assert all(e["tenant_id"] == "tenant-a" for e in events)

    def test_metrics(self, api):
        _, client = api
        _sync_contact(client)

        summary = client.get("/sync/metrics").json()

        assert summary["jobs"]["completed"] == 1
        assert set(summary["batches"]) >= {"submitted", "completed", "partial", "failed", "cancelled"}
        assert "attempt.contact" in summary["timings"]["by_stage"]

    def test_stage_timings(self, api):
        _, client = api
        _sync_contact(client)

        stats = client.get("/sync/metrics", params={"stage": "attempt.contact"}).json()

        assert stats["sample_count"] == 1
        assert stats["average_ms"] >= 0


class TestMappingEndpoints:

    def test_list_and_unlink(self, api):
        _, client = api
        job = _sync_contact(client)

        mappings = client.get("/sync/contact/mappings", headers=ADMIN).json()
        assert [(m["local_id"], m["remote_id"]) for m in mappings] == [("c-1", job["remote_id"])]
        assert client.get("/sync/contact/mappings", headers=OTHER).json() == []

        response = client.delete("/sync/contact/mappings/c-1", headers=ADMIN)
        assert response.status_code == 200
        assert response.json() == {"entity_type": "contact", "local_id": "c-1", "unlinked": True}
        assert client.delete("/sync/contact/mappings/c-1", headers=ADMIN).status_code == 404
