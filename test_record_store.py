"""
Local Record Store Tests

Both stores (in-memory and one-JSON-file-per-record):
1. save assigns an id and stamps updated_at; touch=False keeps the given timestamp
2. records are isolated per tenant and entity type
3. returned records are copies
4. the JSON store verifies each file's content hash on read
"""

import json
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from core.models.records import ContactRecord, ProductRecord, SalesDocumentItem, SalesDocumentRecord
from core.models.sync import EntityType
from core.storage.records import InMemoryRecordStore, JSONFileRecordStore


@pytest.fixture(params=["memory", "json"])
def store(request, tmp_path):
    if request.param == "memory":
        return InMemoryRecordStore()
    return JSONFileRecordStore(tmp_path / "records")


class TestRecordStores:

    def test_save_assigns_id_and_timestamp(self, store):
        saved = store.save("tenant-a", ContactRecord(first_name="Ada"))

        assert saved.id
        assert saved.updated_at is not None
        assert store.get_by_id("tenant-a", EntityType.CONTACT, saved.id) == saved

    def test_touch_false_keeps_timestamp(self, store):
        stamp = datetime(2024, 1, 9, 12, 0, tzinfo=timezone.utc)

        saved = store.save("tenant-a", ContactRecord(id="c-1", updated_at=stamp), touch=False)

        assert saved.updated_at == stamp
        assert store.get_by_id("tenant-a", EntityType.CONTACT, "c-1").updated_at == stamp

    def test_touch_restamps(self, store):
        stamp = datetime(2024, 1, 9, 12, 0, tzinfo=timezone.utc)
        assert store.save("tenant-a", ContactRecord(id="c-1", updated_at=stamp)).updated_at > stamp

    def test_isolation(self, store):
        store.save("tenant-a", ContactRecord(id="x-1", first_name="Ada"))
        store.save("tenant-b", ContactRecord(id="x-1", first_name="Grace"))
        store.save("tenant-a", ProductRecord(id="x-1", name="Widget"))

        assert store.get_by_id("tenant-a", EntityType.CONTACT, "x-1").first_name == "Ada"
        assert store.get_by_id("tenant-b", EntityType.CONTACT, "x-1").first_name == "Grace"
        assert store.get_by_id("tenant-a", EntityType.PRODUCT, "x-1").name == "Widget"
        assert store.get_by_id("tenant-c", EntityType.CONTACT, "x-1") is None

    def test_list_and_list_ids(self, store):
        for record_id in ("c-2", "c-1", "c-3"):
            store.save("tenant-a", ContactRecord(id=record_id))

        assert [r.id for r in store.list("tenant-a", EntityType.CONTACT)] == ["c-1", "c-2", "c-3"]
        assert sorted(store.list_ids("tenant-a", EntityType.CONTACT)) == ["c-1", "c-2", "c-3"]
        assert store.list("tenant-a", EntityType.SALES_DOCUMENT) == []

    def test_returned_records_are_copies(self, store):
        store.save("tenant-a", SalesDocumentRecord(id="d-1", items=[SalesDocumentItem(unit_price=Decimal("5"))]))

        first = store.get_by_id("tenant-a", EntityType.SALES_DOCUMENT, "d-1")
        first.items[0].unit_price = Decimal("999")

        second = store.get_by_id("tenant-a", EntityType.SALES_DOCUMENT, "d-1")
        assert second.items[0].unit_price == Decimal("5")

    def test_unknown_fields_round_trip(self, store):
        store.save("tenant-a", ContactRecord(id="c-1", extra={"loyalty_tier": "gold"}))
        assert store.get_by_id("tenant-a", EntityType.CONTACT, "c-1").extra == {"loyalty_tier": "gold"}


class TestJSONFileRecordStore:

    def test_layout(self, tmp_path):
        store = JSONFileRecordStore(tmp_path)
        store.save("tenant-a", ProductRecord(id="p-1", name="Widget", unit_price=Decimal("9.50")))

        envelope = json.loads((tmp_path / "tenant-a" / "product" / "p-1.json").read_text())
        assert envelope["record"]["name"] == "Widget"
        assert len(envelope["content_hash"]) == 64

    def test_tampered_file_is_rejected(self, tmp_path):
        store = JSONFileRecordStore(tmp_path)
        store.save("tenant-a", ContactRecord(id="c-1", email="ada@example.com"))
        path = tmp_path / "tenant-a" / "contact" / "c-1.json"
        envelope = json.loads(path.read_text())
        envelope["record"]["email"] = "mallory@example.com"
        path.write_text(json.dumps(envelope))

        with pytest.raises(ValueError, match="Hash mismatch"):
            store.get_by_id("tenant-a", EntityType.CONTACT, "c-1")

    def test_path_traversal_is_rejected(self, tmp_path):
        store = JSONFileRecordStore(tmp_path)
        with pytest.raises(ValueError):
            store.get_by_id("tenant-a", EntityType.CONTACT, "../secrets")

    @pytest.mark.parametrize("tenant_id", ["../tenant-b", "tenant-a/..", "..", ""])
    def test_tenant_traversal_is_rejected(self, tmp_path, tenant_id):
        store = JSONFileRecordStore(tmp_path / "records")
        with pytest.raises(ValueError, match="Invalid tenant id"):
            store.get_by_id(tenant_id, EntityType.CONTACT, "c-1")
        with pytest.raises(ValueError, match="Invalid tenant id"):
            store.list(tenant_id, EntityType.CONTACT)
        assert list(tmp_path.iterdir()) == [tmp_path / "records"]
