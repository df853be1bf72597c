"""
Record Converter Tests

Validates field mapping between CRM records and ERP payloads:
1. Contacts, products and sales documents convert to ERP shapes
2. Validation collects every violation in one pass
3. References to unmapped contacts/products are reported as such
4. Unknown fields survive a round trip through the extra bag
5. Text normalization (quotes, zero-width characters, decimals, dates)
"""

from datetime import date
from decimal import Decimal

import pytest

from core.conversion import RecordConverter, UNMAPPED_REFERENCE, content_hash
from core.models.records import (
    ContactRecord,
    ProductRecord,
    SalesDocumentItem,
    SalesDocumentRecord,
)
from core.models.sync import EntityType


@pytest.fixture
def converter() -> RecordConverter:
    return RecordConverter()


def _document(**overrides) -> SalesDocumentRecord:
    values = dict(
        id="d-1",
        document_type="invoice",
        document_number="2024-001",
        customer_name="Acme d.o.o.",
        document_date=date(2024, 1, 9),
        due_date=date(2024, 2, 8),
        currency="EUR",
        items=[SalesDocumentItem(description="Consulting", quantity=Decimal("2"),
                                 unit_price=Decimal("100"), tax_rate=Decimal("22"))],
    )
    values.update(overrides)
    return SalesDocumentRecord(**values)


class TestContactConversion:
    """CRM contact <-> ERP partner."""

    def test_person_to_partner(self, converter):
        """A person becomes a private partner with a derived count code."""
        contact = ContactRecord(id="c-1", first_name="Ada", last_name="Lovelace",
                                email="ADA@Example.com", country="si")
        result = converter.to_remote(contact, EntityType.CONTACT)

        assert result.ok
        assert result.payload["name"] == "Ada Lovelace"
        assert result.payload["partner_type"] == "P"
        assert result.payload["email"] == "ada@example.com"
        assert result.payload["country"] == "SI"
        assert result.payload["count_code"] == "CONT-C-1"
        assert "contact_name" not in result.payload

    def test_company_keeps_contact_person(self, converter):
        """A company contact keeps the person as contact_name."""
        contact = ContactRecord(id="c-2", company="Acme", full_name="Wile E. Coyote")
        result = converter.to_remote(contact, EntityType.CONTACT)

        assert result.ok
        assert result.payload["name"] == "Acme"
        assert result.payload["partner_type"] == "B"
        assert result.payload["contact_name"] == "Wile E. Coyote"

    def test_all_errors_reported_at_once(self, converter):
        """Missing name, bad email and bad country are all reported."""
        contact = ContactRecord(id="c-3", email="not-an-email", country="Slovenia")
        result = converter.to_remote(contact, EntityType.CONTACT)

        assert not result.ok
        assert result.payload is None
        fields = {e.field for e in result.errors}
        assert fields == {"name", "email", "country"}

    def test_partner_to_contact(self, converter):
        """A business partner splits its contact person into first/last name."""
        payload = {"mk_id": "mk-1", "version": "3", "name": "Acme", "partner_type": "B",
                   "contact_name": "Road Runner", "post_number": "1000", "city": "Ljubljana"}
        result = converter.to_local(payload, EntityType.CONTACT)

        assert result.ok
        record = result.record
        assert record.id is None
        assert record.company == "Acme"
        assert record.first_name == "Road"
        assert record.last_name == "Runner"
        assert record.postal_code == "1000"
        assert record.extra == {}

    def test_existing_name_split_is_kept(self, converter):
        existing = ContactRecord(id="c-1", first_name="Mary Ann", last_name="Smith")
        payload = {"name": "Mary Ann Smith", "partner_type": "P", "city": "Maribor"}

        kept = converter.to_local(payload, EntityType.CONTACT, existing=existing).record
        renamed = converter.to_local(dict(payload, name="Mary Jones"), EntityType.CONTACT,
                                     existing=existing).record

        assert (kept.first_name, kept.last_name, kept.full_name) == ("Mary Ann", "Smith", None)
        assert kept.city == "Maribor"
        assert (renamed.first_name, renamed.last_name) == ("Mary", "Jones")

    def test_unknown_remote_fields_round_trip(self, converter):
        """Fields the engine does not know are carried through unchanged."""
        payload = {"name": "Ada Lovelace", "partner_type": "P", "iban": "SI56 0000"}
        pulled = converter.to_local(payload, EntityType.CONTACT).record
        assert pulled.extra == {"iban": "SI56 0000"}

        pushed = converter.to_remote(pulled.model_copy(update={"id": "c-9"}), EntityType.CONTACT)
        assert pushed.payload["iban"] == "SI56 0000"

    def test_kind_mismatch(self, converter):
        result = converter.to_remote(ContactRecord(id="c-1", full_name="X"), EntityType.PRODUCT)
        assert not result.ok
        assert result.errors[0].field == "kind"


class TestProductConversion:

    def test_product_to_remote(self, converter):
        """Prices are formatted with two decimals and currency symbols mapped."""
        product = ProductRecord(id="p-1", name="Widget", sku="w 100", unit_price=Decimal("9.5"),
                                currency="\u20ac", tax_rate=Decimal("22"))
        result = converter.to_remote(product, EntityType.PRODUCT)

        assert result.ok
        assert result.payload["count_code"] == "W-100"
        assert result.payload["price"] == "9.50"
        assert result.payload["currency_code"] == "EUR"
        assert result.payload["service"] == "false"
        assert result.payload["unit"] == "piece"

    def test_product_ranges(self, converter):
        product = ProductRecord(id="p-2", name="Widget", unit_price=Decimal("-1"), tax_rate=Decimal("150"))
        result = converter.to_remote(product, EntityType.PRODUCT)

        assert not result.ok
        assert {e.field for e in result.errors} == {"unit_price", "tax_rate"}

    def test_product_to_local_parses_european_decimals(self, converter):
        payload = {"name": "Widget", "count_code": "W-100", "price": "1.234,50",
                   "currency_code": "eur", "service": "true"}
        result = converter.to_local(payload, EntityType.PRODUCT)

        assert result.ok
        assert result.record.unit_price == Decimal("1234.50")
        assert result.record.currency == "EUR"
        assert result.record.is_service is True

    def test_product_to_local_bad_number(self, converter):
        result = converter.to_local({"name": "Widget", "price": "lots"}, EntityType.PRODUCT)
        assert not result.ok
        assert result.errors[0].code == "invalid_number"


class TestSalesDocumentConversion:

    def test_document_to_remote(self, converter):
        """Document type, dates and items map to the ERP shape."""
        result = converter.to_remote(_document(), EntityType.SALES_DOCUMENT)

        assert result.ok
        payload = result.payload
        assert payload["doc_type"] == "sales_bill"
        assert payload["doc_date"] == "2024-01-09"
        assert payload["partner_name"] == "Acme d.o.o."
        assert payload["sales_items"] == [{
            "name": "Consulting",
            "amount": "2.000",
            "price": "100.00",
            "discount": "0.00",
            "tax_rate": "22.00",
        }]

    def test_missing_customer_name(self, converter):
        """The required customer name is reported as a field error."""
        result = converter.to_remote(_document(customer_name="  "), EntityType.SALES_DOCUMENT)

        assert not result.ok
        assert [e.field for e in result.errors] == ["customer_name"]
        assert result.errors[0].code == "required"

    def test_document_collects_item_errors(self, converter):
        document = _document(
            due_date=date(2023, 12, 31),
            items=[SalesDocumentItem(quantity=Decimal("0"), unit_price=None)],
        )
        result = converter.to_remote(document, EntityType.SALES_DOCUMENT)

        fields = {e.field for e in result.errors}
        assert "due_date" in fields
        assert "items[0].description" in fields
        assert "items[0].quantity" in fields
        assert "items[0].unit_price" in fields

    def test_unmapped_customer(self, converter):
        """A customer without a mapping is an unmapped reference, not a validation error."""
        result = converter.to_remote(_document(customer_id="c-1"), EntityType.SALES_DOCUMENT)

        assert not result.ok
        assert result.has_unmapped_references
        assert result.errors[0].code == UNMAPPED_REFERENCE

    def test_mapped_references(self, converter):
        document = _document(
            customer_id="c-1",
            items=[SalesDocumentItem(product_id="p-1", unit_price=Decimal("5"))],
        )
        references = {EntityType.CONTACT: {"c-1": "mk-10"}, EntityType.PRODUCT: {"p-1": "mk-20"}}
        result = converter.to_remote(document, EntityType.SALES_DOCUMENT, references)

        assert result.ok
        assert result.payload["partner_id"] == "mk-10"
        assert result.payload["sales_items"][0]["product_id"] == "mk-20"

    def test_references_are_deduplicated(self, converter):
        document = _document(
            customer_id="c-1",
            items=[
                SalesDocumentItem(product_id="p-1", unit_price=Decimal("5")),
                SalesDocumentItem(product_id="p-1", unit_price=Decimal("6")),
            ],
        )
        assert converter.references(document) == [
            (EntityType.CONTACT, "c-1"),
            (EntityType.PRODUCT, "p-1"),
        ]

    def test_document_to_local(self, converter):
        payload = {
            "doc_type": "offer",
            "partner_id": "mk-10",
            "partner_name": "Acme",
            "doc_date": "2024-01-09+01:00",
            "sales_items": [{"name": "Consulting", "amount": "1", "price": "50", "product_id": "mk-20"}],
        }
        references = {EntityType.CONTACT: {"mk-10": "c-1"}, EntityType.PRODUCT: {"mk-20": "p-1"}}
        result = converter.to_local(payload, EntityType.SALES_DOCUMENT, references)

        assert result.ok
        record = result.record
        assert record.document_type == "quote"
        assert record.customer_id == "c-1"
        assert record.document_date == date(2024, 1, 9)
        assert record.items[0].product_id == "p-1"
        assert record.items[0].unit_price == Decimal("50")

    def test_unsupported_remote_doc_type(self, converter):
        result = converter.to_local({"doc_type": "mystery", "partner_name": "Acme"}, EntityType.SALES_DOCUMENT)
        assert not result.ok
        assert result.errors[0].field == "doc_type"


class TestNormalization:

    def test_typographic_characters(self, converter):
        """Smart quotes and zero-width spaces never reach the ERP."""
        contact = ContactRecord(id="c-1", company="\u201cAcme\u201d\u200b  Ltd")
        result = converter.to_remote(contact, EntityType.CONTACT)
        assert result.payload["name"] == '"Acme" Ltd'

    def test_content_hash_ignores_id_and_timestamp(self):
        a = ContactRecord(id="c-1", full_name="Ada")
        b = ContactRecord(id="c-2", full_name="Ada")
        c = ContactRecord(id="c-1", full_name="Ada Lovelace")
        assert content_hash(a) == content_hash(b)
        assert content_hash(a) != content_hash(c)

    def test_conversion_is_deterministic(self, converter):
        document = _document()
        first = converter.to_remote(document, EntityType.SALES_DOCUMENT)
        second = converter.to_remote(document, EntityType.SALES_DOCUMENT)
        assert first == second
