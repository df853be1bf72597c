"""Record Converter.

Bidirectional field mapping between CRM records and ERP payloads:

    to_remote(record, entity_type, references)  -> ConversionResult(payload)
    to_local(payload, entity_type, references, existing)  -> ConversionResult(record)

The converter is pure. References to other entities (a sales document's
customer and products) are passed in as id maps, so the converter never
looks anything up itself. Validation collects every violation in one pass;
a result is either fully valid or carries the complete error list.

ERP payload shapes (partner, product, sales document) use the ERP's own
field names (count_code, partner_type, doc_type, sales_items, ...). Remote
ids (mk_id) and version tokens are not part of the converted content; the
mapping store owns them.
"""

import hashlib
import json
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from core.conversion.normalize import (
    format_bool,
    format_date,
    format_decimal,
    is_valid_currency,
    is_valid_email,
    normalize_currency,
    normalize_identifier,
    normalize_multiline,
    normalize_text,
    parse_bool,
    parse_date,
    parse_decimal,
)
from core.models.records import (
    ContactRecord,
    LocalRecordBase,
    ProductRecord,
    SalesDocumentItem,
    SalesDocumentRecord,
)
from core.models.sync import EntityType, FieldError


# =============================================================================
# Constants
# =============================================================================

# Error codes reported in FieldError.code
REQUIRED = "required"
INVALID_FORMAT = "invalid_format"
INVALID_NUMBER = "invalid_number"
INVALID_DATE = "invalid_date"
OUT_OF_RANGE = "out_of_range"
TOO_LONG = "too_long"
UNSUPPORTED_VALUE = "unsupported_value"
UNMAPPED_REFERENCE = "unmapped_reference"

MAX_NAME_LENGTH = 255
MAX_CODE_LENGTH = 50
MAX_NOTES_LENGTH = 4000

# CRM document type -> ERP doc_type
DOCUMENT_TYPES = {
    "invoice": "sales_bill",
    "quote": "offer",
    "order": "sales_order",
    "receipt": "sales_receipt",
    "credit_note": "credit_note",
    "debit_note": "debit_note",
    "proforma": "proforma_invoice",
    "advance": "advance_invoice",
}
REMOTE_DOCUMENT_TYPES = {v: k for k, v in DOCUMENT_TYPES.items()}

PARTNER_FIELDS = frozenset({
    "mk_id", "version", "count_code", "name", "partner_type", "contact_name",
    "email", "phone", "tax_id_num", "street", "post_number", "city", "country",
    "sales",
})
PRODUCT_FIELDS = frozenset({
    "mk_id", "version", "count_code", "name", "name_desc", "unit", "service",
    "sales", "price", "currency_code", "tax_rate",
})
SALES_DOCUMENT_FIELDS = frozenset({
    "mk_id", "version", "doc_type", "doc_number", "partner_id", "partner_name",
    "doc_date", "due_date", "currency_code", "status", "notes", "payment_method",
    "sales_items",
})

# Id maps keyed by the referenced entity type, e.g.
# {EntityType.CONTACT: {"crm-contact-1": "mk-100"}}
References = Dict[EntityType, Dict[str, str]]


# =============================================================================
# Result
# =============================================================================

@dataclass(frozen=True)
class ConversionResult:
    """Either a converted value or the complete list of field errors."""
    payload: Optional[Dict[str, Any]] = None
    record: Optional[LocalRecordBase] = None
    errors: List[FieldError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    @property
    def has_unmapped_references(self) -> bool:
        return any(e.code == UNMAPPED_REFERENCE for e in self.errors)

    @classmethod
    def failure(cls, errors: List[FieldError]) -> "ConversionResult":
        return cls(errors=list(errors))


class _Errors:
    """Collects field errors during a single conversion."""

    def __init__(self):
        self.items: List[FieldError] = []

    def add(self, field_name: str, code: str, message: str) -> None:
        self.items.append(FieldError(field=field_name, code=code, message=message))

    def required(self, field_name: str, value: Any) -> None:
        if value is None or value == "":
            self.add(field_name, REQUIRED, f"{field_name} is required")

    def max_length(self, field_name: str, value: Optional[str], limit: int) -> None:
        if value and len(value) > limit:
            self.add(field_name, TOO_LONG, f"{field_name} exceeds {limit} characters")

    def decimal(self, field_name: str, value: Any) -> Optional[Decimal]:
        try:
            return parse_decimal(value)
        except ValueError:
            self.add(field_name, INVALID_NUMBER, f"{field_name} is not a number: {value!r}")
            return None

    def date(self, field_name: str, value: Any):
        try:
            return parse_date(value)
        except ValueError:
            self.add(field_name, INVALID_DATE, f"{field_name} is not a date: {value!r}")
            return None

    def in_range(self, field_name: str, value: Optional[Decimal],
                 low: Optional[Decimal] = None, high: Optional[Decimal] = None,
                 exclusive_low: bool = False) -> None:
        if value is None:
            return
        if low is not None and (value < low or (exclusive_low and value == low)):
            bound = f"> {low}" if exclusive_low else f">= {low}"
            self.add(field_name, OUT_OF_RANGE, f"{field_name} must be {bound}")
        elif high is not None and value > high:
            self.add(field_name, OUT_OF_RANGE, f"{field_name} must be <= {high}")

    def currency(self, field_name: str, value: Any) -> Optional[str]:
        code = normalize_currency(value)
        if code is not None and not is_valid_currency(code):
            self.add(field_name, INVALID_FORMAT, f"{field_name} is not an ISO-4217 code: {value!r}")
        return code

    def reference(self, field_name: str, references: References,
                  entity_type: EntityType, ref_id: str) -> Optional[str]:
        mapped = references.get(entity_type, {}).get(ref_id)
        if mapped is None:
            self.add(
                field_name,
                UNMAPPED_REFERENCE,
                f"{entity_type.value} {ref_id} has no mapping",
            )
        return mapped


def content_hash(record: LocalRecordBase) -> str:
    """SHA-256 fingerprint of a record's business content."""
    canonical = json.dumps(record.content(), sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _compact(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Drop None values so the ERP keeps its own defaults."""
    return {k: v for k, v in payload.items() if v is not None}


def _extra(payload: Dict[str, Any], known: frozenset) -> Dict[str, Any]:
    return {k: v for k, v in payload.items() if k not in known}


def _text_or_none(value: Any) -> Optional[str]:
    text = normalize_text(value)
    return text or None


# =============================================================================
# Converter
# =============================================================================

class RecordConverter:
    """Pure CRM <-> ERP record converter.

    Usage:
        converter = RecordConverter()
        result = converter.to_remote(contact, EntityType.CONTACT)
        if result.ok:
            await remote.create(tenant_id, EntityType.CONTACT, result.payload)
        else:
            report(result.errors)
    """

    # =========================================================================
    # Public contract
    # =========================================================================

    def to_remote(
        self,
        record: LocalRecordBase,
        entity_type: EntityType,
        references: Optional[References] = None,
    ) -> ConversionResult:
        """Convert a CRM record to an ERP payload.

        Args:
            record: CRM record (its kind must match entity_type)
            entity_type: Target entity type
            references: Local id -> remote id maps for referenced entities

        Returns:
            ConversionResult with payload, or with every field error found
        """
        entity_type = EntityType(entity_type)
        references = references or {}
        if record.kind != entity_type.value:
            return ConversionResult.failure([FieldError(
                field="kind",
                code=UNSUPPORTED_VALUE,
                message=f"Record of kind {record.kind} cannot be converted as {entity_type.value}",
            )])

        if entity_type == EntityType.CONTACT:
            return self._contact_to_remote(record)
        if entity_type == EntityType.PRODUCT:
            return self._product_to_remote(record)
        return self._document_to_remote(record, references)

    def to_local(
        self,
        payload: Dict[str, Any],
        entity_type: EntityType,
        references: Optional[References] = None,
        existing: Optional[LocalRecordBase] = None,
    ) -> ConversionResult:
        """Convert an ERP payload to a CRM record.

        Args:
            payload: ERP payload as returned by the remote client
            entity_type: Source entity type
            references: Remote id -> local id maps for referenced entities
            existing: The mapped local record, if any. A contact keeps its
                name split when the ERP name still matches it.

        Returns:
            ConversionResult with record (id unset), or with every field error
        """
        entity_type = EntityType(entity_type)
        references = references or {}
        if not isinstance(payload, dict):
            return ConversionResult.failure([FieldError(
                field="payload", code=INVALID_FORMAT, message="Remote payload is not an object",
            )])

        if entity_type == EntityType.CONTACT:
            return self._partner_to_local(payload, existing)
        if entity_type == EntityType.PRODUCT:
            return self._product_to_local(payload)
        return self._document_to_local(payload, references)

    def references(self, record: LocalRecordBase) -> List[Tuple[EntityType, str]]:
        """Entities a record refers to, in a stable order without duplicates."""
        if not isinstance(record, SalesDocumentRecord):
            return []
        refs: List[Tuple[EntityType, str]] = []
        if record.customer_id:
            refs.append((EntityType.CONTACT, record.customer_id))
        for item in record.items:
            if item.product_id:
                ref = (EntityType.PRODUCT, item.product_id)
                if ref not in refs:
                    refs.append(ref)
        return refs

    def remote_references(self, payload: Dict[str, Any],
                          entity_type: EntityType) -> List[Tuple[EntityType, str]]:
        """Remote ids a payload refers to (used when pulling documents)."""
        if EntityType(entity_type) != EntityType.SALES_DOCUMENT:
            return []
        refs: List[Tuple[EntityType, str]] = []
        partner_id = payload.get("partner_id")
        if partner_id:
            refs.append((EntityType.CONTACT, str(partner_id)))
        for item in payload.get("sales_items") or []:
            product_id = item.get("product_id") if isinstance(item, dict) else None
            if product_id:
                ref = (EntityType.PRODUCT, str(product_id))
                if ref not in refs:
                    refs.append(ref)
        return refs

    # =========================================================================
    # Contact <-> partner
    # =========================================================================

    def _contact_to_remote(self, record: ContactRecord) -> ConversionResult:
        errors = _Errors()

        company = normalize_text(record.company)
        person = normalize_text(record.display_name)
        name = company or person
        errors.required("name", name)
        errors.max_length("name", name, MAX_NAME_LENGTH)

        email = normalize_text(record.email).lower() or None
        if email and not is_valid_email(email):
            errors.add("email", INVALID_FORMAT, f"email is not valid: {record.email!r}")

        country = normalize_text(record.country).upper() or None
        if country and len(country) not in (2, 3):
            errors.add("country", INVALID_FORMAT, "country must be an ISO country code")

        count_code = normalize_identifier(f"CONT-{(record.id or '')[:8]}") if record.id else None
        errors.required("id", record.id)

        if errors.items:
            return ConversionResult.failure(errors.items)

        payload = dict(record.extra)
        payload.update(_compact({
            "count_code": count_code,
            "name": name,
            "partner_type": "B" if company else "P",
            "contact_name": person if company and person else None,
            "email": email,
            "phone": _text_or_none(record.phone),
            "tax_id_num": normalize_identifier(record.tax_id) or None,
            "street": _text_or_none(record.street),
            "post_number": _text_or_none(record.postal_code),
            "city": _text_or_none(record.city),
            "country": country,
            "sales": format_bool(True),
        }))
        return ConversionResult(payload=payload)

    def _partner_to_local(self, payload: Dict[str, Any],
                          existing: Optional[LocalRecordBase] = None) -> ConversionResult:
        errors = _Errors()
        name = normalize_text(payload.get("name"))
        errors.required("name", name)

        email = normalize_text(payload.get("email")).lower() or None
        if email and not is_valid_email(email):
            errors.add("email", INVALID_FORMAT, f"email is not valid: {payload.get('email')!r}")

        if errors.items:
            return ConversionResult.failure(errors.items)

        is_business = str(payload.get("partner_type", "")).upper() == "B"
        person = normalize_text(payload.get("contact_name")) if is_business else name
        first_name, last_name, full_name = None, None, person or None
        if (isinstance(existing, ContactRecord) and person
                and normalize_text(existing.display_name) == person):
            # ERP stores one name; a split made in the CRM survives the round trip
            first_name, last_name, full_name = existing.first_name, existing.last_name, existing.full_name
        elif person:
            parts = person.split(" ", 1)
            first_name = parts[0]
            last_name = parts[1] if len(parts) > 1 else None

        record = ContactRecord(
            first_name=first_name,
            last_name=last_name,
            full_name=full_name,
            company=name if is_business else None,
            email=email,
            phone=_text_or_none(payload.get("phone")),
            tax_id=_text_or_none(payload.get("tax_id_num")),
            street=_text_or_none(payload.get("street")),
            city=_text_or_none(payload.get("city")),
            postal_code=_text_or_none(payload.get("post_number")),
            country=_text_or_none(payload.get("country")),
            extra=_extra(payload, PARTNER_FIELDS),
        )
        return ConversionResult(record=record)

    # =========================================================================
    # Product
    # =========================================================================

    def _product_to_remote(self, record: ProductRecord) -> ConversionResult:
        errors = _Errors()

        name = normalize_text(record.name)
        errors.required("name", name)
        errors.max_length("name", name, MAX_NAME_LENGTH)

        count_code = normalize_identifier(record.sku) if record.sku else None
        if not count_code and record.id:
            count_code = normalize_identifier(f"PROD-{record.id[:8]}")
        errors.required("sku", count_code)
        errors.max_length("sku", count_code, MAX_CODE_LENGTH)

        errors.in_range("unit_price", record.unit_price, low=Decimal("0"))
        errors.in_range("tax_rate", record.tax_rate, low=Decimal("0"), high=Decimal("100"))
        currency = errors.currency("currency", record.currency)

        if errors.items:
            return ConversionResult.failure(errors.items)

        payload = dict(record.extra)
        payload.update(_compact({
            "count_code": count_code,
            "name": name,
            "name_desc": normalize_multiline(record.description) or None,
            "unit": normalize_text(record.unit) or "piece",
            "service": format_bool(record.is_service),
            "sales": format_bool(True),
            "price": format_decimal(record.unit_price) if record.unit_price is not None else None,
            "currency_code": currency,
            "tax_rate": format_decimal(record.tax_rate) if record.tax_rate is not None else None,
        }))
        return ConversionResult(payload=payload)

    def _product_to_local(self, payload: Dict[str, Any]) -> ConversionResult:
        errors = _Errors()
        name = normalize_text(payload.get("name"))
        errors.required("name", name)
        price = errors.decimal("price", payload.get("price"))
        tax_rate = errors.decimal("tax_rate", payload.get("tax_rate"))
        errors.in_range("price", price, low=Decimal("0"))
        errors.in_range("tax_rate", tax_rate, low=Decimal("0"), high=Decimal("100"))
        currency = errors.currency("currency_code", payload.get("currency_code"))

        if errors.items:
            return ConversionResult.failure(errors.items)

        record = ProductRecord(
            name=name,
            sku=_text_or_none(payload.get("count_code")),
            description=normalize_multiline(payload.get("name_desc")) or None,
            unit=_text_or_none(payload.get("unit")),
            unit_price=price,
            currency=currency,
            is_service=parse_bool(payload.get("service")),
            tax_rate=tax_rate,
            extra=_extra(payload, PRODUCT_FIELDS),
        )
        return ConversionResult(record=record)

    # =========================================================================
    # Sales document
    # =========================================================================

    def _document_to_remote(self, record: SalesDocumentRecord,
                            references: References) -> ConversionResult:
        errors = _Errors()

        doc_type = DOCUMENT_TYPES.get(normalize_text(record.document_type).lower())
        if doc_type is None:
            errors.add("document_type", UNSUPPORTED_VALUE,
                       f"Unsupported document type: {record.document_type!r}")

        customer_name = normalize_text(record.customer_name)
        errors.required("customer_name", customer_name)
        errors.max_length("customer_name", customer_name, MAX_NAME_LENGTH)

        partner_id = None
        if record.customer_id:
            partner_id = errors.reference("customer_id", references, EntityType.CONTACT, record.customer_id)

        doc_number = normalize_identifier(record.document_number) if record.document_number else None
        errors.max_length("document_number", doc_number, MAX_CODE_LENGTH)

        if record.document_date and record.due_date and record.due_date < record.document_date:
            errors.add("due_date", OUT_OF_RANGE, "due_date is before document_date")

        currency = errors.currency("currency", record.currency)

        notes = normalize_multiline(record.notes) or None
        errors.max_length("notes", notes, MAX_NOTES_LENGTH)

        if not record.items:
            errors.add("items", REQUIRED, "A sales document needs at least one item")

        sales_items = []
        for index, item in enumerate(record.items):
            converted = self._item_to_remote(item, f"items[{index}]", references, errors)
            if converted is not None:
                sales_items.append(converted)

        if errors.items:
            return ConversionResult.failure(errors.items)

        payload = dict(record.extra)
        payload.update(_compact({
            "doc_type": doc_type,
            "doc_number": doc_number,
            "partner_id": partner_id,
            "partner_name": customer_name,
            "doc_date": format_date(record.document_date) or None,
            "due_date": format_date(record.due_date) or None,
            "currency_code": currency,
            "status": normalize_text(record.status).lower() or None,
            "notes": notes,
            "payment_method": _text_or_none(record.payment_method),
            "sales_items": sales_items,
        }))
        return ConversionResult(payload=payload)

    def _item_to_remote(self, item: SalesDocumentItem, path: str,
                        references: References, errors: _Errors) -> Optional[Dict[str, Any]]:
        start = len(errors.items)

        name = normalize_text(item.description)
        product_remote_id = None
        if item.product_id:
            product_remote_id = errors.reference(
                f"{path}.product_id", references, EntityType.PRODUCT, item.product_id
            )
        elif not name:
            errors.add(f"{path}.description", REQUIRED, "An item needs a description or a product")

        quantity = item.quantity if item.quantity is not None else Decimal("1")
        errors.in_range(f"{path}.quantity", quantity, low=Decimal("0"), exclusive_low=True)
        errors.required(f"{path}.unit_price", item.unit_price)
        errors.in_range(f"{path}.unit_price", item.unit_price, low=Decimal("0"))
        errors.in_range(f"{path}.tax_rate", item.tax_rate, low=Decimal("0"), high=Decimal("100"))
        errors.in_range(f"{path}.discount", item.discount, low=Decimal("0"), high=Decimal("100"))

        if len(errors.items) > start:
            return None

        return _compact({
            "name": name or None,
            "product_id": product_remote_id,
            "amount": format_decimal(quantity, places=3),
            "price": format_decimal(item.unit_price),
            "discount": format_decimal(item.discount or Decimal("0")),
            "tax_rate": format_decimal(item.tax_rate or Decimal("0")),
            "unit": _text_or_none(item.unit),
        })

    def _document_to_local(self, payload: Dict[str, Any],
                           references: References) -> ConversionResult:
        errors = _Errors()

        remote_type = normalize_text(payload.get("doc_type")).lower()
        document_type = REMOTE_DOCUMENT_TYPES.get(remote_type)
        if document_type is None:
            errors.add("doc_type", UNSUPPORTED_VALUE, f"Unsupported doc_type: {payload.get('doc_type')!r}")

        customer_name = normalize_text(payload.get("partner_name"))
        errors.required("partner_name", customer_name)

        customer_id = None
        if payload.get("partner_id"):
            customer_id = errors.reference(
                "partner_id", references, EntityType.CONTACT, str(payload["partner_id"])
            )

        document_date = errors.date("doc_date", payload.get("doc_date"))
        due_date = errors.date("due_date", payload.get("due_date"))
        currency = errors.currency("currency_code", payload.get("currency_code"))

        items = []
        raw_items = payload.get("sales_items") or []
        if not isinstance(raw_items, list):
            errors.add("sales_items", INVALID_FORMAT, "sales_items must be a list")
            raw_items = []
        for index, raw in enumerate(raw_items):
            path = f"sales_items[{index}]"
            if not isinstance(raw, dict):
                errors.add(path, INVALID_FORMAT, "item must be an object")
                continue
            product_id = None
            if raw.get("product_id"):
                product_id = errors.reference(
                    f"{path}.product_id", references, EntityType.PRODUCT, str(raw["product_id"])
                )
            quantity = errors.decimal(f"{path}.amount", raw.get("amount"))
            price = errors.decimal(f"{path}.price", raw.get("price"))
            tax_rate = errors.decimal(f"{path}.tax_rate", raw.get("tax_rate"))
            discount = errors.decimal(f"{path}.discount", raw.get("discount"))
            items.append(SalesDocumentItem(
                product_id=product_id,
                description=_text_or_none(raw.get("name")),
                quantity=quantity if quantity is not None else Decimal("1"),
                unit_price=price,
                tax_rate=tax_rate if tax_rate is not None else Decimal("0"),
                discount=discount if discount is not None else Decimal("0"),
                unit=_text_or_none(raw.get("unit")),
            ))

        if errors.items:
            return ConversionResult.failure(errors.items)

        record = SalesDocumentRecord(
            document_type=document_type,
            document_number=_text_or_none(payload.get("doc_number")),
            customer_id=customer_id,
            customer_name=customer_name,
            document_date=document_date,
            due_date=due_date,
            currency=currency,
            status=_text_or_none(payload.get("status")),
            notes=normalize_multiline(payload.get("notes")) or None,
            payment_method=_text_or_none(payload.get("payment_method")),
            items=items,
            extra=_extra(payload, SALES_DOCUMENT_FIELDS),
        )
        return ConversionResult(record=record)
