"""CRM-side business records.

Local records form a tagged union on ``kind``. Fields the engine does not
know about are kept in ``extra`` so that newer CRM schemas round-trip
through the engine without loss.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field
from typing_extensions import Annotated

from core.models.sync import EntityType


class LocalRecordBase(BaseModel):
    """Fields shared by every local record."""
    id: Optional[str] = Field(default=None, description="CRM record id (assigned by the local store)")
    updated_at: Optional[datetime] = Field(default=None, description="Last local edit timestamp")
    extra: Dict[str, Any] = Field(default_factory=dict, description="Unknown fields carried through")

    def content(self) -> Dict[str, Any]:
        """Business content used for hashing (no id, no edit timestamp)."""
        return self.model_dump(mode="json", exclude={"id", "updated_at"})


class ContactRecord(LocalRecordBase):
    """A CRM contact (person or company)."""
    kind: Literal["contact"] = "contact"
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    full_name: Optional[str] = None
    company: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    tax_id: Optional[str] = None
    street: Optional[str] = None
    city: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None

    @property
    def display_name(self) -> Optional[str]:
        if self.full_name:
            return self.full_name
        parts = [p for p in (self.first_name, self.last_name) if p]
        return " ".join(parts) if parts else None


class ProductRecord(LocalRecordBase):
    """A CRM product or service."""
    kind: Literal["product"] = "product"
    name: Optional[str] = None
    sku: Optional[str] = None
    description: Optional[str] = None
    unit: Optional[str] = None
    unit_price: Optional[Decimal] = None
    currency: Optional[str] = None
    is_service: bool = False
    tax_rate: Optional[Decimal] = None


class SalesDocumentItem(BaseModel):
    """One line of a sales document."""
    product_id: Optional[str] = Field(default=None, description="Local product id, if linked")
    description: Optional[str] = None
    quantity: Optional[Decimal] = Decimal("1")
    unit_price: Optional[Decimal] = None
    tax_rate: Optional[Decimal] = Decimal("0")
    discount: Optional[Decimal] = Decimal("0")
    unit: Optional[str] = None


class SalesDocumentRecord(LocalRecordBase):
    """A CRM sales document (invoice, quote, order, ...)."""
    kind: Literal["salesDocument"] = "salesDocument"
    document_type: str = "invoice"
    document_number: Optional[str] = None
    customer_id: Optional[str] = Field(default=None, description="Local contact id of the customer")
    customer_name: Optional[str] = None
    document_date: Optional[date] = None
    due_date: Optional[date] = None
    currency: Optional[str] = None
    status: Optional[str] = None
    notes: Optional[str] = None
    payment_method: Optional[str] = None
    items: List[SalesDocumentItem] = Field(default_factory=list)


LocalRecord = Annotated[
    Union[ContactRecord, ProductRecord, SalesDocumentRecord],
    Field(discriminator="kind"),
]

RECORD_TYPES = {
    EntityType.CONTACT: ContactRecord,
    EntityType.PRODUCT: ProductRecord,
    EntityType.SALES_DOCUMENT: SalesDocumentRecord,
}


def record_class(entity_type: EntityType):
    """Model class for an entity type."""
    return RECORD_TYPES[EntityType(entity_type)]


def entity_type_of(record: LocalRecordBase) -> EntityType:
    return EntityType(record.kind)
