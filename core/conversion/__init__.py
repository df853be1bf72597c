"""Record conversion between CRM records and ERP payloads."""

from core.conversion.converter import (
    ConversionResult,
    RecordConverter,
    References,
    DOCUMENT_TYPES,
    UNMAPPED_REFERENCE,
    content_hash,
)

__all__ = [
    "ConversionResult",
    "RecordConverter",
    "References",
    "DOCUMENT_TYPES",
    "UNMAPPED_REFERENCE",
    "content_hash",
]
