"""Persistence models read and written by the invoice pipeline."""

from datetime import UTC, date, datetime
from decimal import Decimal
from typing import Any, Literal

from pydantic import BaseModel, Field

from services.categorization.schema import CategorizationResult
from services.extraction.schema import ExtractedFields

InvoiceStatus = Literal["pending", "review", "approved", "rejected"]


def utcnow() -> datetime:
    return datetime.now(UTC)


class Client(BaseModel):
    """A business whose purchase invoices are being filed."""

    id: str
    user_id: str
    name: str
    registration_id: str = Field(..., description="Client GSTIN")


class Invoice(BaseModel):
    """A stored tax invoice.

    Column values win over extracted values; ``resolved`` falls back to the
    latest extraction for anything the upload did not fill in.
    """

    id: str
    client_id: str
    file_path: str | None = None

    invoice_number: str | None = None
    invoice_date: date | None = None
    counterparty_name: str | None = None
    counterparty_id: str | None = None
    taxable_amount: Decimal | None = None
    total_amount: Decimal | None = None
    tax_amount: Decimal | None = None
    cgst_amount: Decimal | None = None
    sgst_amount: Decimal | None = None
    igst_amount: Decimal | None = None
    classification_code: str | None = None
    description: str | None = None

    status: InvoiceStatus = "pending"
    confidence_score: float | None = None
    review_notes: str | None = None
    extracted_data: ExtractedFields | None = None
    categorization: CategorizationResult | None = None
    validation_confidence: float | None = None
    approved_by: str | None = None
    approved_at: datetime | None = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def resolved(self, field: str) -> Any:
        value = getattr(self, field, None)
        if value is not None:
            return value
        if self.extracted_data is not None:
            return getattr(self.extracted_data.values, field, None)
        return None


class ActivityRecord(BaseModel):
    """Append-only audit entry."""

    user_id: str | None
    client_id: str
    action: str
    entity_type: str = "invoice"
    entity_id: str
    old_values: dict[str, Any] = Field(default_factory=dict)
    new_values: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


class FieldConfidenceRecord(BaseModel):
    """Append-only per-field confidence from one extraction or categorization."""

    invoice_id: str
    field_name: str
    confidence_score: float
    source: str = "extraction"
    created_at: datetime = Field(default_factory=utcnow)


class MonthlySummary(BaseModel):
    """Per-client monthly GST return counters."""

    client_id: str
    year: int
    month: int
    total_invoices: int = 0
    total_approved: int = 0
    status: str = "draft"
