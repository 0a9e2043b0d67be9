"""Extracted GST invoice fields with per-field confidence.

Field names follow the pipeline vocabulary: ``counterparty_id`` is the vendor
GSTIN, ``classification_code`` is the HSN/SAC code.
"""

from datetime import date
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Fields the extractor reports a confidence for
SCORED_FIELDS: tuple[str, ...] = (
    "classification_code",
    "total_amount",
    "tax_amount",
    "counterparty_id",
    "counterparty_name",
    "invoice_number",
    "invoice_date",
)


class InvoiceFieldValues(BaseModel):
    """Structured values read from a GST invoice document."""

    invoice_number: str | None = Field(None, description="Invoice number as printed")
    invoice_date: date | None = Field(None, description="Date invoice was issued")

    counterparty_name: str | None = Field(None, description="Vendor/supplier name")
    counterparty_id: str | None = Field(None, description="Vendor GSTIN (15 characters)")

    taxable_amount: Decimal | None = Field(None, description="Taxable value before GST")
    total_amount: Decimal | None = Field(None, description="Invoice total including GST")
    tax_amount: Decimal | None = Field(None, description="Total GST charged")
    cgst_amount: Decimal | None = Field(None, description="Central GST component")
    sgst_amount: Decimal | None = Field(None, description="State GST component")
    igst_amount: Decimal | None = Field(None, description="Integrated GST component")

    classification_code: str | None = Field(None, description="HSN/SAC code")
    description: str | None = Field(None, description="Goods/services description")


class ExtractedFields(BaseModel):
    """Extractor output: field values plus a parallel confidence map.

    Immutable once produced; a re-extraction replaces it as a whole.
    """

    model_config = ConfigDict(frozen=True)

    values: InvoiceFieldValues = Field(default_factory=InvoiceFieldValues)
    confidences: dict[str, float] = Field(default_factory=dict)

    @field_validator("confidences", mode="before")
    @classmethod
    def _clamp_confidences(cls, raw: Any) -> dict[str, float]:
        if not raw:
            return {}
        clamped: dict[str, float] = {}
        for name, score in dict(raw).items():
            try:
                clamped[name] = min(1.0, max(0.0, float(score)))
            except (TypeError, ValueError):
                clamped[name] = 0.0
        return clamped

    def confidence(self, field: str) -> float:
        """Confidence for ``field``; missing fields count as 0."""
        return self.confidences.get(field, 0.0)
