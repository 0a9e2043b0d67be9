"""Prompt construction and response normalisation shared by LLM providers."""

import json
import logging
import re
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any

from services.extraction.schema import SCORED_FIELDS, ExtractedFields, InvoiceFieldValues

logger = logging.getLogger(__name__)

_GSTIN_SHAPE = re.compile(r"^[A-Z0-9]{15}$")

_AMOUNT_FIELDS = (
    "taxable_amount",
    "total_amount",
    "tax_amount",
    "cgst_amount",
    "sgst_amount",
    "igst_amount",
)

RESPONSE_SCHEMA = (
    '{"invoice_number": string|null, "invoice_date": string|null (YYYY-MM-DD), '
    '"counterparty_name": string|null, "counterparty_id": string|null (15-char GSTIN), '
    '"taxable_amount": number|null, "total_amount": number|null, '
    '"tax_amount": number|null, "cgst_amount": number|null, '
    '"sgst_amount": number|null, "igst_amount": number|null, '
    '"classification_code": string|null (HSN/SAC), "description": string|null, '
    '"confidence_per_field": {"invoice_number": 0-1, "invoice_date": 0-1, '
    '"counterparty_name": 0-1, "counterparty_id": 0-1, "total_amount": 0-1, '
    '"tax_amount": 0-1, "classification_code": 0-1}}'
)


def build_extraction_prompt(ocr_text: str) -> str:
    """Build the GST extraction prompt with one worked example."""
    example_input = (
        "TAX INVOICE  Invoice No: KC/2024/0192  Date: 12/08/2024 "
        "Sold by: Krishna Traders GSTIN: 27AAPFU0939F1ZV "
        "HSN 8471 Laptop computers Taxable Value 50,000.00 "
        "CGST @9% 4,500.00 SGST @9% 4,500.00 Grand Total 59,000.00"
    )
    example_output = (
        '{"invoice_number": "KC/2024/0192", "invoice_date": "2024-08-12", '
        '"counterparty_name": "Krishna Traders", "counterparty_id": "27AAPFU0939F1ZV", '
        '"taxable_amount": 50000.00, "total_amount": 59000.00, "tax_amount": 9000.00, '
        '"cgst_amount": 4500.00, "sgst_amount": 4500.00, "igst_amount": 0, '
        '"classification_code": "8471", "description": "Laptop computers", '
        '"confidence_per_field": {"invoice_number": 0.97, "invoice_date": 0.95, '
        '"counterparty_name": 0.96, "counterparty_id": 0.98, "total_amount": 0.99, '
        '"tax_amount": 0.97, "classification_code": 0.9}}'
    )

    return f"""You are an expert GST invoice extraction system. \
Extract invoice information from OCR text and return ONLY valid JSON.

SCHEMA (use null for missing fields):
{RESPONSE_SCHEMA}

EXAMPLE:

Input: "{example_input}"
Output: {example_output}

RULES:
- GSTIN must be exactly 15 characters
- Dates: DD/MM/YYYY -> YYYY-MM-DD (Indian invoices print day first)
- Remove thousands separators: 59,000.00 -> 59000.00
- tax_amount is CGST + SGST + IGST
- Confidence: 0.95+ = high, 0.80-0.95 = medium, <0.80 = low
- If uncertain, set the value to null and its confidence to 0
- Return ONLY JSON, no markdown or explanation

INPUT:
{ocr_text}

OUTPUT:"""


def parse_json_response(response_text: str) -> dict[str, Any]:
    """Extract and parse a JSON object from an LLM response.

    Handles markdown code fences and leading/trailing prose.

    Raises:
        json.JSONDecodeError: If no valid JSON found
    """
    fenced = re.search(r"```(?:json)?\s*([\s\S]*?)```", response_text)
    if fenced:
        result: dict[str, Any] = json.loads(fenced.group(1).strip())
        return result

    bare = re.search(r"\{[\s\S]*\}", response_text)
    if bare:
        result = json.loads(bare.group(0))
        return result

    result = json.loads(response_text.strip())
    return result


def _as_amount(value: Any) -> Decimal | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, int | float | Decimal):
        amount = Decimal(str(value))
    elif isinstance(value, str):
        try:
            amount = Decimal(value.replace(",", "").strip())
        except InvalidOperation:
            return None
    else:
        return None
    # NaN and Infinity are valid Decimals and JSON tokens but not amounts
    return amount if amount.is_finite() else None


def _as_date(value: Any) -> date | None:
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value.strip())
        except ValueError:
            return None
    return None


def _as_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def normalize_extraction(data: dict[str, Any]) -> ExtractedFields:
    """Coerce a raw provider payload into ``ExtractedFields``.

    Values of the wrong shape are dropped (set to None) rather than rejected,
    and every scored field gets a confidence in [0, 1].
    """
    gstin = _as_text(data.get("counterparty_id"))
    if gstin is not None:
        gstin = gstin.replace(" ", "").upper()
        if not _GSTIN_SHAPE.match(gstin):
            logger.debug(f"Discarding malformed GSTIN from extraction: {gstin!r}")
            gstin = None

    values = InvoiceFieldValues(
        invoice_number=_as_text(data.get("invoice_number")),
        invoice_date=_as_date(data.get("invoice_date")),
        counterparty_name=_as_text(data.get("counterparty_name")),
        counterparty_id=gstin,
        classification_code=_as_text(data.get("classification_code")),
        description=_as_text(data.get("description")),
        **{name: _as_amount(data.get(name)) for name in _AMOUNT_FIELDS},
    )

    raw_confidences = data.get("confidence_per_field") or {}
    if not isinstance(raw_confidences, dict):
        raw_confidences = {}
    confidences = {field: raw_confidences.get(field) or 0 for field in SCORED_FIELDS}

    return ExtractedFields(values=values, confidences=confidences)
