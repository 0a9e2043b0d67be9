"""Shared fixtures: a seeded repository and GST-compliant invoice builders.

GSTINs used throughout the tests carry valid check characters:
- 27AAPFU0939F1ZV: vendor, Maharashtra
- 27AAACR5055K1Z7: client, Maharashtra
- 29AAGCB7383J1Z4: vendor, Karnataka
"""

import itertools
from collections.abc import Callable
from datetime import date
from decimal import Decimal
from typing import Any

import pytest

from services.extraction.schema import SCORED_FIELDS, ExtractedFields, InvoiceFieldValues
from services.repository.models import Client, Invoice
from services.repository.store import InMemoryInvoiceRepository

TODAY = date(2024, 8, 20)

INVOICE_DEFAULTS: dict[str, Any] = {
    "invoice_number": "INV-2024-0001",
    "invoice_date": TODAY,
    "counterparty_name": "Krishna Traders",
    "counterparty_id": "27AAPFU0939F1ZV",
    "taxable_amount": Decimal("1000.00"),
    "tax_amount": Decimal("180.00"),
    "cgst_amount": Decimal("90.00"),
    "sgst_amount": Decimal("90.00"),
    "igst_amount": Decimal("0"),
    "total_amount": Decimal("1180.00"),
    "classification_code": "8471",
    "description": "Laptop computers",
}


@pytest.fixture
def today() -> date:
    return TODAY


@pytest.fixture
def client_record() -> Client:
    return Client(
        id="client-1",
        user_id="user-1",
        name="Acme Retail Pvt Ltd",
        registration_id="27AAACR5055K1Z7",
    )


@pytest.fixture
def repository(client_record: Client) -> InMemoryInvoiceRepository:
    repo = InMemoryInvoiceRepository()
    repo.add_client(client_record)
    return repo


@pytest.fixture
def make_invoice(repository: InMemoryInvoiceRepository) -> Callable[..., Invoice]:
    """Store a compliant intra-state invoice; keyword arguments override columns."""
    counter = itertools.count(1)

    def _make(invoice_id: str | None = None, store: bool = True, **overrides: Any) -> Invoice:
        values = {**INVOICE_DEFAULTS, "file_path": "/uploads/invoice.png", **overrides}
        invoice = Invoice(
            id=invoice_id or f"inv-{next(counter)}",
            client_id=values.pop("client_id", "client-1"),
            **values,
        )
        if store:
            repository.add_invoice(invoice)
        return invoice

    return _make


@pytest.fixture
def make_fields() -> Callable[..., ExtractedFields]:
    """Extraction output with a uniform confidence; keyword arguments override values."""

    def _make(confidence: float = 0.97, **overrides: Any) -> ExtractedFields:
        values = InvoiceFieldValues(**{**INVOICE_DEFAULTS, **overrides})
        return ExtractedFields(
            values=values,
            confidences={field: confidence for field in SCORED_FIELDS},
        )

    return _make
