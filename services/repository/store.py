"""Persistence contract for the invoice pipeline and an in-memory store.

The storage engine is an external concern; the pipeline talks only to
``InvoiceRepository``. ``InMemoryInvoiceRepository`` is thread-safe so that
batch workers can share it, and hands out copies so that callers never
mutate stored state behind its back.
"""

import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Iterable
from typing import Any

from services.repository.models import (
    ActivityRecord,
    Client,
    FieldConfidenceRecord,
    Invoice,
    MonthlySummary,
    utcnow,
)
from services.shared.errors import InvoiceNotFoundError, PersistenceError

logger = logging.getLogger(__name__)


class InvoiceRepository(ABC):
    """Reads and writes the invoice fields the pipeline owns."""

    @abstractmethod
    def get_invoice(self, invoice_id: str) -> Invoice:
        """Raises InvoiceNotFoundError if missing."""

    @abstractmethod
    def get_client(self, client_id: str) -> Client:
        """Raises PersistenceError if missing."""

    @abstractmethod
    def update_invoice(self, invoice_id: str, **changes: Any) -> Invoice:
        """Apply ``changes`` and bump ``updated_at``; returns the stored invoice."""

    @abstractmethod
    def find_duplicate_candidates(
        self,
        client_id: str,
        counterparty_id: str,
        exclude_invoice_id: str | None = None,
        limit: int | None = None,
    ) -> list[Invoice]:
        """Non-rejected invoices of ``client_id`` from the same vendor GSTIN."""

    @abstractmethod
    def log_activity(self, record: ActivityRecord) -> None:
        """Append an audit entry."""

    @abstractmethod
    def list_activities(self, invoice_id: str, limit: int = 10) -> list[ActivityRecord]:
        """Audit entries for an invoice, newest first."""

    @abstractmethod
    def record_field_confidences(self, records: Iterable[FieldConfidenceRecord]) -> None:
        """Append per-field confidence records."""

    @abstractmethod
    def increment_monthly_approvals(self, client_id: str, year: int, month: int) -> MonthlySummary:
        """Count one more approved invoice in a client's monthly summary."""


class InMemoryInvoiceRepository(InvoiceRepository):
    """Dict-backed repository guarded by a re-entrant lock."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._clients: dict[str, Client] = {}
        self._invoices: dict[str, Invoice] = {}
        self._activities: list[ActivityRecord] = []
        self._confidences: list[FieldConfidenceRecord] = []
        self._summaries: dict[tuple[str, int, int], MonthlySummary] = {}

    def add_client(self, client: Client) -> Client:
        with self._lock:
            self._clients[client.id] = client.model_copy(deep=True)
        return client

    def add_invoice(self, invoice: Invoice) -> Invoice:
        with self._lock:
            if invoice.client_id not in self._clients:
                raise PersistenceError(f"Unknown client: {invoice.client_id}")
            self._invoices[invoice.id] = invoice.model_copy(deep=True)
        return invoice

    def get_invoice(self, invoice_id: str) -> Invoice:
        with self._lock:
            invoice = self._invoices.get(invoice_id)
            if invoice is None:
                raise InvoiceNotFoundError(invoice_id)
            return invoice.model_copy(deep=True)

    def get_client(self, client_id: str) -> Client:
        with self._lock:
            client = self._clients.get(client_id)
            if client is None:
                raise PersistenceError(f"Client not found: {client_id}", {"client_id": client_id})
            return client.model_copy(deep=True)

    def update_invoice(self, invoice_id: str, **changes: Any) -> Invoice:
        with self._lock:
            current = self._invoices.get(invoice_id)
            if current is None:
                raise InvoiceNotFoundError(invoice_id)
            unknown = set(changes) - set(Invoice.model_fields)
            if unknown:
                raise PersistenceError(f"Unknown invoice fields: {sorted(unknown)}")
            updated = current.model_copy(update={**changes, "updated_at": utcnow()}, deep=True)
            self._invoices[invoice_id] = updated
            return updated.model_copy(deep=True)

    def find_duplicate_candidates(
        self,
        client_id: str,
        counterparty_id: str,
        exclude_invoice_id: str | None = None,
        limit: int | None = None,
    ) -> list[Invoice]:
        with self._lock:
            matches = [
                invoice.model_copy(deep=True)
                for invoice in sorted(self._invoices.values(), key=lambda i: i.created_at)
                if invoice.client_id == client_id
                and invoice.id != exclude_invoice_id
                and invoice.status != "rejected"
                and invoice.resolved("counterparty_id") == counterparty_id
            ]
        return matches[:limit] if limit is not None else matches

    def log_activity(self, record: ActivityRecord) -> None:
        with self._lock:
            self._activities.append(record.model_copy(deep=True))
        logger.debug(f"Activity {record.action} logged for {record.entity_type} {record.entity_id}")

    def list_activities(self, invoice_id: str, limit: int = 10) -> list[ActivityRecord]:
        with self._lock:
            matching = [a for a in self._activities if a.entity_id == invoice_id]
        return [a.model_copy(deep=True) for a in reversed(matching)][:limit]

    def record_field_confidences(self, records: Iterable[FieldConfidenceRecord]) -> None:
        with self._lock:
            self._confidences.extend(r.model_copy() for r in records)

    def list_field_confidences(self, invoice_id: str) -> list[FieldConfidenceRecord]:
        with self._lock:
            return [r.model_copy() for r in self._confidences if r.invoice_id == invoice_id]

    def increment_monthly_approvals(self, client_id: str, year: int, month: int) -> MonthlySummary:
        key = (client_id, year, month)
        with self._lock:
            summary = self._summaries.get(key)
            if summary is None:
                summary = MonthlySummary(
                    client_id=client_id, year=year, month=month, total_invoices=1
                )
                self._summaries[key] = summary
            summary.total_approved += 1
            return summary.model_copy()

    def get_monthly_summary(self, client_id: str, year: int, month: int) -> MonthlySummary | None:
        with self._lock:
            summary = self._summaries.get((client_id, year, month))
            return summary.model_copy() if summary else None
