"""Duplicate invoice detection.

Candidates come from ``InvoiceRepository.find_duplicate_candidates`` (same
client, same vendor GSTIN, not rejected, not the invoice itself). Tiers are
tried in order and the first hit wins:

- exact: same invoice number and date, amount within 1
- fuzzy: same invoice number, amount within 10, date within 7 days
- partial: amount within 100, date within 30 days (warning only)
"""

import logging
from datetime import date
from decimal import Decimal
from typing import Any

from pydantic import BaseModel

from services.repository.models import Invoice
from services.repository.store import InvoiceRepository
from services.validation.schema import DuplicateCheckResult

logger = logging.getLogger(__name__)


class DuplicateTolerances(BaseModel):
    """Amount (currency units) and date (days) windows per tier."""

    exact_amount: Decimal = Decimal("1")
    fuzzy_amount: Decimal = Decimal("10")
    fuzzy_days: int = 7
    partial_amount: Decimal = Decimal("100")
    partial_days: int = 30
    max_partial_candidates: int = 5


def _candidate_summary(invoice: Invoice) -> dict[str, Any]:
    return {
        "id": invoice.id,
        "invoice_number": invoice.resolved("invoice_number"),
        "invoice_date": invoice.resolved("invoice_date"),
        "total_amount": invoice.resolved("total_amount"),
        "status": invoice.status,
    }


def _amount_gap(a: Decimal | None, b: Decimal | None) -> Decimal | None:
    if a is None or b is None:
        return None
    return abs(Decimal(a) - Decimal(b))


def _day_gap(a: date | None, b: date | None) -> int | None:
    if a is None or b is None:
        return None
    return abs((a - b).days)


class DuplicateDetector:
    """Compare one invoice against the client's invoice history."""

    def __init__(
        self, repository: InvoiceRepository, tolerances: DuplicateTolerances | None = None
    ) -> None:
        self.repository = repository
        self.tolerances = tolerances or DuplicateTolerances()

    def check(
        self,
        client_id: str,
        invoice_id: str | None,
        invoice_number: str | None,
        counterparty_id: str | None,
        invoice_date: date | None,
        total_amount: Decimal | None,
    ) -> DuplicateCheckResult:
        """Look for an exact, fuzzy or partial match.

        Repository failures degrade to a neutral ``none`` result with
        confidence 0.5 instead of failing validation.
        """
        if not counterparty_id:
            return DuplicateCheckResult(
                is_duplicate=False,
                match_type="none",
                confidence=1.0,
                reason="No vendor GSTIN to compare against",
            )

        try:
            candidates = self.repository.find_duplicate_candidates(
                client_id, counterparty_id, exclude_invoice_id=invoice_id
            )
        except Exception as e:
            logger.error(f"Duplicate check failed for invoice {invoice_id}: {e}")
            return DuplicateCheckResult(
                is_duplicate=False,
                match_type="none",
                confidence=0.5,
                reason="Failed to check for duplicates",
            )

        tol = self.tolerances

        if invoice_number:
            for candidate in candidates:
                if candidate.resolved("invoice_number") != invoice_number:
                    continue
                amount_gap = _amount_gap(total_amount, candidate.resolved("total_amount"))
                day_gap = _day_gap(invoice_date, candidate.resolved("invoice_date"))
                if amount_gap is None or day_gap is None:
                    continue
                if day_gap == 0 and amount_gap <= tol.exact_amount:
                    return DuplicateCheckResult(
                        is_duplicate=True,
                        match_type="exact",
                        confidence=1.0,
                        matched_invoice_id=candidate.id,
                        matched_invoice_number=invoice_number,
                        reason=(
                            f"Exact duplicate: invoice {invoice_number} from the same vendor "
                            "with the same date and amount already exists"
                        ),
                    )

            for candidate in candidates:
                if candidate.resolved("invoice_number") != invoice_number:
                    continue
                amount_gap = _amount_gap(total_amount, candidate.resolved("total_amount"))
                day_gap = _day_gap(invoice_date, candidate.resolved("invoice_date"))
                if amount_gap is None or day_gap is None:
                    continue
                if amount_gap <= tol.fuzzy_amount and day_gap <= tol.fuzzy_days:
                    return DuplicateCheckResult(
                        is_duplicate=True,
                        match_type="fuzzy",
                        confidence=0.85,
                        matched_invoice_id=candidate.id,
                        matched_invoice_number=invoice_number,
                        reason=(
                            f"Likely duplicate: invoice {invoice_number} from the same vendor "
                            f"within {tol.fuzzy_days} days and {tol.fuzzy_amount} of this amount"
                        ),
                    )

        partial = []
        for candidate in candidates:
            amount_gap = _amount_gap(total_amount, candidate.resolved("total_amount"))
            day_gap = _day_gap(invoice_date, candidate.resolved("invoice_date"))
            if amount_gap is None or day_gap is None:
                continue
            if amount_gap <= tol.partial_amount and day_gap <= tol.partial_days:
                partial.append(candidate)

        if partial:
            partial = partial[: tol.max_partial_candidates]
            return DuplicateCheckResult(
                is_duplicate=False,
                match_type="partial",
                confidence=0.70,
                matched_invoice_id=partial[0].id,
                matched_invoice_number=partial[0].resolved("invoice_number"),
                reason=(
                    f"{len(partial)} similar invoice(s) from the same vendor "
                    f"within {tol.partial_days} days - please verify"
                ),
                potential_duplicates=[_candidate_summary(c) for c in partial],
            )

        return DuplicateCheckResult(
            is_duplicate=False,
            match_type="none",
            confidence=1.0,
            reason="No duplicates found",
        )
