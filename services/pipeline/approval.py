"""Invoice approval workflow: auto-approve, manual approve and reject.

Each transition updates the invoice, appends an activity record and, for
approvals, bumps the client's monthly GST summary.
"""

import logging

from pydantic import BaseModel

from services.repository.models import ActivityRecord, Invoice, utcnow
from services.repository.store import InvoiceRepository
from services.shared.errors import InvoiceNotFoundError, PersistenceError

logger = logging.getLogger(__name__)

SYSTEM_APPROVER = "system"


class ApprovalResult(BaseModel):
    """Outcome of a status transition."""

    success: bool
    invoice_id: str
    previous_status: str
    new_status: str
    approved_by: str | None = None
    message: str


class ApprovalService:
    """Status transitions for reviewed invoices."""

    def __init__(self, repository: InvoiceRepository) -> None:
        self.repository = repository

    def auto_approve(
        self, invoice_id: str, approved_by: str | None = None, confidence: float | None = None
    ) -> ApprovalResult:
        """Approve an invoice the pipeline scored above the auto-approve threshold."""
        approver = approved_by or SYSTEM_APPROVER
        changes = {"status": "approved", "approved_by": approver, "approved_at": utcnow()}
        if confidence is not None:
            changes["confidence_score"] = confidence
        return self._transition(
            invoice_id,
            approver,
            action="invoice_auto_approved",
            changes=changes,
            message="Invoice auto-approved due to high confidence score",
            count_approval=True,
        )

    def manual_approve(
        self, invoice_id: str, approved_by: str, notes: str | None = None
    ) -> ApprovalResult:
        message = "Invoice approved manually"
        if notes:
            message += f" with notes: {notes}"
        return self._transition(
            invoice_id,
            approved_by,
            action="invoice_manually_approved",
            changes={
                "status": "approved",
                "approved_by": approved_by,
                "approved_at": utcnow(),
                "review_notes": notes or "",
            },
            message=message,
            count_approval=True,
        )

    def reject(self, invoice_id: str, rejected_by: str, reason: str) -> ApprovalResult:
        """Reject an invoice; a non-empty reason is mandatory."""
        if not reason or not reason.strip():
            return ApprovalResult(
                success=False,
                invoice_id=invoice_id,
                previous_status="unknown",
                new_status="unknown",
                message="Rejection reason is required",
            )
        return self._transition(
            invoice_id,
            rejected_by,
            action="invoice_rejected",
            changes={
                "status": "rejected",
                "review_notes": reason,
                "approved_by": rejected_by,
                "approved_at": utcnow(),
            },
            message=f"Invoice rejected. Reason: {reason}",
            count_approval=False,
        )

    def _transition(
        self,
        invoice_id: str,
        user_id: str,
        action: str,
        changes: dict,
        message: str,
        count_approval: bool,
    ) -> ApprovalResult:
        try:
            invoice = self.repository.get_invoice(invoice_id)
        except InvoiceNotFoundError:
            return ApprovalResult(
                success=False,
                invoice_id=invoice_id,
                previous_status="unknown",
                new_status="unknown",
                message="Invoice not found",
            )

        previous = invoice.status
        new_status = changes["status"]
        try:
            self.repository.update_invoice(invoice_id, **changes)
        except PersistenceError as e:
            logger.error(f"Failed to update invoice {invoice_id} to {new_status}: {e}")
            return ApprovalResult(
                success=False,
                invoice_id=invoice_id,
                previous_status=previous,
                new_status=new_status,
                message=f"Update failed: {e.message}",
            )

        # The status change is committed; audit and summary writes are secondary
        new_values = {k: v for k, v in changes.items() if k != "approved_at"}
        try:
            self.repository.log_activity(
                ActivityRecord(
                    user_id=user_id,
                    client_id=invoice.client_id,
                    action=action,
                    entity_id=invoice_id,
                    old_values={"status": previous, "review_notes": invoice.review_notes},
                    new_values=new_values,
                )
            )
        except PersistenceError as e:
            logger.error(f"Failed to record {action} activity for invoice {invoice_id}: {e}")

        if count_approval:
            try:
                self._count_approval(invoice)
            except PersistenceError as e:
                logger.error(f"Failed to update monthly summary for invoice {invoice_id}: {e}")

        logger.info(f"Invoice {invoice_id}: {previous} -> {new_status} by {user_id}")
        return ApprovalResult(
            success=True,
            invoice_id=invoice_id,
            previous_status=previous,
            new_status=new_status,
            approved_by=user_id,
            message=message,
        )

    def _count_approval(self, invoice: Invoice) -> None:
        period = invoice.resolved("invoice_date") or utcnow().date()
        self.repository.increment_monthly_approvals(invoice.client_id, period.year, period.month)
