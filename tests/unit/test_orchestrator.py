"""Unit tests for the pipeline orchestrator.

Tests cover:
- Stage sequencing and decisions (auto-approve, review, reject)
- Fatal extraction failures and extraction retries
- Recoverable categorization, validation and approval failures
- Stage skipping and cancellation
- Access checks and status snapshots
"""

import threading
from datetime import date
from decimal import Decimal
from unittest.mock import MagicMock

import pytest
from prometheus_client import REGISTRY

from services.categorization.rate_table import InMemoryRateTable
from services.categorization.service import CategorizationResolver
from services.pipeline.approval import ApprovalResult
from services.pipeline.orchestrator import (
    PIPELINE_ACTIVITY,
    VALIDATION_ACTIVITY,
    PipelineOrchestrator,
)
from services.pipeline.schema import PipelineConfig
from services.repository.models import ActivityRecord, utcnow
from services.repository.store import InMemoryInvoiceRepository
from services.shared.errors import (
    ComplianceCheckError,
    ExtractionError,
    InvoiceNotFoundError,
    PersistenceError,
    UnauthorizedAccessError,
)
from services.validation.service import ComplianceValidator


@pytest.fixture(scope="module")
def table() -> InMemoryRateTable:
    return InMemoryRateTable.from_json()


@pytest.fixture
def extractor(make_fields) -> MagicMock:
    extractor = MagicMock()
    extractor.extract.return_value = make_fields()
    return extractor


@pytest.fixture
def orchestrator(
    repository: InMemoryInvoiceRepository,
    extractor: MagicMock,
    table: InMemoryRateTable,
    today: date,
) -> PipelineOrchestrator:
    return PipelineOrchestrator(
        repository=repository,
        extractor=extractor,
        resolver=CategorizationResolver(table),
        validator=ComplianceValidator(repository, table=table),
        default_config=PipelineConfig(retry_wait_seconds=0),
        today=lambda: today,
    )


def actions(repository: InMemoryInvoiceRepository, invoice_id: str) -> list[str]:
    return [a.action for a in repository.list_activities(invoice_id, limit=50)]


class TestDecisions:
    def test_compliant_invoice_is_auto_approved(
        self, orchestrator: PipelineOrchestrator, repository: InMemoryInvoiceRepository, make_invoice
    ) -> None:
        make_invoice("inv-1")

        result = orchestrator.process("inv-1", user_id="user-1")

        assert result.success is True
        assert result.pipeline_status == "completed"
        assert result.final_decision == "auto_approved"
        assert result.final_status == "approved"
        assert result.aggregate_confidence == pytest.approx(0.98)
        assert result.errors == []
        assert result.review_notes is None

        assert result.stages["extraction"].confidence == 0.97
        assert result.stages["extraction"].status == "auto_approve"
        assert result.stages["categorization"].confidence == 0.95
        assert result.stages["categorization"].status == "categorized"
        assert result.stages["validation"].status == "pass"
        assert result.stages["approval"].status == "auto_approved"

        invoice = repository.get_invoice("inv-1")
        assert invoice.status == "approved"
        assert invoice.approved_by == "user-1"
        assert invoice.extracted_data is not None
        assert invoice.categorization.tax_rate == 18
        assert invoice.validation_confidence == 1.0
        assert actions(repository, "inv-1") == [
            PIPELINE_ACTIVITY,
            "invoice_auto_approved",
            VALIDATION_ACTIVITY,
        ]

    def test_field_confidences_are_recorded(
        self, orchestrator: PipelineOrchestrator, repository: InMemoryInvoiceRepository, make_invoice
    ) -> None:
        make_invoice("inv-1")

        orchestrator.process("inv-1")

        records = repository.list_field_confidences("inv-1")
        assert len([r for r in records if r.source == "extraction"]) == 7
        assert [r.field_name for r in records if r.source == "categorization"] == [
            "classification_code"
        ]

    def test_medium_confidence_needs_review(
        self,
        orchestrator: PipelineOrchestrator,
        repository: InMemoryInvoiceRepository,
        extractor: MagicMock,
        make_invoice,
        make_fields,
    ) -> None:
        extractor.extract.return_value = make_fields(confidence=0.85)
        make_invoice("inv-1")

        result = orchestrator.process("inv-1")

        assert result.final_decision == "needs_review"
        assert result.final_status == "review"
        assert result.stages["approval"].status == "review_required"
        assert "MANUAL REVIEW REQUIRED" in result.review_notes

        invoice = repository.get_invoice("inv-1")
        assert invoice.status == "review"
        assert invoice.confidence_score == result.aggregate_confidence
        assert invoice.review_notes == result.review_notes

    def test_non_compliant_invoice_is_rejected(
        self,
        orchestrator: PipelineOrchestrator,
        repository: InMemoryInvoiceRepository,
        extractor: MagicMock,
        make_invoice,
        make_fields,
    ) -> None:
        extractor.extract.return_value = make_fields(
            classification_code=None, total_amount=Decimal("1330")
        )
        make_invoice("inv-1", classification_code=None, total_amount=Decimal("1330"))

        result = orchestrator.process("inv-1")

        assert result.success is True
        assert result.pipeline_status == "completed"
        assert result.final_decision == "rejected"
        assert result.final_status == "pending"
        assert result.aggregate_confidence == pytest.approx(0.45)
        assert result.stages["validation"].status == "fail"
        assert result.stages["approval"].status == "low_confidence"
        assert "REJECTED" in result.review_notes
        assert "[CRITICAL] amount_reconciliation" in result.review_notes

        invoice = repository.get_invoice("inv-1")
        assert invoice.status == "pending"
        assert invoice.review_notes == result.review_notes

    def test_reprocessing_gives_the_same_decision(
        self, orchestrator: PipelineOrchestrator, make_invoice
    ) -> None:
        make_invoice("inv-1")

        first = orchestrator.process("inv-1")
        second = orchestrator.process("inv-1")

        assert second.final_decision == first.final_decision
        assert second.aggregate_confidence == first.aggregate_confidence

    def test_run_is_counted(self, orchestrator: PipelineOrchestrator, make_invoice) -> None:
        labels = {"pipeline_status": "completed", "final_decision": "auto_approved"}
        before = REGISTRY.get_sample_value("invoice_pipeline_runs_total", labels) or 0.0
        make_invoice("inv-1")

        orchestrator.process("inv-1")

        assert REGISTRY.get_sample_value("invoice_pipeline_runs_total", labels) == before + 1


class TestExtractionFailures:
    def test_extraction_failure_is_fatal(
        self,
        orchestrator: PipelineOrchestrator,
        repository: InMemoryInvoiceRepository,
        extractor: MagicMock,
        make_invoice,
    ) -> None:
        extractor.extract.side_effect = ExtractionError("OCR failed: unreadable scan")
        make_invoice("inv-1")

        result = orchestrator.process("inv-1", config=PipelineConfig(retry_on_error=False))

        assert result.success is False
        assert result.pipeline_status == "failed"
        assert result.final_decision == "pending"
        assert result.aggregate_confidence == 0.0
        assert result.stages["extraction"].status == "failed"
        assert result.stages["categorization"].status == "pending"
        assert result.errors[0].kind == "extraction_error"
        assert result.errors[0].recoverable is False
        assert "unreadable scan" in result.errors[0].message
        assert extractor.extract.call_count == 1
        assert repository.get_invoice("inv-1").status == "pending"
        assert actions(repository, "inv-1") == []

    def test_transient_failures_are_retried(
        self,
        orchestrator: PipelineOrchestrator,
        extractor: MagicMock,
        make_invoice,
        make_fields,
    ) -> None:
        extractor.extract.side_effect = [
            ExtractionError("timeout"),
            ExtractionError("timeout"),
            make_fields(),
        ]
        make_invoice("inv-1")

        result = orchestrator.process("inv-1")

        assert result.success is True
        assert extractor.extract.call_count == 3

    def test_retries_are_bounded(
        self, orchestrator: PipelineOrchestrator, extractor: MagicMock, make_invoice
    ) -> None:
        extractor.extract.side_effect = ExtractionError("timeout")
        make_invoice("inv-1")

        result = orchestrator.process("inv-1", config=PipelineConfig(retry_wait_seconds=0))

        assert result.success is False
        assert extractor.extract.call_count == 3

    def test_extractor_receives_document_path(
        self, orchestrator: PipelineOrchestrator, extractor: MagicMock, make_invoice
    ) -> None:
        make_invoice("inv-1", file_path="/uploads/kt-0187.png")

        orchestrator.process("inv-1")

        extractor.extract.assert_called_once_with("/uploads/kt-0187.png")


class TestRecoverableFailures:
    def test_categorization_failure(
        self,
        repository: InMemoryInvoiceRepository,
        extractor: MagicMock,
        table: InMemoryRateTable,
        today: date,
        make_invoice,
    ) -> None:
        resolver = MagicMock()
        resolver.categorize.side_effect = RuntimeError("rate table offline")
        orchestrator = PipelineOrchestrator(
            repository=repository,
            extractor=extractor,
            resolver=resolver,
            validator=ComplianceValidator(repository, table=table),
            today=lambda: today,
        )
        make_invoice("inv-1")

        result = orchestrator.process("inv-1")

        assert result.success is True
        assert result.pipeline_status == "partial"
        assert result.stages["categorization"].success is False
        assert result.stages["categorization"].confidence == 0.0
        assert result.stages["validation"].success is True
        assert result.errors[0].kind == "categorization_error"
        assert result.errors[0].recoverable is True
        assert result.aggregate_confidence == pytest.approx(0.71)
        assert result.final_decision == "rejected"

    def test_validation_failure(
        self,
        repository: InMemoryInvoiceRepository,
        extractor: MagicMock,
        table: InMemoryRateTable,
        make_invoice,
    ) -> None:
        validator = MagicMock()
        validator.validate.side_effect = ComplianceCheckError("Compliance rule tax_split failed")
        orchestrator = PipelineOrchestrator(
            repository=repository,
            extractor=extractor,
            resolver=CategorizationResolver(table),
            validator=validator,
        )
        make_invoice("inv-1")

        result = orchestrator.process("inv-1")

        assert result.pipeline_status == "partial"
        assert result.stages["validation"].status == "failed"
        assert result.errors[0].kind == "validation_error"
        assert result.errors[0].recoverable is True
        assert result.aggregate_confidence == pytest.approx(0.58)
        assert result.final_decision == "rejected"
        assert "[x] Validation: FAILED" in result.review_notes

    def test_auto_approve_failure_falls_back_to_review(
        self,
        orchestrator: PipelineOrchestrator,
        repository: InMemoryInvoiceRepository,
        make_invoice,
    ) -> None:
        orchestrator.approvals = MagicMock()
        orchestrator.approvals.auto_approve.return_value = ApprovalResult(
            success=False,
            invoice_id="inv-1",
            previous_status="pending",
            new_status="approved",
            message="Update failed: disk full",
        )
        make_invoice("inv-1")

        result = orchestrator.process("inv-1")

        assert result.success is True
        assert result.pipeline_status == "partial"
        assert result.final_decision == "needs_review"
        assert result.final_status == "review"
        assert result.stages["approval"].status == "failed_approval"
        assert result.errors[0].kind == "approval_error"
        assert result.errors[0].message == "Update failed: disk full"
        assert repository.get_invoice("inv-1").status == "review"

    def test_auto_approve_exception_falls_back_to_review(
        self, orchestrator: PipelineOrchestrator, make_invoice
    ) -> None:
        orchestrator.approvals = MagicMock()
        orchestrator.approvals.auto_approve.side_effect = RuntimeError("connection reset")
        make_invoice("inv-1")

        result = orchestrator.process("inv-1")

        assert result.final_decision == "needs_review"
        assert result.errors[0].message == "connection reset"

    def test_summary_failure_does_not_undo_auto_approval(
        self,
        orchestrator: PipelineOrchestrator,
        repository: InMemoryInvoiceRepository,
        make_invoice,
    ) -> None:
        repository.increment_monthly_approvals = MagicMock(  # type: ignore[method-assign]
            side_effect=PersistenceError("summary table locked")
        )
        make_invoice("inv-1")

        result = orchestrator.process("inv-1")

        assert result.final_decision == "auto_approved"
        assert result.final_status == "approved"
        assert result.stages["approval"].status == "auto_approved"
        assert result.errors == []
        invoice = repository.get_invoice("inv-1")
        assert invoice.status == "approved"
        assert invoice.approved_by == "system"

    def test_fallback_clears_committed_approver(
        self,
        orchestrator: PipelineOrchestrator,
        repository: InMemoryInvoiceRepository,
        make_invoice,
    ) -> None:
        def approve_then_fail(invoice_id, user_id=None, confidence=None):
            repository.update_invoice(
                invoice_id, status="approved", approved_by="system", approved_at=utcnow()
            )
            raise RuntimeError("connection reset")

        orchestrator.approvals = MagicMock()
        orchestrator.approvals.auto_approve.side_effect = approve_then_fail
        make_invoice("inv-1")

        result = orchestrator.process("inv-1")

        assert result.final_decision == "needs_review"
        invoice = repository.get_invoice("inv-1")
        assert invoice.status == "review"
        assert invoice.approved_by is None
        assert invoice.approved_at is None

    def test_activity_log_failure_is_reported(
        self,
        extractor: MagicMock,
        table: InMemoryRateTable,
        client_record,
        make_invoice,
        today: date,
    ) -> None:
        class FlakyRepository(InMemoryInvoiceRepository):
            def log_activity(self, record: ActivityRecord) -> None:
                if record.action == PIPELINE_ACTIVITY:
                    raise ConnectionError("audit log unavailable")
                super().log_activity(record)

        repository = FlakyRepository()
        repository.add_client(client_record)
        repository.add_invoice(make_invoice("inv-1", store=False))
        orchestrator = PipelineOrchestrator(
            repository=repository,
            extractor=extractor,
            resolver=CategorizationResolver(table),
            validator=ComplianceValidator(repository, table=table),
            today=lambda: today,
        )

        result = orchestrator.process("inv-1")

        assert result.final_decision == "auto_approved"
        assert result.pipeline_status == "partial"
        assert result.errors[0].kind == "pipeline_error"
        assert result.errors[0].recoverable is True


class TestSkipAndCancel:
    def test_skipped_stages_count_as_full_confidence(
        self,
        orchestrator: PipelineOrchestrator,
        extractor: MagicMock,
        make_invoice,
    ) -> None:
        make_invoice("inv-1")
        config = PipelineConfig(
            skip_extraction=True, skip_categorization=True, skip_validation=True
        )

        result = orchestrator.process("inv-1", config=config)

        for name in ("extraction", "categorization", "validation"):
            assert result.stages[name].status == "skipped"
            assert result.stages[name].confidence == 1.0
        assert result.aggregate_confidence == 1.0
        assert result.final_decision == "auto_approved"
        extractor.extract.assert_not_called()

    def test_skip_extraction_validates_stored_columns(
        self, orchestrator: PipelineOrchestrator, make_invoice
    ) -> None:
        make_invoice("inv-1", total_amount=Decimal("1330"))

        result = orchestrator.process("inv-1", config=PipelineConfig(skip_extraction=True))

        assert result.stages["validation"].status == "fail"
        assert result.final_decision == "rejected"

    def test_cancelled_before_start(
        self,
        orchestrator: PipelineOrchestrator,
        repository: InMemoryInvoiceRepository,
        extractor: MagicMock,
        make_invoice,
    ) -> None:
        make_invoice("inv-1")
        cancel = threading.Event()
        cancel.set()

        result = orchestrator.process("inv-1", cancel_event=cancel)

        assert result.success is False
        assert result.pipeline_status == "failed"
        assert result.errors[0].kind == "cancelled"
        assert result.errors[0].recoverable is False
        assert result.stages["extraction"].status == "cancelled"
        extractor.extract.assert_not_called()
        assert repository.get_invoice("inv-1").status == "pending"

    def test_cancelled_between_stages(
        self,
        orchestrator: PipelineOrchestrator,
        extractor: MagicMock,
        make_invoice,
        make_fields,
    ) -> None:
        make_invoice("inv-1")
        cancel = threading.Event()
        fields = make_fields()

        def extract_then_cancel(document_ref: str):
            cancel.set()
            return fields

        extractor.extract.side_effect = extract_then_cancel

        result = orchestrator.process("inv-1", cancel_event=cancel)

        assert result.success is False
        assert result.stages["extraction"].success is True
        assert result.stages["categorization"].status == "cancelled"
        assert result.errors[0].stage == "categorization"


class TestAccess:
    def test_unknown_invoice(self, orchestrator: PipelineOrchestrator) -> None:
        result = orchestrator.process("nope")

        assert result.success is False
        assert result.errors[0].kind == "not_found"

    def test_other_users_invoice(
        self, orchestrator: PipelineOrchestrator, extractor: MagicMock, make_invoice
    ) -> None:
        make_invoice("inv-1")

        result = orchestrator.process("inv-1", user_id="user-2")

        assert result.success is False
        assert result.errors[0].kind == "unauthorized"
        extractor.extract.assert_not_called()


class TestStatus:
    def test_status_before_processing(
        self, orchestrator: PipelineOrchestrator, make_invoice
    ) -> None:
        make_invoice("inv-1")

        snapshot = orchestrator.status("inv-1")

        assert snapshot.current_status == "pending"
        assert snapshot.has_file is True
        assert not any(stage.completed for stage in snapshot.pipeline_stages.values())
        assert snapshot.pipeline_result is None

    def test_status_after_processing(
        self, orchestrator: PipelineOrchestrator, make_invoice
    ) -> None:
        make_invoice("inv-1")
        orchestrator.process("inv-1")

        snapshot = orchestrator.status("inv-1", user_id="user-1")

        stages = snapshot.pipeline_stages
        assert snapshot.invoice_number == "INV-2024-0001"
        assert snapshot.current_status == "approved"
        assert stages["extraction"].completed is True
        assert stages["extraction"].confidence == 0.97
        assert stages["categorization"].confidence == 0.95
        assert stages["validation"].confidence == 1.0
        assert stages["validation"].completed_at is not None
        assert stages["approval"].completed is True
        assert snapshot.pipeline_result["final_decision"] == "auto_approved"
        assert len(snapshot.recent_activities) == 3

    def test_status_unknown_invoice(self, orchestrator: PipelineOrchestrator) -> None:
        with pytest.raises(InvoiceNotFoundError):
            orchestrator.status("nope")

    def test_status_other_user(self, orchestrator: PipelineOrchestrator, make_invoice) -> None:
        make_invoice("inv-1")

        with pytest.raises(UnauthorizedAccessError):
            orchestrator.status("inv-1", user_id="user-2")
