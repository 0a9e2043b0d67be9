"""Unit tests for batch processing."""

import threading
from datetime import date
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest

from services.categorization.rate_table import InMemoryRateTable
from services.categorization.service import CategorizationResolver
from services.pipeline.orchestrator import PipelineOrchestrator
from services.pipeline.schema import PipelineConfig
from services.repository.store import InMemoryInvoiceRepository
from services.shared.errors import BatchSizeLimitError, ExtractionError
from services.validation.service import ComplianceValidator


@pytest.fixture
def extractor(make_fields) -> MagicMock:
    fields = make_fields()

    def extract(document_ref: str):
        if document_ref.endswith("broken.png"):
            raise ExtractionError("OCR failed: unreadable scan")
        return fields

    extractor = MagicMock()
    extractor.extract.side_effect = extract
    return extractor


@pytest.fixture
def orchestrator(
    repository: InMemoryInvoiceRepository, extractor: MagicMock, today: date
) -> PipelineOrchestrator:
    table = InMemoryRateTable.from_json()
    return PipelineOrchestrator(
        repository=repository,
        extractor=extractor,
        resolver=CategorizationResolver(table),
        validator=ComplianceValidator(repository, table=table),
        default_config=PipelineConfig(retry_on_error=False),
        batch_max_size=5,
        max_workers=3,
        today=lambda: today,
    )


@pytest.fixture
def invoice_ids(make_invoice) -> list[str]:
    ids = []
    for i in range(5):
        invoice = make_invoice(
            f"inv-{i}",
            invoice_number=f"INV-2024-{i:04d}",
            total_amount=Decimal("1180") * (i + 1),
            taxable_amount=Decimal("1000") * (i + 1),
            tax_amount=Decimal("180") * (i + 1),
            cgst_amount=Decimal("90") * (i + 1),
            sgst_amount=Decimal("90") * (i + 1),
            file_path="/uploads/broken.png" if i == 2 else f"/uploads/{i}.png",
        )
        ids.append(invoice.id)
    return ids


def test_results_keep_input_order(
    orchestrator: PipelineOrchestrator, invoice_ids: list[str]
) -> None:
    batch = orchestrator.process_batch(list(reversed(invoice_ids)))

    assert [r.invoice_id for r in batch.results] == list(reversed(invoice_ids))


def test_one_failure_does_not_affect_the_others(
    orchestrator: PipelineOrchestrator, invoice_ids: list[str]
) -> None:
    batch = orchestrator.process_batch(invoice_ids)

    failed = batch.results[2]
    assert failed.success is False
    assert failed.errors[0].kind == "extraction_error"
    assert all(r.success for i, r in enumerate(batch.results) if i != 2)

    summary = batch.summary
    assert summary.total == 5
    assert summary.failed == 1
    assert summary.completed + summary.partial == 4
    assert summary.pending == 1
    assert summary.total_processing_time_ms >= 0


def test_unknown_invoice_in_batch(
    orchestrator: PipelineOrchestrator, invoice_ids: list[str]
) -> None:
    batch = orchestrator.process_batch([invoice_ids[0], "nope"])

    assert batch.results[0].success is True
    assert batch.results[1].errors[0].kind == "not_found"


def test_unexpected_worker_error_becomes_failed_result(
    orchestrator: PipelineOrchestrator, invoice_ids: list[str]
) -> None:
    real_process = orchestrator.process

    def process(invoice_id, *args, **kwargs):
        if invoice_id == "inv-1":
            raise RuntimeError("worker crashed")
        return real_process(invoice_id, *args, **kwargs)

    with patch.object(orchestrator, "process", side_effect=process):
        batch = orchestrator.process_batch(invoice_ids[:3])

    crashed = batch.results[1]
    assert crashed.success is False
    assert crashed.errors[0].kind == "pipeline_error"
    assert crashed.errors[0].message == "worker crashed"
    assert batch.results[0].success is True


def test_empty_batch_rejected(orchestrator: PipelineOrchestrator) -> None:
    with pytest.raises(ValueError, match="non-empty"):
        orchestrator.process_batch([])


def test_batch_size_limit(orchestrator: PipelineOrchestrator) -> None:
    with pytest.raises(BatchSizeLimitError, match="Maximum 5 invoices") as exc_info:
        orchestrator.process_batch([f"inv-{i}" for i in range(6)])

    assert exc_info.value.size == 6


def test_cancelled_batch(
    orchestrator: PipelineOrchestrator, extractor: MagicMock, invoice_ids: list[str]
) -> None:
    cancel = threading.Event()
    cancel.set()

    batch = orchestrator.process_batch(invoice_ids, cancel_event=cancel)

    assert batch.summary.failed == 5
    assert all(r.errors[0].kind == "cancelled" for r in batch.results)
    extractor.extract.assert_not_called()
