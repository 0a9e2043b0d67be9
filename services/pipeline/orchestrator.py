"""Invoice pipeline orchestrator.

Runs extraction -> categorization -> validation -> decision for one invoice
at a time. Stages are sequential because each consumes the previous stage's
output. Failure policy:

- extraction failure is fatal: the run stops and the invoice stays pending
- categorization failure is recoverable: confidence 0, aggregate x0.90
- validation failure is recoverable: aggregate capped at 0.79

Batches fan out across a bounded thread pool; invoices share nothing but
the repository.
"""

import logging
import threading
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from datetime import date

from prometheus_client import Counter, Histogram
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from services.categorization.service import CategorizationResolver, calculate_categorization_score
from services.extraction.schema import ExtractedFields
from services.extraction.service import FieldExtractor, InvoiceExtractor
from services.pipeline.approval import ApprovalService
from services.pipeline.decision import decide
from services.pipeline.notes import build_review_notes
from services.pipeline.schema import (
    BatchResult,
    BatchSummary,
    ErrorKind,
    PipelineConfig,
    PipelineError,
    PipelineResult,
    PipelineStatusSnapshot,
    StageResult,
    StageSnapshot,
    initial_stages,
)
from services.repository.models import ActivityRecord, Client, FieldConfidenceRecord, Invoice
from services.repository.store import InvoiceRepository
from services.scoring.confidence import ConfidenceScorer, get_detailed_assessment
from services.shared.config import Settings
from services.shared.errors import (
    BatchSizeLimitError,
    InvoiceNotFoundError,
    InvoicePipelineError,
    PipelineCancelledError,
    UnauthorizedAccessError,
)
from services.validation.service import ComplianceValidator

logger = logging.getLogger(__name__)

pipeline_runs_total = Counter(
    "invoice_pipeline_runs_total",
    "Pipeline runs by outcome",
    ["pipeline_status", "final_decision"],
)

pipeline_stage_duration_seconds = Histogram(
    "invoice_pipeline_stage_duration_seconds",
    "Duration of each pipeline stage in seconds",
    ["stage"],
    buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

pipeline_stage_failures_total = Counter(
    "invoice_pipeline_stage_failures_total",
    "Pipeline stages that failed",
    ["stage"],
)

PIPELINE_ACTIVITY = "invoice_pipeline_processed"
VALIDATION_ACTIVITY = "invoice_validated"


def _elapsed_ms(started: float) -> float:
    return round((time.time() - started) * 1000, 2)


class PipelineOrchestrator:
    """Drives invoices through the compliance pipeline.

    Attributes:
        repository: Invoice persistence
        extractor: Field extractor (OCR + LLM)
        resolver: HSN/SAC categorization
        validator: GST compliance validator
        scorer: Extraction confidence scorer
        approvals: Approval workflow
    """

    def __init__(
        self,
        repository: InvoiceRepository,
        extractor: FieldExtractor,
        resolver: CategorizationResolver,
        validator: ComplianceValidator,
        scorer: ConfidenceScorer | None = None,
        approvals: ApprovalService | None = None,
        default_config: PipelineConfig | None = None,
        batch_max_size: int = 50,
        max_workers: int = 4,
        today: Callable[[], date] | None = None,
    ) -> None:
        self.repository = repository
        self.extractor = extractor
        self.resolver = resolver
        self.validator = validator
        self.scorer = scorer or ConfidenceScorer()
        self.approvals = approvals or ApprovalService(repository)
        self.default_config = default_config or PipelineConfig()
        self.batch_max_size = batch_max_size
        self.max_workers = max_workers
        self.today = today or date.today

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        repository: InvoiceRepository,
        extractor: FieldExtractor | None = None,
    ) -> "PipelineOrchestrator":
        resolver = CategorizationResolver.from_settings(settings)
        return cls(
            repository=repository,
            extractor=extractor or InvoiceExtractor(settings),
            resolver=resolver,
            validator=ComplianceValidator.from_settings(settings, repository, resolver.table),
            default_config=PipelineConfig.from_settings(settings),
            batch_max_size=settings.pipeline_batch_max_size,
            max_workers=settings.pipeline_max_workers,
        )

    # ------------------------------------------------------------------
    # Single invoice
    # ------------------------------------------------------------------

    def process(
        self,
        invoice_id: str,
        user_id: str | None = None,
        config: PipelineConfig | None = None,
        cancel_event: threading.Event | None = None,
    ) -> PipelineResult:
        """Run the full pipeline for one invoice.

        Args:
            invoice_id: Invoice to process
            user_id: Requesting user; must own the invoice's client if given
            config: Per-run options, defaults from settings
            cancel_event: Set to abort the remaining stages

        Returns:
            PipelineResult; failures are reported in ``errors``, never raised
        """
        config = config or self.default_config
        started = time.time()
        stages = initial_stages()
        errors: list[PipelineError] = []

        try:
            invoice, client = self._load(invoice_id, user_id)

            # Stage 1: extraction (fatal on failure)
            self._check_cancelled(cancel_event, "extraction")
            if config.skip_extraction:
                stages["extraction"] = StageResult.skipped("extraction")
            else:
                stage, invoice = self._run_extraction(invoice, config, cancel_event)
                stages["extraction"] = stage
                if not stage.success:
                    kind: ErrorKind = (
                        "cancelled" if stage.status == "cancelled" else "extraction_error"
                    )
                    errors.append(
                        PipelineError(
                            stage="extraction",
                            kind=kind,
                            message=stage.error or "Extraction failed",
                            recoverable=False,
                        )
                    )
                    return self._finish_failed(invoice_id, stages, errors, started, invoice.status)

            # Stage 2: categorization
            self._check_cancelled(cancel_event, "categorization")
            if config.skip_categorization:
                stages["categorization"] = StageResult.skipped("categorization")
            else:
                stages["categorization"], invoice = self._run_categorization(invoice, errors)

            # Stage 3: validation
            self._check_cancelled(cancel_event, "validation")
            if config.skip_validation:
                stages["validation"] = StageResult.skipped("validation")
            else:
                stages["validation"] = self._run_validation(invoice, client, user_id, errors)

            # Stage 4: decision and approval
            self._check_cancelled(cancel_event, "approval")
            aggregate, decision, final_status, notes = self._run_decision(
                invoice, user_id, stages, config, errors
            )

            self._log_pipeline_activity(invoice, user_id, stages, aggregate, decision, errors)

        except PipelineCancelledError as e:
            stage = e.details.get("stage", "orchestrator")
            logger.warning(f"Pipeline for invoice {invoice_id} cancelled before {stage}")
            if stage in stages:
                stages[stage].status = "cancelled"
                stages[stage].error = e.message
            errors.append(
                PipelineError(stage=stage, kind="cancelled", message=e.message, recoverable=False)
            )
            return self._finish_failed(invoice_id, stages, errors, started)
        except InvoiceNotFoundError as e:
            errors.append(
                PipelineError(
                    stage="orchestrator", kind="not_found", message=e.message, recoverable=False
                )
            )
            return self._finish_failed(invoice_id, stages, errors, started)
        except UnauthorizedAccessError as e:
            errors.append(
                PipelineError(
                    stage="orchestrator", kind="unauthorized", message=e.message, recoverable=False
                )
            )
            return self._finish_failed(invoice_id, stages, errors, started)
        except Exception as e:
            logger.exception(f"Pipeline error for invoice {invoice_id}")
            message = e.message if isinstance(e, InvoicePipelineError) else str(e)
            errors.append(
                PipelineError(
                    stage="orchestrator",
                    kind="pipeline_error",
                    message=message or "Pipeline execution failed",
                    recoverable=False,
                )
            )
            return self._finish_failed(invoice_id, stages, errors, started)

        pipeline_status = "completed" if not errors else "partial"
        result = PipelineResult(
            invoice_id=invoice_id,
            success=True,
            pipeline_status=pipeline_status,
            stages=stages,
            aggregate_confidence=aggregate,
            final_decision=decision,
            final_status=final_status,
            errors=errors,
            review_notes=notes,
            processing_time_ms=_elapsed_ms(started),
        )
        pipeline_runs_total.labels(pipeline_status=pipeline_status, final_decision=decision).inc()
        logger.info(
            f"Pipeline for invoice {invoice_id} {pipeline_status}: decision={decision} "
            f"confidence={aggregate} in {result.processing_time_ms}ms"
        )
        return result

    def _load(self, invoice_id: str, user_id: str | None) -> tuple[Invoice, Client]:
        invoice = self.repository.get_invoice(invoice_id)
        client = self.repository.get_client(invoice.client_id)
        if user_id is not None and client.user_id != user_id:
            raise UnauthorizedAccessError(invoice_id, user_id)
        return invoice, client

    @staticmethod
    def _check_cancelled(cancel_event: threading.Event | None, stage: str) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise PipelineCancelledError(f"Pipeline cancelled before {stage}", {"stage": stage})

    def _extract(
        self,
        invoice: Invoice,
        config: PipelineConfig,
        cancel_event: threading.Event | None,
    ) -> ExtractedFields:
        document_ref = invoice.file_path or ""
        if not config.retry_on_error or config.max_retries == 0:
            return self.extractor.extract(document_ref)

        retrying = Retrying(
            stop=stop_after_attempt(config.max_retries + 1),
            wait=wait_exponential_jitter(
                initial=config.retry_wait_seconds, max=60, jitter=config.retry_wait_seconds
            ),
            retry=retry_if_not_exception_type(PipelineCancelledError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        for attempt in retrying:
            with attempt:
                self._check_cancelled(cancel_event, "extraction")
                return self.extractor.extract(document_ref)
        raise RuntimeError("unreachable")  # pragma: no cover

    def _run_extraction(
        self,
        invoice: Invoice,
        config: PipelineConfig,
        cancel_event: threading.Event | None,
    ) -> tuple[StageResult, Invoice]:
        started = time.time()
        logger.info(f"Stage 1: extracting invoice {invoice.id}")
        try:
            fields = self._extract(invoice, config, cancel_event)
        except PipelineCancelledError as e:
            return (
                StageResult(
                    stage_name="extraction",
                    status="cancelled",
                    error=e.message,
                    duration_ms=_elapsed_ms(started),
                ),
                invoice,
            )
        except Exception as e:
            message = e.message if isinstance(e, InvoicePipelineError) else str(e)
            logger.error(f"Extraction failed for invoice {invoice.id}: {message}")
            pipeline_stage_failures_total.labels(stage="extraction").inc()
            return (
                StageResult(
                    stage_name="extraction",
                    status="failed",
                    error=message or "Extraction failed",
                    duration_ms=_elapsed_ms(started),
                ),
                invoice,
            )

        scoring = self.scorer.score(fields)
        invoice = self.repository.update_invoice(invoice.id, extracted_data=fields)
        self.repository.record_field_confidences(
            FieldConfidenceRecord(invoice_id=invoice.id, field_name=name, confidence_score=score)
            for name, score in fields.confidences.items()
        )
        duration = _elapsed_ms(started)
        pipeline_stage_duration_seconds.labels(stage="extraction").observe(duration / 1000)
        logger.info(
            f"Extraction completed for invoice {invoice.id}: "
            f"confidence={scoring.overall_score} tier={scoring.status}"
        )
        return (
            StageResult(
                stage_name="extraction",
                success=True,
                confidence=scoring.overall_score,
                status=scoring.status,
                data={
                    "field_scores": scoring.field_scores,
                    "reason": scoring.reason,
                    "assessment": get_detailed_assessment(fields.confidences),
                },
                duration_ms=duration,
            ),
            invoice,
        )

    def _run_categorization(
        self, invoice: Invoice, errors: list[PipelineError]
    ) -> tuple[StageResult, Invoice]:
        started = time.time()
        logger.info(f"Stage 2: categorizing invoice {invoice.id}")
        try:
            result = self.resolver.categorize(
                invoice.resolved("classification_code"),
                amount=invoice.resolved("total_amount"),
                description=invoice.resolved("description"),
            )
            scoring = calculate_categorization_score(result)
        except Exception as e:
            message = e.message if isinstance(e, InvoicePipelineError) else str(e)
            logger.warning(f"Categorization failed for invoice {invoice.id}: {message}")
            pipeline_stage_failures_total.labels(stage="categorization").inc()
            errors.append(
                PipelineError(
                    stage="categorization",
                    kind="categorization_error",
                    message=message or "Categorization failed",
                    recoverable=True,
                )
            )
            return (
                StageResult(
                    stage_name="categorization",
                    status="failed",
                    error=message or "Categorization failed",
                    duration_ms=_elapsed_ms(started),
                ),
                invoice,
            )

        invoice = self.repository.update_invoice(invoice.id, categorization=result)
        self.repository.record_field_confidences(
            [
                FieldConfidenceRecord(
                    invoice_id=invoice.id,
                    field_name="classification_code",
                    confidence_score=result.confidence,
                    source="categorization",
                )
            ]
        )
        duration = _elapsed_ms(started)
        pipeline_stage_duration_seconds.labels(stage="categorization").observe(duration / 1000)
        logger.info(
            f"Categorization completed for invoice {invoice.id}: "
            f"{result.category} at {result.tax_rate}% ({result.match_type})"
        )
        return (
            StageResult(
                stage_name="categorization",
                success=True,
                confidence=result.confidence,
                status=scoring.status,
                data={**result.model_dump(mode="json"), "reason": scoring.reason},
                duration_ms=duration,
            ),
            invoice,
        )

    def _run_validation(
        self,
        invoice: Invoice,
        client: Client,
        user_id: str | None,
        errors: list[PipelineError],
    ) -> StageResult:
        started = time.time()
        logger.info(f"Stage 3: validating invoice {invoice.id}")
        try:
            validation = self.validator.validate(invoice, client, today=self.today())
        except Exception as e:
            message = e.message if isinstance(e, InvoicePipelineError) else str(e)
            logger.warning(f"Validation failed for invoice {invoice.id}: {message}")
            pipeline_stage_failures_total.labels(stage="validation").inc()
            errors.append(
                PipelineError(
                    stage="validation",
                    kind="validation_error",
                    message=message or "Validation failed",
                    recoverable=True,
                )
            )
            return StageResult(
                stage_name="validation",
                status="failed",
                error=message or "Validation failed",
                duration_ms=_elapsed_ms(started),
            )

        self.repository.update_invoice(
            invoice.id, validation_confidence=validation.overall_confidence
        )
        self.repository.log_activity(
            ActivityRecord(
                user_id=user_id,
                client_id=invoice.client_id,
                action=VALIDATION_ACTIVITY,
                entity_id=invoice.id,
                new_values={
                    "confidence_score": validation.overall_confidence,
                    "status": validation.status,
                    "violations": len(validation.violations),
                    "warnings": len(validation.warnings),
                },
            )
        )
        duration = _elapsed_ms(started)
        pipeline_stage_duration_seconds.labels(stage="validation").observe(duration / 1000)
        return StageResult(
            stage_name="validation",
            success=True,
            confidence=validation.overall_confidence,
            status=validation.status,
            data=validation.model_dump(mode="json"),
            duration_ms=duration,
        )

    def _run_decision(
        self,
        invoice: Invoice,
        user_id: str | None,
        stages: dict[str, StageResult],
        config: PipelineConfig,
        errors: list[PipelineError],
    ) -> tuple[float, str, str, str | None]:
        started = time.time()
        aggregate, decision = decide(stages, config)
        logger.info(f"Stage 4: invoice {invoice.id} aggregate={aggregate} decision={decision}")

        notes = None
        if decision == "auto_approved":
            try:
                approval = self.approvals.auto_approve(invoice.id, user_id, confidence=aggregate)
                approval_error = None if approval.success else approval.message
            except Exception as e:
                approval_error = e.message if isinstance(e, InvoicePipelineError) else str(e)

            if approval_error is None:
                stages["approval"] = StageResult(
                    stage_name="approval",
                    success=True,
                    confidence=aggregate,
                    status="auto_approved",
                    duration_ms=_elapsed_ms(started),
                )
                return aggregate, decision, "approved", notes

            logger.error(f"Auto-approval failed for invoice {invoice.id}: {approval_error}")
            pipeline_stage_failures_total.labels(stage="approval").inc()
            errors.append(
                PipelineError(
                    stage="approval",
                    kind="approval_error",
                    message=approval_error,
                    recoverable=True,
                )
            )
            notes = build_review_notes(stages, aggregate)
            self.repository.update_invoice(
                invoice.id,
                status="review",
                confidence_score=aggregate,
                review_notes=notes,
                approved_by=None,
                approved_at=None,
            )
            stages["approval"] = StageResult(
                stage_name="approval",
                confidence=aggregate,
                status="failed_approval",
                error=approval_error,
                duration_ms=_elapsed_ms(started),
            )
            return aggregate, "needs_review", "review", notes

        if decision == "needs_review":
            notes = build_review_notes(stages, aggregate)
            self.repository.update_invoice(
                invoice.id, status="review", confidence_score=aggregate, review_notes=notes
            )
            stages["approval"] = StageResult(
                stage_name="approval",
                success=True,
                confidence=aggregate,
                status="review_required",
                duration_ms=_elapsed_ms(started),
            )
            return aggregate, decision, "review", notes

        # rejected: kept pending so the client can correct and resubmit
        notes = build_review_notes(stages, aggregate, rejected=True)
        self.repository.update_invoice(
            invoice.id, status="pending", confidence_score=aggregate, review_notes=notes
        )
        stages["approval"] = StageResult(
            stage_name="approval",
            confidence=aggregate,
            status="low_confidence",
            duration_ms=_elapsed_ms(started),
        )
        return aggregate, decision, "pending", notes

    def _log_pipeline_activity(
        self,
        invoice: Invoice,
        user_id: str | None,
        stages: dict[str, StageResult],
        aggregate: float,
        decision: str,
        errors: list[PipelineError],
    ) -> None:
        new_values = {"aggregate_confidence": aggregate, "final_decision": decision}
        for name in ("extraction", "categorization", "validation"):
            new_values[f"{name}_confidence"] = stages[name].confidence
            new_values[f"{name}_status"] = stages[name].status
        try:
            self.repository.log_activity(
                ActivityRecord(
                    user_id=user_id,
                    client_id=invoice.client_id,
                    action=PIPELINE_ACTIVITY,
                    entity_id=invoice.id,
                    new_values=new_values,
                )
            )
        except Exception as e:
            logger.error(f"Failed to log pipeline activity for invoice {invoice.id}: {e}")
            errors.append(
                PipelineError(
                    stage="orchestrator",
                    kind="pipeline_error",
                    message=f"Failed to log pipeline activity: {e}",
                    recoverable=True,
                )
            )

    def _finish_failed(
        self,
        invoice_id: str,
        stages: dict[str, StageResult],
        errors: list[PipelineError],
        started: float,
        final_status: str = "pending",
    ) -> PipelineResult:
        pipeline_runs_total.labels(pipeline_status="failed", final_decision="pending").inc()
        logger.error(
            f"Pipeline failed for invoice {invoice_id}: "
            + "; ".join(f"{e.stage}: {e.message}" for e in errors)
        )
        return PipelineResult(
            invoice_id=invoice_id,
            success=False,
            pipeline_status="failed",
            stages=stages,
            aggregate_confidence=0.0,
            final_decision="pending",
            final_status=final_status,
            errors=errors,
            processing_time_ms=_elapsed_ms(started),
        )

    # ------------------------------------------------------------------
    # Batch
    # ------------------------------------------------------------------

    def process_batch(
        self,
        invoice_ids: list[str],
        user_id: str | None = None,
        config: PipelineConfig | None = None,
        cancel_event: threading.Event | None = None,
    ) -> BatchResult:
        """Process invoices independently on a bounded worker pool.

        Results keep the input order; one invoice failing never affects the
        others.

        Raises:
            ValueError: If ``invoice_ids`` is empty
            BatchSizeLimitError: If more than ``batch_max_size`` ids are given
        """
        if not invoice_ids:
            raise ValueError("invoice_ids must be a non-empty list")
        if len(invoice_ids) > self.batch_max_size:
            raise BatchSizeLimitError(len(invoice_ids), self.batch_max_size)

        started = time.time()
        logger.info(f"Batch processing {len(invoice_ids)} invoices")

        workers = max(1, min(self.max_workers, len(invoice_ids)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="pipeline") as pool:
            futures = [
                pool.submit(self.process, invoice_id, user_id, config, cancel_event)
                for invoice_id in invoice_ids
            ]
            results = []
            for invoice_id, future in zip(invoice_ids, futures, strict=True):
                try:
                    results.append(future.result())
                except Exception as e:
                    logger.exception(f"Failed to process invoice {invoice_id}")
                    results.append(
                        PipelineResult(
                            invoice_id=invoice_id,
                            success=False,
                            pipeline_status="failed",
                            errors=[
                                PipelineError(
                                    stage="orchestrator",
                                    kind="pipeline_error",
                                    message=str(e),
                                    recoverable=False,
                                )
                            ],
                        )
                    )

        summary = BatchSummary.from_results(results, wall_clock_ms=_elapsed_ms(started))
        logger.info(
            f"Batch completed: {summary.completed} completed, {summary.partial} partial, "
            f"{summary.failed} failed"
        )
        return BatchResult(summary=summary, results=results)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def status(self, invoice_id: str, user_id: str | None = None) -> PipelineStatusSnapshot:
        """Stage completion snapshot built from persisted data.

        Raises:
            InvoiceNotFoundError: If the invoice does not exist
            UnauthorizedAccessError: If ``user_id`` does not own the invoice
        """
        invoice, _ = self._load(invoice_id, user_id)
        activities = self.repository.list_activities(invoice_id, limit=10)
        validation_activity = next(
            (a for a in activities if a.action == VALIDATION_ACTIVITY), None
        )
        pipeline_activity = next((a for a in activities if a.action == PIPELINE_ACTIVITY), None)

        extraction_confidence = None
        if invoice.extracted_data is not None:
            extraction_confidence = self.scorer.score(invoice.extracted_data).overall_score

        stages = {
            "extraction": StageSnapshot(
                completed=invoice.extracted_data is not None,
                confidence=extraction_confidence,
            ),
            "categorization": StageSnapshot(
                completed=invoice.categorization is not None,
                confidence=invoice.categorization.confidence if invoice.categorization else None,
            ),
            "validation": StageSnapshot(
                completed=validation_activity is not None,
                confidence=(
                    validation_activity.new_values.get("confidence_score")
                    if validation_activity
                    else None
                ),
                completed_at=validation_activity.created_at if validation_activity else None,
            ),
            "approval": StageSnapshot(
                completed=invoice.status == "approved",
                completed_at=invoice.approved_at if invoice.status == "approved" else None,
            ),
        }

        return PipelineStatusSnapshot(
            invoice_id=invoice.id,
            invoice_number=invoice.resolved("invoice_number"),
            current_status=invoice.status,
            confidence_score=invoice.confidence_score,
            has_file=bool(invoice.file_path),
            pipeline_stages=stages,
            pipeline_result=pipeline_activity.new_values if pipeline_activity else None,
            review_notes=invoice.review_notes,
            recent_activities=activities[:5],
        )
