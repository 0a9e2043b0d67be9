"""Unit tests for aggregate confidence, the final decision and review notes."""

import pytest
from pydantic import ValidationError

from services.pipeline.decision import aggregate_confidence, decide
from services.pipeline.notes import build_review_notes, result_message
from services.pipeline.schema import (
    BatchSummary,
    PipelineConfig,
    PipelineError,
    PipelineResult,
    StageResult,
)


def stages(
    extraction: float = 1.0,
    categorization: float = 1.0,
    validation: float = 1.0,
    extraction_ok: bool = True,
    categorization_ok: bool = True,
    validation_ok: bool = True,
    validation_status: str = "pass",
) -> dict[str, StageResult]:
    return {
        "extraction": StageResult(
            stage_name="extraction", success=extraction_ok, confidence=extraction, status="done"
        ),
        "categorization": StageResult(
            stage_name="categorization",
            success=categorization_ok,
            confidence=categorization,
            status="categorized",
        ),
        "validation": StageResult(
            stage_name="validation",
            success=validation_ok,
            confidence=validation,
            status=validation_status,
        ),
        "approval": StageResult(stage_name="approval"),
    }


@pytest.fixture
def config() -> PipelineConfig:
    return PipelineConfig()


class TestAggregateConfidence:
    def test_weighted_sum(self, config: PipelineConfig) -> None:
        assert aggregate_confidence(stages(0.97, 0.95, 1.0), config) == pytest.approx(0.98)

    def test_extraction_failure_zeroes(self, config: PipelineConfig) -> None:
        assert aggregate_confidence(stages(extraction_ok=False), config) == 0.0

    def test_validation_failure_caps(self, config: PipelineConfig) -> None:
        result = aggregate_confidence(stages(validation_ok=False), config)
        assert result == 0.79

    def test_categorization_failure_penalised(self, config: PipelineConfig) -> None:
        result = aggregate_confidence(stages(categorization_ok=False, categorization=1.0), config)
        assert result == pytest.approx(0.9)

    def test_never_increases_with_lower_stage_confidence(self, config: PipelineConfig) -> None:
        values = [1.0, 0.9, 0.7, 0.5, 0.2, 0.0]
        for stage in ("extraction", "categorization", "validation"):
            scores = [aggregate_confidence(stages(**{stage: v}), config) for v in values]
            assert scores == sorted(scores, reverse=True)


class TestDecide:
    def test_auto_approve(self, config: PipelineConfig) -> None:
        assert decide(stages(), config) == (1.0, "auto_approved")

    def test_high_score_without_pass_needs_review(self, config: PipelineConfig) -> None:
        aggregate, decision = decide(stages(validation=0.96, validation_status="review"), config)

        assert aggregate >= config.auto_approve_threshold
        assert decision == "needs_review"

    def test_skipped_validation_can_auto_approve(self, config: PipelineConfig) -> None:
        assert decide(stages(validation_status="skipped"), config)[1] == "auto_approved"

    def test_broken_validator_never_auto_approves(self, config: PipelineConfig) -> None:
        _, decision = decide(stages(validation_ok=False), config)
        assert decision == "rejected"

    def test_aggregate_rounded_before_threshold(self, config: PipelineConfig) -> None:
        aggregate, decision = decide(stages(0.95, 0.948, 0.95), config)

        assert aggregate == 0.95
        assert decision == "auto_approved"

    def test_review_band(self, config: PipelineConfig) -> None:
        assert decide(stages(0.9, 0.9, 0.8), config)[1] == "needs_review"

    def test_low_score_rejected(self, config: PipelineConfig) -> None:
        aggregate, decision = decide(stages(0.9, 0.3, 0.0, validation_status="fail"), config)

        assert aggregate == pytest.approx(0.42)
        assert decision == "rejected"

    def test_extraction_failure_is_pending(self, config: PipelineConfig) -> None:
        assert decide(stages(extraction_ok=False), config) == (0.0, "pending")

    def test_custom_thresholds(self) -> None:
        config = PipelineConfig(auto_approve_threshold=0.85, review_threshold=0.5)
        assert decide(stages(0.9, 0.9, 0.9), config)[1] == "auto_approved"

    def test_config_rejects_inverted_thresholds(self) -> None:
        with pytest.raises(ValidationError, match="review_threshold"):
            PipelineConfig(auto_approve_threshold=0.7, review_threshold=0.8)

    def test_config_rejects_bad_stage_weights(self) -> None:
        with pytest.raises(ValidationError, match="sum to 1.0"):
            PipelineConfig(stage_weights={"extraction": 0.5, "categorization": 0.2, "validation": 0.2})


class TestReviewNotes:
    def test_review_notes_list_findings(self) -> None:
        stage_map = stages(0.9, 0.75, 0.85, validation_status="review")
        stage_map["extraction"].data = {"reason": "Manual review required"}
        stage_map["categorization"].data = {
            "category": "Electronics",
            "tax_rate": 18.0,
            "reason": "Partial match",
        }
        stage_map["validation"].data = {
            "violations": [
                {"rule": "duplicate_check", "severity": "major", "message": "Likely duplicate"}
            ],
            "warnings": [{"rule": "invoice_date", "message": "Invoice is 120 days old"}],
        }

        notes = build_review_notes(stage_map, 0.85)

        assert notes.startswith("Pipeline Processing Summary")
        assert "Overall Confidence: 85%" in notes
        assert "MANUAL REVIEW REQUIRED" in notes
        assert "[ok] Extraction: 90% confidence" in notes
        assert "Category: Electronics, GST Rate: 18.0%" in notes
        assert "[MAJOR] duplicate_check: Likely duplicate" in notes
        assert "[WARNING] invoice_date: Invoice is 120 days old" in notes
        assert notes.endswith("Action Required: Admin review and approval needed.")

    def test_rejected_notes(self) -> None:
        stage_map = stages(validation_ok=False)
        stage_map["validation"].error = "Compliance rule tax_split failed"

        notes = build_review_notes(stage_map, 0.45, rejected=True)

        assert "REJECTED: Low confidence or critical failures detected" in notes
        assert "[x] Validation: FAILED - Compliance rule tax_split failed" in notes
        assert "correct the errors above" in notes

    def test_skipped_stages(self) -> None:
        stage_map = stages()
        stage_map["categorization"] = StageResult.skipped("categorization")

        assert "- Categorization: Skipped" in build_review_notes(stage_map, 0.9)


class TestResultMessage:
    @pytest.mark.parametrize(
        ("decision", "expected"),
        [
            ("auto_approved", "Invoice auto-approved with 97% confidence"),
            ("needs_review", "Invoice needs manual review (97% confidence)"),
            ("rejected", "Invoice requires corrections (97% confidence)"),
        ],
    )
    def test_decisions(self, decision: str, expected: str) -> None:
        result = PipelineResult(
            invoice_id="inv-1",
            success=True,
            pipeline_status="completed",
            aggregate_confidence=0.97,
            final_decision=decision,
        )
        assert result_message(result) == expected

    def test_failure(self) -> None:
        result = PipelineResult(
            invoice_id="inv-1",
            success=False,
            pipeline_status="failed",
            errors=[
                PipelineError(
                    stage="extraction",
                    kind="extraction_error",
                    message="OCR failed",
                    recoverable=False,
                )
            ],
        )
        assert result_message(result) == "Pipeline failed: OCR failed"


def test_batch_summary_counts() -> None:
    results = [
        PipelineResult(
            invoice_id="a",
            success=True,
            pipeline_status="completed",
            aggregate_confidence=1.0,
            final_decision="auto_approved",
            processing_time_ms=10,
        ),
        PipelineResult(
            invoice_id="b",
            success=True,
            pipeline_status="partial",
            aggregate_confidence=0.5,
            final_decision="rejected",
            processing_time_ms=20,
        ),
        PipelineResult(invoice_id="c", success=False, pipeline_status="failed"),
    ]

    summary = BatchSummary.from_results(results)

    assert summary.total == 3
    assert (summary.completed, summary.partial, summary.failed) == (1, 1, 1)
    assert (summary.auto_approved, summary.rejected, summary.pending) == (1, 1, 1)
    assert summary.average_confidence == 0.5
    assert summary.total_processing_time_ms == 30
    assert BatchSummary.from_results(results, wall_clock_ms=12.5).total_processing_time_ms == 12.5
