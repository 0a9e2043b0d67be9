"""Pipeline configuration and result models."""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator

from services.repository.models import ActivityRecord, utcnow
from services.shared.config import Settings

StageName = Literal["extraction", "categorization", "validation", "approval"]
PipelineStatus = Literal["completed", "partial", "failed"]
FinalDecision = Literal["auto_approved", "needs_review", "rejected", "pending"]
ErrorKind = Literal[
    "extraction_error",
    "categorization_error",
    "validation_error",
    "approval_error",
    "not_found",
    "unauthorized",
    "cancelled",
    "pipeline_error",
]

STAGES: tuple[str, ...] = ("extraction", "categorization", "validation", "approval")

DEFAULT_STAGE_WEIGHTS: dict[str, float] = {
    "extraction": 0.40,
    "categorization": 0.20,
    "validation": 0.40,
}


class PipelineConfig(BaseModel):
    """Per-run options.

    ``skip_*`` bypasses a stage and credits it with confidence 1.0.
    Retries apply to the extraction stage only.
    """

    skip_extraction: bool = False
    skip_categorization: bool = False
    skip_validation: bool = False
    auto_approve_threshold: float = 0.95
    review_threshold: float = 0.80
    retry_on_error: bool = True
    max_retries: int = Field(default=2, ge=0)
    retry_wait_seconds: float = Field(default=1.0, ge=0)

    stage_weights: dict[str, float] = Field(default_factory=lambda: dict(DEFAULT_STAGE_WEIGHTS))
    categorization_failure_penalty: float = 0.90
    validation_failure_cap: float = 0.79

    @model_validator(mode="after")
    def _check(self) -> "PipelineConfig":
        total = sum(self.stage_weights.values())
        if abs(total - 1.0) > 0.001:
            raise ValueError(f"Stage weights must sum to 1.0 (got {total:.3f})")
        if self.review_threshold > self.auto_approve_threshold:
            raise ValueError("review_threshold must not exceed auto_approve_threshold")
        return self

    @classmethod
    def from_settings(cls, settings: Settings, **overrides: Any) -> "PipelineConfig":
        values = {
            "auto_approve_threshold": settings.pipeline_auto_approve_threshold,
            "review_threshold": settings.pipeline_review_threshold,
            "retry_on_error": settings.pipeline_retry_on_error,
            "max_retries": settings.pipeline_max_retries,
            "retry_wait_seconds": settings.pipeline_retry_wait_seconds,
        }
        values.update(overrides)
        return cls(**values)


class StageResult(BaseModel):
    """Outcome of one pipeline stage."""

    stage_name: StageName
    success: bool = False
    confidence: float = 0.0
    status: str = "pending"
    data: dict[str, Any] | None = None
    error: str | None = None
    duration_ms: float = 0.0
    timestamp: datetime = Field(default_factory=utcnow)

    @classmethod
    def skipped(cls, stage_name: StageName) -> "StageResult":
        return cls(stage_name=stage_name, success=True, confidence=1.0, status="skipped")


class PipelineError(BaseModel):
    """A degraded or failed stage, recorded in run order."""

    stage: str
    kind: ErrorKind
    message: str
    recoverable: bool
    timestamp: datetime = Field(default_factory=utcnow)


def initial_stages() -> dict[str, StageResult]:
    return {name: StageResult(stage_name=name) for name in STAGES}


class PipelineResult(BaseModel):
    """Result of one pipeline run for one invoice."""

    invoice_id: str
    success: bool
    pipeline_status: PipelineStatus
    stages: dict[str, StageResult] = Field(default_factory=initial_stages)
    aggregate_confidence: float = 0.0
    final_decision: FinalDecision = "pending"
    final_status: str = "pending"
    errors: list[PipelineError] = Field(default_factory=list)
    review_notes: str | None = None
    processing_time_ms: float = 0.0


class BatchSummary(BaseModel):
    """Counts by pipeline status and decision for a batch run."""

    total: int
    completed: int = 0
    partial: int = 0
    failed: int = 0
    auto_approved: int = 0
    needs_review: int = 0
    rejected: int = 0
    pending: int = 0
    average_confidence: float = 0.0
    total_processing_time_ms: float = 0.0

    @classmethod
    def from_results(
        cls, results: list[PipelineResult], wall_clock_ms: float | None = None
    ) -> "BatchSummary":
        summary = cls(total=len(results))
        for result in results:
            setattr(summary, result.pipeline_status, getattr(summary, result.pipeline_status) + 1)
            setattr(summary, result.final_decision, getattr(summary, result.final_decision) + 1)
        if results:
            summary.average_confidence = round(
                sum(r.aggregate_confidence for r in results) / len(results), 4
            )
        summary.total_processing_time_ms = (
            wall_clock_ms
            if wall_clock_ms is not None
            else sum(r.processing_time_ms for r in results)
        )
        return summary


class BatchResult(BaseModel):
    """Results of a batch run, in input order."""

    summary: BatchSummary
    results: list[PipelineResult]


class StageSnapshot(BaseModel):
    """Completion of one stage as seen from persisted data."""

    completed: bool
    confidence: float | None = None
    completed_at: datetime | None = None


class PipelineStatusSnapshot(BaseModel):
    """Where an invoice stands, reconstructed from the repository."""

    invoice_id: str
    invoice_number: str | None
    current_status: str
    confidence_score: float | None
    has_file: bool
    pipeline_stages: dict[str, StageSnapshot]
    pipeline_result: dict[str, Any] | None = None
    review_notes: str | None = None
    recent_activities: list[ActivityRecord] = Field(default_factory=list)
