"""Extraction confidence scoring.

Aggregates per-field extractor confidences into one weighted score and a
decision tier. Pure: the same confidence map always yields the same result,
and missing or malformed fields degrade to 0 instead of raising.

Default weights:
- total_amount: 0.30 (key financial data)
- tax_amount: 0.25 (GST liability)
- counterparty_id: 0.20 (vendor GSTIN, needed for input tax credit)
- classification_code: 0.15 (HSN/SAC drives the rate)
- counterparty_name: 0.05
- invoice_number: 0.03
- invoice_date: 0.02
"""

import logging
from collections.abc import Mapping
from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator

from services.extraction.schema import ExtractedFields

logger = logging.getLogger(__name__)

ScoringTier = Literal["auto_approve", "review", "reject"]

DEFAULT_FIELD_WEIGHTS: dict[str, float] = {
    "counterparty_id": 0.20,
    "total_amount": 0.30,
    "tax_amount": 0.25,
    "classification_code": 0.15,
    "counterparty_name": 0.05,
    "invoice_number": 0.03,
    "invoice_date": 0.02,
}


class ScorerConfig(BaseModel):
    """Weights and thresholds for extraction scoring."""

    field_weights: dict[str, float] = Field(default_factory=lambda: dict(DEFAULT_FIELD_WEIGHTS))
    auto_approve_threshold: float = 0.95
    reject_threshold: float = 0.80
    critical_fields: tuple[str, ...] = ("counterparty_id", "total_amount", "tax_amount")
    critical_field_floor: float = 0.80

    @model_validator(mode="after")
    def _weights_sum_to_one(self) -> "ScorerConfig":
        total = sum(self.field_weights.values())
        if abs(total - 1.0) > 0.001:
            raise ValueError(f"Field weights must sum to 1.0 (got {total:.3f})")
        return self


class ConfidenceScoring(BaseModel):
    """Weighted extraction score with its tier."""

    overall_score: float
    field_scores: dict[str, float]
    status: ScoringTier
    reason: str


def _safe_score(value: Any) -> float:
    try:
        score = float(value)
    except (TypeError, ValueError):
        return 0.0
    if score != score:  # NaN
        return 0.0
    return min(1.0, max(0.0, score))


class ConfidenceScorer:
    """Weighted multi-field confidence aggregation."""

    def __init__(self, config: ScorerConfig | None = None) -> None:
        self.config = config or ScorerConfig()

    def score(self, confidences: Mapping[str, Any] | ExtractedFields | None) -> ConfidenceScoring:
        """Score a confidence map (or an ``ExtractedFields``).

        A critical field below the floor forces ``review`` even when the
        weighted average clears the auto-approve threshold; a ``reject``
        tier is never upgraded by that guard.
        """
        if isinstance(confidences, ExtractedFields):
            confidences = confidences.confidences
        confidences = confidences or {}

        weights = self.config.field_weights
        field_scores = {field: _safe_score(confidences.get(field)) for field in weights}
        overall = sum(field_scores[field] * weight for field, weight in weights.items())
        overall = overall / sum(weights.values())

        status: ScoringTier = "review"
        reason = "Manual review required"
        if overall >= self.config.auto_approve_threshold:
            status = "auto_approve"
            reason = f"High confidence extraction ({self.config.auto_approve_threshold:.0%}+)"
        elif overall < self.config.reject_threshold:
            status = "reject"
            reason = (
                f"Low confidence extraction (<{self.config.reject_threshold:.0%}). "
                "Client clarification needed."
            )

        weak_critical = [
            field
            for field in self.config.critical_fields
            if field_scores.get(field, 0.0) < self.config.critical_field_floor
        ]
        if status != "reject" and weak_critical:
            status = "review"
            reason = (
                "Critical field(s) have low confidence - requires admin review: "
                + ", ".join(weak_critical)
            )

        return ConfidenceScoring(
            overall_score=round(overall, 2),
            field_scores=field_scores,
            status=status,
            reason=reason,
        )


def get_confidence_label(score: float) -> str:
    """Human label for a confidence score."""
    if score >= 0.95:
        return "Very High"
    if score >= 0.85:
        return "High"
    if score >= 0.75:
        return "Medium"
    if score >= 0.60:
        return "Low"
    return "Very Low"


# (field, floor, message)
_ASSESSMENT_CHECKS: tuple[tuple[str, float, str], ...] = (
    ("counterparty_id", 0.80, "Vendor GSTIN confidence is low"),
    ("total_amount", 0.80, "Total amount extraction uncertain"),
    ("tax_amount", 0.80, "GST amount confidence is low"),
    ("classification_code", 0.80, "HSN code could not be extracted clearly"),
    ("invoice_date", 0.70, "Invoice date may be incorrect"),
)


def get_detailed_assessment(confidences: Mapping[str, Any]) -> str:
    """Sentence listing the weak fields of an extraction, for review notes."""
    issues = [
        message
        for field, floor, message in _ASSESSMENT_CHECKS
        if _safe_score(confidences.get(field)) < floor
    ]
    if not issues:
        return "All critical fields extracted with good confidence"
    return ". ".join(issues)
