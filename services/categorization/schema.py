"""Data models for HSN/SAC categorization."""

from typing import Literal

from pydantic import BaseModel, Field

MatchType = Literal["exact", "partial", "default", "unknown"]
CategorizationStatus = Literal["categorized", "needs_review", "unknown"]


class RateEntry(BaseModel):
    """One row of the classification rate table."""

    code: str = Field(..., description="HSN/SAC code")
    category: str
    description: str
    rate: float = Field(..., ge=0, description="GST rate in percent")
    is_exempt: bool = False
    exemption_reason: str | None = None


class CategorizationResult(BaseModel):
    """Tax category and rate resolved for a classification code.

    Derived data: always recomputable from the code, never a source of truth.
    """

    classification_code: str | None
    category: str | None
    description: str | None
    tax_rate: float | None
    is_exempt: bool = False
    exemption_reason: str | None = None
    confidence: float = Field(..., ge=0, le=1)
    match_type: MatchType
    fallback_used: bool = False


class CategorizationScoring(BaseModel):
    """Confidence assessment of a categorization result."""

    overall_score: float
    categorization_confidence: float
    code_validity: float
    tax_rate_confidence: float
    status: CategorizationStatus
    reason: str
