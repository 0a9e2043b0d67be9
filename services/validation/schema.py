"""Compliance validation result models.

Violations and warnings are data, never exceptions, so review notes can
enumerate every one of them.
"""

from typing import Any, Literal

from pydantic import BaseModel, Field

Severity = Literal["critical", "major", "minor"]
ValidationStatus = Literal["pass", "review", "fail"]
DuplicateMatchType = Literal["exact", "fuzzy", "partial", "none"]


class Violation(BaseModel):
    """A failed compliance rule."""

    rule: str
    severity: Severity
    field: str
    expected: Any = None
    actual: Any = None
    message: str
    confidence_impact: float = 0.0


class ValidationWarning(BaseModel):
    """A non-blocking observation raised by a rule."""

    rule: str
    field: str
    message: str
    suggested_value: Any = None


class DuplicateCheckResult(BaseModel):
    """Outcome of duplicate-invoice detection.

    ``confidence`` is how sure the detector is about ``match_type``.
    Computed fresh on every validation because the invoice set changes.
    """

    is_duplicate: bool
    match_type: DuplicateMatchType
    confidence: float
    matched_invoice_id: str | None = None
    matched_invoice_number: str | None = None
    reason: str
    potential_duplicates: list[dict[str, Any]] = Field(default_factory=list)


class ValidationResult(BaseModel):
    """Compliance verdict for one invoice."""

    invoice_id: str
    is_valid: bool
    overall_confidence: float
    scores: dict[str, float]
    violations: list[Violation] = Field(default_factory=list)
    warnings: list[ValidationWarning] = Field(default_factory=list)
    duplicate_info: DuplicateCheckResult | None = None
    effective_tax_rate: float
    status: ValidationStatus
    reason: str
