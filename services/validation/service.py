"""GST compliance validator.

Runs the rule registry over one invoice and aggregates the per-rule scores:

- weighted sum of rule scores (weights sum to 1.0)
- any critical violation forces the score to 0
- each major violation subtracts 0.15, each minor 0.05 (floored at 0)
- status: pass >= 0.95, review >= 0.80, otherwise fail
"""

import logging
from datetime import date
from decimal import Decimal

from prometheus_client import Counter
from pydantic import BaseModel, Field, model_validator

from services.categorization.rate_table import ClassificationRateTable, InMemoryRateTable
from services.repository.models import Client, Invoice
from services.repository.store import InvoiceRepository
from services.shared.config import Settings
from services.shared.errors import ComplianceCheckError
from services.validation.duplicates import DuplicateDetector, DuplicateTolerances
from services.validation.rules import (
    AmountReconciliationRule,
    ClassificationRateRule,
    ComplianceRule,
    DuplicateRule,
    InvoiceDateRule,
    InvoiceNumberRule,
    JurisdictionCodeRule,
    RegistrationIdFormatRule,
    RuleRegistry,
    TaxRateValidityRule,
    TaxSplitRule,
    ValidationContext,
)
from services.validation.schema import (
    DuplicateCheckResult,
    ValidationResult,
    ValidationStatus,
    ValidationWarning,
    Violation,
)

logger = logging.getLogger(__name__)

validation_violations_total = Counter(
    "invoice_validation_violations_total",
    "Compliance violations found by the validator",
    ["rule", "severity"],
)

DEFAULT_RULE_WEIGHTS: dict[str, float] = {
    "amount_reconciliation": 0.25,
    "registration_id_format": 0.20,
    "tax_split": 0.20,
    "tax_rate_valid": 0.10,
    "invoice_date": 0.08,
    "classification_rate_consistency": 0.07,
    "duplicate_check": 0.05,
    "jurisdiction_code": 0.03,
    "invoice_number_format": 0.02,
}


class ValidatorConfig(BaseModel):
    """Rule weights, status thresholds, penalties and tolerances."""

    rule_weights: dict[str, float] = Field(default_factory=lambda: dict(DEFAULT_RULE_WEIGHTS))
    pass_threshold: float = 0.95
    review_threshold: float = 0.80
    major_penalty: float = 0.15
    minor_penalty: float = 0.05
    amount_tolerance: Decimal = Decimal("1")
    split_tolerance: Decimal = Decimal("1")
    rate_tolerance: float = 0.5
    fiscal_year_start_month: int = 4
    duplicates: DuplicateTolerances = Field(default_factory=DuplicateTolerances)

    @model_validator(mode="after")
    def _weights_sum_to_one(self) -> "ValidatorConfig":
        total = sum(self.rule_weights.values())
        if abs(total - 1.0) > 0.001:
            raise ValueError(f"Rule weights must sum to 1.0 (got {total:.3f})")
        return self


def build_default_rules(
    config: ValidatorConfig,
    table: ClassificationRateTable,
    detector: DuplicateDetector,
) -> RuleRegistry:
    """The nine GST rules, weighted from ``config``."""
    w = config.rule_weights
    return RuleRegistry(
        [
            RegistrationIdFormatRule(w["registration_id_format"]),
            JurisdictionCodeRule(w["jurisdiction_code"]),
            TaxRateValidityRule(w["tax_rate_valid"], tolerance=config.rate_tolerance),
            AmountReconciliationRule(
                w["amount_reconciliation"], tolerance=config.amount_tolerance
            ),
            TaxSplitRule(w["tax_split"], tolerance=config.split_tolerance),
            InvoiceDateRule(w["invoice_date"]),
            InvoiceNumberRule(w["invoice_number_format"]),
            ClassificationRateRule(w["classification_rate_consistency"], table),
            DuplicateRule(w["duplicate_check"], detector),
        ]
    )


def calculate_validation_score(
    scores: dict[str, float],
    weights: dict[str, float],
    violations: list[Violation],
    config: ValidatorConfig | None = None,
) -> tuple[float, ValidationStatus]:
    """Aggregate rule scores into an overall score and status."""
    config = config or ValidatorConfig()
    weighted = sum(scores.get(name, 0.0) * weight for name, weight in weights.items())

    if any(v.severity == "critical" for v in violations):
        overall = 0.0
    else:
        majors = sum(1 for v in violations if v.severity == "major")
        minors = sum(1 for v in violations if v.severity == "minor")
        overall = weighted - majors * config.major_penalty - minors * config.minor_penalty
        overall = max(0.0, overall)

    overall = round(min(1.0, overall), 2)
    if overall >= config.pass_threshold:
        status: ValidationStatus = "pass"
    elif overall >= config.review_threshold:
        status = "review"
    else:
        status = "fail"
    return overall, status


class ComplianceValidator:
    """Applies the compliance rule registry to invoices.

    Attributes:
        config: Weights and thresholds
        rules: Registry of rules evaluated for every invoice
    """

    def __init__(
        self,
        repository: InvoiceRepository,
        table: ClassificationRateTable | None = None,
        config: ValidatorConfig | None = None,
        rules: RuleRegistry | None = None,
    ) -> None:
        self.config = config or ValidatorConfig()
        self.table = table or InMemoryRateTable.from_json()
        self.detector = DuplicateDetector(repository, self.config.duplicates)
        self.rules = rules or build_default_rules(self.config, self.table, self.detector)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        repository: InvoiceRepository,
        table: ClassificationRateTable | None = None,
    ) -> "ComplianceValidator":
        config = ValidatorConfig(fiscal_year_start_month=settings.fiscal_year_start_month)
        return cls(repository, table=table, config=config)

    def validate(self, invoice: Invoice, client: Client, today: date | None = None) -> ValidationResult:
        """Run every rule against ``invoice``.

        Args:
            invoice: Invoice with extracted data merged in
            client: Owning client (its GSTIN decides intra/inter-state)
            today: Reference date for date-age scoring

        Returns:
            ValidationResult with per-rule scores, violations and warnings

        Raises:
            ComplianceCheckError: If a rule itself fails
        """
        context = ValidationContext.from_invoice(
            invoice,
            client,
            today=today or date.today(),
            fiscal_year_start_month=self.config.fiscal_year_start_month,
        )

        scores: dict[str, float] = {}
        weights: dict[str, float] = {}
        violations: list[Violation] = []
        warnings: list[ValidationWarning] = []
        duplicate_info: DuplicateCheckResult | None = None

        for rule in self.rules:
            outcome = self._evaluate(rule, context)
            scores[rule.name] = outcome.score
            weights[rule.name] = rule.weight
            if outcome.violation is not None:
                violations.append(outcome.violation)
                validation_violations_total.labels(
                    rule=outcome.violation.rule, severity=outcome.violation.severity
                ).inc()
            warnings.extend(outcome.warnings)
            if isinstance(outcome.details.get("duplicate"), DuplicateCheckResult):
                duplicate_info = outcome.details["duplicate"]

        overall, status = calculate_validation_score(scores, weights, violations, self.config)
        reason = self._reason(status, violations, warnings)

        logger.info(
            f"Validated invoice {invoice.id}: status={status} score={overall} "
            f"violations={len(violations)} warnings={len(warnings)}"
        )

        return ValidationResult(
            invoice_id=invoice.id,
            is_valid=status != "fail",
            overall_confidence=overall,
            scores=scores,
            violations=violations,
            warnings=warnings,
            duplicate_info=duplicate_info,
            effective_tax_rate=round(float(context.effective_tax_rate), 2),
            status=status,
            reason=reason,
        )

    def _evaluate(self, rule: ComplianceRule, context: ValidationContext):
        try:
            return rule.evaluate(context)
        except Exception as e:
            logger.exception(f"Compliance rule {rule.name} failed for invoice {context.invoice_id}")
            raise ComplianceCheckError(
                f"Compliance rule {rule.name} failed: {e}",
                {"rule": rule.name, "invoice_id": context.invoice_id},
            ) from e

    @staticmethod
    def _reason(
        status: ValidationStatus,
        violations: list[Violation],
        warnings: list[ValidationWarning],
    ) -> str:
        critical = [v for v in violations if v.severity == "critical"]
        if critical:
            return f"{len(critical)} critical violation(s): " + "; ".join(
                v.message for v in critical
            )
        if status == "pass":
            if warnings:
                return f"All GST compliance checks passed with {len(warnings)} warning(s)"
            return "All GST compliance checks passed"
        if violations:
            return f"{len(violations)} violation(s) need review: " + "; ".join(
                v.message for v in violations
            )
        return "Compliance confidence below auto-approval threshold"
