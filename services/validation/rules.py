"""GST compliance rules.

Each rule is independent: it reads a ``ValidationContext`` and returns a
``RuleOutcome`` with a [0, 1] score and, when the invoice breaks the rule, a
``Violation`` and/or warnings. Rules never raise for non-compliant data;
an exception out of ``evaluate`` means the rule itself is broken.
"""

import logging
import re
from abc import ABC, abstractmethod
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any

from services.categorization.rate_table import ClassificationRateTable, normalize_code
from services.categorization.service import CANONICAL_GST_RATES, expected_tax_split
from services.repository.models import Client, Invoice
from services.validation.duplicates import DuplicateDetector
from services.validation.gstin import STATE_CODES, check_gstin
from services.validation.schema import DuplicateCheckResult, ValidationWarning, Violation

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


def _decimal(value: Any) -> Decimal | None:
    if value is None:
        return None
    try:
        return Decimal(str(value))
    except (ArithmeticError, ValueError):
        return None


@dataclass(frozen=True)
class ValidationContext:
    """Invoice values resolved once for every rule.

    Amounts fall back as the filing does: taxable is ``total - tax`` when not
    stated, and tax is the sum of CGST/SGST/IGST when not stated.
    """

    invoice_id: str
    client_id: str
    client_registration_id: str
    invoice_number: str | None
    invoice_date: Any
    counterparty_id: str | None
    classification_code: str | None
    total_amount: Decimal
    taxable_amount: Decimal
    tax_amount: Decimal
    cgst_amount: Decimal
    sgst_amount: Decimal
    igst_amount: Decimal
    components_reported: bool
    effective_tax_rate: Decimal
    today: date
    fiscal_year_start_month: int = 4

    @property
    def component_tax(self) -> Decimal:
        return self.cgst_amount + self.sgst_amount + self.igst_amount

    @classmethod
    def from_invoice(
        cls,
        invoice: Invoice,
        client: Client,
        today: date,
        fiscal_year_start_month: int = 4,
    ) -> "ValidationContext":
        cgst = _decimal(invoice.resolved("cgst_amount"))
        sgst = _decimal(invoice.resolved("sgst_amount"))
        igst = _decimal(invoice.resolved("igst_amount"))
        components_reported = any(v is not None for v in (cgst, sgst, igst))
        cgst, sgst, igst = cgst or ZERO, sgst or ZERO, igst or ZERO

        total = _decimal(invoice.resolved("total_amount")) or ZERO
        tax = _decimal(invoice.resolved("tax_amount"))
        if tax is None:
            tax = cgst + sgst + igst
        taxable = _decimal(invoice.resolved("taxable_amount"))
        if taxable is None:
            taxable = total - tax

        rate = tax / taxable * 100 if taxable > 0 else ZERO

        counterparty_id = invoice.resolved("counterparty_id")
        return cls(
            invoice_id=invoice.id,
            client_id=invoice.client_id,
            client_registration_id=(client.registration_id or "").strip().upper(),
            invoice_number=invoice.resolved("invoice_number"),
            invoice_date=invoice.resolved("invoice_date"),
            counterparty_id=counterparty_id.strip().upper() if counterparty_id else None,
            classification_code=invoice.resolved("classification_code"),
            total_amount=total,
            taxable_amount=taxable,
            tax_amount=tax,
            cgst_amount=cgst,
            sgst_amount=sgst,
            igst_amount=igst,
            components_reported=components_reported,
            effective_tax_rate=rate,
            today=today,
            fiscal_year_start_month=fiscal_year_start_month,
        )


@dataclass
class RuleOutcome:
    """Score of a single rule plus anything it found."""

    score: float
    violation: Violation | None = None
    warnings: list[ValidationWarning] = field(default_factory=list)
    details: dict[str, Any] = field(default_factory=dict)


class ComplianceRule(ABC):
    """A named, weighted compliance check."""

    name: str = "rule"

    def __init__(self, weight: float) -> None:
        self.weight = weight

    @abstractmethod
    def evaluate(self, context: ValidationContext) -> RuleOutcome:
        """Score the invoice against this rule."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}(weight={self.weight})"


class RegistrationIdFormatRule(ComplianceRule):
    """Vendor GSTIN format and checksum."""

    name = "registration_id_format"

    def evaluate(self, context: ValidationContext) -> RuleOutcome:
        check = check_gstin(context.counterparty_id)
        if not check.valid:
            return RuleOutcome(
                score=check.confidence,
                violation=Violation(
                    rule=self.name,
                    severity="critical",
                    field="counterparty_id",
                    expected="Valid 15-character GSTIN",
                    actual=context.counterparty_id,
                    message=check.message,
                    confidence_impact=1.0,
                ),
            )
        warnings = []
        if check.confidence < 1.0:
            warnings.append(
                ValidationWarning(
                    rule=self.name,
                    field="counterparty_id",
                    message="GSTIN checksum could not be verified - please double-check",
                )
            )
        return RuleOutcome(score=check.confidence, warnings=warnings)


class JurisdictionCodeRule(ComplianceRule):
    """First two GSTIN characters must be a known state code."""

    name = "jurisdiction_code"

    def evaluate(self, context: ValidationContext) -> RuleOutcome:
        gstin = context.counterparty_id or ""
        state_code = gstin[:2] if len(gstin) >= 2 else None
        if state_code in STATE_CODES:
            return RuleOutcome(score=1.0, details={"state": STATE_CODES[state_code]})
        return RuleOutcome(
            score=0.0,
            violation=Violation(
                rule=self.name,
                severity="major",
                field="counterparty_id",
                expected="Known GST state code (01-38)",
                actual=state_code,
                message=f"Invalid or missing state code: {state_code}",
                confidence_impact=0.15,
            ),
        )


class TaxRateValidityRule(ComplianceRule):
    """Effective rate must sit on a GST slab."""

    name = "tax_rate_valid"

    def __init__(self, weight: float, tolerance: float = 0.5) -> None:
        super().__init__(weight)
        self.tolerance = tolerance

    def evaluate(self, context: ValidationContext) -> RuleOutcome:
        rate = float(context.effective_tax_rate)
        nearest = min(CANONICAL_GST_RATES, key=lambda r: abs(r - rate))
        if abs(nearest - rate) < self.tolerance:
            return RuleOutcome(score=1.0, details={"matched_rate": nearest})

        score = 0.5 if 0 <= rate <= 30 else 0.0
        return RuleOutcome(
            score=score,
            violation=Violation(
                rule=self.name,
                severity="major",
                field="tax_amount",
                expected=f"One of {list(CANONICAL_GST_RATES)}%",
                actual=f"{rate:.2f}%",
                message=f"Effective GST rate {rate:.2f}% is not a valid GST rate",
                confidence_impact=0.15,
            ),
        )


class AmountReconciliationRule(ComplianceRule):
    """Total must equal taxable plus tax."""

    name = "amount_reconciliation"

    # (max difference, score), checked in order
    BANDS: tuple[tuple[Decimal, float], ...] = (
        (Decimal("0"), 1.0),
        (Decimal("1"), 0.95),
        (Decimal("10"), 0.70),
        (Decimal("100"), 0.40),
    )

    def __init__(self, weight: float, tolerance: Decimal = Decimal("1")) -> None:
        super().__init__(weight)
        self.tolerance = tolerance

    def score_for(self, difference: Decimal) -> float:
        for limit, score in self.BANDS:
            if difference <= limit:
                return score
        return 0.0

    def evaluate(self, context: ValidationContext) -> RuleOutcome:
        tax = context.component_tax if context.components_reported else context.tax_amount
        calculated = context.taxable_amount + tax
        difference = abs(context.total_amount - calculated)
        score = self.score_for(difference)
        details = {"calculated_total": calculated, "difference": difference}

        if difference > self.tolerance:
            return RuleOutcome(
                score=score,
                violation=Violation(
                    rule=self.name,
                    severity="critical",
                    field="total_amount",
                    expected=calculated,
                    actual=context.total_amount,
                    message=(
                        f"Total ({context.total_amount}) does not match taxable + tax "
                        f"({calculated}), difference {difference}"
                    ),
                    confidence_impact=1.0,
                ),
                details=details,
            )

        warnings = []
        if difference > 0:
            warnings.append(
                ValidationWarning(
                    rule=self.name,
                    field="total_amount",
                    message=f"Minor rounding difference of {difference}",
                    suggested_value=calculated,
                )
            )
        return RuleOutcome(score=score, warnings=warnings, details=details)


class TaxSplitRule(ComplianceRule):
    """CGST+SGST within a state, IGST across states."""

    name = "tax_split"

    def __init__(self, weight: float, tolerance: Decimal = Decimal("1")) -> None:
        super().__init__(weight)
        self.tolerance = tolerance

    def evaluate(self, context: ValidationContext) -> RuleOutcome:
        vendor_state = check_gstin(context.counterparty_id).state_code
        client_state = context.client_registration_id[:2] or None
        inter_state = vendor_state is None or vendor_state != client_state
        expected = expected_tax_split(
            context.taxable_amount, context.effective_tax_rate, inter_state
        )
        details = {
            "inter_state": inter_state,
            "vendor_state": vendor_state,
            "client_state": client_state,
            "expected": expected,
        }
        cgst, sgst, igst = context.cgst_amount, context.sgst_amount, context.igst_amount

        if inter_state:
            if cgst != 0 or sgst != 0:
                return self._fail(
                    0.0,
                    "cgst_amount",
                    "IGST only",
                    f"CGST {cgst}, SGST {sgst}",
                    "Inter-state supply must carry IGST, not CGST/SGST",
                    details,
                )
            if abs(igst - expected["igst"]) <= self.tolerance:
                return RuleOutcome(score=1.0, details=details)
            return self._fail(
                0.5,
                "igst_amount",
                expected["igst"],
                igst,
                f"IGST {igst} does not match expected {expected['igst']:.2f}",
                details,
            )

        if igst != 0:
            return self._fail(
                0.0,
                "igst_amount",
                "CGST + SGST only",
                f"IGST {igst}",
                "Intra-state supply must carry CGST + SGST, not IGST",
                details,
            )
        if (
            abs(cgst - expected["cgst"]) <= self.tolerance
            and abs(sgst - expected["sgst"]) <= self.tolerance
        ):
            return RuleOutcome(score=1.0, details=details)
        return self._fail(
            0.5,
            "cgst_sgst_amount",
            f"CGST {expected['cgst']:.2f}, SGST {expected['sgst']:.2f}",
            f"CGST {cgst}, SGST {sgst}",
            "CGST/SGST split does not match half of the GST amount each",
            details,
        )

    def _fail(
        self, score: float, field_name: str, expected: Any, actual: Any, message: str, details: dict
    ) -> RuleOutcome:
        return RuleOutcome(
            score=score,
            violation=Violation(
                rule=self.name,
                severity="critical",
                field=field_name,
                expected=expected,
                actual=actual,
                message=message,
                confidence_impact=1.0,
            ),
            details=details,
        )


def fiscal_year_start(today: date, start_month: int = 4) -> date:
    """First day of the fiscal year containing ``today``."""
    year = today.year if today.month >= start_month else today.year - 1
    return date(year, start_month, 1)


class InvoiceDateRule(ComplianceRule):
    """Parsable, not in the future, recent, inside the current fiscal year."""

    name = "invoice_date"

    # (max age in days, score)
    AGE_BANDS: tuple[tuple[int, float], ...] = ((30, 1.0), (90, 0.90), (180, 0.70))
    STALE_SCORE = 0.50
    OUTSIDE_FY_CAP = 0.60
    WARN_AFTER_DAYS = 90

    def evaluate(self, context: ValidationContext) -> RuleOutcome:
        raw = context.invoice_date
        if raw is None or raw == "":
            return self._fail("Invoice date is missing", raw)

        invoice_date = raw
        if isinstance(raw, str):
            try:
                invoice_date = date.fromisoformat(raw.strip()[:10])
            except ValueError:
                return self._fail(f"Invoice date {raw!r} could not be parsed", raw)
        if not isinstance(invoice_date, date):
            return self._fail(f"Invoice date {raw!r} could not be parsed", raw)

        age = (context.today - invoice_date).days
        if age < 0:
            return self._fail(f"Invoice date {invoice_date} is in the future", invoice_date)

        score = self.STALE_SCORE
        for limit, band_score in self.AGE_BANDS:
            if age <= limit:
                score = band_score
                break

        fy_start = fiscal_year_start(context.today, context.fiscal_year_start_month)
        in_fiscal_year = invoice_date >= fy_start
        if not in_fiscal_year:
            score = min(score, self.OUTSIDE_FY_CAP)

        warnings = []
        if age > self.WARN_AFTER_DAYS:
            warnings.append(
                ValidationWarning(
                    rule=self.name,
                    field="invoice_date",
                    message=f"Invoice is {age} days old - verify it belongs to this filing period",
                )
            )
        return RuleOutcome(
            score=score,
            warnings=warnings,
            details={"age_days": age, "in_fiscal_year": in_fiscal_year},
        )

    def _fail(self, message: str, actual: Any) -> RuleOutcome:
        return RuleOutcome(
            score=0.0,
            violation=Violation(
                rule=self.name,
                severity="critical",
                field="invoice_date",
                expected="Valid past date (YYYY-MM-DD)",
                actual=actual,
                message=message,
                confidence_impact=1.0,
            ),
        )


class InvoiceNumberRule(ComplianceRule):
    """Invoice number length and shape."""

    name = "invoice_number_format"

    STANDARD_PATTERN = re.compile(r"^[A-Z]{2,5}[-/]?\d{4}[-/]?\d{3,6}$", re.IGNORECASE)
    GENERIC_PATTERN = re.compile(r"^[A-Z0-9]+(?:[-/][A-Z0-9]+)*$", re.IGNORECASE)

    def evaluate(self, context: ValidationContext) -> RuleOutcome:
        number = (context.invoice_number or "").strip()
        if not number:
            return self._warn(0.0, "Invoice number is missing")
        if len(number) < 3:
            return self._warn(0.4, f"Invoice number {number!r} is too short")
        if len(number) > 50:
            return self._warn(0.4, "Invoice number is longer than 50 characters")
        if self.STANDARD_PATTERN.match(number):
            return RuleOutcome(score=1.0)
        if self.GENERIC_PATTERN.match(number):
            return RuleOutcome(score=0.8)
        return RuleOutcome(score=0.6)

    def _warn(self, score: float, message: str) -> RuleOutcome:
        return RuleOutcome(
            score=score,
            warnings=[ValidationWarning(rule=self.name, field="invoice_number", message=message)],
        )


class ClassificationRateRule(ComplianceRule):
    """HSN/SAC rate against the effective rate."""

    name = "classification_rate_consistency"

    def __init__(self, weight: float, table: ClassificationRateTable) -> None:
        super().__init__(weight)
        self.table = table

    def evaluate(self, context: ValidationContext) -> RuleOutcome:
        if not context.classification_code or not context.classification_code.strip():
            return RuleOutcome(score=0.5, details={"reason": "no_code"})

        code = normalize_code(context.classification_code)
        try:
            entry = self.table.get(code)
        except Exception as e:
            logger.warning(f"Rate lookup failed for HSN {code}: {e}")
            return RuleOutcome(score=0.5, details={"reason": "lookup_failed"})
        if entry is None:
            return RuleOutcome(score=0.6, details={"reason": "not_found"})

        rate = float(context.effective_tax_rate)
        gap = abs(entry.rate - rate)
        if gap < 0.5:
            return RuleOutcome(score=1.0, details={"expected_rate": entry.rate})

        score = 0.70 if gap <= 5 else 0.40
        return RuleOutcome(
            score=score,
            warnings=[
                ValidationWarning(
                    rule=self.name,
                    field="classification_code",
                    message=(
                        f"HSN {code} carries {entry.rate}% GST but invoice shows {rate:.2f}%"
                    ),
                    suggested_value=entry.rate,
                )
            ],
            details={"expected_rate": entry.rate},
        )


class DuplicateRule(ComplianceRule):
    """No earlier non-rejected invoice with the same identity."""

    name = "duplicate_check"

    def __init__(self, weight: float, detector: DuplicateDetector) -> None:
        super().__init__(weight)
        self.detector = detector

    def evaluate(self, context: ValidationContext) -> RuleOutcome:
        invoice_date = context.invoice_date if isinstance(context.invoice_date, date) else None
        result: DuplicateCheckResult = self.detector.check(
            client_id=context.client_id,
            invoice_id=context.invoice_id,
            invoice_number=context.invoice_number,
            counterparty_id=context.counterparty_id,
            invoice_date=invoice_date,
            total_amount=context.total_amount,
        )
        details = {"duplicate": result}

        if result.is_duplicate:
            severity = "critical" if result.match_type == "exact" else "major"
            return RuleOutcome(
                score=round(1.0 - result.confidence, 2),
                violation=Violation(
                    rule=self.name,
                    severity=severity,
                    field="invoice_number",
                    expected="Unique invoice",
                    actual=result.matched_invoice_id,
                    message=result.reason,
                    confidence_impact=1.0 if severity == "critical" else 0.15,
                ),
                details=details,
            )
        if result.match_type == "partial":
            return RuleOutcome(
                score=result.confidence,
                warnings=[
                    ValidationWarning(
                        rule=self.name,
                        field="invoice_number",
                        message=result.reason,
                        suggested_value=[c["id"] for c in result.potential_duplicates],
                    )
                ],
                details=details,
            )
        return RuleOutcome(score=result.confidence, details=details)


class RuleRegistry:
    """Ordered set of rules keyed by name."""

    def __init__(self, rules: list[ComplianceRule] | None = None) -> None:
        self._rules: dict[str, ComplianceRule] = {}
        for rule in rules or []:
            self.register(rule)

    def register(self, rule: ComplianceRule) -> None:
        if rule.name in self._rules:
            raise ValueError(f"Rule already registered: {rule.name}")
        self._rules[rule.name] = rule

    def get(self, name: str) -> ComplianceRule:
        if name not in self._rules:
            raise ValueError(
                f"Unknown compliance rule: {name}. Available rules: {self.names()}"
            )
        return self._rules[name]

    def names(self) -> list[str]:
        return list(self._rules)

    def total_weight(self) -> float:
        return sum(rule.weight for rule in self._rules.values())

    def __iter__(self) -> Iterator[ComplianceRule]:
        return iter(self._rules.values())

    def __len__(self) -> int:
        return len(self._rules)
