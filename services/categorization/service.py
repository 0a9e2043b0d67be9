"""HSN/SAC categorization: code -> GST category and rate.

Resolution order (first hit wins): exact code, 4-digit prefix, description
keywords, then the default rate. Lookup failures inside a tier are treated
as "not found", so categorization never aborts the pipeline on its own.
"""

import logging
from decimal import Decimal

from services.categorization.rate_table import (
    ClassificationRateTable,
    InMemoryRateTable,
    normalize_code,
)
from services.categorization.resolvers import (
    ExactCodeStrategy,
    KeywordStrategy,
    PrefixStrategy,
    ResolutionStrategy,
)
from services.categorization.schema import CategorizationResult, CategorizationScoring
from services.shared.config import Settings

logger = logging.getLogger(__name__)

# GST slabs in percent
CANONICAL_GST_RATES: tuple[float, ...] = (0, 0.25, 3, 5, 12, 18, 28)

NO_CODE_CONFIDENCE = 0.30
UNMATCHED_CODE_CONFIDENCE = 0.40


class CategorizationResolver:
    """Ordered chain of resolution strategies with a default-rate fallback."""

    def __init__(
        self,
        table: ClassificationRateTable,
        default_rate: float = 18.0,
        strategies: list[ResolutionStrategy] | None = None,
    ) -> None:
        self.table = table
        self.default_rate = default_rate
        self.strategies = strategies or [
            ExactCodeStrategy(table),
            PrefixStrategy(table),
            KeywordStrategy(table),
        ]

    @classmethod
    def from_settings(
        cls, settings: Settings, table: ClassificationRateTable | None = None
    ) -> "CategorizationResolver":
        return cls(table or InMemoryRateTable.from_json(), default_rate=settings.default_tax_rate)

    def categorize(
        self,
        code: str | None,
        amount: Decimal | float | None = None,
        description: str | None = None,
    ) -> CategorizationResult:
        """Resolve the GST category and rate for an invoice.

        Args:
            code: HSN/SAC code as extracted (may be None or blank)
            amount: Invoice amount, carried for logging only
            description: Optional goods/services description

        Returns:
            CategorizationResult; never raises for lookup failures
        """
        if not code or not code.strip():
            return CategorizationResult(
                classification_code=None,
                category="Unknown",
                description="No HSN code provided",
                tax_rate=self.default_rate,
                confidence=NO_CODE_CONFIDENCE,
                match_type="default",
                fallback_used=True,
            )

        normalized = normalize_code(code)
        for strategy in self.strategies:
            try:
                result = strategy.attempt(normalized, description)
            except Exception as e:
                logger.warning(f"HSN {strategy.name} lookup failed for {normalized}: {e}")
                continue
            if result is not None:
                logger.debug(
                    f"HSN {normalized} resolved by {strategy.name} "
                    f"(rate={result.tax_rate}%, amount={amount})"
                )
                return result

        return CategorizationResult(
            classification_code=normalized,
            category="Unclassified",
            description="HSN code not found in rate table - using default rate",
            tax_rate=self.default_rate,
            confidence=UNMATCHED_CODE_CONFIDENCE,
            match_type="default",
            fallback_used=True,
        )


def calculate_categorization_score(result: CategorizationResult) -> CategorizationScoring:
    """Assess a categorization result.

    Exact matches are floored at 0.90, partial at 0.70, default capped at
    0.50. Anything resolved by fallback, below 0.70 or only partially
    matched needs review; recognised exemptions count as categorized.
    """
    overall = result.confidence
    if result.match_type == "exact":
        overall = max(overall, 0.90)
    elif result.match_type == "partial":
        overall = max(overall, 0.70)
    elif result.match_type == "default":
        overall = min(overall, 0.50)

    code_validity = 0.9 if result.classification_code and not result.fallback_used else 0.4
    tax_rate_confidence = 0.95 if result.match_type == "exact" else 0.60

    code = result.classification_code
    if result.match_type == "unknown":
        status = "unknown"
        reason = f"HSN {code} could not be categorized"
    elif result.fallback_used or overall < 0.70:
        status = "needs_review"
        reason = (
            f"HSN code not found - defaulting to {result.tax_rate}% GST "
            "(most common rate). Admin review recommended."
        )
    elif result.is_exempt:
        status = "categorized"
        reason = (
            f"HSN {code} is exempt from GST. "
            f"Reason: {result.exemption_reason or 'Standard exemption'}"
        )
    elif result.match_type == "partial":
        status = "needs_review"
        reason = (
            f"Partial match for HSN {code} - applied {result.tax_rate}% GST "
            "based on similar category. Please verify."
        )
    else:
        status = "categorized"
        reason = f"HSN {code} categorized as {result.category} with {result.tax_rate}% GST"

    return CategorizationScoring(
        overall_score=round(overall, 2),
        categorization_confidence=result.confidence,
        code_validity=code_validity,
        tax_rate_confidence=tax_rate_confidence,
        status=status,
        reason=reason,
    )


def is_canonical_rate(rate: float | None) -> bool:
    """True if ``rate`` is exactly one of the GST slabs."""
    return rate is not None and rate in CANONICAL_GST_RATES


def expected_tax_split(
    taxable_amount: Decimal, rate: Decimal | float, inter_state: bool
) -> dict[str, Decimal]:
    """Expected CGST/SGST/IGST for a taxable amount.

    Inter-state supplies carry only IGST; intra-state supplies split the tax
    equally between CGST and SGST.
    """
    total = taxable_amount * Decimal(str(rate)) / Decimal(100)
    if inter_state:
        return {
            "cgst": Decimal(0),
            "sgst": Decimal(0),
            "igst": total,
            "total": total,
        }
    return {
        "cgst": total / 2,
        "sgst": total / 2,
        "igst": Decimal(0),
        "total": total,
    }
