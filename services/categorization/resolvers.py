"""Resolution strategies for the categorization fallback chain.

Each strategy tries one way of mapping a code (and optional description) to
a rate-table entry and returns ``None`` when it has nothing to offer. The
resolver walks them in order; first hit wins.
"""

import re
from abc import ABC, abstractmethod

from services.categorization.rate_table import ClassificationRateTable
from services.categorization.schema import CategorizationResult

_STOPWORDS = frozenset({"with", "other", "from", "than", "their", "thereof", "including"})


def description_keywords(description: str) -> list[str]:
    """Lower-cased description tokens longer than three characters."""
    tokens = re.split(r"[^a-z0-9]+", description.lower())
    return [t for t in tokens if len(t) > 3 and t not in _STOPWORDS]


class ResolutionStrategy(ABC):
    """One tier of the categorization fallback chain."""

    name: str = "strategy"

    def __init__(self, table: ClassificationRateTable) -> None:
        self.table = table

    @abstractmethod
    def attempt(self, code: str | None, description: str | None) -> CategorizationResult | None:
        """Return a result for this tier, or None to fall through."""


class ExactCodeStrategy(ResolutionStrategy):
    """Exact HSN/SAC code match."""

    name = "exact"
    confidence = 0.95

    def attempt(self, code: str | None, description: str | None) -> CategorizationResult | None:
        if not code:
            return None
        entry = self.table.get(code)
        if entry is None:
            return None
        return CategorizationResult(
            classification_code=entry.code,
            category=entry.category,
            description=entry.description,
            tax_rate=entry.rate,
            is_exempt=entry.is_exempt,
            exemption_reason=entry.exemption_reason,
            confidence=self.confidence,
            match_type="exact",
        )


class PrefixStrategy(ResolutionStrategy):
    """Match on the 4-digit HSN heading."""

    name = "prefix"
    confidence = 0.75
    prefix_length = 4

    def attempt(self, code: str | None, description: str | None) -> CategorizationResult | None:
        if not code or len(code) < self.prefix_length:
            return None
        entry = self.table.find_by_prefix(code[: self.prefix_length])
        if entry is None:
            return None
        return CategorizationResult(
            classification_code=code,
            category=entry.category,
            description=f"Similar to: {entry.description}",
            tax_rate=entry.rate,
            is_exempt=entry.is_exempt,
            exemption_reason=entry.exemption_reason,
            confidence=self.confidence,
            match_type="partial",
        )


class KeywordStrategy(ResolutionStrategy):
    """Match description keywords against rate-table descriptions."""

    name = "keyword"
    confidence = 0.60

    def attempt(self, code: str | None, description: str | None) -> CategorizationResult | None:
        if not description:
            return None
        keywords = description_keywords(description)
        if not keywords:
            return None
        entry = self.table.find_by_keywords(keywords)
        if entry is None:
            return None
        return CategorizationResult(
            classification_code=code,
            category=entry.category,
            description=f"Matched by description: {entry.description}",
            tax_rate=entry.rate,
            is_exempt=entry.is_exempt,
            exemption_reason=entry.exemption_reason,
            confidence=self.confidence,
            match_type="partial",
        )
