"""HSN/SAC classification rate table.

The table is an external collaborator: the pipeline only needs exact-key,
prefix and keyword lookups. ``InMemoryRateTable`` is seeded from the bundled
JSON extract of the GST rate schedule.
"""

import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable
from pathlib import Path

from services.categorization.schema import RateEntry

logger = logging.getLogger(__name__)

DEFAULT_RATE_FILE = Path(__file__).parent / "data" / "hsn_rates.json"


def normalize_code(code: str) -> str:
    """Strip whitespace and dots, upper-case (``"8471 30"`` -> ``"847130"``)."""
    return "".join(code.split()).replace(".", "").upper()


class ClassificationRateTable(ABC):
    """Lookup capability over the classification -> rate schedule."""

    @abstractmethod
    def get(self, code: str) -> RateEntry | None:
        """Exact lookup by normalized code."""

    @abstractmethod
    def find_by_prefix(self, prefix: str) -> RateEntry | None:
        """First entry whose code starts with ``prefix``."""

    @abstractmethod
    def find_by_keywords(self, keywords: Iterable[str]) -> RateEntry | None:
        """First entry whose description mentions one of ``keywords``."""


class InMemoryRateTable(ClassificationRateTable):
    """Rate table held in a dict, ordered by code for deterministic lookups."""

    def __init__(self, entries: Iterable[RateEntry]) -> None:
        self._entries: dict[str, RateEntry] = {}
        for entry in sorted(entries, key=lambda e: normalize_code(e.code)):
            self._entries[normalize_code(entry.code)] = entry

    @classmethod
    def from_json(cls, path: Path = DEFAULT_RATE_FILE) -> "InMemoryRateTable":
        with path.open(encoding="utf-8") as fh:
            rows = json.load(fh)
        table = cls(RateEntry(**row) for row in rows)
        logger.info(f"Loaded {len(table)} HSN/SAC rate entries from {path.name}")
        return table

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, code: str) -> RateEntry | None:
        return self._entries.get(normalize_code(code))

    def find_by_prefix(self, prefix: str) -> RateEntry | None:
        prefix = normalize_code(prefix)
        for code, entry in self._entries.items():
            if code.startswith(prefix):
                return entry
        return None

    def find_by_keywords(self, keywords: Iterable[str]) -> RateEntry | None:
        for keyword in keywords:
            needle = keyword.lower()
            for entry in self._entries.values():
                if needle in entry.description.lower():
                    return entry
        return None
