"""Provider interface for LLM field extraction.

A provider receives the OCR text of one GST invoice and answers with
``ExtractedFields`` wrapped in an ``ExtractionResult``. Vendor failures are
reported in the result instead of raised, so the caller decides whether a
failure is fatal.
"""

from abc import ABC, abstractmethod

from pydantic import BaseModel

from services.extraction.schema import ExtractedFields
from services.shared.config import Settings

EMPTY_TEXT_ERROR = "Empty OCR text provided"


class ExtractionResult(BaseModel):
    """Outcome of one provider call.

    Attributes:
        fields: Values and per-field confidences, None on failure
        success: True when the vendor answered with parseable JSON
        error: Failure description
        provider: Name of the provider that handled the call
    """

    fields: ExtractedFields | None
    success: bool
    error: str | None = None
    provider: str

    @classmethod
    def failed(cls, provider: str, error: str) -> "ExtractionResult":
        return cls(fields=None, success=False, error=error, provider=provider)


class ExtractionProvider(ABC):
    """Base class for GST invoice extraction vendors."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    @abstractmethod
    def extract_invoice_fields(self, ocr_text: str) -> ExtractionResult:
        """Extract invoice number, date, GSTIN, amounts and HSN/SAC code.

        Args:
            ocr_text: Raw text from the OCR engine

        Returns:
            ExtractionResult carrying the fields or the failure reason
        """

    @abstractmethod
    def is_available(self) -> bool:
        """Whether the vendor is configured and reachable."""

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Short vendor name used in logs and error details."""

    def _fail(self, error: str) -> ExtractionResult:
        return ExtractionResult.failed(self.provider_name, error)
