"""Field extractor used by the invoice pipeline.

Runs OCR on the stored invoice document and hands the text to the
configured extraction provider. The pipeline only relies on the
``FieldExtractor`` contract: a document reference in, ``ExtractedFields``
out, or an ``ExtractionError``.
"""

import logging
from pathlib import Path
from typing import Protocol

from services.extraction.base import ExtractionProvider
from services.extraction.factory import build_provider
from services.extraction.schema import ExtractedFields
from services.ocr.service import OCRService
from services.shared.config import Settings
from services.shared.errors import ExtractionError

logger = logging.getLogger(__name__)


class FieldExtractor(Protocol):
    """Contract consumed by the pipeline orchestrator."""

    def extract(self, document_ref: str) -> ExtractedFields:
        """Turn a document reference into field guesses.

        Raises:
            ExtractionError: On any vendor or OCR failure
        """
        ...


class InvoiceExtractor:
    """OCR + LLM implementation of ``FieldExtractor``."""

    def __init__(
        self,
        settings: Settings,
        ocr_service: OCRService | None = None,
        provider: ExtractionProvider | None = None,
    ) -> None:
        self.settings = settings
        self.ocr_service = ocr_service or OCRService(settings)
        self.provider = provider or build_provider(settings)

    def extract(self, document_ref: str) -> ExtractedFields:
        if not document_ref:
            raise ExtractionError("Invoice has no document to extract from")

        ocr_result = self.ocr_service.extract_text(Path(document_ref))
        if not ocr_result.success:
            raise ExtractionError(
                f"OCR failed: {ocr_result.error}",
                provider="tesseract",
                document_ref=document_ref,
            )

        result = self.provider.extract_invoice_fields(ocr_result.text)
        if not result.success or result.fields is None:
            raise ExtractionError(
                result.error or "Extraction returned no fields",
                provider=result.provider,
                document_ref=document_ref,
            )

        logger.info(
            f"Extracted {len(result.fields.confidences)} scored fields from "
            f"{document_ref} via {result.provider}"
        )
        return result.fields
