"""Tesseract OCR for scanned and photographed GST invoices.

The recognised text is handed to an extraction provider. Multi-page scans
(TIFF) are read page by page and joined with form feeds, the separator
Tesseract itself uses between pages.
"""

import logging
import os
from pathlib import Path

import pytesseract
from PIL import Image, ImageOps, ImageSequence
from pydantic import BaseModel

from services.shared.config import Settings

logger = logging.getLogger(__name__)

# English plus Hindi covers the bilingual headers on most GST invoices
DEFAULT_LANGUAGES = "eng+hin"
PAGE_SEPARATOR = "\f"


class OCRResult(BaseModel):
    """Recognised text of one document.

    Attributes:
        text: Text of all pages, empty on failure
        success: Whether recognition ran
        error: Failure description
        pages: Number of pages read
    """

    text: str
    success: bool
    error: str | None = None
    pages: int = 0


def _prepare(page: Image.Image) -> Image.Image:
    """Undo phone-camera rotation and drop colour."""
    return ImageOps.grayscale(ImageOps.exif_transpose(page))


class OCRService:
    """Reads invoice images with Tesseract.

    ``TESSERACT_LANGUAGES`` overrides the language packs and
    ``TESSERACT_CMD`` the binary location.
    """

    def __init__(self, settings: Settings, languages: str | None = None) -> None:
        self.settings = settings
        self.languages = languages or os.getenv("TESSERACT_LANGUAGES", DEFAULT_LANGUAGES)

        binary = os.getenv("TESSERACT_CMD")
        if binary:
            pytesseract.pytesseract.tesseract_cmd = binary

    def extract_text(self, image_path: Path) -> OCRResult:
        if not image_path.exists():
            return OCRResult(text="", success=False, error=f"Image file not found: {image_path}")

        try:
            with Image.open(image_path) as document:
                pages = [
                    pytesseract.image_to_string(_prepare(page), lang=self.languages)
                    for page in ImageSequence.Iterator(document)
                ]
        except Exception as e:
            logger.warning(f"OCR failed for {image_path}: {e}")
            return OCRResult(text="", success=False, error=f"OCR processing failed: {e}")

        if len(pages) > 1:
            logger.info(f"Read {len(pages)} pages from {image_path.name}")
        return OCRResult(text=PAGE_SEPARATOR.join(pages), success=True, pages=len(pages))
