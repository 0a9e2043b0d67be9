"""Cloud extraction through the OpenAI chat completions API.

The model answers in JSON mode with one value per GST field and a
``confidence_per_field`` object. Transient API errors are retried with
jittered exponential backoff.
"""

import json
import logging
import os
from typing import Any

from openai import OpenAI
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from services.extraction.base import EMPTY_TEXT_ERROR, ExtractionProvider, ExtractionResult
from services.extraction.parsing import (
    build_extraction_prompt,
    normalize_extraction,
    parse_json_response,
)

logger = logging.getLogger(__name__)

API_KEY_ENV = "OPENAI_API_KEY"
SYSTEM_PROMPT = "You are a GST invoice data extraction assistant."


class OpenAIExtractionProvider(ExtractionProvider):
    """Extraction through OpenAI. The key is read from ``OPENAI_API_KEY``."""

    _client: OpenAI | None = None

    @property
    def provider_name(self) -> str:
        return "openai"

    def is_available(self) -> bool:
        return os.getenv(API_KEY_ENV) is not None

    def extract_invoice_fields(self, ocr_text: str) -> ExtractionResult:
        api_key = os.getenv(API_KEY_ENV)
        if api_key is None:
            return self._fail(f"{API_KEY_ENV} environment variable not set")
        if not ocr_text or not ocr_text.strip():
            return self._fail(EMPTY_TEXT_ERROR)

        try:
            client = self._client_for(api_key)
            completion = self._complete(client, build_extraction_prompt(ocr_text))
            content = completion.choices[0].message.content
            if not content:
                return self._fail("No content in API response")
            fields = normalize_extraction(parse_json_response(content))
        except json.JSONDecodeError as e:
            logger.warning(f"{self.settings.openai_model} returned non-JSON content: {e}")
            return self._fail(f"JSON parsing failed: {e}")
        except Exception as e:
            logger.error(f"OpenAI extraction with {self.settings.openai_model} failed: {e}")
            return self._fail(f"Extraction failed: {e}")

        return ExtractionResult(fields=fields, success=True, provider=self.provider_name)

    def _client_for(self, api_key: str) -> OpenAI:
        # Rebuilt when the key is rotated in the environment
        if self._client is None or self._client.api_key != api_key:
            self._client = OpenAI(api_key=api_key)
        return self._client

    @retry(
        retry=retry_if_exception_type(Exception),
        wait=wait_exponential_jitter(initial=1, max=60),
        stop=stop_after_attempt(3),
        reraise=True,
    )
    def _complete(self, client: OpenAI, prompt: str) -> Any:
        return client.chat.completions.create(  # type: ignore[call-overload]
            model=self.settings.openai_model,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            response_format={"type": "json_object"},
            temperature=0,
        )
