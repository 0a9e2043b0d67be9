"""Self-hosted extraction through an Ollama server.

Invoice scans never leave the premises. The server (``APP_OLLAMA_BASE_URL``,
localhost:11434 by default) must already have ``APP_OLLAMA_MODEL`` pulled.
"""

import json
import logging
from typing import Any

import httpx
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
from services.shared.config import Settings

logger = logging.getLogger(__name__)

GENERATE_TIMEOUT_SECONDS = 120.0
MAX_OUTPUT_TOKENS = 1024


def _base_model_name(name: str) -> str:
    """Drop the tag, so ``qwen2.5:7b`` and ``qwen2.5:latest`` compare equal."""
    return name.split(":", 1)[0]


class OllamaExtractionProvider(ExtractionProvider):
    """Extraction through a local Ollama model (Qwen2.5, Llama 3, Mistral)."""

    def __init__(self, settings: Settings) -> None:
        super().__init__(settings)
        self._base_url = settings.ollama_base_url.rstrip("/")
        self._model = settings.ollama_model
        self._client = httpx.Client(timeout=GENERATE_TIMEOUT_SECONDS)

    @property
    def provider_name(self) -> str:
        return "ollama"

    def is_available(self) -> bool:
        try:
            response = self._client.get(f"{self._base_url}/api/tags")
        except httpx.HTTPError as e:
            logger.debug(f"Ollama server unreachable at {self._base_url}: {e}")
            return False
        if response.status_code != 200:
            return False

        pulled = {_base_model_name(m.get("name", "")) for m in response.json().get("models", [])}
        return _base_model_name(self._model) in pulled

    def extract_invoice_fields(self, ocr_text: str) -> ExtractionResult:
        if not ocr_text or not ocr_text.strip():
            return self._fail(EMPTY_TEXT_ERROR)

        try:
            raw = self._generate(self._request_body(build_extraction_prompt(ocr_text)))
            fields = normalize_extraction(parse_json_response(raw))
        except json.JSONDecodeError as e:
            logger.warning(f"Ollama model {self._model} returned non-JSON output: {e}")
            return self._fail(f"JSON parsing failed: {e}")
        except Exception as e:
            logger.error(f"Ollama extraction with {self._model} failed: {e}")
            return self._fail(f"Extraction failed: {e}")

        return ExtractionResult(fields=fields, success=True, provider=self.provider_name)

    def _request_body(self, prompt: str) -> dict[str, Any]:
        return {
            "model": self._model,
            "prompt": prompt,
            "stream": False,
            "format": "json",
            "options": {"temperature": 0, "num_predict": MAX_OUTPUT_TOKENS},
        }

    @retry(
        retry=retry_if_exception_type(httpx.HTTPError),
        wait=wait_exponential_jitter(initial=1, max=30),
        stop=stop_after_attempt(3),
        reraise=True,
    )
    def _generate(self, body: dict[str, Any]) -> str:
        """POST to ``/api/generate``; transport and status errors are retried."""
        response = self._client.post(f"{self._base_url}/api/generate", json=body)
        response.raise_for_status()
        return str(response.json().get("response", ""))
