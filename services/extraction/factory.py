"""Provider selection for the field extractor.

``APP_EXTRACTION_PROVIDER`` names an entry in the registry below. Extra
vendors can be added at runtime with ``register_provider``.
"""

import logging

from services.extraction.base import ExtractionProvider
from services.extraction.ollama_provider import OllamaExtractionProvider
from services.extraction.openai_provider import OpenAIExtractionProvider
from services.shared.config import Settings

logger = logging.getLogger(__name__)

_PROVIDERS: dict[str, type[ExtractionProvider]] = {
    "openai": OpenAIExtractionProvider,
    "ollama": OllamaExtractionProvider,
}


def register_provider(name: str, provider_class: type[ExtractionProvider]) -> None:
    _PROVIDERS[name] = provider_class
    logger.info(f"Registered extraction provider: {name}")


def unregister_provider(name: str) -> None:
    _PROVIDERS.pop(name, None)


def available_providers() -> list[str]:
    return sorted(_PROVIDERS)


def provider_class_for(name: str) -> type[ExtractionProvider]:
    """Look up a registered provider class.

    Raises:
        ValueError: If no provider is registered under ``name``
    """
    try:
        return _PROVIDERS[name]
    except KeyError:
        raise ValueError(
            f"Unknown extraction provider: '{name}'. "
            f"Available providers: {', '.join(available_providers())}"
        ) from None


def build_provider(settings: Settings) -> ExtractionProvider:
    """Instantiate the configured provider.

    An unavailable provider is still returned so the pipeline can report
    the vendor's own error per invoice; only a warning is logged here.
    """
    name = settings.extraction_provider
    provider = provider_class_for(name)(settings)

    if not provider.is_available():
        logger.warning(
            f"Extraction provider '{name}' is not fully available; "
            f"invoices will fail extraction until it is configured"
        )

    logger.info(f"Created extraction provider: {name}")
    return provider
