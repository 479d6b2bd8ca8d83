"""Vision provider selection for image and PDF invoices."""

import logging

from taxflow.extraction.base import VisionExtractionProvider
from taxflow.extraction.openai_provider import OpenAIVisionProvider
from taxflow.shared.config import Settings

logger = logging.getLogger(__name__)

VISION_PROVIDERS: dict[str, type[VisionExtractionProvider]] = {
    "openai": OpenAIVisionProvider,
}


def create_vision_provider(settings: Settings) -> VisionExtractionProvider:
    """Create the vision provider named by ``settings.vision_provider``.

    Logs a warning if the provider is not available (e.g., missing API key).

    Raises:
        ValueError: If configured provider is unknown
    """
    provider_name = settings.vision_provider
    provider_class = VISION_PROVIDERS.get(provider_name)
    if provider_class is None:
        available = ", ".join(VISION_PROVIDERS)
        raise ValueError(
            f"Unknown vision provider: '{provider_name}'. Available providers: {available}"
        )

    provider = provider_class(settings)
    if not provider.is_available():
        logger.warning(
            f"Vision provider '{provider_name}' is not fully available. "
            f"Check configuration (e.g., API keys)."
        )

    logger.info(f"Created vision provider: {provider_name}")
    return provider
