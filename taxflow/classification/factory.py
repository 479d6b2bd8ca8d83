"""Classification provider selection.

``Settings.classification_provider`` names one of ``CLASSIFICATION_PROVIDERS``;
the provider is built from the same settings.
"""

import logging

from taxflow.classification.base import ClassificationProvider
from taxflow.classification.ollama_provider import OllamaClassificationProvider
from taxflow.classification.openai_provider import OpenAIClassificationProvider
from taxflow.shared.config import Settings

logger = logging.getLogger(__name__)

CLASSIFICATION_PROVIDERS: dict[str, type[ClassificationProvider]] = {
    "openai": OpenAIClassificationProvider,
    "ollama": OllamaClassificationProvider,
}


def create_classification_provider(settings: Settings) -> ClassificationProvider:
    """Create the classification provider named in settings.

    Logs a warning if the provider is not available (e.g., missing API key
    or unreachable Ollama server); the first call will then fail with a
    provider error.

    Args:
        settings: Application settings with classification_provider field

    Returns:
        Configured classification provider instance

    Raises:
        ValueError: If configured provider is unknown
    """
    provider_name = settings.classification_provider
    provider_class = CLASSIFICATION_PROVIDERS.get(provider_name)
    if provider_class is None:
        available = ", ".join(CLASSIFICATION_PROVIDERS)
        raise ValueError(
            f"Unknown classification provider: '{provider_name}'. "
            f"Available providers: {available}"
        )

    provider = provider_class(settings)
    if not provider.is_available():
        logger.warning(
            f"Classification provider '{provider_name}' is not fully available. "
            f"Check configuration (e.g., API keys, Ollama host)."
        )

    logger.info(f"Created classification provider: {provider_name}")
    return provider
