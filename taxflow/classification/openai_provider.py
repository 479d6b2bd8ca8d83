"""OpenAI-based classification provider.

Uses the chat completions API in JSON mode to classify invoices for
Colombian tax treatment. Includes retry logic with exponential backoff
for transient API errors.
"""

import json
import logging
import os
from typing import Any

import openai
from openai import OpenAI
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from taxflow.classification.base import (
    ClassificationProvider,
    build_classification_prompt,
    validate_classification,
)
from taxflow.classification.schema import Classification, ContextHints
from taxflow.extraction.schema import ExtractionResult
from taxflow.shared.config import Settings
from taxflow.shared.errors import (
    ClassificationUnavailableError,
    InvalidProviderResponseError,
    ProviderAuthenticationError,
)

logger = logging.getLogger(__name__)

TRANSIENT_ERRORS = (openai.APIConnectionError, openai.RateLimitError, openai.InternalServerError)


class OpenAIClassificationProvider(ClassificationProvider):
    """OpenAI classification provider.

    Requires OPENAI_API_KEY environment variable.
    """

    def __init__(self, settings: Settings) -> None:
        """Initialize OpenAI classification provider.

        Args:
            settings: Application settings
        """
        super().__init__(settings)
        self._client: OpenAI | None = None
        self._model = settings.openai_classification_model

    @property
    def provider_name(self) -> str:
        """Get provider name for logging/metrics.

        Returns:
            Provider identifier 'openai'
        """
        return "openai"

    def is_available(self) -> bool:
        """Check if OpenAI API key is configured.

        Returns:
            True if OPENAI_API_KEY environment variable is set
        """
        return os.getenv("OPENAI_API_KEY") is not None

    def classify(self, facts: ExtractionResult, hints: ContextHints) -> Classification:
        """Classify an invoice using OpenAI.

        Args:
            facts: Extracted invoice facts
            hints: Tenant context

        Returns:
            Validated Classification

        Raises:
            ProviderAuthenticationError: API key missing or rejected
            ClassificationUnavailableError: API failed after retries
            InvalidProviderResponseError: Response failed validation
        """
        if not self.is_available():
            raise ProviderAuthenticationError("OPENAI_API_KEY environment variable not set")

        api_key = os.getenv("OPENAI_API_KEY")
        if self._client is None or self._client.api_key != api_key:
            self._client = OpenAI(api_key=api_key)

        prompt = build_classification_prompt(facts, hints)

        try:
            response = self._call_openai_with_retry(prompt)
        except (openai.AuthenticationError, openai.PermissionDeniedError) as e:
            raise ProviderAuthenticationError(f"OpenAI rejected credentials: {e}") from e
        except openai.OpenAIError as e:
            raise ClassificationUnavailableError(f"Classification failed: {e}") from e

        content = response.choices[0].message.content
        if not content:
            raise InvalidProviderResponseError("No content in classification API response")

        try:
            payload = json.loads(content)
        except json.JSONDecodeError as e:
            raise InvalidProviderResponseError(f"Classification response is not JSON: {e}") from e

        classification = validate_classification(payload)
        logger.info(
            f"Classified invoice {facts.document_id} as {classification.expense_kind.value} "
            f"(confidence {classification.confidence})"
        )
        return classification

    @retry(
        retry=retry_if_exception_type(TRANSIENT_ERRORS),
        wait=wait_exponential_jitter(initial=1, max=30),
        stop=stop_after_attempt(3),
        reraise=True,
    )
    def _call_openai_with_retry(self, prompt: str) -> Any:
        """Call OpenAI API with retry logic for transient errors.

        Retries up to 3 times on connection errors, rate limits and 5xx
        responses with exponential backoff and jitter.

        Args:
            prompt: Classification prompt

        Returns:
            OpenAI API response
        """
        if self._client is None:
            raise RuntimeError("OpenAI client not initialized")

        return self._client.chat.completions.create(
            model=self._model,
            messages=[
                {
                    "role": "system",
                    "content": "You are a Colombian tax analyst. Reply with valid JSON only.",
                },
                {"role": "user", "content": prompt},
            ],
            response_format={"type": "json_object"},
            temperature=0,  # Deterministic output
            max_tokens=500,
        )
