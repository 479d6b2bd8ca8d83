"""Ollama-based classification provider for self-hosted LLM inference.

Uses a local Ollama server so invoice data never leaves the premises.

Requires Ollama server running on localhost:11434.
See: https://ollama.ai/
"""

import json
import logging
import re
from typing import Any

import httpx
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


class _ServerError(Exception):
    """5xx from Ollama; retried."""


class OllamaClassificationProvider(ClassificationProvider):
    """Ollama-based classification provider.

    Supports models like Qwen2.5, Llama3, Mistral.
    """

    def __init__(self, settings: Settings) -> None:
        """Initialize Ollama classification provider.

        Args:
            settings: Application settings
        """
        super().__init__(settings)
        self._base_url = settings.ollama_base_url
        self._model = settings.ollama_model
        self._client = httpx.Client(timeout=settings.classification_timeout_seconds)

    @property
    def provider_name(self) -> str:
        return "ollama"

    def is_available(self) -> bool:
        """Check if Ollama server is running and model is available.

        Returns:
            True if Ollama server responds and model is loaded
        """
        try:
            response = self._client.get(f"{self._base_url}/api/tags")
            if response.status_code != 200:
                return False
            models = response.json().get("models", [])
            model_names = [m.get("name", "").split(":")[0] for m in models]
            return self._model.split(":")[0] in model_names
        except httpx.HTTPError:
            return False

    def classify(self, facts: ExtractionResult, hints: ContextHints) -> Classification:
        """Classify an invoice using Ollama.

        Raises:
            ProviderAuthenticationError: Server rejected the request (401/403)
            ClassificationUnavailableError: Server unreachable or failing after retries
            InvalidProviderResponseError: Response failed validation
        """
        prompt = build_classification_prompt(facts, hints)

        try:
            response_text = self._call_ollama_with_retry(prompt)
        except httpx.HTTPStatusError as e:
            if e.response.status_code in (401, 403):
                raise ProviderAuthenticationError(f"Ollama rejected the request: {e}") from e
            raise ClassificationUnavailableError(f"Classification failed: {e}") from e
        except (httpx.HTTPError, _ServerError) as e:
            raise ClassificationUnavailableError(f"Classification failed: {e}") from e

        try:
            payload = self._parse_json_response(response_text)
        except json.JSONDecodeError as e:
            logger.warning(f"Failed to parse JSON from Ollama response: {e}")
            raise InvalidProviderResponseError(f"JSON parsing failed: {e}") from e

        return validate_classification(payload)

    @retry(
        retry=retry_if_exception_type((httpx.TransportError, _ServerError)),
        wait=wait_exponential_jitter(initial=1, max=30),
        stop=stop_after_attempt(3),
        reraise=True,
    )
    def _call_ollama_with_retry(self, prompt: str) -> str:
        """Call Ollama API with retry logic for transient errors.

        Args:
            prompt: Classification prompt for the LLM

        Returns:
            Raw response text from Ollama
        """
        response = self._client.post(
            f"{self._base_url}/api/generate",
            json={
                "model": self._model,
                "prompt": prompt,
                "stream": False,
                "format": "json",
                "options": {
                    "temperature": 0,  # Deterministic output
                    "num_predict": 512,
                },
            },
        )
        if response.status_code >= 500:
            raise _ServerError(f"Ollama returned {response.status_code}")
        response.raise_for_status()
        result: str = response.json().get("response", "")
        return result

    def _parse_json_response(self, response_text: str) -> dict[str, Any]:
        """Extract and parse JSON from LLM response.

        Handles common LLM quirks like markdown code blocks.

        Raises:
            json.JSONDecodeError: If no valid JSON found
        """
        json_match = re.search(r"```(?:json)?\s*([\s\S]*?)```", response_text)
        if json_match:
            result: dict[str, Any] = json.loads(json_match.group(1).strip())
            return result

        json_match = re.search(r"\{[\s\S]*\}", response_text)
        if json_match:
            result = json.loads(json_match.group(0))
            return result

        result = json.loads(response_text.strip())
        return result
