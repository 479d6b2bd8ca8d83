"""OpenAI-based vision provider for scanned invoices.

Sends the image to a vision-capable chat model and asks for a JSON object
shaped like ``ExtractionResult``. Includes retry logic with exponential
backoff for transient API errors; authentication failures are not retried.
"""

import base64
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

from taxflow.extraction.base import (
    SUPPORTED_IMAGE_TYPES,
    VisionExtractionProvider,
    validate_vision_payload,
)
from taxflow.extraction.schema import ExtractionResult
from taxflow.shared.config import Settings
from taxflow.shared.errors import (
    InvalidProviderResponseError,
    ProviderAuthenticationError,
    VisionExtractionError,
)

logger = logging.getLogger(__name__)

TRANSIENT_ERRORS = (openai.APIConnectionError, openai.RateLimitError, openai.InternalServerError)

VISION_PROMPT = """You extract data from Colombian supplier invoices (facturas).
Read the invoice image and return ONLY a JSON object with this shape:

{
  "document_id": "invoice number",
  "issue_date": "YYYY-MM-DD",
  "due_date": "YYYY-MM-DD or null",
  "fiscal_code": "CUFE if visible, else null",
  "supplier": {"tax_id": "NIT without check digit", "name": "string",
               "address": "string or null", "city": "string or null",
               "phone": "string or null", "email": "string or null"},
  "buyer": {"tax_id": "NIT without check digit", "name": "string",
            "address": "string or null", "city": "string or null"},
  "totals": {"subtotal": number, "tax_amount": number, "discount_amount": number,
             "total_amount": number, "currency": "COP"},
  "line_items": [{"description": "string", "quantity": number,
                  "unit_price": number, "line_total": number}],
  "confidence": 0.0-1.0
}

Rules:
- At most 10 line items.
- Amounts are plain numbers: "1.190.000,00" -> 1190000.00
- Use null for anything not clearly visible.
"""


class OpenAIVisionProvider(VisionExtractionProvider):
    """OpenAI vision provider.

    Requires OPENAI_API_KEY environment variable.
    """

    def __init__(self, settings: Settings) -> None:
        """Initialize OpenAI vision provider.

        Args:
            settings: Application settings
        """
        super().__init__(settings)
        self._client: OpenAI | None = None
        self._model = settings.openai_vision_model

    @property
    def provider_name(self) -> str:
        return "openai"

    def is_available(self) -> bool:
        """Check if OpenAI API key is configured."""
        return os.getenv("OPENAI_API_KEY") is not None

    def extract(self, image_bytes: bytes, mime_type: str) -> ExtractionResult:
        """Extract structured invoice data from an image using OpenAI.

        Args:
            image_bytes: Raw image bytes
            mime_type: MIME type of the image

        Returns:
            Validated ExtractionResult

        Raises:
            ProviderAuthenticationError: API key missing or rejected
            VisionExtractionError: API failed after retries
            InvalidProviderResponseError: Response is not usable invoice JSON
        """
        if not self.is_available():
            raise ProviderAuthenticationError("OPENAI_API_KEY environment variable not set")
        if not image_bytes:
            raise InvalidProviderResponseError("Empty image provided", retryable=False)
        if mime_type not in SUPPORTED_IMAGE_TYPES:
            raise InvalidProviderResponseError(
                f"Unsupported image type: {mime_type}", retryable=False
            )

        api_key = os.getenv("OPENAI_API_KEY")
        if self._client is None or self._client.api_key != api_key:
            self._client = OpenAI(api_key=api_key)

        data_url = f"data:{mime_type};base64,{base64.b64encode(image_bytes).decode('ascii')}"

        try:
            response = self._call_openai_with_retry(data_url)
        except (openai.AuthenticationError, openai.PermissionDeniedError) as e:
            raise ProviderAuthenticationError(f"OpenAI rejected credentials: {e}") from e
        except openai.OpenAIError as e:
            raise VisionExtractionError(f"Vision extraction failed: {e}") from e

        content = response.choices[0].message.content
        if not content:
            raise InvalidProviderResponseError("No content in vision API response")

        try:
            payload = json.loads(content)
        except json.JSONDecodeError as e:
            raise InvalidProviderResponseError(f"Vision response is not JSON: {e}") from e

        result = validate_vision_payload(payload)
        logger.info(
            f"Vision extraction produced invoice {result.document_id} "
            f"(confidence {result.confidence})"
        )
        return result

    @retry(
        retry=retry_if_exception_type(TRANSIENT_ERRORS),
        wait=wait_exponential_jitter(initial=1, max=30),
        stop=stop_after_attempt(3),
        reraise=True,
    )
    def _call_openai_with_retry(self, data_url: str) -> Any:
        """Call OpenAI API with retry logic for transient errors.

        Args:
            data_url: Base64 data URL of the image

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
                    "content": "You are an invoice data extraction assistant. Reply with JSON only.",
                },
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": VISION_PROMPT},
                        {"type": "image_url", "image_url": {"url": data_url, "detail": "high"}},
                    ],
                },
            ],
            response_format={"type": "json_object"},
            temperature=0,
            max_tokens=2000,
        )
