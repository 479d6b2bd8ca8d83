"""Abstract base class for vision extraction providers.

Scanned invoices (images, PDFs) cannot go through the deterministic UBL
parser; a vision-capable model extracts the same ``ExtractionResult``
instead. Enables switching between providers while keeping one interface.

Based on Strategy Pattern:
https://refactoring.guru/design-patterns/strategy/python
"""

from abc import ABC, abstractmethod
from typing import Any

from pydantic import ValidationError

from taxflow.extraction.schema import ExtractionResult, SourceFormat
from taxflow.shared.config import Settings
from taxflow.shared.errors import InvalidProviderResponseError

SUPPORTED_IMAGE_TYPES = frozenset(
    {"image/jpeg", "image/jpg", "image/png", "image/webp", "application/pdf"}
)


class VisionExtractionProvider(ABC):
    """Abstract base class for image invoice extraction providers.

    All vision providers must implement this interface. Implementations
    raise ``VisionExtractionError`` on provider failure and
    ``InvalidProviderResponseError`` when the payload fails validation.
    """

    def __init__(self, settings: Settings) -> None:
        """Initialize provider with settings.

        Args:
            settings: Application settings
        """
        self.settings = settings

    @abstractmethod
    def extract(self, image_bytes: bytes, mime_type: str) -> ExtractionResult:
        """Extract structured invoice data from an image.

        Args:
            image_bytes: Raw image or PDF bytes
            mime_type: MIME type of the bytes

        Returns:
            Validated ExtractionResult with source_format image_ocr
        """
        pass

    @abstractmethod
    def is_available(self) -> bool:
        """Check if this provider is available/configured.

        Returns:
            True if provider can be used, False otherwise
        """
        pass

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Get provider name for logging/metrics.

        Returns:
            Provider identifier (e.g., 'openai')
        """
        pass


def validate_vision_payload(payload: dict[str, Any]) -> ExtractionResult:
    """Turn a provider's JSON payload into a validated ExtractionResult.

    Mandatory: invoice number, supplier tax id and a non-zero total. The
    tax id is normalised to digits only, the same way the UBL parser does.

    Raises:
        InvalidProviderResponseError: Payload is incomplete or malformed
    """
    if not isinstance(payload, dict):
        raise InvalidProviderResponseError("Vision response is not a JSON object")

    totals = payload.get("totals") or {}
    supplier = payload.get("supplier") or {}
    if not payload.get("document_id") or not supplier.get("tax_id") or not totals.get(
        "total_amount"
    ):
        raise InvalidProviderResponseError(
            "Invalid vision response - missing document_id, supplier.tax_id or total_amount"
        )

    normalised = dict(payload)
    for role in ("supplier", "buyer"):
        party = dict(normalised.get(role) or {})
        party["tax_id"] = "".join(ch for ch in str(party.get("tax_id", "")) if ch.isdigit())
        normalised[role] = party
    normalised["line_items"] = [
        {**item, "line_number": index}
        for index, item in enumerate(normalised.get("line_items") or [], start=1)
    ]
    normalised.setdefault("document_kind", "invoice")
    normalised["source_format"] = SourceFormat.IMAGE_OCR

    try:
        return ExtractionResult.model_validate(normalised)
    except ValidationError as e:
        raise InvalidProviderResponseError(f"Invalid vision response: {e}") from e
