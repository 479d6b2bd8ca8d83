"""Abstract base class for classification providers.

The classification capability is AI-backed, network-bound and
non-deterministic, so it lives behind this interface and never inside the
parser or tax engine.

Based on Strategy Pattern:
https://refactoring.guru/design-patterns/strategy/python
"""

import json
from abc import ABC, abstractmethod
from typing import Any

from pydantic import ValidationError

from taxflow.classification.schema import Classification, ContextHints
from taxflow.extraction.schema import ExtractionResult
from taxflow.shared.config import Settings
from taxflow.shared.errors import InvalidProviderResponseError

CLASSIFICATION_PROMPT = """You are a Colombian tax analyst classifying supplier invoices.

INVOICE:
{invoice_data}

CLIENT CONTEXT:
- Country: Colombia
- Tax regime: {tax_regime}
- Default city (DANE code): {default_city}

Return ONLY a JSON object with exactly these keys:
{{
  "expense_kind": "goods" | "services" | "professional_fees",
  "is_large_taxpayer": true | false | null,
  "city_code": "5-digit DANE code where ICA is generated, e.g. 11001 Bogota, 05001 Medellin, 76001 Cali",
  "expense_category": "specific category, e.g. office_supplies, professional_services, inventory, maintenance, utilities, rent, education",
  "confidence": 0.0-1.0,
  "rationale": "short reason, max 200 characters"
}}

Definitions:
- goods: tangible goods, inventory, raw materials
- services: technical services, consulting, maintenance
- professional_fees: fees of lawyers, doctors, architects and other professionals
- is_large_taxpayer refers to the supplier (Gran Contribuyente); use null if unknown
"""


class ClassificationProvider(ABC):
    """Abstract base class for invoice classification providers.

    Implementations raise ``ClassificationUnavailableError`` on provider
    error or timeout, ``ProviderAuthenticationError`` when credentials are
    rejected, and ``InvalidProviderResponseError`` when the answer fails
    :func:`validate_classification`.
    """

    def __init__(self, settings: Settings) -> None:
        """Initialize provider with settings.

        Args:
            settings: Application settings
        """
        self.settings = settings

    @abstractmethod
    def classify(self, facts: ExtractionResult, hints: ContextHints) -> Classification:
        """Classify an invoice for Colombian tax treatment.

        Args:
            facts: Extracted invoice facts
            hints: Tenant context

        Returns:
            Validated Classification
        """
        pass

    @abstractmethod
    def is_available(self) -> bool:
        """Check if this provider is available/configured."""
        pass

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Get provider name for logging/metrics."""
        pass


def build_classification_prompt(facts: ExtractionResult, hints: ContextHints) -> str:
    """Render the classification prompt for one invoice."""
    invoice_data = {
        "document_id": facts.document_id,
        "document_kind": facts.document_kind.value,
        "issue_date": facts.issue_date.isoformat(),
        "supplier": {
            "tax_id": facts.supplier.tax_id,
            "name": facts.supplier.name,
            "city": facts.supplier.city,
        },
        "buyer": {"tax_id": facts.buyer.tax_id, "name": facts.buyer.name},
        "totals": {
            "subtotal": str(facts.totals.subtotal),
            "tax_amount": str(facts.totals.tax_amount),
            "total_amount": str(facts.totals.total_amount),
            "currency": facts.totals.currency,
        },
        "line_items": [item.description for item in facts.line_items[:10]],
    }
    return CLASSIFICATION_PROMPT.format(
        invoice_data=json.dumps(invoice_data, indent=2, ensure_ascii=False),
        tax_regime=hints.tax_regime,
        default_city=hints.default_city,
    )


def validate_classification(payload: Any) -> Classification:
    """Validate a provider answer before anyone relies on it.

    Requires a non-empty expense kind and city code and a confidence in
    [0, 1]. An invalid answer is a stage failure, never silently accepted.

    Raises:
        InvalidProviderResponseError: Payload does not satisfy the contract
    """
    if not isinstance(payload, dict):
        raise InvalidProviderResponseError("Classification response is not a JSON object")
    if not payload.get("expense_kind") or not payload.get("city_code"):
        raise InvalidProviderResponseError(
            "Invalid classification response - missing expense_kind or city_code"
        )
    if payload.get("confidence") is None:
        raise InvalidProviderResponseError("Invalid classification response - missing confidence")

    # DANE codes lose their leading zero when a model emits them as numbers
    if isinstance(payload["city_code"], int):
        payload = {**payload, "city_code": f"{payload['city_code']:05d}"}

    try:
        return Classification.model_validate(payload)
    except ValidationError as e:
        raise InvalidProviderResponseError(f"Invalid classification response: {e}") from e
