"""Tax classification models.

A classification is produced by an external, non-deterministic capability
and consumed read-only by the tax engine.
"""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator


class ExpenseKind(str, Enum):
    """Expense kinds that drive ReteFuente and ICA activity."""

    GOODS = "goods"
    SERVICES = "services"
    PROFESSIONAL_FEES = "professional_fees"


class Classification(BaseModel):
    """Colombian tax classification of one invoice."""

    model_config = ConfigDict(frozen=True)

    expense_kind: ExpenseKind
    is_large_taxpayer: bool | None = Field(
        None, description="Supplier is a Gran Contribuyente (null if unknown)"
    )
    city_code: str = Field(..., min_length=1, description="DANE municipality code for ICA")
    expense_category: str = Field(
        "", description="Specific category, e.g. office_supplies, professional_services, rent"
    )
    confidence: float = Field(..., ge=0, le=1)
    rationale: str = ""

    @field_validator("city_code", "expense_category")
    @classmethod
    def _strip(cls, value: str, info: ValidationInfo) -> str:
        value = value.strip()
        if info.field_name == "city_code" and not value:
            raise ValueError("city_code must not be blank")
        return value


class ContextHints(BaseModel):
    """Tenant context passed along with the invoice to the classifier."""

    model_config = ConfigDict(frozen=True)

    tax_regime: str = "Régimen Ordinario"
    default_city: str = "11001"
