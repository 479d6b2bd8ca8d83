"""Invoice data models for structured extraction.

Shapes follow the UBL 2.1 invoice family as used by Colombian electronic
invoicing (DIAN). Results are immutable once built.
"""

from datetime import date
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator


class DocumentKind(str, Enum):
    """Electronic document types recognised by the parser."""

    INVOICE = "invoice"
    CREDIT_NOTE = "credit_note"
    DEBIT_NOTE = "debit_note"


class SourceFormat(str, Enum):
    """Where an extraction result came from."""

    XML_UBL = "xml_ubl"
    IMAGE_OCR = "image_ocr"


class Party(BaseModel):
    """Supplier or buyer of an invoice."""

    model_config = ConfigDict(frozen=True)

    tax_id: str = Field(..., min_length=1, description="NIT, digits only")
    name: str = Field(..., min_length=1, description="Legal or trade name")
    address: str | None = Field(None, description="Street address assembled from parts")
    city: str | None = Field(None, description="City name")
    phone: str | None = Field(None, description="Contact phone")
    email: str | None = Field(None, description="Contact e-mail")

    @field_validator("tax_id")
    @classmethod
    def _digits_only(cls, value: str) -> str:
        if not value.isdigit():
            raise ValueError("tax_id must contain digits only")
        return value


class LineItem(BaseModel):
    """One invoice line."""

    model_config = ConfigDict(frozen=True)

    line_number: int = Field(..., ge=1)
    item_code: str | None = None
    description: str
    quantity: Decimal = Field(..., ge=0)
    unit_of_measure: str | None = None
    unit_price: Decimal
    line_total: Decimal = Field(..., ge=0)
    tax_rate: Decimal = Decimal("0")
    tax_amount: Decimal = Decimal("0")
    discount_rate: Decimal = Decimal("0")
    discount_amount: Decimal = Decimal("0")


class MonetaryTotals(BaseModel):
    """Document-level monetary totals."""

    model_config = ConfigDict(frozen=True)

    subtotal: Decimal = Field(..., ge=0, description="Line extension total before tax")
    tax_amount: Decimal = Field(..., description="Tax total")
    discount_amount: Decimal = Field(Decimal("0"), description="Allowance total")
    total_amount: Decimal = Field(..., ge=0, description="Payable amount")
    currency: str = Field("COP", pattern=r"^[A-Z]{3}$", description="ISO 4217 code")


class ExtractionResult(BaseModel):
    """Structured financial facts extracted from one document.

    Created once per document and never mutated afterwards.
    """

    model_config = ConfigDict(frozen=True)

    document_id: str = Field(..., min_length=1, description="Invoice number")
    document_kind: DocumentKind
    fiscal_code: str | None = Field(None, description="CUFE / CUDE unique fiscal code")
    issue_date: date
    due_date: date | None = None
    supplier: Party
    buyer: Party
    totals: MonetaryTotals
    line_items: tuple[LineItem, ...] = ()
    confidence: float = Field(..., ge=0, le=1, description="Completeness score (0-1)")
    source_format: SourceFormat = SourceFormat.XML_UBL

    def needs_review(self, threshold: float) -> bool:
        """Whether the extraction is too incomplete to skip human review."""
        return self.confidence < threshold
