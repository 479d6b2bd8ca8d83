"""Tax engine input and output models.

All amounts are exact ``Decimal`` values. Nothing is rounded until
``TaxComputationResult.rounded`` is called at the presentation boundary.
"""

from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from taxflow.extraction.schema import ExtractionResult


class TaxFacts(BaseModel):
    """Financial facts of one invoice that the tax engine consumes."""

    model_config = ConfigDict(frozen=True)

    subtotal: Decimal = Field(..., ge=0, description="Taxable base before IVA")
    supplier_tax_id: str = Field(..., min_length=1)
    buyer_tax_id: str = Field(..., min_length=1)
    issue_date: date
    currency: str = Field("COP", pattern=r"^[A-Z]{3}$")

    @classmethod
    def from_extraction(cls, extraction: ExtractionResult) -> "TaxFacts":
        return cls(
            subtotal=extraction.totals.subtotal,
            supplier_tax_id=extraction.supplier.tax_id,
            buyer_tax_id=extraction.buyer.tax_id,
            issue_date=extraction.issue_date,
            currency=extraction.totals.currency,
        )


class TaxComponent(BaseModel):
    """One computed tax or retention."""

    model_config = ConfigDict(frozen=True)

    rate: Decimal
    base_amount: Decimal
    tax_amount: Decimal
    rationale: str


class IvaResult(TaxComponent):
    exempt_amount: Decimal = Decimal("0")


class ReteIvaResult(TaxComponent):
    pass


class ReteFuenteResult(TaxComponent):
    concept: str = Field("", description="Retention concept, e.g. services or rent")


class IcaResult(TaxComponent):
    city_code: str
    activity: str | None = Field(None, description="ICA activity the rate was taken from")


class TaxComputationResult(BaseModel):
    """Complete, auditable tax computation for one invoice."""

    model_config = ConfigDict(frozen=True)

    subtotal: Decimal
    iva: IvaResult
    reteiva: ReteIvaResult
    retefuente: ReteFuenteResult
    ica: IcaResult
    total_taxes: Decimal
    total_retentions: Decimal
    net_amount: Decimal
    applied_rules: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()
    rule_set_version: str

    @model_validator(mode="after")
    def _check_aggregates(self) -> "TaxComputationResult":
        if self.total_taxes != self.iva.tax_amount + self.ica.tax_amount:
            raise ValueError("total_taxes must equal IVA + ICA")
        if self.total_retentions != self.reteiva.tax_amount + self.retefuente.tax_amount:
            raise ValueError("total_retentions must equal ReteIVA + ReteFuente")
        if self.net_amount != self.subtotal + self.total_taxes - self.total_retentions:
            raise ValueError("net_amount must equal subtotal + total_taxes - total_retentions")
        return self

    def rounded(self, places: int = 2) -> dict[str, Any]:
        """JSON-ready view with every amount rounded half-up to ``places``.

        Rates are left exact. Rounding each amount on its own may leave the
        aggregates off by a unit in the last place, so the rounded view is
        a plain dict rather than another validated result.
        """
        quantum = Decimal(1).scaleb(-places)

        def q(value: Decimal) -> str:
            return str(value.quantize(quantum, rounding=ROUND_HALF_UP))

        def component(result: TaxComponent) -> dict[str, Any]:
            data = result.model_dump(mode="json")
            data["rate"] = str(result.rate)
            data["base_amount"] = q(result.base_amount)
            data["tax_amount"] = q(result.tax_amount)
            if isinstance(result, IvaResult):
                data["exempt_amount"] = q(result.exempt_amount)
            return data

        return {
            "subtotal": q(self.subtotal),
            "iva": component(self.iva),
            "reteiva": component(self.reteiva),
            "retefuente": component(self.retefuente),
            "ica": component(self.ica),
            "total_taxes": q(self.total_taxes),
            "total_retentions": q(self.total_retentions),
            "net_amount": q(self.net_amount),
            "applied_rules": list(self.applied_rules),
            "warnings": list(self.warnings),
            "rule_set_version": self.rule_set_version,
        }
