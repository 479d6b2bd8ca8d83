"""Versioned Colombian tax rule configuration.

Rates, category sets, ICA tables and the large-taxpayer registry live in
``TaxRuleSet`` values with an effective date range. A ``RuleBook`` holds
several sets so an invoice can be recomputed under the rules in force on
its issue date. Rule books load from JSON; the built-in book carries the
2024 rates.
"""

import logging
from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import Protocol

from pydantic import BaseModel, ConfigDict, Field, model_validator

from taxflow.classification.schema import ExpenseKind

logger = logging.getLogger(__name__)


class IcaActivity:
    """ICA activity codes used as keys of ``IcaCityRates.per_thousand``."""

    COMMERCIAL = "commercial"
    INDUSTRIAL = "industrial"
    SERVICES = "services"
    FINANCIAL = "financial"


class IcaCityRates(BaseModel):
    """ICA rates for one municipality, per thousand, keyed by activity."""

    model_config = ConfigDict(frozen=True)

    name: str
    per_thousand: dict[str, Decimal]


class TaxRuleSet(BaseModel):
    """All rates and tables in force during one date range."""

    model_config = ConfigDict(frozen=True)

    version: str = Field(..., min_length=1)
    effective_from: date
    effective_until: date | None = Field(None, description="Inclusive end date; open if null")

    # IVA
    iva_standard_rate: Decimal = Decimal("0.19")
    iva_reduced_rate: Decimal = Decimal("0.05")
    iva_zero_rate: Decimal = Decimal("0")
    iva_exempt_categories: frozenset[str] = frozenset()
    iva_reduced_categories: frozenset[str] = frozenset()
    iva_export_categories: frozenset[str] = frozenset({"exports"})

    # Retentions
    reteiva_rate: Decimal = Decimal("0.15")
    retefuente_rates: dict[ExpenseKind, Decimal]
    retefuente_rent_rate: Decimal = Decimal("0.035")
    rent_category: str = "rent"

    # ICA, keyed by DANE municipality code
    ica_rates: dict[str, IcaCityRates] = Field(default_factory=dict)
    city_names: dict[str, str] = Field(default_factory=dict)

    # Retention agent heuristic inputs
    large_taxpayers: frozenset[str] = frozenset()
    government_prefixes: tuple[str, ...] = ("899999",)
    retention_agent_min_digits: int = Field(10, ge=1)

    @model_validator(mode="after")
    def _check_range(self) -> "TaxRuleSet":
        if self.effective_until is not None and self.effective_until < self.effective_from:
            raise ValueError("effective_until must not precede effective_from")
        return self

    def covers(self, day: date) -> bool:
        if day < self.effective_from:
            return False
        return self.effective_until is None or day <= self.effective_until

    def city_name(self, city_code: str) -> str:
        if city_code in self.ica_rates:
            return self.ica_rates[city_code].name
        return self.city_names.get(city_code, city_code)


class RuleBook(BaseModel):
    """Ordered collection of rule sets."""

    model_config = ConfigDict(frozen=True)

    rule_sets: tuple[TaxRuleSet, ...] = Field(..., min_length=1)

    @model_validator(mode="after")
    def _sort(self) -> "RuleBook":
        ordered = tuple(sorted(self.rule_sets, key=lambda rs: rs.effective_from))
        object.__setattr__(self, "rule_sets", ordered)
        return self

    def for_date(self, day: date) -> tuple[TaxRuleSet, str | None]:
        """Rule set in force on ``day``.

        When no set covers the date the closest one is returned together
        with a warning message instead of failing.
        """
        in_force = [rs for rs in self.rule_sets if rs.covers(day)]
        if in_force:
            return in_force[-1], None

        if day < self.rule_sets[0].effective_from:
            closest = self.rule_sets[0]
        else:
            closest = self.rule_sets[-1]
        return closest, (
            f"No tax rule set in force on {day.isoformat()}; "
            f"applied closest version {closest.version}"
        )

    @classmethod
    def from_file(cls, path: Path) -> "RuleBook":
        """Load a rule book from a JSON file.

        The file holds ``{"rule_sets": [...]}`` with the fields of
        ``TaxRuleSet``.
        """
        logger.info(f"Loading tax rule book from {path}")
        return cls.model_validate_json(Path(path).read_text(encoding="utf-8"))


class RetentionAgentPredicate(Protocol):
    """Decides whether a buyer must withhold taxes."""

    def __call__(self, tax_id: str, rules: TaxRuleSet) -> bool: ...


def heuristic_retention_agent(tax_id: str, rules: TaxRuleSet) -> bool:
    """Tax-id heuristic for retention agents.

    A buyer counts as a retention agent when its NIT is in the
    large-taxpayer registry, starts with a government-entity prefix, or
    has at least ``retention_agent_min_digits`` digits. This is an
    approximation of the DIAN registry; swap it out through the engine's
    ``is_retention_agent`` argument when a registry lookup is available.
    """
    return (
        tax_id in rules.large_taxpayers
        or any(tax_id.startswith(prefix) for prefix in rules.government_prefixes)
        or len(tax_id) >= rules.retention_agent_min_digits
    )


DEFAULT_RULE_SET = TaxRuleSet(
    version="CO-2024.1",
    effective_from=date(2024, 1, 1),
    iva_exempt_categories=frozenset(
        {"education", "health", "public_transport", "books"}
    ),
    iva_reduced_categories=frozenset({"basic_foods", "medicines", "agricultural_products"}),
    iva_export_categories=frozenset({"exports"}),
    retefuente_rates={
        ExpenseKind.SERVICES: Decimal("0.04"),
        ExpenseKind.PROFESSIONAL_FEES: Decimal("0.11"),
        ExpenseKind.GOODS: Decimal("0.025"),
    },
    ica_rates={
        "11001": IcaCityRates(
            name="Bogotá D.C.",
            per_thousand={
                IcaActivity.COMMERCIAL: Decimal("4.14"),
                IcaActivity.INDUSTRIAL: Decimal("4.14"),
                IcaActivity.SERVICES: Decimal("9.66"),
                IcaActivity.FINANCIAL: Decimal("4.14"),
            },
        ),
        "05001": IcaCityRates(
            name="Medellín",
            per_thousand={
                IcaActivity.COMMERCIAL: Decimal("4"),
                IcaActivity.INDUSTRIAL: Decimal("4"),
                IcaActivity.SERVICES: Decimal("7"),
                IcaActivity.FINANCIAL: Decimal("4"),
            },
        ),
        "76001": IcaCityRates(
            name="Cali",
            per_thousand={
                IcaActivity.COMMERCIAL: Decimal("2"),
                IcaActivity.INDUSTRIAL: Decimal("2"),
                IcaActivity.SERVICES: Decimal("5"),
                IcaActivity.FINANCIAL: Decimal("2"),
            },
        ),
    },
    city_names={
        "08001": "Barranquilla",
        "13001": "Cartagena",
        "68001": "Bucaramanga",
        "66001": "Pereira",
        "52001": "Pasto",
        "63001": "Armenia",
        "17001": "Manizales",
    },
    large_taxpayers=frozenset(
        {
            "860066942",  # Ecopetrol
            "890903938",  # Banco de Bogotá
            "860028462",  # Bancolombia
            "860034313",  # Davivienda
        }
    ),
)

DEFAULT_RULE_BOOK = RuleBook(rule_sets=(DEFAULT_RULE_SET,))


def load_rule_book(path: Path | None) -> RuleBook:
    """Rule book from ``path``, or the built-in one when no path is set."""
    if path is None:
        return DEFAULT_RULE_BOOK
    return RuleBook.from_file(path)
