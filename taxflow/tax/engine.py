"""Colombian tax calculation engine.

Computes IVA, ReteIVA, ReteFuente and ICA for one invoice, in that order,
from its financial facts and classification. The engine is pure: no I/O,
no clock, no rounding. Missing configuration degrades to a zeroed
component plus a warning instead of an exception.

References:
- Estatuto Tributario, arts. 420, 437-1, 468, 468-1, 392
- Municipal ICA agreements (Bogotá, Medellín, Cali)
"""

import logging
import warnings
from decimal import Decimal

from taxflow.classification.schema import Classification, ExpenseKind
from taxflow.extraction.schema import ExtractionResult
from taxflow.shared.errors import ConfigurationGapWarning, TaxInputError
from taxflow.tax.rules import (
    DEFAULT_RULE_BOOK,
    IcaActivity,
    RetentionAgentPredicate,
    RuleBook,
    TaxRuleSet,
    heuristic_retention_agent,
)
from taxflow.tax.schema import (
    IcaResult,
    IvaResult,
    ReteFuenteResult,
    ReteIvaResult,
    TaxComputationResult,
    TaxFacts,
)

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
PER_THOUSAND = Decimal("1000")

RETEFUENTE_RULES = {
    ExpenseKind.SERVICES: "RETEFUENTE_SERVICES",
    ExpenseKind.PROFESSIONAL_FEES: "RETEFUENTE_PROFESSIONAL",
    ExpenseKind.GOODS: "RETEFUENTE_GOODS",
}

ICA_ACTIVITIES = {
    ExpenseKind.SERVICES: IcaActivity.SERVICES,
    ExpenseKind.PROFESSIONAL_FEES: IcaActivity.SERVICES,
    ExpenseKind.GOODS: IcaActivity.COMMERCIAL,
}


def _percent(rate: Decimal) -> str:
    return f"{(rate * 100).normalize():f}%"


class TaxCalculator:
    """Applies one rule book to invoices.

    Args:
        rule_book: Versioned rate tables; defaults to the built-in book
        is_retention_agent: Predicate deciding whether the buyer withholds
    """

    def __init__(
        self,
        rule_book: RuleBook | None = None,
        is_retention_agent: RetentionAgentPredicate | None = None,
    ) -> None:
        self.rule_book = rule_book or DEFAULT_RULE_BOOK
        self.is_retention_agent = is_retention_agent or heuristic_retention_agent

    def calculate(
        self, facts: TaxFacts | ExtractionResult, classification: Classification
    ) -> TaxComputationResult:
        """Compute all four taxes for one invoice.

        Raises:
            TaxInputError: Inputs are not TaxFacts/ExtractionResult and Classification
        """
        if isinstance(facts, ExtractionResult):
            facts = TaxFacts.from_extraction(facts)
        if not isinstance(facts, TaxFacts):
            raise TaxInputError(f"Expected TaxFacts, got {type(facts).__name__}")
        if not isinstance(classification, Classification):
            raise TaxInputError(
                f"Expected Classification, got {type(classification).__name__}"
            )

        applied_rules: list[str] = []
        gaps: list[str] = []

        rules, date_gap = self.rule_book.for_date(facts.issue_date)
        if date_gap:
            self._report_gap(date_gap, gaps)

        buyer_is_agent = self.is_retention_agent(facts.buyer_tax_id, rules)

        iva = self._iva(facts, classification, rules, applied_rules)
        reteiva = self._reteiva(iva, buyer_is_agent, rules, applied_rules)
        retefuente = self._retefuente(
            facts, classification, buyer_is_agent, rules, applied_rules, gaps
        )
        ica = self._ica(facts, classification, rules, applied_rules, gaps)

        total_taxes = iva.tax_amount + ica.tax_amount
        total_retentions = reteiva.tax_amount + retefuente.tax_amount

        return TaxComputationResult(
            subtotal=facts.subtotal,
            iva=iva,
            reteiva=reteiva,
            retefuente=retefuente,
            ica=ica,
            total_taxes=total_taxes,
            total_retentions=total_retentions,
            net_amount=facts.subtotal + total_taxes - total_retentions,
            applied_rules=tuple(applied_rules),
            warnings=tuple(gaps),
            rule_set_version=rules.version,
        )

    def _iva(
        self,
        facts: TaxFacts,
        classification: Classification,
        rules: TaxRuleSet,
        applied_rules: list[str],
    ) -> IvaResult:
        category = classification.expense_category
        subtotal = facts.subtotal

        if category in rules.iva_exempt_categories:
            applied_rules.append("IVA_EXEMPT_CATEGORY")
            return IvaResult(
                rate=ZERO,
                base_amount=ZERO,
                tax_amount=ZERO,
                exempt_amount=subtotal,
                rationale=f"Category '{category}' is exempt from IVA",
            )

        if category in rules.iva_reduced_categories:
            rate = rules.iva_reduced_rate
            rule = "IVA_REDUCED_RATE"
            rationale = f"Category '{category}' is taxed at the reduced rate of {_percent(rate)}"
        elif category in rules.iva_export_categories:
            rate = rules.iva_zero_rate
            rule = "IVA_EXPORT_ZERO_RATE"
            rationale = "Exports are zero-rated"
        else:
            rate = rules.iva_standard_rate
            rule = "IVA_STANDARD_RATE"
            rationale = f"Standard IVA rate of {_percent(rate)}"

        applied_rules.append(rule)
        return IvaResult(
            rate=rate,
            base_amount=subtotal,
            tax_amount=subtotal * rate,
            exempt_amount=ZERO,
            rationale=rationale,
        )

    def _reteiva(
        self,
        iva: IvaResult,
        buyer_is_agent: bool,
        rules: TaxRuleSet,
        applied_rules: list[str],
    ) -> ReteIvaResult:
        if iva.tax_amount > 0 and buyer_is_agent:
            applied_rules.append("RETEIVA_STANDARD")
            return ReteIvaResult(
                rate=rules.reteiva_rate,
                base_amount=iva.tax_amount,
                tax_amount=iva.tax_amount * rules.reteiva_rate,
                rationale=f"ReteIVA of {_percent(rules.reteiva_rate)} withheld on IVA",
            )

        if iva.tax_amount <= 0:
            rationale = "No IVA charged, so there is nothing to withhold"
        else:
            rationale = "Buyer is not a retention agent"
        applied_rules.append("RETEIVA_NOT_APPLICABLE")
        return ReteIvaResult(
            rate=ZERO,
            base_amount=iva.tax_amount,
            tax_amount=ZERO,
            rationale=rationale,
        )

    def _retefuente(
        self,
        facts: TaxFacts,
        classification: Classification,
        buyer_is_agent: bool,
        rules: TaxRuleSet,
        applied_rules: list[str],
        gaps: list[str],
    ) -> ReteFuenteResult:
        if not buyer_is_agent:
            applied_rules.append("RETEFUENTE_NOT_APPLICABLE")
            return ReteFuenteResult(
                rate=ZERO,
                base_amount=ZERO,
                tax_amount=ZERO,
                concept="",
                rationale="Buyer is not a retention agent",
            )

        kind = classification.expense_kind
        if classification.expense_category == rules.rent_category:
            rate = rules.retefuente_rent_rate
            rule = "RETEFUENTE_RENT"
            concept = "rent"
        elif kind not in rules.retefuente_rates:
            message = f"No ReteFuente rate configured for {kind.value} in {rules.version}"
            self._report_gap(message, gaps)
            applied_rules.append("RETEFUENTE_RATE_NOT_CONFIGURED")
            return ReteFuenteResult(
                rate=ZERO,
                base_amount=ZERO,
                tax_amount=ZERO,
                concept=kind.value,
                rationale=message,
            )
        else:
            rate = rules.retefuente_rates[kind]
            rule = RETEFUENTE_RULES[kind]
            concept = kind.value

        applied_rules.append(rule)
        return ReteFuenteResult(
            rate=rate,
            base_amount=facts.subtotal,
            tax_amount=facts.subtotal * rate,
            concept=concept,
            rationale=f"ReteFuente for {concept.replace('_', ' ')}: {_percent(rate)}",
        )

    def _ica(
        self,
        facts: TaxFacts,
        classification: Classification,
        rules: TaxRuleSet,
        applied_rules: list[str],
        gaps: list[str],
    ) -> IcaResult:
        city_code = classification.city_code
        activity = ICA_ACTIVITIES[classification.expense_kind]
        city = rules.ica_rates.get(city_code)

        if city is None or activity not in city.per_thousand:
            city_label = rules.city_name(city_code)
            if city_label != city_code:
                city_label = f"{city_label} ({city_code})"
            if city is None:
                message = f"No ICA rates configured for city {city_label}"
            else:
                message = f"No ICA rate configured for activity '{activity}' in city {city_label}"
            self._report_gap(message, gaps)
            applied_rules.append("ICA_CITY_NOT_CONFIGURED")
            return IcaResult(
                rate=ZERO,
                base_amount=ZERO,
                tax_amount=ZERO,
                city_code=city_code,
                activity=activity,
                rationale=message,
            )

        per_thousand = city.per_thousand[activity]
        applied_rules.append(
            "ICA_SERVICES" if activity == IcaActivity.SERVICES else "ICA_COMMERCIAL"
        )
        return IcaResult(
            rate=per_thousand / PER_THOUSAND,
            base_amount=facts.subtotal,
            tax_amount=facts.subtotal * per_thousand / PER_THOUSAND,
            city_code=city_code,
            activity=activity,
            rationale=f"ICA {city.name} ({activity}): {per_thousand.normalize():f} per thousand",
        )

    @staticmethod
    def _report_gap(message: str, gaps: list[str]) -> None:
        gaps.append(message)
        logger.warning(message)
        warnings.warn(message, ConfigurationGapWarning, stacklevel=4)


def calculate_taxes(
    facts: TaxFacts | ExtractionResult,
    classification: Classification,
    *,
    rule_book: RuleBook | None = None,
    is_retention_agent: RetentionAgentPredicate | None = None,
) -> TaxComputationResult:
    """Compute IVA, ReteIVA, ReteFuente and ICA for one invoice.

    Args:
        facts: Invoice financial facts (an ExtractionResult is converted)
        classification: Validated classification of the invoice
        rule_book: Rule book to use; the built-in one when omitted
        is_retention_agent: Buyer predicate; the tax-id heuristic when omitted

    Returns:
        Exact, unrounded TaxComputationResult
    """
    calculator = TaxCalculator(rule_book=rule_book, is_retention_agent=is_retention_agent)
    return calculator.calculate(facts, classification)
