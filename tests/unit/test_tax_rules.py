"""Unit tests for versioned tax rule configuration."""

from datetime import date
from decimal import Decimal
from pathlib import Path

import pytest
from pydantic import ValidationError

from taxflow.classification.schema import ExpenseKind
from taxflow.tax.rules import (
    DEFAULT_RULE_BOOK,
    DEFAULT_RULE_SET,
    IcaActivity,
    RuleBook,
    TaxRuleSet,
    heuristic_retention_agent,
    load_rule_book,
)


@pytest.fixture
def two_year_book() -> RuleBook:
    """Rule book with a closed 2024 set and an open 2025 set."""
    first = DEFAULT_RULE_SET.model_copy(update={"effective_until": date(2024, 12, 31)})
    second = DEFAULT_RULE_SET.model_copy(
        update={"version": "CO-2025.1", "effective_from": date(2025, 1, 1)}
    )
    return RuleBook(rule_sets=(second, first))


class TestTaxRuleSet:
    """Test a single rule set."""

    def test_defaults(self) -> None:
        """Built-in set should carry the 2024 rates."""
        assert DEFAULT_RULE_SET.iva_standard_rate == Decimal("0.19")
        assert DEFAULT_RULE_SET.retefuente_rates[ExpenseKind.PROFESSIONAL_FEES] == Decimal("0.11")
        bogota = DEFAULT_RULE_SET.ica_rates["11001"]
        assert bogota.per_thousand[IcaActivity.SERVICES] == Decimal("9.66")

    def test_covers_inclusive_range(self) -> None:
        """Both ends of the range are in force."""
        rule_set = DEFAULT_RULE_SET.model_copy(update={"effective_until": date(2024, 12, 31)})

        assert rule_set.covers(date(2024, 1, 1))
        assert rule_set.covers(date(2024, 12, 31))
        assert not rule_set.covers(date(2023, 12, 31))
        assert not rule_set.covers(date(2025, 1, 1))

    def test_open_ended(self) -> None:
        """A set with no end date stays in force."""
        assert DEFAULT_RULE_SET.covers(date(2030, 1, 1))

    def test_inverted_range_rejected(self) -> None:
        """End date before start date is invalid."""
        with pytest.raises(ValidationError):
            TaxRuleSet(
                version="broken",
                effective_from=date(2024, 1, 1),
                effective_until=date(2023, 1, 1),
                retefuente_rates={},
            )

    def test_city_name(self) -> None:
        """City names come from ICA tables, then the name registry."""
        assert DEFAULT_RULE_SET.city_name("05001") == "Medellín"
        assert DEFAULT_RULE_SET.city_name("08001") == "Barranquilla"
        assert DEFAULT_RULE_SET.city_name("99999") == "99999"


class TestRuleBook:
    """Test rule set selection."""

    def test_sorted_by_start_date(self, two_year_book: RuleBook) -> None:
        """Rule sets are ordered regardless of input order."""
        versions = [rs.version for rs in two_year_book.rule_sets]
        assert versions == [DEFAULT_RULE_SET.version, "CO-2025.1"]

    @pytest.mark.parametrize(
        "day, version",
        [
            (date(2024, 6, 1), "CO-2024.1"),
            (date(2024, 12, 31), "CO-2024.1"),
            (date(2025, 1, 1), "CO-2025.1"),
        ],
    )
    def test_for_date(self, two_year_book: RuleBook, day: date, version: str) -> None:
        """Should pick the set in force on the day."""
        rule_set, warning = two_year_book.for_date(day)

        assert rule_set.version == version
        assert warning is None

    def test_date_before_first_set(self, two_year_book: RuleBook) -> None:
        """Earlier dates fall back to the first set with a warning."""
        rule_set, warning = two_year_book.for_date(date(2020, 1, 1))

        assert rule_set.version == "CO-2024.1"
        assert warning is not None
        assert "2020-01-01" in warning

    def test_gap_after_closed_set(self) -> None:
        """Dates past a closed last set fall back to it."""
        closed = DEFAULT_RULE_SET.model_copy(update={"effective_until": date(2024, 12, 31)})
        rule_set, warning = RuleBook(rule_sets=(closed,)).for_date(date(2026, 1, 1))

        assert rule_set is closed
        assert warning is not None

    def test_empty_book_rejected(self) -> None:
        """A rule book needs at least one set."""
        with pytest.raises(ValidationError):
            RuleBook(rule_sets=())

    def test_from_file(self, tmp_path: Path) -> None:
        """Rule books load from JSON."""
        path = tmp_path / "rules.json"
        path.write_text(DEFAULT_RULE_BOOK.model_dump_json(), encoding="utf-8")

        book = RuleBook.from_file(path)
        rule_set = book.rule_sets[0]

        assert rule_set.version == DEFAULT_RULE_SET.version
        assert rule_set.retefuente_rates[ExpenseKind.GOODS] == Decimal("0.025")
        assert "education" in rule_set.iva_exempt_categories
        assert rule_set.ica_rates["76001"].per_thousand["services"] == Decimal("5")

    def test_load_rule_book_default(self) -> None:
        """No path means the built-in book."""
        assert load_rule_book(None) is DEFAULT_RULE_BOOK


class TestRetentionAgentHeuristic:
    """Test the tax-id heuristic."""

    @pytest.mark.parametrize(
        "tax_id, expected",
        [
            ("860028462", True),  # registered large taxpayer
            ("899999061", True),  # government prefix
            ("9001234567", True),  # ten digits
            ("900123456", False),
            ("79456123", False),
        ],
    )
    def test_heuristic(self, tax_id: str, expected: bool) -> None:
        """Registry, government prefix or long NIT make a retention agent."""
        assert heuristic_retention_agent(tax_id, DEFAULT_RULE_SET) is expected
