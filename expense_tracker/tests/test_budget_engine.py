import unittest
from datetime import date
from decimal import Decimal

from expense_tracker.budget_engine import (
    BudgetCap,
    Entry,
    LedgerFilter,
    budget_overview,
    budget_usage,
    month_bounds,
    percent_change,
    previous_month,
    summarize,
)


class SummarizeTests(unittest.TestCase):
    def test_groups_by_category_largest_first(self) -> None:
        entries = [
            Entry(amount=Decimal("50000"), category="food", date=date(2026, 2, 1)),
            Entry(amount=Decimal("25000"), category="food", date=date(2026, 2, 3)),
            Entry(amount=Decimal("120000"), category="bills", date=date(2026, 2, 2)),
        ]

        stats = summarize(entries)

        self.assertEqual(stats.total, Decimal("195000"))
        self.assertEqual(stats.count, 3)
        self.assertEqual(list(stats.by_category), ["bills", "food"])
        self.assertEqual(stats.by_category["food"], Decimal("75000"))

    def test_empty_input(self) -> None:
        stats = summarize([])

        self.assertEqual(stats.total, Decimal("0"))
        self.assertEqual(stats.count, 0)
        self.assertEqual(stats.by_category, {})


class PercentChangeTests(unittest.TestCase):
    def test_rounds_half_up_to_two_decimals(self) -> None:
        self.assertEqual(percent_change(Decimal("150"), Decimal("120")), Decimal("25.00"))
        self.assertEqual(percent_change(Decimal("1"), Decimal("3")), Decimal("-66.67"))

    def test_zero_previous_means_no_change(self) -> None:
        self.assertEqual(percent_change(Decimal("500"), Decimal("0")), Decimal("0"))

    def test_negative_previous_balance_uses_magnitude(self) -> None:
        self.assertEqual(percent_change(Decimal("-50"), Decimal("-100")), Decimal("50.00"))


class BudgetTests(unittest.TestCase):
    def test_usage_is_rounded_percentage(self) -> None:
        self.assertEqual(budget_usage(Decimal("40000"), Decimal("100000")), 40)
        self.assertEqual(budget_usage(Decimal("2"), Decimal("3")), 67)
        self.assertEqual(budget_usage(Decimal("150"), Decimal("100")), 150)
        self.assertEqual(budget_usage(Decimal("10"), Decimal("0")), 0)

    def test_overspent_budget_goes_negative(self) -> None:
        overview = budget_overview(
            [BudgetCap(category="food", amount=Decimal("1000000"))], {"food": Decimal("1200000")}, 3, 2026
        )

        line = overview.categories[0]
        self.assertEqual(line.percentage, 120)
        self.assertEqual(line.remaining, Decimal("-200000"))

    def test_overview_counts_spending_outside_budgeted_categories(self) -> None:
        caps = [
            BudgetCap(category="food", amount=Decimal("100000"), id=1),
            BudgetCap(category="transport", amount=Decimal("50000"), id=2),
        ]
        spent = {"food": Decimal("40000"), "shopping": Decimal("30000")}

        overview = budget_overview(caps, spent, 2, 2026)

        self.assertEqual(overview.total_budget, Decimal("150000"))
        self.assertEqual(overview.total_spent, Decimal("70000"))
        self.assertEqual(overview.total_remaining, Decimal("80000"))
        food, transport = overview.categories
        self.assertEqual(food.percentage, 40)
        self.assertEqual(food.remaining, Decimal("60000"))
        self.assertEqual(transport.spent, Decimal("0"))
        self.assertEqual(transport.id, 2)


class PeriodTests(unittest.TestCase):
    def test_month_bounds_are_half_open(self) -> None:
        self.assertEqual(month_bounds(2, 2026), (date(2026, 2, 1), date(2026, 3, 1)))
        self.assertEqual(month_bounds(12, 2026), (date(2026, 12, 1), date(2027, 1, 1)))

    def test_month_bounds_rejects_invalid_month(self) -> None:
        with self.assertRaises(ValueError):
            month_bounds(13, 2026)

    def test_previous_month_wraps_year(self) -> None:
        self.assertEqual(previous_month(1, 2026), (12, 2025))
        self.assertEqual(previous_month(7, 2026), (6, 2026))

    def test_filter_reports_date_range(self) -> None:
        ledger_filter = LedgerFilter(date_to=date(2026, 1, 20))

        self.assertTrue(ledger_filter.has_date_range())
        self.assertFalse(ledger_filter.is_empty())
        self.assertFalse(LedgerFilter(category="food").has_date_range())
        self.assertTrue(LedgerFilter(search="").is_empty())


if __name__ == "__main__":
    unittest.main()
