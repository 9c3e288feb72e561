import unittest
from datetime import date
from decimal import Decimal

from expense_tracker.recurring_engine import (
    SOURCE_RECURRING,
    LedgerEntry,
    RecurringRule,
    advance_date,
    materialize_due,
    run_sweep,
    validate_frequency,
)


def make_rule(**overrides) -> RecurringRule:
    values = dict(
        id=1,
        user_id=7,
        kind="expense",
        amount=Decimal("2000000"),
        category="bills",
        frequency="monthly",
        next_date=date(2026, 1, 1),
        description="Rent",
    )
    values.update(overrides)
    return RecurringRule(**values)


class FakeRuleStore:
    def __init__(self, rules, fail_rule_ids=(), fail_dates=()) -> None:
        self.rules = list(rules)
        self.fail_rule_ids = set(fail_rule_ids)
        self.fail_dates = set(fail_dates)
        self.entries = []
        self.next_dates = {}

    def find_due_rules(self, as_of):
        return [rule for rule in self.rules if rule.is_active and rule.next_date <= as_of]

    def create_entry(self, entry: LedgerEntry) -> None:
        if entry.description in self.fail_rule_ids or entry.date in self.fail_dates:
            raise RuntimeError("insert failed")
        self.entries.append(entry)

    def update_next_date(self, rule_id, next_date) -> None:
        self.next_dates[rule_id] = next_date


class MaterializeDueTests(unittest.TestCase):
    def test_monthly_rule_back_fills_each_elapsed_month(self) -> None:
        entries, next_date = materialize_due(make_rule(), date(2026, 2, 15))

        self.assertEqual([entry.date for entry in entries], [date(2026, 1, 1), date(2026, 2, 1)])
        self.assertEqual(next_date, date(2026, 3, 1))
        for entry in entries:
            self.assertEqual(entry.amount, Decimal("2000000"))
            self.assertEqual(entry.kind, "expense")
            self.assertEqual(entry.source, SOURCE_RECURRING)
            self.assertEqual(entry.user_id, 7)
            self.assertEqual(entry.description, "Rent")

    def test_second_sweep_continues_from_advanced_date(self) -> None:
        _, next_date = materialize_due(make_rule(), date(2026, 2, 15))

        entries, next_date = materialize_due(make_rule(next_date=next_date), date(2026, 3, 15))

        self.assertEqual([entry.date for entry in entries], [date(2026, 3, 1)])
        self.assertEqual(next_date, date(2026, 4, 1))

    def test_month_end_rule_keeps_its_day(self) -> None:
        entries, next_date = materialize_due(make_rule(next_date=date(2026, 1, 31)), date(2026, 4, 15))

        self.assertEqual(
            [entry.date for entry in entries],
            [date(2026, 1, 31), date(2026, 2, 28), date(2026, 3, 31)],
        )
        self.assertEqual(next_date, date(2026, 4, 30))

    def test_stored_anchor_day_survives_a_clamped_next_date(self) -> None:
        rule = make_rule(next_date=date(2026, 2, 28), anchor_day=31)

        entries, next_date = materialize_due(rule, date(2026, 3, 31))

        self.assertEqual([entry.date for entry in entries], [date(2026, 2, 28), date(2026, 3, 31)])
        self.assertEqual(next_date, date(2026, 4, 30))

    def test_rule_not_yet_due_creates_nothing(self) -> None:
        rule = make_rule(next_date=date(2026, 3, 1))

        entries, next_date = materialize_due(rule, date(2026, 2, 15))

        self.assertEqual(entries, [])
        self.assertEqual(next_date, date(2026, 3, 1))

    def test_rule_due_today_is_included(self) -> None:
        rule = make_rule(frequency="weekly", next_date=date(2026, 2, 15))

        entries, next_date = materialize_due(rule, date(2026, 2, 15))

        self.assertEqual([entry.date for entry in entries], [date(2026, 2, 15)])
        self.assertEqual(next_date, date(2026, 2, 22))

    def test_daily_rule_creates_one_entry_per_day(self) -> None:
        rule = make_rule(frequency="daily", kind="income", next_date=date(2026, 2, 26))

        entries, next_date = materialize_due(rule, date(2026, 3, 2))

        self.assertEqual(len(entries), 5)
        self.assertEqual(entries[-1].date, date(2026, 3, 2))
        self.assertEqual(next_date, date(2026, 3, 3))
        self.assertTrue(all(entry.kind == "income" for entry in entries))

    def test_rejects_unknown_frequency(self) -> None:
        with self.assertRaises(ValueError):
            materialize_due(make_rule(frequency="hourly"), date(2026, 2, 15))

    def test_rejects_negative_amount(self) -> None:
        with self.assertRaises(ValueError):
            materialize_due(make_rule(amount=Decimal("-1")), date(2026, 2, 15))


class AdvanceDateTests(unittest.TestCase):
    def test_monthly_step_clamps_to_month_end(self) -> None:
        self.assertEqual(advance_date(date(2026, 1, 31), "monthly"), date(2026, 2, 28))
        self.assertEqual(advance_date(date(2028, 1, 31), "monthly"), date(2028, 2, 29))

    def test_monthly_step_returns_to_anchor_day(self) -> None:
        self.assertEqual(advance_date(date(2026, 2, 28), "monthly", 31), date(2026, 3, 31))
        self.assertEqual(advance_date(date(2026, 3, 31), "monthly", 31), date(2026, 4, 30))

    def test_yearly_step_from_leap_day(self) -> None:
        self.assertEqual(advance_date(date(2028, 2, 29), "yearly"), date(2029, 2, 28))

    def test_monthly_step_rolls_over_year(self) -> None:
        self.assertEqual(advance_date(date(2026, 12, 15), "monthly"), date(2027, 1, 15))

    def test_frequency_is_case_insensitive(self) -> None:
        self.assertEqual(validate_frequency(" Weekly "), "weekly")


class RunSweepTests(unittest.TestCase):
    def test_sweep_persists_entries_and_advances_rules(self) -> None:
        store = FakeRuleStore(
            [
                make_rule(id=1),
                make_rule(id=2, frequency="weekly", next_date=date(2026, 2, 10), description="Gym"),
                make_rule(id=3, next_date=date(2026, 4, 1), description="Later"),
            ]
        )

        result = run_sweep(store, date(2026, 2, 15))

        self.assertEqual(result.rules_processed, 2)
        self.assertEqual(result.entries_created, 3)
        self.assertEqual(result.failed_rule_ids, [])
        self.assertEqual(store.next_dates, {1: date(2026, 3, 1), 2: date(2026, 2, 17)})

    def test_failing_rule_is_skipped_and_others_continue(self) -> None:
        store = FakeRuleStore(
            [make_rule(id=1, description="Broken"), make_rule(id=2, description="Rent")],
            fail_rule_ids={"Broken"},
        )

        with self.assertLogs("expense_tracker.recurring_engine", level="ERROR"):
            result = run_sweep(store, date(2026, 2, 15))

        self.assertEqual(result.failed_rule_ids, [1])
        self.assertEqual(result.rules_processed, 1)
        self.assertNotIn(1, store.next_dates)
        self.assertEqual(store.next_dates[2], date(2026, 3, 1))

    def test_failure_mid_rule_keeps_earlier_entries_and_next_date(self) -> None:
        store = FakeRuleStore([make_rule(id=4)], fail_dates={date(2026, 2, 1)})

        with self.assertLogs("expense_tracker.recurring_engine", level="ERROR"):
            result = run_sweep(store, date(2026, 2, 15))

        self.assertEqual(result.failed_rule_ids, [4])
        self.assertEqual(result.entries_created, 0)
        self.assertEqual([entry.date for entry in store.entries], [date(2026, 1, 1)])
        self.assertNotIn(4, store.next_dates)

    def test_inactive_rules_are_not_loaded(self) -> None:
        store = FakeRuleStore([make_rule(is_active=False)])

        result = run_sweep(store, date(2026, 2, 15))

        self.assertEqual(result.rules_processed, 0)
        self.assertEqual(store.entries, [])


if __name__ == "__main__":
    unittest.main()
