import unittest
from datetime import date
from decimal import Decimal

from expense_tracker.ai_assistant import (
    RecentEntry,
    build_chat_messages,
    build_context,
    build_insights,
    format_amount,
    parse_email_content,
    parse_transaction_text,
)
from expense_tracker.budget_engine import PeriodStats
from expense_tracker.errors import UpstreamError
from expense_tracker.tests.fakes import FakeChatClient

TODAY = date(2026, 2, 15)


def stats(total: str, by_category: dict, count: int) -> PeriodStats:
    return PeriodStats(
        total=Decimal(total),
        by_category={key: Decimal(value) for key, value in by_category.items()},
        count=count,
    )


class ParseTransactionTextTests(unittest.TestCase):
    def test_extracts_json_from_chatty_reply(self) -> None:
        client = FakeChatClient(
            replies=[
                'Sure! {"amount": 45000, "category": "food", "description": "pho", '
                '"date": "2026-02-14", "type": "expense"}'
            ]
        )

        parsed = parse_transaction_text(client, "pho 45k yesterday", TODAY)

        self.assertEqual(parsed.amount, Decimal("45000"))
        self.assertEqual(parsed.category, "food")
        self.assertEqual(parsed.date, date(2026, 2, 14))
        self.assertEqual(parsed.type, "expense")
        self.assertEqual(parsed.original_text, "pho 45k yesterday")
        self.assertIn("2026-02-15", client.calls[0][0]["content"])

    def test_missing_fields_fall_back_to_defaults(self) -> None:
        client = FakeChatClient(replies=['{"amount": "abc", "type": "income"}'])

        parsed = parse_transaction_text(client, "got paid", TODAY)

        self.assertEqual(parsed.amount, Decimal("0"))
        self.assertEqual(parsed.category, "other")
        self.assertEqual(parsed.date, TODAY)
        self.assertEqual(parsed.type, "income")

    def test_reply_without_json_raises(self) -> None:
        client = FakeChatClient(replies=["I cannot help with that."])

        with self.assertLogs("expense_tracker.ai_assistant", level="ERROR"):
            with self.assertRaises(UpstreamError):
                parse_transaction_text(client, "???", TODAY)


class ParseEmailContentTests(unittest.TestCase):
    def test_parses_fenced_json(self) -> None:
        client = FakeChatClient(
            replies=[
                '```json\n{"amount": 250000, "description": "GRAB", "category": "transport", '
                '"date": "2026-02-13", "type": "expense"}\n```'
            ]
        )

        parsed = parse_email_content(client, "Your card was charged", "Card alert", TODAY)

        self.assertEqual(parsed.amount, Decimal("250000"))
        self.assertEqual(parsed.description, "GRAB")
        self.assertEqual(parsed.date, date(2026, 2, 13))

    def test_non_transaction_mail_returns_none(self) -> None:
        for reply in ("null", "", '{"amount": 0}', "[1, 2]"):
            with self.subTest(reply=reply):
                client = FakeChatClient(replies=[reply])
                self.assertIsNone(parse_email_content(client, "OTP 1234", "OTP", TODAY))

    def test_provider_failure_returns_none(self) -> None:
        client = FakeChatClient(fail=True)

        with self.assertLogs("expense_tracker.ai_assistant", level="ERROR"):
            self.assertIsNone(parse_email_content(client, "body", "subject", TODAY))


class ContextTests(unittest.TestCase):
    def test_context_lists_balance_categories_and_recent_entries(self) -> None:
        expense = stats("300000", {"food": "200000", "transport": "100000"}, 3)
        income = stats("1000000", {"salary": "1000000"}, 1)
        recent = [
            RecentEntry("expense", Decimal("50000"), "food", date(2026, 2, 10), "lunch"),
            RecentEntry("income", Decimal("1000000"), "salary", date(2026, 2, 12)),
        ]

        context = build_context(expense, income, recent, "VND")

        self.assertIn("CURRENT BALANCE: 700,000 VND (positive)", context)
        self.assertIn("- Food & drink: 200,000 VND (66.7%)", context)
        self.assertLess(context.index("2026-02-12"), context.index("2026-02-10"))
        self.assertIn("-50,000 VND - Food & drink (lunch)", context)

    def test_chat_messages_put_system_prompt_first(self) -> None:
        history = [{"role": "user", "content": "hi"}]

        messages = build_chat_messages("CTX", history)

        self.assertEqual(messages[0]["role"], "system")
        self.assertIn("CTX", messages[0]["content"])
        self.assertEqual(messages[1:], history)


class InsightsTests(unittest.TestCase):
    def test_no_data(self) -> None:
        empty = stats("0", {}, 0)

        self.assertTrue(build_insights(empty, empty, "VND").startswith("You have no transactions yet"))

    def test_saving_rate(self) -> None:
        insights = build_insights(
            stats("250000", {"food": "250000"}, 2),
            stats("1000000", {"salary": "1000000"}, 1),
            "VND",
        )

        self.assertIn("Main income source: **Salary** (100%)", insights)
        self.assertIn("Biggest spending: **Food & drink** (100%)", insights)
        self.assertIn("Saving rate: 75%", insights)

    def test_overspending(self) -> None:
        insights = build_insights(
            stats("1500000", {"shopping": "1500000"}, 4),
            stats("1000000", {"salary": "1000000"}, 1),
            "VND",
        )

        self.assertIn("spending 500,000 VND more than you earn", insights)
        self.assertIn("(negative)", insights)

    def test_format_amount(self) -> None:
        self.assertEqual(format_amount(Decimal("1234567.4"), "VND"), "1,234,567 VND")


if __name__ == "__main__":
    unittest.main()
