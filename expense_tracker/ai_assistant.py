"""
Prompt building and response parsing for the AI features.

Everything here is independent of the database: callers pass in the
stats and recent entries they fetched, plus a ``ChatClient``.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Iterable, List, Optional, Sequence

from expense_tracker.ai_client import ChatClient, Message
from expense_tracker.budget_engine import PeriodStats
from expense_tracker.errors import UpstreamError

logger = logging.getLogger(__name__)

EXPENSE_CATEGORIES = (
    "food",
    "transport",
    "shopping",
    "entertainment",
    "bills",
    "health",
    "education",
    "transfer",
    "other",
)
INCOME_CATEGORIES = ("salary", "freelance", "investment", "bonus", "gift", "refund", "other")

CATEGORY_LABELS = {
    "food": "Food & drink",
    "transport": "Transport",
    "shopping": "Shopping",
    "entertainment": "Entertainment",
    "bills": "Bills",
    "health": "Health",
    "education": "Education",
    "transfer": "Transfers",
    "salary": "Salary",
    "freelance": "Freelance",
    "investment": "Investment",
    "bonus": "Bonus",
    "gift": "Gifts",
    "refund": "Refunds",
    "other": "Other",
}

JSON_OBJECT = re.compile(r"\{[\s\S]*\}")
CODE_FENCE = re.compile(r"```(?:json)?\n?")
HISTORY_LIMIT = 10
EMPTY_MESSAGE_REPLY = "Please type your question."
FALLBACK_REPLY = "Sorry, I could not answer that."


@dataclass(frozen=True)
class ParsedTransaction:
    amount: Decimal
    category: str
    description: str
    date: date
    type: str
    original_text: Optional[str] = None


@dataclass(frozen=True)
class RecentEntry:
    kind: str
    amount: Decimal
    category: str
    date: date
    description: Optional[str] = None


def category_label(category: str) -> str:
    return CATEGORY_LABELS.get(category, category)


def format_amount(amount: Decimal, currency: str) -> str:
    return f"{Decimal(amount):,.0f} {currency}"


def parse_transaction_text(client: ChatClient, text: str, today: date) -> ParsedTransaction:
    system_prompt = (
        "You turn short natural-language notes into a financial transaction. "
        "Reply with one JSON object and nothing else.\n\n"
        f"Expense categories: {', '.join(EXPENSE_CATEGORIES)}\n"
        f"Income categories: {', '.join(INCOME_CATEGORIES)}\n\n"
        "Rules:\n"
        '- "k" means thousand (45k = 45000); "tr" or "m" means million (1tr = 1000000)\n'
        '- type is "expense" unless the text clearly describes income (salary, bonus, received money)\n'
        f'- when no date is given, or the text says "today" or "this morning", use "{today.isoformat()}"\n'
        '- "yesterday" is the day before that\n\n'
        'Format: {"amount": number, "category": string, "description": string, '
        '"date": "YYYY-MM-DD", "type": "expense"|"income"}'
    )
    raw = client.complete(
        [{"role": "system", "content": system_prompt}, {"role": "user", "content": text}],
        max_tokens=200,
        temperature=0,
    )
    match = JSON_OBJECT.search(raw or "")
    if not match:
        logger.error("Failed to parse AI response: %r", raw)
        raise UpstreamError("Could not understand the text. Please try again.")
    try:
        payload = json.loads(match.group(0))
    except json.JSONDecodeError as exc:
        logger.error("Failed to parse AI response: %r", raw)
        raise UpstreamError("Could not understand the text. Please try again.") from exc

    return ParsedTransaction(
        amount=_amount_or_zero(payload.get("amount")),
        category=payload.get("category") or "other",
        description=payload.get("description") or "",
        date=_date_or_default(payload.get("date"), today),
        type="income" if payload.get("type") == "income" else "expense",
        original_text=text,
    )


def parse_email_content(
    client: ChatClient, body: str, subject: str, today: date
) -> Optional[ParsedTransaction]:
    """Extract a transaction from a bank notification e-mail.

    Returns ``None`` for non-transaction mail (OTP codes, promotions) and
    when the provider fails or answers with something unparseable.
    """
    prompt = (
        "Analyze this bank notification email and extract transaction details.\n\n"
        f"Email Subject: {subject}\n"
        f"Email Body:\n{body}\n\n"
        "Extract and return JSON with these fields:\n"
        "- amount: number (no currency symbol)\n"
        "- description: string (transaction description/merchant)\n"
        f"- category: string (one of: {', '.join(EXPENSE_CATEGORIES)})\n"
        "- date: string (YYYY-MM-DD format)\n"
        '- type: "expense" or "income"\n\n'
        "If this is NOT a transaction notification (e.g., OTP, ads, promotions), return null.\n"
        "Only return valid JSON, nothing else."
    )
    messages: List[Message] = [
        {
            "role": "system",
            "content": "You are a financial data parser. Extract transaction data from "
            "bank notification emails. Return only valid JSON.",
        },
        {"role": "user", "content": prompt},
    ]
    try:
        raw = client.complete(messages, max_tokens=500, temperature=0)
    except UpstreamError:
        logger.exception("AI provider failed while parsing email %r", subject)
        return None

    cleaned = CODE_FENCE.sub("", raw or "").strip()
    if cleaned in {"", "null"}:
        return None
    try:
        payload = json.loads(cleaned)
    except json.JSONDecodeError:
        logger.error("Failed to parse email response: %r", raw)
        return None
    if not isinstance(payload, dict):
        return None

    amount = _amount_or_zero(payload.get("amount"))
    if amount <= 0:
        return None
    return ParsedTransaction(
        amount=amount,
        category=payload.get("category") or "other",
        description=payload.get("description") or subject,
        date=_date_or_default(payload.get("date"), today),
        type="income" if payload.get("type") == "income" else "expense",
    )


def build_context(
    expense_stats: PeriodStats,
    income_stats: PeriodStats,
    recent: Iterable[RecentEntry],
    currency: str,
) -> str:
    balance = income_stats.total - expense_stats.total
    lines = [
        f"CURRENT BALANCE: {format_amount(balance, currency)} "
        f"({'positive' if balance >= 0 else 'negative'})",
        "",
        "INCOME OVERVIEW:",
        f"- Total income: {format_amount(income_stats.total, currency)}",
        f"- Transactions: {income_stats.count}",
        "",
        "EXPENSE OVERVIEW:",
        f"- Total expenses: {format_amount(expense_stats.total, currency)}",
        f"- Transactions: {expense_stats.count}",
        "",
        "INCOME BY CATEGORY:",
    ]
    lines.extend(_category_lines(income_stats, currency))
    lines.append("")
    lines.append("EXPENSES BY CATEGORY:")
    lines.extend(_category_lines(expense_stats, currency))
    lines.append("")
    lines.append("RECENT TRANSACTIONS:")
    ordered = sorted(recent, key=lambda item: item.date, reverse=True)[:10]
    for entry in ordered:
        sign = "-" if entry.kind == "expense" else "+"
        note = f" ({entry.description})" if entry.description else ""
        lines.append(
            f"- {entry.date.isoformat()}: {sign}{format_amount(entry.amount, currency)}"
            f" - {category_label(entry.category)}{note}"
        )
    return "\n".join(lines)


def build_chat_messages(context: str, history: Sequence[Message]) -> List[Message]:
    system_prompt = (
        "You are an AI assistant for personal finance. Answer briefly and helpfully.\n\n"
        f"The user's financial data:\n{context}\n\n"
        "Analyse this data and give advice based on it. When the user asks about "
        "income or spending, use the real figures."
    )
    return [{"role": "system", "content": system_prompt}, *history]


def build_insights(expense_stats: PeriodStats, income_stats: PeriodStats, currency: str) -> str:
    if expense_stats.count == 0 and income_stats.count == 0:
        return "You have no transactions yet. Add some income or expenses to get insights."

    balance = income_stats.total - expense_stats.total
    lines = [
        "**Financial overview:**",
        f"- Balance: {format_amount(balance, currency)} ({'positive' if balance >= 0 else 'negative'})",
        f"- Income: {format_amount(income_stats.total, currency)} ({income_stats.count} transactions)",
        f"- Expenses: {format_amount(expense_stats.total, currency)} ({expense_stats.count} transactions)",
        "",
        "**Observations:**",
    ]
    top_income = _top_category(income_stats)
    if top_income:
        lines.append(f"- Main income source: **{category_label(top_income[0])}** ({top_income[1]}%)")
    top_expense = _top_category(expense_stats)
    if top_expense:
        lines.append(f"- Biggest spending: **{category_label(top_expense[0])}** ({top_expense[1]}%)")
    if balance < 0:
        lines.append(f"- You are spending {format_amount(abs(balance), currency)} more than you earn")
    elif income_stats.total > 0:
        saving_rate = (balance / income_stats.total * 100).quantize(Decimal("1"))
        lines.append(f"- Saving rate: {saving_rate}%")
    lines.append("")
    lines.append("Ask me for more detailed advice!")
    return "\n".join(lines)


def _category_lines(stats: PeriodStats, currency: str) -> List[str]:
    lines = []
    for category, amount in stats.by_category.items():
        percent = (amount / stats.total * 100).quantize(Decimal("0.1")) if stats.total else 0
        lines.append(f"- {category_label(category)}: {format_amount(amount, currency)} ({percent}%)")
    return lines


def _top_category(stats: PeriodStats) -> Optional[tuple[str, Decimal]]:
    if not stats.count or not stats.total or not stats.by_category:
        return None
    category, amount = max(stats.by_category.items(), key=lambda item: item[1])
    return category, (amount / stats.total * 100).quantize(Decimal("1"))


def _amount_or_zero(value) -> Decimal:
    try:
        return Decimal(str(value)) if value is not None else Decimal("0")
    except InvalidOperation:
        return Decimal("0")


def _date_or_default(value, default: date) -> date:
    if not value:
        return default
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        return default
