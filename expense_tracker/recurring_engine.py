from __future__ import annotations

import logging
from calendar import monthrange
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal
from typing import List, Optional, Protocol, Tuple

logger = logging.getLogger(__name__)

SUPPORTED_FREQUENCIES = {"daily", "weekly", "monthly", "yearly"}
SUPPORTED_KINDS = {"expense", "income"}
SOURCE_RECURRING = "recurring"


@dataclass(frozen=True)
class RecurringRule:
    id: Optional[int]
    user_id: int
    kind: str
    amount: Decimal
    category: str
    frequency: str
    next_date: date
    description: Optional[str] = None
    is_active: bool = True
    anchor_day: Optional[int] = None


@dataclass(frozen=True)
class LedgerEntry:
    user_id: int
    kind: str
    amount: Decimal
    category: str
    date: date
    description: Optional[str] = None
    source: str = "manual"
    external_ref: Optional[str] = None


@dataclass
class SweepResult:
    rules_processed: int = 0
    entries_created: int = 0
    failed_rule_ids: List[Optional[int]] = field(default_factory=list)


class RuleStore(Protocol):
    def find_due_rules(self, as_of: date) -> List[RecurringRule]:
        ...

    def create_entry(self, entry: LedgerEntry) -> None:
        ...

    def update_next_date(self, rule_id: int, next_date: date) -> None:
        ...


def materialize_due(rule: RecurringRule, as_of: date) -> Tuple[List[LedgerEntry], date]:
    """Back-fill one entry per period elapsed up to ``as_of``.

    Returns the entries (possibly none) and the first due date after
    ``as_of``. A rule that is not yet due keeps its ``next_date``.
    Monthly and yearly steps land on ``anchor_day`` (the day the rule was
    scheduled for), clamped to the length of each month.
    """
    frequency = validate_frequency(rule.frequency)
    kind = validate_kind(rule.kind)
    if _coerce_amount(rule.amount) < 0:
        raise ValueError("rule.amount must not be negative.")

    entries: List[LedgerEntry] = []
    anchor_day = rule.anchor_day or rule.next_date.day
    cursor = rule.next_date
    while cursor <= as_of:
        entries.append(
            LedgerEntry(
                user_id=rule.user_id,
                kind=kind,
                amount=_coerce_amount(rule.amount),
                category=rule.category,
                date=cursor,
                description=rule.description,
                source=SOURCE_RECURRING,
            )
        )
        cursor = advance_date(cursor, frequency, anchor_day)
    return entries, cursor


def run_sweep(store: RuleStore, as_of: date) -> SweepResult:
    """Process every active rule due on or before ``as_of``, one at a time.

    Each entry is persisted as soon as it is materialized and the rule's
    next date is written once at the end. A failing rule is logged and
    skipped; its next date stays where it was so the next tick retries it.
    """
    rules = store.find_due_rules(as_of)
    logger.info("Processing %d recurring transactions", len(rules))
    result = SweepResult()
    for rule in rules:
        try:
            entries, next_date = materialize_due(rule, as_of)
            for entry in entries:
                store.create_entry(entry)
            store.update_next_date(rule.id, next_date)
        except Exception:
            logger.exception("Failed to process recurring rule %s", rule.id)
            result.failed_rule_ids.append(rule.id)
            continue
        result.rules_processed += 1
        result.entries_created += len(entries)
        logger.info(
            "Created %d %s(s) %r for user %s, next: %s",
            len(entries),
            rule.kind,
            rule.description or rule.category,
            rule.user_id,
            next_date.isoformat(),
        )
    return result


def advance_date(value: date, frequency: str, anchor_day: Optional[int] = None) -> date:
    normalized = validate_frequency(frequency)
    day = anchor_day or value.day
    if normalized == "daily":
        return value + timedelta(days=1)
    if normalized == "weekly":
        return value + timedelta(days=7)
    if normalized == "monthly":
        return _add_months(value, 1, day)
    return _add_months(value, 12, day)


def validate_frequency(frequency: str) -> str:
    normalized = _normalize(frequency)
    if normalized not in SUPPORTED_FREQUENCIES:
        raise ValueError("Only daily, weekly, monthly, or yearly rules are supported.")
    return normalized


def validate_kind(kind: str) -> str:
    normalized = _normalize(kind)
    if normalized not in SUPPORTED_KINDS:
        raise ValueError("Only expense or income rules are supported.")
    return normalized


def _normalize(value: str) -> str:
    return value.strip().lower()


def _add_months(start_date: date, months: int, anchor_day: int) -> date:
    total_month = start_date.month - 1 + months
    year = start_date.year + total_month // 12
    month = total_month % 12 + 1
    last_day = monthrange(year, month)[1]
    day = min(anchor_day, last_day)
    return date(year, month, day)


def _coerce_amount(amount: Decimal) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
