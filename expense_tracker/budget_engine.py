from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

ZERO = Decimal("0")
HUNDRED = Decimal("100")


@dataclass(frozen=True)
class Entry:
    amount: Decimal
    category: str
    date: date
    description: Optional[str] = None


@dataclass(frozen=True)
class LedgerFilter:
    category: Optional[str] = None
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    amount_min: Optional[Decimal] = None
    amount_max: Optional[Decimal] = None
    search: Optional[str] = None

    def is_empty(self) -> bool:
        return not any(
            value is not None and value != ""
            for value in (
                self.category,
                self.date_from,
                self.date_to,
                self.amount_min,
                self.amount_max,
                self.search,
            )
        )

    def has_date_range(self) -> bool:
        return self.date_from is not None or self.date_to is not None


@dataclass(frozen=True)
class PeriodStats:
    total: Decimal
    by_category: Dict[str, Decimal]
    count: int


@dataclass(frozen=True)
class BudgetCap:
    category: str
    amount: Decimal
    id: Optional[int] = None


@dataclass(frozen=True)
class BudgetLine:
    category: str
    budget: Decimal
    spent: Decimal
    remaining: Decimal
    percentage: int
    id: Optional[int] = None


@dataclass(frozen=True)
class BudgetOverview:
    month: int
    year: int
    total_budget: Decimal
    total_spent: Decimal
    total_remaining: Decimal
    categories: List[BudgetLine] = field(default_factory=list)


def summarize(entries: Iterable[Entry]) -> PeriodStats:
    total = ZERO
    count = 0
    by_category: Dict[str, Decimal] = {}
    for entry in entries:
        amount = _coerce_amount(entry.amount)
        total += amount
        count += 1
        by_category[entry.category] = by_category.get(entry.category, ZERO) + amount
    ordered = dict(sorted(by_category.items(), key=lambda item: item[1], reverse=True))
    return PeriodStats(total=total, by_category=ordered, count=count)


def percent_change(current: Decimal, previous: Decimal) -> Decimal:
    """Period-over-period change in percent, two decimals; 0 when previous is 0."""
    current = _coerce_amount(current)
    previous = _coerce_amount(previous)
    if previous == ZERO:
        return ZERO
    change = (current - previous) / abs(previous) * HUNDRED
    return change.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def budget_usage(spent: Decimal, cap: Decimal) -> int:
    spent = _coerce_amount(spent)
    cap = _coerce_amount(cap)
    if cap <= ZERO:
        return 0
    return int((spent / cap * HUNDRED).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def budget_overview(
    caps: Iterable[BudgetCap],
    spent_by_category: Mapping[str, Decimal],
    month: int,
    year: int,
) -> BudgetOverview:
    lines: List[BudgetLine] = []
    total_budget = ZERO
    for cap in caps:
        amount = _coerce_amount(cap.amount)
        spent = _coerce_amount(spent_by_category.get(cap.category, ZERO))
        total_budget += amount
        lines.append(
            BudgetLine(
                id=cap.id,
                category=cap.category,
                budget=amount,
                spent=spent,
                remaining=amount - spent,
                percentage=budget_usage(spent, amount),
            )
        )
    total_spent = sum((_coerce_amount(value) for value in spent_by_category.values()), ZERO)
    return BudgetOverview(
        month=month,
        year=year,
        total_budget=total_budget,
        total_spent=total_spent,
        total_remaining=total_budget - total_spent,
        categories=lines,
    )


def month_bounds(month: int, year: int) -> Tuple[date, date]:
    if not 1 <= month <= 12:
        raise ValueError("month must be between 1 and 12.")
    start = date(year, month, 1)
    end = date(year + 1, 1, 1) if month == 12 else date(year, month + 1, 1)
    return start, end


def previous_month(month: int, year: int) -> Tuple[int, int]:
    if month == 1:
        return 12, year - 1
    return month - 1, year


def _coerce_amount(amount: Decimal) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
