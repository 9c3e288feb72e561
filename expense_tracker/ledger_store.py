from __future__ import annotations

from datetime import date
from typing import List, Optional

from sqlalchemy import and_, insert, or_, select, update
from sqlalchemy.engine import Connection, Engine

from expense_tracker.budget_engine import Entry, LedgerFilter
from expense_tracker.db import ledger_entries, recurring_rules
from expense_tracker.recurring_engine import LedgerEntry, RecurringRule


def build_conditions(
    user_id: int,
    kind: str,
    ledger_filter: Optional[LedgerFilter] = None,
    period: Optional[tuple[date, date]] = None,
) -> list:
    """WHERE clauses for one user's entries of one kind.

    ``period`` is a half-open ``[start, end)`` range; an explicit
    ``date_from``/``date_to`` in the filter replaces it and is inclusive
    on both ends.
    """
    ledger_filter = ledger_filter or LedgerFilter()
    conditions = [ledger_entries.c.user_id == user_id, ledger_entries.c.kind == kind]

    if ledger_filter.has_date_range():
        if ledger_filter.date_from is not None:
            conditions.append(ledger_entries.c.date >= ledger_filter.date_from)
        if ledger_filter.date_to is not None:
            conditions.append(ledger_entries.c.date <= ledger_filter.date_to)
    elif period is not None:
        conditions.append(ledger_entries.c.date >= period[0])
        conditions.append(ledger_entries.c.date < period[1])

    if ledger_filter.category:
        conditions.append(ledger_entries.c.category == ledger_filter.category)
    if ledger_filter.amount_min is not None:
        conditions.append(ledger_entries.c.amount >= ledger_filter.amount_min)
    if ledger_filter.amount_max is not None:
        conditions.append(ledger_entries.c.amount <= ledger_filter.amount_max)
    if ledger_filter.search:
        pattern = f"%{ledger_filter.search.strip()}%"
        conditions.append(
            or_(
                ledger_entries.c.description.ilike(pattern),
                ledger_entries.c.category.ilike(pattern),
            )
        )
    return conditions


def create_entry(conn: Connection, entry: LedgerEntry) -> dict:
    stmt = (
        insert(ledger_entries)
        .values(
            user_id=entry.user_id,
            kind=entry.kind,
            amount=entry.amount,
            category=entry.category,
            description=entry.description,
            date=entry.date,
            source=entry.source,
            external_ref=entry.external_ref,
        )
        .returning(*ledger_entries.c)
    )
    return dict(conn.execute(stmt).mappings().one())


def find_entries(
    conn: Connection,
    user_id: int,
    kind: str,
    ledger_filter: Optional[LedgerFilter] = None,
    period: Optional[tuple[date, date]] = None,
    limit: Optional[int] = None,
) -> List[Entry]:
    """Matching entries, newest first."""
    stmt = (
        select(
            ledger_entries.c.amount,
            ledger_entries.c.category,
            ledger_entries.c.date,
            ledger_entries.c.description,
        )
        .where(and_(*build_conditions(user_id, kind, ledger_filter, period)))
        .order_by(ledger_entries.c.date.desc(), ledger_entries.c.id.desc())
    )
    if limit is not None:
        stmt = stmt.limit(limit)
    rows = conn.execute(stmt).mappings().all()
    return [
        Entry(
            amount=row["amount"],
            category=row["category"],
            date=row["date"],
            description=row["description"],
        )
        for row in rows
    ]


def row_to_rule(row) -> RecurringRule:
    return RecurringRule(
        id=row["id"],
        user_id=row["user_id"],
        kind=row["kind"],
        amount=row["amount"],
        category=row["category"],
        frequency=row["frequency"],
        next_date=row["next_date"],
        description=row["description"],
        is_active=bool(row["is_active"]),
        anchor_day=row["anchor_day"],
    )


class SqlRuleStore:
    """Rule store for the recurring sweep.

    Every call runs in its own transaction so entries written before a
    failure stay committed.
    """

    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    def find_due_rules(self, as_of: date) -> List[RecurringRule]:
        with self._engine.begin() as conn:
            rows = conn.execute(
                select(recurring_rules)
                .where(
                    recurring_rules.c.is_active.is_(True),
                    recurring_rules.c.next_date <= as_of,
                )
                .order_by(recurring_rules.c.next_date.asc(), recurring_rules.c.id.asc())
            ).mappings().all()
        return [row_to_rule(row) for row in rows]

    def create_entry(self, entry: LedgerEntry) -> None:
        with self._engine.begin() as conn:
            create_entry(conn, entry)

    def update_next_date(self, rule_id: int, next_date: date) -> None:
        with self._engine.begin() as conn:
            conn.execute(
                update(recurring_rules)
                .where(recurring_rules.c.id == rule_id)
                .values(next_date=next_date)
            )
