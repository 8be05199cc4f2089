"""Dashboard figures for one month of a user's transactions.

Totals are accumulated in integer cents and only converted to ``Decimal`` when
the result objects are built. Credit-card expenses are bucketed by the bill they
fall on (see :func:`periods.resolve_billing_period`); income and every other
payment method use the transaction's own calendar month.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Iterable, Optional, Protocol, Sequence

from models import PaymentMethod, TransactionType
from money import from_minor_units, sum_minor_units
from periods import MonthRef, resolve_billing_period

FALLBACK_CATEGORY_COLOR = "#94a3b8"


class TransactionLike(Protocol):
    date: date
    type: TransactionType
    amount_cents: int
    category: str
    payment_method: PaymentMethod


class CategoryLike(Protocol):
    name: str
    color: str
    budget_limit_cents: Optional[int]


class BudgetStatus(str, Enum):
    ok = "ok"
    warning = "warning"
    exceeded = "exceeded"


@dataclass(frozen=True)
class DailyPoint:
    day: int
    income: Decimal
    expense: Decimal


@dataclass(frozen=True)
class CategorySlice:
    name: str
    value: Decimal
    color: str
    limit: Decimal
    share_percent: float
    budget_percent: Optional[float] = None
    status: Optional[BudgetStatus] = None


@dataclass(frozen=True)
class PeriodStats:
    month: MonthRef
    income: Decimal
    expense: Decimal
    income_change: float
    expense_change: float
    balance: Decimal
    billing_cycle_applied: bool
    daily: list[DailyPoint] = field(default_factory=list)
    categories: list[CategorySlice] = field(default_factory=list)


def percent_change(current: int, previous: int) -> float:
    if previous == 0:
        return 100.0 if current != 0 else 0.0
    return (current - previous) / previous * 100


def budget_status(spent_cents: int, limit_cents: int) -> Optional[BudgetStatus]:
    if limit_cents <= 0:
        return None
    if spent_cents >= limit_cents:
        return BudgetStatus.exceeded
    if spent_cents * 4 >= limit_cents * 3:
        return BudgetStatus.warning
    return BudgetStatus.ok


def budget_percent(spent_cents: int, limit_cents: int) -> Optional[float]:
    if limit_cents <= 0:
        return None
    return min(spent_cents / limit_cents, 1.0) * 100


def bucket_month(txn: TransactionLike, closing_day: Optional[int]) -> MonthRef:
    if txn.type == TransactionType.expense:
        return resolve_billing_period(txn.date, txn.payment_method, closing_day)
    return MonthRef.of(txn.date)


def _totals(transactions: Iterable[TransactionLike]) -> tuple[int, int]:
    income: list[int] = []
    expense: list[int] = []
    for txn in transactions:
        if txn.type == TransactionType.income:
            income.append(txn.amount_cents)
        else:
            expense.append(txn.amount_cents)
    return sum_minor_units(income), sum_minor_units(expense)


def _daily_series(
    transactions: Sequence[TransactionLike], target: MonthRef
) -> list[DailyPoint]:
    income_by_day = [0] * (target.days() + 1)
    expense_by_day = [0] * (target.days() + 1)
    for txn in transactions:
        if MonthRef.of(txn.date) != target:
            continue
        if txn.type == TransactionType.income:
            income_by_day[txn.date.day] += txn.amount_cents
        else:
            expense_by_day[txn.date.day] += txn.amount_cents
    return [
        DailyPoint(
            day=day,
            income=from_minor_units(income_by_day[day]),
            expense=from_minor_units(expense_by_day[day]),
        )
        for day in range(1, target.days() + 1)
    ]


def _category_breakdown(
    expenses: Sequence[TransactionLike],
    categories: Sequence[CategoryLike],
    total_expense: int,
) -> list[CategorySlice]:
    by_name: dict[str, int] = {}
    for txn in expenses:
        by_name[txn.category] = by_name.get(txn.category, 0) + txn.amount_cents

    known = {c.name: c for c in categories}
    slices: list[tuple[int, CategorySlice]] = []
    for name, spent in by_name.items():
        category = known.get(name)
        color = category.color if category and category.color else FALLBACK_CATEGORY_COLOR
        limit = (category.budget_limit_cents or 0) if category else 0
        share = (spent / total_expense * 100) if total_expense else 0.0
        slices.append(
            (
                spent,
                CategorySlice(
                    name=name,
                    value=from_minor_units(spent),
                    color=color,
                    limit=from_minor_units(limit),
                    share_percent=share,
                    budget_percent=budget_percent(spent, limit),
                    status=budget_status(spent, limit),
                ),
            )
        )
    slices.sort(key=lambda item: item[0], reverse=True)
    return [item[1] for item in slices]


def aggregate(
    transactions: Sequence[TransactionLike],
    target: MonthRef,
    *,
    closing_day: Optional[int] = None,
    categories: Sequence[CategoryLike] = (),
) -> PeriodStats:
    previous = target.shift(-1)
    current_bucket: list[TransactionLike] = []
    previous_bucket: list[TransactionLike] = []
    for txn in transactions:
        bucket = bucket_month(txn, closing_day)
        if bucket == target:
            current_bucket.append(txn)
        elif bucket == previous:
            previous_bucket.append(txn)

    income, expense = _totals(current_bucket)
    prev_income, prev_expense = _totals(previous_bucket)
    all_income, all_expense = _totals(transactions)

    expenses = [t for t in current_bucket if t.type == TransactionType.expense]
    return PeriodStats(
        month=target,
        income=from_minor_units(income),
        expense=from_minor_units(expense),
        income_change=percent_change(income, prev_income),
        expense_change=percent_change(expense, prev_expense),
        balance=from_minor_units(all_income - all_expense),
        billing_cycle_applied=bool(closing_day),
        daily=_daily_series(transactions, target),
        categories=_category_breakdown(expenses, categories, expense),
    )
