from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Optional

import pytest

from aggregation import (
    BudgetStatus,
    aggregate,
    budget_status,
    percent_change,
)
from models import PaymentMethod, TransactionType
from periods import MonthRef


@dataclass
class Txn:
    date: date
    amount_cents: int
    type: TransactionType = TransactionType.expense
    category: str = "Outros"
    payment_method: PaymentMethod = PaymentMethod.other


@dataclass
class Cat:
    name: str
    color: str
    budget_limit_cents: Optional[int]


def test_empty_input_gives_zero_stats() -> None:
    stats = aggregate([], MonthRef(2024, 2))
    assert stats.income == Decimal("0.00")
    assert stats.expense == Decimal("0.00")
    assert stats.balance == Decimal("0.00")
    assert stats.income_change == 0.0
    assert stats.categories == []
    assert len(stats.daily) == 29
    assert not stats.billing_cycle_applied


def test_percent_change_edges() -> None:
    assert percent_change(0, 0) == 0.0
    assert percent_change(500, 0) == 100.0
    assert percent_change(150, 100) == 50.0
    assert percent_change(50, 100) == -50.0


def test_budget_status_thresholds() -> None:
    assert budget_status(749, 1000) == BudgetStatus.ok
    assert budget_status(749999, 1000000) == BudgetStatus.ok
    assert budget_status(750, 1000) == BudgetStatus.warning
    assert budget_status(1000, 1000) == BudgetStatus.exceeded
    assert budget_status(500, 0) is None


def test_credit_card_expense_is_moved_to_next_bill() -> None:
    rows = [
        Txn(date(2024, 1, 20), 10000, payment_method=PaymentMethod.credit_card),
        Txn(date(2024, 2, 5), 5000, payment_method=PaymentMethod.pix),
    ]
    stats = aggregate(rows, MonthRef(2024, 2), closing_day=10)

    assert stats.expense == Decimal("150.00")
    assert stats.billing_cycle_applied
    assert stats.expense_change == 100.0


def test_income_ignores_billing_cycle() -> None:
    rows = [
        Txn(
            date(2024, 1, 25),
            500000,
            type=TransactionType.income,
            payment_method=PaymentMethod.credit_card,
        )
    ]
    stats = aggregate(rows, MonthRef(2024, 1), closing_day=10)
    assert stats.income == Decimal("5000.00")


def test_balance_covers_all_time() -> None:
    rows = [
        Txn(date(2023, 5, 1), 100000, type=TransactionType.income),
        Txn(date(2024, 3, 1), 25000),
    ]
    stats = aggregate(rows, MonthRef(2024, 3))
    assert stats.balance == Decimal("750.00")
    assert stats.income == Decimal("0.00")


def test_daily_series_uses_calendar_dates() -> None:
    rows = [
        Txn(date(2024, 2, 3), 1000),
        Txn(date(2024, 2, 3), 500),
        Txn(date(2024, 2, 10), 2000, type=TransactionType.income),
        Txn(date(2024, 3, 3), 9999),
    ]
    stats = aggregate(rows, MonthRef(2024, 2))
    by_day = {p.day: p for p in stats.daily}
    assert by_day[3].expense == Decimal("15.00")
    assert by_day[10].income == Decimal("20.00")
    assert by_day[1].expense == Decimal("0.00")


def test_category_breakdown_sorted_with_budget_status() -> None:
    rows = [
        Txn(date(2024, 4, 1), 60000, category="Alimentação"),
        Txn(date(2024, 4, 2), 25000, category="Lazer"),
        Txn(date(2024, 4, 3), 15000, category="Desconhecida"),
    ]
    categories = [
        Cat("Alimentação", "#f87171", 80000),
        Cat("Lazer", "#f472b6", 20000),
    ]
    stats = aggregate(rows, MonthRef(2024, 4), categories=categories)

    assert [s.name for s in stats.categories] == ["Alimentação", "Lazer", "Desconhecida"]
    food, fun, unknown = stats.categories
    assert food.status == BudgetStatus.warning
    assert food.budget_percent == 75.0
    assert food.share_percent == pytest.approx(60.0)
    assert fun.status == BudgetStatus.exceeded
    assert fun.budget_percent == 100.0
    assert unknown.color == "#94a3b8"
    assert unknown.limit == Decimal("0.00")
    assert unknown.status is None
