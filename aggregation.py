from __future__ import annotations

from collections import defaultdict
from datetime import date
from decimal import Decimal
from typing import Iterable, Optional, Sequence

from models import TransactionType
from periods import Window
from schemas import (
    BudgetOut,
    BudgetStatus,
    CategoryShare,
    DailyPoint,
    Dashboard,
    Totals,
    TransactionOut,
)

WARNING_THRESHOLD = 80
ZERO = Decimal("0")


def parse_type_filter(value: Optional[str]) -> Optional[TransactionType]:
    """``None``/``"all"`` mean no type filter."""
    if not value or value == "all":
        return None
    return TransactionType(value)


def filter_by_window(
    transactions: Iterable[TransactionOut], window: Window
) -> list[TransactionOut]:
    return [t for t in transactions if window.contains(t.created_at)]


def filter_by_type(
    transactions: Iterable[TransactionOut], txn_type: Optional[TransactionType]
) -> list[TransactionOut]:
    if txn_type is None:
        return list(transactions)
    return [t for t in transactions if t.type == txn_type]


def totals(transactions: Iterable[TransactionOut]) -> Totals:
    income = ZERO
    expense = ZERO
    for txn in transactions:
        if txn.type == TransactionType.income:
            income += txn.amount
        else:
            expense += txn.amount
    return Totals(income=income, expense=expense, balance=income - expense)


def spent_by_category(transactions: Iterable[TransactionOut]) -> dict[str, Decimal]:
    spent: dict[str, Decimal] = defaultdict(lambda: ZERO)
    for txn in transactions:
        if txn.type == TransactionType.expense:
            spent[txn.category] += txn.amount
    return dict(spent)


def utilization_percentage(spent: Decimal, amount: Decimal) -> float:
    if amount == 0:
        return 0.0
    return float(spent / amount * 100)


def budget_band(percentage: float) -> str:
    if percentage > 100:
        return "over_budget"
    if percentage > WARNING_THRESHOLD:
        return "warning"
    return "nominal"


def budget_utilization(
    budgets: Iterable[BudgetOut], transactions: Iterable[TransactionOut]
) -> list[BudgetStatus]:
    """Spend against each budget for already window-filtered transactions.

    Budgets with no amount and no spend are left out.
    """
    spent_map = spent_by_category(transactions)
    statuses: list[BudgetStatus] = []
    for budget in budgets:
        spent = spent_map.get(budget.category, ZERO)
        if budget.amount == 0 and spent == 0:
            continue
        percentage = utilization_percentage(spent, budget.amount)
        band = budget_band(percentage)
        statuses.append(
            BudgetStatus(
                budget_id=budget.id,
                category=budget.category,
                amount=budget.amount,
                spent=spent,
                percentage=percentage,
                status=band,
                overage=spent - budget.amount if band == "over_budget" else ZERO,
            )
        )
    return statuses


def category_breakdown(transactions: Iterable[TransactionOut]) -> list[CategoryShare]:
    spent_map = spent_by_category(transactions)
    total = sum(spent_map.values(), ZERO)
    rows = sorted(spent_map.items(), key=lambda item: item[1], reverse=True)
    return [
        CategoryShare(
            category=name,
            amount=amount,
            percentage=float(amount / total * 100) if total else 0.0,
        )
        for name, amount in rows
    ]


def daily_series(transactions: Iterable[TransactionOut]) -> list[DailyPoint]:
    by_day: dict[date, DailyPoint] = {}
    for txn in transactions:
        day = txn.created_at.date()
        point = by_day.get(day)
        if point is None:
            point = by_day[day] = DailyPoint(day=day)
        if txn.type == TransactionType.income:
            point.income += txn.amount
        else:
            point.expense += txn.amount
    return [by_day[day] for day in sorted(by_day)]


def dashboard(
    transactions: Sequence[TransactionOut],
    budgets: Sequence[BudgetOut],
    window: Window,
    txn_type: Optional[TransactionType] = None,
) -> Dashboard:
    windowed = filter_by_window(transactions, window)
    filtered = filter_by_type(windowed, txn_type)
    return Dashboard(
        window=window.key.value,
        type_filter=txn_type.value if txn_type else "all",
        totals=totals(filtered),
        budgets=budget_utilization(budgets, windowed),
        transactions=filtered,
    )
