from datetime import date, datetime
from decimal import Decimal

import pytest

from aggregation import (
    budget_band,
    budget_utilization,
    category_breakdown,
    daily_series,
    dashboard,
    filter_by_window,
    parse_type_filter,
    totals,
    utilization_percentage,
)
from models import TransactionType
from periods import END_OF_DAY, WindowKey, resolve_window
from schemas import BudgetOut, TransactionOut

NOW = datetime(2024, 6, 12, 10, 0)


def make_txn(
    txn_id: int,
    amount: str,
    txn_type: TransactionType = TransactionType.expense,
    category: str = "Food",
    created_at: datetime = NOW,
) -> TransactionOut:
    return TransactionOut(
        id=txn_id,
        type=txn_type,
        category=category,
        amount=Decimal(amount),
        note="",
        created_at=created_at,
    )


def make_budget(budget_id: int, category: str, amount: str) -> BudgetOut:
    return BudgetOut(
        id=budget_id, category=category, amount=Decimal(amount), created_at=NOW
    )


def test_week_window_starts_on_sunday() -> None:
    window = resolve_window("thisWeek", now=NOW)

    assert window.start == datetime(2024, 6, 9, 0, 0)
    assert window.end == datetime.combine(date(2024, 6, 15), END_OF_DAY)
    assert window.contains(datetime(2024, 6, 9, 0, 0, 1))
    assert not window.contains(datetime(2024, 6, 8, 23, 59, 59))
    assert window.contains(datetime(2024, 6, 15, 23, 59, 59))
    assert not window.contains(datetime(2024, 6, 16, 0, 0))


def test_week_window_on_a_sunday_starts_that_day() -> None:
    window = resolve_window("thisWeek", now=datetime(2024, 6, 9, 8, 30))
    assert window.start == datetime(2024, 6, 9, 0, 0)


def test_month_window_covers_calendar_month() -> None:
    window = resolve_window("thisMonth", now=NOW)
    assert window.start == datetime(2024, 6, 1)
    assert window.end == datetime(2024, 6, 30, 23, 59, 59, 999000)

    december = resolve_window("thisMonth", now=datetime(2024, 12, 31, 23, 0))
    assert december.end.date() == date(2024, 12, 31)


def test_all_time_is_unbounded_and_default() -> None:
    window = resolve_window(None, now=NOW)
    assert window.key == WindowKey.all_time
    assert window.start is None and window.end is None
    assert window.contains(datetime(1999, 1, 1))


def test_unknown_window_is_rejected() -> None:
    with pytest.raises(ValueError):
        resolve_window("lastYear", now=NOW)


def test_type_filter_parsing() -> None:
    assert parse_type_filter(None) is None
    assert parse_type_filter("all") is None
    assert parse_type_filter("income") == TransactionType.income
    with pytest.raises(ValueError):
        parse_type_filter("transfer")


def test_totals_balance_is_income_minus_expense() -> None:
    result = totals(
        [
            make_txn(1, "100", TransactionType.income, "Salary"),
            make_txn(2, "30"),
            make_txn(3, "20", category="Transport"),
        ]
    )
    assert result.income == Decimal("100")
    assert result.expense == Decimal("50")
    assert result.balance == Decimal("50")


def test_zero_budget_reports_zero_percent() -> None:
    assert utilization_percentage(Decimal("25"), Decimal("0")) == 0.0


def test_budget_bands() -> None:
    assert budget_band(0.0) == "nominal"
    assert budget_band(80.0) == "nominal"
    assert budget_band(80.5) == "warning"
    assert budget_band(100.0) == "warning"
    assert budget_band(100.1) == "over_budget"


def test_budget_utilization_reports_overage_and_hides_idle_budgets() -> None:
    txns = [
        make_txn(1, "120"),
        make_txn(2, "45", category="Transport"),
        make_txn(3, "30", category="Gifts"),
        make_txn(4, "500", TransactionType.income, "Food"),
    ]
    budgets = [
        make_budget(1, "Food", "100"),
        make_budget(2, "Transport", "50"),
        make_budget(3, "Health", "0"),
        make_budget(4, "Gifts", "0"),
    ]

    statuses = {s.category: s for s in budget_utilization(budgets, txns)}

    assert set(statuses) == {"Food", "Transport", "Gifts"}
    assert statuses["Food"].status == "over_budget"
    assert statuses["Food"].spent == Decimal("120")
    assert statuses["Food"].overage == Decimal("20")
    assert statuses["Transport"].status == "warning"
    assert statuses["Transport"].percentage == pytest.approx(90.0)
    assert statuses["Transport"].overage == Decimal("0")
    assert statuses["Gifts"].percentage == 0.0
    assert statuses["Gifts"].status == "nominal"


def test_category_breakdown_sorted_by_amount() -> None:
    shares = category_breakdown(
        [
            make_txn(1, "25", category="Transport"),
            make_txn(2, "75"),
            make_txn(3, "1000", TransactionType.income, "Salary"),
        ]
    )
    assert [s.category for s in shares] == ["Food", "Transport"]
    assert shares[0].percentage == pytest.approx(75.0)
    assert shares[1].percentage == pytest.approx(25.0)


def test_daily_series_groups_by_day_ascending() -> None:
    points = daily_series(
        [
            make_txn(1, "10", created_at=datetime(2024, 6, 11, 20, 0)),
            make_txn(2, "5", created_at=datetime(2024, 6, 10, 9, 0)),
            make_txn(3, "7", created_at=datetime(2024, 6, 11, 8, 0)),
            make_txn(
                4, "100", TransactionType.income, "Salary", datetime(2024, 6, 11, 9, 0)
            ),
        ]
    )
    assert [p.day for p in points] == [date(2024, 6, 10), date(2024, 6, 11)]
    assert points[1].expense == Decimal("17")
    assert points[1].income == Decimal("100")


def test_dashboard_filters_window_then_type() -> None:
    txns = [
        make_txn(1, "100", TransactionType.income, "Salary"),
        make_txn(2, "50"),
        make_txn(3, "999", created_at=datetime(2024, 5, 30, 12, 0)),
    ]
    budgets = [make_budget(1, "Food", "200")]
    window = resolve_window("thisMonth", now=NOW)

    board = dashboard(txns, budgets, window)

    assert board.window == "thisMonth"
    assert board.type_filter == "all"
    assert board.totals.balance == Decimal("50")
    assert [t.id for t in board.transactions] == [1, 2]
    assert board.budgets[0].spent == Decimal("50")

    expenses = dashboard(txns, budgets, window, TransactionType.expense)
    assert expenses.type_filter == "expense"
    assert expenses.totals.income == Decimal("0")
    assert expenses.totals.balance == Decimal("-50")
    assert [t.id for t in expenses.transactions] == [2]


def test_filter_by_window_keeps_boundary_instants() -> None:
    window = resolve_window("thisWeek", now=NOW)
    txns = [
        make_txn(1, "1", created_at=window.start),
        make_txn(2, "1", created_at=window.end),
    ]
    assert len(filter_by_window(txns, window)) == 2
