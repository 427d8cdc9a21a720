from datetime import date

import pytest

from database import create_session_factory
from errors import AlreadyExistsError, NoBudgetConfigured, ValidationError
from models import BudgetPeriod
from services import BudgetService, ThresholdBand, TransactionService, threshold_band

TODAY = date(2025, 6, 18)


def make_session():
    SessionLocal = create_session_factory("sqlite://")
    return SessionLocal()


def test_check_without_budget_returns_none() -> None:
    session = make_session()
    TransactionService(session).add("expense", "Food", 10.0, None, "2025-06-01")

    assert BudgetService(session).check("Food", "month", today=TODAY) is None


def test_add_budget_twice_fails_but_remove_then_add_succeeds() -> None:
    session = make_session()
    budgets = BudgetService(session)
    budgets.add("Food", 300.0, "monthly")

    with pytest.raises(AlreadyExistsError):
        budgets.add("Food", 500.0, "weekly")
    assert budgets.get("Food").amount == 300.0

    budgets.remove("Food")
    budget = budgets.add("Food", 500.0, "weekly")
    assert budget.period == BudgetPeriod.weekly
    assert [b.category for b in budgets.list_all()] == ["Food"]


def test_remove_missing_budget_is_ok() -> None:
    session = make_session()
    BudgetService(session).remove("Nothing")


def test_get_missing_budget_raises() -> None:
    session = make_session()
    with pytest.raises(NoBudgetConfigured):
        BudgetService(session).get("Food")


def test_replace_overwrites_wholesale() -> None:
    session = make_session()
    budgets = BudgetService(session)
    original = budgets.add("Food", 300.0, "monthly", "2025-01-01", "2025-12-31")

    replaced = budgets.replace("Food", 100.0, "weekly")
    assert replaced.id == original.id
    assert replaced.amount == 100.0
    assert replaced.period == BudgetPeriod.weekly
    assert replaced.start_date is None and replaced.end_date is None


@pytest.mark.parametrize(
    "args",
    [
        ("", 100.0, "monthly"),
        ("Food", 0, "monthly"),
        ("Food", -10.0, "monthly"),
        ("Food", 100.0, "daily"),
        ("Food", 100.0, "monthly", None, "2025-01-31"),
        ("Food", 100.0, "monthly", "2025-02-01", "2025-01-31"),
        ("Food", 100.0, "monthly", "2025-02-30"),
    ],
)
def test_add_budget_validation(args) -> None:
    session = make_session()
    budgets = BudgetService(session)
    with pytest.raises(ValidationError):
        budgets.add(*args)
    assert budgets.list_all() == []


def test_check_sums_expenses_for_category_in_window() -> None:
    session = make_session()
    txns = TransactionService(session)
    txns.add("expense", "Food", 120.0, None, "2025-06-02")
    txns.add("expense", "Food", 60.0, None, "2025-06-17")
    txns.add("expense", "Food", 500.0, None, "2025-05-31")
    txns.add("expense", "Fun", 70.0, None, "2025-06-10")
    txns.add("income", "Food", 1000.0, None, "2025-06-05")

    budgets = BudgetService(session)
    budgets.add("Food", 200.0, "monthly")

    check = budgets.check("Food", "month", today=TODAY)
    assert (check.spent, check.allotted) == (180.0, 200.0)
    spent, allotted = check
    assert spent == 180.0 and allotted == 200.0
    assert check.percent == pytest.approx(90.0)
    assert check.remaining == 20.0


def test_check_defaults_to_budget_period_and_accepts_aliases() -> None:
    session = make_session()
    txns = TransactionService(session)
    txns.add("expense", "Food", 10.0, None, "2025-06-16")
    txns.add("expense", "Food", 20.0, None, "2025-06-02")

    budgets = BudgetService(session)
    budgets.add("Food", 100.0, "weekly")

    by_default = budgets.check("Food", today=TODAY)
    by_alias = budgets.check("Food", "weekly", today=TODAY)
    by_token = budgets.check("Food", "week", today=TODAY)
    assert by_default.spent == by_alias.spent == by_token.spent == 10.0

    assert budgets.check("Food", "all", today=TODAY).spent == 30.0


@pytest.mark.parametrize(
    "spent,expected",
    [
        (0.0, ThresholdBand.within),
        (90.0, ThresholdBand.within),
        (90.5, ThresholdBand.approaching),
        (100.0, ThresholdBand.approaching),
        (100.5, ThresholdBand.exceeded),
    ],
)
def test_threshold_bands(spent, expected) -> None:
    assert threshold_band(spent, 100.0, warn_percent=90) == expected


def test_summary_checks_every_budget() -> None:
    session = make_session()
    txns = TransactionService(session)
    txns.add("expense", "Food", 250.0, None, "2025-06-02")
    txns.add("expense", "Fun", 10.0, None, "2025-06-02")

    budgets = BudgetService(session)
    budgets.add("Food", 200.0, "monthly")
    budgets.add("Fun", 100.0, "monthly")

    summary = {c.category: c for c in budgets.summary(today=TODAY)}
    assert summary["Food"].spent == 250.0
    assert summary["Fun"].spent == 10.0
    assert threshold_band(summary["Food"].spent, summary["Food"].allotted, 90) == (
        ThresholdBand.exceeded
    )
