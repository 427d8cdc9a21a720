from datetime import date

import pytest
from sqlalchemy import func, select, text
from sqlalchemy.exc import IntegrityError

from database import create_session_factory
from errors import NotFoundError, NothingToUpdateError, StoreError, ValidationError
from filters import TransactionFilters
from models import Transaction, TransactionType
from schemas import TransactionIn, TransactionPatch
from services import TransactionService


def make_session():
    SessionLocal = create_session_factory("sqlite://")
    return SessionLocal()


def seed(session) -> TransactionService:
    txns = TransactionService(session)
    txns.add("income", "Salary", 2500.0, "October pay", "2025-10-01")
    txns.add("expense", "Food", 12.5, "Lunch", "2025-10-03")
    txns.add("expense", "Transport", 40.0, None, "2025-10-05")
    txns.add("expense", "Food", 80.0, "Groceries", "2025-09-28")
    return txns


def count_rows(session) -> int:
    return session.execute(select(func.count(Transaction.id))).scalar_one()


def test_add_assigns_id_and_stores_fields() -> None:
    session = make_session()
    txn = TransactionService(session).add(
        "expense", "Food", 12.5, "Lunch", "2025-10-03"
    )
    assert txn.id == 1
    assert txn.type == TransactionType.expense
    assert txn.category == "Food"
    assert txn.amount == 12.5
    assert txn.description == "Lunch"
    assert txn.date == date(2025, 10, 3)


def test_list_without_filters_orders_by_date_descending() -> None:
    session = make_session()
    txns = seed(session)

    dates = [t.date for t in txns.list()]
    assert dates == sorted(dates, reverse=True)
    assert len(dates) == 4


@pytest.mark.parametrize(
    "kwargs",
    [
        {"type": "transfer"},
        {"type": ""},
        {"amount": 0},
        {"amount": -5},
        {"category": ""},
        {"date": "2025-13-01"},
        {"date": "03/10/2025"},
        {"date": ""},
    ],
)
def test_add_rejects_invalid_input_without_writing(kwargs) -> None:
    session = make_session()
    args = {
        "type": "expense",
        "category": "Food",
        "amount": 10.0,
        "description": None,
        "date": "2025-10-03",
    }
    args.update(kwargs)

    with pytest.raises(ValidationError):
        TransactionService(session).add(**args)
    assert count_rows(session) == 0


def test_list_combines_present_filters() -> None:
    session = make_session()
    txns = seed(session)

    food = txns.list(TransactionFilters(type="expense", category="Food"))
    assert [t.amount for t in food] == [12.5, 80.0]

    income = txns.list(TransactionFilters(type=TransactionType.income))
    assert [t.category for t in income] == ["Salary"]


def test_list_date_bounds_are_inclusive() -> None:
    session = make_session()
    txns = seed(session)

    rows = txns.list(
        TransactionFilters(start_date="2025-10-01", end_date=date(2025, 10, 3))
    )
    assert [t.date for t in rows] == [date(2025, 10, 3), date(2025, 10, 1)]


def test_list_limit_caps_rows_and_zero_means_no_cap() -> None:
    session = make_session()
    txns = seed(session)

    assert [t.date for t in txns.list(TransactionFilters(limit=2))] == [
        date(2025, 10, 5),
        date(2025, 10, 3),
    ]
    assert len(txns.list(TransactionFilters(limit=0))) == 4


def test_list_rejects_unknown_type_filter() -> None:
    session = make_session()
    with pytest.raises(ValidationError):
        TransactionService(session).list(TransactionFilters(type="refund"))


def test_update_with_unchanged_amount_sentinel_keeps_amount() -> None:
    session = make_session()
    txns = TransactionService(session)
    txn = txns.add("expense", "Food", 12.5, "Lunch", "2025-10-03")

    patch = TransactionPatch.from_sentinels(amount=-1, category="Dining")
    updated = txns.update(txn.id, patch)

    assert updated.amount == 12.5
    assert updated.category == "Dining"
    assert updated.description == "Lunch"


def test_update_only_touches_supplied_fields() -> None:
    session = make_session()
    txns = TransactionService(session)
    txn = txns.add("expense", "Food", 12.5, "Lunch", "2025-10-03")

    updated = txns.update(txn.id, {"amount": 15.0, "date": "2025-10-04"})
    assert updated.amount == 15.0
    assert updated.date == date(2025, 10, 4)
    assert updated.category == "Food"
    assert updated.type == TransactionType.expense


def test_update_can_clear_description() -> None:
    session = make_session()
    txns = TransactionService(session)
    txn = txns.add("expense", "Food", 12.5, "Lunch", "2025-10-03")

    updated = txns.update(txn.id, TransactionPatch(description=None))
    assert updated.description is None


def test_update_without_fields_fails() -> None:
    session = make_session()
    txns = TransactionService(session)
    txn = txns.add("expense", "Food", 12.5, "Lunch", "2025-10-03")

    with pytest.raises(NothingToUpdateError):
        txns.update(txn.id, TransactionPatch())
    with pytest.raises(NothingToUpdateError):
        txns.update(txn.id, TransactionPatch.from_sentinels())


def test_update_requires_non_zero_id() -> None:
    session = make_session()
    with pytest.raises(ValidationError, match="ID is required"):
        TransactionService(session).update(0, {"category": "Food"})


def test_update_missing_transaction_is_not_found() -> None:
    session = make_session()
    with pytest.raises(NotFoundError):
        TransactionService(session).update(42, {"category": "Food"})


def test_update_rejects_invalid_values() -> None:
    session = make_session()
    txns = TransactionService(session)
    txn = txns.add("expense", "Food", 12.5, "Lunch", "2025-10-03")

    with pytest.raises(ValidationError):
        txns.update(txn.id, {"amount": 0})
    with pytest.raises(ValidationError):
        txns.update(txn.id, {"category": None})
    assert txns.get(txn.id).amount == 12.5


def test_delete_removes_row_and_ids_are_not_reused() -> None:
    session = make_session()
    txns = TransactionService(session)
    first = txns.add("expense", "Food", 1.0, None, "2025-10-01")
    second = txns.add("expense", "Food", 2.0, None, "2025-10-02")

    txns.delete(second.id)
    third = txns.add("expense", "Food", 3.0, None, "2025-10-03")

    assert [t.id for t in txns.list()] == [third.id, first.id]
    assert third.id == 3


def test_delete_missing_transaction_is_a_no_op() -> None:
    session = make_session()
    TransactionService(session).delete(99)


def test_store_rejects_constraint_violations() -> None:
    session = make_session()
    bad = TransactionIn.model_construct(
        type=TransactionType.expense,
        category="Food",
        amount=-3.0,
        description=None,
        date=date(2025, 10, 1),
    )
    with pytest.raises(StoreError):
        TransactionService(session).create(bad)
    assert count_rows(session) == 0


def test_store_rejects_unknown_type() -> None:
    session = make_session()
    with pytest.raises(IntegrityError):
        session.execute(
            text(
                "INSERT INTO transactions "
                "(type, category, amount, description, date, created_at, updated_at) "
                "VALUES ('gift', 'Food', 5.0, NULL, '2025-10-01', "
                "'2025-10-01 00:00:00', '2025-10-01 00:00:00')"
            )
        )
    session.rollback()

    bad = TransactionIn.model_construct(
        type="gift",
        category="Food",
        amount=5.0,
        description=None,
        date=date(2025, 10, 1),
    )
    with pytest.raises(StoreError):
        TransactionService(session).create(bad)
    assert count_rows(session) == 0


@pytest.mark.parametrize("bad_id", ["abc", "1.5", object()])
def test_non_numeric_id_is_a_validation_error(bad_id) -> None:
    session = make_session()
    txns = TransactionService(session)
    with pytest.raises(ValidationError, match="Invalid transaction ID"):
        txns.update(bad_id, {"category": "Food"})
    with pytest.raises(ValidationError):
        txns.get(bad_id)
    with pytest.raises(ValidationError):
        txns.delete(bad_id)


def test_storage_failure_during_update_lookup_is_a_store_error() -> None:
    session = make_session()
    txn = TransactionService(session).add("expense", "Food", 12.5, None, "2025-10-03")
    session.expunge_all()
    session.execute(text("DROP TABLE transactions"))

    with pytest.raises(StoreError):
        TransactionService(session).update(txn.id, {"category": "Dining"})
