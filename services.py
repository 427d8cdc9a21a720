from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Any, Iterator, Optional, Union

from sqlalchemy import case, delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config import get_settings
from errors import (
    AlreadyExistsError,
    NoBudgetConfigured,
    NotFoundError,
    NothingToUpdateError,
    StoreError,
    ValidationError,
)
from filters import (
    TransactionFilters,
    apply_conditions,
    build_assignments,
    build_conditions,
)
from models import Budget, Transaction, TransactionType
from periods import ALL_TIME, Period, resolve_period
from schemas import BudgetIn, TransactionIn, TransactionPatch, validate_input

logger = logging.getLogger(__name__)


@contextmanager
def store_errors(session: Session, action: str) -> Iterator[None]:
    try:
        yield
    except SQLAlchemyError as exc:
        session.rollback()
        logger.warning(f"store_error: action={action} error={exc.__class__.__name__}")
        raise StoreError(f"{action} failed: {exc}") from exc


def _require_id(transaction_id: Optional[int]) -> int:
    if not transaction_id:
        raise ValidationError("Transaction ID is required")
    try:
        return int(transaction_id)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"Invalid transaction ID: {transaction_id!r}") from exc


class TransactionService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def create(self, data: TransactionIn) -> Transaction:
        txn = Transaction(
            type=data.type,
            category=data.category,
            amount=data.amount,
            description=data.description,
            date=data.date,
        )
        with store_errors(self.session, "add transaction"):
            self.session.add(txn)
            self.session.commit()
            self.session.refresh(txn)
        logger.info(
            f"transaction_created: id={txn.id} type={txn.type.value} date={txn.date}"
        )
        return txn

    def add(
        self,
        type: Union[TransactionType, str],
        category: str,
        amount: float,
        description: Optional[str] = None,
        date: Union[date, str, None] = None,
    ) -> Transaction:
        data = validate_input(
            TransactionIn,
            type=type,
            category=category,
            amount=amount,
            description=description or None,
            date=date,
        )
        return self.create(data)

    def get(self, transaction_id: int) -> Transaction:
        transaction_id = _require_id(transaction_id)
        with store_errors(self.session, "get transaction"):
            txn = self.session.get(Transaction, transaction_id)
        if not txn:
            raise NotFoundError("Transaction not found")
        return txn

    def list(self, filters: Optional[TransactionFilters] = None) -> list[Transaction]:
        filters = filters or TransactionFilters()
        stmt = apply_conditions(
            select(Transaction), Transaction, build_conditions(filters)
        ).order_by(Transaction.date.desc())
        if filters.limit and filters.limit > 0:
            stmt = stmt.limit(filters.limit)
        with store_errors(self.session, "list transactions"):
            return list(self.session.scalars(stmt).all())

    def update(
        self, transaction_id: int, patch: Union[TransactionPatch, dict[str, Any]]
    ) -> Transaction:
        transaction_id = _require_id(transaction_id)
        if not isinstance(patch, TransactionPatch):
            patch = validate_input(TransactionPatch, **patch)
        assignments = build_assignments(patch)
        if not assignments:
            raise NothingToUpdateError()

        with store_errors(self.session, "update transaction"):
            txn = self.get(transaction_id)
            for field, value in assignments.items():
                setattr(txn, field, value)
            self.session.commit()
            self.session.refresh(txn)
        logger.info(
            f"transaction_updated: id={txn.id} fields={','.join(sorted(assignments))}"
        )
        return txn

    def delete(self, transaction_id: int) -> None:
        transaction_id = _require_id(transaction_id)
        with store_errors(self.session, "delete transaction"):
            txn = self.session.get(Transaction, transaction_id)
        if txn is None:
            logger.debug(f"transaction_delete_missing: id={transaction_id}")
            return
        with store_errors(self.session, "delete transaction"):
            self.session.delete(txn)
            self.session.commit()
        logger.info(f"transaction_deleted: id={transaction_id}")


@dataclass(frozen=True)
class Balance:
    income: float
    expense: float

    @property
    def net(self) -> float:
        return self.income - self.expense

    def __iter__(self):
        return iter((self.income, self.expense))


@dataclass(frozen=True)
class CategoryBreakdown:
    totals: dict[str, float]

    @property
    def total_expense(self) -> float:
        return sum(self.totals.values())

    @property
    def denominator(self) -> float:
        # zero expense is reported as 0% rather than undefined
        return self.total_expense or 1

    def percent(self, category: str) -> float:
        return self.totals.get(category, 0) / self.denominator * 100

    def ranked(self) -> list[tuple[str, float]]:
        return sorted(self.totals.items(), key=lambda item: item[1], reverse=True)

    def top(self, n: int = 3) -> list[tuple[str, float]]:
        return self.ranked()[:n]


class MetricsService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def balance(self, period: Period = ALL_TIME) -> Balance:
        stmt = select(
            func.coalesce(
                func.sum(
                    case(
                        (Transaction.type == TransactionType.income, Transaction.amount),
                        else_=0,
                    )
                ),
                0,
            ).label("income"),
            func.coalesce(
                func.sum(
                    case(
                        (Transaction.type == TransactionType.expense, Transaction.amount),
                        else_=0,
                    )
                ),
                0,
            ).label("expense"),
        )
        stmt = apply_conditions(stmt, Transaction, period.conditions())
        with store_errors(self.session, "balance"):
            row = self.session.execute(stmt).one()
        return Balance(income=float(row.income or 0), expense=float(row.expense or 0))

    def category_breakdown(self, period: Period = ALL_TIME) -> CategoryBreakdown:
        total = func.sum(Transaction.amount).label("total")
        stmt = (
            select(Transaction.category, total)
            .where(Transaction.type == TransactionType.expense)
            .group_by(Transaction.category)
        )
        stmt = apply_conditions(stmt, Transaction, period.conditions())
        with store_errors(self.session, "category breakdown"):
            rows = self.session.execute(stmt).all()
        return CategoryBreakdown(
            totals={row.category: float(row.total or 0) for row in rows}
        )

    def expense_income_ratio(self, period: Period = ALL_TIME) -> Optional[float]:
        balance = self.balance(period)
        if balance.income > 0 and balance.expense > 0:
            return balance.expense / balance.income
        return None


class ThresholdBand(str, Enum):
    within = "within"
    approaching = "approaching"
    exceeded = "exceeded"


def threshold_band(
    spent: float, allotted: float, warn_percent: Optional[float] = None
) -> ThresholdBand:
    if warn_percent is None:
        warn_percent = get_settings().budget_warn_percent
    percent = spent / allotted * 100
    if percent > 100:
        return ThresholdBand.exceeded
    if percent > warn_percent:
        return ThresholdBand.approaching
    return ThresholdBand.within


@dataclass(frozen=True)
class BudgetCheck:
    category: str
    spent: float
    allotted: float
    period: Period

    @property
    def percent(self) -> float:
        return self.spent / self.allotted * 100

    @property
    def remaining(self) -> float:
        return self.allotted - self.spent

    @property
    def status(self) -> ThresholdBand:
        return threshold_band(self.spent, self.allotted)

    def __iter__(self):
        return iter((self.spent, self.allotted))


class BudgetService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(self) -> list[Budget]:
        stmt = select(Budget).order_by(Budget.category.asc())
        with store_errors(self.session, "list budgets"):
            return list(self.session.scalars(stmt).all())

    def _find(self, category: str) -> Optional[Budget]:
        with store_errors(self.session, "find budget"):
            return self.session.scalar(select(Budget).where(Budget.category == category))

    def get(self, category: str) -> Budget:
        budget = self._find(category)
        if budget is None:
            raise NoBudgetConfigured(category)
        return budget

    def _upsert(self, data: BudgetIn) -> Budget:
        existing = self._find(data.category)
        with store_errors(self.session, "save budget"):
            if existing:
                existing.amount = data.amount
                existing.period = data.period
                existing.start_date = data.start_date
                existing.end_date = data.end_date
                budget = existing
            else:
                budget = Budget(
                    category=data.category,
                    amount=data.amount,
                    period=data.period,
                    start_date=data.start_date,
                    end_date=data.end_date,
                )
                self.session.add(budget)
            self.session.commit()
            self.session.refresh(budget)
        logger.info(
            f"budget_saved: category={budget.category} period={budget.period.value}"
        )
        return budget

    def add(
        self,
        category: str,
        amount: float,
        period: str,
        start_date: Union[date, str, None] = None,
        end_date: Union[date, str, None] = None,
    ) -> Budget:
        data = validate_input(
            BudgetIn,
            category=category,
            amount=amount,
            period=period,
            start_date=start_date or None,
            end_date=end_date or None,
        )
        if self._find(data.category) is not None:
            raise AlreadyExistsError(
                f"Budget for category '{data.category}' already exists"
            )
        return self._upsert(data)

    def replace(
        self,
        category: str,
        amount: float,
        period: str,
        start_date: Union[date, str, None] = None,
        end_date: Union[date, str, None] = None,
    ) -> Budget:
        data = validate_input(
            BudgetIn,
            category=category,
            amount=amount,
            period=period,
            start_date=start_date or None,
            end_date=end_date or None,
        )
        return self._upsert(data)

    def remove(self, category: str) -> None:
        with store_errors(self.session, "remove budget"):
            result = self.session.execute(
                delete(Budget).where(Budget.category == category)
            )
            self.session.commit()
        logger.info(f"budget_removed: category={category} rows={result.rowcount}")

    def spent(self, category: str, period: Period) -> float:
        stmt = select(func.coalesce(func.sum(Transaction.amount), 0)).where(
            Transaction.type == TransactionType.expense,
            Transaction.category == category,
        )
        stmt = apply_conditions(stmt, Transaction, period.conditions())
        with store_errors(self.session, "budget spent"):
            return float(self.session.execute(stmt).scalar_one() or 0)

    def check(
        self,
        category: str,
        period: Optional[str] = None,
        start=None,
        end=None,
        *,
        today: Optional[date] = None,
    ) -> Optional[BudgetCheck]:
        """Compare spend in ``period`` with the configured budget.

        Returns None when the category has no budget; callers skip threshold
        evaluation in that case. Without an explicit period the budget's own
        period is used.
        """
        budget = self._find(category)
        if budget is None:
            return None
        window = resolve_period(period or budget.period.value, start, end, today=today)
        return BudgetCheck(
            category=budget.category,
            spent=self.spent(budget.category, window),
            allotted=budget.amount,
            period=window,
        )

    def summary(
        self, period: Optional[str] = None, *, today: Optional[date] = None
    ) -> list[BudgetCheck]:
        checks: list[BudgetCheck] = []
        for budget in self.list_all():
            window = resolve_period(period or budget.period.value, today=today)
            checks.append(
                BudgetCheck(
                    category=budget.category,
                    spent=self.spent(budget.category, window),
                    allotted=budget.amount,
                    period=window,
                )
            )
        return checks
