import datetime as dt
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import (
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    Float,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column

from database import Base


class TransactionType(str, Enum):
    income = "income"
    expense = "expense"


class BudgetPeriod(str, Enum):
    monthly = "monthly"
    weekly = "weekly"
    yearly = "yearly"


TRANSACTION_TYPE_ENUM = SAEnum(
    TransactionType,
    name="transactiontype",
    native_enum=False,
    create_constraint=True,
    length=16,
    values_callable=lambda enum_cls: [member.value for member in enum_cls],
)

BUDGET_PERIOD_ENUM = SAEnum(
    BudgetPeriod,
    name="budgetperiod",
    native_enum=False,
    create_constraint=True,
    length=16,
    values_callable=lambda enum_cls: [member.value for member in enum_cls],
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=_utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=_utcnow, onupdate=_utcnow, nullable=False
    )


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    type: Mapped[TransactionType] = mapped_column(
        TRANSACTION_TYPE_ENUM, nullable=False
    )
    category: Mapped[str] = mapped_column(String(100), nullable=False)
    amount: Mapped[float] = mapped_column(Float, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)

    __table_args__ = (
        Index("ix_transactions_type", "type"),
        Index("ix_transactions_date", "date"),
        Index("ix_transactions_category", "category"),
        CheckConstraint("amount > 0", name="ck_transactions_amount_positive"),
        CheckConstraint("category <> ''", name="ck_transactions_category_present"),
        {"sqlite_autoincrement": True},
    )

    def __repr__(self) -> str:
        return (
            f"Transaction(id={self.id!r}, type={self.type!r}, "
            f"category={self.category!r}, amount={self.amount!r}, date={self.date!r})"
        )


class Budget(Base, TimestampMixin):
    __tablename__ = "budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    category: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    amount: Mapped[float] = mapped_column(Float, nullable=False)
    period: Mapped[BudgetPeriod] = mapped_column(BUDGET_PERIOD_ENUM, nullable=False)
    start_date: Mapped[Optional[dt.date]] = mapped_column(Date)
    end_date: Mapped[Optional[dt.date]] = mapped_column(Date)

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_budgets_amount_positive"),
        CheckConstraint(
            "end_date IS NULL OR (start_date IS NOT NULL AND start_date <= end_date)",
            name="ck_budgets_date_range",
        ),
        {"sqlite_autoincrement": True},
    )
