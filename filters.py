import datetime as dt
import operator
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional

from sqlalchemy import Select

from errors import ValidationError
from models import TransactionType
from schemas import TransactionPatch, coerce_date


@dataclass(frozen=True)
class Condition:
    field: str
    op: str
    value: Any


OPERATORS: dict[str, Callable[[Any, Any], Any]] = {
    "eq": operator.eq,
    "ge": operator.ge,
    "le": operator.le,
}


@dataclass
class TransactionFilters:
    type: Optional[TransactionType] = None
    category: Optional[str] = None
    start_date: Optional[dt.date] = None
    end_date: Optional[dt.date] = None
    limit: Optional[int] = None


def build_conditions(filters: TransactionFilters) -> list[Condition]:
    conditions: list[Condition] = []
    if filters.type:
        try:
            txn_type = TransactionType(filters.type)
        except ValueError as exc:
            raise ValidationError("type must be 'income' or 'expense'") from exc
        conditions.append(Condition("type", "eq", txn_type))
    if filters.category:
        conditions.append(Condition("category", "eq", filters.category))
    start_date = coerce_date(filters.start_date, "start")
    if start_date:
        conditions.append(Condition("date", "ge", start_date))
    end_date = coerce_date(filters.end_date, "end")
    if end_date:
        conditions.append(Condition("date", "le", end_date))
    return conditions


def apply_conditions(stmt: Select, model: type, conditions: Iterable[Condition]) -> Select:
    """Turn condition triples into bound column comparisons on ``stmt``."""
    for cond in conditions:
        try:
            compare = OPERATORS[cond.op]
        except KeyError as exc:
            raise ValueError(f"Unsupported operator: {cond.op}") from exc
        column = getattr(model, cond.field)
        stmt = stmt.where(compare(column, cond.value))
    return stmt


def build_assignments(patch: TransactionPatch) -> dict[str, Any]:
    return patch.changes()
