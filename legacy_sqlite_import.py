from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from errors import ValidationError
from models import Budget, Transaction
from schemas import BudgetIn, TransactionIn, validate_input
from services import store_errors

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS: dict[str, set[str]] = {
    "transactions": {"type", "category", "amount", "description", "date"},
    "budgets": {"category", "amount", "period", "start_date", "end_date"},
}


@dataclass(frozen=True)
class SkippedRow:
    table: str
    legacy_id: int
    reason: str


@dataclass
class LegacyDBPreview:
    transactions_count: int
    budgets_count: int
    min_transaction_date: Optional[date]
    max_transaction_date: Optional[date]
    valid_transactions: list[TransactionIn] = field(default_factory=list)
    valid_budgets: list[BudgetIn] = field(default_factory=list)
    skipped: list[SkippedRow] = field(default_factory=list)
    conflicting_budgets: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def _connect_readonly(path: Path) -> sqlite3.Connection:
    uri = f"file:{path.resolve()}?mode=ro"
    con = sqlite3.connect(uri, uri=True)
    con.row_factory = sqlite3.Row
    con.execute("PRAGMA query_only=ON;")
    return con


def _legacy_tables(con: sqlite3.Connection) -> set[str]:
    cur = con.execute(
        "select name from sqlite_master where type='table' and name not like 'sqlite_%'"
    )
    tables = {r[0] for r in cur.fetchall()}
    if "transactions" not in tables:
        raise ValidationError("Legacy DB missing table: transactions")

    for table, cols in REQUIRED_COLUMNS.items():
        if table not in tables:
            continue
        present = {row["name"] for row in con.execute(f"pragma table_info({table})")}
        missing_cols = cols - present
        if missing_cols:
            raise ValidationError(
                f"Legacy DB table '{table}' missing columns: {', '.join(sorted(missing_cols))}"
            )
    return tables


class LegacySQLiteImportService:
    """Import a ``finance.db`` written by the old command-line tracker.

    Rows that would break a ledger invariant are skipped and reported rather
    than imported.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def _existing_budget_categories(self) -> set[str]:
        return set(self.session.scalars(select(Budget.category)).all())

    def preview(self, legacy_db_path: Path) -> LegacyDBPreview:
        if not legacy_db_path.exists():
            raise ValidationError("Legacy DB file not found")

        con = _connect_readonly(legacy_db_path)
        try:
            tables = _legacy_tables(con)

            txn_rows = con.execute(
                "select id, type, category, amount, description, date "
                "from transactions order by id"
            ).fetchall()
            budget_rows = []
            if "budgets" in tables:
                budget_rows = con.execute(
                    "select id, category, amount, period, start_date, end_date "
                    "from budgets order by id"
                ).fetchall()
            else:
                logger.debug("legacy_import: no budgets table")
        except sqlite3.Error as exc:
            raise ValidationError(f"Cannot read legacy DB: {exc}") from exc
        finally:
            con.close()

        preview = LegacyDBPreview(
            transactions_count=len(txn_rows),
            budgets_count=len(budget_rows),
            min_transaction_date=None,
            max_transaction_date=None,
        )

        for row in txn_rows:
            try:
                data = validate_input(
                    TransactionIn,
                    type=row["type"],
                    category=row["category"],
                    amount=row["amount"],
                    description=row["description"] or None,
                    date=row["date"],
                )
            except ValidationError as exc:
                preview.skipped.append(SkippedRow("transactions", row["id"], str(exc)))
                continue
            preview.valid_transactions.append(data)

        dates = [t.date for t in preview.valid_transactions]
        if dates:
            preview.min_transaction_date = min(dates)
            preview.max_transaction_date = max(dates)

        existing = self._existing_budget_categories()
        for row in budget_rows:
            try:
                data = validate_input(
                    BudgetIn,
                    category=row["category"],
                    amount=row["amount"],
                    period=row["period"],
                    start_date=row["start_date"] or None,
                    end_date=row["end_date"] or None,
                )
            except ValidationError as exc:
                preview.skipped.append(SkippedRow("budgets", row["id"], str(exc)))
                continue
            if data.category in existing:
                preview.conflicting_budgets.append(data.category)
            preview.valid_budgets.append(data)

        if preview.skipped:
            preview.warnings.append(
                f"{len(preview.skipped)} legacy row(s) violate ledger rules and will be skipped."
            )
        if preview.conflicting_budgets:
            preview.warnings.append(
                "Budgets already configured for: "
                + ", ".join(sorted(preview.conflicting_budgets))
            )
        return preview

    def commit(
        self,
        legacy_db_path: Path,
        *,
        include_budgets: bool = True,
        replace_budgets: bool = False,
    ) -> dict[str, int]:
        preview = self.preview(legacy_db_path)
        existing = {
            b.category: b for b in self.session.scalars(select(Budget)).all()
        }

        budgets_imported = 0
        budgets_kept = 0
        with store_errors(self.session, "legacy import"):
            for data in preview.valid_transactions:
                self.session.add(
                    Transaction(
                        type=data.type,
                        category=data.category,
                        amount=data.amount,
                        description=data.description,
                        date=data.date,
                    )
                )
            if include_budgets:
                for data in preview.valid_budgets:
                    current = existing.get(data.category)
                    if current is not None and not replace_budgets:
                        budgets_kept += 1
                        continue
                    if current is None:
                        current = Budget(category=data.category)
                        self.session.add(current)
                        existing[data.category] = current
                    current.amount = data.amount
                    current.period = data.period
                    current.start_date = data.start_date
                    current.end_date = data.end_date
                    budgets_imported += 1
            self.session.commit()

        summary = {
            "transactions_imported": len(preview.valid_transactions),
            "budgets_imported": budgets_imported,
            "budgets_kept": budgets_kept,
            "rows_skipped": len(preview.skipped),
        }
        logger.info(
            "legacy_import: "
            + " ".join(f"{key}={value}" for key, value in summary.items())
        )
        return summary
