import logging
import tempfile
from pathlib import Path
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, File, HTTPException, Request, UploadFile
from fastapi.responses import Response
from sqlalchemy.orm import Session, sessionmaker

from database import (
    close_session_factory,
    create_session_factory,
    reset_ledger,
    session_scope,
)
from errors import (
    AlreadyExistsError,
    LedgerError,
    NotFoundError,
    StoreError,
    ValidationError,
)
from filters import TransactionFilters
from legacy_sqlite_import import LegacySQLiteImportService
from models import Budget, Transaction
from periods import Period, resolve_period
from schemas import TransactionPatch, validate_input
from services import BudgetCheck, BudgetService, MetricsService, TransactionService

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

router = APIRouter()

MAX_LEGACY_DB_BYTES = 25 * 1024 * 1024


def _http_error(exc: LedgerError) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, AlreadyExistsError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, ValidationError):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, StoreError):
        logger.error(f"store_failure: {exc}")
        return HTTPException(status_code=500, detail="Storage failure")
    return HTTPException(status_code=500, detail=str(exc))


def get_db(request: Request):
    factory: sessionmaker = request.app.state.session_factory
    with session_scope(factory) as db:
        yield db


def period_from_request(request: Request) -> Period:
    try:
        return resolve_period(
            request.query_params.get("period"),
            request.query_params.get("start"),
            request.query_params.get("end"),
        )
    except LedgerError as exc:
        raise _http_error(exc) from exc


def filters_from_request(request: Request) -> TransactionFilters:
    limit_param = request.query_params.get("limit")
    try:
        limit = int(limit_param) if limit_param else None
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="limit must be an integer") from exc
    return TransactionFilters(
        type=request.query_params.get("type") or None,
        category=request.query_params.get("category") or None,
        start_date=request.query_params.get("start") or None,
        end_date=request.query_params.get("end") or None,
        limit=limit,
    )


def transaction_to_dict(txn: Transaction) -> dict[str, object]:
    return {
        "id": txn.id,
        "type": txn.type.value,
        "category": txn.category,
        "amount": txn.amount,
        "description": txn.description,
        "date": txn.date.isoformat(),
    }


def budget_to_dict(budget: Budget, check: Optional[BudgetCheck] = None) -> dict[str, object]:
    data: dict[str, object] = {
        "id": budget.id,
        "category": budget.category,
        "amount": budget.amount,
        "period": budget.period.value,
        "start_date": budget.start_date.isoformat() if budget.start_date else None,
        "end_date": budget.end_date.isoformat() if budget.end_date else None,
    }
    if check is not None:
        data.update(check_to_dict(check))
    return data


def check_to_dict(check: BudgetCheck) -> dict[str, object]:
    return {
        "category": check.category,
        "configured": True,
        "spent": check.spent,
        "allotted": check.allotted,
        "percent": round(check.percent, 1),
        "status": check.status.value,
    }


async def _json_body(request: Request) -> dict:
    try:
        payload = await request.json()
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid JSON body") from exc
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="JSON object expected")
    return payload


@router.get("/api/transactions")
def api_transactions(request: Request, db: Session = Depends(get_db)):
    filters = filters_from_request(request)
    try:
        items = TransactionService(db).list(filters)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return {"items": [transaction_to_dict(txn) for txn in items]}


@router.post("/api/transactions", status_code=201)
async def create_transaction(request: Request, db: Session = Depends(get_db)):
    payload = await _json_body(request)
    try:
        txn = TransactionService(db).add(
            type=payload.get("type"),
            category=payload.get("category"),
            amount=payload.get("amount"),
            description=payload.get("description"),
            date=payload.get("date"),
        )
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return transaction_to_dict(txn)


@router.get("/api/transactions/{transaction_id}")
def get_transaction(transaction_id: int, db: Session = Depends(get_db)):
    try:
        txn = TransactionService(db).get(transaction_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return transaction_to_dict(txn)


@router.patch("/api/transactions/{transaction_id}")
async def update_transaction(
    transaction_id: int, request: Request, db: Session = Depends(get_db)
):
    payload = await _json_body(request)
    try:
        patch = validate_input(TransactionPatch, **payload)
        txn = TransactionService(db).update(transaction_id, patch)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return transaction_to_dict(txn)


@router.delete("/api/transactions/{transaction_id}")
def delete_transaction(transaction_id: int, db: Session = Depends(get_db)):
    try:
        TransactionService(db).delete(transaction_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return Response(status_code=204)


@router.get("/api/stats")
def api_stats(request: Request, db: Session = Depends(get_db)):
    period = period_from_request(request)
    metrics = MetricsService(db)
    try:
        balance = metrics.balance(period)
        breakdown = metrics.category_breakdown(period)
        ratio = metrics.expense_income_ratio(period)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return {
        "period": {
            "slug": period.slug,
            "start": period.start.isoformat() if period.start else None,
            "end": period.end.isoformat() if period.end else None,
        },
        "income": balance.income,
        "expense": balance.expense,
        "balance": balance.net,
        "total_expense": breakdown.total_expense,
        "categories": [
            {"name": name, "amount": amount, "percent": breakdown.percent(name)}
            for name, amount in breakdown.ranked()
        ],
        "top": [name for name, _ in breakdown.top(3)],
        "expense_income_ratio": ratio,
    }


@router.get("/api/budgets")
def api_budgets(db: Session = Depends(get_db)):
    service = BudgetService(db)
    try:
        budgets = service.list_all()
        checks = {check.category: check for check in service.summary()}
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return {"items": [budget_to_dict(b, checks.get(b.category)) for b in budgets]}


@router.post("/api/budgets", status_code=201)
async def create_budget(request: Request, db: Session = Depends(get_db)):
    payload = await _json_body(request)
    try:
        budget = BudgetService(db).add(
            category=payload.get("category"),
            amount=payload.get("amount"),
            period=payload.get("period"),
            start_date=payload.get("start_date"),
            end_date=payload.get("end_date"),
        )
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return budget_to_dict(budget)


@router.put("/api/budgets/{category}")
async def replace_budget(category: str, request: Request, db: Session = Depends(get_db)):
    payload = await _json_body(request)
    try:
        budget = BudgetService(db).replace(
            category=category,
            amount=payload.get("amount"),
            period=payload.get("period"),
            start_date=payload.get("start_date"),
            end_date=payload.get("end_date"),
        )
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return budget_to_dict(budget)


@router.delete("/api/budgets/{category}")
def remove_budget(category: str, db: Session = Depends(get_db)):
    try:
        BudgetService(db).remove(category)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return Response(status_code=204)


@router.get("/api/budgets/{category}/check")
def check_budget(category: str, request: Request, db: Session = Depends(get_db)):
    try:
        check = BudgetService(db).check(
            category,
            request.query_params.get("period"),
            request.query_params.get("start"),
            request.query_params.get("end"),
        )
    except LedgerError as exc:
        raise _http_error(exc) from exc
    if check is None:
        return {"category": category, "configured": False}
    return check_to_dict(check)


@router.post("/admin/reset")
def admin_reset(db: Session = Depends(get_db)):
    try:
        reset_ledger(db)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return Response(status_code=204)


async def _spool_legacy_upload(upload: UploadFile) -> Path:
    if not upload.filename or not upload.filename.endswith(".db"):
        raise HTTPException(status_code=400, detail="Please upload a .db file")
    content = await upload.read()
    if not content:
        raise HTTPException(status_code=400, detail="Empty file")
    if len(content) > MAX_LEGACY_DB_BYTES:
        raise HTTPException(status_code=400, detail="DB file too large (max 25MB)")
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as handle:
        handle.write(content)
    return Path(handle.name)


@router.post("/admin/import-legacy/preview")
async def import_legacy_preview(
    legacy_db: UploadFile = File(...), db: Session = Depends(get_db)
):
    path = await _spool_legacy_upload(legacy_db)
    try:
        preview = LegacySQLiteImportService(db).preview(path)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    finally:
        path.unlink(missing_ok=True)
    return {
        "transactions_count": preview.transactions_count,
        "budgets_count": preview.budgets_count,
        "importable_transactions": len(preview.valid_transactions),
        "importable_budgets": len(preview.valid_budgets),
        "min_transaction_date": (
            preview.min_transaction_date.isoformat()
            if preview.min_transaction_date
            else None
        ),
        "max_transaction_date": (
            preview.max_transaction_date.isoformat()
            if preview.max_transaction_date
            else None
        ),
        "skipped": [
            {"table": row.table, "id": row.legacy_id, "reason": row.reason}
            for row in preview.skipped
        ],
        "warnings": preview.warnings,
    }


@router.post("/admin/import-legacy/commit")
async def import_legacy_commit(
    request: Request,
    legacy_db: UploadFile = File(...),
    db: Session = Depends(get_db),
):
    replace_budgets = request.query_params.get("replace_budgets") == "1"
    include_budgets = request.query_params.get("include_budgets", "1") == "1"
    path = await _spool_legacy_upload(legacy_db)
    try:
        return LegacySQLiteImportService(db).commit(
            path, include_budgets=include_budgets, replace_budgets=replace_budgets
        )
    except LedgerError as exc:
        raise _http_error(exc) from exc
    finally:
        path.unlink(missing_ok=True)


def create_app(session_factory: Optional[sessionmaker] = None) -> FastAPI:
    """Build the API around an explicit store handle.

    Without a handle the store is opened from settings at startup; a failure
    there aborts startup.
    """
    app = FastAPI(title="Ledger")
    app.state.session_factory = session_factory
    app.include_router(router)

    @app.on_event("startup")
    def startup_event():
        if app.state.session_factory is None:
            app.state.session_factory = create_session_factory()

    @app.on_event("shutdown")
    def shutdown_event():
        if app.state.session_factory is not None:
            close_session_factory(app.state.session_factory)

    return app


app = create_app()
