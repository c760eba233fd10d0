import logging
from typing import Any, Optional

from fastapi import Body, Depends, FastAPI, File, Header, HTTPException, Request, UploadFile
from fastapi.responses import JSONResponse, Response, StreamingResponse
from sqlalchemy.orm import Session

from config import get_settings
from csv_utils import export_filename
from database import SessionLocal
from errors import (
    BudgetCoreError,
    ConflictError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from models import Category, TransactionType
from periods import Period, local_today, resolve_period
from scheduler import SchedulerManager
from schemas import (
    AlertOut,
    BudgetOut,
    TransactionOut,
    TransactionPageOut,
    parse_category,
)
from services import (
    AlertService,
    BudgetService,
    CSVService,
    InsightsService,
    SweepService,
    TransactionFilters,
    TransactionService,
)

logger = logging.getLogger(__name__)

app = FastAPI(title="Budget Tracker")

STATUS_BY_ERROR: dict[type[BudgetCoreError], int] = {
    ValidationError: 422,
    NotFoundError: 404,
    ConflictError: 409,
    StorageError: 503,
}


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def current_user(x_user_id: Optional[str] = Header(default=None)) -> str:
    user_id = (x_user_id or "").strip()
    if not user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    if len(user_id) > 64:
        raise HTTPException(status_code=400, detail="X-User-Id is too long")
    return user_id


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


@app.exception_handler(BudgetCoreError)
def core_error_handler(request: Request, exc: BudgetCoreError) -> JSONResponse:
    status = 500
    for error_cls, code in STATUS_BY_ERROR.items():
        if isinstance(exc, error_cls):
            status = code
            break
    if status >= 500:
        logger.error(f"request_failed: path={request.url.path} reason={exc.message}")
    body: dict[str, Any] = {
        "error": type(exc).__name__,
        "message": exc.message,
        "retryable": exc.retryable,
    }
    if exc.details:
        body["details"] = exc.details
    if isinstance(exc, ValidationError) and exc.fields:
        body["fields"] = exc.fields
    return JSONResponse(status_code=status, content=body)


async def read_csv_upload(file: UploadFile) -> str:
    try:
        return (await file.read()).decode("utf-8")
    except UnicodeDecodeError as exc:
        raise ValidationError(
            "CSV file must be UTF-8 encoded",
            str(exc),
            fields={"file": "not valid UTF-8"},
        ) from exc


def category_param(value: Optional[str]) -> Optional[Category]:
    if not value:
        return None
    try:
        return parse_category(value)
    except ValueError as exc:
        raise ValidationError(str(exc), fields={"category": str(exc)}) from exc


def type_param(value: Optional[str]) -> Optional[TransactionType]:
    if not value:
        return None
    try:
        return TransactionType(value.lower())
    except ValueError as exc:
        raise ValidationError(
            f"Unknown transaction type '{value}'", fields={"type": "unknown"}
        ) from exc


def period_from_request(request: Request) -> Period:
    period_slug = request.query_params.get("period")
    start = request.query_params.get("start")
    end = request.query_params.get("end")
    try:
        return resolve_period(period_slug, start, end)
    except ValueError as exc:
        raise ValidationError(str(exc), fields={"period": str(exc)}) from exc


def filters_from_request(request: Request) -> TransactionFilters:
    params = request.query_params
    start = end = None
    if params.get("period") or params.get("start") or params.get("end"):
        period = period_from_request(request)
        start, end = period.start, period.end
    return TransactionFilters(
        type=type_param(params.get("type")),
        category=category_param(params.get("category")),
        start=start,
        end=end,
        query=params.get("q") or None,
    )


@app.get("/health")
def health():
    return {"status": "ok"}


@app.post("/transactions", status_code=201, response_model=TransactionOut)
def create_transaction(
    payload: dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user),
):
    return TransactionService(db, user_id).record(payload)


@app.get("/transactions", response_model=TransactionPageOut)
def list_transactions(
    request: Request,
    page: int = 1,
    page_size: int = 50,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user),
):
    filters = filters_from_request(request)
    result = TransactionService(db, user_id).query(filters, page, page_size)
    return TransactionPageOut(
        items=[TransactionOut.model_validate(txn) for txn in result.items],
        total=result.total,
        page=result.page,
        page_size=result.page_size,
        pages=result.pages,
    )


@app.get("/transactions/recent", response_model=list[TransactionOut])
def recent_transactions(
    limit: int = 10,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user),
):
    return TransactionService(db, user_id).recent(min(max(limit, 1), 100))


@app.get("/transactions/summary")
def transaction_summary(
    request: Request,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user),
):
    period = period_from_request(request)
    service = TransactionService(db, user_id)
    income = service.sum_by_date_range(period.start, period.end, TransactionType.income)
    expense = service.sum_by_date_range(
        period.start, period.end, TransactionType.expense
    )
    return {
        "period": period.slug,
        "start": period.start.isoformat(),
        "end": period.end.isoformat(),
        "income": {"total": income.total, "count": income.count},
        "expense": {"total": expense.total, "count": expense.count},
        "categories": [
            {"category": row.category.value, "total": row.total, "count": row.count}
            for row in service.sum_by_category(period.start, period.end)
        ],
    }


@app.get("/transactions/export.csv")
def export_transactions_endpoint(
    request: Request,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user),
):
    filters = filters_from_request(request)
    service = TransactionService(db, user_id)
    page_size = get_settings().page_size_max
    first = service.query(filters, 1, page_size)
    transactions = list(first.items)
    for page in range(2, first.pages + 1):
        transactions.extend(service.query(filters, page, page_size).items)
    csv_text = CSVService(db, user_id).export(transactions)
    filename = export_filename(local_today())
    return StreamingResponse(
        iter([csv_text]),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.post("/transactions/import/preview")
async def import_preview(
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user),
):
    content = await read_csv_upload(file)
    rows, errors = CSVService(db, user_id).preview(content)
    return {
        "rows": [row.model_dump(mode="json") for row in rows],
        "errors": errors,
    }


@app.post("/transactions/import/commit")
async def import_commit(
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user),
):
    content = await read_csv_upload(file)
    count = CSVService(db, user_id).commit(content)
    return {"imported": count}


@app.get("/transactions/{transaction_id}", response_model=TransactionOut)
def get_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user),
):
    return TransactionService(db, user_id).get(transaction_id)


@app.patch("/transactions/{transaction_id}", response_model=TransactionOut)
def amend_transaction(
    transaction_id: int,
    payload: dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user),
):
    return TransactionService(db, user_id).amend(transaction_id, payload)


@app.delete("/transactions/{transaction_id}", status_code=204)
def retract_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user),
):
    TransactionService(db, user_id).retract(transaction_id)
    return Response(status_code=204)


@app.post("/budgets", response_model=BudgetOut)
def set_budget(
    payload: dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user),
):
    return BudgetService(db, user_id).set_limit(payload)


@app.get("/budgets", response_model=list[BudgetOut])
def list_budgets(
    month: Optional[int] = None,
    year: Optional[int] = None,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user),
):
    return BudgetService(db, user_id).list_for_month(month, year)


@app.get("/budgets/summary")
def budget_summary(
    month: Optional[int] = None,
    year: Optional[int] = None,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user),
):
    summary = BudgetService(db, user_id).summary(month, year)
    summary["budgets"] = [
        BudgetOut.model_validate(budget) for budget in summary["budgets"]
    ]
    return summary


@app.get("/budgets/history/{category}", response_model=list[BudgetOut])
def budget_history(
    category: str,
    months: int = 6,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user),
):
    return BudgetService(db, user_id).history(category_param(category), months)


@app.post("/budgets/check-alerts", response_model=list[AlertOut])
def check_budget_alerts(
    month: Optional[int] = None,
    year: Optional[int] = None,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user),
):
    return BudgetService(db, user_id).check_alerts(month, year)


@app.post("/budgets/recompute", response_model=Optional[BudgetOut])
def recompute_budget(
    category: str,
    month: Optional[int] = None,
    year: Optional[int] = None,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user),
):
    today = local_today()
    return BudgetService(db, user_id).recompute(
        category_param(category), month or today.month, year or today.year
    )


@app.get("/budgets/{budget_id}", response_model=BudgetOut)
def get_budget(
    budget_id: int,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user),
):
    return BudgetService(db, user_id).get(budget_id)


@app.put("/budgets/{budget_id}", response_model=BudgetOut)
def update_budget(
    budget_id: int,
    payload: dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user),
):
    return BudgetService(db, user_id).update(budget_id, payload)


@app.delete("/budgets/{budget_id}", status_code=204)
def delete_budget(
    budget_id: int,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user),
):
    BudgetService(db, user_id).delete(budget_id)
    return Response(status_code=204)


@app.post("/budgets/{budget_id}/reset-alerts", response_model=BudgetOut)
def reset_budget_alerts(
    budget_id: int,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user),
):
    return BudgetService(db, user_id).reset_alerts(budget_id)


@app.get("/alerts", response_model=list[AlertOut])
def list_alerts(
    unread_only: bool = False,
    limit: int = 50,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user),
):
    return AlertService(db, user_id).list(unread_only, min(max(limit, 1), 200))


@app.get("/alerts/unread-count")
def unread_alert_count(
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user),
):
    return {"unread": AlertService(db, user_id).unread_count()}


@app.post("/alerts/read-all")
def mark_all_alerts_read(
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user),
):
    return {"updated": AlertService(db, user_id).mark_all_read()}


@app.post("/alerts/{alert_id}/read", response_model=AlertOut)
def mark_alert_read(
    alert_id: int,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user),
):
    return AlertService(db, user_id).mark_read(alert_id)


@app.get("/analytics/dashboard")
def analytics_dashboard(
    month: Optional[int] = None,
    year: Optional[int] = None,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user),
):
    return InsightsService(db, user_id).dashboard(month, year)


@app.get("/analytics/monthly-trend")
def analytics_monthly_trend(
    months: int = 6,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user),
):
    return InsightsService(db, user_id).monthly_trend(min(max(months, 1), 36))


@app.get("/analytics/daily")
def analytics_daily(
    month: Optional[int] = None,
    year: Optional[int] = None,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user),
):
    return InsightsService(db, user_id).daily_expenses(month, year)


@app.get("/analytics/spending-trend")
def analytics_spending_trend(
    months: int = 6,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user),
):
    return InsightsService(db, user_id).spending_trend(min(max(months, 1), 36))


@app.get("/analytics/prediction")
def analytics_prediction(
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user),
):
    return {"predicted_expense": InsightsService(db, user_id).predict_next_month()}


@app.get("/analytics/unusual", response_model=list[TransactionOut])
def analytics_unusual(
    months: int = 3,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user),
):
    return InsightsService(db, user_id).unusual_spending(min(max(months, 1), 12))


@app.post("/admin/sweep")
def run_sweep(
    month: Optional[int] = None,
    year: Optional[int] = None,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user),
):
    logger.info(f"manual_sweep: requested_by={user_id} month={month} year={year}")
    report = SweepService(db).run(month, year)
    return {
        "year": report.year,
        "month": report.month,
        "budgets": report.budgets,
        "recomputed": report.recomputed,
        "alerts": report.alerts,
        "failures": report.failures,
    }


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
