import logging
from typing import Optional

from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Response
from sqlalchemy.orm import Session

from database import SessionLocal, session_scope
from errors import (
    ConflictError,
    FinanceError,
    NotFoundError,
    TransientError,
    ValidationError,
)
from periods import parse_month, resolve_window
from scheduler import SchedulerManager
from schemas import (
    AccountIn,
    AccountOut,
    BudgetIn,
    BudgetOut,
    BudgetUsageOut,
    OccurrenceOut,
    RecurringRuleIn,
    RecurringRuleOut,
    TransactionIn,
    TransactionOut,
    TransactionPatch,
)
from services import (
    AccountService,
    BudgetService,
    RecurringRuleService,
    TransactionService,
    get_current_user_id,
)


logger = logging.getLogger(__name__)

app = FastAPI(title="Finance Ledger")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_session_factory():
    return SessionLocal


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


def _http_error(exc: FinanceError) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ValidationError):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, ConflictError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, TransientError):
        return HTTPException(
            status_code=503, detail=str(exc), headers={"Retry-After": "1"}
        )
    logger.error(f"unhandled_finance_error: type={type(exc).__name__} error={exc}")
    return HTTPException(status_code=500, detail=str(exc))


def _refresh_in_background(background_tasks: BackgroundTasks, session_factory):
    """Budget refresh callback that runs after the response on its own session."""
    user_id = get_current_user_id()

    def _run(budget_ids: set[int]) -> None:
        with session_scope(session_factory) as session:
            BudgetService(session, user_id).refresh_budgets(budget_ids)

    def _schedule(budget_ids: set[int]) -> None:
        background_tasks.add_task(_run, set(budget_ids))

    return _schedule


@app.post("/api/accounts", response_model=AccountOut, status_code=201)
def api_create_account(
    payload: AccountIn,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    session_factory=Depends(get_session_factory),
):
    service = AccountService(
        db, on_budgets_changed=_refresh_in_background(background_tasks, session_factory)
    )
    try:
        return service.create(payload)
    except FinanceError as exc:
        raise _http_error(exc) from exc


@app.get("/api/accounts/{account_id}", response_model=AccountOut)
def api_get_account(account_id: int, db: Session = Depends(get_db)):
    try:
        return AccountService(db).get(account_id)
    except FinanceError as exc:
        raise _http_error(exc) from exc


@app.get("/api/accounts/{account_id}/transactions", response_model=list[TransactionOut])
def api_account_transactions(
    account_id: int, limit: int = 200, db: Session = Depends(get_db)
):
    try:
        AccountService(db).get(account_id)
    except FinanceError as exc:
        raise _http_error(exc) from exc
    limit = min(max(limit, 1), 500)
    return TransactionService(db).list_for_account(account_id, limit=limit)


@app.post("/api/accounts/{account_id}/recalculate")
def api_recalculate_account(account_id: int, db: Session = Depends(get_db)):
    try:
        balance = AccountService(db).recalculate(account_id)
    except FinanceError as exc:
        raise _http_error(exc) from exc
    return {"account_id": account_id, "balance_cents": balance}


@app.post("/api/transactions", response_model=TransactionOut, status_code=201)
def api_create_transaction(
    payload: TransactionIn,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    session_factory=Depends(get_session_factory),
):
    service = TransactionService(
        db, on_budgets_changed=_refresh_in_background(background_tasks, session_factory)
    )
    try:
        return service.create(payload)
    except FinanceError as exc:
        raise _http_error(exc) from exc


@app.get("/api/transactions/{transaction_id}", response_model=TransactionOut)
def api_get_transaction(transaction_id: int, db: Session = Depends(get_db)):
    try:
        return TransactionService(db).get(transaction_id)
    except FinanceError as exc:
        raise _http_error(exc) from exc


@app.patch("/api/transactions/{transaction_id}", response_model=TransactionOut)
def api_update_transaction(
    transaction_id: int,
    payload: TransactionPatch,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    session_factory=Depends(get_session_factory),
):
    service = TransactionService(
        db, on_budgets_changed=_refresh_in_background(background_tasks, session_factory)
    )
    try:
        return service.update(transaction_id, payload)
    except FinanceError as exc:
        raise _http_error(exc) from exc


@app.delete("/api/transactions/{transaction_id}", status_code=204)
def api_delete_transaction(
    transaction_id: int,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    session_factory=Depends(get_session_factory),
):
    service = TransactionService(
        db, on_budgets_changed=_refresh_in_background(background_tasks, session_factory)
    )
    try:
        service.delete(transaction_id)
    except FinanceError as exc:
        raise _http_error(exc) from exc
    return Response(status_code=204)


@app.post("/api/recurring", response_model=RecurringRuleOut, status_code=201)
def api_create_rule(payload: RecurringRuleIn, db: Session = Depends(get_db)):
    try:
        return RecurringRuleService(db).create(payload)
    except FinanceError as exc:
        raise _http_error(exc) from exc


@app.get("/api/recurring/stats")
def api_recurring_stats(db: Session = Depends(get_db)):
    return RecurringRuleService(db).statistics()


@app.post("/api/recurring/materialize")
def api_materialize(db: Session = Depends(get_db)):
    try:
        created = RecurringRuleService(db).materialize_due()
    except FinanceError as exc:
        raise _http_error(exc) from exc
    return {"created": created}


@app.get("/api/recurring/{rule_id}", response_model=RecurringRuleOut)
def api_get_rule(rule_id: int, db: Session = Depends(get_db)):
    try:
        return RecurringRuleService(db).get(rule_id)
    except FinanceError as exc:
        raise _http_error(exc) from exc


@app.get("/api/recurring/{rule_id}/occurrences", response_model=list[OccurrenceOut])
def api_rule_occurrences(
    rule_id: int,
    start: Optional[str] = None,
    end: Optional[str] = None,
    db: Session = Depends(get_db),
):
    try:
        window = resolve_window(start, end)
        return RecurringRuleService(db).occurrences(rule_id, window.start, window.end)
    except FinanceError as exc:
        raise _http_error(exc) from exc


@app.get("/api/recurring/{rule_id}/commitment")
def api_rule_commitment(rule_id: int, db: Session = Depends(get_db)):
    try:
        cents = RecurringRuleService(db).monthly_commitment(rule_id)
    except FinanceError as exc:
        raise _http_error(exc) from exc
    return {"rule_id": rule_id, "monthly_commitment_cents": cents}


@app.post("/api/budgets", response_model=BudgetOut, status_code=201)
def api_create_budget(payload: BudgetIn, db: Session = Depends(get_db)):
    try:
        return BudgetService(db).create(payload)
    except FinanceError as exc:
        raise _http_error(exc) from exc


@app.get("/api/budgets", response_model=list[BudgetOut])
def api_list_budgets(month: Optional[str] = None, db: Session = Depends(get_db)):
    try:
        period = parse_month(month)
    except FinanceError as exc:
        raise _http_error(exc) from exc
    return BudgetService(db).list_for_month(period.start.year, period.start.month)


@app.get("/api/budgets/summary")
def api_budget_summary(month: Optional[str] = None, db: Session = Depends(get_db)):
    try:
        period = parse_month(month)
    except FinanceError as exc:
        raise _http_error(exc) from exc
    return BudgetService(db).summary_for_month(period.start.year, period.start.month)


@app.get("/api/budgets/{budget_id}/usage", response_model=BudgetUsageOut)
def api_budget_usage(budget_id: int, db: Session = Depends(get_db)):
    try:
        return BudgetService(db).get_usage(budget_id)
    except FinanceError as exc:
        raise _http_error(exc) from exc


@app.put("/api/budgets/{budget_id}", response_model=BudgetOut)
def api_update_budget(budget_id: int, payload: BudgetIn, db: Session = Depends(get_db)):
    try:
        return BudgetService(db).update(budget_id, payload)
    except FinanceError as exc:
        raise _http_error(exc) from exc


@app.delete("/api/budgets/{budget_id}", status_code=204)
def api_delete_budget(budget_id: int, db: Session = Depends(get_db)):
    try:
        BudgetService(db).delete(budget_id)
    except FinanceError as exc:
        raise _http_error(exc) from exc
    return Response(status_code=204)


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
