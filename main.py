import hmac
import logging
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException
from sqlalchemy.orm import Session

from config import get_settings
from database import SessionLocal
from models import Expense
from periods import current_period
from scheduler import SchedulerManager
from schemas import (
    BudgetCheckIn,
    BudgetCheckOut,
    BudgetGroupOut,
    BudgetIn,
    BudgetOut,
    ExpenseDecisionIn,
    ExpenseIn,
    ExpenseOut,
    GenerateRecurringIn,
    GenerateRecurringOut,
    MemberIn,
    RecurringTemplateIn,
)
from services import (
    BudgetService,
    ExpenseService,
    MembershipService,
    RecurringExpenseService,
    check_budget,
    generate_recurring_expenses,
)


logger = logging.getLogger(__name__)

app = FastAPI(title="Household Expenses")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


scheduler_manager = SchedulerManager()


def warn_if_generation_unprotected() -> bool:
    if get_settings().cron_secret:
        return False
    logger.warning(
        "cron_secret_missing: HOUSEHOLD_CRON_SECRET is unset, /api/recurring/generate accepts any caller"
    )
    return True


@app.on_event("startup")
def startup_event():
    warn_if_generation_unprotected()
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


def require_cron_secret(x_cron_secret: Optional[str] = Header(default=None)) -> None:
    secret = get_settings().cron_secret
    if not secret:
        return
    if not x_cron_secret or not hmac.compare_digest(x_cron_secret, secret):
        raise HTTPException(status_code=403, detail="Invalid cron secret")


def _expense_service(db: Session, expense_id: int) -> ExpenseService:
    expense = db.get(Expense, expense_id)
    if not expense:
        raise HTTPException(status_code=404, detail="Expense not found")
    return ExpenseService(db, expense.account_id)


@app.post("/api/budget-check", response_model=BudgetCheckOut)
def budget_check(payload: BudgetCheckIn, db: Session = Depends(get_db)):
    result = check_budget(
        db, payload.account_id, payload.category, payload.amount, payload.expense_date
    )
    return BudgetCheckOut(
        status=result.status,
        budget=result.budget,
        spent=result.spent,
        new_spent=result.new_spent,
    )


@app.post(
    "/api/recurring/generate",
    response_model=GenerateRecurringOut,
    dependencies=[Depends(require_cron_secret)],
)
def generate_recurring(payload: GenerateRecurringIn, db: Session = Depends(get_db)):
    result = generate_recurring_expenses(
        db, payload.month, payload.year, account_id=payload.account_id
    )
    logger.info(
        f"generate_endpoint: month={result.month} year={result.year} "
        f"generated={result.generated} skipped={result.skipped} failed={result.failed}"
    )
    return GenerateRecurringOut(
        month=result.month,
        year=result.year,
        generated=result.generated,
        skipped=result.skipped,
        failed=result.failed,
    )


@app.get("/api/accounts/{account_id}/budgets", response_model=list[BudgetOut])
def list_budgets(
    account_id: int,
    month: Optional[int] = None,
    year: Optional[int] = None,
    db: Session = Depends(get_db),
):
    service = BudgetService(db, account_id)
    if month is None and year is None:
        return service.list_budgets()
    if month is None or year is None:
        raise HTTPException(status_code=400, detail="month and year go together")
    try:
        return service.budgets_for_month(month, year)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.post("/api/accounts/{account_id}/budgets", response_model=BudgetOut)
def save_budget(account_id: int, payload: BudgetIn, db: Session = Depends(get_db)):
    try:
        return BudgetService(db, account_id).upsert(payload)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.delete("/api/accounts/{account_id}/budgets/{budget_id}", status_code=204)
def delete_budget(account_id: int, budget_id: int, db: Session = Depends(get_db)):
    try:
        BudgetService(db, account_id).delete(budget_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.get(
    "/api/accounts/{account_id}/budget-overview", response_model=list[BudgetGroupOut]
)
def budget_overview(
    account_id: int,
    month: Optional[int] = None,
    year: Optional[int] = None,
    db: Session = Depends(get_db),
):
    if (month is None) != (year is None):
        raise HTTPException(status_code=400, detail="month and year go together")
    if month is None:
        period = current_period()
        month, year = period.month, period.year
    try:
        groups = BudgetService(db, account_id).overview(month, year)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return [
        BudgetGroupOut(
            label=group.label,
            categories=list(group.signature.categories),
            allotted=group.allotted,
            spent=group.spent,
            status=group.status(),
        )
        for group in groups
    ]


@app.post("/api/accounts/{account_id}/expenses", response_model=ExpenseOut)
def create_expense(account_id: int, payload: ExpenseIn, db: Session = Depends(get_db)):
    return ExpenseService(db, account_id).create(payload)


@app.post("/api/expenses/{expense_id}/approve", response_model=ExpenseOut)
def approve_expense(
    expense_id: int, payload: ExpenseDecisionIn, db: Session = Depends(get_db)
):
    service = _expense_service(db, expense_id)
    try:
        return service.approve(expense_id, payload.user_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.post("/api/expenses/{expense_id}/reject", response_model=ExpenseOut)
def reject_expense(
    expense_id: int, payload: ExpenseDecisionIn, db: Session = Depends(get_db)
):
    service = _expense_service(db, expense_id)
    try:
        return service.reject(expense_id, payload.user_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.post("/api/expenses/{expense_id}/pay", response_model=ExpenseOut)
def pay_expense(
    expense_id: int, payload: ExpenseDecisionIn, db: Session = Depends(get_db)
):
    service = _expense_service(db, expense_id)
    try:
        return service.mark_paid(expense_id, payload.user_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.post("/api/accounts/{account_id}/recurring", response_model=ExpenseOut)
def create_recurring(
    account_id: int, payload: RecurringTemplateIn, db: Session = Depends(get_db)
):
    return RecurringExpenseService(db, account_id).create_template(payload)


@app.get("/api/accounts/{account_id}/recurring", response_model=list[ExpenseOut])
def list_recurring(account_id: int, db: Session = Depends(get_db)):
    return RecurringExpenseService(db, account_id).list_templates()


@app.delete("/api/accounts/{account_id}/recurring/{template_id}", status_code=204)
def delete_recurring(account_id: int, template_id: int, db: Session = Depends(get_db)):
    try:
        RecurringExpenseService(db, account_id).delete_template(template_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.post("/api/accounts/{account_id}/members")
def add_member(account_id: int, payload: MemberIn, db: Session = Depends(get_db)):
    service = MembershipService(db, account_id)
    added = service.add(payload.user_id)
    return {"added": added, "members": service.list()}
