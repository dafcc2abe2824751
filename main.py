import logging
from datetime import date
from typing import Optional

from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from auth import Caller, authenticate
from config import get_settings
from database import SessionLocal
from errors import AppError
from filters import (
    AccountFilters,
    Page,
    Scope,
    SortKey,
    TransactionFilters,
    parse_numeric_filters,
    parse_sort,
    ACCOUNT_SORT_COLUMNS,
    TRANSACTION_SORT_COLUMNS,
)
from models import AccountType, BudgetPeriod, TransactionType
from periods import Granularity
from reports import ReportService
from scheduler import SchedulerManager
from schemas import (
    AccountIn,
    AccountOut,
    AccountUpdate,
    BalanceAdjustmentIn,
    BalanceAdjustmentOut,
    BalanceDriftOut,
    BudgetIn,
    BudgetOut,
    BudgetUpdate,
    CategoryIn,
    CategoryOut,
    CategoryUpdate,
    IncomeVsExpensesReport,
    MessageOut,
    MonthlyTrendReport,
    PageOut,
    RestoredTransactionEnvelope,
    SpendingByCategoryReport,
    TransactionEnvelope,
    TransactionIn,
    TransactionOut,
    TransactionUpdate,
    UserIn,
    UserOut,
)
from services import (
    AccountService,
    BudgetService,
    CategoryService,
    ReconciliationService,
    TransactionService,
    UserService,
)

logging.basicConfig(
    level=get_settings().log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Budget Tracker")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    return JSONResponse(status_code=exc.status_code, content={"message": str(exc)})


def jsonable_errors(errors) -> list[dict[str, object]]:
    return [
        {
            "field": ".".join(str(part) for part in err.get("loc", ())),
            "message": err["msg"],
        }
        for err in errors
    ]


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    message = errors[0]["msg"] if errors else "Invalid request"
    return JSONResponse(
        status_code=400,
        content={"message": message, "errors": jsonable_errors(errors)},
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception(f"unhandled_error: {request.method} {request.url.path}")
    return JSONResponse(status_code=500, content={"message": "Internal Server Error"})


def get_caller(
    authorization: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
) -> Caller:
    return authenticate(db, authorization)


def get_scope(
    scope: str = Query("own", pattern="^(own|all)$"),
    caller: Caller = Depends(get_caller),
) -> Scope:
    return caller.scope(all_owners=scope == "all")


def get_admin_scope(caller: Caller = Depends(get_caller)) -> Scope:
    return caller.scope(all_owners=True)


def page_params(
    scope: Scope = Depends(get_scope),
    page: Optional[int] = Query(None, ge=1),
    limit: Optional[int] = Query(None, ge=1),
) -> Page:
    return Page.for_scope(scope, page, limit)


def _sort(raw: Optional[str], columns: dict, default: tuple[SortKey, ...]):
    return parse_sort(raw, set(columns), default)


# --- transactions ---------------------------------------------------------


@app.post("/transactions", status_code=201, response_model=TransactionEnvelope)
def create_transaction(
    payload: TransactionIn,
    scope: Scope = Depends(get_scope),
    db: Session = Depends(get_db),
):
    txn = TransactionService(db, scope).create(payload)
    return {"transaction": txn}


@app.get("/transactions", response_model=PageOut[TransactionOut])
def list_transactions(
    scope: Scope = Depends(get_scope),
    page: Page = Depends(page_params),
    txn_type: Optional[TransactionType] = Query(None, alias="type"),
    category_id: Optional[int] = Query(None, alias="categoryId"),
    account_id: Optional[int] = Query(None, alias="accountId"),
    description: Optional[str] = Query(None),
    start_date: Optional[date] = Query(None, alias="startDate"),
    end_date: Optional[date] = Query(None, alias="endDate"),
    numeric_filters: Optional[str] = Query(None, alias="numericFilters"),
    sort: Optional[str] = Query(None),
    db: Session = Depends(get_db),
):
    filters = TransactionFilters(
        type=txn_type,
        category_id=category_id,
        account_id=account_id,
        description=description,
        start=start_date,
        end=end_date,
        numeric=parse_numeric_filters(
            numeric_filters, TransactionFilters.NUMERIC_FIELDS
        ),
    )
    filters.sort = _sort(sort, TRANSACTION_SORT_COLUMNS, filters.sort)
    items, total = TransactionService(db, scope).list(filters, page)
    return {
        "items": items,
        "total_documents": total,
        "page": page.page,
        "limit": page.limit,
    }


@app.get("/transactions/deleted/all", response_model=list[TransactionOut])
def deleted_transactions(
    scope: Scope = Depends(get_scope), db: Session = Depends(get_db)
):
    return TransactionService(db, scope).deleted()


@app.get("/transactions/account/{account_id}", response_model=list[TransactionOut])
def transactions_by_account(
    account_id: int, scope: Scope = Depends(get_scope), db: Session = Depends(get_db)
):
    return TransactionService(db, scope).by_account(account_id)


@app.get("/transactions/category/{category_id}", response_model=list[TransactionOut])
def transactions_by_category(
    category_id: int, scope: Scope = Depends(get_scope), db: Session = Depends(get_db)
):
    return TransactionService(db, scope).by_category(category_id)


@app.get("/transactions/{transaction_id}", response_model=TransactionOut)
def get_transaction(
    transaction_id: int,
    scope: Scope = Depends(get_scope),
    db: Session = Depends(get_db),
):
    return TransactionService(db, scope).get(transaction_id)


@app.patch("/transactions/{transaction_id}", response_model=TransactionEnvelope)
def update_transaction(
    transaction_id: int,
    payload: TransactionUpdate,
    scope: Scope = Depends(get_scope),
    db: Session = Depends(get_db),
):
    txn = TransactionService(db, scope).update(transaction_id, payload)
    return {"transaction": txn}


@app.delete("/transactions/{transaction_id}", response_model=MessageOut)
def delete_transaction(
    transaction_id: int,
    scope: Scope = Depends(get_scope),
    db: Session = Depends(get_db),
):
    TransactionService(db, scope).soft_delete(transaction_id)
    return {"message": "Transaction deleted successfully"}


@app.post(
    "/transactions/{transaction_id}/restore",
    response_model=RestoredTransactionEnvelope,
)
def restore_transaction(
    transaction_id: int,
    scope: Scope = Depends(get_scope),
    db: Session = Depends(get_db),
):
    txn = TransactionService(db, scope).restore(transaction_id)
    return {"message": "Transaction restored successfully", "transaction": txn}


# --- accounts -------------------------------------------------------------


@app.post("/accounts", status_code=201, response_model=AccountOut)
def create_account(
    payload: AccountIn, scope: Scope = Depends(get_scope), db: Session = Depends(get_db)
):
    return AccountService(db, scope).create(payload)


@app.get("/accounts", response_model=PageOut[AccountOut])
def list_accounts(
    scope: Scope = Depends(get_scope),
    page: Page = Depends(page_params),
    account_type: Optional[AccountType] = Query(None, alias="type"),
    name: Optional[str] = Query(None),
    numeric_filters: Optional[str] = Query(None, alias="numericFilters"),
    sort: Optional[str] = Query(None),
    db: Session = Depends(get_db),
):
    filters = AccountFilters(
        type=account_type,
        name=name,
        numeric=parse_numeric_filters(numeric_filters, AccountFilters.NUMERIC_FIELDS),
    )
    filters.sort = _sort(sort, ACCOUNT_SORT_COLUMNS, filters.sort)
    items, total = AccountService(db, scope).list(filters, page)
    return {
        "items": items,
        "total_documents": total,
        "page": page.page,
        "limit": page.limit,
    }


@app.get("/accounts/deleted/all", response_model=list[AccountOut])
def deleted_accounts(scope: Scope = Depends(get_scope), db: Session = Depends(get_db)):
    return AccountService(db, scope).deleted()


@app.get("/accounts/{account_id}", response_model=AccountOut)
def get_account(
    account_id: int, scope: Scope = Depends(get_scope), db: Session = Depends(get_db)
):
    return AccountService(db, scope).get(account_id)


@app.patch("/accounts/{account_id}", response_model=AccountOut)
def update_account(
    account_id: int,
    payload: AccountUpdate,
    scope: Scope = Depends(get_scope),
    db: Session = Depends(get_db),
):
    return AccountService(db, scope).update(account_id, payload)


@app.patch("/accounts/{account_id}/balance", response_model=AccountOut)
def adjust_account_balance(
    account_id: int,
    payload: BalanceAdjustmentIn,
    scope: Scope = Depends(get_scope),
    db: Session = Depends(get_db),
):
    return AccountService(db, scope).adjust_balance(account_id, payload)


@app.get(
    "/accounts/{account_id}/adjustments", response_model=list[BalanceAdjustmentOut]
)
def account_adjustments(
    account_id: int, scope: Scope = Depends(get_scope), db: Session = Depends(get_db)
):
    return AccountService(db, scope).adjustments(account_id)


@app.patch("/accounts/{account_id}/toggle-active", response_model=AccountOut)
def toggle_account(
    account_id: int, scope: Scope = Depends(get_scope), db: Session = Depends(get_db)
):
    return AccountService(db, scope).toggle_active(account_id)


@app.delete("/accounts/{account_id}", response_model=MessageOut)
def delete_account(
    account_id: int, scope: Scope = Depends(get_scope), db: Session = Depends(get_db)
):
    AccountService(db, scope).soft_delete(account_id)
    return {"message": "Account deleted successfully"}


@app.post("/accounts/{account_id}/restore", response_model=AccountOut)
def restore_account(
    account_id: int, scope: Scope = Depends(get_scope), db: Session = Depends(get_db)
):
    return AccountService(db, scope).restore(account_id)


# --- categories -----------------------------------------------------------


@app.post("/categories", status_code=201, response_model=CategoryOut)
def create_category(
    payload: CategoryIn, scope: Scope = Depends(get_scope), db: Session = Depends(get_db)
):
    return CategoryService(db, scope).create(payload)


@app.get("/categories", response_model=list[CategoryOut])
def list_categories(
    scope: Scope = Depends(get_scope),
    txn_type: Optional[TransactionType] = Query(None, alias="type"),
    db: Session = Depends(get_db),
):
    return CategoryService(db, scope).list_all(txn_type)


@app.get("/categories/deleted/all", response_model=list[CategoryOut])
def deleted_categories(
    scope: Scope = Depends(get_scope), db: Session = Depends(get_db)
):
    return CategoryService(db, scope).deleted()


@app.get("/categories/{category_id}", response_model=CategoryOut)
def get_category(
    category_id: int, scope: Scope = Depends(get_scope), db: Session = Depends(get_db)
):
    return CategoryService(db, scope).get(category_id)


@app.patch("/categories/{category_id}", response_model=CategoryOut)
def update_category(
    category_id: int,
    payload: CategoryUpdate,
    scope: Scope = Depends(get_scope),
    db: Session = Depends(get_db),
):
    return CategoryService(db, scope).update(category_id, payload)


@app.delete("/categories/{category_id}", response_model=MessageOut)
def delete_category(
    category_id: int, scope: Scope = Depends(get_scope), db: Session = Depends(get_db)
):
    CategoryService(db, scope).soft_delete(category_id)
    return {"message": "Category deleted successfully"}


@app.post("/categories/{category_id}/restore", response_model=CategoryOut)
def restore_category(
    category_id: int, scope: Scope = Depends(get_scope), db: Session = Depends(get_db)
):
    return CategoryService(db, scope).restore(category_id)


# --- budgets --------------------------------------------------------------


@app.post("/budgets", status_code=201, response_model=BudgetOut)
def create_budget(
    payload: BudgetIn, scope: Scope = Depends(get_scope), db: Session = Depends(get_db)
):
    return BudgetService(db, scope).create(payload)


@app.get("/budgets", response_model=list[BudgetOut])
def list_budgets(
    scope: Scope = Depends(get_scope),
    period: Optional[BudgetPeriod] = Query(None),
    db: Session = Depends(get_db),
):
    return BudgetService(db, scope).list_all(period)


@app.get("/budgets/current", response_model=list[BudgetOut])
def current_budgets(scope: Scope = Depends(get_scope), db: Session = Depends(get_db)):
    return BudgetService(db, scope).current()


@app.get("/budgets/deleted/all", response_model=list[BudgetOut])
def deleted_budgets(scope: Scope = Depends(get_scope), db: Session = Depends(get_db)):
    return BudgetService(db, scope).deleted()


@app.get("/budgets/{budget_id}", response_model=BudgetOut)
def get_budget(
    budget_id: int, scope: Scope = Depends(get_scope), db: Session = Depends(get_db)
):
    return BudgetService(db, scope).get(budget_id)


@app.patch("/budgets/{budget_id}", response_model=BudgetOut)
def update_budget(
    budget_id: int,
    payload: BudgetUpdate,
    scope: Scope = Depends(get_scope),
    db: Session = Depends(get_db),
):
    return BudgetService(db, scope).update(budget_id, payload)


@app.delete("/budgets/{budget_id}", response_model=MessageOut)
def delete_budget(
    budget_id: int, scope: Scope = Depends(get_scope), db: Session = Depends(get_db)
):
    BudgetService(db, scope).soft_delete(budget_id)
    return {"message": "Budget deleted successfully"}


@app.post("/budgets/{budget_id}/restore", response_model=BudgetOut)
def restore_budget(
    budget_id: int, scope: Scope = Depends(get_scope), db: Session = Depends(get_db)
):
    return BudgetService(db, scope).restore(budget_id)


# --- users (admin) --------------------------------------------------------


@app.post("/users", status_code=201, response_model=UserOut)
def create_user(
    payload: UserIn,
    scope: Scope = Depends(get_admin_scope),
    db: Session = Depends(get_db),
):
    return UserService(db, scope).create(payload)


@app.get("/users", response_model=list[UserOut])
def list_users(scope: Scope = Depends(get_admin_scope), db: Session = Depends(get_db)):
    return UserService(db, scope).list_all()


@app.get("/users/deleted/all", response_model=list[UserOut])
def deleted_users(
    scope: Scope = Depends(get_admin_scope), db: Session = Depends(get_db)
):
    return UserService(db, scope).deleted()


@app.get("/users/{user_id}", response_model=UserOut)
def get_user(
    user_id: int, scope: Scope = Depends(get_admin_scope), db: Session = Depends(get_db)
):
    return UserService(db, scope).get(user_id)


@app.delete("/users/{user_id}", response_model=MessageOut)
def delete_user(
    user_id: int, scope: Scope = Depends(get_admin_scope), db: Session = Depends(get_db)
):
    UserService(db, scope).soft_delete(user_id)
    return {"message": "User deleted successfully"}


@app.post("/users/{user_id}/restore", response_model=UserOut)
def restore_user(
    user_id: int, scope: Scope = Depends(get_admin_scope), db: Session = Depends(get_db)
):
    return UserService(db, scope).restore(user_id)


# --- reports --------------------------------------------------------------


@app.get("/reports/spending-by-category", response_model=SpendingByCategoryReport)
def spending_by_category(
    scope: Scope = Depends(get_scope),
    start_date: Optional[str] = Query(None, alias="startDate"),
    end_date: Optional[str] = Query(None, alias="endDate"),
    db: Session = Depends(get_db),
):
    return ReportService(db, scope).spending_by_category(start_date, end_date)


@app.get("/reports/income-vs-expenses", response_model=IncomeVsExpensesReport)
def income_vs_expenses(
    scope: Scope = Depends(get_scope),
    start_date: Optional[str] = Query(None, alias="startDate"),
    end_date: Optional[str] = Query(None, alias="endDate"),
    group_by: Granularity = Query(Granularity.month, alias="groupBy"),
    db: Session = Depends(get_db),
):
    return ReportService(db, scope).income_vs_expenses(start_date, end_date, group_by)


@app.get("/reports/monthly-trend", response_model=MonthlyTrendReport)
def monthly_trend(
    scope: Scope = Depends(get_scope),
    months: int = Query(6),
    db: Session = Depends(get_db),
):
    return ReportService(db, scope).monthly_trend(months)


# --- admin ----------------------------------------------------------------


@app.get("/admin/reconciliation", response_model=list[BalanceDriftOut])
def reconciliation_report(
    scope: Scope = Depends(get_admin_scope), db: Session = Depends(get_db)
):
    return [drift.as_dict() for drift in ReconciliationService(db, scope).audit()]


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
