import datetime as dt
from datetime import date, datetime
from decimal import Decimal
from typing import Generic, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from models import (
    AccountType,
    BalanceOperation,
    BudgetPeriod,
    TransactionType,
)

Money = Decimal


class ApiModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, from_attributes=True
    )


class InputModel(ApiModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
        str_strip_whitespace=True,
    )


# --- inputs ---------------------------------------------------------------


class UserIn(InputModel):
    username: str = Field(..., min_length=3, max_length=50)
    email: str = Field(..., min_length=3, max_length=120, pattern=r"^[^@\s]+@[^@\s]+$")
    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)
    is_admin: bool = False


class AccountIn(InputModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: AccountType = AccountType.bank
    description: Optional[str] = None
    is_active: bool = True
    # Honoured only in unrestricted (admin) scope.
    user_id: Optional[int] = None
    opening_balance: Money = Field(default=Decimal("0"), decimal_places=2)


class AccountUpdate(InputModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    type: Optional[AccountType] = None
    description: Optional[str] = None
    is_active: Optional[bool] = None


class BalanceAdjustmentIn(InputModel):
    amount: Money = Field(..., gt=0, decimal_places=2)
    operation: BalanceOperation
    note: Optional[str] = Field(default=None, max_length=200)


class CategoryIn(InputModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: TransactionType
    icon: str = Field(default="default-icon", max_length=50)
    color: str = Field(default="#000000", max_length=9)
    user_id: Optional[int] = None


class CategoryUpdate(InputModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    type: Optional[TransactionType] = None
    icon: Optional[str] = Field(default=None, max_length=50)
    color: Optional[str] = Field(default=None, max_length=9)


class BudgetIn(InputModel):
    amount: Money = Field(..., ge=0, decimal_places=2)
    period: BudgetPeriod
    category_id: int
    start_date: date
    end_date: Optional[date] = None
    is_recurring: bool = True
    user_id: Optional[int] = None

    @model_validator(mode="after")
    def _check_dates(self) -> "BudgetIn":
        if self.end_date is not None and self.end_date < self.start_date:
            raise ValueError("End date must not be before start date")
        return self


class BudgetUpdate(InputModel):
    amount: Optional[Money] = Field(default=None, ge=0, decimal_places=2)
    period: Optional[BudgetPeriod] = None
    category_id: Optional[int] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    is_recurring: Optional[bool] = None


class TransactionIn(InputModel):
    amount: Money = Field(..., gt=0, decimal_places=2)
    type: TransactionType
    description: str = Field(..., min_length=1, max_length=200)
    date: Optional[dt.date] = None
    category_id: int
    account_id: int
    img_url: Optional[str] = Field(default=None, max_length=500)
    # Owner to create on behalf of; honoured only in unrestricted (admin) scope.
    user_id: Optional[int] = None


class TransactionUpdate(InputModel):
    amount: Optional[Money] = Field(default=None, gt=0, decimal_places=2)
    type: Optional[TransactionType] = None
    description: Optional[str] = Field(default=None, min_length=1, max_length=200)
    date: Optional[dt.date] = None
    category_id: Optional[int] = None
    account_id: Optional[int] = None
    img_url: Optional[str] = Field(default=None, max_length=500)


# --- outputs --------------------------------------------------------------


class UserOut(ApiModel):
    id: int
    username: str
    email: str
    first_name: Optional[str]
    last_name: Optional[str]
    is_admin: bool
    is_deleted: bool
    created_at: datetime


class AccountOut(ApiModel):
    id: int
    user_id: int
    name: str
    type: AccountType
    description: Optional[str]
    balance: Money
    is_active: bool
    is_deleted: bool
    created_at: datetime
    updated_at: datetime


class BalanceAdjustmentOut(ApiModel):
    id: int
    account_id: int
    operation: BalanceOperation
    amount: Money
    note: Optional[str]
    created_at: datetime


class CategoryOut(ApiModel):
    id: int
    user_id: int
    name: str
    type: TransactionType
    icon: str
    color: str
    is_deleted: bool


class BudgetOut(ApiModel):
    id: int
    user_id: int
    category_id: int
    amount: Money
    period: BudgetPeriod
    start_date: date
    end_date: Optional[date]
    is_recurring: bool
    is_deleted: bool


class TransactionOut(ApiModel):
    id: int
    user_id: int
    account_id: int
    category_id: int
    type: TransactionType
    amount: Money
    description: str
    date: dt.date
    img_url: Optional[str]
    is_deleted: bool
    created_at: datetime
    updated_at: datetime


T = TypeVar("T")


class PageOut(ApiModel, Generic[T]):
    items: list[T]
    total_documents: int
    page: int
    limit: int


class TransactionEnvelope(ApiModel):
    transaction: TransactionOut


class RestoredTransactionEnvelope(ApiModel):
    message: str
    transaction: TransactionOut


class MessageOut(ApiModel):
    message: str


# --- reports --------------------------------------------------------------


class CategorySpending(ApiModel):
    category_id: int
    category_name: str
    category_icon: Optional[str]
    category_color: Optional[str]
    total_amount: Money


class SpendingSummary(ApiModel):
    total_spending: Money
    categories_count: int


class SpendingByCategoryReport(ApiModel):
    type: str = "spending_by_category"
    period: dict[str, object]
    data: list[CategorySpending]
    summary: SpendingSummary


class PeriodTotals(ApiModel):
    period: str
    income: Money
    income_count: int
    expense: Money
    expense_count: int
    balance: Money


class IncomeExpenseSummary(ApiModel):
    total_income: Money
    total_expense: Money
    balance: Money
    period_count: int


class IncomeVsExpensesReport(ApiModel):
    type: str = "income_vs_expenses"
    period: dict[str, object]
    data: list[PeriodTotals]
    summary: IncomeExpenseSummary


class MonthSpending(ApiModel):
    month: str
    total_amount: Money
    transaction_count: int


class TrendSummary(ApiModel):
    average_spending: Money
    months_count: int


class MonthlyTrendReport(ApiModel):
    type: str = "monthly_trend"
    period: dict[str, object]
    data: list[MonthSpending]
    summary: TrendSummary


class BalanceDriftOut(ApiModel):
    account_id: int
    account_name: str
    expected: Money
    actual: Money
    drift: Money
