from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Generic, Optional, TypeVar

from sqlalchemy import case, func, select
from sqlalchemy.orm import Session, joinedload

from errors import BadRequestError, NotFoundError
from filters import AccountFilters, Page, Scope, TransactionFilters, apply_scope
from ledger import LedgerService
from models import (
    Account,
    BalanceAdjustment,
    Budget,
    BudgetPeriod,
    Category,
    Transaction,
    TransactionType,
    User,
)
from money import from_cents, to_cents
from periods import today_local
from schemas import (
    AccountIn,
    AccountUpdate,
    BalanceAdjustmentIn,
    BudgetIn,
    BudgetUpdate,
    CategoryIn,
    CategoryUpdate,
    TransactionIn,
    TransactionUpdate,
    UserIn,
)
from soft_delete import deleted_only, live, mark_deleted, mark_restored

logger = logging.getLogger(__name__)

M = TypeVar("M")


class SoftDeleteService(Generic[M]):
    """Scoped reads and the delete/restore lifecycle for one entity table."""

    model: type
    label: str = "Record"

    def __init__(self, session: Session, scope: Scope) -> None:
        self.session = session
        self.scope = scope

    def _scoped(self, stmt):
        return apply_scope(stmt, self.model, self.scope)

    def _owner_for_create(self, requested: Optional[int]) -> int:
        if not self.scope.unrestricted:
            return self.scope.owner_id
        if requested is None:
            raise BadRequestError(f"User ID is required to create a {self.label.lower()}")
        user = self.session.scalar(live(select(User).where(User.id == requested), User))
        if not user:
            raise NotFoundError(f"User not found with id {requested}")
        return user.id

    def get(self, record_id: int, *, include_deleted: bool = False) -> M:
        stmt = self._scoped(select(self.model).where(self.model.id == record_id))
        stmt = live(stmt, self.model, include_deleted=include_deleted)
        record = self.session.scalar(stmt)
        if not record:
            raise NotFoundError(f"{self.label} not found with id {record_id}")
        return record

    def count(self, *, include_deleted: bool = False) -> int:
        stmt = self._scoped(select(func.count(self.model.id)))
        stmt = live(stmt, self.model, include_deleted=include_deleted)
        return int(self.session.execute(stmt).scalar_one() or 0)

    def deleted(self, limit: int = 200) -> list[M]:
        stmt = deleted_only(self._scoped(select(self.model)), self.model)
        stmt = stmt.order_by(self.model.deleted_at.desc(), self.model.id.desc())
        return self.session.scalars(stmt.limit(limit)).all()

    def soft_delete(self, record_id: int) -> M:
        record = self.get(record_id, include_deleted=True)
        mark_deleted(record, self.label)
        self.session.commit()
        logger.info(f"soft_delete: {self.model.__tablename__} id={record_id}")
        return record

    def restore(self, record_id: int) -> M:
        record = self.get(record_id, include_deleted=True)
        mark_restored(record, self.label)
        self.session.commit()
        logger.info(f"restore: {self.model.__tablename__} id={record_id}")
        return record


class UserService(SoftDeleteService[User]):
    model = User
    label = "User"

    def __init__(self, session: Session, scope: Optional[Scope] = None) -> None:
        super().__init__(session, scope or Scope.all())

    def _scoped(self, stmt):
        if self.scope.unrestricted:
            return stmt
        return stmt.where(User.id == self.scope.owner_id)

    def list_all(self) -> list[User]:
        stmt = live(self._scoped(select(User)), User).order_by(User.id)
        return self.session.scalars(stmt).all()

    def create(self, data: UserIn) -> User:
        existing = self.session.scalar(
            select(User).where(
                (func.lower(User.username) == data.username.lower())
                | (func.lower(User.email) == data.email.lower())
            )
        )
        if existing:
            raise BadRequestError("User with this username or email already exists")
        user = User(
            username=data.username,
            email=data.email.lower(),
            first_name=data.first_name,
            last_name=data.last_name,
            is_admin=data.is_admin,
        )
        self.session.add(user)
        self.session.commit()
        self.session.refresh(user)
        return user


class AccountService(SoftDeleteService[Account]):
    model = Account
    label = "Account"

    def _ensure_unique_name(self, name: str, exclude_id: Optional[int] = None) -> None:
        stmt = select(Account.id).where(func.lower(Account.name) == name.lower())
        if exclude_id is not None:
            stmt = stmt.where(Account.id != exclude_id)
        if self.session.scalar(stmt) is not None:
            raise BadRequestError("Account with this name already exists")

    def create(self, data: AccountIn) -> Account:
        owner_id = self._owner_for_create(data.user_id)
        name = data.name
        self._ensure_unique_name(name)
        opening = to_cents(data.opening_balance) if self.scope.unrestricted else 0
        account = Account(
            user_id=owner_id,
            name=name,
            type=data.type,
            description=data.description,
            is_active=data.is_active,
            balance_cents=opening,
            opening_balance_cents=opening,
        )
        self.session.add(account)
        self.session.commit()
        self.session.refresh(account)
        logger.info(f"account_create: account={account.id} opening={opening}")
        return account

    def list(
        self, filters: Optional[AccountFilters] = None, page: Optional[Page] = None
    ) -> tuple[list[Account], int]:
        filters = filters or AccountFilters()
        page = page or Page.for_scope(self.scope)
        base = filters.apply(live(self._scoped(select(Account)), Account))
        total = int(
            self.session.execute(
                select(func.count()).select_from(base.subquery())
            ).scalar_one()
        )
        stmt = filters.order(base).offset(page.offset).limit(page.limit)
        return self.session.scalars(stmt).all(), total

    def update(self, account_id: int, data: AccountUpdate) -> Account:
        account = self.get(account_id)
        if data.name is not None:
            name = data.name
            self._ensure_unique_name(name, exclude_id=account.id)
            account.name = name
        if data.type is not None:
            account.type = data.type
        if "description" in data.model_fields_set:
            account.description = data.description
        if data.is_active is not None:
            account.is_active = data.is_active
        self.session.commit()
        self.session.refresh(account)
        return account

    def toggle_active(self, account_id: int) -> Account:
        account = self.get(account_id, include_deleted=True)
        if account.is_deleted:
            raise BadRequestError("Cannot change active status of a deleted account")
        account.is_active = not account.is_active
        self.session.commit()
        return account

    def soft_delete(self, account_id: int) -> Account:
        return LedgerService(self.session, self.scope).delete_account(account_id)

    def adjust_balance(self, account_id: int, data: BalanceAdjustmentIn) -> Account:
        return LedgerService(self.session, self.scope).adjust_balance(account_id, data)

    def adjustments(self, account_id: int) -> list[BalanceAdjustment]:
        account = self.get(account_id, include_deleted=True)
        stmt = (
            select(BalanceAdjustment)
            .where(BalanceAdjustment.account_id == account.id)
            .order_by(BalanceAdjustment.created_at.desc(), BalanceAdjustment.id.desc())
        )
        return self.session.scalars(stmt).all()


class CategoryService(SoftDeleteService[Category]):
    model = Category
    label = "Category"

    def _ensure_unique_name(self, name: str, exclude_id: Optional[int] = None) -> None:
        stmt = select(Category.id).where(func.lower(Category.name) == name.lower())
        if exclude_id is not None:
            stmt = stmt.where(Category.id != exclude_id)
        if self.session.scalar(stmt) is not None:
            raise BadRequestError("Category with this name already exists")

    def list_all(self, txn_type: Optional[TransactionType] = None) -> list[Category]:
        stmt = live(self._scoped(select(Category)), Category).order_by(
            Category.type, Category.name
        )
        if txn_type:
            stmt = stmt.where(Category.type == txn_type)
        return self.session.scalars(stmt).all()

    def create(self, data: CategoryIn) -> Category:
        owner_id = self._owner_for_create(data.user_id)
        name = data.name
        self._ensure_unique_name(name)
        category = Category(
            user_id=owner_id,
            name=name,
            type=data.type,
            icon=data.icon,
            color=data.color,
        )
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        return category

    def update(self, category_id: int, data: CategoryUpdate) -> Category:
        category = self.get(category_id)
        if data.name is not None:
            name = data.name
            self._ensure_unique_name(name, exclude_id=category.id)
            category.name = name
        if data.type is not None:
            category.type = data.type
        if data.icon is not None:
            category.icon = data.icon
        if data.color is not None:
            category.color = data.color
        self.session.commit()
        self.session.refresh(category)
        return category


class BudgetService(SoftDeleteService[Budget]):
    model = Budget
    label = "Budget"

    def _category(self, category_id: int, owner_id: int) -> Category:
        category = self.session.scalar(
            live(
                select(Category).where(
                    Category.id == category_id, Category.user_id == owner_id
                ),
                Category,
            )
        )
        if not category:
            raise NotFoundError("Category not found")
        return category

    def list_all(self, period: Optional[BudgetPeriod] = None) -> list[Budget]:
        stmt = (
            live(self._scoped(select(Budget)), Budget)
            .options(joinedload(Budget.category))
            .order_by(Budget.start_date.desc(), Budget.id.desc())
        )
        if period:
            stmt = stmt.where(Budget.period == period)
        return self.session.scalars(stmt).all()

    def current(self, today: Optional[date] = None) -> list[Budget]:
        today = today or today_local()
        stmt = (
            live(self._scoped(select(Budget)), Budget)
            .where(
                Budget.start_date <= today,
                (Budget.end_date.is_(None)) | (Budget.end_date >= today),
            )
            .order_by(Budget.start_date.desc(), Budget.id.desc())
        )
        return self.session.scalars(stmt).all()

    def create(self, data: BudgetIn) -> Budget:
        owner_id = self._owner_for_create(data.user_id)
        self._category(data.category_id, owner_id)
        budget = Budget(
            user_id=owner_id,
            category_id=data.category_id,
            amount_cents=to_cents(data.amount),
            period=data.period,
            start_date=data.start_date,
            end_date=data.end_date,
            is_recurring=data.is_recurring,
        )
        self.session.add(budget)
        self.session.commit()
        self.session.refresh(budget)
        return budget

    def update(self, budget_id: int, data: BudgetUpdate) -> Budget:
        budget = self.get(budget_id)
        if data.category_id is not None:
            self._category(data.category_id, budget.user_id)
            budget.category_id = data.category_id
        if data.amount is not None:
            budget.amount_cents = to_cents(data.amount)
        if data.period is not None:
            budget.period = data.period
        if data.start_date is not None:
            budget.start_date = data.start_date
        if "end_date" in data.model_fields_set:
            budget.end_date = data.end_date
        if data.is_recurring is not None:
            budget.is_recurring = data.is_recurring
        if budget.end_date is not None and budget.end_date < budget.start_date:
            raise BadRequestError("End date must not be before start date")
        self.session.commit()
        self.session.refresh(budget)
        return budget


class TransactionService(SoftDeleteService[Transaction]):
    """Reads over the ledger; every write is delegated to ``LedgerService``."""

    model = Transaction
    label = "Transaction"

    @property
    def ledger(self) -> LedgerService:
        return LedgerService(self.session, self.scope)

    def list(
        self,
        filters: Optional[TransactionFilters] = None,
        page: Optional[Page] = None,
    ) -> tuple[list[Transaction], int]:
        filters = filters or TransactionFilters()
        page = page or Page.for_scope(self.scope)
        base = filters.apply(live(self._scoped(select(Transaction)), Transaction))
        total = int(
            self.session.execute(
                select(func.count()).select_from(base.subquery())
            ).scalar_one()
        )
        stmt = (
            filters.order(base)
            .options(joinedload(Transaction.category), joinedload(Transaction.account))
            .offset(page.offset)
            .limit(page.limit)
        )
        return self.session.scalars(stmt).all(), total

    def by_account(self, account_id: int) -> list[Transaction]:
        AccountService(self.session, self.scope).get(account_id)
        items, _ = self.list(
            TransactionFilters(account_id=account_id), Page(page=1, limit=10_000)
        )
        return items

    def by_category(self, category_id: int) -> list[Transaction]:
        items, _ = self.list(
            TransactionFilters(category_id=category_id), Page(page=1, limit=10_000)
        )
        return items

    def create(self, data: TransactionIn) -> Transaction:
        return self.ledger.create(data)

    def update(self, transaction_id: int, data: TransactionUpdate) -> Transaction:
        return self.ledger.update(transaction_id, data)

    def soft_delete(self, transaction_id: int) -> Transaction:
        return self.ledger.delete(transaction_id)

    def restore(self, transaction_id: int) -> Transaction:
        return self.ledger.restore(transaction_id)


@dataclass(frozen=True)
class BalanceDrift:
    account_id: int
    account_name: str
    expected_cents: int
    actual_cents: int

    @property
    def drift_cents(self) -> int:
        return self.actual_cents - self.expected_cents

    def as_dict(self) -> dict[str, object]:
        return {
            "account_id": self.account_id,
            "account_name": self.account_name,
            "expected": from_cents(self.expected_cents),
            "actual": from_cents(self.actual_cents),
            "drift": from_cents(self.drift_cents),
        }


class ReconciliationService:
    """Recomputes balances from history and reports accounts that drifted.

    Expected balance = opening balance + signed live transactions + manual
    adjustments. Drift is reported, never repaired here.
    """

    def __init__(self, session: Session, scope: Optional[Scope] = None) -> None:
        self.session = session
        self.scope = scope or Scope.all()

    def _ledger_totals(self, account_id: Optional[int] = None) -> dict[int, int]:
        signed = case(
            (Transaction.type == TransactionType.income, Transaction.amount_cents),
            else_=-Transaction.amount_cents,
        )
        stmt = live(
            select(
                Transaction.account_id,
                func.coalesce(func.sum(signed), 0).label("total"),
            ),
            Transaction,
        ).group_by(Transaction.account_id)
        stmt = apply_scope(stmt, Transaction, self.scope)
        if account_id is not None:
            stmt = stmt.where(Transaction.account_id == account_id)
        return {row.account_id: int(row.total) for row in self.session.execute(stmt)}

    def _adjustment_totals(
        self, account_id: Optional[int] = None
    ) -> dict[int, int]:
        stmt = select(
            BalanceAdjustment.account_id,
            func.coalesce(func.sum(BalanceAdjustment.delta_cents), 0).label("total"),
        ).group_by(BalanceAdjustment.account_id)
        stmt = apply_scope(stmt, BalanceAdjustment, self.scope)
        if account_id is not None:
            stmt = stmt.where(BalanceAdjustment.account_id == account_id)
        return {row.account_id: int(row.total) for row in self.session.execute(stmt)}

    @staticmethod
    def _expected(
        account: Account, ledger: dict[int, int], manual: dict[int, int]
    ) -> int:
        return (
            account.opening_balance_cents
            + ledger.get(account.id, 0)
            + manual.get(account.id, 0)
        )

    def expected_balance_cents(self, account: Account) -> int:
        return self._expected(
            account,
            self._ledger_totals(account.id),
            self._adjustment_totals(account.id),
        )

    def audit(self) -> list[BalanceDrift]:
        ledger = self._ledger_totals()
        manual = self._adjustment_totals()
        stmt = apply_scope(live(select(Account), Account), Account, self.scope)
        accounts = self.session.scalars(
            stmt.order_by(Account.id).execution_options(populate_existing=True)
        ).all()
        drifts: list[BalanceDrift] = []
        for account in accounts:
            expected = self._expected(account, ledger, manual)
            if expected != account.balance_cents:
                drifts.append(
                    BalanceDrift(
                        account_id=account.id,
                        account_name=account.name,
                        expected_cents=expected,
                        actual_cents=account.balance_cents,
                    )
                )
                logger.warning(
                    f"balance_drift: account={account.id} expected={expected} "
                    f"actual={account.balance_cents}"
                )
        logger.info(
            f"reconciliation_audit: accounts={len(accounts)} drifted={len(drifts)} "
            f"at={datetime.utcnow().isoformat()}"
        )
        return drifts
