"""Balance reconciliation for the transaction ledger.

``LedgerService`` is the only writer of ``Account.balance_cents``. Each public
operation runs as a single database transaction: the transaction row and the
account row(s) commit together or not at all. Balance changes are applied with
one conditional ``UPDATE`` so the funds check and the mutation observe the
same balance. Transactions carry a version column; a concurrent edit of the
same row surfaces as ``StaleDataError`` and the whole unit is retried.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional, TypeVar

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from config import get_settings
from errors import (
    BadRequestError,
    ConflictError,
    InsufficientFundsError,
    NotDeletedError,
    NotFoundError,
)
from filters import Scope, apply_scope
from models import (
    Account,
    AccountType,
    BalanceAdjustment,
    BalanceOperation,
    Category,
    Transaction,
    TransactionType,
    User,
    signed_effect,
)
from money import to_cents
from periods import today_local
from schemas import BalanceAdjustmentIn, TransactionIn, TransactionUpdate
from soft_delete import live, mark_deleted, mark_restored

logger = logging.getLogger(__name__)

T = TypeVar("T")


class LedgerService:
    def __init__(
        self, session: Session, scope: Scope, *, max_retries: Optional[int] = None
    ) -> None:
        self.session = session
        self.scope = scope
        if max_retries is None:
            max_retries = get_settings().ledger_max_retries
        self.max_retries = max_retries

    # -- unit of work -----------------------------------------------------

    def _run(self, label: str, work: Callable[[], T]) -> T:
        for attempt in range(1, self.max_retries + 2):
            try:
                result = work()
                self.session.commit()
                return result
            except StaleDataError:
                self.session.rollback()
                logger.warning(f"ledger_conflict: op={label} attempt={attempt}")
            except Exception:
                self.session.rollback()
                raise
        raise ConflictError(
            f"Could not {label}: the record was modified concurrently, please retry"
        )

    # -- lookups ----------------------------------------------------------

    def _transaction(
        self, transaction_id: int, *, include_deleted: bool = False
    ) -> Transaction:
        stmt = select(Transaction).where(Transaction.id == transaction_id)
        stmt = apply_scope(stmt, Transaction, self.scope)
        stmt = live(stmt, Transaction, include_deleted=include_deleted)
        txn = self.session.scalar(stmt.execution_options(populate_existing=True))
        if not txn:
            raise NotFoundError(f"Transaction not found with id {transaction_id}")
        return txn

    def _account(
        self,
        account_id: int,
        owner_id: Optional[int],
        *,
        include_deleted: bool = False,
    ) -> Account:
        stmt = select(Account).where(Account.id == account_id)
        if owner_id is not None:
            stmt = stmt.where(Account.user_id == owner_id)
        stmt = live(stmt, Account, include_deleted=include_deleted)
        account = self.session.scalar(stmt.execution_options(populate_existing=True))
        if not account:
            raise NotFoundError(
                "Account not found or does not belong to the current user"
            )
        return account

    def _category(self, category_id: int, owner_id: int) -> Category:
        stmt = live(
            select(Category).where(
                Category.id == category_id, Category.user_id == owner_id
            ),
            Category,
        )
        category = self.session.scalar(stmt)
        if not category:
            raise NotFoundError(
                "Category not found or does not belong to the current user"
            )
        return category

    def _owner_for_create(self, requested: Optional[int]) -> Optional[int]:
        if not self.scope.unrestricted:
            return self.scope.owner_id
        if requested is None:
            return None
        user = self.session.scalar(
            live(select(User).where(User.id == requested), User)
        )
        if not user:
            raise NotFoundError(f"User not found with id {requested}")
        return user.id

    # -- balance mutation -------------------------------------------------

    def _apply_delta(
        self,
        account_id: int,
        delta_cents: int,
        *,
        enforce_floor: bool,
        credit_exempt: bool = False,
        insufficient_message: str = "Insufficient funds in the selected account",
    ) -> Account:
        stmt = (
            update(Account)
            .where(Account.id == account_id, Account.is_deleted.is_(False))
            .values(
                balance_cents=Account.balance_cents + delta_cents,
                updated_at=datetime.utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if enforce_floor:
            floor = Account.balance_cents + delta_cents >= 0
            if credit_exempt:
                # Only restore lets a credit account dip below zero.
                floor = or_(Account.type == AccountType.credit, floor)
            stmt = stmt.where(floor)
        result = self.session.execute(stmt)
        account = self.session.get(Account, account_id, populate_existing=True)
        if result.rowcount != 1:
            if account is None or account.is_deleted:
                raise NotFoundError(f"Account not found with id {account_id}")
            raise InsufficientFundsError(insufficient_message)
        return account

    def _revert(self, txn: Transaction) -> Account:
        return self._apply_delta(txn.account_id, -txn.effect_cents, enforce_floor=False)

    # -- operations -------------------------------------------------------

    def create(self, data: TransactionIn) -> Transaction:
        amount_cents = to_cents(data.amount)

        def work() -> Transaction:
            owner_id = self._owner_for_create(data.user_id)
            account = self._account(data.account_id, owner_id)
            owner_id = account.user_id
            self._category(data.category_id, owner_id)

            delta = signed_effect(data.type, amount_cents)
            self._apply_delta(
                account.id,
                delta,
                enforce_floor=data.type == TransactionType.expense,
            )
            txn = Transaction(
                user_id=owner_id,
                account_id=account.id,
                category_id=data.category_id,
                type=data.type,
                amount_cents=amount_cents,
                description=data.description,
                date=data.date or today_local(),
                img_url=data.img_url,
            )
            self.session.add(txn)
            self.session.flush()
            logger.info(
                f"ledger_create: txn={txn.id} account={account.id} delta={delta}"
            )
            return txn

        return self._run("create transaction", work)

    def update(self, transaction_id: int, data: TransactionUpdate) -> Transaction:
        def work() -> Transaction:
            txn = self._transaction(transaction_id)

            new_type = data.type or txn.type
            new_amount = (
                to_cents(data.amount) if data.amount is not None else txn.amount_cents
            )
            new_account_id = data.account_id or txn.account_id
            if new_account_id != txn.account_id:
                self._account(new_account_id, txn.user_id)
            if data.category_id is not None and data.category_id != txn.category_id:
                self._category(data.category_id, txn.user_id)

            old_effect = txn.effect_cents
            new_effect = signed_effect(new_type, new_amount)
            enforce = new_type == TransactionType.expense
            message = "Insufficient funds after update"
            if new_account_id == txn.account_id:
                if new_effect != old_effect:
                    # Revert and re-apply in one statement.
                    self._apply_delta(
                        txn.account_id,
                        new_effect - old_effect,
                        enforce_floor=enforce,
                        insufficient_message=message,
                    )
                    logger.info(
                        f"ledger_update: txn={txn.id} account={txn.account_id} "
                        f"delta={new_effect - old_effect}"
                    )
            else:
                self._apply_delta(txn.account_id, -old_effect, enforce_floor=False)
                self._apply_delta(
                    new_account_id,
                    new_effect,
                    enforce_floor=enforce,
                    insufficient_message=message,
                )
                logger.info(
                    f"ledger_move: txn={txn.id} from_account={txn.account_id} "
                    f"delta={-old_effect} to_account={new_account_id} delta={new_effect}"
                )

            txn.type = new_type
            txn.amount_cents = new_amount
            txn.account_id = new_account_id
            if data.category_id is not None:
                txn.category_id = data.category_id
            if data.description is not None:
                txn.description = data.description
            if data.date is not None:
                txn.date = data.date
            if "img_url" in data.model_fields_set:
                txn.img_url = data.img_url
            self.session.flush()
            return txn

        return self._run("update transaction", work)

    def _delete_one(self, txn: Transaction) -> None:
        mark_deleted(txn, "Transaction")
        self.session.flush()
        self._revert(txn)
        logger.info(
            f"ledger_delete: txn={txn.id} account={txn.account_id} "
            f"delta={-txn.effect_cents}"
        )

    def delete(self, transaction_id: int) -> Transaction:
        def work() -> Transaction:
            txn = self._transaction(transaction_id, include_deleted=True)
            self._delete_one(txn)
            return txn

        return self._run("delete transaction", work)

    def restore(self, transaction_id: int) -> Transaction:
        def work() -> Transaction:
            txn = self._transaction(transaction_id, include_deleted=True)
            if not txn.is_deleted:
                raise NotDeletedError("Transaction is not deleted")
            try:
                self._apply_delta(
                    txn.account_id,
                    txn.effect_cents,
                    enforce_floor=txn.type == TransactionType.expense,
                    credit_exempt=True,
                    insufficient_message=(
                        "Cannot restore transaction: insufficient funds in the "
                        "associated account"
                    ),
                )
            except NotFoundError as exc:
                raise NotFoundError(
                    "Cannot restore transaction: associated account not found"
                ) from exc
            mark_restored(txn, "Transaction")
            self.session.flush()
            logger.info(
                f"ledger_restore: txn={txn.id} account={txn.account_id} "
                f"delta={txn.effect_cents}"
            )
            return txn

        return self._run("restore transaction", work)

    def adjust_balance(self, account_id: int, data: BalanceAdjustmentIn) -> Account:
        amount_cents = to_cents(data.amount)

        def work() -> Account:
            account = self._account(
                account_id, self.scope.owner_id, include_deleted=True
            )
            if account.is_deleted:
                raise BadRequestError("Cannot update balance of a deleted account")
            if data.operation == BalanceOperation.add:
                delta = amount_cents
            else:
                delta = -amount_cents
            self._apply_delta(
                account.id,
                delta,
                enforce_floor=data.operation == BalanceOperation.subtract,
                insufficient_message="Insufficient funds",
            )
            self.session.add(
                BalanceAdjustment(
                    user_id=account.user_id,
                    account_id=account.id,
                    operation=data.operation,
                    delta_cents=delta,
                    note=data.note,
                )
            )
            self.session.flush()
            logger.info(
                f"manual_adjustment: account={account.id} op={data.operation.value} "
                f"delta={delta}"
            )
            return account

        return self._run("adjust balance", work)

    def delete_account(self, account_id: int) -> Account:
        def work() -> Account:
            account = self._account(
                account_id, self.scope.owner_id, include_deleted=True
            )
            txns = self.session.scalars(
                live(
                    select(Transaction).where(Transaction.account_id == account.id),
                    Transaction,
                )
            ).all()
            # Balances are reverted while the account is still live.
            for txn in txns:
                self._delete_one(txn)
            mark_deleted(account, "Account")
            self.session.flush()
            logger.info(
                f"ledger_account_delete: account={account.id} transactions={len(txns)}"
            )
            return account

        return self._run("delete account", work)
