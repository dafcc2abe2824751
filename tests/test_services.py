from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, update
from sqlalchemy.orm import sessionmaker

from database import Base
from errors import AlreadyDeletedError, BadRequestError, NotDeletedError, NotFoundError
from filters import Page, Scope, TransactionFilters, parse_numeric_filters
from models import Account, AccountType, BudgetPeriod, TransactionType, User
from schemas import (
    AccountIn,
    AccountUpdate,
    BudgetIn,
    CategoryIn,
    TransactionIn,
    UserIn,
)
from services import (
    AccountService,
    BudgetService,
    CategoryService,
    ReconciliationService,
    TransactionService,
    UserService,
)


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def make_user(session, username="alice") -> User:
    return UserService(session).create(
        UserIn(username=username, email=f"{username}@example.com")
    )


def test_category_soft_delete_hides_record_from_default_reads() -> None:
    session = make_session()
    user = make_user(session)
    categories = CategoryService(session, Scope.owner(user.id))
    food = categories.create(CategoryIn(name="Food", type=TransactionType.expense))
    categories.create(CategoryIn(name="Rent", type=TransactionType.expense))

    categories.soft_delete(food.id)

    assert [c.name for c in categories.list_all()] == ["Rent"]
    assert categories.count() == 1
    assert categories.count(include_deleted=True) == 2
    with pytest.raises(NotFoundError):
        categories.get(food.id)
    assert categories.get(food.id, include_deleted=True).is_deleted
    assert [c.id for c in categories.deleted()] == [food.id]

    with pytest.raises(AlreadyDeletedError):
        categories.soft_delete(food.id)

    categories.restore(food.id)
    assert categories.get(food.id).deleted_at is None
    with pytest.raises(NotDeletedError):
        categories.restore(food.id)


def test_category_defaults_and_unique_name() -> None:
    session = make_session()
    user = make_user(session)
    categories = CategoryService(session, Scope.owner(user.id))

    food = categories.create(CategoryIn(name="Food", type=TransactionType.expense))

    assert food.icon == "default-icon"
    assert food.color == "#000000"
    with pytest.raises(BadRequestError, match="already exists"):
        categories.create(CategoryIn(name="food", type=TransactionType.income))


def test_records_of_other_owners_are_not_found() -> None:
    session = make_session()
    alice = make_user(session, "alice")
    bob = make_user(session, "bobby")
    food = CategoryService(session, Scope.owner(alice.id)).create(
        CategoryIn(name="Food", type=TransactionType.expense)
    )

    with pytest.raises(NotFoundError):
        CategoryService(session, Scope.owner(bob.id)).get(food.id)
    assert CategoryService(session, Scope.all()).get(food.id).id == food.id


def test_admin_must_name_an_owner() -> None:
    session = make_session()
    user = make_user(session)
    categories = CategoryService(session, Scope.all())

    with pytest.raises(BadRequestError, match="User ID is required"):
        categories.create(CategoryIn(name="Food", type=TransactionType.expense))

    created = categories.create(
        CategoryIn(name="Food", type=TransactionType.expense, user_id=user.id)
    )
    assert created.user_id == user.id


def test_account_opening_balance_is_admin_only() -> None:
    session = make_session()
    user = make_user(session)

    own = AccountService(session, Scope.owner(user.id)).create(
        AccountIn(name="Wallet", type=AccountType.cash, opening_balance=Decimal("50"))
    )
    seeded = AccountService(session, Scope.all()).create(
        AccountIn(name="Bank", user_id=user.id, opening_balance=Decimal("250.00"))
    )

    assert own.balance == Decimal("0.00")
    assert seeded.balance == Decimal("250.00")
    assert seeded.opening_balance_cents == 25_000


def test_account_update_toggle_and_restore() -> None:
    session = make_session()
    user = make_user(session)
    accounts = AccountService(session, Scope.owner(user.id))
    wallet = accounts.create(AccountIn(name="Wallet", type=AccountType.cash))
    accounts.create(AccountIn(name="Bank"))

    with pytest.raises(BadRequestError, match="already exists"):
        accounts.update(wallet.id, AccountUpdate(name="bank"))
    renamed = accounts.update(wallet.id, AccountUpdate(name="Pocket"))
    assert renamed.name == "Pocket"

    assert accounts.toggle_active(wallet.id).is_active is False
    assert accounts.toggle_active(wallet.id).is_active is True

    accounts.soft_delete(wallet.id)
    with pytest.raises(BadRequestError, match="deleted account"):
        accounts.toggle_active(wallet.id)

    restored = accounts.restore(wallet.id)
    assert not restored.is_deleted


def test_account_restore_leaves_transactions_deleted() -> None:
    session = make_session()
    user = make_user(session)
    scope = Scope.owner(user.id)
    account = AccountService(session, Scope.all()).create(
        AccountIn(name="Bank", user_id=user.id, opening_balance=Decimal("100.00"))
    )
    food = CategoryService(session, scope).create(
        CategoryIn(name="Food", type=TransactionType.expense)
    )
    txns = TransactionService(session, scope)
    txn = txns.create(
        TransactionIn(
            amount=Decimal("40.00"),
            type=TransactionType.expense,
            description="Dinner",
            date=date(2024, 5, 1),
            category_id=food.id,
            account_id=account.id,
        )
    )

    accounts = AccountService(session, scope)
    accounts.soft_delete(account.id)
    restored = accounts.restore(account.id)

    assert restored.balance == Decimal("100.00")
    assert txns.get(txn.id, include_deleted=True).is_deleted
    assert txns.by_account(account.id) == []


def test_transaction_listing_filters_sorts_and_pages() -> None:
    session = make_session()
    user = make_user(session)
    scope = Scope.owner(user.id)
    account = AccountService(session, Scope.all()).create(
        AccountIn(name="Bank", user_id=user.id, opening_balance=Decimal("1000.00"))
    )
    food = CategoryService(session, scope).create(
        CategoryIn(name="Food", type=TransactionType.expense)
    )
    txns = TransactionService(session, scope)
    for day, amount, text in [
        (1, "12.00", "Bakery"),
        (2, "45.50", "Supermarket"),
        (3, "8.25", "Bakery again"),
        (4, "99.00", "Restaurant"),
    ]:
        txns.create(
            TransactionIn(
                amount=Decimal(amount),
                type=TransactionType.expense,
                description=text,
                date=date(2024, 6, day),
                category_id=food.id,
                account_id=account.id,
            )
        )

    items, total = txns.list(TransactionFilters(description="bakery"))
    assert total == 2
    assert [t.description for t in items] == ["Bakery again", "Bakery"]

    numeric = parse_numeric_filters("amount>10,amount<=50", {"amount"})
    items, total = txns.list(TransactionFilters(numeric=numeric))
    assert total == 2
    assert {t.amount for t in items} == {Decimal("12.00"), Decimal("45.50")}

    items, total = txns.list(
        TransactionFilters(start=date(2024, 6, 2), end=date(2024, 6, 3)),
        Page(page=1, limit=1),
    )
    assert total == 2
    assert [t.date for t in items] == [date(2024, 6, 3)]

    assert len(txns.by_category(food.id)) == 4


def test_budget_current_and_period_filter() -> None:
    session = make_session()
    user = make_user(session)
    scope = Scope.owner(user.id)
    food = CategoryService(session, scope).create(
        CategoryIn(name="Food", type=TransactionType.expense)
    )
    budgets = BudgetService(session, scope)
    monthly = budgets.create(
        BudgetIn(
            amount=Decimal("300.00"),
            period=BudgetPeriod.monthly,
            category_id=food.id,
            start_date=date(2024, 1, 1),
        )
    )
    expired = budgets.create(
        BudgetIn(
            amount=Decimal("50.00"),
            period=BudgetPeriod.weekly,
            category_id=food.id,
            start_date=date(2024, 1, 1),
            end_date=date(2024, 1, 31),
        )
    )

    current = budgets.current(today=date(2024, 3, 15))
    assert [b.id for b in current] == [monthly.id]
    assert [b.id for b in budgets.list_all(BudgetPeriod.weekly)] == [expired.id]
    assert monthly.amount == Decimal("300.00")


def test_budget_rejects_end_before_start() -> None:
    with pytest.raises(ValueError):
        BudgetIn(
            amount=Decimal("10.00"),
            period=BudgetPeriod.custom,
            category_id=1,
            start_date=date(2024, 2, 1),
            end_date=date(2024, 1, 1),
        )


def test_reconciliation_reports_drift_without_repairing() -> None:
    session = make_session()
    user = make_user(session)
    account = AccountService(session, Scope.all()).create(
        AccountIn(name="Bank", user_id=user.id, opening_balance=Decimal("100.00"))
    )
    assert ReconciliationService(session).audit() == []

    session.execute(
        update(Account).where(Account.id == account.id).values(balance_cents=12_345)
    )
    session.commit()

    reconciliation = ReconciliationService(session)
    assert reconciliation.expected_balance_cents(account) == 10_000
    drifts = reconciliation.audit()
    assert len(drifts) == 1
    drift = drifts[0].as_dict()
    assert drift["expected"] == Decimal("100.00")
    assert drift["actual"] == Decimal("123.45")
    assert drift["drift"] == Decimal("23.45")

    session.refresh(account)
    assert account.balance_cents == 12_345
