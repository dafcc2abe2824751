from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from database import Base
from errors import BadRequestError
from filters import Scope
from models import Account, AccountType, Category, Transaction, TransactionType, User
from periods import Granularity, period_key, subtract_months
from reports import ReportService


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


class Ledger:
    """Writes transaction rows directly; reports never touch balances."""

    def __init__(self, session, username="alice"):
        self.session = session
        self.user = User(username=username, email=f"{username}@example.com")
        session.add(self.user)
        session.flush()
        self.account = Account(
            user_id=self.user.id, name=f"{username}-card", type=AccountType.credit
        )
        session.add(self.account)
        session.flush()
        self.categories: dict[str, Category] = {}

    def category(self, name, txn_type=TransactionType.expense) -> Category:
        if name not in self.categories:
            category = Category(
                user_id=self.user.id,
                name=f"{self.user.username}-{name}",
                type=txn_type,
                icon=f"{name.lower()}-icon",
                color="#ff8800",
            )
            self.session.add(category)
            self.session.flush()
            self.categories[name] = category
        return self.categories[name]

    def add(
        self,
        when,
        amount_cents,
        txn_type=TransactionType.expense,
        category="Misc",
        deleted=False,
    ):
        txn = Transaction(
            user_id=self.user.id,
            account_id=self.account.id,
            category_id=self.category(category, txn_type).id,
            type=txn_type,
            amount_cents=amount_cents,
            description="entry",
            date=when,
            is_deleted=deleted,
        )
        self.session.add(txn)
        self.session.flush()
        return txn

    @property
    def scope(self) -> Scope:
        return Scope.owner(self.user.id)


def test_spending_by_category_groups_and_sorts_descending() -> None:
    session = make_session()
    ledger = Ledger(session)
    ledger.add(date(2023, 1, 5), 10_000, category="Entertainment")
    ledger.add(date(2023, 1, 10), 20_000, category="Groceries")
    ledger.add(date(2023, 1, 20), 5_000, category="Groceries")
    ledger.add(date(2023, 1, 25), 5_000, category="Entertainment")
    ledger.add(date(2023, 1, 31), 99_999, category="Groceries", deleted=True)
    ledger.add(date(2023, 2, 1), 70_000, category="Groceries")
    ledger.add(date(2023, 1, 15), 300_000, TransactionType.income, category="Salary")
    session.commit()

    report = ReportService(session, ledger.scope).spending_by_category(
        "2023-01-01", "2023-01-31"
    )

    assert [row["category_name"] for row in report["data"]] == [
        "alice-Groceries",
        "alice-Entertainment",
    ]
    assert [row["total_amount"] for row in report["data"]] == [
        Decimal("250.00"),
        Decimal("150.00"),
    ]
    assert report["data"][0]["category_icon"] == "groceries-icon"
    assert report["data"][0]["category_color"] == "#ff8800"
    assert report["summary"] == {
        "total_spending": Decimal("400.00"),
        "categories_count": 2,
    }


def test_spending_by_category_is_scoped_to_owner() -> None:
    session = make_session()
    alice = Ledger(session, "alice")
    bob = Ledger(session, "bobby")
    alice.add(date(2023, 1, 5), 1_000)
    bob.add(date(2023, 1, 5), 9_000)
    session.commit()

    own = ReportService(session, alice.scope).spending_by_category(
        date(2023, 1, 1), date(2023, 1, 31)
    )
    everyone = ReportService(session, Scope.all()).spending_by_category(
        date(2023, 1, 1), date(2023, 1, 31)
    )

    assert own["summary"]["total_spending"] == Decimal("10.00")
    assert everyone["summary"]["total_spending"] == Decimal("100.00")
    assert everyone["summary"]["categories_count"] == 2


def test_report_ranges_are_validated() -> None:
    session = make_session()
    reports = ReportService(session, Scope.all())

    with pytest.raises(BadRequestError, match="required"):
        reports.spending_by_category(None, "2023-01-31")
    with pytest.raises(BadRequestError, match="format"):
        reports.spending_by_category("01/01/2023", "2023-01-31")
    with pytest.raises(BadRequestError, match="before end date"):
        reports.income_vs_expenses("2023-02-01", "2023-01-01")
    with pytest.raises(BadRequestError, match="groupBy"):
        reports.income_vs_expenses("2023-01-01", "2023-02-01", "quarter")


def test_income_vs_expenses_by_month() -> None:
    session = make_session()
    ledger = Ledger(session)
    for month, income, expense in [(1, 1000, 700), (2, 1200, 800), (3, 1100, 900)]:
        ledger.add(date(2023, month, 1), income * 100, TransactionType.income, "Salary")
        ledger.add(date(2023, month, 15), expense * 100)
    session.commit()

    report = ReportService(session, ledger.scope).income_vs_expenses(
        "2023-01-01", "2023-03-31", Granularity.month
    )

    assert [row["period"] for row in report["data"]] == [
        "2023-01",
        "2023-02",
        "2023-03",
    ]
    assert [row["balance"] for row in report["data"]] == [
        Decimal("300.00"),
        Decimal("400.00"),
        Decimal("200.00"),
    ]
    assert report["data"][0]["income_count"] == 1
    assert report["data"][0]["expense_count"] == 1
    assert report["summary"] == {
        "total_income": Decimal("3300.00"),
        "total_expense": Decimal("2400.00"),
        "balance": Decimal("900.00"),
        "period_count": 3,
    }
    assert report["period"]["groupBy"] == "month"


def test_income_only_period_reports_zero_expense() -> None:
    session = make_session()
    ledger = Ledger(session)
    ledger.add(date(2023, 4, 3), 50_000, TransactionType.income, "Salary")
    ledger.add(date(2023, 4, 9), 2_500, TransactionType.income, "Salary")
    session.commit()

    report = ReportService(session, ledger.scope).income_vs_expenses(
        "2023-04-01", "2023-04-30", "month"
    )

    assert report["data"] == [
        {
            "period": "2023-04",
            "income": Decimal("525.00"),
            "income_count": 2,
            "expense": Decimal("0.00"),
            "expense_count": 0,
            "balance": Decimal("525.00"),
        }
    ]


def test_income_vs_expenses_by_week_uses_iso_weeks() -> None:
    session = make_session()
    ledger = Ledger(session)
    ledger.add(date(2024, 12, 30), 1_000)
    ledger.add(date(2025, 1, 2), 2_000)
    ledger.add(date(2025, 1, 6), 4_000)
    session.commit()

    report = ReportService(session, ledger.scope).income_vs_expenses(
        "2024-12-01", "2025-01-31", "week"
    )

    assert [(row["period"], row["expense"]) for row in report["data"]] == [
        ("2025-W01", Decimal("30.00")),
        ("2025-W02", Decimal("40.00")),
    ]


def test_monthly_trend_empty_window() -> None:
    session = make_session()
    ledger = Ledger(session)
    ledger.add(date(2020, 1, 1), 5_000)
    session.commit()

    report = ReportService(session, ledger.scope).monthly_trend(
        6, today=date(2023, 6, 15)
    )

    assert report["data"] == []
    assert report["summary"] == {"average_spending": Decimal("0.00"), "months_count": 0}


def test_monthly_trend_averages_months_with_spending() -> None:
    session = make_session()
    ledger = Ledger(session)
    ledger.add(date(2023, 5, 2), 10_000)
    ledger.add(date(2023, 6, 1), 5_000)
    ledger.add(date(2023, 6, 14), 2_500)
    ledger.add(date(2023, 6, 10), 90_000, TransactionType.income, "Salary")
    ledger.add(date(2022, 11, 30), 70_000)
    session.commit()

    report = ReportService(session, ledger.scope).monthly_trend(
        6, today=date(2023, 6, 15)
    )

    assert report["data"] == [
        {"month": "2023-05", "total_amount": Decimal("100.00"), "transaction_count": 1},
        {"month": "2023-06", "total_amount": Decimal("75.00"), "transaction_count": 2},
    ]
    assert report["summary"] == {"average_spending": Decimal("87.50"), "months_count": 2}
    assert report["period"]["startDate"] == date(2022, 12, 15)


def test_monthly_trend_rejects_out_of_range_months() -> None:
    session = make_session()
    with pytest.raises(BadRequestError):
        ReportService(session, Scope.all()).monthly_trend(0)


def test_period_helpers() -> None:
    assert period_key(date(2023, 1, 2), Granularity.day) == "2023-01-02"
    assert period_key(date(2023, 1, 2), Granularity.week) == "2023-W01"
    assert period_key(date(2023, 1, 2), Granularity.month) == "2023-01"
    assert period_key(date(2023, 1, 2), Granularity.year) == "2023"
    assert subtract_months(date(2024, 3, 31), 1) == date(2024, 2, 29)
    assert subtract_months(date(2024, 1, 15), 6) == date(2023, 7, 15)
