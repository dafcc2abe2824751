from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from auth import issue_token
from database import Base
from main import app, get_db
from models import Account, AccountType, Category, TransactionType, User


def make_client():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    def override_get_db():
        db = SessionLocal()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    return TestClient(app), SessionLocal


def seed(SessionLocal):
    with SessionLocal() as session:
        admin = User(username="admin", email="admin@example.com", is_admin=True)
        alice = User(username="alice", email="alice@example.com")
        bob = User(username="bobby", email="bob@example.com")
        session.add_all([admin, alice, bob])
        session.flush()
        account = Account(
            user_id=alice.id,
            name="Checking",
            type=AccountType.bank,
            balance_cents=10_000,
            opening_balance_cents=10_000,
        )
        groceries = Category(
            user_id=alice.id, name="Groceries", type=TransactionType.expense
        )
        session.add_all([account, groceries])
        session.commit()
        return {
            "admin": {"Authorization": f"Bearer {issue_token(admin.id)}"},
            "alice": {"Authorization": f"Bearer {issue_token(alice.id)}"},
            "bob": {"Authorization": f"Bearer {issue_token(bob.id)}"},
            "account_id": account.id,
            "category_id": groceries.id,
        }


def expense(ctx, amount="30.00", **extra):
    payload = {
        "amount": amount,
        "type": "expense",
        "description": "Groceries",
        "date": "2023-01-10",
        "categoryId": ctx["category_id"],
        "accountId": ctx["account_id"],
    }
    payload.update(extra)
    return payload


def test_requests_without_token_are_unauthorized() -> None:
    client, SessionLocal = make_client()
    seed(SessionLocal)

    resp = client.get("/transactions")
    assert resp.status_code == 401
    assert resp.json() == {"message": "Authentication required"}

    resp = client.get("/transactions", headers={"Authorization": "Bearer forged"})
    assert resp.status_code == 401


def test_transaction_lifecycle_over_http() -> None:
    client, SessionLocal = make_client()
    ctx = seed(SessionLocal)

    resp = client.post("/transactions", json=expense(ctx), headers=ctx["alice"])
    assert resp.status_code == 201
    txn = resp.json()["transaction"]
    assert txn["amount"] == "30.00"
    assert txn["accountId"] == ctx["account_id"]

    account = client.get(f"/accounts/{ctx['account_id']}", headers=ctx["alice"])
    assert account.json()["balance"] == "70.00"

    resp = client.patch(
        f"/transactions/{txn['id']}", json={"amount": "50.00"}, headers=ctx["alice"]
    )
    assert resp.status_code == 200
    assert resp.json()["transaction"]["amount"] == "50.00"

    resp = client.delete(f"/transactions/{txn['id']}", headers=ctx["alice"])
    assert resp.json() == {"message": "Transaction deleted successfully"}
    account = client.get(f"/accounts/{ctx['account_id']}", headers=ctx["alice"])
    assert account.json()["balance"] == "100.00"

    deleted = client.get("/transactions/deleted/all", headers=ctx["alice"])
    assert [item["id"] for item in deleted.json()] == [txn["id"]]

    resp = client.post(f"/transactions/{txn['id']}/restore", headers=ctx["alice"])
    body = resp.json()
    assert body["message"] == "Transaction restored successfully"
    assert body["transaction"]["isDeleted"] is False
    account = client.get(f"/accounts/{ctx['account_id']}", headers=ctx["alice"])
    assert account.json()["balance"] == "50.00"


def test_insufficient_funds_is_a_bad_request() -> None:
    client, SessionLocal = make_client()
    ctx = seed(SessionLocal)

    resp = client.post(
        "/transactions", json=expense(ctx, amount="150.00"), headers=ctx["alice"]
    )

    assert resp.status_code == 400
    assert resp.json()["message"] == "Insufficient funds in the selected account"


def test_invalid_payload_is_a_bad_request() -> None:
    client, SessionLocal = make_client()
    ctx = seed(SessionLocal)

    resp = client.post(
        "/transactions", json=expense(ctx, amount="-5"), headers=ctx["alice"]
    )
    assert resp.status_code == 400
    assert "message" in resp.json()

    resp = client.post(
        "/transactions", json=expense(ctx, balance="1"), headers=ctx["alice"]
    )
    assert resp.status_code == 400


def test_other_owners_records_are_not_found() -> None:
    client, SessionLocal = make_client()
    ctx = seed(SessionLocal)
    txn = client.post("/transactions", json=expense(ctx), headers=ctx["alice"]).json()

    resp = client.get(f"/transactions/{txn['transaction']['id']}", headers=ctx["bob"])
    assert resp.status_code == 404

    resp = client.delete(f"/accounts/{ctx['account_id']}", headers=ctx["bob"])
    assert resp.status_code == 404


def test_unrestricted_scope_requires_admin() -> None:
    client, SessionLocal = make_client()
    ctx = seed(SessionLocal)
    client.post("/transactions", json=expense(ctx), headers=ctx["alice"])

    resp = client.get("/transactions", params={"scope": "all"}, headers=ctx["alice"])
    assert resp.status_code == 403

    resp = client.get("/transactions", params={"scope": "all"}, headers=ctx["admin"])
    body = resp.json()
    assert body["totalDocuments"] == 1
    assert body["limit"] == 50

    resp = client.get("/transactions", headers=ctx["alice"])
    assert resp.json()["limit"] == 10

    assert client.get("/users", headers=ctx["alice"]).status_code == 403
    assert len(client.get("/users", headers=ctx["admin"]).json()) == 3


def test_reports_over_http() -> None:
    client, SessionLocal = make_client()
    ctx = seed(SessionLocal)
    client.post("/transactions", json=expense(ctx, "25.00"), headers=ctx["alice"])
    client.post("/transactions", json=expense(ctx, "15.00"), headers=ctx["alice"])

    resp = client.get("/reports/spending-by-category", headers=ctx["alice"])
    assert resp.status_code == 400

    resp = client.get(
        "/reports/spending-by-category",
        params={"startDate": "2023-01-01", "endDate": "2023-01-31"},
        headers=ctx["alice"],
    )
    body = resp.json()
    assert body["summary"] == {"totalSpending": "40.00", "categoriesCount": 1}
    assert body["data"][0]["categoryName"] == "Groceries"

    resp = client.get(
        "/reports/income-vs-expenses",
        params={"startDate": "2023-01-01", "endDate": "2023-01-31", "groupBy": "day"},
        headers=ctx["alice"],
    )
    assert resp.json()["data"][0]["period"] == "2023-01-10"
    assert resp.json()["data"][0]["incomeCount"] == 0


def test_balance_adjustment_and_reconciliation_over_http() -> None:
    client, SessionLocal = make_client()
    ctx = seed(SessionLocal)

    resp = client.patch(
        f"/accounts/{ctx['account_id']}/balance",
        json={"amount": "20.00", "operation": "add", "note": "Correction"},
        headers=ctx["alice"],
    )
    assert resp.json()["balance"] == "120.00"

    assert client.get("/admin/reconciliation", headers=ctx["alice"]).status_code == 403
    resp = client.get("/admin/reconciliation", headers=ctx["admin"])
    assert resp.status_code == 200
    assert resp.json() == []
