from datetime import date

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import main
from database import Base
from errors import TransientError
from models import Category


@pytest.fixture()
def client():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    def override_get_db():
        db = factory()
        try:
            yield db
        finally:
            db.close()

    main.app.dependency_overrides[main.get_db] = override_get_db
    main.app.dependency_overrides[main.get_session_factory] = lambda: factory
    with factory() as session:
        session.add(Category(user_id=1, name="Food"))
        session.commit()
    try:
        yield TestClient(main.app)
    finally:
        main.app.dependency_overrides.clear()


def _account(client: TestClient, opening: int = 10_000) -> int:
    resp = client.post(
        "/api/accounts", json={"name": "Checking", "opening_balance_cents": opening}
    )
    assert resp.status_code == 201
    return resp.json()["id"]


def test_transaction_round_updates_balance(client: TestClient) -> None:
    account_id = _account(client)

    resp = client.post(
        "/api/transactions",
        json={
            "account_id": account_id,
            "date": "2024-01-10",
            "kind": "expense",
            "amount_cents": 2_500,
        },
    )
    assert resp.status_code == 201
    txn = resp.json()
    assert txn["status"] == "completed"
    assert client.get(f"/api/accounts/{account_id}").json()["balance_cents"] == 7_500

    resp = client.patch(f"/api/transactions/{txn['id']}", json={"amount_cents": 1_000})
    assert resp.status_code == 200
    assert client.get(f"/api/accounts/{account_id}").json()["balance_cents"] == 9_000

    assert client.delete(f"/api/transactions/{txn['id']}").status_code == 204
    assert client.get(f"/api/transactions/{txn['id']}").status_code == 404
    assert client.get(f"/api/accounts/{account_id}").json()["balance_cents"] == 10_000

    resp = client.post(f"/api/accounts/{account_id}/recalculate")
    assert resp.json() == {"account_id": account_id, "balance_cents": 10_000}


def test_error_mapping(client: TestClient, monkeypatch) -> None:
    account_id = _account(client)

    resp = client.post(
        "/api/transactions",
        json={
            "account_id": account_id + 50,
            "date": "2024-01-10",
            "kind": "expense",
            "amount_cents": 100,
        },
    )
    assert resp.status_code == 404

    resp = client.post(
        "/api/transactions",
        json={
            "account_id": account_id,
            "to_account_id": account_id,
            "date": "2024-01-10",
            "kind": "transfer",
            "amount_cents": 100,
        },
    )
    assert resp.status_code == 400

    resp = client.post(
        "/api/transactions",
        json={
            "account_id": account_id,
            "date": "2024-01-10",
            "kind": "expense",
            "amount_cents": 0,
        },
    )
    assert resp.status_code == 422

    def busy(self, data, **kwargs):
        raise TransientError("database is locked")

    monkeypatch.setattr(main.TransactionService, "create", busy)
    resp = client.post(
        "/api/transactions",
        json={
            "account_id": account_id,
            "date": "2024-01-10",
            "kind": "expense",
            "amount_cents": 100,
        },
    )
    assert resp.status_code == 503
    assert resp.headers["Retry-After"] == "1"


def test_budget_usage_refreshes_after_write(client: TestClient) -> None:
    account_id = _account(client, opening=100_000)
    resp = client.post(
        "/api/budgets",
        json={"year": 2024, "month": 1, "category_id": 1, "amount_cents": 20_000},
    )
    assert resp.status_code == 201
    budget = resp.json()
    assert budget["used_cents"] == 0
    assert budget["usage_stale"] is False

    for amount in (5_000, 5_000):
        client.post(
            "/api/transactions",
            json={
                "account_id": account_id,
                "date": "2024-01-15",
                "kind": "expense",
                "amount_cents": amount,
                "category_id": 1,
                "budget_id": budget["id"],
            },
        )

    usage = client.get(f"/api/budgets/{budget['id']}/usage").json()
    assert usage == {"used_cents": 10_000, "remaining_cents": 10_000, "percentage": 50}

    listed = client.get("/api/budgets", params={"month": "2024-01"}).json()
    assert listed[0]["used_cents"] == 10_000
    assert listed[0]["usage_stale"] is False

    summary = client.get("/api/budgets/summary", params={"month": "2024-01"}).json()
    assert summary["used_cents"] == 10_000
    assert summary["total_budget_cents"] == 20_000

    assert client.get("/api/budgets/summary", params={"month": "2024-13"}).status_code == 400
    assert client.get("/api/budgets/999/usage").status_code == 404


def test_recurring_endpoints(client: TestClient) -> None:
    account_id = _account(client, opening=100_000)
    resp = client.post(
        "/api/recurring",
        json={
            "name": "Gym",
            "amount_cents": 3_000,
            "frequency": "monthly",
            "start_date": "2024-01-31",
            "account_id": account_id,
        },
    )
    assert resp.status_code == 201
    rule_id = resp.json()["id"]

    resp = client.get(
        f"/api/recurring/{rule_id}/occurrences",
        params={"start": "2024-01-01", "end": "2024-03-31"},
    )
    assert resp.status_code == 200
    assert [o["date"] for o in resp.json()] == ["2024-01-31", "2024-02-29", "2024-03-31"]
    assert {o["status"] for o in resp.json()} == {"pending"}

    resp = client.get(
        f"/api/recurring/{rule_id}/occurrences",
        params={"start": "2024-03-31", "end": "2024-01-01"},
    )
    assert resp.status_code == 400

    commitment = client.get(f"/api/recurring/{rule_id}/commitment").json()
    assert commitment["monthly_commitment_cents"] == 3_000

    stats = client.get("/api/recurring/stats").json()
    assert stats["total_monthly_expenses"] == 3_000

    resp = client.post("/api/recurring/materialize")
    assert resp.status_code == 200
    created = resp.json()["created"]
    # The rule started in 2024, so everything up to today is due.
    assert created >= 3
    assert client.post("/api/recurring/materialize").json()["created"] == 0

    rule = client.get(f"/api/recurring/{rule_id}").json()
    assert date.fromisoformat(rule["materialized_through"]) >= date(2024, 3, 31)
