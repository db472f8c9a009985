from datetime import date
from decimal import Decimal
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import main
from database import Base
from models import Expense, ExpenseStatus, RecurringFrequency


@pytest.fixture()
def db_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture()
def client(db_factory):
    def override_get_db():
        db = db_factory()
        try:
            yield db
        finally:
            db.close()

    main.app.dependency_overrides[main.get_db] = override_get_db
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


def test_budget_check_endpoint(client):
    response = client.post(
        "/api/accounts/1/budgets",
        json={
            "budget_type": "monthly",
            "category": "Food",
            "amount": "1000",
            "month": 4,
            "year": 2024,
        },
    )
    assert response.status_code == 200
    response = client.post(
        "/api/accounts/1/expenses",
        json={
            "category": "Food",
            "amount": "950",
            "date": "2024-04-10",
            "paid_by_id": 10,
            "created_by_id": 10,
            "status": "approved",
        },
    )
    assert response.status_code == 200

    response = client.post(
        "/api/budget-check",
        json={
            "account_id": 1,
            "category": "Food",
            "amount": "60",
            "expense_date": "2024-04-20",
        },
    )

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "exceeded"
    assert Decimal(body["budget"]) == Decimal("1000")
    assert Decimal(body["spent"]) == Decimal("950")
    assert Decimal(body["new_spent"]) == Decimal("1010")


def test_budget_check_rejects_bad_payloads(client):
    negative = client.post(
        "/api/budget-check",
        json={"account_id": 1, "category": "Food", "amount": "-5"},
    )
    unknown = client.post(
        "/api/budget-check",
        json={"account_id": 1, "category": "Food", "amount": "5", "extra": 1},
    )
    assert negative.status_code == 422
    assert unknown.status_code == 422


def test_generate_endpoint_is_idempotent(client, db_factory):
    with db_factory() as db:
        db.add(
            Expense(
                account_id=1,
                description="Rent",
                category="Housing",
                amount=Decimal("4500"),
                date=date(2024, 1, 1),
                status=ExpenseStatus.approved,
                paid_by_id=10,
                created_by_id=11,
                is_recurring=True,
                frequency=RecurringFrequency.monthly,
            )
        )
        db.commit()

    first = client.post("/api/recurring/generate", json={"month": 3, "year": 2024})
    second = client.post("/api/recurring/generate", json={"month": 3, "year": 2024})

    assert first.status_code == 200
    assert first.json() == {"month": 3, "year": 2024, "generated": 1, "skipped": 0, "failed": 0}
    assert second.json()["skipped"] == 1
    assert second.json()["generated"] == 0


def test_generate_endpoint_requires_month_and_year_together(client):
    response = client.post("/api/recurring/generate", json={"month": 3})
    assert response.status_code == 422


def test_generate_endpoint_checks_cron_secret(client, monkeypatch):
    monkeypatch.setattr(
        main, "get_settings", lambda: SimpleNamespace(cron_secret="s3cret")
    )

    denied = client.post("/api/recurring/generate", json={"month": 3, "year": 2024})
    wrong = client.post(
        "/api/recurring/generate",
        json={"month": 3, "year": 2024},
        headers={"X-Cron-Secret": "nope"},
    )
    allowed = client.post(
        "/api/recurring/generate",
        json={"month": 3, "year": 2024},
        headers={"X-Cron-Secret": "s3cret"},
    )

    assert denied.status_code == 403
    assert wrong.status_code == 403
    assert allowed.status_code == 200


def test_expense_workflow_routes(client):
    created = client.post(
        "/api/accounts/1/expenses",
        json={
            "category": "Food",
            "amount": "20",
            "date": "2024-04-10",
            "paid_by_id": 11,
            "created_by_id": 11,
        },
    ).json()
    assert created["status"] == "pending"

    paid_too_early = client.post(f"/api/expenses/{created['id']}/pay", json={"user_id": 10})
    approved = client.post(f"/api/expenses/{created['id']}/approve", json={"user_id": 10})
    missing = client.post("/api/expenses/999/approve", json={"user_id": 10})

    assert paid_too_early.status_code == 400
    assert approved.json()["status"] == "approved"
    assert missing.status_code == 404


def test_overview_and_budget_routes(client):
    saved = client.post(
        "/api/accounts/1/budgets",
        json={
            "budget_type": "recurring",
            "categories": ["Food", "Groceries"],
            "amount": "500",
            "start_date": "2024-01-01",
        },
    ).json()

    (group,) = client.get("/api/accounts/1/budget-overview?month=4&year=2024").json()
    assert group["label"] == "Food, Groceries"
    assert group["categories"] == ["Food", "Groceries"]
    assert Decimal(group["allotted"]) == Decimal("500")
    assert Decimal(group["spent"]) == Decimal("0")
    assert group["status"] == "ok"
    assert len(client.get("/api/accounts/1/budgets?month=4&year=2024").json()) == 1
    assert client.get("/api/accounts/1/budgets?month=4").status_code == 400

    assert client.delete(f"/api/accounts/1/budgets/{saved['id']}").status_code == 204
    assert client.delete(f"/api/accounts/1/budgets/{saved['id']}").status_code == 404


def test_recurring_template_routes(client):
    created = client.post(
        "/api/accounts/1/recurring",
        json={
            "description": "Internet",
            "category": "Utilities",
            "amount": "99.90",
            "date": "2024-02-01",
            "paid_by_id": 10,
            "created_by_id": 10,
        },
    )
    assert created.status_code == 200
    template_id = created.json()["id"]
    assert [t["id"] for t in client.get("/api/accounts/1/recurring").json()] == [template_id]

    assert client.delete(f"/api/accounts/2/recurring/{template_id}").status_code == 404
    assert client.delete(f"/api/accounts/1/recurring/{template_id}").status_code == 204
    assert client.get("/api/accounts/1/recurring").json() == []


def test_members_route(client):
    first = client.post("/api/accounts/1/members", json={"user_id": 10}).json()
    again = client.post("/api/accounts/1/members", json={"user_id": 10}).json()
    assert first == {"added": True, "members": [10]}
    assert again == {"added": False, "members": [10]}


def test_overview_requires_month_and_year_together(client):
    assert client.get("/api/accounts/1/budget-overview?month=4").status_code == 400
    assert client.get("/api/accounts/1/budget-overview?year=2024").status_code == 400
    assert client.get("/api/accounts/1/budget-overview").status_code == 200


def test_startup_warns_when_generation_is_unprotected(monkeypatch, caplog):
    monkeypatch.setattr(main, "get_settings", lambda: SimpleNamespace(cron_secret=None))
    with caplog.at_level("WARNING", logger="main"):
        assert main.warn_if_generation_unprotected()
    assert "cron_secret_missing" in caplog.text

    monkeypatch.setattr(main, "get_settings", lambda: SimpleNamespace(cron_secret="s3cret"))
    assert not main.warn_if_generation_unprotected()
