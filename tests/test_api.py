import time
import uuid
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient
from itsdangerous import TimestampSigner, URLSafeTimedSerializer
from sqlalchemy import create_engine

from config import Settings
from database import Base
from main import create_app, get_dashboard_service


def make_settings(tmp_path) -> Settings:
    path = tmp_path / "api.db"
    engine = create_engine(f"sqlite:///{path}")
    Base.metadata.create_all(engine)
    engine.dispose()
    return Settings(
        database_url=f"sqlite+aiosqlite:///{path}",
        token_secret="test-secret",
        access_token_ttl_secs=900,
        refresh_token_ttl_secs=3600,
        allowed_origins=["http://localhost:5173"],
        log_level="INFO",
        scheduler_enabled=False,
    )


@pytest.fixture()
def client(tmp_path):
    app = create_app(make_settings(tmp_path))
    with TestClient(app) as test_client:
        yield test_client


def register(client, email: str = "ana@example.com") -> dict:
    response = client.post(
        "/api/v1/auth/register",
        json={"email": email, "password": "SecurePass123!", "name": "Ana"},
    )
    assert response.status_code == 201
    return response.json()


def auth_headers(body: dict) -> dict[str, str]:
    return {"Authorization": f"Bearer {body['accessToken']}"}


def test_health(client) -> None:
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_dashboard_requires_token(client) -> None:
    response = client.get("/api/v1/dashboard")
    assert response.status_code == 401
    assert response.json() == {"error": {"message": "No token provided"}}

    response = client.get(
        "/api/v1/dashboard", headers={"Authorization": "Bearer not-a-token"}
    )
    assert response.status_code == 401
    assert response.json()["error"]["message"] == "Invalid or expired token"


def test_refresh_token_is_not_accepted_as_access_token(client) -> None:
    body = register(client)
    response = client.get(
        "/api/v1/dashboard",
        headers={"Authorization": f"Bearer {body['refreshToken']}"},
    )
    assert response.status_code == 401


def test_register_validation_error_shape(client) -> None:
    response = client.post(
        "/api/v1/auth/register",
        json={"email": "not-an-email", "password": "short", "name": "Ana"},
    )
    assert response.status_code == 400
    error = response.json()["error"]
    assert error["message"] == "Validation failed"
    assert isinstance(error["errors"], list) and error["errors"]


def test_auth_flow(client) -> None:
    body = register(client)
    assert body["user"]["email"] == "ana@example.com"

    duplicate = client.post(
        "/api/v1/auth/register",
        json={"email": "ana@example.com", "password": "SecurePass123!", "name": "Ana"},
    )
    assert duplicate.status_code == 409

    bad_login = client.post(
        "/api/v1/auth/login",
        json={"email": "ana@example.com", "password": "WrongPassword"},
    )
    assert bad_login.status_code == 401
    assert bad_login.json()["error"]["message"] == "Invalid credentials"

    login = client.post(
        "/api/v1/auth/login",
        json={"email": "ana@example.com", "password": "SecurePass123!"},
    )
    assert login.status_code == 200

    refreshed = client.post(
        "/api/v1/auth/refresh", json={"refreshToken": login.json()["refreshToken"]}
    )
    assert refreshed.status_code == 200
    assert set(refreshed.json()) == {"accessToken", "refreshToken"}

    reused = client.post(
        "/api/v1/auth/refresh", json={"refreshToken": login.json()["refreshToken"]}
    )
    assert reused.status_code == 401


def test_categories_and_transactions_crud(client) -> None:
    headers = auth_headers(register(client))

    created = client.post(
        "/api/v1/categories",
        json={"name": "Food", "color": "#FF5733", "type": "expense"},
        headers=headers,
    )
    assert created.status_code == 201
    category_id = created.json()["id"]

    bad_color = client.post(
        "/api/v1/categories",
        json={"name": "Misc", "color": "red", "type": "expense"},
        headers=headers,
    )
    assert bad_color.status_code == 400

    txn = client.post(
        "/api/v1/transactions",
        json={
            "amount": "12.3456",
            "description": "Groceries",
            "type": "expense",
            "categoryId": category_id,
            "date": "2025-01-15T10:00:00Z",
        },
        headers=headers,
    )
    assert txn.status_code == 201
    payload = txn.json()
    assert payload["amount"] == "12.3456"
    assert payload["category"]["name"] == "Food"
    assert payload["isRecurring"] is False

    mismatch = client.post(
        "/api/v1/transactions",
        json={
            "amount": "5",
            "description": "Refund",
            "type": "income",
            "categoryId": category_id,
            "date": "2025-01-15T10:00:00Z",
        },
        headers=headers,
    )
    assert mismatch.status_code == 400

    listing = client.get(
        "/api/v1/transactions",
        params={"search": "groc", "categoryId": category_id},
        headers=headers,
    )
    assert listing.status_code == 200
    assert listing.json()["total"] == 1
    assert listing.json()["totalPages"] == 1

    in_use = client.delete(f"/api/v1/categories/{category_id}", headers=headers)
    assert in_use.status_code == 409

    patched = client.patch(
        f"/api/v1/transactions/{payload['id']}",
        json={"description": "Weekly groceries"},
        headers=headers,
    )
    assert patched.status_code == 200
    assert patched.json()["description"] == "Weekly groceries"

    assert client.delete(
        f"/api/v1/transactions/{payload['id']}", headers=headers
    ).status_code == 204
    assert client.get(
        f"/api/v1/transactions/{payload['id']}", headers=headers
    ).status_code == 404
    assert client.delete(
        f"/api/v1/categories/{category_id}", headers=headers
    ).status_code == 204


def test_dashboard_snapshot_shape(client) -> None:
    headers = auth_headers(register(client))
    salary = client.post(
        "/api/v1/categories",
        json={"name": "Salary", "color": "#00AA00", "type": "income"},
        headers=headers,
    ).json()
    food = client.post(
        "/api/v1/categories",
        json={"name": "Food", "color": "#AA0000", "type": "expense"},
        headers=headers,
    ).json()
    now = datetime.now(timezone.utc).isoformat()
    for amount, kind, category in (("100", "income", salary), ("40.5", "expense", food)):
        response = client.post(
            "/api/v1/transactions",
            json={
                "amount": amount,
                "description": f"{kind} entry",
                "type": kind,
                "categoryId": category["id"],
                "date": now,
            },
            headers=headers,
        )
        assert response.status_code == 201

    response = client.get("/api/v1/dashboard", headers=headers)
    assert response.status_code == 200
    body = response.json()

    assert body["balance"] == {"total": "59.5000"}
    monthly = body["monthly"]
    assert monthly["income"] == "100.0000"
    assert monthly["expenses"] == "40.5000"
    assert monthly["savings"] == "59.5000"
    assert monthly["incomeChange"] == 100.0
    assert monthly["expensesChange"] == 100.0

    chart = body["chart"]["last6Months"]
    assert len(chart) == 6
    assert chart[-1]["month"] == datetime.now(timezone.utc).strftime("%Y-%m")
    assert chart[-1]["income"] == "100.0000"
    assert chart[0] == {"month": chart[0]["month"], "income": "0", "expenses": "0"}

    breakdown = body["breakdown"]
    assert breakdown["incomeByCategory"][0]["categoryName"] == "Salary"
    assert breakdown["incomeByCategory"][0]["percentage"] == 100.0
    assert breakdown["expensesByCategory"][0]["categoryColor"] == "#AA0000"

    recent = body["recentTransactions"]
    assert len(recent) == 2
    assert {item["category"]["name"] for item in recent} == {"Salary", "Food"}


def test_dashboard_only_sees_own_data(client) -> None:
    first = auth_headers(register(client))
    category = client.post(
        "/api/v1/categories",
        json={"name": "Salary", "color": "#00AA00", "type": "income"},
        headers=first,
    ).json()
    client.post(
        "/api/v1/transactions",
        json={
            "amount": "500",
            "description": "Pay",
            "type": "income",
            "categoryId": category["id"],
            "date": datetime.now(timezone.utc).isoformat(),
        },
        headers=first,
    )

    second = auth_headers(register(client, "bo@example.com"))
    body = client.get("/api/v1/dashboard", headers=second).json()
    assert body["balance"]["total"] == "0.0000"
    assert body["recentTransactions"] == []
    assert body["breakdown"] == {"incomeByCategory": [], "expensesByCategory": []}

    foreign = client.get(f"/api/v1/categories/{category['id']}", headers=second)
    assert foreign.status_code == 404


class ExplodingDashboard:
    async def get_dashboard(self, user_id: uuid.UUID):
        raise RuntimeError("database is locked")


def test_unexpected_errors_are_masked(tmp_path) -> None:
    app = create_app(make_settings(tmp_path))
    app.dependency_overrides[get_dashboard_service] = lambda: ExplodingDashboard()
    with TestClient(app, raise_server_exceptions=False) as client:
        headers = auth_headers(register(client))
        response = client.get("/api/v1/dashboard", headers=headers)
    assert response.status_code == 500
    assert response.json() == {"error": {"message": "Internal server error"}}


class BackdatedSigner(TimestampSigner):
    def get_timestamp(self) -> int:
        return int(time.time()) - 3600


def test_expired_access_token_is_rejected(client) -> None:
    body = register(client)
    stale = URLSafeTimedSerializer(
        "test-secret", salt="access-token", signer=BackdatedSigner
    ).dumps({"u": body["user"]["id"], "e": body["user"]["email"], "n": "0"})

    response = client.get(
        "/api/v1/dashboard", headers={"Authorization": f"Bearer {stale}"}
    )
    assert response.status_code == 401
    assert response.json() == {"error": {"message": "Invalid or expired token"}}


def test_amount_beyond_storable_range_is_a_validation_error(client) -> None:
    headers = auth_headers(register(client))
    category = client.post(
        "/api/v1/categories",
        json={"name": "Salary", "color": "#00AA00", "type": "income"},
        headers=headers,
    ).json()
    payload = {
        "description": "Windfall",
        "type": "income",
        "categoryId": category["id"],
        "date": "2025-01-15T10:00:00Z",
    }

    too_big = client.post(
        "/api/v1/transactions",
        json={**payload, "amount": "999999999999999.9999"},
        headers=headers,
    )
    assert too_big.status_code == 400
    assert too_big.json()["error"]["message"] == "Validation failed"

    for _ in range(2):
        largest = client.post(
            "/api/v1/transactions",
            json={**payload, "amount": "922337203685477.5807"},
            headers=headers,
        )
        assert largest.status_code == 201
        assert largest.json()["amount"] == "922337203685477.5807"

    dashboard = client.get("/api/v1/dashboard", headers=headers)
    assert dashboard.status_code == 200
    assert dashboard.json()["balance"]["total"] == "1844674407370955.1614"
