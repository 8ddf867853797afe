from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from sales_ledger.main import app
from sales_ledger.models_sqlalchemy import get_db
from sales_ledger.models_sqlalchemy.models import Sale
from sales_ledger.routers.sales import get_credential_provider, get_ledger
from sales_ledger.services.auth import create_access_token
from sales_ledger.services.credential_provider import CredentialProvider
from sales_ledger.services.ledger_store import LedgerStore


@pytest.fixture
def client(session_factory):
    def _get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    ledger = LedgerStore(session_factory)
    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_ledger] = lambda: ledger
    app.dependency_overrides[get_credential_provider] = lambda: CredentialProvider(session_factory)
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers():
    return {"Authorization": f"Bearer {create_access_token({'sub': 'user-1'})}"}


def test_requests_without_token_are_rejected(client):
    assert client.get("/sales").status_code in (401, 403)


def test_invalid_token_is_unauthorized(client):
    response = client.get("/sales", headers={"Authorization": "Bearer not-a-jwt"})

    assert response.status_code == 401


def test_sales_listing(client, auth_headers, session_factory):
    db = session_factory()
    db.add(
        Sale(
            user_id="user-1",
            platform="swell",
            order_id="1001",
            item_id="1001-A",
            item_title="Mug",
            quantity=2,
            price=7.5,
            currency="USD",
            buyer_name="Ann",
            buyer_email="ann@example.com",
            sale_date=datetime.now(timezone.utc),
            status="complete",
            normalized_status="completed",
        )
    )
    db.commit()
    db.close()

    response = client.get("/sales", headers=auth_headers)

    assert response.status_code == 200
    body = response.json()
    assert body["pagination"]["total"] == 1
    assert body["sales"][0]["price"] == 7.5
    assert body["sales"][0]["normalized_status"] == "completed"

    stats = client.get("/sales/stats", headers=auth_headers).json()
    assert stats["total_revenue"] == 15.0


def test_sync_without_connections(client, auth_headers):
    response = client.post("/sales/sync", json={"days_back": 7}, headers=auth_headers)

    assert response.status_code == 200
    assert response.json()["message"] == "No active platform connections found"

    history = client.get("/sales/sync-history", headers=auth_headers).json()
    assert history["runs"][0]["platform"] == "all"


def test_sync_rejects_out_of_range_window(client, auth_headers):
    response = client.post("/sales/sync", json={"days_back": 0}, headers=auth_headers)

    assert response.status_code == 422


def test_analytics_accepts_all_time(client, auth_headers):
    assert client.get("/sales/analytics?days_back=all", headers=auth_headers).status_code == 200
    assert client.get("/sales/customers?days_back=abc", headers=auth_headers).status_code == 400


def test_connections_and_disconnect(client, auth_headers, add_credential):
    add_credential(platform="etsy")

    connections = client.get("/connections", headers=auth_headers).json()["connections"]
    by_platform = {c["platform"]: c for c in connections}
    assert set(by_platform) == {"swell", "ebay", "etsy", "amazon"}
    assert by_platform["etsy"]["connected"] is True
    assert by_platform["ebay"]["connected"] is False

    assert client.post("/connections/etsy/disconnect", headers=auth_headers).status_code == 200
    assert client.post("/connections/etsy/disconnect", headers=auth_headers).status_code == 404
    assert client.post("/connections/myspace/disconnect", headers=auth_headers).status_code == 422


def test_responses_carry_request_id(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert len(response.headers["X-Request-ID"]) == 8
