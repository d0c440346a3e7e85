"""
Test the subscription detection HTTP endpoints.
"""
import sys
import os
from datetime import date, timedelta
from decimal import Decimal
from unittest.mock import patch

import pytest
from dateutil.relativedelta import relativedelta
from fastapi.testclient import TestClient
from sqlalchemy.exc import SQLAlchemyError

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from subradar.database import get_db
from subradar.main import app
from subradar.models import Subscription
from subradar.services.merchant_catalog import KnownMerchantCatalog


@pytest.fixture
def client(db_session):
    def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def starbucks_history(add_transaction):
    booked_at = date.today().replace(day=10) - relativedelta(months=4)
    txns = []
    for amount, gap in [("-5.45", 0), ("-5.50", 30), ("-5.40", 31)]:
        booked_at = booked_at + timedelta(days=gap)
        txns.append(add_transaction("SQ *STARBUCKS STORE 12345", amount, booked_at))
    return txns


def test_detect_endpoint(client, db_session, user, starbucks_history):
    response = client.post(f"/api/users/{user.id}/subscriptions/detect")

    assert response.status_code == 200
    body = response.json()
    assert body["detected_count"] == 1
    assert body["created_count"] == 1
    assert body["linked_count"] == 3
    assert Decimal(body["total_monthly_spend"]) == Decimal("5.45")

    detected = body["subscriptions"][0]
    assert detected["name"] == "starbucks"
    assert detected["interval"] == "monthly"
    assert Decimal(detected["amount"]) == Decimal("5.45")
    assert detected["was_created"] is True
    assert detected["is_auto_detected"] is True
    assert detected["id"] == str(db_session.query(Subscription).one().id)
    print("✓ POST /detect")


def test_dry_run_endpoint(client, db_session, user, starbucks_history):
    response = client.post(f"/api/users/{user.id}/subscriptions/detect/dry-run", params={"months_back": 12})

    assert response.status_code == 200
    body = response.json()
    assert body["months_back"] == 12
    assert body["country_code"] == "US"
    assert [p["merchant_key"] for p in body["patterns"]] == ["starbucks"]
    assert body["patterns"][0]["transaction_count"] == 3
    assert body["trace"]["total_transactions"] == 3
    assert db_session.query(Subscription).count() == 0
    print("✓ POST /detect/dry-run")


def test_dry_run_reports_rejections(client, user, add_transaction):
    add_transaction("One Time Purchase", "-99.00", date.today() - timedelta(days=20))

    response = client.post(f"/api/users/{user.id}/subscriptions/detect/dry-run")

    assert response.status_code == 200
    rejected = response.json()["trace"]["rejected"]
    assert rejected == [
        {
            "merchant": "one time purchase",
            "reason": "insufficient_occurrences",
            "detail": "1 transaction(s), need 2",
        }
    ]
    print("✓ Rejection reasons exposed")


def test_months_back_out_of_range(client, user):
    assert client.post(f"/api/users/{user.id}/subscriptions/detect", params={"months_back": 0}).status_code == 422
    assert client.post(f"/api/users/{user.id}/subscriptions/detect", params={"months_back": 61}).status_code == 422
    print("✓ months_back validated")


def test_unknown_user(client, db_session):
    response = client.post("/api/users/nobody/subscriptions/detect")

    assert response.status_code == 404
    assert response.json()["detail"] == "User not found"
    print("✓ Unknown user rejected")


def test_catalog_failure_returns_503(client, user, starbucks_history):
    with patch.object(KnownMerchantCatalog, "list_active", side_effect=SQLAlchemyError("connection refused")):
        response = client.post(f"/api/users/{user.id}/subscriptions/detect")

    assert response.status_code == 503
    body = response.json()
    assert body["error_code"] == "CATALOG_UNAVAILABLE"
    assert "connection refused" not in body["message"]
    print("✓ Catalog failure mapped to 503")


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}
    print("✓ Health endpoint")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
