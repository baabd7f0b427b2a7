"""
Tests for the FastAPI application wiring.

HTTP-level checks through TestClient. The lifespan is not run; the grant
engine is injected through a dependency override.
"""

from collections.abc import Iterator

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from benefit_grant.api.dependencies import get_grant_engine
from benefit_grant.config import settings
from benefit_grant.main import build_grant_engine
from benefit_grant.services.grant_engine import GrantEngine
from benefit_grant.services.ledger import SqlEntitlementLedger


@pytest.fixture
def app() -> FastAPI:
    """FastAPI app for testing."""
    from benefit_grant.main import app as main_app

    return main_app


@pytest.fixture
def client(app: FastAPI, ledger) -> Iterator[TestClient]:
    """Test client whose routes use a fresh engine over the in-memory ledger."""
    grant_engine = GrantEngine(ledger=ledger, lock_wait_timeout=1.0)
    app.dependency_overrides[get_grant_engine] = lambda: grant_engine
    yield TestClient(app)
    app.dependency_overrides.clear()


PAYLOAD = {
    "payment_ref": "pay-1",
    "account_id": "acct-1",
    "amount": "20.00",
    "status": "approved",
}


class TestEndpoints:
    """Tests for the HTTP surface."""

    def test_confirmation(self, client: TestClient, ledger) -> None:
        response = client.post("/v1/payments/confirmations", json=PAYLOAD)

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "success"
        assert body["credits_granted"] == 125
        assert ledger.accounts["acct-1"].credit_balance == 125

    def test_notification_accepted(self, client: TestClient, ledger) -> None:
        response = client.post("/v1/payments/notifications", json=PAYLOAD)

        assert response.status_code == 202
        assert response.json() == {"status": "accepted", "payment_ref": "pay-1"}
        # TestClient runs background tasks before returning
        assert ledger.accounts["acct-1"].credit_balance == 125

    def test_redelivered_notifications_grant_once(self, client: TestClient, ledger) -> None:
        for _ in range(3):
            client.post("/v1/payments/notifications", json=PAYLOAD)

        response = client.post("/v1/payments/confirmations", json=PAYLOAD)

        assert response.json()["status"] == "already_processed"
        assert ledger.accounts["acct-1"].credit_balance == 125

    def test_ignored_confirmation(self, client: TestClient) -> None:
        response = client.post(
            "/v1/payments/confirmations", json={**PAYLOAD, "status": "pending"}
        )

        assert response.status_code == 200
        assert response.json() == {"status": "ignored", "payment_ref": "pay-1"}

    def test_validation_error(self, client: TestClient) -> None:
        payload = {k: v for k, v in PAYLOAD.items() if k != "account_id"}

        response = client.post("/v1/payments/confirmations", json=payload)

        assert response.status_code == 422
        assert "detail" in response.json()

    def test_negative_amount_rejected(self, client: TestClient) -> None:
        response = client.post(
            "/v1/payments/confirmations", json={**PAYLOAD, "amount": "-5"}
        )

        assert response.status_code == 422

    def test_engine_not_started(self, app: FastAPI) -> None:
        app.state.grant_engine = None

        response = TestClient(app).post("/v1/payments/confirmations", json=PAYLOAD)

        assert response.status_code == 503

    def test_metrics_endpoint(self, client: TestClient) -> None:
        client.post("/v1/payments/confirmations", json=PAYLOAD)

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "benefit_grant_grants_total" in response.text


class TestBuildGrantEngine:
    """Tests for engine wiring from settings."""

    def test_engine_built_from_settings(self) -> None:
        engine = build_grant_engine()

        assert isinstance(engine.ledger, SqlEntitlementLedger)
        assert engine.lock_wait_timeout == settings.lock_wait_timeout_seconds
        assert engine.cache.ttl_seconds == settings.idempotency_cache_ttl_seconds
        assert engine.courtesy_credits == settings.courtesy_credits
        assert engine.receipt_hook is None
