"""
============================================================================
ChangeWLD Exchange
Integration Test: Rate, Identity and System Endpoints
============================================================================

Reliability Level: L4 Standard
Input Constraints: FastAPI TestClient, httpx.MockTransport upstreams
Side Effects: None

- /rate with live legs, cold-start fallback and cache reuse
- /verify-identity success, incomplete proof, rejection, misconfiguration
- wallet link and balance
- /health, /metrics and unknown routes answer JSON

Python 3.8 Compatible
============================================================================
"""

import json
import os
import sys

import httpx
import pytest
from fastapi.testclient import TestClient

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from app.api.dependencies import build_services
from app.main import create_app
from services.exchange_config import ExchangeConfig

NULLIFIER = "0x" + "4" * 64
WALLET = "0x" + "d" * 40

PROOF_PAYLOAD = {
    "status": "success",
    "proof": "0x" + "3" * 512,
    "merkle_root": "0x" + "2" * 64,
    "nullifier_hash": NULLIFIER,
    "verification_level": "orb",
    "version": 1,
}


# ============================================================================
# Fake Upstreams
# ============================================================================

class FeedUpstream:
    """Binance + ER-API fake that can be switched off."""

    def __init__(self, healthy=True):
        self.healthy = healthy
        self.calls = 0

    def __call__(self, request):
        self.calls += 1
        if not self.healthy:
            return httpx.Response(503, text="unavailable")
        if request.url.host == "api.binance.com":
            return httpx.Response(200, json={"price": "2.0"})
        return httpx.Response(200, json={"rates": {"COP": 4000}})


def verifier_handler(request):
    body = json.loads(request.content)
    if body["proof"] == PROOF_PAYLOAD["proof"]:
        return httpx.Response(200, json={"success": True, "nullifier_hash": body["nullifier_hash"]})
    return httpx.Response(400, json={"code": "invalid_proof", "detail": "Proof is invalid"})


def chain_handler(request):
    body = json.loads(request.content)
    return httpx.Response(
        200,
        json={"jsonrpc": "2.0", "id": body["id"], "result": hex(3_141_590_000_000_000_000)},
    )


def create_test_app(feed=None, **overrides):
    settings = dict(
        session_secret="s" * 64,
        database_url="memory",
        app_id="app_test_123",
    )
    settings.update(overrides)
    services = build_services(
        ExchangeConfig(**settings),
        feed_transport=httpx.MockTransport(feed or FeedUpstream()),
        verifier_transport=httpx.MockTransport(verifier_handler),
        chain_transport=httpx.MockTransport(chain_handler),
    )
    return create_app(services=services, start_workers=False)


@pytest.fixture
def client():
    with TestClient(create_test_app()) as test_client:
        yield test_client


# ============================================================================
# Rate
# ============================================================================

class TestRate:

    def test_rate_from_live_legs(self, client):
        response = client.get("/rate")

        assert response.status_code == 200
        rate = response.json()["rate"]
        assert rate["wld_cop_gross"] == "8000.00"
        assert rate["wld_cop_user"] == "6000.00"
        assert rate["wld_from_fallback"] is False
        assert rate["usd_cop_from_fallback"] is False

    def test_second_read_served_from_cache(self):
        feed = FeedUpstream()
        with TestClient(create_test_app(feed=feed)) as client:
            client.get("/rate")
            calls = feed.calls
            second = client.get("/rate").json()["rate"]

        assert feed.calls == calls
        assert second["from_cache"] is True

    def test_cold_start_uses_fallbacks(self):
        with TestClient(create_test_app(feed=FeedUpstream(healthy=False))) as client:
            response = client.get("/rate")

        assert response.status_code == 200
        rate = response.json()["rate"]
        assert rate["wld_usd"] == "0.699"
        assert rate["usd_cop"] == "3719"
        assert rate["wld_from_fallback"] is True
        assert rate["usd_cop_from_fallback"] is True

    def test_no_data_at_all_is_500(self):
        app = create_test_app(
            feed=FeedUpstream(healthy=False),
            fallback_source_usd=None,
            fallback_target_per_usd=None,
        )
        with TestClient(app) as client:
            response = client.get("/rate")

        assert response.status_code == 500
        assert response.json()["ok"] is False
        assert response.json()["error"] == "UpstreamUnavailable"


# ============================================================================
# Identity
# ============================================================================

class TestVerifyIdentity:

    def test_valid_proof_verified(self, client):
        response = client.post("/verify-identity", json={"payload": PROOF_PAYLOAD})

        assert response.status_code == 200
        body = response.json()
        assert body["verified"] is True
        assert body["identity_handle"] == NULLIFIER

    def test_incomplete_proof_is_400(self, client):
        payload = dict(PROOF_PAYLOAD, status="error")
        response = client.post("/verify-identity", json={"payload": payload})
        assert response.status_code == 400
        assert response.json()["error"] == "InvalidProof"

    def test_signal_without_hash_is_400(self, client):
        response = client.post(
            "/verify-identity", json={"payload": PROOF_PAYLOAD, "signal": "order-1"}
        )
        assert response.status_code == 400

    def test_rejected_proof_is_400(self, client):
        payload = dict(PROOF_PAYLOAD, proof="0x" + "9" * 512)
        response = client.post("/verify-identity", json={"payload": payload})
        assert response.status_code == 400
        assert response.json()["error"] == "NotVerified"
        assert response.json()["detail"]["code"] == "invalid_proof"

    def test_missing_app_id_is_500(self):
        with TestClient(create_test_app(app_id="")) as client:
            response = client.post("/verify-identity", json={"payload": PROOF_PAYLOAD})

        assert response.status_code == 500
        assert response.json()["error"] == "VerifierMisconfigured"

    def test_recorded_identity_unlocks_orders(self):
        app = create_test_app(require_recorded_identity=True)
        order = {
            "identity_handle": NULLIFIER,
            "verified": True,
            "bank_destination": "Nequi",
            "account_holder": "Ana Gomez",
            "account_number": "3001234567",
            "amount_source": "5",
            "amount_target": "10000",
        }
        with TestClient(app) as client:
            assert client.post("/orders", json=order).status_code == 400
            client.post("/verify-identity", json={"payload": PROOF_PAYLOAD})
            assert client.post("/orders", json=order).status_code == 200


class TestWallet:

    def test_link_then_balance(self, client):
        linked = client.post(
            "/identity/link-wallet",
            json={"identity_handle": NULLIFIER, "wallet_address": WALLET},
        )
        assert linked.status_code == 200

        response = client.get(f"/identity/{NULLIFIER}/balance")

        assert response.status_code == 200
        assert response.json()["balance_wld"] == "3.1415"

    def test_balance_without_wallet_is_404(self, client):
        response = client.get("/identity/0xnobody/balance")
        assert response.status_code == 404
        assert response.json()["error"] == "WalletNotLinked"

    def test_bad_wallet_address_is_400(self, client):
        response = client.post(
            "/identity/link-wallet",
            json={"identity_handle": NULLIFIER, "wallet_address": "0x123"},
        )
        assert response.status_code == 400


# ============================================================================
# System
# ============================================================================

class TestSystem:

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["database"] == "memory"

    def test_health_with_sqlite(self):
        with TestClient(create_test_app(database_url="sqlite:///:memory:")) as client:
            body = client.get("/health").json()
        assert body["database"] == "connected"

    def test_metrics_exposed(self, client):
        client.get("/rate")
        response = client.get("/metrics")
        assert response.status_code == 200
        assert "rate_refresh_total" in response.text

    def test_unknown_route_is_json_404(self, client):
        response = client.get("/nowhere")
        assert response.status_code == 404
        assert response.json()["ok"] is False
