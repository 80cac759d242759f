# tests/test_create_payment.py
"""
Tests for /create-payment: auth, ownership, provider calls and the FedaPay connector.
"""
import asyncio
import json

import httpx
import pytest
from fastapi.testclient import TestClient

from conftest import make_token, seed_request
from portal.app import app
from portal import app as app_module
from portal import db as dbmod
import portal.connectors.fedapay_connector as fedapay
from portal.connectors.fedapay_connector import FedaPayProvider, MockPaymentProvider
from portal.errors import ConfigurationError, UpstreamFailure
import portal.processors.payment_initiation as initiation

PAYLOAD = {
    "amount": 150000,
    "description": "Création SARL",
    "requestId": "C1",
    "requestType": "company",
    "customerEmail": "client@example.com",
    "customerName": "Awa Marie Kone",
    "customerPhone": "+2250101010101",
}


class FailingProvider(MockPaymentProvider):
    async def create_checkout_token(self, transaction_id):
        raise UpstreamFailure("Payment provider rejected the request")


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def provider(monkeypatch):
    p = MockPaymentProvider()
    monkeypatch.setattr(app_module, "provider", p)
    return p


@pytest.fixture(autouse=True)
def setup(test_db, jwt_secret, monkeypatch):
    monkeypatch.setattr(initiation, "PUBLIC_BASE_URL", "https://portal.example.ci")
    seed_request("company", id="C1", user_id="owner-1", status="pending")
    yield


def auth(user_id):
    return {"Authorization": f"Bearer {make_token(user_id)}"}


def test_missing_token_rejected(client, provider):
    r = client.post("/create-payment", json=PAYLOAD)
    assert r.status_code == 401
    assert provider.transactions == {}


def test_invalid_token_rejected(client, provider):
    r = client.post("/create-payment", json=PAYLOAD, headers={"Authorization": "Bearer not-a-jwt"})
    assert r.status_code == 401


def test_token_signed_with_other_secret_rejected(client, provider):
    token = make_token("owner-1", secret="someone-else")
    r = client.post("/create-payment", json=PAYLOAD, headers={"Authorization": f"Bearer {token}"})
    assert r.status_code == 401


def test_expired_token_rejected(client, provider):
    token = make_token("owner-1", expires_in=-60)
    r = client.post("/create-payment", json=PAYLOAD, headers={"Authorization": f"Bearer {token}"})
    assert r.status_code == 401


def test_unknown_request_not_found(client, provider):
    r = client.post("/create-payment", json={**PAYLOAD, "requestId": "nope"}, headers=auth("owner-1"))
    assert r.status_code == 404
    assert r.json()["error_code"] == "E_NOT_FOUND"


def test_request_type_selects_table(client, provider):
    # C1 is a company request; looking for it among service requests fails
    r = client.post("/create-payment", json={**PAYLOAD, "requestType": "service"}, headers=auth("owner-1"))
    assert r.status_code == 404


def test_non_owner_forbidden_and_status_unchanged(client, provider):
    r = client.post("/create-payment", json=PAYLOAD, headers=auth("intruder"))
    assert r.status_code == 403
    assert r.json()["error_code"] == "E_FORBIDDEN"
    assert dbmod.get_request("company", "C1")["status"] == "pending"
    assert provider.transactions == {}


def test_invalid_body_rejected_after_auth(client, provider):
    r = client.post("/create-payment", json={**PAYLOAD, "amount": -5}, headers=auth("owner-1"))
    assert r.status_code == 400
    assert r.json()["error_code"] == "E_VALIDATION"


def test_owner_gets_checkout_url(client, provider):
    r = client.post("/create-payment", json=PAYLOAD, headers=auth("owner-1"))
    assert r.status_code == 200
    j = r.json()
    assert j["success"] is True
    assert j["transactionId"] in provider.transactions
    assert j["paymentUrl"].endswith(f"tok_{j['transactionId']}")
    assert dbmod.get_request("company", "C1")["status"] == "payment_pending"

    params = provider.transactions[j["transactionId"]]
    assert params["amount"] == 150000
    assert params["currency"] == {"iso": "XOF"}
    assert params["callback_url"] == "https://portal.example.ci/payment-webhook"
    assert params["custom_metadata"] == {"request_id": "C1", "request_type": "company"}
    assert params["customer"]["firstname"] == "Awa"
    assert params["customer"]["lastname"] == "Marie Kone"
    assert params["customer"]["phone_number"] == {"number": "+2250101010101", "country": "CI"}


def test_provider_failure_leaves_request_untouched(client, monkeypatch):
    monkeypatch.setattr(app_module, "provider", FailingProvider())
    r = client.post("/create-payment", json=PAYLOAD, headers=auth("owner-1"))
    assert r.status_code == 500
    assert r.json()["error_code"] == "E_UPSTREAM"
    assert dbmod.get_request("company", "C1")["status"] == "pending"


def test_status_write_failure_still_returns_checkout(client, provider, monkeypatch):
    def boom(*args, **kwargs):
        raise RuntimeError("db unavailable")

    monkeypatch.setattr(dbmod, "set_request_status", boom)
    r = client.post("/create-payment", json=PAYLOAD, headers=auth("owner-1"))
    assert r.status_code == 200
    assert r.json()["success"] is True


def test_split_customer_name():
    assert initiation.split_customer_name("Awa Marie Kone") == ("Awa", "Marie Kone")
    assert initiation.split_customer_name("Awa") == ("Awa", "Awa")


# ---------------------------------------------------------------------------
# FedaPay connector against a mocked transport
# ---------------------------------------------------------------------------
def fedapay_transport(seen, token_status=200):
    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.url.path.endswith("/transactions"):
            return httpx.Response(200, json={"v1/transaction": {"id": 4242, "status": "pending"}})
        if request.url.path.endswith("/transactions/4242/token"):
            if token_status != 200:
                return httpx.Response(token_status, json={"message": "boom"})
            return httpx.Response(200, json={"token": "abc", "url": "https://process.fedapay.com/abc"})
        return httpx.Response(404)
    return httpx.MockTransport(handler)


def test_fedapay_provider_creates_transaction_and_token():
    seen = []
    provider = FedaPayProvider("sk_sandbox_x", "sandbox", transport=fedapay_transport(seen))

    async def run():
        tx = await provider.create_transaction({"amount": 1000})
        token = await provider.create_checkout_token(tx["id"])
        return tx, token

    tx, token = asyncio.run(run())
    assert tx["id"] == 4242
    assert token["url"] == "https://process.fedapay.com/abc"
    assert str(seen[0].url) == "https://sandbox-api.fedapay.com/v1/transactions"
    assert seen[0].headers["Authorization"] == "Bearer sk_sandbox_x"
    assert json.loads(seen[0].content) == {"amount": 1000}


def test_fedapay_provider_error_raises_upstream_failure():
    provider = FedaPayProvider("sk_sandbox_x", "sandbox", transport=fedapay_transport([], token_status=500))
    with pytest.raises(UpstreamFailure):
        asyncio.run(provider.create_checkout_token(4242))


def test_request_status_write_runs_off_the_event_loop(client, provider, monkeypatch):
    seen = []
    real_set_status = dbmod.set_request_status

    def recording_set_status(*args):
        try:
            asyncio.get_running_loop()
            seen.append(True)
        except RuntimeError:
            seen.append(False)
        return real_set_status(*args)

    monkeypatch.setattr(dbmod, "set_request_status", recording_set_status)
    r = client.post("/create-payment", json=PAYLOAD, headers=auth("owner-1"))
    assert r.status_code == 200
    assert seen == [False]


def test_fedapay_provider_defaults_to_live_api():
    seen = []
    provider = FedaPayProvider("sk_live_x", transport=fedapay_transport(seen))
    asyncio.run(provider.create_transaction({"amount": 1000}))
    assert str(seen[0].url) == "https://api.fedapay.com/v1/transactions"


@pytest.mark.parametrize("secret_key,configured,expected", [
    ("sk_live_abc", "", "live"),
    ("sk_sandbox_abc", "", "sandbox"),
    ("legacy-key", "", "live"),
    ("", "", "live"),
    ("legacy-key", "sandbox", "sandbox"),
    ("sk_live_abc", "live", "live"),
])
def test_resolve_environment(secret_key, configured, expected):
    assert fedapay.resolve_environment(secret_key, configured) == expected


@pytest.mark.parametrize("secret_key,configured", [
    ("sk_live_abc", "sandbox"),
    ("sk_sandbox_abc", "live"),
    ("sk_live_abc", "staging"),
])
def test_resolve_environment_rejects_mismatch(secret_key, configured):
    with pytest.raises(ConfigurationError):
        fedapay.resolve_environment(secret_key, configured)


def test_get_provider_uses_key_environment(monkeypatch):
    monkeypatch.setattr(fedapay, "MOCK_PAYMENTS", False)
    monkeypatch.setattr(fedapay, "FEDAPAY_SECRET_KEY", "sk_live_abc")
    monkeypatch.setattr(fedapay, "FEDAPAY_ENVIRONMENT", "")
    assert fedapay.get_provider().base_url == "https://api.fedapay.com/v1"

    monkeypatch.setattr(fedapay, "FEDAPAY_ENVIRONMENT", "sandbox")
    with pytest.raises(ConfigurationError):
        fedapay.get_provider()
