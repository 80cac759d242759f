# portal/connectors/fedapay_connector.py
"""
Payment provider connector.

The rest of the portal only needs two capabilities from a provider:
  create_transaction(params) -> {"id": ...}
  create_checkout_token(transaction_id) -> {"url": ..., "token": ...}

FedaPayProvider implements them against the FedaPay REST API;
MockPaymentProvider returns canned values for local development and tests.

Env vars:
- FEDAPAY_SECRET_KEY
- FEDAPAY_ENVIRONMENT — live | sandbox (default: taken from the key prefix, live otherwise)
- FEDAPAY_TIMEOUT_SECONDS (default: 15)
- MOCK_PAYMENTS (default: false)
"""

import os
import uuid
from typing import Any, Dict, Optional

import httpx

from portal import monitoring
from portal.errors import UpstreamFailure, ConfigurationError

FEDAPAY_SECRET_KEY = os.getenv("FEDAPAY_SECRET_KEY", "").strip()
FEDAPAY_ENVIRONMENT = os.getenv("FEDAPAY_ENVIRONMENT", "").strip().lower()
FEDAPAY_TIMEOUT_SECONDS = float(os.getenv("FEDAPAY_TIMEOUT_SECONDS", "15"))
MOCK_PAYMENTS = os.getenv("MOCK_PAYMENTS", "false").lower() in ("1", "true", "yes")

_API_BASES = {
    "live": "https://api.fedapay.com/v1",
    "sandbox": "https://sandbox-api.fedapay.com/v1",
}


def _unwrap(payload: Dict[str, Any], resource: str) -> Dict[str, Any]:
    """FedaPay nests resources under "v1/<resource>" (older payloads: "v1")."""
    if not isinstance(payload, dict):
        return {}
    for key in (f"v1/{resource}", "v1"):
        if isinstance(payload.get(key), dict):
            return payload[key]
    return payload


class PaymentProvider:
    async def create_transaction(self, params: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    async def create_checkout_token(self, transaction_id: Any) -> Dict[str, Any]:
        raise NotImplementedError


class FedaPayProvider(PaymentProvider):
    def __init__(
        self,
        secret_key: str,
        environment: str = "live",
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.secret_key = secret_key
        self.base_url = _API_BASES.get(environment, _API_BASES["live"])
        self.timeout = timeout
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/json",
        }

    async def _post(self, path: str, body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        if not self.secret_key:
            raise ConfigurationError("Payment provider is not configured")
        url = f"{self.base_url}{path}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(url, json=body, headers=self._headers())
        except httpx.HTTPError as e:
            monitoring.logger.error("FedaPay request failed", extra={"path": path, "error": str(e)})
            raise UpstreamFailure("Payment provider unavailable") from e

        if response.status_code >= 400:
            monitoring.logger.error(
                "FedaPay API error",
                extra={"path": path, "http_status": response.status_code, "body": response.text[:500]},
            )
            raise UpstreamFailure("Payment provider rejected the request", details={"http_status": response.status_code})
        try:
            return response.json()
        except ValueError as e:
            raise UpstreamFailure("Payment provider returned an unreadable response") from e

    async def create_transaction(self, params: Dict[str, Any]) -> Dict[str, Any]:
        transaction = _unwrap(await self._post("/transactions", params), "transaction")
        if transaction.get("id") is None:
            raise UpstreamFailure("Payment provider returned no transaction id")
        return transaction

    async def create_checkout_token(self, transaction_id: Any) -> Dict[str, Any]:
        token = _unwrap(await self._post(f"/transactions/{transaction_id}/token"), "token")
        if not token.get("url"):
            raise UpstreamFailure("Payment provider returned no checkout url")
        return token


class MockPaymentProvider(PaymentProvider):
    """Deterministic provider for development; records what it was asked to do."""

    def __init__(self, checkout_base: str = "https://checkout.example.test/pay"):
        self.checkout_base = checkout_base
        self.transactions: Dict[str, Dict[str, Any]] = {}

    async def create_transaction(self, params: Dict[str, Any]) -> Dict[str, Any]:
        tx_id = f"mock_{uuid.uuid4().hex[:12]}"
        self.transactions[tx_id] = params
        return {"id": tx_id, "status": "pending", **params}

    async def create_checkout_token(self, transaction_id: Any) -> Dict[str, Any]:
        token = f"tok_{transaction_id}"
        return {"token": token, "url": f"{self.checkout_base}/{token}"}


def resolve_environment(secret_key: str, configured: str = "") -> str:
    """
    API environment for `secret_key`. FedaPay keys carry it as a prefix
    (sk_live_..., sk_sandbox_...); a configured value that contradicts the key
    is a ConfigurationError.
    """
    key_env = None
    for env in _API_BASES:
        if secret_key.startswith(f"sk_{env}_"):
            key_env = env
    if configured and configured not in _API_BASES:
        raise ConfigurationError("Unknown FEDAPAY_ENVIRONMENT", details={"environment": configured})
    if configured and key_env and configured != key_env:
        raise ConfigurationError(
            "FEDAPAY_ENVIRONMENT does not match the secret key",
            details={"environment": configured, "key_environment": key_env},
        )
    return configured or key_env or "live"


def get_provider() -> PaymentProvider:
    if MOCK_PAYMENTS:
        return MockPaymentProvider()
    environment = resolve_environment(FEDAPAY_SECRET_KEY, FEDAPAY_ENVIRONMENT)
    monitoring.logger.info("Payment provider configured", extra={"provider": "fedapay", "environment": environment})
    return FedaPayProvider(FEDAPAY_SECRET_KEY, environment, FEDAPAY_TIMEOUT_SECONDS)
