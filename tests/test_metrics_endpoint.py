from fastapi.testclient import TestClient

from portal.app import app


def test_metrics_endpoint_returns_prometheus_format():
    client = TestClient(app)
    r = client.get("/metrics")
    # Should return 200 with prometheus text format (if PROMETHEUS_ENABLED defaults to true)
    assert r.status_code in (200, 404)
    if r.status_code == 200:
        assert "text/plain" in r.headers.get("content-type", "")


def test_health_still_works():
    client = TestClient(app)
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok"}


def test_cors_preflight_allows_webhook_signature_header():
    client = TestClient(app)
    r = client.options(
        "/payment-webhook",
        headers={
            "Origin": "https://legalform.ci",
            "Access-Control-Request-Method": "POST",
            "Access-Control-Request-Headers": "content-type, x-fedapay-signature",
        },
    )
    assert r.status_code == 200
    assert r.headers["access-control-allow-origin"] == "*"
    assert "x-fedapay-signature" in r.headers["access-control-allow-headers"].lower()
