# tests/test_notifications.py
"""
Tests for the internal notification endpoint and the email connector.
"""
import asyncio
import json

import httpx
import pytest
from fastapi.testclient import TestClient

from portal.app import app
from portal import auth as authmod
import portal.connectors.email_connector as email_connector
from portal.errors import UpstreamFailure

MESSAGE = {"to": "client@example.com", "subject": "Hello", "html": "<p>hi</p>"}


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def sent(monkeypatch):
    calls = []

    async def fake_send(to, subject, html):
        calls.append((to, subject, html))
        return {"delivered": True, "id": "em_1"}

    monkeypatch.setattr(email_connector, "send_email", fake_send)
    return calls


def test_notification_sent_without_guard_configured(client, sent, monkeypatch):
    monkeypatch.setattr(authmod, "INTERNAL_API_KEY", "")
    r = client.post("/send-payment-notification", json=MESSAGE)
    assert r.status_code == 200
    assert r.json() == {"success": True}
    assert sent == [("client@example.com", "Hello", "<p>hi</p>")]


def test_internal_key_required_when_configured(client, sent, monkeypatch):
    monkeypatch.setattr(authmod, "INTERNAL_API_KEY", "internal-123")
    r = client.post("/send-payment-notification", json=MESSAGE)
    assert r.status_code == 403
    assert sent == []

    r = client.post("/send-payment-notification", json=MESSAGE, headers={"x-internal-api-key": "internal-123"})
    assert r.status_code == 200


def test_notification_body_validated(client, sent, monkeypatch):
    monkeypatch.setattr(authmod, "INTERNAL_API_KEY", "")
    r = client.post("/send-payment-notification", json={"to": "client@example.com"})
    assert r.status_code == 400


def test_send_email_logs_when_unconfigured(monkeypatch):
    monkeypatch.setattr(email_connector, "RESEND_API_KEY", "")
    result = asyncio.run(email_connector.send_email("a@example.com", "s", "<p>x</p>"))
    assert result == {"delivered": False, "id": None}


def test_send_email_posts_to_resend(monkeypatch):
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"id": "em_42"})

    monkeypatch.setattr(email_connector, "RESEND_API_KEY", "re_test")
    monkeypatch.setattr(email_connector, "_transport", httpx.MockTransport(handler))
    result = asyncio.run(email_connector.send_email("a@example.com", "Subject", "<p>x</p>"))
    assert result == {"delivered": True, "id": "em_42"}
    body = json.loads(seen[0].content)
    assert body["to"] == ["a@example.com"]
    assert body["subject"] == "Subject"
    assert seen[0].headers["Authorization"] == "Bearer re_test"


def test_send_email_provider_error(monkeypatch):
    monkeypatch.setattr(email_connector, "RESEND_API_KEY", "re_test")
    monkeypatch.setattr(email_connector, "_transport", httpx.MockTransport(lambda req: httpx.Response(422, json={})))
    with pytest.raises(UpstreamFailure):
        asyncio.run(email_connector.send_email("a@example.com", "Subject", "<p>x</p>"))


def test_confirmation_template_escapes_and_falls_back_to_request_id(monkeypatch):
    captured = {}

    async def fake_send(to, subject, html):
        captured.update(to=to, subject=subject, html=html)
        return {"delivered": False, "id": None}

    monkeypatch.setattr(email_connector, "send_email", fake_send)
    asyncio.run(email_connector.send_payment_confirmation("a@example.com", "<b>Awa</b>", None, "C1"))
    assert captured["subject"] == "Confirmation de paiement - LegalForm"
    assert "&lt;b&gt;Awa&lt;/b&gt;" in captured["html"]
    assert "<code>C1</code>" in captured["html"]
