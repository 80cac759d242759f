# tests/conftest.py
"""
Shared fixtures: a disposable SQLite DB per test and request seeding helpers.
"""
import datetime
import time

import pytest
from jose import jwt

from portal import auth as authmod
from portal import db as dbmod
from portal.models import CompanyRequest, ServiceRequest, PublicTracking

TEST_JWT_SECRET = "test-jwt-secret"
TEST_WEBHOOK_SECRET = "test-webhook-secret"


@pytest.fixture
def test_db(tmp_path):
    dbmod.reconfigure(f"sqlite:///{tmp_path}/test_portal.db")
    dbmod.init_db()
    yield dbmod


@pytest.fixture
def jwt_secret(monkeypatch):
    monkeypatch.setattr(authmod, "AUTH_JWT_SECRET", TEST_JWT_SECRET)
    monkeypatch.setattr(authmod, "AUTH_JWT_AUDIENCE", "authenticated")
    return TEST_JWT_SECRET


def make_token(user_id: str, secret: str = TEST_JWT_SECRET, expires_in: int = 3600) -> str:
    claims = {"sub": user_id, "aud": "authenticated", "exp": int(time.time()) + expires_in}
    return jwt.encode(claims, secret, algorithm="HS256")


def seed_request(request_type: str = "company", **fields):
    """Insert a request (and its tracking index row) directly through the ORM."""
    model = CompanyRequest if request_type == "company" else ServiceRequest
    defaults = {
        "id": "C1",
        "tracking_number": "LF-2025-0001",
        "user_id": "user-1",
        "status": "pending",
        "email": "client@example.com",
        "phone": "+2250101010101",
        "contact_name": "Awa Kone",
        "created_at": datetime.datetime(2025, 1, 10, 9, 0, 0),
        "updated_at": datetime.datetime(2025, 1, 10, 9, 0, 0),
    }
    defaults.update(fields)
    db = dbmod.SessionLocal()
    try:
        db.add(model(**defaults))
        if defaults.get("phone"):
            db.add(PublicTracking(phone=defaults["phone"], request_id=defaults["id"], request_type=request_type))
        db.commit()
    finally:
        db.close()
    return defaults
