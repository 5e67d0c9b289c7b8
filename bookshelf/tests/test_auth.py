"""
Bearer token and dev-header identity resolution.
"""
import time

import jwt
import pytest

from bookshelf.core.config import settings

SECRET = "test-jwt-secret"


def _token(sub="user_alice", exp_offset=3600, audience="authenticated", secret=SECRET):
    claims = {"sub": sub, "aud": audience, "exp": int(time.time()) + exp_offset}
    return jwt.encode(claims, secret, algorithm="HS256")


@pytest.fixture
def jwt_secret(monkeypatch):
    monkeypatch.setattr(settings, "SUPABASE_JWT_SECRET", SECRET)


def test_valid_token_resolves_user(client, make_user, jwt_secret):
    make_user()
    resp = client.get("/v1/billing/status", headers={"Authorization": f"Bearer {_token()}"})
    assert resp.status_code == 200


def test_expired_token_rejected(client, jwt_secret):
    resp = client.get("/v1/billing/status", headers={"Authorization": f"Bearer {_token(exp_offset=-60)}"})
    assert resp.status_code == 401
    assert resp.json()["error"]["message"] == "Token expired"


def test_wrong_audience_rejected(client, jwt_secret):
    resp = client.get("/v1/billing/status",
                      headers={"Authorization": f"Bearer {_token(audience='anon')}"})
    assert resp.status_code == 401


def test_forged_signature_rejected(client, jwt_secret):
    resp = client.get("/v1/billing/status",
                      headers={"Authorization": f"Bearer {_token(secret='other-secret')}"})
    assert resp.status_code == 401


def test_user_header_refused_in_production(client, make_user, monkeypatch):
    make_user()
    monkeypatch.setattr(settings, "ENV", "production")
    resp = client.get("/v1/billing/status", headers={"X-User-Id": "user_alice"})
    assert resp.status_code == 401
