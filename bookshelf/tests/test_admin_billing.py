"""
Admin billing routes: auth gate, entitlement overrides, event log.
"""
import json
from datetime import datetime, timezone

import pytest
from sqlalchemy import select

from bookshelf.core.config import settings
from bookshelf.core.database import billing_admin_audit, get_db_session

ADMIN_KEY = "admin-secret"


@pytest.fixture
def admin_headers(monkeypatch):
    monkeypatch.delenv("ADMIN_API_KEY", raising=False)
    monkeypatch.setattr(settings, "ADMIN_KEY", ADMIN_KEY)
    return {"X-Admin-Key": ADMIN_KEY}


def _audit_rows():
    with get_db_session() as session:
        return session.execute(select(billing_admin_audit)).fetchall()


class TestAdminAuth:
    def test_unconfigured_is_503(self, client, monkeypatch):
        monkeypatch.delenv("ADMIN_API_KEY", raising=False)
        monkeypatch.setattr(settings, "ADMIN_KEY", None)
        resp = client.get("/v1/admin/billing/events", headers={"X-Admin-Key": "anything"})
        assert resp.status_code == 503

    def test_wrong_key_is_401(self, client, admin_headers):
        resp = client.get("/v1/admin/billing/events", headers={"X-Admin-Key": "wrong"})
        assert resp.status_code == 401

    def test_missing_key_is_401(self, client, admin_headers):
        resp = client.get("/v1/admin/billing/events")
        assert resp.status_code == 401


class TestOverride:
    def test_grant_plan_is_audited(self, client, admin_headers, make_user, store):
        make_user()
        resp = client.post(
            "/v1/admin/billing/entitlements/override",
            json={"user_id": "user_alice", "plan": "devourer", "subscription_expires_at": "2027-01-01T00:00:00Z"},
            headers=admin_headers,
        )

        assert resp.status_code == 200
        body = resp.json()
        assert body["plan"] == "devourer"
        assert body["entitlement_version"] == 1
        assert store.require("user_alice").state.plan == "devourer"

        rows = _audit_rows()
        assert len(rows) == 1
        assert rows[0].action == "override_entitlement"
        assert rows[0].target_user_id == "user_alice"
        assert rows[0].actor.startswith("admin_key:")
        assert ADMIN_KEY not in rows[0].actor
        assert json.loads(rows[0].payload_json)["plan"] == "devourer"

    def test_naive_timestamp_treated_as_utc(self, client, admin_headers, make_user, store):
        make_user()
        resp = client.post(
            "/v1/admin/billing/entitlements/override",
            json={"user_id": "user_alice", "plan": "explorer", "subscription_expires_at": "2026-06-01T00:00:00"},
            headers=admin_headers,
        )
        assert resp.status_code == 200
        assert store.require("user_alice").state.expires_at.isoformat() == "2026-06-01T00:00:00+00:00"

    def test_set_admin_flag(self, client, admin_headers, make_user, store):
        make_user()
        resp = client.post(
            "/v1/admin/billing/entitlements/override",
            json={"user_id": "user_alice", "is_admin": True},
            headers=admin_headers,
        )
        assert resp.status_code == 200
        assert resp.json()["is_admin"] is True
        assert store.require("user_alice").is_admin is True

    def test_clearing_live_subscription_conflicts(self, client, admin_headers, make_user):
        make_user(plan="explorer", expires_at=datetime(2026, 6, 1, tzinfo=timezone.utc),
                  customer_ref="cus_1", subscription_ref="sub_1")
        resp = client.post(
            "/v1/admin/billing/entitlements/override",
            json={"user_id": "user_alice", "plan": None},
            headers=admin_headers,
        )
        assert resp.status_code == 409
        assert _audit_rows() == []

    def test_unknown_user(self, client, admin_headers):
        resp = client.post(
            "/v1/admin/billing/entitlements/override",
            json={"user_id": "ghost", "plan": "explorer", "subscription_expires_at": "2027-01-01T00:00:00Z"},
            headers=admin_headers,
        )
        assert resp.status_code == 404


class TestEventLog:
    def _deliver(self, client, event_id, event_type="invoice.paid", data=None):
        body = json.dumps({"id": event_id, "type": event_type, "created": 1768478400,
                           "data": {"object": {}} if data is None else data})
        return client.post("/v1/billing/webhook", content=body, headers={"stripe-signature": "valid"})

    def test_lists_newest_first_with_filter(self, client, admin_headers):
        self._deliver(client, "evt_1")
        self._deliver(client, "evt_2")
        self._deliver(client, "evt_3", event_type="checkout.session.completed", data={})

        resp = client.get("/v1/admin/billing/events", headers=admin_headers)
        assert resp.status_code == 200
        ids = [e["provider_event_id"] for e in resp.json()["events"]]
        assert ids == ["evt_3", "evt_2", "evt_1"]

        resp = client.get("/v1/admin/billing/events", params={"outcome": "ignored"}, headers=admin_headers)
        assert [e["provider_event_id"] for e in resp.json()["events"]] == ["evt_2", "evt_1"]

    def test_limit_bounds(self, client, admin_headers):
        resp = client.get("/v1/admin/billing/events", params={"limit": 501}, headers=admin_headers)
        assert resp.status_code == 422
