"""
Entitlement store persistence and versioned writes.
"""
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

import bookshelf.features.billing.store as store_module
from bookshelf.core.errors import ConcurrentModificationError, ConflictError, UserNotFoundError
from bookshelf.features.billing.state import Active, Free, PendingCancellation, PlanPaid, transition

T0 = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)


class TestReads:
    def test_missing_user(self, store):
        assert store.get("nobody") is None
        with pytest.raises(UserNotFoundError):
            store.require("nobody")

    def test_new_profile_is_free(self, store):
        record = store.ensure_profile("user_alice", email="Alice@Example.com")
        assert record.state == Free()
        assert record.email == "alice@example.com"
        assert record.version == 0

    def test_ensure_profile_is_idempotent(self, store):
        store.ensure_profile("user_alice", email="alice@example.com", full_name="Alice")
        record = store.ensure_profile("user_alice", email="other@example.com")
        assert record.email == "alice@example.com"
        assert record.full_name == "Alice"

    def test_lookups(self, make_user, store):
        make_user(plan="explorer", expires_at=T0, customer_ref="cus_1", subscription_ref="sub_1")
        assert store.find_by_customer_ref("cus_1").user_id == "user_alice"
        assert store.find_by_subscription_ref("sub_1").user_id == "user_alice"
        assert store.find_by_email("ALICE@example.com").user_id == "user_alice"
        assert store.find_by_customer_ref("cus_x") is None

    def test_row_shapes_map_to_states(self, make_user, store):
        record = make_user(plan="explorer", expires_at=T0, customer_ref="cus_1", subscription_ref="sub_1",
                           cancel_at_period_end=True)
        assert record.state == PendingCancellation("explorer", T0, "cus_1", "sub_1")

        record = make_user(user_id="user_bob", email="bob@example.com", plan="explorer", expires_at=T0)
        assert record.state == Active("explorer", T0, None, None)

    def test_plan_without_expiry_reads_as_free(self, make_user):
        record = make_user(plan="explorer", expires_at=None, customer_ref="cus_1")
        assert record.state == Free(customer_ref="cus_1")


class TestMutate:
    def test_write_bumps_version_and_sync_token(self, make_user, store):
        make_user()
        record, changed = store.mutate(
            "user_alice",
            lambda r: transition(r.state, PlanPaid("explorer", T0, "cus_1", "sub_1")),
            synced_at=T0,
        )
        assert changed is True
        assert record.version == 1
        assert record.synced_at == T0

        reloaded = store.require("user_alice")
        assert reloaded == record

    def test_unchanged_state_skips_write(self, make_user, store):
        make_user(plan="explorer", expires_at=T0)
        record, changed = store.mutate("user_alice", lambda r: r.state)
        assert changed is False
        assert record.version == 0

    def test_compute_returning_none_is_noop(self, make_user, store):
        make_user()
        _, changed = store.mutate("user_alice", lambda r: None)
        assert changed is False

    def test_unchanged_state_still_records_newer_sync_token(self, make_user, store):
        make_user(customer_ref="cus_1")
        record, changed = store.mutate("user_alice", lambda r: r.state, synced_at=T0)
        assert changed is False
        assert record.version == 1
        assert store.require("user_alice").synced_at == T0

    def test_skipped_compute_leaves_sync_token(self, make_user, store):
        make_user()
        record, changed = store.mutate("user_alice", lambda r: None, synced_at=T0)
        assert changed is False
        assert record.version == 0
        assert store.require("user_alice").synced_at is None

    def test_sync_token_never_moves_backwards(self, make_user, store):
        make_user(synced_at=T0)
        record, changed = store.mutate(
            "user_alice",
            lambda r: transition(r.state, PlanPaid("explorer", T0 - timedelta(days=1))),
            synced_at=T0 - timedelta(days=1),
        )
        assert changed is True
        assert record.synced_at == T0

    def test_profile_values_written_alongside(self, make_user, store):
        make_user()
        record, changed = store.mutate("user_alice", lambda r: None, profile_values={"full_name": "Alice A."})
        assert changed is True
        assert store.require("user_alice").full_name == "Alice A."
        assert record.full_name == "Alice A."

    def test_unknown_user(self, store):
        with pytest.raises(UserNotFoundError):
            store.mutate("nobody", lambda r: r.state)

    def test_duplicate_customer_ref_conflicts(self, make_user, store):
        make_user(customer_ref="cus_1")
        make_user(user_id="user_bob", email="bob@example.com")
        with pytest.raises(ConflictError):
            store.mutate("user_bob", lambda r: Free(customer_ref="cus_1"))

    def test_lost_race_is_retried_once(self, make_user, store, monkeypatch):
        make_user()
        original = store_module.record_from_row
        reads = {"count": 0}

        def stale_first_read(row):
            record = original(row)
            reads["count"] += 1
            if reads["count"] == 1:
                # Simulate another writer bumping the version after our read
                return replace(record, version=record.version - 1)
            return record

        monkeypatch.setattr(store_module, "record_from_row", stale_first_read)
        record, changed = store.mutate("user_alice", lambda r: Active("explorer", T0))
        assert changed is True
        assert record.version == 1
        assert reads["count"] == 2

    def test_persistent_race_raises(self, make_user, store, monkeypatch):
        make_user()
        original = store_module.record_from_row
        monkeypatch.setattr(
            store_module,
            "record_from_row",
            lambda row: replace(original(row), version=original(row).version + 5),
        )
        with pytest.raises(ConcurrentModificationError):
            store.mutate("user_alice", lambda r: Active("explorer", T0))
        monkeypatch.undo()
        assert store.require("user_alice").state == Free()
