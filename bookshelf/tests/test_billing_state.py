"""
Entitlement state machine transitions.
"""
from datetime import datetime, timezone

import pytest

from bookshelf.core.errors import ConflictError, InvalidPlanError, NoActiveSubscriptionError, ValidationError
from bookshelf.features.billing.state import (
    Active,
    AdminOverride,
    CancellationScheduled,
    Free,
    PendingCancellation,
    PlanPaid,
    Terminated,
    expiry_for,
    transition,
)

T0 = datetime(2026, 1, 31, 9, 30, tzinfo=timezone.utc)


class TestExpiry:
    def test_durations_per_plan(self):
        assert expiry_for("explorer", datetime(2026, 1, 15, tzinfo=timezone.utc)) == datetime(2026, 4, 15, tzinfo=timezone.utc)
        assert expiry_for("traveler", datetime(2026, 1, 15, tzinfo=timezone.utc)) == datetime(2026, 7, 15, tzinfo=timezone.utc)
        assert expiry_for("devourer", datetime(2026, 1, 15, tzinfo=timezone.utc)) == datetime(2027, 1, 15, tzinfo=timezone.utc)

    def test_month_end_clamps(self):
        # Jan 31 + 3 months lands on the last day of April
        assert expiry_for("explorer", T0) == datetime(2026, 4, 30, 9, 30, tzinfo=timezone.utc)


class TestPlanPaid:
    def test_free_to_active_stores_refs(self):
        state = transition(Free(), PlanPaid("explorer", T0, "cus_1", "sub_1"))
        assert state == Active("explorer", expiry_for("explorer", T0), "cus_1", "sub_1")

    def test_upgrade_resets_clock_instead_of_adding(self):
        current = Active("explorer", datetime(2026, 3, 1, tzinfo=timezone.utc), "cus_1", "sub_1")
        state = transition(current, PlanPaid("devourer", T0))
        assert state.plan == "devourer"
        assert state.expires_at == datetime(2027, 1, 31, 9, 30, tzinfo=timezone.utc)
        # Refs carried over when the change does not name them
        assert state.customer_ref == "cus_1"
        assert state.subscription_ref == "sub_1"

    def test_payment_clears_pending_cancellation(self):
        current = PendingCancellation("explorer", T0, "cus_1", "sub_1")
        state = transition(current, PlanPaid("traveler", T0, "cus_1", "sub_1"))
        assert isinstance(state, Active)


class TestCancellation:
    def test_active_with_subscription_becomes_pending(self):
        current = Active("traveler", T0, "cus_1", "sub_1")
        state = transition(current, CancellationScheduled(at=T0))
        assert state == PendingCancellation("traveler", T0, "cus_1", "sub_1")

    def test_pending_is_idempotent(self):
        current = PendingCancellation("traveler", T0, "cus_1", "sub_1")
        assert transition(current, CancellationScheduled(at=T0)) is current

    @pytest.mark.parametrize("current", [Free("cus_1"), Active("explorer", T0, "cus_1", None)])
    def test_requires_subscription(self, current):
        with pytest.raises(NoActiveSubscriptionError):
            transition(current, CancellationScheduled(at=T0))


class TestTerminated:
    def test_paid_state_goes_free_keeping_customer(self):
        current = PendingCancellation("traveler", datetime(2026, 6, 1, tzinfo=timezone.utc), "cus_1", "sub_1")
        state = transition(current, Terminated(at=T0))
        assert state == Free(customer_ref="cus_1", expired_at=T0)

    def test_free_stays_free(self):
        current = Free("cus_1", T0)
        assert transition(current, Terminated(at=datetime(2026, 2, 1, tzinfo=timezone.utc))) is current


class TestAdminOverride:
    def test_grant_plan_to_free_user(self):
        state = transition(Free(), AdminOverride("devourer", T0))
        assert state == Active("devourer", T0, None, None)

    def test_keeps_existing_expiry_when_omitted(self):
        current = Active("explorer", T0, "cus_1", "sub_1")
        state = transition(current, AdminOverride("traveler", None))
        assert state == Active("traveler", T0, "cus_1", "sub_1")

    def test_keeps_pending_cancellation(self):
        current = PendingCancellation("explorer", T0, "cus_1", "sub_1")
        state = transition(current, AdminOverride("traveler", None))
        assert isinstance(state, PendingCancellation)
        assert state.plan == "traveler"

    def test_clear_plan_without_subscription(self):
        current = Active("explorer", T0, "cus_1", None)
        assert transition(current, AdminOverride(None, None)) == Free("cus_1", None)

    def test_clear_plan_with_live_subscription_conflicts(self):
        with pytest.raises(ConflictError):
            transition(Active("explorer", T0, "cus_1", "sub_1"), AdminOverride(None, None))

    def test_grant_without_any_expiry_rejected(self):
        with pytest.raises(ValidationError):
            transition(Free(), AdminOverride("explorer", None))

    def test_unknown_plan_rejected(self):
        with pytest.raises(InvalidPlanError):
            transition(Free(), AdminOverride("platinum", T0))
