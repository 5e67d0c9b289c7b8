"""
Entitlement state machine.

A user's billing entitlement is always exactly one of:

    Free                 no paid plan (possibly a past, expired one)
    Active               paid plan valid until expires_at
    PendingCancellation  paid plan with a soft cancel scheduled at the
                         provider; still valid until expires_at

`transition` is the single place where entitlement changes are computed.
Checkout, the webhook reconciler, cancellation, partner activation and
admin overrides all go through it, so the invariants hold everywhere:

- a subscription ref implies a plan and an expiry
- Free never holds a subscription ref
- the customer ref, once known, is kept
"""
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Optional, Union

from dateutil.relativedelta import relativedelta

from bookshelf.core.errors import ConflictError, NoActiveSubscriptionError, ValidationError
from bookshelf.features.billing.plans import get_plan


@dataclass(frozen=True)
class Free:
    customer_ref: Optional[str] = None
    expired_at: Optional[datetime] = None


@dataclass(frozen=True)
class Active:
    plan: str
    expires_at: datetime
    customer_ref: Optional[str] = None
    subscription_ref: Optional[str] = None


@dataclass(frozen=True)
class PendingCancellation:
    plan: str
    expires_at: datetime
    customer_ref: Optional[str]
    subscription_ref: str


EntitlementState = Union[Free, Active, PendingCancellation]


# State changes

@dataclass(frozen=True)
class PlanPaid:
    """Payment confirmed for a plan; the duration clock restarts at paid_at."""
    plan: str
    paid_at: datetime
    customer_ref: Optional[str] = None
    subscription_ref: Optional[str] = None


@dataclass(frozen=True)
class CancellationScheduled:
    at: datetime


@dataclass(frozen=True)
class Terminated:
    """Refund or final cancellation: back to free tier."""
    at: datetime


@dataclass(frozen=True)
class AdminOverride:
    plan: Optional[str]
    expires_at: Optional[datetime]


StateChange = Union[PlanPaid, CancellationScheduled, Terminated, AdminOverride]


def expiry_for(plan: str, start: datetime) -> datetime:
    return start + relativedelta(months=get_plan(plan).duration_months)


def subscription_ref_of(state: EntitlementState) -> Optional[str]:
    if isinstance(state, Free):
        return None
    return state.subscription_ref


def plan_of(state: EntitlementState) -> Optional[str]:
    if isinstance(state, Free):
        return None
    return state.plan


def expires_at_of(state: EntitlementState) -> Optional[datetime]:
    if isinstance(state, Free):
        return state.expired_at
    return state.expires_at


def transition(state: EntitlementState, change: StateChange) -> EntitlementState:
    """
    Compute the entitlement state after applying a change.

    Pure: never touches the store or the provider.

    Raises:
        NoActiveSubscriptionError: cancellation scheduled without a subscription
        ConflictError: admin override would orphan a live subscription
        ValidationError: admin override grants a plan without any expiry
    """
    if isinstance(change, PlanPaid):
        return Active(
            plan=change.plan,
            expires_at=expiry_for(change.plan, change.paid_at),
            customer_ref=change.customer_ref or state.customer_ref,
            subscription_ref=change.subscription_ref or subscription_ref_of(state),
        )

    if isinstance(change, CancellationScheduled):
        if isinstance(state, PendingCancellation):
            return state
        if isinstance(state, Active) and state.subscription_ref:
            return PendingCancellation(
                plan=state.plan,
                expires_at=state.expires_at,
                customer_ref=state.customer_ref,
                subscription_ref=state.subscription_ref,
            )
        raise NoActiveSubscriptionError("No active subscription to cancel")

    if isinstance(change, Terminated):
        if isinstance(state, Free):
            return state
        return Free(customer_ref=state.customer_ref, expired_at=change.at)

    if isinstance(change, AdminOverride):
        if change.plan is None:
            if subscription_ref_of(state):
                raise ConflictError(
                    "Cannot clear the plan while a provider subscription is live; cancel it first"
                )
            return Free(customer_ref=state.customer_ref, expired_at=change.expires_at)
        get_plan(change.plan)
        expires_at = change.expires_at or expires_at_of(state)
        if expires_at is None:
            raise ValidationError("subscription_expires_at is required when granting a plan")
        if isinstance(state, PendingCancellation):
            return replace(state, plan=change.plan, expires_at=expires_at)
        return Active(
            plan=change.plan,
            expires_at=expires_at,
            customer_ref=state.customer_ref,
            subscription_ref=subscription_ref_of(state),
        )

    raise TypeError(f"Unknown state change: {change!r}")
