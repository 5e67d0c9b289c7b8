"""
Provider event variants.

Verified Stripe payloads are decoded into a closed set of event types.
Anything the reconciler does not act on becomes Ignored; anything it
should act on but cannot (missing correlation data) becomes Malformed.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from bookshelf.features.billing.plans import is_known_plan


CHECKOUT_COMPLETED = "checkout.session.completed"
CHECKOUT_ASYNC_SUCCEEDED = "checkout.session.async_payment_succeeded"
CHARGE_REFUNDED = "charge.refunded"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"

_PAID_STATUSES = {"paid", "no_payment_required"}


@dataclass(frozen=True)
class PaymentConfirmed:
    event_id: str
    occurred_at: datetime
    user_id: str
    plan: str
    customer_ref: Optional[str]
    subscription_ref: Optional[str]
    event_type: str = CHECKOUT_COMPLETED


@dataclass(frozen=True)
class Refunded:
    event_id: str
    occurred_at: datetime
    customer_ref: Optional[str]
    email: Optional[str]
    event_type: str = CHARGE_REFUNDED


@dataclass(frozen=True)
class Cancelled:
    event_id: str
    occurred_at: datetime
    subscription_ref: Optional[str]
    customer_ref: Optional[str]
    event_type: str = SUBSCRIPTION_DELETED


@dataclass(frozen=True)
class Ignored:
    event_id: str
    event_type: str
    reason: str


@dataclass(frozen=True)
class Malformed:
    event_id: str
    event_type: str
    reason: str


ProviderEvent = Union[PaymentConfirmed, Refunded, Cancelled, Ignored, Malformed]


def _ref(value: Any) -> Optional[str]:
    """Stripe fields are either an id string or an expanded object."""
    if isinstance(value, dict):
        value = value.get("id")
    if not isinstance(value, str):
        return None
    return value or None


def _occurred_at(payload: Dict[str, Any]) -> datetime:
    created = payload.get("created")
    if isinstance(created, (int, float)) and created > 0:
        try:
            return datetime.fromtimestamp(created, timezone.utc)
        except (OverflowError, OSError, ValueError):
            pass
    return datetime.now(timezone.utc)


def _parse_checkout(event_id: str, event_type: str, occurred_at: datetime, obj: Dict[str, Any]) -> ProviderEvent:
    payment_status = obj.get("payment_status")
    if payment_status not in _PAID_STATUSES:
        return Ignored(event_id, event_type, f"payment_status={payment_status}")

    metadata = obj.get("metadata") or {}
    if not isinstance(metadata, dict):
        return Malformed(event_id, event_type, "metadata is not an object")
    user_id = metadata.get("user_id")
    plan = metadata.get("plan")
    if not isinstance(user_id, str) or not isinstance(plan, str) or not user_id or not plan:
        return Malformed(event_id, event_type, "missing user_id/plan metadata")
    if not is_known_plan(plan):
        return Malformed(event_id, event_type, f"unknown plan {plan!r}")

    return PaymentConfirmed(
        event_id=event_id,
        occurred_at=occurred_at,
        user_id=user_id,
        plan=plan,
        customer_ref=_ref(obj.get("customer")),
        subscription_ref=_ref(obj.get("subscription")),
        event_type=event_type,
    )


def _parse_refund(event_id: str, occurred_at: datetime, obj: Dict[str, Any]) -> ProviderEvent:
    if not obj.get("refunded"):
        return Ignored(event_id, CHARGE_REFUNDED, "partial refund")

    billing_details = obj.get("billing_details") or {}
    if not isinstance(billing_details, dict):
        return Malformed(event_id, CHARGE_REFUNDED, "billing_details is not an object")
    email = billing_details.get("email") or obj.get("receipt_email")
    if not isinstance(email, str):
        email = None
    customer_ref = _ref(obj.get("customer"))
    if not customer_ref and not email:
        return Malformed(event_id, CHARGE_REFUNDED, "no customer or email to correlate")
    return Refunded(
        event_id=event_id,
        occurred_at=occurred_at,
        customer_ref=customer_ref,
        email=email.lower() if email else None,
    )


def _parse_cancel(event_id: str, occurred_at: datetime, obj: Dict[str, Any]) -> ProviderEvent:
    subscription_ref = _ref(obj.get("id"))
    customer_ref = _ref(obj.get("customer"))
    if not subscription_ref and not customer_ref:
        return Malformed(event_id, SUBSCRIPTION_DELETED, "no subscription or customer to correlate")
    return Cancelled(
        event_id=event_id,
        occurred_at=occurred_at,
        subscription_ref=subscription_ref,
        customer_ref=customer_ref,
    )


def parse_event(payload: Dict[str, Any]) -> ProviderEvent:
    """Decode a verified Stripe event payload into a ProviderEvent."""
    if not isinstance(payload, dict):
        return Malformed("", "unknown", "payload is not an object")
    event_id = payload.get("id") or ""
    event_type = payload.get("type") or ""
    data = payload.get("data")
    obj = data.get("object") if isinstance(data, dict) else None

    if not isinstance(event_id, str) or not isinstance(event_type, str):
        return Malformed("", "unknown", "id/type are not strings")
    if not event_id or not event_type:
        return Malformed(event_id, event_type or "unknown", "missing id/type")
    if not isinstance(obj, dict):
        return Malformed(event_id, event_type, "missing data.object")

    occurred_at = _occurred_at(payload)

    if event_type in (CHECKOUT_COMPLETED, CHECKOUT_ASYNC_SUCCEEDED):
        return _parse_checkout(event_id, event_type, occurred_at, obj)
    if event_type == CHARGE_REFUNDED:
        return _parse_refund(event_id, occurred_at, obj)
    if event_type == SUBSCRIPTION_DELETED:
        return _parse_cancel(event_id, occurred_at, obj)
    return Ignored(event_id, event_type, "unhandled event type")
