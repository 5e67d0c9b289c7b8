"""
Entitlement and billing read models.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from bookshelf.features.billing.plans import plan_for_price
from bookshelf.features.billing.provider import BillingProvider
from bookshelf.features.billing.state import (
    Free,
    PendingCancellation,
    expires_at_of,
    plan_of,
    subscription_ref_of,
)
from bookshelf.features.billing.store import EntitlementRecord, EntitlementStore

INVOICE_HISTORY_LIMIT = 20


def is_active(record: EntitlementRecord, now: Optional[datetime] = None) -> bool:
    """True iff the user is an admin or holds a plan expiring strictly after now."""
    if record.is_admin:
        return True
    if isinstance(record.state, Free):
        return False
    now = now or datetime.now(timezone.utc)
    return record.state.expires_at > now


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def get_billing_status(store: EntitlementStore, user_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Get user's entitlement projection.

    Returns:
        {
            "plan": str | None,
            "subscription_expires_at": ISO8601 | None,
            "active": bool,
            "cancel_at_period_end": bool,
            "has_subscription": bool,
            "is_admin": bool
        }
    """
    record = store.require(user_id)
    return {
        "plan": plan_of(record.state),
        "subscription_expires_at": _iso(expires_at_of(record.state)),
        "active": is_active(record, now),
        "cancel_at_period_end": isinstance(record.state, PendingCancellation),
        "has_subscription": subscription_ref_of(record.state) is not None,
        "is_admin": record.is_admin,
    }


def get_subscription_status(provider: BillingProvider, store: EntitlementStore, user_id: str) -> Dict[str, Any]:
    """Live provider view of the user's subscription; status None when there is none."""
    record = store.require(user_id)
    subscription_ref = subscription_ref_of(record.state)
    if not subscription_ref:
        return {"status": None}

    subscription = provider.retrieve_subscription(subscription_ref)
    if subscription is None:
        return {"status": None}

    return {
        "status": subscription.status,
        "plan": plan_for_price(subscription.price_ref),
        "cancel_at_period_end": subscription.cancel_at_period_end,
        "current_period_end": _iso(subscription.current_period_end),
        "cancel_at": _iso(subscription.cancel_at),
    }


def list_invoice_history(provider: BillingProvider, store: EntitlementStore, user_id: str) -> List[Dict[str, Any]]:
    """
    Recent invoices for the user, newest first as the provider returns them.

    Without a stored customer ref the provider customer is looked up by the
    account email. Amounts are converted from minor units.
    """
    record = store.get(user_id)
    if record is None:
        return []

    customer_ref = record.state.customer_ref
    if not customer_ref and record.email:
        customer_ref = provider.find_customer_by_email(record.email)
    if not customer_ref:
        return []

    invoices = provider.list_invoices(customer_ref, limit=INVOICE_HISTORY_LIMIT)
    return [
        {
            "id": invoice.invoice_ref,
            "number": invoice.number,
            "amount": invoice.amount_paid / 100,
            "currency": invoice.currency,
            "status": invoice.status,
            "created": _iso(invoice.created),
            "invoice_pdf": invoice.invoice_pdf,
            "hosted_invoice_url": invoice.hosted_invoice_url,
        }
        for invoice in invoices
    ]
