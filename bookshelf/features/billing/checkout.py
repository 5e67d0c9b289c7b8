"""
Checkout initiator.

Starts a new subscription through a hosted checkout, or changes the plan
of a live subscription in place with an immediately invoiced proration.

A new checkout never touches the entitlement row: the user may abandon
the hosted flow, so activation waits for the provider's webhook.

An in-place change writes the row only after the proration invoice is
paid. If collection fails or times out, the price swap is reverted at
the provider before the error is raised, so the provider and the local
row never disagree about the plan.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Union
import logging

from bookshelf.core.errors import (
    InvalidPlanError,
    PaymentFailedError,
    ProviderUnavailableError,
)
from bookshelf.core.logging import log_event
from bookshelf.core.metrics import billing_checkout_sessions_total, billing_plan_changes_total
from bookshelf.features.billing.plans import PlanEntry, get_plan
from bookshelf.features.billing.provider import InvoiceSnapshot, SubscriptionSnapshot
from bookshelf.features.billing.service import BillingService
from bookshelf.features.billing.state import (
    PlanPaid,
    plan_of,
    subscription_ref_of,
    transition,
)
from bookshelf.features.billing.store import EntitlementRecord

logger = logging.getLogger("bookshelf.billing.checkout")


@dataclass(frozen=True)
class CheckoutRedirect:
    url: str


@dataclass(frozen=True)
class PlanChangeApplied:
    plan: str
    expires_at: datetime


CheckoutResult = Union[CheckoutRedirect, PlanChangeApplied]


def start_or_change_subscription(
    service: BillingService,
    user_id: str,
    requested_plan: str,
) -> CheckoutResult:
    """
    Start a subscription or change the plan of the current one.

    Returns:
        CheckoutRedirect when the user must complete a hosted checkout,
        PlanChangeApplied when an existing subscription was changed and paid

    Raises:
        InvalidPlanError: plan not in the catalog, or already the current plan
        PaymentFailedError: proration invoice declined (swap rolled back)
        ProviderUnavailableError: provider error or timeout (safe to retry)
        UserNotFoundError: no profile row for user_id
    """
    plan = get_plan(requested_plan)
    record = service.store.require(user_id)

    subscription_ref = subscription_ref_of(record.state)
    if subscription_ref:
        subscription = service.provider.retrieve_subscription(subscription_ref)
        if subscription is not None and subscription.is_active:
            return _change_plan_in_place(service, record, subscription, plan)
        log_event(
            "info",
            "checkout.subscription_not_active",
            user_id=user_id,
            extra={
                "subscription_ref": subscription_ref,
                "provider_status": subscription.status if subscription else "missing",
            },
        )

    return _start_checkout(service, record, plan)


def _start_checkout(service: BillingService, record: EntitlementRecord, plan: PlanEntry) -> CheckoutRedirect:
    customer_ref = record.state.customer_ref
    url = service.provider.create_checkout_session(
        price_ref=plan.price_ref,
        success_url=f"{service.app_url}/planos/sucesso?session_id={{CHECKOUT_SESSION_ID}}",
        cancel_url=f"{service.app_url}/planos",
        metadata={"user_id": record.user_id, "plan": plan.plan_id},
        customer_ref=customer_ref,
        customer_email=None if customer_ref else record.email,
    )
    if not url:
        raise ProviderUnavailableError("Checkout session has no redirect URL")

    billing_checkout_sessions_total.inc(labels={"plan": plan.plan_id})
    log_event("info", "checkout.session_created", user_id=record.user_id, extra={"plan": plan.plan_id})
    return CheckoutRedirect(url=url)


def _change_plan_in_place(
    service: BillingService,
    record: EntitlementRecord,
    subscription: SubscriptionSnapshot,
    plan: PlanEntry,
) -> PlanChangeApplied:
    if plan_of(record.state) == plan.plan_id and subscription.price_ref == plan.price_ref:
        raise InvalidPlanError(f"Already subscribed to {plan.plan_id}")
    if not subscription.item_ref or not subscription.price_ref:
        raise ProviderUnavailableError("Subscription has no billable item to change")

    provider = service.provider
    previous_price = subscription.price_ref
    invoice: Optional[InvoiceSnapshot] = None

    try:
        invoice = provider.swap_subscription_price(
            subscription,
            plan.price_ref,
            invoice_now=True,
            cancel_at_period_end=False,
        )
        if invoice is None:
            raise ProviderUnavailableError("Plan change produced no proration invoice")
        if not invoice.is_paid:
            invoice = provider.pay_invoice(invoice.invoice_ref)
        if not invoice.is_paid:
            raise PaymentFailedError(f"Invoice {invoice.invoice_ref} is {invoice.status}")
    except (PaymentFailedError, ProviderUnavailableError) as exc:
        billing_plan_changes_total.inc(labels={"result": exc.code})
        log_event(
            "warning",
            "checkout.plan_change_failed",
            user_id=record.user_id,
            error_code=exc.code,
            extra={"plan": plan.plan_id, "error": exc.message},
        )
        _rollback_price_swap(service, record, subscription, previous_price, invoice)
        raise

    paid_at = service.clock()
    change = PlanPaid(
        plan=plan.plan_id,
        paid_at=paid_at,
        customer_ref=subscription.customer_ref,
        subscription_ref=subscription.subscription_ref,
    )
    try:
        updated, _ = service.store.mutate(
            record.user_id,
            lambda current: transition(current.state, change),
            synced_at=paid_at,
        )
    except Exception:
        # Payment is already collected; rolling back would charge without access.
        logger.error(
            "checkout.plan_change_unrecorded",
            exc_info=True,
            extra={"user_id": record.user_id, "plan": plan.plan_id},
        )
        raise

    billing_plan_changes_total.inc(labels={"result": "applied"})
    log_event(
        "info",
        "checkout.plan_changed",
        user_id=record.user_id,
        extra={"plan": plan.plan_id, "invoice": invoice.invoice_ref},
    )
    return PlanChangeApplied(plan=plan.plan_id, expires_at=updated.state.expires_at)


def _rollback_price_swap(
    service: BillingService,
    record: EntitlementRecord,
    subscription: SubscriptionSnapshot,
    previous_price: str,
    invoice: Optional[InvoiceSnapshot],
) -> None:
    """Restore the previous price and cancel flag; void the unpaid invoice."""
    provider = service.provider
    try:
        provider.swap_subscription_price(
            subscription,
            previous_price,
            invoice_now=False,
            cancel_at_period_end=subscription.cancel_at_period_end,
        )
    except (PaymentFailedError, ProviderUnavailableError) as exc:
        logger.error(
            "checkout.rollback_failed",
            extra={
                "user_id": record.user_id,
                "subscription_ref": subscription.subscription_ref,
                "previous_price": previous_price,
                "error_code": exc.code,
            },
        )
        raise ProviderUnavailableError(
            "Plan change failed and could not be reverted; retry the request"
        ) from exc

    if invoice is not None and not invoice.is_paid:
        try:
            provider.void_invoice(invoice.invoice_ref)
        except ProviderUnavailableError:
            logger.warning(
                "checkout.void_invoice_failed",
                extra={"user_id": record.user_id, "invoice": invoice.invoice_ref},
            )
