"""
Billing API routes.

- POST /v1/billing/checkout: Start a checkout or change plan in place
- POST /v1/billing/cancel: Cancel at period end
- GET  /v1/billing/status: Entitlement projection
- GET  /v1/billing/subscription-status: Live provider subscription status
- GET  /v1/billing/invoices: Recent invoices
- POST /v1/billing/webhook: Stripe webhooks
- POST /v1/billing/partner-webhook: Partner activation by email
"""
from datetime import datetime
from typing import Any, Dict, List, Optional
import hmac

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool

from bookshelf.core.auth import get_current_user_id
from bookshelf.core.config import settings
from bookshelf.features.billing.cancellation import request_cancellation
from bookshelf.features.billing.checkout import CheckoutRedirect, start_or_change_subscription
from bookshelf.features.billing.queries import (
    get_billing_status,
    get_subscription_status,
    list_invoice_history,
)
from bookshelf.features.billing.reconciler import activate_by_email, process_webhook
from bookshelf.features.billing.service import (
    BillingService,
    get_billing_service,
    get_entitlement_store,
)
from bookshelf.features.billing.state import expires_at_of, plan_of
from bookshelf.features.billing.store import EntitlementStore


router = APIRouter(prefix="/billing", tags=["billing"])


class CheckoutRequest(BaseModel):
    """Request to start or change a subscription."""
    plan: str


class CheckoutResponse(BaseModel):
    """Either a hosted checkout redirect or an immediate plan change."""
    status: str  # "redirect" | "updated"
    url: Optional[str] = None
    plan: Optional[str] = None
    subscription_expires_at: Optional[datetime] = None


class CancelResponse(BaseModel):
    effective_at: Optional[datetime]
    message: str


class BillingStatusResponse(BaseModel):
    """User entitlement status."""
    plan: Optional[str]
    subscription_expires_at: Optional[str]  # ISO8601
    active: bool
    cancel_at_period_end: bool
    has_subscription: bool
    is_admin: bool


class InvoiceItem(BaseModel):
    id: str
    number: Optional[str] = None
    amount: float
    currency: Optional[str] = None
    status: Optional[str] = None
    created: Optional[str] = None
    invoice_pdf: Optional[str] = None
    hosted_invoice_url: Optional[str] = None


class InvoiceListResponse(BaseModel):
    invoices: List[InvoiceItem]


class WebhookResponse(BaseModel):
    received: bool
    outcome: str


class PartnerActivationRequest(BaseModel):
    email: str
    plan: str
    name: Optional[str] = None


class PartnerActivationResponse(BaseModel):
    success: bool
    user_id: str
    plan: Optional[str]
    subscription_expires_at: Optional[datetime]


@router.post("/checkout", response_model=CheckoutResponse)
def create_checkout(
    request: CheckoutRequest,
    user_id: str = Depends(get_current_user_id),
    service: BillingService = Depends(get_billing_service),
):
    """
    Start a hosted checkout, or change the plan of an active subscription.

    Returns:
        {"status": "redirect", "url": "https://checkout.stripe.com/..."}
        {"status": "updated", "plan": "...", "subscription_expires_at": "..."}

    Errors:
        400: Invalid plan
        402: Proration payment declined
        404: User not found
        503: Billing disabled or Stripe unavailable
    """
    result = start_or_change_subscription(service, user_id, request.plan)
    if isinstance(result, CheckoutRedirect):
        return CheckoutResponse(status="redirect", url=result.url)
    return CheckoutResponse(
        status="updated",
        plan=result.plan,
        subscription_expires_at=result.expires_at,
    )


@router.post("/cancel", response_model=CancelResponse)
def cancel_subscription(
    user_id: str = Depends(get_current_user_id),
    service: BillingService = Depends(get_billing_service),
):
    """Schedule cancellation at period end; access continues until then."""
    confirmation = request_cancellation(service, user_id)
    return CancelResponse(
        effective_at=confirmation.effective_at,
        message="Subscription will be cancelled at the end of the current period.",
    )


@router.get("/status", response_model=BillingStatusResponse)
def billing_status(
    user_id: str = Depends(get_current_user_id),
    store: EntitlementStore = Depends(get_entitlement_store),
):
    """Get the user's entitlement. Works with billing disabled."""
    return get_billing_status(store, user_id)


@router.get("/subscription-status")
def subscription_status(
    user_id: str = Depends(get_current_user_id),
    service: BillingService = Depends(get_billing_service),
) -> Dict[str, Any]:
    return get_subscription_status(service.provider, service.store, user_id)


@router.get("/invoices", response_model=InvoiceListResponse)
def invoices(
    user_id: str = Depends(get_current_user_id),
    service: BillingService = Depends(get_billing_service),
):
    return {"invoices": list_invoice_history(service.provider, service.store, user_id)}


@router.post("/webhook", response_model=WebhookResponse)
async def stripe_webhook(
    request: Request,
    service: BillingService = Depends(get_billing_service),
):
    """
    Handle Stripe webhook events.

    Errors:
        400: Signature verification failed (never dispatched)
        503: Transient failure, Stripe will redeliver
    """
    body = await request.body()
    headers = dict(request.headers)
    result = await run_in_threadpool(process_webhook, service, headers, body)
    return {"received": True, "outcome": result.outcome}


@router.post("/partner-webhook", response_model=PartnerActivationResponse)
def partner_webhook(
    request: PartnerActivationRequest,
    store: EntitlementStore = Depends(get_entitlement_store),
    x_webhook_secret: Optional[str] = Header(None),
):
    """Activate a plan for the account registered with the given email."""
    expected = settings.PARTNER_WEBHOOK_SECRET
    if not expected:
        raise HTTPException(status_code=503, detail="Partner webhook not configured (set PARTNER_WEBHOOK_SECRET)")
    if not x_webhook_secret or not hmac.compare_digest(x_webhook_secret, expected):
        raise HTTPException(status_code=401, detail="Invalid webhook secret")

    record = activate_by_email(store, request.email, request.plan, request.name)
    return PartnerActivationResponse(
        success=True,
        user_id=record.user_id,
        plan=plan_of(record.state),
        subscription_expires_at=expires_at_of(record.state),
    )
