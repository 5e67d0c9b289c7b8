"""
Stripe billing provider implementation.

Implements the BillingProvider protocol with an explicitly constructed
StripeClient (no module-level api_key). Every network call is bounded by
STRIPE_TIMEOUT_SECONDS and Stripe errors are mapped onto the billing
error taxonomy.
"""
import json
import logging
from typing import Dict, Any, List, Optional
from datetime import datetime, timezone

import stripe

from bookshelf.core.config import settings
from bookshelf.core.errors import (
    EventUnverifiedError,
    PaymentFailedError,
    ProviderUnavailableError,
)
from bookshelf.features.billing.provider import (
    InvoiceSnapshot,
    SubscriptionSnapshot,
    VerifiedWebhook,
)

logger = logging.getLogger("bookshelf.billing.stripe")


def _get(obj: Any, key: str, default: Any = None) -> Any:
    """Item access that tolerates missing keys on StripeObjects and dicts."""
    if obj is None:
        return default
    try:
        value = obj[key]
    except (KeyError, TypeError, IndexError):
        return default
    return default if value is None else value


def _ts(value: Optional[int]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), timezone.utc)


def _to_invoice(obj: Any) -> InvoiceSnapshot:
    if isinstance(obj, str):
        return InvoiceSnapshot(invoice_ref=obj, status=None)
    return InvoiceSnapshot(
        invoice_ref=_get(obj, "id"),
        status=_get(obj, "status"),
        number=_get(obj, "number"),
        amount_due=_get(obj, "amount_due", 0),
        amount_paid=_get(obj, "amount_paid", 0),
        currency=_get(obj, "currency"),
        created=_ts(_get(obj, "created")),
        invoice_pdf=_get(obj, "invoice_pdf"),
        hosted_invoice_url=_get(obj, "hosted_invoice_url"),
    )


def _to_subscription(obj: Any) -> SubscriptionSnapshot:
    items = _get(_get(obj, "items"), "data", [])
    item = items[0] if items else None
    # Newer API versions report the billing period on the item
    period_end = _get(obj, "current_period_end") or _get(item, "current_period_end")
    customer = _get(obj, "customer")
    if customer is not None and not isinstance(customer, str):
        customer = _get(customer, "id")
    return SubscriptionSnapshot(
        subscription_ref=_get(obj, "id"),
        status=_get(obj, "status", "unknown"),
        customer_ref=customer,
        item_ref=_get(item, "id"),
        price_ref=_get(_get(item, "price"), "id"),
        cancel_at_period_end=bool(_get(obj, "cancel_at_period_end", False)),
        current_period_end=_ts(period_end),
        cancel_at=_ts(_get(obj, "cancel_at")),
    )


class StripeProvider:
    """Stripe implementation of BillingProvider protocol."""

    def __init__(
        self,
        secret_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        client: Optional[stripe.StripeClient] = None,
        timeout_seconds: Optional[float] = None,
        max_network_retries: Optional[int] = None,
        webhook_tolerance: Optional[int] = None,
    ):
        """
        Initialize Stripe provider.

        Args:
            secret_key: Stripe secret key (defaults to STRIPE_SECRET_KEY)
            webhook_secret: Stripe webhook secret (defaults to STRIPE_WEBHOOK_SECRET)
            client: Prebuilt StripeClient (tests)
            timeout_seconds: Per-request timeout (defaults to STRIPE_TIMEOUT_SECONDS)
            max_network_retries: Stripe SDK retries on transport errors
            webhook_tolerance: Max signature age in seconds
        """
        self.secret_key = secret_key or settings.STRIPE_SECRET_KEY
        self.webhook_secret = webhook_secret or settings.STRIPE_WEBHOOK_SECRET
        self.webhook_tolerance = webhook_tolerance or settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS

        if client is None:
            if not self.secret_key:
                raise ProviderUnavailableError("STRIPE_SECRET_KEY not configured", code="billing_disabled")
            client = stripe.StripeClient(
                self.secret_key,
                http_client=stripe.RequestsClient(
                    timeout=timeout_seconds or settings.STRIPE_TIMEOUT_SECONDS,
                ),
                max_network_retries=(
                    max_network_retries
                    if max_network_retries is not None
                    else settings.STRIPE_MAX_NETWORK_RETRIES
                ),
            )
        self._client = client

    def create_checkout_session(
        self,
        price_ref: str,
        success_url: str,
        cancel_url: str,
        metadata: Dict[str, str],
        customer_ref: Optional[str] = None,
        customer_email: Optional[str] = None,
    ) -> str:
        """Create Stripe checkout session (subscription mode)."""
        params: Dict[str, Any] = {
            "mode": "subscription",
            "payment_method_types": ["card"],
            "line_items": [{"price": price_ref, "quantity": 1}],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": metadata,
            # Copy correlation metadata onto the subscription itself
            "subscription_data": {"metadata": metadata},
        }
        if customer_ref:
            params["customer"] = customer_ref
        elif customer_email:
            params["customer_email"] = customer_email

        try:
            session = self._client.checkout.sessions.create(params=params)
        except stripe.StripeError as e:
            raise ProviderUnavailableError(f"Stripe checkout session creation failed: {e}")
        return _get(session, "url")

    def retrieve_subscription(self, subscription_ref: str) -> Optional[SubscriptionSnapshot]:
        try:
            subscription = self._client.subscriptions.retrieve(subscription_ref)
        except stripe.InvalidRequestError as e:
            if getattr(e, "code", None) == "resource_missing":
                logger.info("stripe.subscription.missing", extra={"subscription_ref": subscription_ref})
                return None
            raise ProviderUnavailableError(f"Stripe subscription retrieval failed: {e}")
        except stripe.StripeError as e:
            raise ProviderUnavailableError(f"Stripe subscription retrieval failed: {e}")
        return _to_subscription(subscription)

    def swap_subscription_price(
        self,
        subscription: SubscriptionSnapshot,
        price_ref: str,
        *,
        invoice_now: bool,
        cancel_at_period_end: bool = False,
    ) -> Optional[InvoiceSnapshot]:
        params: Dict[str, Any] = {
            "items": [{"id": subscription.item_ref, "price": price_ref}],
            "proration_behavior": "always_invoice" if invoice_now else "none",
            "cancel_at_period_end": cancel_at_period_end,
        }
        if invoice_now:
            # Keep the swap even if the automatic charge fails; payment is
            # collected explicitly through pay_invoice.
            params["payment_behavior"] = "allow_incomplete"
            params["expand"] = ["latest_invoice"]

        try:
            updated = self._client.subscriptions.update(subscription.subscription_ref, params=params)
        except stripe.CardError as e:
            raise PaymentFailedError(f"Payment declined: {e.user_message or e}")
        except stripe.StripeError as e:
            raise ProviderUnavailableError(f"Stripe subscription update failed: {e}")

        if not invoice_now:
            return None
        latest = _get(updated, "latest_invoice")
        return _to_invoice(latest) if latest else None

    def pay_invoice(self, invoice_ref: str) -> InvoiceSnapshot:
        try:
            invoice = self._client.invoices.pay(invoice_ref)
        except stripe.CardError as e:
            raise PaymentFailedError(f"Payment declined: {e.user_message or e}")
        except stripe.StripeError as e:
            raise ProviderUnavailableError(f"Stripe invoice payment failed: {e}")
        return _to_invoice(invoice)

    def void_invoice(self, invoice_ref: str) -> None:
        try:
            self._client.invoices.void_invoice(invoice_ref)
        except stripe.StripeError as e:
            raise ProviderUnavailableError(f"Stripe invoice void failed: {e}")

    def cancel_at_period_end(self, subscription_ref: str) -> SubscriptionSnapshot:
        try:
            subscription = self._client.subscriptions.update(
                subscription_ref,
                params={"cancel_at_period_end": True},
            )
        except stripe.StripeError as e:
            raise ProviderUnavailableError(f"Stripe cancellation failed: {e}")
        return _to_subscription(subscription)

    def list_invoices(self, customer_ref: str, limit: int = 20) -> List[InvoiceSnapshot]:
        try:
            response = self._client.invoices.list(params={"customer": customer_ref, "limit": limit})
        except stripe.StripeError as e:
            raise ProviderUnavailableError(f"Stripe invoice listing failed: {e}")
        return [_to_invoice(invoice) for invoice in _get(response, "data", [])]

    def find_customer_by_email(self, email: str) -> Optional[str]:
        try:
            customers = self._client.customers.list(params={"email": email, "limit": 1})
        except stripe.StripeError as e:
            raise ProviderUnavailableError(f"Stripe customer lookup failed: {e}")
        data = _get(customers, "data", [])
        return _get(data[0], "id") if data else None

    def verify_webhook(self, headers: Dict[str, str], body: bytes) -> VerifiedWebhook:
        """Verify Stripe webhook signature and decode the event payload."""
        if not self.webhook_secret:
            raise EventUnverifiedError("STRIPE_WEBHOOK_SECRET not configured")

        sig_header = headers.get("stripe-signature") or headers.get("Stripe-Signature")
        if not sig_header:
            raise EventUnverifiedError("Missing stripe-signature header")

        try:
            payload_text = body.decode("utf-8")
        except UnicodeDecodeError as e:
            raise EventUnverifiedError(f"Invalid payload encoding: {e}")

        try:
            stripe.WebhookSignature.verify_header(
                payload_text, sig_header, self.webhook_secret, self.webhook_tolerance
            )
        except stripe.SignatureVerificationError as e:
            raise EventUnverifiedError(f"Invalid signature: {e}")

        try:
            payload = json.loads(payload_text)
        except ValueError as e:
            raise EventUnverifiedError(f"Invalid payload: {e}")
        if not isinstance(payload, dict):
            raise EventUnverifiedError("Invalid payload: expected a JSON object")

        return VerifiedWebhook(payload=payload, raw_body=body)
