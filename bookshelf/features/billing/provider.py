"""
Billing provider protocol.

Defines the interface the billing engine uses to talk to the payment
gateway. Business logic depends only on this protocol; the Stripe
implementation lives in stripe_provider.py and is constructed once per
process and injected.

Every method either returns a value or raises one of:
- ProviderUnavailableError: transport/timeout/gateway error, safe to retry
- PaymentFailedError: the gateway declined to collect payment
- EventUnverifiedError: webhook signature or payload invalid
"""
from typing import Protocol, Dict, Any, List, Optional
from dataclasses import dataclass, field
from datetime import datetime


ACTIVE_SUBSCRIPTION_STATUSES = frozenset({"active", "trialing"})


@dataclass(frozen=True)
class SubscriptionSnapshot:
    """Provider-side view of a recurring subscription."""
    subscription_ref: str
    status: str  # active, trialing, past_due, canceled, unpaid, incomplete...
    customer_ref: Optional[str]
    item_ref: Optional[str]
    price_ref: Optional[str]
    cancel_at_period_end: bool = False
    current_period_end: Optional[datetime] = None
    cancel_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_SUBSCRIPTION_STATUSES


@dataclass(frozen=True)
class InvoiceSnapshot:
    """Provider-side view of an invoice."""
    invoice_ref: str
    status: Optional[str]  # draft, open, paid, void, uncollectible
    number: Optional[str] = None
    amount_due: int = 0  # minor units
    amount_paid: int = 0  # minor units
    currency: Optional[str] = None
    created: Optional[datetime] = None
    invoice_pdf: Optional[str] = None
    hosted_invoice_url: Optional[str] = None

    @property
    def is_paid(self) -> bool:
        return self.status == "paid"


@dataclass(frozen=True)
class VerifiedWebhook:
    """A webhook payload whose signature has been verified."""
    payload: Dict[str, Any]
    raw_body: bytes = field(repr=False, default=b"")


class BillingProvider(Protocol):
    """
    Protocol for billing providers.

    Implementations must handle:
    - Hosted checkout session creation
    - Subscription retrieval, price swap and soft cancellation
    - Invoice payment, voiding and listing
    - Webhook signature verification
    """

    def create_checkout_session(
        self,
        price_ref: str,
        success_url: str,
        cancel_url: str,
        metadata: Dict[str, str],
        customer_ref: Optional[str] = None,
        customer_email: Optional[str] = None,
    ) -> str:
        """
        Create a hosted checkout session for a new subscription.

        Returns:
            Checkout redirect URL
        """
        ...

    def retrieve_subscription(self, subscription_ref: str) -> Optional[SubscriptionSnapshot]:
        """Fetch a subscription; None if the provider does not know it."""
        ...

    def swap_subscription_price(
        self,
        subscription: SubscriptionSnapshot,
        price_ref: str,
        *,
        invoice_now: bool,
        cancel_at_period_end: bool = False,
    ) -> Optional[InvoiceSnapshot]:
        """
        Replace the subscription item's price.

        Args:
            subscription: Current provider snapshot (item to update)
            price_ref: New price
            invoice_now: Invoice the prorated delta immediately
            cancel_at_period_end: Value to set for the soft-cancel flag

        Returns:
            The invoice generated for the proration when invoice_now is set
        """
        ...

    def pay_invoice(self, invoice_ref: str) -> InvoiceSnapshot:
        """Collect payment for an open invoice synchronously."""
        ...

    def void_invoice(self, invoice_ref: str) -> None:
        """Void an open invoice that will not be collected."""
        ...

    def cancel_at_period_end(self, subscription_ref: str) -> SubscriptionSnapshot:
        """Schedule cancellation at the end of the current period."""
        ...

    def list_invoices(self, customer_ref: str, limit: int = 20) -> List[InvoiceSnapshot]:
        """List a customer's invoices, most recent first."""
        ...

    def find_customer_by_email(self, email: str) -> Optional[str]:
        """Find a customer ref by billing email."""
        ...

    def verify_webhook(self, headers: Dict[str, str], body: bytes) -> VerifiedWebhook:
        """
        Verify webhook signature and decode the payload.

        Raises:
            EventUnverifiedError: If signature invalid or payload undecodable
        """
        ...
