# bookshelf/conftest.py
import json
import os
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

# Must be set before bookshelf.core.config builds its Settings
os.environ.setdefault("ENV", "test")
os.environ.setdefault("SKIP_ENV_VALIDATION", "1")

from sqlalchemy import update  # noqa: E402

from bookshelf.core.database import (  # noqa: E402
    create_all_tables,
    dispose_engine,
    get_db_session,
    init_engine,
    users_profile,
)
from bookshelf.core.errors import (  # noqa: E402
    EventUnverifiedError,
    PaymentFailedError,
    ProviderUnavailableError,
)
from bookshelf.core.metrics import METRICS  # noqa: E402
from bookshelf.features.billing.plans import get_plan  # noqa: E402
from bookshelf.features.billing.provider import (  # noqa: E402
    InvoiceSnapshot,
    SubscriptionSnapshot,
    VerifiedWebhook,
)
from bookshelf.features.billing.service import BillingService  # noqa: E402
from bookshelf.features.billing.store import EntitlementStore  # noqa: E402


NOW = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)


class FakeProvider:
    """In-memory BillingProvider that records every call."""

    def __init__(self):
        self.calls = []
        self.subscriptions = {}
        self.invoices_by_customer = {}
        self.customers_by_email = {}
        self.checkout_url = "https://checkout.stripe.test/c/pay/cs_test_1"
        # "paid" | "declined" | "timeout" | "open"
        self.pay_outcome = "paid"
        self.swap_error: Optional[Exception] = None
        self.rollback_error: Optional[Exception] = None
        self.void_error: Optional[Exception] = None
        self._invoice_seq = 0

    def add_subscription(self, ref, plan="explorer", status="active", customer_ref="cus_1",
                         cancel_at_period_end=False, current_period_end=None):
        snapshot = SubscriptionSnapshot(
            subscription_ref=ref,
            status=status,
            customer_ref=customer_ref,
            item_ref=f"si_{ref}",
            price_ref=get_plan(plan).price_ref,
            cancel_at_period_end=cancel_at_period_end,
            current_period_end=current_period_end or NOW + timedelta(days=30),
        )
        self.subscriptions[ref] = snapshot
        return snapshot

    def calls_named(self, name):
        return [c for c in self.calls if c[0] == name]

    def create_checkout_session(self, price_ref, success_url, cancel_url, metadata,
                                customer_ref=None, customer_email=None):
        self.calls.append(("create_checkout_session", {
            "price_ref": price_ref,
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": metadata,
            "customer_ref": customer_ref,
            "customer_email": customer_email,
        }))
        return self.checkout_url

    def retrieve_subscription(self, subscription_ref):
        self.calls.append(("retrieve_subscription", subscription_ref))
        return self.subscriptions.get(subscription_ref)

    def swap_subscription_price(self, subscription, price_ref, *, invoice_now, cancel_at_period_end=False):
        self.calls.append(("swap_subscription_price", {
            "subscription_ref": subscription.subscription_ref,
            "price_ref": price_ref,
            "invoice_now": invoice_now,
            "cancel_at_period_end": cancel_at_period_end,
        }))
        error = self.swap_error if invoice_now else self.rollback_error
        if error is not None:
            raise error
        self.subscriptions[subscription.subscription_ref] = replace(
            self.subscriptions[subscription.subscription_ref],
            price_ref=price_ref,
            cancel_at_period_end=cancel_at_period_end,
        )
        if not invoice_now:
            return None
        self._invoice_seq += 1
        return InvoiceSnapshot(invoice_ref=f"in_{self._invoice_seq}", status="open", amount_due=1990)

    def pay_invoice(self, invoice_ref):
        self.calls.append(("pay_invoice", invoice_ref))
        if self.pay_outcome == "declined":
            raise PaymentFailedError("Payment declined: card_declined")
        if self.pay_outcome == "timeout":
            raise ProviderUnavailableError("Stripe invoice payment failed: timeout")
        status = "paid" if self.pay_outcome == "paid" else "open"
        return InvoiceSnapshot(invoice_ref=invoice_ref, status=status, amount_paid=1990)

    def void_invoice(self, invoice_ref):
        self.calls.append(("void_invoice", invoice_ref))
        if self.void_error is not None:
            raise self.void_error

    def cancel_at_period_end(self, subscription_ref):
        self.calls.append(("cancel_at_period_end", subscription_ref))
        snapshot = replace(
            self.subscriptions[subscription_ref],
            cancel_at_period_end=True,
        )
        snapshot = replace(snapshot, cancel_at=snapshot.current_period_end)
        self.subscriptions[subscription_ref] = snapshot
        return snapshot

    def list_invoices(self, customer_ref, limit=20):
        self.calls.append(("list_invoices", customer_ref, limit))
        return self.invoices_by_customer.get(customer_ref, [])[:limit]

    def find_customer_by_email(self, email):
        self.calls.append(("find_customer_by_email", email))
        return self.customers_by_email.get(email)

    def verify_webhook(self, headers, body):
        if headers.get("stripe-signature") != "valid":
            raise EventUnverifiedError("Invalid signature")
        return VerifiedWebhook(payload=json.loads(body), raw_body=body)


@pytest.fixture(autouse=True)
def sqlite_db():
    """Fresh in-memory database per test."""
    init_engine("sqlite://")
    create_all_tables()
    yield
    dispose_engine()


@pytest.fixture(autouse=True)
def reset_metrics():
    METRICS.reset()
    yield


@pytest.fixture
def fake_provider():
    return FakeProvider()


@pytest.fixture
def store():
    return EntitlementStore()


@pytest.fixture
def service(fake_provider, store):
    return BillingService(
        provider=fake_provider,
        store=store,
        clock=lambda: NOW,
        app_url="https://app.test",
    )


@pytest.fixture
def make_user(store):
    """Create a profile row, optionally with entitlement columns preset."""

    def _make(user_id="user_alice", email="alice@example.com", plan=None, expires_at=None,
              customer_ref=None, subscription_ref=None, cancel_at_period_end=False,
              is_admin=False, synced_at=None):
        store.ensure_profile(user_id, email=email, full_name=None, is_admin=is_admin)
        with get_db_session() as session:
            session.execute(
                update(users_profile)
                .where(users_profile.c.user_id == user_id)
                .values(
                    plan=plan,
                    subscription_expires_at=expires_at,
                    stripe_customer_id=customer_ref,
                    stripe_subscription_id=subscription_ref,
                    cancel_at_period_end=cancel_at_period_end,
                    entitlement_synced_at=synced_at,
                )
            )
            session.commit()
        return store.require(user_id)

    return _make


@pytest.fixture
def client(service):
    from fastapi.testclient import TestClient
    from bookshelf.main import app

    app.state.billing = service
    yield TestClient(app)
    app.state.billing = None
