"""
Billing service wiring.

The billing engine's collaborators (provider client, entitlement store,
clock) are bundled in a BillingService built once at application startup
and injected into the routes. Nothing here holds module-global client
state.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional
import logging

from fastapi import Request

from bookshelf.core.config import settings
from bookshelf.core.errors import BillingDisabledError
from bookshelf.features.billing.provider import BillingProvider
from bookshelf.features.billing.store import EntitlementStore

logger = logging.getLogger("bookshelf.billing")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class BillingService:
    provider: BillingProvider
    store: EntitlementStore = field(default_factory=EntitlementStore)
    clock: Callable[[], datetime] = utc_now
    app_url: str = field(default_factory=lambda: settings.APP_URL)


def billing_enabled() -> bool:
    """Billing is enabled when a Stripe secret key is configured."""
    return bool(settings.STRIPE_SECRET_KEY)


def build_billing_service() -> Optional[BillingService]:
    """
    Construct the process-wide billing service.

    Called once from the application lifespan. Returns None when billing
    is disabled so routes can answer 503 instead of failing at import.
    """
    if not billing_enabled():
        logger.warning("billing.disabled: STRIPE_SECRET_KEY not configured")
        return None

    from bookshelf.features.billing.stripe_provider import StripeProvider

    return BillingService(provider=StripeProvider())


def get_billing_service(request: Request) -> BillingService:
    """FastAPI dependency returning the service stored on app.state."""
    service = getattr(request.app.state, "billing", None)
    if service is None:
        raise BillingDisabledError(
            "Billing is not configured. Set STRIPE_SECRET_KEY environment variable."
        )
    return service


def get_entitlement_store(request: Request) -> EntitlementStore:
    """Store dependency that works with billing disabled (read-only routes)."""
    service = getattr(request.app.state, "billing", None)
    if service is not None:
        return service.store
    return EntitlementStore()
