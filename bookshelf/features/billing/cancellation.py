"""
Cancellation requester.

Schedules a soft cancel: the provider stops renewing at period end and
the entitlement stays usable until the subscription-deleted webhook
arrives. Locally only the pending-cancellation flag changes.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from bookshelf.core.errors import NoActiveSubscriptionError
from bookshelf.core.logging import log_event
from bookshelf.core.metrics import billing_cancellations_total
from bookshelf.features.billing.service import BillingService
from bookshelf.features.billing.state import (
    CancellationScheduled,
    expires_at_of,
    subscription_ref_of,
    transition,
)


@dataclass(frozen=True)
class CancellationConfirmation:
    effective_at: Optional[datetime]


def request_cancellation(service: BillingService, user_id: str) -> CancellationConfirmation:
    """
    Ask the provider to cancel the user's subscription at period end.

    Raises:
        NoActiveSubscriptionError: the user has no subscription ref
        ProviderUnavailableError: provider error or timeout
    """
    record = service.store.require(user_id)
    subscription_ref = subscription_ref_of(record.state)
    if not subscription_ref:
        raise NoActiveSubscriptionError("No active subscription to cancel")

    subscription = service.provider.cancel_at_period_end(subscription_ref)
    effective_at = subscription.cancel_at or subscription.current_period_end

    # The provider call already succeeded; a row that lost its ref meanwhile stays as is.
    def compute(current):
        if subscription_ref_of(current.state) != subscription_ref:
            return None
        return transition(current.state, CancellationScheduled(at=service.clock()))

    updated, _ = service.store.mutate(user_id, compute)

    billing_cancellations_total.inc()
    log_event(
        "info",
        "billing.cancellation_scheduled",
        user_id=user_id,
        extra={"subscription_ref": subscription_ref, "effective_at": str(effective_at)},
    )
    return CancellationConfirmation(effective_at=effective_at or expires_at_of(updated.state))
