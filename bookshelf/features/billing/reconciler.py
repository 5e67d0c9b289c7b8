"""
Webhook reconciler.

Applies verified provider events to the entitlement store.

Processing (idempotent):
1. Verify signature (EventUnverifiedError on failure, nothing recorded)
2. Record the event in billing_events (skip if already processed)
3. Decode into a ProviderEvent and apply it through the state machine
4. Mark the event processed with its outcome

A transient failure leaves the event unprocessed with the error recorded
and propagates, so the route answers 503 and the provider redelivers.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Optional
import hashlib
import logging

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from bookshelf.core.database import billing_events, get_db_session
from bookshelf.core.errors import (
    ConcurrentModificationError,
    StoreUnavailableError,
    UserNotFoundError,
)
from bookshelf.core.logging import log_event
from bookshelf.core.metrics import billing_webhook_events_total
from bookshelf.features.billing.events import (
    Cancelled,
    Ignored,
    Malformed,
    PaymentConfirmed,
    ProviderEvent,
    Refunded,
    parse_event,
)
from bookshelf.features.billing.plans import get_plan
from bookshelf.features.billing.service import BillingService
from bookshelf.features.billing.state import (
    Free,
    PlanPaid,
    Terminated,
    plan_of,
    subscription_ref_of,
    transition,
)
from bookshelf.features.billing.store import EntitlementRecord, EntitlementStore

logger = logging.getLogger("bookshelf.billing.webhook")

APPLIED = "applied"
DUPLICATE = "duplicate"
STALE = "stale"
IGNORED = "ignored"
UNMATCHED = "unmatched"
MALFORMED = "malformed"


@dataclass(frozen=True)
class WebhookOutcome:
    event_id: str
    event_type: str
    outcome: str
    user_id: Optional[str] = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _record_received(event_id: str, event_type: str, payload_hash: str) -> bool:
    """
    Insert the event log row. Returns False if the event was already processed.

    An unprocessed row from an earlier failed attempt is reused so the
    redelivery gets applied.
    """
    try:
        with get_db_session() as session:
            existing = session.execute(
                select(billing_events.c.processed).where(
                    billing_events.c.provider_event_id == event_id
                )
            ).fetchone()
            if existing:
                return not existing.processed

            try:
                session.execute(
                    insert(billing_events).values(
                        provider_event_id=event_id,
                        event_type=event_type,
                        payload_hash=payload_hash,
                        processed=False,
                    )
                )
                session.commit()
            except IntegrityError:
                # Concurrent delivery of the same event; the other one applies it
                session.rollback()
                return False
    except SQLAlchemyError as e:
        raise StoreUnavailableError(f"Event log unavailable: {e}")
    return True


def _mark_processed(event_id: str, outcome: str, user_id: Optional[str]) -> None:
    try:
        with get_db_session() as session:
            session.execute(
                update(billing_events)
                .where(billing_events.c.provider_event_id == event_id)
                .values(
                    processed=True,
                    processed_at=_utcnow(),
                    outcome=outcome,
                    user_id=user_id,
                    error=None,
                )
            )
            session.commit()
    except SQLAlchemyError as e:
        raise StoreUnavailableError(f"Event log unavailable: {e}")


def _mark_failed(event_id: str, error: Exception) -> None:
    try:
        with get_db_session() as session:
            session.execute(
                update(billing_events)
                .where(billing_events.c.provider_event_id == event_id)
                .values(error=str(error)[:2000])
            )
            session.commit()
    except SQLAlchemyError:
        logger.error("webhook.mark_failed_error", exc_info=True, extra={"event_id": event_id})


def process_webhook(service: BillingService, headers: Dict[str, str], body: bytes) -> WebhookOutcome:
    """
    Verify, log, and apply one inbound webhook delivery.

    Raises:
        EventUnverifiedError: signature invalid (400, never dispatched)
        StoreUnavailableError: transient failure, provider should retry (503)
    """
    verified = service.provider.verify_webhook(headers, body)
    event = parse_event(verified.payload)
    event_type = event.event_type

    if not event.event_id:
        # Nothing to key the event log on
        _count(event_type, MALFORMED)
        log_event("warning", "webhook.malformed", event_type=event_type, extra={"reason": event.reason})
        return WebhookOutcome(event_id="", event_type=event_type, outcome=MALFORMED)

    payload_hash = hashlib.sha256(body).hexdigest()
    if not _record_received(event.event_id, event_type, payload_hash):
        _count(event_type, DUPLICATE)
        log_event("info", "webhook.duplicate", event_type=event_type, extra={"event_id": event.event_id})
        return WebhookOutcome(event_id=event.event_id, event_type=event_type, outcome=DUPLICATE)

    try:
        outcome, user_id = apply_provider_event(service.store, event)
    except ConcurrentModificationError as e:
        _mark_failed(event.event_id, e)
        raise StoreUnavailableError(f"Entitlement busy, retry later: {e.message}") from e
    except Exception as e:
        _mark_failed(event.event_id, e)
        raise

    _mark_processed(event.event_id, outcome, user_id)
    _count(event_type, outcome)
    return WebhookOutcome(event_id=event.event_id, event_type=event_type, outcome=outcome, user_id=user_id)


def _count(event_type: str, outcome: str) -> None:
    billing_webhook_events_total.inc(labels={"type": event_type, "outcome": outcome})


def apply_provider_event(store: EntitlementStore, event: ProviderEvent):
    """
    Apply one decoded event to the store.

    Returns:
        (outcome, user_id or None)
    """
    if isinstance(event, PaymentConfirmed):
        return _apply_payment(store, event)
    if isinstance(event, Refunded):
        return _apply_refund(store, event)
    if isinstance(event, Cancelled):
        return _apply_cancel(store, event)
    if isinstance(event, Malformed):
        log_event(
            "warning",
            "webhook.malformed",
            event_type=event.event_type,
            extra={"event_id": event.event_id, "reason": event.reason},
        )
        return MALFORMED, None
    if isinstance(event, Ignored):
        log_event(
            "info",
            "webhook.ignored",
            event_type=event.event_type,
            extra={"event_id": event.event_id, "reason": event.reason},
        )
        return IGNORED, None
    raise TypeError(f"Unknown provider event: {event!r}")


def _is_stale(record: EntitlementRecord, occurred_at: datetime) -> bool:
    return record.synced_at is not None and occurred_at < record.synced_at


def _apply_payment(store: EntitlementStore, event: PaymentConfirmed):
    if store.get(event.user_id) is None:
        log_event(
            "warning",
            "webhook.unmatched",
            user_id=event.user_id,
            event_type=event.event_type,
            extra={"event_id": event.event_id},
        )
        return UNMATCHED, None

    outcome = {"value": APPLIED}

    def compute(record: EntitlementRecord):
        if _is_stale(record, event.occurred_at):
            outcome["value"] = STALE
            return None
        state = record.state
        if (
            plan_of(state) == event.plan
            and subscription_ref_of(state) == event.subscription_ref
            and state.customer_ref == event.customer_ref
        ):
            outcome["value"] = DUPLICATE
            return None
        return transition(
            state,
            PlanPaid(
                plan=event.plan,
                paid_at=event.occurred_at,
                customer_ref=event.customer_ref,
                subscription_ref=event.subscription_ref,
            ),
        )

    record, _ = store.mutate(event.user_id, compute, synced_at=event.occurred_at)
    log_event(
        "info",
        f"webhook.payment_confirmed.{outcome['value']}",
        user_id=event.user_id,
        event_type=event.event_type,
        extra={"event_id": event.event_id, "plan": event.plan},
    )
    return outcome["value"], record.user_id


def _terminate(store: EntitlementStore, record: EntitlementRecord, event, guard) -> str:
    """Move a matched row to Free unless guard(record) reports a reason to skip."""
    outcome = {"value": APPLIED}

    def compute(current: EntitlementRecord):
        skip = guard(current)
        if skip:
            outcome["value"] = skip
            return None
        if isinstance(current.state, Free):
            # Nothing to end, but an older payment must not revive the row
            outcome["value"] = DUPLICATE
            return current.state
        return transition(current.state, Terminated(at=event.occurred_at))

    store.mutate(record.user_id, compute, synced_at=event.occurred_at)
    return outcome["value"]


def _apply_refund(store: EntitlementStore, event: Refunded):
    record = None
    if event.customer_ref:
        record = store.find_by_customer_ref(event.customer_ref)
    if record is None and event.email:
        record = store.find_by_email(event.email)
    if record is None:
        log_event(
            "warning",
            "webhook.refund_unmatched",
            event_type=event.event_type,
            extra={"event_id": event.event_id, "customer_ref": event.customer_ref},
        )
        return UNMATCHED, None

    def guard(current: EntitlementRecord) -> Optional[str]:
        if _is_stale(current, event.occurred_at):
            return STALE
        return None

    outcome = _terminate(store, record, event, guard)
    log_event(
        "info",
        f"webhook.refunded.{outcome}",
        user_id=record.user_id,
        event_type=event.event_type,
        extra={"event_id": event.event_id},
    )
    return outcome, record.user_id


def _apply_cancel(store: EntitlementStore, event: Cancelled):
    record = None
    if event.subscription_ref:
        record = store.find_by_subscription_ref(event.subscription_ref)
    if record is None and event.customer_ref:
        record = store.find_by_customer_ref(event.customer_ref)
    if record is None:
        log_event(
            "warning",
            "webhook.cancel_unmatched",
            event_type=event.event_type,
            extra={"event_id": event.event_id, "subscription_ref": event.subscription_ref},
        )
        return UNMATCHED, None

    def guard(current: EntitlementRecord) -> Optional[str]:
        current_ref = subscription_ref_of(current.state)
        if current_ref and event.subscription_ref and current_ref != event.subscription_ref:
            # An older subscription of this customer ended
            return STALE
        return None

    outcome = _terminate(store, record, event, guard)
    log_event(
        "info",
        f"webhook.cancelled.{outcome}",
        user_id=record.user_id,
        event_type=event.event_type,
        extra={"event_id": event.event_id},
    )
    return outcome, record.user_id


def activate_by_email(
    store: EntitlementStore,
    email: str,
    plan: str,
    name: Optional[str] = None,
    now: Optional[datetime] = None,
) -> EntitlementRecord:
    """
    Partner activation: grant a plan to the account registered with email.

    Provider refs already on the row are kept.

    Raises:
        InvalidPlanError: plan not in catalog
        UserNotFoundError: no account with that email
    """
    plan_entry = get_plan(plan)
    record = store.find_by_email(email)
    if record is None:
        raise UserNotFoundError(f"No account registered with {email.lower()}")

    paid_at = now or _utcnow()
    profile_values = {"full_name": name} if name else None
    updated, _ = store.mutate(
        record.user_id,
        lambda current: transition(current.state, PlanPaid(plan=plan_entry.plan_id, paid_at=paid_at)),
        synced_at=paid_at,
        profile_values=profile_values,
    )
    log_event("info", "partner.activated", user_id=updated.user_id, extra={"plan": plan_entry.plan_id})
    return updated
