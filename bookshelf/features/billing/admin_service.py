"""
Admin billing operations.

Handles:
- Entitlement overrides (audited)
- Billing event log listing
- Audit logging
"""
import json
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import desc, insert, select
from sqlalchemy.exc import SQLAlchemyError

from bookshelf.core.database import billing_admin_audit, billing_events, get_db_session
from bookshelf.core.errors import StoreUnavailableError
from bookshelf.core.logging import log_event
from bookshelf.features.billing.state import AdminOverride, transition
from bookshelf.features.billing.store import EntitlementRecord, EntitlementStore

MAX_EVENT_LIST_LIMIT = 500


def record_admin_audit(
    actor: str,
    action: str,
    target_user_id: Optional[str] = None,
    target_resource: Optional[str] = None,
    payload: Optional[dict] = None,
) -> None:
    """
    Record an admin action in the audit log.

    Args:
        actor: Admin identifier (e.g., "admin_key:3f9a...")
        action: Action name (e.g., "override_entitlement")
        target_user_id: User affected by action (optional)
        target_resource: Resource affected (optional)
        payload: Additional context as dict (will be JSON-serialized)
    """
    try:
        with get_db_session() as session:
            session.execute(
                insert(billing_admin_audit).values(
                    actor=actor,
                    action=action,
                    target_user_id=target_user_id,
                    target_resource=target_resource,
                    payload_json=json.dumps(payload, default=str) if payload else None,
                )
            )
            session.commit()
    except SQLAlchemyError as e:
        raise StoreUnavailableError(f"Audit log unavailable: {e}")


def override_entitlement(
    store: EntitlementStore,
    actor: str,
    user_id: str,
    plan: Optional[str],
    expires_at: Optional[datetime],
    is_admin: Optional[bool] = None,
) -> EntitlementRecord:
    """
    Set a user's plan/expiry (and optionally admin flag) by hand.

    Goes through the state machine like every other write, so a live
    provider subscription cannot be orphaned.

    Raises:
        UserNotFoundError, InvalidPlanError, ConflictError, ValidationError
    """
    change = AdminOverride(plan=plan, expires_at=expires_at)
    profile_values = {"is_admin": is_admin} if is_admin is not None else None

    before = store.require(user_id)
    updated, changed = store.mutate(
        user_id,
        lambda current: transition(current.state, change),
        profile_values=profile_values,
    )

    record_admin_audit(
        actor=actor,
        action="override_entitlement",
        target_user_id=user_id,
        payload={
            "plan": plan,
            "expires_at": expires_at.isoformat() if expires_at else None,
            "is_admin": is_admin,
            "previous_version": before.version,
            "changed": changed,
        },
    )
    log_event(
        "info",
        "admin.entitlement_override",
        user_id=user_id,
        extra={"actor": actor, "plan": plan, "changed": changed},
    )
    return updated


def list_billing_events(limit: int = 50, outcome: Optional[str] = None) -> List[Dict[str, Any]]:
    """List logged webhook events, newest first."""
    limit = max(1, min(limit, MAX_EVENT_LIST_LIMIT))
    query = select(billing_events).order_by(desc(billing_events.c.received_at), desc(billing_events.c.id))
    if outcome:
        query = query.where(billing_events.c.outcome == outcome)

    try:
        with get_db_session() as session:
            rows = session.execute(query.limit(limit)).fetchall()
    except SQLAlchemyError as e:
        raise StoreUnavailableError(f"Event log unavailable: {e}")

    return [
        {
            "id": row.id,
            "provider_event_id": row.provider_event_id,
            "event_type": row.event_type,
            "received_at": row.received_at,
            "processed": bool(row.processed),
            "processed_at": row.processed_at,
            "outcome": row.outcome,
            "user_id": row.user_id,
            "error": row.error,
        }
        for row in rows
    ]
