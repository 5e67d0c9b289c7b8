"""
Admin-only billing operations router.
Requires X-Admin-Key header for all endpoints.
"""
import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from bookshelf.core.admin_auth import AdminActor, require_admin
from bookshelf.features.billing.admin_service import (
    MAX_EVENT_LIST_LIMIT,
    list_billing_events,
    override_entitlement,
)
from bookshelf.features.billing.service import get_entitlement_store
from bookshelf.features.billing.state import expires_at_of, plan_of
from bookshelf.features.billing.store import EntitlementStore, as_utc

logger = logging.getLogger("bookshelf.admin_billing")

router = APIRouter(prefix="/admin/billing", tags=["admin-billing"])


class BillingEventListItem(BaseModel):
    """Single billing event for list response."""
    id: int
    provider_event_id: str
    event_type: str
    received_at: Optional[datetime]
    processed: bool
    processed_at: Optional[datetime]
    outcome: Optional[str]
    user_id: Optional[str]
    error: Optional[str]


class BillingEventListResponse(BaseModel):
    count: int
    events: List[BillingEventListItem]


class EntitlementOverrideRequest(BaseModel):
    """Request to override a user's entitlement."""
    user_id: str = Field(..., description="Target user")
    plan: Optional[str] = Field(default=None, description="Plan id, or null for free tier")
    subscription_expires_at: Optional[datetime] = Field(default=None, description="New expiry (UTC)")
    is_admin: Optional[bool] = Field(default=None, description="Set or clear the admin flag")


class EntitlementOverrideResponse(BaseModel):
    user_id: str
    plan: Optional[str]
    subscription_expires_at: Optional[datetime]
    is_admin: bool
    entitlement_version: int


@router.get("/events", response_model=BillingEventListResponse)
def list_events(
    limit: int = Query(50, ge=1, le=MAX_EVENT_LIST_LIMIT),
    outcome: Optional[str] = Query(None),
    actor: AdminActor = Depends(require_admin),
):
    events = list_billing_events(limit=limit, outcome=outcome)
    return {"count": len(events), "events": events}


@router.post("/entitlements/override", response_model=EntitlementOverrideResponse)
def override(
    request: EntitlementOverrideRequest,
    actor: AdminActor = Depends(require_admin),
    store: EntitlementStore = Depends(get_entitlement_store),
):
    """Set plan/expiry by hand. Audited."""
    record = override_entitlement(
        store,
        actor=actor.actor_id,
        user_id=request.user_id,
        plan=request.plan,
        expires_at=as_utc(request.subscription_expires_at),
        is_admin=request.is_admin,
    )
    logger.info(f"[admin_billing] entitlement override by {actor.actor_id} for {record.user_id}")
    return EntitlementOverrideResponse(
        user_id=record.user_id,
        plan=plan_of(record.state),
        subscription_expires_at=expires_at_of(record.state),
        is_admin=record.is_admin,
        entitlement_version=record.version,
    )
