"""
Entitlement store.

Persists the entitlement state as columns on users_profile. Every change
goes through `mutate`, a single read-modify-write that:

1. reads the row (SELECT ... FOR UPDATE where the database supports it)
2. computes the new state from the fresh record
3. writes it only if entitlement_version is unchanged

A lost version race is retried once against a fresh read, then surfaced
as ConcurrentModificationError.
"""
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Tuple
import logging

from sqlalchemy import select, update, insert, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from bookshelf.core.database import get_db_session, users_profile
from bookshelf.core.errors import (
    ConcurrentModificationError,
    ConflictError,
    StoreUnavailableError,
    UserNotFoundError,
)
from bookshelf.features.billing.state import (
    Active,
    EntitlementState,
    Free,
    PendingCancellation,
)

logger = logging.getLogger("bookshelf.billing.store")

MAX_WRITE_ATTEMPTS = 2


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass(frozen=True)
class EntitlementRecord:
    user_id: str
    email: Optional[str]
    full_name: Optional[str]
    is_admin: bool
    state: EntitlementState
    version: int
    synced_at: Optional[datetime]


def state_from_row(row) -> EntitlementState:
    expires_at = as_utc(row.subscription_expires_at)
    if not row.plan or expires_at is None:
        if row.plan:
            logger.warning("entitlement.plan_without_expiry", extra={"user_id": row.user_id})
        return Free(customer_ref=row.stripe_customer_id, expired_at=expires_at)
    if row.cancel_at_period_end and row.stripe_subscription_id:
        return PendingCancellation(
            plan=row.plan,
            expires_at=expires_at,
            customer_ref=row.stripe_customer_id,
            subscription_ref=row.stripe_subscription_id,
        )
    return Active(
        plan=row.plan,
        expires_at=expires_at,
        customer_ref=row.stripe_customer_id,
        subscription_ref=row.stripe_subscription_id,
    )


def state_to_values(state: EntitlementState) -> Dict[str, Any]:
    if isinstance(state, Free):
        return {
            "plan": None,
            "subscription_expires_at": state.expired_at,
            "stripe_customer_id": state.customer_ref,
            "stripe_subscription_id": None,
            "cancel_at_period_end": False,
        }
    return {
        "plan": state.plan,
        "subscription_expires_at": state.expires_at,
        "stripe_customer_id": state.customer_ref,
        "stripe_subscription_id": state.subscription_ref,
        "cancel_at_period_end": isinstance(state, PendingCancellation),
    }


def record_from_row(row) -> EntitlementRecord:
    return EntitlementRecord(
        user_id=row.user_id,
        email=row.email,
        full_name=row.full_name,
        is_admin=bool(row.is_admin),
        state=state_from_row(row),
        version=int(row.entitlement_version or 0),
        synced_at=as_utc(row.entitlement_synced_at),
    )


# compute(record) -> new state, or None for "nothing to write"
Compute = Callable[[EntitlementRecord], Optional[EntitlementState]]


class EntitlementStore:
    """Entitlement persistence over the users_profile table."""

    def __init__(self, session_factory=get_db_session):
        self._session_factory = session_factory

    def _fetch_one(self, where) -> Optional[EntitlementRecord]:
        try:
            with self._session_factory() as session:
                row = session.execute(select(users_profile).where(where)).fetchone()
        except SQLAlchemyError as e:
            raise StoreUnavailableError(f"Entitlement store unavailable: {e}")
        return record_from_row(row) if row else None

    def get(self, user_id: str) -> Optional[EntitlementRecord]:
        return self._fetch_one(users_profile.c.user_id == user_id)

    def require(self, user_id: str) -> EntitlementRecord:
        record = self.get(user_id)
        if record is None:
            raise UserNotFoundError(f"User not found: {user_id}")
        return record

    def find_by_customer_ref(self, customer_ref: str) -> Optional[EntitlementRecord]:
        return self._fetch_one(users_profile.c.stripe_customer_id == customer_ref)

    def find_by_subscription_ref(self, subscription_ref: str) -> Optional[EntitlementRecord]:
        return self._fetch_one(users_profile.c.stripe_subscription_id == subscription_ref)

    def find_by_email(self, email: str) -> Optional[EntitlementRecord]:
        return self._fetch_one(func.lower(users_profile.c.email) == email.lower())

    def ensure_profile(
        self,
        user_id: str,
        email: Optional[str] = None,
        full_name: Optional[str] = None,
        is_admin: bool = False,
    ) -> EntitlementRecord:
        """Create the profile row if missing (free tier); return the record."""
        existing = self.get(user_id)
        if existing:
            return existing
        try:
            with self._session_factory() as session:
                session.execute(
                    insert(users_profile).values(
                        user_id=user_id,
                        email=email.lower() if email else None,
                        full_name=full_name,
                        is_admin=is_admin,
                        entitlement_version=0,
                    )
                )
                session.commit()
        except IntegrityError:
            # Concurrent creation, the other writer won
            pass
        except SQLAlchemyError as e:
            raise StoreUnavailableError(f"Entitlement store unavailable: {e}")
        return self.require(user_id)

    def mutate(
        self,
        user_id: str,
        compute: Compute,
        *,
        synced_at: Optional[datetime] = None,
        profile_values: Optional[Dict[str, Any]] = None,
    ) -> Tuple[EntitlementRecord, bool]:
        """
        Apply a read-modify-write to one user's entitlement.

        Args:
            user_id: Owner of the row
            compute: Called with the fresh record; returns the new state, or None to leave
                the row alone. A returned state, even an unchanged one, still records synced_at.
            synced_at: Ordering token for authoritative writes (only moves forward)
            profile_values: Non-entitlement columns to write alongside (full_name, is_admin)

        Returns:
            (record after the call, whether entitlement or profile values changed)

        Raises:
            UserNotFoundError, ConcurrentModificationError, StoreUnavailableError,
            and anything compute raises
        """
        for attempt in range(1, MAX_WRITE_ATTEMPTS + 1):
            try:
                with self._session_factory() as session:
                    row = session.execute(
                        select(users_profile)
                        .where(users_profile.c.user_id == user_id)
                        .with_for_update()
                    ).fetchone()
                    if row is None:
                        raise UserNotFoundError(f"User not found: {user_id}")

                    record = record_from_row(row)
                    new_state = compute(record)
                    claimed = new_state is not None
                    if new_state is None:
                        new_state = record.state

                    changed_profile = {
                        k: v for k, v in (profile_values or {}).items()
                        if getattr(record, k, None) != v
                    }
                    changed = new_state != record.state or bool(changed_profile)

                    new_synced_at = record.synced_at
                    if claimed and synced_at is not None and (new_synced_at is None or synced_at > new_synced_at):
                        new_synced_at = synced_at
                    if not changed and new_synced_at == record.synced_at:
                        return record, False

                    values = state_to_values(new_state)
                    values.update(changed_profile)
                    values["entitlement_version"] = record.version + 1
                    values["entitlement_synced_at"] = new_synced_at

                    result = session.execute(
                        update(users_profile)
                        .where(users_profile.c.user_id == user_id)
                        .where(users_profile.c.entitlement_version == record.version)
                        .values(**values)
                    )
                    if result.rowcount == 1:
                        session.commit()
                        updated = replace(
                            record,
                            state=new_state,
                            version=record.version + 1,
                            synced_at=new_synced_at,
                            **changed_profile,
                        )
                        return updated, changed
                    session.rollback()
            except IntegrityError as e:
                raise ConflictError(f"Entitlement write conflicts with another user: {e.orig}")
            except SQLAlchemyError as e:
                raise StoreUnavailableError(f"Entitlement store unavailable: {e}")

            logger.warning(
                "entitlement.version_conflict",
                extra={"user_id": user_id, "attempt": attempt},
            )

        raise ConcurrentModificationError(f"Entitlement for {user_id} changed concurrently")
