"""
Local store writes for reconciliation.

upsert_subscription is a single INSERT ... ON CONFLICT (user_id) DO UPDATE:
every field is overwritten except user_email, which only changes when the
incoming value is non-null. Repeating a call with the same state leaves the
row as it was (apart from updated_at).
"""
from __future__ import annotations

from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from billsync.core.database import orphaned_subscriptions, subscriptions, user_profiles


@dataclass(frozen=True)
class SubscriptionState:
    """Full desired state of one local subscription row."""
    user_id: str
    status: str
    plan_type: Optional[str]
    provider_customer_id: Optional[str]
    provider_subscription_id: Optional[str]
    user_email: Optional[str] = None
    trial_ends_at: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    monthly_amount_due: Optional[Decimal] = None
    has_discount: bool = False
    discount_percent: Optional[Decimal] = None
    discount_ends_at: Optional[datetime] = None
    coupon_id: Optional[str] = None

    def as_values(self) -> Dict[str, Any]:
        return asdict(self)


# Applied when a customer has no live subscription left
CANCELLED_VALUES: Dict[str, Any] = {
    "status": "cancelled",
    "plan_type": "free",
    "provider_subscription_id": None,
    "trial_ends_at": None,
    "monthly_amount_due": None,
    "has_discount": False,
    "discount_percent": None,
    "discount_ends_at": None,
    "coupon_id": None,
}

# Applied when the provider no longer knows the customer at all
GHOST_RESET_VALUES: Dict[str, Any] = {
    "status": "free",
    "plan_type": "free",
    "provider_customer_id": None,
    "provider_subscription_id": None,
    "trial_ends_at": None,
    "current_period_end": None,
    "monthly_amount_due": None,
    "has_discount": False,
    "discount_percent": None,
    "discount_ends_at": None,
    "coupon_id": None,
}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _insert_for(session: Session):
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert
    if dialect == "sqlite":
        return sqlite.insert
    raise NotImplementedError(f"Upsert not supported for dialect {dialect}")


def load_subscription(session: Session, user_id: str):
    return session.execute(
        select(subscriptions).where(subscriptions.c.user_id == user_id)
    ).fetchone()


def upsert_subscription(session: Session, state: SubscriptionState, now: Optional[datetime] = None) -> None:
    """Insert or fully update the row for state.user_id (email is merged)."""
    ts = now or utc_now()
    values = state.as_values()
    values["updated_at"] = ts

    insert = _insert_for(session)
    stmt = insert(subscriptions).values(created_at=ts, **values)
    set_ = {
        key: stmt.excluded[key]
        for key in values
        if key not in ("user_id", "user_email")
    }
    set_["user_email"] = func.coalesce(stmt.excluded.user_email, subscriptions.c.user_email)
    stmt = stmt.on_conflict_do_update(index_elements=[subscriptions.c.user_id], set_=set_)
    session.execute(stmt)


def update_subscription(session: Session, user_id: str, values: Dict[str, Any], now: Optional[datetime] = None) -> int:
    """Apply a partial update to an existing row; returns rows touched."""
    result = session.execute(
        update(subscriptions)
        .where(subscriptions.c.user_id == user_id)
        .values(updated_at=now or utc_now(), **values)
    )
    return result.rowcount or 0


def upsert_profile(session: Session, user_id: str, provider_customer_id: Optional[str], now: Optional[datetime] = None) -> None:
    ts = now or utc_now()
    insert = _insert_for(session)
    stmt = insert(user_profiles).values(
        user_id=user_id,
        provider_customer_id=provider_customer_id,
        updated_at=ts,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[user_profiles.c.user_id],
        set_={
            "provider_customer_id": stmt.excluded.provider_customer_id,
            "updated_at": stmt.excluded.updated_at,
        },
    )
    session.execute(stmt)


def record_orphan(
    session: Session,
    *,
    subscription_id: str,
    customer_id: Optional[str],
    email: Optional[str],
    status: str,
    now: Optional[datetime] = None,
) -> None:
    """Track an unresolved subscription; re-sightings only refresh it."""
    ts = now or utc_now()
    insert = _insert_for(session)
    stmt = insert(orphaned_subscriptions).values(
        provider_subscription_id=subscription_id,
        provider_customer_id=customer_id,
        customer_email=email,
        status=status,
        resolved=False,
        first_seen_at=ts,
        last_seen_at=ts,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[orphaned_subscriptions.c.provider_subscription_id],
        set_={
            "provider_customer_id": stmt.excluded.provider_customer_id,
            "customer_email": func.coalesce(stmt.excluded.customer_email, orphaned_subscriptions.c.customer_email),
            "status": stmt.excluded.status,
            "last_seen_at": stmt.excluded.last_seen_at,
        },
    )
    session.execute(stmt)


def resolve_orphan(session: Session, subscription_id: str, user_id: str, now: Optional[datetime] = None) -> int:
    """Mark a previously orphaned subscription as linked to a user."""
    result = session.execute(
        update(orphaned_subscriptions)
        .where(orphaned_subscriptions.c.provider_subscription_id == subscription_id)
        .where(orphaned_subscriptions.c.resolved.is_(False))
        .values(resolved=True, resolved_user_id=user_id, last_seen_at=now or utc_now())
    )
    return result.rowcount or 0
