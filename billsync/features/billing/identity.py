"""
Identity resolution for provider subscriptions.

Maps a (subscription, customer) pair to a local user id through a fixed
fallback chain; the first step that finds a match wins:

1. user id hint in subscription metadata, then customer metadata
2. local row already holding this subscription id
3. local row already holding this customer id
4. case-insensitive email match on the subscription table
5. case-insensitive email match on the canonical account table

Each step is independent: a failing lookup is logged and the chain moves
on. Nothing is guessed; no match means unresolved.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, ContextManager, FrozenSet, Iterable, Optional, Union

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from billsync.core.database import get_db_session, subscriptions, users
from billsync.features.billing.provider import ProviderCustomer, ProviderSubscription

logger = logging.getLogger("billsync.reconcile.identity")

METADATA_USER_KEYS = ("userId", "user_id")


class ExclusionSet:
    """Immutable set of house/test identities that must never be written.

    Entries containing "@" match an email exactly; other entries match a
    user id exactly or appear as a substring of the email or customer name.
    Matching is case-insensitive.
    """

    __slots__ = ("_entries",)

    def __init__(self, entries: Iterable[str] = ()):
        self._entries: FrozenSet[str] = frozenset(
            e.strip().lower() for e in entries if e and e.strip()
        )

    @classmethod
    def from_config(cls, raw: Union[str, Iterable[str], None]) -> "ExclusionSet":
        if raw is None:
            return cls()
        if isinstance(raw, str):
            return cls(raw.split(","))
        return cls(raw)

    @property
    def entries(self) -> FrozenSet[str]:
        return self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def matches(self, *, email: Optional[str] = None, name: Optional[str] = None, user_id: Optional[str] = None) -> bool:
        if not self._entries:
            return False
        email_n = (email or "").strip().lower()
        name_n = (name or "").strip().lower()
        uid_n = (user_id or "").strip().lower()
        for entry in self._entries:
            if "@" in entry:
                if email_n == entry:
                    return True
                continue
            if uid_n and uid_n == entry:
                return True
            if (email_n and entry in email_n) or (name_n and entry in name_n):
                return True
        return False


@dataclass(frozen=True)
class Resolution:
    user_id: str
    source: str  # metadata | subscription_id | customer_id | subscription_email | account_email


class IdentityResolver:
    """Resolve provider records to local user ids against the local store."""

    def __init__(self, session_factory: Callable[[], ContextManager[Session]] = get_db_session):
        self._session_factory = session_factory

    def resolve(self, subscription: ProviderSubscription, customer: Optional[ProviderCustomer]) -> Optional[Resolution]:
        hint = self._metadata_hint(subscription, customer)
        if hint:
            return Resolution(hint, "metadata")

        email = (customer.email or "").strip().lower() if customer else ""
        steps = [
            ("subscription_id", subscriptions.c.provider_subscription_id, subscription.id),
            ("customer_id", subscriptions.c.provider_customer_id, customer.id if customer else subscription.customer_id),
            ("subscription_email", func.lower(subscriptions.c.user_email), email),
            ("account_email", func.lower(users.c.email), email),
        ]

        with self._session_factory() as session:
            for source, column, value in steps:
                if not value:
                    continue
                table = users if source == "account_email" else subscriptions
                try:
                    user_id = session.execute(
                        select(table.c.user_id).where(column == value).order_by(table.c.user_id).limit(1)
                    ).scalar()
                except SQLAlchemyError as e:
                    session.rollback()
                    logger.warning(
                        f"[identity] lookup by {source} failed: {e}",
                        extra={"subscription_id": subscription.id, "source": source},
                    )
                    continue
                if user_id:
                    return Resolution(user_id, source)
        return None

    @staticmethod
    def _metadata_hint(subscription: ProviderSubscription, customer: Optional[ProviderCustomer]) -> Optional[str]:
        bags = [subscription.metadata]
        if customer is not None:
            bags.append(customer.metadata)
        for bag in bags:
            for key in METADATA_USER_KEYS:
                value = (bag.get(key) or "").strip()
                if value:
                    return value
        return None
