"""
Candidate ranking.

When one local identity maps to several live provider subscriptions,
exactly one is chosen: best status, then higher monthly amount, then the
most recently created. The subscription id breaks any remaining tie so the
winner never depends on input order.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, List, Optional, Tuple

from billsync.features.billing.pricing import status_rank
from billsync.features.billing.provider import ProviderCustomer, ProviderSubscription

logger = logging.getLogger("billsync.reconcile.ranking")


@dataclass(frozen=True)
class Candidate:
    subscription: ProviderSubscription
    customer: Optional[ProviderCustomer]
    monthly_amount: Optional[Decimal]

    @property
    def subscription_id(self) -> str:
        return self.subscription.id


def ranking_key(candidate: Candidate) -> Tuple[int, Decimal, float, str]:
    sub = candidate.subscription
    amount = candidate.monthly_amount if candidate.monthly_amount is not None else Decimal(0)
    created = sub.created.timestamp() if sub.created else 0.0
    return (status_rank(sub.status), -amount, -created, sub.id)


def rank_candidates(candidates: Iterable[Candidate]) -> List[Candidate]:
    """Best candidate first."""
    return sorted(candidates, key=ranking_key)


def select_canonical(user_id: str, candidates: Iterable[Candidate]) -> Candidate:
    """Pick the single candidate to apply for a user, warning on ambiguity."""
    ranked = rank_candidates(candidates)
    if not ranked:
        raise ValueError(f"No candidates for user {user_id}")

    winner = ranked[0]
    if len(ranked) > 1:
        logger.warning(
            f"[reconcile] {len(ranked)} live subscriptions for user {user_id}: "
            f"{', '.join(c.subscription_id for c in ranked)} (keeping {winner.subscription_id})",
            extra={
                "user_id": user_id,
                "candidate_ids": [c.subscription_id for c in ranked],
                "selected": winner.subscription_id,
                "discarded": [c.subscription_id for c in ranked[1:]],
            },
        )
    return winner
