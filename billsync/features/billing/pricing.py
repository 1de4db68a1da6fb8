"""
Status vocabulary and price normalization.

Provider statuses map onto the five local statuses; prices normalize to a
monthly-equivalent amount so plans billed on different intervals compare
directly.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from billsync.features.billing.provider import ProviderPrice, ProviderSubscription

LOCAL_STATUSES = frozenset({"free", "trial", "active", "past_due", "cancelled"})

# Provider statuses that still grant access, best first
LIVE_STATUSES = ("active", "trialing", "past_due")
_STATUS_RANK = {status: rank for rank, status in enumerate(LIVE_STATUSES)}

_STATUS_MAP = {
    "trialing": "trial",
    "active": "active",
    "canceled": "cancelled",
    "past_due": "past_due",
}

_CENT = Decimal("0.01")
_ZERO = Decimal("0")
_HUNDRED = Decimal("100")

# Months per billing interval unit
_MONTHS_PER_INTERVAL = {
    "day": Decimal(12) / Decimal(365),
    "week": Decimal(12) / Decimal(52),
    "month": Decimal(1),
    "year": Decimal(12),
}


def map_provider_status(status: Optional[str]) -> str:
    """Map a provider status to a local status; unknown values become free."""
    return _STATUS_MAP.get(status or "", "free")


def status_rank(status: Optional[str]) -> int:
    """Lower wins: active < trialing < past_due < anything else."""
    return _STATUS_RANK.get(status or "", len(_STATUS_RANK))


def _to_major(minor: int) -> Decimal:
    return Decimal(minor) / _HUNDRED


def base_monthly_amount(price: Optional[ProviderPrice]) -> Optional[Decimal]:
    """Unit price of a line item expressed per month, before discounts."""
    if price is None or price.unit_amount is None:
        return None
    amount = _to_major(price.unit_amount)
    months = _MONTHS_PER_INTERVAL.get(price.interval or "month", Decimal(1))
    return amount / (months * max(price.interval_count, 1))


def monthly_equivalent(sub: ProviderSubscription, now: datetime) -> Optional[Decimal]:
    """Monthly-equivalent amount of a subscription after any active discount."""
    amount = base_monthly_amount(sub.primary_price)
    if amount is None:
        return None

    discount = sub.discount
    if discount is not None and discount.is_active(now):
        if discount.percent_off is not None:
            amount = amount * (_HUNDRED - discount.percent_off) / _HUNDRED
        if discount.amount_off is not None:
            amount = amount - _to_major(discount.amount_off)
        amount = max(amount, _ZERO)

    return amount.quantize(_CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class DiscountInfo:
    has_discount: bool
    discount_percent: Optional[Decimal]
    coupon_id: Optional[str]
    discount_ends_at: Optional[datetime]
    monthly_amount_due: Optional[Decimal]


def discount_info(sub: ProviderSubscription, now: datetime) -> DiscountInfo:
    discount = sub.discount
    active = discount is not None and discount.is_active(now)
    return DiscountInfo(
        has_discount=active,
        discount_percent=discount.percent_off if active else None,
        coupon_id=discount.coupon_id if active else None,
        discount_ends_at=discount.ends_at if active else None,
        monthly_amount_due=monthly_equivalent(sub, now),
    )


def effective_status(provider_status: Optional[str], info: DiscountInfo) -> str:
    """Local status to store; fully comped trials count as active."""
    status = map_provider_status(provider_status)
    if status == "trial" and info.has_discount:
        fully_discounted = info.discount_percent is not None and info.discount_percent >= _HUNDRED
        nothing_due = info.monthly_amount_due is not None and info.monthly_amount_due <= _ZERO
        if fully_discounted or nothing_due:
            return "active"
    return status


def derive_plan_type(sub: ProviderSubscription, *, monthly_default: str, annual_default: str) -> str:
    """Plan id from subscription or price metadata, else by billing interval."""
    for key in ("plan_type", "plan_id"):
        if sub.metadata.get(key):
            return sub.metadata[key]
    price = sub.primary_price
    if price is not None:
        for key in ("plan_type", "plan_id"):
            if price.metadata.get(key):
                return price.metadata[key]
        if price.interval == "year":
            return annual_default
    return monthly_default
