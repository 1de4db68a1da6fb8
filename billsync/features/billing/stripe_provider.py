"""
Stripe billing provider implementation.

Implements the BillingProvider protocol with the Stripe API. Every Stripe
payload is mapped into the typed records of provider.py right here; nothing
downstream sees a StripeObject.
"""
import logging
import time
from collections.abc import Mapping
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, TypeVar

import stripe

from billsync.features.billing.pricing import LIVE_STATUSES
from billsync.features.billing.provider import (
    BillingProviderError,
    CustomerNotFoundError,
    ProviderCustomer,
    ProviderDiscount,
    ProviderPrice,
    ProviderSubscription,
    SubscriptionPage,
)

logger = logging.getLogger("billsync.stripe")

T = TypeVar("T")

MAX_PAGE_SIZE = 100
# Errors worth retrying in-process when retries are enabled
_TRANSIENT_ERRORS = (stripe.APIConnectionError, stripe.RateLimitError)


def _get(obj: Any, key: str, default: Any = None) -> Any:
    """Read a field from a StripeObject, dict, or bare id string."""
    if obj is None:
        return default
    try:
        value = obj[key]
    except (KeyError, TypeError, IndexError, AttributeError):
        return default
    return default if value is None else value


def _as_dict(obj: Any) -> Dict[str, str]:
    if obj is None:
        return {}
    if isinstance(obj, Mapping):
        data = dict(obj)
    else:
        to_dict = getattr(obj, "to_dict", None)
        data = to_dict() if callable(to_dict) else {}
    return {str(k): str(v) for k, v in data.items() if v is not None}


def _ts(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _id_of(obj: Any) -> Optional[str]:
    """Expandable fields arrive either as an id string or an expanded object."""
    if obj is None:
        return None
    if isinstance(obj, str):
        return obj
    return _get(obj, "id")


def _map_price(item: Any) -> ProviderPrice:
    price = _get(item, "price") or _get(item, "plan") or {}
    recurring = _get(price, "recurring") or {}
    interval = _get(recurring, "interval") or _get(price, "interval")
    interval_count = _get(recurring, "interval_count") or _get(price, "interval_count") or 1
    unit_amount = _get(price, "unit_amount")
    if unit_amount is None:
        unit_amount = _get(price, "amount")
    return ProviderPrice(
        price_id=_id_of(price),
        unit_amount=int(unit_amount) if unit_amount is not None else None,
        currency=_get(price, "currency"),
        interval=interval,
        interval_count=int(interval_count),
        metadata=_as_dict(_get(price, "metadata")),
    )


def _map_discount(data: Any) -> Optional[ProviderDiscount]:
    discount = _get(data, "discount")
    if discount is None:
        # Newer API versions carry a list; only expanded entries are usable
        for entry in _get(data, "discounts") or []:
            if not isinstance(entry, str):
                discount = entry
                break
    if discount is None:
        return None

    coupon = _get(discount, "coupon")
    if coupon is None:
        coupon = _get(_get(discount, "source"), "coupon")
    if coupon is None:
        return None

    percent_off = _get(coupon, "percent_off")
    amount_off = _get(coupon, "amount_off")
    return ProviderDiscount(
        coupon_id=_id_of(coupon),
        percent_off=Decimal(str(percent_off)) if percent_off is not None else None,
        amount_off=int(amount_off) if amount_off is not None else None,
        ends_at=_ts(_get(discount, "end")),
    )


def map_subscription(data: Any) -> ProviderSubscription:
    """Narrow a Stripe subscription payload into a ProviderSubscription."""
    item_list = _get(_get(data, "items"), "data") or []
    items = tuple(_map_price(item) for item in item_list)

    # Period end moved from the subscription onto its items in newer API versions
    period_end = _get(data, "current_period_end")
    if period_end is None and item_list:
        period_end = _get(item_list[0], "current_period_end")

    return ProviderSubscription(
        id=_get(data, "id"),
        status=_get(data, "status", ""),
        customer_id=_id_of(_get(data, "customer")),
        created=_ts(_get(data, "created")),
        items=items,
        trial_end=_ts(_get(data, "trial_end")),
        current_period_end=_ts(period_end),
        discount=_map_discount(data),
        metadata=_as_dict(_get(data, "metadata")),
    )


def map_customer(data: Any) -> Optional[ProviderCustomer]:
    """Narrow a Stripe customer payload; deleted customers map to None."""
    if data is None or _get(data, "deleted", False):
        return None
    return ProviderCustomer(
        id=_get(data, "id"),
        email=_get(data, "email"),
        name=_get(data, "name"),
        metadata=_as_dict(_get(data, "metadata")),
    )


def _is_resource_missing(error: stripe.StripeError) -> bool:
    return isinstance(error, stripe.InvalidRequestError) and getattr(error, "code", None) == "resource_missing"


class StripeProvider:
    """Stripe implementation of BillingProvider protocol."""

    def __init__(
        self,
        secret_key: Optional[str] = None,
        *,
        api_version: Optional[str] = None,
        page_size: int = MAX_PAGE_SIZE,
        max_retries: int = 0,
        backoff_seconds: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize Stripe provider.

        Args:
            secret_key: Stripe secret key
            api_version: Optional API version pin
            page_size: Listing page size (1-100)
            max_retries: In-process retries for transient errors (0 = none)
            backoff_seconds: Base delay, doubled per attempt
        """
        if not secret_key:
            raise BillingProviderError("STRIPE_SECRET_KEY not configured")

        stripe.api_key = secret_key
        if api_version:
            stripe.api_version = api_version

        self.page_size = max(1, min(page_size, MAX_PAGE_SIZE))
        self.max_retries = max(0, max_retries)
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep

    def _call(self, fn: Callable[..., T], **params: Any) -> T:
        attempt = 0
        while True:
            try:
                return fn(**params)
            except _TRANSIENT_ERRORS as e:
                if attempt >= self.max_retries:
                    raise
                delay = self.backoff_seconds * (2 ** attempt)
                logger.warning(
                    "[stripe] transient error, retrying",
                    extra={"attempt": attempt + 1, "delay_seconds": delay, "error": str(e)},
                )
                self._sleep(delay)
                attempt += 1

    def list_subscriptions(self, status: str, cursor: Optional[str] = None) -> SubscriptionPage:
        """Fetch one page of subscriptions account-wide."""
        params: Dict[str, Any] = {
            "status": status,
            "limit": self.page_size,
            "expand": ["data.discounts"],
        }
        if cursor:
            params["starting_after"] = cursor
        try:
            result = self._call(stripe.Subscription.list, **params)
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe subscription listing failed (status={status}): {e}")

        subs = [map_subscription(item) for item in (_get(result, "data") or [])]
        has_more = bool(_get(result, "has_more", False))
        return SubscriptionPage(
            subscriptions=subs,
            has_more=has_more and bool(subs),
            next_cursor=subs[-1].id if subs else None,
        )

    def list_customer_subscriptions(self, customer_id: str) -> List[ProviderSubscription]:
        """Fetch every subscription for one customer, any status.

        Stripe still lists the subscriptions of a deleted customer, so when
        none of them is live the customer itself is checked and a deleted or
        unknown one raises CustomerNotFoundError.
        """
        subs: List[ProviderSubscription] = []
        cursor: Optional[str] = None
        while True:
            params: Dict[str, Any] = {
                "customer": customer_id,
                "status": "all",
                "limit": self.page_size,
                "expand": ["data.discounts"],
            }
            if cursor:
                params["starting_after"] = cursor
            try:
                result = self._call(stripe.Subscription.list, **params)
            except stripe.StripeError as e:
                if _is_resource_missing(e):
                    raise CustomerNotFoundError(customer_id, str(e))
                raise BillingProviderError(f"Stripe subscription lookup failed for {customer_id}: {e}")

            page = [map_subscription(item) for item in (_get(result, "data") or [])]
            subs.extend(page)
            if not page or not _get(result, "has_more", False):
                break
            cursor = page[-1].id

        if not any(s.status in LIVE_STATUSES for s in subs) and self.get_customer(customer_id) is None:
            raise CustomerNotFoundError(customer_id, "customer deleted")
        return subs

    def get_customer(self, customer_id: str) -> Optional[ProviderCustomer]:
        """Fetch a customer; None when missing or deleted."""
        try:
            data = self._call(stripe.Customer.retrieve, id=customer_id)
        except stripe.StripeError as e:
            if _is_resource_missing(e):
                return None
            raise BillingProviderError(f"Stripe customer lookup failed for {customer_id}: {e}")
        return map_customer(data)
