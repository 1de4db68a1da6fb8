"""
Billing provider protocol.

Defines the read-only interface the reconciler needs from a payment
provider, plus the typed records every provider maps its payloads into.
Raw provider objects never travel past the provider implementation.
"""
from typing import Protocol, Dict, List, Optional, Tuple
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal


@dataclass(frozen=True)
class ProviderPrice:
    """One priced line item of a subscription."""
    price_id: Optional[str]
    unit_amount: Optional[int]  # minor units (cents)
    currency: Optional[str] = None
    interval: Optional[str] = None  # day, week, month, year
    interval_count: int = 1
    metadata: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ProviderDiscount:
    """Coupon applied to a subscription."""
    coupon_id: Optional[str]
    percent_off: Optional[Decimal] = None
    amount_off: Optional[int] = None  # minor units (cents)
    ends_at: Optional[datetime] = None

    def is_active(self, now: datetime) -> bool:
        return self.ends_at is None or self.ends_at > now


@dataclass(frozen=True)
class ProviderSubscription:
    id: str
    status: str  # provider vocabulary: trialing, active, past_due, canceled, ...
    customer_id: Optional[str]
    created: Optional[datetime]
    items: Tuple[ProviderPrice, ...] = ()
    trial_end: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    discount: Optional[ProviderDiscount] = None
    metadata: Dict[str, str] = field(default_factory=dict)

    @property
    def primary_price(self) -> Optional[ProviderPrice]:
        return self.items[0] if self.items else None


@dataclass(frozen=True)
class ProviderCustomer:
    id: str
    email: Optional[str] = None
    name: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)


@dataclass
class SubscriptionPage:
    """One page of an account-wide subscription listing."""
    subscriptions: List[ProviderSubscription]
    has_more: bool
    next_cursor: Optional[str]


class BillingProvider(Protocol):
    """
    Protocol for billing providers.

    Implementations must:
    - page through subscriptions account-wide, filtered by status
    - list every subscription of one customer (any status)
    - look up a customer, signalling "not found" distinctly from failure
    """

    def list_subscriptions(self, status: str, cursor: Optional[str] = None) -> SubscriptionPage:
        """
        Fetch one page of subscriptions with the given status.

        Args:
            status: Provider status filter (active, trialing, past_due, ...)
            cursor: Opaque cursor from the previous page (None for the first)

        Raises:
            BillingProviderError: If the page cannot be fetched
        """
        ...

    def list_customer_subscriptions(self, customer_id: str) -> List[ProviderSubscription]:
        """
        Fetch all subscriptions (status "all") for a customer.

        Raises:
            CustomerNotFoundError: If the provider reports the customer missing
            BillingProviderError: On any other failure
        """
        ...

    def get_customer(self, customer_id: str) -> Optional[ProviderCustomer]:
        """
        Fetch a customer.

        Returns:
            The customer, or None if it does not exist (or was deleted)

        Raises:
            BillingProviderError: On any other failure
        """
        ...


class BillingProviderError(Exception):
    """Base exception for billing provider errors (transient or unknown)."""
    pass


class CustomerNotFoundError(BillingProviderError):
    """The provider confirms the referenced customer no longer exists."""

    def __init__(self, customer_id: str, message: Optional[str] = None):
        super().__init__(message or f"Customer {customer_id} not found")
        self.customer_id = customer_id
