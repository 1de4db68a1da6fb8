"""
Tests for status mapping and monthly-equivalent pricing.
"""
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from billsync.features.billing.pricing import (
    LOCAL_STATUSES,
    derive_plan_type,
    discount_info,
    effective_status,
    map_provider_status,
    monthly_equivalent,
    status_rank,
)
from billsync.tests.mocks import make_subscription

NOW = datetime(2024, 6, 1, tzinfo=timezone.utc)


class TestStatusMapping:
    @pytest.mark.parametrize(
        "provider_status,expected",
        [
            ("trialing", "trial"),
            ("active", "active"),
            ("canceled", "cancelled"),
            ("past_due", "past_due"),
            ("unpaid", "free"),
            ("incomplete", "free"),
            ("incomplete_expired", "free"),
            ("paused", "free"),
            ("", "free"),
            (None, "free"),
            ("ACTIVE", "free"),
        ],
    )
    def test_every_status_maps_to_a_local_status(self, provider_status, expected):
        result = map_provider_status(provider_status)
        assert result == expected
        assert result in LOCAL_STATUSES

    def test_status_rank_order(self):
        assert status_rank("active") < status_rank("trialing") < status_rank("past_due")
        assert status_rank("past_due") < status_rank("canceled")
        assert status_rank("canceled") == status_rank("something_new")


class TestMonthlyEquivalent:
    def test_monthly_price(self):
        sub = make_subscription("sub_1", amount=999)
        assert monthly_equivalent(sub, NOW) == Decimal("9.99")

    def test_annual_price_is_divided_by_twelve(self):
        sub = make_subscription("sub_1", amount=11988, interval="year")
        assert monthly_equivalent(sub, NOW) == Decimal("9.99")

    def test_percent_discount_multiplies(self):
        sub = make_subscription("sub_1", amount=2000, percent_off="25")
        assert monthly_equivalent(sub, NOW) == Decimal("15.00")

    def test_fixed_discount_subtracts_and_floors_at_zero(self):
        sub = make_subscription("sub_1", amount=500, amount_off=300)
        assert monthly_equivalent(sub, NOW) == Decimal("2.00")

        sub = make_subscription("sub_1", amount=500, amount_off=900)
        assert monthly_equivalent(sub, NOW) == Decimal("0.00")

    def test_expired_discount_is_ignored(self):
        sub = make_subscription(
            "sub_1", amount=2000, percent_off="50", discount_ends_at=NOW - timedelta(days=1)
        )
        assert monthly_equivalent(sub, NOW) == Decimal("20.00")
        assert discount_info(sub, NOW).has_discount is False

    def test_missing_price_has_no_amount(self):
        sub = make_subscription("sub_1", amount=None)
        assert monthly_equivalent(sub, NOW) is None


class TestEffectiveStatus:
    def test_fully_discounted_trial_counts_as_active(self):
        sub = make_subscription("sub_1", status="trialing", amount=999, percent_off="100")
        info = discount_info(sub, NOW)
        assert info.has_discount is True
        assert info.coupon_id == "coupon_1"
        assert effective_status(sub.status, info) == "active"

    def test_partially_discounted_trial_stays_trial(self):
        sub = make_subscription("sub_1", status="trialing", amount=999, percent_off="50")
        assert effective_status(sub.status, discount_info(sub, NOW)) == "trial"

    def test_plain_trial(self):
        sub = make_subscription("sub_1", status="trialing", amount=0)
        assert effective_status(sub.status, discount_info(sub, NOW)) == "trial"


class TestPlanType:
    def test_subscription_metadata_wins(self):
        sub = make_subscription(
            "sub_1", metadata={"plan_type": "team"}, price_metadata={"plan_type": "solo"}
        )
        assert derive_plan_type(sub, monthly_default="m", annual_default="a") == "team"

    def test_price_metadata_second(self):
        sub = make_subscription("sub_1", price_metadata={"plan_id": "solo"})
        assert derive_plan_type(sub, monthly_default="m", annual_default="a") == "solo"

    def test_interval_fallback(self):
        monthly = make_subscription("sub_1", interval="month")
        annual = make_subscription("sub_2", interval="year")
        assert derive_plan_type(monthly, monthly_default="m", annual_default="a") == "m"
        assert derive_plan_type(annual, monthly_default="m", annual_default="a") == "a"
