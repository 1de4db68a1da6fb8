"""
Stripe provider: payload mapping, pagination, error translation.
"""
from datetime import datetime, timezone
from decimal import Decimal

import pytest
import stripe

from billsync.features.billing.provider import BillingProviderError, CustomerNotFoundError
from billsync.features.billing.stripe_provider import StripeProvider, map_customer, map_subscription


def _sub_payload(sub_id="sub_1", status="active", **overrides):
    payload = {
        "id": sub_id,
        "object": "subscription",
        "status": status,
        "customer": "cus_1",
        "created": 1704067200,
        "trial_end": None,
        "metadata": {"userId": "u1"},
        "items": {
            "data": [
                {
                    "price": {
                        "id": "price_1",
                        "unit_amount": 11988,
                        "currency": "usd",
                        "recurring": {"interval": "year", "interval_count": 1},
                        "metadata": {},
                    },
                    "current_period_end": 1735689600,
                }
            ]
        },
        "discounts": [],
    }
    payload.update(overrides)
    return payload


def _invalid_request(code):
    return stripe.InvalidRequestError("No such customer", "customer", code=code)


class TestMapping:
    def test_map_subscription(self):
        sub = map_subscription(_sub_payload())
        assert sub.id == "sub_1"
        assert sub.customer_id == "cus_1"
        assert sub.created == datetime(2024, 1, 1, tzinfo=timezone.utc)
        assert sub.current_period_end == datetime(2025, 1, 1, tzinfo=timezone.utc)
        assert sub.metadata == {"userId": "u1"}
        price = sub.primary_price
        assert (price.unit_amount, price.interval, price.interval_count) == (11988, "year", 1)
        assert sub.discount is None

    def test_expanded_customer_and_discount(self):
        payload = _sub_payload(
            customer={"id": "cus_9", "email": "x@example.com"},
            discounts=[{"coupon": {"id": "HALF", "percent_off": 50.0}, "end": None}],
        )
        sub = map_subscription(payload)
        assert sub.customer_id == "cus_9"
        assert sub.discount.coupon_id == "HALF"
        assert sub.discount.percent_off == Decimal("50.0")

    def test_legacy_single_discount(self):
        sub = map_subscription(_sub_payload(discount={"coupon": {"id": "OFF5", "amount_off": 500}, "end": 1735689600}))
        assert sub.discount.amount_off == 500
        assert sub.discount.ends_at == datetime(2025, 1, 1, tzinfo=timezone.utc)

    def test_map_customer(self):
        customer = map_customer({"id": "cus_1", "email": "a@b.c", "name": "A", "metadata": {"user_id": "u1"}})
        assert (customer.id, customer.email, customer.metadata["user_id"]) == ("cus_1", "a@b.c", "u1")
        assert map_customer({"id": "cus_1", "deleted": True}) is None


class TestStripeProvider:
    def test_requires_secret_key(self):
        with pytest.raises(BillingProviderError):
            StripeProvider(None)

    def test_list_subscriptions_page(self, monkeypatch):
        captured = {}

        def fake_list(**params):
            captured.update(params)
            return {"data": [_sub_payload("sub_1"), _sub_payload("sub_2")], "has_more": True}

        monkeypatch.setattr(stripe.Subscription, "list", fake_list)
        page = StripeProvider("sk_test_dummy", page_size=2).list_subscriptions("active", cursor="sub_0")

        assert [s.id for s in page.subscriptions] == ["sub_1", "sub_2"]
        assert page.has_more is True
        assert page.next_cursor == "sub_2"
        assert captured["status"] == "active"
        assert captured["limit"] == 2
        assert captured["starting_after"] == "sub_0"

    def test_list_failure_becomes_provider_error(self, monkeypatch):
        def fake_list(**params):
            raise stripe.APIConnectionError("network down")

        monkeypatch.setattr(stripe.Subscription, "list", fake_list)
        with pytest.raises(BillingProviderError):
            StripeProvider("sk_test_dummy").list_subscriptions("active")

    def test_customer_subscriptions_follow_pages(self, monkeypatch):
        pages = [
            {"data": [_sub_payload("sub_1")], "has_more": True},
            {"data": [_sub_payload("sub_2", status="canceled")], "has_more": False},
        ]
        seen = []

        def fake_list(**params):
            seen.append(params)
            return pages[len(seen) - 1]

        monkeypatch.setattr(stripe.Subscription, "list", fake_list)
        subs = StripeProvider("sk_test_dummy").list_customer_subscriptions("cus_1")

        assert [s.id for s in subs] == ["sub_1", "sub_2"]
        assert seen[0]["status"] == "all"
        assert seen[0]["customer"] == "cus_1"
        assert seen[1]["starting_after"] == "sub_1"

    def test_missing_customer_raises_not_found(self, monkeypatch):
        def fake_list(**params):
            raise _invalid_request("resource_missing")

        monkeypatch.setattr(stripe.Subscription, "list", fake_list)
        with pytest.raises(CustomerNotFoundError):
            StripeProvider("sk_test_dummy").list_customer_subscriptions("cus_gone")

    def test_deleted_customer_raises_not_found(self, monkeypatch):
        retrieved = []

        def fake_retrieve(id):
            retrieved.append(id)
            return {"id": id, "object": "customer", "deleted": True}

        monkeypatch.setattr(
            stripe.Subscription, "list",
            lambda **params: {"data": [_sub_payload("sub_1", status="canceled")], "has_more": False},
        )
        monkeypatch.setattr(stripe.Customer, "retrieve", fake_retrieve)
        with pytest.raises(CustomerNotFoundError):
            StripeProvider("sk_test_dummy").list_customer_subscriptions("cus_gone")
        assert retrieved == ["cus_gone"]

    def test_existing_customer_without_live_subscriptions(self, monkeypatch):
        monkeypatch.setattr(
            stripe.Subscription, "list",
            lambda **params: {"data": [_sub_payload("sub_1", status="canceled")], "has_more": False},
        )
        monkeypatch.setattr(stripe.Customer, "retrieve", lambda id: {"id": id, "email": "a@b.c"})
        subs = StripeProvider("sk_test_dummy").list_customer_subscriptions("cus_1")
        assert [(s.id, s.status) for s in subs] == [("sub_1", "canceled")]

    def test_live_subscription_skips_customer_check(self, monkeypatch):
        def fake_retrieve(id):
            raise AssertionError("customer lookup not expected")

        monkeypatch.setattr(
            stripe.Subscription, "list",
            lambda **params: {"data": [_sub_payload("sub_1", status="active")], "has_more": False},
        )
        monkeypatch.setattr(stripe.Customer, "retrieve", fake_retrieve)
        subs = StripeProvider("sk_test_dummy").list_customer_subscriptions("cus_1")
        assert [s.id for s in subs] == ["sub_1"]

    def test_other_invalid_request_is_generic_error(self, monkeypatch):
        def fake_list(**params):
            raise _invalid_request("parameter_invalid_empty")

        monkeypatch.setattr(stripe.Subscription, "list", fake_list)
        with pytest.raises(BillingProviderError) as exc:
            StripeProvider("sk_test_dummy").list_customer_subscriptions("cus_1")
        assert not isinstance(exc.value, CustomerNotFoundError)

    def test_get_customer_missing_returns_none(self, monkeypatch):
        def fake_retrieve(id):
            raise _invalid_request("resource_missing")

        monkeypatch.setattr(stripe.Customer, "retrieve", fake_retrieve)
        assert StripeProvider("sk_test_dummy").get_customer("cus_gone") is None

    def test_get_customer_maps_payload(self, monkeypatch):
        monkeypatch.setattr(stripe.Customer, "retrieve", lambda id: {"id": id, "email": "a@b.c", "name": None})
        customer = StripeProvider("sk_test_dummy").get_customer("cus_1")
        assert (customer.id, customer.email) == ("cus_1", "a@b.c")

    def test_transient_errors_retry_with_backoff(self, monkeypatch):
        attempts = []
        sleeps = []

        def fake_list(**params):
            attempts.append(params)
            if len(attempts) < 3:
                raise stripe.RateLimitError("slow down")
            return {"data": [], "has_more": False}

        monkeypatch.setattr(stripe.Subscription, "list", fake_list)
        provider = StripeProvider("sk_test_dummy", max_retries=2, backoff_seconds=1.0, sleep=sleeps.append)
        page = provider.list_subscriptions("active")

        assert page.subscriptions == []
        assert len(attempts) == 3
        assert sleeps == [1.0, 2.0]

    def test_no_retry_by_default(self, monkeypatch):
        attempts = []

        def fake_list(**params):
            attempts.append(params)
            raise stripe.APIConnectionError("down")

        monkeypatch.setattr(stripe.Subscription, "list", fake_list)
        with pytest.raises(BillingProviderError):
            StripeProvider("sk_test_dummy").list_subscriptions("active")
        assert len(attempts) == 1
