import uuid
from decimal import Decimal
from types import SimpleNamespace

import pytest

from app.errors import PriceConfigError
from app.schemas.pricing import BillingInterval
from app.services import pricing
from tests.mocks import fixed_config, one_off_config


class _Feature:
    id = uuid.uuid4()
    feature_key = "seats"


def _usage(bill_when, interval="month", tiers=None, units=1):
    return {
        "type": "usage",
        "bill_when": bill_when,
        "interval": interval,
        "internal_feature_id": str(_Feature.id),
        "feature_id": _Feature.feature_key,
        "usage_tiers": tiers or [{"to": -1, "amount": "2.50"}],
        "billing_units": units,
    }


def test_classify_fixed_recurring():
    classified = pricing.classify_config(fixed_config("49.00", "year"), "p1")
    assert isinstance(classified, pricing.FixedRecurringPrice)
    assert classified.amount == Decimal("49.00")
    assert classified.interval == BillingInterval.year
    assert classified.billing_type == pricing.BillingType.fixed_recurring


def test_classify_fixed_without_interval_is_one_off():
    assert isinstance(pricing.classify_config(one_off_config("5")), pricing.OneOffPrice)
    assert isinstance(pricing.classify_config({"type": "fixed", "amount": "5"}), pricing.OneOffPrice)


def test_classify_usage_in_advance_and_arrears():
    advance = pricing.classify_config(_usage("start_of_period"))
    arrears = pricing.classify_config(_usage("end_of_period"))
    assert isinstance(advance, pricing.UsageInAdvancePrice)
    assert advance.unit_amount == Decimal("2.50")
    assert isinstance(arrears, pricing.UsageInArrearsPrice)
    assert arrears.tiers[-1].to is None


def test_classify_one_off_usage_needs_quantity():
    classified = pricing.classify_config(_usage("start_of_period", interval="one_off"))
    assert isinstance(classified, pricing.OneOffPrice)
    assert classified.feature_id == str(_Feature.id)
    assert pricing.requires_quantity(classified)


@pytest.mark.parametrize(
    "config, fragment",
    [
        (None, "missing `type`"),
        ({}, "missing `type`"),
        ({"type": "bogus"}, "unknown price type"),
        ({"type": "fixed", "amount": "-1"}, "invalid fixed price config"),
        ({"type": "usage", "bill_when": "start_of_period"}, "invalid usage price config"),
    ],
)
def test_classify_rejects_malformed_configs(config, fragment):
    with pytest.raises(PriceConfigError) as exc_info:
        pricing.classify_config(config, "bad-price")
    assert fragment in exc_info.value.message
    assert "bad-price" in exc_info.value.message


def test_classify_rejects_unordered_tiers():
    tiers = [{"to": 100, "amount": "1"}, {"to": 10, "amount": "2"}, {"to": -1, "amount": "3"}]
    with pytest.raises(PriceConfigError):
        pricing.classify_config(_usage("end_of_period", tiers=tiers))


def test_partition_splits_by_billing_time():
    prices = [
        pricing.classify_config(one_off_config("5"), "a"),
        pricing.classify_config(fixed_config("10"), "b"),
        pricing.classify_config(_usage("start_of_period"), "c"),
        pricing.classify_config(_usage("end_of_period"), "d"),
    ]
    result = pricing.partition(prices)
    assert [p.price_id for p in result.one_off] == ["a"]
    assert [p.price_id for p in result.bill_now] == ["b", "c"]
    assert [p.price_id for p in result.bill_later] == ["d"]
    assert not result.only_one_off


def test_line_amount_uses_quantity_for_prepaid():
    prepaid = pricing.classify_config(_usage("start_of_period"))
    line = pricing.line_amount(prepaid, 4)
    assert line.quantity == 4
    assert line.total == Decimal("10.00")


def test_overage_amount_uses_volume_tiers_and_billing_units():
    tiers = [{"to": 100, "amount": "1.00"}, {"to": -1, "amount": "0.50"}]
    price = pricing.classify_config(_usage("end_of_period", tiers=tiers, units=10))
    # 95 units -> 10 packs at the first tier
    assert pricing.overage_amount(price, 95) == Decimal("10.00")
    # 250 units -> 25 packs, all at the second tier
    assert pricing.overage_amount(price, 250) == Decimal("12.50")
    assert pricing.overage_amount(price, 0) == Decimal("0.00")


def test_is_free():
    assert pricing.is_free([pricing.classify_config(fixed_config("0"))])
    assert not pricing.is_free([pricing.classify_config(fixed_config("1"))])
    assert pricing.is_free([])


def test_monthly_recurring_amount_normalizes_intervals():
    prices = [
        pricing.classify_config(fixed_config("120", "year")),
        pricing.classify_config(fixed_config("30", "quarter")),
    ]
    assert pricing.monthly_recurring_amount(prices) == Decimal("20")


def test_to_minor_units_rounds_half_up():
    assert pricing.to_minor_units(Decimal("10.005")) == 1001
    assert pricing.to_minor_units(Decimal("0")) == 0


def test_billing_type_is_stable_for_a_price():
    price = SimpleNamespace(id="p1", name="pro", config=fixed_config("20"))

    assert pricing.billing_type(price) == pricing.BillingType.fixed_recurring
    assert pricing.billing_type(price) == pricing.billing_type(price)


def test_prices_are_same_compares_name_and_config():
    monthly = SimpleNamespace(id="p1", name="pro", config=fixed_config("20"))
    copy = SimpleNamespace(id="p2", name="pro", config=fixed_config("20.00"))
    yearly = SimpleNamespace(id="p3", name="pro", config=fixed_config("20", "year"))
    renamed = SimpleNamespace(id="p4", name="plus", config=fixed_config("20"))

    assert pricing.prices_are_same(monthly, copy)
    assert not pricing.prices_are_same(monthly, yearly)
    assert not pricing.prices_are_same(monthly, renamed)
