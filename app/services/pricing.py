"""Price classification and amount rules.

Every component that needs to know how a price is billed goes through
``classify``; nothing else inspects a price config's shape. The result is one
of four frozen dataclasses carrying only the fields relevant to that billing
type:

- ``OneOffPrice``: no recurring interval, billed once on an invoice.
- ``FixedRecurringPrice``: flat amount billed every interval, in advance.
- ``UsageInAdvancePrice``: prepaid quantity of a feature, billed every interval.
- ``UsageInArrearsPrice``: metered usage billed at the end of the interval.
"""

from __future__ import annotations

import enum
import math
from collections.abc import Iterable
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import ClassVar, Union

from pydantic import ValidationError

from app.errors import PriceConfigError
from app.schemas.pricing import (
    BillingInterval,
    BillWhen,
    FixedPriceConfig,
    UsagePriceConfig,
    UsageTierConfig,
)
from app.services.common import round_money


class BillingType(enum.Enum):
    one_off = "one_off"
    fixed_recurring = "fixed_recurring"
    usage_in_advance = "usage_in_advance"
    usage_in_arrears = "usage_in_arrears"


INTERVAL_MONTHS = {
    BillingInterval.month: 1,
    BillingInterval.quarter: 3,
    BillingInterval.semi_annual: 6,
    BillingInterval.year: 12,
}

# Processor recurring params per interval.
PROCESSOR_RECURRING = {
    BillingInterval.month: {"interval": "month", "interval_count": 1},
    BillingInterval.quarter: {"interval": "month", "interval_count": 3},
    BillingInterval.semi_annual: {"interval": "month", "interval_count": 6},
    BillingInterval.year: {"interval": "year", "interval_count": 1},
}


@dataclass(frozen=True)
class UsageTier:
    to: Decimal | None
    amount: Decimal

    def contains(self, units: Decimal) -> bool:
        return self.to is None or units <= self.to


@dataclass(frozen=True)
class OneOffPrice:
    billing_type: ClassVar[BillingType] = BillingType.one_off

    price_id: str
    amount: Decimal
    # Set when the one-off price is a quantity of a feature (needs an option).
    feature_id: str | None = None
    billing_units: int = 1

    @property
    def interval(self) -> BillingInterval:
        return BillingInterval.one_off


@dataclass(frozen=True)
class FixedRecurringPrice:
    billing_type: ClassVar[BillingType] = BillingType.fixed_recurring

    price_id: str
    amount: Decimal
    interval: BillingInterval


@dataclass(frozen=True)
class UsageInAdvancePrice:
    billing_type: ClassVar[BillingType] = BillingType.usage_in_advance

    price_id: str
    interval: BillingInterval
    feature_id: str
    unit_amount: Decimal
    billing_units: int = 1
    feature_key: str | None = None


@dataclass(frozen=True)
class UsageInArrearsPrice:
    billing_type: ClassVar[BillingType] = BillingType.usage_in_arrears

    price_id: str
    interval: BillingInterval
    feature_id: str
    tiers: tuple[UsageTier, ...]
    billing_units: int = 1
    feature_key: str | None = None
    processor_price_id: str | None = None
    processor_meter_id: str | None = None


ClassifiedPrice = Union[OneOffPrice, FixedRecurringPrice, UsageInAdvancePrice, UsageInArrearsPrice]


@dataclass
class PricePartition:
    one_off: list[OneOffPrice] = field(default_factory=list)
    bill_now: list[FixedRecurringPrice | UsageInAdvancePrice] = field(default_factory=list)
    bill_later: list[UsageInArrearsPrice] = field(default_factory=list)

    @property
    def only_one_off(self) -> bool:
        return bool(self.one_off) and not self.bill_now and not self.bill_later

    @property
    def recurring(self) -> list[ClassifiedPrice]:
        return [*self.bill_now, *self.bill_later]


@dataclass(frozen=True)
class LineAmount:
    amount_per_unit: Decimal
    quantity: int

    @property
    def total(self) -> Decimal:
        return round_money(self.amount_per_unit * self.quantity)


def to_minor_units(amount: Decimal) -> int:
    """Convert a currency amount to the processor's integer minor units."""
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _tiers(configs: list[UsageTierConfig]) -> tuple[UsageTier, ...]:
    tiers = []
    for tier in configs:
        to = tier.to if tier.to is not None and tier.to >= 0 else None
        tiers.append(UsageTier(to=to, amount=tier.amount))
    return tuple(tiers)


def _format_validation_error(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        loc = ".".join(str(item) for item in error.get("loc", ()))
        parts.append(f"{loc}: {error.get('msg')}" if loc else str(error.get("msg")))
    return "; ".join(parts)


def classify_config(config: dict | None, price_id: str = "") -> ClassifiedPrice:
    """Classify a raw price config.

    Raises:
        PriceConfigError: if the config is missing or malformed.
    """
    if not isinstance(config, dict) or not config.get("type"):
        raise PriceConfigError(f"Price {price_id}: missing `type` field in price config")

    try:
        if config["type"] == "fixed":
            fixed = FixedPriceConfig.model_validate(config)
            if fixed.interval in (None, BillingInterval.one_off):
                return OneOffPrice(price_id=price_id, amount=fixed.amount)
            return FixedRecurringPrice(
                price_id=price_id, amount=fixed.amount, interval=fixed.interval
            )
        if config["type"] == "usage":
            usage = UsagePriceConfig.model_validate(config)
        else:
            raise PriceConfigError(
                f"Price {price_id}: unknown price type {config['type']!r}"
            )
    except ValidationError as exc:
        raise PriceConfigError(
            f"Price {price_id}: invalid {config['type']} price config | "
            f"{_format_validation_error(exc)}"
        ) from exc

    tiers = _tiers(usage.usage_tiers)
    if usage.interval in (None, BillingInterval.one_off):
        return OneOffPrice(
            price_id=price_id,
            amount=tiers[0].amount,
            feature_id=usage.internal_feature_id,
            billing_units=usage.billing_units,
        )
    if usage.bill_when == BillWhen.start_of_period:
        return UsageInAdvancePrice(
            price_id=price_id,
            interval=usage.interval,
            feature_id=usage.internal_feature_id,
            feature_key=usage.feature_id,
            unit_amount=tiers[0].amount,
            billing_units=usage.billing_units,
        )
    return UsageInArrearsPrice(
        price_id=price_id,
        interval=usage.interval,
        feature_id=usage.internal_feature_id,
        feature_key=usage.feature_id,
        tiers=tiers,
        billing_units=usage.billing_units,
        processor_price_id=usage.processor_price_id,
        processor_meter_id=usage.processor_meter_id,
    )


def classify(price) -> ClassifiedPrice:
    """Classify a ``Price`` row (anything with ``id`` and ``config``)."""
    return classify_config(price.config, str(price.id))


def billing_type(price) -> BillingType:
    return classify(price).billing_type


def partition(prices: Iterable) -> PricePartition:
    result = PricePartition()
    for price in prices:
        classified = price if _is_classified(price) else classify(price)
        if isinstance(classified, OneOffPrice):
            result.one_off.append(classified)
        elif isinstance(classified, UsageInArrearsPrice):
            result.bill_later.append(classified)
        else:
            result.bill_now.append(classified)
    return result


def _is_classified(value) -> bool:
    return isinstance(
        value, (OneOffPrice, FixedRecurringPrice, UsageInAdvancePrice, UsageInArrearsPrice)
    )


def requires_quantity(classified: ClassifiedPrice) -> bool:
    if isinstance(classified, UsageInAdvancePrice):
        return True
    return isinstance(classified, OneOffPrice) and classified.feature_id is not None


def line_amount(classified: ClassifiedPrice, quantity: int | None = None) -> LineAmount:
    """Amount for a price billed up front (one-off or first period)."""
    if isinstance(classified, (OneOffPrice,)) and classified.feature_id is None:
        return LineAmount(amount_per_unit=classified.amount, quantity=1)
    if isinstance(classified, OneOffPrice):
        return LineAmount(amount_per_unit=classified.amount, quantity=int(quantity or 0))
    if isinstance(classified, FixedRecurringPrice):
        return LineAmount(amount_per_unit=classified.amount, quantity=1)
    if isinstance(classified, UsageInAdvancePrice):
        return LineAmount(amount_per_unit=classified.unit_amount, quantity=int(quantity or 0))
    # Arrears prices have nothing due up front.
    return LineAmount(amount_per_unit=Decimal("0"), quantity=0)


def overage_amount(classified: UsageInArrearsPrice, overage: Decimal | int) -> Decimal:
    """Price overage usage with volume tiering.

    All billable units are charged at the rate of the tier the total falls
    into, matching how the processor's metered price is tiered.
    """
    overage = Decimal(str(overage))
    if overage <= 0:
        return Decimal("0.00")
    packs = math.ceil(overage / Decimal(classified.billing_units))
    tier = next(
        (tier for tier in classified.tiers if tier.contains(overage)),
        classified.tiers[-1],
    )
    return round_money(tier.amount * packs)


def is_free(classified_prices: Iterable[ClassifiedPrice]) -> bool:
    for classified in classified_prices:
        if isinstance(classified, UsageInArrearsPrice):
            if any(tier.amount > 0 for tier in classified.tiers):
                return False
        elif isinstance(classified, UsageInAdvancePrice):
            if classified.unit_amount > 0:
                return False
        elif classified.amount > 0:
            return False
    return True


def is_free_product(prices: Iterable) -> bool:
    return is_free(classify(price) for price in prices)


def monthly_recurring_amount(
    classified_prices: Iterable[ClassifiedPrice], quantities: dict[str, int] | None = None
) -> Decimal:
    """Recurring amount normalized to one month, used to order products."""
    quantities = quantities or {}
    total = Decimal("0")
    for classified in classified_prices:
        if isinstance(classified, FixedRecurringPrice):
            total += classified.amount / INTERVAL_MONTHS[classified.interval]
        elif isinstance(classified, UsageInAdvancePrice):
            quantity = quantities.get(classified.feature_id, 1)
            total += classified.unit_amount * quantity / INTERVAL_MONTHS[classified.interval]
    return total


def processor_recurring(interval: BillingInterval) -> dict:
    return dict(PROCESSOR_RECURRING[interval])


def prices_are_same(price_a, price_b) -> bool:
    if price_a.name != price_b.name:
        return False
    return classify_config(price_a.config) == classify_config(price_b.config)
