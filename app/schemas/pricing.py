from __future__ import annotations

import enum
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


class BillingInterval(enum.Enum):
    one_off = "one_off"
    month = "month"
    quarter = "quarter"
    semi_annual = "semi_annual"
    year = "year"


class BillWhen(enum.Enum):
    start_of_period = "start_of_period"
    end_of_period = "end_of_period"


class UsageTierConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    # -1 (or a missing value) marks the open-ended last tier.
    to: Decimal | None = None
    amount: Decimal = Field(ge=0)


class FixedPriceConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: Literal["fixed"]
    amount: Decimal = Field(ge=0)
    interval: BillingInterval | None = None


class UsagePriceConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: Literal["usage"]
    bill_when: BillWhen
    interval: BillingInterval | None = None
    internal_feature_id: str
    feature_id: str | None = None
    usage_tiers: list[UsageTierConfig] = Field(min_length=1)
    billing_units: int = Field(default=1, ge=1)
    processor_price_id: str | None = None
    processor_meter_id: str | None = None

    @field_validator("usage_tiers")
    @classmethod
    def _last_tier_open_ended(cls, tiers: list[UsageTierConfig]) -> list[UsageTierConfig]:
        bounded = [tier.to for tier in tiers[:-1]]
        if any(to is None or to < 0 for to in bounded):
            raise ValueError("only the last usage tier may be open-ended")
        if bounded != sorted(bounded):
            raise ValueError("usage tiers must be in ascending order")
        return tiers
