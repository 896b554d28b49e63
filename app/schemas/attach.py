from __future__ import annotations

import enum
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from app.models.customer_product import CustomerProductStatus


class FeatureOption(BaseModel):
    feature_id: str = Field(min_length=1)
    quantity: int = Field(ge=0)


class AttachRequest(BaseModel):
    product_id: UUID
    # Subset of the product's prices; defaults to all of them.
    price_ids: list[UUID] | None = None
    options: list[FeatureOption] = Field(default_factory=list)
    free_trial: bool = False
    idempotency_key: str | None = Field(default=None, max_length=200)


class AttachOutcome(enum.Enum):
    attached = "attached"
    scheduled = "scheduled"
    checkout_required = "checkout_required"


class SubscriptionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    processor_subscription_id: str
    position: int
    interval: str | None = None


class CustomerProductRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    customer_id: UUID
    product_id: UUID
    product_group: str
    is_add_on: bool
    status: CustomerProductStatus
    options: list | None = None
    trial_ends_at: datetime | None = None
    starts_at: datetime | None = None
    next_reset_at: datetime | None = None
    canceled_at: datetime | None = None
    ended_at: datetime | None = None
    last_invoice_id: str | None = None
    subscriptions: list[SubscriptionRead] = Field(default_factory=list)


class AttachResponse(BaseModel):
    outcome: AttachOutcome
    transition: str
    customer_product: CustomerProductRead | None = None
    checkout_url: str | None = None
    invoice_ids: list[str] = Field(default_factory=list)
    mirror_failures: list[str] = Field(default_factory=list)


class StatusUpdateRequest(BaseModel):
    status: CustomerProductStatus


class UsageRequest(BaseModel):
    feature_id: UUID
    value: Decimal = Field(gt=0)
    # Stable per usage record; a replay is neither deducted nor metered again.
    identifier: str = Field(min_length=1, max_length=100)
    timestamp: datetime | None = None


class UsageResponse(BaseModel):
    feature_id: UUID
    balance: Decimal | None = None
    overage_reported: Decimal = Decimal("0")
    replayed: bool = False
