from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from app.models.billing import InvoiceStatus
from app.schemas.attach import CustomerProductRead


class CustomerEntitlementRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    customer_product_id: UUID
    feature_id: UUID
    unlimited: bool
    balance: Decimal | None = None
    usage_allowed: bool
    next_reset_at: datetime | None = None


class InvoiceRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    processor_invoice_id: str
    processor_subscription_id: str | None = None
    status: InvoiceStatus
    currency: str
    total: Decimal
    hosted_invoice_url: str | None = None
    product_ids: list | None = None
    created_at: datetime


class CustomerDetails(BaseModel):
    id: UUID
    external_id: str
    name: str | None = None
    email: str | None = None
    main_products: list[CustomerProductRead] = Field(default_factory=list)
    add_ons: list[CustomerProductRead] = Field(default_factory=list)
    scheduled: list[CustomerProductRead] = Field(default_factory=list)
    entitlements: list[CustomerEntitlementRead] = Field(default_factory=list)
    invoices: list[InvoiceRead] = Field(default_factory=list)


class BillingPortalResponse(BaseModel):
    url: str


class StatusChangeResponse(BaseModel):
    action: str
    customer_product: CustomerProductRead | None = None
    activated: CustomerProductRead | None = None
