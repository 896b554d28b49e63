import enum
import uuid
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db import Base
from app.models.organization import AppEnv


class CustomerProductStatus(enum.Enum):
    scheduled = "scheduled"
    active = "active"
    past_due = "past_due"
    expired = "expired"


class CustomerProduct(Base):
    """Customer x Product at a point in time.

    ``subscriptions`` is ordered by ``position``; the subscription at
    position 0 is the primary one, whose items are replaced in place on
    upgrade. Rows are expired, never deleted, once an invoice references them.
    """

    __tablename__ = "customer_products"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    customer_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("customers.id"), nullable=False
    )
    product_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("products.id"), nullable=False
    )
    org_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("organizations.id"), nullable=False
    )
    env: Mapped[AppEnv] = mapped_column(Enum(AppEnv), nullable=False)
    # Copied from the product so group-level lookups need no join.
    product_group: Mapped[str] = mapped_column(String(120), default="")
    is_add_on: Mapped[bool] = mapped_column(Boolean, default=False)
    status: Mapped[CustomerProductStatus] = mapped_column(
        Enum(CustomerProductStatus), default=CustomerProductStatus.active
    )
    options: Mapped[list | None] = mapped_column(JSON)
    free_trial_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("free_trials.id")
    )
    trial_ends_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    starts_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    next_reset_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    bill_later_only: Mapped[bool] = mapped_column(Boolean, default=False)
    last_invoice_id: Mapped[str | None] = mapped_column(String(120))
    # Pending-cancellation flag: set when the processor will cancel at period end.
    canceled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    customer = relationship("Customer", back_populates="customer_products")
    product = relationship("Product")
    subscriptions = relationship(
        "CustomerProductSubscription",
        back_populates="customer_product",
        order_by="CustomerProductSubscription.position",
        cascade="all, delete-orphan",
    )
    customer_prices = relationship(
        "CustomerPrice", back_populates="customer_product", cascade="all, delete-orphan"
    )
    customer_entitlements = relationship(
        "CustomerEntitlement", back_populates="customer_product", cascade="all, delete-orphan"
    )

    @property
    def subscription_ids(self) -> list[str]:
        return [sub.processor_subscription_id for sub in self.subscriptions]

    @property
    def primary_subscription_id(self) -> str | None:
        ids = self.subscription_ids
        return ids[0] if ids else None


class CustomerProductSubscription(Base):
    __tablename__ = "customer_product_subscriptions"
    __table_args__ = (
        UniqueConstraint(
            "customer_product_id",
            "processor_subscription_id",
            name="uq_customer_product_subscriptions_product_sub",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    customer_product_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("customer_products.id"), nullable=False
    )
    processor_subscription_id: Mapped[str] = mapped_column(
        String(120), nullable=False, index=True
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    interval: Mapped[str | None] = mapped_column(String(40))

    customer_product = relationship("CustomerProduct", back_populates="subscriptions")


class CustomerPrice(Base):
    __tablename__ = "customer_prices"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    customer_product_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("customer_products.id"), nullable=False
    )
    price_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("prices.id"), nullable=False
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    customer_product = relationship("CustomerProduct", back_populates="customer_prices")
    price = relationship("Price")


class CustomerEntitlement(Base):
    """Live balance for one feature under one customer product.

    ``balance`` may only go below zero when ``usage_allowed`` is set; the
    negative part is overage billed through a usage-in-arrears price.
    ``metered_overage`` is the part of that overage already reported to the
    processor meter; the processor bills it with the cycle, so only the rest
    is invoiced when the product is replaced.
    """

    __tablename__ = "customer_entitlements"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    customer_product_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("customer_products.id"), nullable=False
    )
    customer_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("customers.id"), nullable=False
    )
    entitlement_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("entitlements.id"), nullable=False
    )
    feature_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("features.id"), nullable=False
    )
    unlimited: Mapped[bool] = mapped_column(Boolean, default=False)
    balance: Mapped[Decimal | None] = mapped_column(Numeric(18, 4))
    usage_allowed: Mapped[bool] = mapped_column(Boolean, default=False)
    metered_overage: Mapped[Decimal] = mapped_column(Numeric(18, 4), default=Decimal("0"))
    next_reset_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    customer_product = relationship("CustomerProduct", back_populates="customer_entitlements")
    entitlement = relationship("Entitlement")
    feature = relationship("Feature")


class UsageRecord(Base):
    """One accepted usage report; the identifier makes replays no-ops."""

    __tablename__ = "usage_records"
    __table_args__ = (
        UniqueConstraint("customer_id", "feature_id", "identifier", name="uq_usage_records_identifier"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    customer_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("customers.id"), nullable=False
    )
    feature_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("features.id"), nullable=False
    )
    customer_entitlement_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("customer_entitlements.id"), nullable=False
    )
    identifier: Mapped[str] = mapped_column(String(100), nullable=False)
    value: Mapped[Decimal] = mapped_column(Numeric(18, 4), nullable=False)
    metered: Mapped[Decimal] = mapped_column(Numeric(18, 4), default=Decimal("0"))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
