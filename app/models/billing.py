import enum
import uuid
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    JSON,
    DateTime,
    Enum,
    ForeignKey,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db import Base
from app.models.organization import AppEnv


class InvoiceStatus(enum.Enum):
    draft = "draft"
    open = "open"
    paid = "paid"
    void = "void"
    uncollectible = "uncollectible"


class ProcessorEventStatus(enum.Enum):
    received = "received"
    processed = "processed"
    ignored = "ignored"
    failed = "failed"


class Invoice(Base):
    """Local mirror of a processor invoice, unique on the processor invoice id."""

    __tablename__ = "invoices"
    __table_args__ = (
        UniqueConstraint("processor_invoice_id", name="uq_invoices_processor_invoice_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    customer_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("customers.id"), nullable=False
    )
    processor_invoice_id: Mapped[str] = mapped_column(String(120), nullable=False)
    processor_subscription_id: Mapped[str | None] = mapped_column(String(120))
    status: Mapped[InvoiceStatus] = mapped_column(
        Enum(InvoiceStatus), default=InvoiceStatus.open
    )
    currency: Mapped[str] = mapped_column(String(3), default="usd")
    total: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0.00"))
    hosted_invoice_url: Mapped[str | None] = mapped_column(String(1024))
    product_ids: Mapped[list | None] = mapped_column(JSON)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    customer_product_links = relationship(
        "InvoiceCustomerProduct", back_populates="invoice", cascade="all, delete-orphan"
    )


class InvoiceCustomerProduct(Base):
    __tablename__ = "invoice_customer_products"
    __table_args__ = (
        UniqueConstraint(
            "invoice_id", "customer_product_id", name="uq_invoice_customer_products_pair"
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    invoice_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("invoices.id"), nullable=False
    )
    customer_product_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("customer_products.id"), nullable=False
    )

    invoice = relationship("Invoice", back_populates="customer_product_links")
    customer_product = relationship("CustomerProduct")


class ProcessorEvent(Base):
    __tablename__ = "processor_events"
    __table_args__ = (
        UniqueConstraint("processor_event_id", name="uq_processor_events_event_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    org_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("organizations.id"), nullable=False
    )
    env: Mapped[AppEnv] = mapped_column(Enum(AppEnv), nullable=False)
    processor_event_id: Mapped[str] = mapped_column(String(120), nullable=False)
    event_type: Mapped[str] = mapped_column(String(120), nullable=False)
    status: Mapped[ProcessorEventStatus] = mapped_column(
        Enum(ProcessorEventStatus), default=ProcessorEventStatus.received
    )
    error: Mapped[str | None] = mapped_column(Text)
    payload: Mapped[dict | None] = mapped_column(JSON)
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
