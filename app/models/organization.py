import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import DateTime, Enum, ForeignKey, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db import Base


class AppEnv(enum.Enum):
    sandbox = "sandbox"
    live = "live"


class Organization(Base):
    __tablename__ = "organizations"
    __table_args__ = (UniqueConstraint("slug", name="uq_organizations_slug"),)

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    slug: Mapped[str] = mapped_column(String(80), nullable=False)
    name: Mapped[str] = mapped_column(String(160), nullable=False)
    default_currency: Mapped[str] = mapped_column(String(3), default="usd")

    # Fernet-encrypted processor credentials, one pair per environment.
    sandbox_secret_key: Mapped[str | None] = mapped_column(Text)
    live_secret_key: Mapped[str | None] = mapped_column(Text)
    sandbox_webhook_secret: Mapped[str | None] = mapped_column(Text)
    live_webhook_secret: Mapped[str | None] = mapped_column(Text)
    success_url: Mapped[str | None] = mapped_column(String(512))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    customers = relationship("Customer", back_populates="org")

    def encrypted_secret_key(self, env: AppEnv) -> str | None:
        return self.live_secret_key if env == AppEnv.live else self.sandbox_secret_key

    def encrypted_webhook_secret(self, env: AppEnv) -> str | None:
        return self.live_webhook_secret if env == AppEnv.live else self.sandbox_webhook_secret


class Customer(Base):
    __tablename__ = "customers"
    __table_args__ = (
        UniqueConstraint("org_id", "env", "external_id", name="uq_customers_org_env_external_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    org_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("organizations.id"), nullable=False
    )
    env: Mapped[AppEnv] = mapped_column(Enum(AppEnv), nullable=False)
    external_id: Mapped[str] = mapped_column(String(120), nullable=False)
    name: Mapped[str | None] = mapped_column(String(160))
    email: Mapped[str | None] = mapped_column(String(255))
    fingerprint: Mapped[str | None] = mapped_column(String(255))
    processor_customer_id: Mapped[str | None] = mapped_column(String(120))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    org = relationship("Organization", back_populates="customers")
    customer_products = relationship("CustomerProduct", back_populates="customer")
