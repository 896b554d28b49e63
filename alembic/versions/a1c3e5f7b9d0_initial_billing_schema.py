"""Initial billing schema.

Revision ID: a1c3e5f7b9d0
Revises:
Create Date: 2026-10-17

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "a1c3e5f7b9d0"
down_revision = None
branch_labels = None
depends_on = None


def _uuid_pk():
    return sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True)


def _fk(name: str, target: str, nullable: bool = False):
    return sa.Column(
        name, postgresql.UUID(as_uuid=True), sa.ForeignKey(target), nullable=nullable
    )


def _timestamps(updated: bool = True):
    columns = [sa.Column("created_at", sa.DateTime(timezone=True), nullable=True)]
    if updated:
        columns.append(sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True))
    return columns


def upgrade() -> None:
    app_env = postgresql.ENUM("sandbox", "live", name="appenv", create_type=False)
    allowance_type = postgresql.ENUM(
        "fixed", "unlimited", "none", name="allowancetype", create_type=False
    )
    customer_product_status = postgresql.ENUM(
        "scheduled",
        "active",
        "past_due",
        "expired",
        name="customerproductstatus",
        create_type=False,
    )
    invoice_status = postgresql.ENUM(
        "draft", "open", "paid", "void", "uncollectible", name="invoicestatus", create_type=False
    )
    event_status = postgresql.ENUM(
        "received", "processed", "ignored", "failed", name="processoreventstatus", create_type=False
    )
    bind = op.get_bind()
    for enum_type in (
        app_env,
        allowance_type,
        customer_product_status,
        invoice_status,
        event_status,
    ):
        enum_type.create(bind, checkfirst=True)

    op.create_table(
        "organizations",
        _uuid_pk(),
        sa.Column("slug", sa.String(80), nullable=False),
        sa.Column("name", sa.String(160), nullable=False),
        sa.Column("default_currency", sa.String(3), nullable=True),
        sa.Column("sandbox_secret_key", sa.Text(), nullable=True),
        sa.Column("live_secret_key", sa.Text(), nullable=True),
        sa.Column("sandbox_webhook_secret", sa.Text(), nullable=True),
        sa.Column("live_webhook_secret", sa.Text(), nullable=True),
        sa.Column("success_url", sa.String(512), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("slug", name="uq_organizations_slug"),
    )
    op.create_table(
        "customers",
        _uuid_pk(),
        _fk("org_id", "organizations.id"),
        sa.Column("env", app_env, nullable=False),
        sa.Column("external_id", sa.String(120), nullable=False),
        sa.Column("name", sa.String(160), nullable=True),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("fingerprint", sa.String(255), nullable=True),
        sa.Column("processor_customer_id", sa.String(120), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint(
            "org_id", "env", "external_id", name="uq_customers_org_env_external_id"
        ),
    )
    op.create_table(
        "features",
        _uuid_pk(),
        _fk("org_id", "organizations.id"),
        sa.Column("env", app_env, nullable=False),
        sa.Column("feature_key", sa.String(120), nullable=False),
        sa.Column("name", sa.String(160), nullable=False),
        *_timestamps(updated=False),
        sa.UniqueConstraint("org_id", "env", "feature_key", name="uq_features_org_env_key"),
    )
    op.create_table(
        "products",
        _uuid_pk(),
        _fk("org_id", "organizations.id"),
        sa.Column("env", app_env, nullable=False),
        sa.Column("product_key", sa.String(120), nullable=False),
        sa.Column("name", sa.String(160), nullable=False),
        sa.Column("group", sa.String(120), nullable=True),
        sa.Column("is_add_on", sa.Boolean(), nullable=True),
        sa.Column("is_default", sa.Boolean(), nullable=True),
        sa.Column("processor_product_id", sa.String(120), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("org_id", "env", "product_key", name="uq_products_org_env_key"),
    )
    op.create_table(
        "prices",
        _uuid_pk(),
        _fk("product_id", "products.id"),
        sa.Column("name", sa.String(160), nullable=True),
        sa.Column("config", sa.JSON(), nullable=False),
        sa.Column("is_custom", sa.Boolean(), nullable=True),
        *_timestamps(updated=False),
    )
    op.create_table(
        "entitlements",
        _uuid_pk(),
        _fk("product_id", "products.id"),
        _fk("feature_id", "features.id"),
        sa.Column("allowance_type", allowance_type, nullable=True),
        sa.Column("allowance", sa.Integer(), nullable=True),
        sa.Column("interval", sa.String(40), nullable=True),
        *_timestamps(updated=False),
    )
    op.create_table(
        "free_trials",
        _uuid_pk(),
        sa.Column(
            "product_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("products.id"),
            nullable=False,
            unique=True,
        ),
        sa.Column("length_days", sa.Integer(), nullable=False),
        sa.Column("unique_fingerprint", sa.Boolean(), nullable=True),
        *_timestamps(updated=False),
    )
    op.create_table(
        "customer_products",
        _uuid_pk(),
        _fk("customer_id", "customers.id"),
        _fk("product_id", "products.id"),
        _fk("org_id", "organizations.id"),
        sa.Column("env", app_env, nullable=False),
        sa.Column("product_group", sa.String(120), nullable=True),
        sa.Column("is_add_on", sa.Boolean(), nullable=True),
        sa.Column("status", customer_product_status, nullable=True),
        sa.Column("options", sa.JSON(), nullable=True),
        _fk("free_trial_id", "free_trials.id", nullable=True),
        sa.Column("trial_ends_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("starts_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_reset_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("bill_later_only", sa.Boolean(), nullable=True),
        sa.Column("last_invoice_id", sa.String(120), nullable=True),
        sa.Column("canceled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index(
        "ix_customer_products_customer_group_status",
        "customer_products",
        ["customer_id", "product_group", "status"],
    )
    op.create_table(
        "customer_product_subscriptions",
        _uuid_pk(),
        _fk("customer_product_id", "customer_products.id"),
        sa.Column("processor_subscription_id", sa.String(120), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("interval", sa.String(40), nullable=True),
        sa.UniqueConstraint(
            "customer_product_id",
            "processor_subscription_id",
            name="uq_customer_product_subscriptions_product_sub",
        ),
    )
    op.create_index(
        "ix_customer_product_subscriptions_processor_subscription_id",
        "customer_product_subscriptions",
        ["processor_subscription_id"],
    )
    op.create_table(
        "customer_prices",
        _uuid_pk(),
        _fk("customer_product_id", "customer_products.id"),
        _fk("price_id", "prices.id"),
        *_timestamps(updated=False),
    )
    op.create_table(
        "customer_entitlements",
        _uuid_pk(),
        _fk("customer_product_id", "customer_products.id"),
        _fk("customer_id", "customers.id"),
        _fk("entitlement_id", "entitlements.id"),
        _fk("feature_id", "features.id"),
        sa.Column("unlimited", sa.Boolean(), nullable=True),
        sa.Column("balance", sa.Numeric(18, 4), nullable=True),
        sa.Column("usage_allowed", sa.Boolean(), nullable=True),
        sa.Column("next_reset_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_table(
        "invoices",
        _uuid_pk(),
        _fk("customer_id", "customers.id"),
        sa.Column("processor_invoice_id", sa.String(120), nullable=False),
        sa.Column("processor_subscription_id", sa.String(120), nullable=True),
        sa.Column("status", invoice_status, nullable=True),
        sa.Column("currency", sa.String(3), nullable=True),
        sa.Column("total", sa.Numeric(12, 2), nullable=True),
        sa.Column("hosted_invoice_url", sa.String(1024), nullable=True),
        sa.Column("product_ids", sa.JSON(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("processor_invoice_id", name="uq_invoices_processor_invoice_id"),
    )
    op.create_table(
        "invoice_customer_products",
        _uuid_pk(),
        _fk("invoice_id", "invoices.id"),
        _fk("customer_product_id", "customer_products.id"),
        sa.UniqueConstraint(
            "invoice_id", "customer_product_id", name="uq_invoice_customer_products_pair"
        ),
    )
    op.create_table(
        "processor_events",
        _uuid_pk(),
        _fk("org_id", "organizations.id"),
        sa.Column("env", app_env, nullable=False),
        sa.Column("processor_event_id", sa.String(120), nullable=False),
        sa.Column("event_type", sa.String(120), nullable=False),
        sa.Column("status", event_status, nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=True),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("processor_event_id", name="uq_processor_events_event_id"),
    )
    op.create_table(
        "resource_locks",
        _uuid_pk(),
        sa.Column("key", sa.String(255), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("locked_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("key", name="uq_resource_locks_key"),
    )


def downgrade() -> None:
    for table in (
        "resource_locks",
        "processor_events",
        "invoice_customer_products",
        "invoices",
        "customer_entitlements",
        "customer_prices",
        "customer_product_subscriptions",
        "customer_products",
        "free_trials",
        "entitlements",
        "prices",
        "products",
        "features",
        "customers",
        "organizations",
    ):
        op.drop_table(table)
    bind = op.get_bind()
    for name in (
        "processoreventstatus",
        "invoicestatus",
        "customerproductstatus",
        "allowancetype",
        "appenv",
    ):
        postgresql.ENUM(name=name).drop(bind, checkfirst=True)
