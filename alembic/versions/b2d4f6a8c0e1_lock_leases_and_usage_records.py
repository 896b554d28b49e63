"""Lock leases, metered overage and usage records.

Revision ID: b2d4f6a8c0e1
Revises: a1c3e5f7b9d0
Create Date: 2026-10-17

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "b2d4f6a8c0e1"
down_revision = "a1c3e5f7b9d0"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column("resource_locks", sa.Column("held_by", sa.String(64), nullable=True))
    op.add_column(
        "resource_locks", sa.Column("locked_until", sa.DateTime(timezone=True), nullable=True)
    )
    op.add_column(
        "customer_entitlements",
        sa.Column("metered_overage", sa.Numeric(18, 4), nullable=True, server_default="0"),
    )
    op.create_table(
        "usage_records",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "customer_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("customers.id"), nullable=False
        ),
        sa.Column(
            "feature_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("features.id"), nullable=False
        ),
        sa.Column(
            "customer_entitlement_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("customer_entitlements.id"),
            nullable=False,
        ),
        sa.Column("identifier", sa.String(100), nullable=False),
        sa.Column("value", sa.Numeric(18, 4), nullable=False),
        sa.Column("metered", sa.Numeric(18, 4), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint(
            "customer_id", "feature_id", "identifier", name="uq_usage_records_identifier"
        ),
    )


def downgrade() -> None:
    op.drop_table("usage_records")
    op.drop_column("customer_entitlements", "metered_overage")
    op.drop_column("resource_locks", "locked_until")
    op.drop_column("resource_locks", "held_by")
