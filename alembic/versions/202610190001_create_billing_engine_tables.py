"""create billing engine tables

Revision ID: 202610190001
Revises:
Create Date: 2026-10-19 09:00:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610190001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None

LIVE_STATUS_CLAUSE = "status IN ('active', 'trial', 'past_due')"


def upgrade() -> None:
    op.create_table(
        "product_plan",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("organization_id", sa.String(length=128), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("code", sa.String(length=128), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="draft"),
        sa.Column("pricing_model", sa.String(length=32), nullable=False),
        sa.Column("trial_days", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("organization_id", "code", name="uq_product_plan_code_org"),
    )
    op.create_index("ix_product_plan_org_status", "product_plan", ["organization_id", "status"])

    op.create_table(
        "usage_meter",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("organization_id", sa.String(length=128), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("unit", sa.String(length=64), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="active"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("organization_id", "name", name="uq_usage_meter_name_org"),
    )

    op.create_table(
        "product_pricing",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("plan_id", sa.Uuid(), nullable=False),
        sa.Column("pricing_type", sa.String(length=32), nullable=False),
        sa.Column("region", sa.String(length=64), nullable=True),
        sa.Column("currency", sa.String(length=16), nullable=False),
        sa.Column("amount", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("interval", sa.String(length=16), nullable=True),
        sa.Column("per_seat_amount", sa.BigInteger(), nullable=True),
        sa.Column("usage_meter_id", sa.Uuid(), nullable=True),
        sa.Column("usage_tiers", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["plan_id"], ["product_plan.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["usage_meter_id"], ["usage_meter.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_product_pricing_plan", "product_pricing", ["plan_id", "pricing_type"])

    op.create_table(
        "product_feature",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("plan_id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("display_order", sa.Integer(), nullable=False, server_default="0"),
        sa.ForeignKeyConstraint(["plan_id"], ["product_plan.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "product_add_on",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("organization_id", sa.String(length=128), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("pricing_model", sa.String(length=32), nullable=False, server_default="flat"),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="active"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_product_add_on_org_status", "product_add_on", ["organization_id", "status"])

    op.create_table(
        "product_add_on_pricing",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("add_on_id", sa.Uuid(), nullable=False),
        sa.Column("pricing_type", sa.String(length=32), nullable=False),
        sa.Column("currency", sa.String(length=16), nullable=False),
        sa.Column("amount", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("interval", sa.String(length=16), nullable=True),
        sa.Column("per_seat_amount", sa.BigInteger(), nullable=True),
        sa.Column("usage_meter_id", sa.Uuid(), nullable=True),
        sa.Column("usage_tiers", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["add_on_id"], ["product_add_on.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["usage_meter_id"], ["usage_meter.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "product_plan_add_on",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("plan_id", sa.Uuid(), nullable=False),
        sa.Column("add_on_id", sa.Uuid(), nullable=False),
        sa.Column("billing_type", sa.String(length=32), nullable=False, server_default="billed_with_main"),
        sa.Column("display_order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["plan_id"], ["product_plan.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["add_on_id"], ["product_add_on.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("plan_id", "add_on_id", name="uq_product_plan_add_on"),
    )

    op.create_table(
        "coupon",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("organization_id", sa.String(length=128), nullable=False),
        sa.Column("code", sa.String(length=64), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("discount_type", sa.String(length=32), nullable=False),
        sa.Column("discount_value", sa.BigInteger(), nullable=False),
        sa.Column("applicable_plan_ids", sa.JSON(), nullable=True),
        sa.Column("max_redemptions", sa.Integer(), nullable=True),
        sa.Column("redemption_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="active"),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("organization_id", "code", name="uq_coupon_code_org"),
        sa.CheckConstraint("redemption_count >= 0", name="ck_coupon_redemption_count_nonnegative"),
    )
    op.create_index("ix_coupon_org_status", "coupon", ["organization_id", "status"])

    op.create_table(
        "subscription",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("organization_id", sa.String(length=128), nullable=False),
        sa.Column("customer_org_id", sa.String(length=128), nullable=False),
        sa.Column("subscription_number", sa.String(length=64), nullable=False),
        sa.Column("plan_id", sa.Uuid(), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="draft"),
        sa.Column("collection_method", sa.String(length=32), nullable=False, server_default="automatic"),
        sa.Column("billing_cycle", sa.String(length=16), nullable=False),
        sa.Column("region", sa.String(length=64), nullable=True),
        sa.Column("currency", sa.String(length=16), nullable=False),
        sa.Column("current_period_start", sa.Date(), nullable=False),
        sa.Column("current_period_end", sa.Date(), nullable=False),
        sa.Column("trial_end", sa.Date(), nullable=True),
        sa.Column("seats", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("mrr", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("coupon_id", sa.Uuid(), nullable=True),
        sa.Column("free_cycles_remaining", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("customer_discount_type", sa.String(length=32), nullable=True),
        sa.Column("customer_discount_value", sa.Integer(), nullable=True),
        sa.Column("customer_discount_is_recurring", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("linked_deal_id", sa.String(length=128), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["plan_id"], ["product_plan.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["coupon_id"], ["coupon.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("organization_id", "subscription_number", name="uq_subscription_number_org"),
    )
    op.create_index(
        "uq_subscription_live_customer",
        "subscription",
        ["organization_id", "customer_org_id"],
        unique=True,
        postgresql_where=sa.text(LIVE_STATUS_CLAUSE),
        sqlite_where=sa.text(LIVE_STATUS_CLAUSE),
    )
    op.create_index("ix_subscription_org_status", "subscription", ["organization_id", "status"])
    op.create_index("ix_subscription_period_end", "subscription", ["status", "current_period_end"])

    op.create_table(
        "subscription_add_on",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("subscription_id", sa.Uuid(), nullable=False),
        sa.Column("plan_add_on_id", sa.Uuid(), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["subscription_id"], ["subscription.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["plan_add_on_id"], ["product_plan_add_on.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("subscription_id", "plan_add_on_id", name="uq_subscription_add_on"),
    )

    op.create_table(
        "subscription_activity",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("subscription_id", sa.Uuid(), nullable=False),
        sa.Column("activity_type", sa.String(length=64), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("old_status", sa.String(length=32), nullable=True),
        sa.Column("new_status", sa.String(length=32), nullable=True),
        sa.Column("user_id", sa.String(length=128), nullable=True),
        sa.Column("metadata_json", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["subscription_id"], ["subscription.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_subscription_activity_subscription",
        "subscription_activity",
        ["subscription_id", "created_at"],
    )

    op.create_table(
        "usage_history",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("organization_id", sa.String(length=128), nullable=False),
        sa.Column("subscription_id", sa.Uuid(), nullable=False),
        sa.Column("usage_meter_id", sa.Uuid(), nullable=False),
        sa.Column("period_start", sa.Date(), nullable=False),
        sa.Column("period_end", sa.Date(), nullable=False),
        sa.Column("quantity", sa.BigInteger(), nullable=False),
        sa.Column("recorded_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["subscription_id"], ["subscription.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["usage_meter_id"], ["usage_meter.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("quantity >= 0", name="ck_usage_history_quantity_nonnegative"),
    )
    op.create_index(
        "ix_usage_history_subscription_period",
        "usage_history",
        ["subscription_id", "usage_meter_id", "period_start"],
    )

    op.create_table(
        "invoice",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("organization_id", sa.String(length=128), nullable=False),
        sa.Column("customer_org_id", sa.String(length=128), nullable=False),
        sa.Column("subscription_id", sa.Uuid(), nullable=True),
        sa.Column("invoice_number", sa.String(length=64), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="draft"),
        sa.Column("currency", sa.String(length=16), nullable=False),
        sa.Column("subtotal", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("tax", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("total", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("line_items", sa.JSON(), nullable=False),
        sa.Column("period_start", sa.Date(), nullable=True),
        sa.Column("period_end", sa.Date(), nullable=True),
        sa.Column("issue_date", sa.Date(), nullable=False),
        sa.Column("due_date", sa.Date(), nullable=False),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_gating", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["subscription_id"], ["subscription.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("organization_id", "invoice_number", name="uq_invoice_number_org"),
        sa.CheckConstraint("total >= 0", name="ck_invoice_total_nonnegative"),
    )
    op.create_index("ix_invoice_org_status", "invoice", ["organization_id", "status"])
    op.create_index("ix_invoice_status_due", "invoice", ["status", "due_date"])
    op.create_index("ix_invoice_subscription", "invoice", ["subscription_id", "period_start"])


def downgrade() -> None:
    op.drop_index("ix_invoice_subscription", table_name="invoice")
    op.drop_index("ix_invoice_status_due", table_name="invoice")
    op.drop_index("ix_invoice_org_status", table_name="invoice")
    op.drop_table("invoice")

    op.drop_index("ix_usage_history_subscription_period", table_name="usage_history")
    op.drop_table("usage_history")

    op.drop_index("ix_subscription_activity_subscription", table_name="subscription_activity")
    op.drop_table("subscription_activity")
    op.drop_table("subscription_add_on")

    op.drop_index("ix_subscription_period_end", table_name="subscription")
    op.drop_index("ix_subscription_org_status", table_name="subscription")
    op.drop_index("uq_subscription_live_customer", table_name="subscription")
    op.drop_table("subscription")

    op.drop_index("ix_coupon_org_status", table_name="coupon")
    op.drop_table("coupon")
    op.drop_table("product_plan_add_on")
    op.drop_table("product_add_on_pricing")
    op.drop_index("ix_product_add_on_org_status", table_name="product_add_on")
    op.drop_table("product_add_on")
    op.drop_table("product_feature")
    op.drop_index("ix_product_pricing_plan", table_name="product_pricing")
    op.drop_table("product_pricing")
    op.drop_table("usage_meter")
    op.drop_index("ix_product_plan_org_status", table_name="product_plan")
    op.drop_table("product_plan")
