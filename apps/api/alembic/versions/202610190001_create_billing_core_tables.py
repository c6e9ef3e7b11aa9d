"""create billing core tables

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


def upgrade() -> None:
    op.create_table(
        "user_subscription",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("tier", sa.String(length=16), nullable=False, server_default="free"),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="active"),
        sa.Column("billing_period", sa.String(length=16), nullable=True),
        sa.Column("is_paid_subscription", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("external_subscription_id", sa.String(length=255), nullable=True),
        sa.Column("external_customer_id", sa.String(length=255), nullable=True),
        sa.Column("starts_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_billing_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_payment_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("previous_tier", sa.String(length=16), nullable=True),
        sa.Column("downgrade_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("grace_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_read_only", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("processor_synced_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", name="uq_user_subscription_user"),
    )
    op.create_index(
        "ix_user_subscription_external_subscription",
        "user_subscription",
        ["external_subscription_id"],
    )
    op.create_index("ix_user_subscription_external_customer", "user_subscription", ["external_customer_id"])
    op.create_index("ix_user_subscription_grace_period_end", "user_subscription", ["grace_period_end"])

    op.create_table(
        "subscription_change_log",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("actor_id", sa.String(length=128), nullable=True),
        sa.Column("change_type", sa.String(length=64), nullable=False),
        sa.Column("previous_tier", sa.String(length=16), nullable=True),
        sa.Column("new_tier", sa.String(length=16), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("notes", sa.JSON(), nullable=True),
        sa.Column("correlation_id", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_subscription_change_log_user", "subscription_change_log", ["user_id", "created_at"])

    op.create_table(
        "promo_code",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("code", sa.String(length=64), nullable=False),
        sa.Column("tier_granted", sa.String(length=16), nullable=False),
        sa.Column("max_uses", sa.Integer(), nullable=True),
        sa.Column("current_uses", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("created_by", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("code", name="uq_promo_code_code"),
    )

    op.create_table(
        "creator_code",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("code", sa.String(length=64), nullable=False),
        sa.Column("creator_name", sa.String(length=255), nullable=False),
        sa.Column("tier_granted", sa.String(length=16), nullable=False),
        sa.Column("trial_days", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("discount_percentage", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_uses", sa.Integer(), nullable=True),
        sa.Column("current_uses", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("created_by", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("code", name="uq_creator_code_code"),
    )

    op.create_table(
        "code_redemption",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("code_type", sa.String(length=16), nullable=False),
        sa.Column("code_id", sa.Uuid(), nullable=False),
        sa.Column("tier_granted", sa.String(length=16), nullable=False),
        sa.Column("trial_days_granted", sa.Integer(), nullable=True),
        sa.Column("discount_percentage", sa.Integer(), nullable=True),
        sa.Column("redeemed_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", "code_id", name="uq_code_redemption_user_code"),
    )
    op.create_index("ix_code_redemption_code", "code_redemption", ["code_type", "code_id"])

    op.create_table(
        "billing_invoice",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("invoice_number", sa.String(length=64), nullable=False),
        sa.Column("amount", sa.Numeric(18, 2), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("tier", sa.String(length=16), nullable=True),
        sa.Column("billing_period", sa.String(length=16), nullable=True),
        sa.Column("issued_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("paid_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("source_type", sa.String(length=32), nullable=True),
        sa.Column("source_id", sa.String(length=255), nullable=True),
        sa.Column("external_charge_id", sa.String(length=255), nullable=True),
        sa.Column("refund_of_invoice_id", sa.Uuid(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["refund_of_invoice_id"], ["billing_invoice.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("invoice_number", name="uq_billing_invoice_number"),
        sa.UniqueConstraint("source_type", "source_id", name="uq_billing_invoice_source"),
    )
    op.create_index("ix_billing_invoice_user_date", "billing_invoice", ["user_id", "issued_date"])
    op.create_index("ix_billing_invoice_refund_of", "billing_invoice", ["refund_of_invoice_id"])
    op.create_index("ix_billing_invoice_charge", "billing_invoice", ["external_charge_id"])

    op.create_table(
        "billing_refund_request",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("invoice_id", sa.Uuid(), nullable=True),
        sa.Column("amount", sa.Numeric(18, 2), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("reason", sa.String(length=64), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("admin_id", sa.String(length=128), nullable=True),
        sa.Column("admin_notes", sa.Text(), nullable=True),
        sa.Column("external_refund_id", sa.String(length=255), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["invoice_id"], ["billing_invoice.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_billing_refund_request_status", "billing_refund_request", ["status", "created_at"])
    op.create_index("ix_billing_refund_request_user", "billing_refund_request", ["user_id"])

    op.create_table(
        "payment_processor_event",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("event_id", sa.String(length=255), nullable=False),
        sa.Column("event_type", sa.String(length=64), nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=True),
        sa.Column("processor_created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("event_id", name="uq_payment_processor_event_event_id"),
    )
    op.create_index("ix_payment_processor_event_type", "payment_processor_event", ["event_type"])

    op.create_table(
        "billing_reconciliation_issue",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("operation", sa.String(length=64), nullable=False),
        sa.Column("external_reference", sa.String(length=255), nullable=True),
        sa.Column("detail", sa.Text(), nullable=False),
        sa.Column("resolved", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("correlation_id", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_billing_reconciliation_issue_open",
        "billing_reconciliation_issue",
        ["resolved", "created_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_billing_reconciliation_issue_open", table_name="billing_reconciliation_issue")
    op.drop_table("billing_reconciliation_issue")
    op.drop_index("ix_payment_processor_event_type", table_name="payment_processor_event")
    op.drop_table("payment_processor_event")
    op.drop_index("ix_billing_refund_request_user", table_name="billing_refund_request")
    op.drop_index("ix_billing_refund_request_status", table_name="billing_refund_request")
    op.drop_table("billing_refund_request")
    op.drop_index("ix_billing_invoice_charge", table_name="billing_invoice")
    op.drop_index("ix_billing_invoice_refund_of", table_name="billing_invoice")
    op.drop_index("ix_billing_invoice_user_date", table_name="billing_invoice")
    op.drop_table("billing_invoice")
    op.drop_index("ix_code_redemption_code", table_name="code_redemption")
    op.drop_table("code_redemption")
    op.drop_table("creator_code")
    op.drop_table("promo_code")
    op.drop_index("ix_subscription_change_log_user", table_name="subscription_change_log")
    op.drop_table("subscription_change_log")
    op.drop_index("ix_user_subscription_grace_period_end", table_name="user_subscription")
    op.drop_index("ix_user_subscription_external_customer", table_name="user_subscription")
    op.drop_index("ix_user_subscription_external_subscription", table_name="user_subscription")
    op.drop_table("user_subscription")
