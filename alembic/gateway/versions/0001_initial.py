"""initial gateway schema

Revision ID: 0001_gateway
Revises:
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_gateway"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "subscriptions",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("external_subscription_id", sa.String(), nullable=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False),
        sa.Column("price", sa.Numeric(18, 2), nullable=True),
        sa.Column("token", sa.String(), nullable=False),
        sa.Column("consumer_wallet_address", sa.String(), nullable=True),
        sa.Column("validator_wallet_address", sa.String(), nullable=True),
        sa.Column("hotkey", sa.String(), nullable=True),
        sa.Column("payment_service", sa.String(), nullable=False),
        sa.Column("state_version", sa.Integer(), nullable=False),
        sa.Column("meta", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_subscriptions_external_subscription_id", "subscriptions", ["external_subscription_id"])
    op.create_index("ix_subscriptions_active", "subscriptions", ["active"])
    op.create_index("ix_subscriptions_consumer_wallet_address", "subscriptions", ["consumer_wallet_address"])

    op.create_table(
        "subscription_timeline",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("subscription_id", sa.String(), nullable=False),
        sa.Column("from_active", sa.Boolean(), nullable=False),
        sa.Column("to_active", sa.Boolean(), nullable=False),
        sa.Column("reason", sa.String(), nullable=False),
        sa.Column("rail", sa.String(), nullable=True),
        sa.Column("event_ref", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["subscription_id"], ["subscriptions.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_subscription_timeline_subscription_id", "subscription_timeline", ["subscription_id"])
    op.create_index("ix_subscription_timeline_event_ref", "subscription_timeline", ["event_ref"])

    op.create_table(
        "stripe_enrollments",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("subscription_id", sa.String(), nullable=False),
        sa.Column("stripe_customer_id", sa.String(), nullable=True),
        sa.Column("stripe_subscription_id", sa.String(), nullable=True),
        sa.Column("stripe_plan_id", sa.String(), nullable=True),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("last_four", sa.String(length=4), nullable=True),
        sa.Column("exp_month", sa.Integer(), nullable=True),
        sa.Column("exp_year", sa.Integer(), nullable=True),
        sa.Column("first_payment", sa.DateTime(timezone=True), nullable=True),
        sa.Column("paid", sa.Boolean(), nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["subscription_id"], ["subscriptions.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("stripe_subscription_id"),
    )
    op.create_index("ix_stripe_enrollments_subscription_id", "stripe_enrollments", ["subscription_id"], unique=True)
    op.create_index("ix_stripe_enrollments_stripe_customer_id", "stripe_enrollments", ["stripe_customer_id"])
    op.create_index("ix_stripe_enrollments_email", "stripe_enrollments", ["email"])

    op.create_table(
        "paypal_enrollments",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("subscription_id", sa.String(), nullable=False),
        sa.Column("paypal_payer_id", sa.String(), nullable=True),
        sa.Column("paypal_subscription_id", sa.String(), nullable=True),
        sa.Column("paypal_plan_id", sa.String(), nullable=True),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("first_payment", sa.DateTime(timezone=True), nullable=True),
        sa.Column("paid", sa.Boolean(), nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["subscription_id"], ["subscriptions.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("paypal_subscription_id"),
    )
    op.create_index("ix_paypal_enrollments_subscription_id", "paypal_enrollments", ["subscription_id"], unique=True)

    op.create_table(
        "transactions",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("service_id", sa.String(), nullable=False),
        sa.Column("transaction_hash", sa.String(), nullable=False),
        sa.Column("log_index", sa.Integer(), nullable=False),
        sa.Column("synthetic", sa.Boolean(), nullable=False),
        sa.Column("from_address", sa.String(), nullable=True),
        sa.Column("to_address", sa.String(), nullable=True),
        sa.Column("amount", sa.Numeric(36, 18), nullable=False),
        sa.Column("token_address", sa.String(), nullable=True),
        sa.Column("transaction_type", sa.String(), nullable=False),
        sa.Column("confirmed", sa.Boolean(), nullable=False),
        sa.Column("block_number", sa.Integer(), nullable=False),
        sa.Column("meta", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["service_id"], ["subscriptions.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("service_id", "transaction_hash", "log_index", name="uq_transactions_event"),
    )
    op.create_index("ix_transactions_service_id", "transactions", ["service_id"])
    op.create_index("ix_transactions_transaction_hash", "transactions", ["transaction_hash"])
    op.create_index("ix_transactions_transaction_type", "transactions", ["transaction_type"])
    op.create_index("ix_transactions_confirmed", "transactions", ["confirmed"])

    op.create_table(
        "inbox_events",
        sa.Column("event_id", sa.String(), nullable=False),
        sa.Column("consumed_by", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=True),
        sa.Column("consumed_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("event_id", "consumed_by"),
        sa.UniqueConstraint("event_id", "consumed_by", name="uq_inbox_consumer"),
    )


def downgrade() -> None:
    op.drop_table("inbox_events")
    op.drop_index("ix_transactions_confirmed", table_name="transactions")
    op.drop_index("ix_transactions_transaction_type", table_name="transactions")
    op.drop_index("ix_transactions_transaction_hash", table_name="transactions")
    op.drop_index("ix_transactions_service_id", table_name="transactions")
    op.drop_table("transactions")
    op.drop_index("ix_paypal_enrollments_subscription_id", table_name="paypal_enrollments")
    op.drop_table("paypal_enrollments")
    op.drop_index("ix_stripe_enrollments_email", table_name="stripe_enrollments")
    op.drop_index("ix_stripe_enrollments_stripe_customer_id", table_name="stripe_enrollments")
    op.drop_index("ix_stripe_enrollments_subscription_id", table_name="stripe_enrollments")
    op.drop_table("stripe_enrollments")
    op.drop_index("ix_subscription_timeline_event_ref", table_name="subscription_timeline")
    op.drop_index("ix_subscription_timeline_subscription_id", table_name="subscription_timeline")
    op.drop_table("subscription_timeline")
    op.drop_index("ix_subscriptions_consumer_wallet_address", table_name="subscriptions")
    op.drop_index("ix_subscriptions_active", table_name="subscriptions")
    op.drop_index("ix_subscriptions_external_subscription_id", table_name="subscriptions")
    op.drop_table("subscriptions")
