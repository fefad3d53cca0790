"""escrow wallets and receipt check counter

Revision ID: 0003_escrow_wallets
Revises: 0002_transactions_append_only
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa


revision = "0003_escrow_wallets"
down_revision = "0002_transactions_append_only"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "escrow_wallets",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("service_id", sa.String(), sa.ForeignKey("subscriptions.id"), nullable=False),
        sa.Column("address", sa.String(), nullable=False),
        sa.Column("encrypted_private_key", sa.Text(), nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_escrow_wallets_service_id", "escrow_wallets", ["service_id"], unique=True)
    op.create_index("ix_escrow_wallets_address", "escrow_wallets", ["address"], unique=True)
    op.add_column(
        "transactions",
        sa.Column("receipt_checks", sa.Integer(), nullable=False, server_default="0"),
    )
    op.create_index(
        "ix_transactions_pending_receipts",
        "transactions",
        ["receipt_checks", "created_at"],
        postgresql_where=sa.text("NOT confirmed AND NOT synthetic"),
    )


def downgrade() -> None:
    op.drop_index("ix_transactions_pending_receipts", table_name="transactions")
    op.drop_column("transactions", "receipt_checks")
    op.drop_index("ix_escrow_wallets_address", table_name="escrow_wallets")
    op.drop_index("ix_escrow_wallets_service_id", table_name="escrow_wallets")
    op.drop_table("escrow_wallets")
