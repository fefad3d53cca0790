"""keep ledger transactions append-only

Revision ID: 0002_transactions_append_only
Revises: 0001_gateway
Create Date: 2026-10-18
"""

from alembic import op


revision = "0002_transactions_append_only"
down_revision = "0001_gateway"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute(
        """
        CREATE OR REPLACE FUNCTION guard_transaction_mutation()
        RETURNS trigger
        LANGUAGE plpgsql
        AS $$
        BEGIN
            IF TG_OP = 'DELETE' THEN
                RAISE EXCEPTION 'transactions is append-only; DELETE is not allowed';
            END IF;
            IF NEW.service_id IS DISTINCT FROM OLD.service_id
                OR NEW.transaction_hash IS DISTINCT FROM OLD.transaction_hash
                OR NEW.log_index IS DISTINCT FROM OLD.log_index
                OR NEW.amount IS DISTINCT FROM OLD.amount
                OR NEW.transaction_type IS DISTINCT FROM OLD.transaction_type
                OR (OLD.confirmed AND NOT NEW.confirmed) THEN
                RAISE EXCEPTION 'transactions rows only accept confirmation and meta updates';
            END IF;
            RETURN NEW;
        END;
        $$;
        """
    )
    op.execute(
        """
        CREATE TRIGGER trg_transactions_append_only
        BEFORE UPDATE OR DELETE ON transactions
        FOR EACH ROW
        EXECUTE FUNCTION guard_transaction_mutation();
        """
    )


def downgrade() -> None:
    op.execute("DROP TRIGGER IF EXISTS trg_transactions_append_only ON transactions;")
    op.execute("DROP FUNCTION IF EXISTS guard_transaction_mutation();")
