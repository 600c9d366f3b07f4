"""enforce append-only loyalty transactions

Revision ID: 0002_ledger_immutability
Revises: 0001_loyalty
Create Date: 2026-10-12
"""

from alembic import op


revision = "0002_ledger_immutability"
down_revision = "0001_loyalty"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute(
        """
        CREATE OR REPLACE FUNCTION prevent_loyalty_transaction_mutation()
        RETURNS trigger
        LANGUAGE plpgsql
        AS $$
        BEGIN
            -- Account deletion cascades are the only permitted removal.
            IF TG_OP = 'DELETE' AND NOT EXISTS (
                SELECT 1 FROM accounts WHERE account_id = OLD.account_id
            ) THEN
                RETURN OLD;
            END IF;
            RAISE EXCEPTION 'loyalty_transactions is append-only; % is not allowed', TG_OP;
        END;
        $$;
        """
    )
    op.execute(
        """
        CREATE TRIGGER trg_loyalty_transactions_immutable
        BEFORE UPDATE OR DELETE ON loyalty_transactions
        FOR EACH ROW
        EXECUTE FUNCTION prevent_loyalty_transaction_mutation();
        """
    )


def downgrade() -> None:
    op.execute("DROP TRIGGER IF EXISTS trg_loyalty_transactions_immutable ON loyalty_transactions;")
    op.execute("DROP FUNCTION IF EXISTS prevent_loyalty_transaction_mutation();")
