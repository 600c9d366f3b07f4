"""initial loyalty schema

Revision ID: 0001_loyalty
Revises:
Create Date: 2026-10-12
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_loyalty"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "accounts",
        sa.Column("account_id", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("account_id"),
        sa.UniqueConstraint("email"),
    )

    op.create_table(
        "loyalty_transactions",
        sa.Column("entry_id", sa.String(), nullable=False),
        sa.Column("account_id", sa.String(), nullable=False),
        sa.Column("external_order_id", sa.String(), nullable=False),
        sa.Column("channel", sa.String(), nullable=False),
        sa.Column("points_awarded", sa.Integer(), nullable=False),
        sa.Column("monetary_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("qr_code", sa.String(), nullable=True),
        sa.Column("metadata", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "channel IN ('platform-order', 'qr-scan', 'manual-adjustment', 'bonus')",
            name="ck_loyalty_transactions_channel",
        ),
        sa.CheckConstraint("monetary_amount >= 0", name="ck_loyalty_transactions_amount"),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.account_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("entry_id"),
        sa.UniqueConstraint("external_order_id", "channel", name="uq_loyalty_transactions_order_channel"),
    )
    op.create_index("ix_loyalty_transactions_account_id", "loyalty_transactions", ["account_id"])
    op.create_index("ix_loyalty_transactions_channel", "loyalty_transactions", ["channel"])
    op.create_index("ix_loyalty_transactions_occurred_at", "loyalty_transactions", ["occurred_at"])

    op.create_table(
        "loyalty_summaries",
        sa.Column("account_id", sa.String(), nullable=False),
        sa.Column("total_points", sa.Integer(), nullable=False),
        sa.Column("tier", sa.String(), nullable=False),
        sa.Column("order_count", sa.Integer(), nullable=False),
        sa.Column("total_spent", sa.Numeric(14, 2), nullable=False),
        sa.Column("last_activity_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.account_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("account_id"),
    )


def downgrade() -> None:
    op.drop_table("loyalty_summaries")
    op.drop_index("ix_loyalty_transactions_occurred_at", table_name="loyalty_transactions")
    op.drop_index("ix_loyalty_transactions_channel", table_name="loyalty_transactions")
    op.drop_index("ix_loyalty_transactions_account_id", table_name="loyalty_transactions")
    op.drop_table("loyalty_transactions")
    op.drop_table("accounts")
