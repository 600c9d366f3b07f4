"""webhook delivery log

Revision ID: 0003_webhook_logs
Revises: 0002_ledger_immutability
Create Date: 2026-10-13
"""

from alembic import op
import sqlalchemy as sa


revision = "0003_webhook_logs"
down_revision = "0002_ledger_immutability"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "webhook_logs",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("topic", sa.String(), nullable=False),
        sa.Column("webhook_id", sa.String(), nullable=True),
        sa.Column("external_order_id", sa.String(), nullable=True),
        sa.Column("success", sa.Boolean(), nullable=False),
        sa.Column("points_awarded", sa.Integer(), nullable=False),
        sa.Column("error_code", sa.String(), nullable=True),
        sa.Column("error_message", sa.String(), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_webhook_logs_topic", "webhook_logs", ["topic"])
    op.create_index("ix_webhook_logs_external_order_id", "webhook_logs", ["external_order_id"])
    op.create_index("ix_webhook_logs_processed_at", "webhook_logs", ["processed_at"])


def downgrade() -> None:
    op.drop_index("ix_webhook_logs_processed_at", table_name="webhook_logs")
    op.drop_index("ix_webhook_logs_external_order_id", table_name="webhook_logs")
    op.drop_index("ix_webhook_logs_topic", table_name="webhook_logs")
    op.drop_table("webhook_logs")
