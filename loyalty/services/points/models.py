"""Loyalty database models for accounts, the points ledger and its summary."""

from datetime import datetime
from decimal import Decimal
from uuid import uuid4

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, Numeric, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from loyalty.common.db import Base, JSONType


class Account(Base):
    """Key under which ledger entries and the summary are filed."""

    __tablename__ = "accounts"

    account_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    email: Mapped[str | None] = mapped_column(String, unique=True, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class LedgerEntry(Base):
    """Immutable points-earning event, unique per (order, channel)."""

    __tablename__ = "loyalty_transactions"
    __table_args__ = (
        UniqueConstraint("external_order_id", "channel", name="uq_loyalty_transactions_order_channel"),
    )

    entry_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    account_id: Mapped[str] = mapped_column(ForeignKey("accounts.account_id", ondelete="CASCADE"), index=True)
    external_order_id: Mapped[str] = mapped_column(String)
    channel: Mapped[str] = mapped_column(String, index=True)
    points_awarded: Mapped[int] = mapped_column(Integer)
    monetary_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    currency: Mapped[str] = mapped_column(String(3))
    qr_code: Mapped[str | None] = mapped_column(String, nullable=True)
    # `metadata` is reserved on declarative classes.
    entry_metadata: Mapped[dict] = mapped_column("metadata", JSONType, default=dict)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)


class AccountSummary(Base):
    """Materialized view of one account's ledger."""

    __tablename__ = "loyalty_summaries"

    account_id: Mapped[str] = mapped_column(ForeignKey("accounts.account_id", ondelete="CASCADE"), primary_key=True)
    total_points: Mapped[int] = mapped_column(Integer, default=0)
    tier: Mapped[str] = mapped_column(String)
    order_count: Mapped[int] = mapped_column(Integer, default=0)
    total_spent: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0"))
    last_activity_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class WebhookLog(Base):
    """Operational record of each processed webhook delivery."""

    __tablename__ = "webhook_logs"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    topic: Mapped[str] = mapped_column(String, index=True)
    webhook_id: Mapped[str | None] = mapped_column(String, nullable=True)
    external_order_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    success: Mapped[bool] = mapped_column(Boolean)
    points_awarded: Mapped[int] = mapped_column(Integer, default=0)
    error_code: Mapped[str | None] = mapped_column(String, nullable=True)
    error_message: Mapped[str | None] = mapped_column(String, nullable=True)
    processed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), index=True)
