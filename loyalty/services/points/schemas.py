"""Request/response schemas and value objects for the points service."""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class Channel(str, Enum):
    """Source category of a points-earning event."""

    PLATFORM_ORDER = "platform-order"
    QR_SCAN = "qr-scan"
    MANUAL_ADJUSTMENT = "manual-adjustment"
    BONUS = "bonus"


@dataclass(frozen=True)
class AccountRef:
    """Explicit account id, or an email that may create the account."""

    account_id: str | None = None
    email: str | None = None


@dataclass(frozen=True)
class IdempotencyKey:
    external_order_id: str
    channel: Channel

    def __str__(self) -> str:
        return f"{self.channel.value}:{self.external_order_id}"


class NoteAttribute(BaseModel):
    name: str = ""
    value: Any = None


class Customer(BaseModel):
    id: int | str | None = None
    email: str | None = None


class OrderEvent(BaseModel):
    """Inbound order webhook body.

    Accepts both the direct points-add shape (`order_id`, `amount`, `email`)
    and the raw platform order shape (`id`, `total_price`, `customer.email`,
    `note_attributes`).
    """

    order_id: str | int | None = None
    id: str | int | None = None
    account_id: str | None = None
    user_id: str | None = None
    email: str | None = None
    customer: Customer | None = None
    amount: Decimal | None = None
    total_price: Decimal | None = None
    currency: str | None = None
    qr_code: str | None = None
    note_attributes: list[NoteAttribute] = Field(default_factory=list)
    items: list[Any] | None = None
    line_items: list[Any] | None = None
    note: str | None = None


@dataclass(frozen=True)
class AwardRequest:
    """Normalized ledger append request produced by the webhook ingress."""

    account_ref: AccountRef
    key: IdempotencyKey
    amount: Decimal
    currency: str
    qr_code: str | None = None
    metadata: dict | None = None

    @property
    def bonus_channel(self) -> bool:
        return self.key.channel == Channel.QR_SCAN


class SummaryResponse(BaseModel):
    account_id: str
    total_points: int
    tier: str
    order_count: int
    total_spent: Decimal
    last_activity_at: datetime | None
    points_to_next_tier: int
    next_tier: str | None


class AdjustmentRequest(BaseModel):
    """Ops payload for `POST /accounts/{account_id}/adjustments`."""

    adjustment_id: str = Field(min_length=1)
    points: int
    channel: Channel = Channel.MANUAL_ADJUSTMENT
    reason: str | None = None


class TransactionView(BaseModel):
    entry_id: str
    order_id: str
    channel: str
    points_awarded: int
    monetary_amount: Decimal
    currency: str
    occurred_at: datetime
