"""Loyalty unit of work: resolve, award, append and project in one transaction.

The account row lock taken by `PointsLedger.resolve_account` serializes every
append for one account, so the tier read, the award computation, the ledger
insert and the summary update observe a consistent total. Different accounts
never contend.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from sqlalchemy.exc import SQLAlchemyError

from loyalty.common.config import LoyaltyConfig
from loyalty.common.errors import BadRequest, LoyaltyError, NotFound, StorageError
from loyalty.common.logging import account_id_ctx, logger
from loyalty.common.metrics import duplicate_deliveries_skipped_total, points_awarded_total
from loyalty.common.state_machine import APPENDED, PROJECTED, RESOLVED
from loyalty.services.points.ledger import PointsLedger
from loyalty.services.points.models import Account, LedgerEntry
from loyalty.services.points.policy import PointsCalculator, TierPolicy
from loyalty.services.points.projector import SummaryProjector, SummarySnapshot
from loyalty.services.points.schemas import AccountRef, AwardRequest, Channel, IdempotencyKey


@dataclass(frozen=True)
class EntryRecord:
    """Session-independent copy of a ledger entry, safe to use after the
    unit of work has committed or rolled back."""

    entry_id: str
    account_id: str
    external_order_id: str
    channel: str
    points_awarded: int
    monetary_amount: Decimal
    currency: str
    occurred_at: datetime

    @classmethod
    def from_row(cls, row: LedgerEntry) -> "EntryRecord":
        return cls(
            entry_id=row.entry_id,
            account_id=row.account_id,
            external_order_id=row.external_order_id,
            channel=row.channel,
            points_awarded=int(row.points_awarded),
            monetary_amount=Decimal(row.monetary_amount),
            currency=row.currency,
            occurred_at=row.occurred_at,
        )


@dataclass(frozen=True)
class AwardResult:
    entry: EntryRecord
    was_new: bool
    summary: SummarySnapshot
    points_to_next_tier: int

    def to_dict(self) -> dict:
        return {
            "success": True,
            "account_id": self.entry.account_id,
            "order_id": self.entry.external_order_id,
            "channel": self.entry.channel,
            "points_awarded": self.entry.points_awarded,
            "total_points": self.summary.total_points,
            "tier": self.summary.tier,
            "points_to_next_tier": self.points_to_next_tier,
            "was_new": self.was_new,
        }


class LoyaltyService:
    """Only writer of the ledger and summary tables."""

    def __init__(self, session_factory, config: LoyaltyConfig, service_name: str = "loyalty") -> None:
        self.session_factory = session_factory
        self.config = config
        self.service_name = service_name
        self.tier_policy = TierPolicy.from_config(config)
        self.calculator = PointsCalculator(config)
        self.ledger = PointsLedger()
        self.projector = SummaryProjector(self.tier_policy, config.summary_strategy)

    def _result(self, db, entry: LedgerEntry, was_new: bool, summary: SummarySnapshot | None = None) -> AwardResult:
        if summary is None:
            summary = self.projector.current(db, entry.account_id)
        return AwardResult(
            entry=EntryRecord.from_row(entry),
            was_new=was_new,
            summary=summary,
            points_to_next_tier=self.tier_policy.points_to_next_tier(summary.total_points),
        )

    def _append_and_project(
        self, db, account_id: str, key: IdempotencyKey, points: int, on_stage=None, **fields
    ) -> AwardResult:
        appended = self.ledger.append(db, account_id, key, points, **fields)
        if on_stage:
            on_stage(APPENDED)
        if not appended.was_new:
            duplicate_deliveries_skipped_total.labels(service=self.service_name, channel=key.channel.value).inc()
            # Copy out before the rollback expires the loaded entry.
            result = self._result(db, appended.entry, was_new=False)
            db.rollback()
            return result

        summary = self.projector.project(db, account_id, appended.entry)
        result = self._result(db, appended.entry, was_new=True, summary=summary)
        db.commit()
        if on_stage:
            on_stage(PROJECTED)
        points_awarded_total.labels(service=self.service_name, channel=key.channel.value).inc(
            max(0, result.entry.points_awarded)
        )
        return result

    def award(self, request: AwardRequest, on_stage=None) -> AwardResult:
        """Credit one order at most once and return the resulting summary.

        `on_stage` is called with the name of each stage reached so the
        ingress can report how far a failed request got.
        """

        if request.amount < 0:
            raise BadRequest("amount must be non-negative", code="invalid_amount")
        with self.session_factory() as db:
            try:
                account = self.ledger.resolve_account(db, request.account_ref)
                account_id_ctx.set(account.account_id)
                # Tier as of the last committed entry; the account lock keeps it stable.
                tier = self.tier_policy.tier_for(self.projector.current(db, account.account_id).total_points)
                points = self.calculator.award(request.amount, tier, request.bonus_channel)
                if on_stage:
                    on_stage(RESOLVED)

                metadata = dict(request.metadata or {})
                metadata["tier_at_award"] = tier.name
                result = self._append_and_project(
                    db,
                    account.account_id,
                    request.key,
                    points,
                    on_stage=on_stage,
                    monetary_amount=request.amount,
                    currency=request.currency,
                    metadata=metadata,
                    qr_code=request.qr_code,
                )
            except LoyaltyError:
                db.rollback()
                raise
            except SQLAlchemyError as exc:
                db.rollback()
                raise StorageError(f"award transaction failed: {exc}") from exc

        logger.info(
            "points_awarded key=%s points=%s total=%s tier=%s was_new=%s",
            request.key,
            result.entry.points_awarded,
            result.summary.total_points,
            result.summary.tier,
            result.was_new,
        )
        return result

    def adjust(
        self, account_id: str, adjustment_id: str, points: int, channel: Channel, reason: str | None = None
    ) -> AwardResult:
        """Manual adjustment or bonus grant; idempotent on (adjustment_id, channel)."""

        if channel not in (Channel.MANUAL_ADJUSTMENT, Channel.BONUS):
            raise BadRequest(f"channel {channel.value} is not adjustable", code="invalid_channel")
        if channel == Channel.BONUS and points < 0:
            raise BadRequest("bonus grants must be non-negative", code="invalid_points")
        key = IdempotencyKey(external_order_id=adjustment_id, channel=channel)
        with self.session_factory() as db:
            try:
                account = self.ledger.resolve_account(db, AccountRef(account_id=account_id))
                result = self._append_and_project(
                    db,
                    account.account_id,
                    key,
                    points,
                    monetary_amount=Decimal("0"),
                    currency=self.config.supported_currency,
                    metadata={"reason": reason} if reason else {},
                )
            except LoyaltyError:
                db.rollback()
                raise
            except SQLAlchemyError as exc:
                db.rollback()
                raise StorageError(f"adjustment transaction failed: {exc}") from exc
        logger.info("points_adjusted key=%s points=%s was_new=%s", key, points, result.was_new)
        return result

    def _require_account(self, db, account_id: str) -> None:
        if db.get(Account, account_id) is None:
            raise NotFound(f"account {account_id} not found", code="account_not_found")

    def summary(self, account_id: str) -> tuple[SummarySnapshot, int]:
        with self.session_factory() as db:
            self._require_account(db, account_id)
            snapshot = self.projector.current(db, account_id)
        return snapshot, self.tier_policy.points_to_next_tier(snapshot.total_points)

    def transactions(self, account_id: str, limit: int = 50) -> list[LedgerEntry]:
        with self.session_factory() as db:
            self._require_account(db, account_id)
            return self.ledger.entries_for(db, account_id, limit=limit)

    def rebuild(self, account_id: str) -> SummarySnapshot:
        """Repair path for a summary that missed a projection."""

        with self.session_factory() as db:
            try:
                self.ledger.resolve_account(db, AccountRef(account_id=account_id))
                snapshot = self.projector.rebuild(db, account_id)
                db.commit()
            except SQLAlchemyError as exc:
                db.rollback()
                raise StorageError(f"summary rebuild failed: {exc}") from exc
        logger.info("summary_rebuilt account_id=%s total=%s", account_id, snapshot.total_points)
        return snapshot

    def reconcile(self, account_id: str) -> dict:
        with self.session_factory() as db:
            self._require_account(db, account_id)
            return self.projector.verify(db, account_id)
