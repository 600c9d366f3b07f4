"""Per-account summary maintained from the ledger.

The summary row is a materialized view: `replay()` over an account's entries
is the definition, and both projection strategies must agree with it.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import select

from loyalty.services.points.models import AccountSummary, LedgerEntry
from loyalty.services.points.policy import TierPolicy


RECOMPUTE = "recompute"
INCREMENTAL = "incremental"


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes for timezone-aware columns.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass(frozen=True)
class SummarySnapshot:
    """Detached, comparable view of an account summary."""

    account_id: str
    total_points: int
    tier: str
    order_count: int
    total_spent: Decimal
    last_activity_at: datetime | None

    @classmethod
    def from_row(cls, row: AccountSummary) -> "SummarySnapshot":
        return cls(
            account_id=row.account_id,
            total_points=int(row.total_points),
            tier=row.tier,
            order_count=int(row.order_count),
            total_spent=Decimal(row.total_spent).quantize(Decimal("0.01")),
            last_activity_at=_as_utc(row.last_activity_at),
        )

    @classmethod
    def empty(cls, account_id: str, tier_policy: TierPolicy) -> "SummarySnapshot":
        return cls(
            account_id=account_id,
            total_points=0,
            tier=tier_policy.lowest.name,
            order_count=0,
            total_spent=Decimal("0.00"),
            last_activity_at=None,
        )

    def to_dict(self) -> dict:
        return {
            "account_id": self.account_id,
            "total_points": self.total_points,
            "tier": self.tier,
            "order_count": self.order_count,
            "total_spent": str(self.total_spent),
            "last_activity_at": self.last_activity_at.isoformat() if self.last_activity_at else None,
        }


def replay(account_id: str, entries, tier_policy: TierPolicy) -> SummarySnapshot:
    """Aggregate `entries` from scratch; entry order does not matter."""

    total_points = 0
    order_count = 0
    total_spent = Decimal("0.00")
    last_activity_at = None
    for entry in entries:
        total_points += int(entry.points_awarded)
        order_count += 1
        total_spent += Decimal(entry.monetary_amount)
        occurred_at = _as_utc(entry.occurred_at)
        if last_activity_at is None or (occurred_at is not None and occurred_at > last_activity_at):
            last_activity_at = occurred_at
    return SummarySnapshot(
        account_id=account_id,
        total_points=total_points,
        tier=tier_policy.tier_for(total_points).name,
        order_count=order_count,
        total_spent=total_spent.quantize(Decimal("0.01")),
        last_activity_at=last_activity_at,
    )


def fold(snapshot: SummarySnapshot, entry, tier_policy: TierPolicy) -> SummarySnapshot:
    """Add one entry's contribution to an existing snapshot."""

    total_points = snapshot.total_points + int(entry.points_awarded)
    occurred_at = _as_utc(entry.occurred_at)
    last_activity_at = snapshot.last_activity_at
    if last_activity_at is None or (occurred_at is not None and occurred_at > last_activity_at):
        last_activity_at = occurred_at
    return SummarySnapshot(
        account_id=snapshot.account_id,
        total_points=total_points,
        tier=tier_policy.tier_for(total_points).name,
        order_count=snapshot.order_count + 1,
        total_spent=(snapshot.total_spent + Decimal(entry.monetary_amount)).quantize(Decimal("0.01")),
        last_activity_at=last_activity_at,
    )


class SummaryProjector:
    """Writes `AccountSummary` rows inside the ledger append's transaction."""

    def __init__(self, tier_policy: TierPolicy, strategy: str = INCREMENTAL) -> None:
        if strategy not in (RECOMPUTE, INCREMENTAL):
            raise ValueError(f"Unknown summary strategy: {strategy}")
        self.tier_policy = tier_policy
        self.strategy = strategy

    def _locked_row(self, db, account_id: str) -> AccountSummary | None:
        return db.execute(
            select(AccountSummary).where(AccountSummary.account_id == account_id).with_for_update()
        ).scalar_one_or_none()

    def _store(self, db, row: AccountSummary | None, snapshot: SummarySnapshot) -> AccountSummary:
        if row is None:
            row = AccountSummary(account_id=snapshot.account_id)
            db.add(row)
        row.total_points = snapshot.total_points
        row.tier = snapshot.tier
        row.order_count = snapshot.order_count
        row.total_spent = snapshot.total_spent
        row.last_activity_at = snapshot.last_activity_at
        row.updated_at = datetime.now(timezone.utc)
        db.flush()
        return row

    def current(self, db, account_id: str) -> SummarySnapshot:
        """Stored summary, or the empty lowest-tier summary for a new account."""

        row = db.get(AccountSummary, account_id)
        if row is None:
            return SummarySnapshot.empty(account_id, self.tier_policy)
        return SummarySnapshot.from_row(row)

    def replayed(self, db, account_id: str) -> SummarySnapshot:
        entries = db.execute(select(LedgerEntry).where(LedgerEntry.account_id == account_id)).scalars().all()
        return replay(account_id, entries, self.tier_policy)

    def project(self, db, account_id: str, entry: LedgerEntry) -> SummarySnapshot:
        """Fold a newly appended entry into the account's summary.

        Callers must only pass entries that were actually inserted; duplicates
        are already reflected in the summary.
        """

        row = self._locked_row(db, account_id)
        if self.strategy == RECOMPUTE or row is None:
            snapshot = self.replayed(db, account_id)
        else:
            snapshot = fold(SummarySnapshot.from_row(row), entry, self.tier_policy)
        self._store(db, row, snapshot)
        return snapshot

    def rebuild(self, db, account_id: str) -> SummarySnapshot:
        """Recompute the stored summary from the full ledger."""

        row = self._locked_row(db, account_id)
        snapshot = self.replayed(db, account_id)
        self._store(db, row, snapshot)
        return snapshot

    def verify(self, db, account_id: str) -> dict:
        stored = self.current(db, account_id)
        expected = self.replayed(db, account_id)
        return {
            "account_id": account_id,
            "consistent": stored == expected,
            "stored": stored.to_dict(),
            "replayed": expected.to_dict(),
        }
