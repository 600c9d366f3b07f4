"""Append-only points ledger with at-most-once credit per (order, channel).

Idempotency is enforced by the unique index on the ledger table, through a
single conditional insert. There is no read-then-write check in application
code: two concurrent deliveries of the same order race on the index and the
loser reads back the winner's row.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError

from loyalty.common.errors import BadRequest, NotFound, StorageError
from loyalty.common.logging import logger
from loyalty.services.points.models import Account, LedgerEntry
from loyalty.services.points.schemas import AccountRef, IdempotencyKey


@dataclass(frozen=True)
class AppendResult:
    entry: LedgerEntry
    was_new: bool


def _insert_for(db, model):
    """Dialect `insert()` exposing `on_conflict_do_nothing`."""

    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(model)
    if dialect == "sqlite":
        return sqlite.insert(model)
    raise StorageError(f"unsupported database dialect: {dialect}")


class PointsLedger:
    """Owns account resolution and ledger inserts within a caller's transaction."""

    def resolve_account(self, db, account_ref: AccountRef, lock: bool = True) -> Account:
        """Return the concrete account for `account_ref`, locked for this transaction.

        The email path creates the account on first sight; the explicit id
        path never does.
        """

        try:
            if account_ref.account_id:
                stmt = select(Account).where(Account.account_id == account_ref.account_id)
                if lock:
                    stmt = stmt.with_for_update()
                account = db.execute(stmt).scalar_one_or_none()
                if account is None:
                    raise NotFound(f"account {account_ref.account_id} not found", code="account_not_found")
                return account

            if not account_ref.email:
                raise BadRequest("account id or email is required", code="missing_account")
            email = account_ref.email.strip().lower()
            db.execute(
                _insert_for(db, Account)
                .values(email=email)
                .on_conflict_do_nothing(index_elements=["email"])
            )
            stmt = select(Account).where(Account.email == email)
            if lock:
                stmt = stmt.with_for_update()
            return db.execute(stmt).scalar_one()
        except SQLAlchemyError as exc:
            raise StorageError(f"account resolution failed: {exc}") from exc

    def find_entry(self, db, key: IdempotencyKey) -> LedgerEntry | None:
        return db.execute(
            select(LedgerEntry).where(
                LedgerEntry.external_order_id == key.external_order_id,
                LedgerEntry.channel == key.channel.value,
            )
        ).scalar_one_or_none()

    def append(
        self,
        db,
        account_id: str,
        key: IdempotencyKey,
        points_awarded: int,
        monetary_amount: Decimal,
        currency: str,
        metadata: dict | None = None,
        qr_code: str | None = None,
    ) -> AppendResult:
        """Insert one entry, or return the existing one for the same key.

        A key already present under a different account still returns that
        entry unchanged: the order was credited once, to whoever got it first.
        """

        if monetary_amount < 0:
            raise BadRequest("monetary amount must be non-negative", code="invalid_amount")
        try:
            stmt = (
                _insert_for(db, LedgerEntry)
                .values(
                    {
                        LedgerEntry.account_id: account_id,
                        LedgerEntry.external_order_id: key.external_order_id,
                        LedgerEntry.channel: key.channel.value,
                        LedgerEntry.points_awarded: int(points_awarded),
                        LedgerEntry.monetary_amount: monetary_amount,
                        LedgerEntry.currency: currency,
                        LedgerEntry.qr_code: qr_code,
                        LedgerEntry.entry_metadata: metadata or {},
                        LedgerEntry.occurred_at: datetime.now(timezone.utc),
                    }
                )
                .on_conflict_do_nothing(index_elements=["external_order_id", "channel"])
                .returning(LedgerEntry.entry_id)
            )
            inserted_id = db.execute(stmt).scalar_one_or_none()
            if inserted_id is not None:
                return AppendResult(entry=db.get(LedgerEntry, inserted_id), was_new=True)

            existing = self.find_entry(db, key)
        except SQLAlchemyError as exc:
            raise StorageError(f"ledger append failed: {exc}") from exc

        if existing is None:
            # Conflict without a visible row: the competing insert has not committed.
            raise StorageError(f"ledger entry {key} is not visible yet")
        logger.info("ledger_duplicate key=%s entry_id=%s", key, existing.entry_id)
        return AppendResult(entry=existing, was_new=False)

    def entries_for(self, db, account_id: str, limit: int | None = None) -> list[LedgerEntry]:
        stmt = (
            select(LedgerEntry)
            .where(LedgerEntry.account_id == account_id)
            .order_by(LedgerEntry.occurred_at.desc(), LedgerEntry.entry_id)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        return list(db.execute(stmt).scalars().all())
