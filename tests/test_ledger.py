"""Idempotent ledger: account resolution and conditional appends."""

import threading
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal
from unittest.mock import MagicMock

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.exc import OperationalError

from loyalty.common.db import Base, make_session_factory
from loyalty.common.errors import BadRequest, NotFound, StorageError
from loyalty.services.points.ledger import PointsLedger
from loyalty.services.points.models import Account, LedgerEntry
from loyalty.services.points.schemas import AccountRef, Channel, IdempotencyKey


@pytest.fixture
def ledger():
    return PointsLedger()


def _count(db, model):
    return db.execute(select(func.count()).select_from(model)).scalar_one()


def test_email_resolution_creates_account_once(session_factory, ledger):
    with session_factory() as db:
        first = ledger.resolve_account(db, AccountRef(email="Ada@Example.com"))
        second = ledger.resolve_account(db, AccountRef(email="ada@example.com "))
        db.commit()
        assert first.account_id == second.account_id
        assert first.email == "ada@example.com"
        assert _count(db, Account) == 1


def test_explicit_account_id_is_never_created(session_factory, ledger):
    with session_factory() as db:
        with pytest.raises(NotFound):
            ledger.resolve_account(db, AccountRef(account_id="missing"))
        assert _count(db, Account) == 0


def test_missing_account_ref_rejected(session_factory, ledger):
    with session_factory() as db:
        with pytest.raises(BadRequest):
            ledger.resolve_account(db, AccountRef())


def test_duplicate_key_returns_prior_entry(session_factory, ledger):
    key = IdempotencyKey("order-1", Channel.PLATFORM_ORDER)
    with session_factory() as db:
        account = ledger.resolve_account(db, AccountRef(email="a@example.com"))
        first = ledger.append(db, account.account_id, key, 59, Decimal("29.99"), "EUR", metadata={"items": []})
        second = ledger.append(db, account.account_id, key, 999, Decimal("500.00"), "EUR")
        db.commit()

        assert first.was_new is True
        assert second.was_new is False
        assert second.entry.entry_id == first.entry.entry_id
        assert second.entry.points_awarded == 59
        assert _count(db, LedgerEntry) == 1


def test_same_order_on_another_channel_is_a_new_entry(session_factory, ledger):
    with session_factory() as db:
        account = ledger.resolve_account(db, AccountRef(email="a@example.com"))
        order = ledger.append(
            db, account.account_id, IdempotencyKey("order-1", Channel.PLATFORM_ORDER), 59, Decimal("29.99"), "EUR"
        )
        scan = ledger.append(
            db, account.account_id, IdempotencyKey("order-1", Channel.QR_SCAN), 88, Decimal("29.99"), "EUR"
        )
        db.commit()
        assert order.was_new and scan.was_new
        assert order.entry.entry_id != scan.entry.entry_id


def test_duplicate_from_another_account_keeps_first_owner(session_factory, ledger):
    key = IdempotencyKey("order-7", Channel.PLATFORM_ORDER)
    with session_factory() as db:
        alice = ledger.resolve_account(db, AccountRef(email="alice@example.com"))
        bob = ledger.resolve_account(db, AccountRef(email="bob@example.com"))
        ledger.append(db, alice.account_id, key, 20, Decimal("10.00"), "EUR")
        replay = ledger.append(db, bob.account_id, key, 20, Decimal("10.00"), "EUR")
        db.commit()
        assert replay.was_new is False
        assert replay.entry.account_id == alice.account_id


def test_append_stores_metadata_and_qr_code(session_factory, ledger):
    key = IdempotencyKey("scan-1", Channel.QR_SCAN)
    with session_factory() as db:
        account = ledger.resolve_account(db, AccountRef(email="a@example.com"))
        result = ledger.append(
            db,
            account.account_id,
            key,
            88,
            Decimal("29.99"),
            "EUR",
            metadata={"note": "in-store"},
            qr_code="herbspot://qr/ABC123",
        )
        db.commit()
        stored = ledger.find_entry(db, key)
        assert stored.entry_id == result.entry.entry_id
        assert stored.entry_metadata == {"note": "in-store"}
        assert stored.qr_code == "herbspot://qr/ABC123"
        assert stored.monetary_amount == Decimal("29.99")


def test_negative_amount_rejected(session_factory, ledger):
    with session_factory() as db:
        account = ledger.resolve_account(db, AccountRef(email="a@example.com"))
        with pytest.raises(BadRequest):
            ledger.append(
                db, account.account_id, IdempotencyKey("o", Channel.PLATFORM_ORDER), 1, Decimal("-1"), "EUR"
            )


def test_database_failure_is_retriable_storage_error(ledger):
    db = MagicMock()
    db.get_bind.return_value.dialect.name = "sqlite"
    db.execute.side_effect = OperationalError("INSERT", {}, Exception("database is locked"))

    with pytest.raises(StorageError) as excinfo:
        ledger.append(db, "acct", IdempotencyKey("o", Channel.PLATFORM_ORDER), 1, Decimal("1"), "EUR")
    assert excinfo.value.retriable is True
    assert excinfo.value.status_code == 503


def test_entries_for_lists_newest_first(session_factory, ledger):
    with session_factory() as db:
        account = ledger.resolve_account(db, AccountRef(email="a@example.com"))
        for i in range(3):
            ledger.append(
                db, account.account_id, IdempotencyKey(f"o-{i}", Channel.PLATFORM_ORDER), i, Decimal("1"), "EUR"
            )
        db.commit()
        entries = ledger.entries_for(db, account.account_id, limit=2)
        assert len(entries) == 2
        assert entries[0].occurred_at >= entries[1].occurred_at


@pytest.fixture
def file_session_factory(tmp_path):
    # Separate connections per thread need a file database, not :memory:.
    engine = create_engine(
        f"sqlite+pysqlite:///{tmp_path / 'ledger.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(engine)
    yield make_session_factory(engine)
    engine.dispose()


def test_concurrent_appends_with_one_key_create_one_entry(file_session_factory, ledger):
    with file_session_factory() as db:
        account_id = ledger.resolve_account(db, AccountRef(email="race@example.com")).account_id
        db.commit()

    key = IdempotencyKey("order-race", Channel.PLATFORM_ORDER)
    workers = 4
    barrier = threading.Barrier(workers)

    def deliver(_):
        with file_session_factory() as db:
            barrier.wait()
            result = ledger.append(db, account_id, key, 59, Decimal("29.99"), "EUR")
            db.commit()
            return result.entry.entry_id, result.was_new

    with ThreadPoolExecutor(max_workers=workers) as pool:
        outcomes = list(pool.map(deliver, range(workers)))

    assert sum(1 for _, was_new in outcomes if was_new) == 1
    assert len({entry_id for entry_id, _ in outcomes}) == 1
    with file_session_factory() as db:
        assert _count(db, LedgerEntry) == 1
