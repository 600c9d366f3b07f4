"""Summary projection: replay equivalence and repair."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from types import SimpleNamespace

import pytest
from hypothesis import given, strategies as st

from loyalty.common.config import LoyaltyConfig
from loyalty.services.points.models import AccountSummary
from loyalty.services.points.policy import TierPolicy
from loyalty.services.points.projector import SummaryProjector, SummarySnapshot, fold, replay
from loyalty.services.points.schemas import AccountRef, AwardRequest, Channel, IdempotencyKey
from loyalty.services.points.service import LoyaltyService

POLICY = TierPolicy.from_config(LoyaltyConfig(webhook_secret="unused"))
BASE_TIME = datetime(2026, 1, 1, tzinfo=timezone.utc)

entries_strategy = st.lists(
    st.builds(
        SimpleNamespace,
        points_awarded=st.integers(min_value=-500, max_value=3000),
        monetary_amount=st.decimals(min_value=0, max_value=5000, places=2, allow_nan=False, allow_infinity=False),
        occurred_at=st.integers(min_value=0, max_value=10_000).map(lambda s: BASE_TIME + timedelta(seconds=s)),
    ),
    max_size=30,
)


@given(entries_strategy)
def test_incremental_fold_matches_replay(entries):
    snapshot = SummarySnapshot.empty("acct", POLICY)
    for entry in entries:
        snapshot = fold(snapshot, entry, POLICY)
    assert snapshot == replay("acct", entries, POLICY)


@given(entries_strategy)
def test_replay_ignores_arrival_order(entries):
    assert replay("acct", entries, POLICY) == replay("acct", list(reversed(entries)), POLICY)


def test_replay_aggregates():
    entries = [
        SimpleNamespace(points_awarded=300, monetary_amount=Decimal("150.00"), occurred_at=BASE_TIME),
        SimpleNamespace(points_awarded=250, monetary_amount=Decimal("125.50"), occurred_at=BASE_TIME - timedelta(days=1)),
        SimpleNamespace(points_awarded=-50, monetary_amount=Decimal("0"), occurred_at=BASE_TIME + timedelta(hours=1)),
    ]
    snapshot = replay("acct", entries, POLICY)
    assert snapshot.total_points == 500
    assert snapshot.tier == "Silver"
    assert snapshot.order_count == 3
    assert snapshot.total_spent == Decimal("275.50")
    assert snapshot.last_activity_at == BASE_TIME + timedelta(hours=1)


def test_unknown_strategy_rejected():
    with pytest.raises(ValueError):
        SummaryProjector(POLICY, strategy="trigger")


def _order(n, amount: str, email: str = "p@example.com") -> AwardRequest:
    return AwardRequest(
        account_ref=AccountRef(email=email),
        key=IdempotencyKey(f"order-{n}", Channel.PLATFORM_ORDER),
        amount=Decimal(amount),
        currency="EUR",
    )


def test_strategies_reach_the_same_summary(session_factory, config):
    amounts = ["250.00", "29.99", "600.00", "2.00", "1000.00"]
    results = {}
    for strategy in ("incremental", "recompute"):
        strategy_config = LoyaltyConfig(webhook_secret=config.webhook_secret, summary_strategy=strategy)
        service = LoyaltyService(session_factory, strategy_config)
        email = f"{strategy}@example.com"
        for n, amount in enumerate(amounts):
            last = service.award(_order(f"{strategy}-{n}", amount, email=email))
        snapshot, _ = service.summary(last.entry.account_id)
        results[strategy] = snapshot
        assert service.reconcile(last.entry.account_id)["consistent"] is True

    incremental, recompute = results["incremental"], results["recompute"]
    assert (incremental.total_points, incremental.tier, incremental.order_count, incremental.total_spent) == (
        recompute.total_points,
        recompute.tier,
        recompute.order_count,
        recompute.total_spent,
    )


def test_rebuild_repairs_drifted_summary(session_factory, service):
    result = service.award(_order(1, "100.00"))
    account_id = result.entry.account_id
    with session_factory() as db:
        row = db.get(AccountSummary, account_id)
        row.total_points = 9999
        row.tier = "VIP"
        db.commit()

    report = service.reconcile(account_id)
    assert report["consistent"] is False
    assert report["replayed"]["total_points"] == 200

    rebuilt = service.rebuild(account_id)
    assert rebuilt.total_points == 200
    assert rebuilt.tier == "Bronze"
    assert service.reconcile(account_id)["consistent"] is True


def test_missing_summary_row_is_recomputed_on_next_append(session_factory, service):
    first = service.award(_order(1, "100.00"))
    with session_factory() as db:
        db.delete(db.get(AccountSummary, first.entry.account_id))
        db.commit()

    second = service.award(_order(2, "100.00"))
    assert second.summary.total_points == 400
    assert second.summary.order_count == 2
