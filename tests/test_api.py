"""Account, ops and probe endpoints."""

from tests.conftest import API_KEY, signed


def _credit(client, order_id="1001", amount="29.99", email="shopper@example.com"):
    raw, headers = signed({"order_id": order_id, "email": email, "amount": amount})
    return client.post("/webhooks/orders", content=raw, headers=headers).json()


def test_summary_for_unknown_account(client):
    response = client.get("/accounts/nope/summary")
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "account_not_found"


def test_summary_reports_next_tier(client):
    account_id = _credit(client)["account_id"]
    summary = client.get(f"/accounts/{account_id}/summary").json()

    assert summary["total_points"] == 59
    assert summary["tier"] == "Bronze"
    assert summary["next_tier"] == "Silver"
    assert summary["points_to_next_tier"] == 441
    assert summary["last_activity_at"] is not None


def test_transactions_newest_first_with_limit(client):
    account_id = _credit(client, order_id="1")["account_id"]
    _credit(client, order_id="2")
    _credit(client, order_id="3")

    entries = client.get(f"/accounts/{account_id}/transactions", params={"limit": 2}).json()
    assert len(entries) == 2
    assert entries[0]["occurred_at"] >= entries[1]["occurred_at"]


def test_adjustment_requires_api_key(client):
    account_id = _credit(client)["account_id"]
    payload = {"adjustment_id": "adj-1", "points": -20, "reason": "refund"}

    for headers in ({}, {"x-api-key": "wrong"}):
        rejected = client.post(f"/accounts/{account_id}/adjustments", json=payload, headers=headers)
        assert rejected.status_code == 401
        assert rejected.json() == {
            "success": False,
            "error": {"code": "invalid_api_key", "message": "invalid API key", "retriable": False},
        }
    response = client.post(f"/accounts/{account_id}/adjustments", json=payload, headers={"x-api-key": API_KEY})
    assert response.status_code == 200
    assert response.json()["points_awarded"] == -20
    assert response.json()["total_points"] == 39


def test_adjustment_is_idempotent(client):
    account_id = _credit(client)["account_id"]
    payload = {"adjustment_id": "adj-1", "points": 100, "channel": "bonus"}
    headers = {"x-api-key": API_KEY}

    first = client.post(f"/accounts/{account_id}/adjustments", json=payload, headers=headers).json()
    second = client.post(f"/accounts/{account_id}/adjustments", json=payload, headers=headers).json()
    assert first["was_new"] is True
    assert second["was_new"] is False
    assert second["total_points"] == 159


def test_adjustment_rejects_order_channels_and_negative_bonus(client):
    account_id = _credit(client)["account_id"]
    headers = {"x-api-key": API_KEY}

    wrong_channel = client.post(
        f"/accounts/{account_id}/adjustments",
        json={"adjustment_id": "adj-1", "points": 5, "channel": "qr-scan"},
        headers=headers,
    )
    assert wrong_channel.status_code == 400
    assert wrong_channel.json()["error"]["code"] == "invalid_channel"

    negative_bonus = client.post(
        f"/accounts/{account_id}/adjustments",
        json={"adjustment_id": "adj-2", "points": -5, "channel": "bonus"},
        headers=headers,
    )
    assert negative_bonus.status_code == 400
    assert negative_bonus.json()["error"]["code"] == "invalid_points"


def test_adjustment_for_unknown_account(client):
    response = client.post(
        "/accounts/nope/adjustments", json={"adjustment_id": "adj-1", "points": 5}, headers={"x-api-key": API_KEY}
    )
    assert response.status_code == 404


def test_reconciliation_and_rebuild(client):
    account_id = _credit(client)["account_id"]

    report = client.get(f"/reconciliation/{account_id}").json()
    assert report["consistent"] is True
    assert report["stored"]["total_points"] == 59

    unauthorized = client.post(f"/accounts/{account_id}/rebuild")
    assert unauthorized.status_code == 401
    assert unauthorized.json()["error"]["code"] == "invalid_api_key"
    rebuilt = client.post(f"/accounts/{account_id}/rebuild", headers={"x-api-key": API_KEY}).json()
    assert rebuilt["total_points"] == 59
    assert rebuilt["tier"] == "Bronze"


def test_tiers_listed_lowest_first(client):
    tiers = client.get("/tiers").json()
    assert [tier["name"] for tier in tiers] == ["Bronze", "Silver", "Gold", "VIP"]
    assert tiers[0]["threshold"] == 0


def test_health_and_metrics(client):
    assert client.get("/health").json() == {"ok": True}
    _credit(client)
    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    assert "webhook_deliveries_total" in metrics.text
