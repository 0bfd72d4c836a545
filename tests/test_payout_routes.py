from __future__ import annotations

from decimal import Decimal

import pytest

from settlement.errors import TransferRejectedError


@pytest.fixture()
def funded(seed):
    seed.brand()
    seed.order("order-1", total="100.00")
    seed.account("brand", "brand-1", "acct_brand_1")


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    data = r.get_json()
    assert data["status"] == "ok"
    assert set(data["blueprints"]) == {"webhook_bp", "payout_bp", "ledger_bp", "admin_bp"}


def test_unknown_route_is_json(client):
    r = client.get("/nope")
    assert r.status_code == 404
    assert r.get_json()["error"] == "not_found"


def test_request_and_fetch_payout(client, gateway, funded):
    r = client.post("/api/payouts", json={"party_type": "brand", "party_id": "brand-1", "amount": "37.50"})
    assert r.status_code == 201
    data = r.get_json()
    assert data["ok"] is True
    payout = data["payout"]
    assert payout["status"] == "transferring"
    assert payout["amount"]["minor"] == 3750
    assert gateway.calls[0]["destination"] == "acct_brand_1"

    got = client.get(f"/api/payouts/{payout['id']}")
    assert got.status_code == 200
    assert got.get_json()["payout"]["transfer_ref"] == payout["transfer_ref"]

    bal = client.get("/api/ledger/brand/brand-1/balance").get_json()
    assert bal["balance"]["minor"] == 1250
    assert bal["available"]["minor"] == 1250

    history = client.get("/api/ledger/brand/brand-1/payouts").get_json()["payouts"]
    assert [p["id"] for p in history] == [payout["id"]]


def test_rejected_transfer_returns_502(client, gateway, funded):
    gateway.script = [TransferRejectedError("account closed")]
    r = client.post("/api/payouts", json={"party_type": "brand", "party_id": "brand-1", "amount_minor": 1000})
    assert r.status_code == 502
    data = r.get_json()
    assert data["ok"] is False
    assert data["payout"]["status"] == "failed"

    bal = client.get("/api/ledger/brand/brand-1/balance").get_json()
    assert bal["available"]["minor"] == 5000


def test_payout_over_balance(client, seed):
    seed.brand()
    seed.account()
    r = client.post("/api/payouts", json={"party_type": "brand", "party_id": "brand-1", "amount": "0.01"})
    assert r.status_code == 409
    assert r.get_json()["error"] == "insufficient_balance"


def test_payout_below_minimum(client, funded):
    r = client.post("/api/payouts", json={"party_type": "brand", "party_id": "brand-1", "amount": "0.50"})
    assert r.status_code == 400
    assert r.get_json()["error"] == "payout_below_minimum"


def test_payout_without_account(client, seed):
    seed.brand()
    seed.order()
    r = client.post("/api/payouts", json={"party_type": "brand", "party_id": "brand-1", "amount": "10.00"})
    assert r.status_code == 400
    assert r.get_json()["error"] == "needs_account_setup"


@pytest.mark.parametrize(
    "body",
    [
        {"party_type": "vendor", "party_id": "x", "amount": "1.00"},
        {"party_type": "brand", "amount": "1.00"},
        {"party_type": "brand", "party_id": "brand-1"},
        {"party_type": "brand", "party_id": "brand-1", "amount_minor": "100"},
        {"party_type": "brand", "party_id": "brand-1", "amount": "1.001"},
    ],
)
def test_payout_bad_request(client, funded, body):
    r = client.post("/api/payouts", json=body)
    assert r.status_code == 400
    assert r.get_json()["error"] == "invalid_event"


def test_unknown_payout(client):
    r = client.get("/api/payouts/po_missing")
    assert r.status_code == 404
    assert r.get_json()["error"] == "payout_not_found"


def test_requested_payout_can_be_cancelled(client, gateway, funded):
    r = client.post(
        "/api/payouts",
        json={"party_type": "brand", "party_id": "brand-1", "amount": "20.00", "submit": False},
    )
    assert r.status_code == 201
    payout = r.get_json()["payout"]
    assert payout["status"] == "requested"
    assert gateway.calls == []

    c = client.post(f"/api/payouts/{payout['id']}/cancel")
    assert c.status_code == 200
    assert c.get_json()["payout"]["status"] == "cancelled"

    again = client.post(f"/api/payouts/{payout['id']}/submit")
    assert again.status_code == 200
    assert again.get_json()["payout"]["status"] == "cancelled"
    assert gateway.calls == []


def test_deferred_payout_submit(client, funded):
    payout = client.post(
        "/api/payouts",
        json={"party_type": "brand", "party_id": "brand-1", "amount": "20.00", "submit": False},
    ).get_json()["payout"]

    r = client.post(f"/api/payouts/{payout['id']}/submit")
    assert r.status_code == 200
    assert r.get_json()["payout"]["status"] == "transferring"


# ---------------------------------------------------------------------------
# Dashboards
# ---------------------------------------------------------------------------

def test_order_settlement_view(client, seed):
    seed.brand()
    seed.affiliate()
    seed.order("order-9", total="100.00", ref="aff-1")

    r = client.get("/api/orders/order-9/settlement")
    assert r.status_code == 200
    s = r.get_json()["settlement"]
    assert s["affiliate_id"] == "aff-1"
    assert s["affiliate_due"]["amount"] == "10.00"
    assert s["brand_net"]["amount"] == "40.00"
    assert {e["party_type"] for e in s["entries"]} == {"platform", "brand", "affiliate"}

    assert client.get("/api/orders/missing/settlement").status_code == 404


def test_summaries(client, seed):
    seed.brand()
    seed.affiliate()
    seed.order("order-1", total="100.00", ref="aff-1")
    seed.order("order-2", total="50.00", ref="aff-1")

    aff = client.get("/api/affiliates/aff-1/summary").get_json()
    assert aff["total_sales"] == 2
    assert aff["total_earned"]["amount"] == "15.00"
    assert aff["total_due"]["amount"] == "15.00"
    assert aff["total_paid"]["amount"] == "0.00"

    brand = client.get("/api/brands/brand-1/summary").get_json()
    assert brand["total_earned"]["amount"] == "60.00"
    assert brand["balance"]["available"]["amount"] == "60.00"

    ref = client.get("/api/referrals/nobody/summary").get_json()
    assert ref["referrals"] == []
    assert ref["earnings"]["minor"] == 0

    assert client.get("/api/affiliates/ghost/summary").status_code == 404


def test_ledger_entries_view(client, seed):
    seed.brand()
    seed.order()
    entries = client.get("/api/ledger/brand/brand-1/entries").get_json()["entries"]
    assert len(entries) == 1
    assert entries[0]["delta"]["minor"] == 5000

    assert client.get("/api/ledger/vendor/x/entries").status_code == 400


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------

def test_admin_affiliate_actions(client, seed):
    seed.brand()
    seed.affiliate(approve=False)

    r = client.post("/api/admin/affiliates/aff-1/approve", json={"by": "admin"})
    assert r.status_code == 200
    assert r.get_json()["affiliate"]["status"] == "approved"

    r = client.post("/api/admin/affiliates/aff-1/ban", json={"reason": "fraud", "days": 3})
    assert r.get_json()["affiliate"]["status"] == "banned"
    assert r.get_json()["affiliate"]["ban_expires_at"] is not None

    r = client.post("/api/admin/affiliates/aff-1/unban")
    assert r.get_json()["affiliate"]["status"] == "approved"

    r = client.post("/api/admin/affiliates/aff-1/promote")
    assert r.status_code == 400


def test_admin_brand_commission(client, seed):
    seed.brand()
    r = client.post("/api/admin/brands/brand-1/commission", json={"rate": "0.30"})
    assert r.status_code == 200
    assert Decimal(r.get_json()["brand"]["commission_rate"]) == Decimal("0.30")

    bad = client.post("/api/admin/brands/brand-1/commission", json={"rate": "0.90"})
    assert bad.status_code == 422

    missing = client.post("/api/admin/brands/brand-1/commission", json={})
    assert missing.status_code == 400


def test_admin_order_status(client, seed):
    seed.brand()
    seed.order()

    r = client.post("/api/admin/orders/order-1/status", json={"status": "processing"})
    assert r.status_code == 200
    assert r.get_json()["order_status"] == "processing"

    r = client.post("/api/admin/orders/order-1/status", json={"status": "delivered"})
    assert r.status_code == 409
    assert r.get_json()["error"] == "invalid_transition"
