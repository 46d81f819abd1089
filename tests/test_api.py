"""HTTP layer: envelope shape, status mapping and idempotency headers."""

import inspect
from decimal import Decimal

import pytest
from fastapi.routing import APIRoute
from fastapi.testclient import TestClient

from conftest import LENDER, MARKET_ID, USER
from lendcore.api.main import app
from lendcore.ledger.base import TX_VAULT_DEPOSIT
from lendcore.ledger.conditions import generate_condition


@pytest.fixture
def client(service):
    app.state.service = service
    with TestClient(app) as c:
        yield c
    app.state.service = None


@pytest.fixture
def funded(client, ledger):
    tx = ledger.add_vault_tx(TX_VAULT_DEPOSIT, LENDER, "1000")
    r = client.post(f"/markets/{MARKET_ID}/supply", json={"txHash": tx, "userAddress": LENDER})
    assert r.status_code == 200, r.json()
    return client


def _deposit(client, ledger, amount="100"):
    cond = generate_condition()
    tx = ledger.add_escrow_create(USER, amount, cond["condition"])
    return client.post(
        "/lending/deposit",
        json={
            "txHash": tx,
            "userAddress": USER,
            "marketId": MARKET_ID,
            "escrowCondition": cond["condition"],
            "escrowFulfillment": cond["fulfillment"],
            "escrowPreimage": cond["preimage"],
        },
    )


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok"}


def test_deposit_then_borrow(funded, ledger):
    r = _deposit(funded, ledger)
    assert r.status_code == 200
    body = r.json()
    assert body["success"] is True
    assert Decimal(body["data"]["collateralAmount"]) == Decimal("100")

    r = funded.post("/lending/borrow", json={"userAddress": USER, "marketId": MARKET_ID, "amount": "40"})
    assert r.status_code == 200
    assert Decimal(r.json()["data"]["newPrincipal"]) == Decimal("40")

    r = funded.get("/lending/position", params={"userAddress": USER, "marketId": MARKET_ID})
    view = r.json()["data"]
    assert view["position"]["status"] == "OPEN"
    assert Decimal(view["metrics"]["current_ltv"]) == Decimal("0.4")


def test_error_status_follows_category(funded, ledger):
    r = funded.post("/lending/borrow", json={"userAddress": USER, "marketId": "NOPE", "amount": "1"})
    assert r.status_code == 404
    assert r.json()["error"]["code"] == "MARKET_NOT_FOUND"

    r = funded.post("/lending/borrow", json={"userAddress": "bogus", "marketId": MARKET_ID, "amount": "1"})
    assert r.status_code == 400
    assert r.json()["success"] is False

    _deposit(funded, ledger)
    r = funded.post("/lending/borrow", json={"userAddress": USER, "marketId": MARKET_ID, "amount": "71"})
    assert r.status_code == 422
    assert r.json()["error"]["code"] == "EXCEEDS_MAX_LTV"


def test_idempotency_key_header_replays(funded, ledger):
    _deposit(funded, ledger)
    payments_before = len(ledger.payments)
    body = {"userAddress": USER, "marketId": MARKET_ID, "amount": "10"}
    first = funded.post("/lending/borrow", json=body, headers={"Idempotency-Key": "borrow-1"})
    second = funded.post("/lending/borrow", json=body, headers={"Idempotency-Key": "borrow-1"})
    assert first.json() == second.json()
    assert len(ledger.payments) == payments_before + 1

    changed = funded.post("/lending/borrow", json={**body, "amount": "11"}, headers={"Idempotency-Key": "borrow-1"})
    assert changed.status_code == 409
    assert changed.json()["error"]["code"] == "IDEMPOTENCY_MISMATCH"


def test_markets_and_prices(client):
    r = client.get("/markets")
    assert [m["market_id"] for m in r.json()["data"]["markets"]] == [MARKET_ID]

    r = client.put(f"/markets/{MARKET_ID}/prices", json={"side": "collateral", "priceUsd": "2.5", "source": "manual"})
    assert r.status_code == 200
    r = client.get(f"/markets/{MARKET_ID}/prices")
    assert Decimal(r.json()["data"]["prices"]["collateral_price_usd"]) == Decimal("2.5")

    r = client.put(f"/markets/{MARKET_ID}/prices", json={"side": "both", "priceUsd": "1"})
    assert r.status_code == 400
    assert client.get("/markets/NOPE").status_code == 404


def test_pool_and_supply_position(funded):
    pool = funded.get(f"/markets/{MARKET_ID}/pool").json()["data"]
    assert Decimal(pool["total_supplied"]) == Decimal("1000")

    r = funded.get(f"/markets/{MARKET_ID}/supply-position", params={"userAddress": LENDER})
    assert Decimal(r.json()["data"]["position"]["supply_amount"]) == Decimal("1000")

    r = funded.get(f"/markets/{MARKET_ID}/supply-position", params={"userAddress": USER})
    assert r.status_code == 404
    assert r.json()["error"]["code"] == "NO_SUPPLY_POSITION"


def test_repay_quote_and_events(funded, ledger):
    _deposit(funded, ledger)
    funded.post("/lending/borrow", json={"userAddress": USER, "marketId": MARKET_ID, "amount": "30"})

    quote = funded.get("/lending/repay-quote", params={"userAddress": USER, "marketId": MARKET_ID}).json()["data"]
    assert Decimal(quote["fullRepayment"]) == Decimal("30")

    events = funded.get("/lending/events", params={"userAddress": USER}).json()["data"]["events"]
    assert {e["event_type"] for e in events} == {"DEPOSIT", "BORROW"}


def test_missing_query_params_rejected(client):
    assert client.get("/lending/position", params={"userAddress": USER}).status_code == 422


def test_routes_run_on_the_event_loop():
    # sync endpoints would run in a threadpool against the shared connection
    endpoints = [r.endpoint for r in app.routes if isinstance(r, APIRoute)]
    assert endpoints
    assert all(inspect.iscoroutinefunction(e) for e in endpoints)
