"""
Shared fixtures: an in-process order store speaking the /api contract,
and a factory for signed orders.
"""

import hashlib
import time
from datetime import datetime, timezone

import pytest
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.testclient import TestClient

from darkpool.codec import MarketAccounts
from darkpool.models import Action, Side
from darkpool.orderbook import OrderStore
from darkpool.orders import (
    LimitOrder, check_submittable, encode_order, public_key_of, sign_order,
)


MARKET = MarketAccounts.derive()


class StoreState:
    """What the fake store holds. Tests poke at it directly."""

    def __init__(self):
        self.orders: dict[int, dict] = {}
        self.next_id = 1
        self.fail_fills = 0
        self.fill_calls = 0

    def add(self, order: LimitOrder, signature_hex: str) -> int:
        """Insert without the submit-time checks."""
        order_id = self.next_id
        self.next_id += 1
        self.orders[order_id] = {
            "order": order.to_wire(),
            "signature": signature_hex,
            "order_hash": hashlib.sha256(encode_order(order)).hexdigest(),
            "status": "pending",
            "submitted_at": datetime.now(timezone.utc).isoformat(),
            "fill": None,
        }
        return order_id

    def status(self, order_id: int) -> str:
        return self.orders[order_id]["status"]


def build_store_app(state: StoreState) -> FastAPI:
    app = FastAPI()

    def error(status: int, message: str) -> JSONResponse:
        return JSONResponse(status_code=status, content={"error": message})

    @app.post("/api/orders/submit")
    async def submit(request: Request):
        body = await request.json()
        try:
            order = LimitOrder.from_wire(body["order"])
            check_submittable(order, body["signature"])
        except (KeyError, ValueError) as e:
            return error(400, str(e))
        order_id = state.add(order, body["signature"])
        return {"order_id": order_id, "order_hash": state.orders[order_id]["order_hash"]}

    @app.get("/api/orders/pending")
    async def pending(limit: int = 100, market: str | None = None):
        rows = []
        for order_id, row in state.orders.items():
            if row["status"] != "pending":
                continue
            if market and row["order"]["market"] != market:
                continue
            rows.append({"order_id": order_id, "order": row["order"],
                         "signature": row["signature"], "order_hash": row["order_hash"],
                         "submitted_at": row["submitted_at"]})
        return {"orders": rows[:limit]}

    @app.post("/api/orders/{order_id}/fill")
    async def fill(order_id: int, request: Request):
        state.fill_calls += 1
        if state.fail_fills > 0:
            state.fail_fills -= 1
            return error(500, "database is locked")
        row = state.orders.get(order_id)
        if row is None or row["status"] != "pending":
            return error(404, "Order not found or not pending")
        row["status"] = "filled"
        row["fill"] = await request.json()
        return {"success": True, "order_id": order_id}

    @app.post("/api/orders/{order_id}/cancel")
    async def cancel(order_id: int):
        row = state.orders.get(order_id)
        if row is None or row["status"] != "pending":
            return error(404, "Order not found or not pending")
        row["status"] = "cancelled"
        return {"success": True, "order_id": order_id}

    @app.post("/api/orders/expire")
    async def expire():
        now = int(time.time())
        n = 0
        for row in state.orders.values():
            if row["status"] == "pending" and row["order"]["expiry_ts"] <= now:
                row["status"] = "expired"
                n += 1
        return {"success": True, "expired": n}

    return app


@pytest.fixture
def store_state():
    return StoreState()


@pytest.fixture
def order_store(store_state):
    client = TestClient(build_store_app(store_state))
    store = OrderStore("http://testserver", http=client)
    yield store
    store.close()


@pytest.fixture
def make_signed():
    """
    Factory: make_signed(seed=1, **fields) -> (order, signature).
    Defaults to a 2-share YES buy on this market, limit $0.60, one hour out.
    """
    def factory(seed: int = 1, **overrides):
        key = Ed25519PrivateKey.from_private_bytes(bytes([seed] * 32))
        fields = dict(
            market=MARKET.amm, user=public_key_of(key),
            action=Action.BUY, side=Side.YES,
            shares_e6=2_000_000, limit_price_e6=600_000,
            expiry_ts=int(time.time()) + 3600, nonce=1000 + seed,
        )
        fields.update(overrides)
        order = LimitOrder(**fields)
        return order, sign_order(order, key)
    return factory
