"""HTTP client for the order store (pending signed orders and fills)."""

from __future__ import annotations

import json
import logging

import httpx
from pydantic import BaseModel, ValidationError

from darkpool.config import HTTP_TIMEOUT
from darkpool.errors import OrderStoreError
from darkpool.models import FillReport
from darkpool.orders import LimitOrder, signature_from_hex, signature_to_hex

log = logging.getLogger(__name__)

API_PREFIX = "/api"


# ── Wire models ──

class SubmitResponse(BaseModel):
    order_id: int
    order_hash: str


class PendingOrder(BaseModel):
    order_id: int
    order: dict
    signature: str
    order_hash: str | None = None
    submitted_at: str | None = None

    def limit_order(self) -> LimitOrder:
        return LimitOrder.from_wire(self.order)

    def signature_bytes(self) -> bytes:
        return signature_from_hex(self.signature)


class PendingOrdersResponse(BaseModel):
    # Rows are validated one at a time so one bad row does not hide the rest.
    orders: list[dict]


class FillRequest(BaseModel):
    tx_signature: str
    shares_filled: int
    execution_price: int
    keeper_pubkey: str


class Ack(BaseModel):
    success: bool = True
    order_id: int | None = None


# ── Client ──

class OrderStore:
    def __init__(self, base_url: str, timeout: float = HTTP_TIMEOUT,
                 http: httpx.Client | None = None):
        self.base = base_url.rstrip("/")
        self._http = http or httpx.Client(
            base_url=self.base, timeout=timeout,
            headers={"Accept": "application/json"})

    def close(self) -> None:
        self._http.close()

    def _request(self, method: str, path: str, **kwargs) -> dict:
        try:
            resp = self._http.request(method, API_PREFIX + path, **kwargs)
        except httpx.TimeoutException as e:
            raise OrderStoreError(0, f"request to {self.base}{path} timed out") from e
        except httpx.TransportError as e:
            raise OrderStoreError(0, f"cannot connect to {self.base}: {e}") from e

        if resp.status_code >= 400:
            try:
                body = resp.json()
                detail = body.get("error") or body.get("detail") or resp.text
            except (json.JSONDecodeError, ValueError, AttributeError):
                detail = resp.text
            raise OrderStoreError(resp.status_code, str(detail))
        try:
            return resp.json()
        except ValueError as e:
            raise OrderStoreError(resp.status_code, f"invalid JSON from {path}: {e}") from e

    # ── Orders ──

    def submit(self, order: LimitOrder, signature: bytes) -> SubmitResponse:
        body = {"order": order.to_wire(), "signature": signature_to_hex(signature)}
        return SubmitResponse(**self._request("POST", "/orders/submit", json=body))

    def pending(self, limit: int = 100, market: str | None = None) -> list[PendingOrder]:
        params: dict = {"limit": limit}
        if market:
            params["market"] = market
        data = self._request("GET", "/orders/pending", params=params)
        try:
            rows = PendingOrdersResponse.model_validate(data).orders
        except ValidationError as e:
            raise OrderStoreError(200, f"malformed pending response: {e}") from e
        orders = []
        for row in rows:
            try:
                orders.append(PendingOrder.model_validate(row))
            except ValidationError as e:
                log.warning("skipping malformed pending order %s: %s", row.get("order_id"), e)
        log.debug("fetched %d pending orders from %s", len(orders), self.base)
        return orders

    def report_fill(self, order_id: int, fill: FillReport) -> Ack:
        body = FillRequest(
            tx_signature=fill.tx_signature,
            shares_filled=fill.shares_filled,
            execution_price=fill.execution_price,
            keeper_pubkey=fill.keeper_pubkey,
        ).model_dump()
        log.debug("reporting fill for order #%s: %s", order_id, body)
        return Ack(**self._request("POST", f"/orders/{order_id}/fill", json=body))

    def cancel(self, order_id: int) -> Ack:
        return Ack(**self._request("POST", f"/orders/{order_id}/cancel", json={}))

    def expire(self) -> dict:
        return self._request("POST", "/orders/expire", json={})
