"""
Keeper claim table. JSON snapshot + atomic writes + file lock.

A keeper claims an order id before it touches the chain. The claim lives
for a TTL; while it is live no other keeper (or overlapping tick) sharing
the snapshot file picks the order up. After a confirmed execution the
claim turns into an "executed" record holding the fill, which stays until
the order store acknowledges it. A keeper that crashed between execution
and report therefore re-sends the report instead of re-executing.

States:
    claimed   in flight, expires after ttl
    executed  landed on-chain, fill not yet acknowledged; dropped once the
              order itself has expired, since the store no longer takes it

Atomic write: write to .tmp, then os.replace. Every mutation happens under
an exclusive flock on <path>.lock, so read-modify-write is race-free for
processes sharing the file. Without a path the table is in-memory only.
"""

import dataclasses
import fcntl
import json
import logging
import os
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Optional

from darkpool.models import FillReport

log = logging.getLogger(__name__)

CLAIMED = "claimed"
EXECUTED = "executed"

CURRENT_VERSION = 1


@dataclass
class Claim:
    order_id: int
    order_hash: str
    keeper: str
    claimed_at: float
    expires_at: float
    state: str = CLAIMED
    tx_signature: Optional[str] = None
    shares_filled: int = 0
    execution_price: int = 0
    parsed_from_logs: bool = True
    order_expiry: float = 0

    def is_live(self, now: float) -> bool:
        if self.state == EXECUTED:
            return self.order_expiry <= 0 or self.order_expiry > now
        return self.expires_at > now

    def fill(self) -> FillReport:
        return FillReport(
            tx_signature=self.tx_signature or "",
            shares_filled=self.shares_filled,
            execution_price=self.execution_price,
            keeper_pubkey=self.keeper,
            parsed_from_logs=self.parsed_from_logs,
        )


@contextmanager
def file_lock(path):
    """Exclusive file lock. Serializes claim updates across keeper processes."""
    lock_path = path + ".lock"
    f = open(lock_path, "w")
    try:
        fcntl.flock(f, fcntl.LOCK_EX)
        yield
    finally:
        fcntl.flock(f, fcntl.LOCK_UN)
        f.close()


def save_claims(claims: dict[int, Claim], path: str) -> None:
    state = {
        "version": CURRENT_VERSION,
        "claims": [dataclasses.asdict(c) for c in claims.values()],
    }
    tmp = path + ".tmp"
    with open(tmp, "w") as f:
        json.dump(state, f, indent=2)
    os.replace(tmp, path)


def load_claims(path: str) -> dict[int, Claim]:
    if not os.path.exists(path):
        return {}
    with open(path) as f:
        state = json.load(f)
    version = state.get("version", 1)
    if version > CURRENT_VERSION:
        raise ValueError(f"claim file version {version} is newer than "
                         f"supported version {CURRENT_VERSION}")
    claims = {}
    for d in state.get("claims", []):
        c = Claim(**d)
        claims[c.order_id] = c
    return claims


class ClaimStore:

    def __init__(self, path: str | None = None, ttl: float = 60.0,
                 clock: Callable[[], float] = time.time):
        self.path = path
        self.ttl = ttl
        self.clock = clock
        self._claims: dict[int, Claim] = {}

    @contextmanager
    def _transaction(self):
        """Load → mutate → save, under the file lock when file-backed."""
        if self.path is None:
            yield self._claims
            return
        with file_lock(self.path):
            claims = load_claims(self.path)
            yield claims
            save_claims(claims, self.path)
            self._claims = claims

    def _purge(self, claims: dict[int, Claim], now: float) -> None:
        for order_id in [k for k, c in claims.items() if not c.is_live(now)]:
            if claims[order_id].state == EXECUTED:
                log.warning("dropping unreported fill for order %s: order expired",
                            order_id)
            else:
                log.info("claim on order %s expired", order_id)
            del claims[order_id]

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def try_claim(self, order_id: int, order_hash: str, keeper: str,
                  order_expiry: float = 0) -> bool:
        """
        True if this caller now owns the order; False if someone else does.

        order_expiry bounds how long an executed record is kept; 0 keeps it
        until reported.
        """
        now = self.clock()
        with self._transaction() as claims:
            self._purge(claims, now)
            if order_id in claims:
                return False
            claims[order_id] = Claim(
                order_id=order_id, order_hash=order_hash, keeper=keeper,
                claimed_at=now, expires_at=now + self.ttl,
                order_expiry=order_expiry)
            return True

    def release(self, order_id: int) -> None:
        """Give up a claim that did not execute, so a later tick can retry."""
        with self._transaction() as claims:
            claim = claims.get(order_id)
            if claim is not None and claim.state == CLAIMED:
                del claims[order_id]

    def mark_executed(self, order_id: int, fill: FillReport,
                      order_expiry: float = 0) -> None:
        with self._transaction() as claims:
            claim = claims.get(order_id)
            if claim is None:
                # Claim expired mid-flight; the fill still has to be recorded.
                now = self.clock()
                claim = Claim(order_id=order_id, order_hash="", keeper=fill.keeper_pubkey,
                              claimed_at=now, expires_at=now,
                              order_expiry=order_expiry)
                claims[order_id] = claim
            claim.state = EXECUTED
            claim.tx_signature = fill.tx_signature
            claim.shares_filled = fill.shares_filled
            claim.execution_price = fill.execution_price
            claim.parsed_from_logs = fill.parsed_from_logs

    def mark_reported(self, order_id: int) -> None:
        with self._transaction() as claims:
            claims.pop(order_id, None)

    def unreported(self) -> list[Claim]:
        with self._transaction() as claims:
            self._purge(claims, self.clock())
            return [c for c in claims.values() if c.state == EXECUTED]

    def get(self, order_id: int) -> Optional[Claim]:
        with self._transaction() as claims:
            return claims.get(order_id)
