"""
Data models for the dark-pool execution core.

Two separate domains:
- Market side: AMM snapshots and per-user positions, as decoded from the
  ledger. Read-only from our point of view; only the program mutates them.
- Execution side: guard configuration, fill reports, settlement rows and
  the running trade tally kept by the keeper.

All share and collateral amounts are fixed-point integers scaled by
10^decimals (e6 on the deployed program). Floats never leave lmsr.py.
"""

from collections import defaultdict
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Optional

from solders.pubkey import Pubkey


E6 = 1_000_000
MAX_BPS = 10_000

# Smallest size the program will trade, in e6 shares.
MIN_BUY_SHARES_E6 = 100_000
MIN_SELL_SHARES_E6 = 100_000

# Quotes older than this are stale for slippage purposes.
QUOTE_MAX_AGE_SECS = 30

# Rolling nonce window kept in each position account.
MAX_NONCES = 1000


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class Action(IntEnum):
    BUY = 1
    SELL = 2


class Side(IntEnum):
    YES = 1
    NO = 2


class Winner(IntEnum):
    NONE = 0
    YES = 1
    NO = 2

    @property
    def side(self) -> Optional[Side]:
        if self is Winner.NONE:
            return None
        return Side(int(self))


class MarketStatus(Enum):
    """
    Market lifecycle as seen off-chain.

    The program stores 0 Premarket, 1 Open, 2 Stopped. A stopped market
    with a winner recorded is Settled: W and pps are frozen from then on.
    """
    PREMARKET = "premarket"
    OPEN = "open"
    STOPPED = "stopped"
    SETTLED = "settled"

    @staticmethod
    def from_raw(raw: int, winner: int) -> "MarketStatus":
        if raw == 0:
            return MarketStatus.PREMARKET
        if raw == 1:
            return MarketStatus.OPEN
        if raw == 2:
            return MarketStatus.SETTLED if winner else MarketStatus.STOPPED
        raise ValueError(f"unknown market status {raw}")


def min_trade_shares(action: Action) -> int:
    return MIN_BUY_SHARES_E6 if action == Action.BUY else MIN_SELL_SHARES_E6


# ---------------------------------------------------------------------------
# Market side
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AmmState:
    """
    Snapshot of one market account.

    q_yes / q_no: outstanding share inventory (fixed-point).
    b: LMSR liquidity parameter, same scale as the inventory.
    vault: collateral mirror the program pays redemptions from.
    w_total / pps: frozen at settlement. pps <= 10^decimals.
    """
    q_yes: int
    q_no: int
    b: int
    fee_bps: int = 0
    vault: int = 0
    fees: int = 0
    status: MarketStatus = MarketStatus.OPEN
    winner: Winner = Winner.NONE
    w_total: int = 0
    pps: int = 0
    decimals: int = 6
    fee_dest: Optional[Pubkey] = None
    bump: int = 0
    vault_bump: int = 0
    start_price: int = 0
    start_ts: int = 0
    settle_price: int = 0
    settle_ts: int = 0
    market_end_slot: int = 0
    market_end_time: int = 0

    @property
    def scale(self) -> int:
        return 10 ** self.decimals

    def q(self, side: Side) -> int:
        return self.q_yes if side == Side.YES else self.q_no

    def with_inventory(self, q_yes: int, q_no: int) -> "AmmState":
        """Copy with new inventory. Used to price hypothetical trades."""
        return replace(self, q_yes=q_yes, q_no=q_no)


@dataclass
class Position:
    """One user's holdings in one market."""
    owner: Pubkey
    yes_shares: int = 0
    no_shares: int = 0
    master_wallet: Optional[Pubkey] = None
    vault_balance: int = 0
    vault_bump: int = 0
    used_nonces: list[int] = field(default_factory=list)
    address: Optional[Pubkey] = None

    def shares(self, side: Side) -> int:
        return max(0, self.yes_shares if side == Side.YES else self.no_shares)

    @property
    def is_empty(self) -> bool:
        return self.yes_shares <= 0 and self.no_shares <= 0


# ---------------------------------------------------------------------------
# Execution side
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class GuardConfig:
    """
    Per-attempt execution guards. Never persisted.

    price_limit: 0 disables. Upper bound for Buy, lower bound for Sell.
    max_slippage_bps + quote_price + quote_timestamp: band around a quote,
        only enforced when both bps and quote are positive.
    max_total_cost: Buy only, 0 disables.
    """
    price_limit: int = 0
    max_slippage_bps: int = 0
    quote_price: int = 0
    quote_timestamp: int = 0
    max_total_cost: int = 0
    allow_partial: bool = False
    min_fill_shares: int = 0

    @property
    def has_slippage(self) -> bool:
        return self.max_slippage_bps > 0 and self.quote_price > 0


@dataclass(frozen=True)
class FillReport:
    """What the keeper tells the order store after a confirmed execution."""
    tx_signature: str
    shares_filled: int
    execution_price: int
    keeper_pubkey: str
    parsed_from_logs: bool = True


@dataclass(frozen=True)
class SettlementRow:
    """
    Per-holder settlement line. Derived, never stored.

    on_chain_payout is what redemption actually pays. The display_*
    columns are pro-rated to sum to W and are presentation only.
    """
    user: Pubkey
    winning_shares_raw: int
    on_chain_payout: int
    display_winning_shares: int = 0
    display_payout: int = 0


# ---------------------------------------------------------------------------
# Telemetry
# ---------------------------------------------------------------------------

def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class TradeTally:
    """
    Running keeper totals. One instance per keeper, passed in explicitly.

    buys / sells: per-user cumulative fixed-point collateral moved.
    """
    started_at: str = field(default_factory=_now)
    ticks: int = 0
    orders_seen: int = 0
    executed: int = 0
    partial: int = 0
    skipped: int = 0
    failed: int = 0
    reported: int = 0
    buys: dict[str, int] = field(default_factory=lambda: defaultdict(int))
    sells: dict[str, int] = field(default_factory=lambda: defaultdict(int))
    skip_reasons: dict[str, int] = field(default_factory=lambda: defaultdict(int))

    def record_fill(self, user: str, action: Action, amount: int,
                    partial: bool = False) -> None:
        self.executed += 1
        if partial:
            self.partial += 1
        if action == Action.BUY:
            self.buys[user] += amount
        else:
            self.sells[user] += amount

    def record_skip(self, reason: str) -> None:
        self.skipped += 1
        self.skip_reasons[reason] += 1

    def summary(self) -> dict:
        return {
            "started_at": self.started_at,
            "ticks": self.ticks,
            "orders_seen": self.orders_seen,
            "executed": self.executed,
            "partial": self.partial,
            "skipped": self.skipped,
            "failed": self.failed,
            "reported": self.reported,
            "buys": dict(self.buys),
            "sells": dict(self.sells),
            "skip_reasons": dict(self.skip_reasons),
        }
