"""
Settlement reconciliation.

Runs once per market cycle, after stop and settle(winner). The program
has frozen two numbers at settlement:

    W   = winning-side inventory, max(0, q_winner)
    pps = min(10^d, floor(vault * 10^d / W)), or 0 if W == 0

and pays each holder floor(min(shares, W) * pps / 10^d) on redemption.
This module recomputes both, predicts every payout, redeems every
position, and then insists that each redemption moved exactly its
predicted payout, that the vault dropped by their sum, and that no
position has anything left.

Any disagreement raises ReconciliationError. Nothing here retries: a
silent retry after a partial redemption could pay someone twice.
"""

import logging
from dataclasses import dataclass, field

from solders.keypair import Keypair

from darkpool.codec import (
    MarketAccounts, admin_redeem_instruction, e6_to_lamports,
    settle_market_instruction, stop_market_instruction,
)
from darkpool.config import SettlementConfig
from darkpool.errors import MarketStateError, ReconciliationError
from darkpool.ledger import Ledger
from darkpool.models import AmmState, MarketStatus, Position, SettlementRow, Winner

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Arithmetic
# ---------------------------------------------------------------------------

def expected_pps(vault: int, w_total: int, decimals: int = 6) -> int:
    if w_total <= 0:
        return 0
    scale = 10 ** decimals
    return min(scale, max(0, vault) * scale // w_total)


def onchain_payout(winning_shares: int, pps: int, w_total: int,
                   decimals: int = 6) -> int:
    """What redemption pays, before any vault coverage bound."""
    shares = min(max(0, winning_shares), max(0, w_total))
    return shares * pps // 10 ** decimals


def display_allocation(raw: list[int], w_total: int) -> list[int]:
    """
    Pro-rate holdings so they sum to exactly W.

    floor(raw_i * W / Σraw), then the rounding drift goes to the largest
    holder (first one on ties). Presentation only.
    """
    total = sum(raw)
    if total <= 0 or w_total <= 0:
        return [0] * len(raw)
    shares = [r * w_total // total for r in raw]
    drift = w_total - sum(shares)
    if drift:
        largest = max(range(len(raw)), key=lambda i: (raw[i], -i))
        shares[largest] += drift
    return shares


@dataclass(frozen=True)
class SettlementSnapshot:
    winner: Winner
    vault_before: int
    w_total: int
    pps: int
    fees: int
    decimals: int

    @staticmethod
    def from_state(state: AmmState, tolerance: int = 0) -> "SettlementSnapshot":
        """Snapshot a settled market, checking its pps against the vault."""
        if state.status != MarketStatus.SETTLED or state.winner == Winner.NONE:
            raise MarketStateError(MarketStateError.NOT_SETTLED,
                                   f"market is {state.status.value}")
        want = expected_pps(state.vault, state.w_total, state.decimals)
        if abs(state.pps - want) > tolerance:
            raise ReconciliationError(
                ReconciliationError.PPS_MISMATCH,
                f"on-chain pps {state.pps} != {want} from vault {state.vault} / W {state.w_total}",
                details={"pps": state.pps, "expected": want,
                         "vault": state.vault, "w_total": state.w_total})
        return SettlementSnapshot(winner=state.winner, vault_before=state.vault,
                                  w_total=state.w_total, pps=state.pps,
                                  fees=state.fees, decimals=state.decimals)


def compute_payouts(snapshot: SettlementSnapshot,
                    positions: list[Position]) -> list[SettlementRow]:
    """
    One row per holder with a positive winning balance, largest first.

    Rows are also the redemption order. Each payout is bounded by what
    the vault still holds after the rows before it, as the program bounds
    it, so holdings that add up to more than W still predict exactly.
    """
    side = snapshot.winner.side
    holders = [p for p in positions if p.shares(side) > 0]
    holders.sort(key=lambda p: -p.shares(side))
    raw = [p.shares(side) for p in holders]
    display = display_allocation(raw, snapshot.w_total)
    scale = 10 ** snapshot.decimals
    remaining = snapshot.vault_before
    rows = []
    for p, r, d in zip(holders, raw, display):
        pay = min(onchain_payout(r, snapshot.pps, snapshot.w_total, snapshot.decimals),
                  max(0, remaining))
        remaining -= pay
        rows.append(SettlementRow(
            user=p.owner,
            winning_shares_raw=r,
            on_chain_payout=pay,
            display_winning_shares=d,
            display_payout=d * snapshot.pps // scale,
        ))
    return rows


def verify_vault_drop(vault_before: int, vault_after: int,
                      rows: list[SettlementRow]) -> int:
    paid = sum(r.on_chain_payout for r in rows)
    drop = vault_before - vault_after
    if drop != paid:
        raise ReconciliationError(
            ReconciliationError.VAULT_DROP_MISMATCH,
            f"vault dropped by {drop}, payouts sum to {paid}",
            details={"vault_before": vault_before, "vault_after": vault_after,
                     "drop": drop, "payouts": paid})
    return paid


def verify_positions_zeroed(positions: list[Position]) -> None:
    leftover = [p for p in positions if not p.is_empty]
    if leftover:
        raise ReconciliationError(
            ReconciliationError.NON_ZERO_POSITION_AFTER_REDEEM,
            f"{len(leftover)} positions still hold shares",
            details={str(p.owner): [p.yes_shares, p.no_shares] for p in leftover})


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

@dataclass
class SettlementReport:
    snapshot: SettlementSnapshot
    rows: list[SettlementRow]
    vault_after: int = 0
    total_paid: int = 0
    redeemed: dict[str, str] = field(default_factory=dict)

    @property
    def total_expected(self) -> int:
        return sum(r.on_chain_payout for r in self.rows)


class SettlementEngine:

    def __init__(self, ledger: Ledger, admin: Keypair, market: MarketAccounts,
                 config: SettlementConfig | None = None):
        self.ledger = ledger
        self.admin = admin
        self.market = market
        self.config = config or SettlementConfig()

    def stop_and_settle(self, winner: Winner) -> AmmState:
        state = self.ledger.get_amm_state(self.market)
        if state.status in (MarketStatus.PREMARKET, MarketStatus.OPEN):
            log.info("stopping market %s", self.market.amm)
            self.ledger.submit_and_confirm([stop_market_instruction(self.market)],
                                           self.admin)
        elif state.status == MarketStatus.SETTLED:
            raise MarketStateError(MarketStateError.MARKET_CLOSED,
                                   f"market already settled, winner {state.winner.name}")
        log.info("settling market %s, winner %s", self.market.amm, winner.name)
        self.ledger.submit_and_confirm(
            [settle_market_instruction(self.market, winner)], self.admin)
        return self.ledger.get_amm_state(self.market)

    def preview(self) -> tuple[SettlementSnapshot, list[SettlementRow]]:
        """Steps 1-3 only: snapshot and payouts, no redemption."""
        state = self.ledger.get_amm_state(self.market)
        snapshot = SettlementSnapshot.from_state(state, self.config.pps_tolerance)
        positions = self.ledger.list_positions(self.market)
        return snapshot, compute_payouts(snapshot, positions)

    def reconcile(self) -> SettlementReport:
        state = self.ledger.get_amm_state(self.market)
        if state.fee_dest is None or self.admin.pubkey() != state.fee_dest:
            raise ValueError(f"admin {self.admin.pubkey()} is not the market's "
                             f"fee destination {state.fee_dest}")
        snapshot = SettlementSnapshot.from_state(state, self.config.pps_tolerance)
        vault_lamports_before = self.ledger.get_balance(self.market.vault)

        positions = self.ledger.list_positions(self.market)
        rows = compute_payouts(snapshot, positions)
        report = SettlementReport(snapshot=snapshot, rows=rows)
        log.info("settling %d positions: W=%d pps=%d vault=%d expected payout %d",
                 len(positions), snapshot.w_total, snapshot.pps,
                 snapshot.vault_before, report.total_expected)

        expected = {r.user: r.on_chain_payout for r in rows}
        rank = {r.user: i for i, r in enumerate(rows)}
        positions.sort(key=lambda p: rank.get(p.owner, len(rows)))
        vault = snapshot.vault_before
        for pos in positions:
            if pos.is_empty:
                continue
            ix = admin_redeem_instruction(self.market, self.admin.pubkey(),
                                          pos.owner, state.fee_dest)
            tx, _logs = self.ledger.submit_and_confirm(
                [ix], self.admin, compute_units=self.config.redeem_cu)
            report.redeemed[str(pos.owner)] = tx
            after_one = self.ledger.get_amm_state(self.market).vault
            paid, want = vault - after_one, expected.get(pos.owner, 0)
            if paid != want:
                raise ReconciliationError(
                    ReconciliationError.VAULT_DROP_MISMATCH,
                    f"redeeming {pos.owner} moved {paid} out of the vault, expected {want}",
                    details={"owner": str(pos.owner), "paid": paid,
                             "expected": want, "tx": tx})
            vault = after_one
            log.info("redeemed %s: paid %d, tx %s", pos.owner, paid, tx)

        after = self.ledger.get_amm_state(self.market)
        report.vault_after = after.vault
        report.total_paid = verify_vault_drop(snapshot.vault_before, after.vault, rows)

        lamports_drop = vault_lamports_before - self.ledger.get_balance(self.market.vault)
        if lamports_drop != e6_to_lamports(report.total_paid):
            raise ReconciliationError(
                ReconciliationError.VAULT_DROP_MISMATCH,
                f"vault lamports dropped by {lamports_drop}, expected "
                f"{e6_to_lamports(report.total_paid)}",
                details={"lamports_drop": lamports_drop,
                         "payouts": report.total_paid})

        verify_positions_zeroed(self.ledger.list_positions(self.market))
        log.info("settlement reconciled: paid %d to %d holders",
                 report.total_paid, len(rows))
        return report
