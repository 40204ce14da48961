"""
Settlement reconciliation tests against an in-memory ledger that redeems
the way the program does.
"""

from dataclasses import replace

import pytest
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from darkpool.codec import MarketAccounts, instruction_discriminator, LAMPORTS_PER_E6
from darkpool.errors import MarketStateError, ReconciliationError
from darkpool.models import E6, AmmState, MarketStatus, Position, Winner
from darkpool.settlement import (
    SettlementEngine, SettlementSnapshot, compute_payouts, display_allocation,
    expected_pps, onchain_payout,
)


MARKET = MarketAccounts.derive()
RESERVE_LAMPORTS = 1_000_000_000

STOP = instruction_discriminator("stop_market")
SETTLE = instruction_discriminator("settle_market")
REDEEM = instruction_discriminator("admin_redeem")


def user(n: int) -> Pubkey:
    return Pubkey.from_bytes(bytes([n] * 32))


class FakeLedger:
    """
    Enough of Ledger for settlement. Redemption pays
    min(min(win, W) * pps / 10^6, vault mirror) and zeroes the position.
    `overpay` maps an owner to extra units paid on redemption, to simulate
    a program that disagrees with the local arithmetic.
    """

    def __init__(self, state: AmmState, positions: list[Position],
                 overpay: dict | None = None, keep_positions: bool = False):
        self.state = state
        self.positions = {p.owner: p for p in positions}
        self.lamports = state.vault * LAMPORTS_PER_E6 + RESERVE_LAMPORTS
        self.overpay = overpay or {}
        self.keep_positions = keep_positions
        self.sent = []

    def get_amm_state(self, market):
        return self.state

    def get_balance(self, pubkey):
        return self.lamports

    def list_positions(self, market):
        return [replace(p) for p in self.positions.values()]

    def submit_and_confirm(self, instructions, signer, compute_units=None):
        for ix in instructions:
            self._apply(ix)
        self.sent.append(instructions)
        return f"tx{len(self.sent)}", []

    def _apply(self, ix):
        data = bytes(ix.data)
        tag = data[:8]
        s = self.state
        if tag == STOP:
            self.state = replace(s, status=MarketStatus.STOPPED)
        elif tag == SETTLE:
            winner = Winner(data[8])
            w = max(0, s.q(winner.side))
            self.state = replace(s, status=MarketStatus.SETTLED, winner=winner,
                                 w_total=w, pps=expected_pps(s.vault, w))
        elif tag == REDEEM:
            owner = ix.accounts[2].pubkey
            pos = self.positions[owner]
            win = pos.shares(s.winner.side)
            pay = min(onchain_payout(win, s.pps, s.w_total) + self.overpay.get(owner, 0),
                      s.vault)
            self.state = replace(s, vault=s.vault - pay)
            self.lamports -= pay * LAMPORTS_PER_E6
            if not self.keep_positions:
                pos.yes_shares = pos.no_shares = 0


def settled_market(admin: Keypair, **overrides) -> AmmState:
    fields = dict(q_yes=1_000_000 * E6, q_no=300_000 * E6, b=10_000 * E6,
                  vault=800_000 * E6, status=MarketStatus.SETTLED,
                  winner=Winner.YES, w_total=1_000_000 * E6, pps=800_000,
                  fee_dest=admin.pubkey())
    fields.update(overrides)
    return AmmState(**fields)


def holders():
    return [
        Position(owner=user(1), yes_shares=600_000 * E6),
        Position(owner=user(2), yes_shares=400_000 * E6, no_shares=100_000 * E6),
        Position(owner=user(3), no_shares=200_000 * E6),
        Position(owner=user(4)),
    ]


# ---------------------------------------------------------------------------
# Arithmetic
# ---------------------------------------------------------------------------

class TestArithmetic:

    def test_pps_capped_at_one(self):
        """An over-collateralised vault still pays at most 1 per share."""
        assert expected_pps(5 * E6, E6) == E6

    def test_pps_floors(self):
        assert expected_pps(2 * E6, 3 * E6) == 666_666

    def test_pps_zero_without_winners(self):
        assert expected_pps(5 * E6, 0) == 0

    def test_payout_clipped_to_w(self):
        """A holder cannot be paid for more than the whole winning supply."""
        assert onchain_payout(10 * E6, 500_000, 4 * E6) == 2 * E6

    def test_display_allocation_sums_to_w(self):
        """Floor pro-rata, drift to the largest holder."""
        shares = display_allocation([1, 1, 1], 10)
        assert shares == [4, 3, 3]
        assert sum(display_allocation([7, 13, 29, 3], 1_000_003)) == 1_000_003

    def test_display_drift_goes_to_first_largest(self):
        """25 raw into W=26: floors sum to 25, the extra unit goes to the first 9."""
        assert display_allocation([5, 9, 9, 2], 26) == [5, 10, 9, 2]

    def test_display_allocation_empty(self):
        assert display_allocation([0, 0], 100) == [0, 0]


class TestComputePayouts:

    def test_two_holders(self):
        """600k and 400k of W=1M at pps 0.8 pay 480k and 320k."""
        admin = Keypair()
        snap = SettlementSnapshot.from_state(settled_market(admin))
        rows = compute_payouts(snap, holders())
        assert [r.user for r in rows] == [user(1), user(2)]
        assert [r.on_chain_payout for r in rows] == [480_000 * E6, 320_000 * E6]
        assert sum(r.on_chain_payout for r in rows) == 800_000 * E6
        assert [r.display_payout for r in rows] == [480_000 * E6, 320_000 * E6]

    def test_pps_mismatch(self):
        admin = Keypair()
        with pytest.raises(ReconciliationError) as exc:
            SettlementSnapshot.from_state(settled_market(admin, pps=799_999))
        assert exc.value.reason == ReconciliationError.PPS_MISMATCH
        assert exc.value.details["expected"] == 800_000

    def test_pps_tolerance(self):
        admin = Keypair()
        snap = SettlementSnapshot.from_state(settled_market(admin, pps=799_999),
                                             tolerance=1)
        assert snap.pps == 799_999

    def test_unsettled_market(self):
        admin = Keypair()
        with pytest.raises(MarketStateError) as exc:
            SettlementSnapshot.from_state(settled_market(
                admin, status=MarketStatus.OPEN, winner=Winner.NONE))
        assert exc.value.reason == MarketStateError.NOT_SETTLED


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class TestReconcile:

    def test_vault_drops_by_exact_payouts(self):
        admin = Keypair()
        ledger = FakeLedger(settled_market(admin), holders())
        report = SettlementEngine(ledger, admin, MARKET).reconcile()
        assert report.total_paid == 800_000 * E6
        assert report.vault_after == 0
        assert ledger.lamports == RESERVE_LAMPORTS
        # Every non-empty position is redeemed, losers included.
        assert set(report.redeemed) == {str(user(1)), str(user(2)), str(user(3))}

    def test_program_pays_differently(self):
        """
        One unit too many to the first holder is fatal, even though the
        vault bound takes it back from the second and the total matches.
        """
        admin = Keypair()
        ledger = FakeLedger(settled_market(admin, vault=900_000 * E6, pps=900_000),
                            holders(), overpay={user(1): 1})
        with pytest.raises(ReconciliationError) as exc:
            SettlementEngine(ledger, admin, MARKET).reconcile()
        assert exc.value.reason == ReconciliationError.VAULT_DROP_MISMATCH
        assert exc.value.details["owner"] == str(user(1))
        assert exc.value.details["paid"] == exc.value.details["expected"] + 1
        assert len(ledger.sent) == 1

    def test_loser_redeem_moving_funds(self):
        """A losing position that takes anything out of the vault is caught."""
        admin = Keypair()
        ledger = FakeLedger(settled_market(admin, vault=900_000 * E6 + 7, pps=900_000),
                            holders(), overpay={user(3): 5})
        with pytest.raises(ReconciliationError) as exc:
            SettlementEngine(ledger, admin, MARKET).reconcile()
        assert exc.value.details == {"owner": str(user(3)), "paid": 5,
                                     "expected": 0, "tx": "tx3"}

    def test_position_left_behind(self):
        admin = Keypair()
        ledger = FakeLedger(settled_market(admin), holders(), keep_positions=True)
        with pytest.raises(ReconciliationError) as exc:
            SettlementEngine(ledger, admin, MARKET).reconcile()
        assert exc.value.reason == ReconciliationError.NON_ZERO_POSITION_AFTER_REDEEM

    def test_admin_must_be_fee_destination(self):
        admin = Keypair()
        ledger = FakeLedger(settled_market(admin, fee_dest=user(9)), holders())
        with pytest.raises(ValueError, match="fee destination"):
            SettlementEngine(ledger, admin, MARKET).reconcile()
        assert ledger.sent == []

    def test_preview_redeems_nothing(self):
        admin = Keypair()
        ledger = FakeLedger(settled_market(admin), holders())
        snap, rows = SettlementEngine(ledger, admin, MARKET).preview()
        assert snap.vault_before == 800_000 * E6
        assert len(rows) == 2
        assert ledger.sent == []


class TestStopAndSettle:

    def test_open_market(self):
        """Open market: stop, then settle with the winner; W and pps frozen."""
        admin = Keypair()
        ledger = FakeLedger(settled_market(admin, status=MarketStatus.OPEN,
                                           winner=Winner.NONE, w_total=0, pps=0),
                            holders())
        state = SettlementEngine(ledger, admin, MARKET).stop_and_settle(Winner.YES)
        assert [bytes(batch[0].data)[:8] for batch in ledger.sent] == [STOP, SETTLE]
        assert state.status == MarketStatus.SETTLED
        assert state.w_total == 1_000_000 * E6
        assert state.pps == 800_000

    def test_already_settled(self):
        admin = Keypair()
        ledger = FakeLedger(settled_market(admin), holders())
        with pytest.raises(MarketStateError):
            SettlementEngine(ledger, admin, MARKET).stop_and_settle(Winner.NO)


# ---------------------------------------------------------------------------
# Distributions that floor
# ---------------------------------------------------------------------------

def uneven_market(admin: Keypair, vault: int, w_total: int) -> AmmState:
    return settled_market(admin, q_yes=w_total, vault=vault, w_total=w_total,
                          pps=expected_pps(vault, w_total))


class TestUnevenDistributions:

    @pytest.mark.parametrize("vault, shares", [
        (5_000_000, [3_000_001, 2_500_001, 1_500_001]),
        (999_999_999, [333_333_333, 333_333_333, 333_333_334, 7]),
        (2_345_678, [10_000_019, 1, 2, 3, 5, 8, 13]),
    ])
    def test_vault_drop_equals_predicted_sum(self, vault, shares):
        """W does not divide the vault: payouts floor, the dust stays in the vault."""
        admin = Keypair()
        w_total = sum(shares)
        state = uneven_market(admin, vault, w_total)
        assert 0 < state.pps < E6
        positions = [Position(owner=user(i + 1), yes_shares=s)
                     for i, s in enumerate(shares)]
        ledger = FakeLedger(state, positions)

        report = SettlementEngine(ledger, admin, MARKET).reconcile()

        assert [r.on_chain_payout for r in report.rows] == [
            r.winning_shares_raw * state.pps // E6 for r in report.rows]
        assert report.total_paid == sum(r.on_chain_payout for r in report.rows)
        assert report.vault_after == vault - report.total_paid
        # Dust: under one unit per holder plus what flooring pps left behind.
        assert 0 <= report.vault_after < len(shares) + w_total / E6
        assert RESERVE_LAMPORTS + report.vault_after * LAMPORTS_PER_E6 == ledger.lamports
        assert sum(r.display_winning_shares for r in report.rows) == w_total

    def test_holder_above_w(self):
        """
        1500 held against W=1000: the first holder is paid for W, which
        empties the vault, and the second gets the nothing that is left.
        """
        admin = Keypair()
        state = uneven_market(admin, vault=777, w_total=1_000)
        positions = [Position(owner=user(1), yes_shares=300),
                     Position(owner=user(2), yes_shares=1_500)]
        ledger = FakeLedger(state, positions)

        report = SettlementEngine(ledger, admin, MARKET).reconcile()

        assert [(r.user, r.on_chain_payout) for r in report.rows] == [
            (user(2), 777), (user(1), 0)]
        assert report.total_paid == 777
        assert report.vault_after == 0
        assert list(report.redeemed) == [str(user(2)), str(user(1))]

    def test_display_rows_sum_to_w(self):
        admin = Keypair()
        snap = SettlementSnapshot.from_state(uneven_market(admin, 1_000, 10))
        rows = compute_payouts(snap, [Position(owner=user(1), yes_shares=1),
                                      Position(owner=user(2), yes_shares=1),
                                      Position(owner=user(3), yes_shares=1)])
        assert [r.display_winning_shares for r in rows] == [4, 3, 3]
        assert snap.pps == E6
