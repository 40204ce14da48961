"""
Keeper. Polls the order store and executes signed limit orders on-chain.

One tick:

    report fills still owed to the store
    fetch pending orders ──(none)──> done
    fetch AMM state
    for each order:
        check executability ──(not now)──> skip, order stays pending
        claim ──(someone else has it)──> skip
        execute: [compute budget, Ed25519 verify, execute_limit_order]
        confirm, read logs, parse fill
        report fill to the store

Orders are processed strictly one after another. Whatever goes wrong with
one order is logged and counted, and the tick moves on to the next. A
tick that cannot reach the store or the ledger does nothing and the next
tick starts from scratch.

Sizing is conservative: the keeper only submits a full-size order if it
still passes with the program's price tolerance band narrowed by a safety
buffer. Orders that accept any fill size (min_fill_bps == 0) are submitted
anyway and the program's own search decides the size.
"""

import base64
import logging
import re
import time
from dataclasses import dataclass
from typing import Callable, Optional

from solders.keypair import Keypair

from darkpool.codec import (
    MarketAccounts, decode_limit_order_executed,
    ed25519_instruction, execute_limit_order_instruction,
)
from darkpool.config import KeeperConfig
from darkpool.errors import (
    ChainExecutionError, LedgerError, MarketStateError,
    OrderStoreError, ValidationError,
)
from darkpool.guards import GuardResult, validate_guards
from darkpool.ledger import Ledger
from darkpool.lmsr import unit_price
from darkpool.models import (
    AmmState, Action, FillReport, GuardConfig, MarketStatus, Position,
    TradeTally, MAX_BPS,
)
from darkpool.orderbook import OrderStore, PendingOrder
from darkpool.orders import LimitOrder, order_hash, verify_order_signature
from darkpool.persistence import ClaimStore

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Executability
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Decision:
    """
    Outcome of a passing executability check.

    expected_shares is the keeper's local estimate; for deferred orders
    it is the requested size and the program picks the real one.
    """
    order: LimitOrder
    unit_price: int
    conservative_limit: int
    expected_shares: int
    partial: bool
    deferred: bool = False
    guard_result: Optional[GuardResult] = None


def conservative_limit(order: LimitOrder, tolerance_bps: int, buffer_bps: int) -> int:
    """
    The limit price the keeper holds itself to.

    The program lets a buy execute up to limit * (1 + tolerance) and a
    sell down to limit * (1 - tolerance). The keeper takes the buffer
    back off that band.
    """
    limit = order.limit_price_e6
    band = limit * tolerance_bps // MAX_BPS
    buffer = limit * buffer_bps // MAX_BPS
    if order.action == Action.BUY:
        return max(0, limit + band - buffer)
    return limit - band + buffer


def check_executability(order: LimitOrder, state: AmmState, config: KeeperConfig,
                        now: int, position: Optional[Position] = None,
                        require_position: bool = True) -> Decision:
    """
    Raise MarketStateError if the order cannot execute right now,
    ValidationError if it can never execute at its guards on this state,
    else return how it should be submitted.
    """
    if state.status != MarketStatus.OPEN:
        raise MarketStateError(MarketStateError.MARKET_CLOSED,
                               f"market is {state.status.value}")
    if order.expiry_ts <= now:
        raise MarketStateError(MarketStateError.MARKET_EXPIRED,
                               f"order expired at {order.expiry_ts}")
    if require_position and position is None:
        raise MarketStateError(MarketStateError.NO_POSITION,
                               f"no position account for {order.user}")
    if position is not None and order.nonce in position.used_nonces:
        raise MarketStateError(MarketStateError.NONCE_ALREADY_USED,
                               f"nonce {order.nonce} already consumed")
    if order.action == Action.SELL and state.q(order.side) < order.shares_e6:
        raise MarketStateError(
            MarketStateError.INSUFFICIENT_OUTSTANDING_SHARES,
            f"only {state.q(order.side)} outstanding, order sells {order.shares_e6}")

    price = unit_price(state, order.action, order.side)
    if order.action == Action.BUY:
        price_ok = price <= order.limit_price_e6
    else:
        price_ok = price >= order.limit_price_e6
    if not price_ok:
        raise MarketStateError(MarketStateError.PRICE_CONDITION_NOT_MET,
                               f"unit price {price} vs limit {order.limit_price_e6}")

    limit = conservative_limit(order, config.onchain_tolerance_bps,
                               config.safety_buffer_bps)
    max_cost = order.max_cost_e6 if order.action == Action.BUY else 0
    full = validate_guards(order.side, order.action, order.shares_e6,
                           GuardConfig(price_limit=limit, max_total_cost=max_cost),
                           state, now=now)
    if full.success:
        return Decision(order=order, unit_price=price, conservative_limit=limit,
                        expected_shares=order.shares_e6, partial=False,
                        guard_result=full)

    if order.min_fill_bps == 0:
        return Decision(order=order, unit_price=price, conservative_limit=limit,
                        expected_shares=order.shares_e6, partial=True,
                        deferred=True, guard_result=full)

    partial = validate_guards(
        order.side, order.action, order.shares_e6,
        GuardConfig(price_limit=limit, max_total_cost=max_cost,
                    allow_partial=True, min_fill_shares=order.min_fill_shares),
        state, now=now)
    if not partial.success:
        raise ValidationError(partial.error or ValidationError.NO_EXECUTABLE_SIZE,
                              partial.message)
    return Decision(order=order, unit_price=price, conservative_limit=limit,
                    expected_shares=partial.shares_to_execute,
                    partial=partial.is_partial_fill, guard_result=partial)


# ---------------------------------------------------------------------------
# Log parsing
# ---------------------------------------------------------------------------

_SHARES_MARKER = re.compile(r"SHARES_FILLED:\s*(\d+)")
_PRICE_MARKER = re.compile(r"EXEC_PRICE:\s*(\d+)")
_EXECUTING = re.compile(r"Executing (\d+) of (\d+) shares")
_PROGRAM_DATA = "Program data: "


def parse_fill_from_logs(logs: list[str], order: LimitOrder) -> tuple[int, int, bool]:
    """
    (shares_filled, execution_price, parsed) from transaction logs.

    Sources, best first: the LimitOrderExecuted event, the SHARES_FILLED /
    EXEC_PRICE markers, the "Executing X of Y shares" line. Anything not
    found falls back to the requested size and the limit price, with
    parsed=False.
    """
    for line in logs:
        if not line.startswith(_PROGRAM_DATA):
            continue
        try:
            ev = decode_limit_order_executed(base64.b64decode(line[len(_PROGRAM_DATA):]))
        except ValueError:
            continue
        if ev is not None and ev.nonce == order.nonce:
            return ev.shares_executed, ev.execution_price, True

    text = "\n".join(logs)
    shares = price = None
    m = _SHARES_MARKER.search(text)
    if m:
        shares = int(m.group(1))
    else:
        m = _EXECUTING.search(text)
        if m:
            shares = int(m.group(1))
    m = _PRICE_MARKER.search(text)
    if m:
        price = int(m.group(1))

    parsed = shares is not None and price is not None
    return (order.shares_e6 if shares is None else shares,
            order.limit_price_e6 if price is None else price,
            parsed)


def keeper_fee(net: int, keeper_fee_bps: int) -> int:
    return abs(net) * keeper_fee_bps // MAX_BPS


# ---------------------------------------------------------------------------
# Keeper
# ---------------------------------------------------------------------------

SKIPPED = "skipped"
EXECUTED = "executed"
FAILED = "failed"


class Keeper:

    def __init__(self, store: OrderStore, ledger: Ledger, signer: Keypair,
                 market: MarketAccounts, config: KeeperConfig | None = None,
                 claims: ClaimStore | None = None, tally: TradeTally | None = None,
                 clock: Callable[[], float] = time.time,
                 sleep: Callable[[float], None] = time.sleep):
        self.store = store
        self.ledger = ledger
        self.signer = signer
        self.market = market
        self.config = config or KeeperConfig()
        self.claims = claims or ClaimStore(ttl=self.config.claim_ttl, clock=clock)
        self.tally = tally or TradeTally()
        self.clock = clock
        self._sleep = sleep

    @property
    def keeper_pubkey(self) -> str:
        return str(self.signer.pubkey())

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def run(self, max_ticks: int | None = None) -> TradeTally:
        log.info("keeper %s watching market %s every %.1fs",
                 self.keeper_pubkey, self.market.amm, self.config.poll_interval)
        n = 0
        try:
            while max_ticks is None or n < max_ticks:
                self.tick()
                n += 1
                if max_ticks is None or n < max_ticks:
                    self._sleep(self.config.poll_interval)
        except KeyboardInterrupt:
            log.info("keeper stopping after %d ticks", n)
        return self.tally

    def tick(self) -> dict[int, str]:
        """One polling pass. Returns {order_id: outcome}."""
        self.tally.ticks += 1
        self.flush_reports()

        try:
            pending = self.store.pending(limit=self.config.pending_limit,
                                         market=str(self.market.amm))
        except OrderStoreError as e:
            log.error("cannot fetch pending orders: %s", e)
            return {}
        if not pending:
            log.debug("no pending orders")
            return {}

        try:
            state = self.ledger.get_amm_state(self.market)
        except (LedgerError, ValueError) as e:
            log.error("cannot read market state: %s", e)
            return {}

        log.info("%d pending orders, market %s q_yes=%d q_no=%d",
                 len(pending), state.status.value, state.q_yes, state.q_no)

        outcomes = {}
        for p in pending:
            self.tally.orders_seen += 1
            outcome = self._process_guarded(p, state)
            outcomes[p.order_id] = outcome
            if outcome == EXECUTED:
                try:
                    state = self.ledger.get_amm_state(self.market)
                except (LedgerError, ValueError) as e:
                    log.error("cannot refresh market state, ending tick: %s", e)
                    break
        return outcomes

    def _process_guarded(self, pending: PendingOrder, state: AmmState) -> str:
        try:
            return self.process_order(pending, state)
        except (MarketStateError, ValidationError) as e:
            log.info("order #%s skipped: %s", pending.order_id, e)
            self.tally.record_skip(e.reason)
            return SKIPPED
        except ChainExecutionError as e:
            log.error("order #%s rejected on-chain: %s", pending.order_id, e)
            for line in e.logs:
                log.error("  %s", line)
            self.tally.failed += 1
            return FAILED
        except (LedgerError, OrderStoreError) as e:
            log.error("order #%s failed: %s", pending.order_id, e)
            self.tally.failed += 1
            return FAILED
        except Exception:
            log.exception("order #%s: unexpected error", pending.order_id)
            self.tally.failed += 1
            return FAILED

    # ------------------------------------------------------------------
    # One order
    # ------------------------------------------------------------------

    def process_order(self, pending: PendingOrder, state: AmmState) -> str:
        try:
            order = pending.limit_order()
            signature = pending.signature_bytes()
        except (KeyError, ValueError) as e:
            log.warning("order #%s is malformed: %s", pending.order_id, e)
            self.tally.record_skip("Malformed")
            return SKIPPED

        if order.market != self.market.amm:
            self.tally.record_skip("WrongMarket")
            return SKIPPED
        if not verify_order_signature(order, signature):
            log.warning("order #%s has an invalid signature", pending.order_id)
            self.tally.record_skip("InvalidSignature")
            return SKIPPED

        now = int(self.clock())
        position = self.ledger.get_position(self.market, order.user)
        decision = check_executability(order, state, self.config, now, position)

        if not self.claims.try_claim(pending.order_id, order_hash(order),
                                     self.keeper_pubkey, order.expiry_ts):
            log.info("order #%s is claimed by another keeper", pending.order_id)
            self.tally.record_skip("Claimed")
            return SKIPPED

        fill = self.execute_order(pending.order_id, order, signature, decision, state)
        self.claims.mark_executed(pending.order_id, fill, order.expiry_ts)
        amount = fill.shares_filled * fill.execution_price // state.scale
        self.tally.record_fill(str(order.user), order.action, amount,
                               partial=fill.shares_filled < order.shares_e6)
        log.info("order #%s filled %d/%d @ %d (keeper fee %d) tx %s",
                 pending.order_id, fill.shares_filled, order.shares_e6,
                 fill.execution_price, keeper_fee(amount, order.keeper_fee_bps),
                 fill.tx_signature)
        self.report_fill(pending.order_id, fill)
        return EXECUTED

    def execute_order(self, order_id: int, order: LimitOrder, signature: bytes,
                      decision: Decision, state: AmmState) -> FillReport:
        """
        Submit and confirm. Releases the claim if nothing landed; keeps
        it (until the TTL runs out) if the transaction went out but its
        fate is unknown.
        """
        instructions = [
            ed25519_instruction(order, signature),
            execute_limit_order_instruction(order, signature, self.signer.pubkey(),
                                            self.market, state.fee_dest),
        ]
        units = (self.config.partial_fill_cu if decision.partial
                 else self.config.full_fill_cu)

        tx_signature = None
        try:
            tx_signature = self.ledger.send_instructions(instructions, self.signer,
                                                         compute_units=units)
            self.ledger.confirm(tx_signature)
        except ChainExecutionError:
            self.claims.release(order_id)
            raise
        except LedgerError:
            if tx_signature is None:
                self.claims.release(order_id)
            else:
                log.warning("order #%s: tx %s unconfirmed, holding claim",
                            order_id, tx_signature)
            raise

        try:
            logs = self.ledger.fetch_logs(tx_signature)
        except LedgerError as e:
            log.warning("order #%s: no logs for %s (%s), using requested values",
                        order_id, tx_signature, e)
            logs = []
        shares, price, parsed = parse_fill_from_logs(logs, order)
        if not parsed:
            log.warning("order #%s: fill not found in logs, reporting %d @ %d",
                        order_id, shares, price)
        return FillReport(tx_signature=tx_signature, shares_filled=shares,
                          execution_price=price, keeper_pubkey=self.keeper_pubkey,
                          parsed_from_logs=parsed)

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def report_fill(self, order_id: int, fill: FillReport) -> bool:
        try:
            self.store.report_fill(order_id, fill)
        except OrderStoreError as e:
            if e.status == 404:
                # Already filled, cancelled or expired on the store's side.
                log.warning("order #%s: store rejected fill (%s), dropping", order_id, e)
                self.claims.mark_reported(order_id)
                return False
            log.error("order #%s: fill report failed, will retry: %s", order_id, e)
            return False
        self.claims.mark_reported(order_id)
        self.tally.reported += 1
        return True

    def flush_reports(self) -> int:
        """Re-send fills that executed but were never acknowledged."""
        sent = 0
        for claim in self.claims.unreported():
            log.info("re-reporting fill for order #%s (tx %s)",
                     claim.order_id, claim.tx_signature)
            if self.report_fill(claim.order_id, claim.fill()):
                sent += 1
        return sent
