#!/usr/bin/env python3
"""
Dark-pool CLI.

Usage:
    darkpool keeper [--ticks N] [--poll-interval S] [--claims PATH]
    darkpool submit-order buy|sell yes|no SHARES LIMIT [--max-cost X] [--expiry-secs S]
    darkpool simulate buy|sell yes|no SHARES [--limit P] [--quote P --max-slippage-bps N]
                      [--q-yes Q --q-no Q --b B]
    darkpool market
    darkpool settle [--winner yes|no] [--dry-run]

Amounts on the command line are human units (1.5 = 1_500_000 e6).
Output: JSON, one line, with --json. {"ok": true, ...} or {"ok": false, "error": "..."}
Otherwise a table.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import time
from decimal import Decimal, InvalidOperation

from solders.pubkey import Pubkey

from darkpool import config as cfg
from darkpool import fmt
from darkpool.codec import MarketAccounts
from darkpool.config import KeeperConfig, SettlementConfig
from darkpool.errors import (
    ChainExecutionError, LedgerError, MarketStateError, OrderStoreError,
    ReconciliationError, ValidationError,
)
from darkpool.guards import validate_guards
from darkpool.keeper import Keeper
from darkpool.ledger import Ledger, load_keypair
from darkpool.lmsr import spot_price_e6
from darkpool.models import E6, Action, AmmState, GuardConfig, Side, Winner
from darkpool.orderbook import OrderStore
from darkpool.orders import (
    LimitOrder, check_submittable, new_nonce, sign_order,
    signature_to_hex, signing_key_from_secret,
)
from darkpool.persistence import ClaimStore
from darkpool.settlement import SettlementEngine

log = logging.getLogger("darkpool")

LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


def reply(data):
    print(json.dumps(data, default=str))


def _output(args, data, formatter):
    if args.json_output:
        reply(data)
    else:
        print(formatter(data))


def _to_e6(text: str) -> int:
    try:
        return int(Decimal(text) * E6)
    except InvalidOperation:
        raise argparse.ArgumentTypeError(f"not a number: {text!r}") from None


def _market(args) -> MarketAccounts:
    return MarketAccounts.derive(Pubkey.from_string(args.program_id))


def _state_dict(state: AmmState) -> dict:
    return {
        "status": state.status.value,
        "winner": state.winner.name.lower(),
        "q_yes": state.q_yes, "q_no": state.q_no, "b": state.b,
        "fee_bps": state.fee_bps, "vault": state.vault, "fees": state.fees,
        "w_total": state.w_total, "pps": state.pps,
        "price_yes": spot_price_e6(state, Side.YES),
        "price_no": spot_price_e6(state, Side.NO),
        "fee_dest": str(state.fee_dest) if state.fee_dest else None,
    }


# ── Command handlers ──

def cmd_keeper(args) -> int:
    conf = KeeperConfig(
        order_book_api=args.order_book, rpc_url=args.rpc_url,
        program_id=args.program_id, poll_interval=args.poll_interval,
        safety_buffer_bps=args.safety_buffer_bps, claims_path=args.claims,
    )
    signer = load_keypair(args.wallet)
    ledger = Ledger(conf.rpc_url, timeout=conf.timeout)
    store = OrderStore(conf.order_book_api, timeout=conf.timeout)
    claims = ClaimStore(conf.claims_path, ttl=conf.claim_ttl)
    keeper = Keeper(store, ledger, signer, _market(args), conf, claims=claims)
    try:
        tally = keeper.run(max_ticks=args.ticks)
    finally:
        store.close()
        ledger.close()
    _output(args, {"ok": True, **tally.summary()}, fmt.tally_summary)
    return 0


def cmd_submit_order(args) -> int:
    wallet = load_keypair(args.wallet)
    key = signing_key_from_secret(bytes(wallet))
    order = LimitOrder(
        market=_market(args).amm,
        user=wallet.pubkey(),
        action=Action[args.action.upper()],
        side=Side[args.side.upper()],
        shares_e6=args.shares,
        limit_price_e6=args.limit,
        max_cost_e6=args.max_cost,
        min_proceeds_e6=args.min_proceeds,
        expiry_ts=int(time.time()) + args.expiry_secs,
        nonce=new_nonce(),
        keeper_fee_bps=args.keeper_fee_bps,
        min_fill_bps=args.min_fill_bps,
    )
    signature = sign_order(order, key)
    check_submittable(order, signature_to_hex(signature))
    store = OrderStore(args.order_book)
    try:
        resp = store.submit(order, signature)
    finally:
        store.close()
    reply({"ok": True, "order_id": resp.order_id, "order_hash": resp.order_hash,
           "nonce": order.nonce, "expiry_ts": order.expiry_ts})
    return 0


def cmd_simulate(args) -> int:
    if args.b is not None:
        state = AmmState(q_yes=args.q_yes, q_no=args.q_no, b=args.b,
                         fee_bps=args.fee_bps)
    else:
        ledger = Ledger(args.rpc_url)
        try:
            state = ledger.get_amm_state(_market(args))
        finally:
            ledger.close()

    guards = GuardConfig(
        price_limit=args.limit,
        max_total_cost=args.max_cost,
        allow_partial=args.partial,
        min_fill_shares=args.shares * args.min_fill_bps // 10_000,
        max_slippage_bps=args.max_slippage_bps,
        quote_price=args.quote,
        quote_timestamp=int(time.time()) - args.quote_age,
    )
    result = validate_guards(Side[args.side.upper()], Action[args.action.upper()],
                             args.shares, guards, state)
    reply({
        "ok": result.success,
        "requested": result.requested,
        "shares_to_execute": result.shares_to_execute,
        "execution_price": result.execution_price,
        "total_cost": result.total_cost,
        "is_partial_fill": result.is_partial_fill,
        "error": result.error,
        "message": result.message,
        "probes": [list(p) for p in result.probes],
    })
    return 0 if result.success else 1


def cmd_market(args) -> int:
    ledger = Ledger(args.rpc_url)
    market = _market(args)
    try:
        state = ledger.get_amm_state(market)
    finally:
        ledger.close()
    if args.json_output:
        reply({"ok": True, "amm": str(market.amm), **_state_dict(state)})
    else:
        print(fmt.market_detail(state, str(market.amm)))
    return 0


def cmd_settle(args) -> int:
    admin = load_keypair(args.wallet)
    ledger = Ledger(args.rpc_url)
    engine = SettlementEngine(ledger, admin, _market(args),
                              SettlementConfig(rpc_url=args.rpc_url,
                                               program_id=args.program_id))
    try:
        if args.winner:
            engine.stop_and_settle(Winner[args.winner.upper()])
        if args.dry_run:
            snapshot, rows = engine.preview()
            reply({"ok": True, "dry_run": True, "winner": snapshot.winner.name.lower(),
                   "w_total": snapshot.w_total, "pps": snapshot.pps,
                   "vault": snapshot.vault_before,
                   "payouts": {str(r.user): r.on_chain_payout for r in rows}})
            return 0
        report = engine.reconcile()
    finally:
        ledger.close()

    if args.json_output:
        reply({"ok": True, "winner": report.snapshot.winner.name.lower(),
               "w_total": report.snapshot.w_total, "pps": report.snapshot.pps,
               "vault_before": report.snapshot.vault_before,
               "vault_after": report.vault_after, "total_paid": report.total_paid,
               "payouts": {str(r.user): r.on_chain_payout for r in report.rows},
               "redeemed": report.redeemed})
    else:
        print(fmt.settlement_table(report))
    return 0


# ── Parser ──

def _add_global_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--json", dest="json_output", action="store_true",
                        help="Output as one-line JSON")
    parser.add_argument("--verbose", "-v", action="store_true",
                        help="Debug logging")
    parser.add_argument("--rpc-url", default=cfg.RPC_URL, help="Ledger JSON-RPC URL")
    parser.add_argument("--program-id", default=cfg.PROGRAM_ID, help="Program id")
    parser.add_argument("--wallet", default=cfg.KEEPER_WALLET,
                        help="Keypair file (JSON array of secret key bytes)")
    parser.add_argument("--order-book", default=cfg.ORDER_BOOK_API,
                        help="Order store base URL")


def _sub(subparsers, name: str, **kwargs) -> argparse.ArgumentParser:
    """Create a subparser with global args inherited."""
    p = subparsers.add_parser(name, **kwargs)
    _add_global_args(p)
    return p


def _trade_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("action", choices=["buy", "sell"])
    p.add_argument("side", choices=["yes", "no"])
    p.add_argument("shares", type=_to_e6, help="Shares, human units")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="darkpool",
        description="LMSR dark-pool keeper and settlement tools",
    )
    _add_global_args(parser)
    sub = parser.add_subparsers(dest="command")

    p = _sub(sub, "keeper", help="Run the keeper loop")
    p.add_argument("--ticks", type=int, default=None, help="Stop after N ticks")
    p.add_argument("--poll-interval", type=float, default=cfg.POLL_INTERVAL)
    p.add_argument("--safety-buffer-bps", type=int, default=cfg.SAFETY_BUFFER_BPS)
    p.add_argument("--claims", default=cfg.CLAIMS_PATH, help="Claim snapshot path")

    p = _sub(sub, "submit-order", help="Sign and submit a limit order")
    _trade_args(p)
    p.add_argument("limit", type=_to_e6, help="Limit price per share, human units")
    p.add_argument("--max-cost", type=_to_e6, default=0)
    p.add_argument("--min-proceeds", type=_to_e6, default=0)
    p.add_argument("--expiry-secs", type=int, default=300)
    p.add_argument("--keeper-fee-bps", type=int, default=0)
    p.add_argument("--min-fill-bps", type=int, default=0)

    p = _sub(sub, "simulate", help="Run the guard validator without trading")
    _trade_args(p)
    p.add_argument("--limit", type=_to_e6, default=0, help="Price limit, human units")
    p.add_argument("--max-cost", type=_to_e6, default=0)
    p.add_argument("--partial", action="store_true", help="Allow partial fills")
    p.add_argument("--min-fill-bps", type=int, default=0)
    p.add_argument("--quote", type=_to_e6, default=0,
                   help="Quoted price for the slippage band, human units")
    p.add_argument("--max-slippage-bps", type=int, default=0)
    p.add_argument("--quote-age", type=int, default=0, help="Seconds since the quote")
    p.add_argument("--q-yes", type=_to_e6, default=0, help="Offline state: YES inventory")
    p.add_argument("--q-no", type=_to_e6, default=0, help="Offline state: NO inventory")
    p.add_argument("--b", type=_to_e6, default=None,
                   help="Offline state: liquidity. Without it the live market is read")
    p.add_argument("--fee-bps", type=int, default=0)

    _sub(sub, "market", help="Show market state")

    p = _sub(sub, "settle", help="Redeem every position and reconcile the vault")
    p.add_argument("--winner", choices=["yes", "no"], default=None,
                   help="Stop and settle with this winner first")
    p.add_argument("--dry-run", action="store_true",
                   help="Show computed payouts without redeeming")
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 0

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format=LOG_FORMAT, stream=sys.stderr)

    dispatch = {
        "keeper": cmd_keeper,
        "submit-order": cmd_submit_order,
        "simulate": cmd_simulate,
        "market": cmd_market,
        "settle": cmd_settle,
    }

    try:
        return dispatch[args.command](args)
    except (ValidationError, MarketStateError, ReconciliationError,
            ChainExecutionError) as e:
        reply({"ok": False, "error": str(e), "reason": e.reason})
        return 1
    except OrderStoreError as e:
        reply({"ok": False, "error": e.detail, "status": e.status})
        return 1
    except (LedgerError, ValueError, OSError) as e:
        reply({"ok": False, "error": str(e)})
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
