"""Table formatting for terminal output. No external dependencies."""

from __future__ import annotations

from darkpool.lmsr import implied_probability
from darkpool.models import AmmState, Side

BOLD = "\033[1m"
DIM = "\033[2m"
RESET = "\033[0m"
GREEN = "\033[32m"
RED = "\033[31m"
CYAN = "\033[36m"
YELLOW = "\033[33m"


def _trunc(text: str, width: int) -> str:
    s = str(text)
    if len(s) > width:
        return s[: width - 1] + "…"
    return s


def _pad(text: str, width: int, right: bool = False) -> str:
    s = str(text)
    if right:
        return s.rjust(width)
    return s.ljust(width)


def _bar(yes: float, width: int = 20) -> str:
    filled = round(yes * width)
    empty = width - filled
    return f"{GREEN}{'█' * filled}{DIM}{'░' * empty}{RESET}"


def _fixed(amount: int, decimals: int = 6) -> str:
    """Fixed-point integer to a human string, e.g. 1_250_000 -> 1.250000."""
    sign = "-" if amount < 0 else ""
    whole, frac = divmod(abs(amount), 10 ** decimals)
    return f"{sign}{whole:,}.{frac:0{decimals}d}"


def market_detail(state: AmmState, address: str = "") -> str:
    yes_p = implied_probability(state, Side.YES)
    no_p = implied_probability(state, Side.NO)
    status = state.status.value
    status_color = GREEN if status == "open" else YELLOW
    d = state.decimals

    lines = [
        "",
        f"  {BOLD}{address or 'market'}{RESET}",
        f"  {DIM}{'─' * 60}{RESET}",
        "",
        f"  Status     {status_color}{status}{RESET}",
        f"  Fee        {state.fee_bps} bps",
        "",
        f"  {_bar(yes_p)}",
        f"  {GREEN}YES  {yes_p:.4f}{RESET}    {RED}NO  {no_p:.4f}{RESET}",
        "",
        f"  q_yes      {_fixed(state.q_yes, d)}",
        f"  q_no       {_fixed(state.q_no, d)}",
        f"  b          {_fixed(state.b, d)}",
        f"  Vault      {CYAN}{_fixed(state.vault, d)}{RESET}",
        f"  Fees       {_fixed(state.fees, d)}",
    ]
    if state.winner:
        lines += [
            "",
            f"  Winner     {BOLD}{state.winner.name}{RESET}",
            f"  W          {_fixed(state.w_total, d)}",
            f"  pps        {_fixed(state.pps, d)}",
        ]
    lines.append("")
    return "\n".join(lines)


def settlement_table(report, decimals: int = 6) -> str:
    """Per-holder payouts. Takes a SettlementReport."""
    snap = report.snapshot
    if not report.rows:
        return f"\n  {DIM}No winning holders.{RESET}\n"

    lines = [
        "",
        f"  {BOLD}Settlement{RESET}  winner {snap.winner.name}  "
        f"W {_fixed(snap.w_total, decimals)}  pps {_fixed(snap.pps, decimals)}",
        f"  {DIM}{'─' * 78}{RESET}",
        f"  {BOLD}{_pad('User', 22)}{_pad('Shares', 18, right=True)}"
        f"{_pad('Payout', 18, right=True)}{_pad('Display', 18, right=True)}{RESET}",
    ]
    for r in report.rows:
        lines.append(
            f"  {_pad(_trunc(str(r.user), 20), 22)}"
            f"{_pad(_fixed(r.winning_shares_raw, decimals), 18, right=True)}"
            f"{GREEN}{_pad(_fixed(r.on_chain_payout, decimals), 18, right=True)}{RESET}"
            f"{DIM}{_pad(_fixed(r.display_payout, decimals), 18, right=True)}{RESET}"
        )
    lines += [
        f"  {DIM}{'─' * 78}{RESET}",
        f"  Vault before  {_fixed(snap.vault_before, decimals)}",
        f"  Vault after   {_fixed(report.vault_after, decimals)}",
        f"  Paid          {BOLD}{_fixed(report.total_paid, decimals)}{RESET}",
        "",
    ]
    return "\n".join(lines)


def tally_summary(summary: dict) -> str:
    lines = [
        "",
        f"  {BOLD}Keeper{RESET}  since {summary.get('started_at', '-')}",
        f"  {DIM}{'─' * 40}{RESET}",
        f"  Ticks      {summary.get('ticks', 0)}",
        f"  Seen       {summary.get('orders_seen', 0)}",
        f"  Executed   {GREEN}{summary.get('executed', 0)}{RESET}"
        f"  ({summary.get('partial', 0)} partial)",
        f"  Skipped    {summary.get('skipped', 0)}",
        f"  Failed     {RED}{summary.get('failed', 0)}{RESET}",
        f"  Reported   {summary.get('reported', 0)}",
    ]
    reasons = summary.get("skip_reasons", {})
    if reasons:
        lines.append("")
        lines.append(f"  {BOLD}Skip reasons{RESET}")
        for reason, n in sorted(reasons.items(), key=lambda kv: -kv[1]):
            lines.append(f"  {_pad(reason, 32)}{_pad(n, 6, right=True)}")
    lines.append("")
    return "\n".join(lines)
