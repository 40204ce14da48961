"""
LMSR (Logarithmic Market Scoring Rule): pure math over fixed-point integers, no state.

Inputs and outputs are fixed-point integers scaled by 10^decimals, the
same representation the program keeps on-chain. Floats are used only for
the transcendental evaluation, in the same order of operations as the
program, so results agree with it to the last integer unit.

Notation:
    q_yes, q_no: outstanding shares on each side (fixed-point)
    b: liquidity parameter (fixed-point; max loss = b * ln 2)

Rounding back to integers:
    buy spend      round half away from zero (program rounds f64)
    sell proceeds  floor (never more optimistic than the program)
    prices         truncate toward zero (program casts f64 -> i64)
"""

import math

from darkpool.models import AmmState, Action, Side, MAX_BPS


DEFAULT_PROBABILITY = 0.5

# i64::MAX. The program saturates a spend it cannot represent and rejects the trade.
MAX_SPEND = 2 ** 63 - 1


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _human(x: int, scale: int) -> float:
    return x / scale


def _round_half_away(x: float) -> int:
    """f64::round semantics. Python's round() is banker's rounding."""
    if x >= 0:
        return int(math.floor(x + 0.5))
    return -int(math.floor(-x + 0.5))


def _finite_or_zero(x: float) -> float:
    if not math.isfinite(x) or x < 0.0:
        return 0.0
    return x


# ---------------------------------------------------------------------------
# Core functions
# ---------------------------------------------------------------------------

def cost(q_yes: float, q_no: float, b: float) -> float:
    """
    Cost function: C(q) = b * ln(e^(qY/b) + e^(qN/b))

    Log-sum-exp form, so large inventories do not overflow:
        m = max(qY/b, qN/b)
        C = b * (m + ln(e^(qY/b - m) + e^(qN/b - m)))

    Takes human units (shares, not fixed-point). Trading costs are
    always C(after) - C(before).
    """
    if b <= 0:
        raise ValueError(f"liquidity must be positive, got {b}")
    a = q_yes / b
    c = q_no / b
    m = max(a, c)
    return b * (m + math.log(math.exp(a - m) + math.exp(c - m)))


def state_cost(state: AmmState, q_yes: int, q_no: int) -> float:
    """C at a hypothetical inventory of `state`'s market, in human units."""
    s = state.scale
    return cost(_human(q_yes, s), _human(q_no, s), _human(state.b, s))


def _post_inventory(state: AmmState, side: Side, delta: int) -> tuple[int, int]:
    if side == Side.YES:
        return state.q_yes + delta, state.q_no
    return state.q_yes, state.q_no + delta


def buy_cost(state: AmmState, side: Side, shares: int) -> int:
    """
    Raw LMSR cost of buying `shares` on `side`, fixed-point, before fees.

    cost(post) - cost(pre), clamped to >= 0 and to 0 if non-finite.
    """
    if shares <= 0:
        return 0
    pre = state_cost(state, state.q_yes, state.q_no)
    post = state_cost(state, *_post_inventory(state, side, shares))
    return int(math.floor(_finite_or_zero(post - pre) * state.scale))


def buy_spend(state: AmmState, side: Side, shares: int) -> int:
    """
    Collateral the program charges to buy exactly `shares`, fee included.

    gross = net / (1 - fee_bps/10000), rounded to the nearest unit.
    A 100% fee, or a gross that does not fit, saturates at MAX_SPEND so
    every cost and price guard rejects the trade.
    """
    if shares <= 0:
        return 0
    if state.fee_bps >= MAX_BPS:
        return MAX_SPEND
    pre = state_cost(state, state.q_yes, state.q_no)
    post = state_cost(state, *_post_inventory(state, side, shares))
    net_h = max(0.0, post - pre)
    gross = net_h / (1.0 - state.fee_bps / MAX_BPS) * state.scale
    if not math.isfinite(gross) or gross >= MAX_SPEND:
        return MAX_SPEND
    return _round_half_away(gross)


def sell_proceeds(state: AmmState, side: Side, shares: int) -> int:
    """
    Net collateral received for selling `shares` on `side`.

    The size is clipped to the outstanding inventory on that side.
    gross = cost(pre) - cost(post), clamped >= 0; fee is taken off gross;
    the result is floored to a fixed-point integer.
    """
    sell = min(shares, state.q(side))
    if sell <= 0:
        return 0
    pre = state_cost(state, state.q_yes, state.q_no)
    post = state_cost(state, *_post_inventory(state, side, -sell))
    gross = _finite_or_zero(pre - post) * state.scale
    fee = max(0.0, gross * state.fee_bps / MAX_BPS)
    net = max(0.0, gross - fee)
    return int(math.floor(net))


def trade_amount(state: AmmState, action: Action, side: Side, shares: int) -> int:
    """Spend for a buy, proceeds for a sell."""
    if action == Action.BUY:
        return buy_spend(state, side, shares)
    return sell_proceeds(state, side, shares)


# ---------------------------------------------------------------------------
# Prices
# ---------------------------------------------------------------------------

def implied_probability(state: AmmState, side: Side,
                        last_good: float | None = None) -> float:
    """
    Softmax over q/b: e^(q_side/b) / (e^(qY/b) + e^(qN/b)).

    Falls back to `last_good` (or 0.5) when the state cannot be priced:
    non-positive or non-finite b, or a degenerate denominator.
    """
    fallback = DEFAULT_PROBABILITY if last_good is None else last_good
    if state.b <= 0:
        return fallback
    a = state.q_yes / state.b
    c = state.q_no / state.b
    if not (math.isfinite(a) and math.isfinite(c)):
        return fallback
    m = max(a, c)
    ea = math.exp(a - m)
    ec = math.exp(c - m)
    total = ea + ec
    if not math.isfinite(total) or total == 0.0:
        return fallback
    p = (ea if side == Side.YES else ec) / total
    if not math.isfinite(p):
        return fallback
    return p


def spot_price_e6(state: AmmState, side: Side,
                  last_good: float | None = None) -> int:
    """Implied probability as a fixed-point price, truncated."""
    return int(implied_probability(state, side, last_good) * state.scale)


def execution_price(state: AmmState, action: Action, side: Side,
                    shares: int) -> tuple[int, int]:
    """
    (exec_price, total) for a trade of `shares`.

    exec_price = floor(total * 10^decimals / shares), integer arithmetic.
    For sells the divisor is the requested size even when the inventory
    clips the proceeds, which is how the program prices it.
    """
    if shares <= 0:
        return 0, 0
    total = trade_amount(state, action, side, shares)
    return total * state.scale // shares, total


def unit_price(state: AmmState, action: Action, side: Side) -> int:
    """Average price of exactly one share. The program's cheap pre-check."""
    price, _ = execution_price(state, action, side, state.scale)
    return price
