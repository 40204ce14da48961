"""
Guard validator and partial-fill search.

Answers, without talking to the chain, whether a trade of a given size
would pass the program's execution-time guards on a given AMM snapshot,
and if not, the largest size that would.

Guards, each optional:
    price limit   Buy: exec <= limit.  Sell: exec >= limit.
    slippage      exec within quote +/- floor(quote * bps / 10000),
                  quote no older than 30 seconds.
    cost limit    Buy only: total spend <= max_total_cost.

exec = floor(total * 10^decimals / size), total being the fee-inclusive
spend of a buy or the net proceeds of a sell.

Pure functions over an immutable snapshot; safe to call from any thread.
"""

import time
from dataclasses import dataclass, field
from typing import Optional

from darkpool.errors import ValidationError
from darkpool.lmsr import execution_price
from darkpool.models import (
    AmmState, Action, Side, GuardConfig,
    MAX_BPS, QUOTE_MAX_AGE_SECS, min_trade_shares,
)


MAX_SEARCH_ITERATIONS = 16

PRICE_LIMIT = "price_limit"
SLIPPAGE = "slippage"
COST_LIMIT = "cost_limit"

# Order in which a failing full-size attempt reports its reason.
_GUARD_REASONS = (
    (PRICE_LIMIT, ValidationError.PRICE_LIMIT_EXCEEDED),
    (SLIPPAGE, ValidationError.SLIPPAGE_EXCEEDED),
    (COST_LIMIT, ValidationError.COST_EXCEEDS_LIMIT),
)


def _usd(x: int, scale: int) -> str:
    return f"${x / scale:.4f}"


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class GuardCheck:
    passed: bool
    detail: str


@dataclass(frozen=True)
class SizeEvaluation:
    """All configured guards evaluated at one candidate size."""
    shares: int
    execution_price: int
    total: int
    checks: dict[str, GuardCheck] = field(default_factory=dict)

    @property
    def passed(self) -> bool:
        return all(c.passed for c in self.checks.values())

    def first_failure(self) -> Optional[str]:
        for name, reason in _GUARD_REASONS:
            check = self.checks.get(name)
            if check is not None and not check.passed:
                return reason
        return None


@dataclass(frozen=True)
class GuardResult:
    """
    Aggregate decision.

    probes: every (size, passed) pair the search evaluated, in order.
    The full-size attempt is always the first probe.
    """
    success: bool
    requested: int
    shares_to_execute: int = 0
    execution_price: int = 0
    total_cost: int = 0
    is_partial_fill: bool = False
    evaluation: Optional[SizeEvaluation] = None
    probes: tuple[tuple[int, bool], ...] = ()
    error: Optional[str] = None
    message: str = ""

    def raise_for_error(self) -> "GuardResult":
        if not self.success:
            raise ValidationError(self.error or ValidationError.NO_EXECUTABLE_SIZE,
                                  self.message)
        return self


# ---------------------------------------------------------------------------
# Single size
# ---------------------------------------------------------------------------

def evaluate_size(state: AmmState, action: Action, side: Side,
                  shares: int, guards: GuardConfig) -> SizeEvaluation:
    exec_price, total = execution_price(state, action, side, shares)
    scale = state.scale
    checks: dict[str, GuardCheck] = {}

    if guards.price_limit > 0:
        if action == Action.BUY:
            ok = exec_price <= guards.price_limit
            bound = "max for BUY"
        else:
            ok = exec_price >= guards.price_limit
            bound = "min for SELL"
        checks[PRICE_LIMIT] = GuardCheck(
            ok, f"exec {_usd(exec_price, scale)} vs limit "
                f"{_usd(guards.price_limit, scale)} ({bound})")

    if guards.has_slippage:
        deviation = guards.quote_price * guards.max_slippage_bps // MAX_BPS
        if action == Action.BUY:
            bound_price = guards.quote_price + deviation
            ok = exec_price <= bound_price
        else:
            bound_price = max(0, guards.quote_price - deviation)
            ok = exec_price >= bound_price
        checks[SLIPPAGE] = GuardCheck(
            ok, f"quote {_usd(guards.quote_price, scale)} "
                f"+/- {guards.max_slippage_bps / 100:.2f}% -> bound "
                f"{_usd(bound_price, scale)}, exec {_usd(exec_price, scale)}")

    if action == Action.BUY and guards.max_total_cost > 0:
        ok = total <= guards.max_total_cost
        checks[COST_LIMIT] = GuardCheck(
            ok, f"total {_usd(total, scale)} vs max "
                f"{_usd(guards.max_total_cost, scale)}")

    return SizeEvaluation(shares=shares, execution_price=exec_price,
                          total=total, checks=checks)


# ---------------------------------------------------------------------------
# Search
# ---------------------------------------------------------------------------

def find_max_executable(state: AmmState, action: Action, side: Side,
                        requested: int, guards: GuardConfig,
                        probes: list | None = None) -> tuple[int, Optional[SizeEvaluation]]:
    """
    Largest size in [max(min_fill, min_trade), requested] that passes,
    found by bisection in at most 16 steps.

    Guards are not monotonic in size in general, so the answer is the
    largest passing size among the sizes actually probed, not a proof
    that no larger size passes.
    """
    left = max(guards.min_fill_shares, min_trade_shares(action))
    right = requested
    best = 0
    best_eval = None

    for _ in range(MAX_SEARCH_ITERATIONS):
        if left > right:
            break
        mid = (left + right) // 2
        ev = evaluate_size(state, action, side, mid, guards)
        if probes is not None:
            probes.append((mid, ev.passed))
        if ev.passed:
            best, best_eval = mid, ev
            left = mid + 1
        else:
            right = mid - 1

    return best, best_eval


def validate_guards(side: Side, action: Action, requested: int,
                    guards: GuardConfig, state: AmmState,
                    now: int | None = None) -> GuardResult:
    """
    Decide whether (and how much of) a trade would execute.

    1. Stale quote rejects before any sizing, when slippage is configured.
    2. Full size passes: execute in full.
    3. Full size fails, no partials: reject with the first failing guard.
    4. Otherwise bisect for the largest passing size; reject if none, or
       if it is below the minimum fill.
    """
    action = Action(action)
    side = Side(side)
    if requested <= 0:
        raise ValueError(f"requested size must be positive, got {requested}")

    if guards.has_slippage:
        now = int(time.time()) if now is None else now
        age = now - guards.quote_timestamp
        if age > QUOTE_MAX_AGE_SECS:
            return GuardResult(
                success=False, requested=requested,
                error=ValidationError.STALE_QUOTE,
                message=f"quote is {age}s old (max {QUOTE_MAX_AGE_SECS}s)")

    full = evaluate_size(state, action, side, requested, guards)
    probes = [(requested, full.passed)]
    if full.passed:
        return GuardResult(
            success=True, requested=requested,
            shares_to_execute=requested,
            execution_price=full.execution_price,
            total_cost=full.total,
            evaluation=full, probes=tuple(probes))

    if not guards.allow_partial:
        reason = full.first_failure()
        detail = "; ".join(c.detail for c in full.checks.values() if not c.passed)
        return GuardResult(
            success=False, requested=requested, evaluation=full,
            probes=tuple(probes), error=reason, message=detail)

    best, best_eval = find_max_executable(state, action, side, requested,
                                          guards, probes)
    if best == 0 or best_eval is None:
        return GuardResult(
            success=False, requested=requested, evaluation=full,
            probes=tuple(probes), error=ValidationError.NO_EXECUTABLE_SIZE,
            message="no size within guards")

    # The search starts at min_fill, so a too-small best cannot come out of
    # it today; this mirrors the program's own final check.
    if guards.min_fill_shares > 0 and best < guards.min_fill_shares:
        return GuardResult(
            success=False, requested=requested, evaluation=best_eval,
            probes=tuple(probes), error=ValidationError.MIN_FILL_NOT_MET,
            message=f"best size {best} below minimum fill {guards.min_fill_shares}")

    return GuardResult(
        success=True, requested=requested,
        shares_to_execute=best,
        execution_price=best_eval.execution_price,
        total_cost=best_eval.total,
        is_partial_fill=best < requested,
        evaluation=best_eval, probes=tuple(probes))
