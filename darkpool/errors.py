"""
Error taxonomy.

    ValidationError      local guard rejection. Never retried; the reason
                         goes back to whoever submitted the order.
    MarketStateError     market not tradeable for this order right now.
                         The keeper skips the order for this tick only.
    ChainExecutionError  the program rejected the transaction. Carries the
                         decoded program error and the raw log lines.
    ReconciliationError  settlement numbers do not add up. Fatal for the
                         settlement cycle; a human has to look.
    LedgerError          RPC transport or protocol failure.
    OrderStoreError      order store returned an error status.

The program's error set is closed, so chain errors decode into
ChainErrorCode rather than being matched as free text.
"""

import re
from enum import IntEnum
from typing import Optional


# ---------------------------------------------------------------------------
# Program errors
# ---------------------------------------------------------------------------

class ChainErrorCode(IntEnum):
    WRONG_OWNER = 6000
    DATA_TOO_SMALL = 6001
    DESERIALIZE_FAIL = 6002
    BAD_PARAM = 6003
    MARKET_CLOSED = 6004
    WRONG_STATE = 6005
    NOT_OWNER = 6006
    INSUFFICIENT_SHARES = 6007
    NO_COVERAGE = 6008
    ALREADY_SNAPSHOTTED = 6009
    NOT_SNAPSHOTTED = 6010
    STALE_ORACLE = 6011
    UNAUTHORIZED = 6012
    INSUFFICIENT_BALANCE = 6013
    TRADING_LOCKED = 6014
    PRICE_LIMIT_EXCEEDED = 6015
    PRICE_LIMIT_NOT_MET = 6016
    SLIPPAGE_EXCEEDED = 6017
    STALE_QUOTE = 6018
    COST_EXCEEDS_LIMIT = 6019
    MIN_FILL_NOT_MET = 6020
    INVALID_GUARD_CONFIG = 6021
    INVALID_SIGNATURE = 6022
    ORDER_EXPIRED = 6023
    NONCE_ALREADY_USED = 6024
    PRICE_CONDITION_NOT_MET = 6025
    WRONG_MARKET = 6026
    WRONG_USER = 6027
    INVALID_ACTION = 6028

    @property
    def anchor_name(self) -> str:
        return "".join(part.capitalize() for part in self.name.split("_"))

    @property
    def message(self) -> str:
        return _MESSAGES[self]

    @staticmethod
    def from_anchor_name(name: str) -> Optional["ChainErrorCode"]:
        for code in ChainErrorCode:
            if code.anchor_name == name:
                return code
        return None


_MESSAGES: dict[ChainErrorCode, str] = {
    ChainErrorCode.WRONG_OWNER: "oracle_state owned by wrong program",
    ChainErrorCode.DATA_TOO_SMALL: "oracle_state data too small",
    ChainErrorCode.DESERIALIZE_FAIL: "failed to deserialize oracle state",
    ChainErrorCode.BAD_PARAM: "bad parameter",
    ChainErrorCode.MARKET_CLOSED: "market is closed",
    ChainErrorCode.WRONG_STATE: "wrong market state for this action",
    ChainErrorCode.NOT_OWNER: "not the owner of this position",
    ChainErrorCode.INSUFFICIENT_SHARES: "insufficient shares",
    ChainErrorCode.NO_COVERAGE: "insufficient coverage",
    ChainErrorCode.ALREADY_SNAPSHOTTED: "oracle snapshot already taken",
    ChainErrorCode.NOT_SNAPSHOTTED: "oracle snapshot missing",
    ChainErrorCode.STALE_ORACLE: "stale oracle data",
    ChainErrorCode.UNAUTHORIZED: "unauthorized access",
    ChainErrorCode.INSUFFICIENT_BALANCE: "insufficient vault balance",
    ChainErrorCode.TRADING_LOCKED: "trading locked before market close",
    ChainErrorCode.PRICE_LIMIT_EXCEEDED: "price exceeds limit for BUY",
    ChainErrorCode.PRICE_LIMIT_NOT_MET: "price below limit for SELL",
    ChainErrorCode.SLIPPAGE_EXCEEDED: "slippage tolerance exceeded",
    ChainErrorCode.STALE_QUOTE: "quote too stale - maximum 30 seconds old",
    ChainErrorCode.COST_EXCEEDS_LIMIT: "total cost exceeds maximum allowed",
    ChainErrorCode.MIN_FILL_NOT_MET: "minimum fill amount not met",
    ChainErrorCode.INVALID_GUARD_CONFIG: "invalid guard configuration",
    ChainErrorCode.INVALID_SIGNATURE: "invalid Ed25519 signature",
    ChainErrorCode.ORDER_EXPIRED: "order has expired",
    ChainErrorCode.NONCE_ALREADY_USED: "nonce has already been used",
    ChainErrorCode.PRICE_CONDITION_NOT_MET: "price condition not met",
    ChainErrorCode.WRONG_MARKET: "wrong market for this order",
    ChainErrorCode.WRONG_USER: "wrong user for this position",
    ChainErrorCode.INVALID_ACTION: "invalid action (must be 1=BUY or 2=SELL)",
}


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class ValidationError(Exception):
    STALE_QUOTE = "StaleQuote"
    PRICE_LIMIT_EXCEEDED = "PriceLimitExceeded"
    SLIPPAGE_EXCEEDED = "SlippageExceeded"
    COST_EXCEEDS_LIMIT = "CostExceedsLimit"
    MIN_FILL_NOT_MET = "MinFillNotMet"
    NO_EXECUTABLE_SIZE = "NoExecutableSize"

    def __init__(self, reason: str, message: str = ""):
        self.reason = reason
        super().__init__(f"{reason}: {message}" if message else reason)


class MarketStateError(Exception):
    MARKET_CLOSED = "MarketClosed"
    MARKET_EXPIRED = "MarketExpired"
    INSUFFICIENT_OUTSTANDING_SHARES = "InsufficientOutstandingShares"
    PRICE_CONDITION_NOT_MET = "PriceConditionNotMet"
    NONCE_ALREADY_USED = "NonceAlreadyUsed"
    NO_POSITION = "NoPosition"
    NOT_SETTLED = "NotSettled"

    def __init__(self, reason: str, message: str = ""):
        self.reason = reason
        super().__init__(f"{reason}: {message}" if message else reason)


class ChainExecutionError(Exception):
    """
    Program rejection or failed transaction.

    code is None when the failure did not come from the program's own
    error set (e.g. a runtime or system-program error); logs are kept
    verbatim either way.
    """

    def __init__(self, code: Optional[ChainErrorCode], message: str,
                 logs: list[str] | None = None, tx_signature: str | None = None,
                 raw_error=None):
        self.code = code
        self.logs = list(logs or [])
        self.tx_signature = tx_signature
        self.raw_error = raw_error
        label = code.anchor_name if code is not None else "ChainError"
        super().__init__(f"{label}: {message}")

    @property
    def reason(self) -> str:
        return self.code.anchor_name if self.code is not None else "ChainError"


class ReconciliationError(Exception):
    PPS_MISMATCH = "PpsMismatch"
    VAULT_DROP_MISMATCH = "VaultDropMismatch"
    NON_ZERO_POSITION_AFTER_REDEEM = "NonZeroPositionAfterRedeem"

    def __init__(self, reason: str, message: str = "", details: dict | None = None):
        self.reason = reason
        self.details = details or {}
        super().__init__(f"{reason}: {message}" if message else reason)


class LedgerError(Exception):
    def __init__(self, message: str, code: int | None = None):
        self.code = code
        super().__init__(message)


class OrderStoreError(Exception):
    def __init__(self, status: int, detail: str):
        self.status = status
        self.detail = detail
        super().__init__(f"HTTP {status}: {detail}")


# ---------------------------------------------------------------------------
# Decoding program failures
# ---------------------------------------------------------------------------

_ERROR_NUMBER = re.compile(r"Error Number: (\d+)")
_ERROR_CODE_NAME = re.compile(r"Error Code: (\w+)")
_CUSTOM_HEX = re.compile(r"custom program error: 0x([0-9a-fA-F]+)")


def _code_from_int(n: int) -> Optional[ChainErrorCode]:
    try:
        return ChainErrorCode(n)
    except ValueError:
        return None


def _code_from_err(err) -> Optional[ChainErrorCode]:
    # {"InstructionError": [2, {"Custom": 6004}]}
    if isinstance(err, dict):
        ix_err = err.get("InstructionError")
        if isinstance(ix_err, list) and len(ix_err) == 2:
            detail = ix_err[1]
            if isinstance(detail, dict) and "Custom" in detail:
                return _code_from_int(int(detail["Custom"]))
    return None


def decode_chain_error(logs: list[str] | None, err=None) -> Optional[ChainErrorCode]:
    """
    Find the program error code behind a failed transaction.

    Tries, in order: the structured transaction error, Anchor's
    "Error Number" log line, its "Error Code" name, the runtime's
    "custom program error: 0x.." line, and finally the known message
    strings. Returns None if none of them match.
    """
    code = _code_from_err(err)
    if code is not None:
        return code

    text = "\n".join(logs or [])
    if isinstance(err, str):
        text = text + "\n" + err

    m = _ERROR_NUMBER.search(text)
    if m:
        code = _code_from_int(int(m.group(1)))
        if code is not None:
            return code
    m = _ERROR_CODE_NAME.search(text)
    if m:
        code = ChainErrorCode.from_anchor_name(m.group(1))
        if code is not None:
            return code
    m = _CUSTOM_HEX.search(text)
    if m:
        code = _code_from_int(int(m.group(1), 16))
        if code is not None:
            return code

    lowered = text.lower()
    # Longest first so "insufficient vault balance" wins over shorter overlaps.
    for c in sorted(ChainErrorCode, key=lambda c: -len(c.message)):
        if c.message.lower() in lowered:
            return c
    return None


def parse_chain_error(logs: list[str] | None, err=None,
                      tx_signature: str | None = None) -> ChainExecutionError:
    code = decode_chain_error(logs, err)
    message = code.message if code is not None else f"transaction failed: {err}"
    return ChainExecutionError(code, message, logs=logs,
                               tx_signature=tx_signature, raw_error=err)
