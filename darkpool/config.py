"""
Runtime configuration. Environment variables, read once at import.

Every value can also be overridden per invocation from the CLI; the
dataclasses below are what the keeper and settlement engine receive.
"""

import os
from dataclasses import dataclass


def _env(*names: str, default: str) -> str:
    for name in names:
        value = os.environ.get(name)
        if value:
            return value
    return default


RPC_URL = _env("DARKPOOL_RPC_URL", "ANCHOR_PROVIDER_URL",
               default="http://127.0.0.1:8899")
KEEPER_WALLET = _env("DARKPOOL_KEEPER_WALLET", "KEEPER_WALLET", "ANCHOR_WALLET",
                     default=os.path.expanduser("~/.config/solana/id.json"))
ORDER_BOOK_API = _env("DARKPOOL_ORDER_BOOK_API", "ORDER_BOOK_API",
                      default="http://localhost:3000")
PROGRAM_ID = _env("DARKPOOL_PROGRAM_ID",
                  default="EeQNdiGDUVj4jzPMBkx59J45p1y93JpKByTWifWtuxjF")

POLL_INTERVAL = float(_env("DARKPOOL_POLL_INTERVAL", default="2.0"))
PENDING_LIMIT = int(_env("DARKPOOL_PENDING_LIMIT", default="100"))
HTTP_TIMEOUT = float(_env("DARKPOOL_HTTP_TIMEOUT", default="15.0"))

# Keeper sizing. The program accepts buys up to 0.2% over the limit
# (sells 0.2% under); the keeper asks for a further 0.5% margin.
ONCHAIN_TOLERANCE_BPS = int(_env("DARKPOOL_ONCHAIN_TOLERANCE_BPS", default="20"))
SAFETY_BUFFER_BPS = int(_env("DARKPOOL_SAFETY_BUFFER_BPS", default="50"))

FULL_FILL_CU = int(_env("DARKPOOL_FULL_FILL_CU", default="200000"))
PARTIAL_FILL_CU = int(_env("DARKPOOL_PARTIAL_FILL_CU", default="600000"))

CLAIM_TTL = float(_env("DARKPOOL_CLAIM_TTL", default="60"))
CLAIMS_PATH = _env("DARKPOOL_CLAIMS_PATH", default="./darkpool_claims.json")


@dataclass
class KeeperConfig:
    order_book_api: str = ORDER_BOOK_API
    rpc_url: str = RPC_URL
    program_id: str = PROGRAM_ID
    poll_interval: float = POLL_INTERVAL
    pending_limit: int = PENDING_LIMIT
    timeout: float = HTTP_TIMEOUT
    onchain_tolerance_bps: int = ONCHAIN_TOLERANCE_BPS
    safety_buffer_bps: int = SAFETY_BUFFER_BPS
    full_fill_cu: int = FULL_FILL_CU
    partial_fill_cu: int = PARTIAL_FILL_CU
    claim_ttl: float = CLAIM_TTL
    claims_path: str | None = CLAIMS_PATH

    def __post_init__(self):
        if self.safety_buffer_bps < 0 or self.onchain_tolerance_bps < 0:
            raise ValueError("tolerance and buffer must be non-negative bps")
        if self.poll_interval <= 0:
            raise ValueError(f"poll interval must be positive, got {self.poll_interval}")


@dataclass
class SettlementConfig:
    rpc_url: str = RPC_URL
    program_id: str = PROGRAM_ID
    redeem_cu: int = FULL_FILL_CU
    # pps may differ from the recomputed value by this many units.
    pps_tolerance: int = 0
