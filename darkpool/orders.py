"""
Signed limit orders.

An order is created and signed client-side, submitted to the order store
as {order, signature}, and executed at most once by a keeper. The bytes
that get signed are the canonical encoding, fixed-width fields in
declaration order, integers little-endian:

    offset  size  field
    0       32    market
    32      32    user
    64      1     action          1 Buy, 2 Sell
    65      1     side            1 Yes, 2 No
    66      8     shares_e6       i64
    74      8     limit_price_e6  i64
    82      8     max_cost_e6     i64 (Buy only)
    90      8     min_proceeds_e6 i64 (Sell only)
    98      8     expiry_ts       i64, unix seconds
    106     8     nonce           u64
    114     2     keeper_fee_bps  u16
    116     2     min_fill_bps    u16
    ---
    118 bytes

Signatures are detached Ed25519, 64 bytes, carried hex-encoded on the wire.
"""

import hashlib
import secrets
import struct
import time
from dataclasses import dataclass, replace

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey, Ed25519PublicKey,
)
from solders.pubkey import Pubkey

from darkpool.models import Action, Side, MAX_BPS


ORDER_LEN = 118
SIGNATURE_LEN = 64
PUBKEY_LEN = 32

# No-limit sentinel for max_cost_e6 used by wallets that do not cap cost.
NO_COST_LIMIT = 2 ** 53 - 1

_INTS = struct.Struct("<BBqqqqqQHH")


@dataclass(frozen=True)
class LimitOrder:
    market: Pubkey
    user: Pubkey
    action: Action
    side: Side
    shares_e6: int
    limit_price_e6: int
    max_cost_e6: int = 0
    min_proceeds_e6: int = 0
    expiry_ts: int = 0
    nonce: int = 0
    keeper_fee_bps: int = 0
    min_fill_bps: int = 0

    def __post_init__(self):
        object.__setattr__(self, "action", Action(self.action))
        object.__setattr__(self, "side", Side(self.side))
        if not 0 <= self.keeper_fee_bps <= MAX_BPS:
            raise ValueError(f"keeper_fee_bps out of range: {self.keeper_fee_bps}")
        if not 0 <= self.min_fill_bps <= MAX_BPS:
            raise ValueError(f"min_fill_bps out of range: {self.min_fill_bps}")
        if self.nonce < 0:
            raise ValueError(f"nonce must be unsigned, got {self.nonce}")

    @property
    def min_fill_shares(self) -> int:
        return self.shares_e6 * self.min_fill_bps // MAX_BPS

    @property
    def allows_partial(self) -> bool:
        return self.min_fill_bps < MAX_BPS

    def is_expired(self, now: int | None = None) -> bool:
        now = int(time.time()) if now is None else now
        return self.expiry_ts <= now

    def with_nonce(self, nonce: int) -> "LimitOrder":
        return replace(self, nonce=nonce)

    # ------------------------------------------------------------------
    # Wire form (order store JSON)
    # ------------------------------------------------------------------

    def to_wire(self) -> dict:
        return {
            "market": str(self.market),
            "user": str(self.user),
            "action": int(self.action),
            "side": int(self.side),
            "shares_e6": self.shares_e6,
            "limit_price_e6": self.limit_price_e6,
            "max_cost_e6": self.max_cost_e6,
            "min_proceeds_e6": self.min_proceeds_e6,
            "expiry_ts": self.expiry_ts,
            "nonce": self.nonce,
            "keeper_fee_bps": self.keeper_fee_bps,
            "min_fill_bps": self.min_fill_bps,
        }

    @staticmethod
    def from_wire(d: dict) -> "LimitOrder":
        return LimitOrder(
            market=Pubkey.from_string(d["market"]),
            user=Pubkey.from_string(d["user"]),
            action=Action(int(d["action"])),
            side=Side(int(d["side"])),
            shares_e6=int(d["shares_e6"]),
            limit_price_e6=int(d["limit_price_e6"]),
            max_cost_e6=int(d.get("max_cost_e6", 0)),
            min_proceeds_e6=int(d.get("min_proceeds_e6", 0)),
            expiry_ts=int(d["expiry_ts"]),
            nonce=int(d["nonce"]),
            keeper_fee_bps=int(d.get("keeper_fee_bps", 0)),
            min_fill_bps=int(d.get("min_fill_bps", 0)),
        )


# ---------------------------------------------------------------------------
# Canonical encoding
# ---------------------------------------------------------------------------

def encode_order(order: LimitOrder) -> bytes:
    body = _INTS.pack(
        int(order.action), int(order.side),
        order.shares_e6, order.limit_price_e6,
        order.max_cost_e6, order.min_proceeds_e6,
        order.expiry_ts, order.nonce,
        order.keeper_fee_bps, order.min_fill_bps,
    )
    return bytes(order.market) + bytes(order.user) + body


def decode_order(data: bytes) -> LimitOrder:
    if len(data) != ORDER_LEN:
        raise ValueError(f"order encoding must be {ORDER_LEN} bytes, got {len(data)}")
    (action, side, shares, limit, max_cost, min_proceeds,
     expiry, nonce, keeper_fee, min_fill) = _INTS.unpack_from(data, 64)
    return LimitOrder(
        market=Pubkey.from_bytes(data[:32]),
        user=Pubkey.from_bytes(data[32:64]),
        action=Action(action),
        side=Side(side),
        shares_e6=shares,
        limit_price_e6=limit,
        max_cost_e6=max_cost,
        min_proceeds_e6=min_proceeds,
        expiry_ts=expiry,
        nonce=nonce,
        keeper_fee_bps=keeper_fee,
        min_fill_bps=min_fill,
    )


def order_hash(order: LimitOrder) -> str:
    """sha256 of the canonical encoding, hex. The store's idempotency key."""
    return hashlib.sha256(encode_order(order)).hexdigest()


def new_nonce() -> int:
    """Random u64 nonce, time-prefixed so nonces from one wallet rarely collide."""
    return ((int(time.time() * 1000) & 0xFFFFFFFF) << 32) | secrets.randbits(32)


# ---------------------------------------------------------------------------
# Signing
# ---------------------------------------------------------------------------

def signing_key_from_secret(secret: bytes) -> Ed25519PrivateKey:
    """
    Accept a 32-byte seed or a 64-byte seed||pubkey wallet secret.
    """
    if len(secret) == 64:
        secret = secret[:32]
    if len(secret) != 32:
        raise ValueError(f"secret key must be 32 or 64 bytes, got {len(secret)}")
    return Ed25519PrivateKey.from_private_bytes(secret)


def public_key_of(key: Ed25519PrivateKey) -> Pubkey:
    return Pubkey.from_bytes(key.public_key().public_bytes_raw())


def sign_order(order: LimitOrder, key: Ed25519PrivateKey) -> bytes:
    if public_key_of(key) != order.user:
        raise ValueError("signing key does not belong to order.user")
    return key.sign(encode_order(order))


def verify_order_signature(order: LimitOrder, signature: bytes) -> bool:
    """True iff `signature` is order.user's signature over the encoding."""
    if len(signature) != SIGNATURE_LEN:
        return False
    pub = Ed25519PublicKey.from_public_bytes(bytes(order.user))
    try:
        pub.verify(signature, encode_order(order))
    except InvalidSignature:
        return False
    return True


def signature_to_hex(signature: bytes) -> str:
    return signature.hex()


def signature_from_hex(text: str) -> bytes:
    sig = bytes.fromhex(text)
    if len(sig) != SIGNATURE_LEN:
        raise ValueError(f"signature must be {SIGNATURE_LEN} bytes, got {len(sig)}")
    return sig


# ---------------------------------------------------------------------------
# Submission checks
# ---------------------------------------------------------------------------

def check_submittable(order: LimitOrder, signature_hex: str,
                      now: int | None = None) -> None:
    """
    The checks the order store applies on submit, run before sending.
    Raises ValueError with the first problem found.
    """
    now = int(time.time()) if now is None else now
    if order.shares_e6 <= 0:
        raise ValueError("shares_e6 must be positive")
    if order.limit_price_e6 <= 0:
        raise ValueError("limit_price_e6 must be positive")
    if order.expiry_ts <= now:
        raise ValueError("order already expired")
    if len(signature_hex) != SIGNATURE_LEN * 2:
        raise ValueError(f"signature must be {SIGNATURE_LEN * 2} hex chars")
    try:
        bytes.fromhex(signature_hex)
    except ValueError:
        raise ValueError("signature is not hex") from None
    if not verify_order_signature(order, bytes.fromhex(signature_hex)):
        raise ValueError("signature does not verify against order.user")
