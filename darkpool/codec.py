"""
Byte layouts shared with the program.

One typed encode or decode function per structure. Anchor conventions:
every account starts with an 8-byte discriminator sha256("account:<Name>"),
every instruction with sha256("global:<name>"), both truncated to 8 bytes.
Fields follow in declaration order, little-endian, no padding.

Amm account (after the discriminator):

    bump u8 | decimals u8 | b i64 | fee_bps u16 | q_yes i64 | q_no i64 |
    fees i64 | vault_e6 i64 | status u8 | winner u8 | w_total_e6 i64 |
    pps_e6 i64 | fee_dest [32] | vault_sol_bump u8 | start_price_e6 i64 |
    start_ts i64 | settle_price_e6 i64 | settle_ts i64 |
    market_end_slot u64 | market_end_time i64

Position account:

    owner [32] | yes i64 | no i64 | master_wallet [32] | vault_balance i64 |
    vault_bump u8 | used_nonces Vec<u64> (u32 length, then items)

Ed25519 verification instruction data, one signature, self-contained:

    num_signatures u8 | padding u8 |
    sig_offset u16 | sig_ix u16 | pubkey_offset u16 | pubkey_ix u16 |
    msg_offset u16 | msg_len u16 | msg_ix u16 |
    pubkey [32] | signature [64] | message
"""

import hashlib
import struct
from dataclasses import dataclass

from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey

from darkpool.models import (
    AmmState, Position, MarketStatus, Winner,
)
from darkpool.orders import LimitOrder, encode_order, SIGNATURE_LEN, PUBKEY_LEN


PROGRAM_ID = Pubkey.from_string("EeQNdiGDUVj4jzPMBkx59J45p1y93JpKByTWifWtuxjF")
ED25519_PROGRAM_ID = Pubkey.from_string("Ed25519SigVerify111111111111111111111111111")
SYSTEM_PROGRAM_ID = Pubkey.from_string("11111111111111111111111111111111")

AMM_SEED = b"amm_btc_v6"
VAULT_SOL_SEED = b"vault_sol"
POSITION_SEED = b"pos"
USER_VAULT_SEED = b"user_vault"

# Collateral is held as lamports; one e6 unit is 100 lamports.
LAMPORTS_PER_E6 = 100

DISCRIMINATOR_LEN = 8
SELF_INSTRUCTION = 0xFFFF
ED25519_HEADER_LEN = 16


# ---------------------------------------------------------------------------
# Discriminators
# ---------------------------------------------------------------------------

def instruction_discriminator(name: str) -> bytes:
    return hashlib.sha256(f"global:{name}".encode()).digest()[:DISCRIMINATOR_LEN]


def account_discriminator(name: str) -> bytes:
    return hashlib.sha256(f"account:{name}".encode()).digest()[:DISCRIMINATOR_LEN]


AMM_DISCRIMINATOR = account_discriminator("Amm")
POSITION_DISCRIMINATOR = account_discriminator("Position")


def _check_discriminator(data: bytes, expected: bytes, kind: str) -> None:
    if len(data) < DISCRIMINATOR_LEN:
        raise ValueError(f"{kind} account too short: {len(data)} bytes")
    if data[:DISCRIMINATOR_LEN] != expected:
        raise ValueError(f"not a {kind} account (discriminator "
                         f"{data[:DISCRIMINATOR_LEN].hex()})")


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------

_AMM_HEAD = struct.Struct("<BBqHqqqqBBqq")
_AMM_TAIL = struct.Struct("<BqqqqQq")
AMM_ACCOUNT_LEN = DISCRIMINATOR_LEN + _AMM_HEAD.size + PUBKEY_LEN + _AMM_TAIL.size

_POS_SHARES = struct.Struct("<qq")
_POS_VAULT = struct.Struct("<qBI")


def decode_amm(data: bytes) -> AmmState:
    _check_discriminator(data, AMM_DISCRIMINATOR, "Amm")
    if len(data) < AMM_ACCOUNT_LEN:
        raise ValueError(f"Amm account too short: {len(data)} < {AMM_ACCOUNT_LEN}")
    off = DISCRIMINATOR_LEN
    (bump, decimals, b, fee_bps, q_yes, q_no, fees, vault,
     status, winner, w_total, pps) = _AMM_HEAD.unpack_from(data, off)
    off += _AMM_HEAD.size
    fee_dest = Pubkey.from_bytes(data[off:off + PUBKEY_LEN])
    off += PUBKEY_LEN
    (vault_bump, start_price, start_ts, settle_price, settle_ts,
     end_slot, end_time) = _AMM_TAIL.unpack_from(data, off)
    return AmmState(
        q_yes=q_yes, q_no=q_no, b=b, fee_bps=fee_bps,
        vault=vault, fees=fees,
        status=MarketStatus.from_raw(status, winner),
        winner=Winner(winner),
        w_total=w_total, pps=pps, decimals=decimals,
        fee_dest=fee_dest, bump=bump, vault_bump=vault_bump,
        start_price=start_price, start_ts=start_ts,
        settle_price=settle_price, settle_ts=settle_ts,
        market_end_slot=end_slot, market_end_time=end_time,
    )


def encode_amm(state: AmmState) -> bytes:
    """Inverse of decode_amm. For fixtures and local simulation."""
    raw_status = {
        MarketStatus.PREMARKET: 0, MarketStatus.OPEN: 1,
        MarketStatus.STOPPED: 2, MarketStatus.SETTLED: 2,
    }[state.status]
    fee_dest = state.fee_dest or Pubkey.default()
    return (
        AMM_DISCRIMINATOR
        + _AMM_HEAD.pack(state.bump, state.decimals, state.b, state.fee_bps,
                         state.q_yes, state.q_no, state.fees, state.vault,
                         raw_status, int(state.winner), state.w_total, state.pps)
        + bytes(fee_dest)
        + _AMM_TAIL.pack(state.vault_bump, state.start_price, state.start_ts,
                         state.settle_price, state.settle_ts,
                         state.market_end_slot, state.market_end_time)
    )


def decode_position(data: bytes, address: Pubkey | None = None) -> Position:
    _check_discriminator(data, POSITION_DISCRIMINATOR, "Position")
    off = DISCRIMINATOR_LEN
    owner = Pubkey.from_bytes(data[off:off + PUBKEY_LEN])
    off += PUBKEY_LEN
    yes, no = _POS_SHARES.unpack_from(data, off)
    off += _POS_SHARES.size
    # Positions created before the session-wallet upgrade end here.
    if len(data) < off + PUBKEY_LEN + _POS_VAULT.size:
        return Position(owner=owner, yes_shares=yes, no_shares=no, address=address)
    master = Pubkey.from_bytes(data[off:off + PUBKEY_LEN])
    off += PUBKEY_LEN
    vault_balance, vault_bump, n = _POS_VAULT.unpack_from(data, off)
    off += _POS_VAULT.size
    if len(data) < off + 8 * n:
        raise ValueError(f"Position nonce list truncated: {n} entries declared")
    nonces = list(struct.unpack_from(f"<{n}Q", data, off))
    return Position(owner=owner, yes_shares=yes, no_shares=no,
                    master_wallet=master, vault_balance=vault_balance,
                    vault_bump=vault_bump, used_nonces=nonces, address=address)


def encode_position(pos: Position) -> bytes:
    """Inverse of decode_position (full layout)."""
    nonces = pos.used_nonces
    return (
        POSITION_DISCRIMINATOR
        + bytes(pos.owner)
        + _POS_SHARES.pack(pos.yes_shares, pos.no_shares)
        + bytes(pos.master_wallet or Pubkey.default())
        + _POS_VAULT.pack(pos.vault_balance, pos.vault_bump, len(nonces))
        + struct.pack(f"<{len(nonces)}Q", *nonces)
    )


# ---------------------------------------------------------------------------
# Addresses
# ---------------------------------------------------------------------------

def amm_address(program_id: Pubkey = PROGRAM_ID) -> Pubkey:
    return Pubkey.find_program_address([AMM_SEED], program_id)[0]


def vault_address(amm: Pubkey, program_id: Pubkey = PROGRAM_ID) -> Pubkey:
    return Pubkey.find_program_address([VAULT_SOL_SEED, bytes(amm)], program_id)[0]


def position_address(amm: Pubkey, user: Pubkey,
                     program_id: Pubkey = PROGRAM_ID) -> Pubkey:
    return Pubkey.find_program_address(
        [POSITION_SEED, bytes(amm), bytes(user)], program_id)[0]


def user_vault_address(position: Pubkey, program_id: Pubkey = PROGRAM_ID) -> Pubkey:
    return Pubkey.find_program_address([USER_VAULT_SEED, bytes(position)], program_id)[0]


@dataclass(frozen=True)
class MarketAccounts:
    """Every address a keeper or settler needs for one market."""
    program_id: Pubkey
    amm: Pubkey
    vault: Pubkey

    @staticmethod
    def derive(program_id: Pubkey = PROGRAM_ID) -> "MarketAccounts":
        amm = amm_address(program_id)
        return MarketAccounts(program_id=program_id, amm=amm,
                              vault=vault_address(amm, program_id))

    def position(self, user: Pubkey) -> Pubkey:
        return position_address(self.amm, user, self.program_id)

    def user_vault(self, user: Pubkey) -> Pubkey:
        return user_vault_address(self.position(user), self.program_id)


# ---------------------------------------------------------------------------
# Signature verification instruction
# ---------------------------------------------------------------------------

_ED25519_HEADER = struct.Struct("<BBHHHHHHH")


def encode_ed25519_data(pubkey: bytes, signature: bytes, message: bytes) -> bytes:
    if len(pubkey) != PUBKEY_LEN:
        raise ValueError(f"public key must be {PUBKEY_LEN} bytes, got {len(pubkey)}")
    if len(signature) != SIGNATURE_LEN:
        raise ValueError(f"signature must be {SIGNATURE_LEN} bytes, got {len(signature)}")
    pubkey_offset = ED25519_HEADER_LEN
    sig_offset = pubkey_offset + PUBKEY_LEN
    msg_offset = sig_offset + SIGNATURE_LEN
    header = _ED25519_HEADER.pack(
        1, 0,
        sig_offset, SELF_INSTRUCTION,
        pubkey_offset, SELF_INSTRUCTION,
        msg_offset, len(message), SELF_INSTRUCTION,
    )
    return header + pubkey + signature + message


def decode_ed25519_data(data: bytes) -> tuple[bytes, bytes, bytes]:
    """(pubkey, signature, message) from a single-signature instruction."""
    if len(data) < ED25519_HEADER_LEN:
        raise ValueError("Ed25519 instruction data too short")
    (count, _pad, sig_off, sig_ix, pk_off, pk_ix,
     msg_off, msg_len, msg_ix) = _ED25519_HEADER.unpack_from(data, 0)
    if count != 1:
        raise ValueError(f"expected one signature, got {count}")
    if not sig_ix == pk_ix == msg_ix == SELF_INSTRUCTION:
        raise ValueError("Ed25519 instruction references other instructions")
    return (data[pk_off:pk_off + PUBKEY_LEN],
            data[sig_off:sig_off + SIGNATURE_LEN],
            data[msg_off:msg_off + msg_len])


def ed25519_instruction(order: LimitOrder, signature: bytes) -> Instruction:
    """Bare verification instruction: no account references at all."""
    data = encode_ed25519_data(bytes(order.user), signature, encode_order(order))
    return Instruction(ED25519_PROGRAM_ID, data, [])


# ---------------------------------------------------------------------------
# Program instructions
# ---------------------------------------------------------------------------

def encode_execute_limit_order(order: LimitOrder, signature: bytes) -> bytes:
    if len(signature) != SIGNATURE_LEN:
        raise ValueError(f"signature must be {SIGNATURE_LEN} bytes, got {len(signature)}")
    return instruction_discriminator("execute_limit_order") + encode_order(order) + signature


def execute_limit_order_instruction(order: LimitOrder, signature: bytes,
                                    keeper: Pubkey, market: MarketAccounts,
                                    fee_dest: Pubkey | None = None) -> Instruction:
    """
    Trade instruction for a signed order.

    Declared accounts: amm, position, vault, user, keeper (signer),
    system program. The user's collateral sub-account and the fee
    destination ride along as trailing writable accounts.
    """
    position = market.position(order.user)
    accounts = [
        AccountMeta(market.amm, is_signer=False, is_writable=True),
        AccountMeta(position, is_signer=False, is_writable=True),
        AccountMeta(market.vault, is_signer=False, is_writable=True),
        AccountMeta(order.user, is_signer=False, is_writable=True),
        AccountMeta(keeper, is_signer=True, is_writable=True),
        AccountMeta(SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
        AccountMeta(user_vault_address(position, market.program_id),
                    is_signer=False, is_writable=True),
    ]
    if fee_dest is not None:
        accounts.append(AccountMeta(fee_dest, is_signer=False, is_writable=True))
    return Instruction(market.program_id,
                       encode_execute_limit_order(order, signature), accounts)


def stop_market_instruction(market: MarketAccounts) -> Instruction:
    return Instruction(market.program_id, instruction_discriminator("stop_market"),
                       [AccountMeta(market.amm, is_signer=False, is_writable=True)])


def settle_market_instruction(market: MarketAccounts, winner: Winner) -> Instruction:
    if winner not in (Winner.YES, Winner.NO):
        raise ValueError(f"winner must be YES or NO, got {winner!r}")
    data = instruction_discriminator("settle_market") + struct.pack("<B", int(winner))
    return Instruction(market.program_id, data,
                       [AccountMeta(market.amm, is_signer=False, is_writable=True)])


def admin_redeem_instruction(market: MarketAccounts, admin: Pubkey,
                             user: Pubkey, fee_dest: Pubkey) -> Instruction:
    position = market.position(user)
    accounts = [
        AccountMeta(market.amm, is_signer=False, is_writable=True),
        AccountMeta(admin, is_signer=True, is_writable=True),
        AccountMeta(user, is_signer=False, is_writable=True),
        AccountMeta(position, is_signer=False, is_writable=True),
        AccountMeta(fee_dest, is_signer=False, is_writable=True),
        AccountMeta(market.vault, is_signer=False, is_writable=True),
        AccountMeta(user_vault_address(position, market.program_id),
                    is_signer=False, is_writable=True),
        AccountMeta(SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
    ]
    return Instruction(market.program_id, instruction_discriminator("admin_redeem"),
                       accounts)


def lamports_to_e6(lamports: int) -> int:
    return lamports // LAMPORTS_PER_E6


def e6_to_lamports(amount: int) -> int:
    return max(0, amount) * LAMPORTS_PER_E6


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------

def event_discriminator(name: str) -> bytes:
    return hashlib.sha256(f"event:{name}".encode()).digest()[:DISCRIMINATOR_LEN]


LIMIT_ORDER_EXECUTED = event_discriminator("LimitOrderExecuted")

_EXECUTED_BODY = struct.Struct("<BBqqqqHQ")


@dataclass(frozen=True)
class LimitOrderExecuted:
    user: Pubkey
    keeper: Pubkey
    action: int
    side: int
    shares_requested: int
    shares_executed: int
    limit_price: int
    execution_price: int
    keeper_fee_bps: int
    nonce: int


def encode_limit_order_executed(ev: LimitOrderExecuted) -> bytes:
    return (LIMIT_ORDER_EXECUTED + bytes(ev.user) + bytes(ev.keeper)
            + _EXECUTED_BODY.pack(ev.action, ev.side, ev.shares_requested,
                                  ev.shares_executed, ev.limit_price,
                                  ev.execution_price, ev.keeper_fee_bps, ev.nonce))


def decode_limit_order_executed(data: bytes) -> LimitOrderExecuted | None:
    """None if `data` is some other event."""
    if data[:DISCRIMINATOR_LEN] != LIMIT_ORDER_EXECUTED:
        return None
    off = DISCRIMINATOR_LEN
    if len(data) < off + 2 * PUBKEY_LEN + _EXECUTED_BODY.size:
        raise ValueError("LimitOrderExecuted event truncated")
    user = Pubkey.from_bytes(data[off:off + PUBKEY_LEN])
    keeper = Pubkey.from_bytes(data[off + PUBKEY_LEN:off + 2 * PUBKEY_LEN])
    fields = _EXECUTED_BODY.unpack_from(data, off + 2 * PUBKEY_LEN)
    return LimitOrderExecuted(user, keeper, *fields)
