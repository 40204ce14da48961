"""Byte-layout tests for accounts, instructions and events."""

import hashlib
import struct

import pytest
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from solders.pubkey import Pubkey

from darkpool.codec import (
    AMM_ACCOUNT_LEN, AMM_DISCRIMINATOR, ED25519_PROGRAM_ID, POSITION_DISCRIMINATOR,
    SELF_INSTRUCTION, SYSTEM_PROGRAM_ID, LimitOrderExecuted, MarketAccounts,
    admin_redeem_instruction, decode_amm, decode_ed25519_data,
    decode_limit_order_executed, decode_position, e6_to_lamports,
    ed25519_instruction, encode_amm, encode_ed25519_data,
    encode_limit_order_executed, encode_position, event_discriminator,
    execute_limit_order_instruction, instruction_discriminator,
    lamports_to_e6, settle_market_instruction,
)
from darkpool.models import E6, Action, AmmState, MarketStatus, Position, Side, Winner
from darkpool.orders import LimitOrder, encode_order, public_key_of, sign_order


MARKET = MarketAccounts.derive()
KEEPER = Pubkey.from_bytes(bytes([3] * 32))
FEE_DEST = Pubkey.from_bytes(bytes([4] * 32))


def signed_order():
    key = Ed25519PrivateKey.from_private_bytes(bytes([5] * 32))
    order = LimitOrder(market=MARKET.amm, user=public_key_of(key),
                       action=Action.BUY, side=Side.NO, shares_e6=E6,
                       limit_price_e6=600_000, expiry_ts=1_700_000_300, nonce=99)
    return order, sign_order(order, key)


# ---------------------------------------------------------------------------
# Discriminators
# ---------------------------------------------------------------------------

class TestDiscriminators:

    def test_anchor_prefixes(self):
        assert instruction_discriminator("execute_limit_order") == \
            hashlib.sha256(b"global:execute_limit_order").digest()[:8]
        assert AMM_DISCRIMINATOR == hashlib.sha256(b"account:Amm").digest()[:8]
        assert POSITION_DISCRIMINATOR == hashlib.sha256(b"account:Position").digest()[:8]
        assert event_discriminator("LimitOrderExecuted") == \
            hashlib.sha256(b"event:LimitOrderExecuted").digest()[:8]


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------

class TestAmmAccount:

    def test_layout_length(self):
        """8 disc + 62 head + 32 fee_dest + 49 tail."""
        assert AMM_ACCOUNT_LEN == 151
        assert len(encode_amm(AmmState(q_yes=0, q_no=0, b=E6))) == 151

    def test_decode_fields(self):
        state = AmmState(q_yes=-3 * E6, q_no=12 * E6, b=500 * E6, fee_bps=25,
                         vault=800 * E6, fees=7, status=MarketStatus.SETTLED,
                         winner=Winner.NO, w_total=12 * E6, pps=666_666,
                         fee_dest=FEE_DEST, bump=254, vault_bump=253,
                         market_end_time=1_700_000_999)
        decoded = decode_amm(encode_amm(state))
        assert decoded == state

    def test_negative_inventory_is_signed(self):
        """q_yes sits at offset 8+12 as i64."""
        data = bytearray(encode_amm(AmmState(q_yes=0, q_no=0, b=E6)))
        struct.pack_into("<q", data, 8 + 12, -1)
        assert decode_amm(bytes(data)).q_yes == -1

    def test_stopped_without_winner(self):
        state = decode_amm(encode_amm(AmmState(q_yes=0, q_no=0, b=E6,
                                               status=MarketStatus.STOPPED)))
        assert state.status == MarketStatus.STOPPED

    def test_wrong_discriminator(self):
        data = b"\x00" * 8 + encode_amm(AmmState(q_yes=0, q_no=0, b=E6))[8:]
        with pytest.raises(ValueError, match="not a Amm"):
            decode_amm(data)

    def test_truncated(self):
        with pytest.raises(ValueError, match="too short"):
            decode_amm(encode_amm(AmmState(q_yes=0, q_no=0, b=E6))[:100])


class TestPositionAccount:

    def test_full_layout(self):
        pos = Position(owner=KEEPER, yes_shares=5, no_shares=-2,
                       master_wallet=FEE_DEST, vault_balance=1_000, vault_bump=250,
                       used_nonces=[1, 2, 2 ** 63])
        data = encode_position(pos)
        assert len(data) == 8 + 32 + 16 + 32 + 8 + 1 + 4 + 3 * 8
        assert decode_position(data) == pos

    def test_legacy_layout(self):
        """Accounts that end after the share counts still decode."""
        data = POSITION_DISCRIMINATOR + bytes(KEEPER) + struct.pack("<qq", 7, 8)
        pos = decode_position(data)
        assert (pos.yes_shares, pos.no_shares, pos.used_nonces) == (7, 8, [])

    def test_truncated_nonce_list(self):
        data = encode_position(Position(owner=KEEPER, used_nonces=[1, 2]))
        with pytest.raises(ValueError, match="truncated"):
            decode_position(data[:-4])


# ---------------------------------------------------------------------------
# Instructions
# ---------------------------------------------------------------------------

class TestEd25519:

    def test_header_offsets(self):
        """Header 16 bytes, then pubkey, signature, message; all self-referencing."""
        data = encode_ed25519_data(b"\x01" * 32, b"\x02" * 64, b"msg")
        fields = struct.unpack_from("<BBHHHHHHH", data, 0)
        assert fields == (1, 0, 48, SELF_INSTRUCTION, 16, SELF_INSTRUCTION,
                          112, 3, SELF_INSTRUCTION)
        assert data[16:48] == b"\x01" * 32
        assert data[48:112] == b"\x02" * 64
        assert data[112:] == b"msg"
        assert decode_ed25519_data(data) == (b"\x01" * 32, b"\x02" * 64, b"msg")

    def test_instruction_carries_order_bytes(self):
        order, sig = signed_order()
        ix = ed25519_instruction(order, sig)
        assert ix.program_id == ED25519_PROGRAM_ID
        assert list(ix.accounts) == []
        pubkey, signature, message = decode_ed25519_data(bytes(ix.data))
        assert pubkey == bytes(order.user)
        assert signature == sig
        assert message == encode_order(order)

    def test_rejects_cross_instruction_reference(self):
        data = bytearray(encode_ed25519_data(b"\x01" * 32, b"\x02" * 64, b""))
        struct.pack_into("<H", data, 4, 0)
        with pytest.raises(ValueError):
            decode_ed25519_data(bytes(data))


class TestProgramInstructions:

    def test_execute_limit_order_data(self):
        """discriminator || order (118) || signature (64)."""
        order, sig = signed_order()
        ix = execute_limit_order_instruction(order, sig, KEEPER, MARKET, FEE_DEST)
        data = bytes(ix.data)
        assert len(data) == 8 + 118 + 64
        assert data[:8] == instruction_discriminator("execute_limit_order")
        assert data[8:126] == encode_order(order)
        assert data[126:] == sig

    def test_execute_limit_order_accounts(self):
        order, sig = signed_order()
        ix = execute_limit_order_instruction(order, sig, KEEPER, MARKET, FEE_DEST)
        keys = [m.pubkey for m in ix.accounts]
        assert keys[:6] == [MARKET.amm, MARKET.position(order.user), MARKET.vault,
                            order.user, KEEPER, SYSTEM_PROGRAM_ID]
        assert keys[6] == MARKET.user_vault(order.user)
        assert keys[7] == FEE_DEST
        signers = [m.pubkey for m in ix.accounts if m.is_signer]
        assert signers == [KEEPER]

    def test_admin_redeem_accounts(self):
        ix = admin_redeem_instruction(MARKET, FEE_DEST, KEEPER, FEE_DEST)
        keys = [m.pubkey for m in ix.accounts]
        assert keys[0] == MARKET.amm
        assert keys[3] == MARKET.position(KEEPER)
        assert keys[5] == MARKET.vault
        assert bytes(ix.data) == instruction_discriminator("admin_redeem")

    def test_settle_needs_a_winner(self):
        ix = settle_market_instruction(MARKET, Winner.YES)
        assert bytes(ix.data)[-1] == 1
        with pytest.raises(ValueError):
            settle_market_instruction(MARKET, Winner.NONE)


# ---------------------------------------------------------------------------
# Events and units
# ---------------------------------------------------------------------------

class TestEvents:

    def test_limit_order_executed(self):
        ev = LimitOrderExecuted(user=FEE_DEST, keeper=KEEPER, action=1, side=2,
                                shares_requested=E6, shares_executed=400_000,
                                limit_price=600_000, execution_price=581_234,
                                keeper_fee_bps=10, nonce=99)
        data = encode_limit_order_executed(ev)
        assert len(data) == 8 + 64 + 44
        assert decode_limit_order_executed(data) == ev

    def test_other_events_ignored(self):
        assert decode_limit_order_executed(event_discriminator("Other") + b"\x00" * 80) is None


class TestUnits:

    def test_lamports(self):
        assert e6_to_lamports(480_000 * E6) == 48_000_000_000_000
        assert lamports_to_e6(199) == 1
        assert e6_to_lamports(-5) == 0
