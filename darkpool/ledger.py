"""Ledger JSON-RPC client: account reads, transaction submission, logs."""

from __future__ import annotations

import base64
import itertools
import json
import logging
import time
from typing import Callable, Sequence

import httpx
from solders.compute_budget import set_compute_unit_limit
from solders.hash import Hash
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.transaction import Transaction

from darkpool.codec import (
    MarketAccounts, POSITION_DISCRIMINATOR, decode_amm, decode_position,
)
from darkpool.config import HTTP_TIMEOUT
from darkpool.errors import LedgerError, parse_chain_error
from darkpool.models import AmmState, Position

log = logging.getLogger(__name__)

COMMITMENT = "confirmed"


def load_keypair(path: str) -> Keypair:
    """Wallet file: JSON array of the 64 secret key bytes."""
    with open(path) as f:
        raw = json.load(f)
    return Keypair.from_bytes(bytes(raw))


class Ledger:
    """
    Blocking client over one RPC endpoint.

    Reads and submission fail fast. Transaction lookup after submission
    retries with exponential backoff because confirmation and log
    availability lag behind each other.
    """
    INITIAL_BACKOFF = 0.2
    MAX_BACKOFF = 0.8
    LOG_ATTEMPTS = 20
    CONFIRM_TIMEOUT = 30.0

    def __init__(self, rpc_url: str, timeout: float = HTTP_TIMEOUT,
                 http: httpx.Client | None = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.rpc_url = rpc_url
        self._http = http or httpx.Client(timeout=timeout)
        self._sleep = sleep
        self._ids = itertools.count(1)

    def close(self) -> None:
        self._http.close()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _rpc(self, method: str, params: list):
        payload = {"jsonrpc": "2.0", "id": next(self._ids),
                   "method": method, "params": params}
        try:
            resp = self._http.post(self.rpc_url, json=payload)
        except httpx.TimeoutException as e:
            raise LedgerError(f"{method}: request timed out") from e
        except httpx.TransportError as e:
            raise LedgerError(f"{method}: cannot reach {self.rpc_url}: {e}") from e

        if resp.status_code >= 400:
            raise LedgerError(f"{method}: HTTP {resp.status_code}: {resp.text}",
                              code=resp.status_code)
        body = resp.json()
        err = body.get("error")
        if err is not None:
            data = err.get("data")
            # Preflight simulation failures carry the program logs.
            if method == "sendTransaction" and isinstance(data, dict) and (
                    data.get("logs") or data.get("err")):
                raise parse_chain_error(data.get("logs"), data.get("err"))
            raise LedgerError(f"{method}: {err.get('message', err)}",
                              code=err.get("code"))
        return body.get("result")

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def get_account_data(self, pubkey: Pubkey) -> bytes | None:
        result = self._rpc("getAccountInfo", [
            str(pubkey), {"encoding": "base64", "commitment": COMMITMENT},
        ])
        value = (result or {}).get("value")
        if value is None:
            return None
        return base64.b64decode(value["data"][0])

    def get_balance(self, pubkey: Pubkey) -> int:
        result = self._rpc("getBalance", [str(pubkey), {"commitment": COMMITMENT}])
        return int(result["value"])

    def get_amm_state(self, market: MarketAccounts) -> AmmState:
        data = self.get_account_data(market.amm)
        if data is None:
            raise LedgerError(f"market account {market.amm} not found")
        return decode_amm(data)

    def get_position(self, market: MarketAccounts, user: Pubkey) -> Position | None:
        address = market.position(user)
        data = self.get_account_data(address)
        if data is None:
            return None
        return decode_position(data, address=address)

    def list_positions(self, market: MarketAccounts) -> list[Position]:
        """
        Every Position account of this market.

        Position accounts of earlier markets live under the same program;
        an account only counts if it sits at the PDA derived from this
        market and its recorded owner.
        """
        disc = base64.b64encode(POSITION_DISCRIMINATOR).decode()
        result = self._rpc("getProgramAccounts", [
            str(market.program_id),
            {"encoding": "base64", "commitment": COMMITMENT,
             "filters": [{"memcmp": {"offset": 0, "bytes": disc,
                                     "encoding": "base64"}}]},
        ])
        if isinstance(result, dict):
            result = result.get("value", [])
        positions = []
        for entry in result or []:
            address = Pubkey.from_string(entry["pubkey"])
            data = base64.b64decode(entry["account"]["data"][0])
            try:
                pos = decode_position(data, address=address)
            except ValueError as e:
                log.warning("skipping undecodable position %s: %s", address, e)
                continue
            if market.position(pos.owner) != address:
                continue
            positions.append(pos)
        return positions

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    def latest_blockhash(self) -> Hash:
        result = self._rpc("getLatestBlockhash", [{"commitment": COMMITMENT}])
        return Hash.from_string(result["value"]["blockhash"])

    def send_instructions(self, instructions: Sequence[Instruction], signer: Keypair,
                          compute_units: int | None = None) -> str:
        """Sign with `signer` as fee payer and submit. Returns the signature."""
        ixs = list(instructions)
        if compute_units:
            ixs.insert(0, set_compute_unit_limit(compute_units))
        blockhash = self.latest_blockhash()
        message = Message.new_with_blockhash(ixs, signer.pubkey(), blockhash)
        tx = Transaction([signer], message, blockhash)
        raw = base64.b64encode(bytes(tx)).decode()
        signature = self._rpc("sendTransaction", [
            raw, {"encoding": "base64", "preflightCommitment": COMMITMENT},
        ])
        log.debug("submitted %s", signature)
        return signature

    def confirm(self, signature: str, timeout: float | None = None) -> None:
        """
        Block until the transaction is confirmed.

        Raises ChainExecutionError (with logs) if it landed and failed,
        LedgerError if it did not confirm in time.
        """
        timeout = self.CONFIRM_TIMEOUT if timeout is None else timeout
        deadline = time.monotonic() + timeout
        delay = self.INITIAL_BACKOFF
        while True:
            result = self._rpc("getSignatureStatuses", [
                [signature], {"searchTransactionHistory": True},
            ])
            status = (result or {}).get("value", [None])[0]
            if status is not None:
                if status.get("err"):
                    logs = self._logs_or_empty(signature)
                    raise parse_chain_error(logs, status["err"], tx_signature=signature)
                if status.get("confirmationStatus") in ("confirmed", "finalized"):
                    return
            if time.monotonic() >= deadline:
                raise LedgerError(f"transaction {signature} not confirmed "
                                  f"after {timeout:.0f}s")
            self._sleep(delay)
            delay = min(delay * 2, self.MAX_BACKOFF)

    def fetch_transaction(self, signature: str) -> dict:
        """
        getTransaction with bounded retry.

        Starts at 200ms, doubles to an 800ms cap, gives up after 20 tries.
        Both "not yet available" (null result) and transport errors retry.
        """
        delay = self.INITIAL_BACKOFF
        last_error: Exception | None = None
        for attempt in range(1, self.LOG_ATTEMPTS + 1):
            try:
                result = self._rpc("getTransaction", [
                    signature,
                    {"encoding": "json", "commitment": COMMITMENT,
                     "maxSupportedTransactionVersion": 0},
                ])
                if result is not None:
                    return result
            except LedgerError as e:
                last_error = e
                log.debug("getTransaction %s attempt %d failed: %s",
                          signature, attempt, e)
            if attempt < self.LOG_ATTEMPTS:
                self._sleep(delay)
                delay = min(delay * 2, self.MAX_BACKOFF)
        raise LedgerError(f"transaction {signature} unavailable after "
                          f"{self.LOG_ATTEMPTS} attempts: {last_error}")

    def fetch_logs(self, signature: str) -> list[str]:
        tx = self.fetch_transaction(signature)
        return list((tx.get("meta") or {}).get("logMessages") or [])

    def _logs_or_empty(self, signature: str) -> list[str]:
        try:
            return self.fetch_logs(signature)
        except LedgerError as e:
            log.warning("no logs for failed transaction %s: %s", signature, e)
            return []

    def submit_and_confirm(self, instructions: Sequence[Instruction], signer: Keypair,
                           compute_units: int | None = None) -> tuple[str, list[str]]:
        """send → confirm → logs. Returns (signature, log lines)."""
        signature = self.send_instructions(instructions, signer, compute_units)
        self.confirm(signature)
        return signature, self._logs_or_empty(signature)
