"""
Chain access via web3.

Wraps the handful of RPC operations the keeper performs: fee and balance
reads, contract reads, dry-run calls, signed submission, and bounded
receipt waits. web3 exceptions are translated into the Deputy error
hierarchy at this boundary so callers never depend on web3 internals.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Protocol, TypeVar

import requests
from eth_account import Account
from eth_account.signers.local import LocalAccount
from web3 import Web3
from web3.exceptions import (
    ContractLogicError,
    ProviderConnectionError,
    TimeExhausted,
    Web3Exception,
    Web3RPCError,
)

from .abi import MASTER_AGENT_ABI
from .delegation import Delegation
from .errors import (
    ConfirmationTimeout,
    LedgerError,
    SimulationRejected,
    SubmissionError,
    TransportError,
)
from .units import normalize_address

logger = logging.getLogger(__name__)

T = TypeVar("T")

_TRANSPORT_ERRORS = (requests.RequestException, ProviderConnectionError, ConnectionError, TimeoutError)
# Raised unchanged by _rpc; callers give them their own meaning.
_PASSTHROUGH_ERRORS = (ContractLogicError, TimeExhausted)


class Network(Protocol):
    """Chain-level reads shared by the guard and discovery."""

    def gas_price(self) -> int: ...

    def get_balance(self, address: str) -> int: ...

    def block_number(self) -> int: ...


@dataclass
class Confirmation:
    """Terminal receipt data for a submitted action."""

    tx_hash: str
    success: bool
    block_number: int
    block_timestamp: int
    gas_used: int = 0
    effects: dict[str, int] = field(default_factory=dict)


class ChainClient:
    """web3 client bound to the keeper's single signing identity."""

    def __init__(
        self,
        rpc_url: str,
        account: Optional[LocalAccount] = None,
        request_timeout: float = 30.0,
        poll_latency: float = 2.0,
        web3: Optional[Web3] = None,
    ):
        self.rpc_url = rpc_url
        self.account = account
        self.poll_latency = poll_latency
        self.w3 = web3 or Web3(
            Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": request_timeout})
        )

    @classmethod
    def from_private_key(cls, rpc_url: str, private_key: str, **kwargs: Any) -> "ChainClient":
        return cls(rpc_url, account=Account.from_key(private_key), **kwargs)

    @property
    def address(self) -> Optional[str]:
        return self.account.address if self.account is not None else None

    def _rpc(self, label: str, call: Callable[[], T], passthrough: tuple = ()) -> T:
        """Run one remote call, turning connection failures and JSON-RPC
        error replies (rate limits, block-range caps, ...) into TransportError.
        """
        try:
            return call()
        except _TRANSPORT_ERRORS as e:
            raise TransportError(f"{label} failed: {type(e).__name__}: {e}") from e
        except _PASSTHROUGH_ERRORS + passthrough:
            raise
        except Web3Exception as e:
            raise TransportError(f"{label} failed: {type(e).__name__}: {e}") from e

    # ── Reads ──────────────────────────────────────────────────────

    def gas_price(self) -> int:
        return int(self._rpc("gas_price", lambda: self.w3.eth.gas_price))

    def get_balance(self, address: str) -> int:
        checksum = normalize_address(address)
        return int(self._rpc("get_balance", lambda: self.w3.eth.get_balance(checksum)))

    def block_number(self) -> int:
        return int(self._rpc("block_number", lambda: self.w3.eth.block_number))

    def block_timestamp(self, block_number: int) -> int:
        block = self._rpc("get_block", lambda: self.w3.eth.get_block(block_number))
        return int(block["timestamp"])

    def contract(self, address: str, abi: list[dict]):
        return self.w3.eth.contract(address=normalize_address(address), abi=abi)

    def read(self, label: str, fn) -> Any:
        """Call a view function. Reverts surface as ContractLogicError."""
        return self._rpc(label, fn.call)

    def get_logs(self, event, from_block: int, to_block: int) -> list:
        return list(
            self._rpc(
                "get_logs", lambda: event.get_logs(from_block=from_block, to_block=to_block)
            )
        )

    # ── Simulate / submit / confirm ────────────────────────────────

    def simulate(self, fn) -> Any:
        """Dry-run a state-changing call from the keeper identity."""
        tx_params = {"from": self.address} if self.address else {}
        try:
            return self._rpc("simulate", lambda: fn.call(tx_params), passthrough=(Web3RPCError,))
        except ContractLogicError as e:
            raise SimulationRejected(_revert_reason(e)) from e
        except Web3RPCError as e:
            raise SimulationRejected(f"RPC rejected call: {e}") from e

    def send(self, fn, gas_limit: int, gas_price: int) -> str:
        """Sign and broadcast a contract call. Returns the 0x tx hash."""
        if self.account is None:
            raise SubmissionError("No signing account configured")
        sender = self.account.address

        def _build_and_send():
            nonce = self.w3.eth.get_transaction_count(sender, "pending")
            tx = fn.build_transaction(
                {
                    "from": sender,
                    "nonce": nonce,
                    "gas": gas_limit,
                    "gasPrice": gas_price,
                    "chainId": self.w3.eth.chain_id,
                }
            )
            signed = self.account.sign_transaction(tx)
            return self.w3.eth.send_raw_transaction(signed.raw_transaction)

        try:
            raw_hash = self._rpc(
                "send_raw_transaction", _build_and_send, passthrough=(Web3RPCError,)
            )
        except (ContractLogicError, Web3RPCError, ValueError) as e:
            raise SubmissionError(f"{type(e).__name__}: {e}") from e
        return Web3.to_hex(raw_hash)

    def wait_for_receipt(self, tx_hash: str, timeout: float) -> Any:
        try:
            return self._rpc(
                "wait_for_transaction_receipt",
                lambda: self.w3.eth.wait_for_transaction_receipt(
                    tx_hash, timeout=timeout, poll_latency=self.poll_latency
                ),
            )
        except TimeExhausted as e:
            raise ConfirmationTimeout(tx_hash, timeout) from e


class LedgerClient:
    """Reads delegations from the ledger (master agent) contract."""

    def __init__(self, chain: ChainClient, ledger_address: str):
        self.chain = chain
        self.ledger_address = normalize_address(ledger_address)
        self._contract = chain.contract(self.ledger_address, MASTER_AGENT_ABI)

    def get_delegation(self, user: str, agent: str) -> Delegation:
        user = normalize_address(user)
        agent = normalize_address(agent)
        try:
            raw = self.chain.read(
                "getDelegation", self._contract.functions.getDelegation(user, agent)
            )
        except ContractLogicError as e:
            raise LedgerError(f"getDelegation reverted: {_revert_reason(e)}") from e
        return delegation_from_tuple(user, agent, raw)


def delegation_from_tuple(user: str, agent: str, raw: Any) -> Delegation:
    try:
        _agent, daily_limit, spent_today, last_reset, active, expiry = raw
        return Delegation(
            user=user,
            agent=agent,
            daily_limit=int(daily_limit),
            spent_today=int(spent_today),
            last_reset_timestamp=int(last_reset),
            active=bool(active),
            expiry=int(expiry),
        )
    except (TypeError, ValueError) as e:
        raise LedgerError(f"Malformed delegation for {user}/{agent}: {raw!r}") from e


def _revert_reason(error: Exception) -> str:
    message = getattr(error, "message", None) or str(error)
    return str(message).replace("execution reverted: ", "").strip() or "execution reverted"
