"""In-process chain stand-in for local development, demos and tests.

LocalChain enforces the same ledger, registry and action semantics as the
real contracts: daily quota with a physical window reset on the next
successful spend, expiry, terminal cancellation, and on-chain readiness
checks at the time a transaction lands. Time is a manual clock so tests can
step across interval and window boundaries deterministically.
"""

from __future__ import annotations

import hashlib
import itertools
from dataclasses import dataclass, field
from typing import Any, Optional

from .chain import Confirmation
from .delegation import DAY_SECONDS, Delegation, check_allowance
from .errors import (
    ConfirmationTimeout,
    LedgerError,
    SimulationRejected,
    SubmissionError,
    TransportError,
)
from .schedule import AgentKind, Schedule, is_ready
from .units import normalize_address


GENESIS_TIMESTAMP = 1_700_000_000
BLOCK_TIME = 12
GAS_USED = 180_000


@dataclass
class _PendingTx:
    tx_hash: str
    agent: str
    kind: AgentKind
    user: str
    schedule_id: int
    gas_price: int
    lands_at: int


@dataclass
class _ScheduleRecord:
    amount: int
    interval: int
    last_execution_time: int
    active: bool = True
    params: dict[str, Any] = field(default_factory=dict)


class LocalChain:
    """Manual-clock chain holding delegations, schedules and pending actions."""

    def __init__(
        self,
        now: int = GENESIS_TIMESTAMP,
        fee_price: int = 1_000_000_000,
        keeper_balance: int = 10**18,
        confirmation_delay: int = BLOCK_TIME,
    ):
        self.now = now
        self.fee_price = fee_price
        self.keeper_balance = keeper_balance
        self.confirmation_delay = confirmation_delay
        self.keeper_address: Optional[str] = None
        self.transport_down = False
        self.revert_next = False

        self._genesis = now
        self._delegations: dict[tuple[str, str], dict[str, Any]] = {}
        self._schedules: dict[tuple[str, str], list[_ScheduleRecord]] = {}
        self._created: list[tuple[int, str, str]] = []
        self._pending: list[_PendingTx] = []
        self._receipts: dict[str, Confirmation] = {}
        self._tx_counter = itertools.count(1)

        self.simulations = 0
        self.submissions: list[str] = []

    # ── Clock ──────────────────────────────────────────────────────

    def time(self) -> int:
        return self.now

    def advance(self, seconds: int) -> None:
        self._advance_to(self.now + int(seconds))

    def _advance_to(self, timestamp: int) -> None:
        for tx in sorted(self._pending, key=lambda p: p.lands_at):
            if tx.lands_at > timestamp:
                break
            self._land(tx)
        self.now = max(self.now, timestamp)

    def _check_transport(self) -> None:
        if self.transport_down:
            raise TransportError("Connection refused")

    # ── Network reads ──────────────────────────────────────────────

    def gas_price(self) -> int:
        self._check_transport()
        return self.fee_price

    def get_balance(self, address: str) -> int:
        self._check_transport()
        return self.keeper_balance

    def block_number(self) -> int:
        self._check_transport()
        return self._block_at(self.now)

    def _block_at(self, timestamp: int) -> int:
        return (timestamp - self._genesis) // BLOCK_TIME

    # ── Delegation ledger ──────────────────────────────────────────

    def delegate(
        self,
        user: str,
        agent: str,
        daily_limit: int,
        expiry: int,
        spent_today: int = 0,
        last_reset_timestamp: Optional[int] = None,
    ) -> None:
        key = (normalize_address(user), normalize_address(agent))
        self._delegations[key] = {
            "daily_limit": int(daily_limit),
            "spent_today": int(spent_today),
            "last_reset_timestamp": self.now if last_reset_timestamp is None else int(last_reset_timestamp),
            "active": True,
            "expiry": int(expiry),
        }

    def revoke(self, user: str, agent: str) -> None:
        key = (normalize_address(user), normalize_address(agent))
        if key not in self._delegations:
            raise KeyError(f"No delegation for {key[0]} -> {key[1]}")
        self._delegations[key]["active"] = False

    def get_delegation(self, user: str, agent: str) -> Delegation:
        self._check_transport()
        return self._delegation(user, agent)

    def _delegation(self, user: str, agent: str) -> Delegation:
        user = normalize_address(user)
        agent = normalize_address(agent)
        record = self._delegations.get((user, agent))
        if record is None:
            return Delegation(user, agent, 0, 0, 0, False, 0)
        return Delegation(user=user, agent=agent, **record)

    # ── Schedule registry ──────────────────────────────────────────

    def create_schedule(
        self,
        agent: str,
        user: str,
        amount: int,
        interval: int,
        last_execution_time: int = 0,
        params: Optional[dict[str, Any]] = None,
    ) -> int:
        key = (normalize_address(agent), normalize_address(user))
        records = self._schedules.setdefault(key, [])
        records.append(
            _ScheduleRecord(
                amount=int(amount),
                interval=int(interval),
                last_execution_time=int(last_execution_time),
                params=dict(params or {}),
            )
        )
        self._created.append((self._block_at(self.now), key[0], key[1]))
        return len(records) - 1

    def cancel_schedule(self, agent: str, user: str, schedule_id: int) -> None:
        self._record(agent, user, schedule_id).active = False

    def _record(self, agent: str, user: str, schedule_id: int) -> _ScheduleRecord:
        records = self._schedules.get((normalize_address(agent), normalize_address(user)), [])
        if not 0 <= schedule_id < len(records):
            raise KeyError(f"Schedule not found: {user}#{schedule_id}")
        return records[schedule_id]

    def schedule_count(self, agent: str, user: str) -> int:
        self._check_transport()
        return len(self._schedules.get((normalize_address(agent), normalize_address(user)), []))

    def get_schedule(self, agent: str, kind: AgentKind, user: str, schedule_id: int) -> Schedule:
        self._check_transport()
        try:
            return self._schedule(agent, kind, user, schedule_id)
        except KeyError as e:
            raise LedgerError(str(e)) from e

    def _schedule(self, agent: str, kind: AgentKind, user: str, schedule_id: int) -> Schedule:
        record = self._record(agent, user, schedule_id)
        return Schedule(
            schedule_id=schedule_id,
            owner=normalize_address(user),
            kind=kind,
            amount_per_action=record.amount,
            interval_seconds=record.interval,
            last_execution_time=record.last_execution_time,
            active=record.active,
            params=dict(record.params),
        )

    def owners_created(self, agent: str, from_block: int, to_block: int) -> list[str]:
        self._check_transport()
        agent = normalize_address(agent)
        return [
            user
            for block, created_agent, user in self._created
            if created_agent == agent and from_block <= block <= to_block
        ]

    # ── Actions ────────────────────────────────────────────────────

    def _execution_error(self, agent: str, kind: AgentKind, user: str, schedule_id: int, at: int) -> Optional[str]:
        """Return the revert reason for executing at ``at``, or None."""
        try:
            schedule = self._schedule(agent, kind, user, schedule_id)
        except KeyError:
            return "Schedule not found"
        if not schedule.active:
            return "Schedule not active"
        if not is_ready(schedule, at):
            return "Too soon to execute"
        delegation = self._delegation(user, agent)
        ok, reason = check_allowance(delegation, schedule.amount_per_action, at)
        if not ok:
            return reason
        return None

    def simulate(self, agent: str, kind: AgentKind, user: str, schedule_id: int) -> None:
        self._check_transport()
        self.simulations += 1
        reason = self._execution_error(agent, kind, user, schedule_id, self.now)
        if reason:
            raise SimulationRejected(reason)

    def submit(
        self, agent: str, kind: AgentKind, user: str, schedule_id: int, gas_price: int, gas_limit: int
    ) -> str:
        self._check_transport()
        fee = gas_price * gas_limit
        if self.keeper_balance < fee:
            raise SubmissionError("insufficient funds for gas * price")
        counter = next(self._tx_counter)
        tx_hash = "0x" + hashlib.sha256(f"{agent}:{user}:{schedule_id}:{counter}".encode()).hexdigest()
        self._pending.append(
            _PendingTx(
                tx_hash=tx_hash,
                agent=normalize_address(agent),
                kind=kind,
                user=normalize_address(user),
                schedule_id=schedule_id,
                gas_price=gas_price,
                lands_at=self.now + self.confirmation_delay,
            )
        )
        self.submissions.append(tx_hash)
        return tx_hash

    def _land(self, tx: _PendingTx) -> None:
        self._pending.remove(tx)
        kind = tx.kind
        self.keeper_balance -= tx.gas_price * GAS_USED
        reason = self._execution_error(tx.agent, kind, tx.user, tx.schedule_id, tx.lands_at)
        if self.revert_next:
            self.revert_next = False
            reason = "Swap failed"

        effects: dict[str, int] = {}
        if reason is None:
            record = self._record(tx.agent, tx.user, tx.schedule_id)
            delegation = self._delegations[(tx.user, tx.agent)]
            if tx.lands_at >= delegation["last_reset_timestamp"] + DAY_SECONDS:
                delegation["spent_today"] = 0
                delegation["last_reset_timestamp"] = tx.lands_at
            delegation["spent_today"] += record.amount
            record.last_execution_time = tx.lands_at
            if kind is AgentKind.DCA:
                rate = int(record.params.get("rate", 1))
                effects = {"amount_spent": record.amount, "amount_received": record.amount * rate}
            else:
                effects = {"amount_deposited": record.amount, "shares_received": record.amount}

        self._receipts[tx.tx_hash] = Confirmation(
            tx_hash=tx.tx_hash,
            success=reason is None,
            block_number=self._block_at(tx.lands_at),
            block_timestamp=tx.lands_at,
            gas_used=GAS_USED,
            effects=effects,
        )

    def wait_for_confirmation(self, tx_hash: str, timeout: float) -> Confirmation:
        """Block (by advancing the clock) until the tx lands or ``timeout`` passes."""
        self._check_transport()
        if tx_hash in self._receipts:
            return self._receipts[tx_hash]
        pending = next((p for p in self._pending if p.tx_hash == tx_hash), None)
        if pending is None:
            raise SubmissionError(f"Unknown transaction {tx_hash}")
        if pending.lands_at - self.now > timeout:
            self._advance_to(self.now + int(timeout))
            raise ConfirmationTimeout(tx_hash, timeout)
        self._advance_to(pending.lands_at)
        return self._receipts[tx_hash]

    def receipt(self, tx_hash: str) -> Optional[Confirmation]:
        return self._receipts.get(tx_hash)

    def agent(self, address: str, kind: AgentKind = AgentKind.DCA) -> "LocalAgent":
        return LocalAgent(self, address, kind)


class LocalAgent:
    """AgentAdapter over a LocalChain."""

    def __init__(self, chain: LocalChain, address: str, kind: AgentKind = AgentKind.DCA):
        self.chain = chain
        self.address = normalize_address(address)
        self.kind = kind

    def schedule_count(self, user: str) -> int:
        return self.chain.schedule_count(self.address, user)

    def get_schedule(self, user: str, schedule_id: int) -> Schedule:
        return self.chain.get_schedule(self.address, self.kind, user, schedule_id)

    def list_schedules(self, user: str, active_only: bool = True) -> list[Schedule]:
        schedules = [self.get_schedule(user, i) for i in range(self.schedule_count(user))]
        if active_only:
            schedules = [s for s in schedules if s.active]
        return schedules

    def simulate(self, schedule: Schedule) -> None:
        self.chain.simulate(self.address, self.kind, schedule.owner, schedule.schedule_id)

    def submit(self, schedule: Schedule, gas_price: int, gas_limit: int) -> str:
        return self.chain.submit(
            self.address, self.kind, schedule.owner, schedule.schedule_id, gas_price, gas_limit
        )

    def wait_for_confirmation(self, tx_hash: str, timeout: float) -> Confirmation:
        return self.chain.wait_for_confirmation(tx_hash, timeout)

    def schedule_owners_created(self, from_block: int, to_block: int) -> list[str]:
        return self.chain.owners_created(self.address, from_block, to_block)
