"""
Agent adapters.

Each agent contract owns a per-user registry of schedules and one opaque
``execute`` action. Adapters hide the contract-specific names and tuple
layouts behind the AgentAdapter protocol so the execution engine can run
the same guarded routine for every agent kind.

Schedule ids are per-user indexes: ``0 .. getUserScheduleCount(user) - 1``.
"""

from __future__ import annotations

import logging
from typing import Any, Optional, Protocol

from web3.exceptions import ContractLogicError
from web3.logs import DISCARD

from .abi import DCA_AGENT_ABI, YIELD_AGENT_ABI
from .chain import ChainClient, Confirmation
from .delegation import DAY_SECONDS
from .errors import LedgerError
from .schedule import AgentKind, Schedule
from .units import normalize_address

logger = logging.getLogger(__name__)


class AgentAdapter(Protocol):
    kind: AgentKind
    address: str

    def schedule_count(self, user: str) -> int: ...

    def get_schedule(self, user: str, schedule_id: int) -> Schedule: ...

    def list_schedules(self, user: str, active_only: bool = True) -> list[Schedule]: ...

    def simulate(self, schedule: Schedule) -> None: ...

    def submit(self, schedule: Schedule, gas_price: int, gas_limit: int) -> str: ...

    def wait_for_confirmation(self, tx_hash: str, timeout: float) -> Confirmation: ...

    def schedule_owners_created(self, from_block: int, to_block: int) -> list[str]: ...


class ContractAgent:
    """Shared web3 plumbing for agent contracts.

    Subclasses name the registry/action functions and decode the schedule
    tuple; everything else (dry run, signing, receipt parsing, discovery
    logs) is identical across agents.
    """

    kind: AgentKind
    abi: list[dict]
    count_function: str
    get_function: str
    execute_function: str
    created_event: str
    effect_event: str
    effect_fields: dict[str, str] = {}

    def __init__(self, chain: ChainClient, address: str):
        self.chain = chain
        self.address = normalize_address(address)
        self.contract = chain.contract(self.address, self.abi)

    def _decode(self, user: str, schedule_id: int, raw: Any) -> Schedule:
        raise NotImplementedError

    def _function(self, name: str, *args):
        return getattr(self.contract.functions, name)(*args)

    def schedule_count(self, user: str) -> int:
        user = normalize_address(user)
        try:
            return int(
                self.chain.read(self.count_function, self._function(self.count_function, user))
            )
        except ContractLogicError as e:
            raise LedgerError(f"{self.count_function}({user}) reverted: {e}") from e

    def get_schedule(self, user: str, schedule_id: int) -> Schedule:
        user = normalize_address(user)
        try:
            raw = self.chain.read(
                self.get_function, self._function(self.get_function, user, int(schedule_id))
            )
        except ContractLogicError as e:
            raise LedgerError(f"{self.get_function}({user}, {schedule_id}) reverted: {e}") from e
        try:
            return self._decode(user, int(schedule_id), raw)
        except (TypeError, ValueError) as e:
            raise LedgerError(f"Malformed schedule {user}#{schedule_id}: {raw!r}") from e

    def list_schedules(self, user: str, active_only: bool = True) -> list[Schedule]:
        schedules = []
        for schedule_id in range(self.schedule_count(user)):
            schedule = self.get_schedule(user, schedule_id)
            if active_only and not schedule.active:
                continue
            schedules.append(schedule)
        return schedules

    def _execute_call(self, schedule: Schedule):
        return self._function(
            self.execute_function, normalize_address(schedule.owner), schedule.schedule_id
        )

    def simulate(self, schedule: Schedule) -> None:
        self.chain.simulate(self._execute_call(schedule))

    def submit(self, schedule: Schedule, gas_price: int, gas_limit: int) -> str:
        return self.chain.send(self._execute_call(schedule), gas_limit=gas_limit, gas_price=gas_price)

    def wait_for_confirmation(self, tx_hash: str, timeout: float) -> Confirmation:
        receipt = self.chain.wait_for_receipt(tx_hash, timeout)
        block_number = int(receipt["blockNumber"])
        success = int(receipt["status"]) == 1
        return Confirmation(
            tx_hash=tx_hash,
            success=success,
            block_number=block_number,
            block_timestamp=self.chain.block_timestamp(block_number),
            gas_used=int(receipt.get("gasUsed", 0)),
            effects=self.parse_effects(receipt) if success else {},
        )

    def parse_effects(self, receipt: Any) -> dict[str, int]:
        event = getattr(self.contract.events, self.effect_event)()
        for entry in event.process_receipt(receipt, errors=DISCARD):
            args = entry["args"]
            return {key: int(args[name]) for name, key in self.effect_fields.items()}
        logger.debug("No %s event in receipt %s", self.effect_event, receipt.get("transactionHash"))
        return {}

    def schedule_owners_created(self, from_block: int, to_block: int) -> list[str]:
        event = getattr(self.contract.events, self.created_event)()
        logs = self.chain.get_logs(event, from_block, to_block)
        return [normalize_address(log["args"]["user"]) for log in logs]


class DCAAgent(ContractAgent):
    """Recurring purchase agent: swaps a fixed input amount every interval."""

    kind = AgentKind.DCA
    abi = DCA_AGENT_ABI
    count_function = "getUserScheduleCount"
    get_function = "getSchedule"
    execute_function = "executeDCA"
    created_event = "DCAScheduleCreated"
    effect_event = "DCAExecuted"
    effect_fields = {"amountSpent": "amount_spent", "amountReceived": "amount_received"}

    def _decode(self, user: str, schedule_id: int, raw: Any) -> Schedule:
        (
            _user,
            input_token,
            output_token,
            amount_per_purchase,
            interval_seconds,
            last_execution_time,
            pool_fee,
            slippage_bps,
            active,
        ) = raw
        return Schedule(
            schedule_id=schedule_id,
            owner=user,
            kind=self.kind,
            amount_per_action=int(amount_per_purchase),
            interval_seconds=int(interval_seconds),
            last_execution_time=int(last_execution_time),
            active=bool(active),
            params={
                "input_token": input_token,
                "output_token": output_token,
                "pool_fee": int(pool_fee),
                "slippage_bps": int(slippage_bps),
            },
        )


class YieldAgent(ContractAgent):
    """Yield deposit agent.

    Strategies carry no interval of their own; deposits recur every
    ``interval_seconds`` (daily by default) measured from the last harvest.
    """

    kind = AgentKind.YIELD
    abi = YIELD_AGENT_ABI
    count_function = "getUserStrategyCount"
    get_function = "getStrategy"
    execute_function = "executeDeposit"
    created_event = "YieldStrategyCreated"
    effect_event = "DepositExecuted"
    effect_fields = {"amount": "amount_deposited", "sharesReceived": "shares_received"}

    def __init__(self, chain: ChainClient, address: str, interval_seconds: int = DAY_SECONDS):
        super().__init__(chain, address)
        self.interval_seconds = interval_seconds

    def _decode(self, user: str, schedule_id: int, raw: Any) -> Schedule:
        (
            _user,
            token,
            a_token,
            strategy_type,
            target_allocation,
            current_deposited,
            total_yield_earned,
            last_harvest_time,
            active,
        ) = raw
        return Schedule(
            schedule_id=schedule_id,
            owner=user,
            kind=self.kind,
            amount_per_action=int(target_allocation),
            interval_seconds=self.interval_seconds,
            last_execution_time=int(last_harvest_time),
            active=bool(active),
            params={
                "token": token,
                "a_token": a_token,
                "strategy_type": int(strategy_type),
                "current_deposited": int(current_deposited),
                "total_yield_earned": int(total_yield_earned),
            },
        )


def build_agent(
    kind: AgentKind, chain: ChainClient, address: str, yield_interval: Optional[int] = None
) -> ContractAgent:
    if kind is AgentKind.DCA:
        return DCAAgent(chain, address)
    return YieldAgent(chain, address, interval_seconds=yield_interval or DAY_SECONDS)
