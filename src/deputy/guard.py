"""
Fee admission control and keeper health signals.

The fee guard is the only admission check that runs before simulation: a
fee above the ceiling defers the schedule to the next tick. The balance
monitor is observability only and never blocks an attempt.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Callable, Optional

from .chain import Network
from .errors import DeputyError
from .storage import DEFAULT_HOME, atomic_write_json
from .units import format_ether, format_gwei

logger = logging.getLogger(__name__)

DEFAULT_MIN_BALANCE_WEI = 10**16  # 0.01 ETH
DEFAULT_BALANCE_CHECK_INTERVAL = 300
DEFAULT_HEALTH_PATH = DEFAULT_HOME / "health.json"


@dataclass(frozen=True)
class FeeCheck:
    allowed: bool
    fee_price: int
    ceiling: int

    @property
    def reason(self) -> str:
        if self.allowed:
            return f"Fee {format_gwei(self.fee_price)} within ceiling {format_gwei(self.ceiling)}"
        return f"Fee too high: {format_gwei(self.fee_price)} (max: {format_gwei(self.ceiling)})"


class FeeGuard:
    def __init__(self, network: Network, max_fee_price: int):
        self.network = network
        self.max_fee_price = max_fee_price

    def check(self) -> FeeCheck:
        fee_price = self.network.gas_price()
        return FeeCheck(
            allowed=fee_price <= self.max_fee_price,
            fee_price=fee_price,
            ceiling=self.max_fee_price,
        )


@dataclass(frozen=True)
class BalanceReading:
    balance: int
    minimum: int
    checked_at: float

    @property
    def low(self) -> bool:
        return self.balance < self.minimum


class BalanceMonitor:
    """Periodic keeper balance check. Warns below the minimum, never blocks."""

    def __init__(
        self,
        network: Network,
        address: str,
        min_balance: int = DEFAULT_MIN_BALANCE_WEI,
        interval_seconds: int = DEFAULT_BALANCE_CHECK_INTERVAL,
        clock: Callable[[], float] = time.time,
    ):
        self.network = network
        self.address = address
        self.min_balance = min_balance
        self.interval_seconds = interval_seconds
        self._clock = clock
        self.last_reading: Optional[BalanceReading] = None

    def maybe_check(self) -> Optional[BalanceReading]:
        now = self._clock()
        if self.last_reading is not None and now - self.last_reading.checked_at < self.interval_seconds:
            return None
        return self.check()

    def check(self) -> Optional[BalanceReading]:
        try:
            balance = self.network.get_balance(self.address)
        except DeputyError as e:
            logger.error("Keeper balance check failed: %s", e)
            return None

        reading = BalanceReading(balance=balance, minimum=self.min_balance, checked_at=self._clock())
        self.last_reading = reading
        if reading.low:
            logger.warning(
                "Low keeper balance: %s (minimum %s). Fund the keeper wallet to continue operations",
                format_ether(balance),
                format_ether(self.min_balance),
            )
        else:
            logger.info("Keeper balance: %s", format_ether(balance))
        return reading


@dataclass
class HealthState:
    """Heartbeat written after every tick for operators and `deputy health`."""

    keeper_address: str
    agent_address: str
    check_interval: int
    started_at: float
    last_tick_at: Optional[float] = None
    ticks: int = 0
    state: str = "idle"
    source: Optional[str] = None
    last_balance: Optional[int] = None
    low_balance: bool = False
    last_outcomes: dict[str, int] = field(default_factory=dict)
    consecutive_transport_errors: int = 0
    last_executions: dict[str, int] = field(default_factory=dict)

    def is_stale(self, now: float, grace_ticks: int = 3) -> bool:
        if self.last_tick_at is None:
            return now - self.started_at > grace_ticks * self.check_interval
        return now - self.last_tick_at > grace_ticks * self.check_interval

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "HealthState":
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


class HealthReporter:
    def __init__(self, path: Optional[Path] = None):
        self.path = path or DEFAULT_HEALTH_PATH

    def write(self, state: HealthState) -> None:
        atomic_write_json(self.path, state.to_dict())

    def read(self) -> Optional[HealthState]:
        if not self.path.exists():
            return None
        with open(self.path, encoding="utf-8") as f:
            return HealthState.from_dict(json.load(f))
