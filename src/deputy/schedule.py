"""
Recurring schedules, readiness, and execution attempt records.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class AgentKind(str, Enum):
    DCA = "dca"
    YIELD = "yield"


@dataclass(frozen=True)
class Schedule:
    """A recurring job owned by a user under one agent."""

    schedule_id: int
    owner: str
    kind: AgentKind
    amount_per_action: int
    interval_seconds: int
    last_execution_time: int
    active: bool
    params: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    @property
    def key(self) -> tuple[str, int]:
        return (self.owner.lower(), self.schedule_id)

    @property
    def label(self) -> str:
        return f"{self.kind.value}#{self.schedule_id}@{self.owner}"

    @property
    def next_execution_time(self) -> int:
        return self.last_execution_time + self.interval_seconds

    def to_dict(self) -> dict:
        return {
            "schedule_id": self.schedule_id,
            "owner": self.owner,
            "kind": self.kind.value,
            "amount_per_action": self.amount_per_action,
            "interval_seconds": self.interval_seconds,
            "last_execution_time": self.last_execution_time,
            "next_execution_time": self.next_execution_time,
            "active": self.active,
            "params": dict(self.params),
        }


def is_ready(schedule: Schedule, now: int) -> bool:
    """A schedule is due once a full interval has passed since its last run.

    Never-executed schedules (``last_execution_time == 0``) are due at once.
    Missed intervals do not accumulate.
    """
    return schedule.active and now >= schedule.last_execution_time + schedule.interval_seconds


def seconds_until_ready(schedule: Schedule, now: int) -> Optional[int]:
    """Seconds until due, 0 if due now, None if the schedule is cancelled."""
    if not schedule.active:
        return None
    return max(0, schedule.next_execution_time - now)


class Outcome(str, Enum):
    SKIPPED_NOT_READY = "skipped_not_ready"
    SKIPPED_FEE_TOO_HIGH = "skipped_fee_too_high"
    SKIPPED_SIMULATION_FAILED = "skipped_simulation_failed"
    SUBMITTED = "submitted"
    CONFIRMED_SUCCESS = "confirmed_success"
    CONFIRMED_FAILURE = "confirmed_failure"
    TIMED_OUT = "timed_out"
    TRANSPORT_ERROR = "transport_error"
    DRY_RUN = "dry_run"


@dataclass
class ExecutionAttempt:
    """One pass of the execution protocol over one schedule."""

    schedule: Schedule
    attempted_at: int
    outcome: Outcome = Outcome.SKIPPED_NOT_READY
    fee_at_submission: Optional[int] = None
    tx_hash: Optional[str] = None
    reason: Optional[str] = None
    confirmed_at: Optional[int] = None
    effects: dict[str, int] = field(default_factory=dict)

    @property
    def schedule_id(self) -> int:
        return self.schedule.schedule_id

    def to_dict(self) -> dict:
        return {
            "schedule_id": self.schedule.schedule_id,
            "owner": self.schedule.owner,
            "kind": self.schedule.kind.value,
            "attempted_at": self.attempted_at,
            "outcome": self.outcome.value,
            "fee_at_submission": self.fee_at_submission,
            "tx_hash": self.tx_hash,
            "reason": self.reason,
            "confirmed_at": self.confirmed_at,
            "effects": dict(self.effects),
        }
