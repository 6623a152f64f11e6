"""
Delegation ledger semantics.

A Delegation is a user's standing authorization for an agent to spend up to
a daily cap until an expiry. The ledger contract is authoritative; this
module only replicates its read-side rules so the keeper can pre-check an
action before paying fees to submit it.

Window reset is effective-only: once a full window has elapsed since
``last_reset_timestamp`` the stored ``spent_today`` is treated as zero, and
the ledger performs the physical reset on its next successful spend.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Optional, Protocol

DAY_SECONDS = 86400


@dataclass(frozen=True)
class Delegation:
    """Snapshot of one (user, agent) permission as read from the ledger."""

    user: str
    agent: str
    daily_limit: int
    spent_today: int
    last_reset_timestamp: int
    active: bool
    expiry: int

    def window_elapsed(self, now: int) -> bool:
        return now >= self.last_reset_timestamp + DAY_SECONDS

    def effective_spent(self, now: int) -> int:
        if self.window_elapsed(now):
            return 0
        return self.spent_today

    def remaining(self, now: int) -> int:
        return max(self.daily_limit - self.effective_spent(now), 0)

    def is_expired(self, now: int) -> bool:
        return now > self.expiry

    def is_usable(self, now: int) -> bool:
        return self.active and not self.is_expired(now)

    def to_dict(self, now: Optional[int] = None) -> dict:
        now = int(time.time()) if now is None else now
        return {
            "user": self.user,
            "agent": self.agent,
            "daily_limit": self.daily_limit,
            "spent_today": self.spent_today,
            "effective_spent": self.effective_spent(now),
            "remaining": self.remaining(now),
            "last_reset_timestamp": self.last_reset_timestamp,
            "active": self.active,
            "expiry": self.expiry,
            "usable": self.is_usable(now),
        }


class DelegationLedger(Protocol):
    def get_delegation(self, user: str, agent: str) -> Delegation: ...


def check_allowance(delegation: Delegation, amount: int, now: int) -> tuple[bool, str]:
    """Check whether ``amount`` fits the delegation at time ``now``."""
    if amount <= 0:
        return False, "Amount must be positive"

    if not delegation.active:
        return False, "Delegation is not active"

    if delegation.is_expired(now):
        return False, f"Delegation expired at {delegation.expiry}"

    remaining = delegation.remaining(now)
    if amount > remaining:
        return False, (
            f"Amount {amount} exceeds remaining daily allowance {remaining} "
            f"(spent {delegation.effective_spent(now)} of {delegation.daily_limit})"
        )

    return True, "Within allowance"
