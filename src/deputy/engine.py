"""
Guarded execution engine.

One routine drives every agent kind through the same protocol:

    readiness re-check -> fee gate -> simulate -> submit -> confirm

Simulation runs an allowance pre-check against a fresh delegation read and
then the agent's remote dry run, so the keeper never pays fees for an action
it can tell in advance would revert. Nothing is retried within a call; a
schedule that is still due is naturally retried on the next tick.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional

from .agents import AgentAdapter
from .audit import AuditTrail
from .delegation import DelegationLedger, check_allowance
from .errors import ConfirmationTimeout, DeputyError, SimulationRejected
from .guard import FeeGuard
from .schedule import ExecutionAttempt, Outcome, Schedule, is_ready, seconds_until_ready

logger = logging.getLogger(__name__)

DEFAULT_CONFIRMATION_TIMEOUT = 120
DEFAULT_GAS_LIMIT = 500_000


class ExecutionEngine:
    def __init__(
        self,
        agent: AgentAdapter,
        fee_guard: FeeGuard,
        ledger: Optional[DelegationLedger] = None,
        audit: Optional[AuditTrail] = None,
        confirmation_timeout: float = DEFAULT_CONFIRMATION_TIMEOUT,
        gas_limit: int = DEFAULT_GAS_LIMIT,
        dry_run: bool = False,
        clock: Callable[[], float] = time.time,
    ):
        self.agent = agent
        self.fee_guard = fee_guard
        self.ledger = ledger
        self.audit = audit
        self.confirmation_timeout = confirmation_timeout
        self.gas_limit = gas_limit
        self.dry_run = dry_run
        self._clock = clock
        # Display only; the registry holds the authoritative timestamp.
        self.last_seen_execution: dict[tuple[str, int], int] = {}
        self._in_flight: set[tuple[str, int]] = set()

    def now(self) -> int:
        return int(self._clock())

    def execute(self, schedule: Schedule) -> ExecutionAttempt:
        """Run one guarded attempt. Never raises for per-schedule failures."""
        attempt = ExecutionAttempt(schedule=schedule, attempted_at=self.now())
        key = schedule.key

        if key in self._in_flight:
            attempt.reason = "Previous attempt has not reached a terminal outcome"
            logger.info("Skipping %s: %s", schedule.label, attempt.reason)
            return self._record(attempt)

        self._in_flight.add(key)
        try:
            self._run(attempt)
        except DeputyError as e:
            attempt.outcome = Outcome.TRANSPORT_ERROR
            attempt.reason = str(e)
            logger.error("Execution error for %s: %s", schedule.label, e)
        except Exception as e:
            # tx_hash stays set if the failure came after submission.
            attempt.outcome = Outcome.TRANSPORT_ERROR
            attempt.reason = f"{type(e).__name__}: {e}"
            logger.exception("Unexpected error executing %s", schedule.label)
        finally:
            self._in_flight.discard(key)
        return self._record(attempt)

    def simulate(self, schedule: Schedule, now: Optional[int] = None) -> None:
        """Dry-run an action. Raises SimulationRejected without mutating state."""
        now = self.now() if now is None else now
        if self.ledger is not None:
            delegation = self.ledger.get_delegation(schedule.owner, self.agent.address)
            ok, reason = check_allowance(delegation, schedule.amount_per_action, now)
            if not ok:
                raise SimulationRejected(reason)
        self.agent.simulate(schedule)

    def _run(self, attempt: ExecutionAttempt) -> None:
        schedule = attempt.schedule
        now = attempt.attempted_at

        if not is_ready(schedule, now):
            attempt.outcome = Outcome.SKIPPED_NOT_READY
            wait = seconds_until_ready(schedule, now)
            attempt.reason = "Schedule inactive" if wait is None else f"Next execution in {wait}s"
            logger.info("Skipping %s: %s", schedule.label, attempt.reason)
            return

        fee = self.fee_guard.check()
        attempt.fee_at_submission = fee.fee_price
        if not fee.allowed:
            attempt.outcome = Outcome.SKIPPED_FEE_TOO_HIGH
            attempt.reason = fee.reason
            logger.info("Deferring %s: %s", schedule.label, fee.reason)
            return

        try:
            self.simulate(schedule, now)
        except SimulationRejected as e:
            attempt.outcome = Outcome.SKIPPED_SIMULATION_FAILED
            attempt.reason = e.reason
            logger.info("Simulation failed for %s: %s", schedule.label, e.reason)
            return

        if self.dry_run:
            attempt.outcome = Outcome.DRY_RUN
            attempt.reason = "Simulation passed; submission suppressed"
            logger.info("Dry run for %s: simulation passed", schedule.label)
            return

        logger.info("Executing %s...", schedule.label)
        tx_hash = self.agent.submit(schedule, gas_price=fee.fee_price, gas_limit=self.gas_limit)
        attempt.tx_hash = tx_hash
        attempt.outcome = Outcome.SUBMITTED
        logger.info("Transaction sent for %s: %s", schedule.label, tx_hash)
        self._audit(attempt)

        try:
            confirmation = self.agent.wait_for_confirmation(tx_hash, self.confirmation_timeout)
        except ConfirmationTimeout as e:
            attempt.outcome = Outcome.TIMED_OUT
            attempt.reason = str(e)
            logger.warning("Confirmation timed out for %s: %s", schedule.label, e)
            return

        attempt.confirmed_at = confirmation.block_timestamp
        if confirmation.success:
            attempt.outcome = Outcome.CONFIRMED_SUCCESS
            attempt.effects = dict(confirmation.effects)
            self.last_seen_execution[schedule.key] = confirmation.block_timestamp
            logger.info(
                "Execution successful for %s in block %d %s",
                schedule.label,
                confirmation.block_number,
                attempt.effects or "",
            )
        else:
            attempt.outcome = Outcome.CONFIRMED_FAILURE
            attempt.reason = "Transaction reverted"
            logger.warning("Transaction reverted for %s: %s", schedule.label, tx_hash)

    def _record(self, attempt: ExecutionAttempt) -> ExecutionAttempt:
        self._audit(attempt)
        return attempt

    def _audit(self, attempt: ExecutionAttempt) -> None:
        if self.audit is None:
            return
        try:
            self.audit.log_attempt(attempt, agent=self.agent.address)
        except OSError as e:
            logger.error("Failed to write audit event for %s: %s", attempt.schedule.label, e)
