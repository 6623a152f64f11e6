"""
Keeper scheduler.

A single-worker polling loop. Each tick moves IDLE -> DISCOVERING ->
DISPATCHING -> IDLE: discover candidates, keep the ones that are due, and
hand them to the execution engine one at a time in discovery order. The
only state carried across ticks is the discovery cache owned by the
candidate source; everything else is rebuilt per tick in a TickReport.
"""

from __future__ import annotations

import logging
import signal
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

from .audit import AuditTrail, EventType
from .discovery import CandidateSource
from .engine import ExecutionEngine
from .errors import DeputyError
from .guard import BalanceMonitor, HealthReporter, HealthState
from .schedule import ExecutionAttempt, Outcome, is_ready

logger = logging.getLogger(__name__)


class SchedulerState(str, Enum):
    IDLE = "idle"
    DISCOVERING = "discovering"
    DISPATCHING = "dispatching"


@dataclass
class TickReport:
    started_at: int
    source: Optional[str] = None
    candidates: int = 0
    ready: int = 0
    attempts: list[ExecutionAttempt] = field(default_factory=list)
    interrupted: bool = False
    finished_at: Optional[int] = None

    def outcome_counts(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for attempt in self.attempts:
            counts[attempt.outcome.value] = counts.get(attempt.outcome.value, 0) + 1
        return counts

    @property
    def executed(self) -> int:
        return sum(1 for a in self.attempts if a.outcome is Outcome.CONFIRMED_SUCCESS)

    def to_dict(self) -> dict:
        return {
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "source": self.source,
            "candidates": self.candidates,
            "ready": self.ready,
            "interrupted": self.interrupted,
            "outcomes": self.outcome_counts(),
            "attempts": [a.to_dict() for a in self.attempts],
        }


class KeeperScheduler:
    def __init__(
        self,
        source: CandidateSource,
        engine: ExecutionEngine,
        interval_seconds: int = 60,
        balance_monitor: Optional[BalanceMonitor] = None,
        health: Optional[HealthReporter] = None,
        health_state: Optional[HealthState] = None,
        audit: Optional[AuditTrail] = None,
        clock: Callable[[], float] = time.time,
        sleep: Optional[Callable[[float], object]] = None,
    ):
        self.source = source
        self.engine = engine
        self.interval_seconds = interval_seconds
        self.balance_monitor = balance_monitor
        self.health = health
        self.health_state = health_state
        self.audit = audit
        self._clock = clock
        self._stop = threading.Event()
        self._sleep = sleep or self._stop.wait
        self.state = SchedulerState.IDLE
        self.ticks = 0

    # ── Lifecycle ──────────────────────────────────────────────────

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def request_stop(self) -> None:
        self._stop.set()

    def install_signal_handlers(self) -> None:
        def _shutdown(signum, frame):
            logger.info(
                "Received %s, finishing current schedule then stopping",
                signal.Signals(signum).name,
            )
            self.request_stop()

        signal.signal(signal.SIGINT, _shutdown)
        signal.signal(signal.SIGTERM, _shutdown)

    def run(self, max_ticks: Optional[int] = None) -> int:
        """Tick until stopped (or ``max_ticks`` ticks). Returns ticks run."""
        logger.info("Keeper started (check interval: %ds)", self.interval_seconds)
        self._audit_lifecycle(EventType.KEEPER_STARTED)
        ran = 0
        while not self._stop.is_set():
            self.tick()
            ran += 1
            if max_ticks is not None and ran >= max_ticks:
                break
            if self._stop.is_set():
                break
            self._sleep(self.interval_seconds)
        logger.info("Keeper stopped after %d tick(s)", ran)
        self._audit_lifecycle(EventType.KEEPER_STOPPED, {"ticks": ran})
        return ran

    def run_once(self) -> TickReport:
        return self.tick()

    # ── Tick ───────────────────────────────────────────────────────

    def tick(self) -> TickReport:
        now = int(self._clock())
        report = TickReport(started_at=now)
        self.ticks += 1
        logger.info("Tick %d: checking schedules", self.ticks)

        self._check_balance()

        self.state = SchedulerState.DISCOVERING
        try:
            candidates = self.source.candidates(now)
        except DeputyError as e:
            logger.error("Discovery failed: %s", e)
            candidates = []
        report.source = getattr(self.source, "last_used", None)
        report.candidates = len(candidates)

        ready = [s for s in candidates if is_ready(s, now)]
        report.ready = len(ready)
        if not candidates:
            logger.info("No schedules to monitor yet")
        else:
            logger.info("%d candidate(s), %d ready", len(candidates), len(ready))

        self.state = SchedulerState.DISPATCHING
        for schedule in ready:
            if self._stop.is_set():
                report.interrupted = True
                logger.info("Stop requested, not dispatching remaining schedules")
                break
            try:
                attempt = self.engine.execute(schedule)
            except Exception:
                logger.exception("Unexpected error executing %s", schedule.label)
                continue
            report.attempts.append(attempt)

        self.state = SchedulerState.IDLE
        report.finished_at = int(self._clock())
        logger.info(
            "Tick %d done: %d executed, outcomes %s",
            self.ticks,
            report.executed,
            report.outcome_counts(),
        )
        self._write_health(report)
        return report

    def _check_balance(self) -> None:
        if self.balance_monitor is None:
            return
        reading = self.balance_monitor.maybe_check()
        if reading is None:
            return
        if self.health_state is not None:
            self.health_state.last_balance = reading.balance
            self.health_state.low_balance = reading.low
        if reading.low and self.audit is not None:
            self._audit_lifecycle(
                EventType.LOW_BALANCE,
                {"balance": reading.balance, "minimum": reading.minimum},
                success=False,
            )

    def _write_health(self, report: TickReport) -> None:
        state = self.health_state
        if state is None:
            return
        state.last_tick_at = report.finished_at
        state.ticks = self.ticks
        state.state = self.state.value
        state.source = report.source
        state.last_outcomes = report.outcome_counts()
        state.last_executions = {
            f"{owner}#{schedule_id}": ts
            for (owner, schedule_id), ts in self.engine.last_seen_execution.items()
        }
        for attempt in report.attempts:
            if attempt.outcome is Outcome.TRANSPORT_ERROR:
                state.consecutive_transport_errors += 1
            else:
                state.consecutive_transport_errors = 0
        if self.health is None:
            return
        try:
            self.health.write(state)
        except OSError as e:
            logger.error("Failed to write health file %s: %s", self.health.path, e)

    def _audit_lifecycle(self, event_type: EventType, details: Optional[dict] = None, success: bool = True) -> None:
        if self.audit is None:
            return
        try:
            self.audit.log(event_type, success=success, details=details)
        except OSError as e:
            logger.error("Failed to write audit event %s: %s", event_type.value, e)
