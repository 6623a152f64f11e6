"""
GraphQL read-model client.

The read-model is an indexer mirroring registry events into a queryable
store. The keeper uses it only as a discovery shortcut for active schedules;
it is never authoritative for quota or execution decisions.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from .delegation import DAY_SECONDS
from .errors import ReadModelError
from .schedule import AgentKind, Schedule
from .units import normalize_address

logger = logging.getLogger(__name__)


ACTIVE_DCA_SCHEDULES_QUERY = """
query ActiveSchedules {
  DCASchedule(where: {active: {_eq: true}}) {
    id
    user
    scheduleId
    amountPerPurchase
    intervalSeconds
    lastExecutionTime
    totalExecutions
  }
}
"""

ACTIVE_YIELD_STRATEGIES_QUERY = """
query ActiveStrategies {
  YieldStrategy(where: {isActive: {_eq: true}}) {
    id
    user
    strategyId
    totalDeposited
    isActive
    lastDepositAt
  }
}
"""


class ReadModelClient:
    """Synchronous GraphQL client for the schedule read-model."""

    def __init__(
        self,
        url: str,
        timeout_seconds: float = 15.0,
        yield_interval: int = DAY_SECONDS,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.url = url
        self.yield_interval = yield_interval
        self._http = httpx.Client(timeout=timeout_seconds, transport=transport)

    def close(self) -> None:
        self._http.close()

    def query(self, query: str, variables: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        body: dict[str, Any] = {"query": query}
        if variables:
            body["variables"] = variables
        try:
            response = self._http.post(self.url, json=body)
        except httpx.HTTPError as e:
            raise ReadModelError(f"Read-model request failed: {type(e).__name__}: {e}") from e

        if response.status_code != 200:
            raise ReadModelError(
                f"Read-model request failed: {response.status_code} {response.reason_phrase}"
            )
        try:
            payload = response.json()
        except ValueError as e:
            raise ReadModelError("Read-model returned non-JSON response") from e

        if payload.get("errors"):
            messages = "; ".join(str(err.get("message", err)) for err in payload["errors"])
            raise ReadModelError(f"Read-model query errors: {messages}")
        data = payload.get("data")
        if not isinstance(data, dict):
            raise ReadModelError("Read-model response has no data")
        return data

    def active_schedules(self, kind: AgentKind) -> list[Schedule]:
        if kind is AgentKind.DCA:
            rows = self.query(ACTIVE_DCA_SCHEDULES_QUERY).get("DCASchedule") or []
            parse = self._dca_row
        else:
            rows = self.query(ACTIVE_YIELD_STRATEGIES_QUERY).get("YieldStrategy") or []
            parse = self._yield_row

        schedules = []
        for row in rows:
            try:
                schedules.append(parse(row))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping malformed read-model row %r: %s", row.get("id"), e)
        return schedules

    def _dca_row(self, row: dict[str, Any]) -> Schedule:
        return Schedule(
            schedule_id=int(row["scheduleId"]),
            owner=normalize_address(row["user"]),
            kind=AgentKind.DCA,
            amount_per_action=int(row["amountPerPurchase"]),
            interval_seconds=int(row["intervalSeconds"]),
            last_execution_time=int(row.get("lastExecutionTime") or 0),
            active=True,
            params={"total_executions": int(row.get("totalExecutions") or 0)},
        )

    def _yield_row(self, row: dict[str, Any]) -> Schedule:
        # Strategy amounts are not mirrored; callers hydrate from the registry.
        return Schedule(
            schedule_id=int(row["strategyId"]),
            owner=normalize_address(row["user"]),
            kind=AgentKind.YIELD,
            amount_per_action=0,
            interval_seconds=self.yield_interval,
            last_execution_time=int(row.get("lastDepositAt") or 0),
            active=bool(row.get("isActive", True)),
            params={"total_deposited": int(row.get("totalDeposited") or 0)},
        )
