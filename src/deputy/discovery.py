"""
Candidate discovery.

Two sources produce the candidate schedule set for a tick:

* EnumerationSource walks the agent registry for every tracked user.
* ReadModelSource asks the GraphQL read-model for active schedules and falls
  back to enumeration for the tick if the read-model is unavailable.

Tracked users come from UserDiscoveryCache, a bounded best-effort hint built
from recent "schedule created" events. It only decides which users are
checked; execution decisions never depend on it.
"""

from __future__ import annotations

import logging
import time
from collections import OrderedDict
from typing import Callable, Iterable, Optional, Protocol

from .agents import AgentAdapter
from .chain import Network
from .errors import DeputyError, ReadModelError
from .read_model import ReadModelClient
from .schedule import AgentKind, Schedule
from .units import normalize_address

logger = logging.getLogger(__name__)

DEFAULT_LOOKBACK_BLOCKS = 10_000
DEFAULT_REFRESH_INTERVAL = 60
DEFAULT_MAX_TRACKED_USERS = 1_000


class UserDiscoveryCache:
    """Bounded set of users to check, refreshed from recent creation events.

    Seed users are always tracked and never evicted. Discovered users are
    kept in recency order; once ``max_users`` is exceeded the least recently
    seen user is dropped.
    """

    def __init__(
        self,
        agent: AgentAdapter,
        network: Network,
        lookback_blocks: int = DEFAULT_LOOKBACK_BLOCKS,
        refresh_interval: int = DEFAULT_REFRESH_INTERVAL,
        max_users: int = DEFAULT_MAX_TRACKED_USERS,
        seed_users: Iterable[str] = (),
        clock: Callable[[], float] = time.time,
    ):
        self.agent = agent
        self.network = network
        self.lookback_blocks = lookback_blocks
        self.refresh_interval = refresh_interval
        self.max_users = max_users
        self._clock = clock
        self._seeds = dict.fromkeys(normalize_address(u) for u in seed_users)
        self._discovered: OrderedDict[str, None] = OrderedDict()
        self._last_refresh: Optional[float] = None

    @property
    def users(self) -> list[str]:
        # add() never puts a seed into _discovered.
        return list(self._seeds) + list(self._discovered)

    def __len__(self) -> int:
        return len(self._seeds) + len(self._discovered)

    def __contains__(self, user: str) -> bool:
        user = normalize_address(user)
        return user in self._seeds or user in self._discovered

    def add(self, user: str) -> bool:
        """Track ``user``. Returns True if it was not tracked before."""
        user = normalize_address(user)
        if user in self._seeds:
            return False
        is_new = user not in self._discovered
        self._discovered[user] = None
        self._discovered.move_to_end(user)
        while len(self._discovered) > self.max_users:
            evicted, _ = self._discovered.popitem(last=False)
            logger.debug("Evicted tracked user %s", evicted)
        return is_new

    def due(self, now: Optional[float] = None) -> bool:
        now = self._clock() if now is None else now
        return self._last_refresh is None or now - self._last_refresh >= self.refresh_interval

    def maybe_refresh(self, now: Optional[float] = None) -> int:
        now = self._clock() if now is None else now
        if not self.due(now):
            return 0
        return self.refresh(now)

    def refresh(self, now: Optional[float] = None) -> int:
        """Scan the lookback window for new schedule owners.

        Failures are logged and leave the tracked set untouched.
        """
        self._last_refresh = self._clock() if now is None else now
        try:
            current = self.network.block_number()
            from_block = max(0, current - self.lookback_blocks)
            owners = self.agent.schedule_owners_created(from_block, current)
        except DeputyError as e:
            logger.warning("User discovery failed: %s", e)
            return 0

        added = 0
        for owner in owners:
            if self.add(owner):
                added += 1
                logger.info("Discovered new user: %s", owner)
        return added


class CandidateSource(Protocol):
    last_used: str

    def candidates(self, now: int) -> list[Schedule]: ...


class EnumerationSource:
    """Enumerate every tracked user's schedules directly from the registry."""

    name = "enumeration"

    def __init__(self, agent: AgentAdapter, cache: UserDiscoveryCache):
        self.agent = agent
        self.cache = cache
        self.last_used = self.name

    def candidates(self, now: int) -> list[Schedule]:
        self.cache.maybe_refresh(now)
        schedules: list[Schedule] = []
        for user in self.cache.users:
            try:
                schedules.extend(self.agent.list_schedules(user, active_only=True))
            except DeputyError as e:
                logger.error("Error fetching schedules for %s: %s", user, e)
        return schedules


class ReadModelSource:
    """Query the read-model for active schedules, enumerating on failure."""

    name = "read_model"

    def __init__(self, client: ReadModelClient, agent: AgentAdapter, fallback: EnumerationSource):
        self.client = client
        self.agent = agent
        self.fallback = fallback
        self.last_used = self.name

    def candidates(self, now: int) -> list[Schedule]:
        try:
            rows = self.client.active_schedules(self.agent.kind)
        except ReadModelError as e:
            logger.warning("Read-model unavailable, falling back to enumeration: %s", e)
            self.last_used = self.fallback.name
            return self.fallback.candidates(now)

        self.last_used = self.name
        if self.agent.kind is AgentKind.DCA:
            return rows
        return self._hydrate(rows)

    def _hydrate(self, rows: list[Schedule]) -> list[Schedule]:
        schedules = []
        for row in rows:
            try:
                schedules.append(self.agent.get_schedule(row.owner, row.schedule_id))
            except DeputyError as e:
                logger.error("Error hydrating %s: %s", row.label, e)
        return schedules
