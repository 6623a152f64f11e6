"""
Deputy — Keeper for delegated recurring on-chain execution.

A user delegates a bounded daily allowance to an agent contract:
Keeper discovers due schedules → Gates on fees → Simulates → Executes.
"""

__version__ = "0.1.0"

from .delegation import Delegation, DelegationLedger, check_allowance
from .schedule import AgentKind, ExecutionAttempt, Outcome, Schedule, is_ready, seconds_until_ready
from .chain import ChainClient, Confirmation, LedgerClient
from .agents import AgentAdapter, DCAAgent, YieldAgent, build_agent
from .local import LocalAgent, LocalChain
from .read_model import ReadModelClient
from .discovery import EnumerationSource, ReadModelSource, UserDiscoveryCache
from .guard import BalanceMonitor, FeeCheck, FeeGuard, HealthReporter, HealthState
from .engine import ExecutionEngine
from .scheduler import KeeperScheduler, SchedulerState, TickReport
from .config import KeeperConfig
from .audit import AuditTrail, EventType

__all__ = [
    "Delegation", "DelegationLedger", "check_allowance",
    "AgentKind", "ExecutionAttempt", "Outcome", "Schedule", "is_ready", "seconds_until_ready",
    "ChainClient", "Confirmation", "LedgerClient",
    "AgentAdapter", "DCAAgent", "YieldAgent", "build_agent",
    "LocalAgent", "LocalChain", "ReadModelClient",
    "EnumerationSource", "ReadModelSource", "UserDiscoveryCache",
    "BalanceMonitor", "FeeCheck", "FeeGuard", "HealthReporter", "HealthState",
    "ExecutionEngine", "KeeperScheduler", "SchedulerState", "TickReport",
    "KeeperConfig", "AuditTrail", "EventType",
]
