"""
Keeper configuration.

One immutable KeeperConfig, validated eagerly at startup. Missing or
malformed settings raise ConfigError before the first tick.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

from eth_account import Account

from .audit import audit_key_path_for
from .delegation import DAY_SECONDS
from .discovery import DEFAULT_LOOKBACK_BLOCKS, DEFAULT_MAX_TRACKED_USERS, DEFAULT_REFRESH_INTERVAL
from .engine import DEFAULT_CONFIRMATION_TIMEOUT, DEFAULT_GAS_LIMIT
from .errors import ConfigError
from .guard import DEFAULT_BALANCE_CHECK_INTERVAL, DEFAULT_MIN_BALANCE_WEI
from .schedule import AgentKind
from .storage import DEFAULT_HOME
from .units import normalize_address


DEFAULT_RPC_URL = "https://ethereum-sepolia-rpc.publicnode.com"
DEFAULT_CHECK_INTERVAL = 60
DEFAULT_MAX_GAS_PRICE = 50_000_000_000  # 50 gwei


@dataclass(frozen=True)
class KeeperConfig:
    private_key: str = field(repr=False)
    agent_address: str
    rpc_url: str = DEFAULT_RPC_URL
    agent_kind: AgentKind = AgentKind.DCA
    master_agent_address: Optional[str] = None
    check_interval: int = DEFAULT_CHECK_INTERVAL
    max_gas_price: int = DEFAULT_MAX_GAS_PRICE
    min_keeper_balance: int = DEFAULT_MIN_BALANCE_WEI
    balance_check_interval: int = DEFAULT_BALANCE_CHECK_INTERVAL
    confirmation_timeout: int = DEFAULT_CONFIRMATION_TIMEOUT
    gas_limit: int = DEFAULT_GAS_LIMIT
    read_model_url: Optional[str] = None
    discovery_lookback_blocks: int = DEFAULT_LOOKBACK_BLOCKS
    discovery_interval: int = DEFAULT_REFRESH_INTERVAL
    max_tracked_users: int = DEFAULT_MAX_TRACKED_USERS
    seed_users: tuple[str, ...] = ()
    yield_interval: int = DAY_SECONDS
    home: Path = DEFAULT_HOME

    def __post_init__(self):
        if not self.private_key:
            raise ConfigError("KEEPER_PRIVATE_KEY is not set")
        try:
            Account.from_key(self.private_key)
        except (ValueError, TypeError) as e:
            raise ConfigError("KEEPER_PRIVATE_KEY is not a valid private key") from e

        if not self.agent_address:
            raise ConfigError("AGENT_ADDRESS is not set")
        object.__setattr__(self, "agent_address", _address("AGENT_ADDRESS", self.agent_address))
        if self.master_agent_address:
            object.__setattr__(
                self,
                "master_agent_address",
                _address("MASTER_AGENT_ADDRESS", self.master_agent_address),
            )
        object.__setattr__(
            self, "seed_users", tuple(_address("SEED_USERS", u) for u in self.seed_users)
        )

        if not self.rpc_url:
            raise ConfigError("RPC_URL is empty")

        for name in (
            "check_interval",
            "max_gas_price",
            "balance_check_interval",
            "confirmation_timeout",
            "gas_limit",
            "discovery_lookback_blocks",
            "discovery_interval",
            "max_tracked_users",
            "yield_interval",
        ):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be positive, got {getattr(self, name)}")
        if self.min_keeper_balance < 0:
            raise ConfigError("min_keeper_balance must not be negative")

    @property
    def keeper_address(self) -> str:
        return Account.from_key(self.private_key).address

    @property
    def audit_path(self) -> Path:
        return self.home / "audit.jsonl"

    @property
    def health_path(self) -> Path:
        return self.home / "health.json"

    @property
    def audit_key_path(self) -> Path:
        return audit_key_path_for(self.home)

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "KeeperConfig":
        """Build a config from environment variables.

        Legacy names (DCA_AGENT_ADDRESS, ENVIO_GRAPHQL_URL) are accepted when
        the current name is unset.
        """
        env = os.environ if env is None else env

        kind_raw = env.get("AGENT_KIND", AgentKind.DCA.value).strip().lower()
        try:
            agent_kind = AgentKind(kind_raw)
        except ValueError:
            raise ConfigError(f"AGENT_KIND must be one of: dca, yield (got {kind_raw!r})") from None

        seeds = tuple(u.strip() for u in env.get("SEED_USERS", "").split(",") if u.strip())

        return cls(
            private_key=env.get("KEEPER_PRIVATE_KEY", "").strip(),
            agent_address=(env.get("AGENT_ADDRESS") or env.get("DCA_AGENT_ADDRESS") or "").strip(),
            rpc_url=env.get("RPC_URL", DEFAULT_RPC_URL).strip(),
            agent_kind=agent_kind,
            master_agent_address=env.get("MASTER_AGENT_ADDRESS", "").strip() or None,
            check_interval=_int(env, "CHECK_INTERVAL", DEFAULT_CHECK_INTERVAL),
            max_gas_price=_int(env, "MAX_GAS_PRICE", DEFAULT_MAX_GAS_PRICE),
            min_keeper_balance=_int(env, "MIN_KEEPER_BALANCE", DEFAULT_MIN_BALANCE_WEI),
            balance_check_interval=_int(env, "BALANCE_CHECK_INTERVAL", DEFAULT_BALANCE_CHECK_INTERVAL),
            confirmation_timeout=_int(env, "CONFIRMATION_TIMEOUT", DEFAULT_CONFIRMATION_TIMEOUT),
            gas_limit=_int(env, "GAS_LIMIT", DEFAULT_GAS_LIMIT),
            read_model_url=(env.get("READ_MODEL_URL") or env.get("ENVIO_GRAPHQL_URL") or "").strip() or None,
            discovery_lookback_blocks=_int(env, "DISCOVERY_LOOKBACK_BLOCKS", DEFAULT_LOOKBACK_BLOCKS),
            discovery_interval=_int(env, "DISCOVERY_INTERVAL", DEFAULT_REFRESH_INTERVAL),
            max_tracked_users=_int(env, "MAX_TRACKED_USERS", DEFAULT_MAX_TRACKED_USERS),
            seed_users=seeds,
            yield_interval=_int(env, "YIELD_INTERVAL", DAY_SECONDS),
            home=Path(env["DEPUTY_HOME"]).expanduser() if env.get("DEPUTY_HOME") else DEFAULT_HOME,
        )


def _int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from None


def _address(name: str, value: str) -> str:
    try:
        return normalize_address(value)
    except ValueError:
        raise ConfigError(f"{name} is not a valid address: {value!r}") from None
