"""Tests for keeper configuration loading and validation."""

from pathlib import Path

import pytest
from eth_account import Account

from deputy.config import DEFAULT_MAX_GAS_PRICE, KeeperConfig
from deputy.errors import ConfigError
from deputy.schedule import AgentKind


KEEPER = Account.create()
AGENT = Account.create().address


def base_env(**overrides):
    env = {"KEEPER_PRIVATE_KEY": KEEPER.key.hex(), "AGENT_ADDRESS": AGENT}
    env.update(overrides)
    return env


def test_minimal_env_uses_defaults():
    config = KeeperConfig.from_env(base_env())
    assert config.agent_address == AGENT
    assert config.keeper_address == KEEPER.address
    assert config.agent_kind is AgentKind.DCA
    assert config.check_interval == 60
    assert config.max_gas_price == DEFAULT_MAX_GAS_PRICE
    assert config.min_keeper_balance == 10**16
    assert config.confirmation_timeout == 120
    assert config.gas_limit == 500_000
    assert config.discovery_lookback_blocks == 10_000
    assert config.read_model_url is None
    assert config.master_agent_address is None


def test_missing_private_key_is_fatal():
    with pytest.raises(ConfigError, match="KEEPER_PRIVATE_KEY"):
        KeeperConfig.from_env({"AGENT_ADDRESS": AGENT})


def test_invalid_private_key_is_fatal():
    with pytest.raises(ConfigError, match="not a valid private key"):
        KeeperConfig.from_env(base_env(KEEPER_PRIVATE_KEY="0x1234"))


def test_missing_agent_is_fatal():
    with pytest.raises(ConfigError, match="AGENT_ADDRESS"):
        KeeperConfig.from_env({"KEEPER_PRIVATE_KEY": KEEPER.key.hex()})


def test_legacy_names_accepted():
    env = {
        "KEEPER_PRIVATE_KEY": KEEPER.key.hex(),
        "DCA_AGENT_ADDRESS": AGENT.lower(),
        "ENVIO_GRAPHQL_URL": "http://localhost:8080/v1/graphql",
    }
    config = KeeperConfig.from_env(env)
    assert config.agent_address == AGENT
    assert config.read_model_url == "http://localhost:8080/v1/graphql"


def test_overrides_parsed():
    seeds = [Account.create().address for _ in range(2)]
    config = KeeperConfig.from_env(
        base_env(
            AGENT_KIND="Yield",
            CHECK_INTERVAL="30",
            MAX_GAS_PRICE="20000000000",
            SEED_USERS=" , ".join(s.lower() for s in seeds),
            YIELD_INTERVAL="3600",
            DEPUTY_HOME="/tmp/deputy-test",
        )
    )
    assert config.agent_kind is AgentKind.YIELD
    assert config.check_interval == 30
    assert config.max_gas_price == 20 * 10**9
    assert config.seed_users == tuple(seeds)
    assert config.yield_interval == 3600
    assert config.health_path == Path("/tmp/deputy-test/health.json")
    assert config.audit_path == Path("/tmp/deputy-test/audit.jsonl")
    assert config.audit_key_path == Path("/tmp/deputy-test-secrets/audit_hmac.key")


@pytest.mark.parametrize(
    "name,value,match",
    [
        ("CHECK_INTERVAL", "soon", "must be an integer"),
        ("CHECK_INTERVAL", "0", "check_interval must be positive"),
        ("CONFIRMATION_TIMEOUT", "-1", "confirmation_timeout must be positive"),
        ("AGENT_KIND", "lending", "AGENT_KIND"),
        ("MASTER_AGENT_ADDRESS", "0x123", "MASTER_AGENT_ADDRESS"),
        ("SEED_USERS", "0xnope", "SEED_USERS"),
    ],
)
def test_invalid_values_rejected(name, value, match):
    with pytest.raises(ConfigError, match=match):
        KeeperConfig.from_env(base_env(**{name: value}))


def test_private_key_not_in_repr():
    config = KeeperConfig.from_env(base_env())
    assert KEEPER.key.hex() not in repr(config)


def test_config_is_immutable():
    config = KeeperConfig.from_env(base_env())
    with pytest.raises(AttributeError):
        config.check_interval = 1  # type: ignore[misc]
