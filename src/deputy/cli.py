"""
Deputy CLI — Keeper for delegated recurring execution.

Commands:
    deputy run         Run the keeper loop (or a single tick with --once)
    deputy status      Show keeper balance, fee conditions and tracked schedules
    deputy delegation  Show a user's delegation and remaining allowance
    deputy health      Show the keeper heartbeat written after each tick
    deputy audit       View audit trail
    deputy demo        Run a full demo against an in-process chain
"""

from __future__ import annotations

import json
import logging
import os
import sys
import time
from pathlib import Path
from typing import Optional

import click
from dotenv import find_dotenv, load_dotenv
from eth_account import Account

from . import __version__
from .agents import build_agent
from .audit import AuditTrail, audit_key_path_for
from .chain import ChainClient, LedgerClient
from .config import KeeperConfig
from .discovery import EnumerationSource, ReadModelSource, UserDiscoveryCache
from .engine import ExecutionEngine
from .errors import ConfigError, DeputyError
from .guard import BalanceMonitor, FeeGuard, HealthReporter, HealthState
from .local import LocalChain
from .read_model import ReadModelClient
from .schedule import Outcome, is_ready, seconds_until_ready
from .scheduler import KeeperScheduler, TickReport
from .storage import DEFAULT_HOME
from .units import format_ether, format_gwei, format_units, normalize_address


OUTCOME_ICONS = {
    Outcome.SKIPPED_NOT_READY: "⏳",
    Outcome.SKIPPED_FEE_TOO_HIGH: "⏸️ ",
    Outcome.SKIPPED_SIMULATION_FAILED: "🚫",
    Outcome.SUBMITTED: "📤",
    Outcome.CONFIRMED_SUCCESS: "✅",
    Outcome.CONFIRMED_FAILURE: "❌",
    Outcome.TIMED_OUT: "⌛",
    Outcome.TRANSPORT_ERROR: "⚠️ ",
    Outcome.DRY_RUN: "🧪",
}


# ── Wiring ────────────────────────────────────────────────────────

def _home() -> Path:
    override = os.getenv("DEPUTY_HOME")
    return Path(override).expanduser() if override else DEFAULT_HOME


def _audit_trail(home: Path) -> AuditTrail:
    return AuditTrail(path=home / "audit.jsonl", key_path=audit_key_path_for(home))


def _load_config() -> KeeperConfig:
    try:
        return KeeperConfig.from_env()
    except ConfigError as e:
        click.echo(f"❌ Configuration error: {e}", err=True)
        sys.exit(1)


def build_scheduler(
    config: KeeperConfig,
    dry_run: bool = False,
    chain: Optional[ChainClient] = None,
) -> KeeperScheduler:
    """Assemble the keeper from configuration."""
    chain = chain or ChainClient.from_private_key(config.rpc_url, config.private_key)
    agent = build_agent(config.agent_kind, chain, config.agent_address, config.yield_interval)
    ledger = LedgerClient(chain, config.master_agent_address) if config.master_agent_address else None

    cache = UserDiscoveryCache(
        agent,
        chain,
        lookback_blocks=config.discovery_lookback_blocks,
        refresh_interval=config.discovery_interval,
        max_users=config.max_tracked_users,
        seed_users=config.seed_users,
    )
    source = EnumerationSource(agent, cache)
    if config.read_model_url:
        source = ReadModelSource(
            ReadModelClient(config.read_model_url, yield_interval=config.yield_interval),
            agent,
            fallback=source,
        )

    audit = AuditTrail(path=config.audit_path, key_path=config.audit_key_path)
    engine = ExecutionEngine(
        agent,
        FeeGuard(chain, config.max_gas_price),
        ledger=ledger,
        audit=audit,
        confirmation_timeout=config.confirmation_timeout,
        gas_limit=config.gas_limit,
        dry_run=dry_run,
    )
    return KeeperScheduler(
        source,
        engine,
        interval_seconds=config.check_interval,
        balance_monitor=BalanceMonitor(
            chain,
            config.keeper_address,
            min_balance=config.min_keeper_balance,
            interval_seconds=config.balance_check_interval,
        ),
        health=HealthReporter(config.health_path),
        health_state=HealthState(
            keeper_address=config.keeper_address,
            agent_address=config.agent_address,
            check_interval=config.check_interval,
            started_at=time.time(),
        ),
        audit=audit,
    )


def _echo_report(report: TickReport) -> None:
    click.echo(
        f"   Source: {report.source} | candidates: {report.candidates} | ready: {report.ready}"
    )
    for attempt in report.attempts:
        icon = OUTCOME_ICONS[attempt.outcome]
        line = f"   {icon} {attempt.schedule.label}: {attempt.outcome.value}"
        if attempt.tx_hash:
            line += f" tx={attempt.tx_hash}"
        if attempt.reason and attempt.outcome is not Outcome.CONFIRMED_SUCCESS:
            line += f" ({attempt.reason})"
        if attempt.effects:
            line += f" {attempt.effects}"
        click.echo(line)


# ── CLI ───────────────────────────────────────────────────────────

@click.group()
@click.version_option(version=__version__)
@click.option(
    "--log-level",
    default="INFO",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Logging verbosity",
)
@click.option("--env-file", default=None, type=click.Path(dir_okay=False), help=".env file to load")
def main(log_level: str, env_file: Optional[str]):
    """Deputy — Keeper for delegated recurring on-chain execution."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    load_dotenv(env_file or find_dotenv(usecwd=True))


@main.command()
@click.option("--once", is_flag=True, help="Run a single tick and exit")
@click.option("--dry-run", is_flag=True, help="Simulate ready schedules without submitting")
def run(once: bool, dry_run: bool):
    """Run the keeper."""
    config = _load_config()
    scheduler = build_scheduler(config, dry_run=dry_run)

    click.echo("📋 Configuration:")
    click.echo(f"   Keeper Address: {config.keeper_address}")
    click.echo(f"   Agent ({config.agent_kind.value}): {config.agent_address}")
    click.echo(f"   RPC URL: {config.rpc_url}")
    click.echo(f"   Check Interval: {config.check_interval}s")
    click.echo(f"   Max Gas Price: {format_gwei(config.max_gas_price)}")
    if config.read_model_url:
        click.echo(f"   Read-model: {config.read_model_url}")
    if dry_run:
        click.echo("   Mode: dry run (no transactions will be sent)")

    if once:
        _echo_report(scheduler.run_once())
        return

    scheduler.install_signal_handlers()
    scheduler.run()


@main.command()
@click.option("--user", "users", multiple=True, help="Also inspect this user (repeatable)")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def status(users: tuple[str, ...], as_json: bool):
    """Show keeper balance, fee conditions and tracked schedules."""
    config = _load_config()
    chain = ChainClient.from_private_key(config.rpc_url, config.private_key)
    agent = build_agent(config.agent_kind, chain, config.agent_address, config.yield_interval)
    try:
        cache = UserDiscoveryCache(
            agent,
            chain,
            lookback_blocks=config.discovery_lookback_blocks,
            max_users=config.max_tracked_users,
            seed_users=config.seed_users + tuple(users),
        )
        balance = chain.get_balance(config.keeper_address)
        fee = FeeGuard(chain, config.max_gas_price).check()
        cache.refresh()
        now = int(time.time())
        schedules = EnumerationSource(agent, cache).candidates(now)
    except (DeputyError, ValueError) as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)

    if as_json:
        click.echo(json.dumps({
            "keeper_address": config.keeper_address,
            "balance": balance,
            "fee_price": fee.fee_price,
            "fee_ceiling": fee.ceiling,
            "fee_allowed": fee.allowed,
            "tracked_users": cache.users,
            "schedules": [
                {**s.to_dict(), "ready": is_ready(s, now), "seconds_until_ready": seconds_until_ready(s, now)}
                for s in schedules
            ],
        }, indent=2))
        return

    click.echo(f"🤖 Keeper {config.keeper_address}")
    click.echo(f"   Balance:   {format_ether(balance)}")
    click.echo(f"   Gas price: {format_gwei(fee.fee_price)} ({'ok' if fee.allowed else 'above ceiling'})")
    click.echo(f"   Tracking {len(cache)} user(s), {len(schedules)} active schedule(s)")
    for schedule in schedules:
        wait = seconds_until_ready(schedule, now)
        when = "ready now" if wait == 0 else f"ready in {wait}s"
        click.echo(
            f"   • {schedule.label}: {schedule.amount_per_action} every "
            f"{schedule.interval_seconds}s, {when}"
        )


@main.command()
@click.argument("user")
@click.option("--agent", default=None, help="Agent address (default: AGENT_ADDRESS)")
def delegation(user: str, agent: Optional[str]):
    """Show a user's delegation and remaining daily allowance."""
    config = _load_config()
    if not config.master_agent_address:
        click.echo("❌ MASTER_AGENT_ADDRESS is not set", err=True)
        sys.exit(1)
    try:
        user = normalize_address(user)
        agent = normalize_address(agent) if agent else config.agent_address
    except ValueError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)

    chain = ChainClient(config.rpc_url)
    try:
        record = LedgerClient(chain, config.master_agent_address).get_delegation(user, agent)
    except DeputyError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)
    click.echo(json.dumps(record.to_dict(now=int(time.time())), indent=2))


@main.command()
@click.option("--max-age-ticks", type=int, default=3, help="Ticks without a heartbeat before unhealthy")
def health(max_age_ticks: int):
    """Show the keeper heartbeat. Exits 1 when missing or stale."""
    state = HealthReporter(_home() / "health.json").read()
    if state is None:
        click.echo("No heartbeat found. Is the keeper running?", err=True)
        sys.exit(1)

    click.echo(json.dumps(state.to_dict(), indent=2))
    if state.is_stale(time.time(), grace_ticks=max_age_ticks):
        click.echo("❌ Heartbeat is stale", err=True)
        sys.exit(1)
    if state.low_balance:
        click.echo("⚠️  Keeper balance is below the configured minimum", err=True)


@main.command()
@click.option("--owner", default=None, help="Filter by schedule owner")
@click.option("--limit", type=int, default=20, help="Number of events")
@click.option("--summary", "show_summary", is_flag=True, help="Show counts by event type")
def audit(owner: Optional[str], limit: int, show_summary: bool):
    """View the audit trail."""
    trail = _audit_trail(_home())
    try:
        if show_summary:
            click.echo(json.dumps(trail.summary(owner=owner), indent=2))
            return
        events = trail.read_events(owner=owner, limit=limit)
    except RuntimeError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)

    if not events:
        click.echo("No audit events found.")
        return

    for event in events:
        ts = time.strftime("%H:%M:%S", time.localtime(event.timestamp))
        status = "✅" if event.success else "❌"
        target = f" {event.owner}#{event.schedule_id}" if event.owner else ""
        tx = f" tx={event.tx_hash}" if event.tx_hash else ""
        reason = f" ({event.reason})" if event.reason else ""
        click.echo(f"  {ts} {status} {event.event_type}{target}{tx}{reason}")


@main.command()
def demo():
    """Run a full demo of the keeper against an in-process chain."""
    click.echo("🎬 Deputy Demo — Delegated Recurring Execution")
    click.echo("=" * 50)

    usdc = 10**6
    chain = LocalChain(fee_price=20 * 10**9)
    agent_address = Account.create().address
    alice, bob, carol = (Account.create().address for _ in range(3))

    click.echo("\n1️⃣  Delegating permissions...")
    chain.delegate(alice, agent_address, daily_limit=500 * usdc, expiry=chain.now + 30 * 86400)
    chain.delegate(bob, agent_address, daily_limit=100 * usdc, expiry=chain.now + 30 * 86400, spent_today=95 * usdc)
    chain.delegate(carol, agent_address, daily_limit=500 * usdc, expiry=chain.now - 1)
    click.echo(f"   Alice: 500 USDC/day    {alice}")
    click.echo("   Bob:   100 USDC/day, 95 already spent today")
    click.echo("   Carol: delegation expired")

    click.echo("\n2️⃣  Creating daily DCA schedules...")
    chain.create_schedule(agent_address, alice, amount=100 * usdc, interval=86400)
    chain.create_schedule(agent_address, bob, amount=10 * usdc, interval=86400)
    chain.create_schedule(agent_address, carol, amount=50 * usdc, interval=86400)

    agent = chain.agent(agent_address)
    cache = UserDiscoveryCache(agent, chain, clock=chain.time)
    engine = ExecutionEngine(
        agent,
        FeeGuard(chain, 50 * 10**9),
        ledger=chain,
        confirmation_timeout=120,
        clock=chain.time,
    )
    scheduler = KeeperScheduler(
        EnumerationSource(agent, cache),
        engine,
        interval_seconds=60,
        clock=chain.time,
        sleep=chain.advance,
    )

    click.echo("\n3️⃣  Tick 1: everything is due...")
    _echo_report(scheduler.tick())

    click.echo("\n4️⃣  Tick 2: one minute later, nothing is due again...")
    chain.advance(60)
    _echo_report(scheduler.tick())

    click.echo("\n5️⃣  Tick 3: next day, but gas spikes to 60 gwei (max 50)...")
    chain.advance(86400)
    chain.fee_price = 60 * 10**9
    _echo_report(scheduler.tick())

    click.echo("\n6️⃣  Tick 4: gas back to normal...")
    chain.advance(60)
    chain.fee_price = 20 * 10**9
    _echo_report(scheduler.tick())

    click.echo("\n7️⃣  Delegations after execution...")
    for name, user in (("Alice", alice), ("Bob", bob), ("Carol", carol)):
        record = chain.get_delegation(user, agent_address)
        click.echo(
            f"   {name}: spent {format_units(record.effective_spent(chain.now), 6)} of "
            f"{format_units(record.daily_limit, 6)} USDC today, usable={record.is_usable(chain.now)}"
        )

    click.echo("\n" + "=" * 50)
    click.echo("🎉 Demo complete! Discover → Ready → Fee gate → Simulate → Submit → Confirm")
    click.echo("   No transaction was sent for an action that would have reverted.")


if __name__ == "__main__":
    main()
