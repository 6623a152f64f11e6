"""Tests for the guarded execution engine against the in-process chain."""

import pytest
from eth_account import Account

from deputy.audit import AuditTrail, EventType
from deputy.delegation import DAY_SECONDS
from deputy.engine import ExecutionEngine
from deputy.errors import SimulationRejected
from deputy.guard import FeeGuard
from deputy.local import LocalAgent, LocalChain
from deputy.schedule import Outcome
from deputy.scheduler import KeeperScheduler
from deputy.discovery import EnumerationSource, UserDiscoveryCache


AGENT = Account.create().address
USER = Account.create().address
CEILING = 50


def make_chain(**kwargs):
    defaults = dict(fee_price=20, confirmation_delay=12)
    defaults.update(kwargs)
    return LocalChain(**defaults)


def setup_schedule(chain, daily_limit=1000, amount=100, interval=DAY_SECONDS, spent_today=0, expiry=None):
    chain.delegate(
        USER,
        AGENT,
        daily_limit=daily_limit,
        expiry=chain.now + 30 * DAY_SECONDS if expiry is None else expiry,
        spent_today=spent_today,
    )
    return chain.create_schedule(AGENT, USER, amount=amount, interval=interval)


def make_engine(chain, agent=None, **kwargs):
    agent = agent or chain.agent(AGENT)
    defaults = dict(ledger=chain, confirmation_timeout=120, clock=chain.time)
    defaults.update(kwargs)
    return ExecutionEngine(agent, FeeGuard(chain, CEILING), **defaults)


class TestScenarios:
    def test_never_executed_schedule_runs_to_confirmation(self):
        chain = make_chain()
        sid = setup_schedule(chain)
        engine = make_engine(chain)
        schedule = engine.agent.get_schedule(USER, sid)

        attempt = engine.execute(schedule)

        assert attempt.outcome is Outcome.CONFIRMED_SUCCESS
        assert attempt.tx_hash == chain.submissions[0]
        assert attempt.fee_at_submission == 20
        assert attempt.effects == {"amount_spent": 100, "amount_received": 100}
        after = engine.agent.get_schedule(USER, sid)
        assert after.last_execution_time == attempt.confirmed_at == chain.now
        assert engine.last_seen_execution[schedule.key] == attempt.confirmed_at
        assert chain.get_delegation(USER, AGENT).spent_today == 100

    def test_quota_exhausted_is_rejected_without_submission(self):
        chain = make_chain()
        sid = setup_schedule(chain, daily_limit=100, spent_today=95, amount=10)
        engine = make_engine(chain)

        attempt = engine.execute(engine.agent.get_schedule(USER, sid))

        assert attempt.outcome is Outcome.SKIPPED_SIMULATION_FAILED
        assert "exceeds remaining daily allowance" in attempt.reason
        assert chain.submissions == []

    def test_quota_exhausted_rejected_by_remote_dry_run_without_ledger(self):
        chain = make_chain()
        sid = setup_schedule(chain, daily_limit=100, spent_today=95, amount=10)
        engine = make_engine(chain, ledger=None)

        attempt = engine.execute(engine.agent.get_schedule(USER, sid))

        assert attempt.outcome is Outcome.SKIPPED_SIMULATION_FAILED
        assert chain.simulations == 1
        assert chain.submissions == []

    def test_fee_above_ceiling_defers(self):
        chain = make_chain(fee_price=60)
        sid = setup_schedule(chain)
        engine = make_engine(chain)
        schedule = engine.agent.get_schedule(USER, sid)

        attempt = engine.execute(schedule)
        assert attempt.outcome is Outcome.SKIPPED_FEE_TOO_HIGH
        assert attempt.fee_at_submission == 60
        assert chain.simulations == 0
        assert chain.submissions == []

        chain.advance(60)
        chain.fee_price = 40
        retry = engine.execute(engine.agent.get_schedule(USER, sid))
        assert retry.outcome is Outcome.CONFIRMED_SUCCESS

    def test_expired_delegation_never_executes(self):
        chain = make_chain()
        sid = setup_schedule(chain, expiry=chain.now - 1)
        engine = make_engine(chain)

        for _ in range(5):
            attempt = engine.execute(engine.agent.get_schedule(USER, sid))
            assert attempt.outcome is Outcome.SKIPPED_SIMULATION_FAILED
            assert "expired" in attempt.reason
            chain.advance(DAY_SECONDS)
        assert chain.submissions == []

    def test_slow_confirmation_blocks_next_dispatch(self):
        chain = make_chain(confirmation_delay=90)
        setup_schedule(chain)
        agent = chain.agent(AGENT)
        engine = make_engine(chain, agent=agent)
        scheduler = KeeperScheduler(
            EnumerationSource(agent, UserDiscoveryCache(agent, chain, clock=chain.time)),
            engine,
            interval_seconds=60,
            clock=chain.time,
            sleep=chain.advance,
        )

        first = scheduler.tick()
        assert [a.outcome for a in first.attempts] == [Outcome.CONFIRMED_SUCCESS]
        chain.advance(60)
        second = scheduler.tick()

        assert second.attempts == []
        assert len(chain.submissions) == 1


class TestAtMostOncePerInterval:
    def test_late_landing_after_timeout_does_not_double_spend(self):
        chain = make_chain(confirmation_delay=300)
        sid = setup_schedule(chain, amount=100)
        engine = make_engine(chain, confirmation_timeout=120)

        first = engine.execute(engine.agent.get_schedule(USER, sid))
        assert first.outcome is Outcome.TIMED_OUT

        chain.advance(60)
        second = engine.execute(engine.agent.get_schedule(USER, sid))
        assert second.outcome is Outcome.TIMED_OUT
        # The first transaction landed while waiting on the second
        assert chain.receipt(first.tx_hash).success

        chain.advance(60)
        third = engine.execute(engine.agent.get_schedule(USER, sid))
        assert third.outcome is Outcome.SKIPPED_NOT_READY

        chain.advance(300)
        assert chain.receipt(second.tx_hash).success is False
        assert chain.get_delegation(USER, AGENT).spent_today == 100

    def test_polling_faster_than_interval_executes_once(self):
        chain = make_chain()
        sid = setup_schedule(chain, interval=3600)
        engine = make_engine(chain)

        outcomes = []
        for _ in range(60):
            outcomes.append(engine.execute(engine.agent.get_schedule(USER, sid)).outcome)
            chain.advance(50)

        assert outcomes.count(Outcome.CONFIRMED_SUCCESS) == 1
        assert len(chain.submissions) == 1


class TestSimulation:
    def test_simulating_cancelled_schedule_is_idempotent(self):
        chain = make_chain()
        sid = setup_schedule(chain)
        chain.cancel_schedule(AGENT, USER, sid)
        engine = make_engine(chain)
        schedule = engine.agent.get_schedule(USER, sid)
        before = (schedule, chain.get_delegation(USER, AGENT))

        reasons = []
        for _ in range(3):
            with pytest.raises(SimulationRejected) as exc:
                engine.simulate(schedule)
            reasons.append(exc.value.reason)

        assert reasons == ["Schedule not active"] * 3
        assert (engine.agent.get_schedule(USER, sid), chain.get_delegation(USER, AGENT)) == before
        assert chain.submissions == []

    def test_simulating_unready_schedule_is_idempotent(self):
        chain = make_chain()
        sid = setup_schedule(chain)
        engine = make_engine(chain)
        engine.execute(engine.agent.get_schedule(USER, sid))
        schedule = engine.agent.get_schedule(USER, sid)

        for _ in range(3):
            with pytest.raises(SimulationRejected, match="Too soon"):
                engine.simulate(schedule)
        assert engine.agent.get_schedule(USER, sid) == schedule

    def test_cancellation_race_is_a_simulation_skip(self):
        chain = make_chain()
        sid = setup_schedule(chain)
        engine = make_engine(chain)
        stale = engine.agent.get_schedule(USER, sid)
        chain.cancel_schedule(AGENT, USER, sid)

        attempt = engine.execute(stale)

        assert attempt.outcome is Outcome.SKIPPED_SIMULATION_FAILED
        assert attempt.reason == "Schedule not active"


class TestFailureClassification:
    def test_not_ready_at_dispatch(self):
        chain = make_chain()
        sid = setup_schedule(chain)
        engine = make_engine(chain)
        engine.execute(engine.agent.get_schedule(USER, sid))

        attempt = engine.execute(engine.agent.get_schedule(USER, sid))

        assert attempt.outcome is Outcome.SKIPPED_NOT_READY
        assert attempt.reason.startswith("Next execution in")

    def test_revert_is_confirmed_failure_and_stays_ready(self):
        chain = make_chain()
        sid = setup_schedule(chain)
        engine = make_engine(chain)
        chain.revert_next = True

        attempt = engine.execute(engine.agent.get_schedule(USER, sid))

        assert attempt.outcome is Outcome.CONFIRMED_FAILURE
        assert attempt.tx_hash
        assert sid not in [k[1] for k in engine.last_seen_execution]
        retry = engine.execute(engine.agent.get_schedule(USER, sid))
        assert retry.outcome is Outcome.CONFIRMED_SUCCESS

    def test_transport_failure_is_contained(self):
        chain = make_chain()
        sid = setup_schedule(chain)
        engine = make_engine(chain)
        schedule = engine.agent.get_schedule(USER, sid)
        chain.transport_down = True

        attempt = engine.execute(schedule)

        assert attempt.outcome is Outcome.TRANSPORT_ERROR
        assert "Connection refused" in attempt.reason

    def test_dry_run_never_submits(self):
        chain = make_chain()
        sid = setup_schedule(chain)
        engine = make_engine(chain, dry_run=True)

        attempt = engine.execute(engine.agent.get_schedule(USER, sid))

        assert attempt.outcome is Outcome.DRY_RUN
        assert chain.simulations == 1
        assert chain.submissions == []


class _ReentrantAgent(LocalAgent):
    """Re-enters the engine while a confirmation is pending."""

    def __init__(self, chain, address):
        super().__init__(chain, address)
        self.engine = None
        self.nested = []
        self._schedule = None

    def submit(self, schedule, gas_price, gas_limit):
        self._schedule = schedule
        return super().submit(schedule, gas_price, gas_limit)

    def wait_for_confirmation(self, tx_hash, timeout):
        self.nested.append(self.engine.execute(self._schedule))
        return super().wait_for_confirmation(tx_hash, timeout)


def test_in_flight_schedule_is_not_dispatched_twice():
    chain = make_chain()
    sid = setup_schedule(chain)
    agent = _ReentrantAgent(chain, AGENT)
    engine = make_engine(chain, agent=agent)
    agent.engine = engine

    attempt = engine.execute(agent.get_schedule(USER, sid))

    assert attempt.outcome is Outcome.CONFIRMED_SUCCESS
    assert len(agent.nested) == 1
    assert agent.nested[0].outcome is Outcome.SKIPPED_NOT_READY
    assert "terminal outcome" in agent.nested[0].reason
    assert len(chain.submissions) == 1


def test_attempts_are_written_to_audit_trail(tmp_path):
    chain = make_chain()
    sid = setup_schedule(chain)
    trail = AuditTrail(path=tmp_path / "audit.jsonl", key_path=tmp_path / "secret" / "key")
    engine = make_engine(chain, audit=trail)

    engine.execute(engine.agent.get_schedule(USER, sid))

    types = [e.event_type for e in trail.read_events()]
    assert types == [EventType.EXECUTION_SUBMITTED.value, EventType.EXECUTION_CONFIRMED.value]
    confirmed = trail.read_events(event_type=EventType.EXECUTION_CONFIRMED)[0]
    assert confirmed.owner == USER
    assert confirmed.details["effects"]["amount_spent"] == 100


class _GarbledReceiptAgent(LocalAgent):
    """Submits normally, then fails to decode the receipt."""

    def wait_for_confirmation(self, tx_hash, timeout):
        super().wait_for_confirmation(tx_hash, timeout)
        raise KeyError("logs")


def test_unexpected_error_after_submit_is_recorded(tmp_path):
    chain = make_chain()
    sid = setup_schedule(chain)
    trail = AuditTrail(path=tmp_path / "audit.jsonl", key_path=tmp_path / "secret" / "key")
    engine = make_engine(chain, agent=_GarbledReceiptAgent(chain, AGENT), audit=trail)

    attempt = engine.execute(engine.agent.get_schedule(USER, sid))

    assert attempt.outcome is Outcome.TRANSPORT_ERROR
    assert attempt.tx_hash == chain.submissions[0]
    assert attempt.reason == "KeyError: 'logs'"
    errors = trail.read_events(event_type=EventType.EXECUTION_ERROR)
    assert [e.tx_hash for e in errors] == [attempt.tx_hash]
    assert not engine._in_flight
