"""Tests for delegation window, expiry and allowance semantics."""

import pytest
from eth_account import Account

from deputy.delegation import DAY_SECONDS, Delegation, check_allowance


USER = Account.create().address
AGENT = Account.create().address
T0 = 1_700_000_000


def make_delegation(**kwargs):
    defaults = dict(
        user=USER,
        agent=AGENT,
        daily_limit=100,
        spent_today=0,
        last_reset_timestamp=T0,
        active=True,
        expiry=T0 + 30 * DAY_SECONDS,
    )
    defaults.update(kwargs)
    return Delegation(**defaults)


class TestWindowReset:
    def test_spent_counts_inside_window(self):
        d = make_delegation(spent_today=40)
        assert d.effective_spent(T0 + DAY_SECONDS - 1) == 40
        assert d.remaining(T0 + DAY_SECONDS - 1) == 60

    def test_spent_resets_exactly_at_window_end(self):
        d = make_delegation(spent_today=40)
        assert d.effective_spent(T0 + DAY_SECONDS) == 0
        assert d.remaining(T0 + DAY_SECONDS) == 100

    def test_stored_value_untouched_by_effective_reset(self):
        d = make_delegation(spent_today=40)
        d.effective_spent(T0 + 2 * DAY_SECONDS)
        assert d.spent_today == 40

    def test_remaining_never_negative(self):
        d = make_delegation(daily_limit=100, spent_today=150)
        assert d.remaining(T0 + 10) == 0


class TestUsability:
    def test_usable_through_expiry_second(self):
        d = make_delegation(expiry=T0 + 100)
        assert d.is_usable(T0 + 100)
        assert not d.is_usable(T0 + 101)

    def test_inactive_is_never_usable(self):
        d = make_delegation(active=False)
        assert not d.is_usable(T0)

    def test_to_dict_reports_derived_fields(self):
        d = make_delegation(spent_today=30)
        data = d.to_dict(now=T0 + 1)
        assert data["effective_spent"] == 30
        assert data["remaining"] == 70
        assert data["usable"] is True


class TestCheckAllowance:
    def test_within_allowance(self):
        ok, reason = check_allowance(make_delegation(spent_today=50), 50, T0 + 1)
        assert ok
        assert reason == "Within allowance"

    def test_quota_exhausted(self):
        ok, reason = check_allowance(make_delegation(spent_today=95), 10, T0 + 1)
        assert not ok
        assert "exceeds remaining daily allowance 5" in reason

    def test_quota_available_again_after_window(self):
        ok, _ = check_allowance(make_delegation(spent_today=95), 10, T0 + DAY_SECONDS)
        assert ok

    def test_expired(self):
        ok, reason = check_allowance(make_delegation(expiry=T0 - 1), 10, T0)
        assert not ok
        assert "expired" in reason

    def test_inactive(self):
        ok, reason = check_allowance(make_delegation(active=False), 10, T0)
        assert not ok
        assert "not active" in reason

    @pytest.mark.parametrize("amount", [0, -5])
    def test_non_positive_amount(self, amount):
        ok, reason = check_allowance(make_delegation(), amount, T0)
        assert not ok
        assert "positive" in reason
