"""Unit tests for auth/lockout.py -- lockout duration policy.

Covers:
- No lock below MAX_LOGIN_ATTEMPTS
- 15 minute base lock at the threshold, doubling per further failure
- 4 hour cap, including very large attempt counts
- is_account_locked() boundary at exactly locked_until
"""

from datetime import datetime, timedelta, timezone

import pytest

from auth.lockout import (
    BASE_LOCKOUT,
    MAX_LOCKOUT,
    MAX_LOGIN_ATTEMPTS,
    calculate_lock_until,
    is_account_locked,
    lockout_duration,
    seconds_remaining,
)

NOW = datetime(2026, 3, 1, 9, 30, tzinfo=timezone.utc)


@pytest.mark.parametrize("attempts", [0, 1, 4])
def test_below_threshold_has_no_lock(attempts):
    assert lockout_duration(attempts) is None
    assert calculate_lock_until(attempts, NOW) is None


@pytest.mark.parametrize(
    "attempts,minutes",
    [(5, 15), (6, 30), (7, 60), (8, 120), (9, 240), (10, 240)],
)
def test_lock_duration_doubles_then_caps(attempts, minutes):
    assert calculate_lock_until(attempts, NOW) == NOW + timedelta(minutes=minutes)


def test_threshold_matches_base_lockout():
    assert lockout_duration(MAX_LOGIN_ATTEMPTS) == BASE_LOCKOUT


def test_huge_attempt_count_stays_at_cap():
    assert lockout_duration(10_000) == MAX_LOCKOUT


def test_is_account_locked_boundaries():
    until = NOW + timedelta(minutes=15)
    assert is_account_locked(until, NOW) is True
    assert is_account_locked(until, until) is False
    assert is_account_locked(None, NOW) is False


def test_seconds_remaining_never_negative():
    assert seconds_remaining(NOW + timedelta(seconds=90), NOW) == 90
    assert seconds_remaining(NOW - timedelta(seconds=90), NOW) == 0
    assert seconds_remaining(None, NOW) == 0
