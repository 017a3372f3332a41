"""
auth/lockout.py -- Brute-force lockout policy.

Once an identity accumulates MAX_LOGIN_ATTEMPTS consecutive password
failures it is locked for BASE_LOCKOUT, doubling for every further failure
and capped at MAX_LOCKOUT:

    attempts  5 -> 15 min
    attempts  6 -> 30 min
    attempts  7 -> 60 min
    attempts  8 -> 120 min
    attempts 9+ -> 240 min

Both functions are pure; pass `now` to evaluate at a fixed instant.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

MAX_LOGIN_ATTEMPTS = 5
BASE_LOCKOUT = timedelta(minutes=15)
MAX_LOCKOUT = timedelta(hours=4)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def lockout_duration(failed_attempts: int) -> timedelta | None:
    if failed_attempts < MAX_LOGIN_ATTEMPTS:
        return None
    exponent = failed_attempts - MAX_LOGIN_ATTEMPTS
    # Past the cap the exponent no longer matters; bound it to keep the int small.
    if exponent > 16:
        return MAX_LOCKOUT
    return min(BASE_LOCKOUT * (2**exponent), MAX_LOCKOUT)


def calculate_lock_until(failed_attempts: int, now: datetime | None = None) -> datetime | None:
    """Return when the lock ends for this many failures, or None below the threshold."""
    duration = lockout_duration(failed_attempts)
    if duration is None:
        return None
    return (now or _utcnow()) + duration


def is_account_locked(locked_until: datetime | None, now: datetime | None = None) -> bool:
    if locked_until is None:
        return False
    return (now or _utcnow()) < locked_until


def seconds_remaining(locked_until: datetime | None, now: datetime | None = None) -> int:
    if locked_until is None:
        return 0
    delta = locked_until - (now or _utcnow())
    return max(int(delta.total_seconds()), 0)
