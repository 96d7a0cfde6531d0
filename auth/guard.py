"""
auth/guard.py -- Brute-force lockout for the admin login path.

Counters are keyed by (normalized username, client address):
  - the address is part of the key, so one noisy address cannot lock every
    admin out, and one targeted account is not locked for every address;
  - the username is trimmed and case-folded, so "Admin " and "admin" share a
    counter.

Sliding window: a failure whose predecessor is older than the window starts
a fresh count at 1. When the count reaches the threshold, locked_until is set
to now + lockout. Further failures while locked never move locked_until --
the lockout is a fixed penalty per violation window, not cumulative. Once it
has expired, the next failure opens a fresh window.

check_allowed() is a read-only fast path. record_failure() is read-then-write:
two failures from the same pair in the same instant can both read N and both
write N+1. That undercount by one is an accepted property of a deterrent, not
a security boundary (see tests/test_login_guard.py).

Layer rule: no imports from api/, workspace/, sharing/, or billing/.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from auth.models import LoginAttempt

if TYPE_CHECKING:
    from auth.store import AuthStore
    from core.config import Settings

logger = logging.getLogger("pecal.auth.guard")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def normalize_account(username: str) -> str:
    return username.strip().casefold()


@dataclass(frozen=True)
class LoginCheck:
    allowed: bool
    retry_after_seconds: int = 0


class LoginGuard:
    """Tracks failed privileged logins per (account, origin) and imposes a temporary lockout.

    Usage:
        guard = LoginGuard.from_settings(store, settings)
        check = guard.check_allowed(username, ip)
        if not check.allowed: -> 429 with Retry-After: check.retry_after_seconds
        ...
        guard.record_failure(username, ip)   # on bad credentials
        guard.clear_failures(username, ip)   # on success
    """

    def __init__(
        self,
        store: AuthStore,
        threshold: int = 5,
        window_seconds: int = 15 * 60,
        lockout_seconds: int = 15 * 60,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if threshold < 1:
            raise ValueError("Lockout threshold must be at least 1.")
        self._store = store
        self.threshold = threshold
        self.window = timedelta(seconds=window_seconds)
        self.lockout = timedelta(seconds=lockout_seconds)
        self._clock = clock

    @classmethod
    def from_settings(cls, store: AuthStore, settings: Settings) -> LoginGuard:
        return cls(
            store,
            threshold=settings.admin_lockout_threshold,
            window_seconds=settings.admin_lockout_window_seconds,
            lockout_seconds=settings.admin_lockout_seconds,
        )

    def check_allowed(self, account: str, origin: str) -> LoginCheck:
        row = self._store.get_login_attempt(normalize_account(account), origin)
        if row is None:
            return LoginCheck(allowed=True)
        now = self._clock()
        locked_until = _parse(row.locked_until)
        if locked_until is not None and locked_until > now:
            retry_after = max(1, math.ceil((locked_until - now).total_seconds()))
            return LoginCheck(allowed=False, retry_after_seconds=retry_after)
        return LoginCheck(allowed=True)

    def record_failure(self, account: str, origin: str) -> LoginAttempt:
        """Count one failed login and lock the pair once the threshold is reached."""
        username = normalize_account(account)
        now = self._clock()
        now_iso = now.isoformat()

        row = self._store.get_login_attempt(username, origin)
        if row is None:
            first = LoginAttempt(
                username=username,
                ip_address=origin,
                fail_count=1,
                first_failed_at=now_iso,
                last_failed_at=now_iso,
                locked_until=self._lock_time(1, now),
            )
            if self._store.insert_login_attempt(first):
                return first
            # Lost the insert race to a concurrent failure; count on top of its row.
            row = self._store.get_login_attempt(username, origin)
            if row is None:
                raise RuntimeError("login attempt row vanished during insert race")

        locked_until = _parse(row.locked_until)
        last_failed = _parse(row.last_failed_at)

        if locked_until is not None and locked_until > now:
            # Still locked: count it, but never extend the lockout.
            row.fail_count += 1
            row.last_failed_at = now_iso
            self._store.update_login_attempt(row)
            return row

        lock_expired = locked_until is not None
        outside_window = last_failed is None or last_failed < now - self.window
        if outside_window or lock_expired:
            row.fail_count = 1
            row.first_failed_at = now_iso
        else:
            row.fail_count += 1
        row.last_failed_at = now_iso
        row.locked_until = self._lock_time(row.fail_count, now)
        self._store.update_login_attempt(row)

        if row.locked_until is not None:
            logger.warning(
                "Admin login locked for %r from %s after %d failures", username, origin, row.fail_count
            )
        return row

    def clear_failures(self, account: str, origin: str) -> None:
        self._store.delete_login_attempt(normalize_account(account), origin)

    def _lock_time(self, fail_count: int, now: datetime) -> str | None:
        if fail_count >= self.threshold:
            return (now + self.lockout).isoformat()
        return None
