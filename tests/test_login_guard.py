"""
tests/test_login_guard.py -- Unit tests for auth/guard.py (admin brute-force lockout).

A mutable clock drives the guard so window and lockout boundaries are exact.

Covers:
  - lock exactly at the threshold, Retry-After rounding
  - failures outside the window restart the count
  - failures while locked never extend locked_until
  - an expired lockout starts a fresh window on the next failure
  - the lock lifts exactly at locked_until
  - counters are per (normalized username, address)
  - read-then-write undercount under a stale read (accepted behaviour)
  - insert race: losing the first insert counts on top of the winner's row
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from auth.guard import LoginGuard, normalize_account
from auth.store import AuthStore

T0 = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
IP = "203.0.113.7"


class Clock:
    def __init__(self) -> None:
        self.now = T0

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def guard(auth_store: AuthStore, clock: Clock) -> LoginGuard:
    return LoginGuard(auth_store, threshold=3, window_seconds=60, lockout_seconds=120, clock=clock)


def test_normalize_account() -> None:
    assert normalize_account("  Admin ") == "admin"


def test_allowed_without_history(guard: LoginGuard) -> None:
    assert guard.check_allowed("admin", IP).allowed


def test_locks_at_threshold(guard: LoginGuard, clock: Clock) -> None:
    guard.record_failure("admin", IP)
    guard.record_failure("admin", IP)
    assert guard.check_allowed("admin", IP).allowed

    row = guard.record_failure("admin", IP)
    assert row.fail_count == 3
    assert row.locked_until == (T0 + timedelta(seconds=120)).isoformat()

    check = guard.check_allowed("admin", IP)
    assert not check.allowed
    assert check.retry_after_seconds == 120

    clock.advance(119.5)
    assert guard.check_allowed("admin", IP).retry_after_seconds == 1


def test_failures_outside_window_restart_count(guard: LoginGuard, clock: Clock) -> None:
    guard.record_failure("admin", IP)
    guard.record_failure("admin", IP)
    clock.advance(61)
    row = guard.record_failure("admin", IP)
    assert row.fail_count == 1
    assert row.locked_until is None
    assert guard.check_allowed("admin", IP).allowed


def test_failures_while_locked_do_not_extend(guard: LoginGuard, clock: Clock, auth_store: AuthStore) -> None:
    for _ in range(3):
        guard.record_failure("admin", IP)
    locked_until = auth_store.get_login_attempt("admin", IP).locked_until

    clock.advance(30)
    row = guard.record_failure("admin", IP)
    assert row.fail_count == 4
    assert row.locked_until == locked_until
    assert guard.check_allowed("admin", IP).retry_after_seconds == 90


def test_expired_lockout_starts_fresh_window(guard: LoginGuard, clock: Clock) -> None:
    for _ in range(3):
        guard.record_failure("admin", IP)
    clock.advance(121)
    assert guard.check_allowed("admin", IP).allowed

    row = guard.record_failure("admin", IP)
    assert row.fail_count == 1
    assert row.locked_until is None
    assert guard.check_allowed("admin", IP).allowed


def test_allowed_exactly_at_locked_until(guard: LoginGuard, clock: Clock) -> None:
    for _ in range(3):
        guard.record_failure("admin", IP)

    clock.advance(119.999)
    check = guard.check_allowed("admin", IP)
    assert not check.allowed
    assert check.retry_after_seconds == 1

    clock.advance(0.001)
    assert clock.now == T0 + timedelta(seconds=120)
    assert guard.check_allowed("admin", IP).allowed


def test_lockout_is_per_username_and_address(guard: LoginGuard) -> None:
    for _ in range(3):
        guard.record_failure("Admin ", IP)
    assert not guard.check_allowed("admin", IP).allowed
    assert guard.check_allowed("admin", "198.51.100.1").allowed
    assert guard.check_allowed("other", IP).allowed


def test_clear_failures_unlocks(guard: LoginGuard) -> None:
    for _ in range(3):
        guard.record_failure("admin", IP)
    guard.clear_failures("ADMIN", IP)
    assert guard.check_allowed("admin", IP).allowed


def test_stale_read_undercounts_by_one(guard: LoginGuard, auth_store: AuthStore, monkeypatch) -> None:
    """Two failures that both read the same row both write N+1. Accepted: the guard is a deterrent."""
    guard.record_failure("admin", IP)
    stale = auth_store.get_login_attempt("admin", IP)
    assert stale.fail_count == 1

    monkeypatch.setattr(auth_store, "get_login_attempt", lambda username, ip: replace(stale))
    guard.record_failure("admin", IP)
    guard.record_failure("admin", IP)
    monkeypatch.undo()

    assert auth_store.get_login_attempt("admin", IP).fail_count == 2


def test_lost_insert_race_counts_on_winner_row(guard: LoginGuard, auth_store: AuthStore, monkeypatch) -> None:
    """The first read sees no row, but a concurrent failure inserts one before our insert."""
    guard.record_failure("admin", IP)  # the "concurrent" winner
    real_get = auth_store.get_login_attempt
    calls = []

    def first_read_misses(username, ip):
        calls.append(username)
        return None if len(calls) == 1 else real_get(username, ip)

    monkeypatch.setattr(auth_store, "get_login_attempt", first_read_misses)
    row = guard.record_failure("admin", IP)
    monkeypatch.undo()

    assert len(calls) == 2
    assert row.fail_count == 2
    assert auth_store.get_login_attempt("admin", IP).fail_count == 2


def test_threshold_must_be_positive(auth_store: AuthStore) -> None:
    with pytest.raises(ValueError):
        LoginGuard(auth_store, threshold=0)
