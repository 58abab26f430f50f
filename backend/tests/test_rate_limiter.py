"""
PIN rate limiter tests.

Verifies:
- Lockout after max attempts inside the sliding window, for the configured
  duration
- Failures outside the window do not accumulate
- Concurrent failures for one key are all counted, and concurrent attempts
  never get past max_attempts
- Lapsed counters are dropped from memory and from the table
- The database store behaves like the memory store
"""

import threading
from datetime import timedelta

import pytest

from override_authority.services.rate_limit_service import (
    DatabaseCounterStore,
    MemoryCounterStore,
    RateLimiter,
    advance,
    credential_key,
    login_key,
    origin_key,
    request_key,
)

from conftest import NOW


def _limiter(store=None, max_attempts=3):
    return RateLimiter(
        store or MemoryCounterStore(),
        max_attempts=max_attempts,
        lockout_duration=timedelta(minutes=15),
        window=timedelta(minutes=10),
    )


class TestAdvance:

    def test_lock_starts_at_max_attempts(self):
        limits = dict(max_attempts=2, window=timedelta(minutes=10), lockout=timedelta(minutes=15))
        first = advance(None, NOW, **limits)
        second = advance(first, NOW + timedelta(seconds=5), **limits)

        assert first.locked_until is None
        assert second.failure_count == 2
        assert second.locked_until == NOW + timedelta(seconds=5, minutes=15)

    def test_failures_while_locked_do_not_extend_lockout(self):
        limits = dict(max_attempts=1, window=timedelta(minutes=10), lockout=timedelta(minutes=15))
        locked = advance(None, NOW, **limits)
        again = advance(locked, NOW + timedelta(minutes=5), **limits)

        assert again.locked_until == locked.locked_until
        assert again.failure_count == 2


class TestMemoryLimiter:

    def test_locks_after_max_attempts(self):
        limiter = _limiter()
        key = origin_key("10.0.0.5")

        outcomes = [limiter.acquire(key, NOW) for _ in range(3)]

        assert [o.attempts_remaining for o in outcomes] == [2, 1, 0]
        assert outcomes[0].locked_until is None
        assert outcomes[2].locked_until == NOW + timedelta(minutes=15)

        locked, remaining_ms = limiter.is_locked(key, NOW + timedelta(minutes=1))
        assert locked is True
        assert remaining_ms == 14 * 60 * 1000

    def test_lock_expires_after_duration(self):
        limiter = _limiter()
        key = origin_key("10.0.0.5")
        for _ in range(3):
            limiter.acquire(key, NOW)

        assert limiter.is_locked(key, NOW + timedelta(minutes=15)) == (False, 0)
        status = limiter.get_lockout_status(key, NOW + timedelta(minutes=16))
        assert status["failed_attempts"] == 0
        assert status["attempts_remaining"] == 3

    def test_failures_outside_window_are_forgotten(self):
        limiter = _limiter()
        key = origin_key("10.0.0.5")

        limiter.acquire(key, NOW)
        limiter.acquire(key, NOW + timedelta(minutes=5))
        outcome = limiter.acquire(key, NOW + timedelta(minutes=16))

        assert outcome.failure_count == 1
        assert outcome.locked_until is None

    def test_sliding_window_extends_with_each_failure(self):
        limiter = _limiter()
        key = origin_key("10.0.0.5")

        limiter.acquire(key, NOW)
        limiter.acquire(key, NOW + timedelta(minutes=9))
        outcome = limiter.acquire(key, NOW + timedelta(minutes=18))

        assert outcome.locked_until is not None

    def test_reset_clears_counter(self):
        limiter = _limiter()
        key = origin_key("10.0.0.5")
        limiter.acquire(key, NOW)
        limiter.acquire(key, NOW)

        limiter.reset(key)

        assert limiter.acquire(key, NOW).attempts_remaining == 2

    def test_keys_are_independent(self):
        limiter = _limiter()
        for _ in range(3):
            limiter.acquire(origin_key("10.0.0.5"), NOW)

        assert limiter.is_locked(origin_key("10.0.0.6"), NOW) == (False, 0)
        assert limiter.locked_until([origin_key("10.0.0.6"), origin_key("10.0.0.5")], NOW) is not None

    def test_concurrent_failures_are_all_counted(self):
        limiter = _limiter(max_attempts=1000)
        key = origin_key("10.0.0.5")
        threads_count, per_thread = 8, 50
        barrier = threading.Barrier(threads_count)

        def hammer():
            barrier.wait()
            for _ in range(per_thread):
                limiter.acquire(key, NOW)

        threads = [threading.Thread(target=hammer) for _ in range(threads_count)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        status = limiter.get_lockout_status(key, NOW)
        assert status["failed_attempts"] == threads_count * per_thread
        assert status["locked"] is False

    def test_locked_key_refuses_without_counting(self):
        limiter = _limiter()
        key = origin_key("10.0.0.5")
        for _ in range(3):
            limiter.acquire(key, NOW)

        refused = limiter.acquire(key, NOW + timedelta(minutes=1))

        assert refused.admitted is False
        assert refused.failure_count == 3
        assert refused.locked_until == NOW + timedelta(minutes=15)

    def test_concurrent_attempts_admit_at_most_max(self):
        limiter = _limiter(max_attempts=3)
        key = origin_key("10.9.9.9")
        threads_count = 20
        barrier = threading.Barrier(threads_count)
        admitted = []

        def attempt():
            barrier.wait()
            admitted.append(limiter.acquire(key, NOW).admitted)

        threads = [threading.Thread(target=attempt) for _ in range(threads_count)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert admitted.count(True) == 3
        assert admitted.count(False) == threads_count - 3

    def test_reset_and_prune_drop_keys(self):
        store = MemoryCounterStore()
        limiter = _limiter(store)
        for i in range(50):
            limiter.acquire(login_key(f"guess{i}"), NOW)
        locks = len(store._locks)

        limiter.reset(login_key("guess0"))
        assert login_key("guess0") not in store._states

        assert limiter.prune(NOW + timedelta(minutes=30)) == 49
        assert store._states == {}
        assert len(store._locks) == locks

    def test_lapsed_keys_are_swept_while_attempting(self):
        store = MemoryCounterStore(prune_every=10)
        limiter = _limiter(store)
        for i in range(9):
            limiter.acquire(login_key(f"guess{i}"), NOW)

        limiter.acquire(login_key("fresh"), NOW + timedelta(minutes=30))

        assert list(store._states) == [login_key("fresh")]

    def test_max_attempts_must_be_positive(self):
        with pytest.raises(ValueError):
            _limiter(max_attempts=0)


class TestKeys:

    def test_key_formats(self):
        assert origin_key("10.0.0.5") == "pin:10.0.0.5"
        assert origin_key(None) == "pin:unknown"
        assert credential_key(7) == "pin-user:7"
        assert request_key(12) == "request:12"
        assert login_key(" JDoe ") == "login:jdoe"


class TestDatabaseStore:

    def test_lockout_persists_in_table(self, db_session):
        from override_authority.models import PinAttemptCounter

        limiter = _limiter(DatabaseCounterStore())
        key = origin_key("10.0.0.5")
        for _ in range(3):
            limiter.acquire(key, NOW)

        row = db_session.get(PinAttemptCounter, key)
        assert row.failure_count == 3
        assert row.locked_until == NOW + timedelta(minutes=15)

        # A second limiter over the same table sees the lockout
        other = _limiter(DatabaseCounterStore())
        assert other.is_locked(key, NOW)[0] is True

    def test_reset_deletes_row(self, db_session):
        from override_authority.models import PinAttemptCounter

        limiter = _limiter(DatabaseCounterStore())
        key = credential_key(3)
        limiter.acquire(key, NOW)
        limiter.reset(key)

        assert db_session.get(PinAttemptCounter, key) is None
        assert limiter.get_lockout_status(key, NOW)["failed_attempts"] == 0

    def test_from_config_selects_store(self, app):
        config = dict(app.config, OVERRIDE_RATE_LIMIT_STORE="database")
        assert isinstance(RateLimiter.from_config(config).store, DatabaseCounterStore)

        with pytest.raises(ValueError):
            RateLimiter.from_config(dict(app.config, OVERRIDE_RATE_LIMIT_STORE="redis"))

    def test_locked_row_refuses_without_counting(self, db_session):
        from override_authority.models import PinAttemptCounter

        limiter = _limiter(DatabaseCounterStore())
        key = origin_key("10.0.0.5")
        for _ in range(3):
            limiter.acquire(key, NOW)

        assert limiter.acquire(key, NOW + timedelta(minutes=1)).admitted is False
        assert db_session.get(PinAttemptCounter, key).failure_count == 3

    def test_prune_deletes_lapsed_rows(self, db_session):
        from override_authority.models import PinAttemptCounter

        limiter = _limiter(DatabaseCounterStore())
        limiter.acquire(origin_key("10.0.0.5"), NOW)
        for _ in range(3):
            limiter.acquire(origin_key("10.0.0.6"), NOW + timedelta(minutes=5))

        # 10.0.0.5's window lapsed at +10; 10.0.0.6 is locked until +20
        assert limiter.prune(NOW + timedelta(minutes=12)) == 1
        assert db_session.get(PinAttemptCounter, origin_key("10.0.0.5")) is None
        assert db_session.get(PinAttemptCounter, origin_key("10.0.0.6")) is not None
