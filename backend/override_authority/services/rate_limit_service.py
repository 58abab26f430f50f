# Overview: Failed-PIN counters and lockout windows behind a swappable store.

"""
PIN Rate Limiting Service

WHY: A 4-6 digit PIN falls to brute force in minutes without throttling.
Failed verifications are counted per key (client origin, targeted manager,
or override request) and the key is locked after too many failures.

SECURITY FEATURES:
- Lock after max_attempts failures that fall inside a sliding window
- Lockout lasts lockout_duration from the failure that tripped it
- While a key is locked no PIN comparison is performed at all
- Each attempt is counted before its PIN is compared, under the key's lock,
  so overlapping attempts can never get more than max_attempts comparisons
- A successful verification clears the counters of every key it used

STORES:
- MemoryCounterStore: per-process map guarded by striped locks and swept of
  lapsed keys. Lockouts are lost on restart and not shared between worker
  processes.
- DatabaseCounterStore: pin_attempt_counters table. Shared by every process
  using the same database; each attempt is a locked read-modify-write in
  its own short transaction.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy import and_, or_
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import PinAttemptCounter
from ..time_utils import seconds_until, to_utc_z, utcnow
from .concurrency import RETRYABLE_ERRORS, lock_for_update, run_with_retry


logger = logging.getLogger(__name__)

EXTENSION_KEY = "override_rate_limiter"


@dataclass(frozen=True)
class AttemptState:
    failure_count: int = 0
    window_expires_at: datetime | None = None
    locked_until: datetime | None = None

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and self.locked_until > now


@dataclass(frozen=True)
class AttemptOutcome:
    key: str
    admitted: bool
    failure_count: int
    attempts_remaining: int
    locked_until: datetime | None


def current_state(state: AttemptState | None, now: datetime) -> AttemptState:
    """Drop whatever part of a stored state has lapsed."""
    if state is None:
        return AttemptState()
    if state.locked_until is not None and state.locked_until <= now:
        return AttemptState()
    if state.locked_until is None and (state.window_expires_at is None or state.window_expires_at <= now):
        return AttemptState()
    return state


def advance(
    state: AttemptState | None,
    now: datetime,
    *,
    max_attempts: int,
    window: timedelta,
    lockout: timedelta,
) -> AttemptState:
    """
    Apply one failed attempt.

    Every failure pushes the window forward. Reaching max_attempts starts
    the lockout; failures recorded while already locked are still counted
    but do not extend it.
    """
    state = current_state(state, now)
    count = state.failure_count + 1
    locked_until = state.locked_until
    if locked_until is None and count >= max_attempts:
        locked_until = now + lockout
    return replace(
        state,
        failure_count=count,
        window_expires_at=now + window,
        locked_until=locked_until,
    )


class MemoryCounterStore:
    """
    In-process counter store for single-process deployments and tests.

    Keys hash onto a fixed set of locks and lapsed states are swept every
    prune_every acquisitions, so keys built from caller input (login
    usernames) cannot grow the store without bound.
    """

    def __init__(self, stripes: int = 64, prune_every: int = 1000):
        self._states: dict[str, AttemptState] = {}
        self._locks = [threading.Lock() for _ in range(stripes)]
        self._prune_every = prune_every
        self._since_prune = 0
        self._prune_guard = threading.Lock()

    def _lock_for(self, key: str) -> threading.Lock:
        return self._locks[hash(key) % len(self._locks)]

    def read(self, key: str, now: datetime) -> AttemptState:
        with self._lock_for(key):
            state = current_state(self._states.get(key), now)
            if state.failure_count == 0:
                self._states.pop(key, None)
            return state

    def acquire(self, key: str, now: datetime, **limits) -> tuple[AttemptState, bool]:
        with self._lock_for(key):
            state = current_state(self._states.get(key), now)
            admitted = not state.is_locked(now)
            if admitted:
                state = advance(state, now, **limits)
                self._states[key] = state
        self._maybe_prune(now)
        return state, admitted

    def reset(self, key: str) -> None:
        with self._lock_for(key):
            self._states.pop(key, None)

    def prune(self, now: datetime) -> int:
        removed = 0
        for key in tuple(self._states):
            with self._lock_for(key):
                state = self._states.get(key)
                if state is not None and current_state(state, now).failure_count == 0:
                    del self._states[key]
                    removed += 1
        return removed

    def _maybe_prune(self, now: datetime) -> None:
        with self._prune_guard:
            self._since_prune += 1
            if self._since_prune < self._prune_every:
                return
            self._since_prune = 0
        self.prune(now)


class DatabaseCounterStore:
    """
    Durable counter store for multi-process deployments.

    NOTE: commits the current session. Call it only at points where the
    session holds no other pending work.
    """

    def __init__(self, attempts: int = 5):
        self.attempts = attempts

    @staticmethod
    def _to_state(row: PinAttemptCounter | None) -> AttemptState | None:
        if row is None:
            return None
        return AttemptState(
            failure_count=row.failure_count,
            window_expires_at=row.window_expires_at,
            locked_until=row.locked_until,
        )

    def read(self, key: str, now: datetime) -> AttemptState:
        row = db.session.get(PinAttemptCounter, key)
        return current_state(self._to_state(row), now)

    def acquire(self, key: str, now: datetime, **limits) -> tuple[AttemptState, bool]:
        def _op():
            row = lock_for_update(
                db.session.query(PinAttemptCounter).filter_by(origin=key)
            ).first()
            state = current_state(self._to_state(row), now)
            if state.is_locked(now):
                db.session.commit()
                return state, False
            state = advance(state, now, **limits)
            if row is None:
                row = PinAttemptCounter(origin=key)
                db.session.add(row)
            row.failure_count = state.failure_count
            row.window_expires_at = state.window_expires_at
            row.locked_until = state.locked_until
            row.updated_at = now
            db.session.commit()
            return state, True

        # Two first attempts for the same key race on the primary key insert;
        # the loser retries and takes the update path.
        return run_with_retry(_op, attempts=self.attempts, retry_on=RETRYABLE_ERRORS + (IntegrityError,))

    def reset(self, key: str) -> None:
        def _op():
            db.session.query(PinAttemptCounter).filter_by(origin=key).delete(synchronize_session=False)
            db.session.commit()

        run_with_retry(_op, attempts=self.attempts)

    def prune(self, now: datetime) -> int:
        def _op():
            lapsed = or_(
                PinAttemptCounter.locked_until <= now,
                and_(
                    PinAttemptCounter.locked_until.is_(None),
                    or_(
                        PinAttemptCounter.window_expires_at.is_(None),
                        PinAttemptCounter.window_expires_at <= now,
                    ),
                ),
            )
            removed = db.session.query(PinAttemptCounter).filter(lapsed).delete(synchronize_session=False)
            db.session.commit()
            return removed

        return run_with_retry(_op, attempts=self.attempts)


class RateLimiter:
    """Lockout policy on top of a counter store."""

    def __init__(
        self,
        store,
        *,
        max_attempts: int = 5,
        lockout_duration: timedelta = timedelta(minutes=15),
        window: timedelta = timedelta(minutes=15),
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.store = store
        self.max_attempts = max_attempts
        self.lockout_duration = lockout_duration
        self.window = window

    @classmethod
    def from_config(cls, config) -> "RateLimiter":
        kind = str(config.get("OVERRIDE_RATE_LIMIT_STORE", "memory")).lower()
        if kind == "memory":
            store = MemoryCounterStore()
        elif kind == "database":
            store = DatabaseCounterStore()
        else:
            raise ValueError(f"Unknown OVERRIDE_RATE_LIMIT_STORE: {kind}")
        return cls(
            store,
            max_attempts=config.get("OVERRIDE_PIN_MAX_ATTEMPTS", 5),
            lockout_duration=timedelta(minutes=config.get("OVERRIDE_PIN_LOCKOUT_MINUTES", 15)),
            window=timedelta(minutes=config.get("OVERRIDE_PIN_WINDOW_MINUTES", 15)),
        )

    def is_locked(self, origin: str, now: datetime | None = None) -> tuple[bool, int]:
        """Returns (locked, remaining milliseconds)."""
        now = now or utcnow()
        state = self.store.read(origin, now)
        if not state.is_locked(now):
            return False, 0
        return True, int((state.locked_until - now).total_seconds() * 1000)

    def locked_until(self, keys, now: datetime | None = None) -> datetime | None:
        """Latest unexpired lockout among keys, or None."""
        now = now or utcnow()
        latest = None
        for key in keys:
            state = self.store.read(key, now)
            if state.is_locked(now) and (latest is None or state.locked_until > latest):
                latest = state.locked_until
        return latest

    def acquire(self, origin: str, now: datetime | None = None) -> AttemptOutcome:
        """
        Count an attempt against a key before the credential is compared.

        WHY: a lock check followed later by a failure increment lets
        concurrent attempts all pass the check before any is counted.
        Counting up front under the store's key lock admits at most
        max_attempts attempts per window however they overlap.

        A locked key refuses the attempt (admitted=False) without counting
        it. The caller clears the key with reset() once the credential
        proves valid.
        """
        now = now or utcnow()
        state, admitted = self.store.acquire(
            origin,
            now,
            max_attempts=self.max_attempts,
            window=self.window,
            lockout=self.lockout_duration,
        )
        if admitted and state.is_locked(now) and state.failure_count == self.max_attempts:
            logger.warning(
                "PIN verification locked for %s until %s after %d attempts",
                origin, to_utc_z(state.locked_until), state.failure_count,
            )
        return AttemptOutcome(
            key=origin,
            admitted=admitted,
            failure_count=state.failure_count,
            attempts_remaining=max(0, self.max_attempts - state.failure_count),
            locked_until=state.locked_until if state.is_locked(now) else None,
        )

    def reset(self, origin: str) -> None:
        self.store.reset(origin)

    def prune(self, now: datetime | None = None) -> int:
        """Forget counters whose window and lockout have both lapsed."""
        return self.store.prune(now or utcnow())

    def get_lockout_status(self, origin: str, now: datetime | None = None) -> dict:
        now = now or utcnow()
        state = self.store.read(origin, now)
        locked = state.is_locked(now)
        return {
            "origin": origin,
            "locked": locked,
            "failed_attempts": state.failure_count,
            "max_attempts": self.max_attempts,
            "attempts_remaining": max(0, self.max_attempts - state.failure_count),
            "locked_until": to_utc_z(state.locked_until) if locked else None,
            "seconds_until_unlock": seconds_until(state.locked_until, now) if locked else None,
            "lockout_window_minutes": int(self.window.total_seconds() / 60),
            "lockout_duration_minutes": int(self.lockout_duration.total_seconds() / 60),
        }


def get_rate_limiter() -> RateLimiter:
    return current_app.extensions[EXTENSION_KEY]


def origin_key(ip_address: str | None) -> str:
    return f"pin:{ip_address or 'unknown'}"


def credential_key(user_id: int) -> str:
    return f"pin-user:{user_id}"


def request_key(request_id: int) -> str:
    return f"request:{request_id}"


def login_key(username: str) -> str:
    return f"login:{(username or '').strip().lower()}"
