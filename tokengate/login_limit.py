"""
login_limit.py — Failed-login lockout
=====================================
Counts failed sign-ins per identity (``login:<email>`` or a client
address). Reaching ``max_attempts`` failures locks the identity out for
``lockout_duration_ms``. Expiry is checked lazily on the next call for
that identity; there is no timer. A successful login clears the history.

Login handlers call ``check_allowed`` before verifying the password and
exactly one of ``record_failure`` / ``record_success`` afterwards.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from threading import Lock
from typing import Optional

from .store import Clock, KeyedExpiringStore, StoreEntry, now_ms

SWEEP_INTERVAL_MS = 10 * 60 * 1000
ENTRY_IDLE_TTL_MS = 30 * 60 * 1000


@dataclass(frozen=True)
class LockoutPolicy:
    max_attempts: int = 5
    lockout_duration_ms: int = 15 * 60 * 1000


DEFAULT_LOCKOUT_POLICY = LockoutPolicy()


@dataclass
class LockoutEntry(StoreEntry):
    failed_attempts: int = 0
    lockout_started_at: Optional[int] = None


@dataclass(frozen=True)
class LoginAttemptStatus:
    allowed: bool
    remaining_attempts: int
    lockout_until: Optional[int] = None         # epoch ms
    retry_after_seconds: Optional[int] = None


class LoginAttemptLimiter:
    def __init__(
        self,
        policy: LockoutPolicy = DEFAULT_LOCKOUT_POLICY,
        store: KeyedExpiringStore[LockoutEntry] | None = None,
        clock: Clock = now_ms,
    ) -> None:
        self.policy = policy
        self._clock = clock
        if store is None:
            store = KeyedExpiringStore(SWEEP_INTERVAL_MS, ENTRY_IDLE_TTL_MS, clock=clock)
        self._store = store
        self._lock = Lock()

    def check_allowed(self, identity: str, policy: Optional[LockoutPolicy] = None) -> LoginAttemptStatus:
        policy = policy or self.policy
        with self._lock:
            now = self._clock()
            entry = self._store.get(identity)
            if entry is None:
                return LoginAttemptStatus(allowed=True, remaining_attempts=policy.max_attempts)

            if entry.lockout_started_at is not None:
                lockout_ends_at = entry.lockout_started_at + policy.lockout_duration_ms
                if now < lockout_ends_at:
                    return LoginAttemptStatus(
                        allowed=False,
                        remaining_attempts=0,
                        lockout_until=lockout_ends_at,
                        retry_after_seconds=math.ceil((lockout_ends_at - now) / 1000),
                    )
                # Lockout ran out since the last call
                self._store.delete(identity)
                return LoginAttemptStatus(allowed=True, remaining_attempts=policy.max_attempts)

            remaining = max(0, policy.max_attempts - entry.failed_attempts)
            return LoginAttemptStatus(allowed=remaining > 0, remaining_attempts=remaining)

    def record_failure(self, identity: str, policy: Optional[LockoutPolicy] = None) -> LoginAttemptStatus:
        policy = policy or self.policy
        with self._lock:
            now = self._clock()
            entry = self._store.get(identity)
            if entry is None:
                entry = LockoutEntry(last_access=now)
                self._store.set(identity, entry)

            if entry.lockout_started_at is not None:
                if now >= entry.lockout_started_at + policy.lockout_duration_ms:
                    entry.failed_attempts = 0
                    entry.lockout_started_at = None

            entry.failed_attempts += 1
            entry.last_access = now

            if entry.failed_attempts >= policy.max_attempts:
                entry.lockout_started_at = now
                return LoginAttemptStatus(
                    allowed=False,
                    remaining_attempts=0,
                    lockout_until=now + policy.lockout_duration_ms,
                    retry_after_seconds=math.ceil(policy.lockout_duration_ms / 1000),
                )

            return LoginAttemptStatus(
                allowed=True,
                remaining_attempts=policy.max_attempts - entry.failed_attempts,
            )

    def record_success(self, identity: str) -> None:
        with self._lock:
            self._store.delete(identity)

    def reset(self, identity: str) -> None:
        with self._lock:
            self._store.delete(identity)

    def clear(self) -> None:
        with self._lock:
            self._store.clear()


def format_retry_time(seconds: int) -> str:
    """Human form of a retry delay, e.g. "2 minutes 30 seconds"."""
    minutes, rest = divmod(seconds, 60)

    def plural(n: int, unit: str) -> str:
        return f"{n} {unit}{'' if n == 1 else 's'}"

    if minutes == 0:
        return plural(rest, "second")
    if rest == 0:
        return plural(minutes, "minute")
    return f"{plural(minutes, 'minute')} {plural(rest, 'second')}"
