"""
rate_limit.py — Request rate limiting
=====================================
Two layers:

* ``ip_limiter``: slowapi per-IP limits on security-sensitive routes
  (login), applied with ``@ip_limiter.limit(...)``.
* ``RequestRateLimiter``: exact sliding-window throttle per API token.
  Each token id keeps a log of request timestamps from the trailing
  window; a request is admitted only while fewer than ``limit``
  timestamps remain after pruning.

State is in process memory only. A restart resets every window.
"""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from threading import Lock
from typing import Dict, List, Optional

from slowapi import Limiter
from slowapi.util import get_remote_address

from .store import Clock, KeyedExpiringStore, StoreEntry, now_ms

ip_limiter = Limiter(key_func=get_remote_address)

DEFAULT_LIMIT = 100
DEFAULT_WINDOW_MS = 60 * 1000

SWEEP_INTERVAL_MS = 5 * 60 * 1000
ENTRY_IDLE_TTL_MS = 10 * 60 * 1000


@dataclass
class RateWindowEntry(StoreEntry):
    timestamps: List[int] = field(default_factory=list)


@dataclass(frozen=True)
class RateLimitStatus:
    allowed: bool
    remaining: int
    limit: int
    reset_at: int                      # epoch seconds
    retry_after: Optional[int] = None  # seconds, only when denied

    def headers(self) -> Dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_at),
        }
        if not self.allowed and self.retry_after:
            headers["Retry-After"] = str(self.retry_after)
        return headers


def _reset_at(timestamps: List[int], now: int, window_ms: int) -> int:
    oldest = timestamps[0] if timestamps else now
    return math.ceil((oldest + window_ms) / 1000)


def _retry_after(timestamps: List[int], now: int, window_ms: int) -> int:
    oldest = timestamps[0] if timestamps else now
    return max(1, math.ceil((oldest + window_ms - now) / 1000))


class RequestRateLimiter:
    """Sliding-window limiter keyed by token id (never the token itself)."""

    def __init__(self, store: KeyedExpiringStore[RateWindowEntry] | None = None, clock: Clock = now_ms) -> None:
        self._clock = clock
        if store is None:
            store = KeyedExpiringStore(SWEEP_INTERVAL_MS, ENTRY_IDLE_TTL_MS, clock=clock)
        self._store = store
        self._lock = Lock()

    def check(self, identity: str, limit: int = DEFAULT_LIMIT, window_ms: int = DEFAULT_WINDOW_MS) -> RateLimitStatus:
        """Consume one slot for ``identity`` if the window has room."""
        with self._lock:
            now = self._clock()
            entry = self._store.get(identity)
            if entry is None:
                entry = RateWindowEntry(last_access=now)
                self._store.set(identity, entry)
            entry.last_access = now

            window_start = now - window_ms
            entry.timestamps = [ts for ts in entry.timestamps if ts > window_start]
            reset_at = _reset_at(entry.timestamps, now, window_ms)

            if len(entry.timestamps) >= limit:
                return RateLimitStatus(
                    allowed=False,
                    remaining=0,
                    limit=limit,
                    reset_at=reset_at,
                    retry_after=_retry_after(entry.timestamps, now, window_ms),
                )

            entry.timestamps.append(now)
            return RateLimitStatus(
                allowed=True,
                remaining=limit - len(entry.timestamps),
                limit=limit,
                reset_at=reset_at,
            )

    def status(self, identity: str, limit: int = DEFAULT_LIMIT, window_ms: int = DEFAULT_WINDOW_MS) -> RateLimitStatus:
        """Report the current window for ``identity`` without consuming a slot."""
        with self._lock:
            now = self._clock()
            entry = self._store.get(identity)
            window_start = now - window_ms
            timestamps = [ts for ts in entry.timestamps if ts > window_start] if entry else []
            remaining = max(0, limit - len(timestamps))
            allowed = remaining > 0
            return RateLimitStatus(
                allowed=allowed,
                remaining=remaining,
                limit=limit,
                reset_at=_reset_at(timestamps, now, window_ms),
                retry_after=None if allowed else _retry_after(timestamps, now, window_ms),
            )

    def reset(self, identity: str) -> None:
        with self._lock:
            self._store.delete(identity)

    def clear(self) -> None:
        with self._lock:
            self._store.clear()
