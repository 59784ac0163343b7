"""
store.py — Keyed in-memory store with lazy idle eviction
========================================================
Backs both rate limiters. Entries carry their own ``last_access`` stamp;
on ``get``/``set`` the store sweeps out entries idle for longer than
``entry_idle_ttl_ms``, but at most once every ``sweep_interval_ms`` so the
amortised cost per call stays O(1).

Eviction only reclaims memory for abandoned keys. Window and lockout
decisions are computed from the timestamps inside each entry, never from
whether an entry happens to still be present.
"""
from __future__ import annotations

import time
from dataclasses import dataclass
from threading import RLock
from typing import Callable, Dict, Generic, Iterator, Optional, Tuple, TypeVar


def now_ms() -> int:
    """Wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


Clock = Callable[[], int]


@dataclass
class StoreEntry:
    """Base for anything kept in a KeyedExpiringStore."""

    last_access: int


E = TypeVar("E", bound=StoreEntry)


class KeyedExpiringStore(Generic[E]):
    """Dict-like store whose idle entries disappear on a later access."""

    def __init__(
        self,
        sweep_interval_ms: int,
        entry_idle_ttl_ms: int,
        clock: Clock = now_ms,
    ) -> None:
        self.sweep_interval_ms = sweep_interval_ms
        self.entry_idle_ttl_ms = entry_idle_ttl_ms
        self._clock = clock
        self._entries: Dict[str, E] = {}
        self._lock = RLock()
        self._last_sweep = clock()

    def get(self, key: str) -> Optional[E]:
        with self._lock:
            self._maybe_sweep()
            return self._entries.get(key)

    def set(self, key: str, entry: E) -> None:
        with self._lock:
            self._maybe_sweep()
            self._entries[key] = entry

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def has(self, key: str) -> bool:
        with self._lock:
            return key in self._entries

    __contains__ = has

    def items(self) -> Iterator[Tuple[str, E]]:
        with self._lock:
            return iter(list(self._entries.items()))

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def force_sweep(self) -> int:
        """Sweep now regardless of the interval. Returns the number evicted."""
        with self._lock:
            return self._sweep(self._clock())

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    # ── internals ───────────────────────────────────────────────

    def _maybe_sweep(self) -> None:
        now = self._clock()
        if now - self._last_sweep < self.sweep_interval_ms:
            return
        self._sweep(now)

    def _sweep(self, now: int) -> int:
        self._last_sweep = now
        stale = [
            key for key, entry in self._entries.items()
            if now - entry.last_access > self.entry_idle_ttl_ms
        ]
        for key in stale:
            del self._entries[key]
        return len(stale)
