"""In-memory counter store.

Notes:
- Per-process only: every process gets its own counters, so this is for tests
  and single-process deployments.
- Thread-safe: each decision runs under one lock, which gives the same
  all-or-nothing behaviour the Redis scripts get from the server.
- Expiry is evaluated against the injected clock; every write sweeps expired
  keys so abandoned windows do not pile up.
"""

from __future__ import annotations

from contextlib import asynccontextmanager, contextmanager
from dataclasses import dataclass
import math
import threading
import time
from typing import AsyncIterator, Callable, Dict, Iterator, Optional, Tuple, Union

from .exceptions import StoreUnavailable
from .store import AsyncWindowSession, AsyncWindowStore, WindowSession, WindowStore
from .windows import (
    MICROS_PER_SECOND,
    Decision,
    FixedWindowPlan,
    SlidingWindowPlan,
    fixed_window_decide,
    sliding_window_decide,
)

CounterValue = Union[int, Dict[str, int]]


@dataclass
class _Entry:
    value: CounterValue
    expires_at: Optional[float] = None


class MemoryWindowStore(WindowStore):
    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._lock = threading.RLock()
        self._entries: Dict[str, _Entry] = {}
        self._last_us = -1

    @contextmanager
    def session(self) -> Iterator[WindowSession]:
        yield _MemoryWindowSession(self)

    def server_time(self) -> Tuple[int, int]:
        """Store time as (seconds, microseconds); never returns the same instant twice."""
        with self._lock:
            now_us = max(int(round(self._clock() * MICROS_PER_SECOND)), self._last_us + 1)
            self._last_us = now_us
        seconds, micros = divmod(now_us, MICROS_PER_SECOND)
        return seconds, micros

    def apply_fixed(self, plan: FixedWindowPlan) -> Decision:
        with self._lock:
            now = self._clock()
            self._evict_expired_locked(now)
            entry = self._entries.get(plan.key)
            if entry is None:
                entry = _Entry(value=0)
                self._entries[plan.key] = entry
            _check_type(plan.key, entry, int)
            entry.value = entry.value + 1
            mutation, decision = fixed_window_decide(entry.value, plan.permits)
            if mutation.set_ttl:
                entry.expires_at = now + plan.ttl_s
            return decision

    def apply_sliding(self, plan: SlidingWindowPlan) -> Decision:
        with self._lock:
            now = self._clock()
            self._evict_expired_locked(now)
            current = self._entries.get(plan.current_key)
            previous = self._entries.get(plan.previous_key)

            current_count = 0
            member_taken = False
            if current is not None:
                _check_type(plan.current_key, current, dict)
                current_count = len(current.value)
                member_taken = plan.member in current.value
            previous_count = 0
            if previous is not None:
                _check_type(plan.previous_key, previous, dict)
                previous_count = sum(1 for score in previous.value.values() if score >= plan.threshold_us)

            mutation, decision = sliding_window_decide(current_count, previous_count, plan.permits, member_taken)
            if mutation.record:
                if current is None:
                    current = _Entry(value={})
                    self._entries[plan.current_key] = current
                current.value[plan.member] = plan.now_us
            if mutation.set_ttl:
                current.expires_at = now + plan.ttl_s
            return decision

    def size(self) -> int:
        """Number of keys held, including expired ones not yet swept."""
        with self._lock:
            return len(self._entries)

    def exists(self, key: str) -> bool:
        with self._lock:
            return self._live_entry_locked(key, self._clock()) is not None

    def ttl(self, key: str) -> Optional[int]:
        """Seconds left before ``key`` expires, or None when absent or persistent."""
        with self._lock:
            now = self._clock()
            entry = self._live_entry_locked(key, now)
            if entry is None or entry.expires_at is None:
                return None
            return int(math.ceil(entry.expires_at - now))

    def members(self, key: str) -> Dict[str, int]:
        with self._lock:
            entry = self._live_entry_locked(key, self._clock())
            if entry is None or not isinstance(entry.value, dict):
                return {}
            return dict(entry.value)

    def count(self, key: str) -> int:
        with self._lock:
            entry = self._live_entry_locked(key, self._clock())
            if entry is None:
                return 0
            if isinstance(entry.value, dict):
                return len(entry.value)
            return entry.value

    def _live_entry_locked(self, key: str, now: float) -> Optional[_Entry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at is not None and entry.expires_at <= now:
            del self._entries[key]
            return None
        return entry

    def _evict_expired_locked(self, now: float) -> None:
        expired_keys = [
            key for key, entry in self._entries.items() if entry.expires_at is not None and entry.expires_at <= now
        ]
        for key in expired_keys:
            del self._entries[key]


def _check_type(key: str, entry: _Entry, expected: type) -> None:
    # same failure Redis reports as WRONGTYPE
    if not isinstance(entry.value, expected):
        raise StoreUnavailable(
            f"Counter {key!r} holds a value of the wrong kind",
            code="wrong_type",
            details={"key": key, "expected": expected.__name__},
        )


class _MemoryWindowSession(WindowSession):
    def __init__(self, store: MemoryWindowStore) -> None:
        self._store = store

    def server_time(self) -> Tuple[int, int]:
        return self._store.server_time()

    def apply_fixed(self, plan: FixedWindowPlan) -> Decision:
        return self._store.apply_fixed(plan)

    def apply_sliding(self, plan: SlidingWindowPlan) -> Decision:
        return self._store.apply_sliding(plan)


class _AsyncMemoryWindowSession(AsyncWindowSession):
    def __init__(self, store: MemoryWindowStore) -> None:
        self._store = store

    async def server_time(self) -> Tuple[int, int]:
        return self._store.server_time()

    async def apply_fixed(self, plan: FixedWindowPlan) -> Decision:
        return self._store.apply_fixed(plan)

    async def apply_sliding(self, plan: SlidingWindowPlan) -> Decision:
        return self._store.apply_sliding(plan)


class AsyncMemoryWindowStore(AsyncWindowStore):
    """Async facade over a ``MemoryWindowStore``; counters are shared with it."""

    def __init__(self, store: Optional[MemoryWindowStore] = None) -> None:
        self.store = store or MemoryWindowStore()

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncWindowSession]:
        yield _AsyncMemoryWindowSession(self.store)
