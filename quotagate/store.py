"""Counter store interfaces.

The limiter depends on these abstractions only, so the Redis backend can be
swapped for the in-memory one (tests, single-process use) without changes.

A store hands out a session per ``acquire`` call. The session owns one borrowed
connection and is released when the ``with`` block exits, even on error.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import AsyncContextManager, ContextManager, Tuple

from .windows import Decision, FixedWindowPlan, SlidingWindowPlan


class WindowSession(ABC):
    """Operations available while a store connection is borrowed."""

    @abstractmethod
    def server_time(self) -> Tuple[int, int]:
        """Return the store clock as (seconds, microseconds within second)."""
        raise NotImplementedError

    @abstractmethod
    def apply_fixed(self, plan: FixedWindowPlan) -> Decision:
        """Atomically increment the fixed-window counter and decide."""
        raise NotImplementedError

    @abstractmethod
    def apply_sliding(self, plan: SlidingWindowPlan) -> Decision:
        """Atomically count both buckets, decide, and record on grant."""
        raise NotImplementedError


class WindowStore(ABC):
    @abstractmethod
    def session(self) -> ContextManager[WindowSession]:
        raise NotImplementedError


class AsyncWindowSession(ABC):
    """Async counterpart of ``WindowSession``."""

    @abstractmethod
    async def server_time(self) -> Tuple[int, int]:
        raise NotImplementedError

    @abstractmethod
    async def apply_fixed(self, plan: FixedWindowPlan) -> Decision:
        raise NotImplementedError

    @abstractmethod
    async def apply_sliding(self, plan: SlidingWindowPlan) -> Decision:
        raise NotImplementedError


class AsyncWindowStore(ABC):
    @abstractmethod
    def session(self) -> AsyncContextManager[AsyncWindowSession]:
        raise NotImplementedError
