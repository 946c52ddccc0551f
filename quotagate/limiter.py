from __future__ import annotations

import logging
from typing import Any, Optional, Union

from . import config as rl_config
from .config import RateLimitSettings, TimeUnit, UnitPolicy, policy_for, resolve_time_unit
from .exceptions import ConfigurationError
from .redis_backend import AsyncRedisWindowStore, RedisWindowStore
from .store import AsyncWindowSession, AsyncWindowStore, WindowSession, WindowStore
from .windows import Decision, plan_fixed_window, plan_sliding_window

logger = logging.getLogger(__name__)


class _LimiterConfig:
    """Immutable (time_unit, permits_per_unit, store) triple shared by both limiters."""

    def __init__(self, store: Any, time_unit: Union[TimeUnit, str], permits_per_unit: int) -> None:
        if store is None:
            raise ConfigurationError("A counter store is required", code="missing_store")
        unit = resolve_time_unit(time_unit)
        if isinstance(permits_per_unit, bool) or not isinstance(permits_per_unit, int) or permits_per_unit < 1:
            raise ConfigurationError(
                f"permits_per_unit must be a positive integer, got {permits_per_unit!r}",
                code="invalid_permits",
            )
        self._store = store
        self._time_unit = unit
        self._permits = permits_per_unit
        self._policy: UnitPolicy = policy_for(unit)

    @property
    def store(self) -> Any:
        return self._store

    @property
    def time_unit(self) -> TimeUnit:
        return self._time_unit

    @property
    def permits_per_unit(self) -> int:
        return self._permits

    def __repr__(self) -> str:
        return f"{type(self).__name__}(time_unit={self._time_unit.value}, permits_per_unit={self._permits})"

    def _log_decision(self, key_prefix: str, decision: Decision) -> None:
        logger.debug(
            "rate_limit.allow" if decision.allowed else "rate_limit.deny",
            extra={
                "key_prefix": key_prefix,
                "time_unit": self._time_unit.value,
                "count": decision.count,
                "limit": decision.limit,
            },
        )


def _check_key_prefix(key_prefix: str) -> None:
    if not key_prefix:
        raise ValueError("key_prefix must be a non-empty string")


class RateLimiter(_LimiterConfig):
    """
    Distributed rate limiter answering "may this unit of work proceed now?".

    SECOND uses a fixed one-second counter. MINUTE, HOUR and DAY use a
    two-bucket sliding window over per-permit timestamps. Time always comes
    from the store, and each decision is a single atomic store operation, so
    any number of threads, processes or hosts can share a key.

    Usage:
        limiter = RateLimiter(RedisWindowStore.from_url(url), TimeUnit.MINUTE, 120)
        if limiter.acquire("api:tenant-42"):
            ...
    """

    def __init__(self, store: WindowStore, time_unit: Union[TimeUnit, str], permits_per_unit: int) -> None:
        super().__init__(store, time_unit, permits_per_unit)
        self._apply = self._apply_sliding if self._policy.sliding else self._apply_fixed

    @classmethod
    def from_settings(cls, settings: Optional[RateLimitSettings] = None) -> "RateLimiter":
        cfg = settings or rl_config.get_settings()
        store = RedisWindowStore.from_url(
            cfg.redis_url,
            socket_timeout_s=cfg.socket_timeout_s,
            max_connections=cfg.max_connections,
        )
        return cls(store, cfg.time_unit, cfg.permits_per_unit)

    def acquire(self, key_prefix: str) -> bool:
        """
        Try to take one permit for ``key_prefix``.

        Returns:
            True when granted, False when the quota for the window is used up.

        Raises:
            StoreUnavailable: the store could not be reached or the atomic call failed.
            ValueError: empty key prefix.
        """
        _check_key_prefix(key_prefix)
        with self._store.session() as session:
            decision = self._apply(session, key_prefix)
        self._log_decision(key_prefix, decision)
        return decision.allowed

    def _apply_fixed(self, session: WindowSession, key_prefix: str) -> Decision:
        seconds, _ = session.server_time()
        return session.apply_fixed(plan_fixed_window(key_prefix, seconds, self._policy, self._permits))

    def _apply_sliding(self, session: WindowSession, key_prefix: str) -> Decision:
        seconds, micros = session.server_time()
        plan = plan_sliding_window(key_prefix, seconds, micros, self._policy, self._permits)
        return session.apply_sliding(plan)


class AsyncRateLimiter(_LimiterConfig):
    """Awaitable ``RateLimiter`` for asyncio callers; same keys, scripts and errors."""

    def __init__(self, store: AsyncWindowStore, time_unit: Union[TimeUnit, str], permits_per_unit: int) -> None:
        super().__init__(store, time_unit, permits_per_unit)
        self._apply = self._apply_sliding if self._policy.sliding else self._apply_fixed

    @classmethod
    def from_settings(cls, settings: Optional[RateLimitSettings] = None) -> "AsyncRateLimiter":
        cfg = settings or rl_config.get_settings()
        store = AsyncRedisWindowStore.from_url(
            cfg.redis_url,
            socket_timeout_s=cfg.socket_timeout_s,
            max_connections=cfg.max_connections,
        )
        return cls(store, cfg.time_unit, cfg.permits_per_unit)

    async def acquire(self, key_prefix: str) -> bool:
        _check_key_prefix(key_prefix)
        async with self._store.session() as session:
            decision = await self._apply(session, key_prefix)
        self._log_decision(key_prefix, decision)
        return decision.allowed

    async def _apply_fixed(self, session: AsyncWindowSession, key_prefix: str) -> Decision:
        seconds, _ = await session.server_time()
        return await session.apply_fixed(plan_fixed_window(key_prefix, seconds, self._policy, self._permits))

    async def _apply_sliding(self, session: AsyncWindowSession, key_prefix: str) -> Decision:
        seconds, micros = await session.server_time()
        plan = plan_sliding_window(key_prefix, seconds, micros, self._policy, self._permits)
        return await session.apply_sliding(plan)
