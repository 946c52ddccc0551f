from __future__ import annotations

from contextlib import asynccontextmanager, contextmanager
import logging
from typing import Any, AsyncIterator, Dict, Iterator, Optional, Tuple

from redis import ConnectionPool, Redis
from redis.asyncio import ConnectionPool as AsyncConnectionPool, Redis as AsyncRedis
from redis.exceptions import RedisError

from .exceptions import StoreUnavailable
from .store import AsyncWindowSession, AsyncWindowStore, WindowSession, WindowStore
from .windows import (
    Decision,
    FixedWindowPlan,
    SlidingWindowPlan,
    fixed_window_decide,
)

logger = logging.getLogger(__name__)


# Fixed one-second window
# KEYS[1] = counter key ({prefix}:{epoch_second})
# ARGV[1] = ttl_s
# Returns: counter value after the increment
FIXED_WINDOW_LUA = r"""
local count = redis.call('INCR', KEYS[1])
if count == 1 then
  redis.call('EXPIRE', KEYS[1], ARGV[1])
end
return count
"""

# Two-bucket sliding window
# KEYS[1] = current bucket ({prefix}:{index})
# KEYS[2] = previous bucket ({prefix}:{index - 1})
# ARGV[1] = now_us (score)
# ARGV[2] = member (now_us as string)
# ARGV[3] = lookback threshold in microseconds
# ARGV[4] = ttl_s
# ARGV[5] = permits per window
# Returns: {allowed, current_count, previous_count}
SLIDING_WINDOW_LUA = r"""
local current_count = redis.call('ZCARD', KEYS[1])
local previous_count = redis.call('ZCOUNT', KEYS[2], ARGV[3], '+inf')

if current_count + previous_count < tonumber(ARGV[5]) then
  -- a member already recorded at this microsecond adds no event
  local added = redis.call('ZADD', KEYS[1], 'NX', ARGV[1], ARGV[2])
  if added == 0 then
    return {0, current_count, previous_count}
  end
  -- first event in this bucket
  if current_count == 0 then
    redis.call('EXPIRE', KEYS[1], ARGV[4])
  end
  return {1, current_count, previous_count}
end

-- denied: nothing is written
return {0, current_count, previous_count}
"""


def _pool_options(socket_timeout_s: float, max_connections: int) -> Dict[str, Any]:
    return {
        "decode_responses": True,
        "socket_timeout": socket_timeout_s,
        "socket_connect_timeout": socket_timeout_s,
        "max_connections": max_connections,
    }


def build_connection_pool(url: str, *, socket_timeout_s: float = 1.0, max_connections: int = 50) -> ConnectionPool:
    return ConnectionPool.from_url(url, **_pool_options(socket_timeout_s, max_connections))


def build_async_connection_pool(
    url: str, *, socket_timeout_s: float = 1.0, max_connections: int = 50
) -> AsyncConnectionPool:
    return AsyncConnectionPool.from_url(url, **_pool_options(socket_timeout_s, max_connections))


def _store_unavailable(exc: RedisError) -> StoreUnavailable:
    logger.warning(
        "rate_limit_store_unavailable",
        extra={
            "error": str(exc),
            "error_type": type(exc).__name__,
        },
    )
    return StoreUnavailable(
        "Counter store unavailable",
        code="store_unavailable",
        details={"error": str(exc), "error_type": type(exc).__name__},
    )


def _sliding_decision(result: Any, plan: SlidingWindowPlan) -> Decision:
    # result: [allowed, current_count, previous_count]
    allowed = bool(int(result[0]))
    in_window = int(result[1]) + int(result[2])
    return Decision(allowed, count=in_window + 1 if allowed else in_window, limit=plan.permits)


class _RedisWindowSession(WindowSession):
    def __init__(self, store: RedisWindowStore, client: Redis) -> None:
        self._store = store
        self._client = client

    def server_time(self) -> Tuple[int, int]:
        seconds, micros = self._client.time()
        return int(seconds), int(micros)

    def apply_fixed(self, plan: FixedWindowPlan) -> Decision:
        count = self._store.fixed_script(keys=[plan.key], args=[plan.ttl_s], client=self._client)
        _, decision = fixed_window_decide(int(count), plan.permits)
        return decision

    def apply_sliding(self, plan: SlidingWindowPlan) -> Decision:
        result = self._store.sliding_script(
            keys=[plan.current_key, plan.previous_key],
            args=[plan.now_us, plan.member, plan.threshold_us, plan.ttl_s, plan.permits],
            client=self._client,
        )
        return _sliding_decision(result, plan)


class RedisWindowStore(WindowStore):
    """Counter store backed by a shared Redis connection pool.

    The pool is owned by the caller. Each session borrows a single connection
    and returns it to the pool on exit.
    """

    def __init__(self, pool: ConnectionPool) -> None:
        self._pool = pool
        # Script objects only hash the source here; loading happens lazily via EVALSHA fallback
        registrar = Redis(connection_pool=pool)
        self.fixed_script = registrar.register_script(FIXED_WINDOW_LUA)
        self.sliding_script = registrar.register_script(SLIDING_WINDOW_LUA)

    @classmethod
    def from_url(cls, url: str, **pool_kwargs: Any) -> "RedisWindowStore":
        return cls(build_connection_pool(url, **pool_kwargs))

    @property
    def pool(self) -> ConnectionPool:
        return self._pool

    @contextmanager
    def session(self) -> Iterator[WindowSession]:
        client: Optional[Redis] = None
        try:
            client = Redis(connection_pool=self._pool, single_connection_client=True)
            yield _RedisWindowSession(self, client)
        except RedisError as exc:
            raise _store_unavailable(exc) from exc
        finally:
            if client is not None:
                client.close()


class _AsyncRedisWindowSession(AsyncWindowSession):
    def __init__(self, store: AsyncRedisWindowStore, client: AsyncRedis) -> None:
        self._store = store
        self._client = client

    async def server_time(self) -> Tuple[int, int]:
        seconds, micros = await self._client.time()
        return int(seconds), int(micros)

    async def apply_fixed(self, plan: FixedWindowPlan) -> Decision:
        count = await self._store.fixed_script(keys=[plan.key], args=[plan.ttl_s], client=self._client)
        _, decision = fixed_window_decide(int(count), plan.permits)
        return decision

    async def apply_sliding(self, plan: SlidingWindowPlan) -> Decision:
        result = await self._store.sliding_script(
            keys=[plan.current_key, plan.previous_key],
            args=[plan.now_us, plan.member, plan.threshold_us, plan.ttl_s, plan.permits],
            client=self._client,
        )
        return _sliding_decision(result, plan)


class AsyncRedisWindowStore(AsyncWindowStore):
    """redis.asyncio flavour of ``RedisWindowStore``."""

    def __init__(self, pool: AsyncConnectionPool) -> None:
        self._pool = pool
        registrar = AsyncRedis(connection_pool=pool)
        self.fixed_script = registrar.register_script(FIXED_WINDOW_LUA)
        self.sliding_script = registrar.register_script(SLIDING_WINDOW_LUA)

    @classmethod
    def from_url(cls, url: str, **pool_kwargs: Any) -> "AsyncRedisWindowStore":
        return cls(build_async_connection_pool(url, **pool_kwargs))

    @property
    def pool(self) -> AsyncConnectionPool:
        return self._pool

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncWindowSession]:
        client: Optional[AsyncRedis] = None
        try:
            client = AsyncRedis(connection_pool=self._pool, single_connection_client=True)
            yield _AsyncRedisWindowSession(self, client)
        except RedisError as exc:
            raise _store_unavailable(exc) from exc
        finally:
            if client is not None:
                await client.aclose()


__all__ = [
    "AsyncRedisWindowStore",
    "FIXED_WINDOW_LUA",
    "RedisWindowStore",
    "SLIDING_WINDOW_LUA",
    "build_async_connection_pool",
    "build_connection_pool",
]
