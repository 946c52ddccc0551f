import hashlib
from unittest.mock import AsyncMock, MagicMock, Mock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError, TimeoutError as RedisTimeoutError

from quotagate import redis_backend
from quotagate.config import TimeUnit
from quotagate.exceptions import StoreUnavailable
from quotagate.limiter import AsyncRateLimiter, RateLimiter
from quotagate.redis_backend import (
    FIXED_WINDOW_LUA,
    SLIDING_WINDOW_LUA,
    AsyncRedisWindowStore,
    RedisWindowStore,
)


def _install_fake_redis(monkeypatch, attr="Redis", script_factory=Mock):
    client = MagicMock()
    scripts = {FIXED_WINDOW_LUA: script_factory(), SLIDING_WINDOW_LUA: script_factory()}
    client.register_script.side_effect = lambda source: scripts[source]
    redis_cls = Mock(return_value=client)
    monkeypatch.setattr(redis_backend, attr, redis_cls)
    return redis_cls, client, scripts


def test_fixed_window_runs_script_against_store_second(monkeypatch):
    redis_cls, client, scripts = _install_fake_redis(monkeypatch)
    client.time.return_value = (1_700_000_000, 123)
    pool = object()
    limiter = RateLimiter(RedisWindowStore(pool), TimeUnit.SECOND, 3)

    scripts[FIXED_WINDOW_LUA].return_value = 1
    assert limiter.acquire("p1") is True
    scripts[FIXED_WINDOW_LUA].assert_called_once_with(keys=["p1:1700000000"], args=[10], client=client)

    scripts[FIXED_WINDOW_LUA].return_value = 4
    assert limiter.acquire("p1") is False

    redis_cls.assert_any_call(connection_pool=pool, single_connection_client=True)
    assert client.close.call_count == 2


def test_sliding_window_passes_bucket_keys_and_threshold(monkeypatch):
    _, client, scripts = _install_fake_redis(monkeypatch)
    client.time.return_value = (1_700_000_040, 250_000)
    limiter = RateLimiter(RedisWindowStore(object()), TimeUnit.MINUTE, 2)

    scripts[SLIDING_WINDOW_LUA].return_value = [1, 0, 0]
    assert limiter.acquire("p2") is True

    now_us = 1_700_000_040_250_000
    scripts[SLIDING_WINDOW_LUA].assert_called_once_with(
        keys=["p2:28333334", "p2:28333333"],
        args=[now_us, str(now_us), now_us - 60_000_000, 130, 2],
        client=client,
    )

    scripts[SLIDING_WINDOW_LUA].return_value = [0, 1, 1]
    assert limiter.acquire("p2") is False
    scripts[FIXED_WINDOW_LUA].assert_not_called()


def test_scenario_d_network_error_surfaces_store_unavailable(monkeypatch):
    _, client, scripts = _install_fake_redis(monkeypatch)
    client.time.side_effect = RedisConnectionError("connection reset")
    limiter = RateLimiter(RedisWindowStore(object()), TimeUnit.SECOND, 3)

    with pytest.raises(StoreUnavailable) as exc_info:
        limiter.acquire("p1")

    assert isinstance(exc_info.value.__cause__, RedisConnectionError)
    assert exc_info.value.code == "store_unavailable"
    assert exc_info.value.details["error_type"] == "ConnectionError"
    scripts[FIXED_WINDOW_LUA].assert_not_called()
    client.close.assert_called_once()


def test_script_failure_surfaces_store_unavailable(monkeypatch):
    _, client, scripts = _install_fake_redis(monkeypatch)
    client.time.return_value = (1_700_000_040, 0)
    scripts[SLIDING_WINDOW_LUA].side_effect = RedisTimeoutError("timed out")
    limiter = RateLimiter(RedisWindowStore(object()), TimeUnit.HOUR, 3)

    with pytest.raises(StoreUnavailable):
        limiter.acquire("p1")
    client.close.assert_called_once()


def test_borrow_failure_surfaces_store_unavailable(monkeypatch):
    redis_cls, client, _ = _install_fake_redis(monkeypatch)
    # first construction is the script registrar, the second borrows a connection
    redis_cls.side_effect = [client, RedisConnectionError("refused")]
    limiter = RateLimiter(RedisWindowStore(object()), TimeUnit.SECOND, 3)

    with pytest.raises(StoreUnavailable):
        limiter.acquire("p1")
    client.close.assert_not_called()


def test_non_redis_errors_propagate_unchanged(monkeypatch):
    _, client, _ = _install_fake_redis(monkeypatch)
    client.time.side_effect = KeyError("boom")
    limiter = RateLimiter(RedisWindowStore(object()), TimeUnit.SECOND, 3)

    with pytest.raises(KeyError):
        limiter.acquire("p1")
    client.close.assert_called_once()


def test_unreachable_server_surfaces_store_unavailable():
    store = RedisWindowStore.from_url("redis://127.0.0.1:1/0", socket_timeout_s=0.2, max_connections=2)
    limiter = RateLimiter(store, TimeUnit.MINUTE, 5)

    with pytest.raises(StoreUnavailable):
        limiter.acquire("p1")


def test_scripts_are_registered_by_sha():
    store = RedisWindowStore.from_url("redis://127.0.0.1:1/0")
    assert store.fixed_script.sha == hashlib.sha1(FIXED_WINDOW_LUA.encode()).hexdigest()
    assert store.sliding_script.sha == hashlib.sha1(SLIDING_WINDOW_LUA.encode()).hexdigest()


def test_build_connection_pool_options(monkeypatch):
    from_url = Mock()
    monkeypatch.setattr(redis_backend.ConnectionPool, "from_url", from_url)

    redis_backend.build_connection_pool("redis://cache:6379/2", socket_timeout_s=0.25, max_connections=8)

    from_url.assert_called_once_with(
        "redis://cache:6379/2",
        decode_responses=True,
        socket_timeout=0.25,
        socket_connect_timeout=0.25,
        max_connections=8,
    )


@pytest.mark.asyncio
async def test_async_sliding_window(monkeypatch):
    redis_cls, client, scripts = _install_fake_redis(monkeypatch, attr="AsyncRedis", script_factory=AsyncMock)
    client.time = AsyncMock(return_value=(1_700_000_040, 0))
    client.aclose = AsyncMock()
    pool = object()
    limiter = AsyncRateLimiter(AsyncRedisWindowStore(pool), TimeUnit.MINUTE, 1)

    scripts[SLIDING_WINDOW_LUA].return_value = [1, 0, 0]
    assert await limiter.acquire("p2") is True
    scripts[SLIDING_WINDOW_LUA].return_value = [0, 1, 0]
    assert await limiter.acquire("p2") is False

    redis_cls.assert_any_call(connection_pool=pool, single_connection_client=True)
    assert client.aclose.await_count == 2


@pytest.mark.asyncio
async def test_async_store_unavailable(monkeypatch):
    _, client, scripts = _install_fake_redis(monkeypatch, attr="AsyncRedis", script_factory=AsyncMock)
    client.time = AsyncMock(return_value=(1_700_000_040, 0))
    client.aclose = AsyncMock()
    scripts[FIXED_WINDOW_LUA].side_effect = RedisConnectionError("down")
    limiter = AsyncRateLimiter(AsyncRedisWindowStore(object()), TimeUnit.SECOND, 1)

    with pytest.raises(StoreUnavailable):
        await limiter.acquire("p1")
    client.aclose.assert_awaited_once()


@pytest.mark.asyncio
async def test_async_borrow_failure_surfaces_store_unavailable(monkeypatch):
    redis_cls, client, _ = _install_fake_redis(monkeypatch, attr="AsyncRedis", script_factory=AsyncMock)
    client.aclose = AsyncMock()
    redis_cls.side_effect = [client, RedisConnectionError("refused")]
    limiter = AsyncRateLimiter(AsyncRedisWindowStore(object()), TimeUnit.MINUTE, 3)

    with pytest.raises(StoreUnavailable) as exc_info:
        await limiter.acquire("p2")

    assert isinstance(exc_info.value.__cause__, RedisConnectionError)
    client.aclose.assert_not_awaited()


def test_sliding_script_records_members_without_overwriting():
    assert "'ZADD', KEYS[1], 'NX'" in SLIDING_WINDOW_LUA
    assert "if added == 0 then" in SLIDING_WINDOW_LUA


def test_sliding_collision_reply_is_a_deny(monkeypatch):
    _, client, scripts = _install_fake_redis(monkeypatch)
    client.time.return_value = (1_700_000_040, 0)
    # under quota, but the member was already present so ZADD added nothing
    scripts[SLIDING_WINDOW_LUA].return_value = [0, 1, 0]
    limiter = RateLimiter(RedisWindowStore(object()), TimeUnit.MINUTE, 5)

    assert limiter.acquire("p2") is False
