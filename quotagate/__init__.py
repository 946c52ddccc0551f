"""Distributed fixed/sliding window rate limiter with a Redis backend."""

import logging

from .config import RateLimitSettings, TimeUnit
from .exceptions import ConfigurationError, RateLimitError, StoreUnavailable
from .limiter import AsyncRateLimiter, RateLimiter
from .memory_backend import AsyncMemoryWindowStore, MemoryWindowStore
from .redis_backend import AsyncRedisWindowStore, RedisWindowStore

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    "AsyncMemoryWindowStore",
    "AsyncRateLimiter",
    "AsyncRedisWindowStore",
    "ConfigurationError",
    "MemoryWindowStore",
    "RateLimitError",
    "RateLimitSettings",
    "RateLimiter",
    "RedisWindowStore",
    "StoreUnavailable",
    "TimeUnit",
]
