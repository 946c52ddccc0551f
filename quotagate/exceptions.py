"""
Rate limiter exceptions.

A denied permit is a normal ``False`` from ``acquire``; these exceptions mean
the quota could not be evaluated at all.
"""

from typing import Any, Dict, Optional


class RateLimitError(Exception):
    """Base exception for all rate limiter errors."""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)


class ConfigurationError(RateLimitError):
    """Raised at construction when the limiter is misconfigured."""


class StoreUnavailable(RateLimitError):
    """Raised when the counter store cannot be reached or the atomic call fails."""
