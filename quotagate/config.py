"""Rate limiter configuration.

Per-unit window constants live in ``UNIT_POLICIES``; runtime settings are read
from ``RATE_LIMIT_*`` environment variables via Pydantic Settings.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from functools import lru_cache
from typing import Any, Dict, Union

from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .exceptions import ConfigurationError


class TimeUnit(str, Enum):
    """Granularity of a quota window."""

    SECOND = "second"
    MINUTE = "minute"
    HOUR = "hour"
    DAY = "day"


@dataclass(frozen=True)
class UnitPolicy:
    length_s: int
    ttl_s: int
    # MINUTE/HOUR/DAY look back into the previous bucket; SECOND does not
    sliding: bool


UNIT_POLICIES: Dict[TimeUnit, UnitPolicy] = {
    TimeUnit.SECOND: UnitPolicy(length_s=1, ttl_s=10, sliding=False),
    TimeUnit.MINUTE: UnitPolicy(length_s=60, ttl_s=2 * 60 + 10, sliding=True),
    TimeUnit.HOUR: UnitPolicy(length_s=3600, ttl_s=2 * 3600 + 10, sliding=True),
    TimeUnit.DAY: UnitPolicy(length_s=86400, ttl_s=2 * 86400 + 10, sliding=True),
}


_UNIT_NAMES = frozenset(unit.value for unit in TimeUnit)


def _normalize_unit_name(value: str) -> str:
    name = value.strip().lower()
    if name.endswith("s") and name[:-1] in _UNIT_NAMES:
        name = name[:-1]
    return name


def resolve_time_unit(value: Union[TimeUnit, str, Any]) -> TimeUnit:
    """Coerce ``value`` into a supported ``TimeUnit``.

    Accepts enum members or their names ("minute", "MINUTES", ...).

    Raises:
        ConfigurationError: If the unit is not one of SECOND/MINUTE/HOUR/DAY.
    """
    if isinstance(value, TimeUnit):
        return value
    if isinstance(value, str):
        name = _normalize_unit_name(value)
        try:
            return TimeUnit(name)
        except ValueError:
            pass
    raise ConfigurationError(
        f"Unsupported time unit: {value!r}",
        code="unsupported_time_unit",
        details={"supported": [unit.value for unit in TimeUnit]},
    )


def policy_for(unit: TimeUnit) -> UnitPolicy:
    return UNIT_POLICIES[resolve_time_unit(unit)]


class RateLimitSettings(BaseSettings):
    """Runtime settings loaded from environment."""

    redis_url: str = Field(
        default="redis://localhost:6379/0",
        description="Redis URL of the shared counter store",
    )
    time_unit: TimeUnit = Field(
        default=TimeUnit.MINUTE,
        description="Quota window granularity (second, minute, hour, day)",
    )
    permits_per_unit: int = Field(
        default=60,
        ge=1,
        description="Maximum permits granted per window",
    )
    socket_timeout_s: float = Field(
        default=1.0,
        gt=0,
        description="Socket timeout applied to counter store calls",
    )
    max_connections: int = Field(
        default=50,
        ge=1,
        description="Upper bound on pooled counter store connections",
    )

    model_config = SettingsConfigDict(
        env_prefix="RATE_LIMIT_",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("time_unit", mode="before")
    @classmethod
    def _normalize_time_unit(cls, value: Any) -> Any:
        if isinstance(value, str):
            return _normalize_unit_name(value)
        return value


@lru_cache
def get_settings() -> RateLimitSettings:
    """Cached settings accessor; invalid ``RATE_LIMIT_*`` values raise ``ConfigurationError``."""
    try:
        return RateLimitSettings()
    except ValidationError as exc:
        raise ConfigurationError(
            "Invalid RATE_LIMIT_* settings",
            code="invalid_settings",
            details={"fields": [".".join(str(part) for part in err["loc"]) for err in exc.errors()]},
        ) from exc
