"""Window math and pure permit decisions.

Nothing here touches a store. Store adapters run these decisions atomically:
the Redis backend mirrors them in Lua, the memory backend under a lock.
"""

from dataclasses import dataclass
from typing import Tuple

from .config import UnitPolicy

MICROS_PER_SECOND = 1_000_000


@dataclass(frozen=True)
class Decision:
    allowed: bool
    # permits counted against the window once this call is applied
    count: int
    limit: int

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.count)


@dataclass(frozen=True)
class Mutation:
    record: bool
    set_ttl: bool


@dataclass(frozen=True)
class FixedWindowPlan:
    key: str
    ttl_s: int
    permits: int


@dataclass(frozen=True)
class SlidingWindowPlan:
    current_key: str
    previous_key: str
    now_us: int
    threshold_us: int
    ttl_s: int
    permits: int

    @property
    def member(self) -> str:
        return str(self.now_us)


def counter_key(key_prefix: str, window_id: int) -> str:
    return f"{key_prefix}:{window_id}"


def window_index(seconds: int, length_s: int) -> int:
    return seconds // length_s


def plan_fixed_window(key_prefix: str, seconds: int, policy: UnitPolicy, permits: int) -> FixedWindowPlan:
    return FixedWindowPlan(key=counter_key(key_prefix, seconds), ttl_s=policy.ttl_s, permits=permits)


def plan_sliding_window(
    key_prefix: str,
    seconds: int,
    micros: int,
    policy: UnitPolicy,
    permits: int,
) -> SlidingWindowPlan:
    """
    Build the two-bucket plan for a MINUTE/HOUR/DAY window.

    Args:
        key_prefix: logical resource key
        seconds: store time, whole seconds since epoch
        micros: store time, microseconds within the current second
        policy: window length and TTL for the configured unit
        permits: quota per window

    Returns:
        SlidingWindowPlan addressing the current bucket and the one before it,
        with the lookback threshold for the previous bucket.
    """
    now_us = seconds * MICROS_PER_SECOND + micros
    index = window_index(seconds, policy.length_s)
    return SlidingWindowPlan(
        current_key=counter_key(key_prefix, index),
        previous_key=counter_key(key_prefix, index - 1),
        now_us=now_us,
        threshold_us=now_us - policy.length_s * MICROS_PER_SECOND,
        ttl_s=policy.ttl_s,
        permits=permits,
    )


def fixed_window_decide(count_after_increment: int, permits: int) -> Tuple[Mutation, Decision]:
    """
    Fixed-window decision, evaluated after the counter was incremented.

    The increment is never refunded, so the counter keeps growing past the
    quota while the window lasts. The TTL is set only by the call that created
    the counter.
    """
    mutation = Mutation(record=True, set_ttl=count_after_increment == 1)
    decision = Decision(
        allowed=count_after_increment <= permits,
        count=count_after_increment,
        limit=permits,
    )
    return mutation, decision


def sliding_window_decide(
    current_count: int,
    previous_count: int,
    permits: int,
    member_taken: bool = False,
) -> Tuple[Mutation, Decision]:
    """
    Two-bucket sliding-window decision.

    Args:
        current_count: all events in the current bucket
        previous_count: events in the previous bucket at or after the lookback threshold
        permits: quota per window
        member_taken: the current bucket already holds this call's member token

    Returns:
        (Mutation, Decision). A denied call mutates nothing. A call whose token
        is already recorded is denied, since recording it would not add an event.
    """
    in_window = current_count + previous_count
    if in_window < permits and not member_taken:
        mutation = Mutation(record=True, set_ttl=current_count == 0)
        return mutation, Decision(True, count=in_window + 1, limit=permits)
    return Mutation(record=False, set_ttl=False), Decision(False, count=in_window, limit=permits)
