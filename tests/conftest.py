# Ensure '<repo root>' is on sys.path so 'import quotagate' works without an install.
from pathlib import Path
import sys

import pytest

_REPO_ROOT = Path(__file__).resolve().parent.parent
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

from quotagate.memory_backend import MemoryWindowStore  # noqa: E402

# 1_700_000_040 is a whole minute (28_333_334 * 60)
MINUTE_ALIGNED_EPOCH = 1_700_000_040.0


class FakeClock:
    """Deterministic clock for the in-memory store."""

    def __init__(self, start: float = MINUTE_ALIGNED_EPOCH) -> None:
        self.current = start

    def __call__(self) -> float:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_store(clock):
    return MemoryWindowStore(clock=clock)
