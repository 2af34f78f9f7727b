"""Shared fixtures for tokenbucket tests: a deterministic clock and bucket factory."""

from __future__ import annotations

from typing import Any, Callable, List, Optional

import pytest

from tokenbucket import TokenBucket

START_MS = 1_700_000_000_000.0


class FakeClock:
    """Millisecond clock whose sleeps advance time instantly.

    ``on_sleep`` (if set) runs after every sleep with the slept milliseconds,
    which lets tests change bucket state while an admission is suspended.
    """

    def __init__(self, start_ms: float = START_MS) -> None:
        self.now = start_ms
        self.sleeps: List[float] = []
        self.on_sleep: Optional[Callable[[float], None]] = None

    def now_ms(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms

    def sleep(self, seconds: float) -> None:
        ms = round(seconds * 1000, 6)
        self.sleeps.append(ms)
        self.now += ms
        if self.on_sleep is not None:
            self.on_sleep(ms)

    async def async_sleep(self, seconds: float) -> None:
        self.sleep(seconds)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_bucket(clock: FakeClock) -> Callable[..., TokenBucket]:
    """Factory building buckets bound to the fake clock."""

    def _make(**kwargs: Any) -> TokenBucket:
        kwargs.setdefault("now_ms", clock.now_ms)
        kwargs.setdefault("sleep", clock.sleep)
        kwargs.setdefault("async_sleep", clock.async_sleep)
        return TokenBucket(**kwargs)

    return _make
