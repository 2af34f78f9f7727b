# === NAVMAP v1 ===
# {
#   "module": "tokenbucket.bucket",
#   "purpose": "Hierarchical token bucket: refill, immediate and blocking admission, persistence.",
#   "sections": [
#     {
#       "id": "bucketstate",
#       "name": "BucketState",
#       "anchor": "class-bucketstate",
#       "kind": "class"
#     },
#     {
#       "id": "tokenbucket",
#       "name": "TokenBucket",
#       "anchor": "class-tokenbucket",
#       "kind": "class"
#     }
#   ]
# }
# === /NAVMAP ===

"""Hierarchical token bucket: refill, immediate and blocking admission, persistence.

A bucket holds up to ``size`` tokens and gains ``tokens_to_add_per_interval``
tokens every ``interval`` milliseconds, either all at once when a full
interval has passed (discrete) or proportionally to elapsed time (``spread``).
Buckets may have a parent; removing tokens from a child also removes them
from every ancestor, so a child is limited by the tightest bucket above it.

Provides:
- ``try_remove``: non-waiting probe, ``True`` only if the whole chain has the tokens
- ``remove`` / ``remove_async``: wait until the chain has the tokens, bounded by ``max_wait``
- ``save`` / ``load``: persist ``last_fill`` and ``tokens_left`` through a store

Concurrency:
- every bucket in a tree shares one re-entrant lock (a child adopts its parent's)
- the lock is held while refilling, checking and debiting, never while waiting
- a wait always restarts the admission from the top with fresh state

Example:
    >>> parent = TokenBucket(size=1000, interval="day")
    >>> bucket = TokenBucket(
    ...     size=15,
    ...     tokens_to_add_per_interval=15,
    ...     interval=15 * 60 * 1000,
    ...     max_wait="hour",
    ...     parent=parent,
    ... )
    >>> bucket.remove(3)  # blocks until both buckets can spare 3 tokens
    12.0
"""

from __future__ import annotations

import asyncio
import math
import threading
import time
from collections.abc import Awaitable, Callable, Generator
from dataclasses import dataclass
from typing import List, Optional, Tuple

from tokenbucket.durations import DurationLike, parse_duration_ms, parse_optional_duration_ms
from tokenbucket.errors import (
    ExceedsMaxWait,
    NoInfinityRemoval,
    NoPersistenceConfigured,
    NotEnoughSize,
    StoreError,
)
from tokenbucket.persistence import BucketPersistence


def wall_clock_ms() -> float:
    """Current wall-clock time in milliseconds (comparable across processes)."""
    return time.time() * 1000.0


@dataclass(frozen=True)
class BucketState:
    """The two scalars that describe a bucket at a point in time."""

    tokens_left: float
    last_fill: float


class TokenBucket:
    """Token bucket with optional parent and optional persistence.

    Args:
        size: Maximum number of tokens held (the burst size); ``math.inf`` allowed.
        tokens_to_add_per_interval: Tokens added per interval.
        interval: Interval length in milliseconds, or ``"second"``, ``"minute"``,
            ``"hour"`` or ``"day"``.
        tokens_left: Initial tokens; defaults to ``size`` (a full bucket).
        last_fill: Timestamp (ms) of the last refill; defaults to now.
        spread: Add fractional tokens continuously instead of once per interval.
        max_wait: Longest acceptable wait (ms or duration keyword) for ``remove``.
            The smallest value across the hierarchy applies.
        parent: Bucket whose tokens are also removed; shared, not owned.
        persistence: Identity used by ``save`` and ``load``.
        now_ms: Clock returning milliseconds.
        sleep: Blocking sleep taking seconds, used by ``remove``.
        async_sleep: Awaitable sleep taking seconds, used by ``remove_async``.
    """

    def __init__(
        self,
        size: float = 1,
        tokens_to_add_per_interval: float = 1,
        interval: DurationLike = 1000,
        tokens_left: Optional[float] = None,
        last_fill: Optional[float] = None,
        spread: bool = False,
        max_wait: Optional[DurationLike] = None,
        parent: Optional["TokenBucket"] = None,
        persistence: Optional[BucketPersistence] = None,
        *,
        now_ms: Optional[Callable[[], float]] = None,
        sleep: Callable[[float], None] = time.sleep,
        async_sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if size < 0:
            raise ValueError(f"size must be >= 0, got: {size}")
        if tokens_to_add_per_interval <= 0:
            raise ValueError(
                f"tokens_to_add_per_interval must be > 0, got: {tokens_to_add_per_interval}"
            )
        interval_ms = parse_duration_ms(interval)
        if interval_ms <= 0:
            raise ValueError(f"interval must be > 0 ms, got: {interval}")
        max_wait_ms = parse_optional_duration_ms(max_wait)
        if max_wait_ms is not None and max_wait_ms < 0:
            raise ValueError(f"max_wait must be >= 0 ms, got: {max_wait}")
        if tokens_left is not None and tokens_left < 0:
            raise ValueError(f"tokens_left must be >= 0, got: {tokens_left}")

        self.size = float(size)
        self.tokens_to_add_per_interval = float(tokens_to_add_per_interval)
        self.interval = interval_ms
        self.max_wait = max_wait_ms
        self._spread = bool(spread)
        self._parent = parent
        self._persistence = persistence

        self._now_ms = now_ms or wall_clock_ms
        self._sleep = sleep
        self._async_sleep = async_sleep
        # One lock per tree
        self._lock = parent._lock if parent is not None else threading.RLock()

        initial = self.size if tokens_left is None else float(tokens_left)
        self.tokens_left = min(initial, self.size)
        self.last_fill = float(self._now_ms() if last_fill is None else last_fill)

    def __repr__(self) -> str:
        name = self._persistence.bucket_name if self._persistence else None
        return (
            f"TokenBucket(name={name!r}, size={self.size:g}, tokens_left={self.tokens_left:g}, "
            f"rate={self.tokens_to_add_per_interval:g}/{self.interval}ms, spread={self._spread})"
        )

    # ------------------------------------------------------------------ #
    # Read-only configuration
    # ------------------------------------------------------------------ #

    @property
    def spread(self) -> bool:
        return self._spread

    @property
    def parent(self) -> Optional["TokenBucket"]:
        return self._parent

    @property
    def persistence(self) -> Optional[BucketPersistence]:
        return self._persistence

    def ancestors(self) -> List["TokenBucket"]:
        """Parent, grandparent, ... up to the root."""
        chain: List[TokenBucket] = []
        bucket = self._parent
        while bucket is not None:
            chain.append(bucket)
            bucket = bucket._parent
        return chain

    def snapshot(self) -> BucketState:
        with self._lock:
            return BucketState(tokens_left=self.tokens_left, last_fill=self.last_fill)

    # ------------------------------------------------------------------ #
    # Refill and wait math
    # ------------------------------------------------------------------ #

    def _add_tokens(self, now: float) -> None:
        """Credit tokens accrued since ``last_fill``.

        Discrete buckets only credit once a full interval has elapsed; the
        credit is then proportional to the whole elapsed time.
        """
        elapsed = max(now - self.last_fill, 0.0)
        if elapsed:
            accrued = elapsed * self.tokens_to_add_per_interval / self.interval
        else:
            accrued = 0.0
        if self._spread or elapsed >= self.interval:
            self.last_fill = now
            self.tokens_left = min(self.tokens_left + accrued, self.size)

    def _wait_for(self, tokens: float, now: float) -> int:
        """Milliseconds until this bucket holds ``tokens`` (0 if it already does)."""
        needed = tokens - self.tokens_left
        if needed <= 0:
            return 0
        since_fill = max(now - self.last_fill, 0.0)
        wait = needed * self.interval / self.tokens_to_add_per_interval - since_fill
        return max(math.ceil(wait), 0)

    def _pause_for(self, tokens: float, now: float) -> int:
        """Milliseconds to suspend before re-checking; see :meth:`_wait_for`.

        A discrete bucket credits nothing before a full interval has elapsed,
        so its pause never ends before the next interval boundary.
        """
        wait = self._wait_for(tokens, now)
        if self._spread or tokens <= self.tokens_left:
            return wait
        until_boundary = self.interval - max(now - self.last_fill, 0.0)
        return max(wait, math.ceil(until_boundary), 0)

    def _check_hierarchy_wait(self, tokens: float, self_wait: int) -> None:
        """Raise ExceedsMaxWait if the summed chain wait beats the tightest ceiling."""
        total_wait = self_wait
        max_wait = self.max_wait
        for bucket in self.ancestors():
            total_wait += bucket._wait_for(tokens, bucket._now_ms())
            if bucket.max_wait is not None:
                max_wait = bucket.max_wait if max_wait is None else min(max_wait, bucket.max_wait)
        if max_wait is not None and total_wait > max_wait:
            raise ExceedsMaxWait(total_wait, max_wait)

    # ------------------------------------------------------------------ #
    # Admission
    # ------------------------------------------------------------------ #

    @staticmethod
    def _check_tokens(tokens: float) -> None:
        if tokens <= 0:
            raise ValueError(f"tokens must be positive, got: {tokens}")

    def try_remove(self, tokens: float = 1) -> bool:
        """Remove ``tokens`` from this bucket and every ancestor, without waiting.

        Returns:
            ``True`` if the tokens were removed from the whole chain, ``False``
            if any bucket lacks them (in which case nothing is removed).
            Non-positive and infinite counts are never admitted.
        """
        if tokens <= 0 or math.isinf(tokens):
            return False
        with self._lock:
            self._add_tokens(self._now_ms())
            if tokens > self.size:
                return False
            if tokens > self.tokens_left:
                return False
            if self._parent is not None and not self._parent.try_remove(tokens):
                return False
            self.tokens_left -= tokens
            return True

    def remove(self, tokens: float = 1) -> float:
        """Remove ``tokens``, sleeping until the whole chain can provide them.

        Returns:
            Tokens left afterwards; with a parent, the smaller of this bucket's
            and the parent's remaining tokens.

        Raises:
            NotEnoughSize: ``tokens`` is larger than ``size``.
            NoInfinityRemoval: ``tokens`` is infinite.
            ExceedsMaxWait: The wait across the hierarchy exceeds ``max_wait``.
        """
        steps = self._removal(tokens)
        while True:
            try:
                wait_ms = next(steps)
            except StopIteration as done:
                return done.value
            self._sleep(wait_ms / 1000.0)

    async def remove_async(self, tokens: float = 1) -> float:
        """Awaitable variant of :meth:`remove`; suspends with ``async_sleep``."""
        steps = self._removal(tokens)
        while True:
            try:
                wait_ms = next(steps)
            except StopIteration as done:
                return done.value
            await self._async_sleep(wait_ms / 1000.0)

    def _removal(self, tokens: float) -> Generator[int, None, float]:
        """Blocking admission as a generator of waits (ms); returns tokens left.

        Every pass recomputes from the current state. The parent is admitted
        before this bucket is debited; if this bucket came up short meanwhile,
        the ancestors are restored from their snapshot and the pass restarts.

        The restore is verbatim: with several threads sharing a parent, a
        sibling debit that lands on an ancestor while this pass waits for it
        is overwritten by the restore.
        """
        self._check_tokens(tokens)
        if tokens > self.size:
            raise NotEnoughSize(tokens, self.size)
        if math.isinf(tokens):
            raise NoInfinityRemoval()

        while True:
            with self._lock:
                now = self._now_ms()
                self._add_tokens(now)
                self._check_hierarchy_wait(tokens, self._wait_for(tokens, now))
                pause = self._pause_for(tokens, now)

                parent = self._parent
                if tokens > self.tokens_left:
                    parent_states = None
                elif parent is None:
                    self.tokens_left -= tokens
                    return self.tokens_left
                else:
                    parent_states = _capture(self.ancestors())

            if parent_states is None:
                yield pause
                continue

            yield from parent._removal(tokens)

            with self._lock:
                self._add_tokens(self._now_ms())
                if tokens <= self.tokens_left:
                    self.tokens_left -= tokens
                    return min(self.tokens_left, parent.tokens_left)
                _restore(parent_states)

            yield pause

    # ------------------------------------------------------------------ #
    # Persistence
    # ------------------------------------------------------------------ #

    def _require_persistence(self) -> BucketPersistence:
        if self._persistence is None:
            raise NoPersistenceConfigured()
        return self._persistence

    def _has_persisted_parent(self) -> bool:
        return self._parent is not None and self._parent._persistence is not None

    def save(self) -> None:
        """Write ``last_fill`` and ``tokens_left``, persisted ancestors first.

        Raises:
            NoPersistenceConfigured: The bucket has no persistence identity.
            StoreError: The store failed; the original error is the ``__cause__``.
        """
        persistence = self._require_persistence()
        if self._has_persisted_parent():
            self._parent.save()
        state = self.snapshot()
        try:
            persistence.write(state.last_fill, state.tokens_left)
        except Exception as exc:
            raise StoreError(
                f"Failed to save bucket '{persistence.bucket_name}': {exc}",
                bucket_name=persistence.bucket_name,
            ) from exc

    def load(self) -> None:
        """Read ``last_fill`` and ``tokens_left``, persisted ancestors first.

        Fields without a stored value keep their current value.

        Raises:
            NoPersistenceConfigured: The bucket has no persistence identity.
            StoreError: The store failed or returned an unreadable value.
        """
        persistence = self._require_persistence()
        if self._has_persisted_parent():
            self._parent.load()
        try:
            last_fill, tokens_left = persistence.read()
        except Exception as exc:
            raise StoreError(
                f"Failed to load bucket '{persistence.bucket_name}': {exc}",
                bucket_name=persistence.bucket_name,
            ) from exc
        with self._lock:
            if last_fill is not None:
                self.last_fill = last_fill
            if tokens_left is not None:
                self.tokens_left = min(max(tokens_left, 0.0), self.size)


def _capture(buckets: List[TokenBucket]) -> List[Tuple[TokenBucket, BucketState]]:
    return [(bucket, BucketState(bucket.tokens_left, bucket.last_fill)) for bucket in buckets]


def _restore(states: List[Tuple[TokenBucket, BucketState]]) -> None:
    for bucket, state in states:
        bucket.tokens_left = state.tokens_left
        bucket.last_fill = state.last_fill


__all__ = ["BucketState", "TokenBucket", "wall_clock_ms"]
