"""Unit tests for TokenBucket refill, immediate admission and blocking admission."""

from __future__ import annotations

import asyncio
import math

import pytest

from tokenbucket import (
    BucketState,
    ErrorKind,
    ExceedsMaxWait,
    NoInfinityRemoval,
    NotEnoughSize,
    TokenBucket,
)


class TestConstruction:
    """Defaults, duration keywords and argument validation."""

    def test_defaults(self, make_bucket, clock) -> None:
        """A default bucket holds one token and adds one per second."""
        bucket = make_bucket()
        assert bucket.size == 1
        assert bucket.tokens_left == 1
        assert bucket.tokens_to_add_per_interval == 1
        assert bucket.interval == 1000
        assert bucket.last_fill == clock.now
        assert bucket.spread is False
        assert bucket.max_wait is None
        assert bucket.parent is None
        assert bucket.persistence is None

    def test_interval_and_max_wait_keywords(self, make_bucket) -> None:
        """Duration keywords resolve to milliseconds."""
        bucket = make_bucket(interval="minute", max_wait="hour")
        assert bucket.interval == 60_000
        assert bucket.max_wait == 3_600_000

        assert make_bucket(interval="second").interval == 1_000
        assert make_bucket(interval="day").interval == 86_400_000

    def test_explicit_state(self, make_bucket) -> None:
        """Initial tokens and last fill can be set explicitly."""
        bucket = make_bucket(size=10, tokens_left=4, last_fill=123.0)
        assert bucket.tokens_left == 4
        assert bucket.last_fill == 123.0

    def test_tokens_left_clamped_to_size(self, make_bucket) -> None:
        """tokens_left never starts above size."""
        bucket = make_bucket(size=5, tokens_left=50)
        assert bucket.tokens_left == 5

    def test_infinite_size(self, make_bucket) -> None:
        """An unbounded bucket starts with unbounded tokens."""
        bucket = make_bucket(size=math.inf)
        assert math.isinf(bucket.tokens_left)

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"size": -1},
            {"tokens_to_add_per_interval": 0},
            {"interval": 0},
            {"interval": "fortnight"},
            {"max_wait": -5},
            {"tokens_left": -1},
            {"interval": math.inf},
        ],
    )
    def test_invalid_arguments(self, make_bucket, kwargs) -> None:
        """Invalid configuration is rejected at construction."""
        with pytest.raises(ValueError):
            make_bucket(**kwargs)

    def test_children_share_the_tree_lock(self, make_bucket) -> None:
        """Every bucket in a hierarchy uses the root's lock."""
        root = make_bucket(size=10)
        child = make_bucket(parent=root)
        grandchild = make_bucket(parent=child)
        assert child._lock is root._lock
        assert grandchild._lock is root._lock
        assert make_bucket()._lock is not root._lock

    def test_ancestors(self, make_bucket) -> None:
        """ancestors() walks parent references up to the root."""
        root = make_bucket(size=10)
        child = make_bucket(parent=root)
        grandchild = make_bucket(parent=child)
        assert grandchild.ancestors() == [child, root]
        assert root.ancestors() == []


class TestRefill:
    """Discrete and spread refill policies."""

    def test_discrete_no_partial_credit(self, make_bucket, clock) -> None:
        """Before a full interval passes, a discrete bucket gains nothing."""
        bucket = make_bucket(size=10, tokens_to_add_per_interval=5, interval=1000, tokens_left=0)
        fill = bucket.last_fill
        clock.advance(999)
        assert bucket.try_remove(1) is False
        assert bucket.tokens_left == 0
        assert bucket.last_fill == fill

    def test_discrete_full_interval(self, make_bucket, clock) -> None:
        """After a full interval all the interval's tokens appear at once."""
        bucket = make_bucket(size=10, tokens_to_add_per_interval=5, interval=1000, tokens_left=0)
        clock.advance(1000)
        assert bucket.try_remove(1) is True
        assert bucket.tokens_left == pytest.approx(4)
        assert bucket.last_fill == clock.now

    def test_spread_half_interval(self, make_bucket, clock) -> None:
        """Spread mode credits fractional tokens: 250ms of 500ms gives half a token."""
        bucket = make_bucket(size=1, tokens_to_add_per_interval=1, interval=500, spread=True, tokens_left=0)
        clock.advance(250)
        assert bucket.try_remove(1) is False
        assert bucket.tokens_left == pytest.approx(0.5)
        assert bucket.last_fill == clock.now

    def test_refill_capped_at_size(self, make_bucket, clock) -> None:
        """Refill never pushes tokens above size."""
        bucket = make_bucket(size=3, tokens_to_add_per_interval=1, interval=100, tokens_left=0)
        clock.advance(100_000)
        bucket.try_remove(1)
        assert bucket.tokens_left == 2

    def test_clock_going_backwards_adds_nothing(self, make_bucket, clock) -> None:
        """Negative elapsed time is treated as zero."""
        bucket = make_bucket(size=3, tokens_left=1, spread=True)
        clock.advance(-5_000)
        bucket.try_remove(1)
        assert bucket.tokens_left == 0


class TestTryRemove:
    """Immediate admission."""

    def test_removes_when_available(self, make_bucket) -> None:
        bucket = make_bucket(size=100)
        assert bucket.try_remove(50) is True
        assert bucket.tokens_left == 50

    def test_default_is_one_token(self, make_bucket) -> None:
        bucket = make_bucket(size=3)
        assert bucket.try_remove() is True
        assert bucket.tokens_left == 2

    def test_fails_without_mutation(self, make_bucket) -> None:
        bucket = make_bucket(size=100, tokens_left=10)
        assert bucket.try_remove(11) is False
        assert bucket.tokens_left == 10

    def test_more_than_size_fails(self, make_bucket) -> None:
        bucket = make_bucket(size=5)
        assert bucket.try_remove(6) is False
        assert bucket.tokens_left == 5

    def test_infinite_request_fails(self, make_bucket) -> None:
        bucket = make_bucket(size=math.inf)
        assert bucket.try_remove(math.inf) is False
        assert math.isinf(bucket.tokens_left)

    @pytest.mark.parametrize("tokens", [0, -1])
    def test_non_positive_request_is_refused(self, make_bucket, tokens) -> None:
        """Immediate admission reports misuse as a refusal, never an error."""
        bucket = make_bucket(size=3)
        assert bucket.try_remove(tokens) is False
        assert bucket.tokens_left == 3

    @pytest.mark.parametrize("tokens", [0, -1])
    def test_non_positive_blocking_request_raises(self, make_bucket, tokens) -> None:
        with pytest.raises(ValueError):
            make_bucket().remove(tokens)

    def test_chain_debits_every_bucket(self, make_bucket) -> None:
        """Success removes exactly n tokens from each bucket in the chain."""
        root = make_bucket(size=100, tokens_left=50)
        parent = make_bucket(size=20, tokens_left=20, parent=root)
        child = make_bucket(size=10, tokens_left=10, parent=parent)

        assert child.try_remove(3) is True
        assert (child.tokens_left, parent.tokens_left, root.tokens_left) == (7, 17, 47)

    def test_chain_failure_in_ancestor_leaves_everything(self, make_bucket) -> None:
        """If an ancestor lacks tokens, no bucket is debited."""
        root = make_bucket(size=100, tokens_left=2)
        parent = make_bucket(size=20, tokens_left=20, parent=root)
        child = make_bucket(size=10, tokens_left=10, parent=parent)

        assert child.try_remove(3) is False
        assert (child.tokens_left, parent.tokens_left, root.tokens_left) == (10, 20, 2)

    def test_child_shortage_does_not_touch_parent(self, make_bucket) -> None:
        parent = make_bucket(size=20)
        child = make_bucket(size=10, tokens_left=1, parent=parent)

        assert child.try_remove(2) is False
        assert parent.tokens_left == 20


class TestRemove:
    """Blocking admission."""

    def test_discrete_bucket_waits_for_full_interval(self, make_bucket, clock) -> None:
        """100/30-per-minute bucket: 100 at once, then one more after a minute leaves 29."""
        bucket = make_bucket(size=100, tokens_to_add_per_interval=30, interval=60_000)

        assert bucket.remove(100) == 0
        assert clock.sleeps == []

        start = clock.now
        remaining = bucket.remove(1)
        assert remaining == pytest.approx(29)
        assert clock.now - start == 60_000
        assert clock.sleeps == [60_000]

    def test_spread_bucket_waits_for_fraction(self, make_bucket, clock) -> None:
        """Spread mode waits only for the missing fraction."""
        bucket = make_bucket(
            size=1, tokens_to_add_per_interval=1, interval=500, spread=True, tokens_left=0
        )
        clock.advance(250)

        remaining = bucket.remove(1)
        assert remaining == pytest.approx(0, abs=1e-9)
        assert sum(clock.sleeps) == pytest.approx(250, abs=2)

    def test_never_resolves_early(self, make_bucket, clock) -> None:
        """Blocking admission cannot finish before the bucket accrued the tokens."""
        bucket = make_bucket(size=10, tokens_to_add_per_interval=2, interval=1000, tokens_left=0)
        start = clock.now
        bucket.remove(5)
        # 5 tokens at 2 per second
        assert clock.now - start >= 2_500
        assert 0 <= bucket.tokens_left <= bucket.size

    def test_not_enough_size(self, make_bucket, clock) -> None:
        """More tokens than the bucket can ever hold fails at once."""
        bucket = make_bucket(size=5, tokens_left=5)
        with pytest.raises(NotEnoughSize) as exc_info:
            bucket.remove(6)
        assert exc_info.value.kind is ErrorKind.NOT_ENOUGH_SIZE
        assert bucket.tokens_left == 5
        assert clock.sleeps == []

    def test_not_enough_size_on_finite_bucket_for_infinity(self, make_bucket) -> None:
        with pytest.raises(NotEnoughSize):
            make_bucket(size=5).remove(math.inf)

    def test_no_infinity_removal(self, make_bucket) -> None:
        """Infinite requests are rejected even from an unbounded bucket."""
        bucket = make_bucket(size=math.inf)
        with pytest.raises(NoInfinityRemoval) as exc_info:
            bucket.remove(math.inf)
        assert exc_info.value.kind is ErrorKind.NO_INFINITY_REMOVAL

    def test_infinite_bucket_stays_infinite(self, make_bucket) -> None:
        bucket = make_bucket(size=math.inf)
        assert math.isinf(bucket.remove(1_000_000))

    def test_exceeds_max_wait_across_hierarchy(self, make_bucket, clock) -> None:
        """Daily parent plus 15-minute child with a one-hour ceiling rejects up front."""
        parent = make_bucket(size=1000, interval=86_400_000, tokens_left=0)
        child = make_bucket(
            size=15,
            tokens_to_add_per_interval=15,
            interval=900_000,
            max_wait=3_600_000,
            parent=parent,
        )

        with pytest.raises(ExceedsMaxWait) as exc_info:
            child.remove(1)

        err = exc_info.value
        assert err.kind is ErrorKind.EXCEEDS_MAX_WAIT
        assert err.max_wait_ms == 3_600_000
        assert err.wait_ms > 3_600_000
        assert child.tokens_left == 15
        assert parent.tokens_left == 0
        assert clock.sleeps == []

    def test_tightest_max_wait_wins(self, make_bucket) -> None:
        """A parent's smaller max_wait also bounds the child's requests."""
        parent = make_bucket(size=10, interval=1000, tokens_left=0, max_wait=500)
        child = make_bucket(size=10, max_wait="hour", parent=parent)

        with pytest.raises(ExceedsMaxWait) as exc_info:
            child.remove(1)
        assert exc_info.value.max_wait_ms == 500

    def test_wait_within_max_wait_succeeds(self, make_bucket, clock) -> None:
        bucket = make_bucket(size=1, interval=1000, tokens_left=0, max_wait=1000)
        assert bucket.remove(1) == 0
        assert clock.sleeps == [1000]

    def test_discrete_wait_is_proportional_to_missing_tokens(self, make_bucket, clock) -> None:
        """One token of a 30-per-minute bucket is 2000ms of refill time."""
        bucket = make_bucket(size=100, tokens_to_add_per_interval=30, interval=60_000, tokens_left=0)
        assert bucket._wait_for(1, clock.now) == 2_000
        assert bucket._wait_for(30, clock.now) == 60_000
        clock.advance(500)
        assert bucket._wait_for(1, clock.now) == 1_500

    def test_max_wait_checked_against_refill_time(self, make_bucket, clock) -> None:
        """A 2000ms refill wait fits a 5000ms ceiling; the pause still runs to the interval."""
        bucket = make_bucket(
            size=100, tokens_to_add_per_interval=30, interval=60_000, max_wait=5_000
        )
        assert bucket.remove(100) == 0

        remaining = bucket.remove(1)

        assert remaining == pytest.approx(29)
        assert clock.sleeps == [60_000]

    def test_max_wait_still_rejects_longer_refill(self, make_bucket, clock) -> None:
        bucket = make_bucket(
            size=100, tokens_to_add_per_interval=30, interval=60_000, max_wait=5_000, tokens_left=0
        )
        with pytest.raises(ExceedsMaxWait) as exc_info:
            bucket.remove(3)
        assert exc_info.value.wait_ms == 6_000
        assert clock.sleeps == []

        assert clock.sleeps == [1000]

    def test_child_waits_for_parent(self, make_bucket, clock) -> None:
        """The parent is admitted first; the result is the smaller remainder."""
        parent = make_bucket(size=2, tokens_to_add_per_interval=1, interval=1000, tokens_left=0)
        child = make_bucket(size=10, parent=parent)

        remaining = child.remove(1)

        assert remaining == 0
        assert child.tokens_left == 9
        assert parent.tokens_left == 0
        assert clock.sleeps == [1000]

    def test_remaining_is_min_of_child_and_parent(self, make_bucket) -> None:
        parent = make_bucket(size=100)
        child = make_bucket(size=10, parent=parent)
        assert child.remove(4) == 6
        assert parent.tokens_left == 96

    def test_parent_not_enough_size_propagates(self, make_bucket) -> None:
        """Errors raised while admitting the parent reach the caller unchanged."""
        parent = make_bucket(size=2)
        child = make_bucket(size=10, parent=parent)
        with pytest.raises(NotEnoughSize):
            child.remove(5)
        assert child.tokens_left == 10
        assert parent.tokens_left == 2

    def test_rollback_restores_parent_when_child_drained(self, make_bucket, clock) -> None:
        """If the child runs dry while the parent waits, the parent debit is undone."""
        start = clock.now
        parent = make_bucket(size=1, tokens_to_add_per_interval=1, interval=1000, tokens_left=0)
        child = make_bucket(size=5, tokens_to_add_per_interval=1, interval=60_000, parent=parent)
        observed = []

        def on_sleep(ms: float) -> None:
            if len(clock.sleeps) == 1:
                child.tokens_left = 0  # concurrent consumer drains the child
            elif len(clock.sleeps) == 2:
                observed.append(parent.snapshot())

        clock.on_sleep = on_sleep

        remaining = child.remove(1)

        assert observed == [BucketState(tokens_left=0, last_fill=start)]
        assert clock.sleeps == [1000, 0, 59_000]
        assert remaining == 0
        assert child.tokens_left == 0
        assert parent.tokens_left == 0
        assert parent.last_fill == start + 60_000

    def test_rollback_restores_every_ancestor(self, make_bucket, clock) -> None:
        """The compensating restore covers the whole chain above the child."""
        start = clock.now
        root = make_bucket(size=10, tokens_to_add_per_interval=1, interval=1000)
        parent = make_bucket(
            size=1, tokens_to_add_per_interval=1, interval=1000, tokens_left=0, parent=root
        )
        child = make_bucket(size=5, tokens_to_add_per_interval=1, interval=60_000, parent=parent)
        observed = []

        def on_sleep(ms: float) -> None:
            if len(clock.sleeps) == 1:
                child.tokens_left = 0
            elif len(clock.sleeps) == 2:
                observed.append((parent.snapshot(), root.snapshot()))

        clock.on_sleep = on_sleep

        child.remove(1)

        assert observed == [
            (
                BucketState(tokens_left=0, last_fill=start),
                BucketState(tokens_left=10, last_fill=start),
            )
        ]
        # Only the final, successful pass debited the root
        assert root.tokens_left == 9

    def test_tokens_stay_within_bounds(self, make_bucket, clock) -> None:
        """A mixed sequence of calls keeps 0 <= tokens_left <= size."""
        parent = make_bucket(size=20, tokens_to_add_per_interval=5, interval=1000)
        child = make_bucket(size=8, tokens_to_add_per_interval=3, interval=500, spread=True, parent=parent)

        for tokens in (3, 5, 8, 1, 7, 2, 8, 4):
            child.remove(tokens)
            child.try_remove(tokens)
            clock.advance(137)
            for bucket in (child, parent):
                assert 0 <= bucket.tokens_left <= bucket.size


class TestRemoveAsync:
    """Awaitable blocking admission."""

    def test_waits_with_async_sleep(self, make_bucket, clock) -> None:
        bucket = make_bucket(size=100, tokens_to_add_per_interval=30, interval=60_000, tokens_left=0)
        remaining = asyncio.run(bucket.remove_async(1))
        assert remaining == pytest.approx(29)
        assert clock.sleeps == [60_000]

    def test_hierarchy(self, make_bucket, clock) -> None:
        parent = make_bucket(size=2, interval=1000, tokens_left=0)
        child = make_bucket(size=10, parent=parent)
        assert asyncio.run(child.remove_async(1)) == 0
        assert child.tokens_left == 9

    def test_errors_surface(self, make_bucket) -> None:
        bucket = make_bucket(size=1, tokens_left=0, interval="day", max_wait="second")
        with pytest.raises(ExceedsMaxWait):
            asyncio.run(bucket.remove_async(1))
        with pytest.raises(NotEnoughSize):
            asyncio.run(bucket.remove_async(2))

    def test_uses_real_asyncio_sleep_by_default(self) -> None:
        """Without injection, a spread bucket waits a few real milliseconds."""
        bucket = TokenBucket(size=1, tokens_to_add_per_interval=1, interval=20, spread=True, tokens_left=0)
        remaining = asyncio.run(bucket.remove_async(1))
        assert 0 <= remaining < 1
