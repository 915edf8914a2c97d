"""Tests for geogate.ratelimit — token bucket refill, denial, isolation."""

import math
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from geogate.errors import ConfigError
from geogate.ratelimit import Decision, TokenBucketStore


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


class TestConstruction:
    @pytest.mark.parametrize("rate", [0, -1, float("nan"), float("inf"), "10", None, True])
    def test_invalid_rate(self, rate) -> None:
        with pytest.raises(ConfigError):
            TokenBucketStore(refill_rate_per_second=rate, capacity=10)

    @pytest.mark.parametrize("capacity", [0, -5, float("nan"), float("inf"), "10", None])
    def test_invalid_capacity(self, capacity) -> None:
        with pytest.raises(ConfigError):
            TokenBucketStore(refill_rate_per_second=1, capacity=capacity)

    def test_config_error_is_value_error(self) -> None:
        with pytest.raises(ValueError):
            TokenBucketStore(refill_rate_per_second=0, capacity=1)

    def test_exposes_settings(self) -> None:
        store = TokenBucketStore(refill_rate_per_second=2, capacity=5)
        assert store.refill_rate_per_second == 2.0
        assert store.capacity == 5.0


class TestAdmit:
    def test_burst_up_to_capacity_then_denied(self, clock: FakeClock) -> None:
        store = TokenBucketStore(refill_rate_per_second=1, capacity=5, clock=clock)
        decisions = [store.admit("1.1.1.1") for _ in range(5)]
        assert all(d.allowed for d in decisions)
        assert [d.tokens_remaining for d in decisions] == [4, 3, 2, 1, 0]

        denied = store.admit("1.1.1.1")
        assert denied == Decision(allowed=False, retry_after_seconds=1)

    def test_fractional_capacity_allows_floor(self, clock: FakeClock) -> None:
        store = TokenBucketStore(refill_rate_per_second=1, capacity=2.5, clock=clock)
        allowed = [store.admit("k").allowed for _ in range(4)]
        assert allowed == [True, True, False, False]

    def test_retry_after_is_time_to_one_token(self, clock: FakeClock) -> None:
        store = TokenBucketStore(refill_rate_per_second=0.25, capacity=1, clock=clock)
        assert store.admit("k").allowed
        denied = store.admit("k")
        assert not denied.allowed
        assert denied.retry_after_seconds == 4
        assert denied.tokens_remaining is None

        clock.advance(1)
        assert store.admit("k").retry_after_seconds == 3

    def test_retry_after_rounds_up(self, clock: FakeClock) -> None:
        store = TokenBucketStore(refill_rate_per_second=3, capacity=1, clock=clock)
        store.admit("k")
        clock.advance(0.1)
        denied = store.admit("k")
        # 0.7 tokens missing at 3/s is 0.23s, reported as a whole second
        assert denied.retry_after_seconds == 1

    def test_one_more_after_refill_interval(self, clock: FakeClock) -> None:
        store = TokenBucketStore(refill_rate_per_second=2, capacity=3, clock=clock)
        for _ in range(3):
            assert store.admit("k").allowed
        assert not store.admit("k").allowed

        clock.advance(1 / 2)
        assert store.admit("k").allowed
        assert not store.admit("k").allowed

    def test_refill_never_exceeds_capacity(self, clock: FakeClock) -> None:
        store = TokenBucketStore(refill_rate_per_second=100, capacity=3, clock=clock)
        store.admit("k")
        clock.advance(3600)
        decision = store.admit("k")
        assert decision.tokens_remaining == 2

    def test_irregular_intervals_accumulate_exactly(self, clock: FakeClock) -> None:
        store = TokenBucketStore(refill_rate_per_second=4, capacity=10, clock=clock)
        for _ in range(10):
            store.admit("k")
        for step in (0.125, 0.25, 0.125):
            clock.advance(step)
            store.admit("k")
        # 0.5s at 4/s refilled 2 tokens and both were taken
        decision = store.admit("k")
        assert not decision.allowed

    def test_clock_going_backwards_does_not_refill(self, clock: FakeClock) -> None:
        store = TokenBucketStore(refill_rate_per_second=1, capacity=1, clock=clock)
        store.admit("k")
        clock.advance(-10)
        assert not store.admit("k").allowed
        clock.advance(10.5)
        assert not store.admit("k").allowed
        clock.advance(0.5)
        assert store.admit("k").allowed

    def test_keys_are_independent(self, clock: FakeClock) -> None:
        store = TokenBucketStore(refill_rate_per_second=1, capacity=2, clock=clock)
        store.admit("a")
        store.admit("a")
        assert not store.admit("a").allowed

        b = store.admit("b")
        assert b.allowed
        assert b.tokens_remaining == 1
        assert len(store) == 2


class TestConcurrency:
    def test_same_key_under_threads(self, clock: FakeClock) -> None:
        store = TokenBucketStore(refill_rate_per_second=1, capacity=50, clock=clock)

        with ThreadPoolExecutor(max_workers=32) as pool:
            decisions = list(pool.map(lambda _: store.admit("hot"), range(1000)))

        allowed = [d for d in decisions if d.allowed]
        assert len(allowed) == 50
        assert sorted(d.tokens_remaining for d in allowed) == list(range(50))
        assert all(d.retry_after_seconds >= 1 for d in decisions if not d.allowed)

    def test_tokens_stay_in_range_with_real_clock(self) -> None:
        store = TokenBucketStore(refill_rate_per_second=500, capacity=20)
        seen: list[float] = []
        lock = threading.Lock()

        def hammer(_: int) -> None:
            for _ in range(200):
                decision = store.admit("shared")
                if decision.allowed:
                    with lock:
                        seen.append(decision.tokens_remaining)

        with ThreadPoolExecutor(max_workers=16) as pool:
            list(pool.map(hammer, range(16)))

        assert seen
        assert all(0 <= t <= 20 and math.isfinite(t) for t in seen)
