"""Tests for the token-bucket rate limiter."""

from __future__ import annotations

import threading

import pytest

from podcast_engine.errors import RateLimitError
from podcast_engine.jobs.rate_limiter import TokenBucket


class ManualTime:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def clock(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def time_source() -> ManualTime:
    return ManualTime()


def make_bucket(t: ManualTime, capacity: int = 5, rate: float = 1.0) -> TokenBucket:
    return TokenBucket(capacity, rate, clock=t.clock, sleep=t.sleep)


class TestTokenBucket:
    def test_starts_full(self, time_source: ManualTime) -> None:
        assert make_bucket(time_source).available == 5

    def test_try_acquire_consumes(self, time_source: ManualTime) -> None:
        bucket = make_bucket(time_source)
        assert bucket.try_acquire(2)
        assert bucket.try_acquire(3)
        assert not bucket.try_acquire(1)

    def test_refills_whole_tokens_only(self, time_source: ManualTime) -> None:
        bucket = make_bucket(time_source)
        bucket.try_acquire(5)
        time_source.now += 0.5
        assert bucket.available == 0
        time_source.now += 0.6
        assert bucket.available == 1

    def test_refill_capped_at_capacity(self, time_source: ManualTime) -> None:
        bucket = make_bucket(time_source)
        bucket.try_acquire(1)
        time_source.now += 100
        assert bucket.available == 5

    def test_cost_above_capacity_rejected(self, time_source: ManualTime) -> None:
        with pytest.raises(ValueError):
            make_bucket(time_source).try_acquire(6)

    def test_acquire_waits_for_refill(self, time_source: ManualTime) -> None:
        bucket = make_bucket(time_source)
        bucket.try_acquire(5)
        bucket.acquire(2)
        assert time_source.sleeps == [1.0, 1.0]

    def test_acquire_timeout_raises(self, time_source: ManualTime) -> None:
        bucket = make_bucket(time_source, rate=0.1)
        bucket.try_acquire(5)
        with pytest.raises(RateLimitError):
            bucket.acquire(1, timeout=3.0)

    def test_drain_floors_at_zero(self, time_source: ManualTime) -> None:
        bucket = make_bucket(time_source)
        bucket.drain(10)
        assert bucket.available == 0

    def test_invalid_construction(self) -> None:
        with pytest.raises(ValueError):
            TokenBucket(0)
        with pytest.raises(ValueError):
            TokenBucket(5, 0)

    def test_concurrent_acquires_never_overdraw(self, time_source: ManualTime) -> None:
        bucket = make_bucket(time_source, capacity=50)
        granted: list[bool] = []
        lock = threading.Lock()

        def worker() -> None:
            for _ in range(10):
                ok = bucket.try_acquire(1)
                with lock:
                    granted.append(ok)

        threads = [threading.Thread(target=worker) for _ in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert sum(granted) == 50
