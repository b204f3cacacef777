"""Tests for ``treasury_ingest.rate_limiter``."""
from __future__ import annotations

import threading

import pytest

from treasury_ingest.rate_limiter import RATE_LIMITERS, RateLimiter, get_limiter


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


class TestCheckLimit:
    def test_allows_up_to_max_then_denies(self, clock):
        limiter = RateLimiter(3, 60, "test", clock=clock, sleep=clock.sleep)
        assert [limiter.check_limit("a") for _ in range(3)] == [True, True, True]
        assert limiter.check_limit("a") is False

    def test_denied_until_oldest_ages_out(self, clock):
        limiter = RateLimiter(2, 60, "test", clock=clock, sleep=clock.sleep)
        limiter.check_limit("a")
        clock.now += 30
        limiter.check_limit("a")
        clock.now += 29
        assert limiter.check_limit("a") is False
        clock.now += 1
        assert limiter.check_limit("a") is True

    def test_keys_are_independent(self, clock):
        limiter = RateLimiter(1, 60, "test", clock=clock)
        assert limiter.check_limit("a")
        assert limiter.check_limit("b")
        assert not limiter.check_limit("a")

    def test_invalid_configuration(self):
        with pytest.raises(ValueError):
            RateLimiter(0, 60)
        with pytest.raises(ValueError):
            RateLimiter(1, 0)

    def test_concurrent_callers_never_exceed_budget(self):
        limiter = RateLimiter(25, 3600, "threads")
        outcomes: list[bool] = []
        lock = threading.Lock()

        def worker():
            for _ in range(10):
                allowed = limiter.check_limit("shared")
                with lock:
                    outcomes.append(allowed)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        assert outcomes.count(True) == 25


class TestWaitForSlot:
    def test_returns_immediately_when_free(self, clock):
        limiter = RateLimiter(1, 60, "test", clock=clock, sleep=clock.sleep)
        assert limiter.wait_for_slot("a") is True
        assert clock.sleeps == []

    def test_waits_for_the_window_to_slide(self, clock):
        limiter = RateLimiter(1, 3, "test", clock=clock, sleep=clock.sleep)
        limiter.check_limit("a")
        assert limiter.wait_for_slot("a", max_wait=60) is True
        assert clock.sleeps == [3.0]

    def test_poll_interval_is_bounded(self, clock):
        limiter = RateLimiter(1, 60, "test", clock=clock, sleep=clock.sleep)
        limiter.check_limit("a")
        assert limiter.wait_for_slot("a", max_wait=60) is True
        assert all(1.0 <= delay <= 5.0 for delay in clock.sleeps)

    def test_gives_up_after_max_wait(self, clock):
        limiter = RateLimiter(1, 3600, "test", clock=clock, sleep=clock.sleep)
        limiter.check_limit("a")
        assert limiter.wait_for_slot("a", max_wait=10) is False


class TestUsage:
    def test_current_usage(self, clock):
        limiter = RateLimiter(5, 60, "test", clock=clock)
        limiter.check_limit("a")
        clock.now += 10
        limiter.check_limit("a")
        usage = limiter.current_usage("a")
        assert usage.current == 2
        assert usage.max == 5
        assert usage.reset_time == 1060.0

    def test_clear(self, clock):
        limiter = RateLimiter(1, 60, "test", clock=clock)
        limiter.check_limit("a")
        limiter.clear()
        assert limiter.check_limit("a") is True


class TestRegistry:
    def test_named_limiters(self):
        assert RATE_LIMITERS["sec"].max_requests == 500
        assert RATE_LIMITERS["polygon"].window == 60
        assert get_limiter("hkex") is RATE_LIMITERS["hkex"]

    def test_unknown_limiter(self):
        with pytest.raises(KeyError):
            get_limiter("nope")
