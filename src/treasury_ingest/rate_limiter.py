"""Sliding-window rate limiting for outbound requests.

Every external service gets its own named :class:`RateLimiter` sized to the
vendor's published budget. State lives in process memory only, so the limits
are per process rather than global across instances.
"""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List

LOGGER = logging.getLogger(__name__)

MIN_POLL_INTERVAL = 1.0
MAX_POLL_INTERVAL = 5.0


@dataclass(frozen=True)
class Usage:
    current: int
    max: int
    reset_time: float


class RateLimiter:
    """Admit at most ``max_requests`` per ``window`` seconds for each key."""

    def __init__(
        self,
        max_requests: int,
        window: float,
        name: str = "service",
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        if window <= 0:
            raise ValueError("window must be positive")
        self.max_requests = max_requests
        self.window = window
        self.name = name
        self._clock = clock
        self._sleep = sleep
        self._requests: Dict[str, List[float]] = {}
        self._lock = threading.Lock()

    def _prune(self, key: str, now: float) -> List[float]:
        valid = [stamp for stamp in self._requests.get(key, []) if now - stamp < self.window]
        self._requests[key] = valid
        return valid

    def check_limit(self, key: str) -> bool:
        """Return whether a request for ``key`` is allowed, recording it if so."""

        with self._lock:
            now = self._clock()
            valid = self._prune(key, now)
            if len(valid) >= self.max_requests:
                LOGGER.warning(
                    "Rate limit exceeded for %s: %s (%d/%d)",
                    self.name,
                    key,
                    len(valid),
                    self.max_requests,
                )
                return False
            valid.append(now)
            LOGGER.debug(
                "Rate limit check for %s: %s (%d/%d)", self.name, key, len(valid), self.max_requests
            )
            return True

    def wait_for_slot(self, key: str, max_wait: float = 5 * 60) -> bool:
        """Block until ``key`` has a free slot; return False after ``max_wait`` seconds."""

        start = self._clock()
        while not self.check_limit(key):
            if self._clock() - start > max_wait:
                LOGGER.error("Rate limiter timeout for %s: %s", self.name, key)
                return False
            with self._lock:
                valid = self._requests.get(key) or [self._clock()]
                until_free = min(valid) + self.window - self._clock()
            delay = min(max(MIN_POLL_INTERVAL, until_free), MAX_POLL_INTERVAL)
            LOGGER.info("Rate limited, waiting %.1fs for %s: %s", delay, self.name, key)
            self._sleep(delay)
        return True

    def current_usage(self, key: str) -> Usage:
        with self._lock:
            now = self._clock()
            valid = self._prune(key, now)
            reset_time = min(valid) + self.window if valid else now
            return Usage(current=len(valid), max=self.max_requests, reset_time=reset_time)

    def clear(self) -> None:
        """Forget all recorded requests."""

        with self._lock:
            self._requests.clear()


HOUR = 60 * 60
MINUTE = 60

RATE_LIMITERS: Dict[str, RateLimiter] = {
    "hkex": RateLimiter(100, HOUR, "HKEX"),
    "sec": RateLimiter(500, HOUR, "SEC"),
    "pdf": RateLimiter(100, HOUR, "PDF Parsing"),
    "finnhub": RateLimiter(50, MINUTE, "Finnhub"),
    "polygon": RateLimiter(4, MINUTE, "Polygon"),
    "twelve_data": RateLimiter(6, MINUTE, "TwelveData"),
    "alpha_vantage": RateLimiter(4, MINUTE, "AlphaVantage"),
    "yahoo": RateLimiter(50, HOUR, "Yahoo"),
}


def get_limiter(name: str) -> RateLimiter:
    try:
        return RATE_LIMITERS[name]
    except KeyError:
        raise KeyError(f"No rate limiter configured for {name!r}") from None


__all__ = ["RateLimiter", "Usage", "RATE_LIMITERS", "get_limiter"]
