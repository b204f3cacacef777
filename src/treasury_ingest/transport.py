"""Rate-limited HTTP helpers shared by sources and market-data providers."""
from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Callable, Mapping
from urllib.parse import urlparse

import requests

from .rate_limiter import RateLimiter
from .retry import TransientError, with_retry

LOGGER = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0
DEFAULT_USER_AGENT = "Mozilla/5.0 (compatible; BitcoinTreasuries/1.0)"
DEFAULT_RETRY_AFTER = 60.0
RETRYABLE_STATUS = {500, 502, 503, 504}


class RateLimitTimeout(RuntimeError):
    """No rate limiter slot became available in time."""


class TransientHTTPError(TransientError):
    """A throttled (429) or server-side (5xx) response."""

    def __init__(
        self, message: str, status_code: int | None = None, retry_after: float | None = None
    ) -> None:
        super().__init__(message, retry_after=retry_after)
        self.status_code = status_code


def _retry_after_seconds(response: requests.Response, now: datetime | None = None) -> float:
    """Seconds requested by ``Retry-After``, given as a delay or an HTTP date."""

    raw = (response.headers.get("Retry-After") or "").strip()
    if not raw:
        return DEFAULT_RETRY_AFTER
    try:
        return max(float(raw), 0.0)
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(raw)
    except (TypeError, ValueError):
        LOGGER.debug("Unparseable Retry-After %r, using %.0fs", raw, DEFAULT_RETRY_AFTER)
        return DEFAULT_RETRY_AFTER
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    current = now or datetime.now(timezone.utc)
    return max((when - current).total_seconds(), 0.0)


def rate_limited_request(
    session: requests.Session,
    method: str,
    url: str,
    limiter: RateLimiter | None,
    *,
    timeout: float = DEFAULT_TIMEOUT,
    retries: int = 3,
    max_wait: float = 5 * 60,
    sleep: Callable[[float], None] = time.sleep,
    headers: Mapping[str, str] | None = None,
    **kwargs: Any,
) -> requests.Response:
    """Perform a request gated by ``limiter`` with bounded retries.

    Every attempt, retries included, takes its own limiter slot. A 429
    response waits for the server's ``Retry-After`` before retrying, 5xx
    responses and connection errors back off exponentially. Other error
    statuses raise :class:`requests.HTTPError` immediately.
    """

    key = urlparse(url).hostname or url
    merged_headers = {"User-Agent": DEFAULT_USER_AGENT, **(headers or {})}

    def attempt() -> requests.Response:
        if limiter is not None and not limiter.wait_for_slot(key, max_wait=max_wait):
            raise RateLimitTimeout(f"Rate limit timeout for {url}")
        try:
            response = session.request(
                method, url, headers=merged_headers, timeout=timeout, **kwargs
            )
        except (requests.ConnectionError, requests.Timeout) as exc:
            raise TransientHTTPError(f"{method} {url} failed: {exc}") from exc

        if response.status_code == 429:
            wait = _retry_after_seconds(response)
            LOGGER.warning("Server rate limited (429) for %s, waiting %.0fs", url, wait)
            raise TransientHTTPError(f"HTTP 429 for {url}", status_code=429, retry_after=wait)
        if response.status_code in RETRYABLE_STATUS:
            raise TransientHTTPError(
                f"HTTP {response.status_code} for {url}", status_code=response.status_code
            )
        response.raise_for_status()
        return response

    return with_retry(attempt, max_retries=retries, delay=1.0, sleep=sleep)


def get_json(
    session: requests.Session,
    url: str,
    limiter: RateLimiter | None,
    **kwargs: Any,
) -> Any:
    """GET ``url`` through :func:`rate_limited_request` and decode the JSON body."""

    response = rate_limited_request(session, "GET", url, limiter, **kwargs)
    return response.json()


__all__ = [
    "RateLimitTimeout",
    "TransientHTTPError",
    "rate_limited_request",
    "get_json",
    "DEFAULT_TIMEOUT",
    "DEFAULT_RETRY_AFTER",
    "DEFAULT_USER_AGENT",
]
