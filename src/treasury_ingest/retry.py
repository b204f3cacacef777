"""Bounded retry with exponential backoff for transient failures."""
from __future__ import annotations

import logging
import time
from typing import Callable, Optional, Tuple, Type, TypeVar

from tenacity import (
    RetryCallState,
    Retrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    wait_fixed,
)
from tenacity.wait import wait_base

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class TransientError(RuntimeError):
    """An operation failed in a way that may succeed if attempted again.

    ``retry_after`` carries a delay requested by the remote side; when set it
    replaces the computed backoff before the next attempt.
    """

    def __init__(self, message: str, retry_after: Optional[float] = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class wait_retry_after(wait_base):
    """Wait for the failed attempt's ``retry_after`` hint, else ``fallback``."""

    def __init__(self, fallback: wait_base) -> None:
        self.fallback = fallback

    def __call__(self, retry_state: RetryCallState) -> float:
        outcome = retry_state.outcome
        error = outcome.exception() if outcome is not None and outcome.failed else None
        hint = getattr(error, "retry_after", None)
        if hint is not None:
            return max(float(hint), 0.0)
        return self.fallback(retry_state)


def _never_retry(exc: BaseException) -> bool:
    # Imported lazily: helpers depends on this module.
    from .helpers import ValidationError

    return isinstance(exc, ValidationError)


def with_retry(
    fn: Callable[[], T],
    *,
    max_retries: int = 3,
    delay: float = 1.0,
    exponential: bool = True,
    retry_on: Tuple[Type[BaseException], ...] = (TransientError,),
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call ``fn`` up to ``max_retries`` times, re-raising the final error.

    Between attempts the wait is ``delay * 2 ** (attempt - 1)`` seconds when
    ``exponential`` is set, otherwise a constant ``delay``; a ``retry_after``
    hint on the error takes precedence. Only exceptions listed in
    ``retry_on`` are retried; validation errors never are.
    """

    if max_retries < 1:
        raise ValueError("max_retries must be at least 1")

    backoff = wait_exponential(multiplier=delay, exp_base=2) if exponential else wait_fixed(delay)
    retryer = Retrying(
        stop=stop_after_attempt(max_retries),
        wait=wait_retry_after(backoff),
        retry=retry_if_exception(
            lambda exc: isinstance(exc, retry_on) and not _never_retry(exc)
        ),
        before_sleep=before_sleep_log(LOGGER, logging.WARNING),
        sleep=sleep,
        reraise=True,
    )
    return retryer(fn)


__all__ = ["TransientError", "wait_retry_after", "with_retry"]
