"""Bounded fixed-delay polling shared by every wait on eventually consistent cluster state."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import TypeVar

import tenacity as tc

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _on_retry(retry_state: tc.RetryCallState) -> None:
    """Log each retry at debug level."""
    fn = retry_state.fn
    name = getattr(fn, "__name__", repr(fn))
    logger.debug(f"Attempt {retry_state.attempt_number} of {name} returned no result, retrying")


def poll(
    fn: Callable[[], T],
    max_attempts: int,
    delay_seconds: float,
    sleep: Callable[[float], None] = time.sleep,
    before_retry: Callable[[int], None] | None = None,
) -> T:
    """Call ``fn`` until it returns a truthy value or ``max_attempts`` is exhausted.

    The first attempt runs immediately; later attempts are separated by a
    fixed ``delay_seconds``.  Exceptions raised by ``fn`` are not retried.

    Args:
        fn: Zero-argument callable producing the polled value.
        max_attempts: Total number of calls, including the first.
        delay_seconds: Fixed delay between attempts.
        sleep: Sleep function, injectable for tests.
        before_retry: Optional hook called with the upcoming attempt number before each retry.

    Returns:
        The first truthy result, or the last (falsy) result once attempts are exhausted.
    """

    def _before_sleep(retry_state: tc.RetryCallState) -> None:
        _on_retry(retry_state)
        if before_retry is not None:
            before_retry(retry_state.attempt_number + 1)

    retrying = tc.Retrying(
        stop=tc.stop_after_attempt(max_attempts),
        wait=tc.wait_fixed(delay_seconds),
        retry=tc.retry_if_result(lambda result: not result),
        before_sleep=_before_sleep,
        sleep=sleep,
        retry_error_callback=lambda retry_state: retry_state.outcome.result(),
        reraise=True,
    )
    return retrying(fn)
