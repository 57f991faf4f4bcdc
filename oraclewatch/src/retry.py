"""Retry and timeout helpers shared by the sync and health loops.

Two backoff strategies are supported, both capped at ``max_delay``:
    - linear: ``base_delay * attempt``
    - exponential: ``base_delay * multiplier ** (attempt - 1)``, never
      shorter than the linear delay

.. code-block:: python

    >>> compute_backoff(3, base_delay=5.0, strategy=LINEAR, jitter_ratio=0)
    15.0
    >>> compute_backoff(3, base_delay=5.0, jitter_ratio=0)
    20.0
    >>> compute_backoff(10, base_delay=5.0, max_delay=60.0, jitter_ratio=0)
    60.0
"""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Awaitable, Callable, TypeVar

from .errors import OperationTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")

LINEAR = "linear"
EXPONENTIAL = "exponential"
BACKOFF_STRATEGIES = (LINEAR, EXPONENTIAL)

DEFAULT_BACKOFF_MULTIPLIER = 2.0
DEFAULT_MAX_DELAY_SECONDS = 60.0
DEFAULT_JITTER_RATIO = 0.1


def compute_backoff(
    attempt: int,
    base_delay: float,
    multiplier: float = DEFAULT_BACKOFF_MULTIPLIER,
    max_delay: float = DEFAULT_MAX_DELAY_SECONDS,
    jitter_ratio: float = DEFAULT_JITTER_RATIO,
    strategy: str = EXPONENTIAL,
) -> float:
    """Compute the delay to wait after a failed attempt.

    :param attempt: 1-based number of the attempt that just failed.
    :param base_delay: Delay after the first failure, in seconds.
    :param multiplier: Growth factor per attempt for the exponential strategy.
    :param max_delay: Upper bound before jitter is added.
    :param jitter_ratio: Fraction of the delay added as random jitter.
    :param strategy: ``"linear"`` or ``"exponential"``.
    :returns: Delay in seconds.
    :raises ValueError: On an unknown strategy or an attempt below 1.
    """
    if attempt < 1:
        raise ValueError("attempt must be at least 1")
    if strategy not in BACKOFF_STRATEGIES:
        raise ValueError(f"Unknown backoff strategy: {strategy}")

    delay = base_delay * attempt
    if strategy == EXPONENTIAL:
        delay = max(delay, base_delay * (multiplier ** (attempt - 1)))
    delay = min(delay, max_delay)
    if jitter_ratio > 0:
        delay += random.uniform(0, jitter_ratio * delay)
    return delay


async def wait_for_stop(stop_event: asyncio.Event, timeout: float) -> bool:
    """Sleep up to ``timeout`` seconds, waking early if the event is set.

    :param stop_event: Event signalling a stop request.
    :param timeout: Maximum time to sleep in seconds.
    :returns: True if the event was set, False if the timeout elapsed.
    """
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=timeout)
        return True
    except asyncio.TimeoutError:
        return False


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    *,
    max_retries: int,
    retry_delay: float,
    strategy: str = LINEAR,
    multiplier: float = DEFAULT_BACKOFF_MULTIPLIER,
    max_delay: float = DEFAULT_MAX_DELAY_SECONDS,
    jitter_ratio: float = 0.0,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    on_retry: Callable[[int, BaseException], None] | None = None,
) -> T:
    """Call ``fn`` until it succeeds or ``max_retries`` attempts are used up.

    :param fn: Zero-argument coroutine function to call.
    :param max_retries: Total number of attempts (at least 1).
    :param retry_delay: Base delay between attempts in seconds.
    :param strategy: Backoff strategy, linear by default.
    :param multiplier: Growth factor of the exponential strategy.
    :param max_delay: Cap on a single delay.
    :param jitter_ratio: Random jitter fraction added to each delay.
    :param retry_on: Exception types that trigger another attempt.
    :param on_retry: Optional callback invoked as ``on_retry(attempt, error)``
        before sleeping.
    :returns: The first successful result.
    :raises BaseException: The last error once all attempts failed.
    """
    if max_retries < 1:
        raise ValueError("max_retries must be at least 1")

    for attempt in range(1, max_retries + 1):
        try:
            return await fn()
        except retry_on as e:
            if attempt >= max_retries:
                raise
            if on_retry is not None:
                on_retry(attempt, e)
            delay = compute_backoff(
                attempt,
                retry_delay,
                multiplier=multiplier,
                max_delay=max_delay,
                jitter_ratio=jitter_ratio,
                strategy=strategy,
            )
            logger.debug(f"Attempt {attempt}/{max_retries} failed ({e}), retrying in {delay:.2f}s")
            await asyncio.sleep(delay)

    raise AssertionError("unreachable")


async def with_timeout(
    awaitable: Awaitable[T],
    timeout: float,
    message: str | None = None,
) -> T:
    """Await ``awaitable`` but give up after ``timeout`` seconds.

    :param awaitable: Coroutine or future to wait for.
    :param timeout: Timeout in seconds.
    :param message: Error message; defaults to a generic one.
    :returns: The awaited result.
    :raises OperationTimeoutError: If the timeout expires first.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError as e:
        raise OperationTimeoutError(
            message or f"Operation timed out after {timeout}s"
        ) from e
