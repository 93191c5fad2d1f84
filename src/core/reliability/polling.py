"""
Polling and retry — bounded waits for remote long-running operations.

Remote operations (stack create/delete, VM start/stop) are observed by
polling, never pushed. Every wait has a budget; running out of it raises
``WaitTimeoutError`` instead of hanging.

Both helpers take an injectable ``sleep`` (and ``clock`` for waits) so
tests can run them without real delays.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Awaitable, Callable
from typing import TypeVar

from src.core.errors import WaitTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]
Clock = Callable[[], float]


def backoff_delay(
    attempt: int,
    base_delay: float = 1.0,
    multiplier: float = 2.0,
    max_delay: float = 60.0,
    jitter: bool = False,
) -> float:
    """Delay before retry number ``attempt`` (1-based), exponential and capped."""
    delay = min(base_delay * (multiplier ** (attempt - 1)), max_delay)
    if jitter:
        delay += random.uniform(0, delay * 0.3)
    return delay


async def wait_for(
    condition: Callable[[], Awaitable[T]],
    *,
    timeout: float = 300.0,
    interval: float = 5.0,
    description: str = "condition",
    sleep: Sleep = asyncio.sleep,
    clock: Clock = time.monotonic,
) -> T:
    """Poll ``condition`` until it returns a truthy value, then return it.

    Exceptions raised by ``condition`` propagate immediately; only a
    falsy result is retried.

    Raises:
        WaitTimeoutError: If the budget runs out first.
    """
    deadline = clock() + timeout
    while True:
        result = await condition()
        if result:
            return result
        if clock() >= deadline:
            raise WaitTimeoutError(f"Timeout waiting for {description}")
        logger.debug("Waiting for %s (next check in %.1fs)", description, interval)
        await sleep(interval)


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    *,
    max_attempts: int = 3,
    delay: float = 1.0,
    backoff_multiplier: float = 2.0,
    should_retry: Callable[[Exception], bool] | None = None,
    sleep: Sleep = asyncio.sleep,
) -> T:
    """Call ``fn`` up to ``max_attempts`` times with exponential backoff.

    The last exception is re-raised when attempts are exhausted, or as
    soon as ``should_retry`` rejects one.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await fn()
        except Exception as e:
            if attempt >= max_attempts or (should_retry and not should_retry(e)):
                raise
            wait = backoff_delay(attempt, base_delay=delay, multiplier=backoff_multiplier)
            logger.debug(
                "Attempt %d/%d failed (%s), retrying in %.1fs",
                attempt,
                max_attempts,
                e,
                wait,
            )
            await sleep(wait)
