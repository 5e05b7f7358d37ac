"""Fixed-delay retry helper for async operations."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    max_retries: int = 3,
    delay: float = 1.0,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Await ``operation()``, retrying up to ``max_retries`` times after a failure.

    Every exception is retried the same way, with the same ``delay`` (seconds) between
    attempts. Once the budget is spent the last exception propagates unchanged.
    """
    if max_retries < 0:
        raise ValueError("max_retries must not be negative")

    retries_left = max_retries
    while True:
        try:
            return await operation()
        except Exception as exc:
            if retries_left == 0:
                raise
            logger.warning("Retrying... %d retries left (%s)", retries_left, exc)
            await sleep(delay)
            retries_left -= 1
