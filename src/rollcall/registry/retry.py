"""Bounded retry for store access and health probes."""

import asyncio
import logging
from typing import Awaitable, Callable, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    attempts: int,
    delay: float,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    description: str = "operation",
) -> T:
    """Await *operation* up to *attempts* times, *delay* seconds apart.

    Only exceptions in *retry_on* are retried; the last one is re-raised.
    """
    attempts = max(1, int(attempts))
    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except retry_on as exc:
            if attempt == attempts:
                raise
            logger.debug(
                "%s failed (attempt %d/%d): %s; retrying in %.2fs",
                description, attempt, attempts, exc, delay,
            )
            if delay > 0:
                await asyncio.sleep(delay)
    raise AssertionError("unreachable")
