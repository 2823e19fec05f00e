"""Bounded retries with exponential backoff for external calls."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def with_retries(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int = 3,
    base_delay: float = 0.5,
    max_delay: float = 8.0,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    label: str = "external call",
) -> T:
    """Run ``operation`` up to ``attempts`` times, doubling the delay between tries.

    The last failure is re-raised unchanged so callers can take their
    degraded path on the exception type they already expect.
    """
    if attempts < 1:
        raise ValueError("attempts must be at least 1")

    delay = base_delay
    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except retry_on as exc:
            if attempt == attempts:
                raise
            logger.warning(
                "%s failed on attempt %d/%d (%s); retrying in %.2fs",
                label,
                attempt,
                attempts,
                exc,
                delay,
            )
            await asyncio.sleep(delay)
            delay = min(delay * 2, max_delay)

    raise AssertionError("unreachable")
