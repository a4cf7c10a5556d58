"""
Bounded exponential-backoff retry for platform calls that fail with
``TransientError``.  Every other exception propagates on the first attempt.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from connectors.errors import TemporarilyUnavailable, TransientError

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def with_backoff(
    call: Callable[[], Awaitable[T]],
    *,
    what: str,
    max_retries: int,
    base_delay: float,
) -> T:
    """
    Await ``call()`` up to ``max_retries + 1`` times.

    Delay before retry *n* (0-based) is ``base_delay * 2**n``.  Raises
    ``TemporarilyUnavailable`` once the attempts are used up.
    """
    for attempt in range(max_retries + 1):
        try:
            return await call()
        except TransientError as exc:
            logger.warning(
                "%s attempt %d/%d failed transiently: %s",
                what,
                attempt + 1,
                max_retries + 1,
                exc,
            )
            if attempt < max_retries:
                await asyncio.sleep(base_delay * 2**attempt)
            else:
                raise TemporarilyUnavailable(
                    f"{what} failed after {max_retries + 1} attempts: {exc}"
                ) from exc
    raise TemporarilyUnavailable(f"{what} failed")  # max_retries < 0
