from __future__ import annotations

import asyncio
import logging
import random
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 4
DEFAULT_BASE_DELAY = 1.0
MAX_JITTER = 1.0


def backoff_delay(attempt: int, base_delay: float = DEFAULT_BASE_DELAY) -> float:
    """Exponential delay for a zero-based attempt, plus up to a second of jitter."""
    return base_delay * (2 ** attempt) + random.uniform(0, MAX_JITTER)


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    base_delay: float = DEFAULT_BASE_DELAY,
    *,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    label: Optional[str] = None,
) -> T:
    """Await ``fn`` until it succeeds or ``max_attempts`` calls have failed.

    The final attempt runs outside the retry loop, so its error propagates unchanged.
    """
    attempts = max(1, max_attempts)
    for attempt in range(attempts - 1):
        try:
            return await fn()
        except retry_on as exc:
            delay = backoff_delay(attempt, base_delay)
            logger.warning(
                "%sretry %d/%d after %.2fs: %s",
                f"[{label}] " if label else "",
                attempt + 1,
                attempts - 1,
                delay,
                exc,
            )
            await sleep(delay)
    return await fn()
