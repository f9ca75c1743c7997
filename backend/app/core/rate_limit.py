import asyncio, time
from typing import Awaitable, Callable, Optional

class TokenBucket:
    """Token bucket for requests-per-minute quotas on outbound providers.

    ``capacity`` bounds the burst; a capacity of 1 spaces calls evenly at
    ``60 / rate_per_minute`` seconds apart.
    """
    def __init__(
        self,
        rate_per_minute: float,
        capacity: Optional[float] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if rate_per_minute <= 0:
            raise ValueError("rate_per_minute must be positive")
        self.rate = rate_per_minute / 60.0
        self.capacity = capacity or rate_per_minute
        self.tokens = self.capacity
        self._clock = clock
        self._sleep = sleep
        self.last = clock()
        self.lock = asyncio.Lock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = now - self.last
        self.tokens = min(self.capacity, self.tokens + elapsed * self.rate)
        self.last = now

    async def acquire(self, n: float = 1):
        async with self.lock:
            self._refill()
            while self.tokens < n:
                await self._sleep((n - self.tokens) / self.rate)
                self._refill()
            self.tokens -= n
