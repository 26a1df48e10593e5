"""Global request rate limiting using a token bucket."""

import asyncio
import logging
import time

logger = logging.getLogger(__name__)


class RateLimiter:
    """Token bucket shared by every request of one fetch client.

    A ``requests_per_second`` of 0 or less disables limiting.
    """

    def __init__(self, requests_per_second: float, burst_size: int | None = None):
        self.requests_per_second = requests_per_second
        self.burst_size = burst_size or max(int(requests_per_second), 1)
        self.tokens = float(self.burst_size)
        self.last_refill = time.monotonic()
        self._lock = asyncio.Lock()

    @property
    def enabled(self) -> bool:
        return self.requests_per_second > 0

    async def acquire(self) -> None:
        """Wait until a request slot is available."""
        if not self.enabled:
            return

        async with self._lock:
            now = time.monotonic()
            elapsed = now - self.last_refill

            # Refill tokens based on elapsed time
            self.tokens = min(self.tokens + elapsed * self.requests_per_second, self.burst_size)
            self.last_refill = now

            if self.tokens < 1.0:
                wait_time = (1.0 - self.tokens) / self.requests_per_second
                logger.debug(f"Rate limit reached, waiting {wait_time:.3f}s")
                await asyncio.sleep(wait_time)
                self.tokens = 0.0
                self.last_refill = time.monotonic()
            else:
                self.tokens -= 1.0
