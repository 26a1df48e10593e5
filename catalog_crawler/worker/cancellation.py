"""Cooperative cancellation shared by every stage of one crawl run."""

import asyncio
import logging
from typing import Awaitable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CrawlCancelled(Exception):
    """Raised when a run is stopped by Pause, Cancel or an interrupt signal."""


class CancellationToken:
    """One-shot cancellation flag that can also preempt awaits.

    Stages check it at chunk boundaries and wrap their fan-outs in ``run`` so a
    cancel request interrupts in-flight fetches instead of waiting them out.
    """

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()
        logger.info(f"Cancellation requested: {reason}")

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise CrawlCancelled(self.reason)

    async def run(self, aw: Awaitable[T]) -> T:
        """Await ``aw`` unless the token fires first.

        When the token wins, the inner work is cancelled and awaited until it
        has settled, then ``CrawlCancelled`` is raised.
        """
        task = asyncio.ensure_future(aw)
        if self.cancelled:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            raise CrawlCancelled(self.reason)

        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            waiter.cancel()
            raise

        if task.done():
            waiter.cancel()
            return task.result()

        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        raise CrawlCancelled(self.reason)
