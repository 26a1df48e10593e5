"""Crawler service: owns the crawl task and serves control commands.

Commands travel over an ``asyncio.Queue``; each one carries a future that the
command loop resolves with the reply. Only the command loop starts or stops
the crawl task, so Pause/Resume never race each other.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from catalog_crawler.ingest.base import ExtractedProduct
from catalog_crawler.worker.cancellation import CancellationToken
from catalog_crawler.worker.orchestrator import Crawler
from catalog_crawler.worker.progress import ParsingProgress

logger = logging.getLogger(__name__)


class CommandKind(str, Enum):
    PAUSE = "pause"
    RESUME = "resume"
    GET_PROGRESS = "get_progress"
    PARSE = "parse"
    PARSE_PAGE = "parse_page"
    PRODUCT_INFO = "product_info"
    SHUTDOWN = "shutdown"


# Commands answered off the command loop so a slow fetch never delays progress queries
BACKGROUND_COMMANDS = frozenset({CommandKind.PARSE, CommandKind.PARSE_PAGE, CommandKind.PRODUCT_INFO})


@dataclass
class Command:
    kind: CommandKind
    argument: Any = None
    reply: asyncio.Future = field(default_factory=lambda: asyncio.get_running_loop().create_future())


class ServiceStopped(RuntimeError):
    """Raised when a command is sent to a service that has shut down."""


class CrawlerService:
    """Long-lived crawler with Pause/Resume/Parse control."""

    def __init__(self, crawler: Crawler, start_paused: bool = False):
        self.crawler = crawler
        self.start_paused = start_paused
        self._queue: asyncio.Queue[Command] = asyncio.Queue()
        self._token: Optional[CancellationToken] = None
        self._run_task: Optional[asyncio.Task] = None
        self._loop_task: Optional[asyncio.Task] = None
        self._background: set[asyncio.Task] = set()
        self._stopped = False

    @property
    def running(self) -> bool:
        return self._run_task is not None and not self._run_task.done()

    async def start(self) -> None:
        """Start the command loop and, unless configured paused, the crawl."""
        if self._loop_task is not None:
            return
        self._loop_task = asyncio.create_task(self._command_loop(), name="crawler-commands")
        if self.start_paused:
            logger.info("Crawler started paused, waiting for resume")
        else:
            self._start_run()

    # Public API

    async def pause(self) -> ParsingProgress:
        return await self._send(CommandKind.PAUSE)

    async def resume(self) -> ParsingProgress:
        return await self._send(CommandKind.RESUME)

    async def get_progress(self) -> ParsingProgress:
        return await self._send(CommandKind.GET_PROGRESS)

    async def parse(self, url: str) -> ExtractedProduct:
        return await self._send(CommandKind.PARSE, url)

    async def parse_page(self, url: str) -> list[str]:
        return await self._send(CommandKind.PARSE_PAGE, url)

    async def product_info(self, article: str) -> Optional[ExtractedProduct]:
        return await self._send(CommandKind.PRODUCT_INFO, article)

    async def shutdown(self) -> None:
        """Stop the crawl (persisting pending work) and the command loop."""
        if self._stopped or self._loop_task is None:
            return
        await self._send(CommandKind.SHUTDOWN)
        await self._loop_task

    def cancel(self, reason: str = "interrupt") -> None:
        """Cancel the running crawl immediately; safe to call from a signal handler."""
        if self._token is not None:
            self._token.cancel(reason)

    async def wait_stopped(self) -> None:
        """Wait until the current crawl task exits."""
        if self._run_task is not None:
            await asyncio.gather(self._run_task, return_exceptions=True)

    # Internals

    async def _send(self, kind: CommandKind, argument: Any = None) -> Any:
        if self._stopped or self._loop_task is None:
            raise ServiceStopped("Crawler service is not running")
        command = Command(kind, argument)
        await self._queue.put(command)
        return await command.reply

    def _start_run(self) -> None:
        self._token = CancellationToken()
        self._run_task = asyncio.create_task(self.crawler.run(self._token), name="crawler-run")
        logger.info("Crawler started")

    async def _stop_run(self, reason: str) -> None:
        if self.running:
            self._token.cancel(reason)
            results = await asyncio.gather(self._run_task, return_exceptions=True)
            if isinstance(results[0], BaseException):
                logger.error(f"Crawler task ended with an error: {results[0]!r}")
        self.crawler.progress.pause()

    async def _command_loop(self) -> None:
        while True:
            command = await self._queue.get()

            if command.kind in BACKGROUND_COMMANDS:
                task = asyncio.create_task(self._reply(command))
                self._background.add(task)
                task.add_done_callback(self._background.discard)
                continue

            await self._reply(command)
            if command.kind == CommandKind.SHUTDOWN:
                break

    async def _reply(self, command: Command) -> None:
        try:
            result = await self._handle(command)
        except Exception as e:
            if not command.reply.done():
                command.reply.set_exception(e)
            return
        if not command.reply.done():
            command.reply.set_result(result)

    async def _handle(self, command: Command) -> Any:
        kind = command.kind

        if kind == CommandKind.PAUSE:
            await self._stop_run("pause")
            logger.info("Crawler paused")
            return self.crawler.progress.snapshot()

        if kind == CommandKind.RESUME:
            if not self.running:
                self._start_run()
            return self.crawler.progress.snapshot()

        if kind == CommandKind.GET_PROGRESS:
            return self.crawler.progress.snapshot()

        if kind == CommandKind.PARSE:
            return await self.crawler.parse(command.argument)

        if kind == CommandKind.PARSE_PAGE:
            return await self.crawler.parse_page(command.argument)

        if kind == CommandKind.PRODUCT_INFO:
            return await self.crawler.product_info(command.argument)

        if kind == CommandKind.SHUTDOWN:
            self._stopped = True
            await self._stop_run("shutdown")
            if self._background:
                await asyncio.gather(*self._background, return_exceptions=True)
            logger.info("Crawler service stopped")
            return None

        raise ValueError(f"Unknown command: {kind}")
