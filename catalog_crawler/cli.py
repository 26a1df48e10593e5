"""Command line entry point."""

import argparse
import asyncio
import json
import logging
import signal
from dataclasses import asdict

from catalog_crawler.config import settings
from catalog_crawler.db.repository import SqlProductRepository
from catalog_crawler.db.session import AsyncSessionLocal, engine, init_db
from catalog_crawler.ingest.http_client import FetchClient
from catalog_crawler.logging_config import setup_logging
from catalog_crawler.worker.cancellation import CancellationToken
from catalog_crawler.worker.orchestrator import Crawler

logger = logging.getLogger(__name__)


async def _with_crawler(action):
    await init_db(engine)
    async with FetchClient.from_settings(settings) as client:
        crawler = Crawler(settings, client, SqlProductRepository(AsyncSessionLocal))
        try:
            return await action(crawler)
        finally:
            await engine.dispose()


async def crawl() -> None:
    """Run the work cycle until SIGINT/SIGTERM, persisting pending links on the way out."""
    token = CancellationToken()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, token.cancel, f"signal {sig.name}")

    try:
        await _with_crawler(lambda crawler: crawler.run(token))
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)


async def parse(url: str) -> None:
    product = await _with_crawler(lambda crawler: crawler.parse(url))
    print(json.dumps(asdict(product), default=str, ensure_ascii=False, indent=2))


async def parse_page(url: str) -> None:
    links = await _with_crawler(lambda crawler: crawler.parse_page(url))
    for link in links:
        print(link)


def main(argv=None):
    parser = argparse.ArgumentParser(prog="catalog-crawler", description="Vendor catalog crawler")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("serve", help="Run the control API and the crawler")
    subparsers.add_parser("crawl", help="Run the crawler without the API (Ctrl+C to stop)")
    parse_parser = subparsers.add_parser("parse", help="Parse and save a single product page")
    parse_parser.add_argument("url")
    page_parser = subparsers.add_parser("parse-page", help="List product links on a listing page")
    page_parser.add_argument("url")

    args = parser.parse_args(argv)

    if args.command == "serve":
        from catalog_crawler.main import run

        run()
        return

    setup_logging()
    if args.command == "crawl":
        asyncio.run(crawl())
    elif args.command == "parse":
        asyncio.run(parse(args.url))
    elif args.command == "parse-page":
        asyncio.run(parse_page(args.url))


if __name__ == "__main__":
    main()
