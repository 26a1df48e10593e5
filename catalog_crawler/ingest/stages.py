"""Crawl stages: bounded fan-out over the fetch client and fan-in of extracted results.

Each stage takes the run context plus its input frontier and returns the next
frontier. Item-level problems are logged and the item dropped; failures that
make the whole stage result untrustworthy (network exhaustion, challenge
pages) raise ``StageError`` so the orchestrator can retry the stage.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional, TypeVar

from catalog_crawler import metrics
from catalog_crawler.ingest.base import (
    CrawlNode,
    ExtractedProduct,
    PendingProductLink,
    as_utc,
    utcnow,
)
from catalog_crawler.ingest.extractors import (
    ExtractionError,
    MissingRequiredField,
    NoArticle,
    extract_brands,
    extract_categories,
    extract_models,
    extract_product_links,
    extract_subcategories,
    find_next_page,
    parse_product,
)
from catalog_crawler.ingest.http_client import (
    ChallengeDetected,
    FetchError,
    NetworkError,
    PermanentURLError,
)
from catalog_crawler.worker.context import RunContext

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

# Errors that invalidate a whole stage rather than one item
STAGE_LEVEL_ERRORS = (NetworkError, ChallengeDetected)


class StageError(RuntimeError):
    """A stage could not produce a complete result and should be retried."""

    def __init__(self, stage: str, message: str):
        super().__init__(f"{stage}: {message}")
        self.stage = stage


async def fan_out(
    ctx: RunContext,
    items: list[T],
    worker: Callable[[T], Awaitable[R]],
    limit: int,
) -> list[R | BaseException]:
    """Run ``worker`` over ``items`` with at most ``limit`` in flight.

    Results come back in input order; exceptions are returned in place of
    results. Progress advances by one for every item that finishes.
    """
    semaphore = asyncio.Semaphore(max(limit, 1))
    ctx.progress.add_total(len(items))

    async def run_with_semaphore(item: T) -> R:
        async with semaphore:
            ctx.token.raise_if_cancelled()
            try:
                return await worker(item)
            finally:
                ctx.progress.advance()

    tasks = [run_with_semaphore(item) for item in items]
    return await ctx.token.run(asyncio.gather(*tasks, return_exceptions=True))


def _collect_branches(
    stage: str,
    parents: list[CrawlNode],
    results: list,
) -> list:
    """Flatten per-parent results, raising StageError if any branch hit a stage-level error."""
    merged = []
    stage_failures = 0
    for parent, result in zip(parents, results):
        if isinstance(result, STAGE_LEVEL_ERRORS):
            stage_failures += 1
            logger.error(f"{stage} failed for {parent.label} ({parent.url}): {result}")
        elif isinstance(result, (PermanentURLError, ExtractionError)):
            logger.warning(f"{stage}: dropping {parent.label} ({parent.url}): {result}")
        elif isinstance(result, BaseException):
            logger.error(
                f"{stage}: unexpected error for {parent.label} ({parent.url}): {result!r}",
                exc_info=result,
            )
        else:
            merged.extend(result)

    if stage_failures:
        raise StageError(stage, f"{stage_failures} of {len(parents)} branches failed")
    return merged


# =============================================================================
# Roots
# =============================================================================


async def _fetch_root(ctx: RunContext, stage: str) -> str:
    try:
        return await ctx.token.run(ctx.client.fetch("/"))
    except FetchError as e:
        raise StageError(stage, str(e)) from e


async def parse_brands(ctx: RunContext) -> list[CrawlNode]:
    """Brand roots from the site front page."""
    page_url = ctx.client.resolve("/")
    ctx.progress.add_total(1)
    body = await _fetch_root(ctx, "brands")
    ctx.progress.advance()
    try:
        brands = extract_brands(body, page_url)
    except ExtractionError as e:
        logger.warning(f"No brands on the front page: {e}")
        return []

    logger.info(f"Found {len(brands)} brands: {', '.join(b.label for b in brands)}")
    return brands


async def parse_categories(ctx: RunContext) -> list[CrawlNode]:
    """Category roots from the site front page."""
    page_url = ctx.client.resolve("/")
    ctx.progress.add_total(1)
    body = await _fetch_root(ctx, "categories")
    ctx.progress.advance()
    try:
        categories = extract_categories(body, page_url)
    except ExtractionError as e:
        logger.warning(f"No categories on the front page: {e}")
        return []

    logger.info(f"Found {len(categories)} categories")
    return categories


# =============================================================================
# Second level
# =============================================================================


async def parse_models(ctx: RunContext, brands: list[CrawlNode]) -> list[CrawlNode]:
    """Model nodes for every brand; a brand without models stands in for itself."""

    async def expand(brand: CrawlNode) -> list[CrawlNode]:
        body = await ctx.client.fetch(brand.url)
        return extract_models(body, brand)

    results = await fan_out(ctx, brands, expand, ctx.settings.parallel_downloads)
    models = _collect_branches("models", brands, results)
    logger.info(f"Found {len(models)} models across {len(brands)} brands")
    return models


async def parse_subcategories(ctx: RunContext, categories: list[CrawlNode]) -> list[CrawlNode]:
    """Subcategory nodes for every category; a category without any stands in for itself."""

    async def expand(category: CrawlNode) -> list[CrawlNode]:
        body = await ctx.client.fetch(category.url)
        return extract_subcategories(body, category)

    results = await fan_out(ctx, categories, expand, ctx.settings.parallel_downloads)
    subcategories = _collect_branches("subcategories", categories, results)
    logger.info(f"Found {len(subcategories)} subcategories across {len(categories)} categories")
    return subcategories


# =============================================================================
# Listing pages
# =============================================================================


async def fetch_listing_pages(ctx: RunContext, url: str) -> list[str]:
    """
    Fetch a listing and every page reachable through its "next" links.

    Pagination stops when a page has no next link, when a next link points
    to a page already fetched, or at ``max_list_pages``.

    Returns:
        Page bodies in fetch order
    """
    bodies: list[str] = []
    visited = {url}
    current = url

    while True:
        try:
            body = await ctx.client.fetch(current)
        except PermanentURLError:
            if not bodies:
                raise
            logger.warning(f"Listing page {current} is gone, stopping pagination")
            break
        bodies.append(body)

        next_link = find_next_page(body)
        if next_link is None:
            break

        next_url = ctx.client.resolve(next_link)
        if next_url in visited:
            logger.warning(f"Pagination loop at {next_url}, stopping")
            break
        if len(bodies) >= ctx.settings.max_list_pages:
            logger.warning(f"Reached {ctx.settings.max_list_pages} pages for {url}, stopping")
            break

        visited.add(next_url)
        current = next_url

    return bodies


def filter_stale_links(
    links: list[str],
    stored: list[ExtractedProduct],
    window: timedelta,
    now: Optional[datetime] = None,
) -> list[str]:
    """Drop links whose stored product is still fresh.

    When several stored products share a URL the most recently visited one
    decides. Survivors are ordered never-seen first, then oldest visit first.
    """
    now = now or utcnow()
    latest: dict[str, ExtractedProduct] = {}
    for product in stored:
        current = latest.get(product.url)
        if current is None or as_utc(product.last_visited) > as_utc(current.last_visited):
            latest[product.url] = product

    pending = []
    for link in links:
        product = latest.get(link)
        if product is not None and not product.is_stale(window, now):
            logger.info(f"Skipping up to date product {product.article} ({link})")
            metrics.links_skipped_fresh_total.inc()
            continue
        pending.append(link)

    never_seen = datetime.min.replace(tzinfo=timezone.utc)
    pending.sort(
        key=lambda url: as_utc(latest[url].last_visited) if url in latest else never_seen
    )
    return pending


async def parse_product_list(ctx: RunContext, node: CrawlNode) -> list[PendingProductLink]:
    """Pending product links for one model or subcategory node."""
    bodies = await fetch_listing_pages(ctx, node.url)

    links: list[str] = []
    seen: set[str] = set()
    for body in bodies:
        for link in extract_product_links(body, node.url):
            if link not in seen:
                seen.add(link)
                links.append(link)

    stored = await ctx.repo.list_by(node.label)
    window = timedelta(hours=ctx.settings.staleness_hours)
    pending = filter_stale_links(links, stored, window)

    logger.debug(
        f"{node.parent_label} / {node.label}: {len(bodies)} pages, "
        f"{len(links)} products, {len(pending)} to visit"
    )
    return [PendingProductLink(url=url, model=node.label, brand=node.parent_label) for url in pending]


async def parse_product_lists(
    ctx: RunContext,
    nodes: list[CrawlNode],
) -> list[PendingProductLink]:
    """Pending product links for every node, deduplicated by URL."""

    async def expand(node: CrawlNode) -> list[PendingProductLink]:
        return await parse_product_list(ctx, node)

    results = await fan_out(ctx, nodes, expand, ctx.settings.parallel_downloads)
    links = merge_links(_collect_branches("product list", nodes, results))
    logger.info(f"Found {len(links)} product links to visit across {len(nodes)} listings")
    return links


async def parse_product_list_page(ctx: RunContext, url: str) -> list[str]:
    """Product URLs on a single listing page, without pagination or persistence."""
    body = await ctx.client.fetch(url)
    return extract_product_links(body, ctx.client.resolve(url))


def merge_links(*groups: list[PendingProductLink]) -> list[PendingProductLink]:
    """Concatenate link lists keeping the first occurrence of every URL."""
    merged: list[PendingProductLink] = []
    seen: set[str] = set()
    for group in groups:
        for link in group:
            if link.url not in seen:
                seen.add(link.url)
                merged.append(link)
    return merged


# =============================================================================
# Product detail pages
# =============================================================================


async def parse_single_product(ctx: RunContext, link: PendingProductLink) -> ExtractedProduct:
    """Fetch, extract and save one product.

    Raises:
        FetchError: If the page could not be fetched
        MissingRequiredField: If the page lacks an article or title
    """
    url = ctx.client.resolve(link.url)
    body = await ctx.client.fetch(url)
    product = parse_product(body, url, brand=link.brand, model=link.model)
    await ctx.repo.save(product)
    metrics.products_saved_total.inc()
    return product


async def _parse_product_item(ctx: RunContext, link: PendingProductLink) -> Optional[ExtractedProduct]:
    """parse_single_product with every item-level failure logged and swallowed."""
    try:
        return await parse_single_product(ctx, link)
    except ChallengeDetected:
        metrics.record_product_failure("challenge")
        logger.error(f"Browser check while fetching product {link.url}")
    except PermanentURLError as e:
        metrics.record_product_failure("gone")
        logger.warning(f"Product page {link.url} is gone (HTTP {e.status_code})")
    except NetworkError as e:
        metrics.record_product_failure("network")
        logger.error(f"Unable to fetch product {link.url}: {e}")
    except NoArticle:
        metrics.record_product_failure("no_article")
        logger.error(f"No article for product {link.url}")
    except MissingRequiredField as e:
        metrics.record_product_failure(f"missing_{e.field}")
        logger.error(f"Unable to parse product {link.url}: {e}")
    except Exception as e:
        metrics.record_product_failure("unexpected")
        logger.error(f"Unexpected error parsing product {link.url}: {e}", exc_info=True)
    return None


async def parse_products(ctx: RunContext, links: list[PendingProductLink]) -> list[PendingProductLink]:
    """
    Fetch and save product pages chunk by chunk.

    Chunks run one after another; items inside a chunk run concurrently. An
    item counts as processed once it resolves, whether it was saved or failed.

    Returns:
        Links left unprocessed because the run was cancelled (empty when every
        link was processed)
    """
    chunk_size = max(ctx.settings.product_chunk_size, 1)
    semaphore = asyncio.Semaphore(max(ctx.settings.product_parallel_downloads, 1))
    chunks_total = (len(links) + chunk_size - 1) // chunk_size
    ctx.progress.add_total(len(links))

    async def run_with_semaphore(link: PendingProductLink) -> Optional[ExtractedProduct]:
        async with semaphore:
            result = await _parse_product_item(ctx, link)
        ctx.progress.advance()
        return result

    for chunk_index, start in enumerate(range(0, len(links), chunk_size), start=1):
        if ctx.token.cancelled:
            return list(links[start:])

        chunk = links[start:start + chunk_size]
        tasks = [asyncio.ensure_future(run_with_semaphore(link)) for link in chunk]
        try:
            await ctx.token.run(asyncio.gather(*tasks, return_exceptions=True))
        except BaseException:
            # Let every task settle so the processed set is final
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            unprocessed = [
                link for link, task in zip(chunk, tasks) if task.cancelled()
            ]
            remaining = unprocessed + list(links[start + len(chunk):])
            if ctx.token.cancelled:
                logger.info(
                    f"Products stage interrupted in chunk {chunk_index} of {chunks_total}, "
                    f"{len(remaining)} links left"
                )
                return remaining
            raise

        logger.info(f"Chunk {chunk_index} of {chunks_total} done")

    return []
