"""Work-cycle orchestrator.

Sequences the crawl stages, keeps the checkpoints in step with the work done,
and loops until its cancellation token fires:

    (pending links on disk?) -> Products
    Brands -> Models -> ProductList -> Categories -> ProductList -> Products -> ...
"""

import asyncio
import logging
from datetime import timedelta
from typing import Awaitable, Callable, Optional, TypeVar

from catalog_crawler import metrics
from catalog_crawler.config import Settings
from catalog_crawler.db.repository import ProductRepository
from catalog_crawler.ingest.base import CrawlNode, ExtractedProduct, PendingProductLink
from catalog_crawler.ingest.http_client import FetchClient
from catalog_crawler.ingest.stages import (
    StageError,
    merge_links,
    parse_brands,
    parse_categories,
    parse_models,
    parse_product_list_page,
    parse_product_lists,
    parse_products,
    parse_single_product,
    parse_subcategories,
)
from catalog_crawler.worker.cancellation import CancellationToken, CrawlCancelled
from catalog_crawler.worker.checkpoint import CheckpointStore
from catalog_crawler.worker.context import RunContext
from catalog_crawler.worker.progress import ParsingStage, ProgressTracker

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Crawler:
    """Drives the crawl stages for one site."""

    def __init__(
        self,
        settings: Settings,
        client: FetchClient,
        repo: ProductRepository,
        checkpoints: Optional[CheckpointStore] = None,
        progress: Optional[ProgressTracker] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.settings = settings
        self.client = client
        self.repo = repo
        self.checkpoints = checkpoints or CheckpointStore.from_settings(settings)
        self.progress = progress or ProgressTracker()
        self._sleep = sleep

    def context(
        self,
        token: CancellationToken,
        progress: Optional[ProgressTracker] = None,
    ) -> RunContext:
        return RunContext(
            settings=self.settings,
            client=self.client,
            repo=self.repo,
            progress=progress or self.progress,
            token=token,
        )

    async def run(self, token: CancellationToken) -> None:
        """Crawl until ``token`` is cancelled.

        Cancellation is a clean exit: any unprocessed product links are already
        on disk by the time this returns.
        """
        ctx = self.context(token)
        try:
            await self.resume_pending(ctx)
            while True:
                token.raise_if_cancelled()
                try:
                    await self.work_cycle(ctx)
                except (CrawlCancelled, asyncio.CancelledError):
                    raise
                except Exception as e:
                    metrics.cycles_total.labels(outcome="error").inc()
                    logger.error(f"Work cycle failed: {e}", exc_info=True)
                    await self._delay(ctx, self.settings.cycle_error_delay_seconds)
        except CrawlCancelled:
            metrics.cycles_total.labels(outcome="cancelled").inc()
            self.progress.pause()
            logger.info(f"Crawl stopped ({token.reason})")

    async def resume_pending(self, ctx: RunContext) -> None:
        """Process links left over from an interrupted run before anything else."""
        links = self.checkpoints.read_links()
        if not links:
            return

        logger.info(f"Resuming {len(links)} pending product links from {self.checkpoints.links.path}")
        if await self.products_parsing(ctx, links):
            raise CrawlCancelled(ctx.token.reason)

    async def work_cycle(self, ctx: RunContext) -> None:
        """One full pass over the site taxonomy followed by the Products stage."""
        brands = await self._run_stage(ctx, ParsingStage.BRANDS, lambda: parse_brands(ctx))
        models = await self.load_models(ctx, brands)
        model_links = await self._run_stage(
            ctx, ParsingStage.PRODUCT_LIST, lambda: parse_product_lists(ctx, models)
        )

        subcategories = await self._run_stage(
            ctx, ParsingStage.CATEGORIES, lambda: self._category_nodes(ctx)
        )
        category_links = await self._run_stage(
            ctx, ParsingStage.PRODUCT_LIST, lambda: parse_product_lists(ctx, subcategories)
        )

        links = merge_links(model_links, category_links)
        stale = await self.stale_products(ctx, links)
        links = merge_links(links, stale)
        logger.info(f"{len(links)} products to visit ({len(stale)} stale records added)")

        if await self.products_parsing(ctx, links):
            raise CrawlCancelled(ctx.token.reason)

        self.progress.complete_cycle()
        metrics.cycles_total.labels(outcome="completed").inc()
        logger.info(f"Work cycle {self.progress.cycles_completed} completed")

    async def load_models(self, ctx: RunContext, brands: list[CrawlNode]) -> list[CrawlNode]:
        """Models from the taxonomy checkpoint when valid, otherwise from the site."""
        ctx.progress.start_stage(ParsingStage.MODELS)
        cached = self.checkpoints.read_models()
        if cached:
            known = {brand.label for brand in brands}
            models = [model for model in cached if model.parent_label in known]
            dropped = len(cached) - len(models)
            if dropped:
                logger.warning(f"Dropped {dropped} cached models whose brand no longer exists")
            if models:
                logger.info(f"Loaded {len(models)} models from {self.checkpoints.models.path}")
                return models
            self.checkpoints.models.clear()

        models = await self._run_stage(ctx, ParsingStage.MODELS, lambda: parse_models(ctx, brands))
        self.checkpoints.write_models(models)
        return models

    async def stale_products(
        self,
        ctx: RunContext,
        discovered: list[PendingProductLink],
    ) -> list[PendingProductLink]:
        """Stored products due for a refresh that no listing mentioned this cycle."""
        seen = {link.url for link in discovered}
        window = timedelta(hours=self.settings.staleness_hours)
        return [
            PendingProductLink(url=product.url, model=product.model, brand=product.brand)
            for product in await ctx.repo.list()
            if product.url and product.url not in seen and product.is_stale(window)
        ]

    async def products_parsing(self, ctx: RunContext, links: list[PendingProductLink]) -> bool:
        """
        Run the Products stage and update the pending-links checkpoint.

        Returns:
            True if the run was cancelled during the stage
        """
        ctx.progress.start_stage(ParsingStage.PRODUCTS)
        with metrics.stage_duration_seconds.labels(stage=ParsingStage.PRODUCTS.value).time():
            remaining = await parse_products(ctx, links)

        if not ctx.token.cancelled:
            self.checkpoints.clear_links()
            return False

        if remaining:
            self.checkpoints.write_links(remaining)
        else:
            self.checkpoints.clear_links()
        return True

    async def _category_nodes(self, ctx: RunContext) -> list[CrawlNode]:
        categories = await parse_categories(ctx)
        if not categories:
            return []
        return await parse_subcategories(ctx, categories)

    async def _run_stage(
        self,
        ctx: RunContext,
        stage: ParsingStage,
        run: Callable[[], Awaitable[T]],
    ) -> T:
        """Run a stage, retrying it from scratch after every StageError."""
        attempt = 0
        while True:
            attempt += 1
            ctx.token.raise_if_cancelled()
            ctx.progress.start_stage(stage)
            try:
                with metrics.stage_duration_seconds.labels(stage=stage.value).time():
                    return await run()
            except StageError as e:
                metrics.stage_retries_total.labels(stage=stage.value).inc()
                logger.warning(
                    f"{stage.label} stage failed (attempt {attempt}): {e}, "
                    f"retrying in {self.settings.stage_retry_delay_seconds}s"
                )
                await self._delay(ctx, self.settings.stage_retry_delay_seconds)

    async def _delay(self, ctx: RunContext, seconds: float) -> None:
        if seconds > 0:
            await ctx.token.run(self._sleep(seconds))
        else:
            ctx.token.raise_if_cancelled()

    # On-demand operations

    async def parse(self, url: str) -> ExtractedProduct:
        """Fetch, extract and save a single product page outside the work cycle."""
        ctx = self.context(CancellationToken(), ProgressTracker())
        return await parse_single_product(ctx, PendingProductLink(url=url, model="", brand=""))

    async def parse_page(self, url: str) -> list[str]:
        """Product URLs found on a single listing page."""
        ctx = self.context(CancellationToken(), ProgressTracker())
        return await parse_product_list_page(ctx, url)

    async def product_info(self, article: str) -> Optional[ExtractedProduct]:
        return await self.repo.get_one(article)
