"""Main application entry point."""

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from prometheus_fastapi_instrumentator import Instrumentator

from catalog_crawler.api.routes import crawler
from catalog_crawler.config import settings
from catalog_crawler.db.repository import SqlProductRepository
from catalog_crawler.db.session import AsyncSessionLocal, engine, init_db
from catalog_crawler.ingest.http_client import FetchClient
from catalog_crawler.logging_config import setup_logging
from catalog_crawler.worker.orchestrator import Crawler
from catalog_crawler.worker.service import CrawlerService

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    # Startup
    logger.info("Starting catalog crawler...")

    await init_db(engine)

    client = FetchClient.from_settings(settings)
    service = CrawlerService(
        Crawler(settings, client, SqlProductRepository(AsyncSessionLocal)),
        start_paused=settings.start_paused,
    )
    await service.start()
    app.state.crawler_service = service

    yield

    # Shutdown
    logger.info("Shutting down...")
    await service.shutdown()
    await client.close()
    await engine.dispose()
    logger.info("Shutdown complete")


# Create FastAPI app
app = FastAPI(
    title="Catalog Crawler",
    description="Crawl vendor product catalogs into the product store",
    version="0.1.0",
    lifespan=lifespan,
)

# Add Prometheus instrumentation
instrumentator = Instrumentator(
    should_group_status_codes=True,
    should_ignore_untemplated=True,
    excluded_handlers=["/metrics", "/health"],
)
instrumentator.instrument(app).expose(app, include_in_schema=True, tags=["monitoring"])

# Include API routes
app.include_router(crawler.router)


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy"}


def run():
    uvicorn.run(
        "catalog_crawler.main:app",
        host=settings.app_host,
        port=settings.app_port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
