"""Crawler control API endpoints."""

import logging
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel

from catalog_crawler.api.deps import get_crawler_service
from catalog_crawler.ingest.base import ExtractedProduct
from catalog_crawler.ingest.extractors import MissingRequiredField
from catalog_crawler.ingest.http_client import FetchError, PermanentURLError
from catalog_crawler.worker.progress import ParsingProgress
from catalog_crawler.worker.service import CrawlerService, ServiceStopped

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/crawler", tags=["crawler"])


# Request/response models
class ProgressResponse(BaseModel):
    """Current crawl stage and counters."""
    stage: str
    stage_label: str
    ready: int
    total: int
    cycles_completed: int

    @classmethod
    def from_progress(cls, progress: ParsingProgress) -> "ProgressResponse":
        return cls(
            stage=progress.stage.value,
            stage_label=progress.stage.label,
            ready=progress.ready,
            total=progress.total,
            cycles_completed=progress.cycles_completed,
        )


class UrlRequest(BaseModel):
    """Request model for on-demand parsing."""
    url: str


class ProductResponse(BaseModel):
    """Response model for a scraped product."""
    article: str
    title: str
    url: str
    brand: str
    model: str
    description: Optional[str]
    category: Optional[str]
    price: Optional[Decimal]
    availability: str
    images: List[str]
    last_visited: datetime

    @classmethod
    def from_product(cls, product: ExtractedProduct) -> "ProductResponse":
        return cls(
            article=product.article,
            title=product.title,
            url=product.url,
            brand=product.brand,
            model=product.model,
            description=product.description,
            category=product.category,
            price=product.price,
            availability=product.availability.value,
            images=list(product.images),
            last_visited=product.last_visited,
        )


class PageLinksResponse(BaseModel):
    """Product links found on one listing page."""
    url: str
    links: List[str]


async def _call(coro):
    """Await a service call, mapping crawler errors to HTTP errors."""
    try:
        return await coro
    except ServiceStopped as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    except PermanentURLError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except FetchError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))
    except MissingRequiredField as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))


@router.post("/pause", response_model=ProgressResponse)
async def pause_crawler(service: CrawlerService = Depends(get_crawler_service)):
    """Stop the crawl; unprocessed product links are persisted."""
    return ProgressResponse.from_progress(await _call(service.pause()))


@router.post("/resume", response_model=ProgressResponse)
async def resume_crawler(service: CrawlerService = Depends(get_crawler_service)):
    """Restart the crawl from the top of the cycle."""
    return ProgressResponse.from_progress(await _call(service.resume()))


@router.get("/progress", response_model=ProgressResponse)
async def get_progress(service: CrawlerService = Depends(get_crawler_service)):
    return ProgressResponse.from_progress(await _call(service.get_progress()))


@router.post("/parse", response_model=ProductResponse)
async def parse_product(
    request: UrlRequest,
    service: CrawlerService = Depends(get_crawler_service),
):
    """Fetch, extract and save one product page."""
    product = await _call(service.parse(request.url))
    logger.info(f"Parsed product {product.article} on demand")
    return ProductResponse.from_product(product)


@router.post("/parse-page", response_model=PageLinksResponse)
async def parse_page(
    request: UrlRequest,
    service: CrawlerService = Depends(get_crawler_service),
):
    """List product links on one listing page without saving anything."""
    links = await _call(service.parse_page(request.url))
    return PageLinksResponse(url=request.url, links=links)


@router.get("/products/{article}", response_model=ProductResponse)
async def get_product(
    article: str,
    service: CrawlerService = Depends(get_crawler_service),
):
    product = await _call(service.product_info(article))
    if product is None:
        raise HTTPException(status_code=404, detail="Product not found")
    return ProductResponse.from_product(product)
