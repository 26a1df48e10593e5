"""FastAPI dependencies."""

from fastapi import HTTPException, Request, status

from catalog_crawler.worker.service import CrawlerService


async def get_crawler_service(request: Request) -> CrawlerService:
    """Dependency for the crawler service started in the app lifespan."""
    service = getattr(request.app.state, "crawler_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Crawler service not running",
        )
    return service
