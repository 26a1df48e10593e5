"""Product storage used by the crawler."""

import logging
from typing import List, Optional, Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from catalog_crawler.db.models import ProductRecord
from catalog_crawler.ingest.base import ExtractedProduct

logger = logging.getLogger(__name__)


class ProductRepository(Protocol):
    """Storage interface the crawler writes to and reads staleness from."""

    async def save(self, product: ExtractedProduct) -> None: ...

    async def get_one(self, article: str) -> Optional[ExtractedProduct]: ...

    async def list(self) -> List[ExtractedProduct]: ...

    async def list_by(self, model: str) -> List[ExtractedProduct]: ...


class SqlProductRepository:
    """ProductRepository backed by SQLAlchemy.

    ``save`` is an upsert keyed by article, so delivering the same product
    twice leaves one row with the latest values.
    """

    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    async def save(self, product: ExtractedProduct) -> None:
        async with self._session_factory() as db:
            await db.merge(ProductRecord.from_product(product))
            await db.commit()
        logger.debug(f"Saved product {product.article}")

    async def get_one(self, article: str) -> Optional[ExtractedProduct]:
        async with self._session_factory() as db:
            record = await db.get(ProductRecord, article)
            return record.to_product() if record is not None else None

    async def list(self) -> List[ExtractedProduct]:
        async with self._session_factory() as db:
            result = await db.execute(select(ProductRecord))
            return [record.to_product() for record in result.scalars().all()]

    async def list_by(self, model: str) -> List[ExtractedProduct]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(ProductRecord)
                .where(ProductRecord.model == model)
                .order_by(ProductRecord.last_visited.desc())
            )
            return [record.to_product() for record in result.scalars().all()]
