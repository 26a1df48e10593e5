"""SQLAlchemy database models."""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import JSON, DateTime, Index, Numeric, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from catalog_crawler.ingest.base import Availability, ExtractedProduct, as_utc, utcnow


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class ProductRecord(Base):
    """Product scraped from the vendor catalog, keyed by article."""

    __tablename__ = "products"
    __table_args__ = (Index("ix_products_model", "model"),)

    article: Mapped[str] = mapped_column(String(128), primary_key=True)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    url: Mapped[str] = mapped_column(Text, nullable=False, default="")
    brand: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    model: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    category: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    price: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    availability: Mapped[str] = mapped_column(
        String(32), nullable=False, default=Availability.NOT_AVAILABLE.value
    )
    images: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    last_visited: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    @classmethod
    def from_product(cls, product: ExtractedProduct) -> "ProductRecord":
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

    def to_product(self) -> ExtractedProduct:
        return ExtractedProduct(
            article=self.article,
            title=self.title,
            url=self.url,
            brand=self.brand,
            model=self.model,
            description=self.description,
            category=self.category,
            price=self.price,
            availability=Availability(self.availability),
            images=tuple(self.images or ()),
            last_visited=as_utc(self.last_visited),
        )
