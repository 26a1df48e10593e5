"""Domain types shared by the crawl stages."""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional


class Availability(str, Enum):
    """Stock status of a product."""

    AVAILABLE = "available"
    NOT_AVAILABLE = "not_available"
    ON_ORDER = "on_order"


@dataclass(frozen=True)
class CrawlNode:
    """A taxonomy node (brand, category, model or subcategory) waiting to be expanded."""

    url: str
    label: str
    parent_label: str = ""


@dataclass(frozen=True)
class PendingProductLink:
    """A product detail URL waiting to be fetched."""

    url: str
    model: str
    brand: str


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive timestamps (SQLite drops tzinfo) as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass(frozen=True)
class ExtractedProduct:
    """Normalized product scraped from a detail page.

    Created once per parsed page and handed straight to storage.
    """

    article: str
    title: str
    url: str
    brand: str = ""
    model: str = ""
    description: Optional[str] = None
    category: Optional[str] = None
    price: Optional[Decimal] = None
    availability: Availability = Availability.NOT_AVAILABLE
    images: tuple[str, ...] = ()
    last_visited: datetime = field(default_factory=utcnow)

    @property
    def id(self) -> str:
        return self.article

    def is_stale(self, window: timedelta = timedelta(hours=24), now: Optional[datetime] = None) -> bool:
        """True when the last visit is older than the freshness window."""
        now = as_utc(now or utcnow())
        return now - as_utc(self.last_visited) > window
