"""Shared fixtures: a fake vendor site, an in-memory product store and test settings."""

import asyncio
import inspect
from typing import List, Optional

import httpx
import pytest
import pytest_asyncio

from catalog_crawler.config import Settings
from catalog_crawler.ingest.base import ExtractedProduct
from catalog_crawler.ingest.http_client import FetchClient

BASE_URL = "http://shop.test"
CHALLENGE_PAGE = (
    "<html><head><title>Browser check, please wait ...</title></head><body></body></html>"
)


# =============================================================================
# Page builders
# =============================================================================


def front_page(brands=(), categories=()) -> str:
    """Front page with brand and category lists; entries are (href, name), href may be None."""

    def items(entries):
        out = []
        for href, name in entries:
            attr = f' href="{href}"' if href is not None else ""
            out.append(f"<li><a{attr}><img src='/logo.png'>{name}</a></li>")
        return "".join(out)

    return (
        "<html><body>"
        f'<ul class="brands-wrap">{items(brands)}</ul>'
        f'<ul class="lp-cat-ul">{items(categories)}</ul>'
        "</body></html>"
    )


def models_page(models=()) -> str:
    """Brand page listing (href, name) models."""
    items = "".join(
        f'<div class="cat-item-wrap"><div class="cat-item-title"><a href="{href}">{name}</a></div></div>'
        for href, name in models
    )
    return f"<html><body>{items}</body></html>"


def subcategories_page(subcategories=()) -> str:
    items = "".join(
        f'<div class="cat-item-wrap"><a href="{href}"><span>{name}</span></a></div>'
        for href, name in subcategories
    )
    return f"<html><body>{items}</body></html>"


def listing_page(product_hrefs=(), next_href: Optional[str] = None) -> str:
    """Listing page with product links and an optional "next" pagination link."""
    items = "".join(
        f'<div class="cat-item-list-wrap"><div class="cat-item-list-title">'
        f'<a href="{href}">Item</a></div></div>'
        for href in product_hrefs
    )
    pager = ""
    if next_href is not None:
        pager = f'<nav><a href="{next_href}" target="_self" aria-label="Next">&raquo;</a></nav>'
    return f"<html><body>{items}{pager}</body></html>"


def product_page(
    article: Optional[str] = "Арт: ART-1",
    title: Optional[str] = "Carbon front lip",
    description: Optional[str] = "Carbon fibre front lip",
    category: Optional[str] = "Bodykits",
    price: Optional[str] = "1 250 грн",
    available: bool = True,
    on_order: bool = False,
    logo: Optional[str] = "/img/logo.png",
    gallery=("/img/1.jpg", "/img/2.jpg"),
) -> str:
    parts = ["<html><body>"]
    if logo:
        parts.append(f'<div class="item-logo"><a href="/"><img src="{logo}"></a></div>')
    if title is not None:
        parts.append(f'<h1 class="item-title">{title}</h1>')
    if article is not None:
        parts.append(f'<div class="item-title-article">{article}</div>')
    if category is not None:
        parts.append(
            '<div class="cat-breadcrumbs-text">'
            f'<span typeof="v:Breadcrumb"><a href="/cat">{category}</a></span>'
            "</div>"
        )
    if description is not None:
        parts.append(f'<div class="item-description-full"><p>{description}</p></div>')
    if price is not None:
        parts.append(f'<div class="product__price-block_text1">{price}</div>')
    if available:
        parts.append('<div class="available-wrap">В наличии</div>')
    if on_order:
        parts.append(
            '<div class="item-info-block">'
            '<div class="cat-item-list-prices-avail">Доступно под заказ</div></div>'
        )
    images = "".join(
        f'<a href="{src}"><img class="item-gallery-image" src="{src}"></a>' for src in gallery
    )
    parts.append(f'<div class="item-images-wrap">{images}</div>')
    parts.append("</body></html>")
    return "".join(parts)


# =============================================================================
# Fake site
# =============================================================================


class FakeSite:
    """Path-keyed fake web server served through httpx.MockTransport."""

    def __init__(self):
        self.pages: dict = {}
        self.requests: list[str] = []

    def add(self, path: str, body: str, status: int = 200):
        self.pages[path] = [(status, body)]

    def add_sequence(self, path: str, responses: list):
        """Serve (status, body) pairs in order, repeating the last one."""
        self.pages[path] = list(responses)

    def add_handler(self, path: str, handler):
        """Serve a path through a (possibly async) callable returning httpx.Response."""
        self.pages[path] = handler

    def count(self, path: str) -> int:
        return self.requests.count(path)

    async def handle(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.requests.append(path)
        page = self.pages.get(path)
        if page is None:
            return httpx.Response(404, text="not found")
        if callable(page):
            response = page(request)
            if inspect.isawaitable(response):
                response = await response
            return response
        status, body = page[0] if len(page) == 1 else page.pop(0)
        return httpx.Response(status, text=body)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)


def build_catalog_site() -> FakeSite:
    """A small vendor site.

    Audi has models A4 (two listing pages) and A6; BMW has no models so its
    own page is the listing; the Lighting category has one subcategory.
    """
    site = FakeSite()
    site.add(
        "/",
        front_page(
            brands=[("/brand/audi", "Audi"), ("/brand/bmw", "BMW")],
            categories=[("/cat/lighting", "Lighting")],
        ),
    )
    site.add("/brand/audi", models_page([("/audi/a4", "A4"), ("/audi/a6", "A6")]))
    site.add("/brand/bmw", listing_page(["/product/p6"]))
    site.add("/audi/a4", listing_page(["/product/p1", "/product/p2"], next_href="/audi/a4/page-2"))
    site.add("/audi/a4/page-2", listing_page(["/product/p3"]))
    site.add("/audi/a6", listing_page(["/product/p4"]))
    site.add("/cat/lighting", subcategories_page([("/cat/lighting/lamps", "Lamps")]))
    site.add("/cat/lighting/lamps", listing_page(["/product/p5"]))
    for n in range(1, 10):
        site.add(f"/product/p{n}", product_page(article=f"Арт: ART-{n}", title=f"Product {n}"))
    return site


# =============================================================================
# In-memory storage
# =============================================================================


class InMemoryProductRepository:
    """ProductRepository keeping products in a dict keyed by article."""

    def __init__(self, products=()):
        self.products: dict[str, ExtractedProduct] = {p.article: p for p in products}
        self.saved: list[str] = []

    async def save(self, product: ExtractedProduct) -> None:
        self.products[product.article] = product
        self.saved.append(product.article)

    async def get_one(self, article: str) -> Optional[ExtractedProduct]:
        return self.products.get(article)

    async def list(self) -> List[ExtractedProduct]:
        return list(self.products.values())

    async def list_by(self, model: str) -> List[ExtractedProduct]:
        return [p for p in self.products.values() if p.model == model]


async def wait_for(predicate, timeout: float = 2.0):
    """Yield to the loop until predicate() is true."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("Condition not met in time")
        await asyncio.sleep(0.01)


# =============================================================================
# Fixtures
# =============================================================================


def make_settings(tmp_path, **overrides) -> Settings:
    values = dict(
        base_url=BASE_URL,
        fetch_backoff_base=0.0,
        requests_per_second=0,
        stage_retry_delay_seconds=0,
        cycle_error_delay_seconds=0,
        models_checkpoint_path=str(tmp_path / "models.yml"),
        links_checkpoint_path=str(tmp_path / "links.yml"),
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def settings(tmp_path):
    return make_settings(tmp_path)


@pytest.fixture
def site():
    return build_catalog_site()


@pytest.fixture
def repo():
    return InMemoryProductRepository()


@pytest_asyncio.fixture
async def client(settings, site):
    client = FetchClient.from_settings(settings, transport=site.transport())
    yield client
    await client.close()
