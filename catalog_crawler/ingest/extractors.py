"""Structural extraction for taxonomy, listing and product detail pages.

Everything here is pure: a page body goes in, domain objects come out. Fetching,
concurrency and persistence live in ``catalog_crawler.ingest.stages``.
"""

import logging
import re
from decimal import Decimal, InvalidOperation
from typing import Optional
from urllib.parse import urljoin

from selectolax.parser import HTMLParser, Node

from catalog_crawler.ingest import selectors
from catalog_crawler.ingest.base import Availability, CrawlNode, ExtractedProduct, utcnow

logger = logging.getLogger(__name__)


class ExtractionError(Exception):
    """Base class for extraction failures."""


class MissingRequiredField(ExtractionError):
    """A field the product cannot exist without is absent."""

    def __init__(self, field: str, url: str, message: Optional[str] = None):
        super().__init__(message or f"Missing required field '{field}' at {url}")
        self.field = field
        self.url = url


class NoArticle(MissingRequiredField):
    """The product page has no article (SKU)."""

    def __init__(self, url: str):
        super().__init__("article", url, f"No article found at {url}")


class ExtractionStructureError(MissingRequiredField):
    """A container element the page layout requires is absent."""

    def __init__(self, selector: str, url: str):
        super().__init__(selector, url, f"No element matches '{selector}' at {url}")


def format_raw_text(text: str) -> str:
    """Drop newlines and surrounding whitespace."""
    return text.replace("\r", "").replace("\n", "").strip()


def _collapse(text: str) -> str:
    return " ".join(text.split())


def _trailing_text(node: Node) -> Optional[str]:
    """Text of the last child when it is a bare text node."""
    last = node.last_child
    if last is None or last.tag != "-text":
        return None
    text = format_raw_text(last.text(deep=False) or "")
    return text or None


def _href(node: Node) -> Optional[str]:
    href = node.attributes.get("href")
    if href is None or not href.strip():
        return None
    return href.strip()


def _extract_named_links(
    links: list[Node],
    page_url: str,
    kind: str,
) -> list[CrawlNode]:
    """Turn root-level anchors into nodes, dropping entries without a link or a name."""
    nodes: list[CrawlNode] = []
    for link in links:
        href = _href(link)
        if href is None:
            logger.warning(f"Unable to get {kind} link: {link.html}")
            continue

        name = _trailing_text(link)
        if name is None:
            logger.warning(f"Unable to parse {kind} name: {link.html}")
            continue

        nodes.append(CrawlNode(url=urljoin(page_url, href), label=name))
    return nodes


def extract_brands(html: str, page_url: str) -> list[CrawlNode]:
    """
    Extract brand roots from the site front page.

    Raises:
        ExtractionStructureError: If the page has no brand list at all
    """
    tree = HTMLParser(html)
    container = tree.css_first(selectors.BRANDS_CONTAINER)
    if container is None:
        raise ExtractionStructureError(selectors.BRANDS_CONTAINER, page_url)
    return _extract_named_links(container.css(selectors.BRAND_LINKS), page_url, "brand")


def extract_categories(html: str, page_url: str) -> list[CrawlNode]:
    """
    Extract category roots from the site front page.

    Raises:
        ExtractionStructureError: If the page has no category list at all
    """
    tree = HTMLParser(html)
    container = tree.css_first(selectors.CATEGORIES_CONTAINER)
    if container is None:
        raise ExtractionStructureError(selectors.CATEGORIES_CONTAINER, page_url)
    return _extract_named_links(container.css(selectors.CATEGORY_LINKS), page_url, "category")


def extract_children(
    html: str,
    parent: CrawlNode,
    selector: str,
    kind: str,
) -> list[CrawlNode]:
    """Extract model or subcategory nodes listed on a parent page.

    An empty listing forwards the parent itself as the only child so that
    sites without an explicit second level keep their coverage.
    """
    tree = HTMLParser(html)
    children: list[CrawlNode] = []
    for link in tree.css(selector):
        href = _href(link)
        if href is None:
            logger.warning(f"Unable to get {kind} link under {parent.label}: {link.html}")
            continue

        name = _collapse(link.text(deep=True))
        if not name:
            logger.warning(f"Unable to parse {kind} name under {parent.label}: {link.html}")
            continue

        children.append(
            CrawlNode(url=urljoin(parent.url, href), label=name, parent_label=parent.label)
        )

    if not children:
        logger.info(f"No {kind} found under {parent.label}, using it as its own {kind}")
        return [CrawlNode(url=parent.url, label=parent.label, parent_label=parent.label)]
    return children


def extract_models(html: str, brand: CrawlNode) -> list[CrawlNode]:
    return extract_children(html, brand, selectors.MODEL, "model")


def extract_subcategories(html: str, category: CrawlNode) -> list[CrawlNode]:
    return extract_children(html, category, selectors.SUBCATEGORY, "subcategory")


def find_next_page(html: str) -> Optional[str]:
    """Return the site-relative link of the next listing page, if any."""
    match = selectors.NEXT_PAGE.search(html)
    if match is None:
        return None
    link = match.group(1)
    return link or None


def extract_product_links(html: str, page_url: str) -> list[str]:
    """Absolute product detail URLs listed on one listing page, in page order."""
    tree = HTMLParser(html)
    links: list[str] = []
    for anchor in tree.css(selectors.PRODUCT_ITEM):
        href = _href(anchor)
        if href is None:
            logger.warning(f"Unable to get product link on {page_url}: {anchor.html}")
            continue
        links.append(urljoin(page_url, href))
    return links


def parse_price(text: Optional[str]) -> Optional[Decimal]:
    """Parse a display price such as ``"12 345,50 грн"``."""
    if not text:
        return None

    cleaned = re.sub(r"[^\d,.]", "", text).replace(",", ".")
    if cleaned.count(".") > 1:
        # Thousands separators; the last dot is the decimal point
        head, _, tail = cleaned.rpartition(".")
        cleaned = head.replace(".", "") + "." + tail
    cleaned = cleaned.strip(".")
    if not cleaned:
        return None

    try:
        return Decimal(cleaned)
    except InvalidOperation:
        return None


def normalize_article(raw: str) -> str:
    """Strip the localized "Art:" label and surrounding whitespace."""
    match = selectors.ARTICLE_PATTERN.match(format_raw_text(raw))
    if match is None:
        return ""
    return match.group(1)


def _availability(tree: HTMLParser) -> Availability:
    if tree.css_first(selectors.AVAILABLE) is not None:
        return Availability.AVAILABLE

    on_order = tree.css_first(selectors.AVAILABLE_ON_ORDER)
    if on_order is not None and selectors.ON_ORDER_MARKER in on_order.text(deep=True).lower():
        return Availability.ON_ORDER

    return Availability.NOT_AVAILABLE


def _images(tree: HTMLParser, page_url: str) -> tuple[str, ...]:
    images: list[str] = []

    logo = tree.css_first(selectors.LOGO)
    if logo is not None:
        src = logo.attributes.get("src")
        if src:
            images.append(urljoin(page_url, src.strip()))

    for img in tree.css(selectors.GALLERY_IMAGES):
        src = img.attributes.get("src")
        if not src:
            logger.warning(f"Gallery image without src on {page_url}")
            continue
        images.append(urljoin(page_url, src.strip()))

    return tuple(images)


def parse_product(html: str, url: str, brand: str = "", model: str = "") -> ExtractedProduct:
    """
    Extract a product from its detail page.

    Article and title are required. Description, category, price and
    availability are best effort: anything missing or unparsable is logged
    and defaulted.

    Raises:
        NoArticle: If the page has no article
        MissingRequiredField: If the article is blank or the title is absent
    """
    tree = HTMLParser(html)

    article_node = tree.css_first(selectors.ARTICLE)
    if article_node is None:
        raise NoArticle(url)
    article = normalize_article(article_node.text(deep=True))
    if not article:
        raise MissingRequiredField("article", url, f"Article is empty at {url}")

    title_node = tree.css_first(selectors.TITLE)
    title = _collapse(title_node.text(deep=True)) if title_node is not None else ""
    if not title:
        raise MissingRequiredField("title", url)

    description = None
    description_node = tree.css_first(selectors.DESCRIPTION)
    if description_node is not None:
        description = description_node.text(deep=True, separator="\n", strip=True) or None
    if description is None:
        logger.info(f"No description for {article} at {url}")

    category = None
    category_node = tree.css_first(selectors.CATEGORY)
    if category_node is not None:
        category = _collapse(category_node.text(deep=True)) or None
    if category is None:
        logger.warning(f"Unable to parse category for {article} at {url}")

    price = None
    price_node = tree.css_first(selectors.PRICE)
    if price_node is not None:
        raw_price = price_node.text(deep=True)
        price = parse_price(raw_price)
        if price is None:
            logger.warning(f"Unable to parse price '{format_raw_text(raw_price)}' for {article}")
    else:
        logger.warning(f"No price for {article} at {url}")

    return ExtractedProduct(
        article=article,
        title=title,
        url=url,
        brand=brand,
        model=model,
        description=description,
        category=category,
        price=price,
        availability=_availability(tree),
        images=_images(tree, url),
        last_visited=utcnow(),
    )
