"""CSS selectors and patterns for the vendor site markup."""

import re

# Taxonomy
BRANDS_CONTAINER = "ul.brands-wrap"
BRAND_LINKS = "li > a"
CATEGORIES_CONTAINER = ".lp-cat-ul"
CATEGORY_LINKS = "li > a"
MODEL = ".cat-item-wrap > .cat-item-title > a"
SUBCATEGORY = ".cat-item-wrap a"

# Listing pages
PRODUCT_ITEM = ".cat-item-list-wrap > .cat-item-list-title > a"
NEXT_PAGE = re.compile(r"a href=.([a-z0-9|\-/_]*).( target=._self.)? aria-label=.Next")

# Product detail page
TITLE = ".item-title"
ARTICLE = ".item-title-article"
DESCRIPTION = ".item-description-full"
CATEGORY = '.cat-breadcrumbs-text span[typeof="v:Breadcrumb"]:nth-child(odd) a'
PRICE = ".product__price-block_text1"
AVAILABLE = ".available-wrap"
AVAILABLE_ON_ORDER = ".item-info-block > .cat-item-list-prices-avail"
LOGO = ".item-logo > a > img"
GALLERY_IMAGES = ".item-images-wrap > a > img.item-gallery-image"

# Localized "Art:" label in front of the SKU
ARTICLE_PATTERN = re.compile(r"^(?:арт:?)?\s*(.*?)\s*$", re.IGNORECASE)
ON_ORDER_MARKER = "доступно под заказ"
