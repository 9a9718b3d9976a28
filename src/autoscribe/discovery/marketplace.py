from __future__ import annotations

import re
from typing import Any
from urllib.parse import urljoin

from bs4 import BeautifulSoup

from ..models import DiscoveryResult, SourceConfig, SourceType
from ..utils import collapse_whitespace
from .base import Discoverer

DEFAULT_MAX_RANK = 50
DEFAULT_MIN_RATING = 3.5
TOP_RANK = 10
TOP_RANK_PRIORITY = 10
RANKED_PRIORITY = 7

PRODUCT_SELECTOR = "#gridItemRoot, .zg-item-immersion, [data-asin]"
MARKETPLACE_HOST = "https://www.amazon.com"

_ASIN_RE = re.compile(r"/dp/([A-Z0-9]{10})")
_NUMBER_RE = re.compile(r"(\d+(?:\.\d+)?)")
_RANK_RE = re.compile(r"#?\s*(\d+)")


def rank_priority(rank: int) -> int:
    return TOP_RANK_PRIORITY if rank <= TOP_RANK else RANKED_PRIORITY


class MarketplaceDiscoverer(Discoverer):
    """Bestseller listings: rank, rating and review thresholds per product."""

    source_type = SourceType.MARKETPLACE

    def _discover(self, source: SourceConfig, campaign_id: str, result: DiscoveryResult) -> None:
        if not source.url:
            self.parse_error(result, None, "marketplace source has no url")
            return
        options = source.options
        max_rank = int(options.get("max_rank") or DEFAULT_MAX_RANK)
        min_rating = float(options.get("min_rating", DEFAULT_MIN_RATING))
        min_reviews = int(options.get("min_reviews") or 0)
        keywords = self.keyword_filter(source)
        pages = [source.url] + [str(page) for page in options.get("pages") or []]
        max_depth = self.max_depth(source)
        rank = 0
        for depth, page_url in enumerate(pages, start=1):
            if depth > max_depth:
                self.depth_exceeded(result, page_url, depth)
                return
            response = self.fetch(page_url, result, headers=options.get("http_headers"))
            if response is None:
                return
            soup = BeautifulSoup(response.content, "html.parser")
            nodes = _product_nodes(soup)
            if not nodes:
                self.parse_error(result, page_url, "no product nodes found")
                continue
            for node in nodes:
                product = extract_product(node, page_url)
                if product is None:
                    self.parse_error(result, page_url, "product without asin")
                    continue
                rank = product["rank"] if product["rank"] is not None else rank + 1
                if rank > max_rank:
                    return
                result.found_count += 1
                if product["rating"] < min_rating:
                    self.drop(result, "min_rating", asin=product["asin"], rating=product["rating"])
                    continue
                if product["review_count"] < min_reviews:
                    self.drop(result, "min_reviews", asin=product["asin"])
                    continue
                if not keywords.accepts(product["title"]):
                    self.drop(result, "keywords", asin=product["asin"])
                    continue
                self.emit(product_to_raw(product, rank), source, campaign_id, result)


def _product_nodes(soup: Any) -> list[Any]:
    nodes: list[Any] = []
    seen: set[int] = set()
    for node in soup.select(PRODUCT_SELECTOR):
        # Skip product markers nested inside an already selected node.
        if any(id(parent) in seen for parent in node.parents):
            continue
        if node.name != "div" and not node.get("data-asin"):
            continue
        seen.add(id(node))
        nodes.append(node)
    return nodes


def extract_product(node: Any, base_url: str) -> dict[str, Any] | None:
    asin = extract_asin(node)
    if not asin:
        return None
    title_node = node.select_one(".p13n-sc-truncate") or node.select_one("a span div")
    title = collapse_whitespace(title_node.get_text(" ")) if title_node is not None else ""
    image = node.select_one("img")
    if not title and image is not None:
        title = collapse_whitespace(image.get("alt") or "")
    rank_node = node.select_one(".zg-bdg-text, .zg-badge-text")
    rank = None
    if rank_node is not None:
        match = _RANK_RE.search(rank_node.get_text())
        if match:
            rank = int(match.group(1))
    return {
        "asin": asin,
        "title": title,
        "url": urljoin(MARKETPLACE_HOST, f"/dp/{asin}"),
        "price": _price(node),
        "rating": _rating(node),
        "review_count": _review_count(node),
        "image_url": _image_url(image, base_url),
        "rank": rank,
    }


def extract_asin(node: Any) -> str:
    asin = (node.get("data-asin") or "").strip()
    if asin:
        return asin
    for carrier in node.select("[data-asin]"):
        if (carrier.get("data-asin") or "").strip():
            return carrier["data-asin"].strip()
    link = node.select_one("a[href*='/dp/']")
    if link is not None:
        match = _ASIN_RE.search(link.get("href") or "")
        if match:
            return match.group(1)
    return ""


def product_to_raw(product: dict[str, Any], rank: int) -> dict[str, Any]:
    return {
        "item_id": product["asin"],
        "title": product["title"],
        "url": product["url"],
        "excerpt": "",
        "media_urls": [product["image_url"]] if product["image_url"] else [],
        "priority": rank_priority(rank),
        "raw_metadata": {
            "asin": product["asin"],
            "bestseller_rank": rank,
            "price": product["price"],
            "rating": product["rating"],
            "review_count": product["review_count"],
        },
    }


def _price(node: Any) -> float:
    price_node = node.select_one(".p13n-sc-price, .a-price-whole")
    if price_node is None:
        return 0.0
    digits = re.sub(r"[^0-9.]", "", price_node.get_text())
    try:
        return float(digits) if digits else 0.0
    except ValueError:
        return 0.0


def _rating(node: Any) -> float:
    rating_node = node.select_one("span.a-icon-alt, i[class*='a-star']")
    if rating_node is None:
        return 0.0
    match = _NUMBER_RE.search(rating_node.get_text())
    return float(match.group(1)) if match else 0.0


def _review_count(node: Any) -> int:
    review_node = node.select_one("a[href*='#customerReviews'], span[class*='review-count']")
    if review_node is None:
        return 0
    digits = re.sub(r"[^0-9]", "", review_node.get_text())
    return int(digits) if digits else 0


def _image_url(image: Any, base_url: str) -> str | None:
    if image is None or not image.get("src"):
        return None
    return urljoin(base_url, image["src"])
