"""DOM extraction for the people-search results page.

The page markup changes often and differs between A/B buckets, so cards are
located by an ordered list of container selectors, most specific first. Each
matching card is read with per-field selector fallbacks. When no container
selector matches at all, minimal records are built straight from profile
anchors so a page with results never comes back empty.

All strategies run on a BeautifulSoup tree of ``page.content()``; nothing here
touches the live page.
"""

from __future__ import annotations

import re

from bs4 import BeautifulSoup, Tag

from src.extractors.base import ExtractionStrategy
from src.extractors.registry import StrategyChain
from src.models.normalizer import is_profile_url, normalize_whitespace

CARD_CONTAINER_SELECTORS: list[tuple[str, str]] = [
    ("reusable_result_container", "li.reusable-search__result-container"),
    ("primary_result", 'li[class*="search-reusables__primary-result"]'),
    ("entity_result_template", 'div[data-view-name="search-entity-result-universal-template"]'),
    ("entity_result_list", "ul.reusable-search__entity-result-list > li"),
    ("entity_result", ".entity-result"),
    ("scaffold_list", '.scaffold-layout__list-container li[class*="result"]'),
]

LINK_SELECTORS = [
    'a[href*="/in/"][class*="app-aware-link"]',
    'a.app-aware-link[href*="/in/"]',
    'a[href*="/in/"]',
    ".entity-result__title-line a",
]

NAME_SELECTORS = [
    'span[dir="ltr"] > span[aria-hidden="true"]',
    'a[href*="/in/"] span[aria-hidden="true"]',
    '.entity-result__title-text a span[aria-hidden="true"]',
    '.entity-result__title-text span[aria-hidden="true"]',
    "span.entity-result__title-text",
    ".actor-name",
]

HEADLINE_SELECTORS = [
    ".entity-result__primary-subtitle",
    'div[class*="entity-result__primary-subtitle"]',
    ".entity-result__summary",
    ".search-result__snippets",
]

LOCATION_SELECTORS = [
    ".entity-result__secondary-subtitle",
    'div[class*="entity-result__secondary-subtitle"]',
    ".subline-level-2",
]

IMAGE_SELECTORS = [
    "img.presence-entity__image",
    "img.EntityPhoto-circle-4",
    'img[class*="presence"]',
    ".entity-result__image img",
    'img[src*="profile"]',
]

DEGREE_SELECTORS = [
    ".entity-result__badge-text",
    'span[class*="entity-result__badge"]',
    ".dist-value",
]

MUTUAL_SELECTOR = '.member-insights__reason, [class*="member-insights"]'
PREMIUM_SELECTOR = ".premium-icon, [data-test-premium-badge], .pv-member-badge--premium"
OPEN_TO_WORK_SELECTOR = ".hiring-badge, [data-test-opentowork-badge], .open-to-work-badge"

_DEGREE_RE = re.compile(r"\b(1st|2nd|3rd)\b")
_MUTUAL_RE = re.compile(r"(\d+)\s*(?:other\s+)?mutual", re.IGNORECASE)
_CONTAINER_CLASS_RE = re.compile(r"result|entity", re.IGNORECASE)

# How far up from an anchor to look for its card
_MAX_ANCESTOR_DEPTH = 6


def _first_text(card: Tag, selectors: list[str]) -> str | None:
    for selector in selectors:
        node = card.select_one(selector)
        if node is not None:
            text = normalize_whitespace(node.get_text(" ", strip=True))
            if text:
                return text
    return None


def _profile_href(card: Tag) -> str | None:
    for selector in LINK_SELECTORS:
        for anchor in card.select(selector):
            href = anchor.get("href") or ""
            if href and is_profile_url(href):
                return href
    return None


def _image(card: Tag) -> str | None:
    for selector in IMAGE_SELECTORS:
        node = card.select_one(selector)
        if node is not None:
            src = node.get("src") or ""
            if src.startswith("http"):
                return src
    return None


def parse_card(card: Tag) -> dict | None:
    """Read one result card. Cards without a profile link are skipped."""
    href = _profile_href(card)
    if href is None:
        return None

    headline = _first_text(card, HEADLINE_SELECTORS)
    degree_text = _first_text(card, DEGREE_SELECTORS) or ""
    degree = _DEGREE_RE.search(degree_text)
    mutual_text = _first_text(card, [MUTUAL_SELECTOR]) or ""
    mutual = _MUTUAL_RE.search(mutual_text)

    return {
        "profile_url": href,
        "name": _first_text(card, NAME_SELECTORS),
        "headline": headline,
        "location": _first_text(card, LOCATION_SELECTORS),
        "connection_degree": degree.group(1) if degree else None,
        "mutual_connections": int(mutual.group(1)) if mutual else None,
        "profile_image_url": _image(card),
        "is_premium": card.select_one(PREMIUM_SELECTOR) is not None,
        "is_open_to_work": card.select_one(OPEN_TO_WORK_SELECTOR) is not None
        or "open to work" in (headline or "").lower(),
    }


def _parse_cards(cards: list[Tag]) -> list[dict]:
    records = []
    for card in cards:
        record = parse_card(card)
        if record is not None:
            records.append(record)
    return records


class CardSelectorStrategy(ExtractionStrategy):
    """Cards matched by one container selector."""

    def __init__(self, name: str, selector: str) -> None:
        self.name = name
        self.selector = selector

    def extract(self, document: BeautifulSoup) -> list[dict]:
        return _parse_cards(document.select(self.selector))


class AnchorContainerStrategy(ExtractionStrategy):
    """Cards found by walking up from profile anchors to a result-like element."""

    name = "anchor_containers"

    def extract(self, document: BeautifulSoup) -> list[dict]:
        containers: list[Tag] = []
        seen: set[int] = set()
        for anchor in document.select('a[href*="/in/"]'):
            if not is_profile_url(anchor.get("href") or ""):
                continue
            container = _result_ancestor(anchor)
            if container is not None and id(container) not in seen:
                seen.add(id(container))
                containers.append(container)
        return _parse_cards(containers)


class AnchorFallbackStrategy(ExtractionStrategy):
    """Last resort: one minimal record per distinct profile anchor."""

    name = "anchor_fallback"

    def extract(self, document: BeautifulSoup) -> list[dict]:
        records: list[dict] = []
        seen: set[str] = set()
        for anchor in document.select('a[href*="/in/"]'):
            href = anchor.get("href") or ""
            slug = href.split("?", 1)[0]
            if not is_profile_url(href) or slug in seen:
                continue
            seen.add(slug)
            hidden = anchor.select_one('span[aria-hidden="true"]')
            text = (hidden or anchor).get_text(" ", strip=True)
            records.append({"profile_url": href, "name": normalize_whitespace(text) or None})
        return records


def _result_ancestor(anchor: Tag) -> Tag | None:
    node = anchor.parent
    for _ in range(_MAX_ANCESTOR_DEPTH):
        if node is None or not isinstance(node, Tag):
            return None
        classes = " ".join(node.get("class") or [])
        if node.name == "li" or (node.name == "div" and _CONTAINER_CLASS_RE.search(classes)):
            return node
        node = node.parent
    return None


def default_search_chain() -> StrategyChain:
    strategies: list[ExtractionStrategy] = [
        CardSelectorStrategy(name, selector) for name, selector in CARD_CONTAINER_SELECTORS
    ]
    strategies.append(AnchorContainerStrategy())
    strategies.append(AnchorFallbackStrategy())
    return StrategyChain(strategies)


def extract_search_results(html: str, chain: StrategyChain | None = None) -> tuple[str | None, list[dict]]:
    """Parse *html* and return ``(matching strategy name, raw records)``."""
    soup = BeautifulSoup(html or "", "html.parser")
    result = (chain or default_search_chain()).run(soup)
    return result.strategy, result.records
