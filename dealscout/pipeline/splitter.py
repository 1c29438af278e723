"""
Content splitter - breaks a fetched page into one unit per listing.
"""
import logging
import re
from typing import Any

from bs4 import BeautifulSoup

from ..errors import RateLimitedError, SelectorMissError
from ..models.content import RawContentUnit


logger = logging.getLogger(__name__)


# Where paginated APIs keep their result arrays
LIST_KEYS = ("data", "listings", "results", "items")

# Listing card selectors, most specific first
CARD_SELECTORS = (
    '[id^="listing-"]',
    ".listing-card",
    "[data-listing-id]",
    'div[class*="listing"]',
)

CHALLENGE_RE = re.compile(
    r"cf-challenge|challenge-platform|just a moment\.\.\.|access denied|captcha|are you a robot",
    re.IGNORECASE,
)
LOADING_RE = re.compile(r"\bskeleton\b|\bis-loading\b|\bloading-placeholder\b|\bspinner\b", re.IGNORECASE)


def split_unit(unit: RawContentUnit) -> list[RawContentUnit]:
    """
    One child unit per listing found in ``unit``.

    Raises:
        RateLimitedError: the page is a bot challenge / block page
        SelectorMissError: listing containers are still rendering
    """
    if isinstance(unit.payload, str):
        return _split_rendered(unit)
    return _split_structured(unit)


def _split_structured(unit: RawContentUnit) -> list[RawContentUnit]:
    records = _find_records(unit.payload)
    return [unit.derive(record) for record in records]


def _find_records(payload: Any) -> list[dict]:
    if isinstance(payload, list):
        return [item for item in payload if isinstance(item, dict)]
    if not isinstance(payload, dict):
        return []

    for key in LIST_KEYS:
        value = payload.get(key)
        if isinstance(value, list):
            return [item for item in value if isinstance(item, dict)]
        if isinstance(value, dict):
            # GraphQL-style connection: data.listings.edges[].node
            nested = value.get("listings", value)
            edges = nested.get("edges") if isinstance(nested, dict) else None
            if isinstance(edges, list):
                return [e["node"] for e in edges if isinstance(e, dict) and isinstance(e.get("node"), dict)]
            inner = _find_records(value)
            if inner:
                return inner

    # Envelope with no records (e.g. {"data": [], "meta": {...}})
    if any(key in payload for key in LIST_KEYS) or "meta" in payload:
        return []
    return [payload]


def _split_rendered(unit: RawContentUnit) -> list[RawContentUnit]:
    html = unit.payload
    soup = BeautifulSoup(html, "html.parser")

    for selector in CARD_SELECTORS:
        cards = _outermost(soup.select(selector))
        if cards:
            logger.debug(f"Unit {unit.sequence}: {len(cards)} cards via {selector}")
            return [unit.derive(str(card)) for card in cards]

    title = soup.title.get_text(strip=True) if soup.title else ""
    if CHALLENGE_RE.search(title) or CHALLENGE_RE.search(html[:5000]):
        raise RateLimitedError(f"Challenge page served for unit {unit.sequence}", status_code=unit.status_code)
    if LOADING_RE.search(html):
        raise SelectorMissError(f"Listing containers still loading on unit {unit.sequence}")

    # A detail page: the whole document is the listing
    return [unit]


def _outermost(elements: list) -> list:
    """Drop matches nested inside another match (cards contain 'listing-*' children)."""
    chosen = set(id(el) for el in elements)
    result = []
    for el in elements:
        if any(id(parent) in chosen for parent in el.parents):
            continue
        result.append(el)
    return result
