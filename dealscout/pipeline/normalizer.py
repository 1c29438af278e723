"""
Listing normalizer - maps extraction results onto the canonical Listing.

Handles historical field aliases, unit coercion (yearly -> monthly),
currency conversion, category/type/monetization synonyms, derived
financials and the external id fallback chain.
"""
import hashlib
import json
import logging
import re
from typing import Any, Optional
from urllib.parse import urljoin

from ..errors import NormalizationError
from ..models.content import RawContentUnit
from ..models.extraction import FieldExtractionResult
from ..models.listing import Listing, VerificationFlags
from .values import detect_currency, detect_period


logger = logging.getLogger(__name__)


BASE_URL = "https://flippa.com"

# Bump when FIELD_MAP changes
FIELD_MAP_VERSION = "2"

# Extractor field name (current and historical) -> canonical attribute
FIELD_MAP = {
    "external_id": "external_id",
    "listing_id": "external_id",
    "id": "external_id",
    "title": "title",
    "name": "title",
    "url": "url",
    "listing_url": "url",
    "asking_price": "asking_price",
    "price": "asking_price",
    "monthly_revenue": "monthly_revenue",
    "revenue_average": "monthly_revenue",
    "monthly_profit": "monthly_profit",
    "profit_average": "monthly_profit",
    "net_profit": "monthly_profit",
    "revenue_multiple": "revenue_multiple",
    "profit_multiple": "profit_multiple",
    "multiple": "multiple",
    "currency": "currency",
    "category": "category",
    "industry": "category",
    "property_type": "property_type",
    "business_type": "property_type",
    "monetization": "monetization",
    "monetization_method": "monetization",
    "traffic_verified": "traffic_verified",
    "revenue_verified": "revenue_verified",
    "manually_vetted": "manually_vetted",
    "flippa_vetted": "manually_vetted",
}

MONEY_FIELDS = ("asking_price", "monthly_revenue", "monthly_profit")
MONTHLY_FIELDS = ("monthly_revenue", "monthly_profit")
VERIFICATION_FIELDS = ("traffic_verified", "revenue_verified", "manually_vetted")

# Approximate USD rates for currencies seen on the marketplace
USD_RATES = {
    "USD": 1.0,
    "AUD": 0.65,
    "CAD": 0.74,
    "EUR": 1.08,
    "GBP": 1.26,
    "SGD": 0.74,
    "HKD": 0.13,
    "NZD": 0.60,
    "INR": 0.012,
}

CATEGORY_SYNONYMS = {
    "saas": "SaaS",
    "software": "Software",
    "ecommerce": "Ecommerce",
    "e-commerce": "Ecommerce",
    "ecom": "Ecommerce",
    "content": "Content",
    "blog": "Content",
    "affiliate": "Affiliate",
    "marketplace": "Marketplace",
    "app": "App",
    "mobile": "Mobile",
    "game": "Gaming",
    "gaming": "Gaming",
    "crypto": "Crypto",
    "finance": "Finance",
    "health": "Health",
    "education": "Education",
    "travel": "Travel",
    "food": "Food & Beverage",
    "fashion": "Fashion",
    "technology": "Technology",
    "business": "Business",
    "service": "Services",
    "services": "Services",
}

PROPERTY_TYPE_SYNONYMS = {
    "ecommerce": "Ecommerce",
    "e-commerce": "Ecommerce",
    "ecom": "Ecommerce",
    "content": "Content",
    "blog": "Content",
    "website": "Content",
    "saas": "SaaS",
    "software": "SaaS",
    "service": "Service",
    "services": "Service",
    "app": "App",
    "ios app": "App",
    "android app": "App",
    "domain": "Domain",
}

MONETIZATION_SYNONYMS = {
    "dropship": "Dropshipping",
    "dropshipping": "Dropshipping",
    "drop shipping": "Dropshipping",
    "ecom": "Ecommerce",
    "ecommerce": "Ecommerce",
    "affiliate": "Affiliate Sales",
    "affiliate sales": "Affiliate Sales",
    "ads": "Advertising",
    "adsense": "Advertising",
    "advertising": "Advertising",
    "display ads": "Advertising",
    "subscription": "Services & Subscriptions",
    "subscriptions": "Services & Subscriptions",
    "saas": "SaaS",
}

# Price thresholds for size_category, upper bound exclusive
SIZE_CATEGORIES = (
    (1_000, "micro"),
    (10_000, "small"),
    (50_000, "medium"),
    (250_000, "large"),
)

ID_PREFIX_RE = re.compile(r"^(?:listing|ad)[-_]", re.IGNORECASE)
URL_ID_RE = re.compile(r"/(\d{3,})(?:[/?#-]|$)")


def canonical(value: Optional[str], synonyms: dict[str, str]) -> Optional[str]:
    """Map a free-text label through a synonym table; unknown labels pass through."""
    if not value:
        return None
    key = " ".join(value.lower().split())
    return synonyms.get(key, value)


def size_category(asking_price: Optional[float]) -> Optional[str]:
    if asking_price is None:
        return None
    for limit, name in SIZE_CATEGORIES:
        if asking_price < limit:
            return name
    return "enterprise"


def _hash(text: str) -> str:
    return hashlib.sha1(text.encode("utf-8")).hexdigest()


class ListingNormalizer:
    """
    Turns one unit's extraction results into a Listing.

    Consistency problems (profit above revenue, multiples that disagree with
    price / earnings) are recorded as warnings, never rejections.
    """

    def __init__(self, multiple_tolerance: float = 0.5, base_url: str = BASE_URL):
        self.multiple_tolerance = multiple_tolerance
        self.base_url = base_url

    def normalize(self, results: list[FieldExtractionResult], unit: RawContentUnit) -> Listing:
        """
        Build a Listing from extraction results.

        Raises:
            NormalizationError: no external id can be derived at all
        """
        values, raw_texts = self._map_fields(results)
        warnings: list[str] = []

        self._coerce_periods(values, raw_texts, warnings)
        self._convert_currency(values, raw_texts, warnings)

        url = self._canonical_url(values.get("url"))
        external_id = self._external_id(values.get("external_id"), url, unit)

        asking_price = values.get("asking_price")
        monthly_revenue = values.get("monthly_revenue")
        monthly_profit = values.get("monthly_profit")

        low_confidence = False
        if (
            monthly_profit is not None
            and monthly_revenue is not None
            and monthly_profit > monthly_revenue
        ):
            warnings.append(
                f"monthly_profit {monthly_profit:g} exceeds monthly_revenue {monthly_revenue:g}"
            )
            low_confidence = True

        profit_multiple = values.get("profit_multiple")
        if values.get("multiple") is not None:
            if profit_multiple is None:
                profit_multiple = values["multiple"]
                warnings.append("Ambiguous 'multiple' treated as profit multiple")
            else:
                logger.debug(f"{external_id}: ignoring bare multiple, profit multiple present")

        revenue_multiple = self._reconcile_multiple(
            "revenue_multiple", values.get("revenue_multiple"), asking_price, monthly_revenue, warnings
        )
        profit_multiple = self._reconcile_multiple(
            "profit_multiple", profit_multiple, asking_price, monthly_profit, warnings
        )

        profit_margin = None
        if monthly_profit is not None and monthly_revenue:
            profit_margin = round(monthly_profit / monthly_revenue * 100, 1)

        scored = [r.confidence if r.found else 0.0 for r in results]
        extraction_confidence = sum(scored) / len(scored) if scored else 0.0
        if low_confidence:
            extraction_confidence /= 2

        for warning in warnings:
            logger.warning(f"Listing {external_id}: {warning}")

        return Listing(
            external_id=external_id,
            title=values.get("title"),
            url=url,
            asking_price=asking_price,
            monthly_revenue=monthly_revenue,
            monthly_profit=monthly_profit,
            annual_revenue=monthly_revenue * 12 if monthly_revenue is not None else None,
            annual_profit=monthly_profit * 12 if monthly_profit is not None else None,
            revenue_multiple=revenue_multiple,
            profit_multiple=profit_multiple,
            profit_margin=profit_margin,
            size_category=size_category(asking_price),
            category=canonical(values.get("category"), CATEGORY_SYNONYMS),
            property_type=canonical(values.get("property_type"), PROPERTY_TYPE_SYNONYMS),
            monetization=canonical(values.get("monetization"), MONETIZATION_SYNONYMS),
            verification=VerificationFlags(
                **{name: bool(values.get(name, False)) for name in VERIFICATION_FIELDS}
            ),
            extraction_confidence=round(extraction_confidence, 3),
            low_confidence=low_confidence,
            warnings=warnings,
            source_kind=unit.source_kind,
            raw_source=unit.payload,
            first_seen_at=unit.fetched_at,
            last_seen_at=unit.fetched_at,
        )

    def _map_fields(
        self, results: list[FieldExtractionResult]
    ) -> tuple[dict[str, Any], dict[str, Optional[str]]]:
        """Canonical attribute -> value, keeping the most confident source."""
        values: dict[str, Any] = {}
        raw_texts: dict[str, Optional[str]] = {}
        best: dict[str, float] = {}

        for result in results:
            if not result.found:
                continue
            attr = FIELD_MAP.get(result.field)
            if attr is None:
                logger.debug(f"No mapping for extracted field '{result.field}'")
                continue
            if attr in best and best[attr] >= result.confidence:
                continue
            best[attr] = result.confidence
            values[attr] = result.value
            raw_texts[attr] = result.raw_text
        return values, raw_texts

    @staticmethod
    def _coerce_periods(values: dict, raw_texts: dict, warnings: list[str]) -> None:
        for name in MONTHLY_FIELDS:
            if values.get(name) is None:
                continue
            if detect_period(raw_texts.get(name)) == "year":
                values[name] = round(values[name] / 12, 2)
                warnings.append(f"{name} was stated yearly; converted to monthly")

    @staticmethod
    def _convert_currency(values: dict, raw_texts: dict, warnings: list[str]) -> None:
        listing_currency = values.get("currency")
        if isinstance(listing_currency, str):
            listing_currency = listing_currency.upper()

        for name in MONEY_FIELDS:
            amount = values.get(name)
            if amount is None:
                continue
            code = detect_currency(raw_texts.get(name)) or listing_currency
            if not code or code == "USD":
                continue
            rate = USD_RATES.get(code)
            if rate is None:
                warnings.append(f"{name} in unsupported currency {code}; left unconverted")
                continue
            values[name] = round(amount * rate, 2)
            warnings.append(f"{name} converted from {code} at {rate}")

    def _canonical_url(self, url: Optional[str]) -> Optional[str]:
        if not url:
            return None
        url = url.strip()
        if url.startswith("http://") or url.startswith("https://"):
            return url
        return urljoin(self.base_url + "/", url.lstrip("/"))

    @staticmethod
    def _external_id(extracted: Optional[str], url: Optional[str], unit: RawContentUnit) -> str:
        """Extracted id, else numeric id in the URL, else a URL or content hash."""
        if extracted:
            cleaned = ID_PREFIX_RE.sub("", str(extracted).strip())
            if cleaned:
                return cleaned
        if url:
            match = URL_ID_RE.search(url)
            if match:
                return match.group(1)
            return f"url-{_hash(url)[:16]}"

        payload = unit.payload
        if isinstance(payload, str):
            content = payload.strip()
        else:
            content = json.dumps(payload, sort_keys=True, default=str) if payload else ""
        if not content:
            raise NormalizationError("Cannot derive external_id from an empty payload")
        return f"content-{_hash(content)}"

    def _reconcile_multiple(
        self,
        name: str,
        extracted: Optional[float],
        asking_price: Optional[float],
        monthly: Optional[float],
        warnings: list[str],
    ) -> Optional[float]:
        """Derive price / annual earnings when missing; cross-check when present."""
        derived = None
        if asking_price is not None and monthly and monthly > 0:
            derived = round(asking_price / (monthly * 12), 2)

        if extracted is None:
            return derived
        if derived is not None and abs(extracted - derived) > self.multiple_tolerance:
            warnings.append(
                f"{name} {extracted:g}x disagrees with price/annual figure {derived:g}x"
            )
        return extracted
