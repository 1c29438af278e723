"""
Default field spec table for business-for-sale marketplace listings.

Strategy order is the trust ranking: structured API keys first, then CSS
selectors and labeled text, then loose regexes. ``fallback_strategies`` only
run when the healing controller asks for the fallback set after a
structural mismatch.
"""
from .extraction import FieldSpec, Strategy, StrategyKind, ValueType


MAX_ASKING_PRICE = 50_000_000
MAX_MONTHLY_AMOUNT = 10_000_000
MAX_MULTIPLE = 100


def _keys(*keys: str) -> Strategy:
    return Strategy(kind=StrategyKind.STRUCTURED_KEY, keys=list(keys))


def _css(*selectors: str) -> Strategy:
    return Strategy(kind=StrategyKind.DOM_SELECTOR, selectors=list(selectors))


def _labels(*labels: str) -> Strategy:
    return Strategy(kind=StrategyKind.LABELED_TEXT, labels=list(labels))


def _regex(*patterns: str) -> Strategy:
    return Strategy(kind=StrategyKind.CONTEXTUAL_REGEX, patterns=list(patterns))


def _near(*labels: str) -> Strategy:
    return Strategy(kind=StrategyKind.DOM_PROXIMITY, labels=list(labels))


MONEY = (
    r"(?:[A-Z]{3}\s*)?[$£€]?\s*\d[\d,]*(?:\.\d+)?"
    r"(?:\s*(?:thousand|million|billion|mn|bn)\b|[kKmMbB]\b)?"
)


DEFAULT_FIELD_SPECS: list[FieldSpec] = [
    FieldSpec(
        name="external_id",
        value_type=ValueType.STRING,
        pattern=r"^[\w.:-]+$",
        max_length=128,
        strategies=[
            _keys("id", "listing_id", "listingId", "ad_id"),
            _css("[data-listing-id]@data-listing-id", '[id^="listing-"]@id'),
        ],
    ),
    FieldSpec(
        name="title",
        value_type=ValueType.STRING,
        min_length=3,
        max_length=300,
        strategies=[
            _keys("title", "name", "heading", "subject"),
            _css(".listing-card__title", "h6", "h2", "h3", "[class*='title']"),
        ],
        fallback_strategies=[
            _css("a[title]@title", "h4", "strong"),
        ],
    ),
    FieldSpec(
        name="url",
        value_type=ValueType.STRING,
        max_length=2048,
        strategies=[
            _keys("url", "listing_url", "html_url", "permalink"),
            _css("a.listing-card__link@href", "a[href]@href"),
        ],
    ),
    FieldSpec(
        name="asking_price",
        value_type=ValueType.CURRENCY,
        min_value=1,
        max_value=MAX_ASKING_PRICE,
        strategies=[
            _keys("asking_price", "price", "buy_it_now_price", "current_price", "price.value"),
            _css(".listing-card__price", "[data-metric='price']"),
            _labels("Asking Price", "Buy It Now", "Current Bid", "Price"),
        ],
        fallback_strategies=[
            _regex(
                rf"(?:asking\s*price|price)[:\s]*({MONEY})",
                rf"listed\s*(?:for|at)[:\s]*({MONEY})",
                rf"sale\s*price[:\s]*({MONEY})",
            ),
            _near("Asking Price", "Price"),
        ],
    ),
    FieldSpec(
        name="monthly_revenue",
        value_type=ValueType.CURRENCY,
        min_value=0,
        max_value=MAX_MONTHLY_AMOUNT,
        strategies=[
            _keys("monthly_revenue", "revenue_average", "revenue_per_month", "financials.monthly_revenue"),
            _css("[data-metric='revenue']"),
            _labels("Monthly Revenue", "Avg. Revenue", "Revenue /mo", "Revenue"),
        ],
        fallback_strategies=[
            _regex(
                rf"({MONEY})\s*(?:/\s*mo(?:nth)?|per\s*month)\s*(?:in\s*)?revenue",
                rf"(?:monthly\s*)?revenue[:\s]*({MONEY})",
                rf"making\s*({MONEY})\s*(?:per\s*month|/\s*month)",
            ),
            _near("Monthly Revenue", "Revenue"),
        ],
    ),
    FieldSpec(
        name="monthly_profit",
        value_type=ValueType.CURRENCY,
        min_value=0,
        max_value=MAX_MONTHLY_AMOUNT,
        strategies=[
            _keys("monthly_profit", "profit_average", "net_profit", "profit_per_month", "financials.monthly_profit"),
            _css("[data-metric='profit']"),
            _labels("Net Profit", "Monthly Profit", "Avg. Profit", "Profit /mo", "Profit"),
        ],
        fallback_strategies=[
            _regex(
                rf"(?:net\s*)?profit[:\s]*({MONEY})",
                rf"net\s*income[:\s]*({MONEY})",
                rf"({MONEY})\s*(?:/\s*mo(?:nth)?)?\s*profit",
            ),
            _near("Net Profit", "Profit"),
        ],
    ),
    FieldSpec(
        name="revenue_multiple",
        value_type=ValueType.MULTIPLE,
        min_value=0,
        max_value=MAX_MULTIPLE,
        strategies=[
            _keys("revenue_multiple"),
            _labels("Revenue Multiple"),
        ],
        fallback_strategies=[
            _regex(r"([\d.]+)\s*x\s*(?:annual\s*)?revenue", r"([\d.]+)\s*times\s*(?:annual\s*)?revenue"),
        ],
    ),
    FieldSpec(
        name="profit_multiple",
        value_type=ValueType.MULTIPLE,
        min_value=0,
        max_value=MAX_MULTIPLE,
        strategies=[
            _keys("profit_multiple"),
            _labels("Profit Multiple"),
        ],
        fallback_strategies=[
            _regex(r"([\d.]+)\s*x\s*(?:annual\s*)?profit", r"([\d.]+)\s*times\s*(?:annual\s*)?profit"),
        ],
    ),
    FieldSpec(
        name="multiple",
        value_type=ValueType.MULTIPLE,
        min_value=0,
        max_value=MAX_MULTIPLE,
        strategies=[
            _keys("multiple"),
            _labels("Multiple"),
        ],
        fallback_strategies=[
            _regex(r"multiple[:\s]*([\d.]+)\s*x?", r"valued\s*at\s*([\d.]+)\s*times"),
        ],
    ),
    FieldSpec(
        name="currency",
        value_type=ValueType.STRING,
        pattern=r"^[A-Za-z]{3}$",
        strategies=[
            _keys("currency", "price.currency", "currency_code"),
        ],
    ),
    FieldSpec(
        name="category",
        value_type=ValueType.STRING,
        max_length=80,
        strategies=[
            _keys("category", "industry", "niche", "category.name"),
            _css(".listing-card__category", "[data-field='industry']"),
            _labels("Industry", "Category", "Niche"),
        ],
        fallback_strategies=[
            _near("Industry", "Category"),
        ],
    ),
    FieldSpec(
        name="property_type",
        value_type=ValueType.STRING,
        max_length=60,
        strategies=[
            _keys("property_type", "business_type", "type"),
            _css("[data-field='type']"),
            _labels("Business Type", "Property Type", "Type"),
        ],
        fallback_strategies=[
            _near("Type"),
        ],
    ),
    FieldSpec(
        name="monetization",
        value_type=ValueType.STRING,
        max_length=80,
        strategies=[
            _keys("monetization", "monetization_method", "revenue_model"),
            _css("[data-field='monetization']"),
            _labels("Monetization", "Monetisation", "Revenue Model"),
        ],
        fallback_strategies=[
            _near("Monetization", "Monetisation"),
        ],
    ),
    FieldSpec(
        name="traffic_verified",
        value_type=ValueType.BOOLEAN,
        strategies=[
            _keys("has_verified_traffic", "verified_traffic", "traffic_verified"),
            _css("[data-badge='traffic-verified']", ".badge--traffic-verified"),
            _regex(r"verified\s+traffic", r"traffic\s+verified"),
        ],
    ),
    FieldSpec(
        name="revenue_verified",
        value_type=ValueType.BOOLEAN,
        strategies=[
            _keys("has_verified_revenue", "verified_revenue", "revenue_verified"),
            _css("[data-badge='revenue-verified']", ".badge--revenue-verified"),
            _regex(r"verified\s+revenue", r"revenue\s+verified"),
        ],
    ),
    FieldSpec(
        name="manually_vetted",
        value_type=ValueType.BOOLEAN,
        strategies=[
            _keys("manually_vetted", "flippa_vetted", "vetted"),
            _css("[data-badge='vetted']", ".badge--vetted"),
            _regex(r"\bvetted\b", r"verified\s+listing"),
        ],
    ),
]


def default_field_specs() -> list[FieldSpec]:
    """Fresh copies of the default table (callers may mutate their copy)."""
    return [spec.model_copy(deep=True) for spec in DEFAULT_FIELD_SPECS]
