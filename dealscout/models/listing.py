"""
Listing models - the canonical record persisted to the store.
"""
import json
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator

from .content import SourceKind


# Bump when COLUMN_MAP changes so stored rows can be traced to a mapping
SCHEMA_VERSION = "3"

# Canonical attribute -> store column
COLUMN_MAP = {
    "external_id": "listing_id",
    "title": "title",
    "url": "listing_url",
    "asking_price": "asking_price",
    "monthly_revenue": "monthly_revenue",
    "monthly_profit": "monthly_profit",
    "annual_revenue": "annual_revenue",
    "annual_profit": "annual_profit",
    "revenue_multiple": "revenue_multiple",
    "profit_multiple": "profit_multiple",
    "profit_margin": "profit_margin",
    "size_category": "size_category",
    "category": "industry",
    "property_type": "business_type",
    "monetization": "monetization_method",
    "quality_score": "quality_score",
    "extraction_confidence": "extraction_confidence",
    "low_confidence": "low_confidence",
    "first_seen_at": "first_seen_at",
    "last_seen_at": "last_seen_at",
}

NON_NEGATIVE_FIELDS = (
    "asking_price",
    "monthly_revenue",
    "monthly_profit",
    "annual_revenue",
    "annual_profit",
    "revenue_multiple",
    "profit_multiple",
)


class VerificationFlags(BaseModel):
    """Trust badges shown on a listing."""
    traffic_verified: bool = False
    revenue_verified: bool = False
    manually_vetted: bool = False

    @property
    def count(self) -> int:
        return sum([self.traffic_verified, self.revenue_verified, self.manually_vetted])


class Listing(BaseModel):
    """
    Normalized marketplace listing.

    Money fields are USD. Monthly values are canonical; annual values and
    multiples are derived by the normalizer when the source omits them.
    Field values are not range-checked on construction: the source is noisy
    and the store decides what it rejects (see ``constraint_violations``).
    """
    external_id: str
    title: Optional[str] = None
    url: Optional[str] = None

    # Financials
    asking_price: Optional[float] = None
    monthly_revenue: Optional[float] = None
    monthly_profit: Optional[float] = None
    annual_revenue: Optional[float] = None
    annual_profit: Optional[float] = None
    revenue_multiple: Optional[float] = None
    profit_multiple: Optional[float] = None
    profit_margin: Optional[float] = None
    size_category: Optional[str] = None

    # Classification
    category: Optional[str] = None
    property_type: Optional[str] = None
    monetization: Optional[str] = None
    verification: VerificationFlags = Field(default_factory=VerificationFlags)

    # Derived quality signals
    quality_score: float = 0.0
    extraction_confidence: float = 0.0
    low_confidence: bool = False
    warnings: list[str] = Field(default_factory=list)

    # Provenance
    source_kind: Optional[SourceKind] = None
    raw_source: Any = None
    first_seen_at: datetime = Field(default_factory=datetime.now)
    last_seen_at: datetime = Field(default_factory=datetime.now)

    @field_validator("title", "category", "property_type", "monetization", mode="before")
    @classmethod
    def clean_string(cls, v: Any) -> Optional[str]:
        """Collapse whitespace; empty strings become None."""
        if v is None:
            return None
        cleaned = " ".join(str(v).split())
        return cleaned or None

    @property
    def has_financials(self) -> bool:
        return self.monthly_revenue is not None or self.monthly_profit is not None

    def constraint_violations(self) -> list[str]:
        """Reasons a store with the listing schema would reject this record."""
        problems = []
        if not self.external_id or not self.external_id.strip():
            problems.append("external_id must not be empty")
        for name in NON_NEGATIVE_FIELDS:
            value = getattr(self, name)
            if value is not None and value < 0:
                problems.append(f"{name} must be non-negative (got {value:g})")
        if not 0 <= self.quality_score <= 100:
            problems.append(f"quality_score out of range (got {self.quality_score:g})")
        if not 0 <= self.extraction_confidence <= 1:
            problems.append(f"extraction_confidence out of range (got {self.extraction_confidence:g})")
        return problems

    def content_fingerprint(self) -> tuple:
        """Field values that matter for change detection (timestamps excluded)."""
        return (
            self.title, self.url, self.asking_price, self.monthly_revenue,
            self.monthly_profit, self.revenue_multiple, self.profit_multiple,
            self.category, self.property_type, self.monetization,
            self.verification.traffic_verified, self.verification.revenue_verified,
            self.verification.manually_vetted,
        )

    def to_record(self) -> dict[str, Any]:
        """Flatten into store columns."""
        record = {column: getattr(self, attr) for attr, column in COLUMN_MAP.items()}
        record["traffic_verified"] = self.verification.traffic_verified
        record["revenue_verified"] = self.verification.revenue_verified
        record["manually_vetted"] = self.verification.manually_vetted
        record["warnings"] = json.dumps(self.warnings)
        record["raw_data"] = json.dumps(self.raw_source, default=str) if self.raw_source is not None else None
        record["source"] = self.source_kind.value if self.source_kind else None
        record["schema_version"] = SCHEMA_VERSION
        return record
