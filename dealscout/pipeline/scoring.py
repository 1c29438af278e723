"""
Quality scorer - deterministic completeness score with transparent breakdown.
"""
import logging
from typing import Optional

from ..models.listing import Listing


logger = logging.getLogger(__name__)


# Component -> points. Sums to 100.
FIELD_WEIGHTS = {
    "title": 15,
    "asking_price": 15,
    "category": 12,
    "monetization": 11,
    "url": 2,
    "monthly_revenue": 9,
    "monthly_profit": 9,
    "property_type": 3,
    "multiple": 2,
}

VERIFICATION_WEIGHTS = {
    "traffic_verified": 8,
    "revenue_verified": 7,
    "manually_vetted": 7,
}


class QualityScorer:
    """
    Scores a listing 0-100 from which fields are populated.

    The score depends only on presence, never on values, so adding a field
    can never lower it. Any score carried on the input listing is ignored.
    """

    def __init__(
        self,
        field_weights: Optional[dict[str, int]] = None,
        verification_weights: Optional[dict[str, int]] = None,
    ):
        self.field_weights = field_weights or FIELD_WEIGHTS
        self.verification_weights = verification_weights or VERIFICATION_WEIGHTS

    def breakdown(self, listing: Listing) -> dict[str, float]:
        """Points contributed by each component."""
        parts: dict[str, float] = {}
        for name, weight in self.field_weights.items():
            if name == "multiple":
                present = listing.revenue_multiple is not None or listing.profit_multiple is not None
            else:
                value = getattr(listing, name, None)
                present = value is not None and value != ""
            parts[name] = float(weight) if present else 0.0

        for name, weight in self.verification_weights.items():
            parts[name] = float(weight) if getattr(listing.verification, name) else 0.0
        return parts

    def score(self, listing: Listing) -> float:
        """Total quality score, capped at 100."""
        total = sum(self.breakdown(listing).values())
        return round(min(100.0, total), 1)

    def apply(self, listing: Listing) -> Listing:
        """Return the listing with its quality score recomputed."""
        return listing.model_copy(update={"quality_score": self.score(listing)})
