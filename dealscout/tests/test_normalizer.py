"""
Tests for listing normalization.
"""
import pytest
from datetime import datetime

from dealscout.errors import NormalizationError
from dealscout.models.content import RawContentUnit, SourceKind
from dealscout.models.extraction import FieldExtractionResult, StrategyKind
from dealscout.pipeline.normalizer import ListingNormalizer, canonical, size_category, CATEGORY_SYNONYMS


def result(field, value, raw_text=None, confidence=0.95) -> FieldExtractionResult:
    return FieldExtractionResult(
        field=field,
        value=value,
        raw_text=raw_text if raw_text is not None else (None if value is None else str(value)),
        confidence=confidence if value is not None else 0.0,
        strategy=StrategyKind.STRUCTURED_KEY if value is not None else None,
    )


class TestListingNormalizer:
    """Tests for ListingNormalizer."""

    @pytest.fixture
    def normalizer(self) -> ListingNormalizer:
        return ListingNormalizer()

    @pytest.fixture
    def unit(self) -> RawContentUnit:
        return RawContentUnit(
            source_kind=SourceKind.API,
            payload={"id": "77", "title": "Recipe Blog"},
            fetched_at=datetime(2024, 5, 1, 12, 0),
        )

    def test_basic_mapping(self, normalizer, unit):
        """Test canonical attributes and provenance."""
        listing = normalizer.normalize([
            result("external_id", "77"),
            result("title", "Recipe Blog"),
            result("asking_price", 36000.0, "$36,000"),
            result("monthly_revenue", 2000.0, "$2,000"),
            result("monthly_profit", 1000.0, "$1,000"),
        ], unit)

        assert listing.external_id == "77"
        assert listing.title == "Recipe Blog"
        assert listing.annual_revenue == 24000.0
        assert listing.annual_profit == 12000.0
        assert listing.revenue_multiple == 1.5
        assert listing.profit_multiple == 3.0
        assert listing.profit_margin == 50.0
        assert listing.size_category == "medium"
        assert listing.source_kind == SourceKind.API
        assert listing.first_seen_at == unit.fetched_at
        assert listing.last_seen_at == unit.fetched_at
        assert listing.warnings == []
        assert listing.low_confidence is False

    def test_historical_aliases(self, normalizer, unit):
        """Test older extractor field names still map."""
        listing = normalizer.normalize([
            result("listing_id", "88"),
            result("price", 5000.0),
            result("profit_average", 250.0),
            result("revenue_average", 500.0),
            result("industry", "blog"),
        ], unit)

        assert listing.external_id == "88"
        assert listing.asking_price == 5000.0
        assert listing.monthly_profit == 250.0
        assert listing.monthly_revenue == 500.0
        assert listing.category == "Content"

    def test_yearly_values_become_monthly(self, normalizer, unit):
        """Test annual figures on monthly fields are divided by 12."""
        listing = normalizer.normalize([
            result("external_id", "1"),
            result("monthly_revenue", 120000.0, "$120,000 per year"),
        ], unit)

        assert listing.monthly_revenue == 10000.0
        assert any("yearly" in w for w in listing.warnings)

    def test_currency_conversion(self, normalizer, unit):
        """Test non-USD amounts are converted with a warning."""
        listing = normalizer.normalize([
            result("external_id", "1"),
            result("asking_price", 10000.0, "AUD 10,000"),
        ], unit)

        assert listing.asking_price == 6500.0
        assert any("AUD" in w for w in listing.warnings)

    def test_listing_level_currency(self, normalizer, unit):
        """Test a separate currency field applies to bare amounts."""
        listing = normalizer.normalize([
            result("external_id", "1"),
            result("asking_price", 1000.0, "1000"),
            result("currency", "gbp"),
        ], unit)

        assert listing.asking_price == 1260.0

    def test_synonyms(self, normalizer, unit):
        """Test classification synonym tables."""
        listing = normalizer.normalize([
            result("external_id", "1"),
            result("category", "ecom"),
            result("property_type", "Software"),
            result("monetization", "AdSense"),
        ], unit)

        assert listing.category == "Ecommerce"
        assert listing.property_type == "SaaS"
        assert listing.monetization == "Advertising"

    def test_unknown_labels_pass_through(self):
        """Test labels missing from a table are kept as-is."""
        assert canonical("Pet Care", CATEGORY_SYNONYMS) == "Pet Care"
        assert canonical(None, CATEGORY_SYNONYMS) is None

    def test_profit_above_revenue(self, normalizer, unit):
        """Test profit > revenue is flagged, not rejected."""
        listing = normalizer.normalize([
            result("external_id", "1", confidence=0.8),
            result("monthly_revenue", 1000.0, confidence=0.8),
            result("monthly_profit", 1500.0, confidence=0.8),
        ], unit)

        assert listing.low_confidence is True
        assert any("exceeds" in w for w in listing.warnings)
        assert listing.extraction_confidence == pytest.approx(0.4)
        assert listing.monthly_profit == 1500.0

    def test_multiple_cross_check(self, normalizer, unit):
        """Test a stated multiple far from price / earnings is warned about and kept."""
        listing = normalizer.normalize([
            result("external_id", "1"),
            result("asking_price", 36000.0),
            result("monthly_profit", 1000.0),
            result("profit_multiple", 5.0),
        ], unit)

        assert listing.profit_multiple == 5.0
        assert any("disagrees" in w for w in listing.warnings)

    def test_multiple_within_tolerance(self, normalizer, unit):
        listing = normalizer.normalize([
            result("external_id", "1"),
            result("asking_price", 36000.0),
            result("monthly_profit", 1000.0),
            result("profit_multiple", 3.3),
        ], unit)

        assert listing.warnings == []

    def test_ambiguous_multiple(self, normalizer, unit):
        """Test a bare multiple is read as the profit multiple."""
        listing = normalizer.normalize([
            result("external_id", "1"),
            result("multiple", 3.1),
        ], unit)

        assert listing.profit_multiple == 3.1
        assert listing.revenue_multiple is None
        assert any("Ambiguous" in w for w in listing.warnings)

    def test_bare_multiple_ignored_when_profit_multiple_present(self, normalizer, unit):
        listing = normalizer.normalize([
            result("external_id", "1"),
            result("multiple", 3.1),
            result("profit_multiple", 2.0),
        ], unit)

        assert listing.profit_multiple == 2.0
        assert listing.warnings == []

    def test_verification_defaults(self, normalizer, unit):
        listing = normalizer.normalize([
            result("external_id", "1"),
            result("manually_vetted", True),
        ], unit)

        assert listing.verification.manually_vetted is True
        assert listing.verification.traffic_verified is False

    def test_relative_url_joined(self, normalizer, unit):
        listing = normalizer.normalize([result("url", "/10982345-some-site")], unit)

        assert listing.url == "https://flippa.com/10982345-some-site"
        assert listing.external_id == "10982345"


class TestExternalIdFallback:
    """Tests for the external id fallback chain."""

    @pytest.fixture
    def normalizer(self) -> ListingNormalizer:
        return ListingNormalizer()

    def _unit(self, payload) -> RawContentUnit:
        return RawContentUnit(source_kind=SourceKind.RENDERED, payload=payload)

    def test_prefix_stripped(self, normalizer):
        listing = normalizer.normalize([result("external_id", "listing-555")], self._unit("<div></div>"))

        assert listing.external_id == "555"

    def test_url_without_numeric_id(self, normalizer):
        listing = normalizer.normalize(
            [result("url", "https://example.com/shop")],
            self._unit("<div></div>"),
        )

        assert listing.external_id.startswith("url-")
        assert len(listing.external_id) == len("url-") + 16

    def test_content_hash_is_deterministic(self, normalizer):
        """Test the same payload always gets the same synthesized id."""
        first = normalizer.normalize([result("title", "No Id Here")], self._unit("<div>No Id Here</div>"))
        second = normalizer.normalize([result("title", "No Id Here")], self._unit("<div>No Id Here</div>"))
        other = normalizer.normalize([result("title", "No Id Here")], self._unit("<div>Else</div>"))

        assert first.external_id.startswith("content-")
        assert first.external_id == second.external_id
        assert first.external_id != other.external_id

    def test_empty_payload_raises(self, normalizer):
        with pytest.raises(NormalizationError) as exc_info:
            normalizer.normalize([result("title", None)], self._unit("   "))

        assert exc_info.value.field == "external_id"


class TestSizeCategory:
    """Tests for price-based size buckets."""

    @pytest.mark.parametrize("price,expected", [
        (None, None),
        (500, "micro"),
        (1000, "small"),
        (25000, "medium"),
        (100000, "large"),
        (250000, "enterprise"),
    ])
    def test_size_category(self, price, expected):
        assert size_category(price) == expected
