"""
Tests for the extraction orchestrator (full passes against the in-memory store).
"""
import threading
import pytest
from datetime import datetime, timedelta

from dealscout.config import ExtractionConfig
from dealscout.errors import FetchError, FieldSpecError
from dealscout.models.content import PendingUnit, RawContentUnit, SourceKind
from dealscout.models.extraction import FieldSpec, Strategy, StrategyKind
from dealscout.models.report import FailureClass
from dealscout.pipeline.orchestrator import ExtractionOrchestrator, check_status
from dealscout.store import InMemoryListingStore


T0 = datetime(2024, 5, 1, 9, 0)

TWO_CARD_PAGE = """
<html><body>
  <div id="listing-501" class="listing-card">
    <h6>Dog Treats Store</h6>
    <span class="listing-card__price">$18,000</span>
    <div>Monthly Revenue: $3,000</div>
  </div>
  <div id="listing-502" class="listing-card">
    <h6>Crypto News Blog</h6>
    <span class="listing-card__price">$4,500</span>
    <div>Industry: blog</div>
  </div>
</body></html>
"""


def api_unit(payload, sequence=1, fetched_at=None, **kwargs) -> RawContentUnit:
    return RawContentUnit(
        source_kind=SourceKind.API,
        payload=payload,
        sequence=sequence,
        fetched_at=fetched_at or T0 + timedelta(minutes=sequence),
        **kwargs,
    )


def make_config(**overrides) -> ExtractionConfig:
    settings = dict(
        batch_size=250,
        concurrency=1,
        retry_budget=3,
        backoff_base_ms=0,
        backoff_max_ms=0,
        seed_known_ids=False,
    )
    settings.update(overrides)
    return ExtractionConfig(**settings)


def make_orchestrator(store, **overrides) -> ExtractionOrchestrator:
    return ExtractionOrchestrator(store, config=make_config(**overrides), sleep=lambda seconds: None)


class TestExtractionPass:
    """End-to-end passes."""

    @pytest.fixture
    def store(self) -> InMemoryListingStore:
        return InMemoryListingStore()

    def test_repeat_sightings_upsert_one_listing(self, store):
        """Test the same id priced $100 then $150 yields one listing at $150."""
        units = [
            api_unit({"id": "999", "title": "Niche Blog", "price": "$100"}, sequence=1),
            api_unit({"id": "999", "title": "Niche Blog", "price": "$150"}, sequence=2),
        ]

        report = make_orchestrator(store).run_pass(units)

        assert set(store.rows) == {"999"}
        row = store.get("999")
        assert row["asking_price"] == 150.0
        assert row["first_seen_at"] == units[0].fetched_at
        assert row["last_seen_at"] == units[1].fetched_at
        assert report.deduplicated == 1
        assert report.persisted == 1
        assert report.failures == []

    def test_unchanged_repeat_counted(self, store):
        """Test a repeat with identical fields is counted unchanged but still upserted."""
        units = [
            api_unit({"id": "5", "title": "Same Site", "price": "$500"}, sequence=1),
            api_unit({"id": "5", "title": "Same Site", "price": "$500"}, sequence=2),
            api_unit({"id": "6", "title": "Moving Site", "price": "$600"}, sequence=3),
            api_unit({"id": "6", "title": "Moving Site", "price": "$650"}, sequence=4),
        ]

        report = make_orchestrator(store).run_pass(units)

        assert report.deduplicated == 2
        assert report.unchanged == 1
        assert store.get("5")["last_seen_at"] == units[1].fetched_at
        assert store.get("6")["asking_price"] == 650.0

    def test_store_worker_released_after_pass(self, store):
        orchestrator = make_orchestrator(store)

        orchestrator.run_pass([api_unit({"id": "1", "title": "One", "price": "$100"})])
        assert orchestrator.gateway._executor is None

        orchestrator.run_pass([api_unit({"id": "2", "title": "Two", "price": "$200"})])
        assert set(store.rows) == {"1", "2"}

    def test_pass_is_idempotent(self, store):
        """Test running the same content twice persists the same set."""
        units = [
            api_unit({"id": str(i), "title": f"Site {i}", "price": f"${i},000"}, sequence=i)
            for i in range(1, 6)
        ]
        orchestrator = make_orchestrator(store)

        orchestrator.run_pass(units)
        first = {k: (v["asking_price"], v["title"]) for k, v in store.rows.items()}
        orchestrator.run_pass(units)
        second = {k: (v["asking_price"], v["title"]) for k, v in store.rows.items()}

        assert first == second
        assert len(second) == 5

    def test_rendered_page_with_cards(self, store):
        unit = RawContentUnit(source_kind=SourceKind.RENDERED, payload=TWO_CARD_PAGE, sequence=1)

        report = make_orchestrator(store).run_pass([unit])

        assert set(store.rows) == {"501", "502"}
        assert store.get("501")["monthly_revenue"] == 3000.0
        assert store.get("502")["industry"] == "Content"
        assert report.records_seen == 2
        assert report.field_hits["asking_price"] == 2
        assert report.field_rates["title"] == 1.0

    def test_zero_field_unit_flagged_and_pass_continues(self, store):
        """Test a unit with no extractable fields is retried once, then reported."""
        empty = RawContentUnit(
            source_kind=SourceKind.RENDERED,
            payload="<html><body><p>Nothing to see</p></body></html>",
            sequence=1,
        )
        good = api_unit({"id": "42", "title": "Good Site", "price": "$2,000"}, sequence=2)

        report = make_orchestrator(store).run_pass([empty, good])

        assert set(store.rows) == {"42"}
        assert len(report.failures) == 1
        failure = report.failures[0]
        assert failure.classification == FailureClass.STRUCTURAL_CHANGE
        assert failure.attempts == 2
        assert failure.flagged is True
        assert report.structural_alerts == [failure]

    def test_negative_price_fails_one_record(self, store):
        units = [
            api_unit({"id": "1", "title": "One", "price": "$100"}, sequence=1),
            api_unit({"id": "2", "title": "Two", "asking_price": -50}, sequence=2),
            api_unit({"id": "3", "title": "Three", "price": "$300"}, sequence=3),
        ]
        # Extractor would drop a negative price, so bypass its range check
        specs = [
            FieldSpec(name="external_id", strategies=[Strategy(kind=StrategyKind.STRUCTURED_KEY, keys=["id"])]),
            FieldSpec(name="title", strategies=[Strategy(kind=StrategyKind.STRUCTURED_KEY, keys=["title"])]),
            FieldSpec(
                name="asking_price",
                value_type="currency",
                strategies=[Strategy(kind=StrategyKind.STRUCTURED_KEY, keys=["price", "asking_price"])],
            ),
        ]

        report = make_orchestrator(store).run_pass(units, field_specs=specs)

        assert set(store.rows) == {"1", "3"}
        assert report.persisted == 2
        assert report.failed == 1
        assert report.persistence_failures[0].listing.external_id == "2"

    def test_transient_failure_recovers(self, store):
        """Test a unit whose first load fails is re-loaded."""
        calls = {"n": 0}

        def load():
            calls["n"] += 1
            if calls["n"] == 1:
                raise FetchError("HTTP 503", status_code=503)
            return api_unit({"id": "7", "title": "Recovered", "price": "$700"}, sequence=1)

        report = make_orchestrator(store).run_pass([PendingUnit(sequence=1, load=load)])

        assert calls["n"] == 2
        assert set(store.rows) == {"7"}
        assert report.failures == []

    def test_http_error_status_on_unit(self, store):
        unit = api_unit({"id": "1"}, sequence=1, status_code=404)

        report = make_orchestrator(store).run_pass([unit])

        assert report.failures[0].classification == FailureClass.CLIENT_ERROR
        assert store.rows == {}

    def test_past_end_units_skipped(self, store):
        unit = api_unit({"data": [], "meta": {}}, sequence=9, expects_data=False)

        report = make_orchestrator(store).run_pass([unit])

        assert report.units_seen == 0
        assert report.failures == []

    def test_batches_flushed_at_batch_size(self, store):
        units = [api_unit({"id": str(i), "title": f"Site {i}", "price": "$500"}, sequence=i) for i in range(1, 6)]

        report = make_orchestrator(store, batch_size=2).run_pass(units)

        assert store.calls == [2, 2, 1]
        assert report.persisted == 5

    def test_concurrent_pass(self, store):
        """Test a parallel pass persists every distinct id exactly once."""
        units = [
            api_unit({"id": str(i % 20), "title": f"Site {i % 20}", "price": f"${1000 + i}"}, sequence=i)
            for i in range(1, 41)
        ]

        report = make_orchestrator(store, concurrency=4, batch_size=7).run_pass(units)

        assert len(store.rows) == 20
        assert report.extracted == 40
        assert report.deduplicated == 20
        assert report.units_seen == 40

    def test_quality_summary(self, store):
        units = [api_unit({"id": "1", "title": "Shop", "price": "$900"})]

        report = make_orchestrator(store).run_pass(units)

        assert report.quality_summary["count"] == 1
        assert report.quality_summary["median"] == 30.0
        assert report.completed_at is not None


class TestPassTermination:
    """Tests for cancellation, aborts and spec errors."""

    def test_cancellation_between_units(self):
        store = InMemoryListingStore()
        cancel = threading.Event()

        def units():
            yield api_unit({"id": "1", "title": "One", "price": "$100"}, sequence=1)
            cancel.set()
            yield api_unit({"id": "2", "title": "Two", "price": "$200"}, sequence=2)
            yield api_unit({"id": "3", "title": "Three", "price": "$300"}, sequence=3)

        report = make_orchestrator(store).run_pass(units(), cancel_event=cancel)

        assert report.cancelled is True
        assert report.units_seen == 2
        assert set(store.rows) == {"1", "2"}

    def test_store_unavailable_aborts(self):
        store = InMemoryListingStore(unavailable=True)
        units = [api_unit({"id": "1", "title": "One", "price": "$100"})]

        report = make_orchestrator(store).run_pass(units)

        assert report.aborted is True
        assert "unavailable" in report.abort_reason
        assert report.persisted == 0

    def test_store_unavailable_while_seeding(self):
        store = InMemoryListingStore(unavailable=True)

        report = make_orchestrator(store, seed_known_ids=True).run_pass(
            [api_unit({"id": "1", "title": "One"})]
        )

        assert report.aborted is True
        assert report.units_seen == 0

    def test_malformed_specs_raise_before_work(self):
        loaded = []
        spec = FieldSpec(name="title", strategies=[Strategy(kind=StrategyKind.STRUCTURED_KEY, keys=["title"])])
        pending = PendingUnit(sequence=1, load=lambda: loaded.append(1))

        with pytest.raises(FieldSpecError):
            make_orchestrator(InMemoryListingStore()).run_pass([pending], field_specs=[spec, spec])

        assert loaded == []


class TestCheckStatus:
    def test_ok_status(self):
        check_status(api_unit({}, status_code=200))

    def test_rate_limited(self):
        from dealscout.errors import RateLimitedError

        with pytest.raises(RateLimitedError):
            check_status(api_unit({}, status_code=429))
