"""
Pipeline orchestrator - runs an extraction pass over a stream of content units.
"""
import logging
import threading
import time
import uuid
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Callable, Iterable, Optional, Protocol, Union

from ..config import ExtractionConfig, get_config
from ..errors import (
    FetchError,
    NormalizationError,
    RateLimitedError,
    StoreUnavailableError,
    StructuralMismatchError,
    UnitAbandoned,
)
from ..models.content import JobDescriptor, PendingUnit, RawContentUnit
from ..models.extraction import FieldSpec
from ..models.listing import Listing
from ..models.report import FailureClass, RunReport, UnitFailure, UnitOutcome
from ..store import ListingStore
from .dedup import Deduplicator
from .extractor import FieldExtractor, found_count
from .healing import RetryController
from .normalizer import ListingNormalizer
from .persistence import ListingBuffer, PersistenceGateway
from .scoring import QualityScorer
from .splitter import split_unit


logger = logging.getLogger(__name__)


class ContentSource(Protocol):
    def units(self, job: JobDescriptor) -> Iterable[PendingUnit]:
        ...


class _Attempt:
    """What one successful attempt produced for a unit, before dedup."""

    def __init__(self):
        self.listings: list[Listing] = []
        self.failures: list[UnitFailure] = []
        self.field_hits: dict[str, int] = {}
        self.records_seen = 0
        self.past_end = False


class ExtractionOrchestrator:
    """
    Drives units through extract -> normalize -> score -> dedup -> persist.

    Units are processed by a bounded thread pool; results are folded into
    the RunReport and the write buffer on the calling thread. Per-unit
    failures never abort the pass. A store that cannot be reached does.
    """

    def __init__(
        self,
        store: ListingStore,
        config: Optional[ExtractionConfig] = None,
        extractor: Optional[FieldExtractor] = None,
        normalizer: Optional[ListingNormalizer] = None,
        scorer: Optional[QualityScorer] = None,
        controller: Optional[RetryController] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config or get_config().extraction
        self.store = store
        self.extractor = extractor or FieldExtractor()
        self.normalizer = normalizer or ListingNormalizer(multiple_tolerance=self.config.multiple_tolerance)
        self.scorer = scorer or QualityScorer()
        self.controller = controller or RetryController(
            retry_budget=self.config.retry_budget,
            backoff_base=self.config.backoff_base_ms / 1000,
            backoff_max=self.config.backoff_max_ms / 1000,
            sleep=sleep,
        )
        self.gateway = PersistenceGateway(
            store,
            batch_size=self.config.batch_size,
            timeout=self.config.persist_timeout_seconds,
        )

    def close(self) -> None:
        """Release the store-write worker."""
        self.gateway.close()

    def __enter__(self) -> "ExtractionOrchestrator":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def run_job(
        self,
        job: JobDescriptor,
        source: ContentSource,
        cancel_event: Optional[threading.Event] = None,
    ) -> RunReport:
        """Entry point for the scheduler: one pass over a source for one job."""
        logger.info(f"Starting job {job.label or job.category or 'all'} (pages {job.start_page}-{job.end_page or 'end'})")
        return self.run_pass(source.units(job), cancel_event=cancel_event, job=job)

    def run_pass(
        self,
        units: Iterable[Union[RawContentUnit, PendingUnit]],
        field_specs: Optional[list[FieldSpec]] = None,
        cancel_event: Optional[threading.Event] = None,
        job: Optional[JobDescriptor] = None,
    ) -> RunReport:
        """
        Process every unit and persist the resulting listings.

        Args:
            units: Materialised units or PendingUnits (re-loadable on retry)
            field_specs: Field table; defaults to the configured one
            cancel_event: Checked between units; set it to stop early
            job: Recorded on the report

        Returns:
            RunReport for the pass (partial if cancelled or aborted)

        Raises:
            FieldSpecError: the field table is malformed (before any unit runs)
        """
        specs = field_specs if field_specs is not None else self.config.field_specs
        self.extractor.validate_specs(specs)

        report = RunReport(run_id=str(uuid.uuid4())[:8], job=job)
        logger.info(f"Starting extraction pass {report.run_id} (concurrency={self.config.concurrency})")

        dedup = Deduplicator()
        if self.config.seed_known_ids:
            try:
                dedup.seed(self.store.list_known_ids())
            except StoreUnavailableError as e:
                return self._abort(report, e, {})

        buffer = ListingBuffer()
        scores: dict[str, float] = {}
        stream = iter(units)
        in_flight: set[Future] = set()
        exhausted = False

        executor = ThreadPoolExecutor(max_workers=self.config.concurrency, thread_name_prefix="extract")
        try:
            while True:
                while not exhausted and len(in_flight) < self.config.concurrency:
                    if cancel_event is not None and cancel_event.is_set():
                        if not report.cancelled:
                            logger.warning(f"Pass {report.run_id} cancelled; finishing in-flight units")
                        report.cancelled = True
                        exhausted = True
                        break
                    item = next(stream, None)
                    if item is None:
                        exhausted = True
                        break
                    pending = item if isinstance(item, PendingUnit) else PendingUnit.of(item)
                    in_flight.add(executor.submit(self._process_unit, pending, specs, dedup))

                if not in_flight:
                    break

                done, in_flight = wait(in_flight, return_when=FIRST_COMPLETED)
                for future in done:
                    outcome = future.result()
                    report.absorb(outcome)
                    for listing in outcome.listings:
                        buffer.add(listing)

                if len(buffer) >= self.config.batch_size:
                    self._flush(buffer, report, scores)

            self._flush(buffer, report, scores)
        except StoreUnavailableError as e:
            for future in in_flight:
                future.cancel()
            return self._abort(report, e, scores)
        finally:
            executor.shutdown(wait=True)
            self.gateway.close()

        report.finalize(list(scores.values()))
        logger.info(f"Pass {report.run_id} complete: {report.summary()}")
        for alert in report.structural_alerts:
            logger.error(f"Possible site structure change at unit {alert.sequence} ({alert.url}): {alert.message}")
        return report

    def _abort(self, report: RunReport, error: StoreUnavailableError, scores: dict[str, float]) -> RunReport:
        report.aborted = True
        report.abort_reason = str(error)
        logger.error(f"Pass {report.run_id} aborted: store unavailable: {error}")
        return report.finalize(list(scores.values()))

    def _flush(self, buffer: ListingBuffer, report: RunReport, scores: dict[str, float]) -> None:
        listings = buffer.drain()
        if not listings:
            return
        result = self.gateway.persist(listings)
        report.absorb_persist(result)
        for listing in result.succeeded:
            scores[listing.external_id] = listing.quality_score

    def _process_unit(
        self,
        pending: PendingUnit,
        specs: list[FieldSpec],
        dedup: Deduplicator,
    ) -> UnitOutcome:
        """Worker: one unit under the retry controller, then dedup."""
        try:
            attempt = self.controller.run(
                lambda use_fallback: self._attempt(pending, specs, use_fallback),
                sequence=pending.sequence,
                url=pending.url,
            )
        except UnitAbandoned as e:
            return UnitOutcome(sequence=pending.sequence, failures=[e.failure])

        if attempt.past_end:
            logger.debug(f"Unit {pending.sequence} lies past the last page")
            return UnitOutcome(sequence=pending.sequence, skipped=True)

        duplicates = unchanged = 0
        for listing in attempt.listings:
            sighting = dedup.record(listing)
            if not sighting.is_new:
                duplicates += 1
                # Still upserted: last_seen_at moves on
                if not sighting.changed:
                    unchanged += 1

        return UnitOutcome(
            sequence=pending.sequence,
            listings=attempt.listings,
            records_seen=attempt.records_seen,
            extracted=len(attempt.listings),
            duplicates=duplicates,
            unchanged=unchanged,
            field_hits=attempt.field_hits,
            failures=attempt.failures,
        )

    def _attempt(self, pending: PendingUnit, specs: list[FieldSpec], use_fallback: bool) -> _Attempt:
        """load -> status check -> split -> extract -> normalize -> score."""
        unit = pending.load()
        check_status(unit)

        result = _Attempt()
        records = split_unit(unit)
        if not records:
            if unit.expects_data:
                raise StructuralMismatchError(f"Unit {unit.sequence} contained no listing records")
            result.past_end = True
            return result

        extracted = [(record, self.extractor.extract(record, specs, use_fallback)) for record in records]
        if unit.expects_data and all(found_count(results) == 0 for _, results in extracted):
            raise StructuralMismatchError(
                f"Unit {unit.sequence}: no fields extracted from {len(records)} record(s)",
                records=len(records),
            )

        result.records_seen = len(records)
        for index, (record, results) in enumerate(extracted):
            for field_result in results:
                if field_result.found:
                    result.field_hits[field_result.field] = result.field_hits.get(field_result.field, 0) + 1
            if found_count(results) == 0:
                result.failures.append(UnitFailure(
                    sequence=unit.sequence,
                    url=unit.url,
                    classification=FailureClass.EXTRACTION,
                    message=f"Record {index} produced no fields",
                ))
                continue
            try:
                listing = self.normalizer.normalize(results, record)
            except NormalizationError as e:
                logger.warning(f"Unit {unit.sequence} record {index}: {e}")
                result.failures.append(UnitFailure(
                    sequence=unit.sequence,
                    url=unit.url,
                    classification=FailureClass.NORMALIZATION,
                    message=f"Record {index}: {e}",
                ))
                continue
            result.listings.append(self.scorer.apply(listing))
        return result


def check_status(unit: RawContentUnit) -> None:
    """Turn an HTTP error status recorded on a unit into the matching error."""
    status = unit.status_code
    if status is None or status < 400:
        return
    if status == 429:
        raise RateLimitedError(f"Rate limited on unit {unit.sequence}", status_code=status)
    if status >= 500 or status == 408:
        raise FetchError(f"HTTP {status} on unit {unit.sequence}", status_code=status, transient=True)
    raise FetchError(f"HTTP {status} on unit {unit.sequence}", status_code=status, transient=False)
