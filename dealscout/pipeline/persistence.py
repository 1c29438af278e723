"""
Persistence gateway - batched upserts that degrade to single-record writes.
"""
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Optional

from ..errors import StoreUnavailableError, StoreWriteError
from ..models.listing import Listing
from ..models.report import FailedListing, PersistResult
from ..store import BatchWriteResult, ListingStore


logger = logging.getLogger(__name__)


class ListingBuffer:
    """
    Pending writes keyed by external id.

    The sighting with the latest ``last_seen_at`` wins, whatever order
    workers finish in; the earliest ``first_seen_at`` is kept.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._items: dict[str, Listing] = {}

    def add(self, listing: Listing) -> int:
        with self._lock:
            existing = self._items.get(listing.external_id)
            if existing is not None:
                first_seen_at = min(existing.first_seen_at, listing.first_seen_at)
                if existing.last_seen_at > listing.last_seen_at:
                    listing = existing
                listing.first_seen_at = first_seen_at
            self._items[listing.external_id] = listing
            return len(self._items)

    def drain(self) -> list[Listing]:
        with self._lock:
            items = list(self._items.values())
            self._items.clear()
            return items

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


class PersistenceGateway:
    """
    Writes listings through a ListingStore in batches.

    Per batch: upsert; if the store rejects specific records, retry the
    batch without them; if that fails, or the batch failed without naming a
    record, or timed out, write the records one at a time. Every record ends
    up in exactly one of ``succeeded`` or ``failed``.

    StoreUnavailableError is not degraded around: it propagates.
    """

    def __init__(
        self,
        store: ListingStore,
        batch_size: int = 250,
        timeout: Optional[float] = 30.0,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.store = store
        self.batch_size = batch_size
        self.timeout = timeout
        self._executor_lock = threading.Lock()
        self._executor: Optional[ThreadPoolExecutor] = None

    def persist(self, listings: list[Listing]) -> PersistResult:
        """Persist listings, returning what succeeded and what failed (with reasons)."""
        result = PersistResult()
        for start in range(0, len(listings), self.batch_size):
            batch = listings[start:start + self.batch_size]
            result = result.merge(self._persist_batch(batch))
        if listings:
            logger.info(
                f"Persisted {len(result.succeeded)}/{len(listings)} listings "
                f"({len(result.failed)} failed)"
            )
        return result

    def close(self) -> None:
        """Shut down the store-write worker. A later persist starts a new one."""
        with self._executor_lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=False)

    def _write(self, listings: list[Listing]) -> BatchWriteResult:
        """
        One store call, bounded by the per-call timeout.

        A call that times out keeps its worker thread; the gateway moves on
        to a fresh worker so the writes that follow are not queued behind it.
        """
        records = [listing.to_record() for listing in listings]
        with self._executor_lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="store-write")
            executor = self._executor
        future = executor.submit(self.store.upsert_batch, records)
        try:
            return future.result(timeout=self.timeout)
        except FutureTimeout as e:
            with self._executor_lock:
                if self._executor is executor:
                    self._executor = None
            executor.shutdown(wait=False)
            raise StoreWriteError(
                f"Store call with {len(records)} records timed out after {self.timeout}s"
            ) from e

    def _persist_batch(self, batch: list[Listing]) -> PersistResult:
        try:
            written = self._write(batch)
        except StoreUnavailableError:
            raise
        except StoreWriteError as e:
            logger.warning(f"Batch of {len(batch)} failed ({e}); writing one at a time")
            return self._persist_singly(batch)

        if not written.rejected:
            return PersistResult(succeeded=list(batch))

        rejected = [listing for listing in batch if listing.external_id in written.rejected]
        if not rejected:
            logger.warning(f"Store rejected ids outside the batch: {sorted(written.rejected)}")
            return self._persist_singly(batch)
        remaining = [listing for listing in batch if listing.external_id not in written.rejected]
        failed = [
            FailedListing(listing=listing, reason=written.rejected[listing.external_id])
            for listing in rejected
        ]
        for item in failed:
            logger.error(f"Store rejected {item.listing.external_id}: {item.reason}")

        # Stores that write nothing when any record is bad: retry the rest
        if remaining and written.written < len(remaining):
            try:
                retry = self._write(remaining)
            except StoreUnavailableError:
                raise
            except StoreWriteError as e:
                logger.warning(f"Batch retry without rejected records failed ({e}); writing one at a time")
                return self._persist_singly(remaining).merge(PersistResult(failed=failed))
            if retry.rejected:
                return self._persist_singly(remaining).merge(PersistResult(failed=failed))

        return PersistResult(succeeded=remaining, failed=failed)

    def _persist_singly(self, listings: list[Listing]) -> PersistResult:
        result = PersistResult()
        for listing in listings:
            try:
                written = self._write([listing])
            except StoreUnavailableError:
                raise
            except StoreWriteError as e:
                logger.error(f"Write failed for {listing.external_id}: {e}")
                result.failed.append(FailedListing(listing=listing, reason=str(e)))
                continue
            if written.rejected:
                reason = written.rejected.get(listing.external_id) or next(iter(written.rejected.values()))
                logger.error(f"Store rejected {listing.external_id}: {reason}")
                result.failed.append(FailedListing(listing=listing, reason=reason))
            else:
                result.succeeded.append(listing)
        return result
