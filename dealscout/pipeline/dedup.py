"""
Deduplicator - run-scoped seen-set keyed by external id.
"""
import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional

from ..models.listing import Listing


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Sighting:
    """What the deduplicator decided for one listing."""
    is_new: bool
    first_seen_at: datetime
    changed: bool = True


class Deduplicator:
    """
    Tracks which external ids have been seen during a pass.

    A first sighting becomes a new row; later sightings become upserts that
    keep the original ``first_seen_at``. All methods are safe to call from
    worker threads.
    """

    def __init__(self, known_ids: Optional[Iterable[str]] = None):
        self._lock = threading.Lock()
        self._seen: dict[str, tuple[Optional[datetime], Optional[tuple]]] = {}
        if known_ids:
            self.seed(known_ids)

    def seed(self, ids: Iterable[str]) -> None:
        """Mark ids already present in the store (first_seen_at unknown here)."""
        with self._lock:
            for external_id in ids:
                self._seen.setdefault(str(external_id), (None, None))
        logger.debug(f"Dedup seeded, {len(self._seen)} known ids")

    def should_persist(self, external_id: str) -> bool:
        """True when the id has not been seen before."""
        with self._lock:
            return external_id not in self._seen

    def mark_seen(self, external_id: str, first_seen_at: Optional[datetime] = None) -> None:
        with self._lock:
            if external_id not in self._seen:
                self._seen[external_id] = (first_seen_at or datetime.now(), None)

    def record(self, listing: Listing) -> Sighting:
        """
        Atomically check and mark a listing.

        On a repeat sighting the listing's ``first_seen_at`` is replaced with
        the preserved one, so the upsert never moves it forward.
        """
        with self._lock:
            previous = self._seen.get(listing.external_id)
            fingerprint = listing.content_fingerprint()

            if previous is None:
                self._seen[listing.external_id] = (listing.first_seen_at, fingerprint)
                return Sighting(is_new=True, first_seen_at=listing.first_seen_at)

            first_seen_at, old_fingerprint = previous
            if first_seen_at is None:
                # Known from the store only; the store keeps its own first_seen_at
                first_seen_at = listing.first_seen_at
            else:
                listing.first_seen_at = min(first_seen_at, listing.first_seen_at)
                first_seen_at = listing.first_seen_at
            self._seen[listing.external_id] = (first_seen_at, fingerprint)

        changed = old_fingerprint != fingerprint
        logger.debug(f"Repeat sighting of {listing.external_id} (changed={changed})")
        return Sighting(is_new=False, first_seen_at=first_seen_at, changed=changed)

    def __len__(self) -> int:
        with self._lock:
            return len(self._seen)

    def __contains__(self, external_id: str) -> bool:
        with self._lock:
            return external_id in self._seen
