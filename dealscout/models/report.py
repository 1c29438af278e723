"""
Report models - failure records, persistence results and the run report.
"""
from datetime import datetime
from enum import Enum
from typing import Any, Optional

import numpy as np
from pydantic import BaseModel, Field

from .content import JobDescriptor
from .listing import Listing


class FailureClass(str, Enum):
    """Classification assigned to a failed unit or record."""
    NETWORK = "network"
    RATE_LIMIT = "rate_limit"
    SELECTOR_MISS = "selector_miss"
    STRUCTURAL_CHANGE = "structural_change"
    CLIENT_ERROR = "client_error"
    EXTRACTION = "extraction"
    NORMALIZATION = "normalization"
    PERSISTENCE = "persistence"
    UNKNOWN = "unknown"

    @property
    def is_transient(self) -> bool:
        return self in (FailureClass.NETWORK, FailureClass.RATE_LIMIT, FailureClass.SELECTOR_MISS)


class AttemptState(str, Enum):
    """States a unit moves through under the retry controller."""
    PENDING = "pending"
    ATTEMPTING = "attempting"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ABANDONED = "abandoned"


class UnitFailure(BaseModel):
    """A unit (or a record within one) that was given up on."""
    sequence: int
    url: Optional[str] = None
    classification: FailureClass
    message: str
    attempts: int = 1
    flagged: bool = Field(
        default=False,
        description="Needs human review (likely site-structure change)"
    )
    states: list[AttemptState] = Field(
        default_factory=list,
        description="Controller states the unit passed through, in order"
    )


class FailedListing(BaseModel):
    """A listing the store did not accept, with the reason."""
    listing: Listing
    reason: str


class PersistResult(BaseModel):
    """Outcome of persisting a set of listings."""
    succeeded: list[Listing] = Field(default_factory=list)
    failed: list[FailedListing] = Field(default_factory=list)

    def merge(self, other: "PersistResult") -> "PersistResult":
        return PersistResult(
            succeeded=self.succeeded + other.succeeded,
            failed=self.failed + other.failed,
        )


class UnitOutcome(BaseModel):
    """What one worker produced for one unit. Folded into the RunReport."""
    sequence: int
    listings: list[Listing] = Field(default_factory=list)
    records_seen: int = 0
    extracted: int = 0
    duplicates: int = 0
    unchanged: int = 0
    field_hits: dict[str, int] = Field(default_factory=dict)
    failures: list[UnitFailure] = Field(default_factory=list)
    skipped: bool = False


class RunReport(BaseModel):
    """
    Aggregate outcome of one extraction pass.
    Handed to the scheduler for logging and alerting.
    """
    run_id: str
    job: Optional[JobDescriptor] = None
    started_at: datetime = Field(default_factory=datetime.now)
    completed_at: Optional[datetime] = None

    # Counts
    units_seen: int = 0
    records_seen: int = 0
    extracted: int = 0
    deduplicated: int = 0
    unchanged: int = Field(
        default=0,
        description="Repeat sightings whose fields matched the earlier sighting"
    )
    persisted: int = 0
    failed: int = 0

    field_hits: dict[str, int] = Field(default_factory=dict)

    # Failures
    failures: list[UnitFailure] = Field(default_factory=list)
    persistence_failures: list[FailedListing] = Field(default_factory=list)

    # Termination
    cancelled: bool = False
    aborted: bool = False
    abort_reason: Optional[str] = None

    quality_summary: dict[str, Any] = Field(default_factory=dict)

    def absorb(self, outcome: UnitOutcome) -> None:
        """Fold one unit outcome into the totals. Order does not matter."""
        if outcome.skipped:
            return
        self.units_seen += 1
        self.records_seen += outcome.records_seen
        self.extracted += outcome.extracted
        self.deduplicated += outcome.duplicates
        self.unchanged += outcome.unchanged
        for name, hits in outcome.field_hits.items():
            self.field_hits[name] = self.field_hits.get(name, 0) + hits
        self.failures.extend(outcome.failures)
        self.failed += len(outcome.failures)

    def absorb_persist(self, result: PersistResult) -> None:
        self.persisted += len(result.succeeded)
        self.persistence_failures.extend(result.failed)
        self.failed += len(result.failed)

    def finalize(self, quality_scores: list[float]) -> "RunReport":
        """Stamp completion time and summarise quality scores."""
        self.completed_at = datetime.now()
        if quality_scores:
            scores = np.array(quality_scores, dtype=float)
            self.quality_summary = {
                "count": int(scores.size),
                "mean": round(float(np.mean(scores)), 1),
                "median": round(float(np.median(scores)), 1),
                "p25": round(float(np.percentile(scores, 25)), 1),
                "p75": round(float(np.percentile(scores, 75)), 1),
            }
        return self

    @property
    def field_rates(self) -> dict[str, float]:
        """Share of records in which each field was extracted."""
        if not self.records_seen:
            return {name: 0.0 for name in self.field_hits}
        return {
            name: round(hits / self.records_seen, 3)
            for name, hits in self.field_hits.items()
        }

    @property
    def elapsed_seconds(self) -> float:
        end = self.completed_at or datetime.now()
        return (end - self.started_at).total_seconds()

    @property
    def structural_alerts(self) -> list[UnitFailure]:
        """Failures that suggest the site markup changed."""
        return [f for f in self.failures if f.flagged]

    def summary(self) -> dict[str, Any]:
        """Compact dict for logs."""
        return {
            "run_id": self.run_id,
            "units": self.units_seen,
            "records": self.records_seen,
            "extracted": self.extracted,
            "deduplicated": self.deduplicated,
            "unchanged": self.unchanged,
            "persisted": self.persisted,
            "failed": self.failed,
            "structural_alerts": len(self.structural_alerts),
            "cancelled": self.cancelled,
            "aborted": self.aborted,
            "elapsed_seconds": round(self.elapsed_seconds, 2),
        }
