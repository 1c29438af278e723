"""
Exception types raised across the extraction pipeline.

Missing field data is never an exception: it is a ``None`` value with
confidence 0. Everything here is either a programmer error (bad field
specs), a per-unit failure the healing controller classifies, or a store
failure the persistence gateway degrades around.
"""
from typing import Optional


class DealScoutError(Exception):
    """Base class for all pipeline errors."""


class FieldSpecError(DealScoutError):
    """Field specs are malformed. Raised before any unit is processed."""


class NormalizationError(DealScoutError):
    """A listing could not be normalized (no dedup key could be derived)."""

    def __init__(self, message: str, field: str = "external_id"):
        super().__init__(message)
        self.field = field


class FetchError(DealScoutError):
    """The content source returned an error instead of content."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        transient: bool = True,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.transient = transient


class RateLimitedError(FetchError):
    """The source signalled rate limiting (HTTP 429 or a challenge page)."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = 429,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message, status_code=status_code, transient=True)
        self.retry_after = retry_after


class SelectorMissError(DealScoutError):
    """Rendered content looked incomplete (listing containers still empty)."""


class StructuralMismatchError(DealScoutError):
    """A unit expected to carry data produced zero extracted fields."""

    def __init__(self, message: str, records: int = 0):
        super().__init__(message)
        self.records = records


class UnitAbandoned(DealScoutError):
    """The healing controller gave up on a unit."""

    def __init__(self, failure):
        super().__init__(failure.message)
        self.failure = failure


class StoreWriteError(DealScoutError):
    """A write to the listing store failed."""


class StoreUnavailableError(StoreWriteError):
    """The store cannot be reached at all. Aborts the current pass."""
