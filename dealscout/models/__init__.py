"""
Pydantic models for DealScout.
All data contracts are defined here for strict validation.
"""

from .content import JobDescriptor, PendingUnit, RawContentUnit, SourceKind
from .extraction import (
    FieldExtractionResult,
    FieldSpec,
    Strategy,
    StrategyKind,
    ValueType,
)
from .field_specs import DEFAULT_FIELD_SPECS, default_field_specs
from .listing import COLUMN_MAP, SCHEMA_VERSION, Listing, VerificationFlags
from .report import (
    AttemptState,
    FailedListing,
    FailureClass,
    PersistResult,
    RunReport,
    UnitFailure,
    UnitOutcome,
)

__all__ = [
    # Content
    "SourceKind",
    "RawContentUnit",
    "PendingUnit",
    "JobDescriptor",
    # Extraction
    "StrategyKind",
    "ValueType",
    "Strategy",
    "FieldSpec",
    "FieldExtractionResult",
    "DEFAULT_FIELD_SPECS",
    "default_field_specs",
    # Listing
    "Listing",
    "VerificationFlags",
    "COLUMN_MAP",
    "SCHEMA_VERSION",
    # Report
    "AttemptState",
    "FailureClass",
    "UnitFailure",
    "FailedListing",
    "PersistResult",
    "UnitOutcome",
    "RunReport",
]
