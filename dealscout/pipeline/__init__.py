"""Pipeline modules for extraction."""

from .extractor import FieldExtractor
from .normalizer import ListingNormalizer
from .scoring import QualityScorer
from .dedup import Deduplicator
from .persistence import ListingBuffer, PersistenceGateway
from .healing import RetryController, classify
from .orchestrator import ExtractionOrchestrator

__all__ = [
    "FieldExtractor",
    "ListingNormalizer",
    "QualityScorer",
    "Deduplicator",
    "ListingBuffer",
    "PersistenceGateway",
    "RetryController",
    "classify",
    "ExtractionOrchestrator",
]
