"""
Content models - raw units handed to the extractor and job descriptors.
"""
import json
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Optional, Union

from pydantic import BaseModel, Field


class SourceKind(str, Enum):
    """Where a unit's payload came from."""
    API = "api"
    RENDERED = "rendered"


class RawContentUnit(BaseModel):
    """One page or API response worth of material to extract from."""
    source_kind: SourceKind
    payload: Union[dict[str, Any], list[Any], str]
    sequence: int = Field(default=0, description="Page or request sequence number")
    url: Optional[str] = None
    status_code: Optional[int] = Field(
        default=None,
        description="HTTP status observed by the fetcher, if any"
    )
    expects_data: bool = Field(
        default=True,
        description="False for pages known to lie past the end of pagination"
    )
    fetched_at: datetime = Field(default_factory=datetime.now)

    @property
    def is_structured(self) -> bool:
        """True when the payload is parsed JSON."""
        return isinstance(self.payload, (dict, list))

    @property
    def text(self) -> str:
        """Best-effort text view of the payload."""
        if isinstance(self.payload, str):
            return self.payload
        return json.dumps(self.payload, sort_keys=True, default=str)

    def derive(self, payload: Union[dict[str, Any], list[Any], str]) -> "RawContentUnit":
        """Build a child unit (one listing) sharing this unit's metadata."""
        return self.model_copy(update={"payload": payload})


@dataclass
class PendingUnit:
    """A unit that has not been fetched yet. ``load`` is called once per attempt."""
    sequence: int
    load: Callable[[], RawContentUnit]
    url: Optional[str] = None

    @classmethod
    def of(cls, unit: RawContentUnit) -> "PendingUnit":
        """Wrap an already materialised unit."""
        return cls(sequence=unit.sequence, load=lambda: unit, url=unit.url)


class JobDescriptor(BaseModel):
    """Scheduler-supplied description of one scraping pass."""
    category: Optional[str] = None
    property_type: Optional[str] = None
    start_page: int = Field(default=1, ge=1)
    end_page: Optional[int] = Field(default=None, ge=1)
    page_size: int = Field(default=100, ge=1, le=500)
    label: Optional[str] = None
