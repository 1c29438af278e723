"""
Extraction models - declarative field specs and per-field extraction results.
"""
from enum import Enum
from typing import Optional, Union

from pydantic import BaseModel, Field, model_validator


class StrategyKind(str, Enum):
    """Extraction strategies, roughly in decreasing order of trust."""
    STRUCTURED_KEY = "structured_key"
    DOM_SELECTOR = "dom_selector"
    LABELED_TEXT = "labeled_text"
    CONTEXTUAL_REGEX = "contextual_regex"
    DOM_PROXIMITY = "dom_proximity"


DEFAULT_CONFIDENCE = {
    StrategyKind.STRUCTURED_KEY: 0.95,
    StrategyKind.DOM_SELECTOR: 0.85,
    StrategyKind.LABELED_TEXT: 0.75,
    StrategyKind.CONTEXTUAL_REGEX: 0.6,
    StrategyKind.DOM_PROXIMITY: 0.5,
}

# Parameter each strategy kind cannot work without
REQUIRED_PARAMS = {
    StrategyKind.STRUCTURED_KEY: "keys",
    StrategyKind.DOM_SELECTOR: "selectors",
    StrategyKind.LABELED_TEXT: "labels",
    StrategyKind.CONTEXTUAL_REGEX: "patterns",
    StrategyKind.DOM_PROXIMITY: "labels",
}


class ValueType(str, Enum):
    """How a raw match is coerced into a typed value."""
    CURRENCY = "currency"
    NUMBER = "number"
    MULTIPLE = "multiple"
    STRING = "string"
    BOOLEAN = "boolean"

    @property
    def is_numeric(self) -> bool:
        return self in (ValueType.CURRENCY, ValueType.NUMBER, ValueType.MULTIPLE)


FieldValue = Union[float, str, bool, None]


class Strategy(BaseModel):
    """One way of finding a field's value in a content unit."""
    kind: StrategyKind
    keys: list[str] = Field(
        default_factory=list,
        description="Dotted JSON paths, or data-* attribute names on DOM roots"
    )
    selectors: list[str] = Field(
        default_factory=list,
        description="CSS selectors; 'selector@attr' reads an attribute"
    )
    labels: list[str] = Field(
        default_factory=list,
        description="Human labels printed next to the value (e.g. 'Net Profit')"
    )
    patterns: list[str] = Field(
        default_factory=list,
        description="Regexes; group 1 (or the whole match) is the raw value"
    )
    confidence: Optional[float] = Field(default=None, ge=0, le=1)

    @model_validator(mode="after")
    def check_params(self) -> "Strategy":
        required = REQUIRED_PARAMS[self.kind]
        if not getattr(self, required):
            raise ValueError(f"{self.kind.value} strategy needs at least one entry in '{required}'")
        if self.confidence is None:
            self.confidence = DEFAULT_CONFIDENCE[self.kind]
        return self


class FieldSpec(BaseModel):
    """
    Declares one field: its type, the ordered strategies that may find it,
    and the predicate a candidate value has to pass.
    """
    name: str = Field(min_length=1)
    value_type: ValueType = ValueType.STRING
    strategies: list[Strategy] = Field(default_factory=list)
    fallback_strategies: list[Strategy] = Field(
        default_factory=list,
        description="Looser heuristics, only tried when the fallback set is requested"
    )

    # Validation predicate
    min_value: Optional[float] = None
    max_value: Optional[float] = None
    min_length: int = 1
    max_length: Optional[int] = None
    pattern: Optional[str] = Field(default=None, description="Regex a string value must match")
    choices: Optional[list[str]] = Field(
        default=None,
        description="Closed vocabulary (case-insensitive). None means open."
    )

    @model_validator(mode="after")
    def check_ranges(self) -> "FieldSpec":
        if (
            self.min_value is not None
            and self.max_value is not None
            and self.min_value > self.max_value
        ):
            raise ValueError(f"{self.name}: min_value {self.min_value} > max_value {self.max_value}")
        return self

    def strategies_for(self, use_fallback: bool = False) -> list[Strategy]:
        """Strategies to try, in order."""
        if use_fallback:
            return self.strategies + self.fallback_strategies
        return list(self.strategies)


class FieldExtractionResult(BaseModel):
    """A single extracted field with confidence."""
    field: str
    raw_text: Optional[str] = Field(
        default=None,
        description="The text span that was used to extract this value"
    )
    value: FieldValue = None
    confidence: float = Field(default=0.0, ge=0, le=1)
    strategy: Optional[StrategyKind] = Field(
        default=None,
        description="Strategy that produced the value; None when nothing matched"
    )

    @property
    def found(self) -> bool:
        return self.value is not None

    @classmethod
    def missing(cls, field: str) -> "FieldExtractionResult":
        return cls(field=field)
