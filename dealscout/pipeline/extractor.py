"""
Field extractor - interprets declarative FieldSpec tables against content units.
"""
import logging
import re
from typing import Optional

from bs4 import BeautifulSoup

from ..errors import FieldSpecError
from ..models.content import RawContentUnit
from ..models.extraction import FieldExtractionResult, FieldSpec, FieldValue, ValueType
from .strategies import ExtractionContext, candidates
from .values import coerce, raw_text_of


logger = logging.getLogger(__name__)


class FieldExtractor:
    """
    Tries each field's strategies in declared order and keeps the first
    candidate whose coerced value passes the field's predicate.

    Extraction never raises for missing data: a field nothing matched comes
    back with value None and confidence 0. Malformed specs are programmer
    errors and raise FieldSpecError.
    """

    def __init__(self):
        self._validated: set[tuple[str, ...]] = set()

    def validate_specs(self, field_specs: list[FieldSpec]) -> None:
        """Raise FieldSpecError if any spec in the table is unusable."""
        key = tuple(spec.model_dump_json() for spec in field_specs)
        if key in self._validated:
            return

        if not field_specs:
            raise FieldSpecError("Field spec table is empty")

        seen: set[str] = set()
        for spec in field_specs:
            if not spec.name or not spec.name.strip():
                raise FieldSpecError("Field spec with empty name")
            if spec.name in seen:
                raise FieldSpecError(f"Duplicate field spec '{spec.name}'")
            seen.add(spec.name)

            if not spec.strategies and not spec.fallback_strategies:
                raise FieldSpecError(f"Field '{spec.name}' has no strategies")
            if (
                spec.min_value is not None
                and spec.max_value is not None
                and spec.min_value > spec.max_value
            ):
                raise FieldSpecError(f"Field '{spec.name}': min_value > max_value")
            if spec.pattern:
                self._check_regex(spec.name, spec.pattern)

            for strategy in spec.strategies + spec.fallback_strategies:
                for pattern in strategy.patterns:
                    self._check_regex(spec.name, pattern)
                for selector in strategy.selectors:
                    self._check_selector(spec.name, selector)

        self._validated.add(key)

    @staticmethod
    def _check_regex(name: str, pattern: str) -> None:
        try:
            re.compile(pattern)
        except re.error as e:
            raise FieldSpecError(f"Field '{name}': invalid regex {pattern!r}: {e}") from e

    @staticmethod
    def _check_selector(name: str, selector: str) -> None:
        css = selector.partition("@")[0]
        try:
            BeautifulSoup("", "html.parser").select_one(css)
        except Exception as e:
            raise FieldSpecError(f"Field '{name}': invalid selector {selector!r}: {e}") from e

    def extract(
        self,
        unit: RawContentUnit,
        field_specs: list[FieldSpec],
        use_fallback: bool = False,
    ) -> list[FieldExtractionResult]:
        """
        Extract every field in ``field_specs`` from one unit.

        Args:
            unit: A single-listing content unit
            field_specs: Field table to interpret
            use_fallback: Also try each field's fallback strategies

        Returns:
            One result per spec, in spec order
        """
        self.validate_specs(field_specs)
        context = ExtractionContext(unit)
        return [self._extract_field(spec, context, use_fallback) for spec in field_specs]

    def _extract_field(
        self,
        spec: FieldSpec,
        context: ExtractionContext,
        use_fallback: bool,
    ) -> FieldExtractionResult:
        for strategy in spec.strategies_for(use_fallback):
            for raw in candidates(strategy, spec, context):
                value = coerce(raw, spec.value_type)
                if value is None or not self.accepts(spec, value):
                    continue
                return FieldExtractionResult(
                    field=spec.name,
                    raw_text=raw_text_of(raw),
                    value=value,
                    confidence=strategy.confidence,
                    strategy=strategy.kind,
                )
        return FieldExtractionResult.missing(spec.name)

    @staticmethod
    def accepts(spec: FieldSpec, value: FieldValue) -> bool:
        """The field's validation predicate."""
        if spec.value_type.is_numeric:
            if not isinstance(value, float):
                return False
            if spec.min_value is not None and value < spec.min_value:
                return False
            if spec.max_value is not None and value > spec.max_value:
                return False
            return True

        if spec.value_type == ValueType.BOOLEAN:
            return isinstance(value, bool)

        if not isinstance(value, str):
            return False
        if len(value) < spec.min_length:
            return False
        if spec.max_length is not None and len(value) > spec.max_length:
            return False
        if spec.pattern and not re.search(spec.pattern, value):
            return False
        if spec.choices is not None:
            return value.lower() in {choice.lower() for choice in spec.choices}
        return True


def result_map(results: list[FieldExtractionResult]) -> dict[str, FieldExtractionResult]:
    """Index results by field name."""
    return {result.field: result for result in results}


def found_count(results: list[FieldExtractionResult], ignore: Optional[set[str]] = None) -> int:
    """Number of fields that produced a value."""
    ignore = ignore or set()
    return sum(1 for r in results if r.found and r.field not in ignore)
