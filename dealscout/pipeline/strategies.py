"""
Extraction strategies - each yields raw candidates for one field from one unit.

Strategies only *find* candidates. Coercion and the field's validation
predicate are applied by the extractor, which keeps the first candidate
that passes.
"""
import re
from typing import Any, Callable, Iterator, Optional

from bs4 import BeautifulSoup

from ..models.content import RawContentUnit
from ..models.extraction import FieldSpec, Strategy, StrategyKind, ValueType


NUMERIC_VALUE = (
    r"-?(?:[A-Z]{3}\s*)?[$£€]?\s*-?\d[\d,]*(?:\.\d+)?"
    r"(?:\s*(?:thousand|million|billion|mn|bn)\b|[kKmMbB]\b)?"
    r"(?:\s*(?:/|per)\s*(?:mo|month|yr|year|annum)\w*)?"
)
MULTIPLE_VALUE = r"\d+(?:\.\d+)?\s*x?"
BOOLEAN_VALUE = r"(?:yes|no|true|false|verified|unverified)"
STRING_VALUE = r"[^\n|•]{1,200}"


class ExtractionContext:
    """
    Lazily prepared views of one content unit: JSON data, parsed DOM and
    flattened text. Built once per unit and shared by all strategies.
    """

    def __init__(self, unit: RawContentUnit):
        self.unit = unit
        self._soup: Optional[BeautifulSoup] = None
        self._text: Optional[str] = None

    @property
    def data(self) -> Optional[dict[str, Any]]:
        if isinstance(self.unit.payload, dict):
            return self.unit.payload
        return None

    @property
    def soup(self) -> Optional[BeautifulSoup]:
        if isinstance(self.unit.payload, str) and self._soup is None:
            self._soup = BeautifulSoup(self.unit.payload, "html.parser")
        return self._soup

    @property
    def text(self) -> str:
        if self._text is None:
            if self.soup is not None:
                for tag in self.soup(["script", "style", "noscript"]):
                    tag.decompose()
                raw = self.soup.get_text("\n")
            elif self.data is not None:
                raw = "\n".join(_flatten_lines(self.data))
            else:
                raw = self.unit.text
            lines = (" ".join(line.split()) for line in raw.splitlines())
            self._text = "\n".join(line for line in lines if line)
        return self._text


def _flatten_lines(data: Any, prefix: str = "") -> Iterator[str]:
    """'key: value' lines for scalar leaves, with underscores read as spaces."""
    if isinstance(data, dict):
        for key, value in data.items():
            label = f"{prefix} {key}".strip().replace("_", " ")
            yield from _flatten_lines(value, label)
    elif isinstance(data, list):
        for item in data:
            yield from _flatten_lines(item, prefix)
    elif data is not None:
        yield f"{prefix}: {data}" if prefix else str(data)


def resolve_path(data: Any, path: str) -> Any:
    """Follow a dotted path through dicts and list indices."""
    current = data
    for part in path.split("."):
        if isinstance(current, dict):
            current = current.get(part)
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return None
        if current is None:
            return None
    return current


def _value_pattern(value_type: ValueType) -> str:
    if value_type == ValueType.MULTIPLE:
        return MULTIPLE_VALUE
    if value_type.is_numeric:
        return NUMERIC_VALUE
    if value_type == ValueType.BOOLEAN:
        return BOOLEAN_VALUE
    return STRING_VALUE


def _label_regex(label: str, value_type: ValueType) -> re.Pattern:
    return re.compile(
        rf"(?<![\w]){re.escape(label)}\s*[:\-–]?\s*({_value_pattern(value_type)})",
        re.IGNORECASE,
    )


def structured_key(strategy: Strategy, spec: FieldSpec, context: ExtractionContext) -> Iterator[Any]:
    """JSON key lookup; on DOM units, data-* attributes stand in for keys."""
    if context.data is not None:
        for key in strategy.keys:
            value = resolve_path(context.data, key)
            if value is not None:
                yield value
    elif context.soup is not None:
        for key in strategy.keys:
            attr = key if key.startswith("data-") else "data-" + key.replace("_", "-")
            element = context.soup.find(attrs={attr: True})
            if element is not None:
                yield element.get(attr)


def dom_selector(strategy: Strategy, spec: FieldSpec, context: ExtractionContext) -> Iterator[Any]:
    """CSS selectors; 'selector@attr' reads an attribute instead of text."""
    if context.soup is None:
        return
    for selector in strategy.selectors:
        css, _, attr = selector.partition("@")
        element = context.soup.select_one(css)
        if element is None:
            continue
        if spec.value_type == ValueType.BOOLEAN:
            # Badge presence is the signal
            yield True
        elif attr:
            yield element.get(attr)
        else:
            yield element.get_text(" ", strip=True)


def labeled_text(strategy: Strategy, spec: FieldSpec, context: ExtractionContext) -> Iterator[Any]:
    """A value printed right after a human label ('Net Profit: $1,200')."""
    text = context.text
    for label in strategy.labels:
        for match in _label_regex(label, spec.value_type).finditer(text):
            yield match.group(1)


def contextual_regex(strategy: Strategy, spec: FieldSpec, context: ExtractionContext) -> Iterator[Any]:
    """Free-form patterns over the unit's text."""
    text = context.text
    for pattern in strategy.patterns:
        for match in re.finditer(pattern, text, re.IGNORECASE):
            if spec.value_type == ValueType.BOOLEAN:
                yield True
            else:
                yield match.group(1) if match.groups() else match.group(0)


def dom_proximity(strategy: Strategy, spec: FieldSpec, context: ExtractionContext) -> Iterator[Any]:
    """The text of whatever element sits next to a label element."""
    if context.soup is None:
        return
    for label in strategy.labels:
        label_re = re.compile(rf"^\s*{re.escape(label)}\s*:?\s*$", re.IGNORECASE)
        for node in context.soup.find_all(string=label_re):
            element = node.parent
            sibling = element.find_next_sibling()
            if sibling is not None:
                yield sibling.get_text(" ", strip=True)
            if element.parent is not None:
                uncle = element.parent.find_next_sibling()
                if uncle is not None:
                    yield uncle.get_text(" ", strip=True)
            following = node.find_next(string=lambda s: s and s.strip() and not label_re.match(s))
            if following is not None:
                yield following.strip()


STRATEGY_FUNCTIONS: dict[StrategyKind, Callable[[Strategy, FieldSpec, ExtractionContext], Iterator[Any]]] = {
    StrategyKind.STRUCTURED_KEY: structured_key,
    StrategyKind.DOM_SELECTOR: dom_selector,
    StrategyKind.LABELED_TEXT: labeled_text,
    StrategyKind.CONTEXTUAL_REGEX: contextual_regex,
    StrategyKind.DOM_PROXIMITY: dom_proximity,
}


def candidates(strategy: Strategy, spec: FieldSpec, context: ExtractionContext) -> Iterator[Any]:
    """Raw candidates for ``spec`` produced by ``strategy``, best first."""
    return STRATEGY_FUNCTIONS[strategy.kind](strategy, spec, context)
