"""
Value coercion - turn raw matched text into typed field values.
"""
import re
from typing import Any, Optional

from ..models.extraction import FieldValue, ValueType


NUMBER_RE = re.compile(
    r"(?P<neg>-)?(?:[A-Z]{3}\s*)?[$£€]?\s*(?P<neg2>-)?"
    r"(?P<num>\d[\d,]*(?:\.\d+)?|\.\d+)"
    r"(?:\s*(?P<word>thousand|million|billion|mn|bn)\b|(?P<suffix>[kmb])\b)?",
    re.IGNORECASE,
)

SUFFIX_MULTIPLIERS = {
    "k": 1_000, "thousand": 1_000,
    "m": 1_000_000, "mn": 1_000_000, "million": 1_000_000,
    "b": 1_000_000_000, "bn": 1_000_000_000, "billion": 1_000_000_000,
}

YEARLY_RE = re.compile(
    r"(?:/\s*|per\s+|a\s+)(?:yr|year|annum)\b|\bannual(?:ly)?\b|\byearly\b|\bp\.?a\.?(?:\s|$)|\bttm\b",
    re.IGNORECASE,
)
MONTHLY_RE = re.compile(r"(?:/\s*|per\s+|a\s+)(?:mo|month)\b|\bmonthly\b", re.IGNORECASE)

CURRENCY_CODES = ("USD", "AUD", "CAD", "EUR", "GBP", "SGD", "HKD", "NZD", "INR")
CURRENCY_SYMBOLS = (("A$", "AUD"), ("C$", "CAD"), ("NZ$", "NZD"), ("£", "GBP"), ("€", "EUR"))

TRUE_WORDS = {"true", "yes", "y", "1", "verified", "vetted", "on"}
FALSE_WORDS = {"false", "no", "n", "0", "unverified", "off", "none"}


def parse_number(raw: Any) -> Optional[float]:
    """
    Parse a number out of API values or page text.

    Handles "$25,000", "USD $1.2M", "$1,200/mo", "2.5x" and price objects
    like {"value": 100, "currency": "USD"}. Returns None when no number is
    present.
    """
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)):
        return float(raw)
    if isinstance(raw, dict):
        for key in ("value", "amount", "usd"):
            if key in raw:
                return parse_number(raw[key])
        return None
    if not isinstance(raw, str):
        return None

    match = NUMBER_RE.search(raw)
    if not match:
        return None
    try:
        value = float(match.group("num").replace(",", ""))
    except ValueError:
        return None
    suffix = match.group("word") or match.group("suffix")
    if suffix:
        value *= SUFFIX_MULTIPLIERS[suffix.lower()]
    if match.group("neg") or match.group("neg2"):
        value = -value
    return value


def parse_bool(raw: Any) -> Optional[bool]:
    """Interpret flags from API booleans, 0/1 or badge text."""
    if isinstance(raw, bool):
        return raw
    if isinstance(raw, (int, float)):
        return raw != 0
    if isinstance(raw, str):
        word = raw.strip().lower()
        if word in TRUE_WORDS:
            return True
        if word in FALSE_WORDS:
            return False
    return None


def parse_string(raw: Any) -> Optional[str]:
    """Scalars become stripped single-line strings; containers are rejected."""
    if raw is None or isinstance(raw, (dict, list, bool)):
        if isinstance(raw, dict):
            name = raw.get("name") or raw.get("label")
            return parse_string(name) if name is not None else None
        return None
    text = " ".join(str(raw).split())
    return text or None


def coerce(raw: Any, value_type: ValueType) -> FieldValue:
    """Coerce a raw candidate to the field's type. None when it cannot be."""
    if value_type.is_numeric:
        return parse_number(raw)
    if value_type == ValueType.BOOLEAN:
        return parse_bool(raw)
    return parse_string(raw)


def detect_period(text: Optional[str]) -> Optional[str]:
    """'year' or 'month' when the raw text carries a period marker."""
    if not text:
        return None
    if YEARLY_RE.search(text):
        return "year"
    if MONTHLY_RE.search(text):
        return "month"
    return None


def detect_currency(text: Optional[str]) -> Optional[str]:
    """ISO code for an explicit non-dollar marker, 'USD' for explicit USD, else None."""
    if not text:
        return None
    upper = text.upper()
    for code in CURRENCY_CODES:
        if re.search(rf"\b{code}\b", upper):
            return code
    for symbol, code in CURRENCY_SYMBOLS:
        if symbol in text:
            return code
    return None


def raw_text_of(raw: Any) -> Optional[str]:
    """Text form of a raw candidate for audit."""
    if raw is None:
        return None
    if isinstance(raw, str):
        return raw.strip()
    if isinstance(raw, dict):
        parts = [str(v) for v in raw.values() if isinstance(v, (str, int, float))]
        return " ".join(parts) or None
    return str(raw)
