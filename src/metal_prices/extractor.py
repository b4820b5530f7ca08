import logging
import math
import re
from collections.abc import Iterable, Iterator
from typing import Any

from .models import Commodity, RawQuote

logger = logging.getLogger(__name__)

DEFAULT_CONTAINERS = [
    "",
    "prices",
    "metals",
    "data",
    "latest",
    "rates",
    "quoteResponse.result",
    "chart.result",
]

# Ordered (field, unit) pairs; None means "the node's own unit, else the fallback unit"
DEFAULT_VALUE_FIELDS: list[tuple[str, str | None]] = [
    ("price_per_kg", "/kg"),
    ("usd_per_kg", "USD/kg"),
    ("price_per_tonne", "/t"),
    ("usd_per_tonne", "USD/t"),
    ("price_per_lb", "/lb"),
    ("price_per_oz", "/oz"),
    ("price", None),
    ("value", None),
    ("usd", None),
    ("regularMarketPrice", None),
    ("postMarketPrice", None),
    ("close", None),
    ("last", None),
]

# Synonym-suffixed keys, e.g. prices.copper_per_tonne
SUFFIX_UNITS = [("_per_kg", "/kg"), ("_per_tonne", "/t"), ("_per_lb", "/lb")]

IDENTIFIER_FIELDS = ["symbol", "code", "Kod", "CurrencyCode", "name", "id", "metal"]

_CURRENCY = r"(?<![A-Za-z])(?P<ccy>US\$|USD|EUR|GBP|TRY|TL|\$|€|£|₺)"
_UNIT = r"(?P<unit>kg|kilogram|tonne|ton|mt|t|lb|pound|oz|ounce|g|gram)"
_AMOUNT = r"(?P<amount>-?\d[\d.,\u00a0\u202f]*\d|\d)"

# Tried in order; first pattern yielding a parseable amount wins
TEXT_PATTERNS = [
    # 9,605.50 USD/t | 2.65 USD per kg
    re.compile(rf"{_AMOUNT}\s*{_CURRENCY}\s*(?:/|per)\s*{_UNIT}\b", re.IGNORECASE),
    # $4.49/lb | €2,10 / kg
    re.compile(rf"{_CURRENCY}\s*{_AMOUNT}\s*(?:/|per)\s*{_UNIT}\b", re.IGNORECASE),
    # USD/t 9605.5 | Price (USD/kg): 2.65
    re.compile(rf"{_CURRENCY}\s*(?:/|per)\s*{_UNIT}\)?\s*[:=]?\s*{_AMOUNT}", re.IGNORECASE),
    # 9605.50 USD
    re.compile(rf"{_AMOUNT}\s*{_CURRENCY}(?![A-Za-z])", re.IGNORECASE),
    # USD 9605.50 | $9,605.50
    re.compile(rf"{_CURRENCY}\s*{_AMOUNT}", re.IGNORECASE),
]

_TEXT_WINDOW = 300


def parse_number(raw: Any) -> float | None:
    """
    Parses a loosely formatted number.

    When both "." and "," appear, the rightmost one is the decimal point. A
    separator repeated more than once is a grouping mark. A single comma
    followed by exactly three digits is a grouping mark, otherwise a decimal
    comma. A single dot is always a decimal point.
    """
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)):
        value = float(raw)
        return value if math.isfinite(value) else None
    if not isinstance(raw, str):
        return None

    text = raw.strip().replace("−", "-")
    text = re.sub(r"[\s $€£₺]", "", text)
    text = re.sub(r"^[A-Za-z]+|[A-Za-z/]+$", "", text)
    if not text:
        return None

    has_dot = "." in text
    has_comma = "," in text
    if has_dot and has_comma:
        if text.rfind(",") > text.rfind("."):
            text = text.replace(".", "").replace(",", ".")
        else:
            text = text.replace(",", "")
    elif has_comma:
        if text.count(",") > 1:
            text = text.replace(",", "")
        elif re.fullmatch(r"-?\d{1,3},\d{3}", text):
            text = text.replace(",", "")
        else:
            text = text.replace(",", ".")
    elif has_dot and text.count(".") > 1:
        text = text.replace(".", "")

    try:
        value = float(text)
    except ValueError:
        return None
    return value if math.isfinite(value) else None


def _case_variants(name: str) -> list[str]:
    variants = []
    for v in (name, name.lower(), name.upper(), name.capitalize()):
        if v not in variants:
            variants.append(v)
    return variants


def _descend(payload: Any, path: str) -> Any:
    node = payload
    if not path:
        return node
    for part in path.split("."):
        if isinstance(node, dict):
            node = node.get(part)
        elif isinstance(node, list) and part.isdigit() and int(part) < len(node):
            node = node[int(part)]
        else:
            return None
        if node is None:
            return None
    return node


class ShapeExtractor:
    """
    Locates a price inside loosely typed payloads.

    Structured payloads are probed by container key x synonym x case variant;
    text payloads are scanned with ordered amount/currency/unit patterns.
    """

    def __init__(
        self,
        containers: list[str] | None = None,
        value_fields: list[tuple[str, str | None]] | None = None,
        text_patterns: list[re.Pattern] | None = None,
    ):
        self.containers = containers if containers is not None else list(DEFAULT_CONTAINERS)
        self.value_fields = value_fields if value_fields is not None else list(DEFAULT_VALUE_FIELDS)
        self.text_patterns = text_patterns if text_patterns is not None else list(TEXT_PATTERNS)

    def locate(
        self,
        payload: Any,
        commodity: Commodity,
        fallback_unit: str | None = None,
        extra_synonyms: Iterable[str] = (),
    ) -> RawQuote | None:
        synonyms = list(commodity.name_synonyms)
        for s in extra_synonyms:
            if s and s not in synonyms:
                synonyms.append(s)

        if isinstance(payload, bytes):
            payload = payload.decode("utf-8", errors="replace")
        if isinstance(payload, str):
            return self.locate_text(payload, synonyms)
        if isinstance(payload, (dict, list)):
            return self.locate_structured(payload, synonyms, fallback_unit)
        return None

    def locate_structured(
        self, payload: Any, synonyms: list[str], fallback_unit: str | None = None
    ) -> RawQuote | None:
        for node, implied_unit in self._candidate_nodes(payload, synonyms):
            quote = self._quote_from_node(node, implied_unit or fallback_unit)
            if quote is not None:
                return quote
        return None

    def _candidate_nodes(self, payload: Any, synonyms: list[str]) -> Iterator[tuple[Any, str | None]]:
        for container_key in self.containers:
            container = _descend(payload, container_key)
            if container is None:
                continue
            for synonym in synonyms:
                for variant in _case_variants(synonym):
                    if isinstance(container, dict):
                        if variant in container and container[variant] is not None:
                            yield container[variant], None
                        for suffix, unit in SUFFIX_UNITS:
                            node = container.get(variant + suffix)
                            if node is not None:
                                yield node, unit
                    elif isinstance(container, list):
                        for element in container:
                            if isinstance(element, dict) and self._matches(element, variant):
                                yield element, None

    @staticmethod
    def _matches(element: dict, synonym: str) -> bool:
        for field in IDENTIFIER_FIELDS:
            ident = element.get(field)
            if isinstance(ident, str) and ident.strip().lower() == synonym.lower():
                return True
        return False

    def _quote_from_node(self, node: Any, fallback_unit: str | None) -> RawQuote | None:
        if isinstance(node, dict):
            node_unit = node.get("unit") if isinstance(node.get("unit"), str) else None
            for field, unit in self.value_fields:
                if field not in node:
                    continue
                value = parse_number(node[field])
                if value is not None:
                    return RawQuote(value=value, unit_hint=unit or node_unit or fallback_unit)
            return None
        if isinstance(node, list):
            return None
        value = parse_number(node)
        if value is None:
            return None
        return RawQuote(value=value, unit_hint=fallback_unit)

    def locate_text(self, text: str, synonyms: list[str]) -> RawQuote | None:
        """
        Scans the text following each whole-word synonym mention. The whole
        text is only scanned when no synonym is mentioned at all (single
        instrument pages).
        """
        windows = []
        for synonym in synonyms:
            if not synonym:
                continue
            pattern = rf"(?<![A-Za-z0-9]){re.escape(synonym)}(?![A-Za-z0-9])"
            for m in re.finditer(pattern, text, re.IGNORECASE):
                windows.append(text[m.end(): m.end() + _TEXT_WINDOW])
        if not windows:
            windows.append(text)

        for window in windows:
            quote = self._match_patterns(window)
            if quote is not None:
                return quote
        return None

    def _match_patterns(self, text: str) -> RawQuote | None:
        for pattern in self.text_patterns:
            for m in pattern.finditer(text):
                value = parse_number(m.group("amount"))
                if value is None:
                    continue
                currency = m.group("ccy")
                unit = m.groupdict().get("unit")
                hint = f"{currency}/{unit}" if unit else currency
                return RawQuote(value=value, unit_hint=hint)
        return None
