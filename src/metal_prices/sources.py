import csv
import io
import json
import logging
import os
import re
from abc import ABC, abstractmethod
from collections.abc import Iterator
from urllib.parse import quote

from bs4 import BeautifulSoup

from .errors import PriceSourceError, ShapeNotFound, TransportFailure
from .extractor import ShapeExtractor, parse_number
from .fetch import BROWSER_USER_AGENT
from .interfaces import Fetcher, Renderer
from .models import AdapterKind, Commodity, RawQuote, SourceSpec
from .units import hint_mass

logger = logging.getLogger(__name__)

_PLACEHOLDER = re.compile(r"\{([A-Za-z_][A-Za-z0-9_]*)\}")

TICKER_COLUMNS = ["symbol", "ticker", "code", "key", "name"]
VALUE_COLUMN_FALLBACKS = ["close", "price", "last", "value"]


def expand_url(template: str, symbol: str | None = None) -> str:
    """Fills {symbol} and {ENV_NAME} placeholders; unset env names become empty."""

    def _sub(m: re.Match) -> str:
        name = m.group(1)
        if name == "symbol":
            return quote(symbol or "", safe="")
        return os.environ.get(name, "")

    return _PLACEHOLDER.sub(_sub, template)


class SourceAdapter(ABC):
    """
    One upstream provider for one commodity.

    `attempt` raises a PriceSourceError describing why the source produced
    nothing; `fetch` is the safe variant that returns None instead.
    """

    kind: AdapterKind

    def __init__(
        self,
        spec: SourceSpec,
        fetcher: Fetcher,
        extractor: ShapeExtractor | None = None,
        timeout: float | None = None,
    ):
        self.spec = spec
        self.fetcher = fetcher
        self.timeout = timeout
        if spec.containers is not None:
            self.extractor = ShapeExtractor(containers=spec.containers)
        else:
            self.extractor = extractor or ShapeExtractor()

    @property
    def id(self) -> str:
        return self.spec.id

    def candidates(self) -> Iterator[tuple[str, str | None]]:
        """Yields (url, symbol) pairs in configured order."""
        for template in self.spec.endpoint_candidates:
            if "{symbol}" in template and self.spec.symbols:
                for symbol in self.spec.symbols:
                    yield expand_url(template, symbol), symbol
            else:
                yield expand_url(template), None

    def headers(self) -> dict[str, str]:
        return dict(self.spec.request_headers)

    def attempt(self, commodity: Commodity) -> RawQuote:
        last_error: PriceSourceError | None = None
        for url, symbol in self.candidates():
            try:
                quote = self._attempt_candidate(url, symbol, commodity)
            except PriceSourceError as e:
                e.source_id = self.id
                logger.debug(f"{commodity.id} {self.id} candidate {symbol or url} failed: {e}")
                last_error = e
                continue
            if quote is not None:
                logger.debug(f"{commodity.id} {self.id} candidate {symbol or url} -> {quote}")
                return quote
            last_error = ShapeNotFound(f"No price for {commodity.id} in {url}", source_id=self.id)

        if last_error is None:
            last_error = ShapeNotFound(f"No endpoint candidates for {commodity.id}", source_id=self.id)
        raise last_error

    def fetch(self, commodity: Commodity) -> RawQuote | None:
        try:
            return self.attempt(commodity)
        except PriceSourceError as e:
            logger.warning(f"{commodity.id}: source {self.id} failed: {e}")
        except Exception as e:
            logger.error(f"{commodity.id}: unexpected error from source {self.id}: {e}")
        return None

    def _symbols(self, commodity: Commodity, symbol: str | None) -> list[str]:
        synonyms = [symbol] if symbol else list(self.spec.symbols)
        return [s for s in synonyms if s]

    def _get(self, url: str):
        return self.fetcher.fetch(url, headers=self.headers(), timeout=self.timeout)

    @abstractmethod
    def _attempt_candidate(self, url: str, symbol: str | None, commodity: Commodity) -> RawQuote | None:
        ...


class JsonApiAdapter(SourceAdapter):
    kind = AdapterKind.JSON

    def headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json, text/plain, */*"}
        headers.update(self.spec.request_headers)
        return headers

    def _attempt_candidate(self, url, symbol, commodity):
        response = self._get(url)
        try:
            payload = json.loads(response.body)
        except ValueError as e:
            raise ShapeNotFound(f"Unparseable JSON from {url}: {e}") from e
        return self.extractor.locate(
            payload,
            commodity,
            fallback_unit=self.spec.unit_hint,
            extra_synonyms=self._symbols(commodity, symbol),
        )


def parse_csv(text: str) -> tuple[list[str], list[list[str]]]:
    """Returns (lower-cased header, data rows). Quoted commas do not split fields."""
    reader = csv.reader(io.StringIO(text.strip()))
    rows = [row for row in reader if any(cell.strip() for cell in row)]
    if not rows:
        return [], []
    header = [h.strip().lower() for h in rows[0]]
    data = [[cell.strip() for cell in row] for row in rows[1:]]
    return header, data


class CsvAdapter(SourceAdapter):
    kind = AdapterKind.CSV

    def headers(self) -> dict[str, str]:
        headers = {"Accept": "text/csv, */*;q=0.8"}
        headers.update(self.spec.request_headers)
        return headers

    def _attempt_candidate(self, url, symbol, commodity):
        response = self._get(url)
        header, rows = parse_csv(response.text)
        if not header or not rows:
            raise ShapeNotFound(f"Empty CSV from {url}")

        value_idx = self._column(header, [self.spec.value_column.lower()] + VALUE_COLUMN_FALLBACKS)
        if value_idx is None:
            raise ShapeNotFound(f"No value column in CSV header: {'|'.join(header)}")

        ticker_names = [self.spec.ticker_column.lower()] if self.spec.ticker_column else TICKER_COLUMNS
        ticker_idx = self._column(header, ticker_names)
        row = self._select_row(rows, ticker_idx, commodity.name_synonyms + self._symbols(commodity, symbol))
        if row is None or value_idx >= len(row):
            return None

        value = parse_number(row[value_idx])
        if value is None:
            return None
        unit_idx = self._column(header, ["unit"])
        unit_hint = row[unit_idx] if unit_idx is not None and unit_idx < len(row) and row[unit_idx] else None
        return RawQuote(value=value, unit_hint=unit_hint or self.spec.unit_hint)

    @staticmethod
    def _column(header: list[str], names: list[str]) -> int | None:
        for name in names:
            if name in header:
                return header.index(name)
        return None

    @staticmethod
    def _select_row(rows: list[list[str]], ticker_idx: int | None, synonyms: list[str]) -> list[str] | None:
        wanted = {s.strip().lower() for s in synonyms if s}
        if ticker_idx is not None:
            for row in rows:
                if ticker_idx < len(row) and row[ticker_idx].strip().lower() in wanted:
                    return row
        # Single-instrument feeds (one row per request) need no ticker match
        if len(rows) == 1:
            return rows[0]
        return None


def html_to_text(html: str) -> str:
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style", "noscript"]):
        tag.decompose()
    return soup.get_text(" ", strip=True)


class HtmlAdapter(SourceAdapter):
    kind = AdapterKind.HTML

    def headers(self) -> dict[str, str]:
        # Some providers block non-browser clients
        headers = {
            "User-Agent": BROWSER_USER_AGENT,
            "Accept": "text/html,application/xhtml+xml,*/*;q=0.8",
            "Accept-Language": "en-US,en;q=0.9",
        }
        headers.update(self.spec.request_headers)
        return headers

    def _load_html(self, url: str) -> str:
        return self._get(url).text

    def _attempt_candidate(self, url, symbol, commodity):
        text = html_to_text(self._load_html(url))
        synonyms = list(commodity.name_synonyms) + self._symbols(commodity, symbol)
        quote = self.extractor.locate_text(text, synonyms)
        if quote is None:
            return None
        if hint_mass(quote.unit_hint) is None and self.spec.unit_hint:
            quote = RawQuote(value=quote.value, unit_hint=f"{quote.unit_hint} {self.spec.unit_hint}")
        return quote


class BrowserAdapter(HtmlAdapter):
    """HTML source rendered by a real browser engine. Without a renderer it never yields."""

    kind = AdapterKind.BROWSER

    def __init__(self, spec, fetcher, extractor=None, timeout=None, renderer: Renderer | None = None):
        super().__init__(spec, fetcher, extractor, timeout)
        self.renderer = renderer

    def _load_html(self, url: str) -> str:
        if self.renderer is None:
            raise TransportFailure(f"No page renderer available for {url}")
        try:
            return self.renderer.render(url, timeout=self.timeout)
        except TransportFailure:
            raise
        except Exception as e:
            raise TransportFailure(f"Rendering {url} failed: {e}") from e


ADAPTERS: dict[AdapterKind, type[SourceAdapter]] = {
    AdapterKind.JSON: JsonApiAdapter,
    AdapterKind.CSV: CsvAdapter,
    AdapterKind.HTML: HtmlAdapter,
    AdapterKind.BROWSER: BrowserAdapter,
}


def build_adapter(
    spec: SourceSpec,
    fetcher: Fetcher,
    extractor: ShapeExtractor | None = None,
    renderer: Renderer | None = None,
    timeout: float | None = None,
) -> SourceAdapter:
    if spec.kind == AdapterKind.BROWSER:
        return BrowserAdapter(spec, fetcher, extractor, timeout, renderer=renderer)
    return ADAPTERS[spec.kind](spec, fetcher, extractor, timeout)
