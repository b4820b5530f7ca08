import logging
import xml.etree.ElementTree as ET

from .errors import PriceSourceError, ShapeNotFound
from .extractor import parse_number
from .interfaces import Fetcher
from .models import FxRates, FxSourceSpec
from .units import GRAMS_PER_TROY_OUNCE

logger = logging.getLogger(__name__)


def parse_tcmb_xml(xml_text: str | bytes, spec: FxSourceSpec | None = None) -> FxRates:
    """
    Parses a central-bank daily rates document (TCMB today.xml layout).

    Each <Currency Kod="USD"> carries several quote fields; the first field in
    `spec.fields` with a parseable value wins. Rates are divided by <Unit>
    (e.g. JPY is quoted per 100).
    """
    spec = spec or FxSourceSpec()
    try:
        root = ET.fromstring(xml_text)
    except ET.ParseError as e:
        raise ShapeNotFound(f"Unparseable FX document: {e}") from e

    wanted = {c.upper() for c in spec.currencies}
    rates = {}
    for currency in root.iter("Currency"):
        code = (currency.get("Kod") or currency.get("CurrencyCode") or "").upper()
        if code not in wanted:
            continue
        unit = parse_number(currency.findtext("Unit")) or 1.0
        for field in spec.fields:
            value = parse_number(currency.findtext(field))
            if value is not None and value > 0:
                rates[code] = value / unit
                break

    if not rates:
        raise ShapeNotFound("No usable currencies in FX document")

    missing = wanted - rates.keys()
    if missing:
        logger.warning(f"FX document has no usable rate for: {', '.join(sorted(missing))}")

    return FxRates(
        base=spec.base,
        rates=rates,
        as_of=root.get("Tarih") or root.get("Date"),
        source=spec.url,
    )


def fetch_fx_rates(fetcher: Fetcher, spec: FxSourceSpec, timeout: float | None = None) -> FxRates | None:
    """Fetches FX rates; any failure yields None so currency conversions fail per source."""
    try:
        response = fetcher.fetch(spec.url, timeout=timeout)
        rates = parse_tcmb_xml(response.body, spec)
    except PriceSourceError as e:
        logger.warning(f"FX rates unavailable: {e}")
        return None
    except Exception as e:
        logger.error(f"Unexpected error fetching FX rates from {spec.url}: {e}")
        return None
    logger.info(f"FX rates as of {rates.as_of}: {rates.rates}")
    return rates


def gram_price(usd_per_oz: float | None, fx: FxRates | None, currency: str = "TRY") -> float | None:
    """Price of one gram of a troy-ounce quoted metal in `currency`, rounded to 2 decimals."""
    if usd_per_oz is None or fx is None:
        return None
    usd_rate = fx.rate("USD")
    target_rate = fx.rate(currency)
    if usd_rate is None or target_rate is None:
        return None
    return round(usd_per_oz / GRAMS_PER_TROY_OUNCE * usd_rate / target_rate, 2)
