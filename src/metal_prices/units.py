"""
Unit normalization for raw quotes.

Unit hints are free-form strings such as "USD/lb", "usd_per_tonne",
"c/lb" or "EUR per kg". They are matched by keyword, case-insensitively.
Currency conversion is a separate step (`convert_currency`) because it needs
FX rates that may not be available.
"""

import math
import re

from .models import CanonicalUnit, FxRates, UnitAssumption

LB_PER_KG = 2.20462262185
LB_PER_TONNE = 2204.62262185
GRAMS_PER_TROY_OUNCE = 31.1034768

# Mass of one quoting unit, in kilograms
MASS_KG = {
    "kg": 1.0,
    "t": 1000.0,
    "lb": 1.0 / LB_PER_KG,
    "oz": GRAMS_PER_TROY_OUNCE / 1000.0,
    "g": 0.001,
}

_MASS_PATTERN = re.compile(
    r"/\s*(kilograms?|kilos?|kgs?|tonnes?|tons?|mt|t|lbs?|pounds?|troy\s*oz|ozt|oz|ounces?|grams?|gr|g)\b"
)
_MASS_ALIASES = {
    "kilogram": "kg", "kilograms": "kg", "kilo": "kg", "kilos": "kg", "kg": "kg", "kgs": "kg",
    "tonne": "t", "tonnes": "t", "ton": "t", "tons": "t", "mt": "t", "t": "t",
    "lb": "lb", "lbs": "lb", "pound": "lb", "pounds": "lb",
    "ozt": "oz", "oz": "oz", "ounce": "oz", "ounces": "oz",
    "gram": "g", "grams": "g", "gr": "g", "g": "g",
}
_CENTS_PATTERN = re.compile(r"(cents?\b|¢|\busc\b|^c/)")
_CURRENCY_PATTERN = re.compile(r"(us\$|usd|eur|gbp|try|€|£|₺|\$|\btl\b)")
_CURRENCY_ALIASES = {
    "us$": "USD", "usd": "USD", "$": "USD",
    "eur": "EUR", "€": "EUR",
    "gbp": "GBP", "£": "GBP",
    "try": "TRY", "tl": "TRY", "₺": "TRY",
}


def _normalize_hint(unit_hint: str) -> str:
    hint = unit_hint.strip().lower()
    hint = re.sub(r"[_\s]+per[_\s]+", "/", hint)
    hint = re.sub(r"^per[_\s]+", "/", hint)
    return hint


def hint_mass(unit_hint: str | None) -> str | None:
    """Returns the mass basis ("kg", "t", "lb", "oz", "g") named by a hint, if any."""
    if not unit_hint:
        return None
    hint = _normalize_hint(unit_hint)
    if hint.startswith(("troy", "oz")):
        return "oz"
    m = _MASS_PATTERN.search(hint if hint.startswith("/") or "/" in hint else "/" + hint)
    if not m:
        return None
    token = re.sub(r"\s+", "", m.group(1))
    if token.startswith("troy"):
        return "oz"
    return _MASS_ALIASES.get(token)


def hint_currency(unit_hint: str | None) -> str | None:
    """Returns the ISO currency code named by a hint, if any."""
    if not unit_hint:
        return None
    m = _CURRENCY_PATTERN.search(_normalize_hint(unit_hint))
    return _CURRENCY_ALIASES.get(m.group(1)) if m else None


def is_cents(unit_hint: str | None) -> bool:
    if not unit_hint:
        return False
    return bool(_CENTS_PATTERN.search(_normalize_hint(unit_hint)))


def _canonical_mass(canonical_unit: CanonicalUnit) -> str:
    return hint_mass(canonical_unit.mass_hint)


def to_canonical(
    value: float,
    unit_hint: str | None,
    canonical_unit: CanonicalUnit = CanonicalUnit.USD_PER_KG,
    assumption: UnitAssumption | None = None,
) -> float | None:
    """
    Converts a raw value quoted per some mass into the canonical mass basis.

    Without a recognizable mass in the hint, a magnitude heuristic decides:
    values above `assumption.threshold` are taken as quoted in
    `assumption.large_value_unit`, others in `assumption.assumed_unit_if_unknown`
    (default: the canonical unit). Per-pound values above
    `assumption.cents_above` are read as cents. The heuristics are guesses,
    not conversion guarantees. Returns None only when `value` is not a finite number.
    """
    try:
        value = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(value):
        return None

    assumption = assumption or UnitAssumption()
    target = _canonical_mass(canonical_unit)
    source = hint_mass(unit_hint)

    if is_cents(unit_hint):
        value = value / 100.0
    elif source == "lb" and assumption.cents_above is not None and value > assumption.cents_above:
        # Some feeds label cents per pound as USD/lb
        value = value / 100.0

    if source is None:
        if assumption.threshold is not None and value > assumption.threshold:
            source = hint_mass(assumption.large_value_unit) or target
        else:
            source = hint_mass(assumption.assumed_unit_if_unknown) or target

    if source == target:
        return value
    if source == "lb" and target == "kg":
        return value * LB_PER_KG
    if source == "lb" and target == "t":
        return value * LB_PER_TONNE
    if source == "t" and target == "kg":
        return value / 1000.0
    return value * MASS_KG[target] / MASS_KG[source]


def from_canonical(
    value: float | None,
    unit_hint: str,
    canonical_unit: CanonicalUnit = CanonicalUnit.USD_PER_KG,
) -> float | None:
    """Expresses a canonical value per another mass (e.g. USD/kg -> USD/lb)."""
    if value is None or not math.isfinite(value):
        return None
    target = hint_mass(unit_hint)
    if target is None:
        return None
    source = _canonical_mass(canonical_unit)
    return value * MASS_KG[target] / MASS_KG[source]


def convert_currency(
    value: float,
    source_currency: str,
    target_currency: str,
    fx: FxRates | None,
) -> float | None:
    """
    value_in_target = value_in_source * (rate_source_to_base / rate_target_to_base)

    Returns None when either rate is unavailable.
    """
    if source_currency.upper() == target_currency.upper():
        return value
    if fx is None:
        return None
    source_rate = fx.rate(source_currency)
    target_rate = fx.rate(target_currency)
    if source_rate is None or target_rate is None:
        return None
    return value * (source_rate / target_rate)
