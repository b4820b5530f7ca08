import math

import pytest

from metal_prices.models import CanonicalUnit, FxRates, UnitAssumption
from metal_prices.units import (
    LB_PER_KG,
    LB_PER_TONNE,
    convert_currency,
    from_canonical,
    hint_currency,
    hint_mass,
    to_canonical,
)

KG = CanonicalUnit.USD_PER_KG
TONNE = CanonicalUnit.USD_PER_TONNE
OUNCE = CanonicalUnit.USD_PER_OUNCE


def test_per_kg_identity():
    assert to_canonical(9.6, "/kg", KG) == 9.6
    assert to_canonical(9.6, "USD/kg", KG) == 9.6
    assert to_canonical(9.6, "price_per_kg", KG) == 9.6


def test_per_lb_multiplies_by_pounds():
    assert to_canonical(1, "/lb", KG) == pytest.approx(LB_PER_KG)
    assert to_canonical(1, "/lb", KG) == pytest.approx(2.20462262185)
    assert to_canonical(1, "USD/lb", TONNE) == pytest.approx(LB_PER_TONNE)
    assert to_canonical(4.5, "usd per lb", TONNE) == pytest.approx(4.5 * 2204.62262185)


def test_inverse_lb_direction():
    assert from_canonical(1, "/lb", KG) == pytest.approx(0.453592, abs=1e-6)
    assert from_canonical(2204.62262185, "/lb", TONNE) == pytest.approx(1.0)


@pytest.mark.parametrize("hint", ["/tonne", "/ton", "/mt", "/t", "USD/t", "usd_per_tonne", "per tonne"])
def test_tonne_hints_divide_for_per_kg(hint):
    assert to_canonical(9605.5, hint, KG) == pytest.approx(9.6055)


@pytest.mark.parametrize("hint", ["/tonne", "/ton", "/mt", "/t"])
def test_tonne_hints_noop_for_per_tonne(hint):
    assert to_canonical(9605.5, hint, TONNE) == 9605.5


def test_kg_to_tonne():
    assert to_canonical(9.6055, "USD/kg", TONNE) == pytest.approx(9605.5)


def test_cents_per_pound():
    assert to_canonical(449.2, "c/lb", TONNE) == pytest.approx(4.492 * LB_PER_TONNE)
    assert to_canonical(449.2, "US cents/lb", KG) == pytest.approx(4.492 * LB_PER_KG)


def test_cents_mislabeled_as_dollars_per_pound():
    assumption = UnitAssumption(cents_above=20)
    assert to_canonical(449.2, "USD/lb", TONNE, assumption) == pytest.approx(4.492 * LB_PER_TONNE)
    assert to_canonical(4.49, "USD/lb", TONNE, assumption) == pytest.approx(4.49 * LB_PER_TONNE)
    # only per-pound quotes are affected
    assert to_canonical(9605.5, "USD/t", TONNE, assumption) == 9605.5
    assert to_canonical(449.2, "USD/lb", TONNE) == pytest.approx(449.2 * LB_PER_TONNE)


def test_troy_ounce_and_grams():
    assert to_canonical(100, "USD/g", OUNCE) == pytest.approx(3110.34768)
    assert to_canonical(4000, "USD/oz", OUNCE) == 4000
    assert to_canonical(4000, "/troy oz", OUNCE) == 4000


def test_magnitude_heuristic_assumes_tonne_above_threshold():
    assumption = UnitAssumption.for_unit(KG)
    assert assumption.threshold == 200
    assert to_canonical(9605.5, None, KG, assumption) == pytest.approx(9.6055)
    assert to_canonical(9.6, None, KG, assumption) == 9.6
    assert to_canonical(200, None, KG, assumption) == 200


def test_magnitude_heuristic_threshold_is_configurable():
    assumption = UnitAssumption(threshold=100)
    assert to_canonical(150, None, KG, assumption) == pytest.approx(0.15)
    assert to_canonical(150, None, KG, UnitAssumption(threshold=None)) == 150


def test_assumed_unit_if_unknown():
    assumption = UnitAssumption(assumed_unit_if_unknown="/lb", threshold=None)
    assert to_canonical(1, None, KG, assumption) == pytest.approx(LB_PER_KG)


def test_unrecognized_hint_falls_back_to_heuristic():
    assumption = UnitAssumption.for_unit(KG)
    assert to_canonical(9605.5, "USD", KG, assumption) == pytest.approx(9.6055)


def test_per_tonne_has_no_default_heuristic():
    assert to_canonical(9605.5, None, TONNE, UnitAssumption.for_unit(TONNE)) == 9605.5


@pytest.mark.parametrize("value", [math.nan, math.inf, -math.inf, "abc", None])
def test_non_finite_returns_none(value):
    assert to_canonical(value, "/kg", KG) is None


def test_hint_parsing():
    assert hint_mass("USD/lb") == "lb"
    assert hint_mass("usd_per_tonne") == "t"
    assert hint_mass("EUR") is None
    assert hint_mass(None) is None
    assert hint_currency("EUR/kg") == "EUR"
    assert hint_currency("$/lb") == "USD"
    assert hint_currency("TL/kg") == "TRY"
    assert hint_currency("/t") is None


def test_convert_currency():
    fx = FxRates(base="TRY", rates={"USD": 40.0, "EUR": 45.0})
    assert convert_currency(100, "EUR", "USD", fx) == pytest.approx(112.5)
    assert convert_currency(400, "TRY", "USD", fx) == pytest.approx(10.0)
    assert convert_currency(100, "USD", "USD", None) == 100


def test_convert_currency_missing_rate():
    fx = FxRates(base="TRY", rates={"USD": 40.0})
    assert convert_currency(100, "GBP", "USD", fx) is None
    assert convert_currency(100, "EUR", "USD", None) is None
