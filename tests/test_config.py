import pytest
import yaml

from metal_prices.config import (
    load_config,
    load_overrides,
    parse_override,
    select_commodities,
)
from metal_prices.errors import ConfigurationError
from metal_prices.models import AdapterKind, CanonicalUnit


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "metals.yaml"
    data = {
        "settings": {"timeout": 5, "max_workers": 2},
        "commodities": [
            {
                "id": "CU",
                "name_synonyms": ["copper"],
                "canonical_unit": "USD/t",
                "plausible_range": [3000, 15000],
                "sources": [
                    {"id": "yahoo", "kind": "json", "endpoint_candidates": ["https://y/{symbol}"], "symbols": ["HG=F"]},
                ],
            },
            {"id": "ZN", "name_synonyms": ["zinc"], "canonical_unit": "USD/t", "plausible_range": [1500, 6000]},
        ],
    }
    with open(path, "w") as f:
        yaml.dump(data, f)
    return path


def test_bundled_config_loads():
    config = load_config()
    ids = [c.id for c in config.commodities]
    assert ids[:6] == ["CU", "AL", "ZN", "PB", "NI", "SN"]
    assert "XAUUSD" in ids
    assert config.fx is not None

    by_id = {c.id: c for c in config.commodities}
    assert by_id["ZN"].plausible_range == (1500, 6000)
    assert by_id["XAUUSD"].canonical_unit == CanonicalUnit.USD_PER_OUNCE
    assert [s.kind for s in by_id["SN"].sources][-1] == AdapterKind.BROWSER
    assert by_id["CU"].assumption().cents_above == 20


def test_load_config_from_path(config_file):
    config = load_config(config_file)
    assert config.settings.timeout == 5
    assert config.settings.retries == 0
    assert config.fx is None
    assert config.commodities[0].sources[0].symbols == ["HG=F"]


def test_duplicate_yaml_key(tmp_path):
    path = tmp_path / "dup.yaml"
    path.write_text(
        "commodities:\n"
        "  - id: CU\n"
        "    id: AL\n"
        "    name_synonyms: [copper]\n"
        "    plausible_range: [3000, 15000]\n"
    )
    with pytest.raises(ConfigurationError, match="Duplicate key"):
        load_config(path)


def test_duplicate_commodity_id(tmp_path):
    path = tmp_path / "dup.yaml"
    entry = {"id": "CU", "name_synonyms": ["copper"], "plausible_range": [3000, 15000]}
    with open(path, "w") as f:
        yaml.dump({"commodities": [entry, entry]}, f)
    with pytest.raises(ConfigurationError, match="Duplicate commodity id CU"):
        load_config(path)


@pytest.mark.parametrize("content", [
    "",
    "commodities: [",
    "commodities:\n  - id: cu\n    name_synonyms: [copper]\n    plausible_range: [3000, 15000]\n",
    "commodities:\n  - id: CU\n    name_synonyms: [copper]\n    plausible_range: [15000, 3000]\n",
])
def test_invalid_config(tmp_path, content):
    path = tmp_path / "bad.yaml"
    path.write_text(content)
    with pytest.raises(ConfigurationError):
        load_config(path)


def test_missing_config(tmp_path):
    with pytest.raises(ConfigurationError, match="Cannot read config"):
        load_config(tmp_path / "nope.yaml")


@pytest.mark.parametrize("raw, value, hint", [
    ("9.6", 9.6, None),
    ("9605 USD/t", 9605.0, "USD/t"),
    ("4,49 USD/lb", 4.49, "USD/lb"),
    (" 9,605.50 ", 9605.5, None),
])
def test_parse_override(raw, value, hint):
    quote = parse_override(raw)
    assert quote.value == pytest.approx(value)
    assert quote.unit_hint == hint


def test_parse_override_rejects_garbage():
    assert parse_override("n/a") is None
    assert parse_override("") is None


def test_overrides_from_environ(config_file):
    commodities = load_config(config_file).commodities
    environ = {"PRICE_OVERRIDE_CU": "9605 USD/t", "PRICE_OVERRIDE_ZN": "  ", "PRICE_OVERRIDE_XX": "1"}
    overrides = load_overrides(commodities, environ=environ)
    assert list(overrides) == ["CU"]
    assert overrides["CU"].value == 9605


def test_overrides_from_env_file(config_file, tmp_path):
    commodities = load_config(config_file).commodities
    env_file = tmp_path / ".env"
    env_file.write_text("PRICE_OVERRIDE_CU=9500\nPRICE_OVERRIDE_ZN=2900 USD/t\n")

    overrides = load_overrides(commodities, env_file=env_file, environ={"PRICE_OVERRIDE_CU": "9700"})

    # process environment wins over the file
    assert overrides["CU"].value == 9700
    assert overrides["ZN"].value == 2900
    assert overrides["ZN"].unit_hint == "USD/t"


def test_overrides_ignore_unparseable(config_file):
    commodities = load_config(config_file).commodities
    assert load_overrides(commodities, environ={"PRICE_OVERRIDE_CU": "tomorrow"}) == {}


def test_select_commodities(config_file):
    config = load_config(config_file)
    assert [c.id for c in select_commodities(config, None)] == ["CU", "ZN"]
    assert [c.id for c in select_commodities(config, ["zn"])] == ["ZN"]
    with pytest.raises(ConfigurationError, match="Unknown commodity"):
        select_commodities(config, ["AU"])
