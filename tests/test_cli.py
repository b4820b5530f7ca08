import json
import time

import pytest
import yaml
from unittest.mock import patch

from metal_prices.cli import main

from conftest import FakeFetcher


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "metals.yaml"
    data = {
        "commodities": [
            {
                "id": "ZN",
                "name_synonyms": ["zinc"],
                "canonical_unit": "USD/t",
                "plausible_range": [1500, 6000],
                "sources": [{"id": "api", "kind": "json", "endpoint_candidates": ["https://api/zinc"]}],
            },
            {"id": "NI", "name_synonyms": ["nickel"], "canonical_unit": "USD/t", "plausible_range": [10000, 60000]},
        ]
    }
    with open(path, "w") as f:
        yaml.dump(data, f)
    return path


@pytest.fixture(autouse=True)
def no_overrides(monkeypatch):
    for name in ("PRICE_OVERRIDE_ZN", "PRICE_OVERRIDE_NI"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def fake_http():
    fetcher = FakeFetcher({"https://api/zinc": {"zinc": 2900}})
    with patch("metal_prices.cli.HttpFetcher", return_value=fetcher), \
            patch("metal_prices.cli.get_renderer", return_value=None):
        yield fetcher


def test_resolve_writes_snapshot(config_file, tmp_path, fake_http, capsys):
    store = tmp_path / "lme.json"
    main(["--config", str(config_file), "resolve", "--store", str(store)])

    out = capsys.readouterr().out
    assert "ZN" in out and "api" in out
    assert "WARNING: 1 commodity unresolved" in out

    data = json.loads(store.read_text())
    assert data["prices"]["ZN"]["value"] == 2900
    assert data["meta"]["sources_used"] == {"ZN": "api", "NI": "none"}


def test_resolve_dry_run(config_file, tmp_path, fake_http, capsys):
    store = tmp_path / "lme.json"
    main(["--config", str(config_file), "resolve", "--store", str(store), "--only", "zn", "--dry-run"])
    assert "[DRY RUN]" in capsys.readouterr().out
    assert not store.exists()


def test_resolve_unknown_commodity(config_file, tmp_path, fake_http, capsys):
    with pytest.raises(SystemExit):
        main(["--config", str(config_file), "resolve", "--store", str(tmp_path / "x.json"), "--only", "AU"])
    assert "Unknown commodity" in capsys.readouterr().out


def test_probe(config_file, fake_http, capsys):
    main(["--config", str(config_file), "probe", "ZN"])
    out = capsys.readouterr().out
    assert "[api] (json)" in out
    assert "[OK]" in out


def test_lint_bundled_config(capsys):
    main(["lint"])
    assert "All checks passed." in capsys.readouterr().out


def test_lint_flags_implausible_override(config_file, tmp_path, capsys):
    env_file = tmp_path / ".env"
    env_file.write_text("PRICE_OVERRIDE_ZN=85000\n")
    with pytest.raises(SystemExit):
        main(["--config", str(config_file), "lint", "--env-file", str(env_file)])
    assert "ERROR: ZN: override 85000.0" in capsys.readouterr().out


def test_convert(capsys):
    main(["convert", "4.49", "USD/lb", "--unit", "USD/t"])
    assert "9,898.7556 USD/t" in capsys.readouterr().out


def test_convert_magnitude_heuristic(capsys):
    main(["convert", "9.605,50"])
    assert "9.6055 USD/kg" in capsys.readouterr().out


def test_convert_rejects_bad_input(capsys):
    with pytest.raises(SystemExit):
        main(["convert", "n/a", "USD/lb"])
    with pytest.raises(SystemExit):
        main(["convert", "4.49", "USD/lb", "--unit", "EUR/kg"])


def test_resolve_deadline_closes_fetcher_after_abandoned_requests(config_file, tmp_path, capsys):
    events = []

    def slow():
        time.sleep(0.5)
        events.append("fetched")
        return {"zinc": 2900}

    fetcher = FakeFetcher({"https://api/zinc": slow})
    fetcher.close = lambda: events.append("closed")
    with patch("metal_prices.cli.HttpFetcher", return_value=fetcher), \
            patch("metal_prices.cli.get_renderer", return_value=None):
        main(["--config", str(config_file), "resolve", "--store", str(tmp_path / "lme.json"),
              "--deadline", "0.1", "--dry-run"])

    assert events == ["fetched", "closed"]
    assert "WARNING: 2 commodities unresolved" in capsys.readouterr().out
