from metal_prices.config import load_config
from metal_prices.errors import TransportFailure
from metal_prices.resolver import FallbackResolver
from metal_prices.units import to_canonical


class OfflineFetcher:
    def fetch(self, url, headers=None, timeout=None):
        raise TransportFailure(f"offline: {url}")


def test_smoke():
    print("Smoke test starting...")
    config = load_config()
    assert config.commodities

    # Conversion
    assert round(to_canonical(1, "USD/lb"), 5) == 2.20462

    # Full chain with every source failing
    resolver = FallbackResolver(OfflineFetcher())
    results = resolver.resolve_all(config.commodities, max_workers=2)
    assert set(results) == {c.id for c in config.commodities}
    assert all(r.provenance == "none" for r in results.values())

    print("Smoke test passed.")


if __name__ == "__main__":
    test_smoke()
