import json

import pytest

from metal_prices.errors import TransportFailure
from metal_prices.interfaces import FetchResponse
from metal_prices.models import CanonicalUnit, Commodity


class FakeFetcher:
    """Serves canned bodies by URL; Exceptions in the routes are raised instead."""

    def __init__(self, routes=None):
        self.routes = routes or {}
        self.calls = []

    def fetch(self, url, headers=None, timeout=None):
        self.calls.append((url, headers))
        body = self.routes.get(url)
        if body is None:
            raise TransportFailure(f"HTTP 404 from {url}", status=404)
        if isinstance(body, Exception):
            raise body
        if callable(body):
            body = body()
        if isinstance(body, (dict, list)):
            body = json.dumps(body)
        if isinstance(body, str):
            body = body.encode("utf-8")
        return FetchResponse(url=url, status=200, body=body)

    def close(self):
        pass


@pytest.fixture
def fetcher():
    return FakeFetcher()


@pytest.fixture
def tin():
    return Commodity(
        id="SN",
        name_synonyms=["tin", "sn"],
        canonical_unit=CanonicalUnit.USD_PER_TONNE,
        plausible_range=(10000, 60000),
    )


@pytest.fixture
def copper_kg():
    return Commodity(
        id="CU",
        name_synonyms=["copper", "cu"],
        canonical_unit=CanonicalUnit.USD_PER_KG,
        plausible_range=(3, 15),
    )
