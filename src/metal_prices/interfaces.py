"""
Interface definitions for the price resolver's external collaborators.

The transport, the page renderer and the last-known-good store are all
supplied from outside the engine; these Protocols describe what it needs.
"""

from typing import Protocol

from pydantic import BaseModel

from .models import ResolvedPrice


class FetchResponse(BaseModel):
    url: str
    status: int
    body: bytes
    headers: dict[str, str] = {}

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")


class Fetcher(Protocol):
    """HTTP transport. Raises TransportFailure on errors, timeouts and non-2xx statuses."""

    def fetch(
        self, url: str, headers: dict[str, str] | None = None, timeout: float | None = None
    ) -> FetchResponse: ...


class Renderer(Protocol):
    """Renders a page in a real browser engine and returns its HTML."""

    def render(self, url: str, timeout: float | None = None) -> str: ...


class PriceStore(Protocol):
    """Last-known-good value per commodity"""

    def load_previous(self, commodity_id: str) -> float | None: ...

    def save(self, commodity_id: str, price: ResolvedPrice) -> None: ...

    def commit(self) -> None: ...
