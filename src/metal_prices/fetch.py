import logging

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .errors import TransportFailure
from .interfaces import FetchResponse

logger = logging.getLogger(__name__)

BROWSER_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/125.0.0.0 Safari/537.36"
)
DEFAULT_TIMEOUT = 20.0


class HttpFetcher:
    """Fetcher backed by a pooled requests.Session."""

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT,
        retries: int = 0,
        user_agent: str | None = None,
        session: requests.Session | None = None,
    ):
        self.timeout = timeout
        self.session = session or self._create_session(retries, user_agent)

    @staticmethod
    def _create_session(retries: int, user_agent: str | None) -> requests.Session:
        session = requests.Session()
        if retries:
            retry_strategy = Retry(
                total=retries,
                backoff_factor=1.2,
                status_forcelist=[429, 500, 502, 503, 504],
                allowed_methods=["GET"],
                raise_on_status=False,
            )
            adapter = HTTPAdapter(max_retries=retry_strategy)
            session.mount("http://", adapter)
            session.mount("https://", adapter)
        session.headers.update({
            "User-Agent": user_agent or "metal-prices/0.1",
            "Accept": "application/json, text/csv, text/html;q=0.9, */*;q=0.8",
            "Cache-Control": "no-store",
        })
        return session

    def fetch(
        self, url: str, headers: dict[str, str] | None = None, timeout: float | None = None
    ) -> FetchResponse:
        try:
            response = self.session.get(url, headers=headers, timeout=timeout or self.timeout)
        except requests.Timeout as e:
            raise TransportFailure(f"Timeout fetching {url}: {e}") from e
        except requests.RequestException as e:
            raise TransportFailure(f"Error fetching {url}: {e}") from e

        if not 200 <= response.status_code < 300:
            raise TransportFailure(f"HTTP {response.status_code} from {url}", status=response.status_code)

        logger.debug(f"GET {url} -> {response.status_code} ({len(response.content)} bytes)")
        return FetchResponse(
            url=url,
            status=response.status_code,
            body=response.content,
            headers=dict(response.headers),
        )

    def close(self):
        self.session.close()
