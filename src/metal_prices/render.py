import importlib.util
import logging

from .fetch import BROWSER_USER_AGENT

logger = logging.getLogger(__name__)


class PlaywrightRenderer:
    """Renders pages with headless Chromium (needs the optional `browser` extra)."""

    def __init__(self, user_agent: str = BROWSER_USER_AGENT, wait_until: str = "networkidle"):
        self.user_agent = user_agent
        self.wait_until = wait_until

    @staticmethod
    def available() -> bool:
        return importlib.util.find_spec("playwright") is not None

    def render(self, url: str, timeout: float | None = None) -> str:
        from playwright.sync_api import sync_playwright

        timeout_ms = (timeout or 30.0) * 1000
        with sync_playwright() as p:
            browser = p.chromium.launch(headless=True)
            try:
                page = browser.new_page(user_agent=self.user_agent)
                page.goto(url, timeout=timeout_ms, wait_until=self.wait_until)
                html = page.content()
            finally:
                browser.close()
        logger.debug(f"Rendered {url} ({len(html)} chars)")
        return html


def get_renderer():
    """Returns a PlaywrightRenderer if playwright is installed, else None."""
    if PlaywrightRenderer.available():
        return PlaywrightRenderer()
    logger.debug("playwright not installed; browser sources will be skipped")
    return None
