"""Headless browser rendering for JavaScript-driven event pages."""
import logging
import re
from typing import Optional

from bs4 import BeautifulSoup
from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import sync_playwright

from processor.models import CmsFamily
from scraper.exceptions import RenderError

logger = logging.getLogger(__name__)

RENDER_TIMEOUT_MS = 30000
BROWSER_ARGS = ['--no-sandbox', '--disable-setuid-sandbox']

JS_FAMILIES = {CmsFamily.NEXTJS, CmsFamily.VUE, CmsFamily.ANGULAR}
MIN_VISIBLE_TEXT = 200
NOSCRIPT_HINT = re.compile(r'javascript', re.IGNORECASE)


class PlaywrightRenderer:
    """Renders a URL in headless chromium and returns the final DOM as HTML."""

    def __init__(self, user_agent: Optional[str] = None):
        self.user_agent = user_agent

    def render(self, url: str, timeout_ms: int = RENDER_TIMEOUT_MS) -> str:
        """
        Load a page and wait for the network to go idle.

        Args:
            url: Page to render
            timeout_ms: Navigation timeout in milliseconds

        Returns:
            Rendered HTML

        Raises:
            RenderError: If the browser cannot start or the page fails to load
        """
        logger.info(f"Rendering {url} with headless browser")
        try:
            with sync_playwright() as playwright:
                browser = playwright.chromium.launch(headless=True, args=BROWSER_ARGS)
                try:
                    page = browser.new_page(user_agent=self.user_agent) if self.user_agent else browser.new_page()
                    page.goto(url, wait_until='networkidle', timeout=timeout_ms)
                    return page.content()
                finally:
                    browser.close()
        except PlaywrightError as e:
            raise RenderError(f"Headless rendering failed for {url}: {e}") from e


class DisabledRenderer:
    """Renderer used when headless rendering is switched off."""

    def render(self, url: str, timeout_ms: int = RENDER_TIMEOUT_MS) -> str:
        raise RenderError(f"Headless rendering disabled, cannot render {url}")


def needs_javascript(html: Optional[str], cms: CmsFamily = CmsFamily.UNKNOWN) -> bool:
    """
    Heuristic for pages whose content is built client-side.

    True for SPA framework families, for pages with almost no visible text
    but script tags, and for noscript blocks asking to enable JavaScript.
    """
    if cms in JS_FAMILIES:
        return True
    if not html:
        return False

    soup = BeautifulSoup(html, 'html.parser')
    for noscript in soup.find_all('noscript'):
        if NOSCRIPT_HINT.search(noscript.get_text(' ', strip=True)):
            return True

    # JSON-LD blocks are data, not client-side rendering
    has_scripts = any(
        'ld+json' not in (script.get('type') or '').lower()
        for script in soup.find_all('script')
    )
    for tag in soup(['script', 'style', 'noscript', 'template']):
        tag.decompose()
    body = soup.body or soup
    visible = body.get_text(' ', strip=True)
    return has_scripts and len(visible) < MIN_VISIBLE_TEXT
