"""Unit tests for headless rendering."""
from unittest.mock import MagicMock, patch

import pytest
from playwright.sync_api import Error as PlaywrightError

from processor.models import CmsFamily
from scraper.exceptions import RenderError
from scraper.headless import DisabledRenderer, PlaywrightRenderer, needs_javascript

PAGE_URL = 'https://www.musterdorf.ch/agenda'


def mock_playwright():
    """Build a sync_playwright replacement and its browser/page mocks."""
    factory = MagicMock()
    manager = factory.return_value
    manager.__exit__.return_value = False
    playwright = manager.__enter__.return_value
    browser = playwright.chromium.launch.return_value
    page = browser.new_page.return_value
    return factory, browser, page


class TestPlaywrightRenderer:
    """Test cases for PlaywrightRenderer class."""

    def test_render_success(self):
        """Test rendered HTML is returned and the browser closed."""
        factory, browser, page = mock_playwright()
        page.content.return_value = '<html><body>gerendert</body></html>'

        with patch('scraper.headless.sync_playwright', factory):
            html = PlaywrightRenderer().render(PAGE_URL, timeout_ms=1000)

        assert html == '<html><body>gerendert</body></html>'
        page.goto.assert_called_once_with(PAGE_URL, wait_until='networkidle', timeout=1000)
        browser.close.assert_called_once()

    def test_render_launch_args(self):
        """Test chromium is launched headless without sandbox."""
        factory, browser, page = mock_playwright()
        page.content.return_value = '<html></html>'

        with patch('scraper.headless.sync_playwright', factory):
            PlaywrightRenderer().render(PAGE_URL)

        launch = factory.return_value.__enter__.return_value.chromium.launch
        kwargs = launch.call_args.kwargs
        assert kwargs['headless'] is True
        assert '--no-sandbox' in kwargs['args']

    def test_render_failure_closes_browser(self):
        """Test navigation errors become RenderError and the browser is closed."""
        factory, browser, page = mock_playwright()
        page.goto.side_effect = PlaywrightError('net::ERR_NAME_NOT_RESOLVED')

        with patch('scraper.headless.sync_playwright', factory):
            with pytest.raises(RenderError):
                PlaywrightRenderer().render(PAGE_URL)

        browser.close.assert_called_once()

    def test_disabled_renderer(self):
        """Test the disabled renderer always fails."""
        with pytest.raises(RenderError):
            DisabledRenderer().render(PAGE_URL)


class TestNeedsJavascript:
    """Test cases for the JavaScript heuristic."""

    def test_spa_family(self):
        """Test SPA framework families always need rendering."""
        assert needs_javascript('<html><body>' + 'Text ' * 100 + '</body></html>', CmsFamily.NEXTJS)

    def test_empty_shell_with_scripts(self):
        """Test script-only shells need rendering."""
        html = '<html><body><div id="app"></div><script src="/app.js"></script></body></html>'

        assert needs_javascript(html)

    def test_noscript_hint(self):
        """Test noscript blocks asking for JavaScript."""
        html = (
            '<html><body><noscript>Bitte aktivieren Sie JavaScript.</noscript>'
            + '<p>' + 'Inhalt ' * 100 + '</p></body></html>'
        )

        assert needs_javascript(html)

    def test_static_page(self):
        """Test content-rich pages do not need rendering."""
        html = (
            '<html><body><script>var x = 1;</script>'
            + '<p>' + 'Veranstaltung im Dorf ' * 20 + '</p></body></html>'
        )

        assert not needs_javascript(html)
        assert not needs_javascript('<html><body><p>kurz</p></body></html>')
        assert not needs_javascript(
            '<html><head><script type="application/ld+json">{"@type": "Event"}</script></head>'
            '<body><p>kurz</p></body></html>'
        )
        assert not needs_javascript(None)
