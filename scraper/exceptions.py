"""Exceptions raised by the scraping layer."""


class FetchError(Exception):
    """Raised when a page cannot be fetched with a successful status."""

    def __init__(self, url: str, status: int = None, message: str = None):
        self.url = url
        self.status = status
        super().__init__(message or f"HTTP {status} for {url}")


class RenderError(Exception):
    """Raised when headless rendering fails or is unavailable."""


class ScrapeError(Exception):
    """Raised for unrecoverable per-site scrape failures."""
