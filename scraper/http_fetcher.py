"""HTTP access to municipal websites with timeouts, retries and throttling."""
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

import requests

from scraper.exceptions import FetchError

logger = logging.getLogger(__name__)

# Timeouts in seconds, by weight of the operation
PROBE_TIMEOUT = 5
SITEMAP_TIMEOUT = 8
API_PROBE_TIMEOUT = 8
CANDIDATE_TIMEOUT = 15
PAGE_TIMEOUT = 20

DEFAULT_HEADERS = {
    'User-Agent': 'Mozilla/5.0 (compatible; SwissEventsBot/1.0)',
    'Accept': 'text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8',
    'Accept-Language': 'de-CH,de;q=0.9,fr;q=0.8,it;q=0.7,en;q=0.6',
}


class RequestThrottle:
    """Enforces a minimum interval between consecutive outbound requests."""

    def __init__(
        self,
        min_interval: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep
    ):
        self.min_interval = min_interval
        self._clock = clock
        self._sleep = sleep
        self._last_call: Optional[float] = None

    def wait(self) -> None:
        if self._last_call is not None and self.min_interval > 0:
            remaining = self.min_interval - (self._clock() - self._last_call)
            if remaining > 0:
                self._sleep(remaining)
        self._last_call = self._clock()


@dataclass
class FetchResponse:
    """Minimal response view handed to the extraction layer."""
    status: int
    url: str
    body: str
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def text(self) -> str:
        return self.body

    def json(self):
        """Decoded JSON body; raises ValueError on malformed content."""
        return json.loads(self.body)


class HttpFetcher:
    """Fetcher used for every network-touching scrape operation."""

    def __init__(
        self,
        timeout: float = PAGE_TIMEOUT,
        max_retries: int = 3,
        base_delay: float = 1,
        throttle: Optional[RequestThrottle] = None,
        session: Optional[requests.Session] = None
    ):
        """
        Initialize the fetcher.

        Args:
            timeout: Default request timeout in seconds
            max_retries: Attempts made by fetch_html before giving up
            base_delay: Base for the exponential backoff between retries
            throttle: Shared politeness gate; no throttling when None
            session: Optional preconfigured requests session
        """
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.base_delay = base_delay
        self.throttle = throttle
        self.session = session or requests.Session()
        self.session.headers.update(DEFAULT_HEADERS)

    def get(
        self,
        url: str,
        timeout: Optional[float] = None,
        headers: Optional[Dict[str, str]] = None
    ) -> FetchResponse:
        """
        Perform a single GET request.

        Non-2xx responses are returned, not raised.

        Raises:
            requests.RequestException: On network errors and timeouts
        """
        return self._request('GET', url, timeout, headers)

    def head(self, url: str, timeout: Optional[float] = PROBE_TIMEOUT) -> FetchResponse:
        """Existence probe; redirects are followed."""
        return self._request('HEAD', url, timeout, None)

    def _request(self, method, url, timeout, headers) -> FetchResponse:
        if self.throttle:
            self.throttle.wait()
        response = self.session.request(
            method,
            url,
            headers=headers,
            timeout=timeout or self.timeout,
            allow_redirects=True
        )
        return FetchResponse(
            status=response.status_code,
            url=response.url or url,
            body=response.text if method != 'HEAD' else '',
            headers=dict(response.headers)
        )

    def fetch_html(self, url: str, timeout: Optional[float] = None) -> str:
        """
        Fetch a full page with retry logic.

        Server errors and network failures are retried with exponential
        backoff; client errors fail immediately.

        Raises:
            FetchError: If the page does not answer with a 2xx status
            requests.RequestException: If all retry attempts fail
        """
        for attempt in range(self.max_retries):
            try:
                logger.debug(f"Fetching {url} (attempt {attempt + 1}/{self.max_retries})")
                response = self.get(url, timeout=timeout)
                if response.ok:
                    return response.text()
                if response.status < 500:
                    raise FetchError(url, response.status)
                error: Exception = FetchError(url, response.status)
            except requests.RequestException as e:
                error = e

            if attempt < self.max_retries - 1:
                delay = self.base_delay * (2 ** attempt)
                logger.warning(
                    f"Request to {url} failed (attempt {attempt + 1}/{self.max_retries}): "
                    f"{error}. Retrying in {delay} seconds..."
                )
                if delay > 0:
                    time.sleep(delay)
            else:
                logger.error(
                    f"All {self.max_retries} attempts for {url} failed. Last error: {error}"
                )
                raise error
