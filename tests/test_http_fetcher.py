"""Unit tests for HttpFetcher and RequestThrottle."""
import pytest
import responses
from requests.exceptions import ConnectionError, RequestException, Timeout

from scraper.exceptions import FetchError
from scraper.http_fetcher import FetchResponse, HttpFetcher, RequestThrottle

PAGE_URL = 'https://www.musterdorf.ch/veranstaltungen'


class TestHttpFetcher:
    """Test cases for HttpFetcher class."""

    @responses.activate
    def test_fetch_html_success(self):
        """Test a successful page fetch."""
        responses.add(responses.GET, PAGE_URL, body='<html>ok</html>', status=200)

        html = HttpFetcher(base_delay=0).fetch_html(PAGE_URL)

        assert html == '<html>ok</html>'
        assert 'SwissEventsBot' in responses.calls[0].request.headers['User-Agent']

    @responses.activate
    def test_fetch_html_retries_server_errors(self):
        """Test retry logic succeeds after initial failures."""
        responses.add(responses.GET, PAGE_URL, body='Server Error', status=500)
        responses.add(responses.GET, PAGE_URL, body='Server Error', status=502)
        responses.add(responses.GET, PAGE_URL, body='<html>ok</html>', status=200)

        html = HttpFetcher(base_delay=0).fetch_html(PAGE_URL)

        assert html == '<html>ok</html>'
        assert len(responses.calls) == 3

    @responses.activate
    def test_fetch_html_all_retries_fail(self):
        """Test the last error is raised when all retries fail."""
        for _ in range(3):
            responses.add(responses.GET, PAGE_URL, body='Server Error', status=500)

        with pytest.raises(FetchError) as excinfo:
            HttpFetcher(base_delay=0).fetch_html(PAGE_URL)

        assert excinfo.value.status == 500
        assert len(responses.calls) == 3

    @responses.activate
    def test_fetch_html_client_error_not_retried(self):
        """Test 4xx responses fail immediately."""
        responses.add(responses.GET, PAGE_URL, status=404)

        with pytest.raises(FetchError) as excinfo:
            HttpFetcher(base_delay=0).fetch_html(PAGE_URL)

        assert excinfo.value.status == 404
        assert excinfo.value.url == PAGE_URL
        assert len(responses.calls) == 1

    @responses.activate
    def test_fetch_html_timeout(self):
        """Test timeouts are retried then raised."""
        for _ in range(3):
            responses.add(responses.GET, PAGE_URL, body=Timeout('timed out'))

        with pytest.raises(RequestException):
            HttpFetcher(base_delay=0).fetch_html(PAGE_URL)

        assert len(responses.calls) == 3

    @responses.activate
    def test_get_returns_error_statuses(self):
        """Test get hands back non-2xx responses."""
        responses.add(responses.GET, PAGE_URL, body='gone', status=410)

        response = HttpFetcher().get(PAGE_URL)

        assert response.status == 410
        assert not response.ok
        assert response.text() == 'gone'

    @responses.activate
    def test_get_raises_network_errors(self):
        """Test get propagates network errors."""
        responses.add(responses.GET, PAGE_URL, body=ConnectionError('refused'))

        with pytest.raises(RequestException):
            HttpFetcher().get(PAGE_URL)

    @responses.activate
    def test_head_probe(self):
        """Test HEAD existence probes."""
        responses.add(responses.HEAD, 'https://www.musterdorf.ch', status=200)

        response = HttpFetcher().head('https://www.musterdorf.ch')

        assert response.ok
        assert response.body == ''

    @responses.activate
    def test_throttle_is_applied(self):
        """Test every request passes the throttle."""
        responses.add(responses.GET, PAGE_URL, body='ok', status=200)
        calls = []

        class RecordingThrottle:
            def wait(self):
                calls.append(1)

        fetcher = HttpFetcher(throttle=RecordingThrottle())
        fetcher.get(PAGE_URL)
        fetcher.get(PAGE_URL)

        assert len(calls) == 2


class TestFetchResponse:
    """Test cases for FetchResponse."""

    def test_json(self):
        """Test JSON decoding."""
        assert FetchResponse(status=200, url=PAGE_URL, body='{"events": []}').json() == {'events': []}

    def test_json_malformed(self):
        """Test malformed JSON raises ValueError."""
        with pytest.raises(ValueError):
            FetchResponse(status=200, url=PAGE_URL, body='<html>').json()


class TestRequestThrottle:
    """Test cases for RequestThrottle."""

    def test_enforces_minimum_interval(self):
        """Test the throttle sleeps for the remaining interval."""
        now = [100.0]
        sleeps = []

        def sleep(seconds):
            sleeps.append(seconds)
            now[0] += seconds

        throttle = RequestThrottle(1.5, clock=lambda: now[0], sleep=sleep)
        throttle.wait()
        now[0] += 0.5
        throttle.wait()

        assert sleeps == [pytest.approx(1.0)]

    def test_no_sleep_after_interval_elapsed(self):
        """Test no sleep when enough time has passed."""
        now = [100.0]
        sleeps = []

        throttle = RequestThrottle(1.5, clock=lambda: now[0], sleep=sleeps.append)
        throttle.wait()
        now[0] += 2.0
        throttle.wait()

        assert sleeps == []
