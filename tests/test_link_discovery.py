"""Unit tests for CandidateLinkDiscoverer."""
import responses

from processor.models import CmsFamily
from scraper.http_fetcher import HttpFetcher
from scraper.link_discovery import (
    CandidateLinkDiscoverer,
    FALLBACK_PATHS,
    keyword_score,
    normalize_text,
)

BASE_URL = 'https://www.musterdorf.ch'

HOMEPAGE_HTML = """
<html>
    <body>
        <nav>
            <a href="/kontakt">Kontakt</a>
            <a href="/leben/veranstaltungen">Veranstaltungen</a>
            <a href="https://www.facebook.com/musterdorf">Agenda</a>
            <a href="mailto:info@musterdorf.ch">Agenda per Mail</a>
            <a href="javascript:void(0)">Events</a>
            <a href="#top">Anlässe</a>
        </nav>
    </body>
</html>
"""


def make_discoverer(max_candidates=12):
    return CandidateLinkDiscoverer(HttpFetcher(timeout=5, max_retries=1, base_delay=0), max_candidates)


class TestKeywordScoring:
    """Test cases for keyword scoring helpers."""

    def test_normalize_text_strips_diacritics(self):
        """Test diacritics and whitespace normalization."""
        assert normalize_text('  Anlässe   und  Événements ') == 'anlasse und evenements'
        assert normalize_text(None) == ''

    def test_long_keyword_scores_higher(self):
        """Test long keywords weigh more than short ones."""
        assert keyword_score('Veranstaltungskalender', None) > keyword_score('Agenda', None)

    def test_text_prefix_bonus(self):
        """Test text starting with a keyword gets a bonus."""
        assert keyword_score('Agenda', None) == 5
        assert keyword_score('Unsere Agenda', None) == 3

    def test_href_match(self):
        """Test href-only matches."""
        assert keyword_score(None, 'https://www.musterdorf.ch/agenda') == 2
        assert keyword_score('Kontakt', 'https://www.musterdorf.ch/kontakt') == 0


class TestCandidateLinkDiscoverer:
    """Test cases for CandidateLinkDiscoverer class."""

    @responses.activate
    def test_homepage_candidates_ranked_first(self):
        """Test keyword links outrank canned fallbacks."""
        responses.add(responses.GET, f"{BASE_URL}/sitemap.xml", status=404)

        candidates = make_discoverer().discover(HOMEPAGE_HTML, BASE_URL)

        assert candidates[0].url == f"{BASE_URL}/leben/veranstaltungen"
        assert candidates[0].source == 'homepage'
        assert candidates[1].url == 'https://www.facebook.com/musterdorf'
        assert all(c.score == 1 for c in candidates[2:])

    @responses.activate
    def test_ignores_non_http_links(self):
        """Test mailto, javascript and fragment links are skipped."""
        responses.add(responses.GET, f"{BASE_URL}/sitemap.xml", status=404)

        urls = [c.url for c in make_discoverer(max_candidates=50).discover(HOMEPAGE_HTML, BASE_URL)]

        assert not any(url.startswith(('mailto:', 'javascript:')) for url in urls)
        assert f"{BASE_URL}/kontakt" not in urls
        assert len(urls) == len(set(urls))

    @responses.activate
    def test_candidates_are_capped(self):
        """Test the candidate list is capped."""
        responses.add(responses.GET, f"{BASE_URL}/sitemap.xml", status=404)

        assert len(make_discoverer().discover(HOMEPAGE_HTML, BASE_URL)) == 12
        assert len(make_discoverer(max_candidates=3).discover(HOMEPAGE_HTML, BASE_URL)) == 3

    @responses.activate
    def test_fallbacks_when_homepage_empty(self):
        """Test canned paths are produced without homepage links."""
        responses.add(responses.GET, f"{BASE_URL}/sitemap.xml", status=404)

        candidates = make_discoverer(max_candidates=50).discover('', BASE_URL)
        urls = [c.url for c in candidates]

        for path in FALLBACK_PATHS:
            assert f"{BASE_URL}{path}" in urls
        assert {c.source for c in candidates} == {'fallback', 'search'}

    @responses.activate
    def test_sitemap_candidates(self):
        """Test sitemap URLs are scored, capped at five and merged."""
        locs = ''.join(
            f"<url><loc>{BASE_URL}/{path}</loc></url>"
            for path in [
                'kontakt',
                'agenda',
                'events/konzert',
                'events/markt',
                'veranstaltungen/fasnacht',
                'veranstaltungen/chilbi',
                'kultur/museum',
                'freizeit/bad',
            ]
        )
        responses.add(
            responses.GET,
            f"{BASE_URL}/sitemap.xml",
            body=f'<?xml version="1.0"?><urlset>{locs}</urlset>',
            status=200
        )

        discoverer = make_discoverer(max_candidates=50)
        sitemap = discoverer.discover_from_sitemap(BASE_URL)
        merged = discoverer.discover('', BASE_URL)

        assert len(sitemap) == 5
        assert all(c.source == 'sitemap' for c in sitemap)
        assert f"{BASE_URL}/kontakt" not in [c.url for c in sitemap]
        agenda = next(c for c in merged if c.url == f"{BASE_URL}/agenda")
        assert agenda.score > 1

    @responses.activate
    def test_sitemap_failure_is_swallowed(self):
        """Test a broken sitemap does not prevent discovery."""
        candidates = make_discoverer().discover(HOMEPAGE_HTML, BASE_URL)

        assert candidates
        assert candidates[0].source == 'homepage'

    @responses.activate
    def test_localcities_hint_bonus(self):
        """Test localcities links get a bonus under a localcities hint."""
        responses.add(responses.GET, f"{BASE_URL}/sitemap.xml", status=404)
        html = '<a href="https://www.localcities.ch/de/veranstaltungen/musterdorf/1234">Anlässe</a>'

        discoverer = make_discoverer()
        plain = discoverer.collect_homepage_candidates(html, BASE_URL)
        hinted = discoverer.collect_homepage_candidates(html, BASE_URL, CmsFamily.LOCALCITIES)

        assert hinted[0].score == plain[0].score + 3
