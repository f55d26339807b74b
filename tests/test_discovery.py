"""Unit tests for event page discovery."""
from unittest.mock import Mock

import pytest
import responses
from requests.exceptions import ConnectionError

from processor.models import CandidateLink, CmsFamily, DiscoveryState, MunicipalitySite
from orchestrator.discovery import (
    EventPageDiscoverer,
    compute_confidence,
    hyphenated_slug,
    municipality_slug,
)
from scraper.http_fetcher import HttpFetcher

HOMEPAGE = 'https://www.musterdorf.ch/'
AGENDA = 'https://www.musterdorf.ch/agenda'
VERANSTALTUNGEN = 'https://www.musterdorf.ch/veranstaltungen'

HOMEPAGE_HTML = '<html><body><nav><a href="/agenda">Agenda</a></nav></body></html>'

LISTING_HTML = """
<html><body>
  <div class="event-item"><h3>Herbstmarkt</h3><span class="date">07.11.2026</span></div>
  <div class="event-item"><h3>Adventsfenster</h3><span class="date">01.12.2026</span></div>
  <div class="event-item"><h3>Neujahrsapéro</h3><span class="date">01.01.2027</span></div>
</body></html>
"""

JSON_LD_HTML = """
<html><head><script type="application/ld+json">
{"@context": "https://schema.org", "@type": "Event", "name": "Chilbi",
 "startDate": "2026-11-14T10:00:00+01:00"}
</script></head><body><p>Chilbi</p></body></html>
"""

ONEGOV_HTML = '<html><head><meta name="generator" content="OneGov Cloud"></head><body><p>Agenda</p></body></html>'


@pytest.fixture
def site():
    return MunicipalitySite(id='muni-1', name='Musterdorf', website_url=HOMEPAGE)


def make_discoverer(candidates):
    link_discoverer = Mock()
    link_discoverer.discover.return_value = candidates
    return EventPageDiscoverer(HttpFetcher(max_retries=1, base_delay=0), link_discoverer=link_discoverer)


def candidate(url, score=10):
    return CandidateLink(url=url, source='homepage', score=score)


class TestSlugs:
    """Test cases for municipality slugs."""

    def test_municipality_slug(self):
        """Test umlauts and separators are folded away."""
        assert municipality_slug('Küsnacht') == 'kusnacht'
        assert municipality_slug('La Chaux-de-Fonds') == 'lachauxdefonds'

    def test_hyphenated_slug(self):
        """Test separators become single hyphens."""
        assert hyphenated_slug('La Chaux-de-Fonds') == 'la-chaux-de-fonds'
        assert hyphenated_slug('Rüti (ZH)') == 'ruti-zh'


class TestComputeConfidence:
    """Test cases for the discovery confidence score."""

    def test_no_signal(self):
        """Test nothing scores zero."""
        assert compute_confidence(CmsFamily.UNKNOWN, 0, False, None) == 0.0

    def test_match_tiers(self):
        """Test selector match tiers."""
        assert compute_confidence(CmsFamily.UNKNOWN, 1, False, None) == 0.2
        assert compute_confidence(CmsFamily.UNKNOWN, 3, False, None) == 0.3
        assert compute_confidence(CmsFamily.UNKNOWN, 5, False, None) == 0.4

    def test_all_signals(self):
        """Test JSON-LD, API and a known CMS add up."""
        assert compute_confidence(CmsFamily.GOVIS, 5, True, 'https://x.ch/api') == 0.9
        assert compute_confidence(CmsFamily.TYPO3, 2, False, None) == 0.4


class TestFindWebsite:
    """Test cases for website guessing."""

    @responses.activate
    def test_first_answering_pattern_wins(self):
        """Test probes stop at the first 2xx answer."""
        responses.add(responses.HEAD, 'https://www.musterdorf.ch/', status=404)
        responses.add(responses.HEAD, 'https://musterdorf.ch/', status=200)

        url = make_discoverer([]).find_website(MunicipalitySite(id='m', name='Musterdorf'))

        assert url == 'https://musterdorf.ch'
        assert len(responses.calls) == 2

    @responses.activate
    def test_network_errors_are_skipped(self):
        """Test unreachable hosts fall through to the next pattern."""
        responses.add(responses.HEAD, 'https://www.kusnacht.ch/', body=ConnectionError('dns'))
        responses.add(responses.HEAD, 'https://kusnacht.ch/', body=ConnectionError('dns'))
        responses.add(responses.HEAD, 'https://www.gemeinde-kusnacht.ch/', status=200)

        url = make_discoverer([]).find_website(MunicipalitySite(id='m', name='Küsnacht'))

        assert url == 'https://www.gemeinde-kusnacht.ch'

    @responses.activate
    def test_no_website(self):
        """Test None when no pattern answers."""
        for host in ('www.nirgendwo', 'nirgendwo', 'www.gemeinde-nirgendwo', 'www.stadt-nirgendwo'):
            responses.add(responses.HEAD, f"https://{host}.ch/", status=404)

        assert make_discoverer([]).find_website(MunicipalitySite(id='m', name='Nirgendwo')) is None


class TestDiscoverEventPage:
    """Test cases for candidate verification."""

    @responses.activate
    def test_first_verified_candidate_wins(self, site):
        """Test later candidates are never fetched once one verifies."""
        responses.add(responses.GET, HOMEPAGE, body=HOMEPAGE_HTML, status=200)
        responses.add(responses.GET, AGENDA, body=LISTING_HTML, status=200)
        responses.add(responses.GET, VERANSTALTUNGEN, body=LISTING_HTML, status=200)

        result = make_discoverer([candidate(AGENDA), candidate(VERANSTALTUNGEN)]).discover_event_page(site)

        assert result.state == DiscoveryState.FOUND
        assert result.success
        assert result.event_page_url == AGENDA
        assert result.event_page_pattern == '/agenda'
        assert result.confidence == 0.3
        assert result.matched_selectors == ['.event-item']
        assert result.candidates_tried == 1
        assert [call.request.url for call in responses.calls] == [HOMEPAGE, AGENDA]

    @responses.activate
    def test_skips_failing_candidates(self, site):
        """Test failing and empty candidates are passed over."""
        responses.add(responses.GET, HOMEPAGE, body=HOMEPAGE_HTML, status=200)
        responses.add(responses.GET, AGENDA, status=404)
        responses.add(responses.GET, VERANSTALTUNGEN, body=JSON_LD_HTML, status=200)

        result = make_discoverer([candidate(AGENDA), candidate(VERANSTALTUNGEN)]).discover_event_page(site)

        assert result.event_page_url == VERANSTALTUNGEN
        assert result.confidence == 0.2
        assert result.candidates_tried == 2

    @responses.activate
    def test_exhausted_leaves_no_page(self, site):
        """Test no verified candidate means no event page."""
        responses.add(responses.GET, HOMEPAGE, body=HOMEPAGE_HTML, status=200)
        responses.add(responses.GET, AGENDA, body='<html><body><p>Gemeindeverwaltung</p></body></html>')
        responses.add(responses.GET, VERANSTALTUNGEN, status=500)

        result = make_discoverer([candidate(AGENDA), candidate(VERANSTALTUNGEN)]).discover_event_page(site)

        assert result.state == DiscoveryState.EXHAUSTED
        assert not result.success
        assert result.event_page_url is None
        assert result.candidates_tried == 2
        assert result.error == 'Candidate responded with 500'

    @responses.activate
    def test_no_candidates(self, site):
        """Test an empty candidate list is exhausted."""
        responses.add(responses.GET, HOMEPAGE, body=HOMEPAGE_HTML, status=200)

        result = make_discoverer([]).discover_event_page(site)

        assert result.state == DiscoveryState.EXHAUSTED
        assert result.error == 'No candidates discovered'

    @responses.activate
    def test_homepage_unreachable(self, site):
        """Test homepage failures exhaust discovery."""
        responses.add(responses.GET, HOMEPAGE, body=ConnectionError('timeout'))

        result = make_discoverer([candidate(AGENDA)]).discover_event_page(site)

        assert result.state == DiscoveryState.EXHAUSTED
        assert result.error.startswith('Homepage unreachable')

    @responses.activate
    def test_homepage_error_status(self, site):
        """Test non-2xx homepage responses exhaust discovery."""
        responses.add(responses.GET, HOMEPAGE, status=503)

        result = make_discoverer([candidate(AGENDA)]).discover_event_page(site)

        assert result.state == DiscoveryState.EXHAUSTED
        assert result.error == 'Homepage responded with status 503'

    def test_missing_website(self):
        """Test sites without a website are exhausted immediately."""
        result = make_discoverer([]).discover_event_page(MunicipalitySite(id='m', name='Musterdorf'))

        assert result.state == DiscoveryState.EXHAUSTED
        assert result.error == 'Missing website URL'

    @responses.activate
    def test_onegov_api_probe(self, site):
        """Test a live CMS API counts as an event signal."""
        responses.add(responses.GET, HOMEPAGE, body=HOMEPAGE_HTML, status=200)
        responses.add(responses.GET, AGENDA, body=ONEGOV_HTML, status=200)
        responses.add(
            responses.GET,
            'https://www.musterdorf.ch/api/events.json',
            json={'events': [{'title': 'Chilbi', 'start': '2026-11-14T10:00:00+01:00'}]},
            status=200
        )

        result = make_discoverer([candidate(AGENDA)]).discover_event_page(site)

        assert result.state == DiscoveryState.FOUND
        assert result.cms_type == CmsFamily.ONEGOV_CLOUD
        assert result.api_endpoint == 'https://www.musterdorf.ch/api/events.json'
        assert result.confidence == 0.3

    @responses.activate
    def test_homepage_cms_used_as_fallback(self, site):
        """Test the homepage family applies when the candidate is unrecognized."""
        responses.add(
            responses.GET,
            HOMEPAGE,
            body='<html><head><link href="/typo3temp/main.css"></head><body></body></html>',
            status=200
        )
        responses.add(
            responses.GET,
            AGENDA,
            body='<div class="event-item">Chilbi</div><div class="event-item">Markt</div>',
            status=200
        )

        result = make_discoverer([candidate(AGENDA)]).discover_event_page(site)

        assert result.cms_type == CmsFamily.TYPO3
        assert result.matched_selectors == ['.event-item']
        assert result.confidence == 0.4
