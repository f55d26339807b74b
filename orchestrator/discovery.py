"""Discovery of a municipality's event listing page."""
import logging
import re
import unicodedata
from typing import List, Optional, Tuple
from urllib.parse import urljoin, urlparse

import requests
from bs4 import BeautifulSoup

from processor.models import (
    CandidateLink,
    CmsFamily,
    DiscoveryResult,
    DiscoveryState,
    MunicipalitySite,
)
from scraper.api_adapter import ApiExtractionAdapter
from scraper.cms_fingerprint import CmsFingerprinter
from scraper.http_fetcher import CANDIDATE_TIMEOUT, PAGE_TIMEOUT, PROBE_TIMEOUT, HttpFetcher
from scraper.link_discovery import CandidateLinkDiscoverer
from scraper.selector_catalog import CMS_API_PATHS, DISCOVERY_SIGNAL_SELECTORS, SelectorCatalog
from scraper.strategies import has_event_json_ld, safe_select

logger = logging.getLogger(__name__)

WEBSITE_PATTERNS = [
    'https://www.{slug}.ch',
    'https://{slug}.ch',
    'https://www.gemeinde-{slug}.ch',
    'https://www.stadt-{slug}.ch',
    'https://www.{hyphenated}.ch',
]

MAX_CONFIDENCE = 0.95


def municipality_slug(name: str) -> str:
    """Lowercase ASCII slug without separators, as used in .ch domains."""
    decomposed = unicodedata.normalize('NFD', name.lower())
    stripped = ''.join(c for c in decomposed if not unicodedata.combining(c))
    return re.sub(r'[^a-z0-9]', '', stripped)


def hyphenated_slug(name: str) -> str:
    decomposed = unicodedata.normalize('NFD', name.lower())
    stripped = ''.join(c for c in decomposed if not unicodedata.combining(c))
    return re.sub(r'[^a-z0-9]+', '-', stripped).strip('-')


def compute_confidence(
    cms_type: CmsFamily,
    match_count: int,
    has_json_ld: bool,
    api_endpoint: Optional[str]
) -> float:
    """
    Score how strongly a page looks like an event listing.

    Args:
        cms_type: Detected CMS family
        match_count: Number of elements matched by signal selectors
        has_json_ld: Whether an Event JSON-LD node is present
        api_endpoint: Live API endpoint found for the page, if any

    Returns:
        Confidence between 0 and 0.95
    """
    score = 0.0
    if match_count >= 5:
        score += 0.4
    elif match_count >= 2:
        score += 0.3
    elif match_count > 0:
        score += 0.2

    if has_json_ld:
        score += 0.2
    if api_endpoint:
        score += 0.2
    if cms_type != CmsFamily.UNKNOWN:
        score += 0.1

    return round(min(score, MAX_CONFIDENCE), 2)


def count_selector_matches(soup: BeautifulSoup, selectors: List[str]) -> Tuple[int, List[str]]:
    total = 0
    matched = []
    for selector in selectors:
        count = len(safe_select(soup, selector))
        if count:
            matched.append(selector)
            total += count
    return total, matched


class EventPageDiscoverer:
    """Finds and verifies the event listing page of a municipality."""

    def __init__(
        self,
        fetcher: HttpFetcher,
        link_discoverer: Optional[CandidateLinkDiscoverer] = None,
        fingerprinter: Optional[CmsFingerprinter] = None,
        catalog: Optional[SelectorCatalog] = None,
        api_adapter: Optional[ApiExtractionAdapter] = None
    ):
        self.fetcher = fetcher
        self.link_discoverer = link_discoverer or CandidateLinkDiscoverer(fetcher)
        self.fingerprinter = fingerprinter or CmsFingerprinter()
        self.catalog = catalog or SelectorCatalog()
        self.api_adapter = api_adapter or ApiExtractionAdapter(fetcher)

    def find_website(self, site: MunicipalitySite) -> Optional[str]:
        """
        Guess the homepage of a municipality from its name.

        Returns:
            First URL answering a HEAD probe with 2xx, or None
        """
        slug = municipality_slug(site.name)
        if not slug:
            return None
        hyphenated = hyphenated_slug(site.name)

        tried = set()
        for pattern in WEBSITE_PATTERNS:
            url = pattern.format(slug=slug, hyphenated=hyphenated)
            if url in tried:
                continue
            tried.add(url)
            try:
                response = self.fetcher.head(url, timeout=PROBE_TIMEOUT)
            except requests.RequestException as e:
                logger.debug(f"Website probe {url} failed: {e}")
                continue
            if response.ok:
                logger.info(f"Found website for {site.name}: {url}")
                return url

        logger.info(f"No website found for {site.name}")
        return None

    def discover_event_page(self, site: MunicipalitySite) -> DiscoveryResult:
        """
        Locate and verify the event page of a municipality.

        Candidates are verified sequentially and the first one with an event
        signal wins; the remaining candidates are never fetched.

        Args:
            site: Municipality with a website URL

        Returns:
            DiscoveryResult in state FOUND or EXHAUSTED
        """
        if not site.website_url:
            return DiscoveryResult(state=DiscoveryState.EXHAUSTED, error='Missing website URL')

        logger.info(f"Discovering event page for {site.name} ({site.website_url})")
        try:
            homepage = self.fetcher.get(site.website_url, timeout=PAGE_TIMEOUT)
        except requests.RequestException as e:
            return DiscoveryResult(state=DiscoveryState.EXHAUSTED, error=f"Homepage unreachable: {e}")
        if not homepage.ok:
            return DiscoveryResult(
                state=DiscoveryState.EXHAUSTED,
                error=f"Homepage responded with status {homepage.status}"
            )

        homepage_html = homepage.text()
        homepage_cms = self.fingerprinter.detect(homepage_html, site.website_url)
        candidates = self.link_discoverer.discover(homepage_html, site.website_url, site.cms_type)
        logger.info(
            f"{site.name}: {DiscoveryState.CANDIDATES_GENERATED.value} ({len(candidates)} candidates)"
        )
        if not candidates:
            return DiscoveryResult(
                state=DiscoveryState.EXHAUSTED,
                cms_type=homepage_cms,
                error='No candidates discovered'
            )

        last_error = None
        for tried, candidate in enumerate(candidates, start=1):
            logger.debug(f"{site.name}: {DiscoveryState.VERIFYING.value} {candidate.url}")
            result, error = self.verify_candidate(candidate, homepage_cms)
            if result:
                result.candidates_tried = tried
                logger.info(
                    f"Event page for {site.name}: {result.event_page_url} "
                    f"(cms: {result.cms_type.value}, confidence: {result.confidence})"
                )
                return result
            last_error = error

        logger.warning(f"No event page found for {site.name} after {len(candidates)} candidates")
        return DiscoveryResult(
            state=DiscoveryState.EXHAUSTED,
            cms_type=homepage_cms,
            error=last_error or 'No event signals detected',
            candidates_tried=len(candidates),
        )

    def verify_candidate(
        self,
        candidate: CandidateLink,
        homepage_cms: CmsFamily = CmsFamily.UNKNOWN
    ) -> Tuple[Optional[DiscoveryResult], Optional[str]]:
        """
        Check a single candidate for event signals.

        Returns:
            Tuple of (FOUND result or None, error message or None)
        """
        try:
            response = self.fetcher.get(candidate.url, timeout=CANDIDATE_TIMEOUT)
        except requests.RequestException as e:
            return None, f"Candidate request failed: {e}"
        if not response.ok:
            return None, f"Candidate responded with {response.status}"

        html = response.text()
        soup = BeautifulSoup(html, 'html.parser')

        cms_type = self.fingerprinter.detect(html, candidate.url)
        if cms_type == CmsFamily.UNKNOWN:
            cms_type = homepage_cms

        match_count, matched = count_selector_matches(soup, self.catalog.signal_selectors(cms_type))
        if match_count == 0:
            match_count, matched = count_selector_matches(soup, DISCOVERY_SIGNAL_SELECTORS)

        json_ld = has_event_json_ld(soup)

        api_endpoint = None
        for path in CMS_API_PATHS.get(cms_type, []):
            api_url = urljoin(candidate.url, path)
            if self.api_adapter.probe(api_url):
                api_endpoint = api_url
                break

        if match_count == 0 and not json_ld and not api_endpoint:
            logger.debug(f"Candidate {candidate.url} did not expose events")
            return None, 'No event signals detected'

        return DiscoveryResult(
            state=DiscoveryState.FOUND,
            event_page_url=candidate.url,
            event_page_pattern=urlparse(candidate.url).path or None,
            cms_type=cms_type,
            confidence=compute_confidence(cms_type, match_count, json_ld, api_endpoint),
            api_endpoint=api_endpoint,
            matched_selectors=matched,
            source=candidate.source,
        ), None
