"""Discovery of candidate event listing URLs on a municipality website."""
import logging
import re
import unicodedata
from typing import Dict, List, Optional
from urllib.parse import urljoin, urlparse

import requests
from bs4 import BeautifulSoup

from processor.models import CandidateLink, CmsFamily
from scraper.http_fetcher import SITEMAP_TIMEOUT, HttpFetcher

logger = logging.getLogger(__name__)

# German, French, Italian and Romansh terms for events, agenda, culture, leisure
EVENT_KEYWORDS = [
    'veranstaltung',
    'veranstaltungen',
    'veranstaltungskalender',
    'events',
    'event',
    'agenda',
    'anlass',
    'anlasse',
    'anlaesse',
    'kalender',
    'termine',
    'manifestation',
    'manifestations',
    'manifestaziun',
    'manifestaziuns',
    'evenement',
    'evenements',
    'eventi',
    'manifestazioni',
    'occurrenzas',
    'appuntamenti',
    'agenda eventi',
    'freizeit',
    'kultur',
    'loisirs',
    'temps libre',
    'temps-libre',
]

FALLBACK_PATHS = [
    '/veranstaltungen',
    '/events',
    '/agenda',
    '/anlaesse',
    '/kalender',
    '/termine',
    '/aktuelles/veranstaltungen',
    '/de/veranstaltungen',
    '/gemeinde/veranstaltungen',
]

SEARCH_PATHS = [
    '/search?q=veranstaltungen',
    '/suche?q=veranstaltungen',
    '/recherche?q=evenements',
    '/ricerca?q=eventi',
]

LOC_PATTERN = re.compile(r'<loc>\s*([^<]+?)\s*</loc>', re.IGNORECASE)

DEFAULT_MAX_CANDIDATES = 12
SITEMAP_TOP = 5
FALLBACK_SCORE = 1


def normalize_text(value: Optional[str]) -> str:
    """Lowercase, strip diacritics and collapse whitespace."""
    if not value:
        return ''
    decomposed = unicodedata.normalize('NFD', value)
    stripped = ''.join(c for c in decomposed if not unicodedata.combining(c))
    return re.sub(r'\s+', ' ', stripped.lower()).strip()


def keyword_score(text: Optional[str], href: Optional[str]) -> int:
    normalized_text = normalize_text(text)
    normalized_href = normalize_text(href)

    score = 0
    for keyword in EVENT_KEYWORDS:
        if normalized_text and keyword in normalized_text:
            score += 4 if len(keyword) > 8 else 3
            if normalized_text.startswith(keyword):
                score += 2
        if normalized_href and keyword in normalized_href:
            score += 3 if len(keyword) > 8 else 2
    return score


def registrable_domain(hostname: str) -> str:
    return '.'.join(hostname.split('.')[-2:])


def resolve_link(base_url: str, href: Optional[str]) -> Optional[str]:
    if not href:
        return None
    href = href.strip()
    if not href or href.startswith(('#', 'javascript:', 'mailto:', 'tel:')):
        return None
    try:
        resolved = urljoin(base_url, href)
    except ValueError:
        return None
    if urlparse(resolved).scheme not in ('http', 'https'):
        return None
    return resolved.split('#')[0]


class CandidateLinkDiscoverer:
    """Produces a ranked list of URLs likely to be a site's event listing."""

    def __init__(self, fetcher: HttpFetcher, max_candidates: int = DEFAULT_MAX_CANDIDATES):
        self.fetcher = fetcher
        self.max_candidates = max_candidates

    def discover(
        self,
        homepage_html: Optional[str],
        base_url: str,
        cms_hint: Optional[CmsFamily] = None
    ) -> List[CandidateLink]:
        """
        Rank candidate event pages for a municipality.

        Args:
            homepage_html: HTML of the municipality homepage (may be empty)
            base_url: Homepage URL
            cms_hint: Previously recorded CMS family

        Returns:
            Candidates sorted by descending score, deduplicated, capped
        """
        merged: Dict[str, CandidateLink] = {}
        sources = [
            self.collect_homepage_candidates(homepage_html or '', base_url, cms_hint),
            self.discover_from_sitemap(base_url),
            self.fallback_candidates(base_url),
        ]
        for candidates in sources:
            for candidate in candidates:
                existing = merged.get(candidate.url)
                if existing is None or existing.score < candidate.score:
                    merged[candidate.url] = candidate

        ranked = sorted(merged.values(), key=lambda c: c.score, reverse=True)
        logger.info(f"Generated {len(ranked)} candidate links for {base_url}")
        return ranked[:self.max_candidates]

    def collect_homepage_candidates(
        self,
        html: str,
        base_url: str,
        cms_hint: Optional[CmsFamily] = None
    ) -> List[CandidateLink]:
        base_host = (urlparse(base_url).hostname or '').lower()
        base_domain = registrable_domain(base_host)
        soup = BeautifulSoup(html, 'html.parser')
        candidates: Dict[str, CandidateLink] = {}

        for anchor in soup.find_all('a'):
            resolved = resolve_link(base_url, anchor.get('href'))
            if not resolved:
                continue

            text = anchor.get_text(' ', strip=True)
            score = keyword_score(text, resolved) + keyword_score(anchor.get('title'), None)

            host = (urlparse(resolved).hostname or '').lower()
            if host == base_host or host.endswith(f".{base_domain}"):
                score += 1
            if cms_hint == CmsFamily.LOCALCITIES and 'localcities' in host:
                score += 3

            # the domain bonus alone is not a signal
            if score <= 1:
                continue

            existing = candidates.get(resolved)
            if existing is None or existing.score < score:
                candidates[resolved] = CandidateLink(url=resolved, source='homepage', score=score, text=text)

        return sorted(candidates.values(), key=lambda c: c.score, reverse=True)

    def discover_from_sitemap(self, base_url: str) -> List[CandidateLink]:
        sitemap_url = urljoin(base_url, '/sitemap.xml')
        try:
            response = self.fetcher.get(sitemap_url, timeout=SITEMAP_TIMEOUT)
        except requests.RequestException as e:
            logger.info(f"No sitemap for {base_url}: {e}")
            return []
        if not response.ok:
            return []

        candidates = []
        for url in LOC_PATTERN.findall(response.text()):
            score = keyword_score(url, url)
            if score > 0:
                candidates.append(CandidateLink(url=url, source='sitemap', score=score))

        candidates.sort(key=lambda c: c.score, reverse=True)
        return candidates[:SITEMAP_TOP]

    def fallback_candidates(self, base_url: str) -> List[CandidateLink]:
        candidates = [
            CandidateLink(url=urljoin(base_url, path), source='fallback', score=FALLBACK_SCORE)
            for path in FALLBACK_PATHS
        ]
        candidates.extend(
            CandidateLink(url=urljoin(base_url, path), source='search', score=FALLBACK_SCORE)
            for path in SEARCH_PATHS
        )
        return candidates
