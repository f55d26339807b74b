"""Registry of structural event selectors per CMS family."""
import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional
from urllib.parse import urlencode, urljoin, urlparse

from processor.models import CmsFamily, MunicipalitySite, SelectorSet

logger = logging.getLogger(__name__)

SELF_TOKENS = ('self', '&self')

GENERIC_SELECTORS = SelectorSet(
    container=('.event-item', '.event', '.veranstaltung', '.agenda-item', '.calendar-item'),
    title='h1, h2, h3, .title, .event-title',
    date='.date, .datum, .event-date, time',
    location='.location, .ort, .venue, .event-location',
    description='.description, .text, p',
    organizer='.organizer, .veranstalter',
)

# Selectors counted during discovery when the detected family has none
DISCOVERY_SIGNAL_SELECTORS = [
    '.event-list',
    '.event-item',
    '.event',
    '.veranstaltung',
    '.veranstaltungen',
    '.agenda-item',
    '.calendar',
    '.cal-event',
    '.elementEventList',
    '.elementEvent',
    '.elementEventDates',
    '[class*="event-list"]',
    '[class*="veranstaltung"]',
    '[data-event-id]',
]

# Canned API paths probed during discovery
CMS_API_PATHS: Dict[CmsFamily, List[str]] = {
    CmsFamily.ONEGOV_CLOUD: ['/api/events.json', '/agenda.json', '/events.json'],
}


def _onegov_endpoint(site: MunicipalitySite, page_url: str) -> Optional[str]:
    return urljoin(page_url, '/api/events.json')


def _localcities_endpoint(site: MunicipalitySite, page_url: str) -> Optional[str]:
    parsed = urlparse(page_url)
    segments = [s for s in parsed.path.split('/') if s]
    if not segments:
        return None
    query = urlencode({
        'municipality': segments[-1],
        'language': site.language or segments[0] or 'de',
        'limit': '100',
    })
    return f"{parsed.scheme}://{parsed.netloc}/api/public/events?{query}"


@dataclass(frozen=True)
class CmsConfiguration:
    selectors: SelectorSet
    scraping_method: str = 'cms-selectors'
    api_endpoint_resolver: Optional[Callable[[MunicipalitySite, str], Optional[str]]] = None


CMS_REGISTRY: Dict[CmsFamily, CmsConfiguration] = {
    CmsFamily.GOVIS: CmsConfiguration(
        selectors=SelectorSet(
            container=('.content-teaser', '.veranstaltung-item', '.event-item'),
            title='.teaser-title h3, .event-title, h3',
            date='.date-display-single, .event-date, .datum',
            location='.location-info, .event-location, .ort',
            description='.teaser-text, .event-description',
        ),
    ),
    CmsFamily.ONEGOV_CLOUD: CmsConfiguration(
        selectors=SelectorSet(
            container=('.onegov-event', 'article[data-event-id]'),
            title='.event-title, h2, h3',
            date='time[datetime], .event-date',
            location='.event-location, .event-meta',
            description='.event-description, .text',
        ),
        scraping_method='api-extraction',
        api_endpoint_resolver=_onegov_endpoint,
    ),
    CmsFamily.TYPO3: CmsConfiguration(
        selectors=SelectorSet(
            container=(
                '.tx-sfeventmgt .event-item',
                '.tx-calendarize .cal-event',
                '.tx-t3events .event',
                '.tx-news-article',
                '.event-item',
            ),
            title='.news-text-wrap h1, .event-title, h2, h3',
            date='.news-date, .event-date, .cal-date',
            location='.news-location, .event-location',
            description='.bodytext, .event-description',
        ),
    ),
    CmsFamily.DRUPAL: CmsConfiguration(
        selectors=SelectorSet(
            container=('.event-item', '.node-event', '.view-content .views-row'),
            title='.field-name-title a, .node-title a, h3 a, h3',
            date='.field-name-field-date, .field-name-field-event-date, .date-display-single',
            location='.field-name-field-location, .field-name-field-venue',
            description='.field-name-body, .field-name-field-teaser',
        ),
    ),
    CmsFamily.WORDPRESS: CmsConfiguration(
        selectors=SelectorSet(
            container=(
                '.tribe-events-list-item',
                '.sc-event',
                '.wp-calendar .event-item',
                '.event-listing .event',
            ),
            title='.tribe-event-title, .event-title, h3',
            date='.tribe-event-date, .event-date, time',
            location='.tribe-event-venue, .event-venue',
            description='.tribe-event-description, .event-description',
        ),
    ),
    CmsFamily.LOCALCITIES: CmsConfiguration(
        selectors=SelectorSet(
            container=('.localcities-event', '.lc-event-card', '[data-municipality-id]'),
            title='.lc-event-title, .event-title',
            date='.lc-event-date, .event-date',
            location='.lc-event-location, .event-location',
            description='.lc-event-description, .event-description',
        ),
        scraping_method='api-extraction',
        api_endpoint_resolver=_localcities_endpoint,
    ),
}


class SelectorCatalog:
    """Resolves the selector set, API endpoint and scraping method for a site."""

    def __init__(self, registry: Optional[Dict[CmsFamily, CmsConfiguration]] = None):
        self.registry = registry if registry is not None else CMS_REGISTRY

    def configuration(self, cms: CmsFamily) -> Optional[CmsConfiguration]:
        return self.registry.get(cms)

    def selectors_for(self, cms: CmsFamily, stored: Optional[SelectorSet] = None) -> SelectorSet:
        """
        Selectors for a CMS family, overridden by stored municipality selectors.

        Unknown families get the generic fallback set.
        """
        config = self.configuration(cms)
        base = config.selectors if config else GENERIC_SELECTORS
        return base.merged_with(stored)

    def is_configured(self, cms: CmsFamily, stored: Optional[SelectorSet] = None) -> bool:
        """True when a CMS-specific or stored selector set exists."""
        return cms in self.registry or bool(stored and stored.container)

    def signal_selectors(self, cms: CmsFamily) -> List[str]:
        config = self.configuration(cms)
        return list(config.selectors.container) if config else []

    def scraping_method(self, site: MunicipalitySite) -> str:
        config = self.configuration(site.cms_type)
        if config:
            return config.scraping_method
        return 'api-extraction' if site.api_endpoint else 'strategy-chain'

    def resolve_api_endpoint(self, site: MunicipalitySite) -> Optional[str]:
        """Stored endpoint first, then the family's resolver applied to the event page."""
        if site.api_endpoint:
            return site.api_endpoint

        config = self.configuration(site.cms_type)
        if not config or not config.api_endpoint_resolver or not site.event_page_url:
            return None

        try:
            return config.api_endpoint_resolver(site, site.event_page_url)
        except ValueError as e:
            logger.warning(f"Failed to resolve API endpoint for {site.name}: {e}")
            return None
