"""Per-municipality scrape pipeline."""
import logging
from datetime import datetime, timezone
from typing import Callable, List, Optional

import requests

from processor.event_processor import EventNormalizer
from processor.models import (
    CmsFamily,
    MunicipalitySite,
    PersistedEvent,
    ScrapeStatus,
    SiteScrapeUpdate,
)
from scraper.api_adapter import ApiExtractionAdapter
from scraper.cms_fingerprint import CmsFingerprinter
from scraper.exceptions import FetchError, RenderError, ScrapeError
from scraper.headless import RENDER_TIMEOUT_MS, DisabledRenderer, needs_javascript
from scraper.http_fetcher import PAGE_TIMEOUT, HttpFetcher
from scraper.selector_catalog import SelectorCatalog
from scraper.strategies import CONFIGURED_SELECTORS, ExtractionContext, ExtractionStrategyChain

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MunicipalScraper:
    """Scrapes the event page of one municipality and persists its events."""

    def __init__(
        self,
        fetcher: HttpFetcher,
        store,
        normalizer: Optional[EventNormalizer] = None,
        strategy_chain: Optional[ExtractionStrategyChain] = None,
        api_adapter: Optional[ApiExtractionAdapter] = None,
        catalog: Optional[SelectorCatalog] = None,
        fingerprinter: Optional[CmsFingerprinter] = None,
        renderer=None,
        render_timeout_ms: int = RENDER_TIMEOUT_MS,
        clock: Callable[[], datetime] = _utcnow
    ):
        """
        Initialize the scraper.

        Args:
            fetcher: HTTP fetcher used for pages and APIs
            store: Persistence with upsert_event and update_site_after_scrape
            normalizer: Event normalizer (window, hash, shaping)
            strategy_chain: HTML extraction strategies
            api_adapter: JSON API adapter
            catalog: CMS selector registry
            fingerprinter: CMS detector
            renderer: Object with render(url, timeout_ms); rendering is off by default
            render_timeout_ms: Headless navigation timeout
            clock: Returns the current UTC time
        """
        self.fetcher = fetcher
        self.store = store
        self.normalizer = normalizer or EventNormalizer()
        self.strategy_chain = strategy_chain or ExtractionStrategyChain()
        self.api_adapter = api_adapter or ApiExtractionAdapter(fetcher)
        self.catalog = catalog or SelectorCatalog()
        self.fingerprinter = fingerprinter or CmsFingerprinter()
        self.renderer = renderer or DisabledRenderer()
        self.render_timeout_ms = render_timeout_ms
        self.clock = clock

    def scrape_site(self, site: MunicipalitySite) -> List[PersistedEvent]:
        """
        Scrape one municipality.

        The API is tried first when one is known; zero usable events fall
        through to HTML extraction. On any failure the site is marked failed
        and the exception is re-raised.

        Args:
            site: Municipality with an event page URL

        Returns:
            List of persisted events

        Raises:
            ScrapeError: If the site has no event page or no HTML could be obtained
        """
        try:
            return self._scrape(site)
        except Exception as e:
            logger.error(f"Error scraping {site.name}: {e}")
            self.store.update_site_after_scrape(
                site.id,
                SiteScrapeUpdate(status=ScrapeStatus.FAILED, scraped_at=self.clock(), error=str(e))
            )
            raise

    def _scrape(self, site: MunicipalitySite) -> List[PersistedEvent]:
        if not site.event_page_url:
            raise ScrapeError(f"No event page URL for {site.name}")

        logger.info(
            f"Scraping events from {site.name} ({site.event_page_url})",
            extra={'site_id': site.id, 'scraping_method': self.catalog.scraping_method(site)}
        )

        api_endpoint = self.catalog.resolve_api_endpoint(site)
        if api_endpoint:
            persisted = self._scrape_via_api(site, api_endpoint)
            if persisted is not None:
                return persisted
            logger.info(
                f"API endpoint for {site.name} returned no events, continuing with HTML strategies"
            )

        html, used_headless, headless_message = self._load_html(site)

        cms_type = site.cms_type
        if cms_type == CmsFamily.UNKNOWN:
            cms_type = self.fingerprinter.detect(html, site.event_page_url)

        selectors = None
        if self.catalog.is_configured(cms_type, site.event_selectors):
            selectors = self.catalog.selectors_for(cms_type, site.event_selectors)

        context = ExtractionContext(
            page_url=site.event_page_url,
            base_url=site.website_url,
            site_name=site.name,
            date_format=site.date_format,
            selectors=selectors,
        )
        result = self.strategy_chain.extract(html, context)

        records = self.normalizer.process_events(result.events, site)
        persisted = self._persist(records)

        self._record_success(
            site,
            persisted,
            status=ScrapeStatus.HEADLESS_ACTIVE if used_headless else ScrapeStatus.ACTIVE,
            error=headless_message,
            cms_type=cms_type,
            selectors=selectors if result.method == CONFIGURED_SELECTORS else None,
        )
        logger.info(
            f"Scraped {len(persisted)} events from {site.name} using {result.method}",
            extra={'site_id': site.id, 'method': result.method, 'event_count': len(persisted)}
        )
        return persisted

    def _scrape_via_api(self, site: MunicipalitySite, api_endpoint: str) -> Optional[List[PersistedEvent]]:
        """Persist API events; None when the API produced nothing usable."""
        events = self.api_adapter.fetch_and_map(api_endpoint, date_format=site.date_format)
        records = self.normalizer.process_events(events, site)
        if not records:
            return None

        persisted = self._persist(records)
        self._record_success(
            site,
            persisted,
            status=ScrapeStatus.ACTIVE,
            cms_type=site.cms_type,
            api_endpoint=api_endpoint,
        )
        logger.info(f"Scraped {len(persisted)} events from {site.name} via API")
        return persisted

    def _load_html(self, site: MunicipalitySite):
        """
        Fetch the event page, rendering it headlessly when needed.

        Returns:
            Tuple of (html, used_headless, headless_message)
        """
        static_html = None
        static_error = None
        try:
            static_html = self.fetcher.fetch_html(site.event_page_url, timeout=PAGE_TIMEOUT)
        except (requests.RequestException, FetchError) as e:
            static_error = e
            logger.warning(f"Static fetch failed for {site.name}: {e}")

        wants_headless = site.requires_javascript or (
            static_html is not None and needs_javascript(static_html, site.cms_type)
        )
        if wants_headless:
            throttle = getattr(self.fetcher, 'throttle', None)
            if throttle:
                throttle.wait()
            try:
                html = self.renderer.render(site.event_page_url, self.render_timeout_ms)
                message = f"Headless fallback executed at {self.clock().isoformat()}"
                logger.info(f"Headless rendering succeeded for {site.name}")
                return html, True, message
            except RenderError as e:
                logger.warning(f"Headless rendering failed for {site.name}: {e}")

        if static_html is None:
            raise ScrapeError(f"Could not load {site.event_page_url}: {static_error}") from static_error
        return static_html, False, None

    def _persist(self, records: List[PersistedEvent]) -> List[PersistedEvent]:
        persisted = []
        created_count = 0
        for record in records:
            stored, created = self.store.upsert_event(record.uniqueness_hash, record)
            persisted.append(stored)
            created_count += int(created)
        logger.info(f"Persisted {len(persisted)} events ({created_count} new)")
        return persisted

    def _record_success(
        self,
        site: MunicipalitySite,
        persisted: List[PersistedEvent],
        status: ScrapeStatus,
        error: Optional[str] = None,
        cms_type: Optional[CmsFamily] = None,
        selectors=None,
        api_endpoint: Optional[str] = None
    ) -> None:
        now = self.clock()
        self.store.update_site_after_scrape(
            site.id,
            SiteScrapeUpdate(
                status=status,
                scraped_at=now,
                error=error,
                event_count=len(persisted),
                successful_at=now if persisted else None,
                cms_type=cms_type,
                selectors=selectors,
                api_endpoint=api_endpoint,
            )
        )
