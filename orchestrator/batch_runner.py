"""Sequential batch runs over many municipalities."""
import logging
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Callable, Optional

from orchestrator.discovery import EventPageDiscoverer
from orchestrator.municipal_scraper import MunicipalScraper
from processor.models import BatchResult, DiscoveryState, SiteOutcome

logger = logging.getLogger(__name__)

POLITENESS_DELAY_SECONDS = 2.0


class BatchAlreadyRunningError(Exception):
    """Raised when a batch is started while another one is in progress."""


class BatchState:
    """Single-slot run state shared by scrape and discovery batches."""

    def __init__(self):
        self._lock = threading.Lock()
        self.running_mode: Optional[str] = None
        self.last_started: Optional[datetime] = None
        self.last_finished: Optional[datetime] = None

    @property
    def is_running(self) -> bool:
        return self._lock.locked()

    @contextmanager
    def run(self, mode: str):
        if not self._lock.acquire(blocking=False):
            raise BatchAlreadyRunningError(
                f"Batch already in progress ({self.running_mode}), cannot start {mode}"
            )
        self.running_mode = mode
        self.last_started = datetime.now(timezone.utc)
        try:
            yield
        finally:
            self.last_finished = datetime.now(timezone.utc)
            self.running_mode = None
            self._lock.release()


class BatchRunner:
    """Runs scrape and discovery batches, isolating per-site failures."""

    def __init__(
        self,
        store,
        scraper: MunicipalScraper,
        discoverer: EventPageDiscoverer,
        state: Optional[BatchState] = None,
        delay_seconds: float = POLITENESS_DELAY_SECONDS,
        sleep: Callable[[float], None] = time.sleep
    ):
        self.store = store
        self.scraper = scraper
        self.discoverer = discoverer
        self.state = state or BatchState()
        self.delay_seconds = delay_seconds
        self._sleep = sleep

    def scrape_batch(self, limit: int = 10, max_distance_km: Optional[float] = 50) -> BatchResult:
        """
        Scrape the municipalities that are due.

        Args:
            limit: Maximum number of municipalities
            max_distance_km: Distance cap from home

        Returns:
            BatchResult with per-site outcomes

        Raises:
            BatchAlreadyRunningError: If another batch is in progress
        """
        with self.state.run('scrape'):
            sites = self.store.get_sites_due_for_scrape(limit, max_distance_km)
            logger.info(f"Scraping {len(sites)} municipalities")
            result = BatchResult()

            for index, site in enumerate(sites):
                if index > 0:
                    self._pause()
                try:
                    events = self.scraper.scrape_site(site)
                except Exception as e:
                    logger.error(f"Failed to scrape {site.name}: {e}", extra={'site_id': site.id})
                    result.failed_count += 1
                    result.sites.append(SiteOutcome(site.id, site.name, success=False, error=str(e)))
                    continue

                result.success_count += 1
                result.total_events += len(events)
                result.sites.append(SiteOutcome(site.id, site.name, success=True, events=len(events)))

            logger.info(
                f"Scrape batch complete: {result.success_count} succeeded, "
                f"{result.failed_count} failed, {result.total_events} events"
            )
            return result

    def discover_batch(self, limit: int = 10, max_distance_km: Optional[float] = 50) -> BatchResult:
        """
        Discover event pages for municipalities without one.

        Sites without a website get a guessed homepage first. A site counts
        as successful when an event page was found.

        Raises:
            BatchAlreadyRunningError: If another batch is in progress
        """
        with self.state.run('discover'):
            sites = self.store.get_sites_needing_discovery(limit, max_distance_km)
            logger.info(f"Discovering event pages for {len(sites)} municipalities")
            result = BatchResult()

            for index, site in enumerate(sites):
                if index > 0:
                    self._pause()
                try:
                    if not site.website_url:
                        website = self.discoverer.find_website(site)
                        if website:
                            self.store.update_site_website(site.id, website)
                            site.website_url = website

                    discovery = self.discoverer.discover_event_page(site)
                    self.store.update_site_after_discovery(site.id, discovery)
                except Exception as e:
                    logger.error(f"Discovery failed for {site.name}: {e}", extra={'site_id': site.id})
                    result.failed_count += 1
                    result.sites.append(SiteOutcome(site.id, site.name, success=False, error=str(e)))
                    continue

                if discovery.state == DiscoveryState.FOUND:
                    result.success_count += 1
                    result.sites.append(SiteOutcome(site.id, site.name, success=True))
                else:
                    result.failed_count += 1
                    result.sites.append(
                        SiteOutcome(site.id, site.name, success=False, error=discovery.error)
                    )

            logger.info(
                f"Discovery batch complete: {result.success_count} found, "
                f"{result.failed_count} without event page"
            )
            return result

    def _pause(self) -> None:
        if self.delay_seconds > 0:
            self._sleep(self.delay_seconds)
