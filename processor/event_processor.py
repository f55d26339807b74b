"""Event normalizer for windowing, deduplicating and shaping extracted events."""
import hashlib
import logging
import re
import unicodedata
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from processor.models import ExtractedEvent, MunicipalitySite, PersistedEvent
from scraper.date_parser import SWISS_TZ

logger = logging.getLogger(__name__)

EVENT_WINDOW_DAYS = 90

MUNICIPAL_SOURCE = 'MUNICIPAL'
DEFAULT_CATEGORY = 'Gemeindeveranstaltung'


def normalize_title(title: str) -> str:
    """
    Normalize a title for deduplication.

    Lowercases, strips diacritics and removes everything that is not an
    ASCII letter or digit, so cosmetic variants collapse to one key.
    """
    decomposed = unicodedata.normalize('NFD', title.lower())
    stripped = ''.join(c for c in decomposed if not unicodedata.combining(c))
    return re.sub(r'[^a-z0-9]', '', stripped)


def generate_uniqueness_hash(
    title_norm: str,
    start: datetime,
    site_id: Optional[str] = None,
    lat: Optional[float] = None,
    lon: Optional[float] = None,
    source: str = MUNICIPAL_SOURCE
) -> str:
    """
    Generate the deduplication key of an event.

    Args:
        title_norm: Normalized title
        start: Timezone-aware start, hashed as UTC with minute precision
        site_id: Municipality id for municipal sources
        lat: Latitude used instead of the site id for other sources
        lon: Longitude used instead of the site id for other sources
        source: Source prefix

    Returns:
        SHA256 hex digest
    """
    if site_id is not None:
        anchor = site_id
    else:
        anchor = f"{lat or 0:.4f},{lon or 0:.4f}"
    start_utc = start.astimezone(timezone.utc).strftime('%Y-%m-%dT%H:%MZ')
    composite = f"{source}-{anchor}-{title_norm}-{start_utc}"
    return hashlib.sha256(composite.encode('utf-8')).hexdigest()


def _default_clock() -> datetime:
    return datetime.now(SWISS_TZ)


class EventNormalizer:
    """Turns extracted events into persistable records."""

    MAX_TITLE_LENGTH = 200
    MAX_DESCRIPTION_LENGTH = 2000
    TTL_DAYS = 30

    def __init__(
        self,
        window_days: int = EVENT_WINDOW_DAYS,
        clock: Callable[[], datetime] = _default_clock,
        geocoder=None
    ):
        """
        Initialize the normalizer.

        Args:
            window_days: Events starting later than now + window_days are dropped
            clock: Returns the current timezone-aware time
            geocoder: Optional object with lookup(address) -> GeoPoint | None
        """
        self.window_days = window_days
        self.clock = clock
        self.geocoder = geocoder

    def process_events(
        self,
        events: List[ExtractedEvent],
        site: MunicipalitySite
    ) -> List[PersistedEvent]:
        """
        Normalize a list of events and drop in-batch hash duplicates.

        Args:
            events: Events produced by extraction
            site: Municipality the events were scraped from

        Returns:
            List of PersistedEvent in input order
        """
        processed = []
        seen = set()

        for event in events:
            record = self.normalize(event, site)
            if record is None:
                continue
            if record.uniqueness_hash in seen:
                logger.debug(f"Duplicate event '{record.title}' skipped")
                continue
            seen.add(record.uniqueness_hash)
            processed.append(record)

        logger.info(
            f"Normalized {len(processed)} events out of "
            f"{len(events)} extracted for {site.name}"
        )
        return processed

    def in_window(self, start: datetime, now: Optional[datetime] = None) -> bool:
        now = now or self.clock()
        return now <= start <= now + timedelta(days=self.window_days)

    def normalize(self, event: ExtractedEvent, site: MunicipalitySite) -> Optional[PersistedEvent]:
        """
        Normalize a single event.

        Returns:
            PersistedEvent, or None when the event is invalid or outside the window
        """
        title = (event.title or '').strip()
        if not title or event.start_date is None:
            logger.warning("Event missing required field: title or start date")
            return None

        start = event.start_date
        if start.tzinfo is None:
            start = start.replace(tzinfo=SWISS_TZ)

        if not self.in_window(start):
            logger.debug(f"Event '{title}' at {start.isoformat()} outside the window")
            return None

        title = title[:self.MAX_TITLE_LENGTH]
        title_norm = normalize_title(title)
        if not title_norm:
            logger.warning(f"Event title '{title}' has no alphanumeric content")
            return None

        end = event.end_date
        if end is not None and end.tzinfo is None:
            end = end.replace(tzinfo=SWISS_TZ)
        if end is not None and end < start:
            end = None

        description = event.description[:self.MAX_DESCRIPTION_LENGTH] if event.description else None
        lat, lon = self._coordinates(event, site)
        uniqueness_hash = generate_uniqueness_hash(title_norm, start, site_id=site.id)

        return PersistedEvent(
            uniqueness_hash=uniqueness_hash,
            source=MUNICIPAL_SOURCE,
            source_event_id=f"{site.id}-{uniqueness_hash[:8]}",
            title=title,
            title_norm=title_norm,
            start_time=start,
            end_time=end,
            description=description,
            venue_name=event.location or site.name,
            city=site.name,
            url=event.url or site.event_page_url,
            image_url=event.image_url,
            category=event.category or DEFAULT_CATEGORY,
            municipality_id=site.id,
            lat=lat,
            lon=lon,
            price=event.price,
            organizer=event.organizer,
            lang=site.language or 'de',
            ttl=self._calculate_ttl(end or start),
        )

    def _coordinates(self, event: ExtractedEvent, site: MunicipalitySite):
        if event.lat is not None and event.lon is not None:
            return event.lat, event.lon
        if self.geocoder and event.address:
            point = self.geocoder.lookup(event.address)
            if point:
                return point.lat, point.lon
        return site.lat, site.lon

    def _calculate_ttl(self, last_moment: datetime) -> int:
        """Unix timestamp TTL_DAYS after the event."""
        return int((last_moment + timedelta(days=self.TTL_DAYS)).timestamp())
