"""Maps municipal JSON event APIs onto extracted events."""
import logging
from typing import Any, Dict, List, Optional, Sequence

import requests

from processor.models import ExtractedEvent
from scraper.date_parser import DateParser
from scraper.http_fetcher import API_PROBE_TIMEOUT, PAGE_TIMEOUT, HttpFetcher
from scraper.strategies import resolve_url

logger = logging.getLogger(__name__)

API_HEADERS = {'Accept': 'application/json'}

LIST_KEYS = ('events', 'items', 'results', 'data')

FIELD_ALIASES: Dict[str, List[str]] = {
    'title': ['title', 'name', 'subject', 'event_name'],
    'start': ['start_date', 'startDate', 'date', 'event_date'],
    'end': ['end_date', 'endDate', 'finishDate'],
    'description': ['description', 'body', 'text'],
    'venue': ['venue', 'location', 'place'],
    'address': ['address', 'location_text'],
    'organizer': ['organizer', 'organization'],
    'price': ['price', 'cost', 'fee'],
    'url': ['url', 'link', 'event_url'],
    'image': ['image', 'image_url', 'imageUrl'],
    'category': ['category', 'type'],
}


def extract_event_list(data: Any) -> List[Any]:
    """Locate the event list in an arbitrary top-level JSON shape."""
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        for key in LIST_KEYS:
            value = data.get(key)
            if isinstance(value, list):
                return value
    return []


def _first_present(item: Dict[str, Any], aliases: Sequence[str]) -> Any:
    for alias in aliases:
        value = item.get(alias)
        if value is None:
            continue
        if isinstance(value, str) and not value.strip():
            continue
        return value
    return None


def _as_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, dict):
        value = value.get('name') or value.get('title') or value.get('text')
    if isinstance(value, (int, float)):
        value = str(value)
    if not isinstance(value, str):
        return None
    return value.strip() or None


class ApiExtractionAdapter:
    """Fetches a JSON events endpoint and maps items to ExtractedEvent."""

    def __init__(self, fetcher: HttpFetcher, date_parser: Optional[DateParser] = None, timeout: float = PAGE_TIMEOUT):
        self.fetcher = fetcher
        self.date_parser = date_parser or DateParser()
        self.timeout = timeout

    def fetch_and_map(
        self,
        api_endpoint: str,
        field_hints: Optional[Dict[str, List[str]]] = None,
        date_format: Optional[str] = None
    ) -> List[ExtractedEvent]:
        """
        Fetch an API endpoint and map its items.

        Args:
            api_endpoint: Absolute URL of the JSON endpoint
            field_hints: Extra aliases per logical field, tried first
            date_format: Stored date format hint of the municipality

        Returns:
            List of ExtractedEvent; empty when the API is unreachable
        """
        try:
            response = self.fetcher.get(api_endpoint, timeout=self.timeout, headers=API_HEADERS)
            if not response.ok:
                logger.warning(f"API {api_endpoint} responded with status {response.status}")
                return []
            data = response.json()
        except (requests.RequestException, ValueError) as e:
            logger.error(f"API scraping failed for {api_endpoint}: {e}")
            return []

        return self.map_response(data, api_endpoint, field_hints, date_format)

    def map_response(
        self,
        data: Any,
        base_url: Optional[str] = None,
        field_hints: Optional[Dict[str, List[str]]] = None,
        date_format: Optional[str] = None
    ) -> List[ExtractedEvent]:
        aliases = {
            name: list((field_hints or {}).get(name, [])) + defaults
            for name, defaults in FIELD_ALIASES.items()
        }
        events = []
        for item in extract_event_list(data):
            if not isinstance(item, dict):
                continue
            try:
                event = self._map_item(item, aliases, base_url, date_format)
            except (ValueError, TypeError) as e:
                logger.debug(f"Skipping API item: {e}")
                continue
            if event:
                events.append(event)

        logger.info(f"Mapped {len(events)} events from API response")
        return events

    def _map_item(self, item, aliases, base_url, date_format) -> Optional[ExtractedEvent]:
        title = _as_text(_first_present(item, aliases['title']))
        start_raw = _first_present(item, aliases['start'])
        start_date = self.date_parser.parse(str(start_raw), date_format) if start_raw else None
        if not title or start_date is None:
            return None

        end_raw = _first_present(item, aliases['end'])
        end_date = self.date_parser.parse(str(end_raw), date_format) if end_raw else None
        image = _first_present(item, aliases['image'])
        if isinstance(image, dict):
            image = image.get('url')

        return ExtractedEvent(
            title=title,
            start_date=start_date,
            end_date=end_date,
            description=_as_text(_first_present(item, aliases['description'])),
            location=_as_text(_first_present(item, aliases['venue'])),
            address=_as_text(_first_present(item, aliases['address'])),
            organizer=_as_text(_first_present(item, aliases['organizer'])),
            price=_as_text(_first_present(item, aliases['price'])),
            url=resolve_url(_as_text(_first_present(item, aliases['url'])), base_url, None),
            image_url=image if isinstance(image, str) else None,
            category=_as_text(_first_present(item, aliases['category'])),
        )

    def probe(self, api_endpoint: str) -> bool:
        """True when the endpoint answers 200 with a non-empty event list."""
        try:
            response = self.fetcher.get(api_endpoint, timeout=API_PROBE_TIMEOUT, headers=API_HEADERS)
            if not response.ok:
                return False
            return len(extract_event_list(response.json())) > 0
        except (requests.RequestException, ValueError) as e:
            logger.debug(f"API probe {api_endpoint} failed: {e}")
            return False
