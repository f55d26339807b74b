"""DynamoDB manager for municipality and event storage operations."""
import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

import boto3
from botocore.exceptions import ClientError

from processor.distance import distance_or_none
from processor.models import (
    CmsFamily,
    DiscoveryResult,
    MunicipalitySite,
    PersistedEvent,
    ScrapeStatus,
    SelectorSet,
    SiteScrapeUpdate,
)

logger = logging.getLogger(__name__)

SCRAPE_FRESHNESS_HOURS = 24
DISCOVERY_RETRY_DAYS = 7

# Display fields refreshed when an already known event is seen again
MUTABLE_EVENT_FIELDS = (
    'title',
    'description',
    'start_time',
    'end_time',
    'venue_name',
    'url',
    'image_url',
)


def _to_dynamo(value: Any) -> Any:
    if isinstance(value, float):
        return Decimal(str(value))
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (CmsFamily, ScrapeStatus)):
        return value.value
    return value


def _from_decimal(value: Any) -> Optional[float]:
    if value is None:
        return None
    return float(value)


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        logger.warning(f"Unparseable timestamp in store: {value}")
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


class DynamoDBManager:
    """Manager for DynamoDB operations."""

    def __init__(
        self,
        municipalities_table: str,
        events_table: str,
        home_lat: Optional[float] = None,
        home_lon: Optional[float] = None,
        region_name: Optional[str] = None
    ):
        """
        Initialize DynamoDB resource and table references.

        Args:
            municipalities_table: Name of the municipalities table (key: id)
            events_table: Name of the events table (key: uniqueness_hash)
            home_lat: Reference latitude for distance filtering
            home_lon: Reference longitude for distance filtering
            region_name: Optional AWS region override
        """
        self.dynamodb = boto3.resource('dynamodb', region_name=region_name) if region_name else boto3.resource('dynamodb')
        self.municipalities = self.dynamodb.Table(municipalities_table)
        self.events = self.dynamodb.Table(events_table)
        self.home_lat = home_lat
        self.home_lon = home_lon
        logger.info(
            f"Initialized DynamoDBManager for tables: {municipalities_table}, {events_table}"
        )

    # Municipalities

    def scan_sites(self) -> List[MunicipalitySite]:
        """
        Retrieve all municipalities using Scan operation.

        Returns:
            List of MunicipalitySite objects
        """
        sites = []
        for item in self._scan_items():
            site = self._item_to_site(item)
            if site:
                sites.append(site)
        logger.info(f"Retrieved {len(sites)} municipalities from DynamoDB")
        return sites

    def get_site(self, site_id: str) -> Optional[MunicipalitySite]:
        try:
            response = self.municipalities.get_item(Key={'id': site_id})
        except ClientError as e:
            logger.error(f"Error reading municipality {site_id}: {e}")
            raise
        item = response.get('Item')
        return self._item_to_site(item) if item else None

    def put_site(self, site: MunicipalitySite) -> None:
        self.municipalities.put_item(Item=self._site_to_item(site))

    def get_sites_due_for_scrape(
        self,
        limit: int,
        max_distance_km: Optional[float] = None,
        now: Optional[datetime] = None
    ) -> List[MunicipalitySite]:
        """
        Select municipalities to scrape.

        Sites need a known event page, no scrape within the last 24 hours and
        a distance within max_distance_km. Ordered oldest-scraped-first
        (never scraped first of all), then nearest-first.

        Args:
            limit: Maximum number of sites
            max_distance_km: Distance cap; None disables the filter
            now: Reference time

        Returns:
            List of MunicipalitySite
        """
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(hours=SCRAPE_FRESHNESS_HOURS)

        due = [
            site for site in self.scan_sites()
            if site.event_page_url
            and (site.last_scraped is None or site.last_scraped < cutoff)
            and self._within_distance(site, max_distance_km)
        ]
        due.sort(key=lambda s: (
            s.last_scraped is not None,
            s.last_scraped or now,
            s.distance_from_home if s.distance_from_home is not None else float('inf'),
        ))

        logger.info(f"{len(due)} municipalities due for scrape, taking {min(limit, len(due))}")
        return due[:limit]

    def get_sites_needing_discovery(
        self,
        limit: int,
        max_distance_km: Optional[float] = None,
        now: Optional[datetime] = None
    ) -> List[MunicipalitySite]:
        """
        Select municipalities without an event page for discovery.

        Sites whose last discovery attempt is more recent than
        DISCOVERY_RETRY_DAYS are skipped.
        """
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(days=DISCOVERY_RETRY_DAYS)

        candidates = []
        for site, last_discovery in self._scan_with_discovery():
            if site.event_page_url or not self._within_distance(site, max_distance_km):
                continue
            if last_discovery is not None and last_discovery >= cutoff:
                continue
            candidates.append((site, last_discovery))

        candidates.sort(key=lambda pair: (
            pair[1] is not None,
            pair[1] or now,
            pair[0].distance_from_home if pair[0].distance_from_home is not None else float('inf'),
        ))
        return [site for site, _ in candidates[:limit]]

    def update_site_after_scrape(self, site_id: str, update: SiteScrapeUpdate) -> None:
        """
        Write the scrape outcome back to a municipality.

        Args:
            site_id: Municipality id
            update: Bounded set of fields produced by the scraper
        """
        values: Dict[str, Any] = {
            'scrape_status': update.status,
            'last_scraped': update.scraped_at,
        }
        removals = []
        if update.error:
            values['scrape_error'] = update.error
        else:
            removals.append('scrape_error')
        if update.event_count is not None:
            values['event_count'] = update.event_count
        if update.successful_at:
            values['last_successful'] = update.successful_at
        if update.cms_type and update.cms_type != CmsFamily.UNKNOWN:
            values['cms_type'] = update.cms_type
        if update.selectors:
            values['event_selectors'] = update.selectors.to_json()
        if update.api_endpoint:
            values['api_endpoint'] = update.api_endpoint

        self._update_site(site_id, values, removals)
        logger.info(f"Updated municipality {site_id} after scrape: {update.status.value}")

    def update_site_after_discovery(
        self,
        site_id: str,
        result: DiscoveryResult,
        discovered_at: Optional[datetime] = None
    ) -> None:
        """
        Persist a discovery outcome.

        Event page fields are only written on success, so an exhausted
        discovery never leaves a guessed URL behind.
        """
        values: Dict[str, Any] = {
            'discovery_state': result.state.value,
            'last_discovery': discovered_at or datetime.now(timezone.utc),
        }
        removals = []
        if result.success:
            values['event_page_url'] = result.event_page_url
            values['event_page_confidence'] = result.confidence
            values['cms_type'] = result.cms_type
            if result.event_page_pattern:
                values['event_page_pattern'] = result.event_page_pattern
            if result.api_endpoint:
                values['api_endpoint'] = result.api_endpoint
            removals.append('discovery_error')
        elif result.error:
            values['discovery_error'] = result.error

        self._update_site(site_id, values, removals)
        logger.info(f"Updated municipality {site_id} after discovery: {result.state.value}")

    def update_site_website(self, site_id: str, website_url: str) -> None:
        self._update_site(site_id, {'website_url': website_url}, [])

    def _update_site(self, site_id: str, values: Dict[str, Any], removals: List[str]) -> None:
        names = {}
        expression_values = {}
        set_clauses = []
        for index, (name, value) in enumerate(values.items()):
            names[f"#f{index}"] = name
            expression_values[f":v{index}"] = _to_dynamo(value)
            set_clauses.append(f"#f{index} = :v{index}")

        expression = 'SET ' + ', '.join(set_clauses)
        if removals:
            offset = len(values)
            remove_clauses = []
            for index, name in enumerate(removals, start=offset):
                names[f"#f{index}"] = name
                remove_clauses.append(f"#f{index}")
            expression += ' REMOVE ' + ', '.join(remove_clauses)

        try:
            self.municipalities.update_item(
                Key={'id': site_id},
                UpdateExpression=expression,
                ExpressionAttributeNames=names,
                ExpressionAttributeValues=expression_values,
            )
        except ClientError as e:
            logger.error(f"Error updating municipality {site_id}: {e}")
            raise

    def _scan_items(self) -> List[dict]:
        """Scan the municipalities table, following pagination."""
        try:
            response = self.municipalities.scan()
            items = response.get('Items', [])

            while 'LastEvaluatedKey' in response:
                response = self.municipalities.scan(
                    ExclusiveStartKey=response['LastEvaluatedKey']
                )
                items.extend(response.get('Items', []))
        except ClientError as e:
            logger.error(f"Error scanning municipalities table: {e}")
            raise
        return items

    def _within_distance(self, site: MunicipalitySite, max_distance_km: Optional[float]) -> bool:
        if max_distance_km is None:
            return True
        return site.distance_from_home is not None and site.distance_from_home <= max_distance_km

    def _scan_with_discovery(self) -> List[Tuple[MunicipalitySite, Optional[datetime]]]:
        pairs = []
        for item in self._scan_items():
            site = self._item_to_site(item)
            if site:
                pairs.append((site, _parse_timestamp(item.get('last_discovery'))))
        return pairs

    # Events

    def upsert_event(self, uniqueness_hash: str, event: PersistedEvent) -> Tuple[PersistedEvent, bool]:
        """
        Create an event or refresh its display fields.

        Args:
            uniqueness_hash: Deduplication key
            event: Normalized event

        Returns:
            Tuple of the stored event and whether it was newly created
        """
        item = self._event_to_item(event)
        item['uniqueness_hash'] = uniqueness_hash

        try:
            self.events.put_item(
                Item=item,
                ConditionExpression='attribute_not_exists(uniqueness_hash)'
            )
            logger.debug(f"Created event {uniqueness_hash[:12]}: {event.title}")
            return event, True
        except ClientError as e:
            if e.response['Error']['Code'] != 'ConditionalCheckFailedException':
                logger.error(f"Error saving event '{event.title}': {e}")
                raise

        names = {}
        values = {}
        set_clauses = []
        remove_clauses = []
        for index, name in enumerate(MUTABLE_EVENT_FIELDS):
            names[f"#f{index}"] = name
            if name in item:
                values[f":v{index}"] = item[name]
                set_clauses.append(f"#f{index} = :v{index}")
            else:
                remove_clauses.append(f"#f{index}")

        expression = 'SET ' + ', '.join(set_clauses)
        if remove_clauses:
            expression += ' REMOVE ' + ', '.join(remove_clauses)

        try:
            response = self.events.update_item(
                Key={'uniqueness_hash': uniqueness_hash},
                UpdateExpression=expression,
                ExpressionAttributeNames=names,
                ExpressionAttributeValues=values,
                ReturnValues='ALL_NEW'
            )
        except ClientError as e:
            logger.error(f"Error updating event '{event.title}': {e}")
            raise

        logger.debug(f"Updated event {uniqueness_hash[:12]}: {event.title}")
        return self._item_to_event(response['Attributes']), False

    def get_event(self, uniqueness_hash: str) -> Optional[PersistedEvent]:
        response = self.events.get_item(Key={'uniqueness_hash': uniqueness_hash})
        item = response.get('Item')
        return self._item_to_event(item) if item else None

    # Conversion

    def _item_to_site(self, item: dict) -> Optional[MunicipalitySite]:
        """
        Convert DynamoDB item to MunicipalitySite.

        Returns:
            MunicipalitySite or None if conversion fails
        """
        try:
            selectors = None
            if item.get('event_selectors'):
                try:
                    selectors = SelectorSet.from_json(item['event_selectors'])
                except ValueError as e:
                    logger.warning(f"Ignoring malformed selectors for {item['id']}: {e}")

            lat = _from_decimal(item.get('lat'))
            lon = _from_decimal(item.get('lon'))
            distance = _from_decimal(item.get('distance_from_home'))
            if distance is None:
                distance = distance_or_none(lat, lon, self.home_lat, self.home_lon)

            return MunicipalitySite(
                id=item['id'],
                name=item['name'],
                lat=lat,
                lon=lon,
                website_url=item.get('website_url'),
                event_page_url=item.get('event_page_url'),
                event_page_pattern=item.get('event_page_pattern'),
                cms_type=CmsFamily.from_value(item.get('cms_type')),
                api_endpoint=item.get('api_endpoint'),
                event_selectors=selectors,
                date_format=item.get('date_format'),
                language=item.get('language') or 'de',
                requires_javascript=bool(item.get('requires_javascript', False)),
                event_page_confidence=_from_decimal(item.get('event_page_confidence')),
                scrape_status=ScrapeStatus.from_value(item.get('scrape_status')),
                last_scraped=_parse_timestamp(item.get('last_scraped')),
                last_successful=_parse_timestamp(item.get('last_successful')),
                scrape_error=item.get('scrape_error'),
                event_count=int(item.get('event_count', 0)),
                distance_from_home=distance,
            )
        except (KeyError, ValueError, TypeError) as e:
            logger.warning(f"Failed to convert item to MunicipalitySite: {e}")
            return None

    def _site_to_item(self, site: MunicipalitySite) -> dict:
        item = {
            'id': site.id,
            'name': site.name,
            'cms_type': site.cms_type.value,
            'language': site.language,
            'requires_javascript': site.requires_javascript,
            'scrape_status': site.scrape_status.value,
            'event_count': site.event_count,
        }
        optional = {
            'lat': site.lat,
            'lon': site.lon,
            'website_url': site.website_url,
            'event_page_url': site.event_page_url,
            'event_page_pattern': site.event_page_pattern,
            'api_endpoint': site.api_endpoint,
            'event_selectors': site.event_selectors.to_json() if site.event_selectors else None,
            'date_format': site.date_format,
            'event_page_confidence': site.event_page_confidence,
            'last_scraped': site.last_scraped,
            'last_successful': site.last_successful,
            'scrape_error': site.scrape_error,
            'distance_from_home': site.distance_from_home,
        }
        for name, value in optional.items():
            if value is not None:
                item[name] = _to_dynamo(value)
        return item

    def _event_to_item(self, event: PersistedEvent) -> dict:
        """
        Convert PersistedEvent to DynamoDB item.

        Optional fields are only added if present.
        """
        item = {
            'uniqueness_hash': event.uniqueness_hash,
            'source': event.source,
            'source_event_id': event.source_event_id,
            'title': event.title,
            'title_norm': event.title_norm,
            'start_time': _to_dynamo(event.start_time),
            'category': event.category,
            'lang': event.lang,
            'country': event.country,
            'ttl': event.ttl,
        }
        optional = {
            'end_time': event.end_time,
            'description': event.description,
            'venue_name': event.venue_name,
            'city': event.city,
            'url': event.url,
            'image_url': event.image_url,
            'municipality_id': event.municipality_id,
            'lat': event.lat,
            'lon': event.lon,
            'price': event.price,
            'organizer': event.organizer,
        }
        for name, value in optional.items():
            if value is not None:
                item[name] = _to_dynamo(value)
        return item

    def _item_to_event(self, item: dict) -> PersistedEvent:
        return PersistedEvent(
            uniqueness_hash=item['uniqueness_hash'],
            source=item['source'],
            source_event_id=item['source_event_id'],
            title=item['title'],
            title_norm=item['title_norm'],
            start_time=_parse_timestamp(item['start_time']),
            end_time=_parse_timestamp(item.get('end_time')),
            description=item.get('description'),
            venue_name=item.get('venue_name'),
            city=item.get('city'),
            url=item.get('url'),
            image_url=item.get('image_url'),
            category=item['category'],
            municipality_id=item.get('municipality_id'),
            lat=_from_decimal(item.get('lat')),
            lon=_from_decimal(item.get('lon')),
            price=item.get('price'),
            organizer=item.get('organizer'),
            lang=item.get('lang', 'de'),
            country=item.get('country', 'CH'),
            ttl=int(item.get('ttl', 0)),
        )
