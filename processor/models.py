"""Data models for municipal event discovery, extraction and persistence."""
import json
from dataclasses import dataclass, field, fields, replace
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Tuple


class CmsFamily(str, Enum):
    """Content management system family powering a municipal site."""
    GOVIS = 'govis'
    ONEGOV_CLOUD = 'onegov_cloud'
    TYPO3 = 'typo3'
    DRUPAL = 'drupal'
    WORDPRESS = 'wordpress'
    JOOMLA = 'joomla'
    LOCALCITIES = 'localcities'
    IWEB = 'i-web'
    CMSBOX = 'cmsbox'
    NEXTJS = 'nextjs'
    VUE = 'vue'
    ANGULAR = 'angular'
    UNKNOWN = 'unknown'

    @classmethod
    def from_value(cls, value: Optional[str]) -> 'CmsFamily':
        """Map a stored string to a family, falling back to UNKNOWN."""
        if not value:
            return cls.UNKNOWN
        try:
            return cls(value.strip().lower())
        except ValueError:
            return cls.UNKNOWN


class ScrapeStatus(str, Enum):
    PENDING = 'pending'
    ACTIVE = 'active'
    HEADLESS_ACTIVE = 'headless-active'
    FAILED = 'failed'

    @classmethod
    def from_value(cls, value: Optional[str]) -> 'ScrapeStatus':
        try:
            return cls(value) if value else cls.PENDING
        except ValueError:
            return cls.PENDING


class DiscoveryState(str, Enum):
    UNKNOWN = 'unknown'
    CANDIDATES_GENERATED = 'candidates-generated'
    VERIFYING = 'verifying'
    FOUND = 'found'
    EXHAUSTED = 'exhausted'


@dataclass(frozen=True)
class SelectorSet:
    """
    Structural selectors for event containers and their fields.

    Every field except ``container`` is a comma-separated alternation list.
    ``container`` holds ordered container guesses, tried one after another.
    """
    container: Tuple[str, ...] = ()
    title: Optional[str] = None
    date: Optional[str] = None
    location: Optional[str] = None
    description: Optional[str] = None
    organizer: Optional[str] = None

    def merged_with(self, other: Optional['SelectorSet']) -> 'SelectorSet':
        """Return a copy where the non-empty fields of ``other`` win."""
        if other is None:
            return self
        overrides = {
            f.name: getattr(other, f.name)
            for f in fields(other)
            if getattr(other, f.name)
        }
        return replace(self, **overrides)

    def to_dict(self) -> Dict[str, object]:
        data: Dict[str, object] = {}
        if self.container:
            data['container'] = list(self.container)
        for name in ('title', 'date', 'location', 'description', 'organizer'):
            value = getattr(self, name)
            if value:
                data[name] = value
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)

    @classmethod
    def from_dict(cls, data: Dict[str, object]) -> 'SelectorSet':
        container = data.get('container') or ()
        if isinstance(container, str):
            container = (container,)
        return cls(
            container=tuple(str(c) for c in container if c),
            title=data.get('title') or None,
            date=data.get('date') or None,
            location=data.get('location') or None,
            description=data.get('description') or None,
            organizer=data.get('organizer') or None,
        )

    @classmethod
    def from_json(cls, raw: Optional[str]) -> Optional['SelectorSet']:
        """
        Parse a serialized selector set.

        Returns None for empty input; raises ValueError for malformed JSON.
        """
        if not raw:
            return None
        data = json.loads(raw)
        if not isinstance(data, dict):
            raise ValueError('Selector set must be a JSON object')
        return cls.from_dict(data)


@dataclass
class MunicipalitySite:
    """Municipality record as read from the store for one cycle."""
    id: str
    name: str
    lat: Optional[float] = None
    lon: Optional[float] = None
    website_url: Optional[str] = None
    event_page_url: Optional[str] = None
    event_page_pattern: Optional[str] = None
    cms_type: CmsFamily = CmsFamily.UNKNOWN
    api_endpoint: Optional[str] = None
    event_selectors: Optional[SelectorSet] = None
    date_format: Optional[str] = None
    language: str = 'de'
    requires_javascript: bool = False
    event_page_confidence: Optional[float] = None
    scrape_status: ScrapeStatus = ScrapeStatus.PENDING
    last_scraped: Optional[datetime] = None
    last_successful: Optional[datetime] = None
    scrape_error: Optional[str] = None
    event_count: int = 0
    distance_from_home: Optional[float] = None


@dataclass
class ExtractedEvent:
    """Event candidate produced by an extraction strategy or the API adapter."""
    title: str
    start_date: datetime
    end_date: Optional[datetime] = None
    description: Optional[str] = None
    location: Optional[str] = None
    address: Optional[str] = None
    url: Optional[str] = None
    organizer: Optional[str] = None
    category: Optional[str] = None
    price: Optional[str] = None
    image_url: Optional[str] = None
    lat: Optional[float] = None
    lon: Optional[float] = None


@dataclass
class StrategyResult:
    """Outcome of a single extraction strategy."""
    events: List[ExtractedEvent]
    confidence: float
    method: str
    errors: List[str] = field(default_factory=list)


@dataclass
class PersistedEvent:
    """Canonical event record, keyed by its uniqueness hash."""
    uniqueness_hash: str
    source: str
    source_event_id: str
    title: str
    title_norm: str
    start_time: datetime
    end_time: Optional[datetime]
    description: Optional[str]
    venue_name: Optional[str]
    city: Optional[str]
    url: Optional[str]
    image_url: Optional[str]
    category: str
    municipality_id: Optional[str]
    lat: Optional[float] = None
    lon: Optional[float] = None
    price: Optional[str] = None
    organizer: Optional[str] = None
    lang: str = 'de'
    country: str = 'CH'
    ttl: int = 0


@dataclass
class CandidateLink:
    """URL that may be a municipality's event listing."""
    url: str
    source: str
    score: int
    text: Optional[str] = None


@dataclass
class DiscoveryResult:
    state: DiscoveryState
    event_page_url: Optional[str] = None
    event_page_pattern: Optional[str] = None
    cms_type: CmsFamily = CmsFamily.UNKNOWN
    confidence: float = 0.0
    api_endpoint: Optional[str] = None
    matched_selectors: List[str] = field(default_factory=list)
    source: Optional[str] = None
    error: Optional[str] = None
    candidates_tried: int = 0

    @property
    def success(self) -> bool:
        return self.state == DiscoveryState.FOUND


@dataclass
class SiteScrapeUpdate:
    """Field subset written back to a municipality after a scrape."""
    status: ScrapeStatus
    scraped_at: datetime
    error: Optional[str] = None
    event_count: Optional[int] = None
    successful_at: Optional[datetime] = None
    cms_type: Optional[CmsFamily] = None
    selectors: Optional[SelectorSet] = None
    api_endpoint: Optional[str] = None


@dataclass
class SiteOutcome:
    site_id: str
    name: str
    success: bool
    events: int = 0
    error: Optional[str] = None


@dataclass
class BatchResult:
    """Summary of a batch run."""
    success_count: int = 0
    failed_count: int = 0
    total_events: int = 0
    sites: List[SiteOutcome] = field(default_factory=list)


@dataclass(frozen=True)
class GeoPoint:
    lat: float
    lon: float
