"""Ordered extraction strategies turning event listing HTML into events."""
import json
import logging
import re
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Tuple
from urllib.parse import urljoin

from bs4 import BeautifulSoup, Tag
from soupsieve import SelectorSyntaxError

from processor.models import ExtractedEvent, SelectorSet, StrategyResult
from scraper.date_parser import DateParser, has_date_token
from scraper.selector_catalog import SELF_TOKENS

logger = logging.getLogger(__name__)

CONFIGURED_SELECTORS = 'cms-selectors'
STRUCTURED_DATA = 'structured-data'
COMMON_SELECTORS = 'common-selectors'
TABLE_EXTRACTION = 'table-extraction'
LIST_EXTRACTION = 'list-extraction'
CARD_EXTRACTION = 'card-extraction'
KEYWORD_HEURISTICS = 'keyword-heuristics'

CONFIDENCE = {
    CONFIGURED_SELECTORS: 0.9,
    STRUCTURED_DATA: 0.95,
    COMMON_SELECTORS: 0.8,
    TABLE_EXTRACTION: 0.75,
    LIST_EXTRACTION: 0.7,
    CARD_EXTRACTION: 0.6,
    KEYWORD_HEURISTICS: 0.5,
}

COMMON_EVENT_SELECTORS = [
    '.event', '.veranstaltung', '.termin', '.agenda-item',
    '[class*="event"]', '[class*="veranstaltung"]', '[class*="termin"]',
    'article', '.post', '.entry', '.item',
]

CARD_SELECTORS = [
    '.card', '.box', '.panel', '.tile', '.widget',
    '[class*="card"]', '[class*="box"]', '[class*="widget"]',
]

EVENT_KEYWORDS = [
    'veranstaltung', 'event', 'termin', 'anlass', 'festival', 'fest', 'konzert',
    'concert', 'markt', 'market', 'marché', 'mercato', 'workshop', 'kurs',
    'meeting', 'treffen', 'versammlung', 'ausstellung', 'manifestation',
    'spectacle', 'evento', 'concerto', 'sagra',
]

TITLE_SELECTORS = ['h1', 'h2', 'h3', 'h4', '.title', '.name', 'a']
LOCATION_SELECTORS = ['.location', '.ort', '.venue', '.address', '.lieu', '.luogo']
DESCRIPTION_SELECTORS = 'p, .description, .summary'
SKIPPED_TAGS = {'script', 'style', 'noscript', 'template', 'head', 'title', 'meta'}

MAX_TITLE_LENGTH = 200
MIN_ELEMENT_TEXT = 10


@dataclass
class ExtractionContext:
    """Per-page information the strategies need."""
    page_url: Optional[str] = None
    base_url: Optional[str] = None
    site_name: Optional[str] = None
    date_format: Optional[str] = None
    selectors: Optional[SelectorSet] = None


def safe_select(root: Tag, selector: str) -> List[Tag]:
    """soup.select that treats a malformed selector as no match."""
    try:
        return root.select(selector)
    except (SelectorSyntaxError, ValueError, NotImplementedError) as e:
        logger.debug(f"Invalid selector {selector!r}: {e}")
        return []


def select_first(root: Tag, alternation: Optional[str]) -> Optional[Tag]:
    """First element matched by a comma-separated alternation with text."""
    if not alternation:
        return None
    for selector in (s.strip() for s in alternation.split(',')):
        if not selector:
            continue
        if selector in SELF_TOKENS:
            candidates = [root]
        else:
            candidates = safe_select(root, selector)[:1]
        for element in candidates:
            if element.get_text(strip=True):
                return element
    return None


def select_text(root: Tag, alternation: Optional[str]) -> Optional[str]:
    element = select_first(root, alternation)
    return _clean(element.get_text(' ', strip=True)) if element else None


def resolve_url(href: Optional[str], page_url: Optional[str], base_url: Optional[str]) -> Optional[str]:
    """Absolute URL for href, resolved against the page then the site base."""
    if not href:
        return None
    href = href.strip()
    if not href or href.startswith(('#', 'javascript:', 'mailto:', 'tel:')):
        return None
    for base in (page_url, base_url):
        if base:
            return urljoin(base, href)
    return href if href.startswith(('http://', 'https://')) else None


def _clean(text: Optional[str]) -> Optional[str]:
    if not text:
        return None
    cleaned = re.sub(r'\s+', ' ', text.replace('\xa0', ' ')).strip()
    return cleaned or None


def _result(events: List[ExtractedEvent], method: str, errors: Optional[List[str]] = None) -> StrategyResult:
    valid = [e for e in events if e.title and e.start_date is not None]
    return StrategyResult(
        events=valid,
        confidence=CONFIDENCE[method] if valid else 0.0,
        method=method,
        errors=errors or [],
    )


class ExtractionStrategyChain:
    """
    Runs every extraction strategy in priority order and keeps the best.

    A later result replaces the running best only when its confidence is
    strictly greater and it holds at least one event. Results are never
    merged across strategies.
    """

    def __init__(self, date_parser: Optional[DateParser] = None):
        self.date_parser = date_parser or DateParser()

    def strategies(self) -> List[Tuple[str, Callable[[BeautifulSoup, ExtractionContext], StrategyResult]]]:
        return [
            (CONFIGURED_SELECTORS, self.extract_from_configured_selectors),
            (STRUCTURED_DATA, self.extract_from_structured_data),
            (COMMON_SELECTORS, self.extract_from_common_selectors),
            (TABLE_EXTRACTION, self.extract_from_tables),
            (LIST_EXTRACTION, self.extract_from_lists),
            (CARD_EXTRACTION, self.extract_from_cards),
            (KEYWORD_HEURISTICS, self.extract_with_keyword_heuristics),
        ]

    def extract(self, html: str, context: Optional[ExtractionContext] = None) -> StrategyResult:
        """
        Extract events from a listing page.

        Args:
            html: Page HTML
            context: Page URL, site base, selectors and date hint

        Returns:
            The winning StrategyResult; method 'none' when nothing matched
        """
        context = context or ExtractionContext()
        soup = BeautifulSoup(html or '', 'html.parser')
        best = StrategyResult(events=[], confidence=0.0, method='none')
        errors: List[str] = []

        for name, strategy in self.strategies():
            try:
                result = strategy(soup, context)
            except Exception as e:
                logger.warning(f"Strategy {name} failed: {e}", exc_info=True)
                errors.append(f"{name}: {e}")
                continue

            logger.info(
                f"Strategy {result.method}: {len(result.events)} events, "
                f"confidence: {result.confidence}"
            )
            if result.confidence > best.confidence and result.events:
                best = result

        best.errors = best.errors + errors
        logger.info(
            f"Best strategy: {best.method} with {len(best.events)} events "
            f"(confidence: {best.confidence})"
        )
        return best

    # Strategy 1
    def extract_from_configured_selectors(self, soup: BeautifulSoup, context: ExtractionContext) -> StrategyResult:
        selectors = context.selectors
        if not selectors or not selectors.container:
            return _result([], CONFIGURED_SELECTORS, ['No container selector defined'])

        for container_selector in selectors.container:
            events = []
            for element in safe_select(soup, container_selector):
                try:
                    event = self._event_from_selectors(element, selectors, context)
                except (ValueError, TypeError) as e:
                    logger.debug(f"Skipping container in {container_selector}: {e}")
                    continue
                if event:
                    events.append(event)
            if events:
                return _result(events, CONFIGURED_SELECTORS)

        return _result([], CONFIGURED_SELECTORS)

    def _event_from_selectors(
        self,
        element: Tag,
        selectors: SelectorSet,
        context: ExtractionContext
    ) -> Optional[ExtractedEvent]:
        title = select_text(element, selectors.title or 'h1, h2, h3')
        if not title:
            return None

        start_date = end_date = None
        time_element = element.select_one('time[datetime]')
        if time_element is not None:
            start_date = self.date_parser.parse(time_element.get('datetime'))

        date_text = select_text(element, selectors.date)
        if start_date is None and date_text:
            start_date, end_date = self.date_parser.extract_dates(date_text)
            if start_date is None:
                start_date = self.date_parser.parse(date_text, context.date_format)
        if start_date is None:
            return None

        link = element if element.name == 'a' else element.find('a', href=True)
        return ExtractedEvent(
            title=title[:MAX_TITLE_LENGTH],
            start_date=start_date,
            end_date=end_date,
            location=select_text(element, selectors.location or '.location, .ort'),
            description=select_text(element, selectors.description or 'p'),
            organizer=select_text(element, selectors.organizer or '.organizer'),
            url=resolve_url(link.get('href') if link else None, context.page_url, context.base_url),
        )

    # Strategy 2
    def extract_from_structured_data(self, soup: BeautifulSoup, context: ExtractionContext) -> StrategyResult:
        events = []
        errors = []
        for script in soup.find_all('script', attrs={'type': re.compile(r'ld\+json', re.I)}):
            raw = script.string or script.get_text()
            if not raw or not raw.strip():
                continue
            documents = parse_json_ld(raw)
            if not documents:
                errors.append('Malformed JSON-LD block')
                continue
            for node in iter_event_nodes(documents):
                try:
                    event = self._event_from_json_ld(node, context)
                except (ValueError, TypeError, AttributeError) as e:
                    logger.debug(f"Skipping JSON-LD node: {e}")
                    errors.append(f"Invalid JSON-LD event: {e}")
                    continue
                if event:
                    events.append(event)
        return _result(events, STRUCTURED_DATA, errors)

    def _event_from_json_ld(self, node: dict, context: ExtractionContext) -> Optional[ExtractedEvent]:
        name = node.get('name') or node.get('headline')
        start = node.get('startDate') or node.get('startTime')
        title = _clean(name) if isinstance(name, str) else None
        if not title or not start:
            return None

        start_date = self.date_parser.parse(str(start))
        if start_date is None:
            return None
        end = node.get('endDate') or node.get('endTime')
        end_date = self.date_parser.parse(str(end)) if end else None

        location, address, lat, lon = _json_ld_location(node.get('location'))
        image = node.get('image')
        if isinstance(image, list):
            image = image[0] if image else None
        if isinstance(image, dict):
            image = image.get('url')

        url = node.get('url')
        return ExtractedEvent(
            title=title[:MAX_TITLE_LENGTH],
            start_date=start_date,
            end_date=end_date,
            description=_clean(node.get('description')) if isinstance(node.get('description'), str) else None,
            location=location,
            address=address,
            url=resolve_url(url, context.page_url, context.base_url) if isinstance(url, str) else None,
            organizer=_json_ld_name(node.get('organizer')),
            category=_clean(node.get('category')) if isinstance(node.get('category'), str) else None,
            price=_json_ld_price(node.get('offers')),
            image_url=image if isinstance(image, str) else None,
            lat=lat,
            lon=lon,
        )

    # Strategy 3
    def extract_from_common_selectors(self, soup: BeautifulSoup, context: ExtractionContext) -> StrategyResult:
        for selector in COMMON_EVENT_SELECTORS:
            events = self._events_from_elements(safe_select(soup, selector), context)
            if events:
                return _result(events, COMMON_SELECTORS)
        return _result([], COMMON_SELECTORS)

    # Strategy 4
    def extract_from_tables(self, soup: BeautifulSoup, context: ExtractionContext) -> StrategyResult:
        events = []
        for table in soup.find_all('table'):
            rows = table.find_all('tr')
            if len(rows) < 2:
                continue
            for row in rows[1:]:
                cells = row.find_all(['td', 'th'])
                if len(cells) < 2:
                    continue
                event = self._event_from_table_row(cells, context)
                if event:
                    events.append(event)
        return _result(events, TABLE_EXTRACTION)

    def _event_from_table_row(self, cells: List[Tag], context: ExtractionContext) -> Optional[ExtractedEvent]:
        title = _clean(cells[1].get_text(' ', strip=True))
        if not title or len(title) < 3:
            return None

        start_date, end_date = self.date_parser.extract_dates(cells[0].get_text(' ', strip=True))
        if start_date is None:
            start_date = self.date_parser.parse(cells[0].get_text(' ', strip=True), context.date_format)
        if start_date is None:
            return None

        link = cells[1].find('a', href=True)
        return ExtractedEvent(
            title=title[:MAX_TITLE_LENGTH],
            start_date=start_date,
            end_date=end_date,
            location=_clean(cells[2].get_text(' ', strip=True)) if len(cells) > 2 else None,
            organizer=_clean(cells[3].get_text(' ', strip=True)) if len(cells) > 3 else None,
            url=resolve_url(link.get('href') if link else None, context.page_url, context.base_url),
        )

    # Strategy 5
    def extract_from_lists(self, soup: BeautifulSoup, context: ExtractionContext) -> StrategyResult:
        return _result(self._events_from_elements(soup.find_all('li'), context), LIST_EXTRACTION)

    # Strategy 6
    def extract_from_cards(self, soup: BeautifulSoup, context: ExtractionContext) -> StrategyResult:
        seen = set()
        elements = []
        for selector in CARD_SELECTORS:
            for element in safe_select(soup, selector):
                if id(element) not in seen:
                    seen.add(id(element))
                    elements.append(element)
        return _result(self._events_from_elements(elements, context), CARD_EXTRACTION)

    # Strategy 7
    def extract_with_keyword_heuristics(self, soup: BeautifulSoup, context: ExtractionContext) -> StrategyResult:
        matches = [
            element for element in soup.find_all(True)
            if element.name not in SKIPPED_TAGS and _looks_like_event(element.get_text(' ', strip=True))
        ]
        matched = set(id(m) for m in matches)
        # innermost matches only; an ancestor repeats its descendants' text
        innermost = [
            element for element in matches
            if not any(id(child) in matched for child in element.find_all(True))
        ]
        return _result(self._events_from_elements(innermost, context), KEYWORD_HEURISTICS)

    def _events_from_elements(self, elements: Iterable[Tag], context: ExtractionContext) -> List[ExtractedEvent]:
        events = []
        for element in elements:
            try:
                event = self.event_from_element(element, context)
            except (ValueError, TypeError) as e:
                logger.debug(f"Skipping element <{element.name}>: {e}")
                continue
            if event:
                events.append(event)
        return events

    def event_from_element(self, element: Tag, context: ExtractionContext) -> Optional[ExtractedEvent]:
        """Generic title/date/location extraction from an arbitrary subtree."""
        text = element.get_text('\n', strip=True)
        if not text or len(text) < MIN_ELEMENT_TEXT:
            return None

        start_date = end_date = None
        time_element = element.select_one('time[datetime]')
        if time_element is not None:
            start_date = self.date_parser.parse(time_element.get('datetime'))
        if start_date is None:
            start_date, end_date = self.date_parser.extract_dates(text.replace('\n', ' '))
        if start_date is None:
            return None

        title = None
        for selector in TITLE_SELECTORS:
            found = element.select_one(selector)
            candidate = _clean(found.get_text(' ', strip=True)) if found else None
            if candidate and len(candidate) < MAX_TITLE_LENGTH:
                title = candidate
                break
        if not title:
            title = (_clean(text.split('\n')[0]) or '')[:100]
        if not title:
            return None

        location = None
        for selector in LOCATION_SELECTORS:
            found = element.select_one(selector)
            if found and found.get_text(strip=True):
                location = _clean(found.get_text(' ', strip=True))
                break

        description = select_text(element, DESCRIPTION_SELECTORS)
        if description == title:
            description = None

        link = element if element.name == 'a' and element.get('href') else element.find('a', href=True)
        return ExtractedEvent(
            title=title,
            start_date=start_date,
            end_date=end_date,
            location=location,
            description=description,
            url=resolve_url(link.get('href') if link else None, context.page_url, context.base_url),
        )


def _looks_like_event(text: str) -> bool:
    if not text or len(text) < MIN_ELEMENT_TEXT:
        return False
    lowered = text.lower()
    return any(keyword in lowered for keyword in EVENT_KEYWORDS) and has_date_token(text)


def parse_json_ld(raw: str) -> List[object]:
    """Decode a JSON-LD block; concatenated objects are split and retried."""
    try:
        return [json.loads(raw)]
    except ValueError:
        pass

    documents = []
    blocks = re.split(r'\}\s*\{', raw.strip())
    for index, block in enumerate(blocks):
        if index > 0:
            block = '{' + block
        if index < len(blocks) - 1:
            block = block + '}'
        try:
            documents.append(json.loads(block))
        except ValueError:
            continue
    return documents


def is_event_type(node: object) -> bool:
    if not isinstance(node, dict):
        return False
    node_type = node.get('@type') or node.get('type')
    if isinstance(node_type, list):
        return any(isinstance(t, str) and 'event' in t.lower() for t in node_type)
    return isinstance(node_type, str) and 'event' in node_type.lower()


def iter_event_nodes(documents: Iterable[object]):
    """Yield Event-typed nodes from top-level objects, arrays and @graph lists."""
    for document in documents:
        if isinstance(document, list):
            nodes = document
        elif isinstance(document, dict) and isinstance(document.get('@graph'), list):
            nodes = document['@graph']
        else:
            nodes = [document]
        for node in nodes:
            if is_event_type(node):
                yield node


def has_event_json_ld(soup: BeautifulSoup) -> bool:
    for script in soup.find_all('script', attrs={'type': re.compile(r'ld\+json', re.I)}):
        raw = script.string or script.get_text()
        if raw and any(True for _ in iter_event_nodes(parse_json_ld(raw))):
            return True
    return False


def _json_ld_name(value) -> Optional[str]:
    if isinstance(value, list):
        value = value[0] if value else None
    if isinstance(value, dict):
        value = value.get('name')
    return _clean(value) if isinstance(value, str) else None


def _json_ld_location(location):
    """Return (venue, address, lat, lon) from a schema.org location value."""
    if isinstance(location, list):
        location = location[0] if location else None
    if isinstance(location, str):
        return _clean(location), None, None, None
    if not isinstance(location, dict):
        return None, None, None, None

    venue = location.get('name') if isinstance(location.get('name'), str) else None
    address = location.get('address')
    address_text = None
    if isinstance(address, dict):
        parts = [address.get('streetAddress')]
        locality = ' '.join(str(p) for p in (address.get('postalCode'), address.get('addressLocality')) if p)
        parts.append(locality)
        address_text = ', '.join(str(p) for p in parts if p) or None
        if not venue and isinstance(address.get('addressLocality'), str):
            venue = address['addressLocality']
    elif isinstance(address, str):
        address_text = address

    lat = lon = None
    geo = location.get('geo')
    if isinstance(geo, dict):
        try:
            lat = float(geo.get('latitude'))
            lon = float(geo.get('longitude'))
        except (TypeError, ValueError):
            lat = lon = None

    return _clean(venue), _clean(address_text), lat, lon


def _json_ld_price(offers) -> Optional[str]:
    if isinstance(offers, dict):
        offers = [offers]
    if not isinstance(offers, list):
        return None
    prices = []
    currency = 'CHF'
    for offer in offers:
        if not isinstance(offer, dict) or offer.get('price') in (None, ''):
            continue
        try:
            prices.append(float(str(offer['price']).replace(',', '.')))
        except ValueError:
            continue
        currency = offer.get('priceCurrency') or currency
    if not prices:
        return None
    low, high = min(prices), max(prices)
    if low == high:
        return f"{currency} {low:.2f}"
    return f"{currency} {low:.2f}-{high:.2f}"
