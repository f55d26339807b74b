"""Date parsing for Swiss municipal event listings."""
import re
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple
from zoneinfo import ZoneInfo

SWISS_TZ = ZoneInfo('Europe/Zurich')

MIN_PLAUSIBLE_YEAR = 2000
MAX_YEARS_AHEAD = 10

MONTH_NAMES = {
    # German
    'januar': 1, 'jänner': 1, 'jan': 1,
    'februar': 2, 'feb': 2,
    'märz': 3, 'maerz': 3, 'mär': 3, 'mrz': 3,
    'april': 4, 'apr': 4,
    'mai': 5,
    'juni': 6, 'jun': 6,
    'juli': 7, 'jul': 7,
    'august': 8, 'aug': 8,
    'september': 9, 'sept': 9, 'sep': 9,
    'oktober': 10, 'okt': 10,
    'november': 11, 'nov': 11,
    'dezember': 12, 'dez': 12,
    # French
    'janvier': 1, 'février': 2, 'fevrier': 2, 'mars': 3, 'avril': 4,
    'juin': 6, 'juillet': 7, 'août': 8, 'aout': 8, 'septembre': 9,
    'octobre': 10, 'novembre': 11, 'décembre': 12, 'decembre': 12,
    # Italian
    'gennaio': 1, 'febbraio': 2, 'marzo': 3, 'aprile': 4, 'maggio': 5,
    'giugno': 6, 'luglio': 7, 'agosto': 8, 'settembre': 9, 'ottobre': 10,
    'dicembre': 12,
}

RELATIVE_DAYS = {
    'heute': 0, 'today': 0, "aujourd'hui": 0, 'oggi': 0,
    'morgen': 1, 'tomorrow': 1, 'demain': 1, 'domani': 1,
    'übermorgen': 2, 'uebermorgen': 2, 'après-demain': 2, 'dopodomani': 2,
}

_TIME = r'(?:[,\s]+(?:um\s+|ab\s+|à\s+|alle\s+)?(\d{1,2})[:.h](\d{2})(?!\.?\d)(?:\s*(?:uhr|h))?)?'

ISO_PATTERN = re.compile(
    r'^(\d{4})-(\d{2})-(\d{2})'
    r'(?:[T\s](\d{2}):(\d{2})(?::(\d{2})(?:\.\d+)?)?)?'
    r'\s*(Z|[+-]\d{2}:?\d{2})?',
    re.IGNORECASE
)
SWISS_PATTERN = re.compile(r'(?<!\d)(\d{1,2})\.(\d{1,2})\.(\d{4}|\d{2})(?!\d)' + _TIME, re.IGNORECASE)
_MONTH_ALTERNATION = '|'.join(sorted((re.escape(m) for m in MONTH_NAMES), key=len, reverse=True))
LONG_FORM_PATTERN = re.compile(
    r'(?<!\d)(\d{1,2})\.?\s*(' + _MONTH_ALTERNATION + r')\.?\s+(\d{4})(?!\d)' + _TIME,
    re.IGNORECASE
)
ISO_TOKEN_PATTERN = re.compile(r'(?<!\d)(\d{4})-(\d{2})-(\d{2})(?:[T\s](\d{2}):(\d{2}))?')

FALLBACK_FORMATS = [
    '%d/%m/%Y',
    '%d/%m/%Y %H:%M',
    '%Y/%m/%d',
    '%d-%m-%Y',
    '%d %B %Y',
    '%B %d, %Y',
    '%b %d, %Y',
    '%a, %d %b %Y %H:%M:%S',
]


def _build(year, month, day, hour=0, minute=0, second=0, tzinfo=SWISS_TZ) -> Optional[datetime]:
    """Construct a datetime, returning None when a component is out of range."""
    try:
        return datetime(int(year), int(month), int(day), int(hour or 0),
                        int(minute or 0), int(second or 0), tzinfo=tzinfo)
    except (TypeError, ValueError):
        return None


def _offset(text: Optional[str]):
    """Timezone for an ISO offset suffix; None when the offset is out of range."""
    if not text:
        return SWISS_TZ
    if text.upper() == "Z":
        return timezone.utc
    sign = -1 if text[0] == "-" else 1
    digits = text[1:].replace(":", "")
    try:
        return timezone(sign * timedelta(hours=int(digits[:2]), minutes=int(digits[2:4] or 0)))
    except ValueError:
        return None


def _expand_year(year: str) -> int:
    value = int(year)
    return 2000 + value if len(year) == 2 else value


class DateParser:
    """
    Converts event date text into timezone-aware datetimes.

    Naive dates are interpreted in Swiss local time. Unparseable input
    yields None, never the current time.
    """

    def __init__(self, now=None):
        self._now = now or (lambda: datetime.now(SWISS_TZ))

    def parse(self, text: Optional[str], hint: Optional[str] = None) -> Optional[datetime]:
        """
        Parse a single date (and optional time) from text.

        Args:
            text: Date text as found on the page
            hint: Optional stored format hint such as 'dd.mm.yyyy'

        Returns:
            Timezone-aware datetime or None
        """
        if not text:
            return None
        cleaned = re.sub(r'\s+', ' ', str(text)).strip()
        if not cleaned:
            return None

        match = ISO_PATTERN.match(cleaned)
        if match:
            year, month, day, hour, minute, second, tz = match.groups()
            tzinfo = _offset(tz)
            if tzinfo is None:
                return None
            return _build(year, month, day, hour, minute, second, tzinfo)

        match = SWISS_PATTERN.search(cleaned)
        if match:
            day, month, year, hour, minute = match.groups()
            return _build(_expand_year(year), month, day, hour, minute)

        if hint and hint.lower() == 'dd.mm.yyyy':
            parsed = self._parse_dotted(cleaned)
            if parsed:
                return parsed

        match = LONG_FORM_PATTERN.search(cleaned)
        if match:
            day, month_name, year, hour, minute = match.groups()
            return _build(year, MONTH_NAMES[month_name.lower()], day, hour, minute)

        relative = RELATIVE_DAYS.get(cleaned.lower())
        if relative is not None:
            today = self._now()
            target = today + timedelta(days=relative)
            return _build(target.year, target.month, target.day, tzinfo=today.tzinfo or SWISS_TZ)

        for fmt in FALLBACK_FORMATS:
            try:
                parsed = datetime.strptime(cleaned, fmt)
            except ValueError:
                continue
            return parsed.replace(tzinfo=SWISS_TZ)

        return None

    @staticmethod
    def _parse_dotted(text: str) -> Optional[datetime]:
        parts = [p.strip() for p in text.split('.')]
        if len(parts) < 3:
            return None
        try:
            day, month = int(parts[0]), int(parts[1])
            year = _expand_year(parts[2][:4].strip())
        except ValueError:
            return None
        return _build(year, month, day)

    def extract_dates(self, text: Optional[str]) -> Tuple[Optional[datetime], Optional[datetime]]:
        """
        Find every date-shaped token in free text.

        Returns:
            (start, end) where end is the second earliest date, if any
        """
        if not text:
            return None, None

        dates: List[datetime] = []
        max_year = self._now().year + MAX_YEARS_AHEAD

        for match in SWISS_PATTERN.finditer(text):
            day, month, year, hour, minute = match.groups()
            dates.append(_build(_expand_year(year), month, day, hour, minute))
        for match in ISO_TOKEN_PATTERN.finditer(text):
            year, month, day, hour, minute = match.groups()
            dates.append(_build(year, month, day, hour, minute))
        for match in LONG_FORM_PATTERN.finditer(text):
            day, month_name, year, hour, minute = match.groups()
            dates.append(_build(year, MONTH_NAMES[month_name.lower()], day, hour, minute))

        valid = sorted(
            d for d in dates
            if d is not None and MIN_PLAUSIBLE_YEAR <= d.year <= max_year
        )
        start = valid[0] if valid else None
        end = valid[1] if len(valid) > 1 else None
        return start, end


def has_date_token(text: str) -> bool:
    """True when text contains something that looks like a date."""
    return bool(
        SWISS_PATTERN.search(text)
        or ISO_TOKEN_PATTERN.search(text)
        or LONG_FORM_PATTERN.search(text)
    )
