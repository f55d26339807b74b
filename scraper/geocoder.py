"""Nominatim geocoding of event addresses."""
import logging
import time
from typing import Dict, Optional, Tuple

import requests

from processor.models import GeoPoint
from scraper.http_fetcher import RequestThrottle

logger = logging.getLogger(__name__)

NOMINATIM_URL = 'https://nominatim.openstreetmap.org/search'
GEOCODE_TIMEOUT = 10
CACHE_TTL_SECONDS = 24 * 60 * 60

# Nominatim usage policy: at most one request per second per application
_NOMINATIM_THROTTLE = RequestThrottle(1.0)


class NominatimGeocoder:
    """Geocoder backed by OpenStreetMap Nominatim with an in-memory cache."""

    def __init__(
        self,
        email: Optional[str] = None,
        session: Optional[requests.Session] = None,
        throttle: Optional[RequestThrottle] = None,
        cache_ttl: float = CACHE_TTL_SECONDS,
        clock=time.monotonic
    ):
        self.email = email
        self.session = session or requests.Session()
        self.session.headers.update({'User-Agent': 'SwissEventsBot/1.0 (municipal event aggregation)'})
        self.throttle = throttle or _NOMINATIM_THROTTLE
        self.cache_ttl = cache_ttl
        self._clock = clock
        self._cache: Dict[str, Tuple[float, Optional[GeoPoint]]] = {}

    def lookup(self, address: Optional[str]) -> Optional[GeoPoint]:
        """
        Resolve an address to coordinates.

        Args:
            address: Free-form address string

        Returns:
            GeoPoint, or None when nothing was found or the lookup failed
        """
        if not address or not address.strip():
            return None

        key = address.strip().lower()
        cached = self._cache.get(key)
        if cached and self._clock() - cached[0] < self.cache_ttl:
            return cached[1]

        point = self._query(address.strip())
        self._cache[key] = (self._clock(), point)
        return point

    def _query(self, address: str) -> Optional[GeoPoint]:
        params = {
            'q': address,
            'format': 'json',
            'limit': 1,
            'countrycodes': 'ch',
        }
        if self.email:
            params['email'] = self.email

        self.throttle.wait()
        try:
            response = self.session.get(NOMINATIM_URL, params=params, timeout=GEOCODE_TIMEOUT)
            response.raise_for_status()
            results = response.json()
        except (requests.RequestException, ValueError) as e:
            logger.warning(f"Geocoding failed for '{address}': {e}")
            return None

        if not results:
            logger.debug(f"No geocoding result for '{address}'")
            return None

        try:
            return GeoPoint(lat=float(results[0]['lat']), lon=float(results[0]['lon']))
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Unexpected geocoding payload for '{address}': {e}")
            return None
