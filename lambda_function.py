"""AWS Lambda handler for Swiss municipal event scraping."""
import json
import logging
import os
import time
from dataclasses import asdict
from typing import Any, Dict, Optional

from orchestrator.batch_runner import BatchAlreadyRunningError, BatchRunner, BatchState
from orchestrator.discovery import EventPageDiscoverer
from orchestrator.municipal_scraper import MunicipalScraper
from processor.event_processor import EventNormalizer
from scraper.geocoder import NominatimGeocoder
from scraper.headless import DisabledRenderer, PlaywrightRenderer
from scraper.http_fetcher import HttpFetcher, RequestThrottle
from storage.dynamodb_manager import DynamoDBManager

MODES = ('scrape', 'discover')

# Attributes present on every LogRecord; anything else came in through extra=
_RESERVED_ATTRS = set(vars(logging.LogRecord('', 0, '', 0, '', (), None))) | {'message', 'asctime'}

# Shared across invocations of a warm container
BATCH_STATE = BatchState()


# Configure JSON logging
class JsonFormatter(logging.Formatter):
    """JSON formatter that also emits structured context passed via extra=."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data = {
            'timestamp': self.formatTime(record),
            'level': record.levelname,
            'message': record.getMessage(),
            'logger': record.name
        }

        for key, value in vars(record).items():
            if key not in _RESERVED_ATTRS and not key.startswith('_'):
                log_data[key] = value

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(log_level: str = 'INFO') -> None:
    """
    Configure logging with JSON formatter.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
    """
    root_logger = logging.getLogger()

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    root_logger.addHandler(handler)

    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


def _env_float(name: str) -> Optional[float]:
    value = os.environ.get(name)
    return float(value) if value not in (None, '') else None


def load_config() -> Dict[str, Any]:
    """Read configuration from environment variables."""
    return {
        'municipalities_table': os.environ.get('MUNICIPALITIES_TABLE', 'municipalities'),
        'events_table': os.environ.get('EVENTS_TABLE', 'municipal-events'),
        'log_level': os.environ.get('LOG_LEVEL', 'INFO'),
        'timeout_seconds': int(os.environ.get('TIMEOUT_SECONDS', '20')),
        'politeness_delay_seconds': float(os.environ.get('POLITENESS_DELAY_SECONDS', '2')),
        'request_interval_seconds': float(os.environ.get('REQUEST_INTERVAL_SECONDS', '1.5')),
        'headless_enabled': _env_bool('HEADLESS_ENABLED', True),
        'headless_timeout_seconds': int(os.environ.get('HEADLESS_TIMEOUT_SECONDS', '30')),
        'geocoding_enabled': _env_bool('GEOCODING_ENABLED', False),
        'nominatim_email': os.environ.get('NOMINATIM_EMAIL'),
        'home_lat': _env_float('HOME_LAT'),
        'home_lon': _env_float('HOME_LON'),
        'default_limit': int(os.environ.get('DEFAULT_LIMIT', '10')),
        'default_max_distance_km': float(os.environ.get('DEFAULT_MAX_DISTANCE_KM', '50')),
    }


def build_runner(config: Dict[str, Any], state: BatchState = BATCH_STATE) -> BatchRunner:
    """Wire the store, scraper and discoverer from configuration."""
    store = DynamoDBManager(
        municipalities_table=config['municipalities_table'],
        events_table=config['events_table'],
        home_lat=config['home_lat'],
        home_lon=config['home_lon'],
    )
    fetcher = HttpFetcher(
        timeout=config['timeout_seconds'],
        throttle=RequestThrottle(config['request_interval_seconds']),
    )
    geocoder = NominatimGeocoder(email=config['nominatim_email']) if config['geocoding_enabled'] else None
    renderer = PlaywrightRenderer() if config['headless_enabled'] else DisabledRenderer()

    scraper = MunicipalScraper(
        fetcher=fetcher,
        store=store,
        normalizer=EventNormalizer(geocoder=geocoder),
        renderer=renderer,
        render_timeout_ms=config['headless_timeout_seconds'] * 1000,
    )
    return BatchRunner(
        store=store,
        scraper=scraper,
        discoverer=EventPageDiscoverer(fetcher),
        state=state,
        delay_seconds=config['politeness_delay_seconds'],
    )


def _error_response(status_code: int, message: str, error: Exception, duration: float) -> Dict[str, Any]:
    return {
        'statusCode': status_code,
        'body': json.dumps({
            'message': message,
            'error': str(error),
            'error_type': type(error).__name__,
            'duration_seconds': round(duration, 2)
        })
    }


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Main Lambda handler function.

    The payload may set 'mode' (scrape or discover), 'limit' and
    'max_distance_km'; configuration defaults apply otherwise. An explicit
    null 'max_distance_km' disables the distance filter.

    Args:
        event: EventBridge or manual invocation payload
        context: Lambda context object

    Returns:
        Response dict with statusCode and batch statistics
    """
    config = load_config()
    setup_logging(config['log_level'])
    logger = logging.getLogger(__name__)

    payload = event or {}
    start_time = time.time()

    try:
        mode = payload.get('mode', 'scrape')
        if mode not in MODES:
            raise ValueError(f"Unknown mode '{mode}', expected one of {', '.join(MODES)}")
        limit = int(payload.get('limit', config['default_limit']))
        max_distance_km = payload.get('max_distance_km', config['default_max_distance_km'])
        if max_distance_km is not None:
            max_distance_km = float(max_distance_km)
    except (TypeError, ValueError) as e:
        logger.error(f"Invalid invocation payload: {e}")
        return _error_response(400, 'Invalid invocation payload', e, time.time() - start_time)

    logger.info(
        "Lambda execution started",
        extra={
            'mode': mode,
            'limit': limit,
            'max_distance_km': max_distance_km,
            'municipalities_table': config['municipalities_table'],
            'events_table': config['events_table']
        }
    )

    try:
        runner = build_runner(config)
        if mode == 'discover':
            result = runner.discover_batch(limit=limit, max_distance_km=max_distance_km)
        else:
            result = runner.scrape_batch(limit=limit, max_distance_km=max_distance_km)
    except BatchAlreadyRunningError as e:
        logger.warning(f"Batch rejected: {e}")
        return _error_response(409, 'Batch already in progress', e, time.time() - start_time)
    except Exception as e:
        duration = time.time() - start_time
        logger.error(
            f"Lambda execution failed: {str(e)}",
            extra={
                'duration_seconds': round(duration, 2),
                'error_type': type(e).__name__
            },
            exc_info=True
        )
        return _error_response(500, 'Batch failed', e, duration)

    duration = time.time() - start_time
    logger.info(
        "Lambda execution completed successfully",
        extra={
            'duration_seconds': round(duration, 2),
            'success_count': result.success_count,
            'failed_count': result.failed_count,
            'total_events': result.total_events
        }
    )

    return {
        'statusCode': 200,
        'body': json.dumps({
            'message': f"{mode.capitalize()} batch completed",
            'statistics': {
                'success_count': result.success_count,
                'failed_count': result.failed_count,
                'total_events': result.total_events,
                'duration_seconds': round(duration, 2)
            },
            'sites': [asdict(site) for site in result.sites]
        })
    }
