"""AWS Lambda handler for the listing ingestion pipeline."""
import json
import logging
import time
from typing import Dict, Any

from monitoring.alerting import format_scraper_alert
from monitoring.health_monitor import HealthMonitor
from pipeline.config import Settings
from pipeline.orchestrator import build_orchestrator, build_registry
from processor.models import Severity
from storage.event_store import DatastoreError

# Attributes every LogRecord carries; anything else came in through extra=
_RECORD_ATTRS = set(vars(logging.LogRecord('', 0, '', 0, '', (), None))) | {'message', 'asctime'}


# Configure JSON logging
class JsonFormatter(logging.Formatter):
    """Custom JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data = {
            'timestamp': self.formatTime(record),
            'level': record.levelname,
            'message': record.getMessage(),
            'logger': record.name
        }

        for key, value in record.__dict__.items():
            if key not in _RECORD_ATTRS and key not in log_data:
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

    # Remove existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    root_logger.addHandler(handler)

    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))


def _response(status_code: int, body: Dict[str, Any]) -> Dict[str, Any]:
    return {'statusCode': status_code, 'body': json.dumps(body)}


def _scrape(settings: Settings, event: Dict[str, Any]) -> Dict[str, Any]:
    orchestrator = build_orchestrator(settings)
    summary = orchestrator.run()

    if summary.sources_failed or summary.events_inserted >= 10:
        orchestrator.registry.alert_gateway.send(format_scraper_alert(
            'scheduled run',
            summary.events_inserted,
            summary.duplicates_skipped,
            summary.events_rejected,
            summary.sources_failed
        ))

    return {
        'message': 'Scrape completed successfully',
        'statistics': {
            'sources_processed': summary.sources_processed,
            'sources_failed': summary.sources_failed,
            'events_inserted': summary.events_inserted,
            'duplicates_skipped': summary.duplicates_skipped,
            'events_rejected': summary.events_rejected
        },
        'errors': [f"{o.source_name}: {o.error}" for o in summary.outcomes if not o.success]
    }


def _health_check(settings: Settings, event: Dict[str, Any]) -> Dict[str, Any]:
    registry = build_registry(settings)
    monitor = HealthMonitor(registry, registry.alert_gateway)
    sources, issues = monitor.sweep(dispatch=bool(event.get('alert', True)))
    return {
        'message': 'Health check completed',
        'alert_sent': monitor.alert_sent,
        'statistics': {
            'sources_checked': len(sources),
            'high_issues': sum(1 for i in issues if i.severity == Severity.HIGH),
            'medium_issues': sum(1 for i in issues if i.severity == Severity.MEDIUM)
        },
        'issues': [
            {'severity': i.severity.value, 'source': i.source_name, 'type': i.type, 'message': i.message}
            for i in issues
        ]
    }


def _discover(settings: Settings, event: Dict[str, Any]) -> Dict[str, Any]:
    orchestrator = build_orchestrator(settings)
    registered = orchestrator.discover(event.get('businesses', []))
    return {
        'message': 'Discovery completed',
        'statistics': {'sources_registered': len(registered)},
        'sources': [
            {'source_id': s.source_id, 'name': s.name, 'booking_system': s.booking_system}
            for s in registered
        ]
    }


ACTIONS = {
    'scrape': _scrape,
    'health_check': _health_check,
    'discover': _discover,
}


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Main Lambda handler function.

    Args:
        event: EventBridge event payload; 'action' selects scrape (default),
            health_check or discover
        context: Lambda context object

    Returns:
        Response dict with statusCode and summary statistics
    """
    settings = Settings.from_env()

    setup_logging(settings.log_level)
    logger = logging.getLogger(__name__)

    event = event or {}
    action = event.get('action', 'scrape')
    start_time = time.time()
    logger.info(
        "Lambda execution started",
        extra={
            'action': action,
            'events_table': settings.events_table_name,
            'sources_table': settings.sources_table_name
        }
    )

    handler = ACTIONS.get(action)
    if handler is None:
        logger.error(f"Unknown action: {action}")
        return _response(400, {
            'message': f"Unknown action: {action}",
            'allowed_actions': sorted(ACTIONS)
        })

    try:
        body = handler(settings, event)
    except DatastoreError as e:
        duration = time.time() - start_time
        logger.error(
            f"Datastore unavailable: {str(e)}",
            extra={'duration_seconds': round(duration, 2), 'error_type': type(e).__name__},
            exc_info=True
        )
        return _response(500, {
            'message': 'Datastore unavailable',
            'error': str(e),
            'error_type': type(e).__name__,
            'note': 'Previously stored events are unchanged',
            'duration_seconds': round(duration, 2)
        })
    except Exception as e:
        duration = time.time() - start_time
        logger.error(
            f"Lambda execution failed: {str(e)}",
            extra={'duration_seconds': round(duration, 2), 'error_type': type(e).__name__},
            exc_info=True
        )
        return _response(500, {
            'message': f"{action} failed",
            'error': str(e),
            'error_type': type(e).__name__,
            'duration_seconds': round(duration, 2)
        })

    duration = time.time() - start_time
    body.setdefault('statistics', {})['duration_seconds'] = round(duration, 2)
    logger.info(
        "Lambda execution completed successfully",
        extra={'action': action, **body['statistics']}
    )
    return _response(200, body)
