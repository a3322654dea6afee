"""Operator health check for scrape sources.

Prints every active source's status and any issues found. Exits 1 when a
HIGH severity issue exists so the command can gate CI or cron jobs.

Usage:
    python health_check.py
    python health_check.py --alert
"""
import argparse
import sys
from typing import List, Optional

from lambda_function import setup_logging
from monitoring.health_monitor import HealthMonitor, format_report
from pipeline.config import Settings
from pipeline.orchestrator import build_registry
from processor.models import Severity
from storage.event_store import DatastoreError


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Check the health of scrape sources.')
    parser.add_argument('--alert', action='store_true',
                        help='Send a Telegram alert when issues are found')
    parser.add_argument('--log-level', default=None,
                        help='Logging level (default: WARNING)')
    return parser


def main(argv: Optional[List[str]] = None, monitor: Optional[HealthMonitor] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = Settings.from_env()
    setup_logging(args.log_level or 'WARNING')

    if monitor is None:
        registry = build_registry(settings)
        monitor = HealthMonitor(registry, registry.alert_gateway)

    try:
        sources, issues = monitor.sweep(dispatch=args.alert)
    except DatastoreError as e:
        print(f"Health check failed: {e}", file=sys.stderr)
        return 1

    print(format_report(sources, issues))
    if args.alert and issues:
        print('\nAlert dispatched.' if monitor.alert_sent else '\nAlert could not be sent.')

    return 1 if any(issue.severity == Severity.HIGH for issue in issues) else 0


if __name__ == '__main__':
    sys.exit(main())
