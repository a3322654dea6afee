"""Periodic health sweep over the source registry."""
import logging
from datetime import datetime, timezone
from typing import Iterable, List, Optional

from processor.models import HealthIssue, Severity, Source

logger = logging.getLogger(__name__)

FAILURE_THRESHOLD = 3
STALE_HOURS = 48
STALE_WARNING_HOURS = 24

# AI-verified website sources run on a different cadence
SKIPPED_SYSTEMS = ('website-verified',)


def hours_since(moment: Optional[datetime], now: datetime) -> float:
    if moment is None:
        return float('inf')
    return (now - moment).total_seconds() / 3600


def check_health(
    sources: Iterable[Source],
    now: Optional[datetime] = None,
    failure_threshold: int = FAILURE_THRESHOLD,
    skip_systems: Iterable[str] = SKIPPED_SYSTEMS
) -> List[HealthIssue]:
    """
    Derive health issues from source records.

    Args:
        sources: Sources to inspect
        now: Reference time, defaults to the current UTC time
        failure_threshold: Consecutive failures that count as HIGH

    Returns:
        List of HealthIssue, in source order
    """
    now = now or datetime.now(timezone.utc)
    skip_systems = tuple(skip_systems)
    issues = []

    for source in sources:
        if source.booking_system in skip_systems:
            continue

        failures = source.consecutive_failures or 0
        hours = hours_since(source.last_scraped, now)

        if failures >= failure_threshold:
            issues.append(HealthIssue(
                Severity.HIGH, source.name, 'consecutive-failures',
                f"{failures} consecutive failures. Last error: {source.last_error or 'unknown'}"
            ))

        if hours > STALE_HOURS:
            message = (f"Last scraped {round(hours)}h ago ({source.last_scraped.isoformat()})"
                       if source.last_scraped else 'Never scraped')
            issues.append(HealthIssue(Severity.HIGH, source.name, 'stale', message))

        if source.last_scrape_success and not source.last_item_count:
            issues.append(HealthIssue(
                Severity.MEDIUM, source.name, 'zero-result',
                'Last scrape "succeeded" with 0 items - possible silent failure'
            ))

        if STALE_WARNING_HOURS < hours <= STALE_HOURS:
            issues.append(HealthIssue(
                Severity.MEDIUM, source.name, 'stale-warning', f"Last scraped {round(hours)}h ago"
            ))

    return issues


def _by_severity(issues: List[HealthIssue], severity: Severity) -> List[HealthIssue]:
    return [issue for issue in issues if issue.severity == severity]


def format_report(sources: List[Source], issues: List[HealthIssue], now: Optional[datetime] = None) -> str:
    """Render the issue list and the per-source status table."""
    now = now or datetime.now(timezone.utc)
    checked = [s for s in sources if s.booking_system not in SKIPPED_SYSTEMS]
    lines = [
        '=' * 60,
        'SCRAPER HEALTH CHECK',
        '=' * 60,
        f"Checked: {len(checked)} active sources",
        f"Time: {now.isoformat(timespec='seconds')}",
        '=' * 60,
    ]

    high = _by_severity(issues, Severity.HIGH)
    medium = _by_severity(issues, Severity.MEDIUM)
    if not issues:
        lines.append('')
        lines.append('All sources healthy!')
    for label, group in (('HIGH', high), ('MEDIUM', medium)):
        if group:
            lines.append('')
            lines.append(f"{label} SEVERITY ({len(group)}):")
            lines.extend(f"   * [{i.type}] {i.source_name}: {i.message}" for i in group)

    lines.append('')
    lines.append('Source Status:')
    for source in checked:
        status = 'OK ' if source.last_scrape_success else 'ERR'
        count = '?' if source.last_item_count is None else source.last_item_count
        last = source.last_scraped.isoformat(timespec='minutes') if source.last_scraped else 'never'
        lines.append(
            f"   {status} {source.name} - {count} items, "
            f"{source.consecutive_failures or 0} failures, last: {last}"
        )
    lines.append('=' * 60)
    return '\n'.join(lines)


def format_health_alert(issues: List[HealthIssue]) -> str:
    lines = ['🏥 Scraper Health Check']
    high = _by_severity(issues, Severity.HIGH)
    medium = _by_severity(issues, Severity.MEDIUM)
    if high:
        lines.append(f"\n🔴 {len(high)} HIGH severity issues:")
        lines.extend(f"  • {i.source_name}: {i.message}" for i in high)
    if medium:
        lines.append(f"\n🟡 {len(medium)} MEDIUM severity issues:")
        lines.extend(f"  • {i.source_name}: {i.message}" for i in medium)
    return '\n'.join(lines)


class HealthMonitor:
    """Reads the registry and optionally dispatches a health alert."""

    def __init__(self, registry, alert_gateway=None, clock=None):
        self.registry = registry
        self.alert_gateway = alert_gateway
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.alert_sent = False

    def sweep(self, dispatch: bool = False):
        """
        Run one health check over all active sources.

        Whether the gateway accepted the alert is left in alert_sent.

        Args:
            dispatch: Send an alert when any issue is found

        Returns:
            Tuple of (sources, issues)
        """
        self.alert_sent = False
        sources = self.registry.list_active_sources()
        issues = check_health(sources, now=self._clock(), failure_threshold=self.registry.failure_threshold)

        high = len(_by_severity(issues, Severity.HIGH))
        logger.info(
            f"Health check found {len(issues)} issues ({high} high)",
            extra={'sources_checked': len(sources), 'high_issues': high}
        )

        if dispatch and issues and self.alert_gateway is not None:
            self.alert_sent = bool(self.alert_gateway.send(format_health_alert(issues)))
            if not self.alert_sent:
                logger.warning("Health alert was not delivered")

        return sources, issues
