"""Business-rule validator turning verified candidates into canonical events."""
import hashlib
import logging
import re
import time
from collections import OrderedDict
from datetime import date, datetime, timedelta
from typing import Iterable, List, Optional

from processor import rules
from processor.models import (
    Accepted,
    BatchValidation,
    CandidateRecord,
    CanonicalEvent,
    Rejected,
    RejectionCode,
    ValidationOutcome,
)

logger = logging.getLogger(__name__)

DATE_FORMATS = [
    '%Y-%m-%d',      # ISO 8601
    '%m/%d/%Y',      # US format
    '%m-%d-%Y',      # US format with dashes
    '%B %d, %Y',     # Full month name
    '%b %d, %Y',     # Abbreviated month name
    '%Y/%m/%d',      # Alternative ISO format
]

TIME_PATTERN = re.compile(r'^([01]?[0-9]|2[0-3]):([0-5][0-9])(:[0-5][0-9])?$')

NEEDS_TIME_REVIEW = 'needs-time-review'


def normalize_date(date_str: str) -> Optional[date]:
    """
    Parse a date string in any supported format.

    Args:
        date_str: Date string in various formats

    Returns:
        date object or None if parsing fails
    """
    if not date_str or not isinstance(date_str, str):
        return None
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(date_str.strip(), fmt).date()
        except ValueError:
            continue
    return None


def normalize_time(time_str: str) -> Optional[str]:
    """
    Normalize an HH:MM[:SS] time to zero-padded HH:MM.

    Args:
        time_str: Time string, 24-hour clock

    Returns:
        HH:MM string or None if the value is not a valid time
    """
    if not time_str or not isinstance(time_str, str):
        return None
    match = TIME_PATTERN.match(time_str.strip())
    if not match:
        return None
    return f"{int(match.group(1)):02d}:{match.group(2)}"


def normalize_key_part(value: str) -> str:
    return ' '.join((value or '').lower().split())


def slugify(value: str) -> str:
    return re.sub(r'[^a-z0-9]+', '-', value.lower()).strip('-')


def generate_event_id(title: str, start_date: str, venue_name: str, start_time: str = '') -> str:
    """
    Generate the identity key hash of an event.

    Title and venue are case and whitespace normalized so that cosmetic
    differences between runs do not produce a second record.

    Returns:
        Unique event ID (SHA256 hash)
    """
    composite = '|'.join([
        normalize_key_part(title),
        start_date,
        normalize_key_part(venue_name),
        start_time or '',
    ])
    return hashlib.sha256(composite.encode('utf-8')).hexdigest()


def add_years(day: date, years: int) -> date:
    try:
        return day.replace(year=day.year + years)
    except ValueError:
        # Feb 29 in a non-leap target year
        return day.replace(year=day.year + years, day=28)


def title_problem(title: str, venue_name: str) -> Optional[str]:
    """Return why a title can never be a listing, or None if it can."""
    stripped = title.strip()
    if len(stripped) < rules.MIN_TITLE_LENGTH:
        return f'Title too short: "{stripped}" - minimum {rules.MIN_TITLE_LENGTH} characters'
    if len(stripped) > rules.MAX_TITLE_LENGTH:
        return f'Title too long: "{stripped[:50]}..." - maximum {rules.MAX_TITLE_LENGTH} characters'
    if venue_name and normalize_key_part(stripped) == normalize_key_part(venue_name):
        return f'Title equals venue name: "{stripped}" - this is a business listing, not an event'
    rule = rules.match_forbidden_title(stripped)
    if rule:
        return f'Title matches forbidden {rule.kind} pattern: "{stripped}"'
    if rules.is_generic_single_word(stripped):
        return f'Title too generic (single short word): "{stripped}"'
    return None


class EventValidator:
    """Validator for verified candidate records."""

    MAX_DESCRIPTION_LENGTH = 2000
    TTL_DAYS = 90
    MAX_YEARS_AHEAD = 2

    def __init__(self, cluster_threshold: int = 3, today: Optional[date] = None):
        """
        Args:
            cluster_threshold: Largest allowed number of events sharing one
                (date, time, venue) slot within a batch
            today: Fixed reference date; defaults to the current date
        """
        self.cluster_threshold = cluster_threshold
        self._today = today

    @property
    def today(self) -> date:
        return self._today or date.today()

    def validate(
        self,
        candidate: CandidateRecord,
        source_url: str = '',
        category: str = 'other',
        event_type: str = 'class',
        source_tag: str = 'unknown',
        venue_id: Optional[str] = None
    ) -> ValidationOutcome:
        """
        Apply every per-candidate rule in order.

        Returns:
            Accepted with a CanonicalEvent draft, or Rejected with a code
        """
        for field_name in ('title', 'date', 'time', 'venue_name'):
            value = getattr(candidate, field_name)
            if not value or not str(value).strip():
                return Rejected(candidate, RejectionCode.MISSING_FIELD,
                                f'Missing required field: {field_name}')

        title = ' '.join(str(candidate.title).split())
        venue_name = str(candidate.venue_name).strip()

        problem = title_problem(title, venue_name)
        if problem:
            return Rejected(candidate, RejectionCode.FORBIDDEN_TITLE, problem)

        start = normalize_date(candidate.date)
        if start is None:
            return Rejected(candidate, RejectionCode.INVALID_DATE,
                            f'Invalid date format: {candidate.date}')

        start_date = start.isoformat()
        if start_date in rules.PLACEHOLDER_DATES:
            return Rejected(candidate, RejectionCode.PLACEHOLDER_DATE,
                            f'Placeholder date detected: {start_date}')

        if start < self.today - timedelta(days=1):
            return Rejected(candidate, RejectionCode.PAST_DATE,
                            f'Past date: {start_date} - events must be in the future')

        if start > add_years(self.today, self.MAX_YEARS_AHEAD):
            return Rejected(candidate, RejectionCode.DATE_TOO_FAR,
                            f'Date too far in future: {start_date} - maximum '
                            f'{self.MAX_YEARS_AHEAD} years ahead')

        for rule in rules.holiday_rules_for(title):
            if not rules.date_in_holiday_window(rule, start.month, start.day):
                return Rejected(
                    candidate, RejectionCode.HOLIDAY_DATE_MISMATCH,
                    f'Holiday date mismatch: "{title}" on {start_date} - '
                    f'{rule.keyword} events must fall in their holiday period'
                )

        start_time = normalize_time(candidate.time)
        if start_time is None:
            return Rejected(candidate, RejectionCode.INVALID_TIME,
                            f'Invalid time format: {candidate.time} - expected HH:MM or HH:MM:SS')

        tags = ['auto-scraped', source_tag, slugify(venue_name)]
        if start_time in rules.PLACEHOLDER_TIMES:
            logger.warning(
                f"[{source_tag}] Placeholder time detected for '{title}': {start_time}"
            )
            tags.append(NEEDS_TIME_REVIEW)
        tags.append(f'validated-by-{source_tag}')

        end_time = None
        if candidate.end_time:
            end_time = normalize_time(candidate.end_time)
            if end_time is None:
                logger.warning(
                    f"Dropping invalid end time for '{title}': {candidate.end_time}"
                )
        description = candidate.description if isinstance(candidate.description, str) else ''

        event = CanonicalEvent(
            event_id=generate_event_id(title, start_date, venue_name, start_time),
            title=title,
            start_date=start_date,
            start_time=start_time,
            end_time=end_time,
            venue_name=venue_name,
            venue_id=venue_id,
            category=category,
            event_type=event_type,
            source_url=source_url,
            description=description[:self.MAX_DESCRIPTION_LENGTH],
            tags=list(OrderedDict.fromkeys(tags)),
            confidence_score=float(candidate.confidence or 0.0),
            last_updated=int(time.time()),
            ttl=self._calculate_ttl(start)
        )
        return Accepted(event)

    def validate_batch(self, candidates: Iterable[CandidateRecord], **context) -> BatchValidation:
        """
        Validate a batch of candidates and drop suspicious clusters.

        Args:
            candidates: Verified candidates from one page
            **context: Keyword arguments forwarded to validate()

        Returns:
            BatchValidation with accepted events and rejections
        """
        drafts = []
        rejected = []

        for candidate in candidates:
            outcome = self.validate(candidate, **context)
            if isinstance(outcome, Accepted):
                drafts.append((candidate, outcome.event))
            else:
                rejected.append(outcome)

        accepted, suspicious = self.detect_clustering(drafts)
        rejected.extend(suspicious)

        source_tag = context.get('source_tag', 'unknown')
        logger.info(
            f"[{source_tag}] Validation complete: {len(accepted)} valid, "
            f"{len(rejected)} invalid"
        )
        for rejection in rejected:
            logger.warning(
                f"  - [{rejection.code.value}] {rejection.candidate.title or 'NO TITLE'}: "
                f"{rejection.message}"
            )

        return BatchValidation(accepted=accepted, rejected=rejected)

    def detect_clustering(self, drafts: List[tuple]):
        """
        Exclude every (date, time, venue) group larger than the threshold.

        A broken scraper stamping one slot onto many titles is the usual cause.

        Args:
            drafts: (candidate, event) pairs that passed validate()

        Returns:
            Tuple of (clean events, Rejected entries for suspicious ones)
        """
        clusters = OrderedDict()
        for candidate, event in drafts:
            key = (event.start_date, event.start_time, normalize_key_part(event.venue_name))
            clusters.setdefault(key, []).append((candidate, event))

        clean = []
        suspicious = []
        for key, members in clusters.items():
            if len(members) > self.cluster_threshold:
                logger.warning(
                    f"[CLUSTERING] Suspicious: {len(members)} events at {'|'.join(key)}"
                )
                suspicious.extend(
                    Rejected(
                        candidate, RejectionCode.CLUSTERING_SUSPICIOUS,
                        f'{len(members)} events share slot {key[0]} {key[1]} at {key[2]}'
                    )
                    for candidate, _ in members
                )
            else:
                clean.extend(event for _, event in members)

        return clean, suspicious

    def _calculate_ttl(self, event_date: date) -> int:
        """
        Calculate TTL as 90 days after event date.

        Returns:
            Unix timestamp for TTL
        """
        ttl_date = datetime.combine(event_date, datetime.min.time()) + timedelta(days=self.TTL_DAYS)
        return int(ttl_date.timestamp())
