"""Data models for listing verification, validation and source tracking."""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional, Pattern, Tuple, Union


class RejectionCode(str, Enum):
    """Per-candidate rejection reasons. None of these are fatal."""
    MISSING_FIELD = 'MISSING_FIELD'
    FORBIDDEN_TITLE = 'FORBIDDEN_TITLE'
    PLACEHOLDER_DATE = 'PLACEHOLDER_DATE'
    INVALID_DATE = 'INVALID_DATE'
    PAST_DATE = 'PAST_DATE'
    DATE_TOO_FAR = 'DATE_TOO_FAR'
    HOLIDAY_DATE_MISMATCH = 'HOLIDAY_DATE_MISMATCH'
    INVALID_TIME = 'INVALID_TIME'
    SOURCE_VERIFICATION_FAILED = 'SOURCE_VERIFICATION_FAILED'
    CLUSTERING_SUSPICIOUS = 'CLUSTERING_SUSPICIOUS'
    DUPLICATE_SKIPPED = 'DUPLICATE_SKIPPED'


class Severity(str, Enum):
    HIGH = 'HIGH'
    MEDIUM = 'MEDIUM'


@dataclass
class CandidateRecord:
    """Unverified listing proposed by the AI extractor or a scraper."""
    title: str
    date: str
    time: str
    venue_name: str
    end_time: Optional[str] = None
    description: Optional[str] = None
    source_quote: str = ''
    confidence: float = 0.0


@dataclass
class CheckFailure:
    code: RejectionCode
    message: str


@dataclass
class VerificationResult:
    """Outcome of grounding a candidate against its page text."""
    candidate: CandidateRecord
    passed: bool
    failed_checks: List[CheckFailure] = field(default_factory=list)


@dataclass
class CanonicalEvent:
    """Validated, normalized event as persisted in the events table."""
    event_id: str
    title: str
    start_date: str
    start_time: str
    venue_name: str
    category: str
    event_type: str
    source_url: str
    end_time: Optional[str] = None
    venue_id: Optional[str] = None
    description: str = ''
    tags: List[str] = field(default_factory=list)
    confidence_score: float = 0.0
    last_updated: int = 0
    ttl: int = 0


@dataclass
class Accepted:
    event: CanonicalEvent


@dataclass
class Rejected:
    candidate: CandidateRecord
    code: RejectionCode
    message: str


ValidationOutcome = Union[Accepted, Rejected]


@dataclass
class BatchValidation:
    """Result of validating one extraction batch."""
    accepted: List[CanonicalEvent]
    rejected: List[Rejected]


@dataclass
class Source:
    """Scrape target tracked by the source registry."""
    source_id: str
    name: str
    booking_system: str
    url: str
    identifier: Optional[str] = None
    priority: int = 5
    is_active: bool = True
    verified: bool = False
    auto_discovered: bool = False
    refresh_strategy: str = 'insert'
    category: str = 'other'
    consecutive_failures: int = 0
    consecutive_zero_results: int = 0
    last_scraped: Optional[datetime] = None
    last_scrape_success: Optional[bool] = None
    last_item_count: Optional[int] = None
    last_error: Optional[str] = None
    last_detection_attempt: Optional[datetime] = None
    previous_booking_system: Optional[str] = None
    previous_identifier: Optional[str] = None
    provider_change_confirmed: Optional[bool] = None
    notes: str = ''


@dataclass(frozen=True)
class ProviderSignature:
    """Detection patterns for one third-party booking system.

    The first capturing group of a matching pattern is the provider-specific
    identifier (widget id, tenant slug, studio id).
    """
    system_key: str
    name: str
    detect_patterns: Tuple[Pattern, ...]
    priority: int


@dataclass
class ProviderMatch:
    system_key: str
    name: str
    extracted_id: Optional[str]
    priority: int
    detected_on_url: str


@dataclass
class ProviderChange:
    changed: bool
    new_provider: Optional[ProviderMatch]
    all_detected: List[ProviderMatch] = field(default_factory=list)


@dataclass
class HealthIssue:
    severity: Severity
    source_name: str
    type: str
    message: str


@dataclass
class InsertResult:
    """Result of an insert-or-skip commit."""
    inserted: int
    duplicates: int
    errors: List[str] = field(default_factory=list)


@dataclass
class ReplaceResult:
    """Result of a refresh (replace) commit."""
    added: int
    unchanged: int
    deleted: int


@dataclass
class DuplicationCheck:
    """Post-commit check for one schedule stamped onto every date."""
    total: int
    distinct_titles: int
    deleted: int = 0


@dataclass
class SourceOutcome:
    """What happened to one source during a run."""
    source_name: str
    success: bool
    item_count: int = 0
    inserted: int = 0
    duplicates: int = 0
    deleted: int = 0
    rejected: int = 0
    pages_checked: int = 0
    error: Optional[str] = None
    provider_missing: bool = False


@dataclass
class RunSummary:
    sources_processed: int = 0
    sources_failed: int = 0
    events_inserted: int = 0
    duplicates_skipped: int = 0
    events_rejected: int = 0
    outcomes: List[SourceOutcome] = field(default_factory=list)
