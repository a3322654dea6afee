"""Deterministic grounding of extracted candidates in their source page text."""
import logging
import re
from typing import Iterable, List, Tuple

from processor.event_validator import normalize_date, normalize_time, title_problem
from processor.models import CandidateRecord, CheckFailure, RejectionCode, VerificationResult

logger = logging.getLogger(__name__)

MIN_WORD_MATCH_RATIO = 0.8
SIGNIFICANT_WORD_LENGTH = 2

MONTHS = ['january', 'february', 'march', 'april', 'may', 'june', 'july',
          'august', 'september', 'october', 'november', 'december']

_QUOTES = str.maketrans({'‘': "'", '’': "'", '“': '"', '”': '"'})
_WORD = re.compile(r"[\w']+")


def normalize_text(text: str) -> str:
    """Lowercase, unify curly quotes and collapse whitespace."""
    return ' '.join((text or '').translate(_QUOTES).lower().split())


def significant_words(title: str) -> List[str]:
    return [w for w in _WORD.findall(normalize_text(title)) if len(w) > SIGNIFICANT_WORD_LENGTH]


def title_match_ratio(title: str, normalized_page: str) -> float:
    """Fraction of the title's significant words present in the page text."""
    words = significant_words(title)
    if not words:
        return 0.0
    found = sum(1 for word in words if word in normalized_page)
    return found / len(words)


def title_in_source(title: str, normalized_page: str) -> bool:
    normalized_title = normalize_text(title)
    if normalized_title and normalized_title in normalized_page:
        return True
    return title_match_ratio(title, normalized_page) >= MIN_WORD_MATCH_RATIO


def _contains(fragment: str, normalized_page: str) -> bool:
    # Digits must not continue on either side: "7:00" should not hit "17:00"
    return re.search(r'(?<!\d)' + re.escape(fragment) + r'(?!\d)', normalized_page) is not None


def date_in_source(date_str: str, normalized_page: str) -> bool:
    """Check whether the date appears in the page in any common rendering."""
    day = normalize_date(date_str)
    if day is None:
        return False

    month_name = MONTHS[day.month - 1]
    short = month_name[:3]
    renderings = [
        f"{month_name} {day.day}",
        f"{short} {day.day}",
        f"{short}. {day.day}",
        f"{day.day} {month_name}",
        f"{day.day} {short}",
        f"{day.month}/{day.day}",
        f"{day.month:02d}/{day.day:02d}",
        day.isoformat(),
    ]
    return any(_contains(fragment, normalized_page) for fragment in renderings)


def time_in_source(time_str: str, normalized_page: str) -> bool:
    """Check whether the time appears in the page in 24- or 12-hour form."""
    normalized = normalize_time(time_str)
    if normalized is None:
        return False

    hour, minute = (int(part) for part in normalized.split(':'))
    suffix = 'pm' if hour >= 12 else 'am'
    hour12 = hour - 12 if hour > 12 else (12 if hour == 0 else hour)

    renderings = [
        f"{hour}:{minute:02d}",
        f"{hour:02d}:{minute:02d}",
        f"{hour12}:{minute:02d} {suffix}",
        f"{hour12}:{minute:02d}{suffix}",
    ]
    if minute == 0:
        renderings.extend([f"{hour12} {suffix}", f"{hour12}{suffix}"])
    return any(_contains(fragment, normalized_page) for fragment in renderings)


class SourceVerifier:
    """Rejects candidates whose claims cannot be traced back to the page."""

    def __init__(self, require_date_or_time: bool = True):
        self.require_date_or_time = require_date_or_time

    def verify(self, candidate: CandidateRecord, page_text: str) -> VerificationResult:
        """
        Run every grounding and title check against one candidate.

        Args:
            candidate: Candidate proposed by the extractor
            page_text: Text of the page the candidate was extracted from

        Returns:
            VerificationResult listing every failed check
        """
        return self._verify(candidate, normalize_text(page_text))

    def verify_all(
        self,
        candidates: Iterable[CandidateRecord],
        page_text: str
    ) -> Tuple[List[CandidateRecord], List[VerificationResult]]:
        """
        Split candidates into grounded ones and failed verification results.
        """
        normalized_page = normalize_text(page_text)
        passed = []
        failed = []

        for candidate in candidates:
            result = self._verify(candidate, normalized_page)
            if result.passed:
                passed.append(candidate)
            else:
                failed.append(result)
                logger.warning(
                    f"Dropping unverified candidate '{candidate.title}': "
                    + '; '.join(f"[{f.code.value}] {f.message}" for f in result.failed_checks)
                )

        return passed, failed

    def _verify(self, candidate: CandidateRecord, normalized_page: str) -> VerificationResult:
        failures = []
        title = (candidate.title or '').strip()

        if not title_in_source(title, normalized_page):
            ratio = title_match_ratio(title, normalized_page)
            failures.append(CheckFailure(
                RejectionCode.SOURCE_VERIFICATION_FAILED,
                f'Title "{title}" not found in page text ({round(ratio * 100)}% word match)'
            ))

        problem = title_problem(title, candidate.venue_name or '')
        if problem:
            failures.append(CheckFailure(RejectionCode.FORBIDDEN_TITLE, problem))

        if self.require_date_or_time:
            if not (date_in_source(candidate.date, normalized_page)
                    or time_in_source(candidate.time, normalized_page)):
                failures.append(CheckFailure(
                    RejectionCode.SOURCE_VERIFICATION_FAILED,
                    f'Neither date "{candidate.date}" nor time "{candidate.time}" '
                    f'found in page text'
                ))

        return VerificationResult(candidate=candidate, passed=not failures, failed_checks=failures)
