"""Cheap heuristic gate deciding whether a page is worth AI extraction."""
import re
from dataclasses import dataclass, field
from typing import List

MIN_TEXT_LENGTH = 50
DEFAULT_THRESHOLD = 3

_MONTH = r'(?:jan|feb|mar|apr|may|jun|jul|aug|sep|oct|nov|dec)[a-z]*'

DATE_PATTERNS = [
    re.compile(r'\b' + _MONTH + r'\.?\s+\d{1,2}\b', re.IGNORECASE),
    re.compile(r'\b\d{1,2}\s+' + _MONTH + r'\b', re.IGNORECASE),
    re.compile(r'\b\d{4}-\d{2}-\d{2}\b'),
    re.compile(r'\b\d{1,2}/\d{1,2}/\d{2,4}\b'),
    re.compile(
        r'\b(?:monday|tuesday|wednesday|thursday|friday|saturday|sunday),?\s+' + _MONTH,
        re.IGNORECASE
    ),
    re.compile(r'\b(?:mon|tue|wed|thu|fri|sat|sun),?\s+' + _MONTH, re.IGNORECASE),
]

TIME_PATTERNS = [
    re.compile(r'\b\d{1,2}:\d{2}\s*(?:am|pm)\b', re.IGNORECASE),
    # 24-hour clock; ranges count once per end
    re.compile(r'\b(?:[01]?\d|2[0-3]):[0-5]\d\b(?!\s*(?:am|pm)\b)', re.IGNORECASE),
    re.compile(r'(?<![:\d])\b\d{1,2}\s*(?:am|pm)\b', re.IGNORECASE),
]

# Each pattern is one keyword family; a page scores per family, not per hit
KEYWORD_PATTERNS = [
    re.compile(r'\b(?:register|registration|sign\s*up|book\s*now|tickets?|rsvp)\b', re.IGNORECASE),
    re.compile(r'\b(?:class(?:es)?|workshop|seminar|course|lesson|session)\b', re.IGNORECASE),
    re.compile(r'\b(?:schedule|calendar|upcoming|events?)\b', re.IGNORECASE),
    re.compile(r'\b(?:instructor|teacher|facilitator|led\s+by|hosted\s+by|with\s+\w+\s+\w+)\b', re.IGNORECASE),
    re.compile(r'\b(?:drop[\s-]?in|members?\s+only|all\s+levels?|beginner|intermediate|advanced)\b', re.IGNORECASE),
    re.compile(
        r'\b(?:weekly|daily|every\s+(?:monday|tuesday|wednesday|thursday|friday|saturday|sunday))\b',
        re.IGNORECASE
    ),
]


@dataclass
class SignalResult:
    has_signals: bool
    score: int
    details: List[str] = field(default_factory=list)
    date_count: int = 0
    time_count: int = 0
    keyword_count: int = 0


def _points(count: int) -> int:
    if count >= 3:
        return 2
    if count >= 1:
        return 1
    return 0


def detect_signals(page_text: str, threshold: int = DEFAULT_THRESHOLD) -> SignalResult:
    """
    Score page text for listing signals.

    Dates, times and keyword families contribute up to 2 points each, so the
    maximum score is 6.

    Args:
        page_text: Visible text of the fetched page
        threshold: Minimum score required before AI extraction is allowed

    Returns:
        SignalResult with the score and a human-readable breakdown
    """
    if not page_text or len(page_text) < MIN_TEXT_LENGTH:
        return SignalResult(has_signals=False, score=0, details=['Page text too short'])

    details = []

    date_count = sum(len(p.findall(page_text)) for p in DATE_PATTERNS)
    if date_count:
        details.append(f"{date_count} date pattern(s) found")

    time_count = sum(len(p.findall(page_text)) for p in TIME_PATTERNS)
    if time_count:
        details.append(f"{time_count} time pattern(s) found")

    keyword_count = sum(1 for p in KEYWORD_PATTERNS if p.search(page_text))
    if keyword_count:
        details.append(f"{keyword_count} event keyword(s) matched")

    score = _points(date_count) + _points(time_count) + _points(keyword_count)
    has_signals = score >= threshold
    if not has_signals:
        details.append(f"Score {score}/{threshold} - below threshold")

    return SignalResult(
        has_signals=has_signals,
        score=score,
        details=details,
        date_count=date_count,
        time_count=time_count,
        keyword_count=keyword_count
    )
