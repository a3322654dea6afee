"""Declarative rule tables used by the source verifier and event validator.

Each table is plain data: adding a pattern or a holiday is a data change and
needs no edit to the checking code.
"""
import re
from dataclasses import dataclass
from typing import Pattern, Tuple


@dataclass(frozen=True)
class TitleRule:
    """Title pattern that is never a real listing."""
    pattern: Pattern
    kind: str


@dataclass(frozen=True)
class HolidayRule:
    """Date window a holiday-titled listing must fall in."""
    keyword: str
    months: Tuple[int, ...]
    first_day: int
    last_day: int


def _title_rules(kind: str, *patterns: str) -> Tuple[TitleRule, ...]:
    return tuple(TitleRule(re.compile(p, re.IGNORECASE), kind) for p in patterns)


# Values scrapers fall back to when they could not read the real one
PLACEHOLDER_TIMES = frozenset([
    '09:00', '09:00:00', '00:00', '00:00:00', '12:00', '12:00:00',
])
PLACEHOLDER_DATES = frozenset(['2026-02-06', '2026-01-01', '2000-01-01'])

NAVIGATION_TITLES = _title_rules(
    'navigation',
    r"^work with us$",
    r"^our (professional )?team$",
    r"^contact us$",
    r"^about( us)?$",
    r"^register for programs?$",
    r"^(legal )?advocacy$",
    r"^child care$",
    r"^housing services?$",
    r"^workshop description$",
    r"^counselling$",
    r"^senior'?s? services?$",
    r"^family and parenting$",
    r"^adult programs?$",
    r"^our services?$",
    r"^online coaching$",
    r"^scheduled live event$",
)

HALLUCINATION_TITLES = _title_rules(
    'ai-hallucination',
    r"^(morning|evening|weekend|daily)\s+(yoga|fitness|workout|exercise)$",
    r"^(yoga|pilates|zumba|spin|hiit)\s+(class|session)$",
    r"^(beginner|intermediate|advanced)\s+(yoga\s+)?(class|session|workshop)$",
    r"^(group|private|personal)\s+(training|session|class)$",
    r"^open\s+(gym|studio|mat|swim)$",
    r"^free\s+(trial|class|session|consultation)$",
    r"^(kids|children'?s?|youth|teen)\s+(program|class|camp)$",
    r"^(happy hour|lunch special|dinner special|daily special)$",
    r"^(grand opening|now open|coming soon|new location)$",
    r"^(electrical|plumbing|roofing|hvac)\s+(service|repair|installation|wiring)",
    r"^(haircut|manicure|pedicure|facial|massage)\s*(special)?$",
)

FORBIDDEN_TITLES = NAVIGATION_TITLES + HALLUCINATION_TITLES

MIN_TITLE_LENGTH = 3
MAX_TITLE_LENGTH = 200
# One-word titles shorter than this are too generic to be a listing
GENERIC_WORD_MAX_LENGTH = 10

HOLIDAY_RULES = (
    HolidayRule('christmas', (12,), 1, 31),
    HolidayRule("new year's day", (1,), 1, 1),
    HolidayRule('new years day', (1,), 1, 1),
    HolidayRule('boxing day', (12,), 26, 26),
    HolidayRule('halloween', (10,), 1, 31),
    # Canadian Thanksgiving
    HolidayRule('thanksgiving', (10,), 1, 31),
    HolidayRule('valentine', (2,), 1, 28),
    HolidayRule('easter', (3, 4), 1, 30),
    HolidayRule('st patrick', (3,), 17, 17),
    HolidayRule('canada day', (7,), 1, 1),
    HolidayRule('remembrance day', (11,), 11, 11),
)


def match_forbidden_title(title: str):
    """Return the first TitleRule matching the stripped title, or None."""
    stripped = title.strip()
    for rule in FORBIDDEN_TITLES:
        if rule.pattern.search(stripped):
            return rule
    return None


def is_generic_single_word(title: str) -> bool:
    words = title.split()
    return len(words) == 1 and len(words[0]) < GENERIC_WORD_MAX_LENGTH


def holiday_rules_for(title: str):
    """Yield every holiday rule whose keyword occurs in the title."""
    lowered = title.lower()
    for rule in HOLIDAY_RULES:
        if rule.keyword in lowered:
            yield rule


def date_in_holiday_window(rule: HolidayRule, month: int, day: int) -> bool:
    return month in rule.months and rule.first_day <= day <= rule.last_day
