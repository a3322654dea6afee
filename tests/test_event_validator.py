"""Unit tests for the event validator."""
from datetime import date, datetime, timedelta

import pytest

from processor.event_validator import (
    EventValidator,
    generate_event_id,
    normalize_date,
    normalize_time,
)
from processor.models import Accepted, CandidateRecord, Rejected, RejectionCode

TODAY = date(2026, 3, 1)


@pytest.fixture
def validator():
    """Create EventValidator with a fixed reference date."""
    return EventValidator(today=TODAY)


def candidate(title='Sunrise Flow', date_str='2026-03-10', time='07:00', venue='Acme Yoga', **kwargs):
    return CandidateRecord(title=title, date=date_str, time=time, venue_name=venue, **kwargs)


def rejection_code(outcome):
    assert isinstance(outcome, Rejected), f"expected rejection, got {outcome}"
    return outcome.code


class TestValidate:
    """Test cases for EventValidator.validate."""

    def test_valid_candidate_is_accepted(self, validator):
        outcome = validator.validate(
            candidate(description='Gentle morning flow', confidence=0.9),
            source_url='https://acmeyoga.example/schedule',
            category='fitness',
            source_tag='website'
        )

        assert isinstance(outcome, Accepted)
        event = outcome.event
        assert event.title == 'Sunrise Flow'
        assert event.start_date == '2026-03-10'
        assert event.start_time == '07:00'
        assert event.venue_name == 'Acme Yoga'
        assert event.category == 'fitness'
        assert event.source_url == 'https://acmeyoga.example/schedule'
        assert event.description == 'Gentle morning flow'
        assert event.confidence_score == 0.9
        assert event.tags == ['auto-scraped', 'website', 'acme-yoga', 'validated-by-website']
        assert event.event_id == generate_event_id('Sunrise Flow', '2026-03-10', 'Acme Yoga', '07:00')

    @pytest.mark.parametrize('field_name', ['title', 'date', 'time', 'venue_name'])
    def test_missing_field(self, validator, field_name):
        record = candidate()
        setattr(record, field_name, '  ')

        outcome = validator.validate(record)

        assert rejection_code(outcome) == RejectionCode.MISSING_FIELD
        assert field_name in outcome.message

    def test_title_equal_to_venue(self, validator):
        outcome = validator.validate(candidate(title='ACME yoga'))

        assert rejection_code(outcome) == RejectionCode.FORBIDDEN_TITLE

    @pytest.mark.parametrize('title', ['Open Gym', 'Yoga Class', 'Work With Us', 'Pilates', 'Hi'])
    def test_forbidden_titles(self, validator, title):
        assert rejection_code(validator.validate(candidate(title=title))) == RejectionCode.FORBIDDEN_TITLE

    def test_title_too_long(self, validator):
        outcome = validator.validate(candidate(title='Flow ' * 50))

        assert rejection_code(outcome) == RejectionCode.FORBIDDEN_TITLE
        assert 'too long' in outcome.message

    def test_invalid_date(self, validator):
        assert rejection_code(validator.validate(candidate(date_str='next tuesday'))) == RejectionCode.INVALID_DATE

    def test_placeholder_date(self, validator):
        assert rejection_code(validator.validate(candidate(date_str='2026-02-06'))) == RejectionCode.PLACEHOLDER_DATE

    def test_past_date(self, validator):
        assert rejection_code(validator.validate(candidate(date_str='2026-02-20'))) == RejectionCode.PAST_DATE

    def test_yesterday_is_accepted(self, validator):
        assert isinstance(validator.validate(candidate(date_str='2026-02-28')), Accepted)

    def test_date_too_far(self, validator):
        assert rejection_code(validator.validate(candidate(date_str='2028-03-02'))) == RejectionCode.DATE_TOO_FAR

    def test_two_years_ahead_is_accepted(self, validator):
        assert isinstance(validator.validate(candidate(date_str='2028-03-01')), Accepted)

    @pytest.mark.parametrize('date_str,expected', [
        ('03/15/2026', '2026-03-15'),
        ('03-15-2026', '2026-03-15'),
        ('March 15, 2026', '2026-03-15'),
        ('Mar 15, 2026', '2026-03-15'),
        ('2026/03/15', '2026-03-15'),
    ])
    def test_date_formats_are_normalized(self, validator, date_str, expected):
        outcome = validator.validate(candidate(date_str=date_str))

        assert isinstance(outcome, Accepted)
        assert outcome.event.start_date == expected

    def test_christmas_outside_december(self, validator):
        outcome = validator.validate(candidate(title='Christmas Market', date_str='2026-07-04', time='10:00'))

        assert rejection_code(outcome) == RejectionCode.HOLIDAY_DATE_MISMATCH

    def test_christmas_in_december(self, validator):
        outcome = validator.validate(candidate(title='Christmas Market', date_str='2026-12-05', time='10:00'))

        assert isinstance(outcome, Accepted)

    def test_canada_day_must_be_july_first(self, validator):
        wrong = validator.validate(candidate(title='Canada Day Fireworks', date_str='2026-07-02', time='22:00'))
        right = validator.validate(candidate(title='Canada Day Fireworks', date_str='2026-07-01', time='22:00'))

        assert rejection_code(wrong) == RejectionCode.HOLIDAY_DATE_MISMATCH
        assert isinstance(right, Accepted)

    def test_valentine_window_ends_on_the_28th(self, validator):
        outcome = validator.validate(
            candidate(title="Valentine's Paint Night", date_str='2027-02-28', time='19:00')
        )

        assert isinstance(outcome, Accepted)

    @pytest.mark.parametrize('time', ['7pm', '25:00', '7:5', 'noon'])
    def test_invalid_time(self, validator, time):
        assert rejection_code(validator.validate(candidate(time=time))) == RejectionCode.INVALID_TIME

    @pytest.mark.parametrize('time,expected', [('9:30', '09:30'), ('14:00:00', '14:00'), ('07:05', '07:05')])
    def test_time_is_normalized(self, validator, time, expected):
        outcome = validator.validate(candidate(time=time))

        assert outcome.event.start_time == expected

    def test_placeholder_time_is_tagged_for_review(self, validator):
        outcome = validator.validate(candidate(time='09:00:00'), source_tag='website')

        assert isinstance(outcome, Accepted)
        assert 'needs-time-review' in outcome.event.tags

    def test_invalid_end_time_is_dropped(self, validator):
        outcome = validator.validate(candidate(end_time='late'))

        assert isinstance(outcome, Accepted)
        assert outcome.event.end_time is None

    def test_valid_end_time_is_kept(self, validator):
        outcome = validator.validate(candidate(end_time='8:15'))

        assert outcome.event.end_time == '08:15'

    def test_non_string_end_time_and_description(self, validator):
        outcome = validator.validate(candidate(end_time=1900, description={'text': 'Gentle flow'}))

        assert isinstance(outcome, Accepted)
        assert outcome.event.end_time is None
        assert outcome.event.description == ''

    def test_description_is_truncated(self, validator):
        outcome = validator.validate(candidate(description='x' * 3000))

        assert len(outcome.event.description) == EventValidator.MAX_DESCRIPTION_LENGTH

    def test_ttl_is_90_days_after_event(self, validator):
        outcome = validator.validate(candidate())

        expected = int((datetime(2026, 3, 10) + timedelta(days=90)).timestamp())
        assert outcome.event.ttl == expected


class TestValidateBatch:
    """Test cases for batch validation and clustering."""

    def test_cluster_over_threshold_is_rejected(self, validator):
        candidates = [candidate(title=f'Pottery Workshop {i}', time='19:00') for i in range(1, 6)]

        batch = validator.validate_batch(candidates)

        assert batch.accepted == []
        assert len(batch.rejected) == 5
        assert {r.code for r in batch.rejected} == {RejectionCode.CLUSTERING_SUSPICIOUS}

    def test_cluster_at_threshold_is_accepted(self, validator):
        candidates = [candidate(title=f'Pottery Workshop {i}', time='19:00') for i in range(1, 4)]

        batch = validator.validate_batch(candidates)

        assert len(batch.accepted) == 3
        assert batch.rejected == []

    def test_clustering_only_affects_the_crowded_slot(self):
        validator = EventValidator(cluster_threshold=2, today=TODAY)
        crowded = [candidate(title=f'Pottery Workshop {i}', time='19:00') for i in range(1, 4)]
        other = candidate(title='Glaze Night', time='20:00')

        batch = validator.validate_batch(crowded + [other])

        assert [e.title for e in batch.accepted] == ['Glaze Night']
        assert len(batch.rejected) == 3

    def test_batch_keeps_going_after_rejections(self, validator):
        candidates = [
            candidate(title='Acme Yoga'),
            candidate(title='Christmas Market', date_str='2026-07-04'),
            candidate(title='Sunrise Flow'),
        ]

        batch = validator.validate_batch(candidates, source_tag='website')

        assert [e.title for e in batch.accepted] == ['Sunrise Flow']
        assert [r.code for r in batch.rejected] == [
            RejectionCode.FORBIDDEN_TITLE,
            RejectionCode.HOLIDAY_DATE_MISMATCH,
        ]


class TestHelpers:
    """Test cases for normalization helpers."""

    def test_event_id_ignores_case_and_spacing(self):
        first = generate_event_id('Sunrise  Flow', '2026-03-10', 'Acme Yoga', '07:00')
        second = generate_event_id('sunrise flow', '2026-03-10', ' ACME yoga ', '07:00')

        assert first == second
        assert len(first) == 64

    def test_event_id_depends_on_time(self):
        assert (generate_event_id('Sunrise Flow', '2026-03-10', 'Acme Yoga', '07:00')
                != generate_event_id('Sunrise Flow', '2026-03-10', 'Acme Yoga', '08:00'))

    def test_normalize_date_rejects_garbage(self):
        assert normalize_date('2026-13-45') is None
        assert normalize_date('') is None
        assert normalize_date(20260310) is None

    def test_normalize_time(self):
        assert normalize_time('7:05') == '07:05'
        assert normalize_time('24:00') is None
        assert normalize_time(1900) is None
