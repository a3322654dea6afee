"""Tests for the scrape pipeline, end to end over mocked DynamoDB."""
from datetime import date, datetime, timedelta, timezone
from unittest.mock import Mock

import pytest

from extractor.ai_extractor import ExtractionResult
from pipeline.orchestrator import ScrapeOrchestrator, page_urls
from processor.event_validator import EventValidator
from processor.models import CandidateRecord, DuplicationCheck, InsertResult, RejectionCode, Source
from scraper.page_fetcher import FetchError, Page, html_to_text
from storage.event_store import DatastoreError, EventStore
from storage.source_registry import SourceRegistry

TODAY = date(2026, 3, 1)
NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
BASE_URL = 'https://acmeyoga.example'
SCHEDULE_URL = BASE_URL + '/schedule'


def html_page(*lines, extra=''):
    return '<html><body>' + ''.join(f'<p>{line}</p>' for line in lines) + extra + '</body></html>'


HOME_HTML = html_page('Welcome to Acme Yoga')
SCHEDULE_HTML = html_page(
    'Acme Yoga Weekly Schedule',
    'Sunrise Flow - Tuesdays 7:00 AM with Jane',
    'Power Hour - Thursdays 6:00 PM',
    'Gentle Yin - Sundays 5:30 PM',
    'All levels welcome. Book now to register for class.',
)
JANEAPP_HOME_HTML = html_page(
    'Welcome to Acme Yoga',
    extra='<a href="https://acmeyoga.janeapp.com">Book online</a>'
)


class FakeFetcher:
    """Serves canned HTML per URL; anything else is a 404."""

    def __init__(self, pages):
        self.pages = pages
        self.requested = []

    def fetch(self, url, timeout=None):
        self.requested.append(url)
        html = self.pages.get(url)
        if html is None:
            raise FetchError(f"HTTP 404 fetching {url}")
        if isinstance(html, Exception):
            raise html
        return Page(url=url, html=html, text=html_to_text(html))


def candidate(title, day, time, **overrides):
    return CandidateRecord(title=title, date=day, time=time, venue_name='Acme Yoga', **overrides)


SCHEDULE_CANDIDATES = [
    candidate('Sunrise Flow', '2026-03-03', '07:00', source_quote='Sunrise Flow - Tuesdays 7:00 AM'),
    candidate('Power Hour', '2026-03-05', '18:00', source_quote='Power Hour - Thursdays 6:00 PM'),
    candidate('Gentle Yin', '2026-03-08', '17:30', source_quote='Gentle Yin - Sundays 5:30 PM'),
]


def make_source(**overrides):
    values = {
        'source_id': 'website:acme-yoga',
        'name': 'Acme Yoga',
        'booking_system': 'website',
        'url': BASE_URL,
        'category': 'fitness',
    }
    values.update(overrides)
    return Source(**values)


@pytest.fixture
def gateway():
    return Mock()


@pytest.fixture
def registry(sources_table, gateway):
    return SourceRegistry('test-listing-sources', alert_gateway=gateway, clock=lambda: NOW,
                          region_name='us-east-1')


@pytest.fixture
def store(events_table):
    return EventStore('test-listing-events', region_name='us-east-1')


@pytest.fixture
def extractor():
    extractor = Mock()
    extractor.extract.return_value = ExtractionResult(candidates=list(SCHEDULE_CANDIDATES))
    return extractor


@pytest.fixture
def fetcher():
    return FakeFetcher({BASE_URL: HOME_HTML, SCHEDULE_URL: SCHEDULE_HTML})


def build(registry, store, fetcher, extractor, **kwargs):
    kwargs.setdefault('validator', EventValidator(today=TODAY))
    kwargs.setdefault('batch_pause', 0)
    return ScrapeOrchestrator(registry, store, fetcher, extractor, **kwargs)


@pytest.fixture
def orchestrator(registry, store, fetcher, extractor):
    return build(registry, store, fetcher, extractor)


class TestPageUrls:
    """Test cases for candidate page selection."""

    def test_paths_are_appended(self):
        assert page_urls('https://acmeyoga.example/', ['', '/schedule']) == [
            'https://acmeyoga.example/', 'https://acmeyoga.example/schedule'
        ]

    def test_booking_url_is_used_as_is(self):
        url = 'https://acmeyoga.janeapp.com'

        assert page_urls(url, ['', '/schedule', '/classes']) == [url]


class TestProcessSource:
    """End-to-end cases for one source."""

    def test_accepts_grounded_listings(self, orchestrator, registry, store, extractor, events_table):
        registry.register_source(make_source())

        outcome = orchestrator.process_source(make_source())

        assert outcome.success is True
        assert outcome.item_count == 3
        assert outcome.inserted == 3
        assert outcome.pages_checked == 2
        assert outcome.provider_missing is False
        extractor.extract.assert_called_once()
        assert extractor.extract.call_args.args[1:] == ('Acme Yoga', SCHEDULE_URL)

        items = {item['title']: item for item in events_table.scan()['Items']}
        assert sorted(items) == ['Gentle Yin', 'Power Hour', 'Sunrise Flow']
        sunrise = items['Sunrise Flow']
        assert sunrise['start_date'] == '2026-03-03'
        assert sunrise['start_time'] == '07:00'
        assert sunrise['venue_id'] == 'website:acme-yoga'
        assert sunrise['category'] == 'fitness'
        assert sunrise['source_url'] == SCHEDULE_URL
        assert 'validated-by-website' in sunrise['tags']

        source = registry.get_source('website:acme-yoga')
        assert source.last_scrape_success is True
        assert source.last_item_count == 3
        assert source.consecutive_failures == 0

    def test_rerun_is_idempotent(self, orchestrator, registry, events_table):
        registry.register_source(make_source())

        orchestrator.process_source(make_source())
        outcome = orchestrator.process_source(make_source())

        assert outcome.inserted == 0
        assert outcome.duplicates == 3
        assert len(events_table.scan()['Items']) == 3

    def test_rejects_hallucinated_and_rule_breaking_candidates(self, registry, store, fetcher, events_table):
        fetcher.pages[SCHEDULE_URL] = html_page(
            'Acme Yoga Weekly Schedule',
            'Sunrise Flow - Tuesdays 7:00 AM with Jane',
            'Christmas Market - July 4 at 10:00 AM',
            'All levels welcome. Book now to register for class.',
        )
        extractor = Mock()
        extractor.extract.return_value = ExtractionResult(candidates=[
            candidate('Sunrise Flow', '2026-03-03', '07:00'),
            candidate('Moonlight Meditation', '2026-03-04', '21:00'),
            candidate('Christmas Market', '2026-07-04', '10:00'),
            candidate('Yoga Class', '2026-03-03', '07:00'),
        ])
        registry.register_source(make_source())
        orchestrator = build(registry, store, fetcher, extractor)

        outcome = orchestrator.process_source(make_source())

        assert outcome.inserted == 1
        assert outcome.rejected == 3
        assert [item['title'] for item in events_table.scan()['Items']] == ['Sunrise Flow']

    def test_malformed_optional_field_does_not_fail_the_source(self, orchestrator, registry, extractor,
                                                               events_table):
        registry.register_source(make_source())
        extractor.extract.return_value = ExtractionResult(candidates=[
            SCHEDULE_CANDIDATES[0],
            candidate('Power Hour', '2026-03-05', '18:00', end_time=1900, description={'text': 'Sweaty'}),
        ])

        outcome = orchestrator.process_source(make_source())

        assert outcome.success is True
        assert outcome.inserted == 2
        items = {item['title']: item for item in events_table.scan()['Items']}
        assert sorted(items) == ['Power Hour', 'Sunrise Flow']
        assert 'end_time' not in items['Power Hour']
        assert registry.get_source('website:acme-yoga').consecutive_failures == 0

    def test_screen_reports_rejection_codes(self, orchestrator):
        page_text = html_to_text(html_page(
            'Acme Yoga Weekly Schedule',
            'Sunrise Flow - Tuesdays 7:00 AM with Jane',
            'Christmas Market - July 4 at 10:00 AM',
            'All levels welcome. Register for class.',
        ))

        batch = orchestrator.screen(make_source(), [
            candidate('Moonlight Meditation', '2026-03-04', '21:00'),
            candidate('Christmas Market', '2026-07-04', '10:00'),
            candidate('Yoga Class', '2026-03-03', '07:00'),
        ], page_text, SCHEDULE_URL)

        codes = {r.candidate.title: r.code for r in batch.rejected}
        assert batch.accepted == []
        assert codes == {
            'Moonlight Meditation': RejectionCode.SOURCE_VERIFICATION_FAILED,
            'Christmas Market': RejectionCode.HOLIDAY_DATE_MISMATCH,
            'Yoga Class': RejectionCode.FORBIDDEN_TITLE,
        }

    def test_clustered_candidates_are_dropped(self, orchestrator, registry, events_table):
        page_text = html_to_text(html_page(
            'Sunrise Flow, Power Hour, Gentle Yin and Restorative Stretch',
            'Every class starts at 7:00 AM',
        ))
        candidates = [
            candidate(title, '2026-03-03', '07:00')
            for title in ('Sunrise Flow', 'Power Hour', 'Gentle Yin', 'Restorative Stretch')
        ]

        outcome = orchestrator.ingest_candidates(make_source(), candidates, page_text, SCHEDULE_URL)

        assert outcome.item_count == 0
        assert outcome.inserted == 0
        assert outcome.rejected == 4
        assert events_table.scan()['Items'] == []

    def test_fetch_failure_is_recorded(self, registry, store, extractor):
        registry.register_source(make_source())
        orchestrator = build(registry, store, FakeFetcher({}), extractor)

        outcome = orchestrator.process_source(make_source())

        assert outcome.success is False
        assert outcome.error == f"FetchError: HTTP 404 fetching {BASE_URL}"
        extractor.extract.assert_not_called()
        source = registry.get_source('website:acme-yoga')
        assert source.consecutive_failures == 1
        assert source.last_scrape_success is False

    def test_ai_failure_is_recorded(self, orchestrator, registry, extractor, events_table):
        registry.register_source(make_source())
        extractor.extract.return_value = ExtractionResult(error='AI extraction failed: 529: Overloaded')

        outcome = orchestrator.process_source(make_source())

        assert outcome.success is False
        assert registry.get_source('website:acme-yoga').last_error.startswith('AIExtractionError')
        assert events_table.scan()['Items'] == []

    def test_page_without_signals_skips_extraction(self, registry, store, extractor):
        registry.register_source(make_source())
        orchestrator = build(registry, store, FakeFetcher({BASE_URL: HOME_HTML}), extractor)

        outcome = orchestrator.process_source(make_source())

        assert outcome.success is True
        assert outcome.item_count == 0
        extractor.extract.assert_not_called()
        assert registry.get_source('website:acme-yoga').consecutive_zero_results == 1

    def test_replace_strategy_refreshes_schedule(self, orchestrator, registry, extractor, events_table):
        source = make_source(refresh_strategy='replace')
        registry.register_source(source)
        orchestrator.process_source(source)
        extractor.extract.return_value = ExtractionResult(candidates=SCHEDULE_CANDIDATES[:2])

        outcome = orchestrator.process_source(source)

        assert outcome.inserted == 0
        assert outcome.duplicates == 2
        assert outcome.deleted == 1
        titles = sorted(item['title'] for item in events_table.scan()['Items'])
        assert titles == ['Power Hour', 'Sunrise Flow']


    def test_stamped_schedule_is_dropped_after_commit(self, orchestrator, registry, store, events_table):
        validator = EventValidator(today=TODAY)
        stamped = [
            validator.validate(candidate('Sunrise Flow', (TODAY + timedelta(days=i)).isoformat(), '07:00'),
                               source_tag='website').event
            for i in range(1, 81)
        ]
        store.insert_events(stamped)
        registry.register_source(make_source())

        outcome = orchestrator.process_source(make_source())

        assert outcome.success is True
        assert outcome.deleted == 82
        assert events_table.scan()['Items'] == []


class TestSelfHealing:
    """Test cases for provider change detection during a scrape."""

    def test_switches_to_detected_provider(self, registry, store, extractor):
        source = make_source(booking_system='mindbody-classic', identifier='12345',
                             consecutive_zero_results=1)
        registry.register_source(source)
        orchestrator = build(registry, store, FakeFetcher({BASE_URL: JANEAPP_HOME_HTML}), extractor)

        outcome = orchestrator.process_source(source)

        assert outcome.provider_missing is True
        updated = registry.get_source('website:acme-yoga')
        assert updated.booking_system == 'janeapp'
        assert updated.identifier == 'acmeyoga'
        assert updated.previous_booking_system == 'mindbody-classic'
        assert updated.previous_identifier == '12345'
        assert updated.provider_change_confirmed is False
        assert updated.last_detection_attempt == NOW

    def test_first_scrape_with_items_confirms_switch(self, orchestrator, registry):
        source = make_source(previous_booking_system='mindbody', provider_change_confirmed=False)
        registry.register_source(source)

        orchestrator.process_source(source)

        assert registry.get_source('website:acme-yoga').provider_change_confirmed is True

    def test_empty_scrape_leaves_switch_unconfirmed(self, registry, store, extractor):
        source = make_source(previous_booking_system='mindbody', provider_change_confirmed=False)
        registry.register_source(source)
        orchestrator = build(registry, store, FakeFetcher({BASE_URL: HOME_HTML}), extractor)

        orchestrator.process_source(source)

        assert registry.get_source('website:acme-yoga').provider_change_confirmed is False

    def test_detection_is_debounced(self, registry, store, extractor):
        source = make_source(booking_system='mindbody-classic', identifier='12345',
                             consecutive_zero_results=1,
                             last_detection_attempt=NOW - timedelta(hours=1))
        registry.register_source(source)
        orchestrator = build(registry, store, FakeFetcher({BASE_URL: JANEAPP_HOME_HTML}), extractor)

        orchestrator.process_source(source)

        assert registry.get_source('website:acme-yoga').booking_system == 'mindbody-classic'

    def test_no_switch_without_new_provider(self, registry, store, extractor):
        source = make_source(consecutive_zero_results=1)
        registry.register_source(source)
        orchestrator = build(registry, store, FakeFetcher({BASE_URL: HOME_HTML}), extractor)

        orchestrator.process_source(source)

        updated = registry.get_source('website:acme-yoga')
        assert updated.booking_system == 'website'
        assert updated.last_detection_attempt == NOW


class TestDiscovery:
    """Test cases for provider discovery on business websites."""

    BUSINESSES = [
        {'name': 'Acme Yoga', 'website': BASE_URL, 'category': 'fitness'},
        {'name': 'Plain Cafe', 'website': 'https://cafe.example'},
        {'name': 'No Website'},
    ]

    def test_registers_new_sources(self, registry, store, extractor):
        fetcher = FakeFetcher({BASE_URL: JANEAPP_HOME_HTML, 'https://cafe.example': HOME_HTML})
        orchestrator = build(registry, store, fetcher, extractor)

        registered = orchestrator.discover(self.BUSINESSES)

        assert [s.source_id for s in registered] == ['janeapp:acmeyoga']
        source = registry.get_source('janeapp:acmeyoga')
        assert source.auto_discovered is True
        assert source.priority == 8
        assert source.category == 'fitness'
        assert source.url == BASE_URL

    def test_rediscovery_skips_known_sources(self, registry, store, extractor):
        fetcher = FakeFetcher({BASE_URL: JANEAPP_HOME_HTML})
        orchestrator = build(registry, store, fetcher, extractor)
        orchestrator.discover(self.BUSINESSES)

        assert orchestrator.discover(self.BUSINESSES) == []
        assert len(registry.list_sources()) == 1


class TestRun:
    """Test cases for batching and error isolation."""

    @pytest.fixture
    def mock_registry(self):
        registry = Mock()
        registry.should_attempt_detection.return_value = False
        return registry

    def sources(self, count):
        return [
            make_source(source_id=f"website:studio-{i}", name=f"Studio {i}", url=f"https://studio{i}.example")
            for i in range(count)
        ]

    def test_batches_with_pause(self, mock_registry, extractor):
        sleep = Mock()
        orchestrator = build(mock_registry, Mock(), FakeFetcher({}), extractor,
                             batch_size=2, batch_pause=30.0, sleep=sleep)

        summary = orchestrator.run(self.sources(5))

        assert summary.sources_processed == 5
        assert summary.sources_failed == 5
        assert [o.source_name for o in summary.outcomes] == [f"Studio {i}" for i in range(5)]
        assert sleep.call_count == 2
        sleep.assert_called_with(30.0)
        assert mock_registry.record_failure.call_count == 5

    def test_defaults_to_active_sources(self, mock_registry, extractor):
        mock_registry.list_active_sources.return_value = self.sources(1)
        orchestrator = build(mock_registry, Mock(), FakeFetcher({}), extractor)

        summary = orchestrator.run()

        assert summary.sources_processed == 1
        mock_registry.list_active_sources.assert_called_once()

    def test_one_source_crashing_does_not_stop_others(self, mock_registry, extractor):
        store = Mock()
        store.insert_events.return_value = InsertResult(inserted=3, duplicates=0)
        store.check_duplication.return_value = DuplicationCheck(total=3, distinct_titles=3)
        fetcher = FakeFetcher({
            'https://studio0.example': RuntimeError('boom'),
            'https://studio1.example': SCHEDULE_HTML,
        })
        orchestrator = build(mock_registry, store, fetcher, extractor)

        summary = orchestrator.run(self.sources(2))

        failed, succeeded = summary.outcomes
        assert failed.success is False
        assert failed.error == 'RuntimeError: boom'
        assert succeeded.success is True
        assert summary.events_inserted == 3
        assert summary.sources_failed == 1
        mock_registry.record_failure.assert_called_once_with('website:studio-0', 'RuntimeError: boom')

    def test_datastore_error_stops_the_run(self, mock_registry, extractor):
        store = Mock()
        store.insert_events.side_effect = DatastoreError('table unavailable')
        fetcher = FakeFetcher({'https://studio0.example': SCHEDULE_HTML})
        orchestrator = build(mock_registry, store, fetcher, extractor)

        with pytest.raises(DatastoreError):
            orchestrator.run(self.sources(1))

        mock_registry.record_failure.assert_not_called()
        mock_registry.record_success.assert_not_called()
