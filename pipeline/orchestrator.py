"""Scrape pipeline: fetch, detect, extract, verify, validate, commit, record."""
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Callable, Iterable, List, Optional, Sequence, Tuple
from zoneinfo import ZoneInfo

from extractor.ai_extractor import AIExtractionError, AIExtractor, get_anthropic_client
from extractor.rate_limiter import RateLimiter
from monitoring.alerting import TelegramAlertGateway
from pipeline.config import DEFAULT_PAGE_PATHS, Settings
from processor.event_validator import EventValidator
from processor.models import (
    BatchValidation,
    CandidateRecord,
    CanonicalEvent,
    Rejected,
    RunSummary,
    Source,
    SourceOutcome,
)
from processor.provider_detector import (
    PROVIDER_SIGNATURES,
    detect_on_pages,
    detect_provider_change,
    identifier_present,
    is_booking_url,
)
from processor.signal_detector import detect_signals
from processor.source_verifier import SourceVerifier
from scraper.page_fetcher import FetchError, Page, PageFetcher
from storage.event_store import DatastoreError, EventStore
from storage.source_registry import SourceRegistry

logger = logging.getLogger(__name__)

DISCOVERY_PATHS = ['', '/schedule', '/classes']


def page_urls(base_url: str, paths: Sequence[str]) -> List[str]:
    """Candidate pages for a source, in checking order, without repeats."""
    if is_booking_url(base_url):
        return [base_url]
    base = base_url.rstrip('/')
    urls = []
    for path in paths:
        url = base + path if path else base_url
        if url not in urls:
            urls.append(url)
    return urls


class ScrapeOrchestrator:
    """Runs every active source through the ingestion pipeline."""

    def __init__(
        self,
        registry: SourceRegistry,
        store: EventStore,
        fetcher: PageFetcher,
        extractor: AIExtractor,
        verifier: Optional[SourceVerifier] = None,
        validator: Optional[EventValidator] = None,
        catalog=PROVIDER_SIGNATURES,
        page_paths: Sequence[str] = DEFAULT_PAGE_PATHS,
        signal_threshold: int = 3,
        batch_size: int = 10,
        max_workers: int = 3,
        batch_pause: float = 30.0,
        sleep: Callable[[float], None] = time.sleep
    ):
        """
        Args:
            registry: Source registry
            store: Event store receiving accepted events
            fetcher: Anything with fetch(url, timeout=None) -> Page
            extractor: AI extractor sharing the run's rate limiter
            verifier: Source verifier (default settings if omitted)
            validator: Event validator (default settings if omitted)
            catalog: Provider signatures used for tagging and discovery
            page_paths: Paths tried under each source URL, in order
            signal_threshold: Minimum signal score before calling the AI
            batch_size: Sources processed per batch
            max_workers: Worker threads per batch
            batch_pause: Seconds to wait between batches
            sleep: Sleep function used for the batch pause
        """
        self.registry = registry
        self.store = store
        self.fetcher = fetcher
        self.extractor = extractor
        self.verifier = verifier or SourceVerifier()
        self.validator = validator or EventValidator()
        self.catalog = tuple(catalog)
        self.page_paths = list(page_paths)
        self.signal_threshold = signal_threshold
        self.batch_size = batch_size
        self.max_workers = max_workers
        self.batch_pause = batch_pause
        self._sleep = sleep

    def run(self, sources: Optional[List[Source]] = None) -> RunSummary:
        """
        Process sources in batches on a thread pool.

        Per-source errors are recorded on the registry and do not stop the
        run. A DatastoreError stops the run and propagates.

        Args:
            sources: Sources to process, defaults to all active ones

        Returns:
            RunSummary with per-source outcomes
        """
        if sources is None:
            sources = self.registry.list_active_sources()

        summary = RunSummary()
        total_batches = (len(sources) + self.batch_size - 1) // self.batch_size

        for start in range(0, len(sources), self.batch_size):
            batch = sources[start:start + self.batch_size]
            batch_num = start // self.batch_size + 1
            logger.info(f"Batch {batch_num}/{total_batches} ({len(batch)} sources)")

            with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
                futures = [executor.submit(self.process_source, source) for source in batch]
                outcomes = [future.result() for future in futures]

            for outcome in outcomes:
                summary.outcomes.append(outcome)
                summary.sources_processed += 1
                summary.events_inserted += outcome.inserted
                summary.duplicates_skipped += outcome.duplicates
                summary.events_rejected += outcome.rejected
                if not outcome.success:
                    summary.sources_failed += 1

            if start + self.batch_size < len(sources) and self.batch_pause > 0:
                logger.info(f"Waiting {self.batch_pause}s before next batch")
                self._sleep(self.batch_pause)

        logger.info(
            "Scrape run complete",
            extra={
                'sources_processed': summary.sources_processed,
                'sources_failed': summary.sources_failed,
                'events_inserted': summary.events_inserted,
                'duplicates_skipped': summary.duplicates_skipped,
                'events_rejected': summary.events_rejected
            }
        )
        return summary

    def process_source(self, source: Source) -> SourceOutcome:
        """
        Scrape one source and record the outcome on the registry.

        Raises:
            DatastoreError: If the datastore is unreachable
        """
        pages = []
        try:
            outcome = self._scrape(source, pages)
        except DatastoreError:
            raise
        except (FetchError, AIExtractionError) as e:
            logger.error(f"[{source.name}] {type(e).__name__}: {e}")
            outcome = SourceOutcome(source.name, success=False, pages_checked=len(pages),
                                    error=f"{type(e).__name__}: {e}")
        except Exception as e:
            logger.error(f"[{source.name}] Unexpected error: {e}", exc_info=True)
            outcome = SourceOutcome(source.name, success=False, pages_checked=len(pages),
                                    error=f"{type(e).__name__}: {e}")

        if outcome.success:
            updated = self.registry.record_success(source.source_id, outcome.item_count)
            if updated.provider_change_confirmed is False and outcome.item_count > 0:
                updated = self.registry.confirm_provider_change(source.source_id)
        else:
            updated = self.registry.record_failure(source.source_id, outcome.error)

        if pages and self.registry.should_attempt_detection(updated):
            self._rediscover(updated, pages)

        return outcome

    def _scrape(self, source: Source, pages: List[Page]) -> SourceOutcome:
        fetch_errors = []
        ai_calls = 0
        ai_errors = []
        rejected = 0

        for url in page_urls(source.url, self.page_paths):
            try:
                page = self.fetcher.fetch(url)
            except FetchError as e:
                logger.warning(f"[{source.name}] Could not fetch {url}: {e}")
                fetch_errors.append(e)
                continue
            pages.append(page)

            signals = detect_signals(page.text, self.signal_threshold)
            if not signals.has_signals:
                logger.debug(f"[{source.name}] No event signals on {url}: {'; '.join(signals.details)}")
                continue

            result = self.extractor.extract(page.text, source.name, url)
            ai_calls += 1
            if result.error:
                ai_errors.append(result.error)
                continue
            if not result.candidates:
                continue

            outcome = self.ingest_candidates(source, result.candidates, page.text, url)
            outcome.rejected += rejected
            outcome.pages_checked = len(pages)
            if outcome.item_count:
                outcome.provider_missing = self._provider_missing(source, pages)
                return outcome
            rejected = outcome.rejected

        if not pages and fetch_errors:
            raise fetch_errors[0]
        if ai_calls and len(ai_errors) == ai_calls:
            raise AIExtractionError(ai_errors[-1])

        return SourceOutcome(
            source.name, success=True, rejected=rejected, pages_checked=len(pages),
            provider_missing=self._provider_missing(source, pages)
        )

    def _provider_missing(self, source: Source, pages: List[Page]) -> bool:
        if not pages:
            return False
        present = identifier_present(source, [(p.url, p.html) for p in pages])
        if not present:
            logger.warning(
                f"[{source.name}] Identifier {source.identifier} for {source.booking_system} "
                f"no longer appears on the website"
            )
        return not present

    def screen(
        self,
        source: Source,
        candidates: Iterable[CandidateRecord],
        page_text: str,
        source_url: str
    ) -> BatchValidation:
        """
        Verify candidates against their page, then validate the survivors.

        Returns:
            BatchValidation whose rejections include verification failures
        """
        passed, failed = self.verifier.verify_all(candidates, page_text)
        batch = self.validator.validate_batch(
            passed,
            source_url=source_url,
            category=source.category,
            event_type='class',
            source_tag=source.booking_system,
            venue_id=source.source_id
        )
        verification_rejects = [
            Rejected(result.candidate, result.failed_checks[0].code,
                     '; '.join(f.message for f in result.failed_checks))
            for result in failed
        ]
        return BatchValidation(accepted=batch.accepted, rejected=verification_rejects + batch.rejected)

    def commit(self, source: Source, events: List[CanonicalEvent]) -> Tuple[int, int, int]:
        """
        Persist accepted events with the source's refresh strategy, then run
        the duplication check over the source's future events.

        Returns:
            Tuple of (inserted, duplicates, deleted)
        """
        from_date = self.validator.today.isoformat()
        if source.refresh_strategy == 'replace':
            result = self.store.replace_future_events(source.name, source.booking_system, events, from_date)
            inserted, duplicates, deleted = result.added, result.unchanged, result.deleted
        else:
            result = self.store.insert_events(events)
            inserted, duplicates, deleted = result.inserted, result.duplicates, 0

        check = self.store.check_duplication(source.name, source.booking_system, from_date)
        if check.deleted:
            logger.warning(
                f"[{source.name}] Dropped {check.deleted} duplicated future events "
                f"({check.distinct_titles} distinct titles)"
            )
        return inserted, duplicates, deleted + check.deleted

    def ingest_candidates(
        self,
        source: Source,
        candidates: Iterable[CandidateRecord],
        page_text: str,
        source_url: str
    ) -> SourceOutcome:
        """
        Screen and commit candidates produced for one page.

        This is also the entry point for scrapers that produce candidates
        from a booking widget rather than through the AI extractor.
        """
        batch = self.screen(source, candidates, page_text, source_url)
        inserted = duplicates = deleted = 0
        if batch.accepted:
            inserted, duplicates, deleted = self.commit(source, batch.accepted)

        logger.info(
            f"[{source.name}] {len(batch.accepted)} accepted, {len(batch.rejected)} rejected, "
            f"{inserted} inserted, {duplicates} duplicates skipped",
            extra={'source_url': source_url}
        )
        return SourceOutcome(
            source.name,
            success=True,
            item_count=len(batch.accepted),
            inserted=inserted,
            duplicates=duplicates,
            deleted=deleted,
            rejected=len(batch.rejected)
        )

    def _rediscover(self, source: Source, pages: List[Page]) -> Optional[Source]:
        self.registry.record_detection_attempt(source.source_id)
        change = detect_provider_change(source, [(p.url, p.html) for p in pages], self.catalog)
        if not change.changed:
            logger.info(f"[{source.name}] No provider change detected")
            return None
        return self.registry.apply_provider_switch(source.source_id, change.new_provider)

    def discover(self, businesses: Iterable[dict]) -> List[Source]:
        """
        Scan business websites for booking providers and register new sources.

        Args:
            businesses: Dicts with 'name', 'website' and optional 'category'

        Returns:
            Newly registered sources
        """
        registered = []
        for business in businesses:
            name = business.get('name')
            website = business.get('website')
            if not name or not website:
                continue

            pages = []
            for url in page_urls(website, DISCOVERY_PATHS):
                try:
                    page = self.fetcher.fetch(url)
                except FetchError as e:
                    logger.debug(f"[{name}] Discovery could not fetch {url}: {e}")
                    continue
                pages.append((page.url, page.html))

            detected = [m for m in detect_on_pages(pages, self.catalog) if m.extracted_id]
            if not detected:
                continue

            match = detected[0]
            if self.registry.find_by_identifier(match.system_key, match.extracted_id):
                logger.debug(f"[{name}] {match.system_key} {match.extracted_id} already registered")
                continue

            source = Source(
                source_id=f"{match.system_key}:{match.extracted_id}",
                name=name,
                booking_system=match.system_key,
                url=website,
                identifier=match.extracted_id,
                priority=match.priority,
                auto_discovered=True,
                category=business.get('category', 'other'),
                notes=f"Auto-discovered on {match.detected_on_url} on {datetime.now(timezone.utc).date().isoformat()}"
            )
            registered.append(self.registry.register_source(source))

        logger.info(f"Discovery registered {len(registered)} new sources")
        return registered


def build_registry(settings: Settings) -> SourceRegistry:
    gateway = TelegramAlertGateway(settings.telegram_bot_token, settings.telegram_chat_id)
    return SourceRegistry(
        settings.sources_table_name,
        alert_gateway=gateway,
        failure_threshold=settings.failure_threshold,
        region_name=settings.region_name
    )


def build_orchestrator(settings: Settings) -> ScrapeOrchestrator:
    """Wire the pipeline's collaborators from settings."""
    registry = build_registry(settings)
    store = EventStore(settings.events_table_name, region_name=settings.region_name)
    fetcher = PageFetcher(timeout=settings.fetch_timeout_seconds, max_retries=settings.fetch_max_retries)
    today = datetime.now(ZoneInfo(settings.timezone)).date()
    extractor = AIExtractor(
        get_anthropic_client(settings.anthropic_api_key, timeout=settings.ai_timeout_seconds),
        RateLimiter(settings.ai_min_interval_seconds),
        model=settings.ai_model,
        max_page_chars=settings.ai_max_page_chars,
        today=lambda: today
    )
    return ScrapeOrchestrator(
        registry,
        store,
        fetcher,
        extractor,
        validator=EventValidator(cluster_threshold=settings.cluster_threshold, today=today),
        page_paths=settings.page_paths,
        signal_threshold=settings.signal_threshold,
        batch_size=settings.batch_size,
        max_workers=settings.max_workers,
        batch_pause=settings.batch_pause_seconds
    )
