"""Signature-based detection of third-party booking providers on a page."""
import logging
import re
from typing import Iterable, List, Optional, Sequence, Tuple

from processor.models import ProviderChange, ProviderMatch, ProviderSignature, Source

logger = logging.getLogger(__name__)


def _signature(system_key: str, name: str, priority: int, *patterns: str) -> ProviderSignature:
    return ProviderSignature(
        system_key=system_key,
        name=name,
        detect_patterns=tuple(re.compile(p, re.IGNORECASE) for p in patterns),
        priority=priority
    )


PROVIDER_SIGNATURES = (
    _signature(
        'mindbody-widget', 'Mindbody Widget', 10,
        r'widgets\.mindbodyonline\.com/widgets/schedules/([a-f0-9]+)',
        r'healcode.*?widget.*?["\']([a-f0-9]+)["\']',
    ),
    _signature(
        'mindbody-classic', 'Mindbody Classic', 9,
        r'clients\.mindbodyonline\.com/classic/mainclass\?studioid=(\d+)',
    ),
    _signature(
        'marianatek', 'Mariana Tek', 9,
        r'([a-z0-9-]+)\.marianatek\.com',
        r'TENANT_NAME\s*=\s*[\'"]([a-z0-9-]+)[\'"]',
        r'([a-z0-9-]+)\.marianaiframes\.com',
        r'data-mariana-integrations',
    ),
    _signature(
        'wellnessliving', 'WellnessLiving', 8,
        r'wellnessliving\.com/schedule/([a-z0-9_-]+)',
    ),
    _signature(
        'janeapp', 'JaneApp', 8,
        r'([a-z0-9-]+)\.janeapp\.com',
    ),
    _signature(
        'brandedweb', 'Brandedweb', 7,
        r'brandedweb-next\.mindbodyonline\.com.*?view/([a-f0-9]+)',
        r'brandedweb-next\.mindbodyonline\.com',
    ),
    _signature(
        'perfectmind', 'PerfectMind', 7,
        r'perfectmind\.com/Contacts/BookMe4\?widgetId=([a-f0-9-]+)',
    ),
    _signature(
        'sendmoregetbeta', 'SendMoreGetBeta', 7,
        r'widgets\.sendmoregetbeta\.com/event\?gymKey=(\d+)',
        r'sendmoregetbeta\.com',
    ),
    _signature(
        'momence', 'Momence', 6,
        r'momence\.com/(?:u/)?([a-z0-9-]+)',
    ),
    _signature(
        'eventbrite', 'Eventbrite', 5,
        r'eventbrite\.[a-z.]+/o/[a-z0-9-]+-(\d+)',
        r'eventbrite\.[a-z.]+',
    ),
)

# Hosts that belong to a booking platform rather than the business itself
BOOKING_DOMAINS = (
    'mindbodyonline.com', 'wellnessliving.com', 'janeapp.com',
    'perfectmind.com', 'sendmoregetbeta.com', 'marianatek.com',
    'momence.com', 'eventbrite.',
)

# (url, html) pairs as fetched for one source
Pages = Sequence[Tuple[str, str]]


def _first_group(match) -> Optional[str]:
    if match.re.groups and match.group(1):
        return match.group(1)
    return None


def match_signature(signature: ProviderSignature, html: str, url: str) -> Tuple[bool, Optional[str]]:
    """
    Try every pattern of one signature against the HTML body and the URL.

    Returns:
        Tuple of (matched, identifier). A pattern without a capturing group
        can match without yielding an identifier; a later pattern that does
        capture one takes precedence.
    """
    matched = False
    identifier = None
    for pattern in signature.detect_patterns:
        for haystack in (html or '', url or ''):
            match = pattern.search(haystack)
            if not match:
                continue
            matched = True
            if identifier is None:
                identifier = _first_group(match)
            break
        if identifier:
            break
    return matched, identifier


def detect_providers(
    html: str,
    url: str,
    catalog: Iterable[ProviderSignature] = PROVIDER_SIGNATURES
) -> List[ProviderMatch]:
    """
    Find every known booking provider present on a page.

    Args:
        html: Page HTML (or text)
        url: URL the page was fetched from
        catalog: Provider signatures to try

    Returns:
        All matches, highest priority first
    """
    detected = []
    for signature in catalog:
        matched, identifier = match_signature(signature, html, url)
        if matched:
            detected.append(ProviderMatch(
                system_key=signature.system_key,
                name=signature.name,
                extracted_id=identifier,
                priority=signature.priority,
                detected_on_url=url
            ))
    detected.sort(key=lambda m: m.priority, reverse=True)
    return detected


def detect_on_pages(pages: Pages, catalog: Iterable[ProviderSignature] = PROVIDER_SIGNATURES) -> List[ProviderMatch]:
    """Merge detections over several pages, one entry per provider system."""
    catalog = tuple(catalog)
    merged = {}
    for url, html in pages:
        for match in detect_providers(html, url, catalog):
            known = merged.get(match.system_key)
            if known is None or (known.extracted_id is None and match.extracted_id):
                merged[match.system_key] = match
    return sorted(merged.values(), key=lambda m: m.priority, reverse=True)


def identifier_present(source: Source, pages: Pages) -> bool:
    """
    Check that a source's configured provider identifier still shows up.

    Sources without an identifier cannot be checked and count as present.
    """
    if not source.identifier:
        return True
    needle = source.identifier.lower()
    return any(needle in (html or '').lower() or needle in (url or '').lower()
               for url, html in pages)


def detect_provider_change(
    source: Source,
    pages: Pages,
    catalog: Iterable[ProviderSignature] = PROVIDER_SIGNATURES
) -> ProviderChange:
    """
    Decide whether a source has moved to a different booking provider.

    Args:
        source: Registered source with its current booking system
        pages: (url, html) pairs fetched from the business website

    Returns:
        ProviderChange naming the best new provider, if any
    """
    detected = detect_on_pages(pages, catalog)
    candidates = [m for m in detected if m.system_key != source.booking_system]
    if not candidates:
        return ProviderChange(changed=False, new_provider=None, all_detected=detected)

    # Prefer a detection that carries an identifier we can scrape with
    with_id = [m for m in candidates if m.extracted_id]
    new_provider = (with_id or candidates)[0]
    logger.info(
        f"Provider change for '{source.name}': {source.booking_system} -> "
        f"{new_provider.system_key} ({new_provider.extracted_id})"
    )
    return ProviderChange(changed=True, new_provider=new_provider, all_detected=detected)


def is_booking_url(url: str) -> bool:
    lowered = (url or '').lower()
    return any(domain in lowered for domain in BOOKING_DOMAINS)
