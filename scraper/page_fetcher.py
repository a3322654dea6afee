"""HTTP page fetcher producing visible text for signal detection and extraction."""
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

import requests
from bs4 import BeautifulSoup

logger = logging.getLogger(__name__)

USER_AGENT = 'Mozilla/5.0 (compatible; ListingIngestBot/1.0)'


class FetchError(Exception):
    """Page could not be fetched after all retry attempts."""


class FetchTimeout(FetchError):
    """Page fetch exceeded its timeout."""


@dataclass
class Page:
    url: str
    html: str
    text: str


def html_to_text(html: str) -> str:
    """
    Extract visible text from HTML.

    Args:
        html: Raw HTML content

    Returns:
        Text with script and style content removed, one line per block
    """
    soup = BeautifulSoup(html or '', 'html.parser')
    for element in soup(['script', 'style', 'noscript']):
        element.decompose()
    lines = (line.strip() for line in soup.get_text(separator='\n').splitlines())
    return '\n'.join(line for line in lines if line)


class PageFetcher:
    """Fetcher for business web pages with retry logic."""

    def __init__(
        self,
        timeout: int = 30,
        max_retries: int = 3,
        base_delay: float = 1,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep
    ):
        """
        Initialize the page fetcher.

        Args:
            timeout: HTTP request timeout in seconds (default: 30)
            max_retries: Attempts per page for transient errors (default: 3, at least 1)
            base_delay: First backoff delay in seconds, doubled per attempt
            session: Optional requests session to reuse
            sleep: Sleep function used between attempts
        """
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.base_delay = base_delay
        if session is None:
            session = requests.Session()
            session.headers['User-Agent'] = USER_AGENT
        self.session = session
        self._sleep = sleep

    def fetch(self, url: str, timeout: Optional[int] = None) -> Page:
        """
        Fetch a page and extract its text.

        Timeouts are not retried. Connection errors and 5xx responses are
        retried with exponential backoff.

        Args:
            url: Page URL
            timeout: Per-call override of the default timeout

        Returns:
            Page with raw HTML and visible text

        Raises:
            FetchTimeout: If the request timed out
            FetchError: On 4xx responses or when all retry attempts fail
        """
        timeout = timeout or self.timeout

        for attempt in range(self.max_retries):
            try:
                logger.debug(f"Fetching {url} (attempt {attempt + 1}/{self.max_retries})")
                response = self.session.get(url, timeout=timeout)
                if response.status_code >= 500:
                    raise requests.HTTPError(
                        f"{response.status_code} Server Error for url: {url}",
                        response=response
                    )
                if response.status_code >= 400:
                    raise FetchError(f"HTTP {response.status_code} fetching {url}")
                html = response.text
                return Page(url=url, html=html, text=html_to_text(html))

            except requests.Timeout as e:
                logger.warning(f"Timed out after {timeout}s fetching {url}")
                raise FetchTimeout(f"Timed out after {timeout}s fetching {url}") from e

            except requests.RequestException as e:
                if attempt < self.max_retries - 1:
                    delay = self.base_delay * (2 ** attempt)
                    logger.warning(
                        f"Request failed (attempt {attempt + 1}/{self.max_retries}): {e}. "
                        f"Retrying in {delay} seconds..."
                    )
                    self._sleep(delay)
                else:
                    logger.error(
                        f"All {self.max_retries} retry attempts failed for {url}. Last error: {e}"
                    )
                    raise FetchError(f"Failed to fetch {url}: {e}") from e
