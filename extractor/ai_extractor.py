"""Language-model extraction of candidate listings from page text."""
import json
import logging
import os
import re
from dataclasses import dataclass, field
from datetime import date
from typing import Callable, List, Optional

import anthropic

from extractor.rate_limiter import RateLimiter
from processor.models import CandidateRecord

logger = logging.getLogger(__name__)

DEFAULT_MODEL = 'claude-haiku-4-5-20251001'

EXTRACTION_PROMPT = """You extract scheduled listings (classes, events, workshops) from the text of a business web page.

RULES:
- Only extract listings that the page EXPLICITLY shows with a specific date and start time.
- If the page has no scheduled listings, return {{"events": []}}. An empty list is a correct answer.
- Never invent listings. Service descriptions, menus, opening hours and navigation links are not listings.
- Every listing MUST include "source_quote": the exact text copied from the page that names the listing.

Business: "{business_name}"
Page URL: {source_url}
Today's date: {today}

PAGE TEXT:
---
{page_text}
---

Respond with JSON only, in this shape:
{{
  "events": [
    {{
      "title": "exact listing title as written on the page",
      "date": "YYYY-MM-DD",
      "time": "HH:MM (24-hour)",
      "end_time": "HH:MM or null",
      "description": "short description taken from the page",
      "source_quote": "exact sentence or phrase from the page containing the title",
      "confidence": 0.0
    }}
  ]
}}"""

_JSON_OBJECT = re.compile(r'\{[\s\S]*\}')


def _text_or_none(value) -> Optional[str]:
    if value is None or isinstance(value, (dict, list)):
        return None
    return str(value).strip() or None


class AIExtractionError(Exception):
    """Every extraction call for a source failed."""


@dataclass
class ExtractionResult:
    candidates: List[CandidateRecord] = field(default_factory=list)
    error: Optional[str] = None


def get_anthropic_client(api_key: Optional[str] = None, timeout: float = 60.0, max_retries: int = 2):
    """Initialize Anthropic client with API key from argument or environment."""
    api_key = api_key or os.environ.get('ANTHROPIC_API_KEY')
    if not api_key:
        logger.warning("ANTHROPIC_API_KEY not set. AI extraction is disabled.")
        return None
    return anthropic.Anthropic(api_key=api_key, timeout=timeout, max_retries=max_retries)


class AIExtractor:
    """Rate-limited wrapper around the language-model extraction call."""

    def __init__(
        self,
        client,
        rate_limiter: RateLimiter,
        model: str = DEFAULT_MODEL,
        max_tokens: int = 4096,
        max_page_chars: int = 15000,
        today: Callable[[], date] = date.today
    ):
        """
        Args:
            client: Anthropic client, or None to disable extraction
            rate_limiter: Gate shared by every pipeline worker
            model: Model name passed to messages.create
            max_tokens: Response token budget
            max_page_chars: Page text is truncated to this many characters
            today: Callable returning the date quoted in the prompt
        """
        self.client = client
        self.rate_limiter = rate_limiter
        self.model = model
        self.max_tokens = max_tokens
        self.max_page_chars = max_page_chars
        self._today = today

    def build_prompt(self, page_text: str, business_name: str, source_url: str) -> str:
        return EXTRACTION_PROMPT.format(
            business_name=business_name,
            source_url=source_url,
            today=self._today().isoformat(),
            page_text=page_text[:self.max_page_chars]
        )

    def extract(self, page_text: str, business_name: str, source_url: str) -> ExtractionResult:
        """
        Ask the model for candidate listings on one page.

        Errors never propagate: they are logged and reported as an empty
        result carrying the error message.

        Args:
            page_text: Visible text of the page
            business_name: Venue the listings belong to
            source_url: URL of the page

        Returns:
            ExtractionResult with untrusted candidates
        """
        if self.client is None:
            return ExtractionResult(error='No Anthropic client configured')

        prompt = self.build_prompt(page_text, business_name, source_url)
        self.rate_limiter.acquire()

        try:
            response = self.client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                messages=[{'role': 'user', 'content': prompt}]
            )
            text = response.content[0].text
        except anthropic.APIStatusError as e:
            message = f"{e.status_code}: {str(e)[:100]}"
            logger.warning(f"AI extraction failed for {source_url}: {message}")
            return ExtractionResult(error=f"AI extraction failed: {message}")
        except anthropic.APIError as e:
            logger.warning(f"AI extraction failed for {source_url}: {e}")
            return ExtractionResult(error=f"AI extraction failed: {str(e)[:100]}")
        except (AttributeError, IndexError) as e:
            logger.warning(f"Unexpected AI response shape for {source_url}: {e}")
            return ExtractionResult(error=f"AI extraction failed: {e}")

        try:
            candidates = self.parse_response(text, business_name)
        except ValueError as e:
            logger.warning(f"Failed to parse AI response for {source_url}: {e}")
            return ExtractionResult(error=f"AI response parse failed: {e}")

        logger.info(f"AI proposed {len(candidates)} candidate(s) for {source_url}")
        return ExtractionResult(candidates=candidates)

    def parse_response(self, text: str, business_name: str) -> List[CandidateRecord]:
        """
        Turn the model's JSON answer into candidate records.

        Raises:
            ValueError: If the response holds no parseable JSON object
        """
        match = _JSON_OBJECT.search(text or '')
        if not match:
            raise ValueError("no JSON object in response")
        parsed = json.loads(match.group(0))
        events = parsed.get('events') if isinstance(parsed, dict) else None
        if not isinstance(events, list):
            raise ValueError("response has no 'events' list")

        candidates = []
        for item in events:
            if not isinstance(item, dict):
                continue
            try:
                confidence = float(item.get('confidence') or 0.0)
            except (TypeError, ValueError):
                confidence = 0.0
            candidates.append(CandidateRecord(
                title=str(item.get('title') or '').strip(),
                date=str(item.get('date') or '').strip(),
                time=str(item.get('time') or '').strip(),
                end_time=_text_or_none(item.get('end_time')),
                description=_text_or_none(item.get('description')),
                venue_name=business_name,
                source_quote=str(item.get('source_quote') or ''),
                confidence=confidence
            ))
        return candidates
