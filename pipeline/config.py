"""Runtime configuration read from environment variables."""
import os
from dataclasses import dataclass, field
from typing import List, Optional

DEFAULT_PAGE_PATHS = ['', '/schedule', '/classes', '/events']


def _int(name: str, default: int) -> int:
    return int(os.environ.get(name, str(default)))


def _float(name: str, default: float) -> float:
    return float(os.environ.get(name, str(default)))


@dataclass
class Settings:
    events_table_name: str = 'listing-events'
    sources_table_name: str = 'listing-sources'
    region_name: Optional[str] = None
    log_level: str = 'INFO'
    batch_size: int = 10
    max_workers: int = 3
    batch_pause_seconds: float = 30.0
    fetch_timeout_seconds: int = 30
    fetch_max_retries: int = 3
    ai_model: str = 'claude-haiku-4-5-20251001'
    ai_min_interval_seconds: float = 1.5
    ai_max_page_chars: int = 15000
    ai_timeout_seconds: float = 60.0
    signal_threshold: int = 3
    cluster_threshold: int = 3
    failure_threshold: int = 3
    timezone: str = 'America/Vancouver'
    page_paths: List[str] = field(default_factory=lambda: list(DEFAULT_PAGE_PATHS))
    telegram_bot_token: Optional[str] = None
    telegram_chat_id: Optional[str] = None
    anthropic_api_key: Optional[str] = None

    @classmethod
    def from_env(cls) -> 'Settings':
        """
        Build settings from environment variables, falling back to defaults.

        PAGE_PATHS is a comma-separated list of paths appended to each
        source URL; an empty entry stands for the URL itself.
        """
        paths = os.environ.get('PAGE_PATHS')
        return cls(
            events_table_name=os.environ.get('EVENTS_TABLE_NAME', 'listing-events'),
            sources_table_name=os.environ.get('SOURCES_TABLE_NAME', 'listing-sources'),
            region_name=os.environ.get('AWS_REGION'),
            log_level=os.environ.get('LOG_LEVEL', 'INFO'),
            batch_size=_int('BATCH_SIZE', 10),
            max_workers=_int('MAX_WORKERS', 3),
            batch_pause_seconds=_float('BATCH_PAUSE_SECONDS', 30.0),
            fetch_timeout_seconds=_int('FETCH_TIMEOUT_SECONDS', 30),
            fetch_max_retries=_int('FETCH_MAX_RETRIES', 3),
            ai_model=os.environ.get('AI_MODEL', 'claude-haiku-4-5-20251001'),
            ai_min_interval_seconds=_float('AI_MIN_INTERVAL_SECONDS', 1.5),
            ai_max_page_chars=_int('AI_MAX_PAGE_CHARS', 15000),
            ai_timeout_seconds=_float('AI_TIMEOUT_SECONDS', 60.0),
            signal_threshold=_int('SIGNAL_THRESHOLD', 3),
            cluster_threshold=_int('CLUSTER_THRESHOLD', 3),
            failure_threshold=_int('FAILURE_THRESHOLD', 3),
            timezone=os.environ.get('TIMEZONE', 'America/Vancouver'),
            page_paths=[p.strip() for p in paths.split(',')] if paths is not None else list(DEFAULT_PAGE_PATHS),
            telegram_bot_token=os.environ.get('TELEGRAM_BOT_TOKEN'),
            telegram_chat_id=os.environ.get('TELEGRAM_CHAT_ID'),
            anthropic_api_key=os.environ.get('ANTHROPIC_API_KEY')
        )
