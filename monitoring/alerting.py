"""Operator alerts delivered through the Telegram Bot API."""
import logging
import os
from typing import Optional

import requests

logger = logging.getLogger(__name__)

TELEGRAM_API_URL = 'https://api.telegram.org/bot{token}/sendMessage'


def escape_html(text: str) -> str:
    """Escape the characters Telegram's HTML parse mode treats as markup."""
    return (text or '').replace('&', '&amp;').replace('<', '&lt;').replace('>', '&gt;')


def format_failure_alert(source_name: str, failures: int, error_message: str, deactivated: bool = False) -> str:
    message = (
        f"🔴 <b>Scraper Alert:</b> {escape_html(source_name)} has failed "
        f"{failures} consecutive times.\n"
        f"Latest error: {escape_html(error_message)}"
    )
    if deactivated:
        message += "\n<i>Source deactivated (auto-discovered).</i>"
    return message


def format_scraper_alert(scraper_name: str, new_events: int, duplicates: int, invalid: int, errors: int) -> str:
    """
    Format a run-completion summary.

    Args:
        scraper_name: Name of the run or source
        new_events: Events inserted
        duplicates: Candidates skipped as duplicates
        invalid: Candidates rejected by verification or validation
        errors: Sources that failed

    Returns:
        HTML-formatted message
    """
    emoji = '⚠️' if errors > 0 else '✅'
    message = f"{emoji} <b>Scraper: {escape_html(scraper_name)}</b>\n\n"
    message += f"New events: {new_events}\n"
    message += f"Skipped (duplicate): {duplicates}\n"
    message += f"Skipped (invalid): {invalid}\n"
    message += f"Errors: {errors}\n"
    if errors > 0:
        message += "\n<i>Check logs for details</i>"
    return message


class TelegramAlertGateway:
    """Sends alert messages to one Telegram chat."""

    def __init__(
        self,
        bot_token: Optional[str] = None,
        chat_id: Optional[str] = None,
        timeout: int = 10,
        session: Optional[requests.Session] = None
    ):
        """
        Args:
            bot_token: Bot token, defaults to TELEGRAM_BOT_TOKEN
            chat_id: Target chat, defaults to TELEGRAM_CHAT_ID
            timeout: HTTP request timeout in seconds
            session: Optional requests session to reuse
        """
        self.bot_token = bot_token or os.environ.get('TELEGRAM_BOT_TOKEN')
        self.chat_id = chat_id or os.environ.get('TELEGRAM_CHAT_ID')
        self.timeout = timeout
        self.session = session or requests.Session()

    @property
    def configured(self) -> bool:
        return bool(self.bot_token and self.chat_id)

    def send(self, message: str) -> bool:
        """
        Deliver a message. Never raises.

        Returns:
            True if Telegram accepted the message
        """
        if not self.configured:
            logger.warning(
                "Telegram not configured. Set TELEGRAM_BOT_TOKEN and TELEGRAM_CHAT_ID",
                extra={'alert': message}
            )
            return False

        try:
            response = self.session.post(
                TELEGRAM_API_URL.format(token=self.bot_token),
                json={
                    'chat_id': self.chat_id,
                    'text': message,
                    'parse_mode': 'HTML',
                    'disable_web_page_preview': True
                },
                timeout=self.timeout
            )
        except requests.RequestException as e:
            logger.error(f"Failed to send Telegram alert: {e}")
            return False

        if not response.ok:
            logger.error(f"Telegram API error: {response.status_code} {response.text[:200]}")
            return False

        return True
