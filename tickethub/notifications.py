import logging
from typing import Optional

import httpx

from tickethub.config import settings

logger = logging.getLogger(__name__)


class TelegramNotifier:
    """Fire-and-forget customer messages through the Telegram Bot API"""

    def __init__(self, bot_token: Optional[str] = None, api_base: Optional[str] = None, timeout: Optional[float] = None):
        self.bot_token = bot_token if bot_token is not None else settings.TELEGRAM_BOT_TOKEN
        self.api_base = (api_base or settings.TELEGRAM_API_BASE).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.NOTIFICATION_TIMEOUT_SEC

    @property
    def enabled(self) -> bool:
        return bool(self.bot_token)

    def send_message(self, chat_id: int, text: str) -> bool:
        """Send a plain text message. Never raises; returns whether delivery succeeded."""
        if not self.enabled:
            logger.debug("Telegram bot token not configured; skipping message to %s", chat_id)
            return False

        url = f"{self.api_base}/bot{self.bot_token}/sendMessage"
        try:
            response = httpx.post(url, json={"chat_id": chat_id, "text": text}, timeout=self.timeout)
            response.raise_for_status()
            return True
        except httpx.HTTPError as e:
            logger.warning("Telegram message to %s failed: %s", chat_id, e)
            return False


def format_amount(amount) -> str:
    return f"{amount:,.2f} {settings.CURRENCY}"
