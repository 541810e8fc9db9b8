"""One-way outbound alert delivery.

``notify(message)`` is fire-and-forget: it returns immediately and any
delivery failure is logged, never raised.

    TelegramNotifier — Telegram Bot API ``sendMessage`` over httpx,
                       delivered from a single background thread
    LogNotifier      — writes the message to the log (demo / dev)
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from typing import Optional, Protocol

import httpx
import structlog

from shared.config import Settings, get_settings

logger = structlog.get_logger(__name__)

_TELEGRAM_API = "https://api.telegram.org"


class Notifier(Protocol):
    def notify(self, message: str) -> None: ...


class LogNotifier:
    """Logs alerts instead of sending them."""

    def notify(self, message: str) -> None:
        logger.info("alert_notification", channel="log", message=message)


class TelegramNotifier:
    """Sends alert text to a Telegram chat.

    Parameters
    ----------
    bot_token : str
        Bot token from @BotFather.
    chat_id : str
        Target chat or channel id.
    timeout_s : float
        Per-request timeout.
    """

    def __init__(
        self,
        bot_token: str,
        chat_id: str,
        timeout_s: float = 10.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        if not bot_token or not chat_id:
            raise ValueError("Telegram bot token and chat id are required")
        self._url = f"{_TELEGRAM_API}/bot{bot_token}/sendMessage"
        self._chat_id = chat_id
        self._client = client or httpx.Client(timeout=timeout_s)
        self._pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="telegram")

    def notify(self, message: str) -> None:
        self._pool.submit(self._send, message)

    def notify_sync(self, message: str) -> bool:
        """Send and wait; returns delivery success."""
        return self._send(message)

    def _send(self, message: str) -> bool:
        try:
            resp = self._client.post(
                self._url,
                json={"chat_id": self._chat_id, "text": message, "parse_mode": "HTML"},
            )
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "telegram_send_failed",
                status=exc.response.status_code,
                body=exc.response.text[:200],
            )
            return False
        except httpx.HTTPError as exc:
            logger.error("telegram_send_failed", error=str(exc))
            return False
        logger.info("telegram_alert_sent", chat=self._chat_id)
        return True

    def close(self) -> None:
        self._pool.shutdown(wait=True)
        self._client.close()


def build_notifier(settings: Optional[Settings] = None) -> Notifier:
    """Instantiate the notifier named by ``NOTIFIER_BACKEND``."""
    settings = settings or get_settings()
    if settings.NOTIFIER_BACKEND == "telegram":
        return TelegramNotifier(
            settings.TELEGRAM_BOT_TOKEN,
            settings.TELEGRAM_CHAT_ID,
            timeout_s=settings.TELEGRAM_TIMEOUT_S,
        )
    if settings.NOTIFIER_BACKEND == "log":
        return LogNotifier()
    raise ValueError(f"unknown NOTIFIER_BACKEND {settings.NOTIFIER_BACKEND!r}")
