"""
notifications/dispatcher.py
---------------------------
Notification dispatchers.

    - LoggingNotificationDispatcher: writes the notification to the log.
    - TelegramNotificationDispatcher: sends it to a staff chat through a
      Telegram bot.

Use `build_dispatcher()` to pick one from the configuration.
"""

import asyncio
import threading
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Optional

from telegram import Bot

from config import DEFAULT_CURRENCY, NOTIFY_CHAT_ID, TELEGRAM_BOT_TOKEN
from models.event import SubjectRef
from utils.logger import get_logger

logger = get_logger(__name__)


class NotificationKind:
    CUSTOMER_CONVERTED = "customer_converted"
    INSTALLMENT_PAID = "installment_paid"
    INSTALLMENT_OVERDUE = "installment_overdue"


_TITLES = {
    NotificationKind.CUSTOMER_CONVERTED: "🎓 Customer converted to student",
    NotificationKind.INSTALLMENT_PAID: "✅ Installment paid",
    NotificationKind.INSTALLMENT_OVERDUE: "⏰ Installment overdue",
}


def format_message(event_kind: str, subject: SubjectRef, actor_id: int,
                   context: Optional[dict] = None) -> str:
    """Render a notification as plain text."""
    lines = [
        _TITLES.get(event_kind, event_kind),
        f"{subject.subject_type.title()} #{subject.subject_id} (by user {actor_id})",
    ]
    for key, value in sorted((context or {}).items()):
        if value is None:
            continue
        if isinstance(value, Decimal):
            value = f"{value:.2f} {DEFAULT_CURRENCY}"
        lines.append(f"  • {key.replace('_', ' ')}: {value}")
    return "\n".join(lines)


class NotificationDispatcher(ABC):
    """
    Base dispatcher. Subclasses implement `_send`.

    `trigger` never raises: delivery problems are logged.
    """

    def trigger(self, event_kind: str, subject: SubjectRef, actor_id: int,
                context: Optional[dict] = None) -> bool:
        """
        Send one notification.

        Returns:
            True if it was delivered, False otherwise.
        """
        try:
            self._send(event_kind, subject, actor_id, context or {})
            return True
        except Exception as e:
            logger.error(
                f"Failed to send {event_kind} notification for "
                f"{subject.subject_type} #{subject.subject_id}: {e}"
            )
            return False

    @abstractmethod
    def _send(self, event_kind: str, subject: SubjectRef, actor_id: int, context: dict) -> None:
        """Deliver one notification; may raise."""

    def close(self) -> None:
        """Release delivery resources. Nothing to do by default."""


class LoggingNotificationDispatcher(NotificationDispatcher):
    """Writes notifications to the application log."""

    def _send(self, event_kind, subject, actor_id, context) -> None:
        logger.info(format_message(event_kind, subject, actor_id, context).replace("\n", " | "))


class TelegramNotificationDispatcher(NotificationDispatcher):
    """
    Sends notifications to a staff chat.

    The bot and its HTTP connection pool live on one event loop owned by
    the dispatcher, so pooled connections stay usable across sends. Call
    `close()` when done.

    Args:
        token: Bot token (defaults to TELEGRAM_BOT_TOKEN).
        chat_id: Target chat (defaults to NOTIFY_CHAT_ID).
        bot: Ready-made Bot, mainly for tests.
    """

    def __init__(self, token: str = TELEGRAM_BOT_TOKEN, chat_id: str = NOTIFY_CHAT_ID,
                 bot: Optional[Bot] = None):
        if not chat_id:
            raise ValueError("NOTIFY_CHAT_ID is not set")
        if bot is None:
            if not token:
                raise ValueError("TELEGRAM_BOT_TOKEN is not set")
            bot = Bot(token=token)
        self.bot = bot
        self.chat_id = chat_id
        self._loop = asyncio.new_event_loop()
        self._lock = threading.Lock()
        self._started = False

    def _run(self, coro):
        return self._loop.run_until_complete(coro)

    def _send(self, event_kind, subject, actor_id, context) -> None:
        text = format_message(event_kind, subject, actor_id, context)
        with self._lock:
            if self._loop.is_closed():
                raise RuntimeError("dispatcher is closed")
            if not self._started:
                self._run(self.bot.initialize())
                self._started = True
            self._run(self.bot.send_message(chat_id=self.chat_id, text=text))
        logger.info(f"Sent {event_kind} notification to chat {self.chat_id}")

    def close(self) -> None:
        with self._lock:
            if self._loop.is_closed():
                return
            try:
                if self._started:
                    self._run(self.bot.shutdown())
            except Exception as e:
                logger.warning(f"Telegram bot shutdown failed: {e}")
            finally:
                self._started = False
                self._loop.close()


def build_dispatcher() -> NotificationDispatcher:
    """Telegram when a bot token and chat are configured, the log otherwise."""
    if TELEGRAM_BOT_TOKEN and NOTIFY_CHAT_ID:
        return TelegramNotificationDispatcher()
    logger.info("Telegram notifications not configured; logging notifications instead.")
    return LoggingNotificationDispatcher()
