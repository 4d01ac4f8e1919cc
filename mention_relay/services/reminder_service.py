"""Task/reminder backends that receive one entry per mention."""

import html
import logging
from typing import Optional

import httpx

from ..config import ReminderConfig
from .osascript import run_osascript

logger = logging.getLogger(__name__)

LIST_EXISTS_SCRIPT = """on run argv
    tell application "Reminders" to return exists list (item 1 of argv)
end run"""

CREATE_REMINDER_SCRIPT = """on run argv
    tell application "Reminders"
        if (item 1 of argv) is "" then
            set targetList to default list
        else
            set targetList to list (item 1 of argv)
        end if
        make new reminder at end of targetList with properties {name:(item 2 of argv), body:(item 3 of argv)}
    end tell
end run"""


class ReminderStore:
    """Creates a task for a mention.

    ``create_task`` is best-effort: implementations log failures instead
    of raising into the mention pipeline.
    """

    async def prepare(self) -> None:
        """Get ready for the first write (permissions, target list)."""

    async def create_task(self, title: str, notes: str) -> None:
        raise NotImplementedError


class LogReminderStore(ReminderStore):
    """Logs tasks. Useful when no task backend is configured."""

    async def create_task(self, title: str, notes: str) -> None:
        logger.info("Task: %s\n%s", title, notes)


class AppleRemindersStore(ReminderStore):
    """Creates reminders in Apple Reminders through osascript."""

    def __init__(self, list_name: str = "Reminders"):
        self.list_name = list_name
        self._target: Optional[str] = None

    async def prepare(self) -> None:
        """Resolve the target list, falling back to the default list."""
        try:
            returncode, stdout, _ = await run_osascript(LIST_EXISTS_SCRIPT, self.list_name)
        except OSError as e:
            logger.warning("Reminders unavailable: %s", e)
            self._target = ""
            return

        if returncode == 0 and stdout == "true":
            self._target = self.list_name
            logger.info("Reminders will be created in list '%s'", self.list_name)
        else:
            self._target = ""
            logger.warning("Reminder list '%s' not found, using default", self.list_name)

    async def create_task(self, title: str, notes: str) -> None:
        if self._target is None:
            await self.prepare()

        try:
            returncode, _, stderr = await run_osascript(CREATE_REMINDER_SCRIPT, self._target or "", title, notes)
        except OSError as e:
            logger.warning("Failed to create reminder: %s", e)
            return

        if returncode == 0:
            logger.info("Reminder created: %s", title)
        else:
            logger.warning("Failed to create reminder: %s", stderr)


class TelegramReminderStore(ReminderStore):
    """Sends each task as a Telegram message."""

    TELEGRAM_API_BASE = "https://api.telegram.org"

    def __init__(
        self,
        bot_token: str,
        chat_id: str,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the Telegram backend.

        Args:
            bot_token: Telegram bot token.
            chat_id: Chat to deliver messages to.
            transport: Optional httpx transport (used by tests).
        """
        self.bot_token = bot_token
        self.chat_id = chat_id
        self._transport = transport

    @staticmethod
    def format_message(title: str, notes: str) -> str:
        text = f"<b>{html.escape(title)}</b>"
        if notes:
            text += f"\n\n{html.escape(notes)}"
        return text

    async def create_task(self, title: str, notes: str) -> None:
        url = f"{self.TELEGRAM_API_BASE}/bot{self.bot_token}/sendMessage"
        payload = {
            "chat_id": self.chat_id,
            "text": self.format_message(title, notes),
            "parse_mode": "HTML",
            "disable_web_page_preview": True,
        }

        async with httpx.AsyncClient(transport=self._transport, timeout=30.0) as client:
            try:
                response = await client.post(url, json=payload)
                response.raise_for_status()
                logger.info("Telegram task sent: %s", title)

            except httpx.HTTPStatusError as e:
                logger.warning("Telegram send failed (HTTP %d): %s", e.response.status_code, e.response.text)
            except httpx.HTTPError as e:
                logger.warning("Telegram send error: %s", e)


def create_reminder_store(config: ReminderConfig) -> ReminderStore:
    """Build the backend selected in the config."""
    if config.backend == "apple_reminders":
        return AppleRemindersStore(config.list_name)
    if config.backend == "telegram" and config.telegram is not None:
        return TelegramReminderStore(
            bot_token=config.telegram.bot_token.get_secret_value(),
            chat_id=config.telegram.chat_id,
        )
    return LogReminderStore()
