"""Local desktop notifications."""

import asyncio
import logging
import shutil
import sys
from typing import Optional

from .osascript import osascript_available, run_osascript

logger = logging.getLogger(__name__)

NOTIFY_SCRIPT = """on run argv
    display notification (item 2 of argv) with title (item 1 of argv)
end run"""


class Notifier:
    """Shows a notification. Fire-and-forget: implementations log failures."""

    async def notify(self, title: str, body: str) -> None:
        raise NotImplementedError


class LogNotifier(Notifier):
    """Writes the notification to the log instead of the desktop."""

    async def notify(self, title: str, body: str) -> None:
        logger.info("%s: %s", title, body)


class MacNotifier(Notifier):
    """Notification Center via osascript."""

    async def notify(self, title: str, body: str) -> None:
        try:
            await run_osascript(NOTIFY_SCRIPT, title, body)
        except OSError as e:
            logger.warning("Failed to show notification: %s", e)


class LinuxNotifier(Notifier):
    """Freedesktop notification via notify-send."""

    async def notify(self, title: str, body: str) -> None:
        try:
            process = await asyncio.create_subprocess_exec(
                "notify-send",
                "--app-name=slack-mention-relay",
                title,
                body,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
            _, stderr = await process.communicate()
            if process.returncode:
                logger.warning(
                    "notify-send failed (exit code %d): %s",
                    process.returncode,
                    stderr.decode("utf-8", errors="replace").strip(),
                )
        except OSError as e:
            logger.warning("Failed to show notification: %s", e)


def create_notifier(platform: Optional[str] = None) -> Notifier:
    """Pick the notifier for this platform, falling back to the log."""
    platform = platform or sys.platform
    if platform == "darwin" and osascript_available():
        return MacNotifier()
    if platform.startswith("linux") and shutil.which("notify-send"):
        return LinuxNotifier()
    logger.info("No desktop notifier available, notifications go to the log")
    return LogNotifier()
