"""Keeps the bot a member of every public channel."""

import asyncio
import logging

from ..slack_api import SlackAPI

logger = logging.getLogger(__name__)


class ChannelService:
    """Joins public channels so their mentions show up in the stream."""

    def __init__(self, slack: SlackAPI, scan_interval: int = 3600):
        self.slack = slack
        self.scan_interval = scan_interval

    async def join_all_public_channels(self) -> int:
        """
        Join every public channel the bot isn't in yet.

        Returns:
            Number of channels joined.
        """
        channels = await self.slack.list_public_channels()
        to_join = [channel for channel in channels if not channel.is_member]

        if not to_join:
            logger.info("Already in all %d public channels", len(channels))
            return 0

        logger.info("Joining %d public channel(s)...", len(to_join))
        joined = 0
        for channel in to_join:
            try:
                await self.slack.join_channel(channel.id)
                joined += 1
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning("Failed to join #%s: %s", channel.name, e)

        logger.info("Joined %d channel(s), %d public channels total", joined, len(channels))
        return joined

    async def scan_once(self) -> None:
        try:
            await self.join_all_public_channels()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Auto-join failed: %s", e)

    async def run(self) -> None:
        """Scan now, then every ``scan_interval`` seconds until cancelled."""
        while True:
            await self.scan_once()
            await asyncio.sleep(self.scan_interval)
