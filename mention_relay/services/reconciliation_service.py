"""Catch-up on mentions missed while disconnected."""

import asyncio
import logging
from typing import TYPE_CHECKING

from ..events import MentionEvent, now_ts, ts_key
from ..slack_api import SlackAPI

if TYPE_CHECKING:
    from ..pipeline import MentionPipeline

logger = logging.getLogger(__name__)


class ReconciliationService:
    """Replays conversation history newer than the watermark.

    Runs after every successful (re)connect. Recovered mentions go through
    the same pipeline as live ones, oldest first, so the watermark only
    moves forward and an interrupted scan picks up where it stopped.
    """

    def __init__(self, slack: SlackAPI, pipeline: "MentionPipeline"):
        self.slack = slack
        self.pipeline = pipeline
        self._lock = asyncio.Lock()

    async def catch_up(self) -> int:
        """
        Process mentions posted since the watermark.

        Returns:
            Number of missed mentions processed.
        """
        # Back-to-back reconnects must not run two scans at once
        async with self._lock:
            since = self.pipeline.watermark
            if not since:
                # First run: no baseline, start tracking from now
                await self.pipeline.advance_watermark(now_ts())
                logger.info("First run, tracking mentions from now")
                return 0

            logger.info("Catching up on missed mentions since %s...", since)

            try:
                conversations = await self.slack.list_conversations()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning("Catch-up failed, could not list conversations: %s", e)
                return 0

            missed: list[MentionEvent] = []
            for conversation in conversations:
                try:
                    messages = await self.slack.conversations_history(conversation.id, oldest=since)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.warning("Skipping history of %s: %s", conversation.id, e)
                    continue

                for message in messages:
                    event = MentionEvent.parse(message, channel=conversation.id)
                    if event is not None and self.pipeline.is_relevant(event):
                        missed.append(event)

            missed.sort(key=lambda event: ts_key(event.ts))

            count = 0
            for event in missed:
                if await self.pipeline.handle_missed(event, since):
                    count += 1

            if count:
                logger.info("Caught up on %d missed mention(s) across %d conversation(s)", count, len(conversations))
            else:
                logger.info("No missed mentions")
            return count
