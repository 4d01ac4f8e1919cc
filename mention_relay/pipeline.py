"""Mention detection, enrichment and side-effect fan-out."""

import asyncio
import logging
import re
from collections import OrderedDict
from typing import Awaitable, Optional

from .config import Config
from .events import MentionEvent, ts_key
from .services.notification_service import Notifier
from .services.reminder_service import ReminderStore
from .services.watermark_service import WatermarkService
from .slack_api import SlackAPI
from .template import DEFAULT_NOTES_TEMPLATE, DEFAULT_TITLE_TEMPLATE, render

logger = logging.getLogger(__name__)

USER_REFERENCE = re.compile(r"<@([UW][A-Z0-9]+)(?:\|[^>]*)?>")


class MentionPipeline:
    """Single owner of the watermark and the user name cache.

    Live events and events recovered by reconciliation both go through
    here. All state changes happen between awaits on the event loop, so
    "is this newer than the watermark" can't race.
    """

    RECENT_LIMIT = 1024

    def __init__(
        self,
        slack: SlackAPI,
        watermarks: WatermarkService,
        reminders: ReminderStore,
        notifier: Notifier,
        tracked_user_id: str,
        reaction_emoji: str = "eyes",
        title_template: str = DEFAULT_TITLE_TEMPLATE,
        notes_template: str = DEFAULT_NOTES_TEMPLATE,
        notification_title: str = "Slack mention",
        notifications_enabled: bool = True,
    ) -> None:
        self.slack = slack
        self.watermarks = watermarks
        self.reminders = reminders
        self.notifier = notifier
        self.tracked_user_id = tracked_user_id
        self.reaction_emoji = reaction_emoji
        self.title_template = title_template
        self.notes_template = notes_template
        self.notification_title = notification_title
        self.notifications_enabled = notifications_enabled

        self._watermark: Optional[str] = None
        self._write_lock = asyncio.Lock()
        self._recent: OrderedDict[tuple[str, str], None] = OrderedDict()
        self._names: dict[str, str] = {}
        self._tasks: set[asyncio.Task] = set()

    @classmethod
    def from_config(
        cls,
        config: Config,
        slack: SlackAPI,
        watermarks: WatermarkService,
        reminders: ReminderStore,
        notifier: Notifier,
    ) -> "MentionPipeline":
        return cls(
            slack=slack,
            watermarks=watermarks,
            reminders=reminders,
            notifier=notifier,
            tracked_user_id=config.slack.tracked_user_id,
            reaction_emoji=config.relay.reaction_emoji,
            title_template=config.reminders.title_template,
            notes_template=config.reminders.notes_template,
            notification_title=config.notifications.title,
            notifications_enabled=config.notifications.enabled,
        )

    @property
    def watermark(self) -> Optional[str]:
        return self._watermark

    async def load(self) -> Optional[str]:
        """Read the persisted watermark. Call once before handling events."""
        self._watermark = await self.watermarks.read()
        if self._watermark:
            logger.info("Last processed message: %s", self._watermark)
        return self._watermark

    async def advance_watermark(self, ts: str) -> bool:
        """
        Move the watermark forward to ``ts`` if it is newer.

        Args:
            ts: Slack message timestamp.

        Returns:
            True if the watermark moved.
        """
        if self._watermark is not None and ts_key(ts) <= ts_key(self._watermark):
            return False

        self._watermark = ts
        try:
            async with self._write_lock:
                # Always persist the newest value, even if this write was queued behind a later one
                await self.watermarks.write(self._watermark)
        except Exception as e:
            logger.error("Failed to persist watermark %s: %s", ts, e, exc_info=True)
        return True

    def is_relevant(self, event: MentionEvent) -> bool:
        return event.is_mention(self.tracked_user_id)

    def _claim(self, event: MentionEvent) -> bool:
        """Mark an event as taken, False if it was already processed recently."""
        if event.key in self._recent:
            return False
        self._recent[event.key] = None
        while len(self._recent) > self.RECENT_LIMIT:
            self._recent.popitem(last=False)
        return True

    async def handle_live(self, event: MentionEvent) -> bool:
        """
        Handle an event from the real-time stream.

        Returns:
            True if the event was a new mention and was processed.
        """
        if not self.is_relevant(event):
            return False
        if not self._claim(event):
            logger.debug("Skipping redelivered mention %s/%s", event.channel, event.ts)
            return False

        await self.advance_watermark(event.ts)
        await self.process(event)
        return True

    async def handle_missed(self, event: MentionEvent, since: str) -> bool:
        """
        Handle a message recovered from history after a reconnect.

        Args:
            event: Message from conversation history.
            since: Watermark the history scan started from (exclusive).

        Returns:
            True if the event was a new mention and was processed.
        """
        if not self.is_relevant(event):
            return False
        if ts_key(event.ts) <= ts_key(since):
            return False
        if not self._claim(event):
            return False

        await self.advance_watermark(event.ts)
        await self.process(event)
        return True

    async def process(self, event: MentionEvent) -> None:
        """Run the side effects for one mention. Never raises."""
        try:
            await self._process(event)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Error processing mention %s/%s: %s", event.channel, event.ts, e, exc_info=True)

    async def _process(self, event: MentionEvent) -> None:
        logger.info("Mention detected in %s from %s", event.channel, event.user)

        # 1. React without holding up the rest
        self._spawn(self._react(event))

        # 2. Fetch context
        sender, channel, permalink = await self._enrich(event)

        # 3. Resolve user mentions in message text
        message = await self.resolve_mentions(event.text)

        # 4. Render and hand off the task
        context = {
            "sender": sender,
            "channel": channel,
            "message": message,
            "permalink": permalink,
            "date": event.sent_at.strftime("%Y-%m-%d %H:%M"),
        }
        title = render(self.title_template, context)
        notes = render(self.notes_template, context)

        try:
            await self.reminders.create_task(title, notes)
        except Exception as e:
            logger.error("Failed to create task for %s/%s: %s", event.channel, event.ts, e)

        # 5. Local notification
        if self.notifications_enabled:
            self._spawn(self.notifier.notify(self.notification_title, f"{sender} in #{channel}"))

    async def _react(self, event: MentionEvent) -> None:
        try:
            await self.slack.add_reaction(event.channel, event.ts, self.reaction_emoji)
        except Exception as e:
            logger.warning("Failed to react to %s/%s: %s", event.channel, event.ts, e)

    async def _enrich(self, event: MentionEvent) -> tuple[str, str, Optional[str]]:
        """Fetch sender name, channel name and permalink concurrently.

        Each lookup falls back on its own: raw ids for names, None for the
        permalink.
        """
        sender_result, channel_result, permalink_result = await asyncio.gather(
            self.display_name(event.user),
            self.slack.get_channel_name(event.channel),
            self.slack.get_permalink(event.channel, event.ts),
            return_exceptions=True,
        )

        sender = event.user
        if isinstance(sender_result, BaseException):
            logger.warning("Failed to look up user %s: %s", event.user, sender_result)
        else:
            sender = sender_result

        channel = event.channel
        if isinstance(channel_result, BaseException):
            logger.warning("Failed to look up channel %s: %s", event.channel, channel_result)
        elif channel_result:
            channel = channel_result

        permalink = None
        if isinstance(permalink_result, BaseException):
            logger.warning("Failed to fetch permalink for %s/%s: %s", event.channel, event.ts, permalink_result)
        else:
            permalink = permalink_result

        return sender, channel, permalink

    async def display_name(self, user_id: str) -> str:
        """Resolve a user id to a display name, caching the answer."""
        cached = self._names.get(user_id)
        if cached is not None:
            return cached

        info = await self.slack.get_user_info(user_id)
        self._names[user_id] = info.display_name
        return info.display_name

    async def resolve_mentions(self, text: str) -> str:
        """Replace <@U...> references with @display name."""
        user_ids = list(dict.fromkeys(USER_REFERENCE.findall(text)))
        if not user_ids:
            return text

        results = await asyncio.gather(*(self.display_name(uid) for uid in user_ids), return_exceptions=True)
        names = {}
        for user_id, result in zip(user_ids, results):
            if isinstance(result, BaseException):
                logger.debug("Could not resolve user %s: %s", user_id, result)
                names[user_id] = user_id
            else:
                names[user_id] = result

        return USER_REFERENCE.sub(lambda m: f"@{names[m.group(1)]}", text)

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(self._guard(coro))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    @staticmethod
    async def _guard(coro: Awaitable[None]) -> None:
        try:
            await coro
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Background side effect failed: %s", e)

    async def join(self) -> None:
        """Wait for background reactions and notifications."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def cancel(self) -> None:
        """Abandon background side effects still in flight."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
