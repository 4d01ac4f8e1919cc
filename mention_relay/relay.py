"""Wires the Socket Mode stream, catch-up and the mention pipeline together."""

import asyncio
import logging
from typing import Optional

from .config import Config
from .pipeline import MentionPipeline
from .services import (
    ChannelService,
    Notifier,
    ReconciliationService,
    ReminderStore,
    WatermarkService,
    create_notifier,
    create_reminder_store,
)
from .slack_api import SlackAPI
from .socket_mode import Backoff, SocketModeClient

logger = logging.getLogger(__name__)


class Relay:
    """One running instance of the relay for a given config.

    A config reload builds a new Relay; nothing here outlives stop().
    """

    def __init__(
        self,
        config: Config,
        slack: Optional[SlackAPI] = None,
        watermarks: Optional[WatermarkService] = None,
        reminders: Optional[ReminderStore] = None,
        notifier: Optional[Notifier] = None,
    ) -> None:
        self.config = config
        self.slack = slack or SlackAPI(
            bot_token=config.slack.bot_token.get_secret_value(),
            app_token=config.slack.app_token.get_secret_value(),
            base_url=config.slack.api_base_url,
        )
        self.reminders = reminders or create_reminder_store(config.reminders)

        self.pipeline = MentionPipeline.from_config(
            config,
            slack=self.slack,
            watermarks=watermarks or WatermarkService(),
            reminders=self.reminders,
            notifier=notifier or create_notifier(),
        )
        self.reconciliation = ReconciliationService(self.slack, self.pipeline)

        self.channels: Optional[ChannelService] = None
        if config.relay.auto_join_channels:
            self.channels = ChannelService(self.slack, config.relay.channel_scan_interval)

        self.socket = SocketModeClient(
            open_url=self.slack.open_socket_url,
            on_event=self.pipeline.handle_live,
            on_connect=self.reconciliation.catch_up,
            backoff=Backoff(
                initial=config.relay.reconnect_initial_delay,
                maximum=config.relay.reconnect_max_delay,
            ),
        )
        self._scan_task: Optional[asyncio.Task] = None

    async def setup(self) -> None:
        """Prepare the task backend and read the watermark."""
        await self.reminders.prepare()
        await self.pipeline.load()

    async def run(self) -> None:
        """Listen for mentions until stop() is called."""
        await self.setup()

        if self.channels is not None:
            self._scan_task = asyncio.create_task(self.channels.run())

        logger.info("Listening for mentions of <@%s>...", self.config.slack.tracked_user_id)
        try:
            await self.socket.start()
        finally:
            await self._cancel_scan()

    async def run_once(self) -> int:
        """Run a single catch-up pass without connecting to the stream.

        Returns:
            Number of missed mentions processed.
        """
        await self.setup()
        processed = await self.reconciliation.catch_up()
        await self.pipeline.join()
        return processed

    async def stop(self) -> None:
        """Stop listening and abandon in-flight side effects."""
        logger.info("Stopping relay...")
        await self._cancel_scan()
        await self.socket.stop()
        await self.pipeline.cancel()

    async def _cancel_scan(self) -> None:
        if self._scan_task is None:
            return
        self._scan_task.cancel()
        try:
            await self._scan_task
        except asyncio.CancelledError:
            pass
        self._scan_task = None
