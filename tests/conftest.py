"""Shared fixtures and fakes for the relay tests."""

from typing import Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

from mention_relay.pipeline import MentionPipeline
from mention_relay.services.notification_service import Notifier
from mention_relay.services.reminder_service import ReminderStore
from mention_relay.slack_api import SlackAPI, UserInfo

TRACKED_USER = "U999"

USERS = {
    "U111": UserInfo(id="U111", name="jane", real_name="Jane Doe"),
    "U999": UserInfo(id="U999", name="me", real_name="Tracked Person"),
}


class FakeWatermarkStore:
    """In-memory stand-in for WatermarkService that records every write."""

    def __init__(self, value: Optional[str] = None):
        self.value = value
        self.writes: list[str] = []

    async def read(self) -> Optional[str]:
        return self.value

    async def write(self, ts: str) -> None:
        self.value = ts
        self.writes.append(ts)


def make_slack() -> MagicMock:
    """SlackAPI mock answering lookups for a small workspace."""
    slack = MagicMock(spec=SlackAPI)

    async def get_user_info(user_id: str) -> UserInfo:
        if user_id not in USERS:
            raise LookupError(user_id)
        return USERS[user_id]

    slack.get_user_info.side_effect = get_user_info
    slack.get_channel_name.return_value = "general"
    slack.get_permalink.return_value = "https://example.slack.com/archives/C1/p100000200"
    slack.add_reaction.return_value = None
    return slack


@pytest.fixture
def slack():
    return make_slack()


@pytest.fixture
def watermarks():
    return FakeWatermarkStore()


@pytest.fixture
def reminders():
    store = MagicMock(spec=ReminderStore)
    store.create_task = AsyncMock(return_value=None)
    return store


@pytest.fixture
def notifier():
    notifier = MagicMock(spec=Notifier)
    notifier.notify = AsyncMock(return_value=None)
    return notifier


@pytest.fixture
def pipeline(slack, watermarks, reminders, notifier):
    return MentionPipeline(
        slack=slack,
        watermarks=watermarks,
        reminders=reminders,
        notifier=notifier,
        tracked_user_id=TRACKED_USER,
    )
