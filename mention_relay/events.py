"""Slack message events and timestamp helpers."""

import time
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Optional


def ts_key(ts: str) -> Decimal:
    """Parse a Slack message timestamp into an exact, comparable number.

    Slack timestamps ("1700000000.000100") carry more precision than a
    float64 keeps, so they are compared as Decimals.

    Raises:
        ValueError: If the timestamp is not numeric.
    """
    try:
        value = Decimal(ts)
    except (InvalidOperation, TypeError) as e:
        raise ValueError(f"Invalid Slack timestamp: {ts!r}") from e
    if not value.is_finite():
        raise ValueError(f"Invalid Slack timestamp: {ts!r}")
    return value


def is_valid_ts(ts: Any) -> bool:
    if not isinstance(ts, str):
        return False
    try:
        ts_key(ts)
    except ValueError:
        return False
    return True


def now_ts() -> str:
    """Current time in Slack's timestamp format (six fractional digits)."""
    return f"{time.time():.6f}"


def mention_token(user_id: str) -> str:
    return f"<@{user_id}>"


@dataclass(frozen=True)
class MentionEvent:
    """A single inbound Slack message, from the live stream or from history."""

    type: str
    text: str
    user: str
    channel: str
    ts: str
    subtype: Optional[str] = None

    @classmethod
    def parse(cls, data: dict[str, Any], channel: Optional[str] = None) -> Optional["MentionEvent"]:
        """Build an event from a Slack event or history row.

        History rows don't repeat the channel id, so it can be passed in.

        Returns:
            The event, or None if a required field is missing or malformed.
        """
        if not isinstance(data, dict):
            return None

        channel = data.get("channel", channel)
        fields = (data.get("type"), data.get("text"), data.get("user"), channel)
        if not all(isinstance(value, str) for value in fields):
            return None

        ts = data.get("ts")
        if not is_valid_ts(ts):
            return None

        subtype = data.get("subtype")
        return cls(
            type=data["type"],
            text=data["text"],
            user=data["user"],
            channel=channel,
            ts=ts,
            subtype=subtype if isinstance(subtype, str) else None,
        )

    @property
    def is_plain_message(self) -> bool:
        return self.type == "message" and self.subtype is None

    def is_mention(self, user_id: str) -> bool:
        """Check if this is a plain message containing <@user_id>."""
        return self.is_plain_message and mention_token(user_id) in self.text

    @property
    def key(self) -> tuple[str, str]:
        """Identity of the message within the workspace."""
        return (self.channel, self.ts)

    @property
    def sent_at(self) -> datetime:
        return datetime.fromtimestamp(float(ts_key(self.ts)))
