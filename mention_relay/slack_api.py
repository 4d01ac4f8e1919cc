"""Slack Web API client for history, metadata and reactions."""

import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Optional

import httpx
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

logger = logging.getLogger(__name__)

# Errors that mean "nothing to do" rather than failure
BENIGN_REACTION_ERRORS = frozenset({"already_reacted"})
BENIGN_HISTORY_ERRORS = frozenset({"not_in_channel", "channel_not_found"})
BENIGN_JOIN_ERRORS = frozenset({"already_in_channel", "method_not_supported_for_channel_type"})

CONVERSATION_TYPES = "public_channel,private_channel,mpim,im"


class SlackAPIError(Exception):
    """A Slack Web API call answered with ok=false."""

    def __init__(self, method: str, error: str):
        super().__init__(f"{method} failed: {error}")
        self.method = method
        self.error = error


@dataclass
class UserInfo:
    """Slack user as needed for display."""

    id: str
    name: str
    real_name: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.real_name or self.name or self.id


@dataclass
class Conversation:
    """A channel, group or DM the bot can see."""

    id: str
    name: str
    is_member: bool = True


class SlackAPI:
    """Stateless accessor for the Slack Web API."""

    def __init__(
        self,
        bot_token: str,
        app_token: Optional[str] = None,
        base_url: str = "https://slack.com/api",
        timeout: float = 30.0,
        max_retries: int = 3,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the client.

        Args:
            bot_token: Bot token (xoxb-...) used for Web API calls.
            app_token: App-level token (xapp-...) used to open Socket Mode connections.
            base_url: Web API base URL.
            timeout: Per-request timeout in seconds.
            max_retries: How many times a rate-limited call is retried.
            transport: Optional httpx transport (used by tests).
        """
        self.bot_token = bot_token
        self.app_token = app_token
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max_retries
        self._transport = transport

    async def _call(self, method: str, body: dict[str, Any], token: Optional[str] = None) -> dict[str, Any]:
        """
        POST a form-encoded Web API call and return the decoded response.

        Rate-limited calls (HTTP 429) are retried after Retry-After seconds.

        Raises:
            SlackAPIError: If Slack answers with ok=false.
            httpx.HTTPError: On transport failures and non-2xx responses.
        """
        url = f"{self.base_url}/{method}"
        headers = {"Authorization": f"Bearer {token or self.bot_token}"}
        data = {key: _form_value(value) for key, value in body.items() if value is not None}

        async with httpx.AsyncClient(transport=self._transport, timeout=self.timeout) as client:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.max_retries + 1),
                retry=retry_if_exception(_is_rate_limited),
                wait=_wait_retry_after,
                before_sleep=_log_rate_limited,
                reraise=True,
            ):
                with attempt:
                    response = await client.post(url, headers=headers, data=data)
                    response.raise_for_status()

        result = response.json()
        if not result.get("ok"):
            raise SlackAPIError(method, result.get("error", "unknown"))
        return result

    async def _paginate(self, method: str, body: dict[str, Any], key: str) -> AsyncIterator[dict[str, Any]]:
        """Yield items under ``key`` across all cursor pages."""
        cursor: Optional[str] = None
        while True:
            result = await self._call(method, {**body, "cursor": cursor})
            for item in result.get(key) or []:
                yield item

            cursor = (result.get("response_metadata") or {}).get("next_cursor")
            if not cursor:
                break

    async def open_socket_url(self) -> str:
        """Request a single-use Socket Mode WebSocket URL."""
        if not self.app_token:
            raise ValueError("An app-level token is required for Socket Mode")

        result = await self._call("apps.connections.open", {}, token=self.app_token)
        url = result.get("url")
        if not url:
            raise SlackAPIError("apps.connections.open", "missing_url")
        return url

    async def add_reaction(self, channel: str, timestamp: str, emoji: str) -> None:
        """React to a message. Reacting twice is not an error."""
        try:
            await self._call("reactions.add", {"channel": channel, "timestamp": timestamp, "name": emoji})
        except SlackAPIError as e:
            if e.error not in BENIGN_REACTION_ERRORS:
                raise
            logger.debug("Already reacted to %s/%s", channel, timestamp)

    async def get_permalink(self, channel: str, timestamp: str) -> Optional[str]:
        result = await self._call("chat.getPermalink", {"channel": channel, "message_ts": timestamp})
        return result.get("permalink")

    async def get_user_info(self, user_id: str) -> UserInfo:
        """Look up a user's name and real name."""
        result = await self._call("users.info", {"user": user_id})
        user = result.get("user") or {}
        real_name = user.get("real_name") or (user.get("profile") or {}).get("real_name")
        return UserInfo(id=user_id, name=user.get("name") or user_id, real_name=real_name or None)

    async def get_channel_name(self, channel_id: str) -> Optional[str]:
        """Name of a conversation, or None for unnamed ones such as DMs."""
        result = await self._call("conversations.info", {"channel": channel_id})
        return (result.get("channel") or {}).get("name")

    async def list_conversations(self) -> list[Conversation]:
        """List every conversation the bot is a member of."""
        conversations = []
        async for channel in self._paginate(
            "users.conversations", {"types": CONVERSATION_TYPES, "limit": 200}, "channels"
        ):
            if channel.get("id"):
                conversations.append(Conversation(id=channel["id"], name=channel.get("name") or channel["id"]))
        return conversations

    async def list_public_channels(self) -> list[Conversation]:
        """List all non-archived public channels, joined or not."""
        channels = []
        async for channel in self._paginate(
            "conversations.list",
            {"types": "public_channel", "exclude_archived": True, "limit": 200},
            "channels",
        ):
            if channel.get("id"):
                channels.append(
                    Conversation(
                        id=channel["id"],
                        name=channel.get("name") or channel["id"],
                        is_member=bool(channel.get("is_member")),
                    )
                )
        return channels

    async def join_channel(self, channel_id: str) -> None:
        try:
            await self._call("conversations.join", {"channel": channel_id})
        except SlackAPIError as e:
            if e.error not in BENIGN_JOIN_ERRORS:
                raise
            logger.debug("Skipped joining %s: %s", channel_id, e.error)

    async def conversations_history(self, channel: str, oldest: str, limit: int = 200) -> list[dict[str, Any]]:
        """
        Fetch all messages in a conversation strictly newer than ``oldest``.

        Args:
            channel: Conversation ID.
            oldest: Exclusive lower bound timestamp.
            limit: Page size.

        Returns:
            Raw message dicts, empty if the bot can't read the conversation.
        """
        body = {"channel": channel, "oldest": oldest, "inclusive": False, "limit": limit}
        messages = []
        try:
            async for message in self._paginate("conversations.history", body, "messages"):
                messages.append(message)
        except SlackAPIError as e:
            if e.error not in BENIGN_HISTORY_ERRORS:
                raise
            logger.debug("Skipping history of %s: %s", channel, e.error)
        return messages


def _form_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _retry_after(response: httpx.Response) -> float:
    try:
        return max(float(response.headers.get("Retry-After", "1")), 0.0)
    except ValueError:
        return 1.0


def _is_rate_limited(exc: BaseException) -> bool:
    return isinstance(exc, httpx.HTTPStatusError) and exc.response.status_code == 429


def _wait_retry_after(retry_state: RetryCallState) -> float:
    """Wait as long as Slack's Retry-After header asks."""
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    if isinstance(exc, httpx.HTTPStatusError):
        return _retry_after(exc.response)
    return 1.0


def _log_rate_limited(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    url = exc.request.url if isinstance(exc, httpx.HTTPStatusError) else "?"
    delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
    logger.warning(
        "Rate limited on %s, retrying in %.0fs (attempt %d)",
        url,
        delay,
        retry_state.attempt_number,
    )
