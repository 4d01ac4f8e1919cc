"""Tests for the Socket Mode client."""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from mention_relay.events import MentionEvent
from mention_relay.socket_mode import Backoff, ConnectionState, SocketModeClient


class FakeWebSocket:
    """Scripted WebSocket connection yielding a fixed list of frames."""

    def __init__(self, frames=()):
        self.frames = list(frames)
        self.sent: list[str] = []
        self.closed = False

    async def send(self, data: str) -> None:
        self.sent.append(data)

    async def close(self) -> None:
        self.closed = True
        self.frames.clear()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        self.closed = True
        return False

    def __aiter__(self):
        return self

    async def __anext__(self):
        if not self.frames:
            raise StopAsyncIteration
        return self.frames.pop(0)


def events_api_frame(envelope_id: str = "env-1", **event) -> str:
    payload_event = {
        "type": "message",
        "text": "<@U999> fyi",
        "user": "U111",
        "channel": "C1",
        "ts": "1700000000.000100",
        **event,
    }
    return json.dumps({"envelope_id": envelope_id, "type": "events_api", "payload": {"event": payload_event}})


class TestBackoff:
    """Test reconnect delay policy."""

    def test_delay_sequence(self):
        """Test delays double from 1s and stop at 30s."""
        backoff = Backoff()
        delays = [backoff.next_delay() for _ in range(8)]
        assert delays == [1, 2, 4, 8, 16, 30, 30, 30]

    def test_reset(self):
        """Test reset returns to the floor."""
        backoff = Backoff()
        for _ in range(4):
            backoff.next_delay()
        backoff.reset()
        assert backoff.next_delay() == 1


class TestHandleFrame:
    """Test envelope acknowledgment and dispatch."""

    def setup_method(self):
        """Set up test fixtures."""
        self.on_event = AsyncMock()
        self.client = SocketModeClient(open_url=AsyncMock(), on_event=self.on_event)
        self.ws = FakeWebSocket()

    @pytest.mark.asyncio
    async def test_events_api_acked_and_dispatched(self):
        """Test an events_api envelope is acknowledged and its event delivered."""
        keep_going = await self.client.handle_frame(self.ws, events_api_frame("env-1"))
        await self.client.join()

        assert keep_going is True
        assert self.ws.sent == ['{"envelope_id": "env-1"}']
        self.on_event.assert_awaited_once()
        event = self.on_event.await_args.args[0]
        assert isinstance(event, MentionEvent)
        assert event.channel == "C1"
        assert event.ts == "1700000000.000100"

    @pytest.mark.asyncio
    async def test_ack_sent_before_dispatch(self):
        """Test the ack goes out even if the event handler is slow or fails."""
        self.on_event.side_effect = RuntimeError("handler failed")

        await self.client.handle_frame(self.ws, events_api_frame("env-2"))
        await self.client.join()

        assert json.loads(self.ws.sent[0]) == {"envelope_id": "env-2"}

    @pytest.mark.asyncio
    async def test_bytes_frame(self):
        """Test binary frames are decoded."""
        await self.client.handle_frame(self.ws, events_api_frame("env-3").encode())
        await self.client.join()

        self.on_event.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_disconnect_requests_reconnect(self):
        """Test a disconnect envelope ends the read loop."""
        frame = json.dumps({"type": "disconnect", "reason": "refresh_requested"})
        assert await self.client.handle_frame(self.ws, frame) is False
        self.on_event.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_hello_is_noop(self):
        """Test the handshake frame is accepted without dispatch."""
        frame = json.dumps({"type": "hello", "num_connections": 1})
        assert await self.client.handle_frame(self.ws, frame) is True
        assert self.ws.sent == []
        self.on_event.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unknown_type_ignored_but_acked(self):
        """Test unrecognized envelopes are acknowledged and ignored."""
        frame = json.dumps({"envelope_id": "env-4", "type": "slash_commands", "payload": {}})
        assert await self.client.handle_frame(self.ws, frame) is True
        assert self.ws.sent == ['{"envelope_id": "env-4"}']
        self.on_event.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_invalid_json_ignored(self):
        """Test garbage frames don't break the loop."""
        assert await self.client.handle_frame(self.ws, "{not json") is True
        assert self.ws.sent == []

    @pytest.mark.asyncio
    async def test_malformed_event_not_dispatched(self):
        """Test events missing required fields are dropped after the ack."""
        frame = json.dumps({"envelope_id": "env-5", "type": "events_api", "payload": {"event": {"type": "message"}}})
        await self.client.handle_frame(self.ws, frame)
        await self.client.join()

        assert self.ws.sent == ['{"envelope_id": "env-5"}']
        self.on_event.assert_not_awaited()


class TestConnectLoop:
    """Test the connect/reconnect state machine."""

    @pytest.mark.asyncio
    async def test_backoff_on_consecutive_failures(self):
        """Test failed connects sleep 1, 2, 4, 8, 16, 30 seconds."""
        attempts = 0

        async def open_url():
            nonlocal attempts
            attempts += 1
            if attempts > 6:
                await client.stop()
            raise ConnectionError("unreachable")

        client = SocketModeClient(open_url=open_url, on_event=AsyncMock())
        client._sleep = AsyncMock()

        await client.start()

        delays = [call.args[0] for call in client._sleep.await_args_list]
        assert delays == [1, 2, 4, 8, 16, 30]
        assert client.state == ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_successful_connect_flow(self):
        """Test a connect fires on_connect, dispatches frames and resets backoff on the first frame."""
        ws = FakeWebSocket([json.dumps({"type": "hello"}), events_api_frame("env-1")])
        on_event = AsyncMock()
        on_connect = AsyncMock()
        opened_urls = []
        backoff = Backoff()
        backoff.delay = 16

        async def open_url():
            if opened_urls:
                # Second connect attempt: let handlers finish, then shut down
                await client.join()
                await client.stop()
                raise ConnectionError("stopping")
            opened_urls.append("wss://example/link")
            return "wss://example/link"

        def connect(url, **kwargs):
            assert url == "wss://example/link"
            return ws

        client = SocketModeClient(
            open_url=open_url,
            on_event=on_event,
            on_connect=on_connect,
            backoff=backoff,
            connect=connect,
        )
        client._sleep = AsyncMock()

        await client.start()

        on_connect.assert_awaited_once()
        on_event.assert_awaited_once()
        assert ws.sent == ['{"envelope_id": "env-1"}']
        # The socket then closed without a disconnect request: one backoff from the reset floor
        client._sleep.assert_awaited_once_with(1)

    @pytest.mark.asyncio
    async def test_disconnect_envelope_reconnects(self):
        """Test a disconnect request opens a fresh URL without backing off."""
        sockets = [
            FakeWebSocket([json.dumps({"type": "disconnect"}), events_api_frame("never-read")]),
            FakeWebSocket([json.dumps({"type": "disconnect"})]),
        ]
        calls = 0

        async def open_url():
            nonlocal calls
            calls += 1
            if calls > 2:
                await client.stop()
                raise ConnectionError("stopping")
            return f"wss://example/{calls}"

        client = SocketModeClient(
            open_url=open_url,
            on_event=AsyncMock(),
            connect=lambda url, **kwargs: sockets.pop(0),
        )
        client._sleep = AsyncMock()

        await client.start()

        assert calls == 3
        client._sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_silent_close_backs_off(self):
        """Test sockets that close without frames or a disconnect request are retried with growing delays."""
        calls = 0

        async def open_url():
            nonlocal calls
            calls += 1
            if calls > 3:
                await client.stop()
                raise ConnectionError("stopping")
            return "wss://example/link"

        on_connect = AsyncMock()
        client = SocketModeClient(
            open_url=open_url,
            on_event=AsyncMock(),
            on_connect=on_connect,
            connect=lambda url, **kwargs: FakeWebSocket(),
        )
        client._sleep = AsyncMock()

        await client.start()

        delays = [call.args[0] for call in client._sleep.await_args_list]
        assert delays == [1, 2, 4]

    @pytest.mark.asyncio
    async def test_stop_while_fetching_url(self):
        """Test stop() during the URL request abandons the connect and returns."""
        gate = asyncio.Event()
        on_connect = AsyncMock()
        connect = MagicMock(return_value=FakeWebSocket([json.dumps({"type": "hello"})]))

        async def open_url():
            await gate.wait()
            return "wss://example/late"

        client = SocketModeClient(open_url=open_url, on_event=AsyncMock(), on_connect=on_connect, connect=connect)
        runner = asyncio.create_task(client.start())
        for _ in range(3):
            await asyncio.sleep(0)

        await client.stop()
        gate.set()
        await asyncio.wait_for(runner, timeout=1)

        connect.assert_not_called()
        on_connect.assert_not_awaited()
        assert client.state == ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_stop_requested_by_url_opener(self):
        """Test a URL that arrives after stop() is never connected to."""
        connect = MagicMock()

        async def open_url():
            await client.stop()
            return "wss://example/late"

        client = SocketModeClient(open_url=open_url, on_event=AsyncMock(), connect=connect)
        client._sleep = AsyncMock()

        await asyncio.wait_for(client.start(), timeout=1)

        connect.assert_not_called()
        client._sleep.assert_not_awaited()
        assert client.state == ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_stop_during_handshake_skips_connect_handler(self):
        """Test a connection completing after stop() is closed without firing on_connect."""
        ws = FakeWebSocket([json.dumps({"type": "hello"})])
        on_connect = AsyncMock()

        class LateHandshake:
            async def __aenter__(self):
                await client.stop()
                return ws

            async def __aexit__(self, *exc):
                ws.closed = True
                return False

        client = SocketModeClient(
            open_url=AsyncMock(return_value="wss://example/link"),
            on_event=AsyncMock(),
            on_connect=on_connect,
            connect=lambda url, **kwargs: LateHandshake(),
        )

        await asyncio.wait_for(client.start(), timeout=1)

        on_connect.assert_not_awaited()
        assert ws.closed is True
        assert ws.sent == []

    @pytest.mark.asyncio
    async def test_stop_closes_active_connection(self):
        """Test stop() closes the socket and marks the client as draining."""
        ws = FakeWebSocket()
        client = SocketModeClient(open_url=AsyncMock(), on_event=AsyncMock())
        client._ws = ws

        await client.stop()

        assert ws.closed is True
        assert client.is_running is False
        assert client.state == ConnectionState.DRAINING
