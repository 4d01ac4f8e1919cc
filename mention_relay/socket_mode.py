"""Slack Socket Mode client: receives events over a WebSocket in real time."""

import asyncio
import json
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import websockets

from .events import MentionEvent

logger = logging.getLogger(__name__)

EventCallback = Callable[[MentionEvent], Awaitable[None]]
ConnectCallback = Callable[[], Awaitable[None]]
UrlOpener = Callable[[], Awaitable[str]]


class ConnectionState(Enum):
    """Lifecycle of the Socket Mode connection."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DRAINING = "draining"


class Backoff:
    """Doubling reconnect delay with a ceiling."""

    def __init__(self, initial: float = 1.0, maximum: float = 30.0, factor: float = 2.0):
        self.initial = initial
        self.maximum = maximum
        self.factor = factor
        self.delay = initial

    def next_delay(self) -> float:
        """Return the delay to wait now and grow the next one."""
        delay = self.delay
        self.delay = min(self.delay * self.factor, self.maximum)
        return delay

    def reset(self) -> None:
        self.delay = self.initial


class SocketModeClient:
    """Holds one Socket Mode connection open and reconnects when it drops.

    Every envelope carrying an ``envelope_id`` is acknowledged before its
    event is handed off, otherwise Slack redelivers it.
    """

    def __init__(
        self,
        open_url: UrlOpener,
        on_event: EventCallback,
        on_connect: Optional[ConnectCallback] = None,
        backoff: Optional[Backoff] = None,
        connect: Callable[..., Any] = websockets.connect,
        ping_interval: float = 10.0,
    ):
        """
        Initialize the client.

        Args:
            open_url: Coroutine returning a fresh single-use WebSocket URL.
            on_event: Called with each message event received.
            on_connect: Called once after every successful connect.
            backoff: Reconnect delay policy (1s doubling up to 30s by default).
            connect: WebSocket connect factory (websockets.connect).
            ping_interval: Keepalive ping interval in seconds.
        """
        self._open_url = open_url
        self._on_event = on_event
        self._on_connect = on_connect
        self.backoff = backoff or Backoff()
        self._connect = connect
        self._ping_interval = ping_interval

        self.state = ConnectionState.DISCONNECTED
        self._running = False
        self._ws: Any = None
        self._stop_event = asyncio.Event()
        self._tasks: set[asyncio.Task] = set()
        self._attempt: Optional[asyncio.Future] = None

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Run the connect/read loop until stop() is called."""
        self._running = True
        self._stop_event.clear()

        while self._running:
            self.state = ConnectionState.CONNECTING
            self._attempt = asyncio.ensure_future(self._connect_once())
            try:
                await self._attempt
            except asyncio.CancelledError:
                # stop() cancels the attempt in flight; anything else is our own cancellation
                if self._running:
                    raise
                break
            except Exception as e:
                self.state = ConnectionState.DISCONNECTED
                if not self._running:
                    break
                delay = self.backoff.next_delay()
                logger.warning("Socket Mode error: %s. Reconnecting in %.0fs...", e, delay)
                await self._sleep(delay)
            else:
                self.state = ConnectionState.DISCONNECTED
            finally:
                self._attempt = None

        self.state = ConnectionState.DISCONNECTED
        logger.info("Socket Mode client stopped")

    async def stop(self) -> None:
        """Stop the loop, abandon any connect in progress and cancel in-flight handlers."""
        self._running = False
        self.state = ConnectionState.DRAINING
        self._stop_event.set()

        current = asyncio.current_task()
        if self._attempt is not None and self._attempt is not current:
            self._attempt.cancel()

        if self._ws is not None:
            await self._ws.close()

        tasks = [task for task in self._tasks if task is not current]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def join(self) -> None:
        """Wait for dispatched event and connect handlers to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _sleep(self, delay: float) -> None:
        """Sleep for the backoff delay, waking early on stop()."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    async def _connect_once(self) -> None:
        """
        Open one connection and read frames until it closes.

        Returns normally when Slack asks to reconnect or stop() was called.

        Raises:
            ConnectionError: If the server closed the socket without a disconnect request.
        """
        url = await self._open_url()
        if not self._running:
            return
        logger.info("Connecting to Slack Socket Mode...")

        async with self._connect(url, ping_interval=self._ping_interval, ping_timeout=self._ping_interval) as ws:
            if not self._running:
                return
            self._ws = ws
            try:
                self.state = ConnectionState.CONNECTED
                logger.info("Connected to Slack Socket Mode")

                if self._on_connect is not None:
                    self._spawn(self._on_connect(), "connect handler")

                greeted = False
                async for raw in ws:
                    if not self._running:
                        return
                    if not greeted:
                        # Only a socket that delivers frames counts as a healthy connect
                        self.backoff.reset()
                        greeted = True
                    if not await self.handle_frame(ws, raw):
                        return
            finally:
                self._ws = None

        if self._running:
            raise ConnectionError("Socket Mode connection closed without a disconnect request")

    async def handle_frame(self, ws: Any, raw: str | bytes) -> bool:
        """
        Acknowledge and dispatch one inbound frame.

        Args:
            ws: The connection the frame arrived on (used for the ack).
            raw: Raw frame payload.

        Returns:
            False if Slack asked us to disconnect, True otherwise.
        """
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", "replace")

        try:
            envelope = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Ignoring undecodable Socket Mode frame")
            return True
        if not isinstance(envelope, dict):
            return True

        envelope_id = envelope.get("envelope_id")
        if isinstance(envelope_id, str) and envelope_id:
            await ws.send(json.dumps({"envelope_id": envelope_id}))

        envelope_type = envelope.get("type")

        if envelope_type == "events_api":
            payload = envelope.get("payload")
            event_data = payload.get("event") if isinstance(payload, dict) else None
            event = MentionEvent.parse(event_data) if isinstance(event_data, dict) else None
            if event is not None:
                self._spawn(self._on_event(event), "event handler")
        elif envelope_type == "disconnect":
            logger.info("Slack requested disconnect (%s), will reconnect...", envelope.get("reason", "unknown"))
            return False
        elif envelope_type == "hello":
            logger.info("Slack Socket Mode handshake complete")
        else:
            logger.debug("Ignoring Socket Mode envelope type: %s", envelope_type)

        return True

    def _spawn(self, coro: Awaitable[None], label: str) -> None:
        task = asyncio.ensure_future(self._guard(coro, label))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    @staticmethod
    async def _guard(coro: Awaitable[None], label: str) -> None:
        try:
            await coro
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Unhandled error in Socket Mode %s: %s", label, e, exc_info=True)
