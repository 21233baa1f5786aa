"""Solana ``logsSubscribe`` WebSocket client.

Holds a single subscription for the watched addresses and pushes every decoded
``logsNotification`` into an asyncio queue consumed by the pipeline. Delivery is
at-least-once and unordered across reconnects: a notification redelivered by
the node is forwarded again.

Lifecycle::

    DISCONNECTED -> CONNECTING -> SUBSCRIBING -> SUBSCRIBED
    SUBSCRIBED -> RECONNECTING -> CONNECTING -> ...
    any -> CLOSED  (explicit stop, or reconnect attempts exhausted)
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any

import websockets
from websockets.asyncio.client import ClientConnection

from solana_outflow_monitor.ingestor.models import (
    NOTIFICATION_METHOD,
    LogsNotification,
    NotificationDecodeError,
    StreamFailureEvent,
)

logger = logging.getLogger(__name__)

DEFAULT_PING_INTERVAL = 30  # seconds
DEFAULT_RECONNECT_BASE_DELAY_MS = 3000
DEFAULT_MAX_RECONNECT_ATTEMPTS = 10
DEFAULT_COMMITMENT = "confirmed"
SUBSCRIPTION_REQUEST_ID = 1
RECV_POLL_TIMEOUT = 1.0  # seconds


class StreamState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    SUBSCRIBING = "subscribing"
    SUBSCRIBED = "subscribed"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


@dataclass
class StreamStats:
    notifications_received: int = 0
    messages_dropped: int = 0
    reconnect_count: int = 0
    last_message_time: float | None = None
    connected_since: float | None = None
    last_error: str | None = None


class StreamError(Exception):
    """Base exception for stream errors."""


class StreamConnectionError(StreamError):
    """Raised when connection to the WebSocket endpoint fails."""


class StreamSubscriptionError(StreamError):
    """Raised when the node rejects the logsSubscribe request."""


StateCallback = Callable[[StreamState], Awaitable[None]]
FailureCallback = Callable[[StreamFailureEvent], Awaitable[None]]
ConnectFactory = Callable[..., Awaitable[Any]]


def reconnect_delay_ms(base_delay_ms: int, attempt: int) -> int:
    """Backoff before reconnect attempt ``attempt`` (1-based)."""
    if attempt < 1:
        raise ValueError("attempt must be >= 1")
    return base_delay_ms * 2 ** (attempt - 1)


def http_to_ws_url(url: str) -> str:
    """Convert an HTTP(S) RPC endpoint into its WebSocket equivalent."""
    if url.startswith("https://"):
        return "wss://" + url[len("https://") :]
    if url.startswith("http://"):
        return "ws://" + url[len("http://") :]
    return url


def build_subscribe_request(mentions: Sequence[str], commitment: str = DEFAULT_COMMITMENT) -> dict[str, Any]:
    return {
        "jsonrpc": "2.0",
        "id": SUBSCRIPTION_REQUEST_ID,
        "method": "logsSubscribe",
        "params": [
            {"mentions": list(mentions)},
            {"commitment": commitment},
        ],
    }


class LogsStreamHandler:
    """Reconnecting ``logsSubscribe`` client.

    Example:
        ```python
        queue: asyncio.Queue[LogsNotification] = asyncio.Queue()
        stream = LogsStreamHandler(
            host="wss://api.mainnet-beta.solana.com",
            mentions=["5tzFkiKscXHK5ZXCGbXZxdw7gTjjD1mBwuoFbhUvuAi9"],
            queue=queue,
        )
        task = asyncio.create_task(stream.start())
        notification = await queue.get()
        await stream.stop()
        ```
    """

    def __init__(
        self,
        *,
        host: str,
        mentions: Sequence[str],
        queue: asyncio.Queue[LogsNotification] | None = None,
        on_failure: FailureCallback | None = None,
        on_state_change: StateCallback | None = None,
        commitment: str = DEFAULT_COMMITMENT,
        reconnect_base_delay_ms: int = DEFAULT_RECONNECT_BASE_DELAY_MS,
        max_reconnect_attempts: int = DEFAULT_MAX_RECONNECT_ATTEMPTS,
        ping_interval: int = DEFAULT_PING_INTERVAL,
        connect: ConnectFactory | None = None,
    ) -> None:
        if not mentions:
            raise ValueError("At least one address must be watched")
        self._host = host
        self._mentions = tuple(mentions)
        self._queue: asyncio.Queue[LogsNotification] = queue if queue is not None else asyncio.Queue()
        self._on_failure = on_failure
        self._on_state_change = on_state_change
        self._commitment = commitment
        self._reconnect_base_delay_ms = reconnect_base_delay_ms
        self._max_reconnect_attempts = max_reconnect_attempts
        self._ping_interval = ping_interval
        self._connect_factory: ConnectFactory = connect or websockets.connect

        self._state = StreamState.DISCONNECTED
        self._stats = StreamStats()
        self._ws: ClientConnection | None = None
        self._subscription_id: int | None = None
        self._reconnect_attempts = 0
        self._manual_close = False
        self._running = False
        self._stop_event: asyncio.Event | None = None
        self._failure: StreamFailureEvent | None = None

    @property
    def state(self) -> StreamState:
        return self._state

    @property
    def stats(self) -> StreamStats:
        return self._stats

    @property
    def notifications(self) -> asyncio.Queue[LogsNotification]:
        return self._queue

    @property
    def subscription_id(self) -> int | None:
        return self._subscription_id

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    @property
    def failure(self) -> StreamFailureEvent | None:
        """Terminal failure, set once reconnect attempts are exhausted."""
        return self._failure

    async def _set_state(self, new_state: StreamState) -> None:
        if self._state != new_state:
            old = self._state
            self._state = new_state
            logger.info("Logs stream state: %s -> %s", old.value, new_state.value)
            if self._on_state_change:
                try:
                    await self._on_state_change(new_state)
                except Exception as e:  # pragma: no cover
                    logger.error("Error in state change callback: %s", e)

    async def _connect(self) -> Any:
        await self._set_state(StreamState.CONNECTING)
        try:
            ws = await self._connect_factory(
                self._host,
                ping_interval=self._ping_interval,
                ping_timeout=self._ping_interval * 2,
            )
        except Exception as e:
            self._stats.last_error = str(e)
            raise StreamConnectionError(f"Failed to connect to {self._host}: {e}") from e
        self._stats.connected_since = time.time()
        logger.info("Connected to logs stream: %s", self._host)
        return ws

    async def _subscribe(self, ws: Any) -> None:
        await self._set_state(StreamState.SUBSCRIBING)
        self._subscription_id = None
        request = build_subscribe_request(self._mentions, self._commitment)
        logger.info("Subscribing to logs mentioning %d address(es)", len(self._mentions))
        await ws.send(json.dumps(request))

    async def _on_subscribed(self, subscription_id: int) -> None:
        self._subscription_id = subscription_id
        self._reconnect_attempts = 0
        await self._set_state(StreamState.SUBSCRIBED)
        logger.info("Subscription successful, id=%s", subscription_id)

    async def _handle_message(self, message: str | bytes) -> None:
        """Decode one inbound frame. Malformed frames are dropped."""
        try:
            data = json.loads(message)
        except (json.JSONDecodeError, UnicodeDecodeError):
            self._stats.messages_dropped += 1
            logger.warning("Dropping non-JSON message on logs stream")
            return
        if not isinstance(data, dict):
            self._stats.messages_dropped += 1
            logger.warning("Dropping non-object message on logs stream")
            return

        if data.get("id") == SUBSCRIPTION_REQUEST_ID and self._subscription_id is None:
            if "error" in data:
                raise StreamSubscriptionError(f"logsSubscribe rejected: {data['error']}")
            result = data.get("result")
            if isinstance(result, int) and not isinstance(result, bool):
                await self._on_subscribed(result)
                return

        if data.get("method") != NOTIFICATION_METHOD:
            logger.debug("Ignoring logs-stream message: %s", str(data)[:200])
            return

        try:
            notification = LogsNotification.from_websocket_message(data)
        except NotificationDecodeError as e:
            self._stats.messages_dropped += 1
            logger.warning("Failed to decode logs notification: %s", e)
            return

        self._stats.notifications_received += 1
        self._stats.last_message_time = time.time()
        logger.info("New log event: signature=%s", notification.signature)
        for line in notification.logs:
            logger.debug("  %s", line)
        self._queue.put_nowait(notification)

    async def _listen(self, ws: Any) -> None:
        while self._running and not self._manual_close:
            try:
                message = await asyncio.wait_for(ws.recv(), timeout=RECV_POLL_TIMEOUT)
            except TimeoutError:
                continue
            await self._handle_message(message)

    async def _wait_before_reconnect(self) -> bool:
        """Back off before the next attempt. Returns False if stopped meanwhile."""
        self._reconnect_attempts += 1
        self._stats.reconnect_count += 1
        delay_ms = reconnect_delay_ms(self._reconnect_base_delay_ms, self._reconnect_attempts)
        await self._set_state(StreamState.RECONNECTING)
        logger.info(
            "Reconnecting in %dms (attempt %d/%d)",
            delay_ms,
            self._reconnect_attempts,
            self._max_reconnect_attempts,
        )
        if self._stop_event is None:
            return False
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay_ms / 1000)
            return False
        except TimeoutError:
            return not self._manual_close

    async def _give_up(self) -> None:
        self._failure = StreamFailureEvent(
            attempts=self._reconnect_attempts,
            last_error=self._stats.last_error,
            endpoint=self._host,
        )
        logger.error(
            "Max reconnect attempts reached (%d), giving up on %s: %s",
            self._max_reconnect_attempts,
            self._host,
            self._stats.last_error,
        )
        await self._set_state(StreamState.CLOSED)
        if self._on_failure:
            try:
                await self._on_failure(self._failure)
            except Exception as e:
                logger.error("Error in stream failure callback: %s", e)

    async def start(self) -> None:
        """Run the connect/subscribe/listen loop until stopped or exhausted."""
        if self._running:
            raise RuntimeError("Logs stream already running")
        self._running = True
        self._manual_close = False
        self._stop_event = asyncio.Event()

        try:
            while not self._manual_close:
                try:
                    self._ws = await self._connect()
                    await self._subscribe(self._ws)
                    await self._listen(self._ws)
                except websockets.ConnectionClosed as e:
                    if not self._manual_close:
                        self._stats.last_error = f"connection closed: {e}"
                        logger.warning("Logs stream connection closed: %s", e)
                except StreamError as e:
                    self._stats.last_error = str(e)
                    logger.warning("Logs stream error: %s", e)
                except OSError as e:
                    self._stats.last_error = str(e)
                    logger.warning("Logs stream transport error: %s", e)
                finally:
                    with contextlib.suppress(Exception):
                        if self._ws:
                            await self._ws.close()
                    self._ws = None
                    self._subscription_id = None

                if self._manual_close:
                    break
                if self._reconnect_attempts >= self._max_reconnect_attempts:
                    await self._give_up()
                    return
                if not await self._wait_before_reconnect():
                    break
        finally:
            self._running = False

        await self._set_state(StreamState.CLOSED)

    async def stop(self) -> None:
        """Close the stream without triggering a reconnect."""
        self._manual_close = True
        if self._stop_event:
            self._stop_event.set()
        if self._ws:
            with contextlib.suppress(Exception):
                await self._ws.close()
        logger.info("Logs stream closed manually")
