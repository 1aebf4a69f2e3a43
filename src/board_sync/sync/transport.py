"""Broadcast channels: per-board pub/sub topics with no durability."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import aiohttp

from board_sync.sync.connection_machine import ChannelStatus

logger = logging.getLogger(__name__)

SENDER_KEY = "senderId"

_CLOSE_TYPES = frozenset(
    {aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.CLOSING}
)


class ChannelClosedError(Exception):
    """Raised when sending on a channel that has been closed."""


@dataclass(frozen=True)
class Envelope:
    """One broadcast message: ``{"event": ..., "payload": {...}}``."""

    event: str
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def sender_id(self) -> str | None:
        return self.payload.get(SENDER_KEY)

    def to_dict(self) -> dict[str, Any]:
        return {"event": self.event, "payload": self.payload}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Envelope | None:
        """Create from dictionary. Returns None if the shape is wrong."""
        event = data.get("event")
        payload = data.get("payload", {})
        if not isinstance(event, str) or not event or not isinstance(payload, dict):
            return None
        return cls(event=event, payload=payload)


EnvelopeHandler = Callable[[Envelope], None]
StatusCallback = Callable[[str, ChannelStatus], None]


class BroadcastChannel(ABC):
    """
    A subscribable topic. Concrete channels provide the I/O; this base
    class tags outgoing messages with the sender id, drops incoming
    messages carrying our own sender id, and dispatches by event name.

    Channels are single use: after :meth:`close` a new channel must be
    created to resubscribe.
    """

    def __init__(self, topic: str, sender_id: str) -> None:
        self._topic = topic
        self._sender_id = sender_id
        self._status: ChannelStatus | None = None
        self._handlers: dict[str, list[EnvelopeHandler]] = {}
        self._status_callbacks: list[StatusCallback] = []
        self._closed = False

    @property
    def topic(self) -> str:
        return self._topic

    @property
    def sender_id(self) -> str:
        return self._sender_id

    @property
    def status(self) -> ChannelStatus | None:
        return self._status

    @property
    def is_subscribed(self) -> bool:
        return self._status == ChannelStatus.SUBSCRIBED and not self._closed

    @property
    def closed(self) -> bool:
        return self._closed

    def on(self, event: str, handler: EnvelopeHandler) -> None:
        """Register a handler for ``event`` (``"*"`` matches every event)."""
        self._handlers.setdefault(event, []).append(handler)

    def on_status(self, callback: StatusCallback) -> None:
        self._status_callbacks.append(callback)

    def send(self, event: str, payload: dict[str, Any]) -> None:
        """Publish ``payload`` under ``event``, stamped with our sender id."""
        if self._closed:
            raise ChannelClosedError(f"Channel {self._topic} is closed")
        envelope = Envelope(event, {**payload, SENDER_KEY: self._sender_id})
        self._write(envelope)

    @abstractmethod
    async def subscribe(self) -> None:
        """Join the topic. Status changes are reported via callbacks."""

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._shutdown()
        # A deliberate close is not reported to status callbacks.
        self._status = ChannelStatus.CLOSED

    @abstractmethod
    def _write(self, envelope: Envelope) -> None:
        """Queue ``envelope`` for delivery."""

    async def _shutdown(self) -> None:  # noqa: B027
        """Release transport resources."""

    def _set_status(self, status: ChannelStatus) -> None:
        if self._closed:
            return
        self._status = status
        logger.debug("Channel %s status %s", self._topic, status)
        for callback in list(self._status_callbacks):
            callback(self._topic, status)

    def _deliver(self, envelope: Envelope) -> None:
        if self._closed:
            return
        if envelope.sender_id == self._sender_id:
            logger.debug("Dropped own %s echo on %s", envelope.event, self._topic)
            return
        handlers = [*self._handlers.get(envelope.event, []), *self._handlers.get("*", [])]
        for handler in handlers:
            try:
                handler(envelope)
            except Exception:
                logger.warning(
                    "Handler error for '%s' on %s", envelope.event, self._topic, exc_info=True
                )


class WebSocketChannel(BroadcastChannel):
    """
    Broadcast channel over a realtime websocket server.

    Protocol (JSON text frames):
        → {"action": "subscribe", "topic": T}
        ← {"type": "subscribed", "topic": T}
        → {"action": "broadcast", "topic": T, "event": E, "payload": P}
        ← {"type": "broadcast", "topic": T, "event": E, "payload": P}

    The server is not required to exclude the sender from fan-out;
    echoes are filtered by sender id on receipt.
    """

    def __init__(
        self,
        url: str,
        topic: str,
        sender_id: str,
        *,
        token: str | None = None,
        join_timeout: float = 10.0,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        super().__init__(topic, sender_id)
        if url.startswith("http://"):
            url = url.replace("http://", "ws://", 1)
        elif url.startswith("https://"):
            url = url.replace("https://", "wss://", 1)
        if not url.startswith(("ws://", "wss://")):
            raise ValueError("Invalid WebSocket URL scheme: must start with ws:// or wss://")

        self._url = url
        self._token = token
        self._join_timeout = join_timeout
        self._session = session
        self._owns_session = session is None
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._outbound: asyncio.Queue[Envelope] = asyncio.Queue()
        self._tasks: list[asyncio.Task[None]] = []

    async def subscribe(self) -> None:
        if self._closed:
            raise ChannelClosedError(f"Channel {self._topic} is closed")
        if self._session is None:
            self._session = aiohttp.ClientSession()

        headers = {"Authorization": f"Bearer {self._token}"} if self._token else None
        try:
            async with asyncio.timeout(self._join_timeout):
                self._ws = await self._session.ws_connect(self._url, headers=headers)
                await self._ws.send_str(
                    json.dumps({"action": "subscribe", "topic": self._topic})
                )
                while True:
                    message = await self._ws.receive()
                    if message.type != aiohttp.WSMsgType.TEXT:
                        raise ConnectionError(f"Join interrupted: {message.type}")
                    data = json.loads(message.data)
                    if data.get("type") == "subscribed" and data.get("topic") == self._topic:
                        break
        except TimeoutError:
            logger.warning("Subscribe to %s timed out", self._topic)
            self._set_status(ChannelStatus.TIMED_OUT)
            return
        except (aiohttp.ClientError, ConnectionError, OSError, json.JSONDecodeError) as e:
            logger.warning("Subscribe to %s failed: %s", self._topic, e)
            self._set_status(ChannelStatus.CHANNEL_ERROR)
            return

        loop = asyncio.get_running_loop()
        self._tasks = [loop.create_task(self._receive_loop()), loop.create_task(self._write_loop())]
        self._set_status(ChannelStatus.SUBSCRIBED)

    def _write(self, envelope: Envelope) -> None:
        self._outbound.put_nowait(envelope)

    async def _write_loop(self) -> None:
        assert self._ws is not None
        while True:
            envelope = await self._outbound.get()
            message = {"action": "broadcast", "topic": self._topic, **envelope.to_dict()}
            try:
                await self._ws.send_str(json.dumps(message))
            except (aiohttp.ClientError, ConnectionError) as e:
                # Best effort: the message is lost, reconciliation repairs it.
                logger.warning("Broadcast on %s failed: %s", self._topic, e)
                self._set_status(ChannelStatus.CHANNEL_ERROR)
                return

    async def _receive_loop(self) -> None:
        assert self._ws is not None
        while True:
            message = await self._ws.receive()
            if message.type == aiohttp.WSMsgType.TEXT:
                try:
                    data = json.loads(message.data)
                except json.JSONDecodeError:
                    logger.warning("Malformed frame on %s", self._topic)
                    continue
                if data.get("type") != "broadcast":
                    continue
                envelope = Envelope.from_dict(data)
                if envelope is None:
                    logger.warning("Malformed envelope on %s", self._topic)
                    continue
                self._deliver(envelope)
            elif message.type in _CLOSE_TYPES:
                self._set_status(ChannelStatus.CLOSED)
                return
            elif message.type == aiohttp.WSMsgType.ERROR:
                self._set_status(ChannelStatus.CHANNEL_ERROR)
                return

    async def _shutdown(self) -> None:
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks = []
        if self._ws is not None:
            await self._ws.close()
            self._ws = None
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None


class LoopbackHub:
    """
    In-process broadcast server. Every channel on a topic receives every
    message published on it, including its own, so sender-id filtering is
    exercised exactly as with a server that does no self-exclusion.

    Messages are delivered on the next loop iteration, never inline.
    """

    def __init__(self) -> None:
        self._channels: dict[str, list[LoopbackChannel]] = {}
        self._available = True

    @property
    def available(self) -> bool:
        return self._available

    def channel(self, topic: str, sender_id: str) -> LoopbackChannel:
        return LoopbackChannel(self, topic, sender_id)

    def set_available(self, available: bool) -> None:
        """Simulate the server going away (``False``) or coming back."""
        self._available = available
        if not available:
            for channels in self._channels.values():
                for channel in list(channels):
                    channel._set_status(ChannelStatus.CLOSED)
            self._channels.clear()

    def drop_topic(self, topic: str, status: ChannelStatus = ChannelStatus.CLOSED) -> None:
        """Kick every subscriber of ``topic`` with ``status``."""
        for channel in self._channels.pop(topic, []):
            channel._set_status(status)

    def _join(self, channel: LoopbackChannel) -> bool:
        if not self._available:
            return False
        self._channels.setdefault(channel.topic, []).append(channel)
        return True

    def _leave(self, channel: LoopbackChannel) -> None:
        members = self._channels.get(channel.topic, [])
        if channel in members:
            members.remove(channel)

    def _publish(self, topic: str, envelope: Envelope) -> None:
        loop = asyncio.get_running_loop()
        for member in list(self._channels.get(topic, [])):
            loop.call_soon(member._deliver, envelope)


class LoopbackChannel(BroadcastChannel):
    """Channel attached to a :class:`LoopbackHub`."""

    def __init__(self, hub: LoopbackHub, topic: str, sender_id: str) -> None:
        super().__init__(topic, sender_id)
        self._hub = hub

    async def subscribe(self) -> None:
        if self._closed:
            raise ChannelClosedError(f"Channel {self._topic} is closed")
        await asyncio.sleep(0)
        if self._hub._join(self):
            self._set_status(ChannelStatus.SUBSCRIBED)
        else:
            self._set_status(ChannelStatus.TIMED_OUT)

    def _write(self, envelope: Envelope) -> None:
        if self.is_subscribed:
            self._hub._publish(self._topic, envelope)

    async def _shutdown(self) -> None:
        self._hub._leave(self)
