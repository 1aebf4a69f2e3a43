"""Host for the connection state machine: timers, notifications, reconnects."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections import deque
from collections.abc import Callable

from board_sync.sync.connection_machine import (
    BackoffElapsed,
    BrowserOffline,
    BrowserOnline,
    CancelBackoff,
    ChannelStatus,
    ChannelStatusChanged,
    ConnectionContext,
    ConnectionEvent,
    ConnectionState,
    Effect,
    NotificationKind,
    Notify,
    RequestReconnect,
    StartBackoff,
    initial_transition,
    transition,
)

logger = logging.getLogger(__name__)

NOTIFICATION_MESSAGES: dict[NotificationKind, str] = {
    NotificationKind.DISCONNECTED: "Connection lost. Reconnecting...",
    NotificationKind.RECONNECTED: "Reconnected",
    NotificationKind.OFFLINE: "Offline. Changes may not sync.",
}

StatusListener = Callable[[ConnectionState], None]
ReconnectListener = Callable[[int], None]
NotificationListener = Callable[[NotificationKind, str], None]


class ConnectionManager:
    """
    Runs the connection state machine against a real event loop.

    Channel owners call :meth:`report_channel_status`; host connectivity
    is fed through :meth:`browser_online` / :meth:`browser_offline` (or a
    :class:`ConnectivityProbe`). Every reconnect request bumps
    :attr:`reconnect_generation` exactly once and notifies reconnect
    listeners with the new generation.

    Usage:
        manager = ConnectionManager()
        manager.on_reconnect(lambda generation: session.resync(generation))
        manager.report_channel_status("board:1:objects", ChannelStatus.SUBSCRIBED)
    """

    def __init__(
        self,
        *,
        max_retries: int = 5,
        backoff_base_ms: int = 1000,
        backoff_max_ms: int = 16000,
    ) -> None:
        start = initial_transition(
            ConnectionContext(
                max_retries=max_retries,
                backoff_base_ms=backoff_base_ms,
                backoff_max_ms=backoff_max_ms,
            )
        )
        self._state = start.state
        self._context = start.context
        self._reconnect_generation = 0
        self._backoff_handle: asyncio.TimerHandle | None = None
        self._status_listeners: list[StatusListener] = []
        self._reconnect_listeners: list[ReconnectListener] = []
        self._notification_listeners: list[NotificationListener] = []
        self._queue: deque[ConnectionEvent] = deque()
        self._dispatching = False
        self._closed = False

    @property
    def status(self) -> ConnectionState:
        return self._state

    @property
    def context(self) -> ConnectionContext:
        return self._context

    @property
    def reconnect_generation(self) -> int:
        return self._reconnect_generation

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED

    # ── Listener registration ──────────────────────────────────────────

    def on_status_change(self, listener: StatusListener) -> None:
        self._status_listeners.append(listener)

    def on_reconnect(self, listener: ReconnectListener) -> None:
        self._reconnect_listeners.append(listener)

    def on_notification(self, listener: NotificationListener) -> None:
        self._notification_listeners.append(listener)

    # ── Inputs ─────────────────────────────────────────────────────────

    def report_channel_status(self, channel_id: str, status: ChannelStatus | str) -> None:
        """Record the latest status of one channel."""
        self.send(ChannelStatusChanged(channel_id, ChannelStatus(status)))

    def browser_online(self) -> None:
        self.send(BrowserOnline())

    def browser_offline(self) -> None:
        self.send(BrowserOffline())

    def set_online(self, online: bool) -> None:
        self.send(BrowserOnline() if online else BrowserOffline())

    def send(self, event: ConnectionEvent) -> None:
        """Feed one event to the machine and run the resulting effects.

        Events raised from inside a listener are queued and processed
        after the current one, in order.
        """
        if self._closed:
            return
        self._queue.append(event)
        if self._dispatching:
            return
        self._dispatching = True
        try:
            while self._queue:
                self._dispatch(self._queue.popleft())
        finally:
            self._dispatching = False

    def close(self) -> None:
        """Cancel the backoff timer and ignore any further events."""
        self._closed = True
        self._cancel_backoff()
        self._queue.clear()

    # ── Internals ──────────────────────────────────────────────────────

    def _dispatch(self, event: ConnectionEvent) -> None:
        previous = self._state
        result = transition(self._state, self._context, event)
        self._state = result.state
        self._context = result.context

        if result.state != previous:
            logger.info("Connection %s -> %s (%s)", previous, result.state, type(event).__name__)

        for effect in result.effects:
            self._run_effect(effect)

        if result.state != previous:
            for listener in list(self._status_listeners):
                listener(result.state)

    def _run_effect(self, effect: Effect) -> None:
        if isinstance(effect, StartBackoff):
            self._schedule_backoff(effect.delay_ms)
        elif isinstance(effect, CancelBackoff):
            self._cancel_backoff()
        elif isinstance(effect, RequestReconnect):
            self._reconnect_generation += 1
            logger.info(
                "Reconnect attempt %d (generation %d)",
                self._context.retry_count,
                self._reconnect_generation,
            )
            for listener in list(self._reconnect_listeners):
                listener(self._reconnect_generation)
        elif isinstance(effect, Notify):
            message = NOTIFICATION_MESSAGES[effect.kind]
            logger.warning(message)
            for notify in list(self._notification_listeners):
                notify(effect.kind, message)

    def _schedule_backoff(self, delay_ms: int) -> None:
        self._cancel_backoff()
        loop = asyncio.get_running_loop()
        logger.debug("Backoff timer armed for %d ms", delay_ms)
        self._backoff_handle = loop.call_later(delay_ms / 1000, self._on_backoff_elapsed)

    def _cancel_backoff(self) -> None:
        if self._backoff_handle is not None:
            self._backoff_handle.cancel()
            self._backoff_handle = None

    def _on_backoff_elapsed(self) -> None:
        self._backoff_handle = None
        self.send(BackoffElapsed())


class ConnectivityProbe:
    """
    Periodic TCP connect probe that stands in for the browser's
    online/offline events outside a browser.

    Only transitions are reported: the manager sees ``browser_offline``
    once when the probe starts failing and ``browser_online`` once when
    it succeeds again.
    """

    def __init__(
        self,
        manager: ConnectionManager,
        host: str,
        port: int,
        *,
        interval: float = 5.0,
        timeout: float = 3.0,
    ) -> None:
        self._manager = manager
        self._host = host
        self._port = port
        self._interval = interval
        self._timeout = timeout
        self._online: bool | None = None
        self._task: asyncio.Task[None] | None = None

    @property
    def online(self) -> bool | None:
        return self._online

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.get_running_loop().create_task(self._run())

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None

    async def probe_once(self) -> bool:
        """Try one TCP connect. Reports a change to the manager if any."""
        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(self._host, self._port), timeout=self._timeout
            )
        except (OSError, TimeoutError):
            online = False
        else:
            writer.close()
            with contextlib.suppress(OSError):
                await writer.wait_closed()
            online = True

        if online != self._online:
            # The first result only matters when it says "offline".
            if self._online is not None or not online:
                self._manager.set_online(online)
            self._online = online
        return online

    async def _run(self) -> None:
        while True:
            await self.probe_once()
            await asyncio.sleep(self._interval)
