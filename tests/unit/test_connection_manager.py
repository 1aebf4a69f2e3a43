"""Tests for ConnectionManager and ConnectivityProbe."""

from __future__ import annotations

import asyncio
from unittest.mock import MagicMock

from board_sync.sync.connection_machine import ChannelStatus, ConnectionState, NotificationKind
from board_sync.sync.connection_manager import (
    NOTIFICATION_MESSAGES,
    ConnectionManager,
    ConnectivityProbe,
)

# ── Helpers ───────────────────────────────────────────────────────────────────


def _fast_manager(max_retries: int = 5) -> ConnectionManager:
    return ConnectionManager(max_retries=max_retries, backoff_base_ms=10, backoff_max_ms=40)


def _connect(manager: ConnectionManager) -> None:
    manager.report_channel_status("objects", ChannelStatus.SUBSCRIBED)
    manager.report_channel_status("cursors", ChannelStatus.SUBSCRIBED)


# ── ConnectionManager ─────────────────────────────────────────────────────────


class TestConnectionManager:
    """Timers, listeners and the reconnect generation."""

    async def test_connects_when_all_channels_subscribed(self) -> None:
        manager = _fast_manager()
        statuses: list[ConnectionState] = []
        manager.on_status_change(statuses.append)

        _connect(manager)

        assert manager.status == ConnectionState.CONNECTED
        assert manager.is_connected
        assert statuses == [ConnectionState.CONNECTED]
        assert manager.reconnect_generation == 0
        manager.close()

    async def test_channel_loss_notifies_disconnected(self) -> None:
        manager = _fast_manager()
        notes: list[tuple[NotificationKind, str]] = []
        manager.on_notification(lambda kind, msg: notes.append((kind, msg)))
        _connect(manager)

        manager.report_channel_status("objects", ChannelStatus.TIMED_OUT)

        assert manager.status == ConnectionState.RECONNECTING
        assert notes == [
            (NotificationKind.DISCONNECTED, NOTIFICATION_MESSAGES[NotificationKind.DISCONNECTED])
        ]
        manager.close()

    async def test_backoff_timer_bumps_generation(self) -> None:
        manager = _fast_manager()
        reconnected = asyncio.Event()
        generations: list[int] = []

        def on_reconnect(generation: int) -> None:
            generations.append(generation)
            reconnected.set()

        manager.on_reconnect(on_reconnect)
        _connect(manager)
        manager.report_channel_status("objects", ChannelStatus.CLOSED)

        await asyncio.wait_for(reconnected.wait(), timeout=1.0)

        assert generations == [1]
        assert manager.reconnect_generation == 1
        assert manager.context.retry_count == 1
        manager.close()

    async def test_recovery_cancels_backoff(self) -> None:
        manager = _fast_manager()
        notes: list[NotificationKind] = []
        manager.on_notification(lambda kind, _msg: notes.append(kind))
        _connect(manager)
        manager.report_channel_status("objects", ChannelStatus.CLOSED)

        manager.report_channel_status("objects", ChannelStatus.SUBSCRIBED)
        await asyncio.sleep(0.06)

        assert manager.status == ConnectionState.CONNECTED
        assert manager.reconnect_generation == 0
        assert notes == [NotificationKind.DISCONNECTED, NotificationKind.RECONNECTED]
        manager.close()

    async def test_exhausted_retries_go_offline(self) -> None:
        manager = _fast_manager(max_retries=2)
        offline = asyncio.Event()
        notes: list[NotificationKind] = []
        manager.on_notification(lambda kind, _msg: notes.append(kind))
        manager.on_status_change(
            lambda state: offline.set() if state == ConnectionState.OFFLINE else None
        )
        _connect(manager)
        manager.report_channel_status("cursors", ChannelStatus.CHANNEL_ERROR)

        await asyncio.wait_for(offline.wait(), timeout=1.0)

        assert manager.reconnect_generation == 2
        assert notes[-1] == NotificationKind.OFFLINE
        manager.close()

    async def test_listener_reentry_is_processed_in_order(self) -> None:
        manager = _fast_manager()
        reconnected = asyncio.Event()

        def on_reconnect(_generation: int) -> None:
            # Channels rejoin synchronously from inside the effect.
            _connect(manager)
            reconnected.set()

        manager.on_reconnect(on_reconnect)
        _connect(manager)
        manager.report_channel_status("objects", ChannelStatus.CLOSED)

        await asyncio.wait_for(reconnected.wait(), timeout=1.0)

        assert manager.status == ConnectionState.CONNECTED
        assert manager.context.retry_count == 0
        assert manager.reconnect_generation == 1
        manager.close()

    async def test_close_stops_timers_and_ignores_events(self) -> None:
        manager = _fast_manager()
        _connect(manager)
        manager.report_channel_status("objects", ChannelStatus.CLOSED)

        manager.close()
        await asyncio.sleep(0.05)
        manager.report_channel_status("objects", ChannelStatus.SUBSCRIBED)

        assert manager.reconnect_generation == 0
        assert manager.status == ConnectionState.RECONNECTING

    async def test_set_online_routes_to_browser_events(self) -> None:
        manager = _fast_manager()
        _connect(manager)

        manager.set_online(False)
        assert manager.context.browser_online is False
        assert manager.status == ConnectionState.RECONNECTING

        manager.set_online(True)
        assert manager.context.browser_online is True
        manager.close()


# ── ConnectivityProbe ─────────────────────────────────────────────────────────


class TestConnectivityProbe:
    """TCP probe used as the host online/offline signal."""

    async def test_reports_only_changes(self) -> None:
        server = await asyncio.start_server(lambda _r, w: w.close(), "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        manager = MagicMock()
        probe = ConnectivityProbe(manager, "127.0.0.1", port, timeout=1.0)

        assert await probe.probe_once() is True
        # Starting online is the default; nothing to report.
        manager.set_online.assert_not_called()

        server.close()
        await server.wait_closed()

        assert await probe.probe_once() is False
        manager.set_online.assert_called_once_with(False)
        assert await probe.probe_once() is False
        manager.set_online.assert_called_once_with(False)

    async def test_first_offline_result_is_reported(self) -> None:
        server = await asyncio.start_server(lambda _r, w: w.close(), "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        server.close()
        await server.wait_closed()

        manager = MagicMock()
        probe = ConnectivityProbe(manager, "127.0.0.1", port, timeout=1.0)

        assert await probe.probe_once() is False
        manager.set_online.assert_called_once_with(False)
        assert probe.online is False

    async def test_start_and_stop(self) -> None:
        manager = MagicMock()
        probe = ConnectivityProbe(manager, "127.0.0.1", 9, interval=0.01, timeout=0.05)
        probe.start()
        await asyncio.sleep(0.2)
        await probe.stop()
        assert probe.online is not None
