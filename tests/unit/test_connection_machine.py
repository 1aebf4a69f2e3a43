"""Tests for the pure connection lifecycle state machine."""

from __future__ import annotations

import pytest

from board_sync.sync.connection_machine import (
    BackoffElapsed,
    BrowserOffline,
    BrowserOnline,
    CancelBackoff,
    ChannelStatus,
    ChannelStatusChanged,
    ConnectionContext,
    ConnectionState,
    NotificationKind,
    Notify,
    RequestReconnect,
    StartBackoff,
    Transition,
    backoff_delay,
    initial_transition,
    transition,
)

# ── Helpers ───────────────────────────────────────────────────────────────────


def _step(current: Transition, event: object) -> Transition:
    return transition(current.state, current.context, event)  # type: ignore[arg-type]


def _connected() -> Transition:
    t = initial_transition()
    t = _step(t, ChannelStatusChanged("objects", ChannelStatus.SUBSCRIBED))
    return _step(t, ChannelStatusChanged("cursors", ChannelStatus.SUBSCRIBED))


def _reconnecting() -> Transition:
    return _step(_connected(), ChannelStatusChanged("objects", ChannelStatus.TIMED_OUT))


# ── backoff_delay ─────────────────────────────────────────────────────────────


class TestBackoffDelay:
    """Exponential backoff with a ceiling."""

    def test_sequence_for_retries_zero_to_five(self) -> None:
        assert [backoff_delay(r) for r in range(6)] == [1000, 2000, 4000, 8000, 16000, 16000]

    def test_custom_base_and_cap(self) -> None:
        assert [backoff_delay(r, 10, 40) for r in range(4)] == [10, 20, 40, 40]

    def test_context_property_uses_retry_count(self) -> None:
        assert ConnectionContext(retry_count=3).backoff_ms == 8000


# ── idle → connected ──────────────────────────────────────────────────────────


class TestConnectedTransition:
    """Leaving idle requires every tracked channel to be subscribed."""

    def test_starts_idle(self) -> None:
        t = initial_transition()
        assert t.state == ConnectionState.IDLE
        assert t.context.retry_count == 0
        assert t.context.has_connected_before is False

    def test_one_channel_is_not_enough(self) -> None:
        t = _step(initial_transition(), ChannelStatusChanged("objects", ChannelStatus.SUBSCRIBED))
        assert t.state == ConnectionState.IDLE
        assert t.effects == ()

    def test_two_subscribed_channels_connect(self) -> None:
        t = _connected()
        assert t.state == ConnectionState.CONNECTED
        assert t.context.has_connected_before is True
        assert t.effects == ()

    def test_channel_down_in_idle_is_recorded_only(self) -> None:
        t = _step(initial_transition(), ChannelStatusChanged("objects", ChannelStatus.CLOSED))
        assert t.state == ConnectionState.IDLE
        assert t.context.channel_statuses == {"objects": ChannelStatus.CLOSED}
        assert t.effects == ()

    def test_status_strings_are_coerced(self) -> None:
        t = _step(initial_transition(), ChannelStatusChanged("objects", "SUBSCRIBED"))  # type: ignore[arg-type]
        assert t.context.channel_statuses["objects"] is ChannelStatus.SUBSCRIBED


# ── connected → reconnecting ──────────────────────────────────────────────────


class TestReconnectCycle:
    """Channel loss, backoff and reconnect requests."""

    def test_channel_timeout_enters_reconnecting(self) -> None:
        t = _reconnecting()
        assert t.state == ConnectionState.RECONNECTING
        assert t.effects == (Notify(NotificationKind.DISCONNECTED), StartBackoff(1000))

    def test_backoff_elapsed_requests_one_reconnect(self) -> None:
        t = _step(_reconnecting(), BackoffElapsed())

        assert t.state == ConnectionState.RECONNECTING
        assert t.context.retry_count == 1
        assert t.effects.count(RequestReconnect()) == 1
        assert t.effects[0] == RequestReconnect()
        assert t.effects[-1] == StartBackoff(2000)

    def test_backoff_delays_grow_until_offline(self) -> None:
        t = _reconnecting()
        delays = [e.delay_ms for e in t.effects if isinstance(e, StartBackoff)]
        while t.state == ConnectionState.RECONNECTING:
            t = _step(t, BackoffElapsed())
            delays += [e.delay_ms for e in t.effects if isinstance(e, StartBackoff)]

        assert delays == [1000, 2000, 4000, 8000, 16000, 16000]
        assert t.state == ConnectionState.OFFLINE
        assert t.effects == (CancelBackoff(), Notify(NotificationKind.OFFLINE))

    def test_resubscribe_reconnects_and_resets_retries(self) -> None:
        t = _step(_reconnecting(), BackoffElapsed())
        t = _step(t, ChannelStatusChanged("objects", ChannelStatus.SUBSCRIBED))

        assert t.state == ConnectionState.CONNECTED
        assert t.context.retry_count == 0
        assert t.effects == (CancelBackoff(), Notify(NotificationKind.RECONNECTED))

    def test_partial_recovery_stays_reconnecting(self) -> None:
        t = _step(_reconnecting(), ChannelStatusChanged("cursors", ChannelStatus.CLOSED))
        t = _step(t, ChannelStatusChanged("objects", ChannelStatus.SUBSCRIBED))
        assert t.state == ConnectionState.RECONNECTING
        assert t.effects == ()

    def test_second_channel_down_while_reconnecting_has_no_effect(self) -> None:
        t = _step(_reconnecting(), ChannelStatusChanged("cursors", ChannelStatus.CHANNEL_ERROR))
        assert t.state == ConnectionState.RECONNECTING
        assert t.effects == ()
        assert t.context.channel_statuses["cursors"] == ChannelStatus.CHANNEL_ERROR

    def test_first_failure_before_ever_connecting_does_not_notify(self) -> None:
        context = ConnectionContext(
            channel_statuses={"objects": ChannelStatus.SUBSCRIBED},
        )
        t = transition(
            ConnectionState.CONNECTED,
            context,
            ChannelStatusChanged("objects", ChannelStatus.CLOSED),
        )
        assert t.effects == (StartBackoff(1000),)

    def test_backoff_elapsed_outside_reconnecting_is_ignored(self) -> None:
        t = _step(_connected(), BackoffElapsed())
        assert t.state == ConnectionState.CONNECTED
        assert t.effects == ()


# ── Host connectivity ─────────────────────────────────────────────────────────


class TestBrowserConnectivity:
    """Host-level online/offline signals."""

    def test_offline_while_connected_enters_reconnecting(self) -> None:
        t = _step(_connected(), BrowserOffline())
        assert t.state == ConnectionState.RECONNECTING
        assert t.context.browser_online is False
        assert StartBackoff(1000) in t.effects

    def test_backoff_while_browser_offline_goes_offline(self) -> None:
        t = _step(_step(_connected(), BrowserOffline()), BackoffElapsed())
        assert t.state == ConnectionState.OFFLINE
        assert t.effects == (CancelBackoff(), Notify(NotificationKind.OFFLINE))

    def test_online_from_offline_restarts_backoff(self) -> None:
        offline = _step(_step(_connected(), BrowserOffline()), BackoffElapsed())
        t = _step(offline, BrowserOnline())

        assert t.state == ConnectionState.RECONNECTING
        assert t.context.browser_online is True
        assert t.context.retry_count == 0
        assert t.effects == (
            CancelBackoff(),
            Notify(NotificationKind.DISCONNECTED),
            StartBackoff(1000),
        )

    def test_online_while_reconnecting_resets_retry_count(self) -> None:
        t = _step(_step(_reconnecting(), BackoffElapsed()), BackoffElapsed())
        assert t.context.retry_count == 2

        t = _step(t, BrowserOnline())
        assert t.context.retry_count == 0
        assert t.effects[-1] == StartBackoff(1000)

    @pytest.mark.parametrize(
        ("start", "event"),
        [
            ("idle", BrowserOnline()),
            ("connected", BrowserOnline()),
            ("idle", BrowserOffline()),
            ("reconnecting", BrowserOffline()),
        ],
    )
    def test_host_event_without_rule_changes_nothing(self, start: str, event: object) -> None:
        before = {
            "idle": initial_transition,
            "connected": _connected,
            "reconnecting": _reconnecting,
        }[start]()
        t = _step(before, event)
        assert t.state == before.state
        assert t.context == before.context
        assert t.effects == ()

    def test_offline_while_reconnecting_keeps_remaining_retries(self) -> None:
        t = _step(_reconnecting(), BrowserOffline())
        assert t.context.browser_online is True

        t = _step(t, BackoffElapsed())
        assert t.state == ConnectionState.RECONNECTING
        assert t.context.retry_count == 1
        assert RequestReconnect() in t.effects

    def test_offline_in_offline_state_is_ignored(self) -> None:
        offline = _step(_step(_connected(), BrowserOffline()), BackoffElapsed())
        t = _step(offline, BrowserOffline())
        assert t.state == ConnectionState.OFFLINE
        assert t.context == offline.context
        assert t.effects == ()

    def test_offline_state_ignores_channel_recovery(self) -> None:
        offline = _step(_step(_connected(), BrowserOffline()), BackoffElapsed())
        t = _step(offline, ChannelStatusChanged("objects", ChannelStatus.SUBSCRIBED))
        t = _step(t, ChannelStatusChanged("cursors", ChannelStatus.SUBSCRIBED))
        assert t.state == ConnectionState.OFFLINE


# ── Misc ──────────────────────────────────────────────────────────────────────


class TestTransitionMisc:
    def test_unknown_event_raises(self) -> None:
        with pytest.raises(TypeError):
            transition(ConnectionState.IDLE, ConnectionContext(), object())  # type: ignore[arg-type]

    def test_context_is_not_mutated(self) -> None:
        start = initial_transition()
        _step(start, ChannelStatusChanged("objects", ChannelStatus.SUBSCRIBED))
        assert dict(start.context.channel_statuses) == {}

    def test_channel_statuses_is_read_only(self) -> None:
        t = _connected()
        with pytest.raises(TypeError):
            t.context.channel_statuses["objects"] = ChannelStatus.CLOSED  # type: ignore[index]
