"""Connection lifecycle state machine.

The machine is a pure function ``transition(state, context, event)`` that
returns the next state, the next context and a tuple of effects. It never
touches clocks, sockets or callbacks; :class:`ConnectionManager` runs the
effects (timers, notifications, reconnects).

States::

    idle ──all channels subscribed──▶ connected
    connected ──channel down / host offline──▶ reconnecting
    reconnecting ──all channels subscribed──▶ connected
    reconnecting ──backoff elapsed, host offline or retries exhausted──▶ offline
    reconnecting ──backoff elapsed──▶ reconnecting  (retry_count + 1, reconnect)
    offline ──host online──▶ reconnecting
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from enum import StrEnum
from types import MappingProxyType


class ConnectionState(StrEnum):
    """Aggregate connection status."""

    IDLE = "idle"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    OFFLINE = "offline"


class ChannelStatus(StrEnum):
    """Status reported by a realtime channel."""

    SUBSCRIBED = "SUBSCRIBED"
    CLOSED = "CLOSED"
    CHANNEL_ERROR = "CHANNEL_ERROR"
    TIMED_OUT = "TIMED_OUT"


_DOWN_STATUSES = frozenset(
    {ChannelStatus.CLOSED, ChannelStatus.CHANNEL_ERROR, ChannelStatus.TIMED_OUT}
)

# Minimum number of tracked channels (objects + presence) before "connected".
MIN_CHANNELS = 2

DEFAULT_MAX_RETRIES = 5
DEFAULT_BACKOFF_BASE_MS = 1000
DEFAULT_BACKOFF_MAX_MS = 16000


def backoff_delay(
    retry_count: int,
    base_ms: int = DEFAULT_BACKOFF_BASE_MS,
    max_ms: int = DEFAULT_BACKOFF_MAX_MS,
) -> int:
    """Reconnect delay in milliseconds: ``min(base * 2**retry_count, max)``."""
    return min(base_ms * (2**retry_count), max_ms)


# ── Events ────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ChannelStatusChanged:
    channel_id: str
    status: ChannelStatus


@dataclass(frozen=True)
class BrowserOffline:
    """The host (browser / OS) reports the network as gone."""


@dataclass(frozen=True)
class BrowserOnline:
    """The host (browser / OS) reports the network as back."""


@dataclass(frozen=True)
class BackoffElapsed:
    """The reconnect backoff timer fired."""


ConnectionEvent = ChannelStatusChanged | BrowserOffline | BrowserOnline | BackoffElapsed


# ── Effects ───────────────────────────────────────────────────────────────


class NotificationKind(StrEnum):
    DISCONNECTED = "disconnected"
    RECONNECTED = "reconnected"
    OFFLINE = "offline"


@dataclass(frozen=True)
class Notify:
    kind: NotificationKind


@dataclass(frozen=True)
class RequestReconnect:
    """Ask the host to tear down and re-open its channels."""


@dataclass(frozen=True)
class StartBackoff:
    delay_ms: int


@dataclass(frozen=True)
class CancelBackoff:
    pass


Effect = Notify | RequestReconnect | StartBackoff | CancelBackoff


# ── Context / result ──────────────────────────────────────────────────────


@dataclass(frozen=True)
class ConnectionContext:
    """Extended state of the machine. Only :func:`transition` produces new values."""

    retry_count: int = 0
    max_retries: int = DEFAULT_MAX_RETRIES
    channel_statuses: Mapping[str, ChannelStatus] = field(
        default_factory=lambda: MappingProxyType({})
    )
    has_connected_before: bool = False
    browser_online: bool = True
    backoff_base_ms: int = DEFAULT_BACKOFF_BASE_MS
    backoff_max_ms: int = DEFAULT_BACKOFF_MAX_MS

    @property
    def backoff_ms(self) -> int:
        return backoff_delay(self.retry_count, self.backoff_base_ms, self.backoff_max_ms)


@dataclass(frozen=True)
class Transition:
    state: ConnectionState
    context: ConnectionContext
    effects: tuple[Effect, ...] = ()


def all_channels_subscribed(statuses: Mapping[str, ChannelStatus]) -> bool:
    return len(statuses) >= MIN_CHANNELS and all(
        s == ChannelStatus.SUBSCRIBED for s in statuses.values()
    )


def any_channel_down(statuses: Mapping[str, ChannelStatus]) -> bool:
    return any(s in _DOWN_STATUSES for s in statuses.values())


def _with_status(context: ConnectionContext, event: ChannelStatusChanged) -> ConnectionContext:
    statuses = {**context.channel_statuses, event.channel_id: ChannelStatus(event.status)}
    return replace(context, channel_statuses=MappingProxyType(statuses))


def _enter_reconnecting(context: ConnectionContext, *prefix: Effect) -> Transition:
    effects: list[Effect] = [*prefix]
    if context.has_connected_before:
        effects.append(Notify(NotificationKind.DISCONNECTED))
    effects.append(StartBackoff(context.backoff_ms))
    return Transition(ConnectionState.RECONNECTING, context, tuple(effects))


def _enter_offline(context: ConnectionContext) -> Transition:
    return Transition(
        ConnectionState.OFFLINE,
        context,
        (CancelBackoff(), Notify(NotificationKind.OFFLINE)),
    )


def initial_transition(context: ConnectionContext | None = None) -> Transition:
    """Starting point of the machine."""
    return Transition(ConnectionState.IDLE, context or ConnectionContext())


def transition(
    state: ConnectionState,
    context: ConnectionContext,
    event: ConnectionEvent,
) -> Transition:
    """Compute the next state, context and effects for ``event``.

    Channel status events always update ``channel_statuses``, whether or
    not a state change follows. Host connectivity events are only handled
    where a rule names them: ``BrowserOffline`` in ``connected``,
    ``BrowserOnline`` in ``reconnecting`` and ``offline``. Any other event
    with no rule for the current state leaves state and context unchanged
    and produces no effects.
    """
    if isinstance(event, ChannelStatusChanged):
        return _on_channel_status(state, _with_status(context, event))

    if isinstance(event, BrowserOffline):
        if state == ConnectionState.CONNECTED:
            return _enter_reconnecting(replace(context, browser_online=False))
        return Transition(state, context)

    if isinstance(event, BrowserOnline):
        if state in (ConnectionState.RECONNECTING, ConnectionState.OFFLINE):
            # Re-entry restarts the backoff from the base delay.
            context = replace(context, browser_online=True, retry_count=0)
            return _enter_reconnecting(context, CancelBackoff())
        return Transition(state, context)

    if isinstance(event, BackoffElapsed):
        if state != ConnectionState.RECONNECTING:
            return Transition(state, context)
        if not context.browser_online:
            return _enter_offline(context)
        if context.retry_count >= context.max_retries:
            return _enter_offline(context)
        context = replace(context, retry_count=context.retry_count + 1)
        return _enter_reconnecting(context, RequestReconnect())

    raise TypeError(f"Unknown connection event: {event!r}")


def _on_channel_status(state: ConnectionState, context: ConnectionContext) -> Transition:
    statuses = context.channel_statuses

    if state == ConnectionState.IDLE and all_channels_subscribed(statuses):
        return Transition(
            ConnectionState.CONNECTED, replace(context, has_connected_before=True)
        )

    if state == ConnectionState.CONNECTED and any_channel_down(statuses):
        return _enter_reconnecting(context)

    if state == ConnectionState.RECONNECTING and all_channels_subscribed(statuses):
        context = replace(context, retry_count=0, has_connected_before=True)
        return Transition(
            ConnectionState.CONNECTED,
            context,
            (CancelBackoff(), Notify(NotificationKind.RECONNECTED)),
        )

    return Transition(state, context)
