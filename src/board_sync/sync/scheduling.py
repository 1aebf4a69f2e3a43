"""Debounce and throttle primitives built on ``loop.call_later``."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

FlushCallback = Callable[[str, dict[str, Any]], None]


class KeyedDebouncer:
    """Coalesce change sets per key until the key has been quiet for ``delay_ms``.

    Each :meth:`push` restarts that key's timer and merges the new changes
    over the accumulated ones (later fields win). When the timer fires,
    ``on_flush(key, changes)`` is called exactly once with the union.
    """

    def __init__(self, delay_ms: float, on_flush: FlushCallback) -> None:
        self._delay = delay_ms / 1000
        self._on_flush = on_flush
        self._pending: dict[str, dict[str, Any]] = {}
        self._handles: dict[str, asyncio.TimerHandle] = {}

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, key: object) -> bool:
        return key in self._pending

    def pending(self, key: str) -> dict[str, Any] | None:
        """Accumulated, not yet flushed changes for ``key``."""
        changes = self._pending.get(key)
        return dict(changes) if changes is not None else None

    def push(self, key: str, changes: dict[str, Any]) -> None:
        handle = self._handles.pop(key, None)
        if handle is not None:
            handle.cancel()
        self._pending[key] = {**self._pending.get(key, {}), **changes}
        loop = asyncio.get_running_loop()
        self._handles[key] = loop.call_later(self._delay, self._fire, key)

    def cancel(self, key: str) -> dict[str, Any] | None:
        """Drop the pending window for ``key``. Returns what was discarded."""
        handle = self._handles.pop(key, None)
        if handle is not None:
            handle.cancel()
            logger.debug("Debounce for %s cancelled", key)
        return self._pending.pop(key, None)

    def cancel_all(self) -> None:
        for handle in self._handles.values():
            handle.cancel()
        self._handles.clear()
        self._pending.clear()

    def _fire(self, key: str) -> None:
        self._handles.pop(key, None)
        changes = self._pending.pop(key, None)
        if changes is not None:
            self._on_flush(key, changes)


class TrailingThrottle(Generic[T]):
    """Send at most once per ``interval_ms``, always delivering the newest value.

    A submit after a quiet interval is sent immediately. A submit inside
    the interval arms a trailing timer for the remaining time; further
    submits in that window only replace the payload, so the trailing send
    carries the most recent one.
    """

    def __init__(self, interval_ms: float, send: Callable[[T], None]) -> None:
        self._interval = interval_ms / 1000
        self._send = send
        self._last_send: float | None = None
        self._pending: T | None = None
        self._has_pending = False
        self._handle: asyncio.TimerHandle | None = None

    @property
    def has_pending(self) -> bool:
        return self._has_pending

    def submit(self, payload: T) -> None:
        loop = asyncio.get_running_loop()
        now = loop.time()
        if self._last_send is None or now - self._last_send >= self._interval:
            self._drop_pending()
            self._emit(now, payload)
            return

        self._pending = payload
        self._has_pending = True
        if self._handle is None:
            remaining = self._interval - (now - self._last_send)
            self._handle = loop.call_later(remaining, self._fire)

    def cancel(self) -> None:
        self._drop_pending()

    def _drop_pending(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        self._pending = None
        self._has_pending = False

    def _emit(self, now: float, payload: T) -> None:
        self._last_send = now
        self._send(payload)

    def _fire(self) -> None:
        self._handle = None
        loop = asyncio.get_running_loop()
        now = loop.time()
        assert self._last_send is not None
        remaining = self._interval - (now - self._last_send)
        if remaining > 0:
            # Timer resolution can wake us marginally early.
            self._handle = loop.call_later(remaining, self._fire)
            return
        if not self._has_pending:
            return
        payload = self._pending
        self._pending = None
        self._has_pending = False
        self._emit(now, payload)  # type: ignore[arg-type]
