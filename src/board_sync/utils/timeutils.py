"""Time helpers shared by the store, engine and queue."""

from __future__ import annotations

from datetime import UTC, datetime


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


def iso_now() -> str:
    """Current time as an ISO-8601 UTC string, e.g. ``2026-01-15T10:00:00.000Z``.

    Fixed width with millisecond precision and a ``Z`` suffix, so string
    comparison orders timestamps chronologically.
    """
    return utcnow().isoformat(timespec="milliseconds").replace("+00:00", "Z")
