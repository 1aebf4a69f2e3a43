"""Shared CLI helpers: async runner, logging, queue access."""

from __future__ import annotations

import asyncio
import logging
import sys
from collections.abc import Coroutine
from typing import Any, TypeVar

from board_sync.storage.pending_queue import SQLitePendingWriteQueue
from board_sync.utils.config import Config

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Resources opened during a command, closed before the loop shuts down
# (aiosqlite's worker thread otherwise reports "Event loop is closed").
_active_resources: list[Any] = []


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def run_async(coro: Coroutine[Any, Any, T]) -> T:
    """Run an async CLI command, closing opened resources before loop teardown."""

    async def _with_cleanup() -> T:
        try:
            return await coro
        finally:
            for resource in reversed(_active_resources):
                try:
                    await resource.close()
                except Exception:
                    logger.debug("Failed to close resource during cleanup", exc_info=True)
            _active_resources.clear()
            await asyncio.sleep(0)

    return asyncio.run(_with_cleanup())


def track(resource: T) -> T:
    """Close ``resource`` when the running command finishes."""
    _active_resources.append(resource)
    return resource


async def open_queue(config: Config) -> SQLitePendingWriteQueue:
    config.data_path.mkdir(parents=True, exist_ok=True)
    queue = track(SQLitePendingWriteQueue(config.pending_db_path))
    await queue.initialize()
    return queue
