"""Durable, per-board, append-ordered log of pending writes."""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

import aiosqlite

from board_sync.core.pending_write import PendingWrite, pending_write_from_dict
from board_sync.utils.timeutils import iso_now

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS pending_writes (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    board_id TEXT NOT NULL,
    payload TEXT NOT NULL,
    queued_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_pending_writes_board ON pending_writes(board_id, seq);
"""


class PendingWriteQueue(ABC):
    """
    Append/drain log of :data:`PendingWrite` entries keyed by board id.

    The queue never deduplicates or compacts; superseding entries is a
    policy decision for the caller.
    """

    @abstractmethod
    async def append(self, board_id: str, write: PendingWrite) -> None:
        """Append one entry at the tail of the board's log."""

    @abstractmethod
    async def read_all(self, board_id: str) -> list[PendingWrite]:
        """All entries for the board, oldest first."""

    @abstractmethod
    async def remove_head(self, board_id: str, count: int) -> None:
        """Drop the ``count`` oldest entries (already replayed)."""

    @abstractmethod
    async def clear(self, board_id: str) -> None:
        """Drop every entry for the board."""

    async def count(self, board_id: str) -> int:
        return len(await self.read_all(board_id))

    async def close(self) -> None:  # noqa: B027
        """Release resources. No-op by default."""


class InMemoryPendingWriteQueue(PendingWriteQueue):
    """Process-local queue. Useful for tests and ephemeral sessions."""

    def __init__(self) -> None:
        self._writes: dict[str, list[dict[str, Any]]] = {}

    async def append(self, board_id: str, write: PendingWrite) -> None:
        # Stored serialized so callers see the same round-trip as on disk.
        self._writes.setdefault(board_id, []).append(write.to_dict())

    async def read_all(self, board_id: str) -> list[PendingWrite]:
        return [pending_write_from_dict(raw) for raw in self._writes.get(board_id, [])]

    async def remove_head(self, board_id: str, count: int) -> None:
        if count <= 0:
            return
        remaining = self._writes.get(board_id, [])[count:]
        if remaining:
            self._writes[board_id] = remaining
        else:
            self._writes.pop(board_id, None)

    async def clear(self, board_id: str) -> None:
        self._writes.pop(board_id, None)


class SQLitePendingWriteQueue(PendingWriteQueue):
    """SQLite-backed queue that survives process restarts.

    Usage:
        queue = SQLitePendingWriteQueue(config.pending_db_path)
        await queue.initialize()
        try:
            await queue.append("board-1", DeleteWrite("obj-1"))
        finally:
            await queue.close()
    """

    def __init__(self, db_path: str | Path) -> None:
        self._db_path = Path(db_path).resolve()
        self._conn: aiosqlite.Connection | None = None

    @property
    def db_path(self) -> Path:
        return self._db_path

    async def initialize(self) -> None:
        """Open the database and create the schema if needed."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = await aiosqlite.connect(self._db_path)
        self._conn.row_factory = aiosqlite.Row

        await self._conn.execute("PRAGMA journal_mode=WAL")
        await self._conn.execute("PRAGMA synchronous=NORMAL")
        await self._conn.executescript(SCHEMA)
        await self._conn.commit()

    async def close(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None

    async def __aenter__(self) -> SQLitePendingWriteQueue:
        await self.initialize()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        await self.close()

    def _ensure_conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError("Pending write queue not initialized. Call initialize() first.")
        return self._conn

    async def append(self, board_id: str, write: PendingWrite) -> None:
        conn = self._ensure_conn()
        await conn.execute(
            "INSERT INTO pending_writes (board_id, payload, queued_at) VALUES (?, ?, ?)",
            (board_id, json.dumps(write.to_dict()), iso_now()),
        )
        await conn.commit()

    async def read_all(self, board_id: str) -> list[PendingWrite]:
        conn = self._ensure_conn()
        async with conn.execute(
            "SELECT seq, payload FROM pending_writes WHERE board_id = ? ORDER BY seq",
            (board_id,),
        ) as cursor:
            rows = await cursor.fetchall()

        writes: list[PendingWrite] = []
        corrupt: list[int] = []
        for row in rows:
            try:
                writes.append(pending_write_from_dict(json.loads(row["payload"])))
            except (json.JSONDecodeError, KeyError, ValueError, TypeError):
                corrupt.append(row["seq"])

        # Corrupt rows are dropped so head positions stay aligned with ``writes``.
        if corrupt:
            logger.warning(
                "Dropping %d corrupt pending writes for board %s", len(corrupt), board_id
            )
            await conn.executemany(
                "DELETE FROM pending_writes WHERE seq = ?", [(seq,) for seq in corrupt]
            )
            await conn.commit()
        return writes

    async def remove_head(self, board_id: str, count: int) -> None:
        if count <= 0:
            return
        conn = self._ensure_conn()
        await conn.execute(
            """DELETE FROM pending_writes WHERE seq IN (
                   SELECT seq FROM pending_writes WHERE board_id = ? ORDER BY seq LIMIT ?
               )""",
            (board_id, count),
        )
        await conn.commit()

    async def clear(self, board_id: str) -> None:
        conn = self._ensure_conn()
        await conn.execute("DELETE FROM pending_writes WHERE board_id = ?", (board_id,))
        await conn.commit()

    async def count(self, board_id: str) -> int:
        conn = self._ensure_conn()
        async with conn.execute(
            "SELECT COUNT(*) AS n FROM pending_writes WHERE board_id = ?", (board_id,)
        ) as cursor:
            row = await cursor.fetchone()
        return int(row["n"]) if row else 0
