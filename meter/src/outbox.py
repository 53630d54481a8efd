"""
Durable outbox of attribute events awaiting upload to the hub.

The daemon appends everything the engine emits here and only deletes rows
once the hub acknowledged them, so a hub outage or a daemon restart does not
lose published attribute changes.  Events are stored as their JSON
serialization in a SQLite file (WAL mode) through aiosqlite, and come back
out as validated :class:`~meter.src.models.AttributeEvent` objects.

During a long outage the table is capped at ``max_rows``: the oldest events
are dropped first, since newer values of the same attributes supersede them.
A row that no longer parses as an AttributeEvent is discarded on read.

Engine state itself is never persisted.

CHANGELOG:
- 2026-10-19: Store AttributeEvent objects, cap table size (STORY-019)
- 2026-10-14: Initial creation (STORY-015)

TODO:
- None
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from pathlib import Path

import aiosqlite
from pydantic import ValidationError

from meter.src.models import AttributeEvent

logger = logging.getLogger(__name__)

_SCHEMA_SQL = """\
CREATE TABLE IF NOT EXISTS attribute_events (
    rowid INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    channel INTEGER,
    payload TEXT NOT NULL,
    queued_at TEXT NOT NULL DEFAULT (datetime('now'))
);
"""

_APPEND_SQL = "INSERT INTO attribute_events (name, channel, payload) VALUES (?, ?, ?);"
_OLDEST_SQL = "SELECT rowid, payload FROM attribute_events ORDER BY rowid ASC LIMIT ?;"
_COUNT_SQL = "SELECT COUNT(*) FROM attribute_events;"
_TRIM_SQL = """\
DELETE FROM attribute_events
WHERE rowid IN (SELECT rowid FROM attribute_events ORDER BY rowid ASC LIMIT ?);
"""


class EventOutbox:
    """FIFO of pending :class:`AttributeEvent` rows.

    Args:
        path: SQLite database file.
        max_rows: Upper bound on pending events; ``None`` means unbounded.

    Usage::

        async with EventOutbox("/data/outbox.db") as outbox:
            await outbox.append(engine.ingest(sample))
            batch = await outbox.peek(50)
            await outbox.ack([rowid for rowid, _ in batch])
    """

    def __init__(self, path: str | Path, max_rows: int | None = None) -> None:
        self._path = Path(path)
        self._max_rows = max_rows
        self._db: aiosqlite.Connection | None = None

    async def open(self) -> None:
        self._db = await aiosqlite.connect(str(self._path))
        await self._db.execute("PRAGMA journal_mode=WAL;")
        await self._db.execute(_SCHEMA_SQL)
        await self._db.commit()

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    async def __aenter__(self) -> EventOutbox:
        await self.open()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        await self.close()

    def _conn(self) -> aiosqlite.Connection:
        assert self._db is not None, "Outbox not opened. Call open() or use async with."
        return self._db

    # ------------------------------------------------------------------
    # Queue operations
    # ------------------------------------------------------------------

    async def append(self, events: Sequence[AttributeEvent]) -> None:
        """Queue the events of one engine operation in a single commit.

        Appending nothing is a no-op.  If the cap is exceeded afterwards the
        oldest rows are dropped and a warning is logged.
        """
        if not events:
            return
        db = self._conn()
        await db.executemany(
            _APPEND_SQL,
            [(event.name, event.channel, event.model_dump_json()) for event in events],
        )
        if self._max_rows is not None:
            overflow = await self._count(db) - self._max_rows
            if overflow > 0:
                await db.execute(_TRIM_SQL, (overflow,))
                logger.warning("Outbox full; dropped %d oldest events", overflow)
        await db.commit()

    async def peek(self, n: int) -> list[tuple[int, AttributeEvent]]:
        """Return up to *n* oldest events with their rowids, oldest first.

        Rows that fail to parse are deleted and skipped, so the batch may be
        shorter than *n* even when more rows are pending.
        """
        if n < 1:
            return []
        db = self._conn()
        cursor = await db.execute(_OLDEST_SQL, (n,))
        batch: list[tuple[int, AttributeEvent]] = []
        unreadable: list[int] = []
        for rowid, payload in await cursor.fetchall():
            try:
                batch.append((rowid, AttributeEvent.model_validate_json(payload)))
            except ValidationError:
                logger.warning("Discarding unreadable outbox row %d", rowid)
                unreadable.append(rowid)
        if unreadable:
            await self.ack(unreadable)
        return batch

    async def ack(self, rowids: Sequence[int]) -> None:
        """Delete delivered rows.  Unknown rowids are ignored."""
        if not rowids:
            return
        db = self._conn()
        placeholders = ",".join("?" for _ in rowids)
        await db.execute(
            f"DELETE FROM attribute_events WHERE rowid IN ({placeholders});",  # noqa: S608
            list(rowids),
        )
        await db.commit()

    async def count(self) -> int:
        return await self._count(self._conn())

    @staticmethod
    async def _count(db: aiosqlite.Connection) -> int:
        cursor = await db.execute(_COUNT_SQL)
        row = await cursor.fetchone()
        return row[0]
