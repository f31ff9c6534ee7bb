"""SQLite-backed memory store implementation."""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from types import TracebackType
from typing import Any

from ..core.config import StorageSettings
from ..core.datetime_utils import parse_datetime, serialize_datetime, utc_now
from ..core.models import EMAIL_COLLECTION, Memory, MemoryContent

LOGGER = logging.getLogger(__name__)


class SqliteMemoryStore:
    """Persist conversational memories using SQLite.

    Blocking database calls run in a worker thread behind a lock. Email
    memories are unique per room and mail UUID, so re-processing a message
    does not create a second logical email.
    """

    def __init__(self, settings: StorageSettings) -> None:
        """Open the database and apply migrations."""
        self._settings = settings
        db_path = Path(settings.db_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._connection = sqlite3.connect(db_path, check_same_thread=False)
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._apply_migrations()

    # Context manager helpers -------------------------------------------------
    def __enter__(self) -> SqliteMemoryStore:
        """Enter context manager scope."""
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Ensure the connection is closed when exiting context manager."""
        self.close()

    # MemoryStore API ---------------------------------------------------------
    async def create_memory(self, memory: Memory) -> None:
        """Persist ``memory``."""
        await asyncio.to_thread(self.insert, memory)

    async def get_memories(
        self,
        *,
        room_id: str,
        count: int | None,
        start: datetime | None = None,
        source: str | None = None,
        collection: str | None = None,
    ) -> list[Memory]:
        """Return up to ``count`` memories newest first."""
        return await asyncio.to_thread(
            self.query,
            room_id=room_id,
            count=count,
            start=start,
            source=source,
            collection=collection,
        )

    # Synchronous operations --------------------------------------------------
    def insert(self, memory: Memory) -> bool:
        """Insert ``memory``; return ``False`` when it was a duplicate email."""
        metadata = memory.content.metadata
        email_id = metadata.get("emailId") if memory.collection == EMAIL_COLLECTION else None
        payload = json.dumps(
            {
                "text": memory.content.text,
                "thought": memory.content.thought,
                "actions": list(memory.content.actions),
                "metadata": metadata,
            },
            default=str,
        )
        LOGGER.debug("Persisting memory %s (%s)", memory.id, memory.content.source)
        with self._lock, self._connection:
            cursor = self._connection.execute(
                """
                INSERT OR IGNORE INTO memories (
                    id,
                    agent_id,
                    room_id,
                    user_id,
                    created_at,
                    source,
                    collection,
                    email_id,
                    content_json
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    memory.id,
                    memory.agent_id,
                    memory.room_id,
                    memory.user_id,
                    serialize_datetime(memory.created_at),
                    memory.content.source,
                    memory.collection,
                    email_id,
                    payload,
                ),
            )
        inserted = cursor.rowcount > 0
        if not inserted:
            LOGGER.debug("Memory %s already stored, skipped", email_id or memory.id)
        return inserted

    def query(
        self,
        *,
        room_id: str,
        count: int | None,
        start: datetime | None = None,
        source: str | None = None,
        collection: str | None = None,
    ) -> list[Memory]:
        """Synchronous variant of :meth:`get_memories`."""
        clauses = ["room_id = ?"]
        params: list[Any] = [room_id]
        if start is not None:
            clauses.append("created_at >= ?")
            params.append(serialize_datetime(start))
        if source is not None:
            clauses.append("source = ?")
            params.append(source)
        if collection is not None:
            clauses.append("collection = ?")
            params.append(collection)
        # SQLite treats a negative LIMIT as unbounded.
        params.append(-1 if count is None else count)
        sql = (
            "SELECT * FROM memories WHERE "
            + " AND ".join(clauses)
            + " ORDER BY created_at DESC, rowid DESC LIMIT ?"
        )
        with self._lock:
            rows = self._connection.execute(sql, params).fetchall()
        return [_row_to_memory(row) for row in rows]

    def close(self) -> None:
        """Close the underlying SQLite connection."""
        with self._lock:
            self._connection.close()

    # Internal helpers ---------------------------------------------------------
    def _apply_migrations(self) -> None:
        with self._lock, self._connection:
            self._connection.executescript(
                """
                CREATE TABLE IF NOT EXISTS memories (
                    id TEXT PRIMARY KEY,
                    agent_id TEXT NOT NULL,
                    room_id TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    source TEXT NOT NULL,
                    collection TEXT,
                    email_id TEXT,
                    content_json TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_memories_room_created
                    ON memories(room_id, created_at DESC);
                CREATE UNIQUE INDEX IF NOT EXISTS idx_memories_room_email
                    ON memories(room_id, email_id)
                    WHERE email_id IS NOT NULL;
                """
            )


def _row_to_memory(row: sqlite3.Row) -> Memory:
    payload = json.loads(row["content_json"])
    return Memory(
        id=row["id"],
        agent_id=row["agent_id"],
        room_id=row["room_id"],
        user_id=row["user_id"],
        created_at=parse_datetime(row["created_at"]) or utc_now(),
        content=MemoryContent(
            text=payload.get("text") or "",
            source=row["source"],
            thought=payload.get("thought"),
            actions=tuple(payload.get("actions") or ()),
            metadata=payload.get("metadata") or {},
        ),
    )


__all__ = ["SqliteMemoryStore"]
