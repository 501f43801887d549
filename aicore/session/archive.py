"""
SQLite-backed session archive.

Uses ``aiosqlite`` for async database access with a write lock to serialise
mutations (SQLite only supports one writer at a time in WAL mode).

Schema is version-tracked via a ``schema_version`` table.  Migrations are
applied automatically on ``init()``.

The archive stores whole sessions: saving replaces the stored message list
with the session's current (already trimmed) history.
"""

from __future__ import annotations

import asyncio
import json
from datetime import datetime
from pathlib import Path

import aiosqlite

from aicore.llm.types import Message, ToolCall
from aicore.session.store import CacheStats, Session

# ---------------------------------------------------------------------------
# Schema management
# ---------------------------------------------------------------------------

SCHEMA_VERSION = 1

MIGRATIONS: dict[int, list[str]] = {
    1: [
        """CREATE TABLE IF NOT EXISTS schema_version (
            version INTEGER NOT NULL
        )""",
        """CREATE TABLE IF NOT EXISTS sessions (
            session_id TEXT PRIMARY KEY,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            total_tokens INTEGER NOT NULL DEFAULT 0,
            cached_tokens INTEGER NOT NULL DEFAULT 0
        )""",
        """CREATE TABLE IF NOT EXISTS messages (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            session_id TEXT NOT NULL,
            position INTEGER NOT NULL,
            role TEXT NOT NULL,
            content TEXT,
            tool_calls TEXT,
            tool_call_id TEXT,
            FOREIGN KEY (session_id) REFERENCES sessions(session_id) ON DELETE CASCADE
        )""",
        """CREATE INDEX IF NOT EXISTS idx_messages_session ON messages(session_id)""",
    ],
}


def default_archive_path() -> Path:
    return Path.home() / ".aicore" / "sessions.db"


# ---------------------------------------------------------------------------
# Archive
# ---------------------------------------------------------------------------


class SessionArchive:
    """
    Async SQLite archive for chat sessions.

    Usage::

        archive = SessionArchive("~/.aicore/sessions.db")
        await archive.init()
        await archive.save_session(session)
        restored = await archive.load_session(session.id)
        await archive.close()
    """

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = Path(db_path).expanduser().resolve()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._write_lock = asyncio.Lock()
        self._db: aiosqlite.Connection | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def init(self) -> None:
        """Open the database and ensure the schema is up to date."""
        self._db = await aiosqlite.connect(str(self.db_path))
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.execute("PRAGMA foreign_keys=ON")
        await self._run_migrations()

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    async def __aenter__(self) -> SessionArchive:
        await self.init()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Migration runner
    # ------------------------------------------------------------------

    async def get_schema_version(self) -> int:
        """Return the current schema version, or 0 if not initialised."""
        assert self._db is not None
        cursor = await self._db.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name='schema_version'"
        )
        if await cursor.fetchone() is None:
            return 0
        cursor = await self._db.execute("SELECT version FROM schema_version LIMIT 1")
        row = await cursor.fetchone()
        return 0 if row is None else int(row[0])

    async def _run_migrations(self) -> None:
        assert self._db is not None
        current = await self.get_schema_version()
        if current >= SCHEMA_VERSION:
            return

        for version in range(current + 1, SCHEMA_VERSION + 1):
            stmts = MIGRATIONS.get(version)
            if stmts is None:
                raise RuntimeError(f"Missing migration for schema version {version}")
            for stmt in stmts:
                await self._db.execute(stmt)
            await self._db.execute("DELETE FROM schema_version")
            await self._db.execute(
                "INSERT INTO schema_version (version) VALUES (?)", (version,)
            )

        await self._db.commit()

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def save_session(self, session: Session) -> None:
        """Insert or replace *session* and its full message list."""
        assert self._db is not None
        async with self._write_lock:
            await self._db.execute(
                """INSERT INTO sessions
                   (session_id, created_at, updated_at, total_tokens, cached_tokens)
                   VALUES (?, ?, ?, ?, ?)
                   ON CONFLICT(session_id) DO UPDATE SET
                       updated_at = excluded.updated_at,
                       total_tokens = excluded.total_tokens,
                       cached_tokens = excluded.cached_tokens""",
                (
                    session.id,
                    session.created_at.isoformat(),
                    session.updated_at.isoformat(),
                    session.cache_stats.total_tokens,
                    session.cache_stats.cached_tokens,
                ),
            )
            await self._db.execute(
                "DELETE FROM messages WHERE session_id = ?", (session.id,)
            )
            await self._db.executemany(
                """INSERT INTO messages
                   (session_id, position, role, content, tool_calls, tool_call_id)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                [
                    (
                        session.id,
                        position,
                        m.role,
                        m.content,
                        _dump_tool_calls(m.tool_calls),
                        m.tool_call_id,
                    )
                    for position, m in enumerate(session.messages)
                ],
            )
            await self._db.commit()

    async def load_session(self, session_id: str) -> Session | None:
        """Return the archived session, or ``None`` if not found."""
        assert self._db is not None
        cursor = await self._db.execute(
            """SELECT session_id, created_at, updated_at, total_tokens, cached_tokens
               FROM sessions WHERE session_id = ?""",
            (session_id,),
        )
        row = await cursor.fetchone()
        if row is None:
            return None

        cursor = await self._db.execute(
            """SELECT role, content, tool_calls, tool_call_id
               FROM messages WHERE session_id = ?
               ORDER BY position ASC""",
            (session_id,),
        )
        messages = [
            Message(
                role=r[0],
                content=r[1],
                tool_calls=_load_tool_calls(r[2]),
                tool_call_id=r[3],
            )
            for r in await cursor.fetchall()
        ]
        return Session(
            id=row[0],
            messages=messages,
            created_at=datetime.fromisoformat(row[1]),
            updated_at=datetime.fromisoformat(row[2]),
            cache_stats=CacheStats(total_tokens=row[3], cached_tokens=row[4]),
        )

    async def list_sessions(self) -> list[dict]:
        """Return session summaries ordered by last update (newest first)."""
        assert self._db is not None
        cursor = await self._db.execute(
            """SELECT s.session_id, s.created_at, s.updated_at,
                      s.total_tokens, s.cached_tokens, COUNT(m.id)
               FROM sessions s LEFT JOIN messages m ON m.session_id = s.session_id
               GROUP BY s.session_id
               ORDER BY s.updated_at DESC"""
        )
        return [
            {
                "session_id": row[0],
                "created_at": row[1],
                "updated_at": row[2],
                "total_tokens": row[3],
                "cached_tokens": row[4],
                "message_count": row[5],
            }
            for row in await cursor.fetchall()
        ]

    async def delete_session(self, session_id: str) -> bool:
        """Delete a session and its messages.  Returns whether it existed."""
        assert self._db is not None
        async with self._write_lock:
            await self._db.execute(
                "DELETE FROM messages WHERE session_id = ?", (session_id,)
            )
            cursor = await self._db.execute(
                "DELETE FROM sessions WHERE session_id = ?", (session_id,)
            )
            await self._db.commit()
            return cursor.rowcount > 0


def _dump_tool_calls(calls: list[ToolCall] | None) -> str | None:
    if not calls:
        return None
    return json.dumps([tc.to_wire() for tc in calls])


def _load_tool_calls(raw: str | None) -> list[ToolCall] | None:
    if not raw:
        return None
    return Message.from_dict({"role": "assistant", "tool_calls": json.loads(raw)}).tool_calls
