"""Tests for the SQLite session archive."""

from __future__ import annotations

from pathlib import Path

import pytest

from aicore.llm.types import Message, ToolCall
from aicore.session.archive import SCHEMA_VERSION, SessionArchive
from aicore.session.store import SessionStore


@pytest.fixture
async def archive(tmp_path: Path):
    a = SessionArchive(tmp_path / "nested" / "sessions.db")
    await a.init()
    yield a
    await a.close()


def _session(store: SessionStore):
    session = store.create_session("system")
    store.add_message(session.id, Message(role="user", content="write hello.py"))
    store.add_message(
        session.id,
        Message(
            role="assistant",
            content=None,
            tool_calls=[ToolCall(id="call_1", name="write_file", arguments='{"path": "hello.py"}')],
        ),
    )
    store.add_message(session.id, Message(role="tool", content="Wrote 12 bytes", tool_call_id="call_1"))
    session.cache_stats.total_tokens = 500
    session.cache_stats.cached_tokens = 100
    return session


class TestSchema:
    async def test_creates_parent_dirs_and_schema(self, archive, tmp_path):
        assert (tmp_path / "nested" / "sessions.db").is_file()
        assert await archive.get_schema_version() == SCHEMA_VERSION

    async def test_reopen_keeps_version(self, tmp_path):
        path = tmp_path / "re.db"
        async with SessionArchive(path) as first:
            assert await first.get_schema_version() == SCHEMA_VERSION
        async with SessionArchive(path) as second:
            assert await second.get_schema_version() == SCHEMA_VERSION


class TestSessions:
    async def test_round_trip(self, archive):
        session = _session(SessionStore())
        await archive.save_session(session)

        restored = await archive.load_session(session.id)

        assert restored is not None
        assert restored.id == session.id
        assert [m.role for m in restored.messages] == ["system", "user", "assistant", "tool"]
        assert restored.messages[2].tool_calls[0].name == "write_file"
        assert restored.messages[2].tool_calls[0].arguments == '{"path": "hello.py"}'
        assert restored.messages[3].tool_call_id == "call_1"
        assert restored.cache_stats.cached_tokens == 100
        assert restored.created_at == session.created_at

    async def test_save_replaces_messages(self, archive):
        store = SessionStore()
        session = _session(store)
        await archive.save_session(session)

        store.add_message(session.id, Message(role="user", content="next"))
        await archive.save_session(store.get_session(session.id))

        restored = await archive.load_session(session.id)
        assert len(restored.messages) == 5
        assert restored.messages[-1].content == "next"

    async def test_missing_session(self, archive):
        assert await archive.load_session("session-nope") is None

    async def test_list_sessions(self, archive):
        store = SessionStore()
        first = _session(store)
        second = store.create_session("other")
        await archive.save_session(first)
        await archive.save_session(second)

        listed = await archive.list_sessions()

        by_id = {s["session_id"]: s for s in listed}
        assert by_id[first.id]["message_count"] == 4
        assert by_id[second.id]["message_count"] == 1
        assert by_id[first.id]["total_tokens"] == 500

    async def test_delete(self, archive):
        session = _session(SessionStore())
        await archive.save_session(session)

        assert await archive.delete_session(session.id) is True
        assert await archive.load_session(session.id) is None
        assert await archive.delete_session(session.id) is False

    async def test_adopted_session_is_trimmed(self, archive):
        store = SessionStore()
        session = store.create_session("sys")
        for i in range(20):
            store.add_message(session.id, Message(role="user", content=f"m{i}"))
        await archive.save_session(session)

        small = SessionStore(max_messages=5)
        restored = small.adopt_session(await archive.load_session(session.id))

        assert small.current_session is restored
        assert len(restored.messages) == 5
        assert restored.messages[0].role == "system"
        assert restored.messages[-1].content == "m19"
