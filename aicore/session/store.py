"""
In-memory session store.

Sessions hold the running message history of one conversation.  Every
append is followed by a trim so the history the gateway sees stays under a
message cap and an estimated token budget.  System messages are never
evicted.

Callers only ever receive copies of stored messages; mutating a returned
list or message does not alter the session.
"""

from __future__ import annotations

import logging
import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone

from aicore.llm.types import Message, Usage

logger = logging.getLogger(__name__)

DEFAULT_MAX_MESSAGES = 50
DEFAULT_MAX_TOKENS = 100_000
CHARS_PER_TOKEN = 3
MIN_KEPT_MESSAGES = 2


@dataclass
class CacheStats:
    total_tokens: int = 0
    cached_tokens: int = 0

    @property
    def savings(self) -> str:
        if self.total_tokens <= 0:
            return "0%"
        return f"{self.cached_tokens / self.total_tokens * 100:.1f}%"


@dataclass
class Session:
    id: str
    messages: list[Message] = field(default_factory=list)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    cache_stats: CacheStats = field(default_factory=CacheStats)


def estimate_tokens(messages: list[Message]) -> int:
    """Rough token estimate: total content characters divided by three."""
    total_chars = sum(len(m.content) for m in messages if m.content)
    return math.ceil(total_chars / CHARS_PER_TOKEN)


def _without(messages: list[Message], evicted: list[Message]) -> list[Message]:
    gone = {id(m) for m in evicted}
    return [m for m in messages if id(m) not in gone]


class SessionStore:
    """
    Holds sessions for one orchestrator instance.

    Parameters
    ----------
    max_messages:
        Message cap applied after every append.
    max_tokens:
        Estimated token budget applied after the message cap.
    """

    def __init__(
        self,
        max_messages: int = DEFAULT_MAX_MESSAGES,
        max_tokens: int = DEFAULT_MAX_TOKENS,
    ) -> None:
        self.max_messages = max_messages
        self.max_tokens = max_tokens
        self._sessions: dict[str, Session] = {}
        self._current_id: str | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def create_session(self, system_prompt: str | None = None) -> Session:
        """Create a session (optionally seeded with a system message) and make it current."""
        session = Session(id=f"session-{uuid.uuid4().hex[:12]}")
        if system_prompt:
            session.messages.append(Message(role="system", content=system_prompt))
        self._sessions[session.id] = session
        self._current_id = session.id
        logger.info("Created session: %s", session.id)
        return session

    def adopt_session(self, session: Session) -> Session:
        """Register an existing session (e.g. loaded from the archive) as current."""
        self._sessions[session.id] = session
        self._current_id = session.id
        self.trim(session)
        return session

    @property
    def current_session(self) -> Session | None:
        if self._current_id is None:
            return None
        return self._sessions.get(self._current_id)

    def get_session(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def list_sessions(self) -> list[Session]:
        return list(self._sessions.values())

    def clear_session(self, session_id: str | None = None) -> None:
        """Drop *session_id*, or the current session when omitted."""
        target = session_id or self._current_id
        if target is None:
            return
        self._sessions.pop(target, None)
        if self._current_id == target:
            self._current_id = None
        logger.info("Cleared session: %s", target)

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def add_message(self, session_id: str, message: Message) -> None:
        session = self._sessions.get(session_id)
        if session is None:
            logger.warning("Session not found: %s", session_id)
            return
        session.messages.append(message.copy())
        session.updated_at = datetime.now(timezone.utc)
        self.trim(session)

    def get_session_messages(self, session_id: str) -> list[Message]:
        session = self._sessions.get(session_id)
        if session is None:
            return []
        return [m.copy() for m in session.messages]

    def trim(self, session: Session) -> None:
        """
        Enforce the message cap and token budget on *session* in place.

        Only the oldest non-system messages are evicted; everything kept
        stays in its original order.  Trimming an already-trimmed session
        changes nothing.
        """
        messages = session.messages

        if len(messages) > self.max_messages:
            rest = [m for m in messages if m.role != "system"]
            keep = max(self.max_messages - (len(messages) - len(rest)), 0)
            session.messages = _without(messages, rest[: len(rest) - keep])
            logger.info(
                "Trimmed session %s from %d to %d messages",
                session.id,
                len(messages),
                len(session.messages),
            )

        if estimate_tokens(session.messages) > self.max_tokens:
            rest = [m for m in session.messages if m.role != "system"]
            evicted = 0
            trimmed = session.messages
            while (
                len(rest) - evicted > MIN_KEPT_MESSAGES
                and estimate_tokens(trimmed) > self.max_tokens
            ):
                evicted += 1
                trimmed = _without(session.messages, rest[:evicted])
            session.messages = trimmed
            logger.info(
                "Trimmed session %s to fit token limit: ~%d tokens",
                session.id,
                estimate_tokens(session.messages),
            )

    estimate_tokens = staticmethod(estimate_tokens)

    # ------------------------------------------------------------------
    # Cache accounting
    # ------------------------------------------------------------------

    def record_usage(self, session_id: str | None, usage: Usage) -> None:
        """Add provider usage to *session_id* (or the current session)."""
        session = self._sessions.get(session_id) if session_id else self.current_session
        if session is None:
            return
        session.cache_stats.total_tokens += usage.prompt_tokens
        if usage.cached_tokens:
            session.cache_stats.cached_tokens += usage.cached_tokens
            logger.info("Cache hit: %d tokens cached", usage.cached_tokens)

    def cache_stats(self, session_id: str | None = None) -> CacheStats:
        session = self._sessions.get(session_id) if session_id else self.current_session
        if session is None:
            return CacheStats()
        return CacheStats(
            total_tokens=session.cache_stats.total_tokens,
            cached_tokens=session.cache_stats.cached_tokens,
        )
