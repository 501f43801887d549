"""Session management: in-memory histories, composed chat, persistent archive."""

from aicore.session.archive import SessionArchive
from aicore.session.conversation import ConversationManager
from aicore.session.store import CacheStats, Session, SessionStore, estimate_tokens

__all__ = [
    "CacheStats",
    "ConversationManager",
    "Session",
    "SessionArchive",
    "SessionStore",
    "estimate_tokens",
]
