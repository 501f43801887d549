"""
Multi-turn chat on top of the session store.

``stream_chat_with_session`` resolves (or creates) a session, records the
user turn, streams the reply with continuation and records the assistant
turn only once the stream has finished.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from typing import TYPE_CHECKING, AsyncIterator, Callable

from aicore.llm.types import (
    ChatContext,
    ChatOptions,
    ContentEvent,
    Message,
    StreamEvent,
)
from aicore.session.store import Session, SessionStore

if TYPE_CHECKING:
    from aicore.llm.gateway import ChatGateway
    from aicore.session.archive import SessionArchive

logger = logging.getLogger(__name__)

SystemPromptFactory = Callable[[ChatContext], str]


class ConversationManager:
    """
    Parameters
    ----------
    store:
        Session store owning the histories.
    gateway:
        Chat gateway used for every turn.
    system_prompt_factory:
        Builds the system prompt of sessions created on demand.
    archive:
        Optional persistent archive; sessions are saved after each reply.
    """

    def __init__(
        self,
        store: SessionStore,
        gateway: ChatGateway,
        system_prompt_factory: SystemPromptFactory,
        archive: SessionArchive | None = None,
    ) -> None:
        self.store = store
        self.gateway = gateway
        self.system_prompt_factory = system_prompt_factory
        self.archive = archive

    def resolve_session(self, context: ChatContext, session_id: str | None = None) -> Session:
        session = self.store.get_session(session_id) if session_id else self.store.current_session
        if session is None:
            session = self.store.create_session(self.system_prompt_factory(context))
            logger.info("Auto-created session for chat: %s", session.id)
        return session

    async def stream_chat_with_session(
        self,
        user_message: str,
        context: ChatContext,
        options: ChatOptions | None = None,
        cancel: asyncio.Event | None = None,
    ) -> AsyncIterator[StreamEvent]:
        options = options or ChatOptions()
        session = self.resolve_session(context, options.session_id)
        if options.session_id != session.id:
            options = replace(options, session_id=session.id)

        self.store.add_message(session.id, Message(role="user", content=user_message))
        messages = self.store.get_session_messages(session.id)
        logger.info("Sending chat with %d messages (session: %s)", len(messages), session.id)

        parts: list[str] = []
        async for event in self.gateway.stream_chat_with_continuation(
            messages, context, options, cancel
        ):
            if isinstance(event, ContentEvent) and event.text:
                parts.append(event.text)
            yield event

        assistant_content = "".join(parts)
        if assistant_content:
            self.store.add_message(
                session.id, Message(role="assistant", content=assistant_content)
            )
            logger.info(
                "Added assistant response to session (%d chars)", len(assistant_content)
            )

        if self.archive is not None:
            stored = self.store.get_session(session.id)
            if stored is not None:
                await self.archive.save_session(stored)
