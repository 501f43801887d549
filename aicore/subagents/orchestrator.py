"""
Subagent orchestrator.

Runs named, independently prompted sub-conversations ("runs").  Each run
keeps its own history, separate from the main chat session, so a later
``/resume <run id>`` continues where it stopped.

Commands recognised in user text::

    /<profile-name> task text
    /resume <run id> task text
    resume agent <run id> task text
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Union

from aicore.config import SubagentsConfig
from aicore.errors import ProviderError, UnknownRunError, UnknownSubagentError
from aicore.llm.router import Delegate
from aicore.llm.types import ChatContext, ChatOptions, ContentEvent, ErrorEvent, Message
from aicore.prompts.system import build_subagent_prompt
from aicore.subagents.profiles import ProfileLibrary, SubagentProfile

if TYPE_CHECKING:
    from pathlib import Path

    from aicore.llm.gateway import ChatGateway

logger = logging.getLogger(__name__)

DEFAULT_INVOKE_TASK = "Carry out this subagent's default responsibility and return a structured result."
DEFAULT_RESUME_TASK = "Continue the previous task and report the current conclusion and next steps."
EMPTY_RESULT = "(The subagent ran but returned no visible text.)"

DEFAULT_MAX_TOKENS = 16_384

DELEGATE_PROFILES = {
    Delegate.QUICK_RESPONDER: "quick-responder",
    Delegate.IMPLEMENTATION_AGENT: "implementation-agent",
    Delegate.PLANNING_AGENT: "planning-agent",
}


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class InvokeCommand:
    name: str
    task: str = ""


@dataclass(frozen=True)
class ResumeCommand:
    run_id: str
    task: str = ""


SubagentCommand = Union[InvokeCommand, ResumeCommand]

_SLASH_RESUME_RE = re.compile(r"^/resume\s+([A-Za-z0-9_-]+)\s*(.*)$", re.IGNORECASE | re.DOTALL)
_TEXT_RESUME_RE = re.compile(r"^resume agent\s+([A-Za-z0-9_-]+)\s*(.*)$", re.IGNORECASE | re.DOTALL)
_SLASH_INVOKE_RE = re.compile(r"^/([A-Za-z0-9-]+)\s*(.*)$", re.DOTALL)


def parse_user_command(text: str) -> SubagentCommand | None:
    message = text.strip()
    if not message:
        return None

    for pattern in (_SLASH_RESUME_RE, _TEXT_RESUME_RE):
        m = pattern.match(message)
        if m:
            return ResumeCommand(run_id=m.group(1), task=m.group(2).strip())

    m = _SLASH_INVOKE_RE.match(message)
    if m:
        return InvokeCommand(name=m.group(1).lower(), task=m.group(2).strip())
    return None


# ---------------------------------------------------------------------------
# Runs
# ---------------------------------------------------------------------------


@dataclass
class SubagentRun:
    run_id: str
    profile_name: str
    messages: list[Message] = field(default_factory=list)
    last_used_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class SubagentRunResult:
    run_id: str
    profile_name: str
    content: str


def new_run_id() -> str:
    return f"sa_{int(time.time() * 1000)}_{uuid.uuid4().hex[:6]}"


class SubagentOrchestrator:
    """
    Parameters
    ----------
    gateway:
        Chat gateway used to stream each run.
    config:
        Subagent switches.
    workspace:
        Project root holding the profile directory.  Falls back to
        ``config.workspace``.
    """

    def __init__(
        self,
        gateway: ChatGateway,
        config: SubagentsConfig | None = None,
        workspace: str | Path | None = None,
    ) -> None:
        self.gateway = gateway
        self.config = config or SubagentsConfig()
        self.library = ProfileLibrary(workspace or self.config.workspace or None)
        self._runs: dict[str, SubagentRun] = {}

    @property
    def is_enabled(self) -> bool:
        return self.config.enabled

    def list_runs(self) -> list[SubagentRun]:
        return sorted(self._runs.values(), key=lambda r: r.last_used_at, reverse=True)

    def get_run(self, run_id: str) -> SubagentRun | None:
        return self._runs.get(run_id)

    def ensure_defaults(self) -> list[SubagentProfile]:
        return self.library.ensure_defaults()

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def run_explicit(
        self,
        command: SubagentCommand,
        context: ChatContext,
        cancel: asyncio.Event | None = None,
    ) -> SubagentRunResult:
        """Execute a parsed ``/name`` or ``/resume`` command."""
        self.library.ensure_defaults()

        if isinstance(command, ResumeCommand):
            run = self._runs.get(command.run_id)
            if run is None:
                raise UnknownRunError(command.run_id)
            return await self._execute(
                run.profile_name,
                command.task or DEFAULT_RESUME_TASK,
                context,
                run=run,
                cancel=cancel,
            )

        return await self._execute(
            command.name,
            command.task or DEFAULT_INVOKE_TASK,
            context,
            cancel=cancel,
        )

    async def run_routed(
        self,
        delegate: Delegate | str,
        task: str,
        context: ChatContext,
        options: ChatOptions | None = None,
        cancel: asyncio.Event | None = None,
    ) -> SubagentRunResult:
        """Execute the profile mapped to a router delegate in a fresh run."""
        self.library.ensure_defaults()
        try:
            name = DELEGATE_PROFILES[Delegate(delegate)]
        except ValueError:
            name = DELEGATE_PROFILES[Delegate.QUICK_RESPONDER]
        return await self._execute(
            name, task or DEFAULT_INVOKE_TASK, context, options=options, cancel=cancel
        )

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _options_for(self, profile: SubagentProfile, options: ChatOptions | None) -> ChatOptions:
        options = options or ChatOptions()
        model = options.model or (None if profile.inherits_model else profile.model)
        return ChatOptions(
            model=model,
            temperature=options.temperature,
            max_tokens=options.max_tokens or DEFAULT_MAX_TOKENS,
            tools=options.tools,
            enable_thinking=True if options.enable_thinking is None else options.enable_thinking,
            enable_web_search=True if options.enable_web_search is None else options.enable_web_search,
            search_engine=options.search_engine,
        )

    async def _execute(
        self,
        profile_name: str,
        task: str,
        context: ChatContext,
        run: SubagentRun | None = None,
        options: ChatOptions | None = None,
        cancel: asyncio.Event | None = None,
    ) -> SubagentRunResult:
        profile = self.library.get(profile_name)
        if profile is None:
            raise UnknownSubagentError(profile_name)

        if run is None:
            run = SubagentRun(
                run_id=new_run_id(),
                profile_name=profile.name,
                messages=[Message(role="system", content=build_subagent_prompt(profile))],
            )

        messages = [m.copy() for m in run.messages]
        messages.append(Message(role="user", content=task))
        logger.info(
            "Running subagent %s (run %s, %d messages)", profile.name, run.run_id, len(messages)
        )

        parts: list[str] = []
        error: str | None = None
        async for event in self.gateway.stream_chat_with_continuation(
            messages, context, self._options_for(profile, options), cancel
        ):
            if isinstance(event, ContentEvent) and event.text:
                parts.append(event.text)
            elif isinstance(event, ErrorEvent):
                logger.warning("Subagent %s stream error: %s", profile.name, event.message)
                error = event.message

        content = "".join(parts)
        if error is not None and not content:
            raise ProviderError(error)
        messages.append(Message(role="assistant", content=content))
        run.messages = messages
        run.last_used_at = datetime.now(timezone.utc)
        self._runs[run.run_id] = run

        return SubagentRunResult(
            run_id=run.run_id,
            profile_name=profile.name,
            content=content or EMPTY_RESULT,
        )
