"""
Orchestrator core -- one instance per front end, owning all conversation state.

For each user message the orchestrator:
1. Runs an explicit subagent command (``/name ...``, ``/resume <id> ...``)
2. Resumes the autopilot when the user nudges it and tasks remain open
3. Otherwise routes the message, optionally gathers a subagent analysis,
   and streams a session-backed chat reply with the routed model

Session pointers, fuse counters and subagent runs live on the instance;
nothing is process-global.
"""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Callable

from aicore.autopilot.executor import TaskExecutor
from aicore.autopilot.fuse import AutopilotFuse, NudgeClassifier
from aicore.autopilot.pool import (
    AutopilotWorkerPool,
    BatchProgress,
    ProgressEvent,
    TaskFinished,
    TaskRetrying,
    TaskRouted,
    TaskStarted,
)
from aicore.config import AICoreConfig
from aicore.errors import ConfigurationError, ProviderError
from aicore.llm.gateway import ChatGateway
from aicore.llm.router import TaskRouter
from aicore.llm.structured import parse_json_object
from aicore.llm.tool_calls import ToolCallAssembler
from aicore.llm.types import (
    ChatContext,
    ChatOptions,
    ContentEvent,
    StreamEvent,
    ThinkingEvent,
    ToolCall,
    ToolCallEvent,
    ToolResultEvent,
)
from aicore.prompts.system import build_system_prompt
from aicore.session.archive import SessionArchive
from aicore.session.conversation import ConversationManager
from aicore.session.store import SessionStore
from aicore.subagents.orchestrator import SubagentOrchestrator, parse_user_command
from aicore.tasks import Task, TaskService
from aicore.tools.files import WriteFileTool
from aicore.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

DELEGATION_CONTEXT_LIMIT = 4000


class Orchestrator:
    """
    Parameters
    ----------
    config : AICoreConfig
        Loaded configuration.
    gateway : ChatGateway
        Provider gateway shared by every component.
    task_service : TaskService
        Optional task-status collaborator; enables autopilot resume.
    write_tool : WriteFileTool
        Optional workspace writer used by the autopilot and exposed as a
        chat tool in agent mode.
    workspace : str
        Project root for subagent profiles.
    archive : SessionArchive
        Optional persistent session archive.
    classifier : NudgeClassifier
        Optional replacement for the fuse's keyword classifier.
    on_progress : callable
        Receives every autopilot progress event.
    """

    def __init__(
        self,
        config: AICoreConfig,
        gateway: ChatGateway,
        task_service: TaskService | None = None,
        write_tool: WriteFileTool | None = None,
        workspace: str | None = None,
        archive: SessionArchive | None = None,
        classifier: NudgeClassifier | None = None,
        on_progress: Callable[[ProgressEvent], None] | None = None,
    ) -> None:
        self.config = config
        self.gateway = gateway
        self.task_service = task_service
        self.write_tool = write_tool
        self.on_progress = on_progress
        self._progress_listeners: list[Callable[[ProgressEvent], None]] = []

        self.sessions = SessionStore(
            max_messages=config.session.max_history_messages,
            max_tokens=config.session.max_history_tokens,
        )
        if gateway.usage_sink is None:
            gateway.usage_sink = self.sessions.record_usage

        self.registry = ToolRegistry()
        if write_tool is not None:
            self.registry.register(write_tool)

        self.conversation = ConversationManager(
            self.sessions,
            gateway,
            lambda ctx: build_system_prompt(ctx, mode="agent"),
            archive=archive,
        )
        self.router = TaskRouter(gateway, config.routing, config.provider)
        self.subagents = SubagentOrchestrator(
            gateway, config.subagents, workspace or config.subagents.workspace or None
        )
        self.fuse = AutopilotFuse(classifier)
        self.executor = TaskExecutor(
            gateway,
            write_tool,
            max_retries=config.autopilot.max_retries,
            base_delay=config.autopilot.retry_base_delay,
        )
        self.pool = None
        if task_service is not None:
            self.pool = AutopilotWorkerPool(
                self.router,
                self.executor,
                task_service,
                subagents=self.subagents,
                config=config.autopilot,
                on_progress=self._dispatch_progress,
            )

    # ------------------------------------------------------------------
    # Message handling
    # ------------------------------------------------------------------

    async def handle(
        self,
        message: str,
        context: ChatContext,
        conversation_key: str = "default",
        mode: str = "vibe",
        is_agent_mode: bool = True,
        cancel: asyncio.Event | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Process one user message and yield the events of the reply."""
        if self.subagents.is_enabled:
            command = parse_user_command(message)
            if command is not None:
                yield ThinkingEvent("Calling subagent...\n")
                result = await self.subagents.run_explicit(command, context, cancel)
                yield ContentEvent(
                    f"## Subagent: {result.profile_name}\n\n"
                    f"- Run ID: `{result.run_id}`\n\n"
                    f"{result.content}"
                )
                return

        open_tasks = self._open_tasks()
        if (
            self.pool is not None
            and self.config.autopilot.execution_mode == "autopilot"
            and open_tasks
            and self.fuse.wants_autopilot(message)
        ):
            session = self.task_service.get_current_session()
            verdict = self.fuse.evaluate(conversation_key, message, session.tasks if session else open_tasks)
            yield ContentEvent(
                "## Autopilot\n\nExecution intent detected; running the remaining tasks.\n\n"
                + (
                    "The fuse tripped: this round is forced onto the strongest model.\n\n"
                    if verdict.force_strong_model
                    else ""
                )
            )
            async for event in self._run_autopilot(open_tasks, context, verdict.force_strong_model):
                yield event
            self.fuse.reset(conversation_key)
            return

        plan = await self.router.route(message, context, mode=mode, is_agent_mode=is_agent_mode)
        logger.info(
            "Route: delegate=%s complexity=%s model=%s thinking=%s search=%s max_tokens=%d reason=%s",
            plan.delegate.value,
            plan.complexity.value,
            plan.model,
            plan.enable_thinking,
            plan.enable_web_search,
            plan.max_tokens,
            plan.reason,
        )

        final_message = message
        if self.subagents.is_enabled and mode == "vibe":
            yield ThinkingEvent(f"Routed to subagent {plan.delegate.value}, analysing...\n")
            try:
                delegated = await self.subagents.run_routed(
                    plan.delegate,
                    message,
                    context,
                    ChatOptions(
                        model=plan.model,
                        max_tokens=plan.max_tokens,
                        enable_thinking=plan.enable_thinking,
                        enable_web_search=plan.enable_web_search,
                    ),
                    cancel,
                )
            except (ProviderError, ConfigurationError) as e:
                logger.warning("Subagent delegation failed, continuing with the main flow: %s", e)
            else:
                final_message = (
                    "## Subagent analysis\n"
                    f"- name: {delegated.profile_name}\n"
                    f"- run: {delegated.run_id}\n\n"
                    f"{delegated.content[:DELEGATION_CONTEXT_LIMIT]}"
                    f"\n\n---\n\nUser question: {message}"
                )

        tools = self.registry.to_openai_schema() if is_agent_mode else None
        options = ChatOptions(
            model=plan.model,
            max_tokens=plan.max_tokens,
            enable_thinking=plan.enable_thinking,
            enable_web_search=plan.enable_web_search,
            tools=tools or None,
        )

        assembler = ToolCallAssembler()
        async for event in self.conversation.stream_chat_with_session(
            final_message, context, options, cancel
        ):
            if isinstance(event, ToolCallEvent):
                assembler.feed(event.tool_call)
            yield event

        for call in assembler.flush():
            yield await self._run_tool(call)

        stats = self.sessions.cache_stats()
        if stats.cached_tokens:
            logger.info(
                "Cache stats: %d/%d tokens cached (%s savings)",
                stats.cached_tokens,
                stats.total_tokens,
                stats.savings,
            )

    async def run_batch(
        self,
        tasks: list[Task],
        context: ChatContext,
        force_strong_model: bool = False,
        max_workers: int | None = None,
        conversation_key: str | None = None,
    ) -> int:
        """Run *tasks* through the worker pool and return the completed count."""
        if self.pool is None:
            raise ConfigurationError("No task service configured for autopilot")
        completed = await self.pool.run_tasks(
            tasks, context, max_workers=max_workers, force_strong_model=force_strong_model
        )
        if conversation_key is not None:
            self.fuse.reset(conversation_key)
        return completed

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _open_tasks(self) -> list[Task]:
        if self.task_service is None:
            return []
        session = self.task_service.get_current_session()
        if session is None:
            return []
        return [t for t in session.tasks if t.is_open]

    def _dispatch_progress(self, event: ProgressEvent) -> None:
        if self.on_progress is not None:
            self.on_progress(event)
        for listener in list(self._progress_listeners):
            listener(event)

    async def _run_autopilot(
        self,
        tasks: list[Task],
        context: ChatContext,
        force_strong_model: bool,
    ) -> AsyncIterator[StreamEvent]:
        queue: asyncio.Queue[ProgressEvent | None] = asyncio.Queue()
        self._progress_listeners.append(queue.put_nowait)
        job = asyncio.ensure_future(
            self.pool.run_tasks(tasks, context, force_strong_model=force_strong_model)
        )
        job.add_done_callback(lambda _: queue.put_nowait(None))
        try:
            while True:
                item = await queue.get()
                if item is None:
                    break
                text = format_progress(item)
                if text:
                    yield ContentEvent(text)
            completed = await job
        finally:
            self._progress_listeners.remove(queue.put_nowait)
            if not job.done():
                job.cancel()
        yield ContentEvent(f"\nAutopilot finished: {completed}/{len(tasks)} tasks completed.\n")

    async def _run_tool(self, call: ToolCall) -> ToolResultEvent:
        arguments = parse_json_object(call.arguments) if call.arguments else {}
        if arguments is None:
            return ToolResultEvent(call.id, f"Invalid arguments for {call.name}", False)
        result = await self.registry.invoke(call.name, arguments)
        return ToolResultEvent(call.id, result.output, result.success)


def format_progress(event: ProgressEvent) -> str | None:
    """Render a progress event as a Markdown line, or ``None`` to skip it."""
    if isinstance(event, TaskStarted):
        return (
            f"### [Worker-{event.worker_id}] Task {event.index + 1}/{event.total}: "
            f"{event.task.title}\n\n"
        )
    if isinstance(event, TaskRouted):
        return (
            f"> complexity: **{event.plan.complexity.value}** | model: `{event.plan.model}` "
            f"| subagent: `{event.plan.delegate.value}`\n\n"
        )
    if isinstance(event, TaskRetrying):
        return f"> {event.message} (retry {event.attempt})\n\n"
    if isinstance(event, TaskFinished):
        if not event.success:
            return f"Task not completed: {event.error or 'unknown error'}\n\n"
        lines = [f"Done: {event.summary}\n"]
        if event.files_written:
            lines.append("Files created:")
            lines.extend(f"- `{path}`" for path in event.files_written)
        return "\n".join(lines) + "\n\n"
    if isinstance(event, BatchProgress):
        return (
            f"Progress: {event.finished}/{event.total} finished, "
            f"{event.completed} completed\n\n"
        )
    return None
