"""
Single-task execution.

The executor asks the model for a JSON file bundle describing the task's
implementation, recovers the JSON from whatever prose surrounds it, and
writes each file through the workspace write tool.  Transport and format
failures are retried with backoff; the caller receives a
:class:`TaskOutcome` either way.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Awaitable, Callable

import httpx
import jsonschema

from aicore.errors import ProviderError, StructuredOutputError, WorkspaceError
from aicore.llm.retry import friendly_error_message, with_retry
from aicore.llm.structured import extract_file_paths, parse_json_object
from aicore.llm.types import ChatContext, ChatOptions, ContentEvent, ErrorEvent, Message
from aicore.prompts.system import TASK_SYSTEM_PROMPT, build_task_prompt
from aicore.tasks import Task

if TYPE_CHECKING:
    from aicore.llm.gateway import ChatGateway
    from aicore.llm.router import RoutingPlan
    from aicore.tools.files import FileWriter

logger = logging.getLogger(__name__)

GUIDANCE_LIMIT = 3000
DEFAULT_SUMMARY = "Task completed"
DEFAULT_MAX_TOKENS = 16_384

RETRYABLE_ERRORS = (ProviderError, StructuredOutputError, httpx.HTTPError)

RESULT_SCHEMA = {
    "type": "object",
    "properties": {
        "files": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "path": {"type": "string", "minLength": 1},
                    "content": {"type": "string"},
                    "language": {"type": ["string", "null"]},
                },
                "required": ["path", "content"],
            },
        },
        "summary": {"type": ["string", "null"]},
    },
}


@dataclass
class TaskOutcome:
    task_id: str
    success: bool
    summary: str = ""
    files_written: list[str] = field(default_factory=list)
    mentioned_paths: list[str] = field(default_factory=list)
    error: str | None = None


class TaskExecutor:
    """
    Parameters
    ----------
    gateway:
        Chat gateway used for the generation request.
    writer:
        Workspace write tool; ``None`` runs without materialising files.
    max_retries, base_delay:
        Retry policy for one task.
    sleep:
        Backoff sleep, injected for tests.
    """

    def __init__(
        self,
        gateway: ChatGateway,
        writer: FileWriter | None = None,
        max_retries: int = 3,
        base_delay: float = 1.0,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> None:
        self.gateway = gateway
        self.writer = writer
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.sleep = sleep

    def _options(self, plan: RoutingPlan | None) -> ChatOptions:
        if plan is None:
            return ChatOptions(
                max_tokens=DEFAULT_MAX_TOKENS,
                enable_thinking=True,
                enable_web_search=True,
            )
        return ChatOptions(
            model=plan.model,
            max_tokens=plan.max_tokens or DEFAULT_MAX_TOKENS,
            enable_thinking=plan.enable_thinking,
            enable_web_search=plan.enable_web_search,
        )

    async def _generate(self, messages: list[Message], context: ChatContext, options: ChatOptions) -> dict:
        parts: list[str] = []
        async for event in self.gateway.stream_chat(messages, context, options):
            if isinstance(event, ContentEvent) and event.text:
                parts.append(event.text)
            elif isinstance(event, ErrorEvent):
                raise ProviderError(event.message)

        response = "".join(parts)
        parsed = parse_json_object(response)
        if parsed is None:
            raise StructuredOutputError("JSON parse failed: no object in model response")
        try:
            jsonschema.validate(instance=parsed, schema=RESULT_SCHEMA)
        except jsonschema.ValidationError as e:
            raise StructuredOutputError(f"JSON result has the wrong shape: {e.message}") from e
        return parsed

    async def execute(
        self,
        task: Task,
        context: ChatContext,
        plan: RoutingPlan | None = None,
        guidance: str = "",
        on_retry: Callable[[int, BaseException], None] | None = None,
    ) -> TaskOutcome:
        """Generate and write *task*.  Never raises for transport or format errors."""
        messages = [
            Message(role="system", content=TASK_SYSTEM_PROMPT),
            Message(role="user", content=build_task_prompt(task, guidance[:GUIDANCE_LIMIT])),
        ]
        options = self._options(plan)

        def _on_retry(attempt: int, error: BaseException) -> None:
            logger.warning(
                "Task %s retry %d/%d: %s", task.id, attempt, self.max_retries, error
            )
            if on_retry is not None:
                on_retry(attempt, error)

        try:
            result = await with_retry(
                lambda: self._generate(messages, context, options),
                max_retries=self.max_retries,
                base_delay=self.base_delay,
                on_retry=_on_retry,
                retry_on=RETRYABLE_ERRORS,
                sleep=self.sleep,
            )
        except RETRYABLE_ERRORS as e:
            logger.error("Task %s failed after retries: %s", task.id, e)
            return TaskOutcome(
                task_id=task.id, success=False, error=friendly_error_message(e, final=True)
            )

        written = await self._write_files(result.get("files") or [])
        summary = result.get("summary") or DEFAULT_SUMMARY
        return TaskOutcome(
            task_id=task.id,
            success=True,
            summary=summary,
            files_written=written,
            mentioned_paths=extract_file_paths(summary),
        )

    async def _write_files(self, files: list[dict]) -> list[str]:
        if self.writer is None:
            return []
        written: list[str] = []
        for f in files:
            try:
                result = await self.writer.write_file(f["path"], f["content"])
            except (OSError, WorkspaceError) as e:
                logger.warning("Failed to write file %s: %s", f["path"], e)
                continue
            if result.success:
                written.append(f["path"])
            else:
                logger.warning("Failed to write file %s: %s", f["path"], result.output)
        return written
