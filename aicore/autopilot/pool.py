"""
Autopilot worker pool.

A fixed number of asyncio workers share one cursor over the task list.
Each worker claims the next index, routes the task, optionally asks the
routed subagent for execution guidance, and hands the task to the
:class:`~aicore.autopilot.executor.TaskExecutor`.  Every claimed task ends
``completed`` or ``failed``; one task's failure never stops the batch.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Union

from aicore.config import AutopilotConfig
from aicore.errors import ConfigurationError, ProviderError
from aicore.llm.retry import friendly_error_message
from aicore.llm.types import ChatContext, ChatOptions
from aicore.tasks import Task, TaskService

if TYPE_CHECKING:
    from aicore.autopilot.executor import TaskExecutor, TaskOutcome
    from aicore.llm.router import RoutingPlan, TaskRouter
    from aicore.subagents.orchestrator import SubagentOrchestrator

logger = logging.getLogger(__name__)

PROVIDER_CONCURRENCY_LIMIT = 3

GUIDANCE_REQUEST = (
    "Produce high-quality execution guidance for the following task, focused on "
    "actionable steps and risks:\n\n{task}"
)


# ---------------------------------------------------------------------------
# Progress events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TaskStarted:
    worker_id: int
    index: int
    total: int
    task: Task


@dataclass(frozen=True)
class TaskRouted:
    task: Task
    plan: RoutingPlan


@dataclass(frozen=True)
class TaskRetrying:
    task: Task
    attempt: int
    message: str


@dataclass(frozen=True)
class TaskFinished:
    task: Task
    success: bool
    summary: str
    files_written: tuple[str, ...] = ()
    error: str | None = None


@dataclass(frozen=True)
class BatchProgress:
    finished: int
    completed: int
    total: int


ProgressEvent = Union[TaskStarted, TaskRouted, TaskRetrying, TaskFinished, BatchProgress]
ProgressCallback = Callable[[ProgressEvent], None]


class AutopilotWorkerPool:
    """
    Parameters
    ----------
    router:
        Produces the per-task routing plan (always forced on).
    executor:
        Runs one task to a :class:`TaskOutcome`.
    task_service:
        Receives the start/complete/fail transitions.
    subagents:
        Optional; when enabled, the routed subagent supplies guidance.
    config:
        Worker count and parallelism switch.
    on_progress:
        Receives every :data:`ProgressEvent`.
    """

    def __init__(
        self,
        router: TaskRouter,
        executor: TaskExecutor,
        task_service: TaskService,
        subagents: SubagentOrchestrator | None = None,
        config: AutopilotConfig | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        self.router = router
        self.executor = executor
        self.task_service = task_service
        self.subagents = subagents
        self.config = config or AutopilotConfig()
        self.on_progress = on_progress

    def _emit(self, event: ProgressEvent) -> None:
        if self.on_progress is not None:
            self.on_progress(event)

    def worker_count(self, max_workers: int | None = None) -> int:
        configured = max_workers if max_workers is not None else self.config.max_parallel_workers
        requested = configured if self.config.parallel_enabled else 1
        if requested > PROVIDER_CONCURRENCY_LIMIT:
            logger.warning(
                "Parallel workers reduced from %d to %d by the provider concurrency limit",
                requested,
                PROVIDER_CONCURRENCY_LIMIT,
            )
        return max(1, min(PROVIDER_CONCURRENCY_LIMIT, requested))

    async def run_tasks(
        self,
        tasks: list[Task],
        context: ChatContext,
        max_workers: int | None = None,
        force_strong_model: bool = False,
    ) -> int:
        """Run every task once; return how many completed."""
        total = len(tasks)
        workers = self.worker_count(max_workers)
        cursor = itertools.count()
        completed = 0
        finished = 0

        logger.info(
            "Autopilot: %d tasks, %d worker(s)%s",
            total,
            workers,
            ", forcing strongest model" if force_strong_model else "",
        )

        async def worker(worker_id: int) -> None:
            nonlocal completed, finished
            while True:
                index = next(cursor)
                if index >= total:
                    return
                task = tasks[index]
                self.task_service.start_task(task.id)
                self._emit(TaskStarted(worker_id, index, total, task))

                try:
                    outcome = await self._run_one(task, context, force_strong_model)
                except Exception as e:
                    logger.exception("Task %s crashed", task.id)
                    if isinstance(e, ConfigurationError):
                        reason = str(e)
                    else:
                        reason = friendly_error_message(e, final=True)
                    self.task_service.fail_task(task.id, reason)
                    self._emit(TaskFinished(task, False, "", error=reason))
                else:
                    if outcome.success:
                        completed += 1
                        self.task_service.complete_task(task.id, outcome.summary)
                    else:
                        self.task_service.fail_task(task.id, outcome.error or "Task execution failed")
                    self._emit(
                        TaskFinished(
                            task,
                            outcome.success,
                            outcome.summary,
                            tuple(outcome.files_written),
                            outcome.error,
                        )
                    )
                finally:
                    finished += 1
                    self._emit(BatchProgress(finished, completed, total))

        await asyncio.gather(*(worker(i + 1) for i in range(workers)))
        logger.info("Autopilot finished: %d/%d completed", completed, total)
        return completed

    async def _run_one(self, task: Task, context: ChatContext, force_strong_model: bool) -> TaskOutcome:
        route_input = f"{task.title}\n{task.description}"
        plan = await self.router.route(route_input, context, mode="spec", is_agent_mode=True, force=True)
        if force_strong_model:
            plan = self.router.strongest_plan(plan)
        self._emit(TaskRouted(task, plan))

        guidance = ""
        if self.subagents is not None and self.subagents.is_enabled:
            try:
                delegated = await self.subagents.run_routed(
                    plan.delegate,
                    GUIDANCE_REQUEST.format(task=route_input),
                    context,
                    ChatOptions(
                        model=plan.model,
                        max_tokens=plan.max_tokens,
                        enable_thinking=plan.enable_thinking,
                        enable_web_search=plan.enable_web_search,
                    ),
                )
            except (ProviderError, ConfigurationError) as e:
                logger.warning("Subagent guidance for %s unavailable: %s", task.id, e)
            else:
                guidance = delegated.content
                logger.info("Subagent %s analysed task %s", delegated.profile_name, task.id)

        def on_retry(attempt: int, error: BaseException) -> None:
            self._emit(TaskRetrying(task, attempt, friendly_error_message(error)))

        return await self.executor.execute(task, context, plan, guidance, on_retry=on_retry)
