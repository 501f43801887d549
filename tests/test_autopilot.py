"""Tests for the autopilot: stagnation fuse, task executor and worker pool."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from aicore.autopilot import (
    AutopilotFuse,
    AutopilotWorkerPool,
    BatchProgress,
    KeywordNudgeClassifier,
    TaskExecutor,
    TaskFinished,
    TaskOutcome,
    TaskRetrying,
    TaskRouted,
    TaskStarted,
)
from aicore.autopilot.executor import DEFAULT_SUMMARY, GUIDANCE_LIMIT
from aicore.config import AutopilotConfig, ProviderConfig, RoutingConfig, SubagentsConfig
from aicore.llm.router import Complexity, TaskRouter
from aicore.llm.types import ChatContext, ContentEvent, DoneEvent, ErrorEvent
from aicore.subagents.orchestrator import SubagentOrchestrator
from aicore.tasks import InMemoryTaskBoard, Task, TaskStatus
from aicore.tools.files import WriteFileTool
from tests.mock_providers import FakeGateway, routing_verdict


def _bundle(files: dict[str, str], summary: str | None = "Done") -> list:
    payload = {
        "files": [{"path": p, "content": c, "language": "python"} for p, c in files.items()],
        "summary": summary,
    }
    return [ContentEvent(f"Here you go:\n```json\n{json.dumps(payload)}\n```"), DoneEvent()]


class _Sleeps:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


# ===================================================================
# Fuse
# ===================================================================


def _tasks(pending: int, completed: int = 0) -> list[Task]:
    out = [Task(id=f"p{i}", title="p") for i in range(pending)]
    out += [Task(id=f"c{i}", title="c", status=TaskStatus.COMPLETED) for i in range(completed)]
    return out


class TestAutopilotFuse:
    def test_two_nudges_without_progress_trigger(self):
        fuse = AutopilotFuse()
        first = fuse.evaluate("conv", "continue", _tasks(3))
        second = fuse.evaluate("conv", "keep going", _tasks(3))

        assert first.nudge_count == 1
        assert not first.force_strong_model
        assert second.nudge_count == 2
        assert second.triggered and second.force_strong_model

    def test_progress_resets_count(self):
        fuse = AutopilotFuse()
        fuse.evaluate("conv", "continue", _tasks(3))
        verdict = fuse.evaluate("conv", "continue", _tasks(2, completed=1))

        assert verdict.nudge_count == 1
        assert not verdict.triggered

    def test_stuck_message_forces(self):
        verdict = AutopilotFuse().evaluate("conv", "you are going in circles", _tasks(1))
        assert verdict.force_strong_model
        assert not verdict.triggered

    def test_takeover_message_forces(self):
        verdict = AutopilotFuse().evaluate("conv", "npm build failed", _tasks(1))
        assert verdict.force_strong_model

    def test_chinese_phrases(self):
        fuse = AutopilotFuse()
        fuse.evaluate("conv", "继续", _tasks(2))
        assert fuse.evaluate("conv", "继续执行", _tasks(2)).triggered

    def test_keys_are_independent(self):
        fuse = AutopilotFuse()
        fuse.evaluate("a", "continue", _tasks(2))
        assert fuse.evaluate("b", "continue", _tasks(2)).nudge_count == 1
        assert fuse.nudge_count("a") == 1

    def test_reset(self):
        fuse = AutopilotFuse()
        fuse.evaluate("conv", "continue", _tasks(2))
        fuse.reset("conv")
        assert fuse.nudge_count("conv") == 0
        assert fuse.nudge_count("never-seen") == 0

    def test_wants_autopilot(self):
        fuse = AutopilotFuse()
        assert fuse.wants_autopilot("Proceed please")
        assert fuse.wants_autopilot("fix it")
        assert not fuse.wants_autopilot("what does this function do?")

    def test_custom_classifier(self):
        classifier = KeywordNudgeClassifier(nudge=["weiter"], takeover=[], stuck=[])
        fuse = AutopilotFuse(classifier, threshold=1)
        assert not fuse.evaluate("conv", "continue", _tasks(1)).force_strong_model
        assert fuse.evaluate("conv", "weiter", _tasks(1)).triggered


# ===================================================================
# Executor
# ===================================================================


@pytest.fixture
def task() -> Task:
    return Task(id="t1", title="Hello script", description="Print a greeting")


class TestTaskExecutor:
    async def test_writes_bundle(self, tmp_path: Path, task):
        gateway = FakeGateway(
            streams=[_bundle({"src/hello.py": "print('hi')\n"}, "Created `src/hello.py`")]
        )
        executor = TaskExecutor(gateway, WriteFileTool(tmp_path), sleep=_Sleeps())

        outcome = await executor.execute(task, ChatContext())

        assert outcome == TaskOutcome(
            task_id="t1",
            success=True,
            summary="Created `src/hello.py`",
            files_written=["src/hello.py"],
            mentioned_paths=["src/hello.py"],
        )
        assert (tmp_path / "src" / "hello.py").read_text(encoding="utf-8") == "print('hi')\n"

        sent, _, options = gateway.stream_calls[0]
        assert [m.role for m in sent] == ["system", "user"]
        assert "**Title**: Hello script" in sent[1].content
        assert options.max_tokens == 16_384
        assert options.enable_thinking and options.enable_web_search

    async def test_plan_drives_options(self, task):
        gateway = FakeGateway(streams=[_bundle({})])
        router = TaskRouter(gateway, RoutingConfig(), ProviderConfig())
        plan = router.fallback_plan("hi")

        await TaskExecutor(gateway).execute(task, ChatContext(), plan)

        options = gateway.stream_calls[0][2]
        assert options.model == plan.model
        assert options.max_tokens == plan.max_tokens
        assert options.enable_thinking is False

    async def test_default_summary(self, task):
        gateway = FakeGateway(streams=[_bundle({}, summary=None)])
        outcome = await TaskExecutor(gateway).execute(task, ChatContext())
        assert outcome.success
        assert outcome.summary == DEFAULT_SUMMARY
        assert outcome.files_written == []

    async def test_guidance_included_and_bounded(self, task):
        gateway = FakeGateway(streams=[_bundle({})])
        await TaskExecutor(gateway).execute(task, ChatContext(), guidance="g" * (GUIDANCE_LIMIT + 500))

        prompt = gateway.stream_calls[0][0][1].content
        assert "## Subagent guidance" in prompt
        assert "g" * GUIDANCE_LIMIT in prompt
        assert "g" * (GUIDANCE_LIMIT + 1) not in prompt

    async def test_retries_then_succeeds(self, tmp_path: Path, task):
        gateway = FakeGateway(
            streams=[
                [ContentEvent("Sorry, no JSON here."), DoneEvent()],
                [ErrorEvent("API Error: 500 - overloaded")],
                _bundle({"a.py": "x = 1\n"}),
            ]
        )
        sleeps = _Sleeps()
        retries = []
        executor = TaskExecutor(gateway, WriteFileTool(tmp_path), sleep=sleeps)

        outcome = await executor.execute(
            task, ChatContext(), on_retry=lambda attempt, err: retries.append(attempt)
        )

        assert outcome.success
        assert outcome.files_written == ["a.py"]
        assert sleeps.delays == [1.0, 2.0]
        assert retries == [1, 2]
        assert len(gateway.stream_calls) == 3

    async def test_gives_up_after_retries(self, task):
        gateway = FakeGateway(default_stream=[ContentEvent("still not json"), DoneEvent()])
        sleeps = _Sleeps()
        executor = TaskExecutor(gateway, max_retries=3, base_delay=0.5, sleep=sleeps)

        outcome = await executor.execute(task, ChatContext())

        assert not outcome.success
        assert outcome.error == "The response format was unexpected"
        assert sleeps.delays == [0.5, 1.0, 2.0]
        assert len(gateway.stream_calls) == 4

    async def test_wrong_shape_is_retried(self, task):
        gateway = FakeGateway(
            streams=[
                [ContentEvent('{"files": "not-a-list"}'), DoneEvent()],
                _bundle({}),
            ]
        )
        outcome = await TaskExecutor(gateway, sleep=_Sleeps()).execute(task, ChatContext())
        assert outcome.success
        assert len(gateway.stream_calls) == 2

    async def test_refused_write_is_skipped(self, tmp_path: Path, task):
        gateway = FakeGateway(streams=[_bundle({"../escape.py": "x", "ok.py": "y"})])
        executor = TaskExecutor(gateway, WriteFileTool(tmp_path / "ws"))

        outcome = await executor.execute(task, ChatContext())

        assert outcome.success
        assert outcome.files_written == ["ok.py"]
        assert not (tmp_path / "escape.py").exists()


# ===================================================================
# Worker pool
# ===================================================================


def _task_factory(fail_titles: tuple[str, ...] = ()):
    """Stream script keyed on the task title found in the prompt."""

    def factory(messages, options):
        prompt = messages[-1].content
        system = messages[0].content
        if "Subagent name:" in system:
            return [ContentEvent("Step 1: write it."), DoneEvent()]
        title = prompt.split("**Title**: ", 1)[1].split("\n", 1)[0]
        if title in fail_titles:
            return [ContentEvent("no json"), DoneEvent()]
        return _bundle({f"{title}.txt": title}, f"Built {title}")

    return factory


def _pool(
    gateway,
    board,
    tmp_path: Path,
    config: AutopilotConfig | None = None,
    subagents: SubagentOrchestrator | None = None,
    events: list | None = None,
) -> AutopilotWorkerPool:
    router = TaskRouter(gateway, RoutingConfig(), ProviderConfig())
    executor = TaskExecutor(gateway, WriteFileTool(tmp_path), max_retries=1, sleep=_Sleeps())
    return AutopilotWorkerPool(
        router,
        executor,
        board,
        subagents=subagents,
        config=config,
        on_progress=events.append if events is not None else None,
    )


class TestWorkerPool:
    def test_worker_count_capped(self, tmp_path):
        gateway = FakeGateway()
        board = InMemoryTaskBoard()
        assert _pool(gateway, board, tmp_path, AutopilotConfig(max_parallel_workers=8)).worker_count() == 3
        assert _pool(gateway, board, tmp_path, AutopilotConfig(max_parallel_workers=2)).worker_count() == 2
        assert _pool(gateway, board, tmp_path).worker_count(max_workers=0) == 1
        serial = AutopilotConfig(parallel_enabled=False, max_parallel_workers=3)
        assert _pool(gateway, board, tmp_path, serial).worker_count() == 1

    async def test_every_task_finishes(self, tmp_path):
        tasks = [Task(id=f"t{i}", title=f"task{i}") for i in range(5)]
        board = InMemoryTaskBoard(tasks)
        gateway = FakeGateway(
            stream_factory=_task_factory(fail_titles=("task3",)),
            default_completion=routing_verdict("medium", "implementation_agent"),
        )
        events: list = []

        completed = await _pool(gateway, board, tmp_path, events=events).run_tasks(tasks, ChatContext())

        assert completed == 4
        statuses = {t.id: t.status for t in board.session.tasks}
        assert statuses == {
            "t0": TaskStatus.COMPLETED,
            "t1": TaskStatus.COMPLETED,
            "t2": TaskStatus.COMPLETED,
            "t3": TaskStatus.FAILED,
            "t4": TaskStatus.COMPLETED,
        }
        assert board.session.tasks[0].result == "Built task0"
        assert board.session.tasks[3].result == "The response format was unexpected"
        for i in (0, 1, 2, 4):
            assert (tmp_path / f"task{i}.txt").is_file()

        started = [e.task.id for e in events if isinstance(e, TaskStarted)]
        assert sorted(started) == [t.id for t in tasks]
        assert {e.worker_id for e in events if isinstance(e, TaskStarted)} <= {1, 2, 3}
        assert sum(isinstance(e, TaskFinished) for e in events) == 5
        assert any(isinstance(e, TaskRetrying) and e.task.id == "t3" for e in events)
        last = [e for e in events if isinstance(e, BatchProgress)][-1]
        assert last == BatchProgress(finished=5, completed=4, total=5)

    async def test_routing_is_forced(self, tmp_path):
        tasks = [Task(id="t0", title="task0")]
        routing_off = RoutingConfig(auto_routing=False)
        gateway = FakeGateway(
            stream_factory=_task_factory(),
            default_completion=routing_verdict("hard", "planning_agent"),
        )
        events: list = []
        pool = AutopilotWorkerPool(
            TaskRouter(gateway, routing_off, ProviderConfig()),
            TaskExecutor(gateway, WriteFileTool(tmp_path)),
            InMemoryTaskBoard(tasks),
            on_progress=events.append,
        )

        await pool.run_tasks(tasks, ChatContext())

        routed = [e for e in events if isinstance(e, TaskRouted)][0]
        assert routed.plan.complexity is Complexity.HARD
        assert gateway.complete_calls

    async def test_force_strong_model(self, tmp_path):
        tasks = [Task(id="t0", title="task0")]
        gateway = FakeGateway(
            stream_factory=_task_factory(),
            default_completion=routing_verdict("simple", "quick_responder"),
        )
        events: list = []

        await _pool(gateway, InMemoryTaskBoard(tasks), tmp_path, events=events).run_tasks(
            tasks, ChatContext(), force_strong_model=True
        )

        routed = [e for e in events if isinstance(e, TaskRouted)][0]
        assert routed.plan.model == RoutingConfig().model_hard
        assert gateway.stream_calls[0][2].model == RoutingConfig().model_hard

    async def test_subagent_guidance(self, tmp_path):
        tasks = [Task(id="t0", title="task0")]
        gateway = FakeGateway(
            stream_factory=_task_factory(),
            default_completion=routing_verdict("medium", "implementation_agent"),
        )
        subagents = SubagentOrchestrator(gateway, SubagentsConfig(), tmp_path)

        await _pool(gateway, InMemoryTaskBoard(tasks), tmp_path, subagents=subagents).run_tasks(
            tasks, ChatContext()
        )

        assert len(gateway.stream_calls) == 2
        assert "Subagent name: implementation-agent" in gateway.stream_calls[0][0][0].content
        task_prompt = gateway.stream_calls[1][0][1].content
        assert "Step 1: write it." in task_prompt

    async def test_subagent_failure_is_not_fatal(self, tmp_path):
        tasks = [Task(id="t0", title="task0")]

        def factory(messages, options):
            if "Subagent name:" in messages[0].content:
                return [ErrorEvent("API Error: 503 - busy")]
            return _bundle({"x.txt": "x"})

        gateway = FakeGateway(stream_factory=factory, default_completion=routing_verdict())
        board = InMemoryTaskBoard(tasks)
        subagents = SubagentOrchestrator(gateway, SubagentsConfig(), tmp_path)

        completed = await _pool(gateway, board, tmp_path, subagents=subagents).run_tasks(tasks, ChatContext())

        assert completed == 1
        assert "## Subagent guidance" not in gateway.stream_calls[1][0][1].content

    async def test_missing_workspace_skips_guidance(self, tmp_path):
        tasks = [Task(id="t0", title="task0")]
        gateway = FakeGateway(stream_factory=_task_factory(), default_completion=routing_verdict())
        subagents = SubagentOrchestrator(gateway, SubagentsConfig(), None)

        completed = await _pool(gateway, InMemoryTaskBoard(tasks), tmp_path, subagents=subagents).run_tasks(
            tasks, ChatContext()
        )

        assert completed == 1
        assert len(gateway.stream_calls) == 1

    async def test_executor_crash_marks_failed(self, tmp_path):
        class Exploding:
            async def execute(self, *args, **kwargs):
                raise RuntimeError("boom")

        tasks = [Task(id="t0", title="task0"), Task(id="t1", title="task1")]
        board = InMemoryTaskBoard(tasks)
        gateway = FakeGateway(default_completion=routing_verdict())
        pool = AutopilotWorkerPool(
            TaskRouter(gateway, RoutingConfig(), ProviderConfig()), Exploding(), board
        )

        completed = await pool.run_tasks(tasks, ChatContext())

        assert completed == 0
        assert all(t.status is TaskStatus.FAILED for t in board.session.tasks)
        assert all(t.result == "The task ran into a problem" for t in board.session.tasks)

    async def test_empty_batch(self, tmp_path):
        pool = _pool(FakeGateway(), InMemoryTaskBoard(), tmp_path)
        assert await pool.run_tasks([], ChatContext()) == 0
