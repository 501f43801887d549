"""Tests for the typer CLI, with the provider gateway replaced by a fake."""

from __future__ import annotations

import asyncio
import io
import json
import os
from pathlib import Path

import pytest
import yaml
from rich.console import Console
from typer.testing import CliRunner

import aicore.cli.app as cli_module
from aicore.cli.app import __version__, app
from aicore.llm.types import ContentEvent, DoneEvent, ErrorEvent, Message, ThinkingEvent
from aicore.session.archive import SessionArchive
from aicore.session.store import SessionStore
from tests.mock_providers import FakeGateway, routing_verdict

runner = CliRunner()


@pytest.fixture(autouse=True)
def cli_env(tmp_path, monkeypatch) -> Path:
    for name in list(os.environ):
        if name.startswith("AICORE_"):
            monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    monkeypatch.setenv("COLUMNS", "200")
    db = tmp_path / "archive" / "sessions.db"
    monkeypatch.setenv("AICORE_SESSION_ARCHIVE_DB", str(db))
    return db


def _use_gateway(monkeypatch, gateway: FakeGateway) -> FakeGateway:
    monkeypatch.setattr(cli_module, "_build_gateway", lambda cfg: gateway)
    return gateway


def _seed_session(db: Path) -> str:
    async def _run() -> str:
        store = SessionStore()
        session = store.create_session("system")
        store.add_message(session.id, Message(role="user", content="How do I sort a dict?"))
        store.add_message(session.id, Message(role="assistant", content="Use sorted()."))
        async with SessionArchive(db) as archive:
            await archive.save_session(session)
        return session.id

    return asyncio.run(_run())


class TestBasics:
    def test_version(self):
        result = runner.invoke(app, ["version"])
        assert result.exit_code == 0
        assert f"aicore v{__version__}" in result.output

    def test_chat_rejects_unknown_mode(self):
        result = runner.invoke(app, ["chat", "--mode", "turbo"])
        assert result.exit_code == 1
        assert "Unknown mode" in result.output

    def test_ping(self, monkeypatch):
        _use_gateway(monkeypatch, FakeGateway())
        result = runner.invoke(app, ["ping"])
        assert result.exit_code == 0
        assert "Connected" in result.output

    def test_route(self, monkeypatch):
        gateway = _use_gateway(
            monkeypatch, FakeGateway(completions=[routing_verdict("hard", "planning_agent", 0.8, "big job")])
        )
        result = runner.invoke(app, ["route", "Design a distributed cache"])

        assert result.exit_code == 0
        assert "Routing plan" in result.output
        assert "hard" in result.output
        assert "planning_agent" in result.output
        assert "big job" in result.output
        assert gateway.closed


class TestConfigCommands:
    def test_show_uses_config_file(self, tmp_path):
        path = tmp_path / "custom.yaml"
        path.write_text(yaml.safe_dump({"provider": {"model": "file-model"}}), encoding="utf-8")

        result = runner.invoke(app, ["--config", str(path), "config", "show"])

        assert result.exit_code == 0
        assert "file-model" in result.output

    def test_validate_ok(self):
        result = runner.invoke(app, ["config", "validate"])
        assert result.exit_code == 0
        assert "Config is valid." in result.output
        assert "No config file found" in result.output

    def test_validate_rejects_bad_values(self, tmp_path):
        path = tmp_path / "aicore.yaml"
        path.write_text(
            yaml.safe_dump({"autopilot": {"execution_mode": "yolo", "max_parallel_workers": 0}}),
            encoding="utf-8",
        )

        result = runner.invoke(app, ["config", "validate"])

        assert result.exit_code == 1
        assert "execution_mode" in result.output
        assert "max_parallel_workers" in result.output


class TestAgentCommands:
    def test_list_bootstraps_defaults(self, tmp_path):
        result = runner.invoke(app, ["agents", "list", "--workspace", str(tmp_path / "proj")])

        assert result.exit_code == 0
        for name in ("quick-responder", "implementation-agent", "planning-agent"):
            assert name in result.output
        assert (tmp_path / "proj" / ".agents" / "agents" / "quick-responder.md").is_file()

    def test_init(self, tmp_path):
        result = runner.invoke(app, ["agents", "init", "--workspace", str(tmp_path)])
        assert result.exit_code == 0
        assert "3 subagent profile(s)" in result.output


class TestSessionCommands:
    def test_list_empty(self):
        result = runner.invoke(app, ["sessions", "list"])
        assert result.exit_code == 0
        assert "No sessions found." in result.output

    def test_list_show_export_delete(self, cli_env):
        session_id = _seed_session(cli_env)

        listed = runner.invoke(app, ["sessions", "list"])
        assert listed.exit_code == 0
        assert session_id in listed.output

        shown = runner.invoke(app, ["sessions", "show", session_id])
        assert shown.exit_code == 0
        assert "How do I sort a dict?" in shown.output

        exported = runner.invoke(app, ["sessions", "export", session_id])
        assert exported.exit_code == 0
        assert f"# Session {session_id}" in exported.output
        assert "## User" in exported.output

        as_json = runner.invoke(app, ["sessions", "export", session_id, "--format", "json"])
        assert as_json.exit_code == 0
        assert '"role": "assistant"' in as_json.output

        deleted = runner.invoke(app, ["sessions", "delete", session_id])
        assert deleted.exit_code == 0
        assert "Deleted session" in deleted.output

        again = runner.invoke(app, ["sessions", "delete", session_id])
        assert again.exit_code == 1

    def test_show_missing(self):
        result = runner.invoke(app, ["sessions", "show", "session-missing"])
        assert result.exit_code == 1
        assert "Session not found" in result.output


def _task_stream(messages, options):
    if "Subagent name:" in (messages[0].content or ""):
        return [ContentEvent("guidance"), DoneEvent()]
    prompt = messages[-1].content
    title = prompt.split("**Title**: ", 1)[1].split("\n", 1)[0]
    if title == "impossible":
        return [ContentEvent("I cannot do that."), DoneEvent()]
    payload = {"files": [{"path": f"{title}.py", "content": "pass\n"}], "summary": f"Wrote {title}.py"}
    return [ContentEvent(json.dumps(payload)), DoneEvent()]


class TestTaskCommands:
    def _task_file(self, tmp_path: Path, titles: list[str]) -> Path:
        path = tmp_path / "tasks.yaml"
        path.write_text(yaml.safe_dump({"tasks": [{"title": t} for t in titles]}), encoding="utf-8")
        return path

    def test_run_writes_files(self, tmp_path, monkeypatch):
        gateway = _use_gateway(
            monkeypatch, FakeGateway(stream_factory=_task_stream, default_completion=routing_verdict())
        )
        task_file = self._task_file(tmp_path, ["alpha", "beta"])
        workspace = tmp_path / "ws"

        result = runner.invoke(
            app, ["tasks", "run", str(task_file), "--workspace", str(workspace), "--workers", "2"]
        )

        assert result.exit_code == 0, result.output
        assert "Completed 2/2 tasks." in result.output
        assert (workspace / "alpha.py").is_file()
        assert (workspace / "beta.py").is_file()
        assert gateway.closed

    def test_failed_task_sets_exit_code(self, tmp_path, monkeypatch):
        monkeypatch.setenv("AICORE_MAX_RETRIES", "0")
        _use_gateway(monkeypatch, FakeGateway(stream_factory=_task_stream, default_completion=routing_verdict()))
        task_file = self._task_file(tmp_path, ["alpha", "impossible"])

        result = runner.invoke(app, ["tasks", "run", str(task_file), "--workspace", str(tmp_path / "ws")])

        assert result.exit_code == 1
        assert "Completed 1/2 tasks." in result.output

    def test_invalid_task_file(self, tmp_path):
        path = tmp_path / "tasks.yaml"
        path.write_text("tasks:\n  - description: untitled\n", encoding="utf-8")

        result = runner.invoke(app, ["tasks", "run", str(path)])

        assert result.exit_code == 1
        assert "Invalid task file" in result.output

    def test_no_open_tasks(self, tmp_path):
        path = tmp_path / "tasks.yaml"
        path.write_text(yaml.safe_dump([{"title": "done", "status": "completed"}]), encoding="utf-8")

        result = runner.invoke(app, ["tasks", "run", str(path)])

        assert result.exit_code == 0
        assert "No open tasks." in result.output


class TestChatHandler:
    def _handler(self, tmp_path, gateway: FakeGateway):
        from aicore.cli.chat import ChatHandler
        from aicore.config import AICoreConfig
        from aicore.orchestrator.core import Orchestrator

        console = Console(file=io.StringIO(), width=200)
        orchestrator = Orchestrator(AICoreConfig(), gateway, workspace=str(tmp_path))
        return ChatHandler(orchestrator, console, mode="spec"), console

    async def test_chat_turn_renders_reply(self, tmp_path):
        gateway = FakeGateway(
            streams=[[ThinkingEvent("hmm"), ContentEvent("[b]literal[/b] answer"), DoneEvent()]],
            default_completion=routing_verdict("simple"),
        )
        handler, console = self._handler(tmp_path, gateway)

        await handler.handle_input("hello")

        output = console.file.getvalue()
        assert "[b]literal[/b] answer" in output
        assert "hmm" in output

    async def test_error_event_rendered(self, tmp_path):
        gateway = FakeGateway(
            streams=[[ErrorEvent("API Error: 401 - bad key")]],
            default_completion=routing_verdict("simple"),
        )
        handler, console = self._handler(tmp_path, gateway)

        await handler.handle_input("hello")

        assert "API Error: 401 - bad key" in console.file.getvalue()

    async def test_unknown_run_reported(self, tmp_path):
        handler, console = self._handler(tmp_path, FakeGateway())

        await handler.handle_input("/resume sa_0_000000 more")

        assert "Unknown agent id: sa_0_000000" in console.file.getvalue()

    async def test_commands(self, tmp_path):
        handler, console = self._handler(tmp_path, FakeGateway(default_completion=routing_verdict()))

        assert await handler.handle_command("/mode vibe")
        assert handler.mode == "vibe"
        assert await handler.handle_command("/stats")
        assert await handler.handle_command("/runs")
        assert await handler.handle_command("/session")
        assert "No active session." in console.file.getvalue()
        assert not await handler.handle_command("/planning-agent design")

        await handler.handle_input("hi")
        assert handler.orchestrator.sessions.current_session is not None
        assert await handler.handle_command("/clear")
        assert handler.orchestrator.sessions.current_session is None

        assert await handler.handle_command("/quit")
        assert not handler.running

    async def test_set_override(self, tmp_path):
        handler, console = self._handler(tmp_path, FakeGateway())
        config = handler.orchestrator.config

        assert await handler.handle_command("/set autopilot.max_retries 5")
        assert config.autopilot.max_retries == 5
        assert config.get_override("autopilot.max_retries") == 5

        assert await handler.handle_command("/set autopilot.max_retries")
        assert "autopilot.max_retries = 5" in console.file.getvalue()

        assert await handler.handle_command("/set provider.model")
        assert "provider.model has no session override." in console.file.getvalue()

        assert await handler.handle_command("/set autopilot.max_retries lots")
        assert config.autopilot.max_retries == 5

        assert await handler.handle_command("/set provider.nope 1")
        assert "Unknown setting: provider.nope" in console.file.getvalue()
