"""
Main CLI application for aicore.

Usage:
    aicore chat [--session ID] [--mode vibe|spec] [--workspace DIR]
    aicore route MESSAGE
    aicore agents list|init
    aicore tasks run FILE [--workers N] [--force-strong]
    aicore sessions list|show|delete|export
    aicore config show|validate
    aicore ping
    aicore version
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import NoReturn, Optional

import typer
import yaml
from rich.console import Console
from rich.logging import RichHandler

from aicore.config import AICoreConfig, find_config_path, load_config
from aicore.errors import AICoreError

__version__ = "0.1.0"

app = typer.Typer(name="aicore", help="aicore - AI coding assistant core")
agents_app = typer.Typer(help="Subagent profiles")
tasks_app = typer.Typer(help="Autopilot task execution")
sessions_app = typer.Typer(help="Archived chat sessions")
config_app = typer.Typer(help="Configuration management")

app.add_typer(agents_app, name="agents")
app.add_typer(tasks_app, name="tasks")
app.add_typer(sessions_app, name="sessions")
app.add_typer(config_app, name="config")

console = Console()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class _State:
    config_path: Path | None = None
    profile: str | None = None


_state = _State()


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True,
    )


def _load(overrides: dict | None = None) -> AICoreConfig:
    try:
        return load_config(
            _state.config_path or find_config_path(),
            profile=_state.profile,
            cli_overrides=overrides,
        )
    except (OSError, ValueError, yaml.YAMLError) as e:
        _fail(f"Could not load config: {e}")


def _fail(message: str) -> NoReturn:
    console.print(f"[red]Error:[/red] {message}")
    raise typer.Exit(1)


def _build_gateway(cfg: AICoreConfig):
    """Create the provider gateway.  Tests replace this to avoid the network."""
    from aicore.llm.gateway import ChatGateway

    return ChatGateway(cfg.provider)


def _archive_path(cfg: AICoreConfig) -> Path:
    from aicore.session.archive import default_archive_path

    return Path(cfg.session.archive_db).expanduser() if cfg.session.archive_db else default_archive_path()


def _workspace_overrides(workspace: Optional[Path]) -> dict:
    return {"subagents.workspace": str(workspace.resolve())} if workspace else {}


@app.callback()
def _main(
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to a YAML config file"),
    profile: Optional[str] = typer.Option(None, help="Config profile name"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log routing and cache details"),
):
    """aicore - AI coding assistant core."""
    _state.config_path = config
    _state.profile = profile
    _configure_logging(verbose)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

@app.command()
def chat(
    session: Optional[str] = typer.Option(None, "--session", help="Resume an archived session ID"),
    mode: str = typer.Option("vibe", help="Chat mode: vibe or spec"),
    workspace: Optional[Path] = typer.Option(None, help="Project root for subagents and file writes"),
    chat_only: bool = typer.Option(False, "--chat-only", help="Disable agent tools"),
):
    """Start an interactive chat session."""
    from aicore.cli.chat import CHAT_MODES

    if mode not in CHAT_MODES:
        _fail(f"Unknown mode '{mode}', choose from {', '.join(CHAT_MODES)}")
    cfg = _load(_workspace_overrides(workspace))

    async def _run():
        from aicore.cli.chat import ChatHandler
        from aicore.orchestrator.core import Orchestrator
        from aicore.session.archive import SessionArchive
        from aicore.tools.files import WriteFileTool

        root = Path(cfg.subagents.workspace or Path.cwd())
        gateway = _build_gateway(cfg)
        archive = SessionArchive(_archive_path(cfg))
        await archive.init()
        try:
            orchestrator = Orchestrator(
                cfg,
                gateway,
                write_tool=WriteFileTool(root),
                workspace=str(root),
                archive=archive,
            )
            if session:
                restored = await archive.load_session(session)
                if restored is None:
                    _fail(f"Session not found: {session}")
                orchestrator.sessions.adopt_session(restored)
                console.print(f"[dim]Resumed session {restored.id} ({len(restored.messages)} messages)[/dim]")

            handler = ChatHandler(orchestrator, console, mode=mode, agent_mode=not chat_only)
            await handler.run_loop()
        finally:
            await archive.close()
            await gateway.aclose()

    asyncio.run(_run())


@app.command()
def route(
    message: str = typer.Argument(..., help="Message to classify"),
    mode: str = typer.Option("vibe", help="Chat mode: vibe or spec"),
    force: bool = typer.Option(False, help="Route even when auto routing is disabled"),
):
    """Show the routing plan chosen for MESSAGE."""
    cfg = _load()

    async def _run():
        from aicore.cli.output import OutputFormatter
        from aicore.llm.router import TaskRouter
        from aicore.llm.types import ChatContext

        gateway = _build_gateway(cfg)
        try:
            router = TaskRouter(gateway, cfg.routing, cfg.provider)
            plan = await router.route(message, ChatContext(), mode=mode, force=force)
        finally:
            await gateway.aclose()
        OutputFormatter(console).format_routing_plan(plan)

    asyncio.run(_run())


@app.command()
def ping():
    """Check that the configured provider answers."""
    cfg = _load()

    async def _run() -> bool:
        gateway = _build_gateway(cfg)
        try:
            return await gateway.test_connection()
        finally:
            await gateway.aclose()

    if asyncio.run(_run()):
        console.print(f"[green]Connected[/green] to {cfg.provider.api_base} ({cfg.provider.model})")
    else:
        _fail(f"Could not reach {cfg.provider.api_base}")


@agents_app.command("list")
def agents_list(
    workspace: Optional[Path] = typer.Option(None, help="Project root holding the profiles"),
):
    """List subagent profiles (bootstrapping the defaults if none exist)."""
    from aicore.cli.output import OutputFormatter
    from aicore.subagents.profiles import ProfileLibrary

    cfg = _load(_workspace_overrides(workspace))
    library = ProfileLibrary(cfg.subagents.workspace or Path.cwd())
    try:
        profiles = library.ensure_defaults()
    except (AICoreError, OSError) as e:
        _fail(str(e))
    OutputFormatter(console).format_profile_list(profiles)


@agents_app.command("init")
def agents_init(
    workspace: Optional[Path] = typer.Option(None, help="Project root holding the profiles"),
):
    """Write the default subagent profiles when the directory has none."""
    from aicore.subagents.profiles import ProfileLibrary

    cfg = _load(_workspace_overrides(workspace))
    library = ProfileLibrary(cfg.subagents.workspace or Path.cwd())
    try:
        profiles = library.ensure_defaults()
    except (AICoreError, OSError) as e:
        _fail(str(e))
    console.print(f"{len(profiles)} subagent profile(s) in {library.root()}")


@tasks_app.command("run")
def tasks_run(
    task_file: Path = typer.Argument(..., help="YAML or JSON task list"),
    workers: Optional[int] = typer.Option(None, help="Parallel workers (capped at 3)"),
    force_strong: bool = typer.Option(False, "--force-strong", help="Run every task on the strongest model"),
    workspace: Optional[Path] = typer.Option(None, help="Directory receiving generated files"),
):
    """Run the open tasks of TASK_FILE through the autopilot."""
    from aicore.tasks import InMemoryTaskBoard, load_tasks

    cfg = _load(_workspace_overrides(workspace))
    try:
        tasks = load_tasks(task_file)
    except AICoreError as e:
        _fail(str(e))

    board = InMemoryTaskBoard(tasks)
    open_tasks = board.session.open_tasks()
    if not open_tasks:
        console.print("[dim]No open tasks.[/dim]")
        return

    async def _run() -> int:
        from aicore.cli.output import OutputFormatter
        from aicore.llm.types import ChatContext
        from aicore.orchestrator.core import Orchestrator, format_progress
        from aicore.tools.files import WriteFileTool

        def on_progress(event) -> None:
            text = format_progress(event)
            if text:
                console.print(text.rstrip(), markup=False)

        root = Path(cfg.subagents.workspace or Path.cwd())
        gateway = _build_gateway(cfg)
        try:
            orchestrator = Orchestrator(
                cfg,
                gateway,
                task_service=board,
                write_tool=WriteFileTool(root),
                workspace=str(root),
                on_progress=on_progress,
            )
            completed = await orchestrator.run_batch(
                open_tasks,
                ChatContext(),
                force_strong_model=force_strong,
                max_workers=workers,
            )
        finally:
            await gateway.aclose()
        OutputFormatter(console).format_task_board(board.session.tasks)
        return completed

    completed = asyncio.run(_run())
    console.print(f"Completed {completed}/{len(open_tasks)} tasks.")
    if completed < len(open_tasks):
        raise typer.Exit(1)


@sessions_app.command("list")
def sessions_list():
    """List archived sessions."""

    async def _run():
        from aicore.cli.output import OutputFormatter
        from aicore.session.archive import SessionArchive

        async with SessionArchive(_archive_path(_load())) as archive:
            sessions = await archive.list_sessions()
        OutputFormatter(console).format_session_list(sessions)

    asyncio.run(_run())


@sessions_app.command("show")
def sessions_show(session_id: str = typer.Argument(..., help="Session ID")):
    """Show the messages of an archived session."""

    async def _run():
        from aicore.cli.output import OutputFormatter
        from aicore.session.archive import SessionArchive

        async with SessionArchive(_archive_path(_load())) as archive:
            session = await archive.load_session(session_id)
        if session is None:
            _fail(f"Session not found: {session_id}")
        formatter = OutputFormatter(console)
        formatter.format_session_messages(session.messages)
        formatter.format_cache_stats(session.cache_stats)

    asyncio.run(_run())


@sessions_app.command("delete")
def sessions_delete(session_id: str = typer.Argument(..., help="Session ID")):
    """Delete an archived session."""

    async def _run() -> bool:
        from aicore.session.archive import SessionArchive

        async with SessionArchive(_archive_path(_load())) as archive:
            return await archive.delete_session(session_id)

    if not asyncio.run(_run()):
        _fail(f"Session not found: {session_id}")
    console.print(f"Deleted session: {session_id}")


@sessions_app.command("export")
def sessions_export(
    session_id: str = typer.Argument(..., help="Session ID"),
    fmt: str = typer.Option("markdown", "--format", "-f", help="Export format: markdown, json"),
):
    """Export an archived session as markdown or json."""

    async def _run():
        from aicore.cli.output import OutputFormatter
        from aicore.session.archive import SessionArchive

        async with SessionArchive(_archive_path(_load())) as archive:
            session = await archive.load_session(session_id)
        if session is None:
            _fail(f"Session not found: {session_id}")
        console.print(OutputFormatter(console).export_session(session, fmt), markup=False)

    asyncio.run(_run())


@config_app.command("show")
def config_show():
    """Show effective config."""
    from aicore.cli.output import OutputFormatter

    OutputFormatter(console).format_config(_load().to_dict())


@config_app.command("validate")
def config_validate():
    """Validate config and summarise the effective settings."""
    config_path = _state.config_path or find_config_path()
    try:
        cfg = load_config(config_path, profile=_state.profile)
    except Exception as e:
        console.print(f"[red]Config validation failed:[/red] {e}")
        raise typer.Exit(1)

    problems = []
    if cfg.autopilot.execution_mode not in ("autopilot", "supervised"):
        problems.append(f"autopilot.execution_mode must be 'autopilot' or 'supervised', got '{cfg.autopilot.execution_mode}'")
    if cfg.autopilot.max_parallel_workers < 1:
        problems.append("autopilot.max_parallel_workers must be at least 1")
    if cfg.session.max_history_messages < 1:
        problems.append("session.max_history_messages must be at least 1")
    if problems:
        console.print("[red]Config validation failed:[/red]")
        for p in problems:
            console.print(f"  - {p}")
        raise typer.Exit(1)

    console.print("[green]Config is valid.[/green]")
    if config_path:
        console.print(f"  Loaded from: {config_path}")
    else:
        console.print("  [dim]No config file found, using defaults.[/dim]")
    console.print(f"  Provider: {cfg.provider.api_base} ({cfg.provider.model})")
    console.print(f"  Auto routing: {cfg.routing.auto_routing}")
    console.print(f"  Subagents enabled: {cfg.subagents.enabled}")
    if not cfg.provider.api_key:
        console.print(f"  [yellow]Warning:[/yellow] {cfg.provider.api_key_env} is not set")


@app.command()
def version():
    """Show version."""
    console.print(f"aicore v{__version__}")


def main():
    try:
        app()
    except AICoreError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise SystemExit(1)


if __name__ == "__main__":
    main()
