"""Output formatting utilities for the CLI."""

from __future__ import annotations

import json
from typing import Iterable

from rich.console import Console
from rich.panel import Panel
from rich.syntax import Syntax
from rich.table import Table
from rich.text import Text

from aicore.llm.router import Complexity, RoutingPlan
from aicore.llm.types import Message
from aicore.session.store import CacheStats, Session
from aicore.subagents.orchestrator import SubagentRun
from aicore.subagents.profiles import SubagentProfile
from aicore.tasks import Task, TaskStatus

COMPLEXITY_COLORS = {
    Complexity.SIMPLE: "green",
    Complexity.MEDIUM: "yellow",
    Complexity.HARD: "red",
}

STATUS_COLORS = {
    TaskStatus.PENDING: "dim",
    TaskStatus.IN_PROGRESS: "cyan",
    TaskStatus.COMPLETED: "green",
    TaskStatus.BLOCKED: "yellow",
    TaskStatus.FAILED: "red",
}

ROLE_COLORS = {
    "system": "magenta",
    "user": "blue",
    "assistant": "green",
    "tool": "cyan",
}


class OutputFormatter:
    """Rich-based output formatting for the aicore CLI."""

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console()

    def format_routing_plan(self, plan: RoutingPlan) -> None:
        color = COMPLEXITY_COLORS.get(plan.complexity, "white")
        self.console.print(Panel(
            f"[dim]Complexity:[/dim] [{color}]{plan.complexity.value}[/{color}]\n"
            f"[dim]Delegate:[/dim] {plan.delegate.value}\n"
            f"[dim]Model:[/dim] {plan.model}\n"
            f"[dim]Vision:[/dim] {plan.requires_vision}\n"
            f"[dim]Thinking:[/dim] {plan.enable_thinking}\n"
            f"[dim]Web search:[/dim] {plan.enable_web_search}\n"
            f"[dim]Max tokens:[/dim] {plan.max_tokens}\n"
            f"[dim]Confidence:[/dim] {plan.confidence:.2f}\n\n"
            f"{plan.reason}",
            title="Routing plan",
        ))

    def format_profile_list(self, profiles: list[SubagentProfile]) -> None:
        if not profiles:
            self.console.print("[dim]No subagent profiles found.[/dim]")
            return

        table = Table(title="Subagents", show_lines=True)
        table.add_column("Name", style="cyan", no_wrap=True)
        table.add_column("Model", no_wrap=True)
        table.add_column("Read-only", no_wrap=True)
        table.add_column("Description")

        for p in profiles:
            readonly = Text("yes", style="green") if p.readonly else Text("no", style="yellow")
            table.add_row(p.name, p.model, readonly, p.description)

        self.console.print(table)

    def format_run_list(self, runs: list[SubagentRun]) -> None:
        if not runs:
            self.console.print("[dim]No subagent runs yet.[/dim]")
            return
        table = Table(title="Subagent runs")
        table.add_column("Run", style="cyan", no_wrap=True)
        table.add_column("Subagent", no_wrap=True)
        table.add_column("Messages", justify="right")
        table.add_column("Last used", no_wrap=True)
        for r in runs:
            table.add_row(r.run_id, r.profile_name, str(len(r.messages)), r.last_used_at.strftime("%H:%M:%S"))
        self.console.print(table)

    def format_task_board(self, tasks: Iterable[Task]) -> None:
        table = Table(title="Tasks")
        table.add_column("ID", style="cyan", no_wrap=True)
        table.add_column("Status", no_wrap=True)
        table.add_column("Title")
        table.add_column("Result")

        for t in tasks:
            color = STATUS_COLORS.get(t.status, "white")
            table.add_row(t.id, Text(t.status.value, style=color), t.title, (t.result or "")[:80])

        self.console.print(table)

    def format_session_list(self, sessions: list[dict]) -> None:
        if not sessions:
            self.console.print("[dim]No sessions found.[/dim]")
            return

        table = Table(title="Sessions")
        table.add_column("ID", style="cyan", no_wrap=True)
        table.add_column("Updated", no_wrap=True)
        table.add_column("Messages", justify="right")
        table.add_column("Cached", justify="right")

        for s in sessions:
            stats = CacheStats(s.get("total_tokens", 0), s.get("cached_tokens", 0))
            table.add_row(
                s.get("session_id", "?"),
                s.get("updated_at", "?"),
                str(s.get("message_count", 0)),
                stats.savings,
            )

        self.console.print(table)

    def format_session_messages(self, messages: list[Message]) -> None:
        if not messages:
            self.console.print("[dim]No messages.[/dim]")
            return

        for m in messages:
            color = ROLE_COLORS.get(m.role, "white")
            content = (m.content or "").replace("\n", " ")
            if len(content) > 100:
                content = content[:100] + "..."
            self.console.print(f"  [{color}]{m.role:>10s}[/{color}]  {content}", markup=True)

    def format_cache_stats(self, stats: CacheStats) -> None:
        self.console.print(
            f"  Prompt tokens: {stats.total_tokens}  "
            f"cached: {stats.cached_tokens}  savings: {stats.savings}"
        )

    def format_config(self, config: dict) -> None:
        self.console.print(Syntax(json.dumps(config, indent=2, default=str), "json", theme="monokai"))

    def export_session(self, session: Session, fmt: str = "markdown") -> str:
        if fmt == "json":
            return json.dumps(
                {
                    "id": session.id,
                    "created_at": session.created_at.isoformat(),
                    "updated_at": session.updated_at.isoformat(),
                    "messages": [m.to_wire() for m in session.messages],
                },
                indent=2,
                ensure_ascii=False,
            )

        lines = [f"# Session {session.id}\n"]
        for m in session.messages:
            if m.role == "system":
                continue
            heading = "User" if m.role == "user" else m.role.capitalize()
            lines.append(f"## {heading}\n")
            lines.append(f"{m.content or ''}\n")
        return "\n".join(lines)
