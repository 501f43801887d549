"""Interactive chat session handler."""

from __future__ import annotations

import asyncio
import logging

from rich.console import Console

from aicore.cli.output import OutputFormatter
from aicore.config import coerce_override
from aicore.errors import AICoreError
from aicore.llm.types import (
    ChatContext,
    ContentEvent,
    ErrorEvent,
    StreamEvent,
    ThinkingEvent,
    ToolCallEvent,
    ToolResultEvent,
    WebSearchEvent,
)
from aicore.orchestrator.core import Orchestrator

logger = logging.getLogger(__name__)

CHAT_MODES = ("vibe", "spec")


class ChatHandler:
    """
    Manages the interactive chat loop.

    Renders the orchestrator's stream events and handles inline commands.
    Messages starting with ``/`` that are not chat commands are passed on,
    so ``/planner ...`` and ``/resume <id>`` reach the subagents.
    """

    def __init__(
        self,
        orchestrator: Orchestrator,
        console: Console | None = None,
        context: ChatContext | None = None,
        mode: str = "vibe",
        agent_mode: bool = True,
    ) -> None:
        self.orchestrator = orchestrator
        self.console = console or Console()
        self.formatter = OutputFormatter(self.console)
        self.context = context or ChatContext()
        self.mode = mode
        self.agent_mode = agent_mode
        self._running = True

    @property
    def running(self) -> bool:
        return self._running

    async def handle_command(self, command: str) -> bool:
        """
        Handle inline commands. Returns True if the command was handled.
        """
        parts = command.strip().split(None, 1)
        cmd = parts[0].lower()
        arg = parts[1].strip() if len(parts) > 1 else ""
        sessions = self.orchestrator.sessions

        if cmd == "/quit":
            self._running = False
            self.console.print("[dim]Goodbye.[/dim]")
            return True

        if cmd == "/session":
            session = sessions.current_session
            if session is None:
                self.console.print("  [dim]No active session.[/dim]")
            else:
                self.console.print(f"  Session: [cyan]{session.id}[/cyan]")
                self.formatter.format_session_messages(sessions.get_session_messages(session.id))
            return True

        if cmd == "/stats":
            self.formatter.format_cache_stats(sessions.cache_stats())
            return True

        if cmd == "/clear":
            sessions.clear_session()
            self.console.print("  [dim]Session cleared; the next message starts a new one.[/dim]")
            return True

        if cmd == "/runs":
            self.formatter.format_run_list(self.orchestrator.subagents.list_runs())
            return True

        if cmd == "/mode":
            if arg in CHAT_MODES:
                self.mode = arg
                self.console.print(f"  Mode: [bold]{arg}[/bold]")
            else:
                self.console.print(f"  Mode: [bold]{self.mode}[/bold] (choose from {', '.join(CHAT_MODES)})")
            return True

        if cmd == "/set":
            return self._set_override(arg)

        if cmd == "/help":
            self.console.print(
                "  [bold]Commands:[/bold]\n"
                "  /quit            - Exit the chat\n"
                "  /session         - Show the current session\n"
                "  /stats           - Show prompt cache statistics\n"
                "  /clear           - Drop the current session\n"
                "  /runs            - List subagent runs\n"
                "  /mode \\[vibe|spec] - Show or switch the chat mode\n"
                "  /set <key> \\[value] - Show or set a session override (e.g. provider.model)\n"
                "  /<agent> <task>  - Run a subagent explicitly\n"
                "  /resume <id> <task> - Continue a subagent run\n"
                "  /help            - Show this help\n"
            )
            return True

        return False

    def _set_override(self, arg: str) -> bool:
        key, _, raw = arg.partition(" ")
        raw = raw.strip()
        config = self.orchestrator.config
        if not key:
            self.console.print("  Usage: /set <key> [value]", style="dim", markup=False)
            return True
        if not raw:
            value = config.get_override(key)
            if value is None:
                self.console.print(f"  {key} has no session override.", style="dim", markup=False)
            else:
                self.console.print(f"  {key} = {value!r}", markup=False)
            return True
        try:
            value = coerce_override(config, key, raw)
        except ValueError as e:
            self.console.print(f"  {e}", style="red", markup=False)
            return True
        config.set_override(key, value)
        self.console.print(f"  {key} = {value!r}", markup=False)
        return True

    def render(self, event: StreamEvent) -> None:
        if isinstance(event, ThinkingEvent):
            self.console.print(event.text, end="", style="dim", markup=False)
            return

        if isinstance(event, ContentEvent):
            self.console.print(event.text, end="", markup=False)
        elif isinstance(event, WebSearchEvent):
            self.console.print(f"\n[dim]{event.summary}[/dim]")
            for r in event.results:
                self.console.print(f"  [cyan]-[/cyan] {r.title} [dim]{r.link}[/dim]")
        elif isinstance(event, ToolCallEvent):
            if event.tool_call.name:
                self.console.print(f"\n[yellow]tool>[/yellow] {event.tool_call.name}")
        elif isinstance(event, ToolResultEvent):
            style = "green" if event.success else "red"
            self.console.print(event.output, style=style, markup=False)
        elif isinstance(event, ErrorEvent):
            self.console.print(f"\n[red]Error:[/red] {event.message}")

    async def handle_input(self, user_input: str, cancel: asyncio.Event | None = None) -> None:
        """Process user input: run through orchestrator and stream response."""
        try:
            async for event in self.orchestrator.handle(
                user_input,
                self.context,
                mode=self.mode,
                is_agent_mode=self.agent_mode,
                cancel=cancel,
            ):
                self.render(event)
        except AICoreError as e:
            self.console.print(f"\n[red]Error:[/red] {e}")
            return
        except Exception as e:
            logger.exception("Chat turn failed")
            self.console.print(f"\n[red]Error:[/red] {e}")
            return

        # Newline after streaming
        self.console.print()

    async def run_loop(self) -> None:
        """Main interactive loop."""
        self.console.print(
            "[bold]aicore[/bold] - AI coding assistant core\n"
            f"[dim]Mode: {self.mode}. Type /help for commands, /quit to exit.[/dim]\n"
        )

        while self._running:
            try:
                user_input = await asyncio.get_event_loop().run_in_executor(
                    None, lambda: input("you> ").strip()
                )
            except (EOFError, KeyboardInterrupt):
                self.console.print("\n[dim]Goodbye.[/dim]")
                break

            if not user_input:
                continue

            if user_input.startswith("/"):
                handled = await self.handle_command(user_input)
                if handled:
                    continue

            self.console.print("[dim]assistant>[/dim] ", end="")
            await self.handle_input(user_input)
