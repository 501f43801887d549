"""System prompt builders."""

from __future__ import annotations

from typing import TYPE_CHECKING

from aicore.llm.types import ChatContext

if TYPE_CHECKING:
    from aicore.subagents.profiles import SubagentProfile
    from aicore.tasks import Task


def build_system_prompt(
    context: ChatContext,
    mode: str = "agent",
    chat_mode: str = "vibe",
) -> str:
    """
    Build the main conversation system prompt.

    *mode* is ``"chat"`` or ``"agent"``; *chat_mode* is ``"vibe"`` or
    ``"spec"``.  Attached files and any web search results already on the
    context are appended as their own sections.
    """
    sections: list[str] = []

    if chat_mode == "spec":
        sections.append(SPEC_MODE_SECTION)
    elif mode == "agent":
        sections.append(VIBE_MODE_SECTION)
    else:
        sections.append(CHAT_MODE_SECTION)

    if context.files:
        file_parts = ["## Code context provided by the user"]
        for f in context.files:
            file_name = f.path.rsplit("/", 1)[-1] or f.path
            line_info = f":{f.line_range}" if f.line_range else ""
            file_parts.append(
                f"### {file_name}{line_info}\n\n"
                f"```{f.language or ''}\n{f.content}\n```"
            )
        sections.append("\n\n".join(file_parts))

    if context.web_search_results:
        lines = [
            "## Web search results",
            "",
            "The following material has already been retrieved for you. You do "
            "not need to open these links; answer from the information below and "
            "cite the relevant sources.",
            "",
        ]
        for r in context.web_search_results:
            lines.append(f"### {r.title}")
            lines.append(f"- Link: {r.link}")
            if r.media:
                lines.append(f"- Source: {r.media}")
            if r.content:
                lines.append(f"- Summary: {r.content}")
            lines.append("")
        lines.append(
            "Combine these results with your own knowledge to give a complete "
            "answer. Do not claim you cannot access the links; their content is "
            "already provided above."
        )
        sections.append("\n".join(lines))

    return "\n\n".join(sections) + "\n"


def build_subagent_prompt(profile: SubagentProfile) -> str:
    """System prompt for a delegated sub-conversation."""
    if profile.readonly:
        constraint = (
            "This subagent is read-only: do not propose writing files or running "
            "destructive commands."
        )
    else:
        constraint = (
            "This subagent may propose implementation changes, preferring the "
            "smallest change that works."
        )
    return "\n".join(
        [
            "You are a subagent delegated by the main agent.",
            f"Subagent name: {profile.name}",
            f"Responsibility: {profile.description}",
            "Follow this responsibility strictly and return structured, directly "
            "reusable results.",
            constraint,
            "",
            profile.prompt,
        ]
    )


ROUTER_SYSTEM_PROMPT = "You are a rigorous task difficulty assessor. Your output must be valid JSON."


def build_routing_prompt(
    message: str,
    mode: str,
    is_agent_mode: bool,
    attached_files: int,
    has_vision_inputs: bool,
) -> str:
    return "\n".join(
        [
            "You are a task router. Assess the difficulty of the user request and "
            "return JSON only, with no other output.",
            "complexity: simple | medium | hard",
            "delegate: quick_responder | implementation_agent | planning_agent",
            "requiresVision: true | false",
            "Return exactly this JSON shape:",
            '{"complexity":"simple|medium|hard","delegate":"quick_responder|'
            'implementation_agent|planning_agent","requiresVision":true,'
            '"reason":"short reason","confidence":0.0}',
            "",
            f"ChatMode: {mode}",
            f"AgentMode: {str(is_agent_mode).lower()}",
            f"AttachedFiles: {attached_files}",
            f"HasVisionInputs: {str(has_vision_inputs).lower()}",
            f"UserMessage: {message}",
        ]
    )


TASK_SYSTEM_PROMPT = (
    "You are a code generation agent. Output the result directly as JSON "
    "without any extra explanation."
)


def build_task_prompt(task: Task, guidance: str = "") -> str:
    """Prompt asking the model to implement one task as a JSON file bundle."""
    parts = [
        "You are a professional development agent. Carry out the following "
        "task and generate the code.",
        "",
        "## Task",
        f"**Title**: {task.title}",
        f"**Description**: {task.description}",
        f"**Type**: {task.type}",
        "",
        "## Requirements",
        "1. Produce complete, working code",
        "2. Include the comments the code needs",
        "3. Follow established best practices",
    ]
    if guidance:
        parts += ["", "## Subagent guidance", guidance]
    parts += [
        "",
        "## Output format",
        "Return JSON:",
        "{",
        '  "files": [',
        '    {"path": "relative/file/path", "content": "file content", "language": "language"}',
        "  ],",
        '  "summary": "what was done, briefly"',
        "}",
    ]
    return "\n".join(parts)


CONTINUE_PROMPT = "Please continue your answer."


CHAT_MODE_SECTION = """You are a professional programming assistant, skilled at code analysis and technical explanation. Answer in the user's language."""

VIBE_MODE_SECTION = """You are an agile AI programming assistant working in **Vibe mode**.

## Working style
- Respond quickly and work as you talk
- Give solutions and code directly
- Improve iteratively based on feedback

## Available tools
- Read and analyse code files (read_file)
- Search project code (grep_search, search_files)
- Modify and create files (write_file), subject to user confirmation
- Run terminal commands (run_command)
- Diagnose and fix errors (get_diagnostics)
- Browse web pages (browse_url)
- Deep search (web_search_deep)

## Important
- Never say you cannot access a link; you have tools for that
- Stay concise and efficient"""

SPEC_MODE_SECTION = """You are a specification-driven AI programming assistant working in **Spec mode**.

## How you work
Guide the user through these phases:

### Phase 1: Understand the requirement
- Understand the core need and clarify anything ambiguous

### Phase 2: User stories
Break the requirement into user stories, each with:
- Title and description (As a... I want... So that...)
- Acceptance criteria (at least three)
- Priority (high/medium/low)

### Phase 3: Technical design
- Architecture overview
- Component design
- Data flow
- Test strategy

### Phase 4: Task breakdown
Turn the stories and design into an executable task list

### Phase 5: Task execution
Execute tasks one by one, reporting progress after each

Use structured Markdown output."""
