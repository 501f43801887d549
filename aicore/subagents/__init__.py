"""Subagents: profile files and delegated sub-conversations."""

from aicore.subagents.orchestrator import (
    InvokeCommand,
    ResumeCommand,
    SubagentOrchestrator,
    SubagentRun,
    SubagentRunResult,
    parse_user_command,
)
from aicore.subagents.profiles import ProfileLibrary, SubagentProfile, parse_profile

__all__ = [
    "InvokeCommand",
    "ProfileLibrary",
    "ResumeCommand",
    "SubagentOrchestrator",
    "SubagentProfile",
    "SubagentRun",
    "SubagentRunResult",
    "parse_profile",
    "parse_user_command",
]
