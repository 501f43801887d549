"""Workspace file tools used to materialise generated code."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Protocol

from aicore.errors import WorkspaceError
from aicore.tools.base import Tool, ToolRisk
from aicore.types import ErrorCode, ToolResult

logger = logging.getLogger(__name__)


class FileWriter(Protocol):
    """Anything that can write a file on behalf of the worker pool."""

    async def write_file(self, path: str, content: str) -> ToolResult: ...


class WriteFileTool(Tool):
    """
    Writes UTF-8 text files beneath a workspace root.

    Relative paths resolve against the root; paths escaping it are refused.
    Parent directories are created as needed.
    """

    def __init__(self, workspace: str | Path) -> None:
        self.root = Path(workspace).expanduser().resolve()

    @property
    def name(self) -> str:
        return "write_file"

    @property
    def description(self) -> str:
        return "Create or overwrite a text file in the workspace."

    @property
    def parameters(self) -> dict:
        return {
            "properties": {
                "path": {"type": "string", "description": "Path relative to the workspace root"},
                "content": {"type": "string", "description": "Full file content"},
            },
            "required": ["path", "content"],
        }

    @property
    def risk_level(self) -> ToolRisk:
        return ToolRisk.WRITE

    def resolve(self, path: str) -> Path:
        candidate = Path(path).expanduser()
        if not candidate.is_absolute():
            candidate = self.root / candidate
        resolved = candidate.resolve()
        if resolved != self.root and self.root not in resolved.parents:
            raise WorkspaceError(f"Path escapes the workspace: {path}")
        return resolved

    async def execute(self, **kwargs) -> ToolResult:
        return await self.write_file(kwargs["path"], kwargs["content"])

    async def write_file(self, path: str, content: str) -> ToolResult:
        try:
            target = self.resolve(path)
        except WorkspaceError as e:
            return ToolResult(
                success=False,
                output=str(e),
                error=str(e),
                error_code=ErrorCode.POLICY_BLOCK,
            )

        def _write() -> int:
            target.parent.mkdir(parents=True, exist_ok=True)
            return target.write_text(content, encoding="utf-8")

        try:
            written = await asyncio.to_thread(_write)
        except OSError as e:
            logger.warning("Write to %s failed: %s", target, e)
            return ToolResult(
                success=False,
                output=f"Failed to write {path}: {e}",
                error=str(e),
                error_code=ErrorCode.TOOL_EXCEPTION,
            )

        rel = target.relative_to(self.root).as_posix()
        return ToolResult(
            success=True,
            output=f"Wrote {written} characters to {rel}",
            metadata={"path": rel},
        )
