"""Tests for the tool registry and the workspace write tool."""

from __future__ import annotations

from pathlib import Path

import pytest

from aicore.errors import WorkspaceError
from aicore.tools.base import Tool, ToolRisk
from aicore.tools.files import WriteFileTool
from aicore.tools.registry import ToolRegistry
from aicore.types import ErrorCode, ToolResult


class EchoTool(Tool):
    @property
    def name(self) -> str:
        return "echo"

    @property
    def description(self) -> str:
        return "Echoes the input text."

    @property
    def parameters(self) -> dict:
        return {
            "properties": {"text": {"type": "string"}},
            "required": ["text"],
        }

    async def execute(self, **kwargs) -> ToolResult:
        return ToolResult(success=True, output=kwargs["text"])


class TestToolRegistry:
    def test_register_and_get(self):
        reg = ToolRegistry()
        tool = EchoTool()
        reg.register(tool)
        assert reg.get("echo") is tool
        assert reg.get("nonexistent") is None

    def test_duplicate_registration_raises_valueerror(self):
        reg = ToolRegistry()
        reg.register(EchoTool())
        with pytest.raises(ValueError, match="already registered"):
            reg.register(EchoTool())

    def test_duplicate_registration_with_overwrite(self):
        reg = ToolRegistry()
        reg.register(EchoTool())
        replacement = EchoTool()
        reg.register(replacement, overwrite=True)
        assert reg.get("echo") is replacement

    def test_list_sorted_and_risk_filtered(self, tmp_path):
        reg = ToolRegistry()
        reg.register(WriteFileTool(tmp_path))
        reg.register(EchoTool())

        assert [t.name for t in reg.list()] == ["echo", "write_file"]
        assert [t.name for t in reg.list(max_risk=ToolRisk.READ_ONLY)] == ["echo"]

    def test_openai_schema_is_normalized(self, tmp_path):
        reg = ToolRegistry()
        reg.register(WriteFileTool(tmp_path))

        schema = reg.to_openai_schema()[0]
        assert schema["type"] == "function"
        assert schema["function"]["name"] == "write_file"
        params = schema["function"]["parameters"]
        assert params["type"] == "object"
        assert params["additionalProperties"] is False
        assert params["required"] == ["path", "content"]

    async def test_invoke_valid(self):
        reg = ToolRegistry()
        reg.register(EchoTool())
        result = await reg.invoke("echo", {"text": "hi"})
        assert result.success
        assert result.output == "hi"

    async def test_invoke_unknown_tool(self):
        result = await ToolRegistry().invoke("ghost", {})
        assert not result.success
        assert result.error_code == ErrorCode.UNKNOWN_TOOL

    async def test_invoke_rejects_bad_arguments(self):
        reg = ToolRegistry()
        reg.register(EchoTool())

        missing = await reg.invoke("echo", {})
        extra = await reg.invoke("echo", {"text": "hi", "loud": True})
        wrong_type = await reg.invoke("echo", {"text": 3})

        for result in (missing, extra, wrong_type):
            assert not result.success
            assert result.error_code == ErrorCode.VALIDATION_ERROR


class TestWriteFileTool:
    async def test_writes_nested_file(self, tmp_path: Path):
        tool = WriteFileTool(tmp_path)
        result = await tool.write_file("src/app/main.py", "print('hi')\n")

        assert result.success
        assert result.metadata["path"] == "src/app/main.py"
        assert (tmp_path / "src" / "app" / "main.py").read_text(encoding="utf-8") == "print('hi')\n"

    async def test_overwrites(self, tmp_path: Path):
        tool = WriteFileTool(tmp_path)
        await tool.write_file("a.txt", "one")
        await tool.write_file("a.txt", "two")
        assert (tmp_path / "a.txt").read_text(encoding="utf-8") == "two"

    async def test_execute_via_registry(self, tmp_path: Path):
        reg = ToolRegistry()
        reg.register(WriteFileTool(tmp_path))

        result = await reg.invoke("write_file", {"path": "notes.md", "content": "# Notes"})

        assert result.success
        assert (tmp_path / "notes.md").is_file()

    async def test_refuses_escape(self, tmp_path: Path):
        tool = WriteFileTool(tmp_path / "ws")
        result = await tool.write_file("../outside.txt", "nope")

        assert not result.success
        assert result.error_code == ErrorCode.POLICY_BLOCK
        assert not (tmp_path / "outside.txt").exists()

    async def test_refuses_absolute_outside(self, tmp_path: Path):
        tool = WriteFileTool(tmp_path / "ws")
        result = await tool.write_file(str(tmp_path / "elsewhere.txt"), "nope")
        assert not result.success

    def test_resolve(self, tmp_path: Path):
        tool = WriteFileTool(tmp_path)
        assert tool.resolve("a/b.txt") == tmp_path.resolve() / "a" / "b.txt"
        with pytest.raises(WorkspaceError):
            tool.resolve("../../etc/passwd")

    def test_risk_level(self, tmp_path: Path):
        assert WriteFileTool(tmp_path).risk_level is ToolRisk.WRITE
