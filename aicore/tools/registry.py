from __future__ import annotations

import jsonschema

from aicore.tools.base import Tool, ToolRisk, normalize_schema
from aicore.types import ErrorCode, ToolResult


class ToolRegistry:
    def __init__(self):
        self._tools: dict[str, Tool] = {}

    def register(self, tool: Tool, *, overwrite: bool = False) -> None:
        if tool.name in self._tools and not overwrite:
            raise ValueError(f"Tool already registered: {tool.name}")
        self._tools[tool.name] = tool

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def list(self, max_risk: ToolRisk | None = None) -> list[Tool]:
        tools = sorted(self._tools.values(), key=lambda t: t.name)
        if max_risk is None:
            return tools
        return [t for t in tools if t.risk_level <= max_risk]

    def to_openai_schema(self, max_risk: ToolRisk | None = None) -> list[dict]:
        return [t.to_openai_schema() for t in self.list(max_risk)]

    async def invoke(self, name: str, arguments: dict) -> ToolResult:
        """Validate *arguments* against the tool's schema, then run it."""
        tool = self.get(name)
        if tool is None:
            return ToolResult(
                success=False,
                output=f"Unknown tool: {name}",
                error_code=ErrorCode.UNKNOWN_TOOL,
            )
        try:
            jsonschema.validate(instance=arguments, schema=normalize_schema(tool.parameters))
        except jsonschema.ValidationError as e:
            return ToolResult(
                success=False,
                output=f"Invalid arguments for {name}: {e.message}",
                error=e.message,
                error_code=ErrorCode.VALIDATION_ERROR,
            )
        return await tool.execute(**arguments)
