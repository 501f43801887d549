from dataclasses import dataclass, field


@dataclass
class ToolResult:
    success: bool
    output: str
    error: str | None = None
    error_code: str | None = None
    metadata: dict = field(default_factory=dict)


class ErrorCode:
    VALIDATION_ERROR = "validation_error"
    POLICY_BLOCK = "policy_block"
    TOOL_EXCEPTION = "tool_exception"
    UNKNOWN_TOOL = "unknown_tool"
