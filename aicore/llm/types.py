"""Core types for the LLM subsystem."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Union


@dataclass
class ToolCall:
    """A tool call as streamed by the provider (arguments stay raw JSON text).

    While streaming, one call may arrive as several deltas sharing the same
    ``index``; only the first carries ``id`` and ``name``.
    """

    id: str
    name: str
    arguments: str = ""
    index: int = 0

    def to_wire(self) -> dict:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }


@dataclass
class Message:
    """A single message in a conversation."""

    role: str  # "user", "assistant", "system", "tool"
    content: str | None = None
    tool_calls: list[ToolCall] | None = None
    tool_call_id: str | None = None

    def copy(self) -> Message:
        """Return an independent copy; mutating it never touches the original."""
        calls = None
        if self.tool_calls is not None:
            calls = [replace(tc) for tc in self.tool_calls]
        return Message(
            role=self.role,
            content=self.content,
            tool_calls=calls,
            tool_call_id=self.tool_call_id,
        )

    def to_wire(self) -> dict:
        m: dict = {"role": self.role}
        if self.content is not None:
            m["content"] = self.content
        if self.tool_calls:
            m["tool_calls"] = [tc.to_wire() for tc in self.tool_calls]
        if self.tool_call_id:
            m["tool_call_id"] = self.tool_call_id
        return m

    @classmethod
    def from_dict(cls, data: dict) -> Message:
        calls = None
        if data.get("tool_calls"):
            calls = []
            for raw in data["tool_calls"]:
                func = raw.get("function", {})
                calls.append(
                    ToolCall(
                        id=raw.get("id", ""),
                        name=func.get("name", ""),
                        arguments=func.get("arguments", ""),
                    )
                )
        return cls(
            role=data["role"],
            content=data.get("content"),
            tool_calls=calls,
            tool_call_id=data.get("tool_call_id"),
        )


@dataclass
class WebSearchResult:
    title: str = ""
    link: str = ""
    content: str = ""
    media: str | None = None
    icon: str | None = None


@dataclass
class ContextFile:
    """A file (or a slice of one) the user attached to the request."""

    path: str
    content: str = ""
    language: str | None = None
    line_range: str | None = None


@dataclass
class ChatContext:
    files: list[ContextFile] = field(default_factory=list)
    web_search_results: list[WebSearchResult] = field(default_factory=list)

    def with_search_results(self, results: list[WebSearchResult]) -> ChatContext:
        return ChatContext(files=list(self.files), web_search_results=list(results))


@dataclass
class ChatOptions:
    """
    Per-request knobs.  ``None`` means "use the configured default".
    """

    model: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    tools: list[dict] | None = None
    enable_thinking: bool | None = None
    enable_web_search: bool | None = None
    search_engine: str | None = None
    session_id: str | None = None


@dataclass
class Usage:
    """Provider token accounting for one response."""

    prompt_tokens: int = 0
    cached_tokens: int = 0

    @classmethod
    def from_payload(cls, usage: dict) -> Usage:
        details = usage.get("prompt_tokens_details") or {}
        return cls(
            prompt_tokens=int(usage.get("prompt_tokens") or 0),
            cached_tokens=int(details.get("cached_tokens") or 0),
        )


# ---------------------------------------------------------------------------
# Stream events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ThinkingEvent:
    text: str


@dataclass(frozen=True)
class ContentEvent:
    text: str


@dataclass(frozen=True)
class ToolCallEvent:
    tool_call: ToolCall


@dataclass(frozen=True)
class ToolResultEvent:
    id: str
    output: str
    success: bool


@dataclass(frozen=True)
class WebSearchEvent:
    summary: str
    results: tuple[WebSearchResult, ...] = ()


@dataclass(frozen=True)
class TruncatedEvent:
    reason: str


@dataclass(frozen=True)
class DoneEvent:
    pass


@dataclass(frozen=True)
class ErrorEvent:
    message: str


StreamEvent = Union[
    ThinkingEvent,
    ContentEvent,
    ToolCallEvent,
    ToolResultEvent,
    WebSearchEvent,
    TruncatedEvent,
    DoneEvent,
    ErrorEvent,
]
