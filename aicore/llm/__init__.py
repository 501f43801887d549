"""LLM subsystem: provider gateway, stream decoding, routing and recovery helpers."""

from aicore.llm.types import (
    ChatContext,
    ChatOptions,
    ContentEvent,
    ContextFile,
    DoneEvent,
    ErrorEvent,
    Message,
    StreamEvent,
    ThinkingEvent,
    ToolCall,
    ToolCallEvent,
    ToolResultEvent,
    TruncatedEvent,
    Usage,
    WebSearchEvent,
    WebSearchResult,
)

__all__ = [
    "ChatContext",
    "ChatOptions",
    "ContentEvent",
    "ContextFile",
    "DoneEvent",
    "ErrorEvent",
    "Message",
    "StreamEvent",
    "ThinkingEvent",
    "ToolCall",
    "ToolCallEvent",
    "ToolResultEvent",
    "TruncatedEvent",
    "Usage",
    "WebSearchEvent",
    "WebSearchResult",
]
