"""
Incremental decoder for the provider's server-sent event stream.

Each SSE line has the form::

    data: {json}\\n

and the sentinel ``data: [DONE]`` marks the end of the response.  Provider
deltas are mapped to the typed events in :mod:`aicore.llm.types`:

  - ``reasoning_content`` opens a thinking phase: one marker event, then one
    ``ThinkingEvent`` per delta.  The first ``content`` delta after it is
    preceded by a separator ``ContentEvent``.
  - ``tool_calls`` become one ``ToolCallEvent`` per delta, keeping the
    provider's ``index`` so fragments can be reassembled, except browser/search
    actions which become a ``WebSearchEvent`` progress notice.
  - ``finish_reason == "length"`` adds a ``TruncatedEvent``.
  - ``usage`` payloads are forwarded to the ``on_usage`` hook.

Malformed lines are skipped; they never abort the stream.
"""

from __future__ import annotations

import asyncio
import codecs
import json
import logging
from typing import AsyncIterator, Callable

from aicore.llm.types import (
    ContentEvent,
    DoneEvent,
    StreamEvent,
    ThinkingEvent,
    ToolCall,
    ToolCallEvent,
    TruncatedEvent,
    Usage,
    WebSearchEvent,
)

logger = logging.getLogger(__name__)

THINKING_MARKER = "Thinking...\n"
THINKING_SEPARATOR = "\n\n---\n\n"
SEARCH_PROGRESS = "Searching the web..."

_SEARCH_TOOL_TYPES = frozenset({"web_browser", "web_search"})


class StreamDecoder:
    """
    Turns raw response bytes into ``StreamEvent`` objects.

    One decoder instance handles exactly one response.

    Parameters
    ----------
    on_usage:
        Called with a :class:`Usage` whenever a payload carries accounting.
    cancel:
        When this event is set the decoder closes the byte source and stops
        without emitting anything further.
    """

    def __init__(
        self,
        on_usage: Callable[[Usage], None] | None = None,
        cancel: asyncio.Event | None = None,
    ) -> None:
        self._on_usage = on_usage
        self._cancel = cancel
        self._in_thinking = False

    @property
    def cancelled(self) -> bool:
        return self._cancel is not None and self._cancel.is_set()

    async def decode(self, chunks: AsyncIterator[bytes]) -> AsyncIterator[StreamEvent]:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        buffer = ""
        try:
            async for raw in chunks:
                if self.cancelled:
                    return
                buffer += decoder.decode(raw)

                while "\n" in buffer:
                    line, buffer = buffer.split("\n", 1)
                    for event in self.decode_line(line):
                        if self.cancelled:
                            return
                        yield event

            buffer += decoder.decode(b"", final=True)
            if buffer and not self.cancelled:
                for event in self.decode_line(buffer):
                    yield event
        finally:
            aclose = getattr(chunks, "aclose", None)
            if aclose is not None:
                await aclose()

    # ------------------------------------------------------------------
    # Line handling
    # ------------------------------------------------------------------

    def decode_line(self, line: str) -> list[StreamEvent]:
        """Map one complete SSE line to zero or more events."""
        line = line.rstrip("\r")
        if not line.startswith("data:"):
            return []

        data_str = line[len("data:"):].strip()
        if data_str == "[DONE]":
            return [DoneEvent()]

        try:
            data = json.loads(data_str)
        except json.JSONDecodeError:
            logger.debug("Skipping malformed SSE line: %s", data_str[:200])
            return []
        if not isinstance(data, dict):
            return []

        usage = data.get("usage")
        if isinstance(usage, dict) and self._on_usage is not None:
            self._on_usage(Usage.from_payload(usage))

        choices = data.get("choices")
        if not choices or not isinstance(choices, list):
            return []

        choice = choices[0] or {}
        delta = choice.get("delta") or {}
        events: list[StreamEvent] = []

        reasoning = delta.get("reasoning_content")
        if reasoning:
            if not self._in_thinking:
                self._in_thinking = True
                events.append(ThinkingEvent(THINKING_MARKER))
            events.append(ThinkingEvent(reasoning))

        for position, raw_tc in enumerate(delta.get("tool_calls") or []):
            if raw_tc.get("type") in _SEARCH_TOOL_TYPES:
                events.append(WebSearchEvent(summary=SEARCH_PROGRESS))
                continue
            func = raw_tc.get("function") or {}
            events.append(
                ToolCallEvent(
                    ToolCall(
                        id=raw_tc.get("id") or "",
                        name=func.get("name") or "",
                        arguments=func.get("arguments") or "",
                        index=_call_index(raw_tc, position),
                    )
                )
            )

        content = delta.get("content")
        if content:
            if self._in_thinking:
                self._in_thinking = False
                events.append(ContentEvent(THINKING_SEPARATOR))
            events.append(ContentEvent(content))

        if choice.get("finish_reason") == "length":
            logger.warning("Response truncated by token limit, continuation needed")
            events.append(TruncatedEvent("length"))

        return events


def _call_index(raw_tc: dict, position: int) -> int:
    index = raw_tc.get("index")
    if isinstance(index, int) and not isinstance(index, bool):
        return index
    return position
