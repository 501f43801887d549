"""
Chat gateway for the provider's OpenAI-compatible chat-completion endpoint.

The gateway issues one HTTP request per call and exposes the response as a
stream of typed events (see :mod:`aicore.llm.decoder`).  It also offers:

  - automatic continuation when the provider stops on its length limit;
  - a non-streaming completion used by the task router;
  - the provider's web search tool, whose results are injected into the
    system prompt before the main request.

Dependencies: ``httpx`` (async HTTP client).  No vendor SDK needed.
"""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable

import httpx

from aicore.config import ProviderConfig
from aicore.errors import ProviderError
from aicore.llm.decoder import StreamDecoder
from aicore.llm.types import (
    ChatContext,
    ChatOptions,
    ContentEvent,
    ErrorEvent,
    Message,
    StreamEvent,
    ThinkingEvent,
    TruncatedEvent,
    Usage,
    WebSearchEvent,
    WebSearchResult,
)
from aicore.prompts.system import CONTINUE_PROMPT, build_system_prompt

logger = logging.getLogger(__name__)

CONTINUATION_MARKER = "\n\n*[continuing...]*\n\n"
CONTINUATION_LIMIT_WARNING = "\n\nWarning: the reply is too long and reached the continuation limit."
SEARCHING_NOTICE = "Searching the web for relevant material...\n"

DEFAULT_MAX_CONTINUATIONS = 3

UsageSink = Callable[[str | None, Usage], None]


class ChatGateway:
    """
    Streams chat completions from a single provider endpoint.

    Parameters
    ----------
    config:
        Provider section of the configuration (endpoint, key, defaults).
    client:
        Optional shared ``httpx.AsyncClient``.  When omitted a client is
        opened per request.
    usage_sink:
        ``usage_sink(session_id, usage)`` receives provider token accounting.
    """

    def __init__(
        self,
        config: ProviderConfig,
        client: httpx.AsyncClient | None = None,
        usage_sink: UsageSink | None = None,
    ) -> None:
        self.config = config
        self._client = client
        self.usage_sink = usage_sink

    @property
    def default_model(self) -> str:
        return self.config.model

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    # ------------------------------------------------------------------
    # Request building
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _http(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._client is not None:
            yield self._client
            return
        async with httpx.AsyncClient(timeout=float(self.config.timeout_seconds)) as client:
            yield client

    def _build_headers(self, stream: bool) -> dict[str, str]:
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if stream:
            headers["Accept"] = "text/event-stream"
        api_key = self.config.api_key
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        return headers

    def web_search_tool(self, search_engine: str | None = None) -> dict:
        return {
            "type": "web_search",
            "web_search": {
                "enable": True,
                "search_engine": search_engine or self.config.search_engine,
                "search_result": True,
            },
        }

    def build_body(
        self,
        messages: list[Message],
        context: ChatContext,
        options: ChatOptions,
    ) -> dict:
        """Build the JSON body for a streaming completion request."""
        enable_thinking = _pick(options.enable_thinking, self.config.enable_thinking)
        enable_search = _pick(options.enable_web_search, self.config.enable_web_search)

        body: dict = {
            "model": options.model or self.config.model,
            "messages": [m.to_wire() for m in messages],
            "temperature": _pick(options.temperature, self.config.temperature),
            "max_tokens": options.max_tokens or self.config.max_tokens,
            "stream": True,
        }
        if enable_thinking:
            body["thinking"] = {
                "type": "enabled",
                "budget_tokens": self.config.thinking_budget,
            }

        tools = list(options.tools or [])
        if enable_search and not context.web_search_results:
            tools.append(self.web_search_tool(options.search_engine))
        if tools:
            body["tools"] = tools
            body["tool_choice"] = "auto"
        return body

    # ------------------------------------------------------------------
    # Streaming chat
    # ------------------------------------------------------------------

    async def stream_chat(
        self,
        messages: list[Message],
        context: ChatContext,
        options: ChatOptions | None = None,
        cancel: asyncio.Event | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """
        Issue one completion request and yield its events.

        The caller's *messages* and *context* are never mutated.  After an
        ``ErrorEvent`` nothing else is yielded for the request.
        """
        options = options or ChatOptions()
        own_messages = [m.copy() for m in messages]
        enable_search = _pick(options.enable_web_search, self.config.enable_web_search)

        logger.info(
            "Chat request: model=%s thinking=%s web_search=%s messages=%d",
            options.model or self.config.model,
            _pick(options.enable_thinking, self.config.enable_thinking),
            enable_search,
            len(own_messages),
        )

        if enable_search and not context.web_search_results:
            query = _last_user_content(own_messages)
            if query:
                yield ThinkingEvent(SEARCHING_NOTICE)
                results = await self.web_search(query)
                if results:
                    context = context.with_search_results(results)
                    yield WebSearchEvent(
                        summary=f"Found {len(results)} relevant results",
                        results=tuple(results),
                    )
                    for m in own_messages:
                        if m.role == "system":
                            m.content = build_system_prompt(context, mode="chat")
                            break

        if cancel is not None and cancel.is_set():
            return

        body = self.build_body(own_messages, context, options)
        session_id = options.session_id

        def on_usage(usage: Usage) -> None:
            if self.usage_sink is not None:
                self.usage_sink(session_id, usage)

        try:
            async with self._http() as client:
                async with client.stream(
                    "POST",
                    self.config.chat_url,
                    json=body,
                    headers=self._build_headers(stream=True),
                ) as response:
                    if not response.is_success:
                        await response.aread()
                        yield ErrorEvent(
                            f"API Error: {response.status_code} - {_error_message(response)}"
                        )
                        return

                    decoder = StreamDecoder(on_usage=on_usage, cancel=cancel)
                    async for event in decoder.decode(response.aiter_bytes()):
                        yield event
        except httpx.HTTPError as exc:
            if cancel is not None and cancel.is_set():
                return
            logger.warning("Chat request failed: %s", exc)
            yield ErrorEvent(f"{type(exc).__name__}: {exc}")

    async def stream_chat_with_continuation(
        self,
        messages: list[Message],
        context: ChatContext,
        options: ChatOptions | None = None,
        cancel: asyncio.Event | None = None,
        max_continuations: int = DEFAULT_MAX_CONTINUATIONS,
    ) -> AsyncIterator[StreamEvent]:
        """
        Like :meth:`stream_chat`, but re-requests when the reply is truncated.

        At most ``max_continuations + 1`` requests are issued.  Truncation
        events are consumed here; a marker separates continuation segments
        and a warning is emitted when the bound is exceeded.
        """
        current = [m.copy() for m in messages]
        continuation_count = 0

        while continuation_count <= max_continuations:
            needs_continuation = False
            failed = False
            segment: list[str] = []

            async for event in self.stream_chat(current, context, options, cancel):
                if isinstance(event, TruncatedEvent):
                    needs_continuation = True
                    logger.info(
                        "Continuation %d/%d", continuation_count + 1, max_continuations
                    )
                    continue
                if isinstance(event, ContentEvent):
                    segment.append(event.text)
                elif isinstance(event, WebSearchEvent) and event.results:
                    # later segments reuse the results instead of searching again
                    context = context.with_search_results(list(event.results))
                elif isinstance(event, ErrorEvent):
                    failed = True
                yield event

            if failed or not needs_continuation:
                return
            if cancel is not None and cancel.is_set():
                return

            continuation_count += 1
            if continuation_count > max_continuations:
                yield ContentEvent(CONTINUATION_LIMIT_WARNING)
                return

            current = current + [
                Message(role="assistant", content="".join(segment)),
                Message(role="user", content=CONTINUE_PROMPT),
            ]
            yield ContentEvent(CONTINUATION_MARKER)

    # ------------------------------------------------------------------
    # Non-streaming requests
    # ------------------------------------------------------------------

    async def _post(self, body: dict) -> dict:
        try:
            async with self._http() as client:
                resp = await client.post(
                    self.config.chat_url,
                    json=body,
                    headers=self._build_headers(stream=False),
                )
        except httpx.HTTPError as exc:
            raise ProviderError(f"{type(exc).__name__}: {exc}") from exc

        if not resp.is_success:
            raise ProviderError(
                f"API Error: {resp.status_code} - {_error_message(resp)}",
                status=resp.status_code,
            )
        try:
            return resp.json()
        except ValueError as exc:
            raise ProviderError(f"Invalid JSON from provider: {exc}") from exc

    async def complete(
        self,
        messages: list[Message],
        *,
        model: str | None = None,
        temperature: float = 0.1,
        max_tokens: int = 300,
    ) -> str:
        """Return the text of a single non-streaming completion."""
        data = await self._post(
            {
                "model": model or self.config.model,
                "messages": [m.to_wire() for m in messages],
                "temperature": temperature,
                "max_tokens": max_tokens,
                "stream": False,
            }
        )
        choices = data.get("choices") or []
        if not choices:
            return ""
        return (choices[0].get("message") or {}).get("content") or ""

    async def web_search(self, query: str) -> list[WebSearchResult]:
        """
        Run the provider's web search tool for *query*.

        Failures are logged and produce an empty list.
        """
        logger.info("Web search: %r using %s", query[:100], self.config.search_engine)
        try:
            data = await self._post(
                {
                    "model": self.config.model,
                    "messages": [{"role": "user", "content": query}],
                    "tools": [self.web_search_tool()],
                    "stream": False,
                }
            )
        except ProviderError as exc:
            logger.error("Web search failed: %s", exc)
            return []

        results = parse_web_search_results(data)
        logger.info("Web search returned %d results", len(results))
        return results

    async def test_connection(self) -> bool:
        try:
            await self._post(
                {
                    "model": self.config.model,
                    "messages": [{"role": "user", "content": "Hello"}],
                    "max_tokens": 10,
                    "stream": False,
                }
            )
        except ProviderError as exc:
            logger.error("Connection test failed: %s", exc)
            return False
        logger.info("Connection test successful")
        return True


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _pick(value, default):
    return default if value is None else value


def _last_user_content(messages: list[Message]) -> str:
    for m in reversed(messages):
        if m.role == "user":
            return m.content or ""
    return ""


def _error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except (ValueError, json.JSONDecodeError):
        return response.reason_phrase
    if isinstance(data, dict):
        err = data.get("error")
        if isinstance(err, dict) and err.get("message"):
            return str(err["message"])
    return response.reason_phrase


def _result_from(item: dict) -> WebSearchResult:
    return WebSearchResult(
        title=item.get("title") or "",
        link=item.get("link") or item.get("url") or "",
        content=item.get("content") or item.get("snippet") or "",
        media=item.get("media"),
        icon=item.get("icon"),
    )


def parse_web_search_results(data: dict) -> list[WebSearchResult]:
    """Collect search results from every response shape the provider uses."""
    results: list[WebSearchResult] = []

    choices = data.get("choices") or []
    message = (choices[0].get("message") or {}) if choices else {}
    for tc in message.get("tool_calls") or []:
        if tc.get("type") == "web_browser":
            for output in (tc.get("web_browser") or {}).get("outputs") or []:
                results.append(_result_from(output))
        if tc.get("type") == "web_search":
            for item in (tc.get("web_search") or {}).get("search_result") or []:
                results.append(_result_from(item))

    top_level = data.get("web_search")
    if isinstance(top_level, list):
        results.extend(_result_from(item) for item in top_level)

    return results
