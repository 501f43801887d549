"""
Recover structured data from free-form model output.

Models asked for JSON routinely wrap it in prose, fence it in markdown,
leave trailing commas or use single quotes.  :func:`extract_json` tries a
fixed sequence of strategies and returns the first value that parses:

  1. the whole text;
  2. each balanced ``{...}`` or ``[...]`` span, left to right;
  3. the same span after a bounded set of textual repairs;
  4. the contents of the first fenced code block.

It never raises; :data:`NOT_FOUND` signals that nothing could be recovered.
"""

from __future__ import annotations

import json
import re
from typing import Any, Iterator


class _NotFound:
    def __repr__(self) -> str:
        return "NOT_FOUND"

    def __bool__(self) -> bool:
        return False


NOT_FOUND: Any = _NotFound()

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)
_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")
_BARE_KEY_RE = re.compile(r"([{,]\s*)([A-Za-z_][A-Za-z0-9_]*)\s*:")

_CONTROL_ESCAPES = {"\n": "\\n", "\r": "\\r", "\t": "\\t"}


def _loads(text: str) -> Any:
    try:
        return json.loads(text)
    except (ValueError, TypeError, RecursionError):
        return NOT_FOUND


def find_json_span(text: str) -> str | None:
    """
    Return the first balanced object/array span, or ``None``.

    Brackets inside string literals are ignored.  Both quote styles open a
    string so that single-quoted pseudo-JSON still balances.
    """
    for span in iter_json_spans(text, limit=1):
        return span
    return None


def iter_json_spans(text: str, limit: int = 8) -> Iterator[str]:
    """Yield up to *limit* balanced spans, left to right, non-overlapping."""
    start = 0
    found = 0
    while found < limit:
        start = _next_opener(text, start)
        if start < 0:
            return
        end = _match_bracket(text, start)
        if end is None:
            start += 1
            continue
        yield text[start : end + 1]
        found += 1
        start = end + 1


def _next_opener(text: str, start: int) -> int:
    positions = [p for p in (text.find("{", start), text.find("[", start)) if p >= 0]
    return min(positions) if positions else -1


def _match_bracket(text: str, start: int) -> int | None:
    stack: list[str] = []
    quote: str | None = None
    escaped = False
    closers = {"{": "}", "[": "]"}

    for i in range(start, len(text)):
        ch = text[i]
        if quote is not None:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == quote:
                quote = None
            continue

        if ch in "\"'":
            quote = ch
        elif ch in closers:
            stack.append(closers[ch])
        elif ch in "}]":
            if not stack or stack.pop() != ch:
                return None
            if not stack:
                return i
    return None


def repair_json(span: str) -> str:
    """Apply the textual fixes for the most common model JSON mistakes."""
    fixed = _TRAILING_COMMA_RE.sub(r"\1", span)
    fixed = _normalize_quotes(fixed)
    fixed = _BARE_KEY_RE.sub(r'\1"\2":', fixed)
    return fixed


def _normalize_quotes(text: str) -> str:
    """
    Rewrite single-quoted strings as double-quoted ones and escape raw
    control characters inside any string literal.
    """
    out: list[str] = []
    quote: str | None = None
    escaped = False

    for ch in text:
        if quote is None:
            if ch in "\"'":
                quote = ch
                out.append('"')
            else:
                out.append(ch)
            continue

        if escaped:
            escaped = False
            # \' is not a valid JSON escape
            out.append("'" if ch == "'" else "\\" + ch)
        elif ch == "\\":
            escaped = True
        elif ch == quote:
            quote = None
            out.append('"')
        elif ch == '"':
            out.append('\\"')
        elif ch in _CONTROL_ESCAPES:
            out.append(_CONTROL_ESCAPES[ch])
        else:
            out.append(ch)

    return "".join(out)


def extract_json(text: str) -> Any:
    """Return the parsed JSON value found in *text*, or :data:`NOT_FOUND`."""
    if not text or not isinstance(text, str):
        return NOT_FOUND

    value = _loads(text)
    if value is not NOT_FOUND:
        return value

    for span in iter_json_spans(text):
        value = _loads(span)
        if value is not NOT_FOUND:
            return value

        value = _loads(repair_json(span))
        if value is not NOT_FOUND:
            return value

    fence = _FENCE_RE.search(text)
    if fence:
        value = _loads(fence.group(1).strip())
        if value is not NOT_FOUND:
            return value

    return NOT_FOUND


def parse_json_object(text: str) -> dict | None:
    """Like :func:`extract_json` but only accepts a JSON object."""
    value = extract_json(text)
    if isinstance(value, dict):
        return value
    return None


# ---------------------------------------------------------------------------
# File path candidates
# ---------------------------------------------------------------------------

_BACKTICK_PATH_RE = re.compile(r"`([^`\n]+\.[A-Za-z0-9]+)`")
_BARE_PATH_RE = re.compile(
    r"(?:^|\s)([./~]?[A-Za-z0-9_\-一-龥/\\.]+\.[A-Za-z0-9]+)(?=\s|$)",
    re.MULTILINE,
)


def extract_file_paths(text: str | None) -> list[str]:
    """
    Collect file paths mentioned in a task result, in first-seen order.

    Backtick-quoted names count when they contain a directory separator;
    bare tokens count when they contain one or start with ``.``.
    """
    if not text:
        return []

    normalized = text.replace("\r", "")
    seen: dict[str, None] = {}

    for match in _BACKTICK_PATH_RE.finditer(normalized):
        path = match.group(1).strip()
        if "/" in path:
            seen.setdefault(path, None)

    for match in _BARE_PATH_RE.finditer(normalized):
        path = match.group(1).strip()
        if "/" in path or path.startswith("."):
            seen.setdefault(path, None)

    return list(seen)
