"""
Assembles streamed tool-call deltas into complete ``ToolCall`` objects.

Providers stream one call as several deltas sharing an ``index``:

  - the first carries ``id`` and ``name`` (arguments usually empty);
  - the rest carry only argument text fragments.

Fragments are buffered per index and concatenated.  A delta with a new
``id`` on an index that already has one starts a separate call, so
providers that send complete calls without an index still work.

Arguments stay raw text; parsing happens when the call is executed.
"""

from __future__ import annotations

from dataclasses import dataclass

from aicore.llm.types import ToolCall


@dataclass
class _Buffer:
    index: int
    id: str = ""
    name: str = ""
    arguments: str = ""


class ToolCallAssembler:
    """Buffers tool-call deltas and returns finished calls on ``flush``."""

    def __init__(self) -> None:
        self._buffers: list[_Buffer] = []
        self._open: dict[int, _Buffer] = {}

    def feed(self, delta: ToolCall) -> None:
        """Add one streamed delta to the buffer for its index."""
        buf = self._open.get(delta.index)
        if buf is None or (delta.id and buf.id and delta.id != buf.id):
            buf = _Buffer(index=delta.index)
            self._open[delta.index] = buf
            self._buffers.append(buf)

        if delta.id and not buf.id:
            buf.id = delta.id
        if delta.name:
            buf.name += delta.name
        if delta.arguments:
            buf.arguments += delta.arguments

    def flush(self) -> list[ToolCall]:
        """Return every buffered call in arrival order and clear the buffers."""
        calls = [
            ToolCall(
                id=buf.id or f"call_{buf.index}",
                name=buf.name.strip(),
                arguments=buf.arguments,
                index=buf.index,
            )
            for buf in self._buffers
        ]
        self.reset()
        return calls

    def reset(self) -> None:
        """Discard all accumulated state."""
        self._buffers.clear()
        self._open.clear()
