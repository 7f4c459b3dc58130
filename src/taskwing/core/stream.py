"""Streaming observability bus.

Agents, tools and the model client report lifecycle events here; the
CLI and tests observe them.  ``emit`` never blocks: when the bounded
queue is full the event is dropped from the queue, and once the stream
is closed it is dropped entirely.  Observers see every event emitted
before close, each receiving its own copy in its own task.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from enum import Enum
from typing import Any, AsyncIterator, Callable, Optional

from pydantic import BaseModel, Field
from rich.console import Console
from rich.markup import escape

from .debug_log import sanitize

log = logging.getLogger(__name__)

DEFAULT_BUFFER = 100


class StreamEventType(str, Enum):
    AGENT_START = "agent_start"
    AGENT_END = "agent_end"
    AGENT_ERROR = "agent_error"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    LLM_CHUNK = "llm_chunk"
    FINDING = "finding"
    SYNTHESIS = "synthesis"
    NODE_START = "node_start"
    NODE_END = "node_end"


class StreamEvent(BaseModel):
    type: StreamEventType
    timestamp: float = Field(default_factory=time.time)
    agent: str = ""
    content: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)


Observer = Callable[[StreamEvent], Any]


class StreamingOutput:
    """Bounded queue of ``StreamEvent`` plus a set of observers."""

    def __init__(self, buffer: int = DEFAULT_BUFFER) -> None:
        self.buffer = buffer
        self._queue: asyncio.Queue[Optional[StreamEvent]] = asyncio.Queue(maxsize=buffer)
        self._observers: list[Observer] = []
        self._closed = False
        self._tasks: set[asyncio.Task] = set()
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def add_observer(self, observer: Observer) -> None:
        self._observers.append(observer)

    # ── Emission ──────────────────────────────────────────────────────

    def emit(self, event: StreamEvent) -> bool:
        """Notify observers and queue *event*.  Returns ``False`` if not queued."""
        if self._closed:
            self.dropped += 1
            return False
        event.metadata = sanitize(event.metadata)
        for observer in list(self._observers):
            self._notify(observer, event.model_copy(deep=True))
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            log.debug("Stream buffer full; dropping %s event", event.type.value)
            return False
        return True

    def _notify(self, observer: Observer, event: StreamEvent) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        if loop is None:
            try:
                result = observer(event)
                if inspect.isawaitable(result):
                    asyncio.run(result)
            except Exception:
                log.exception("Stream observer failed")
            return

        async def _run() -> None:
            try:
                result = observer(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                log.exception("Stream observer failed")

        task = loop.create_task(_run())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _emit(self, etype: StreamEventType, agent: str, content: str,
              metadata: dict[str, Any] | None = None) -> bool:
        return self.emit(StreamEvent(type=etype, agent=agent, content=content,
                                     metadata=dict(metadata or {})))

    def emit_agent_start(self, agent: str, content: str = "", metadata: dict[str, Any] | None = None) -> bool:
        return self._emit(StreamEventType.AGENT_START, agent, content, metadata)

    def emit_agent_end(self, agent: str, content: str = "", metadata: dict[str, Any] | None = None) -> bool:
        return self._emit(StreamEventType.AGENT_END, agent, content, metadata)

    def emit_agent_error(self, agent: str, content: str, metadata: dict[str, Any] | None = None) -> bool:
        return self._emit(StreamEventType.AGENT_ERROR, agent, content, metadata)

    def emit_tool_call(self, agent: str, content: str, metadata: dict[str, Any] | None = None) -> bool:
        return self._emit(StreamEventType.TOOL_CALL, agent, content, metadata)

    def emit_tool_result(self, agent: str, content: str, metadata: dict[str, Any] | None = None) -> bool:
        return self._emit(StreamEventType.TOOL_RESULT, agent, content, metadata)

    def emit_llm_chunk(self, agent: str, content: str) -> bool:
        return self._emit(StreamEventType.LLM_CHUNK, agent, content)

    def emit_finding(self, agent: str, content: str, metadata: dict[str, Any] | None = None) -> bool:
        return self._emit(StreamEventType.FINDING, agent, content, metadata)

    def emit_synthesis(self, agent: str, content: str, metadata: dict[str, Any] | None = None) -> bool:
        return self._emit(StreamEventType.SYNTHESIS, agent, content, metadata)

    def emit_node_start(self, agent: str, content: str, metadata: dict[str, Any] | None = None) -> bool:
        return self._emit(StreamEventType.NODE_START, agent, content, metadata)

    def emit_node_end(self, agent: str, content: str, metadata: dict[str, Any] | None = None) -> bool:
        return self._emit(StreamEventType.NODE_END, agent, content, metadata)

    # ── Consumption ───────────────────────────────────────────────────

    def drain(self) -> list[StreamEvent]:
        """Pop every queued event without waiting."""
        events: list[StreamEvent] = []
        while True:
            try:
                item = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return events
            if item is not None:
                events.append(item)

    async def events(self) -> AsyncIterator[StreamEvent]:
        """Yield events until the stream is closed and drained."""
        while True:
            item = await self._queue.get()
            if item is None:
                return
            yield item

    async def wait_observers(self) -> None:
        """Wait for in-flight observer tasks (useful in tests)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def close(self) -> None:
        """One-shot close; later emits are dropped.  Idempotent."""
        if self._closed:
            return
        self._closed = True
        if self._queue.full():
            try:
                self._queue.get_nowait()
                self.dropped += 1
            except asyncio.QueueEmpty:
                pass
        self._queue.put_nowait(None)


# ---------------------------------------------------------------------------
# Lifecycle → stream adapter
# ---------------------------------------------------------------------------

def _truncate(text: str, limit: int) -> str:
    text = text.replace("\n", " ")
    return text if len(text) <= limit else text[:limit] + "..."


class StreamingCallbackHandler:
    """Maps agent, tool and node lifecycle hooks onto stream events.

    Node hooks turn model-client internals into short activity strings
    ("Calling LLM (gpt-4o-mini)", "Using tools...") for live display.
    """

    def __init__(self, stream: StreamingOutput | None, agent: str) -> None:
        self.stream = stream
        self.agent = agent
        self._started = time.perf_counter()

    def on_start(self) -> None:
        self._started = time.perf_counter()
        if self.stream:
            self.stream.emit_agent_start(self.agent, f"Agent {self.agent} starting")

    def on_end(self, metadata: dict[str, Any] | None = None) -> None:
        elapsed = time.perf_counter() - self._started
        if self.stream:
            meta = dict(metadata or {})
            meta["duration_ms"] = round(elapsed * 1000, 1)
            self.stream.emit_agent_end(
                self.agent, f"Agent {self.agent} completed in {elapsed:.2f}s", meta,
            )

    def on_error(self, exc: BaseException | str) -> None:
        if self.stream:
            self.stream.emit_agent_error(self.agent, str(exc))

    def on_tool_call(self, tool: str, arguments: str) -> None:
        if self.stream:
            self.stream.emit_tool_call(
                self.agent, f"{tool}({_truncate(arguments, 50)})", {"tool": tool},
            )

    def on_tool_result(self, tool: str, result: str) -> None:
        if self.stream:
            self.stream.emit_tool_result(self.agent, _truncate(result, 120), {"tool": tool})

    def on_llm_chunk(self, chunk: str) -> None:
        if self.stream and chunk:
            self.stream.emit_llm_chunk(self.agent, chunk)

    def on_node_start(self, node_name: str, node_type: str, model: str = "") -> None:
        if not self.stream:
            return
        self.stream.emit_node_start(
            self.agent,
            describe_node(node_name, node_type, model),
            {"node_name": node_name, "node_type": node_type},
        )

    def on_node_end(self, node_name: str, node_type: str,
                    usage: dict[str, Any] | None = None) -> None:
        if not self.stream:
            return
        meta: dict[str, Any] = {"node_name": node_name, "node_type": node_type}
        content = f"{node_name} done"
        if usage:
            meta.update(usage)
            total = usage.get("total_tokens")
            if total:
                content = f"{node_name} done ({total} tokens)"
        self.stream.emit_node_end(self.agent, content, meta)


def describe_node(node_name: str, node_type: str, model: str = "") -> str:
    """User-facing activity string for a node lifecycle hook."""
    lowered = node_name.lower()
    if node_type == "ChatModel":
        return f"Calling LLM ({model})" if model else "Calling LLM..."
    if node_type == "Lambda":
        if "prompt" in lowered or "template" in lowered:
            return "Preparing prompt..."
        if "model" in lowered:
            return "Thinking..."
        if "parser" in lowered or "parse" in lowered:
            return "Processing response..."
        return "Processing..."
    if node_type == "ToolsNode":
        return "Using tools..."
    if node_type == "Retriever":
        return "Searching..."
    return f"{node_name}..." if node_name else "Analyzing..."


# ---------------------------------------------------------------------------
# Consumers
# ---------------------------------------------------------------------------

_CONSOLE_STYLES: dict[StreamEventType, tuple[str, str]] = {
    StreamEventType.AGENT_START: ("▶", "bold blue"),
    StreamEventType.AGENT_END: ("✓", "green"),
    StreamEventType.AGENT_ERROR: ("✗", "red"),
    StreamEventType.TOOL_CALL: ("→", "dim"),
    StreamEventType.FINDING: ("◆", "cyan"),
    StreamEventType.SYNTHESIS: ("◆", "magenta"),
}


def console_observer(console: Console) -> Observer:
    """Print lifecycle events on a rich console; chunks and node hooks are skipped."""

    def _print(event: StreamEvent) -> None:
        style = _CONSOLE_STYLES.get(event.type)
        if style is None:
            return
        marker, colour = style
        console.print(f"[{colour}]{marker}[/] [bold]{escape(event.agent)}[/] {escape(event.content)}", highlight=False)

    return _print


async def consume(stream: StreamingOutput) -> int:
    """Drain *stream* until it closes, logging each event at debug level."""
    seen = 0
    async for event in stream.events():
        seen += 1
        log.debug("stream %s [%s] %s", event.type.value, event.agent, event.content)
    return seen
