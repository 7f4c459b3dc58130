"""Live-update notifier for finding changes.

Subscribers implement ``on_finding_added``, ``on_finding_updated``,
``on_finding_removed`` and ``on_batch_complete`` (sync or async).  Each
notification is fanned out as one task per subscriber with its own
deadline, so a slow or failing subscriber never delays the others.  The
last 100 notifications are retained for late subscribers.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import threading
import time
from collections import deque
from typing import Any, Callable, Protocol

from pydantic import BaseModel, Field

from .models import Finding
from .stream import StreamingOutput

log = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 5.0
HISTORY_SIZE = 100

NOTIFY_ADDED = "finding_added"
NOTIFY_UPDATED = "finding_updated"
NOTIFY_REMOVED = "finding_removed"
NOTIFY_BATCH = "batch_complete"


class MCPBatchSummary(BaseModel):
    """Summary sent to subscribers when a findings batch has been stored."""

    agent_name: str
    total_findings: int = 0
    new_findings: int = 0
    updated_count: int = 0
    duration: float = 0.0
    timestamp: float = Field(default_factory=time.time)


class Notification(BaseModel):
    type: str
    timestamp: float = Field(default_factory=time.time)
    payload: dict[str, Any] = Field(default_factory=dict)


class FindingSubscriber(Protocol):
    def on_finding_added(self, finding: Finding) -> Any: ...
    def on_finding_updated(self, finding: Finding) -> Any: ...
    def on_finding_removed(self, finding_id: str) -> Any: ...
    def on_batch_complete(self, summary: MCPBatchSummary) -> Any: ...


class LiveUpdateNotifier:
    """Fan-out of finding notifications with per-subscriber deadlines."""

    def __init__(self, timeout: float = DEFAULT_TIMEOUT, history: int = HISTORY_SIZE) -> None:
        self.timeout = timeout
        self._subscribers: list[FindingSubscriber] = []
        self._lock = threading.Lock()
        self._history: deque[Notification] = deque(maxlen=history)
        self._tasks: set[asyncio.Task] = set()
        self._stream: StreamingOutput | None = None

    # ── Subscription ──────────────────────────────────────────────────

    def subscribe(self, subscriber: FindingSubscriber) -> None:
        with self._lock:
            self._subscribers.append(subscriber)

    def unsubscribe(self, subscriber: FindingSubscriber) -> None:
        with self._lock:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def attach_stream(self, stream: StreamingOutput | None) -> None:
        """Mirror notifications onto a stream as ``finding``/``synthesis`` events."""
        self._stream = stream

    def get_recent_notifications(self, count: int = 10) -> list[Notification]:
        with self._lock:
            items = list(self._history)
        return items[-count:] if count > 0 else []

    # ── Notifications ─────────────────────────────────────────────────

    def notify_finding_added(self, finding: Finding) -> None:
        self._record(NOTIFY_ADDED, {"id": finding.id, "title": finding.title,
                                    "type": finding.type.value})
        if self._stream:
            self._stream.emit_finding(
                finding.source_agent, finding.title,
                {"finding_id": finding.id, "finding_type": finding.type.value, "change": "added"},
            )
        self._fan_out("on_finding_added", finding)

    def notify_finding_updated(self, finding: Finding) -> None:
        self._record(NOTIFY_UPDATED, {"id": finding.id, "title": finding.title,
                                      "type": finding.type.value})
        if self._stream:
            self._stream.emit_finding(
                finding.source_agent, finding.title,
                {"finding_id": finding.id, "finding_type": finding.type.value, "change": "updated"},
            )
        self._fan_out("on_finding_updated", finding)

    def notify_finding_removed(self, finding_id: str) -> None:
        self._record(NOTIFY_REMOVED, {"id": finding_id})
        self._fan_out("on_finding_removed", finding_id)

    def notify_batch_complete(self, summary: MCPBatchSummary) -> None:
        self._record(NOTIFY_BATCH, summary.model_dump())
        if self._stream:
            self._stream.emit_synthesis(
                summary.agent_name,
                f"{summary.new_findings} new, {summary.updated_count} updated "
                f"({summary.total_findings} total)",
                summary.model_dump(),
            )
        self._fan_out("on_batch_complete", summary)

    def _record(self, ntype: str, payload: dict[str, Any]) -> None:
        with self._lock:
            self._history.append(Notification(type=ntype, payload=payload))

    def _fan_out(self, method: str, arg: Any) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        if not subscribers:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        for sub in subscribers:
            payload = arg.model_copy(deep=True) if isinstance(arg, BaseModel) else arg
            if loop is None:
                asyncio.run(self._deliver(sub, method, payload))
                continue
            task = loop.create_task(self._deliver(sub, method, payload))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _deliver(self, sub: FindingSubscriber, method: str, payload: Any) -> None:
        handler = getattr(sub, method, None)
        if handler is None:
            return
        try:
            async def _call() -> None:
                result = handler(payload)
                if inspect.isawaitable(result):
                    await result

            await asyncio.wait_for(_call(), timeout=self.timeout)
        except asyncio.TimeoutError:
            log.warning("Subscriber %s timed out on %s after %.1fs",
                        type(sub).__name__, method, self.timeout)
        except Exception as exc:
            log.warning("Subscriber %s failed on %s: %s", type(sub).__name__, method, exc)

    async def drain(self) -> None:
        """Wait for in-flight deliveries."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


# ---------------------------------------------------------------------------
# Built-in subscribers
# ---------------------------------------------------------------------------

class LoggingSubscriber:
    """Writes every notification to a stdlib logger."""

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self.logger = logger or log

    def on_finding_added(self, finding: Finding) -> None:
        self.logger.info("Finding added: [%s] %s", finding.type.value, finding.title)

    def on_finding_updated(self, finding: Finding) -> None:
        self.logger.info("Finding updated: [%s] %s", finding.type.value, finding.title)

    def on_finding_removed(self, finding_id: str) -> None:
        self.logger.info("Finding removed: %s", finding_id)

    def on_batch_complete(self, summary: MCPBatchSummary) -> None:
        self.logger.info(
            "Batch from %s: %d new, %d updated, %d total in %.2fs",
            summary.agent_name, summary.new_findings, summary.updated_count,
            summary.total_findings, summary.duration,
        )


class JSONSubscriber:
    """Serialises notifications to JSON and passes them to *callback*."""

    def __init__(self, callback: Callable[[str], Any]) -> None:
        self.callback = callback

    def _send(self, ntype: str, data: Any) -> Any:
        return self.callback(json.dumps({"type": ntype, "data": data}, default=str))

    def on_finding_added(self, finding: Finding) -> Any:
        return self._send(NOTIFY_ADDED, finding.model_dump(mode="json"))

    def on_finding_updated(self, finding: Finding) -> Any:
        return self._send(NOTIFY_UPDATED, finding.model_dump(mode="json"))

    def on_finding_removed(self, finding_id: str) -> Any:
        return self._send(NOTIFY_REMOVED, {"id": finding_id})

    def on_batch_complete(self, summary: MCPBatchSummary) -> Any:
        return self._send(NOTIFY_BATCH, summary.model_dump(mode="json"))
