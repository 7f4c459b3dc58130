"""Invocation hooks for tool-server handlers.

Every tool and resource handler reports through a ``ServerHooks``
object instead of logging directly, so the CLI can route the records to
the debug log while tests record them in memory.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from ..core.debug_log import DebugLogger, sanitize
from ..errors import TaskWingError

logger = logging.getLogger(__name__)


class ServerHooks:
    """Default hooks: stdlib logging only."""

    def on_call(self, kind: str, name: str, arguments: dict[str, Any]) -> None:
        logger.debug("%s %s %s", kind, name, sanitize(arguments))

    def on_success(self, kind: str, name: str, duration_ms: float) -> None:
        logger.debug("%s %s ok in %.1fms", kind, name, duration_ms)

    def on_error(self, kind: str, name: str, error: TaskWingError, duration_ms: float) -> None:
        logger.warning("%s %s failed: %s", kind, name, error)


class DebugLogHooks(ServerHooks):
    """Hooks that also write JSONL records to a ``DebugLogger``."""

    def __init__(self, debug_log: DebugLogger) -> None:
        self.debug_log = debug_log.with_component("mcp")

    def on_call(self, kind: str, name: str, arguments: dict[str, Any]) -> None:
        super().on_call(kind, name, arguments)
        self.debug_log.info(f"{kind}_call", name, {"arguments": arguments})

    def on_success(self, kind: str, name: str, duration_ms: float) -> None:
        super().on_success(kind, name, duration_ms)
        self.debug_log.log("info", f"{kind}_ok", name, duration_ms=duration_ms)

    def on_error(self, kind: str, name: str, error: TaskWingError, duration_ms: float) -> None:
        super().on_error(kind, name, error, duration_ms)
        self.debug_log.log(
            "error", f"{kind}_error", name,
            metadata=error.to_dict(), duration_ms=duration_ms, error=str(error),
        )


class RecordingHooks(ServerHooks):
    """Keeps every hook call in ``events``."""

    def __init__(self, inner: Optional[ServerHooks] = None) -> None:
        self.inner = inner
        self.events: list[tuple[str, str, str]] = []

    def on_call(self, kind: str, name: str, arguments: dict[str, Any]) -> None:
        self.events.append(("call", kind, name))
        if self.inner:
            self.inner.on_call(kind, name, arguments)

    def on_success(self, kind: str, name: str, duration_ms: float) -> None:
        self.events.append(("ok", kind, name))
        if self.inner:
            self.inner.on_success(kind, name, duration_ms)

    def on_error(self, kind: str, name: str, error: TaskWingError, duration_ms: float) -> None:
        self.events.append(("error", kind, name))
        if self.inner:
            self.inner.on_error(kind, name, error, duration_ms)
