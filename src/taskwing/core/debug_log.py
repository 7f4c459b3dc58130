"""Structured JSONL debug logger with redaction and phase timing.

One record per line is appended to ``.taskwing/logs/debug-<stamp>.log``
(mode 0600) and, optionally, mirrored to stderr.  ``debug-latest.log``
is kept as a symlink to the current file and only the newest
``retention_count`` files survive ``close()``.

Usage::

    dlog = DebugLogger(".taskwing/logs", component="bootstrap")
    done = dlog.start_phase("gather", {"files": 12})
    ...
    done()            # phase_end with duration_ms
    done(exc)         # phase_error instead
    dlog.close()
"""

from __future__ import annotations

import json
import logging
import os
import re
import sys
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional, TextIO

log = logging.getLogger(__name__)

REDACTED = "***REDACTED***"
SENSITIVE_KEY_RE = re.compile(r"key|token|secret|password|credential|auth", re.IGNORECASE)

LATEST_LINK = "debug-latest.log"
LOG_PREFIX = "debug-"
LOG_SUFFIX = ".log"

LEVELS = ("debug", "info", "warn", "error")


# ---------------------------------------------------------------------------
# Redaction
# ---------------------------------------------------------------------------

def is_sensitive_key(key: str) -> bool:
    return bool(SENSITIVE_KEY_RE.search(str(key)))


def sanitize(value: Any) -> Any:
    """Return a copy of *value* with secret-looking mapping values masked.

    Walks nested dicts, lists and tuples.  Only values stored under a
    sensitive key are replaced; the keys themselves are kept.
    """
    if isinstance(value, dict):
        out: dict[Any, Any] = {}
        for k, v in value.items():
            if is_sensitive_key(k) and v not in (None, ""):
                out[k] = REDACTED
            else:
                out[k] = sanitize(v)
        return out
    if isinstance(value, (list, tuple)):
        return [sanitize(v) for v in value]
    return value


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds").replace("+00:00", "Z")


def log_file_name(now: datetime | None = None) -> str:
    now = now or datetime.now(timezone.utc)
    return f"{LOG_PREFIX}{now.strftime('%Y%m%dT%H%M%SZ')}{LOG_SUFFIX}"


def prune_log_files(directory: str | Path, keep: int) -> list[Path]:
    """Delete all but the newest *keep* debug logs; return removed paths."""
    directory = Path(directory)
    if keep < 0 or not directory.is_dir():
        return []
    logs = sorted(
        (p for p in directory.glob(f"{LOG_PREFIX}*{LOG_SUFFIX}")
         if p.name != LATEST_LINK and not p.is_symlink()),
        key=lambda p: p.name,
        reverse=True,
    )
    removed: list[Path] = []
    for stale in logs[keep:]:
        try:
            stale.unlink()
            removed.append(stale)
        except OSError as exc:
            log.debug("Could not prune %s: %s", stale.name, exc)
    return removed


# ---------------------------------------------------------------------------
# Shared sink
# ---------------------------------------------------------------------------

class _Sink:
    """File handle + lock shared between a logger and its children."""

    def __init__(self, path: Path | None, stderr: TextIO | None) -> None:
        self.path = path
        self.stderr = stderr
        self.lock = threading.Lock()
        self.fh: TextIO | None = None
        if path is not None:
            fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o600)
            self.fh = os.fdopen(fd, "a", encoding="utf-8", buffering=1)

    def write(self, line: str) -> None:
        with self.lock:
            if self.fh is not None and not self.fh.closed:
                self.fh.write(line + "\n")
            if self.stderr is not None:
                self.stderr.write(line + "\n")

    def flush(self) -> None:
        with self.lock:
            if self.fh is not None and not self.fh.closed:
                self.fh.flush()

    def close(self) -> None:
        with self.lock:
            if self.fh is not None and not self.fh.closed:
                self.fh.flush()
                self.fh.close()


# ---------------------------------------------------------------------------
# Logger
# ---------------------------------------------------------------------------

class DebugLogger:
    """JSONL logger bound to a component name.

    Parameters
    ----------
    output_dir : str | Path | None
        Directory for log files; ``None`` disables the file sink.
    enable_stderr : bool
        Mirror every record to stderr.
    retention_count : int
        Number of log files kept by ``close()``.
    component : str
        Default ``component`` field of every record.
    """

    def __init__(
        self,
        output_dir: str | Path | None = ".taskwing/logs",
        *,
        enable_stderr: bool = False,
        retention_count: int = 5,
        component: str = "bootstrap",
        _sink: _Sink | None = None,
    ) -> None:
        self.component = component
        self.retention_count = retention_count
        self.output_dir = Path(output_dir) if output_dir is not None else None
        self._owner = _sink is None
        if _sink is not None:
            self._sink = _sink
            return

        path: Path | None = None
        if self.output_dir is not None:
            self.output_dir.mkdir(parents=True, exist_ok=True)
            path = self.output_dir / log_file_name()
        self._sink = _Sink(path, sys.stderr if enable_stderr else None)
        if path is not None:
            self._update_latest_link(path)

    @property
    def path(self) -> Path | None:
        return self._sink.path

    def _update_latest_link(self, target: Path) -> None:
        link = target.parent / LATEST_LINK
        try:
            if link.is_symlink() or link.exists():
                link.unlink()
            link.symlink_to(target.name)
        except OSError as exc:
            log.debug("Could not update %s: %s", LATEST_LINK, exc)

    # ── Core writer ───────────────────────────────────────────────────

    def log(
        self,
        level: str,
        event: str,
        message: str,
        *,
        metadata: dict[str, Any] | None = None,
        duration_ms: float | None = None,
        agent: str = "",
        phase: str = "",
        error: str = "",
    ) -> None:
        record: dict[str, Any] = {
            "timestamp": _utc_now(),
            "level": level if level in LEVELS else "info",
            "component": self.component,
            "event": event,
            "message": message,
        }
        if duration_ms is not None:
            record["duration_ms"] = round(duration_ms, 3)
        if metadata:
            record["metadata"] = sanitize(metadata)
        if agent:
            record["agent"] = agent
        if phase:
            record["phase"] = phase
        if error:
            record["error"] = error

        try:
            line = json.dumps(record, default=str, ensure_ascii=False)
        except (TypeError, ValueError) as exc:
            line = json.dumps({
                "timestamp": record["timestamp"],
                "level": "error",
                "component": self.component,
                "event": "log_marshal_error",
                "message": f"failed to serialise record for {event}: {exc}",
            })
        self._sink.write(line)

    def debug(self, event: str, message: str, metadata: dict[str, Any] | None = None) -> None:
        self.log("debug", event, message, metadata=metadata)

    def info(self, event: str, message: str, metadata: dict[str, Any] | None = None) -> None:
        self.log("info", event, message, metadata=metadata)

    def warn(self, event: str, message: str, metadata: dict[str, Any] | None = None) -> None:
        self.log("warn", event, message, metadata=metadata)

    def error(self, event: str, message: str, metadata: dict[str, Any] | None = None) -> None:
        self.log("error", event, message, metadata=metadata)

    def error_with_exc(
        self,
        event: str,
        message: str,
        exc: BaseException | None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        self.log("error", event, message, metadata=metadata, error=str(exc) if exc else "")

    # ── Derived loggers ───────────────────────────────────────────────

    def with_component(self, component: str) -> "DebugLogger":
        """A logger writing to the same file under another component name."""
        return DebugLogger(
            self.output_dir,
            retention_count=self.retention_count,
            component=component,
            _sink=self._sink,
        )

    def with_agent(self, agent: str) -> "AgentLogger":
        return AgentLogger(self, agent)

    # ── Phases ────────────────────────────────────────────────────────

    def start_phase(
        self,
        phase: str,
        metadata: dict[str, Any] | None = None,
    ) -> Callable[[Optional[BaseException]], None]:
        """Log ``phase_start`` and return a completer.

        Calling the completer with no argument logs ``phase_end`` with the
        measured duration; passing an exception logs ``phase_error``.
        """
        started = time.perf_counter()
        self.log("debug", "phase_start", f"Starting {phase}", metadata=metadata, phase=phase)

        def complete(err: Optional[BaseException] = None) -> None:
            elapsed = (time.perf_counter() - started) * 1000
            if err is not None:
                meta = dict(metadata or {})
                meta["error"] = str(err)
                self.log(
                    "error", "phase_error", f"Phase {phase} failed",
                    metadata=meta, duration_ms=elapsed, phase=phase, error=str(err),
                )
            else:
                self.log(
                    "debug", "phase_end", f"Completed {phase}",
                    metadata=metadata, duration_ms=elapsed, phase=phase,
                )

        return complete

    # ── stdlib logging bridge ─────────────────────────────────────────

    def attach_to(self, target: logging.Logger, level: int = logging.DEBUG) -> logging.Handler:
        """Forward records from a stdlib logger into this JSONL file."""
        handler = DebugLogHandler(self, level=level)
        target.addHandler(handler)
        return handler

    # ── Shutdown ──────────────────────────────────────────────────────

    def flush(self) -> None:
        self._sink.flush()

    def close(self) -> None:
        """Flush, close the file and prune old logs."""
        if not self._owner:
            self._sink.flush()
            return
        self._sink.close()
        if self.output_dir is not None:
            prune_log_files(self.output_dir, self.retention_count)


class AgentLogger:
    """Thin view of a ``DebugLogger`` that stamps every record with an agent."""

    def __init__(self, parent: DebugLogger, agent: str) -> None:
        self._parent = parent
        self.agent = agent

    def info(self, event: str, message: str, metadata: dict[str, Any] | None = None) -> None:
        self._parent.log("info", event, message, metadata=metadata, agent=self.agent)

    def debug(self, event: str, message: str, metadata: dict[str, Any] | None = None) -> None:
        self._parent.log("debug", event, message, metadata=metadata, agent=self.agent)

    def error(
        self,
        event: str,
        message: str,
        exc: BaseException | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        self._parent.log(
            "error", event, message, metadata=metadata, agent=self.agent,
            error=str(exc) if exc else "",
        )


_LEVEL_NAMES = {
    logging.DEBUG: "debug",
    logging.INFO: "info",
    logging.WARNING: "warn",
    logging.ERROR: "error",
    logging.CRITICAL: "error",
}


class DebugLogHandler(logging.Handler):
    """``logging.Handler`` that writes records through a ``DebugLogger``."""

    def __init__(self, target: DebugLogger, level: int = logging.DEBUG) -> None:
        super().__init__(level)
        self.target = target

    def emit(self, record: logging.LogRecord) -> None:
        try:
            message = record.getMessage()
            error = ""
            if record.exc_info and record.exc_info[1] is not None:
                error = str(record.exc_info[1])
            self.target.log(
                _LEVEL_NAMES.get(record.levelno, "info"),
                "log",
                message,
                metadata={"logger": record.name},
                error=error,
            )
        except Exception:
            self.handleError(record)
