"""Bounded activity log persisted to ``.taskwing/activity.json``.

Keeps the newest ``max_entries`` actions of the core (file changes,
agent runs, findings, errors) in memory.  Every addition hands a copy
of the ring to a background writer, so the lock is never held during
disk I/O.  The file is rewritten atomically (temp file + rename).
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from .debug_log import sanitize

log = logging.getLogger(__name__)

DEFAULT_MAX_ENTRIES = 500

ENTRY_FILE_CHANGE = "file_change"
ENTRY_AGENT_RUN = "agent_run"
ENTRY_FINDING = "finding"
ENTRY_ERROR = "error"


class ActivityEntry(BaseModel):
    id: int = 0
    timestamp: str = ""
    type: str
    agent: str = ""
    category: str = ""
    path: str = ""
    message: str = ""
    details: dict[str, Any] = Field(default_factory=dict)


def _parse_ts(value: str) -> datetime | None:
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (ValueError, AttributeError):
        return None


class ActivityLog:
    """Ring buffer of ``ActivityEntry`` with async persistence.

    Parameters
    ----------
    path : str | Path | None
        JSON file to persist to; ``None`` keeps the log in memory only.
    max_entries : int
        Cap on the in-memory ring (and the persisted array).
    """

    def __init__(self, path: str | Path | None, max_entries: int = DEFAULT_MAX_ENTRIES) -> None:
        self.path = Path(path) if path is not None else None
        self.max_entries = max(1, max_entries)
        self._entries: list[ActivityEntry] = []
        self._lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._last_id = 0
        self._seq = 0
        self._written_seq = 0
        self._pending: set[asyncio.Task] = set()
        self.load()

    # ── Persistence ───────────────────────────────────────────────────

    def load(self) -> None:
        if self.path is None or not self.path.is_file():
            return
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8") or "[]")
        except (OSError, json.JSONDecodeError) as exc:
            log.warning("Ignoring unreadable activity log: %s", exc)
            return
        entries: list[ActivityEntry] = []
        for item in raw if isinstance(raw, list) else []:
            try:
                entries.append(ActivityEntry(**item))
            except (TypeError, ValueError):
                continue
        with self._lock:
            self._entries = entries[-self.max_entries:]
            if self._entries:
                self._last_id = max(e.id for e in self._entries)

    def _write(self, seq: int, snapshot: list[dict[str, Any]]) -> None:
        if self.path is None:
            return
        with self._write_lock:
            if seq < self._written_seq:
                return
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.path.with_suffix(self.path.suffix + ".tmp")
            tmp.write_text(json.dumps(snapshot, indent=2), encoding="utf-8")
            os.replace(tmp, self.path)
            self._written_seq = seq

    def _persist(self, seq: int, snapshot: list[dict[str, Any]]) -> None:
        if self.path is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        if loop is None:
            try:
                self._write(seq, snapshot)
            except OSError as exc:
                log.warning("Failed to persist activity log: %s", exc)
            return

        async def _save() -> None:
            try:
                await asyncio.to_thread(self._write, seq, snapshot)
            except OSError as exc:
                log.warning("Failed to persist activity log: %s", exc)

        task = loop.create_task(_save())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def flush(self) -> None:
        """Wait until every scheduled write has finished."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # ── Writers ───────────────────────────────────────────────────────

    def add_entry(self, entry: ActivityEntry) -> ActivityEntry:
        entry = entry.model_copy(deep=True)
        entry.details = sanitize(entry.details)
        with self._lock:
            self._last_id = max(self._last_id + 1, time.time_ns())
            entry.id = self._last_id
            entry.timestamp = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
            self._entries.append(entry)
            if len(self._entries) > self.max_entries:
                del self._entries[: len(self._entries) - self.max_entries]
            self._seq += 1
            seq = self._seq
            snapshot = [e.model_dump() for e in self._entries]
        self._persist(seq, snapshot)
        return entry

    def log_file_change(self, path: str, operation: str, category: str) -> ActivityEntry:
        return self.add_entry(ActivityEntry(
            type=ENTRY_FILE_CHANGE,
            category=category,
            path=path,
            message=f"{operation}: {path}",
            details={"operation": operation},
        ))

    def log_agent_run(
        self,
        agent: str,
        findings: int,
        duration: float,
        error: BaseException | str | None = None,
    ) -> ActivityEntry:
        if error:
            return self.add_entry(ActivityEntry(
                type=ENTRY_ERROR,
                agent=agent,
                message=f"{agent} error: {error}",
                details={"error": str(error)},
            ))
        return self.add_entry(ActivityEntry(
            type=ENTRY_AGENT_RUN,
            agent=agent,
            message=f"{agent} completed: {findings} findings in {duration:.1f}s",
            details={"findings": findings, "duration_ms": round(duration * 1000)},
        ))

    def log_agent_start(self, agent: str, files: int) -> ActivityEntry:
        return self.add_entry(ActivityEntry(
            type=ENTRY_AGENT_RUN,
            agent=agent,
            message=f"{agent} started: {files} file(s)",
            details={"status": "started", "files": files},
        ))

    def log_finding(self, agent: str, finding_type: str, title: str) -> ActivityEntry:
        return self.add_entry(ActivityEntry(
            type=ENTRY_FINDING,
            agent=agent,
            message=title,
            details={"finding_type": finding_type},
        ))

    def log_error(self, agent: str, message: str) -> ActivityEntry:
        return self.add_entry(ActivityEntry(type=ENTRY_ERROR, agent=agent, message=message))

    def clear(self) -> None:
        with self._lock:
            self._entries = []
            self._seq += 1
            seq = self._seq
        self._persist(seq, [])

    # ── Readers ───────────────────────────────────────────────────────

    def get_recent(self, n: int = 20) -> list[ActivityEntry]:
        """Newest-first copies of the last *n* entries."""
        with self._lock:
            picked = self._entries[-n:] if n > 0 else []
            return [e.model_copy(deep=True) for e in reversed(picked)]

    def get_since(self, since: datetime | str) -> list[ActivityEntry]:
        """Entries strictly newer than *since*, oldest first."""
        cutoff = _parse_ts(since) if isinstance(since, str) else since
        if cutoff is None:
            return []
        if cutoff.tzinfo is None:
            cutoff = cutoff.replace(tzinfo=timezone.utc)
        with self._lock:
            out = []
            for e in self._entries:
                ts = _parse_ts(e.timestamp)
                if ts is not None and ts > cutoff:
                    out.append(e.model_copy(deep=True))
            return out

    def count(self) -> int:
        with self._lock:
            return len(self._entries)

    def __len__(self) -> int:
        return self.count()

    def summary(self) -> dict[str, Any]:
        with self._lock:
            entries = list(self._entries)
        counts = {ENTRY_FILE_CHANGE: 0, ENTRY_AGENT_RUN: 0, ENTRY_FINDING: 0, ENTRY_ERROR: 0}
        for e in entries:
            if e.type in counts:
                counts[e.type] += 1
        return {
            "total_entries": len(entries),
            "file_changes": counts[ENTRY_FILE_CHANGE],
            "agent_runs": counts[ENTRY_AGENT_RUN],
            "findings": counts[ENTRY_FINDING],
            "errors": counts[ENTRY_ERROR],
            "oldest_entry": entries[0].timestamp if entries else None,
            "newest_entry": entries[-1].timestamp if entries else None,
        }
