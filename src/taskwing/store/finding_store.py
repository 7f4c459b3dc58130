"""Finding store — deduplicated findings in ``.taskwing/findings.json``.

``ingest`` is the watch engine's findings handler: findings are keyed by
``Finding.key()`` (normalised title plus producing agent), an existing
key is updated in place and keeps its id, a new key is given one.
Subscribers of the attached notifier hear about every change and then
about the batch as a whole.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Iterable, Optional

from pydantic import ValidationError

from ..core.models import Finding, new_finding_id
from ..core.notifier import LiveUpdateNotifier, MCPBatchSummary
from ..errors import TaskWingError
from ._jsonio import read_json, write_json_atomic

logger = logging.getLogger(__name__)


class FindingStore:
    def __init__(self, path: str | Path, notifier: Optional[LiveUpdateNotifier] = None) -> None:
        self.path = Path(path)
        self.notifier = notifier
        self._lock = threading.Lock()
        self._findings: dict[str, Finding] = {}
        self._load()

    def _load(self) -> None:
        raw = read_json(self.path, default=[]) or []
        for item in raw if isinstance(raw, list) else []:
            try:
                f = Finding.model_validate(item)
            except ValidationError:
                logger.warning("Skipping invalid finding record in %s", self.path)
                continue
            if not f.id:
                f.id = new_finding_id()
            self._findings[f.key()] = f

    def _save(self, findings: dict[str, Finding]) -> None:
        write_json_atomic(self.path, [f.model_dump(mode="json") for f in findings.values()])

    # ── Reads ─────────────────────────────────────────────────────────

    def list(self) -> list[Finding]:
        """A snapshot of every stored finding."""
        with self._lock:
            return [f.model_copy(deep=True) for f in self._findings.values()]

    def get(self, finding_id: str) -> Finding | None:
        with self._lock:
            for f in self._findings.values():
                if f.id == finding_id:
                    return f.model_copy(deep=True)
        return None

    def __len__(self) -> int:
        with self._lock:
            return len(self._findings)

    # ── Writes ────────────────────────────────────────────────────────

    def ingest(self, findings: Iterable[Finding], agent_name: str, duration: float = 0.0) -> MCPBatchSummary:
        """Merge *findings* produced by *agent_name* and notify subscribers.

        Nothing changes in memory unless the merged set was written.
        """
        added: list[Finding] = []
        updated: list[Finding] = []
        with self._lock:
            merged = dict(self._findings)
            for incoming in findings:
                f = incoming.model_copy(deep=True)
                f.source_agent = f.source_agent or agent_name
                key = f.key()
                existing = merged.get(key)
                if existing is not None:
                    f.id = existing.id
                    updated.append(f)
                else:
                    f.id = f.id or new_finding_id()
                    added.append(f)
                merged[key] = f
            try:
                self._save(merged)
            except OSError as exc:
                raise TaskWingError(f"could not persist findings: {exc}", code="IntegrityViolation") from exc
            self._findings = merged
            total = len(merged)

        summary = MCPBatchSummary(
            agent_name=agent_name,
            total_findings=total,
            new_findings=len(added),
            updated_count=len(updated),
            duration=duration,
        )
        logger.info("%s: %d new, %d updated finding(s)", agent_name, len(added), len(updated))
        if self.notifier is not None:
            for f in added:
                self.notifier.notify_finding_added(f)
            for f in updated:
                self.notifier.notify_finding_updated(f)
            self.notifier.notify_batch_complete(summary)
        return summary

    def remove(self, finding_id: str) -> bool:
        with self._lock:
            key = next((k for k, f in self._findings.items() if f.id == finding_id), None)
            if key is None:
                return False
            remaining = {k: f for k, f in self._findings.items() if k != key}
            self._save(remaining)
            self._findings = remaining
        if self.notifier is not None:
            self.notifier.notify_finding_removed(finding_id)
        return True
