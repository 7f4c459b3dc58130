"""Archive of completed tasks under ``.taskwing/archive/``.

Layout::

    archive/
      index.json                          # newest first
      YYYY/MM/<date>_<slug>-<id8>.json    # one ArchiveEntry each

Bundles produced by ``export`` can be loaded into another archive with
``import_bundle``; entry ids are preserved and duplicates skipped.
"""

from __future__ import annotations

import logging
import re
import threading
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ..errors import InvalidInputError, TaskNotFoundError
from ._jsonio import read_json, write_json_atomic
from .task_store import Task, TaskPriority, TaskStore, utcnow

logger = logging.getLogger(__name__)

SLUG_MAX = 64
SUMMARY_MAX = 140
BUNDLE_VERSION = "1"


def slugify(title: str) -> str:
    """Lower-case, non-alphanumerics to ``-``, at most 64 characters."""
    s = re.sub(r"[^a-z0-9]+", "-", title.strip().lower()).strip("-") or "task"
    if len(s) > SLUG_MAX:
        cut = s[:SLUG_MAX]
        dash = cut.rfind("-")
        s = (cut[:dash] if dash > 40 else cut).strip("-")
    return s


def summarize(text: str, limit: int = SUMMARY_MAX) -> str:
    text = text.strip()
    return text if len(text) <= limit else text[:limit] + "…"


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class ArchiveEntry(_CamelModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    archived_at: datetime = Field(default_factory=utcnow)
    task_id: str = ""
    title: str
    description: str = ""
    priority: TaskPriority = TaskPriority.MEDIUM
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    tags: list[str] = Field(default_factory=list)
    lessons_learned: str = ""


class ArchiveIndexItem(_CamelModel):
    id: str
    date: str
    title: str
    file_path: str
    tags: list[str] = Field(default_factory=list)
    summary: str = ""
    archived_at: datetime


class PurgeResult(_CamelModel):
    dry_run: bool = False
    files_considered: int = 0
    files_deleted: int = 0
    bytes_freed: int = 0


class ArchiveStore:
    def __init__(self, base_dir: str | Path) -> None:
        self.base_dir = Path(base_dir)
        self.index_path = self.base_dir / "index.json"
        self._lock = threading.RLock()
        self.base_dir.mkdir(parents=True, exist_ok=True)
        if not self.index_path.exists():
            self._write_index([])

    # ── Index ─────────────────────────────────────────────────────────

    def _read_index(self) -> list[ArchiveIndexItem]:
        data = read_json(self.index_path, default={}) or {}
        return [ArchiveIndexItem.model_validate(i) for i in data.get("archives", [])]

    def _write_index(self, items: list[ArchiveIndexItem]) -> None:
        items.sort(key=lambda i: i.archived_at, reverse=True)
        write_json_atomic(self.index_path, {
            "archives": [i.to_json() for i in items],
            "statistics": {"totalArchives": len(items), "totalTasksArchived": len(items)},
        })

    def _entry_path(self, when: datetime, title: str, entry_id: str) -> Path:
        name = f"{when:%Y-%m-%d}_{slugify(title)}-{entry_id[:8]}.json"
        return self.base_dir / f"{when:%Y}" / f"{when:%m}" / name

    def _write_entry(self, entry: ArchiveEntry) -> ArchiveIndexItem:
        path = self._entry_path(entry.archived_at, entry.title, entry.id)
        write_json_atomic(path, entry.to_json())
        return ArchiveIndexItem(
            id=entry.id,
            date=f"{entry.archived_at:%Y-%m-%d}",
            title=entry.title,
            file_path=path.relative_to(self.base_dir).as_posix(),
            tags=list(entry.tags),
            summary=summarize(entry.description),
            archived_at=entry.archived_at,
        )

    def _read_entry(self, item: ArchiveIndexItem) -> ArchiveEntry:
        return ArchiveEntry.model_validate(read_json(self.base_dir / item.file_path))

    # ── Operations ────────────────────────────────────────────────────

    def create_from_task(self, task: Task, lessons: str = "", tags: list[str] | None = None) -> ArchiveEntry:
        entry = ArchiveEntry(
            task_id=task.id,
            title=task.title,
            description=task.description,
            priority=task.priority,
            created_at=task.created_at,
            completed_at=task.completed_at,
            tags=list(tags or []),
            lessons_learned=lessons.strip(),
        )
        with self._lock:
            items = self._read_index()
            items.append(self._write_entry(entry))
            self._write_index(items)
        logger.info("archived task %s as %s", task.id[:8], entry.id[:8])
        return entry

    def get_by_id(self, entry_id: str) -> tuple[ArchiveEntry, Path]:
        """Look up by full id or unique prefix."""
        with self._lock:
            items = self._read_index()
        matches = [i for i in items if i.id == entry_id] or [i for i in items if i.id.startswith(entry_id)]
        if not entry_id or not matches:
            raise TaskNotFoundError(f"archive id not found: {entry_id}", details={"id": entry_id})
        if len(matches) > 1:
            raise InvalidInputError(
                f"archive id prefix '{entry_id}' is ambiguous",
                details={"candidates": [m.id for m in matches]},
            )
        return self._read_entry(matches[0]), self.base_dir / matches[0].file_path

    def list(self) -> list[ArchiveIndexItem]:
        with self._lock:
            return self._read_index()

    def search(
        self,
        query: str = "",
        *,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
        tags: list[str] | None = None,
    ) -> list[ArchiveIndexItem]:
        q = query.strip().lower()
        wanted = {t.lower() for t in tags or []}
        out = []
        for item in self.list():
            if date_from and item.archived_at < date_from:
                continue
            if date_to and item.archived_at > date_to:
                continue
            if wanted and not wanted & {t.lower() for t in item.tags}:
                continue
            if q and q not in item.title.lower() and q not in item.summary.lower():
                try:
                    entry = self._read_entry(item)
                except (OSError, ValueError):
                    continue
                if q not in entry.description.lower() and q not in entry.lessons_learned.lower():
                    continue
            out.append(item)
        return out

    def restore(self, entry_id: str, task_store: TaskStore) -> Task:
        """Re-create the archived task as a fresh ``todo`` task."""
        entry, _ = self.get_by_id(entry_id)
        return task_store.create_task(
            title=entry.title,
            description=entry.description,
            priority=entry.priority.value,
        )

    def export(self, path: str | Path) -> int:
        """Write every entry plus the index to a single bundle file."""
        items = self.list()
        entries = []
        for item in items:
            try:
                entries.append(self._read_entry(item).to_json())
            except (OSError, ValueError) as exc:
                logger.warning("Skipping unreadable archive entry %s: %s", item.file_path, exc)
        write_json_atomic(Path(path), {
            "index": [i.to_json() for i in items],
            "entries": entries,
            "exportedAt": utcnow().isoformat(),
            "version": BUNDLE_VERSION,
        })
        return len(entries)

    def import_bundle(self, path: str | Path) -> int:
        """Load a bundle; returns the number of entries added."""
        bundle = read_json(Path(path))
        if not isinstance(bundle, dict):
            raise InvalidInputError(f"not an archive bundle: {path}")
        added = 0
        with self._lock:
            items = self._read_index()
            known = {i.id for i in items}
            for raw in bundle.get("entries", []):
                entry = ArchiveEntry.model_validate(raw)
                if entry.id in known:
                    continue
                items.append(self._write_entry(entry))
                known.add(entry.id)
                added += 1
            self._write_index(items)
        return added

    def purge(
        self,
        *,
        older_than: timedelta | None = None,
        max_total_size: int = 0,
        dry_run: bool = False,
    ) -> PurgeResult:
        """Drop entries by age, then oldest-first until under *max_total_size* bytes."""
        res = PurgeResult(dry_run=dry_run)
        with self._lock:
            items = self._read_index()
            cutoff = datetime.now(timezone.utc) - older_than if older_than else None
            kept: list[ArchiveIndexItem] = []

            def drop(item: ArchiveIndexItem) -> int:
                abs_path = self.base_dir / item.file_path
                size = abs_path.stat().st_size if abs_path.exists() else 0
                if not dry_run and abs_path.exists():
                    abs_path.unlink()
                res.files_deleted += 1
                res.bytes_freed += size
                return size

            for item in items:
                res.files_considered += 1
                if cutoff and item.archived_at < cutoff:
                    drop(item)
                else:
                    kept.append(item)

            if max_total_size > 0:
                total = sum(
                    (self.base_dir / i.file_path).stat().st_size
                    for i in kept if (self.base_dir / i.file_path).exists()
                )
                while total > max_total_size and kept:
                    total -= drop(kept.pop())

            if not dry_run:
                self._write_index(kept)
        return res
