"""Task store — the authoritative task list in ``.taskwing/tasks/tasks.json``.

Tasks form two graphs: parent → subtasks and task → dependencies (with
the reverse ``dependents`` list kept in sync).  Every mutation keeps
both graphs acyclic and every referenced id resolvable; a rejected
mutation leaves the store untouched.  Writes are atomic (temp file +
rename) under an in-process lock, and the file is reloaded whenever
another process has rewritten it.
"""

from __future__ import annotations

import logging
import threading
import uuid
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterable, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic.alias_generators import to_camel

from ..errors import CycleDetectedError, IntegrityViolationError, InvalidInputError, TaskNotFoundError
from ._jsonio import read_json, write_json_atomic

logger = logging.getLogger(__name__)

TITLE_MIN = 3
TITLE_MAX = 255


class TaskStatus(str, Enum):
    TODO = "todo"
    DOING = "doing"
    REVIEW = "review"
    DONE = "done"


class TaskPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


PRIORITY_RANK = {TaskPriority.URGENT: 0, TaskPriority.HIGH: 1, TaskPriority.MEDIUM: 2, TaskPriority.LOW: 3}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Model
# ---------------------------------------------------------------------------

class Task(BaseModel):
    """A unit of work; serialised with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    title: str
    description: str = ""
    acceptance_criteria: str = ""
    status: TaskStatus = TaskStatus.TODO
    priority: TaskPriority = TaskPriority.MEDIUM
    parent_id: Optional[str] = None
    subtask_ids: list[str] = Field(default_factory=list)
    dependencies: list[str] = Field(default_factory=list)
    dependents: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    @field_validator("title")
    @classmethod
    def _title_length(cls, v: str) -> str:
        v = v.strip()
        if len(v) < TITLE_MIN:
            raise ValueError(f"title must be at least {TITLE_MIN} characters")
        if len(v) > TITLE_MAX:
            raise ValueError(f"title must be at most {TITLE_MAX} characters")
        return v

    @field_validator("status", "priority", mode="before")
    @classmethod
    def _lower(cls, v: Any) -> Any:
        return v.strip().lower() if isinstance(v, str) else v

    @field_validator("acceptance_criteria", mode="before")
    @classmethod
    def _criteria_text(cls, v: Any) -> str:
        if isinstance(v, (list, tuple)):
            return "\n".join(str(c) for c in v)
        return "" if v is None else str(v)

    @field_validator("parent_id", mode="before")
    @classmethod
    def _empty_parent(cls, v: Any) -> Any:
        return v or None

    @model_validator(mode="after")
    def _completion_stamp(self) -> "Task":
        if self.status == TaskStatus.DONE and self.completed_at is None:
            self.completed_at = self.updated_at
        elif self.status != TaskStatus.DONE:
            self.completed_at = None
        return self

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    def short_id(self) -> str:
        return self.id[:8]


def _dedupe(ids: Iterable[str]) -> list[str]:
    out: list[str] = []
    for i in ids:
        if i and i not in out:
            out.append(i)
    return out


def _validate_task(data: dict[str, Any]) -> Task:
    try:
        return Task.model_validate(data)
    except ValidationError as exc:
        first = exc.errors()[0]
        field = ".".join(str(p) for p in first.get("loc", ()))
        raise InvalidInputError(
            f"invalid task: {field}: {first.get('msg')}",
            details={"field": field},
        ) from exc


# ---------------------------------------------------------------------------
# Graph checks
# ---------------------------------------------------------------------------

def _reaches(tasks: dict[str, Task], start: str, target: str, edges: Callable[[Task], list[str]]) -> bool:
    stack, seen = [start], set()
    while stack:
        cur = stack.pop()
        if cur == target:
            return True
        if cur in seen or cur not in tasks:
            continue
        seen.add(cur)
        stack.extend(edges(tasks[cur]))
    return False


def check_graph(tasks: dict[str, Task]) -> None:
    """Raise if any reference dangles or either graph has a cycle."""
    for t in tasks.values():
        for ref in [*t.dependencies, *t.dependents, *t.subtask_ids, *([t.parent_id] if t.parent_id else [])]:
            if ref not in tasks:
                raise IntegrityViolationError(
                    f"task '{t.title}' references unknown task {ref}",
                    details={"task_id": t.id, "reference": ref},
                )
        if t.id in t.dependencies:
            raise CycleDetectedError("task cannot depend on itself", details={"task_id": t.id})
        if t.parent_id == t.id:
            raise CycleDetectedError("task cannot be its own parent", details={"task_id": t.id})

    for t in tasks.values():
        for dep in t.dependencies:
            if _reaches(tasks, dep, t.id, lambda x: x.dependencies):
                raise CycleDetectedError(
                    f"dependency cycle through '{t.title}'",
                    details={"task_id": t.id, "dependency": dep},
                )
        if t.parent_id and _reaches(tasks, t.parent_id, t.id, lambda x: [x.parent_id] if x.parent_id else []):
            raise CycleDetectedError(
                f"parent cycle through '{t.title}'",
                details={"task_id": t.id, "parent_id": t.parent_id},
            )


def relink(tasks: dict[str, Task]) -> None:
    """Rebuild ``subtask_ids`` and ``dependents`` from the forward links.

    Existing orderings are preserved; new links are appended.
    """
    children: dict[str, list[str]] = {tid: [] for tid in tasks}
    dependents: dict[str, list[str]] = {tid: [] for tid in tasks}
    for t in tasks.values():
        if t.parent_id in children:
            children[t.parent_id].append(t.id)
        for dep in t.dependencies:
            if dep in dependents:
                dependents[dep].append(t.id)
    for tid, t in tasks.items():
        want_children = set(children[tid])
        t.subtask_ids = [c for c in t.subtask_ids if c in want_children] + [
            c for c in children[tid] if c not in t.subtask_ids
        ]
        want_deps = set(dependents[tid])
        t.dependents = [d for d in t.dependents if d in want_deps] + [
            d for d in dependents[tid] if d not in t.dependents
        ]


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class TaskStore:
    """JSON-file task store.

    Parameters
    ----------
    path : Path
        The ``tasks.json`` file.
    current_path : Path, optional
        Where the current-task pointer is kept.
    """

    def __init__(self, path: str | Path, current_path: str | Path | None = None) -> None:
        self.path = Path(path)
        self.current_path = Path(current_path) if current_path else self.path.parent / "current_task.json"
        self._lock = threading.RLock()
        self._tasks: dict[str, Task] = {}
        self._mtime: int | None = None
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._reload(force=True)

    # ── Persistence ───────────────────────────────────────────────────

    def _file_mtime(self) -> int | None:
        try:
            return self.path.stat().st_mtime_ns
        except FileNotFoundError:
            return None

    def _reload(self, force: bool = False) -> None:
        mtime = self._file_mtime()
        if not force and mtime == self._mtime:
            return
        data = read_json(self.path, default={}) or {}
        raw = data.get("tasks", []) if isinstance(data, dict) else data
        tasks: dict[str, Task] = {}
        for item in raw or []:
            try:
                task = Task.model_validate(item)
            except ValidationError as exc:
                logger.warning("Skipping invalid task record in %s: %s", self.path, exc.errors()[0].get("msg"))
                continue
            tasks[task.id] = task
        self._tasks = tasks
        self._mtime = mtime

    def _commit(self, tasks: dict[str, Task]) -> None:
        relink(tasks)
        check_graph(tasks)
        ordered = sorted(tasks.values(), key=lambda t: t.created_at)
        write_json_atomic(self.path, {
            "tasks": [t.to_json() for t in ordered],
            "totalCount": len(ordered),
        })
        self._tasks = tasks
        self._mtime = self._file_mtime()

    def _working_copy(self) -> dict[str, Task]:
        return {tid: t.model_copy(deep=True) for tid, t in self._tasks.items()}

    # ── Reads ─────────────────────────────────────────────────────────

    def snapshot(self) -> list[Task]:
        """All tasks (copies) in creation order."""
        with self._lock:
            self._reload()
            return [t.model_copy(deep=True) for t in sorted(self._tasks.values(), key=lambda t: t.created_at)]

    def __len__(self) -> int:
        with self._lock:
            self._reload()
            return len(self._tasks)

    def get_task(self, task_id: str) -> Task:
        with self._lock:
            self._reload()
            task = self._tasks.get(task_id)
            if task is None:
                raise TaskNotFoundError(f"task {task_id} not found", details={"task_id": task_id})
            return task.model_copy(deep=True)

    def exists(self, task_id: str) -> bool:
        with self._lock:
            self._reload()
            return task_id in self._tasks

    def list_tasks(
        self,
        *,
        status: str | None = None,
        priority: str | None = None,
        parent_id: str | None = None,
        predicate: Callable[[Task], bool] | None = None,
        limit: int | None = None,
    ) -> list[Task]:
        out = []
        for t in self.snapshot():
            if status and t.status.value != status.lower():
                continue
            if priority and t.priority.value != priority.lower():
                continue
            if parent_id is not None and (t.parent_id or "") != parent_id:
                continue
            if predicate and not predicate(t):
                continue
            out.append(t)
        return out[:limit] if limit else out

    def descendants(self, task_id: str) -> list[Task]:
        """*task_id* followed by all its subtasks, depth first."""
        tasks = {t.id: t for t in self.snapshot()}
        if task_id not in tasks:
            raise TaskNotFoundError(f"task {task_id} not found", details={"task_id": task_id})
        out: list[Task] = []
        stack = [task_id]
        while stack:
            cur = stack.pop()
            if cur in tasks and all(t.id != cur for t in out):
                out.append(tasks[cur])
                stack.extend(reversed(tasks[cur].subtask_ids))
        return out

    # ── Writes ────────────────────────────────────────────────────────

    def create_task(self, **fields: Any) -> Task:
        """Create one task from snake_case or camelCase *fields*."""
        return self.create_tasks([fields])[0]

    def create_tasks(self, items: list[dict[str, Any]], temp_key: str = "tempId") -> list[Task]:
        """Create several tasks at once; all or nothing.

        ``parentId`` and ``dependencies`` may name another item's
        ``tempId`` as well as an existing task id.
        """
        with self._lock:
            self._reload()
            tasks = self._working_copy()
            now = utcnow()
            temp_ids: dict[str, str] = {}
            created: list[Task] = []
            pending: list[tuple[Task, dict[str, Any]]] = []

            for i, item in enumerate(items):
                data = {k: v for k, v in item.items() if k not in (temp_key, "temp_id")}
                for k in ("id", "subtaskIds", "subtask_ids", "dependents", "createdAt", "created_at",
                          "updatedAt", "updated_at", "completedAt", "completed_at"):
                    data.pop(k, None)
                refs = {
                    "parent": data.pop("parentId", data.pop("parent_id", None)),
                    "deps": data.pop("dependencies", None) or [],
                }
                task = _validate_task({**data, "created_at": now, "updated_at": now})
                temp = item.get(temp_key) or item.get("temp_id")
                if temp is not None:
                    temp = str(temp)
                    if temp in temp_ids:
                        raise InvalidInputError(f"duplicate tempId '{temp}'", details={"index": i})
                    temp_ids[temp] = task.id
                pending.append((task, refs))

            def resolve(ref: str) -> str:
                ref = str(ref)
                if ref in temp_ids:
                    return temp_ids[ref]
                if ref in tasks:
                    return ref
                raise IntegrityViolationError(f"unknown task reference '{ref}'", details={"reference": ref})

            for task, refs in pending:
                tasks[task.id] = task
            for task, refs in pending:
                if refs["parent"]:
                    task.parent_id = resolve(refs["parent"])
                if isinstance(refs["deps"], str):
                    refs["deps"] = [refs["deps"]]
                task.dependencies = _dedupe(resolve(d) for d in refs["deps"])
                created.append(task)

            self._commit(tasks)
            logger.info("created %d task(s)", len(created))
            return [t.model_copy(deep=True) for t in created]

    def update_task(self, task_id: str, **updates: Any) -> Task:
        """Apply *updates* (snake_case or camelCase keys) to one task."""
        with self._lock:
            self._reload()
            tasks = self._working_copy()
            task = tasks.get(task_id)
            if task is None:
                raise TaskNotFoundError(f"task {task_id} not found", details={"task_id": task_id})

            normalised = {_snake(k): v for k, v in updates.items()}
            unknown = set(normalised) - {
                "title", "description", "acceptance_criteria", "status", "priority", "parent_id", "dependencies",
            }
            if unknown:
                raise InvalidInputError(f"cannot update field(s): {', '.join(sorted(unknown))}")

            data = task.model_dump()
            data.update(normalised)
            data["updated_at"] = utcnow()
            if normalised.get("status") and str(normalised["status"]).lower() == TaskStatus.DONE.value:
                if task.status != TaskStatus.DONE:
                    data["completed_at"] = data["updated_at"]
            if "dependencies" in normalised:
                deps = normalised["dependencies"] or []
                data["dependencies"] = _dedupe([deps] if isinstance(deps, str) else deps)
            updated = _validate_task(data)
            for ref in [*updated.dependencies, *([updated.parent_id] if updated.parent_id else [])]:
                if ref not in tasks:
                    raise IntegrityViolationError(f"unknown task reference '{ref}'", details={"reference": ref})
            tasks[task_id] = updated
            self._commit(tasks)
            return updated.model_copy(deep=True)

    def mark_done(self, task_id: str) -> Task:
        """Complete a task and every not-yet-done subtask beneath it."""
        with self._lock:
            self._reload()
            tasks = self._working_copy()
            if task_id not in tasks:
                raise TaskNotFoundError(f"task {task_id} not found", details={"task_id": task_id})
            now = utcnow()
            stack = [task_id]
            while stack:
                t = tasks.get(stack.pop())
                if t is None:
                    continue
                if t.status != TaskStatus.DONE:
                    t.status = TaskStatus.DONE
                    t.completed_at = now
                    t.updated_at = now
                stack.extend(t.subtask_ids)
            self._commit(tasks)
            return tasks[task_id].model_copy(deep=True)

    def delete_task(self, task_id: str, recursive: bool = False) -> list[str]:
        """Delete a task; returns the deleted ids.

        Without *recursive*, a task that still has subtasks or dependents
        is refused with ``IntegrityViolation``.  With it, subtasks are
        deleted as well and dependents are unlinked.
        """
        with self._lock:
            self._reload()
            task = self._tasks.get(task_id)
            if task is None:
                raise TaskNotFoundError(f"task {task_id} not found", details={"task_id": task_id})
            if not recursive:
                if task.dependents:
                    raise IntegrityViolationError(
                        f"cannot delete task '{task.title}': other tasks depend on it",
                        details={"task_id": task_id, "dependents": list(task.dependents)},
                    )
                if task.subtask_ids:
                    raise IntegrityViolationError(
                        f"cannot delete task '{task.title}': it has subtasks",
                        details={"task_id": task_id, "subtasks": list(task.subtask_ids)},
                    )
                ids = [task_id]
            else:
                ids = [t.id for t in self.descendants(task_id)]
            self._delete_locked(ids)
            return ids

    def delete_tasks(self, ids: Iterable[str]) -> int:
        """Batch delete; links from surviving tasks are removed."""
        with self._lock:
            self._reload()
            return self._delete_locked([i for i in ids if i in self._tasks])

    def _delete_locked(self, ids: list[str]) -> int:
        doomed = set(ids)
        if not doomed:
            return 0
        tasks = {tid: t for tid, t in self._working_copy().items() if tid not in doomed}
        now = utcnow()
        for t in tasks.values():
            changed = False
            if t.parent_id in doomed:
                t.parent_id = None
                changed = True
            if any(d in doomed for d in t.dependencies):
                t.dependencies = [d for d in t.dependencies if d not in doomed]
                changed = True
            t.subtask_ids = [s for s in t.subtask_ids if s not in doomed]
            t.dependents = [d for d in t.dependents if d not in doomed]
            if changed:
                t.updated_at = now
        self._commit(tasks)
        if self.current_task_id() in doomed:
            self.set_current(None)
        logger.info("deleted %d task(s)", len(doomed))
        return len(doomed)

    def clear(self, status: str = TaskStatus.DONE.value) -> int:
        """Delete every task with *status* (``"all"`` for everything)."""
        with self._lock:
            self._reload()
            if status == "all":
                ids = list(self._tasks)
            else:
                ids = [t.id for t in self._tasks.values() if t.status.value == status]
            return self._delete_locked(ids)

    # ── Current task pointer ──────────────────────────────────────────

    def current_task_id(self) -> str | None:
        data = read_json(self.current_path, default={}) or {}
        return data.get("taskId") or None

    def current_task(self) -> Task | None:
        tid = self.current_task_id()
        if not tid:
            return None
        try:
            return self.get_task(tid)
        except TaskNotFoundError:
            return None

    def set_current(self, task_id: str | None) -> Task | None:
        """Point at *task_id*; ``None`` or ``""`` clears the pointer."""
        if not task_id:
            if self.current_path.exists():
                self.current_path.unlink()
            return None
        task = self.get_task(task_id)
        write_json_atomic(self.current_path, {"taskId": task.id, "setAt": utcnow().isoformat()})
        return task


def _snake(key: str) -> str:
    out = []
    for ch in key:
        if ch.isupper():
            out.append("_" + ch.lower())
        else:
            out.append(ch)
    return "".join(out)
