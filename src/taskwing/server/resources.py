"""Read-only resources over the task, finding and archive stores plus the effective config."""

from __future__ import annotations

import json
import logging
import time
from collections import Counter
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

from mcp import types

from .. import __version__
from ..core.models import Finding, VerificationStatus
from ..errors import InvalidInputError, TaskWingError, wrap_store_error
from ..store.archive_store import ArchiveStore
from .tools import ServerContext

logger = logging.getLogger(__name__)

SERVER_NAME = "taskwing"


@dataclass
class ServerResource:
    uri: str
    name: str
    description: str
    reader: Callable[[ServerContext], dict[str, Any]]

    def to_mcp(self) -> types.Resource:
        return types.Resource(
            uri=self.uri, name=self.name, description=self.description, mimeType="application/json",
        )


def _relative(ctx: ServerContext, path: Path) -> str:
    try:
        return path.relative_to(ctx.config.root).as_posix()
    except ValueError:
        return path.name


def system_status(ctx: ServerContext) -> dict[str, Any]:
    cfg = ctx.config
    return {
        "name": SERVER_NAME,
        "version": __version__,
        "protocolVersion": types.LATEST_PROTOCOL_VERSION,
        "project": cfg.project_name,
        "taskCount": len(ctx.tasks),
        "findingCount": len(ctx.findings) if ctx.findings is not None else 0,
        "modelConfigured": ctx.model is not None,
        "stores": {
            "tasks": _relative(ctx, cfg.tasks_file),
            "currentTask": _relative(ctx, cfg.current_task_file),
            "findings": _relative(ctx, cfg.findings_file),
            "activity": _relative(ctx, cfg.activity_file),
            "archive": _relative(ctx, cfg.archive_dir),
            "specs": _relative(ctx, cfg.specs_dir),
        },
        "available": True,
    }


def all_tasks(ctx: ServerContext) -> dict[str, Any]:
    tasks = ctx.tasks.snapshot()
    return {
        "tasks": [t.to_json() for t in tasks],
        "totalCount": len(tasks),
        "currentTaskId": ctx.tasks.current_task_id(),
    }


def current_task(ctx: ServerContext) -> dict[str, Any]:
    task = ctx.tasks.current_task()
    return {
        "currentTaskId": task.id if task else None,
        "task": task.to_json() if task else None,
    }


def _stored_findings(ctx: ServerContext) -> list[Finding]:
    return ctx.findings.list() if ctx.findings is not None else []


def stored_findings(ctx: ServerContext) -> dict[str, Any]:
    findings = _stored_findings(ctx)
    return {
        "findings": [f.model_dump(mode="json", exclude_none=True) for f in findings],
        "totalCount": len(findings),
        "byType": dict(Counter(f.type.value for f in findings)),
        "byStatus": dict(Counter(f.verification_status.value for f in findings)),
    }


def _archive(ctx: ServerContext) -> ArchiveStore | None:
    # Reading must not create the archive directory.
    if not ctx.config.archive_dir.is_dir():
        return None
    return ArchiveStore(ctx.config.archive_dir)


def archive_index(ctx: ServerContext) -> dict[str, Any]:
    store = _archive(ctx)
    items = store.list() if store is not None else []
    return {
        "archives": [i.to_json() for i in items],
        "totalCount": len(items),
        "tags": sorted({t for i in items for t in i.tags}),
    }


def knowledge(ctx: ServerContext) -> dict[str, Any]:
    """Accepted findings grouped by type, plus lessons from archived tasks."""
    grouped: dict[str, list[dict[str, Any]]] = {}
    for f in _stored_findings(ctx):
        if f.verification_status == VerificationStatus.REJECTED:
            continue
        grouped.setdefault(f.type.value, []).append({
            "title": f.title,
            "description": f.description,
            "confidenceScore": f.confidence_score,
            "sourceFiles": f.source_files,
        })

    lessons = []
    store = _archive(ctx)
    for item in store.list() if store is not None else []:
        entry, _ = store.get_by_id(item.id)
        if entry.lessons_learned:
            lessons.append({"title": entry.title, "lessonsLearned": entry.lessons_learned, "tags": entry.tags})
    return {"findings": grouped, "lessons": lessons}


def effective_config(ctx: ServerContext) -> dict[str, Any]:
    return ctx.config.redacted()


RESOURCES: dict[str, ServerResource] = {
    r.uri: r
    for r in (
        ServerResource("taskwing://system-status", "System status",
                       "Server identity, store locations and counts", system_status),
        ServerResource("taskwing://tasks", "Tasks", "Every task as JSON", all_tasks),
        ServerResource("taskwing://current-task", "Current task",
                       "The task marked as current, if any", current_task),
        ServerResource("taskwing://findings", "Findings",
                       "Stored findings with counts by type and verification status", stored_findings),
        ServerResource("taskwing://knowledge", "Knowledge",
                       "Accepted findings by type and lessons learned from archived tasks", knowledge),
        ServerResource("taskwing://archive", "Archive", "Index of archived tasks", archive_index),
        ServerResource("taskwing://config", "Configuration",
                       "Effective configuration with secrets redacted", effective_config),
    )
}


def list_resources() -> list[types.Resource]:
    return [r.to_mcp() for r in RESOURCES.values()]


def read_resource(ctx: ServerContext, uri: str) -> types.ReadResourceResult:
    """Render one resource.

    Raises
    ------
    InvalidInputError
        Unknown URI.
    TaskWingError
        The backing store could not be read.
    """
    key = str(uri).rstrip("/")
    ctx.hooks.on_call("resource", key, {})
    started = time.perf_counter()
    try:
        resource = RESOURCES.get(key)
        if resource is None:
            raise InvalidInputError(f"unknown resource '{uri}'", details={"available": sorted(RESOURCES)})
        payload = resource.reader(ctx)
    except Exception as exc:
        err = wrap_store_error(exc, f"read {key}")
        if not isinstance(exc, TaskWingError):
            logger.exception("resource %s failed", key)
        ctx.hooks.on_error("resource", key, err, (time.perf_counter() - started) * 1000)
        if err is exc:
            raise
        raise err from exc
    ctx.hooks.on_success("resource", key, (time.perf_counter() - started) * 1000)
    return types.ReadResourceResult(contents=[
        types.TextResourceContents(uri=key, mimeType="application/json",
                                   text=json.dumps(payload, indent=2, default=str)),
    ])
