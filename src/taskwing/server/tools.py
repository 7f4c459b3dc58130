"""Tool descriptors and handlers for the stdio tool server.

Each tool is declared with ``@tool(name, description, ArgsModel)``.  The
argument model gives both validation and the advertised JSON schema, and
the handler returns ``(text, structured)``: a human line for display and
a machine-readable mapping that goes out as ``structuredContent``.

Handlers raise ``TaskWingError`` subclasses; ``call_tool`` turns any
failure into an ``isError`` result carrying ``{"error": to_dict()}`` so
no exception ever escapes to the protocol loop.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Literal, Optional, Union

from mcp import types
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from ..agents.base import AgentInput
from ..agents.planning_agent import PlanningAgent
from ..config import TaskWingConfig
from ..core.models import META_TASKS
from ..errors import InvalidInputError, TaskWingError, wrap_store_error
from ..llm.chat_model import ChatModel
from ..store.finding_store import FindingStore
from ..store.task_store import PRIORITY_RANK, TITLE_MAX, TITLE_MIN, Task, TaskPriority, TaskStatus, TaskStore
from .hooks import ServerHooks
from .query import compile_query
from .resolver import resolve_reference, resolve_task_id

logger = logging.getLogger(__name__)


@dataclass
class ServerContext:
    """Shared state handed to every tool and resource handler."""

    config: TaskWingConfig
    tasks: TaskStore
    findings: Optional[FindingStore] = None
    model: Optional[ChatModel] = None
    hooks: ServerHooks = field(default_factory=ServerHooks)

    def resolve(self, reference: str) -> str:
        return resolve_task_id(reference, self.tasks.snapshot())

    def resolve_many(self, references: list[str]) -> list[str]:
        snapshot = self.tasks.snapshot()
        return [resolve_task_id(r, snapshot) for r in references]


Handler = Callable[[ServerContext, Any], Union[tuple[str, dict[str, Any]], Awaitable[tuple[str, dict[str, Any]]]]]


@dataclass
class ServerTool:
    name: str
    description: str
    args_model: type[BaseModel]
    handler: Handler

    def input_schema(self) -> dict[str, Any]:
        schema = self.args_model.model_json_schema(by_alias=True)
        schema.pop("title", None)
        return schema

    def to_mcp(self) -> types.Tool:
        return types.Tool(name=self.name, description=self.description, inputSchema=self.input_schema())


TOOLS: dict[str, ServerTool] = {}


def tool(name: str, description: str, args_model: type[BaseModel]) -> Callable[[Handler], Handler]:
    def decorator(fn: Handler) -> Handler:
        TOOLS[name] = ServerTool(name, description, args_model, fn)
        return fn
    return decorator


def list_tools() -> list[types.Tool]:
    return [t.to_mcp() for t in TOOLS.values()]


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

def success_result(text: str, structured: dict[str, Any]) -> types.CallToolResult:
    return types.CallToolResult(
        content=[types.TextContent(type="text", text=text)],
        structuredContent=structured,
        isError=False,
    )


def error_result(err: TaskWingError) -> types.CallToolResult:
    return types.CallToolResult(
        content=[types.TextContent(type="text", text=str(err))],
        structuredContent={"error": err.to_dict()},
        isError=True,
    )


def _validation_error(exc: ValidationError, tool_name: str) -> InvalidInputError:
    problems = [
        {"field": ".".join(str(p) for p in e.get("loc", ())), "message": e.get("msg", "")}
        for e in exc.errors()
    ]
    first = problems[0] if problems else {"field": "", "message": "invalid arguments"}
    return InvalidInputError(
        f"invalid arguments for {tool_name}: {first['field']} {first['message']}".strip(),
        details={"tool": tool_name, "errors": problems},
    )


async def call_tool(ctx: ServerContext, name: str, arguments: dict[str, Any] | None) -> types.CallToolResult:
    """Validate, run and wrap one tool invocation."""
    arguments = arguments or {}
    ctx.hooks.on_call("tool", name, arguments)
    started = time.perf_counter()
    try:
        spec = TOOLS.get(name)
        if spec is None:
            raise InvalidInputError(f"unknown tool '{name}'", details={"available": sorted(TOOLS)})
        try:
            args = spec.args_model.model_validate(arguments)
        except ValidationError as exc:
            raise _validation_error(exc, name) from exc
        if inspect.iscoroutinefunction(spec.handler):
            text, structured = await spec.handler(ctx, args)
        else:
            text, structured = await asyncio.to_thread(spec.handler, ctx, args)
    except asyncio.CancelledError:
        raise
    except Exception as exc:
        if not isinstance(exc, TaskWingError):
            logger.exception("tool %s failed", name)
        err = wrap_store_error(exc, name.replace("-", " "), arguments.get("id") or arguments.get("task_id"))
        ctx.hooks.on_error("tool", name, err, (time.perf_counter() - started) * 1000)
        return error_result(err)
    ctx.hooks.on_success("tool", name, (time.perf_counter() - started) * 1000)
    return success_result(text, structured)


# ---------------------------------------------------------------------------
# Argument models
# ---------------------------------------------------------------------------

class _Args(BaseModel):
    model_config = ConfigDict(extra="forbid")


class _CamelArgs(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")


class EmptyArgs(_Args):
    pass


class BoardSnapshotArgs(_Args):
    limit: int = Field(10, ge=1, le=100, description="Tasks shown per column")
    include_tasks: bool = Field(True, description="Include task entries, not just counts")


class AddTaskArgs(_CamelArgs):
    title: str = Field(..., description=f"Task title ({TITLE_MIN}-{TITLE_MAX} characters)")
    description: str = ""
    acceptance_criteria: Union[str, list[str]] = ""
    priority: TaskPriority = TaskPriority.MEDIUM
    parent_id: Optional[str] = Field(None, description="Parent task id or reference")
    dependencies: list[str] = Field(default_factory=list, description="Ids or references of prerequisite tasks")


class BatchItem(AddTaskArgs):
    temp_id: Union[str, int] = Field(..., description="Batch-local id that other items may reference")
    parent_id: Optional[str] = Field(None, description="tempId or existing task id")
    dependencies: list[Union[str, int]] = Field(default_factory=list, description="tempIds or existing task ids")


class BatchCreateArgs(_CamelArgs):
    tasks: list[BatchItem] = Field(..., min_length=1)


class GeneratePlanArgs(_Args):
    task_id: str = Field(..., description="Task id or reference")
    max_subtasks: int = Field(5, ge=1, le=20)
    confirm: bool = Field(False, description="Create the proposed subtasks")


class ListTasksArgs(_CamelArgs):
    status: Optional[TaskStatus] = None
    priority: Optional[TaskPriority] = None
    parent_id: Optional[str] = None
    limit: Optional[int] = Field(None, ge=1)


class IdArgs(_Args):
    id: str = Field(..., description="Task id, id prefix or title reference")


class FindTaskArgs(_Args):
    reference: str
    limit: int = Field(5, ge=1, le=50)


class QueryTasksArgs(_Args):
    query: str = Field(..., description="e.g. 'status:todo AND priority:high NOT docs'")
    limit: Optional[int] = Field(None, ge=1)


class UpdateTaskArgs(_CamelArgs):
    id: str
    title: Optional[str] = None
    description: Optional[str] = None
    acceptance_criteria: Optional[Union[str, list[str]]] = None
    status: Optional[TaskStatus] = None
    priority: Optional[TaskPriority] = None
    parent_id: Optional[str] = Field(None, description="New parent; empty string detaches")
    dependencies: Optional[list[str]] = None


class SetCurrentArgs(_Args):
    id: str = Field("", description="Task id or reference; empty clears the current task")


class DeleteTaskArgs(_Args):
    id: str
    recursive: bool = False


class ClearTasksArgs(_Args):
    confirm: bool = False
    status: Literal["todo", "doing", "review", "done", "all"] = "done"


class BulkTasksArgs(_Args):
    task_ids: list[str] = Field(..., min_length=1)
    action: Literal["complete", "delete", "prioritize"]
    priority: Optional[TaskPriority] = None


# ---------------------------------------------------------------------------
# Formatting
# ---------------------------------------------------------------------------

def task_line(t: Task) -> str:
    return f"[{t.short_id()}] {t.title} ({t.status.value}, {t.priority.value})"


def task_lines(tasks: list[Task]) -> str:
    return "\n".join(task_line(t) for t in tasks) if tasks else "No tasks."


def _tasks_json(tasks: list[Task]) -> list[dict[str, Any]]:
    return [t.to_json() for t in tasks]


# ---------------------------------------------------------------------------
# Overview
# ---------------------------------------------------------------------------

@tool("task-summary", "Counts by status and priority, the current task and the completion ratio.", EmptyArgs)
def task_summary(ctx: ServerContext, args: EmptyArgs) -> tuple[str, dict[str, Any]]:
    tasks = ctx.tasks.snapshot()
    by_status = {s.value: 0 for s in TaskStatus}
    by_priority = {p.value: 0 for p in TaskPriority}
    for t in tasks:
        by_status[t.status.value] += 1
        by_priority[t.priority.value] += 1
    total = len(tasks)
    ratio = by_status["done"] / total if total else 0.0
    current = ctx.tasks.current_task()
    text = f"{total} task(s), {by_status['done']} done ({ratio:.0%})"
    if current:
        text += f" | current: {current.title} [{current.short_id()}]"
    return text, {
        "total": total,
        "byStatus": by_status,
        "byPriority": by_priority,
        "completionRatio": round(ratio, 4),
        "currentTask": current.to_json() if current else None,
    }


@tool("board-snapshot", "Kanban view: todo, doing, review and done columns, most recently updated first.",
      BoardSnapshotArgs)
def board_snapshot(ctx: ServerContext, args: BoardSnapshotArgs) -> tuple[str, dict[str, Any]]:
    tasks = sorted(ctx.tasks.snapshot(), key=lambda t: t.updated_at, reverse=True)
    columns: dict[str, dict[str, Any]] = {}
    for status in TaskStatus:
        col = [t for t in tasks if t.status == status]
        columns[status.value] = {"count": len(col)}
        if args.include_tasks:
            columns[status.value]["tasks"] = _tasks_json(col[: args.limit])
    counts = " ".join(f"{s}:{c['count']}" for s, c in columns.items())
    return f"Board: {len(tasks)} total | {counts}", {"total": len(tasks), "columns": columns}


# ---------------------------------------------------------------------------
# Creation / planning
# ---------------------------------------------------------------------------

@tool("add-task", "Create a task.", AddTaskArgs)
def add_task(ctx: ServerContext, args: AddTaskArgs) -> tuple[str, dict[str, Any]]:
    fields = args.model_dump(by_alias=True, exclude_none=True)
    if args.parent_id:
        fields["parentId"] = ctx.resolve(args.parent_id)
    fields["dependencies"] = ctx.resolve_many(args.dependencies)
    task = ctx.tasks.create_task(**fields)
    return f"Created {task_line(task)}", {"task": task.to_json()}


@tool("batch-create-tasks",
      "Create several tasks at once. parentId and dependencies may name another item's tempId. "
      "Nothing is created if any item is invalid.",
      BatchCreateArgs)
def batch_create_tasks(ctx: ServerContext, args: BatchCreateArgs) -> tuple[str, dict[str, Any]]:
    items = []
    for item in args.tasks:
        data = item.model_dump(by_alias=True, exclude_none=True)
        data["tempId"] = str(item.temp_id)
        data["dependencies"] = [str(d) for d in item.dependencies]
        items.append(data)
    created = ctx.tasks.create_tasks(items)
    id_map = {str(item.temp_id): t.id for item, t in zip(args.tasks, created)}
    return f"Created {len(created)} task(s)\n{task_lines(created)}", {
        "tasks": _tasks_json(created),
        "idMap": id_map,
    }


_BULLET = re.compile(r"^\s*(?:[-*+]|\d+[.)]|\[[ xX]?\])\s*")


def split_criteria(text: str, limit: int) -> list[dict[str, Any]]:
    """One subtask per non-empty acceptance-criteria line."""
    out = []
    for line in (text or "").splitlines():
        title = _BULLET.sub("", line).strip()
        if len(title) < TITLE_MIN:
            continue
        out.append({"title": title[:TITLE_MAX], "description": "", "priority": None, "dependencies": []})
        if len(out) >= limit:
            break
    return out


async def _propose_subtasks(ctx: ServerContext, task: Task, limit: int) -> tuple[str, list[dict[str, Any]]]:
    if ctx.model is None:
        return "criteria", split_criteria(task.acceptance_criteria, limit)
    goal = f"{task.title}\n\n{task.description}".strip()
    if task.acceptance_criteria:
        goal += f"\n\nAcceptance criteria:\n{task.acceptance_criteria}"
    agent = PlanningAgent(model=ctx.model)
    out = await agent.run(AgentInput(
        base_path=str(ctx.config.root),
        project_name=ctx.config.project_name,
        existing_context={"goal": goal},
    ))
    if not out.ok or not out.findings:
        logger.warning("planning agent failed for %s (%s); splitting acceptance criteria", task.short_id(), out.error)
        return "criteria", split_criteria(task.acceptance_criteria, limit)
    return "planner", list(out.findings[0].metadata.get(META_TASKS) or [])[:limit]


@tool("generate-plan",
      "Propose subtasks for a task (planning agent, or one per acceptance-criteria line without a model). "
      "Set confirm=true to create them.",
      GeneratePlanArgs)
async def generate_plan(ctx: ServerContext, args: GeneratePlanArgs) -> tuple[str, dict[str, Any]]:
    task = await asyncio.to_thread(lambda: ctx.tasks.get_task(ctx.resolve(args.task_id)))
    source, proposals = await _propose_subtasks(ctx, task, args.max_subtasks)
    result: dict[str, Any] = {"taskId": task.id, "source": source, "subtasks": proposals, "created": []}
    if not proposals:
        return f"No subtasks proposed for '{task.title}'", result

    lines = [f"{i + 1}. {p['title']}" for i, p in enumerate(proposals)]
    if not args.confirm:
        return f"Proposed {len(proposals)} subtask(s) for '{task.title}':\n" + "\n".join(lines), result

    titles = {p["title"].lower(): str(i) for i, p in enumerate(proposals)}
    items = []
    for i, p in enumerate(proposals):
        criteria = p.get("acceptance_criteria") or ""
        items.append({
            "tempId": str(i),
            "title": p["title"],
            "description": p.get("description") or "",
            "acceptanceCriteria": criteria,
            "priority": p.get("priority") or task.priority.value,
            "parentId": task.id,
            # Planner dependencies name sibling titles.
            "dependencies": [titles[d.lower()] for d in p.get("dependencies") or [] if d.lower() in titles],
        })
    created = await asyncio.to_thread(ctx.tasks.create_tasks, items)
    result["created"] = _tasks_json(created)
    return f"Created {len(created)} subtask(s) under '{task.title}':\n{task_lines(created)}", result


# ---------------------------------------------------------------------------
# Read / search
# ---------------------------------------------------------------------------

@tool("list-tasks", "List tasks, optionally filtered by status, priority or parent.", ListTasksArgs)
def list_tasks(ctx: ServerContext, args: ListTasksArgs) -> tuple[str, dict[str, Any]]:
    parent = ctx.resolve(args.parent_id) if args.parent_id else None
    tasks = ctx.tasks.list_tasks(
        status=args.status.value if args.status else None,
        priority=args.priority.value if args.priority else None,
        parent_id=parent,
        limit=args.limit,
    )
    return task_lines(tasks), {"tasks": _tasks_json(tasks), "count": len(tasks)}


@tool("get-task", "Show one task with its subtasks and dependencies.", IdArgs)
def get_task(ctx: ServerContext, args: IdArgs) -> tuple[str, dict[str, Any]]:
    task = ctx.tasks.get_task(ctx.resolve(args.id))
    by_id = {t.id: t for t in ctx.tasks.snapshot()}
    subtasks = [by_id[s] for s in task.subtask_ids if s in by_id]
    deps = [by_id[d] for d in task.dependencies if d in by_id]
    lines = [task_line(task)]
    if task.description:
        lines.append(task.description)
    if subtasks:
        lines.append("Subtasks:\n" + task_lines(subtasks))
    if deps:
        lines.append("Depends on:\n" + task_lines(deps))
    return "\n".join(lines), {
        "task": task.to_json(),
        "subtasks": _tasks_json(subtasks),
        "dependencies": _tasks_json(deps),
    }


@tool("find-task", "Resolve a reference (id, id prefix or words from the title) to a task.", FindTaskArgs)
def find_task(ctx: ServerContext, args: FindTaskArgs) -> tuple[str, dict[str, Any]]:
    result = resolve_reference(args.reference, ctx.tasks.snapshot(), limit=args.limit)
    if result.resolved:
        top = result.matches[0]
        text = f"Found: '{top['title']}' [{top['id'][:8]}]"
    elif result.matches:
        top = result.matches[0]
        text = (
            f"Best: '{top['title']}' [{top['id'][:8]}] ({top['score']:.1%}), "
            f"{len(result.matches)} candidate(s)"
        )
    else:
        text = result.message
    return text, result.to_dict()


@tool("query-tasks",
      "Search tasks with status:, priority: and parent: filters combined with AND, OR, NOT and free text.",
      QueryTasksArgs)
def query_tasks(ctx: ServerContext, args: QueryTasksArgs) -> tuple[str, dict[str, Any]]:
    predicate = compile_query(args.query)
    tasks = ctx.tasks.list_tasks(predicate=predicate, limit=args.limit)
    tasks.sort(key=lambda t: (PRIORITY_RANK[t.priority], t.created_at))
    return task_lines(tasks), {"query": args.query, "tasks": _tasks_json(tasks), "count": len(tasks)}


# ---------------------------------------------------------------------------
# Mutation
# ---------------------------------------------------------------------------

@tool("update-task", "Change fields of a task.", UpdateTaskArgs)
def update_task(ctx: ServerContext, args: UpdateTaskArgs) -> tuple[str, dict[str, Any]]:
    task_id = ctx.resolve(args.id)
    updates = args.model_dump(exclude_unset=True, exclude={"id"})
    if not updates:
        raise InvalidInputError("nothing to update", details={"task_id": task_id})
    if updates.get("parent_id"):
        updates["parent_id"] = ctx.resolve(updates["parent_id"])
    if updates.get("dependencies"):
        updates["dependencies"] = ctx.resolve_many(updates["dependencies"])
    for key in ("status", "priority"):
        if updates.get(key) is not None:
            updates[key] = updates[key].value
    task = ctx.tasks.update_task(task_id, **updates)
    return f"Updated {task_line(task)}", {"task": task.to_json(), "updatedFields": sorted(updates)}


@tool("mark-done", "Complete a task and its open subtasks.", IdArgs)
def mark_done(ctx: ServerContext, args: IdArgs) -> tuple[str, dict[str, Any]]:
    task = ctx.tasks.mark_done(ctx.resolve(args.id))
    return f"Done: {task_line(task)}", {"task": task.to_json()}


@tool("set-current-task", "Set the task being worked on; an empty id clears it.", SetCurrentArgs)
def set_current_task(ctx: ServerContext, args: SetCurrentArgs) -> tuple[str, dict[str, Any]]:
    if not args.id.strip():
        ctx.tasks.set_current(None)
        return "Current task cleared", {"currentTask": None}
    task = ctx.tasks.set_current(ctx.resolve(args.id))
    return f"Current task: {task_line(task)}", {"currentTask": task.to_json()}


# ---------------------------------------------------------------------------
# Delete / bulk
# ---------------------------------------------------------------------------

@tool("delete-task",
      "Delete a task. Refused while it has subtasks or dependents unless recursive=true.",
      DeleteTaskArgs)
def delete_task(ctx: ServerContext, args: DeleteTaskArgs) -> tuple[str, dict[str, Any]]:
    deleted = ctx.tasks.delete_task(ctx.resolve(args.id), recursive=args.recursive)
    return f"Deleted {len(deleted)} task(s)", {"deleted": deleted}


@tool("clear-tasks", "Delete every done task (or status='all' for everything). Requires confirm=true.",
      ClearTasksArgs)
def clear_tasks(ctx: ServerContext, args: ClearTasksArgs) -> tuple[str, dict[str, Any]]:
    if not args.confirm:
        raise InvalidInputError("clear-tasks requires confirm=true", details={"status": args.status})
    count = ctx.tasks.clear(args.status)
    return f"Cleared {count} task(s) with status {args.status}", {"cleared": count, "status": args.status}


@tool("bulk-tasks", "Complete, delete or re-prioritize several tasks.", BulkTasksArgs)
def bulk_tasks(ctx: ServerContext, args: BulkTasksArgs) -> tuple[str, dict[str, Any]]:
    if args.action == "prioritize" and args.priority is None:
        raise InvalidInputError("action 'prioritize' needs a priority")

    snapshot = ctx.tasks.snapshot()
    succeeded: list[str] = []
    failed: list[dict[str, Any]] = []
    ids: list[str] = []
    for ref in args.task_ids:
        try:
            ids.append(resolve_task_id(ref, snapshot))
        except TaskWingError as exc:
            failed.append({"id": ref, "error": exc.to_dict()})

    if args.action == "delete":
        ctx.tasks.delete_tasks(ids)
        succeeded = ids
    else:
        for task_id in ids:
            try:
                if args.action == "complete":
                    ctx.tasks.mark_done(task_id)
                else:
                    ctx.tasks.update_task(task_id, priority=args.priority.value)
            except TaskWingError as exc:
                failed.append({"id": task_id, "error": exc.to_dict()})
            else:
                succeeded.append(task_id)

    text = f"{args.action}: {len(succeeded)} succeeded, {len(failed)} failed"
    return text, {"action": args.action, "succeeded": succeeded, "failed": failed}
