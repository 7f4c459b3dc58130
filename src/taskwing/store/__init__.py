"""Persistent stores for tasks, findings, archives and specs."""

from .archive_store import ArchiveEntry, ArchiveIndexItem, ArchiveStore, PurgeResult
from .finding_store import FindingStore
from .spec_store import Spec, SpecStore, SpecTask
from .task_store import Task, TaskPriority, TaskStatus, TaskStore

__all__ = [
    "ArchiveEntry",
    "ArchiveIndexItem",
    "ArchiveStore",
    "PurgeResult",
    "FindingStore",
    "Spec",
    "SpecStore",
    "SpecTask",
    "Task",
    "TaskPriority",
    "TaskStatus",
    "TaskStore",
]
