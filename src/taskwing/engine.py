"""Watch engine: the file-change dataflow wired end to end.

::

    FileWatcher -> ContentHashTracker -> categorize -> ChangeDebouncer
        -> AgentDispatcher -> agent -> EvidenceVerifier -> FindingStore
        -> LiveUpdateNotifier / ActivityLog / StreamingOutput

Usage::

    engine = WatchEngine(load_config("."), model=get_chat_model(cfg.llm))
    await engine.run()          # until cancelled
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections import OrderedDict
from typing import Optional

from rich.console import Console

from .agents.dispatcher import AgentDispatcher, FindingsHandler
from .config import TaskWingConfig
from .core.activity_log import ActivityLog
from .core.classifier import categorize
from .core.debouncer import ChangeDebouncer
from .core.hashing import ContentHashTracker
from .core.models import FileCategory, FileChangeEvent, FileOperation
from .core.notifier import LiveUpdateNotifier
from .core.stream import StreamingOutput, consume
from .core.watcher import FileWatcher, WatchEvent
from .llm.chat_model import ChatModel
from .store.finding_store import FindingStore

log = logging.getLogger(__name__)
console = Console(stderr=True)

WATCH_AGENT = "watch"


class WatchEngine:
    """Owns every long-lived component of watch mode.

    Parameters
    ----------
    config : TaskWingConfig
        Base path, watch delays, buffer sizes and store locations.
    model : ChatModel, optional
        Shared by the agents the dispatcher creates.
    handler : callable, optional
        Findings handler; defaults to ``FindingStore.ingest`` on
        ``.taskwing/findings.json``.
    """

    def __init__(
        self,
        config: TaskWingConfig,
        *,
        model: Optional[ChatModel] = None,
        handler: Optional[FindingsHandler] = None,
        stream: Optional[StreamingOutput] = None,
        notifier: Optional[LiveUpdateNotifier] = None,
        activity: Optional[ActivityLog] = None,
    ) -> None:
        self.config = config
        self.root = config.root
        self.tracker = ContentHashTracker()
        self.stream = stream or StreamingOutput(config.stream_buffer)
        self.activity = activity or ActivityLog(config.activity_file, config.activity_max_entries)
        self.notifier = notifier or LiveUpdateNotifier(timeout=config.notifier_timeout)
        self.notifier.attach_stream(self.stream)
        self.findings: FindingStore | None = None
        if handler is None:
            self.findings = FindingStore(config.findings_file, self.notifier)
            handler = self.findings.ingest
        self.watcher = FileWatcher(
            self.root,
            interval=config.watch.poll_interval,
            ignore_dirs=config.ignore_dirs,
            allowed_dotfiles=config.allowed_dotfiles,
            use_polling=config.watch.use_polling,
        )
        self.debouncer = ChangeDebouncer(
            self.flush,
            delays={
                FileCategory.DOCS: config.watch.docs_delay,
                FileCategory.DEPS: config.watch.deps_delay,
            },
            default_delay=config.watch.default_delay,
        )
        self.dispatcher = AgentDispatcher(
            config, model=model, stream=self.stream, activity=self.activity, handler=handler,
        )
        self.accepted = 0
        self._error_task: asyncio.Task | None = None
        self._stream_task: asyncio.Task | None = None

    # ── Event intake ──────────────────────────────────────────────────

    def relative(self, path: str) -> str:
        return os.path.relpath(path, self.root).replace(os.sep, "/")

    def to_change_event(self, raw: WatchEvent) -> FileChangeEvent | None:
        """Filter and classify one raw event; ``None`` means drop it.

        Reads the file (for the digest) on create and modify, so call it
        off the event loop.
        """
        rel = self.relative(raw.path)
        if raw.is_dir:
            if raw.operation == FileOperation.CREATE:
                self.watcher.add_watch(raw.path)
                log.debug("watching new directory %s", rel)
            return None

        category = categorize(rel, ignore_dirs=self.config.ignore_dirs,
                              allowed_dotfiles=self.config.allowed_dotfiles)
        if category == FileCategory.IGNORE:
            return None

        if raw.operation in (FileOperation.DELETE, FileOperation.RENAME):
            self.tracker.remove(raw.path)
        elif not self.tracker.has_changed(raw.path):
            log.debug("content unchanged: %s", rel)
            return None
        return FileChangeEvent(path=rel, operation=raw.operation, category=category)

    async def handle_event(self, raw: WatchEvent) -> FileChangeEvent | None:
        event = await asyncio.to_thread(self.to_change_event, raw)
        if event is None:
            return None
        self.accepted += 1
        self.activity.log_file_change(event.path, event.operation.value, event.category.value)
        self.stream.emit_agent_start(
            WATCH_AGENT, f"{event.operation.value}: {event.path}", {"category": event.category.value},
        )
        self.debouncer.add(event)
        return event

    # ── Flush → dispatch ──────────────────────────────────────────────

    def flush(self, batch: list[FileChangeEvent]) -> list[asyncio.Task]:
        """Split a debounced batch by category and dispatch each part."""
        groups: "OrderedDict[FileCategory, list[FileChangeEvent]]" = OrderedDict()
        for ev in batch:
            groups.setdefault(ev.category, []).append(ev)
        started = []
        for category, events in groups.items():
            task = self.dispatcher.dispatch(events, category)
            if task is not None:
                console.print(f"[bold blue]▶[/] {category.value}: {len(events)} change(s)")
                started.append(task)
        return started

    # ── Lifecycle ─────────────────────────────────────────────────────

    def banner(self) -> None:
        cfg = self.config
        console.print("\n[bold green]TaskWing watch[/]")
        console.print(f"   Repository: [bold]{self.root}[/]")
        backend = f"polling every {cfg.watch.poll_interval}s" if cfg.watch.use_polling else "native"
        console.print(f"   Watcher:    [bold]{backend}[/]")
        console.print(
            f"   Debounce:   [bold]{cfg.watch.default_delay}s[/] "
            f"(docs {cfg.watch.docs_delay}s, deps {cfg.watch.deps_delay}s)"
        )
        console.print(f"   Verify:     [bold]{'yes' if cfg.verify_findings else 'no'}[/]")
        model = self.dispatcher.model
        label = f"{model.provider_name} / {model.model}" if model else "none"
        console.print(f"   Model:      [bold]{label}[/]")
        console.print("\n[dim]Press Ctrl+C to stop.[/]\n")

    async def _drain_errors(self) -> None:
        while True:
            exc = await self.watcher.errors.get()
            if exc is None:
                return
            self.activity.log_error(WATCH_AGENT, str(exc))

    async def start(self) -> None:
        await self.watcher.start()
        self._error_task = asyncio.create_task(self._drain_errors(), name="taskwing-watch-errors")
        self._stream_task = asyncio.create_task(consume(self.stream), name="taskwing-watch-stream")

    async def run(self) -> None:
        """Start the watcher and process events until stopped or cancelled."""
        await self.start()
        try:
            async for raw in self.watcher:
                try:
                    await self.handle_event(raw)
                except OSError as exc:
                    log.warning("could not process %s: %s", raw.path, exc)
                    self.activity.log_error(WATCH_AGENT, f"{raw.path}: {exc}")
        finally:
            await self.stop()

    async def stop(self) -> None:
        """Stop intake, cancel in-flight agent runs and flush logs.  Idempotent."""
        self.debouncer.stop()
        await self.watcher.stop()
        await self.dispatcher.stop()
        if self._error_task is not None:
            await asyncio.gather(self._error_task, return_exceptions=True)
            self._error_task = None
        await self.activity.flush()
        await self.stream.wait_observers()
        self.stream.close()
        if self._stream_task is not None:
            await asyncio.gather(self._stream_task, return_exceptions=True)
            self._stream_task = None
