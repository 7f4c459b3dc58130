"""Recursive filesystem watcher on top of ``watchdog``.

Every non-ignored directory beneath the root is scheduled with the
platform's change notification facility (inotify, FSEvents,
ReadDirectoryChangesW).  Notifications arrive on watchdog's observer
thread and are handed to the event loop as raw ``WatchEvent`` objects.

Usage::

    watcher = FileWatcher("/path/to/repo")
    await watcher.start()
    async for event in watcher:
        print(event.operation, event.path)
    await watcher.stop()

Both outbound queues (``events`` and ``errors``) receive a ``None``
sentinel on shutdown; iteration over the watcher ends there.
"""

from __future__ import annotations

import asyncio
import logging
import os
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Iterable, Optional

from watchdog.events import (
    EVENT_TYPE_CREATED,
    EVENT_TYPE_DELETED,
    EVENT_TYPE_MODIFIED,
    EVENT_TYPE_MOVED,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer
from watchdog.observers.api import BaseObserver, ObservedWatch
from watchdog.observers.polling import PollingObserver

from .classifier import ALLOWED_DOTFILES, IGNORED_DIRS
from .models import FileOperation

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class WatchEvent:
    """A raw change as reported by the observer (absolute path)."""

    path: str
    operation: FileOperation
    is_dir: bool = False


def translate(event: FileSystemEvent) -> list[WatchEvent]:
    """Map one watchdog event onto zero or more raw events.

    A move becomes a rename of the old path plus a create of the new
    one.  Directory modifications only mean "a child changed" and are
    dropped, as are open/close notifications.
    """
    src = os.fsdecode(event.src_path)
    is_dir = event.is_directory
    if event.event_type == EVENT_TYPE_CREATED:
        return [WatchEvent(src, FileOperation.CREATE, is_dir)]
    if event.event_type == EVENT_TYPE_MODIFIED:
        return [] if is_dir else [WatchEvent(src, FileOperation.MODIFY)]
    if event.event_type == EVENT_TYPE_DELETED:
        return [WatchEvent(src, FileOperation.DELETE, is_dir)]
    if event.event_type == EVENT_TYPE_MOVED:
        dest = os.fsdecode(event.dest_path)
        return [WatchEvent(src, FileOperation.RENAME, is_dir), WatchEvent(dest, FileOperation.CREATE, is_dir)]
    return []


class _Forwarder(FileSystemEventHandler):
    def __init__(self, watcher: "FileWatcher") -> None:
        self.watcher = watcher

    def on_any_event(self, event: FileSystemEvent) -> None:
        self.watcher.on_fs_event(event)


class FileWatcher:
    """Watches every non-ignored directory beneath *root*.

    Parameters
    ----------
    root : str | Path
        Directory to watch recursively.
    interval : float
        Observer timeout; the scan interval when *use_polling* is set.
    ignore_dirs : Iterable[str]
        Directory names never watched.
    allowed_dotfiles : Iterable[str]
        Hidden names that are still watched (``.github`` for CI configs).
    use_polling : bool
        Use watchdog's snapshot observer instead of native notification
        (network filesystems, containers without inotify).
    """

    def __init__(
        self,
        root: str | Path,
        *,
        interval: float = 0.5,
        ignore_dirs: Iterable[str] = IGNORED_DIRS,
        allowed_dotfiles: Iterable[str] = ALLOWED_DOTFILES,
        use_polling: bool = False,
    ) -> None:
        self.root = Path(root).resolve()
        self.interval = interval
        self.ignore_dirs = set(ignore_dirs)
        self.allowed_dotfiles = set(allowed_dotfiles)
        self.use_polling = use_polling
        self.events: asyncio.Queue[Optional[WatchEvent]] = asyncio.Queue()
        self.errors: asyncio.Queue[Optional[Exception]] = asyncio.Queue()
        self._watches: dict[str, ObservedWatch] = {}
        self._lock = threading.RLock()
        self._observer: BaseObserver = (
            PollingObserver(timeout=interval) if use_polling else Observer(timeout=interval)
        )
        self._handler = _Forwarder(self)
        self._loop: asyncio.AbstractEventLoop | None = None
        self._closed = False

    @property
    def watched_dirs(self) -> set[str]:
        with self._lock:
            return set(self._watches)

    # ── Lifecycle ─────────────────────────────────────────────────────

    async def start(self) -> None:
        """Schedule every directory and start the observer thread."""
        if not self.root.is_dir():
            raise FileNotFoundError(f"watch root is not a directory: {self.root}")
        self._loop = asyncio.get_running_loop()
        await asyncio.to_thread(self.add_watch, self.root)
        self._observer.start()
        log.info("Watching %d directories under %s", len(self.watched_dirs), self.root)

    async def stop(self) -> None:
        """Stop the observer and close both queues.  Safe to call twice."""
        if self._closed:
            return
        self._closed = True
        self._observer.stop()
        if self._observer.is_alive():
            await asyncio.to_thread(self._observer.join)
        with self._lock:
            self._watches.clear()
        await self.events.put(None)
        await self.errors.put(None)

    @property
    def closed(self) -> bool:
        return self._closed

    def __aiter__(self) -> AsyncIterator[WatchEvent]:
        return self._iter()

    async def _iter(self) -> AsyncIterator[WatchEvent]:
        while True:
            event = await self.events.get()
            if event is None:
                return
            yield event

    # ── Watch set ─────────────────────────────────────────────────────

    def _skip_dir(self, name: str) -> bool:
        if name in self.ignore_dirs:
            return True
        return name.startswith(".") and name not in self.allowed_dotfiles

    def is_ignored(self, path: str | Path) -> bool:
        """True when any directory component of *path* below the root is skipped."""
        try:
            parts = Path(path).relative_to(self.root).parts
        except ValueError:
            return True
        return any(self._skip_dir(p) for p in parts[:-1])

    def add_watch(self, directory: str | Path) -> None:
        """Schedule *directory* and every non-ignored directory beneath it.

        Scheduling failures (watch limits, a directory removed mid-walk)
        go to the ``errors`` queue; the rest of the tree is still watched.
        """
        top = Path(directory)
        if top != self.root and (self.is_ignored(top) or self._skip_dir(top.name)):
            return

        def _on_error(exc: OSError) -> None:
            log.debug("Walk error: %s", exc)

        for dirpath, dirnames, _ in os.walk(top, onerror=_on_error):
            dirnames[:] = sorted(d for d in dirnames if not self._skip_dir(d))
            self._schedule(dirpath)

    # The observer holds its own lock while dispatching, so never call
    # into it with self._lock held.

    def _schedule(self, dirpath: str) -> None:
        with self._lock:
            if dirpath in self._watches:
                return
        try:
            watch = self._observer.schedule(self._handler, dirpath, recursive=False)
        except OSError as exc:
            log.warning("Cannot watch %s: %s", dirpath, exc)
            self._post_error(exc)
            return
        with self._lock:
            self._watches[dirpath] = watch

    def remove_watch(self, directory: str | Path) -> None:
        prefix = str(directory)
        with self._lock:
            gone = [p for p in self._watches if p == prefix or p.startswith(prefix + os.sep)]
            watches = [(p, self._watches.pop(p)) for p in gone]
        for path, watch in watches:
            try:
                self._observer.unschedule(watch)
            except KeyError:
                log.debug("watch on %s already gone", path)

    # ── Observer thread → event loop ──────────────────────────────────

    def on_fs_event(self, event: FileSystemEvent) -> None:
        """Called on the observer thread for every notification."""
        for raw in translate(event):
            if self.is_ignored(raw.path) or (raw.is_dir and self._skip_dir(Path(raw.path).name)):
                continue
            if raw.is_dir and raw.operation in (FileOperation.DELETE, FileOperation.RENAME):
                self.remove_watch(raw.path)
            self._post(self.events, raw)

    def _post_error(self, exc: Exception) -> None:
        self._post(self.errors, exc)

    def _post(self, queue: asyncio.Queue, item: object) -> None:
        if self._closed or self._loop is None or self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(queue.put_nowait, item)
