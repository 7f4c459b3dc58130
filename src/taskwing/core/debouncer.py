"""Category-aware change debouncer.

Bursts of edits (saving ten files, a branch checkout, ``npm install``)
are coalesced into one batch.  Every ``add`` restarts a single timer
whose delay depends on the category of the incoming event; when the
timer fires the pending list is swapped out and handed to the flush
callback in arrival order.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import threading
from typing import Any, Callable

from .models import FileCategory, FileChangeEvent

log = logging.getLogger(__name__)

DEFAULT_DELAYS: dict[FileCategory, float] = {
    FileCategory.DEPS: 2.0,
    FileCategory.DOCS: 1.0,
}
DEFAULT_DELAY = 0.5

FlushCallback = Callable[[list[FileChangeEvent]], Any]


class ChangeDebouncer:
    """Timed batcher of ``FileChangeEvent`` objects.

    Must be driven from a running event loop; the flush callback may be
    a plain function or a coroutine function.
    """

    def __init__(
        self,
        on_flush: FlushCallback,
        *,
        delays: dict[FileCategory, float] | None = None,
        default_delay: float = DEFAULT_DELAY,
    ) -> None:
        self._on_flush = on_flush
        self._delays = dict(DEFAULT_DELAYS)
        if delays:
            self._delays.update(delays)
        self._default_delay = default_delay
        self._pending: list[FileChangeEvent] = []
        self._timer: asyncio.TimerHandle | None = None
        self._lock = threading.Lock()
        self._stopped = False
        self._tasks: set[asyncio.Task] = set()

    def delay_for(self, category: FileCategory) -> float:
        return self._delays.get(category, self._default_delay)

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    @property
    def stopped(self) -> bool:
        return self._stopped

    def add(self, event: FileChangeEvent) -> None:
        """Queue *event* and restart the timer for its category."""
        loop = asyncio.get_running_loop()
        with self._lock:
            if self._stopped:
                log.debug("Debouncer stopped; dropping %s", event.path)
                return
            self._pending.append(event)
            if self._timer is not None:
                self._timer.cancel()
            self._timer = loop.call_later(self.delay_for(event.category), self._fire)

    def _fire(self) -> None:
        with self._lock:
            self._timer = None
            if self._stopped:
                return
            batch, self._pending = self._pending, []
        if not batch:
            return
        log.debug("Flushing %d debounced event(s)", len(batch))
        try:
            result = self._on_flush(batch)
        except Exception:
            log.exception("Debouncer flush callback failed")
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    def flush_now(self) -> None:
        """Fire immediately if anything is pending."""
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
        self._fire()

    def stop(self) -> None:
        """Cancel the timer and drop further adds.  Idempotent."""
        with self._lock:
            self._stopped = True
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            self._pending = []
