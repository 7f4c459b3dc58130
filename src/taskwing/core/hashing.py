"""Content-hash tracker.

Answers "has this file's content changed since I last looked?" for the
watch engine.  Digests are 128-bit MD5, which is plenty for telling
revisions of files in a local working tree apart.
"""

from __future__ import annotations

import hashlib
import logging
import threading
from pathlib import Path

log = logging.getLogger(__name__)


def hash_file(path: str | Path) -> str:
    """Return the hex digest of *path*, or ``""`` if it cannot be read."""
    h = hashlib.md5()
    try:
        with open(path, "rb") as f:
            for chunk in iter(lambda: f.read(8192), b""):
                h.update(chunk)
    except (OSError, PermissionError):
        return ""
    return h.hexdigest()


class ContentHashTracker:
    """Thread-safe map of absolute path → content digest."""

    def __init__(self) -> None:
        self._hashes: dict[str, str] = {}
        self._lock = threading.Lock()

    def has_changed(self, path: str | Path) -> bool:
        """Recompute the digest for *path* and record it.

        Returns ``True`` when the path is new, its digest differs from
        the stored one, or it cannot be read.
        """
        key = str(path)
        digest = hash_file(key)
        with self._lock:
            previous = self._hashes.get(key)
            self._hashes[key] = digest
        if not digest:
            log.debug("Unreadable file treated as changed: %s", key)
            return True
        return previous != digest

    def remove(self, path: str | Path) -> None:
        with self._lock:
            self._hashes.pop(str(path), None)

    def get(self, path: str | Path) -> str | None:
        with self._lock:
            return self._hashes.get(str(path))

    def __contains__(self, path: object) -> bool:
        with self._lock:
            return str(path) in self._hashes

    def __len__(self) -> int:
        with self._lock:
            return len(self._hashes)
