"""Bounded context gathering for agent prompts.

Produces labelled excerpts of the repository (markdown, manifests, CI
configs, entry points, a prioritised source sample) with hard per-file
and total caps so prompts stay within model limits.  Every file that is
read or skipped is recorded in ``coverage``.

All methods are synchronous and do blocking I/O; agents call them via
``asyncio.to_thread``.
"""

from __future__ import annotations

import logging
import os
import re
import subprocess
from dataclasses import dataclass, field
from pathlib import Path

from ..core.classifier import ALLOWED_DOTFILES, CODE_EXTENSIONS, DEPS_FILES, IGNORED_DIRS

log = logging.getLogger(__name__)

ROOT_MD_LIMIT = 4000
DOCS_MD_LIMIT = 3000
PACKAGE_DOC_LIMIT = 3000
KEY_FILE_LIMIT = 3000
MANIFEST_LIMIT = 2000
CI_LIMIT = 3000
SPECIFIC_FILE_LIMIT = 8000
ENTRY_POINT_LINES = 80
MAX_ENTRY_POINTS = 5
DISCOVERED_FILE_LIMIT = 1500
MAX_SOURCE_FILES = 50
MAX_TOTAL_SOURCE = 150_000
GIT_TIMEOUT = 10.0

TRUNCATED = "\n...[truncated]"
SOURCE_LINE_FMT = "%4d\t%s"
NO_SOURCE = "No source code files found."

KEY_FILES = ["README.md", "go.mod", "package.json", "pyproject.toml", "Makefile", "makefile", "Justfile"]
PACKAGE_DOC_NAMES = {
    "readme.md", "agents.md", "claude.md", "gemini.md", "design.md",
    "architecture.md", "arch.md", "api.md", "schema.md", "security.md",
}
PACKAGE_DIRS = ["internal", "pkg", "lib", "src", "app", "server", "api"]
ENTRY_POINT_NAMES = [
    "main.go", "main.ts", "main.py", "main.rs", "index.ts", "index.js",
    "app.ts", "app.py", "server.go", "server.ts", "server.py", "__main__.py",
]
ENTRY_POINT_DIRS = ["", "cmd", "src"]
TEST_MARKERS = (
    "_test.", ".test.", ".spec.", "_spec.", "test_", "_tests.", ".tests.",
    "__tests__", "__test__",
)
PRIORITY_DIRS = {"internal": 3, "pkg": 3, "src": 3, "app": 2, "lib": 2, "cmd": 2, "server": 2, "api": 2}
PRIORITY_WORDS = ("handler", "service", "model", "router", "route", "api", "config", "store", "server")


def is_test_file(rel: str) -> bool:
    lowered = rel.lower()
    return any(marker in lowered for marker in TEST_MARKERS)


def _numbered(text: str, fmt: str = "%4d: %s") -> str:
    return "\n".join(fmt % (i, line) for i, line in enumerate(text.splitlines(), 1))


@dataclass
class Coverage:
    files_read: list[str] = field(default_factory=list)
    files_skipped: dict[str, str] = field(default_factory=dict)

    def read(self, rel: str) -> None:
        if rel not in self.files_read:
            self.files_read.append(rel)

    def skip(self, rel: str, reason: str) -> None:
        self.files_skipped.setdefault(rel, reason)


class ContextGatherer:
    """Size-capped reader over a repository."""

    def __init__(self, base_path: str | Path) -> None:
        self.base = Path(base_path).resolve()
        self.coverage = Coverage()

    # ── Helpers ───────────────────────────────────────────────────────

    def _rel(self, path: Path) -> str:
        return path.relative_to(self.base).as_posix()

    def _read(self, path: Path, limit: int) -> str | None:
        rel = self._rel(path)
        try:
            data = path.read_bytes()
        except OSError as exc:
            self.coverage.skip(rel, f"read error: {exc}")
            return None
        self.coverage.read(rel)
        text = data[:limit].decode("utf-8", errors="ignore")
        if len(data) > limit:
            text += TRUNCATED
        return text

    def _walk(self, start: Path | None = None):
        start = start or self.base
        for dirpath, dirnames, filenames in os.walk(start):
            dirnames[:] = sorted(
                d for d in dirnames
                if d not in IGNORED_DIRS and (not d.startswith(".") or d in ALLOWED_DOTFILES)
            )
            for name in sorted(filenames):
                yield Path(dirpath) / name

    # ── Markdown ──────────────────────────────────────────────────────

    def gather_markdown_docs(self) -> str:
        parts: list[str] = []
        for path in sorted(self.base.glob("*.md")):
            text = self._read(path, ROOT_MD_LIMIT)
            if text is not None:
                parts.append(f"## FILE: {self._rel(path)}\n```\n{_numbered(text)}\n```")

        docs_dir = self.base / "docs"
        if docs_dir.is_dir():
            for path in self._walk(docs_dir):
                if path.suffix.lower() != ".md":
                    continue
                text = self._read(path, DOCS_MD_LIMIT)
                if text is not None:
                    parts.append(f"## FILE: {self._rel(path)}\n```\n{_numbered(text)}\n```")

        for pkg in PACKAGE_DIRS:
            pkg_dir = self.base / pkg
            if not pkg_dir.is_dir():
                continue
            for path in self._walk(pkg_dir):
                if path.name.lower() not in PACKAGE_DOC_NAMES:
                    continue
                text = self._read(path, PACKAGE_DOC_LIMIT)
                if text is not None:
                    parts.append(f"## PACKAGE DOC: {self._rel(path)}\n```\n{text}\n```")
        return "\n\n".join(parts)

    def list_markdown_files(self, changed: list[str]) -> list[str]:
        return [p for p in changed if p.lower().endswith(".md")]

    # ── Key files / manifests / CI ────────────────────────────────────

    def gather_key_files(self) -> str:
        parts: list[str] = []
        for name in KEY_FILES:
            path = self.base / name
            if path.is_file():
                text = self._read(path, KEY_FILE_LIMIT)
                if text is not None:
                    parts.append(f"## {name}\n```\n{text}\n```")
        return "\n\n".join(parts)

    def find_manifests(self) -> list[Path]:
        found: list[Path] = []
        for path in self._walk():
            rel = self._rel(path)
            if path.name in DEPS_FILES and rel.count("/") <= 1:
                found.append(path)
        return found

    def gather_manifests(self, only: list[str] | None = None) -> str:
        parts: list[str] = []
        paths = [self.base / p for p in only] if only else self.find_manifests()
        for path in paths:
            if not path.is_file():
                continue
            # lock files are large and low-signal
            limit = MANIFEST_LIMIT if "lock" in path.name.lower() or path.name == "go.sum" else KEY_FILE_LIMIT
            text = self._read(path, limit)
            if text is not None:
                parts.append(f"## {self._rel(path)}\n```\n{text}\n```")
        return "\n\n".join(parts)

    def gather_ci_configs(self) -> str:
        candidates: list[Path] = []
        wf = self.base / ".github" / "workflows"
        if wf.is_dir():
            candidates += sorted(p for p in wf.iterdir() if p.suffix in (".yml", ".yaml"))
        for rel in (".gitlab-ci.yml", ".circleci/config.yml"):
            if (self.base / rel).is_file():
                candidates.append(self.base / rel)
        parts: list[str] = []
        for path in candidates:
            text = self._read(path, CI_LIMIT)
            if text is not None:
                parts.append(f"## {self._rel(path)}\n```yaml\n{text}\n```")
        return "\n\n".join(parts)

    def gather_specific_files(self, rel_paths: list[str]) -> str:
        """Read exactly *rel_paths* (watch mode).  Missing files are skipped."""
        parts: list[str] = []
        for rel in rel_paths:
            path = (self.base / rel).resolve()
            try:
                path.relative_to(self.base)
            except ValueError:
                self.coverage.skip(rel, "outside base")
                continue
            if not path.is_file():
                self.coverage.skip(rel, "not found")
                continue
            text = self._read(path, SPECIFIC_FILE_LIMIT)
            if text is not None:
                parts.append(f"## {self._rel(path)}\n```\n{_numbered(text, SOURCE_LINE_FMT)}\n```")
        return "\n\n".join(parts)

    # ── Source sample ─────────────────────────────────────────────────

    def _entry_points(self) -> list[Path]:
        found: list[Path] = []
        for d in ENTRY_POINT_DIRS:
            base = self.base / d if d else self.base
            if not base.is_dir():
                continue
            search = [base] + ([p for p in sorted(base.iterdir()) if p.is_dir()] if d == "cmd" else [])
            for directory in search:
                for name in ENTRY_POINT_NAMES:
                    candidate = directory / name
                    if candidate.is_file() and candidate not in found:
                        found.append(candidate)
        return found[:MAX_ENTRY_POINTS]

    def _priority(self, rel: str) -> int:
        parts = rel.split("/")
        score = PRIORITY_DIRS.get(parts[0], 0) if len(parts) > 1 else 1
        score -= max(0, len(parts) - 3)
        lowered = parts[-1].lower()
        if any(w in lowered for w in PRIORITY_WORDS):
            score += 2
        return score

    def gather_source_code(self) -> str:
        parts: list[str] = []
        total = 0
        seen: set[Path] = set()

        for path in self._entry_points():
            try:
                lines = path.read_text(encoding="utf-8", errors="ignore").splitlines()
            except OSError as exc:
                self.coverage.skip(self._rel(path), f"read error: {exc}")
                continue
            rel = self._rel(path)
            self.coverage.read(rel)
            body = "\n".join(SOURCE_LINE_FMT % (i, l) for i, l in enumerate(lines[:ENTRY_POINT_LINES], 1))
            if len(lines) > ENTRY_POINT_LINES:
                body += TRUNCATED
            block = f"## ENTRY POINT: {rel}\n```\n{body}\n```"
            parts.append(block)
            total += len(block)
            seen.add(path)

        candidates: list[tuple[int, str, Path]] = []
        for path in self._walk():
            if path in seen or path.suffix not in CODE_EXTENSIONS:
                continue
            rel = self._rel(path)
            if is_test_file(rel):
                self.coverage.skip(rel, "test file")
                continue
            candidates.append((-self._priority(rel), rel, path))
        candidates.sort()

        for _, rel, path in candidates:
            if len(seen) >= MAX_SOURCE_FILES:
                self.coverage.skip(rel, "file limit")
                continue
            text = self._read(path, DISCOVERED_FILE_LIMIT)
            if text is None:
                continue
            block = f"## {rel}\n```\n{_numbered(text, SOURCE_LINE_FMT)}\n```"
            if total + len(block) > MAX_TOTAL_SOURCE:
                self.coverage.skip(rel, "total size limit")
                continue
            parts.append(block)
            total += len(block)
            seen.add(path)

        return "\n\n".join(parts) if parts else NO_SOURCE

    # ── Tree ──────────────────────────────────────────────────────────

    def list_directory_tree(self, max_depth: int = 2) -> str:
        lines: list[str] = []

        def walk(directory: Path, depth: int) -> None:
            try:
                entries = sorted(directory.iterdir(), key=lambda p: (not p.is_dir(), p.name))
            except OSError:
                return
            for entry in entries:
                if entry.name.startswith(".") and entry.name not in ALLOWED_DOTFILES:
                    continue
                if entry.is_dir():
                    if entry.name in IGNORED_DIRS:
                        continue
                    lines.append("  " * depth + entry.name + "/")
                    if depth + 1 < max_depth:
                        walk(entry, depth + 1)
                else:
                    lines.append("  " * depth + entry.name)

        walk(self.base, 0)
        return "\n".join(lines)


# ---------------------------------------------------------------------------
# Import graph
# ---------------------------------------------------------------------------

_GO_MODULE_RE = re.compile(r"^module\s+(\S+)", re.MULTILINE)
_GO_IMPORT_BLOCK_RE = re.compile(r"import\s*\((.*?)\)", re.DOTALL)
_GO_IMPORT_LINE_RE = re.compile(r'import\s+(?:\w+\s+)?"([^"]+)"')
_QUOTED_RE = re.compile(r'"([^"]+)"')
IMPORT_GRAPH_DIRS = ("internal", "pkg", "cmd")


def read_module_prefix(base: Path) -> str:
    go_mod = base / "go.mod"
    try:
        match = _GO_MODULE_RE.search(go_mod.read_text(encoding="utf-8"))
    except OSError:
        return ""
    return match.group(1) if match else ""


def parse_go_imports(source: str) -> list[str]:
    imports: list[str] = []
    for block in _GO_IMPORT_BLOCK_RE.findall(source):
        imports += _QUOTED_RE.findall(block)
    imports += _GO_IMPORT_LINE_RE.findall(source)
    return imports


def build_import_graph(base_path: str | Path) -> dict[str, list[str]]:
    """Map internal package → internal packages it imports.

    Only non-test ``.go`` files under ``internal/``, ``pkg/`` or ``cmd/``
    are parsed, and only imports starting with the ``go.mod`` module
    path are kept.  Package names are returned relative to the module.
    """
    base = Path(base_path).resolve()
    prefix = read_module_prefix(base)
    if not prefix:
        return {}
    graph: dict[str, set[str]] = {}
    for top in IMPORT_GRAPH_DIRS:
        root = base / top
        if not root.is_dir():
            continue
        for path in sorted(root.rglob("*.go")):
            if path.name.endswith("_test.go"):
                continue
            try:
                source = path.read_text(encoding="utf-8", errors="ignore")
            except OSError:
                continue
            pkg = path.parent.relative_to(base).as_posix()
            for imp in parse_go_imports(source):
                if imp.startswith(prefix + "/"):
                    target = imp[len(prefix) + 1:]
                    if target != pkg:
                        graph.setdefault(pkg, set()).add(target)
    return {k: sorted(v) for k, v in sorted(graph.items())}


def format_import_graph(graph: dict[str, list[str]]) -> str:
    if not graph:
        return ""
    lines = ["## INTERNAL IMPORT GRAPH"]
    for pkg, deps in graph.items():
        lines.append(f"{pkg} -> {', '.join(deps)}")
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Git
# ---------------------------------------------------------------------------

def _git(base: Path, *args: str) -> str | None:
    try:
        proc = subprocess.run(
            ["git", *args], cwd=base, capture_output=True, text=True, timeout=GIT_TIMEOUT,
        )
    except (OSError, subprocess.TimeoutExpired) as exc:
        log.debug("git %s failed: %s", args[0] if args else "", exc)
        return None
    return proc.stdout if proc.returncode == 0 else None


def git_summary(base_path: str | Path, limit: int = 20) -> str:
    """Recent commits and top contributors, or ``""`` outside a repo."""
    base = Path(base_path).resolve()
    recent = _git(base, "log", "--oneline", f"-{limit}")
    if recent is None:
        return ""
    parts = [f"## RECENT COMMITS\n{recent.strip()}"]
    authors = _git(base, "shortlog", "-sn", "--all")
    if authors:
        top = "\n".join(authors.strip().splitlines()[:5])
        parts.append(f"## CONTRIBUTORS\n{top}")
    return "\n\n".join(parts)
