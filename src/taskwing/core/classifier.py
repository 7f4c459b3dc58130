"""Category classifier for changed paths.

A pure function: the same relative path always maps to the same
``FileCategory``.  Rules are applied in order; the first match wins.
"""

from __future__ import annotations

import posixpath
from typing import Iterable

from .models import FileCategory

IGNORED_DIRS: frozenset[str] = frozenset({
    "node_modules", "vendor", ".git", "dist", "build",
    "__pycache__", ".next", "coverage", "out",
})

ALLOWED_DOTFILES: frozenset[str] = frozenset({".env.example", ".github"})

DEPS_FILES: frozenset[str] = frozenset({
    "go.mod", "go.sum", "package.json", "package-lock.json", "yarn.lock",
    "pnpm-lock.yaml", "Cargo.toml", "Cargo.lock", "requirements.txt",
    "Pipfile", "pyproject.toml",
})

CONFIG_SUFFIXES: frozenset[str] = frozenset({".yaml", ".yml", ".toml"})
CONFIG_FILES: frozenset[str] = frozenset({
    "Dockerfile", "docker-compose.yaml", "docker-compose.yml",
    "Makefile", "justfile", ".env.example",
})

CODE_EXTENSIONS: frozenset[str] = frozenset({
    ".go", ".ts", ".tsx", ".js", ".jsx", ".py", ".rs", ".java", ".kt",
    ".swift", ".c", ".cpp", ".h", ".hpp", ".cs", ".rb", ".php", ".vue",
    ".svelte",
})


def _segments(rel_path: str) -> list[str]:
    cleaned = posixpath.normpath(rel_path.replace("\\", "/"))
    return [s for s in cleaned.split("/") if s and s != "."]


def is_hidden(name: str, allowed: Iterable[str] = ALLOWED_DOTFILES) -> bool:
    return name.startswith(".") and name not in set(allowed)


def categorize(
    rel_path: str,
    *,
    ignore_dirs: Iterable[str] = IGNORED_DIRS,
    allowed_dotfiles: Iterable[str] = ALLOWED_DOTFILES,
) -> FileCategory:
    """Map a repo-relative path to its ``FileCategory``."""
    parts = _segments(rel_path)
    if not parts:
        return FileCategory.IGNORE
    name = parts[-1]
    allowed = set(allowed_dotfiles)

    if is_hidden(name, allowed):
        return FileCategory.IGNORE

    ignored = set(ignore_dirs)
    if any(seg in ignored for seg in parts):
        return FileCategory.IGNORE

    if name in DEPS_FILES:
        return FileCategory.DEPS

    _, ext = posixpath.splitext(name)
    parent = parts[-2] if len(parts) > 1 else ""
    if ext == ".md" or parent == "docs":
        return FileCategory.DOCS

    if ext in CONFIG_SUFFIXES or name in CONFIG_FILES:
        return FileCategory.CONFIG

    if ext in CODE_EXTENSIONS:
        return FileCategory.CODE

    return FileCategory.IGNORE
