"""Repository tools available to the tool-calling code agent.

Each tool is described by a ``ToolContract`` (name, description,
parameter list) that converts into the JSON schema bound to the model,
and implemented by an adapter whose ``execute`` returns plain text for
the model to read.

Every path argument is confined to the base path: absolute paths and
anything that normalises to ``..`` raise ``PathTraversalError`` before
any file is touched.
"""

from __future__ import annotations

import asyncio
import fnmatch
import logging
import os
import posixpath
import re
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from ..core.classifier import ALLOWED_DOTFILES, IGNORED_DIRS
from ..errors import (
    CommandNotAllowedError,
    FileNotFoundInBaseError,
    InvalidInputError,
    PathTraversalError,
    TaskWingError,
)
from ..llm.chat_model import ToolSpec

log = logging.getLogger(__name__)

READ_FILE_MAX_LINES = 500
GREP_MAX_MATCHES = 50
LIST_DIR_MAX_ITEMS = 150
EXEC_MAX_OUTPUT = 10_000
EXEC_TIMEOUT = 30.0

ALLOWED_COMMANDS: frozenset[str] = frozenset({"git", "head", "tail", "wc", "find"})

DEFAULT_GREP_INCLUDE: list[str] = [
    "*.go", "*.ts", "*.tsx", "*.js", "*.jsx", "*.json", "*.yaml", "*.yml",
    "*.md", "*.py", "*.rs", "*.toml",
]


# ---------------------------------------------------------------------------
# Parameter & contract models
# ---------------------------------------------------------------------------

class ToolParameter(BaseModel):
    """Schema for a single parameter of a tool."""
    name: str
    type: str                       # "string", "integer", "array"
    description: str = ""
    required: bool = True
    default: Any = None
    items: str | None = None        # element type for arrays


class ToolContract(BaseModel):
    """JSON-schema-style contract for an agent tool."""
    name: str
    description: str = ""
    parameters: list[ToolParameter] = Field(default_factory=list)

    @property
    def param_names(self) -> list[str]:
        return [p.name for p in self.parameters]

    def validate_params(self, params: dict[str, Any]) -> list[str]:
        """Return a list of validation errors (empty = valid)."""
        errors: list[str] = []
        for p in self.parameters:
            if p.required and p.name not in params:
                errors.append(f"Missing required parameter: {p.name}")
        return errors

    def to_spec(self) -> ToolSpec:
        props: dict[str, Any] = {}
        for p in self.parameters:
            schema: dict[str, Any] = {"type": p.type, "description": p.description}
            if p.items:
                schema["items"] = {"type": p.items}
            if p.default is not None:
                schema["default"] = p.default
            props[p.name] = schema
        return ToolSpec(
            name=self.name,
            description=self.description,
            parameters={
                "type": "object",
                "properties": props,
                "required": [p.name for p in self.parameters if p.required],
            },
        )


TOOL_REGISTRY: dict[str, ToolContract] = {}


def register_tool(contract: ToolContract) -> ToolContract:
    TOOL_REGISTRY[contract.name] = contract
    return contract


READ_FILE = register_tool(ToolContract(
    name="read_file",
    description="Read a file from the repository. Returns numbered lines.",
    parameters=[
        ToolParameter(name="path", type="string", description="Repo-relative file path"),
        ToolParameter(name="max_lines", type="integer", required=False,
                      default=READ_FILE_MAX_LINES, description="Maximum lines to return"),
    ],
))

GREP_SEARCH = register_tool(ToolContract(
    name="grep_search",
    description="Search file contents recursively with a regular expression.",
    parameters=[
        ToolParameter(name="pattern", type="string", description="Regular expression"),
        ToolParameter(name="path", type="string", required=False,
                      description="Repo-relative directory to search (default: root)"),
        ToolParameter(name="include", type="array", items="string", required=False,
                      description="Glob patterns of files to include, e.g. ['*.go']"),
    ],
))

LIST_DIR = register_tool(ToolContract(
    name="list_dir",
    description="List a directory as an indented tree.",
    parameters=[
        ToolParameter(name="path", type="string", required=False,
                      description="Repo-relative directory (default: root)"),
        ToolParameter(name="max_depth", type="integer", required=False, default=2,
                      description="Depth of the tree"),
    ],
))

EXEC_COMMAND = register_tool(ToolContract(
    name="exec_command",
    description="Run a read-only command. Allowed: git, head, tail, wc, find.",
    parameters=[
        ToolParameter(name="command", type="string", description="Command name"),
        ToolParameter(name="args", type="array", items="string", required=False,
                      description="Command arguments"),
    ],
))


# ---------------------------------------------------------------------------
# Path confinement
# ---------------------------------------------------------------------------

def check_relative(path: str) -> str:
    """Normalise *path*; raise ``PathTraversalError`` if it escapes the base."""
    raw = (path or ".").strip() or "."
    if raw.startswith("/") or raw.startswith("\\") or re.match(r"^[A-Za-z]:[\\/]", raw):
        raise PathTraversalError("absolute paths are not allowed", details={"path": raw})
    cleaned = posixpath.normpath(raw.replace("\\", "/"))
    if cleaned == ".." or cleaned.startswith("../"):
        raise PathTraversalError("path escapes the repository", details={"path": raw})
    return cleaned


def resolve_in_base(base: Path, path: str) -> Path:
    cleaned = check_relative(path)
    full = (base / cleaned).resolve()
    try:
        full.relative_to(base)
    except ValueError:
        raise PathTraversalError("path escapes the repository", details={"path": path})
    return full


def format_size(size: int) -> str:
    if size < 1024:
        return f"{size}B"
    if size < 1024 * 1024:
        return f"{size / 1024:.1f}KB"
    return f"{size / (1024 * 1024):.1f}MB"


# ---------------------------------------------------------------------------
# Tool adapters
# ---------------------------------------------------------------------------

class _AgentToolBase(ABC):
    """Shared state for agent tools: the confined base path."""

    contract: ToolContract

    def __init__(self, base_path: Path | str) -> None:
        self.base_path = Path(base_path).resolve()

    @property
    def name(self) -> str:
        return self.contract.name

    @abstractmethod
    async def execute(self, params: dict[str, Any]) -> str:
        ...


class ReadFileTool(_AgentToolBase):
    contract = READ_FILE

    async def execute(self, params: dict[str, Any]) -> str:
        rel = str(params.get("path", ""))
        full = resolve_in_base(self.base_path, rel)
        max_lines = int(params.get("max_lines") or READ_FILE_MAX_LINES)
        if max_lines <= 0:
            max_lines = READ_FILE_MAX_LINES
        if not full.is_file():
            raise FileNotFoundInBaseError(f"file not found: {check_relative(rel)}")
        content = await asyncio.to_thread(full.read_text, encoding="utf-8", errors="replace")
        lines = content.splitlines()
        shown = "\n".join(f"{i:4d}: {line}" for i, line in enumerate(lines[:max_lines], 1))
        if len(lines) > max_lines:
            shown += f"\n... [truncated: showing {max_lines} of {len(lines)} lines]"
        return shown


class GrepSearchTool(_AgentToolBase):
    contract = GREP_SEARCH

    def _search(self, regex: re.Pattern[str], root: Path, include: list[str]) -> list[str]:
        matches: list[str] = []
        total = 0
        for dirpath, dirnames, filenames in os.walk(root):
            dirnames[:] = sorted(
                d for d in dirnames
                if d not in IGNORED_DIRS and (not d.startswith(".") or d in ALLOWED_DOTFILES)
            )
            for name in sorted(filenames):
                if not any(fnmatch.fnmatch(name, pat) for pat in include):
                    continue
                full = Path(dirpath) / name
                try:
                    text = full.read_text(encoding="utf-8", errors="replace")
                except OSError:
                    continue
                rel = full.relative_to(self.base_path).as_posix()
                for lineno, line in enumerate(text.splitlines(), 1):
                    if not regex.search(line):
                        continue
                    total += 1
                    if total > GREP_MAX_MATCHES:
                        matches.append(
                            f"... [truncated: showing {GREP_MAX_MATCHES} of {total}+ matches]"
                        )
                        return matches
                    matches.append(f"{rel}:{lineno}: {line.strip()[:200]}")
        return matches

    async def execute(self, params: dict[str, Any]) -> str:
        pattern = str(params.get("pattern", ""))
        if not pattern:
            raise InvalidInputError("pattern is required")
        root = resolve_in_base(self.base_path, str(params.get("path") or "."))
        include = params.get("include") or DEFAULT_GREP_INCLUDE
        if isinstance(include, str):
            include = [include]
        try:
            regex = re.compile(pattern)
        except re.error:
            regex = re.compile(re.escape(pattern))
        matches = await asyncio.to_thread(self._search, regex, root, list(include))
        return "\n".join(matches) if matches else "No matches found."


class ListDirTool(_AgentToolBase):
    contract = LIST_DIR

    def _tree(self, root: Path, max_depth: int) -> list[str]:
        lines: list[str] = []

        def walk(directory: Path, depth: int) -> bool:
            try:
                entries = sorted(directory.iterdir(), key=lambda p: (not p.is_dir(), p.name))
            except OSError:
                return True
            for entry in entries:
                name = entry.name
                if name.startswith(".") and name not in ALLOWED_DOTFILES:
                    continue
                if entry.is_dir() and name in IGNORED_DIRS:
                    continue
                if len(lines) >= LIST_DIR_MAX_ITEMS:
                    return False
                indent = "  " * depth
                if entry.is_dir():
                    lines.append(f"{indent}📁 {name}/")
                    if depth + 1 < max_depth and not walk(entry, depth + 1):
                        return False
                else:
                    try:
                        size = entry.stat().st_size
                    except OSError:
                        size = 0
                    lines.append(f"{indent}📄 {name} ({format_size(size)})")
            return True

        if not walk(root, 0):
            lines.append(f"... [truncated: showing {LIST_DIR_MAX_ITEMS} items]")
        return lines

    async def execute(self, params: dict[str, Any]) -> str:
        root = resolve_in_base(self.base_path, str(params.get("path") or "."))
        max_depth = int(params.get("max_depth") or 2)
        if not root.is_dir():
            return "Directory is empty or does not exist."
        lines = await asyncio.to_thread(self._tree, root, max(1, max_depth))
        return "\n".join(lines) if lines else "Directory is empty or does not exist."


# Options that run other programs, write files or read path lists.
FORBIDDEN_OPTIONS: dict[str, tuple[str, ...]] = {
    "find": ("-exec", "-execdir", "-ok", "-okdir", "-delete", "-fprint", "-fls", "-files0-from"),
    "wc": ("--files0-from",),
    "git": ("-c", "--config-env", "--exec-path", "--upload-pack", "--receive-pack", "--ext-diff", "--textconv"),
}


def check_command_args(command: str, args: list[str]) -> None:
    """Reject dangerous options and confine every path-like argument.

    ``--opt=value`` is split so the value goes through the same check
    as a positional path; ``find -fprint0`` matches the ``-fprint`` prefix.
    """
    forbidden = FORBIDDEN_OPTIONS.get(command, ())
    for arg in args:
        if arg.startswith("-"):
            option, sep, value = arg.partition("=")
            if any(option == f or (f == "-fprint" and option.startswith(f)) for f in forbidden):
                raise CommandNotAllowedError(
                    f"option '{option}' is not allowed for {command}",
                    details={"command": command, "option": option},
                )
            if sep and value:
                check_relative(value)
        elif "/" in arg or "\\" in arg or arg.startswith(".."):
            check_relative(arg)


async def run_process(
    command: str,
    args: list[str],
    cwd: Path,
    timeout: float = EXEC_TIMEOUT,
    max_output: int = EXEC_MAX_OUTPUT,
) -> str:
    """Spawn a whitelisted command (no shell) and return combined output."""
    if command not in ALLOWED_COMMANDS:
        raise CommandNotAllowedError(
            f"command '{command}' is not allowed; allowed: {', '.join(sorted(ALLOWED_COMMANDS))}",
            details={"command": command},
        )
    check_command_args(command, args)
    proc = await asyncio.create_subprocess_exec(
        command, *args,
        cwd=str(cwd),
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
    )
    try:
        out, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise TaskWingError(f"{command} timed out after {timeout:.0f}s", code="Timeout")
    text = out.decode("utf-8", errors="replace")
    if len(text) > max_output:
        text = text[:max_output] + "\n... [truncated: output too large]"
    return text


class ExecCommandTool(_AgentToolBase):
    contract = EXEC_COMMAND

    async def execute(self, params: dict[str, Any]) -> str:
        command = str(params.get("command", "")).strip()
        args = params.get("args") or []
        if isinstance(args, str):
            args = args.split()
        args = [str(a) for a in args]
        if command not in ALLOWED_COMMANDS:
            raise CommandNotAllowedError(
                f"command '{command}' is not allowed; allowed: {', '.join(sorted(ALLOWED_COMMANDS))}",
                details={"command": command},
            )
        output = await run_process(command, args, self.base_path)
        return output or "(no output)"


_TOOL_CLASSES: dict[str, type[_AgentToolBase]] = {
    "read_file": ReadFileTool,
    "grep_search": GrepSearchTool,
    "list_dir": ListDirTool,
    "exec_command": ExecCommandTool,
}


def build_toolset(base_path: Path | str) -> dict[str, _AgentToolBase]:
    """Instantiate every agent tool bound to *base_path*."""
    return {name: cls(base_path) for name, cls in _TOOL_CLASSES.items()}


def tool_specs() -> list[ToolSpec]:
    return [TOOL_REGISTRY[name].to_spec() for name in _TOOL_CLASSES]


async def execute_tool(tools: dict[str, _AgentToolBase], name: str, params: dict[str, Any]) -> str:
    """Validate and run one tool.  Raises ``TaskWingError`` on failure."""
    tool = tools.get(name)
    if tool is None:
        raise InvalidInputError(f"unknown tool: {name}")
    problems = tool.contract.validate_params(params)
    if problems:
        raise InvalidInputError("; ".join(problems))
    return await tool.execute(params)
