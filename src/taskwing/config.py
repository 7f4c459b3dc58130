"""Effective configuration for the analysis core.

Configuration is layered, lowest precedence first:

1. Model defaults below.
2. ``.taskwing/config.yaml`` (or ``config.json``) in the repository.
3. ``TASKWING_*`` environment variables.
4. Explicit overrides (CLI flags, test wiring).

Usage::

    from taskwing.config import load_config

    cfg = load_config("/path/to/repo", llm={"provider": "anthropic"})
    cfg.tasks_file   # Path('/path/to/repo/.taskwing/tasks/tasks.json')
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from .core.debug_log import sanitize
from .errors import ConfigError

logger = logging.getLogger(__name__)

TASKWING_DIR = ".taskwing"

DEFAULT_IGNORE_DIRS: list[str] = [
    "node_modules", "vendor", ".git", "dist", "build",
    "__pycache__", ".next", "coverage", "out",
]
DEFAULT_ALLOWED_DOTFILES: list[str] = [".env.example", ".github"]

# Provider → env-var holding the API key
_KEY_ENV_VARS: dict[str, str] = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
}

# Provider → default model
_DEFAULT_MODELS: dict[str, str] = {
    "openai": "gpt-4o-mini",
    "anthropic": "claude-sonnet-4-20250514",
}

_ENV_OVERRIDES: dict[str, tuple[str, ...]] = {
    "TASKWING_LLM_PROVIDER": ("llm", "provider"),
    "TASKWING_LLM_MODEL": ("llm", "model"),
    "TASKWING_LLM_BASE_URL": ("llm", "base_url"),
}


class LLMConfig(BaseModel):
    """Model backend settings."""

    provider: str = "openai"
    model: str = ""
    api_key: str = ""
    base_url: str = ""
    temperature: float = 0.3
    max_tokens: int = 4096
    max_retries: int = 4
    retry_base_delay: float = 0.5
    retry_max_delay: float = 30.0
    timeout: float = 120.0

    def resolved_model(self) -> str:
        return self.model or _DEFAULT_MODELS.get(self.provider, _DEFAULT_MODELS["openai"])

    def resolved_api_key(self) -> str:
        if self.api_key:
            return self.api_key
        env_var = _KEY_ENV_VARS.get(self.provider, "")
        return os.environ.get(env_var, "") if env_var else ""


class WatchSettings(BaseModel):
    """Watcher backend and debounce windows (seconds).

    ``poll_interval`` is the observer timeout, and the scan interval when
    ``use_polling`` swaps native notification for periodic snapshots.
    """

    poll_interval: float = 0.5
    use_polling: bool = False
    default_delay: float = 0.5
    docs_delay: float = 1.0
    deps_delay: float = 2.0


class TaskWingConfig(BaseModel):
    """Top-level configuration object passed to every component."""

    base_path: str = "."
    llm: LLMConfig = Field(default_factory=LLMConfig)
    watch: WatchSettings = Field(default_factory=WatchSettings)
    activity_max_entries: int = 500
    stream_buffer: int = 100
    notifier_timeout: float = 5.0
    log_retention: int = 5
    log_stderr: bool = False
    verify_findings: bool = True
    react_max_iterations: int = 10
    ignore_dirs: list[str] = Field(default_factory=lambda: list(DEFAULT_IGNORE_DIRS))
    allowed_dotfiles: list[str] = Field(default_factory=lambda: list(DEFAULT_ALLOWED_DOTFILES))

    # ── Paths ─────────────────────────────────────────────────────────

    @property
    def root(self) -> Path:
        return Path(self.base_path).resolve()

    @property
    def taskwing_dir(self) -> Path:
        return self.root / TASKWING_DIR

    @property
    def tasks_file(self) -> Path:
        return self.taskwing_dir / "tasks" / "tasks.json"

    @property
    def current_task_file(self) -> Path:
        return self.taskwing_dir / "current_task.json"

    @property
    def activity_file(self) -> Path:
        return self.taskwing_dir / "activity.json"

    @property
    def findings_file(self) -> Path:
        return self.taskwing_dir / "findings.json"

    @property
    def logs_dir(self) -> Path:
        return self.taskwing_dir / "logs"

    @property
    def archive_dir(self) -> Path:
        return self.taskwing_dir / "archive"

    @property
    def specs_dir(self) -> Path:
        return self.taskwing_dir / "specs"

    @property
    def project_name(self) -> str:
        return self.root.name

    def redacted(self) -> dict[str, Any]:
        """Configuration as a plain dict with secret-looking values masked."""
        return sanitize(self.model_dump(mode="json"))


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

def _read_config_file(path: Path) -> dict[str, Any]:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"cannot read config file {path.name}: {exc}") from exc

    try:
        if path.suffix in (".yaml", ".yml"):
            import yaml
            data = yaml.safe_load(text) or {}
        else:
            data = json.loads(text) if text.strip() else {}
    except Exception as exc:
        raise ConfigError(
            f"invalid config file {path.name}: {exc}",
            details={"file": path.name},
        ) from exc

    if not isinstance(data, dict):
        raise ConfigError(f"config file {path.name} must contain a mapping")
    return data


def _find_config_file(root: Path) -> Path | None:
    for name in ("config.yaml", "config.yml", "config.json"):
        candidate = root / TASKWING_DIR / name
        if candidate.is_file():
            return candidate
    return None


def _deep_merge(base: dict[str, Any], extra: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in extra.items():
        if value is None:
            continue
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(
    base_path: str | Path = ".",
    config_path: str | Path | None = None,
    **overrides: Any,
) -> TaskWingConfig:
    """Build the effective configuration for *base_path*.

    Parameters
    ----------
    base_path : str | Path
        Repository root being analysed.
    config_path : str | Path | None
        Explicit config file; defaults to ``.taskwing/config.{yaml,yml,json}``.
    **overrides
        Highest-precedence values, e.g. ``llm={"model": "gpt-4o"}``.

    Raises
    ------
    ConfigError
        If a config file exists but cannot be parsed or validated.
    """
    root = Path(base_path).resolve()
    data: dict[str, Any] = {}

    cfg_file = Path(config_path) if config_path else _find_config_file(root)
    if cfg_file is not None:
        data = _read_config_file(cfg_file)
        logger.debug("Loaded config from %s", cfg_file.name)

    for env_var, (section, key) in _ENV_OVERRIDES.items():
        value = os.environ.get(env_var)
        if value:
            data.setdefault(section, {})
            if isinstance(data[section], dict):
                data[section][key] = value

    data = _deep_merge(data, overrides)
    data["base_path"] = str(root)

    try:
        return TaskWingConfig(**data)
    except ValidationError as exc:
        raise ConfigError(
            f"invalid configuration: {exc.error_count()} error(s)",
            details={"errors": [e["msg"] for e in exc.errors()]},
        ) from exc
