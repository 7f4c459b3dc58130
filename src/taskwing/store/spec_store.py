"""Feature specs under ``.taskwing/specs/<slug>/``.

Each spec directory holds ``spec.json``, a rendered ``spec.md`` and,
once the spec has tasks, ``tasks.json``.
"""

from __future__ import annotations

import logging
import re
import uuid
from datetime import datetime
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from ..errors import TaskNotFoundError
from ._jsonio import read_json, write_json_atomic
from .task_store import utcnow

logger = logging.getLogger(__name__)

SPEC_SLUG_MAX = 50


class SpecStatus(str, Enum):
    DRAFT = "draft"
    APPROVED = "approved"
    IN_PROGRESS = "in-progress"
    DONE = "done"


class SpecTask(BaseModel):
    id: str = Field(default_factory=lambda: "task-" + uuid.uuid4().hex[:8])
    spec_id: str = ""
    title: str
    description: str = ""
    status: SpecStatus = SpecStatus.DRAFT
    priority: int = 0
    estimate: str = ""
    files: list[str] = Field(default_factory=list)
    depends_on: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)


class Spec(BaseModel):
    id: str = Field(default_factory=lambda: "spec-" + uuid.uuid4().hex[:8])
    title: str
    description: str = ""
    status: SpecStatus = SpecStatus.DRAFT
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    analysis: dict[str, str] = Field(default_factory=dict)
    tasks: list[SpecTask] = Field(default_factory=list)


class SpecSummary(BaseModel):
    id: str
    slug: str
    title: str
    status: SpecStatus
    task_count: int
    created_at: datetime


def spec_slug(title: str) -> str:
    s = re.sub(r"[^a-z0-9-]", "", title.lower().replace(" ", "-")).strip("-")
    return s[:SPEC_SLUG_MAX] or "spec"


_CHECKBOX = {SpecStatus.DONE: "[x]", SpecStatus.IN_PROGRESS: "[/]"}


def spec_to_markdown(spec: Spec) -> str:
    parts = [
        f"# {spec.title}\n",
        f"**Status:** {spec.status.value}",
        f"**Created:** {spec.created_at:%Y-%m-%d}\n",
    ]
    if spec.description:
        parts.append(f"## Description\n\n{spec.description}\n")
    for name, body in spec.analysis.items():
        if body:
            parts.append(f"---\n\n# {name.replace('_', ' ').title()}\n\n{body}\n")
    if spec.tasks:
        parts.append("---\n\n# Tasks\n")
        for t in spec.tasks:
            box = _CHECKBOX.get(t.status, "[ ]")
            parts.append(f"- {box} **{t.title}** ({t.estimate}) - {t.description}")
    return "\n".join(parts) + "\n"


class SpecStore:
    def __init__(self, base_dir: str | Path) -> None:
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def create_spec(self, title: str, description: str = "") -> Spec:
        spec = Spec(title=title, description=description)
        self.save_spec(spec)
        return spec

    def save_spec(self, spec: Spec) -> Path:
        spec.updated_at = utcnow()
        spec_dir = self.base_dir / spec_slug(spec.title)
        spec_dir.mkdir(parents=True, exist_ok=True)
        write_json_atomic(spec_dir / "spec.json", spec.model_dump(mode="json"))
        (spec_dir / "spec.md").write_text(spec_to_markdown(spec), encoding="utf-8")
        if spec.tasks:
            write_json_atomic(spec_dir / "tasks.json", [t.model_dump(mode="json") for t in spec.tasks])
        return spec_dir

    def _load(self, spec_dir: Path) -> Spec | None:
        try:
            return Spec.model_validate(read_json(spec_dir / "spec.json"))
        except (OSError, ValueError, ValidationError):
            return None

    def get_spec(self, slug_or_id: str) -> Spec:
        direct = self.base_dir / slug_or_id
        if re.fullmatch(r"[a-z0-9-]+", slug_or_id) and (direct / "spec.json").is_file():
            spec = self._load(direct)
            if spec is not None:
                return spec
        for d in sorted(self.base_dir.iterdir()):
            if d.is_dir():
                spec = self._load(d)
                if spec is not None and spec.id == slug_or_id:
                    return spec
        raise TaskNotFoundError(f"spec not found: {slug_or_id}", details={"spec": slug_or_id})

    def list_specs(self) -> list[SpecSummary]:
        out = []
        for d in self.base_dir.iterdir():
            if not d.is_dir():
                continue
            spec = self._load(d)
            if spec is None:
                continue
            out.append(SpecSummary(
                id=spec.id, slug=d.name, title=spec.title, status=spec.status,
                task_count=len(spec.tasks), created_at=spec.created_at,
            ))
        out.sort(key=lambda s: s.created_at, reverse=True)
        return out
