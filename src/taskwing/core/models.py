"""Core data models — findings, evidence, verification and change events.

All models are pydantic so they serialise uniformly into the activity
log, the findings store and tool-server payloads.
"""

from __future__ import annotations

import posixpath
import re
import time
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class FindingType(str, Enum):
    """Closed set of analytic claim kinds."""
    FEATURE = "feature"
    DECISION = "decision"
    DEPENDENCY = "dependency"
    PATTERN = "pattern"
    RISK = "risk"
    TODO = "todo"
    CONSTRAINT = "constraint"
    REFINEMENT = "refinement"
    PLAN = "plan"


class ConfidenceLabel(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class VerificationStatus(str, Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    PARTIAL = "partial"
    REJECTED = "rejected"
    SKIPPED = "skipped"


class EvidenceType(str, Enum):
    CODE = "code"
    DOC = "doc"
    GIT = "git"


class FileOperation(str, Enum):
    CREATE = "create"
    MODIFY = "modify"
    DELETE = "delete"
    RENAME = "rename"


class FileCategory(str, Enum):
    DOCS = "docs"
    CODE = "code"
    DEPS = "deps"
    CONFIG = "config"
    GIT = "git"
    IGNORE = "ignore"


# ---------------------------------------------------------------------------
# Well-known metadata keys
# ---------------------------------------------------------------------------

META_COMPONENT = "component"
META_SEVERITY = "severity"
META_QUESTIONS = "questions"
META_TASKS = "tasks"
META_IS_READY_TO_PLAN = "is_ready_to_plan"
META_GOAL_SUMMARY = "goal_summary"
META_ENRICHED_GOAL = "enriched_goal"
META_TYPE = "type"

WELL_KNOWN_METADATA: dict[str, type | tuple[type, ...]] = {
    META_COMPONENT: str,
    META_SEVERITY: str,
    META_QUESTIONS: list,
    META_TASKS: list,
    META_IS_READY_TO_PLAN: bool,
    META_GOAL_SUMMARY: str,
    META_ENRICHED_GOAL: str,
    META_TYPE: str,
}


def check_metadata(metadata: dict[str, Any]) -> list[str]:
    """Return a list of problems with well-known metadata keys (empty if OK)."""
    problems: list[str] = []
    for key, expected in WELL_KNOWN_METADATA.items():
        if key in metadata and metadata[key] is not None:
            if not isinstance(metadata[key], expected):
                problems.append(
                    f"metadata[{key!r}] should be {getattr(expected, '__name__', expected)}, "
                    f"got {type(metadata[key]).__name__}"
                )
    return problems


# ---------------------------------------------------------------------------
# Confidence mapping
# ---------------------------------------------------------------------------

_LABEL_SCORES: dict[str, float] = {"high": 0.9, "medium": 0.7, "low": 0.4}
DEFAULT_CONFIDENCE_SCORE = 0.5


def label_for_score(score: float) -> ConfidenceLabel:
    if score >= 0.8:
        return ConfidenceLabel.HIGH
    if score >= 0.5:
        return ConfidenceLabel.MEDIUM
    return ConfidenceLabel.LOW


def score_for_label(label: str | None) -> float:
    if not label:
        return DEFAULT_CONFIDENCE_SCORE
    return _LABEL_SCORES.get(str(label).strip().lower(), DEFAULT_CONFIDENCE_SCORE)


def parse_confidence(value: Any) -> float:
    """Accept a number, a numeric string or a label; return a score in [0, 1]."""
    if isinstance(value, bool) or value is None:
        return DEFAULT_CONFIDENCE_SCORE
    if isinstance(value, (int, float)):
        return min(1.0, max(0.0, float(value)))
    text = str(value).strip().lower()
    try:
        return min(1.0, max(0.0, float(text)))
    except ValueError:
        return score_for_label(text)


# ---------------------------------------------------------------------------
# Path helpers
# ---------------------------------------------------------------------------

def is_safe_relative_path(path: str) -> bool:
    """True if *path* is repo-relative and does not climb out of the base."""
    if not path:
        return False
    if path.startswith("/") or path.startswith("\\") or re.match(r"^[A-Za-z]:[\\/]", path):
        return False
    cleaned = posixpath.normpath(path.replace("\\", "/"))
    return not (cleaned == ".." or cleaned.startswith("../"))


def clean_source_files(paths: list[str] | None) -> list[str]:
    """Normalise relative paths, dropping absolute or traversing ones."""
    out: list[str] = []
    for p in paths or []:
        if not isinstance(p, str) or not is_safe_relative_path(p):
            continue
        cleaned = posixpath.normpath(p.replace("\\", "/"))
        if cleaned not in out:
            out.append(cleaned)
    return out


# ---------------------------------------------------------------------------
# Evidence
# ---------------------------------------------------------------------------

class Evidence(BaseModel):
    """A locator that justifies a finding."""

    file_path: str = ""
    start_line: int = 0
    end_line: int = 0
    snippet: str = ""
    grep_pattern: str = ""
    evidence_type: EvidenceType = EvidenceType.CODE

    @field_validator("start_line", "end_line", mode="before")
    @classmethod
    def _non_negative(cls, v: Any) -> int:
        try:
            return max(0, int(v or 0))
        except (TypeError, ValueError):
            return 0

    @field_validator("evidence_type", mode="before")
    @classmethod
    def _coerce_type(cls, v: Any) -> Any:
        if isinstance(v, str) and v.lower() not in {"code", "doc", "git"}:
            return EvidenceType.CODE
        return v.lower() if isinstance(v, str) else v

    @model_validator(mode="after")
    def _normalise_range(self) -> "Evidence":
        if self.start_line > 0 and self.end_line < self.start_line:
            self.end_line = self.start_line
        return self

    @property
    def is_git(self) -> bool:
        return (
            self.evidence_type == EvidenceType.GIT
            or self.file_path.startswith(".git")
            or "/.git/" in self.file_path
        )


class EvidenceCheckResult(BaseModel):
    """Outcome of re-checking one Evidence against disk or git."""

    evidence_index: int = 0
    file_exists: bool = False
    snippet_found: bool = False
    line_numbers_match: bool = False
    similarity_score: float = 0.0
    actual_content: str = ""
    error_message: str = ""


VERIFIER_VERSION = "1.0.0"


class VerificationResult(BaseModel):
    status: VerificationStatus = VerificationStatus.PENDING
    evidence_results: list[EvidenceCheckResult] = Field(default_factory=list)
    confidence_adjustment: float = 0.0
    verified_at: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )
    verifier_version: str = VERIFIER_VERSION


# ---------------------------------------------------------------------------
# Finding
# ---------------------------------------------------------------------------

class Finding(BaseModel):
    """An atomic analytic claim about the repository."""

    id: str = ""
    type: FindingType
    title: str
    description: str = ""
    why: str = ""
    tradeoffs: str = ""
    confidence: ConfidenceLabel = ConfidenceLabel.MEDIUM
    confidence_score: Optional[float] = None
    source_agent: str = ""
    source_files: list[str] = Field(default_factory=list)
    evidence: list[Evidence] = Field(default_factory=list)
    verification_status: VerificationStatus = VerificationStatus.PENDING
    verification_result: Optional[VerificationResult] = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("title")
    @classmethod
    def _title_required(cls, v: str) -> str:
        v = (v or "").strip()
        if not v:
            raise ValueError("finding title must not be empty")
        return v

    @field_validator("source_files", mode="before")
    @classmethod
    def _clean_files(cls, v: Any) -> list[str]:
        return clean_source_files(v if isinstance(v, list) else [])

    @model_validator(mode="after")
    def _sync_confidence(self) -> "Finding":
        if self.confidence_score is None:
            self.confidence_score = score_for_label(self.confidence.value)
        else:
            self.confidence_score = min(1.0, max(0.0, float(self.confidence_score)))
            self.confidence = label_for_score(self.confidence_score)
        return self

    def set_score(self, score: float) -> None:
        """Clamp and store a new score, re-deriving the label."""
        self.confidence_score = min(1.0, max(0.0, score))
        self.confidence = label_for_score(self.confidence_score)

    def key(self) -> str:
        """Canonical dedup key: normalised summary plus producing agent."""
        summary = re.sub(r"\s+", " ", self.title).strip().lower()
        return f"{summary}|{self.source_agent.strip().lower()}"


def new_finding_id() -> str:
    return uuid.uuid4().hex[:12]


def aggregate_findings(outputs: list[Any]) -> list[Finding]:
    """Flatten findings across agent outputs, stamping ``source_agent``."""
    all_findings: list[Finding] = []
    for out in outputs:
        for f in getattr(out, "findings", []) or []:
            if not f.source_agent:
                f.source_agent = out.agent_name
            all_findings.append(f)
    return all_findings


def group_findings_by_type(findings: list[Finding]) -> dict[FindingType, list[Finding]]:
    grouped: dict[FindingType, list[Finding]] = {}
    for f in findings:
        grouped.setdefault(f.type, []).append(f)
    return grouped


# ---------------------------------------------------------------------------
# Watch events
# ---------------------------------------------------------------------------

class FileChangeEvent(BaseModel):
    """A single observed filesystem change (repo-relative path)."""

    path: str
    operation: FileOperation
    category: FileCategory = FileCategory.IGNORE
    timestamp: float = Field(default_factory=time.time)
