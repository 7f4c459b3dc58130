"""Deterministic evidence verification.

Re-reads the files (or git history) each finding cites and checks that
the quoted snippets are really there.  No model is involved: the same
tree always yields the same verdict.  The verdict adjusts the finding's
confidence:

* every evidence matches strictly → ``verified``, +0.1
* every evidence at least partially, one of them strictly → ``partial``, 0.0
* otherwise some evidence matches → ``partial``, -0.1
* none matches → ``rejected``, -0.3
* no evidence → ``skipped``
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import subprocess
from pathlib import Path
from typing import Iterable

from .similarity import jaccard_similarity
from .models import (
    ConfidenceLabel,
    Evidence,
    EvidenceCheckResult,
    Finding,
    VerificationResult,
    VerificationStatus,
    label_for_score,
)

log = logging.getLogger(__name__)

MAX_ACTUAL_CONTENT = 500
GIT_LOG_TIMEOUT = 10.0
GREP_SIMILARITY = 0.6
PARTIAL_THRESHOLD = 0.5

DELTA_VERIFIED = 0.1
DELTA_PARTIAL_ALL = 0.0
DELTA_PARTIAL_SOME = -0.1
DELTA_REJECTED = -0.3

_HEX_RE = re.compile(r"^[0-9a-fA-F]{7,40}$")


# ---------------------------------------------------------------------------
# Text helpers
# ---------------------------------------------------------------------------

def normalize_whitespace(text: str) -> str:
    """Trim every line, drop blank lines, collapse runs of whitespace."""
    lines = (line.strip() for line in text.splitlines())
    return re.sub(r"\s+", " ", " ".join(line for line in lines if line)).strip()


def _truncate(text: str, limit: int = MAX_ACTUAL_CONTENT) -> str:
    return text if len(text) <= limit else text[:limit]


def _is_strict(check: EvidenceCheckResult, ev: Evidence) -> bool:
    return check.file_exists and check.snippet_found and (
        check.line_numbers_match or ev.start_line == 0
    )


def _is_partial(check: EvidenceCheckResult) -> bool:
    return check.file_exists and (check.snippet_found or check.similarity_score > PARTIAL_THRESHOLD)


# ---------------------------------------------------------------------------
# Verifier
# ---------------------------------------------------------------------------

class EvidenceVerifier:
    """Checks findings' evidence against the working tree under *base_path*."""

    def __init__(self, base_path: str | Path, git_timeout: float = GIT_LOG_TIMEOUT) -> None:
        self.base_path = Path(base_path).resolve()
        self.git_timeout = git_timeout
        self._git_logs: dict[str, str | None] = {}

    # ── Single evidence ───────────────────────────────────────────────

    def check_evidence(self, ev: Evidence, index: int = 0) -> EvidenceCheckResult:
        result = EvidenceCheckResult(evidence_index=index)
        if not ev.file_path.strip():
            result.error_message = "empty file path"
            return result
        if ev.is_git:
            return self._check_git(ev, result)
        return self._check_file(ev, result)

    def _resolve(self, rel: str) -> Path | None:
        if os.path.isabs(rel):
            return None
        candidate = (self.base_path / rel).resolve()
        try:
            candidate.relative_to(self.base_path)
        except ValueError:
            return None
        return candidate

    def _check_file(self, ev: Evidence, result: EvidenceCheckResult) -> EvidenceCheckResult:
        path = self._resolve(ev.file_path)
        if path is None:
            result.error_message = "path traversal detected"
            return result
        if not path.exists():
            result.error_message = "file not found"
            return result
        if path.is_dir():
            result.error_message = "path is a directory"
            return result
        result.file_exists = True

        if not ev.snippet.strip():
            result.snippet_found = True
            result.line_numbers_match = True
            return result

        try:
            content = path.read_text(encoding="utf-8", errors="replace")
        except OSError as exc:
            result.error_message = f"read failed: {exc}"
            return result

        snippet = normalize_whitespace(ev.snippet)
        whole = normalize_whitespace(content)
        result.snippet_found = snippet in whole

        if ev.start_line > 0:
            lines = content.splitlines()
            end = ev.end_line if ev.end_line >= ev.start_line else ev.start_line
            segment = "\n".join(lines[ev.start_line - 1: end])
            result.actual_content = _truncate(segment)
            actual = normalize_whitespace(segment)
            if actual and (actual == snippet or snippet in actual):
                result.line_numbers_match = True
                result.snippet_found = True
                result.similarity_score = 1.0
            else:
                result.similarity_score = jaccard_similarity(snippet, actual)
        elif result.snippet_found:
            result.line_numbers_match = True
            result.similarity_score = 1.0

        if not result.snippet_found and ev.grep_pattern and ev.grep_pattern in content:
            result.snippet_found = True
            result.similarity_score = GREP_SIMILARITY

        if not result.snippet_found and result.similarity_score == 0.0:
            result.similarity_score = jaccard_similarity(snippet, whole)
        return result

    def _git_root(self, ev: Evidence) -> Path:
        marker = "/.git/"
        if marker in ev.file_path:
            prefix = ev.file_path.split(marker, 1)[0]
            root = self._resolve(prefix)
            if root is not None:
                return root
        return self.base_path

    def _git_log(self, root: Path) -> str | None:
        key = str(root)
        if key not in self._git_logs:
            try:
                proc = subprocess.run(
                    ["git", "log", "--all", "--oneline", "-500"],
                    cwd=root, capture_output=True, text=True, timeout=self.git_timeout,
                )
                self._git_logs[key] = proc.stdout if proc.returncode == 0 else None
            except (OSError, subprocess.TimeoutExpired) as exc:
                log.debug("git log failed in %s: %s", root, exc)
                self._git_logs[key] = None
        return self._git_logs[key]

    def _check_git(self, ev: Evidence, result: EvidenceCheckResult) -> EvidenceCheckResult:
        history = self._git_log(self._git_root(ev))
        if history is None:
            result.error_message = "GitUnavailable: git log failed"
            return result
        result.file_exists = True

        snippet = ev.snippet.strip()
        if not snippet:
            result.snippet_found = True
            result.line_numbers_match = True
            return result

        if snippet in history:
            result.snippet_found = True
            result.line_numbers_match = True
            result.similarity_score = 1.0
            for line in history.splitlines():
                if snippet in line:
                    result.actual_content = _truncate(line)
                    break
            return result

        lowered = history.lower()
        words = snippet.split()
        for word in words:
            if len(word) >= 4 and word.lower() in lowered:
                result.snippet_found = True
                result.similarity_score = 0.7
                return result
        for word in words:
            if _HEX_RE.match(word) and word[:7] in history:
                result.snippet_found = True
                result.similarity_score = 0.9
                break
        return result

    # ── Findings ──────────────────────────────────────────────────────

    def verify_finding(self, finding: Finding) -> Finding:
        """Verify *finding* in place and return it."""
        if not finding.evidence:
            finding.verification_status = VerificationStatus.SKIPPED
            finding.verification_result = VerificationResult(status=VerificationStatus.SKIPPED)
            return finding

        checks = [self.check_evidence(ev, i) for i, ev in enumerate(finding.evidence)]
        strict = sum(_is_strict(c, ev) for c, ev in zip(checks, finding.evidence))
        partial = sum(
            not _is_strict(c, ev) and _is_partial(c) for c, ev in zip(checks, finding.evidence)
        )
        total = len(checks)

        if strict == total:
            status, delta = VerificationStatus.VERIFIED, DELTA_VERIFIED
        elif strict and strict + partial == total:
            status, delta = VerificationStatus.PARTIAL, DELTA_PARTIAL_ALL
        elif strict + partial > 0:
            status, delta = VerificationStatus.PARTIAL, DELTA_PARTIAL_SOME
        else:
            status, delta = VerificationStatus.REJECTED, DELTA_REJECTED

        if finding.confidence_score and finding.confidence_score > 0:
            finding.set_score(finding.confidence_score + delta)

        finding.verification_status = status
        previous = finding.verification_result
        if (
            previous is not None
            and previous.status == status
            and previous.evidence_results == checks
            and previous.confidence_adjustment == delta
        ):
            return finding
        finding.verification_result = VerificationResult(
            status=status,
            evidence_results=checks,
            confidence_adjustment=delta,
        )
        return finding

    def verify_findings(self, findings: Iterable[Finding]) -> list[Finding]:
        return [self.verify_finding(f) for f in findings]

    async def averify_findings(self, findings: list[Finding]) -> list[Finding]:
        """Verify off the event loop; on cancellation the rest are ``skipped``."""
        done: list[Finding] = []
        try:
            for f in findings:
                done.append(await asyncio.to_thread(self.verify_finding, f))
        except asyncio.CancelledError:
            for f in findings[len(done):]:
                f.verification_status = VerificationStatus.SKIPPED
            raise
        return done


# ---------------------------------------------------------------------------
# Filters
# ---------------------------------------------------------------------------

def filter_verified(findings: Iterable[Finding]) -> list[Finding]:
    """Drop rejected findings; keep verified, partial, skipped and pending."""
    return [f for f in findings if f.verification_status != VerificationStatus.REJECTED]


_LABEL_RANK = {ConfidenceLabel.LOW: 0, ConfidenceLabel.MEDIUM: 1, ConfidenceLabel.HIGH: 2}


def filter_by_min_confidence(findings: Iterable[Finding], minimum: float | str) -> list[Finding]:
    """Keep findings whose score (or label) reaches *minimum*."""
    if isinstance(minimum, str):
        floor = _LABEL_RANK.get(ConfidenceLabel(minimum.lower()), 0)
        return [f for f in findings if _LABEL_RANK[label_for_score(f.confidence_score or 0)] >= floor]
    return [f for f in findings if (f.confidence_score or 0.0) >= minimum]
