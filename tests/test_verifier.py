"""Tests for model-output parsing and deterministic evidence verification.

These tests validate:
1. JSON extraction (fences, prose, repairs, ParseFailure preview)
2. Evidence checks against files (strict, partial, traversal)
3. Finding verdicts and confidence deltas (verified, partial, rejected, skipped)
4. Git evidence (history lookup, git unavailable)
5. Filters over verified findings
"""

from __future__ import annotations

import subprocess
from pathlib import Path
from unittest import mock

import pytest
from pydantic import BaseModel

from taskwing.core.jsonparse import parse_json_response, strip_fences
from taskwing.core.models import Evidence, EvidenceType, Finding, FindingType, VerificationStatus
from taskwing.core.verifier import (
    DELTA_PARTIAL_ALL,
    DELTA_PARTIAL_SOME,
    DELTA_REJECTED,
    DELTA_VERIFIED,
    EvidenceVerifier,
    filter_by_min_confidence,
    filter_verified,
    normalize_whitespace,
)
from taskwing.errors import ParseFailure


# ===================================================================
# Fixtures
# ===================================================================

@pytest.fixture
def verifier(repo: Path) -> EvidenceVerifier:
    return EvidenceVerifier(repo)


def _finding(*evidence: Evidence, score: float = 0.7) -> Finding:
    return Finding(
        type=FindingType.DECISION,
        title="Handler in internal",
        confidence_score=score,
        evidence=list(evidence),
    )


# ===================================================================
# JSON parsing
# ===================================================================

class _Shape(BaseModel):
    features: list[dict]


class TestParseJsonResponse:
    """Tolerant decoding of model replies."""

    def test_plain_object(self):
        assert parse_json_response('{"a": 1}') == {"a": 1}

    def test_fenced_with_prose(self):
        raw = 'Here you go:\n```json\n{"features": [{"name": "Auth"}]}\n```\nHope this helps.'
        assert parse_json_response(raw) == {"features": [{"name": "Auth"}]}

    def test_trailing_prose_ignored(self):
        assert parse_json_response('{"a": [1, 2]} and that is all') == {"a": [1, 2]}

    def test_trailing_commas(self):
        assert parse_json_response('{"a": [1, 2,],}') == {"a": [1, 2]}

    def test_single_quotes(self):
        assert parse_json_response("{'name': 'Auth'}") == {"name": "Auth"}

    def test_split_number(self):
        assert parse_json_response('{"confidence": 0. 9}') == {"confidence": 0.9}

    def test_truncated_output(self):
        assert parse_json_response('{"features": [{"name": "Auth"') == {"features": [{"name": "Auth"}]}

    def test_validates_into_model(self):
        parsed = parse_json_response('{"features": []}', _Shape)
        assert isinstance(parsed, _Shape)

    def test_wrong_shape_is_parse_failure(self):
        with pytest.raises(ParseFailure):
            parse_json_response("[1, 2]", _Shape)

    def test_garbage_has_preview(self):
        raw = "not json at all " * 30
        with pytest.raises(ParseFailure) as exc_info:
            parse_json_response(raw)
        assert exc_info.value.code == "ParseFailure"
        assert len(exc_info.value.preview) <= 203
        assert exc_info.value.details["preview"] == exc_info.value.preview

    def test_empty_response(self):
        with pytest.raises(ParseFailure):
            parse_json_response("   ")

    def test_strip_fences_passthrough(self):
        assert strip_fences('{"a": 1}') == '{"a": 1}'


# ===================================================================
# File evidence
# ===================================================================

class TestCheckEvidence:
    """One evidence locator against the working tree."""

    def test_snippet_anywhere(self, verifier: EvidenceVerifier):
        check = verifier.check_evidence(Evidence(file_path="README.md", snippet="v1"))
        assert check.file_exists and check.snippet_found and check.line_numbers_match

    def test_snippet_at_lines(self, verifier: EvidenceVerifier):
        ev = Evidence(file_path="internal/x.go", start_line=1, end_line=1, snippet="package internal")
        check = verifier.check_evidence(ev)
        assert check.line_numbers_match
        assert check.similarity_score == 1.0
        assert check.actual_content == "package internal"

    def test_whitespace_insensitive(self, verifier: EvidenceVerifier):
        check = verifier.check_evidence(Evidence(file_path="README.md", snippet="#   Demo\n\n  v1"))
        assert check.snippet_found

    def test_missing_file(self, verifier: EvidenceVerifier):
        check = verifier.check_evidence(Evidence(file_path="nope.go", snippet="x"))
        assert not check.file_exists
        assert check.error_message == "file not found"

    def test_traversal_never_reads(self, verifier: EvidenceVerifier):
        check = verifier.check_evidence(Evidence(file_path="../../etc/passwd", snippet="root"))
        assert not check.file_exists
        assert check.error_message == "path traversal detected"

    def test_empty_path(self, verifier: EvidenceVerifier):
        assert verifier.check_evidence(Evidence(file_path="")).error_message == "empty file path"

    def test_grep_pattern_counts_as_found(self, verifier: EvidenceVerifier):
        ev = Evidence(file_path="internal/x.go", snippet="func Missing()", grep_pattern="func Handler")
        check = verifier.check_evidence(ev)
        assert check.snippet_found
        assert check.similarity_score == 0.6

    def test_normalize_whitespace(self):
        assert normalize_whitespace("  a \n\n   b\tc  ") == "a b c"


# ===================================================================
# Verdicts
# ===================================================================

class TestVerifyFinding:
    """Status and confidence delta per finding."""

    def test_doc_change_verified(self, repo: Path, verifier: EvidenceVerifier):
        (repo / "README.md").write_text("v1\n## Auth: JWT", encoding="utf-8")
        f = Finding(
            type=FindingType.FEATURE, title="Auth: JWT", confidence_score=0.7,
            evidence=[Evidence(file_path="README.md", snippet="Auth: JWT", evidence_type=EvidenceType.DOC)],
        )
        verifier.verify_finding(f)
        assert f.verification_status == VerificationStatus.VERIFIED
        assert f.confidence_score == pytest.approx(0.8)
        assert f.verification_result.confidence_adjustment == DELTA_VERIFIED

    def test_snippet_not_at_lines_rejected(self, verifier: EvidenceVerifier):
        f = _finding(Evidence(file_path="internal/x.go", start_line=10, end_line=12, snippet="NOT THERE"))
        verifier.verify_finding(f)
        assert f.verification_status == VerificationStatus.REJECTED
        assert f.verification_result.confidence_adjustment == DELTA_REJECTED
        assert f.confidence_score == pytest.approx(0.4)
        check = f.verification_result.evidence_results[0]
        assert check.file_exists and check.similarity_score < 0.5

    def test_partial_when_every_evidence_at_least_partial(self, verifier: EvidenceVerifier):
        f = _finding(
            Evidence(file_path="README.md", snippet="v1"),
            Evidence(file_path="internal/x.go", start_line=10, end_line=12,
                     snippet="func Missing()", grep_pattern="func Handler"),
        )
        verifier.verify_finding(f)
        assert f.verification_status == VerificationStatus.PARTIAL
        assert f.verification_result.confidence_adjustment == DELTA_PARTIAL_ALL
        assert f.confidence_score == pytest.approx(0.7)

    def test_mixed_evidence_is_partial(self, verifier: EvidenceVerifier):
        f = _finding(
            Evidence(file_path="README.md", snippet="v1"),
            Evidence(file_path="missing.go", snippet="func Gone()"),
        )
        verifier.verify_finding(f)
        assert f.verification_status == VerificationStatus.PARTIAL
        assert f.verification_result.confidence_adjustment == DELTA_PARTIAL_SOME
        assert f.confidence_score == pytest.approx(0.6)

    def test_partial_without_any_strict_match(self, verifier: EvidenceVerifier):
        f = _finding(Evidence(file_path="internal/x.go", start_line=10, end_line=12,
                              snippet="func Missing()", grep_pattern="func Handler"))
        verifier.verify_finding(f)
        assert f.verification_status == VerificationStatus.PARTIAL
        assert f.verification_result.confidence_adjustment == DELTA_PARTIAL_SOME

    def test_grep_match_without_lines_verifies(self, verifier: EvidenceVerifier):
        f = _finding(Evidence(file_path="internal/x.go", snippet="func Missing()", grep_pattern="func Handler"))
        verifier.verify_finding(f)
        assert f.verification_status == VerificationStatus.VERIFIED

    def test_no_evidence_skipped(self, verifier: EvidenceVerifier):
        f = _finding()
        verifier.verify_finding(f)
        assert f.verification_status == VerificationStatus.SKIPPED
        assert f.confidence_score == 0.7

    def test_zero_score_untouched(self, verifier: EvidenceVerifier):
        f = _finding(Evidence(file_path="README.md", snippet="v1"), score=0.0)
        verifier.verify_finding(f)
        assert f.confidence_score == 0.0

    def test_score_is_clamped(self, verifier: EvidenceVerifier):
        f = _finding(Evidence(file_path="README.md", snippet="v1"), score=0.95)
        verifier.verify_finding(f)
        assert f.confidence_score == 1.0

    def test_deterministic(self, verifier: EvidenceVerifier):
        ev = Evidence(file_path="internal/x.go", start_line=10, end_line=12, snippet="NOT THERE")
        a, b = _finding(ev), _finding(ev)
        verifier.verify_finding(a)
        verifier.verify_finding(b)
        assert a.verification_result.evidence_results == b.verification_result.evidence_results

    def test_adding_matching_evidence_never_lowers_status(self, verifier: EvidenceVerifier):
        rank = {VerificationStatus.REJECTED: 0, VerificationStatus.PARTIAL: 1, VerificationStatus.VERIFIED: 2}
        base = _finding(Evidence(file_path="README.md", snippet="v1"))
        more = _finding(Evidence(file_path="README.md", snippet="v1"), Evidence(file_path="go.mod", snippet="go 1.22"))
        verifier.verify_finding(base)
        verifier.verify_finding(more)
        assert rank[more.verification_status] >= rank[base.verification_status]

    @pytest.mark.asyncio
    async def test_async_batch(self, verifier: EvidenceVerifier):
        findings = [_finding(Evidence(file_path="README.md", snippet="v1")), _finding()]
        done = await verifier.averify_findings(findings)
        assert [f.verification_status for f in done] == [VerificationStatus.VERIFIED, VerificationStatus.SKIPPED]


# ===================================================================
# Git evidence
# ===================================================================

class TestGitEvidence:
    """Commit subjects and hashes from ``git log``."""

    HISTORY = "a1b2c3d feat(auth): add JWT middleware\n9f8e7d6 chore: bump deps\n"

    def _run(self, *args, **kwargs):
        return subprocess.CompletedProcess(args, 0, stdout=self.HISTORY, stderr="")

    def test_subject_found(self, verifier: EvidenceVerifier):
        ev = Evidence(file_path=".git", snippet="feat(auth): add JWT middleware", evidence_type=EvidenceType.GIT)
        with mock.patch("taskwing.core.verifier.subprocess.run", side_effect=self._run):
            check = verifier.check_evidence(ev)
        assert check.snippet_found
        assert check.actual_content.startswith("a1b2c3d")

    def test_hash_prefix_scores_high(self, verifier: EvidenceVerifier):
        ev = Evidence(file_path=".git", snippet="commit a1b2c3d4", evidence_type=EvidenceType.GIT)
        with mock.patch("taskwing.core.verifier.subprocess.run", side_effect=self._run):
            check = verifier.check_evidence(ev)
        assert check.snippet_found
        assert check.similarity_score == 0.9

    def test_subject_word_match(self, verifier: EvidenceVerifier):
        ev = Evidence(file_path=".git", snippet="added jwt MIDDLEWARE", evidence_type=EvidenceType.GIT)
        with mock.patch("taskwing.core.verifier.subprocess.run", side_effect=self._run):
            check = verifier.check_evidence(ev)
        assert check.snippet_found
        assert check.similarity_score == 0.7
        assert not check.line_numbers_match

    def test_git_unavailable(self, verifier: EvidenceVerifier):
        ev = Evidence(file_path=".git", snippet="anything", evidence_type=EvidenceType.GIT)
        with mock.patch("taskwing.core.verifier.subprocess.run", side_effect=FileNotFoundError("git")):
            check = verifier.check_evidence(ev)
        assert not check.file_exists
        assert "GitUnavailable" in check.error_message


# ===================================================================
# Filters
# ===================================================================

class TestFilters:
    def test_filter_verified_drops_rejected(self):
        ok, bad = _finding(), _finding()
        bad.verification_status = VerificationStatus.REJECTED
        assert filter_verified([ok, bad]) == [ok]

    def test_min_confidence(self):
        low, high = _finding(score=0.3), _finding(score=0.9)
        assert filter_by_min_confidence([low, high], 0.5) == [high]
        assert filter_by_min_confidence([low, high], "high") == [high]
