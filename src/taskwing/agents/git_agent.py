"""Git history agent — project milestones from the commit log.

The log is split into chunks of 50 commits (at most 6 chunks) that are
analysed concurrently; later chunks are older and may yield fewer
findings.  Milestone titles are deduplicated case-insensitively.
"""

from __future__ import annotations

import asyncio
import re
import subprocess
import time
from collections import Counter
from pathlib import Path
from typing import Any

from ..core.models import META_COMPONENT, EvidenceType, Finding, FindingType
from ..errors import GitUnavailableError
from .base import Agent, AgentCore, AgentInput, AgentOutput, DeterministicChain, make_finding
from .prompts import GIT_PROMPT, JSON_SYSTEM_PROMPT

GIT_LOG_LIMIT = 300
CHUNK_SIZE = 50
MAX_CHUNKS = 6
MAX_FINDINGS = 8
FINDINGS_DECAY = 0.6
MIN_FINDINGS = 2
GIT_TIMEOUT = 15.0

_CONVENTIONAL_RE = re.compile(r"^[0-9a-f]+\s+\S+\s+(\w+)(?:\(([^)]+)\))?!?:")


def _git(base: Path, *args: str) -> str:
    try:
        proc = subprocess.run(
            ["git", *args], cwd=base, capture_output=True, text=True, timeout=GIT_TIMEOUT,
        )
    except (OSError, subprocess.TimeoutExpired) as exc:
        raise GitUnavailableError(f"git {args[0]} failed: {exc}") from exc
    if proc.returncode != 0:
        raise GitUnavailableError(f"git {args[0]} failed: {proc.stderr.strip()}")
    return proc.stdout


def max_findings_for_chunk(index: int) -> int:
    return max(MIN_FINDINGS, int(MAX_FINDINGS * (FINDINGS_DECAY ** index)))


def project_meta(base: Path, commits: list[str]) -> str:
    """Commit-type distribution, busy scopes, contributors, first commit."""
    types: Counter[str] = Counter()
    scopes: Counter[str] = Counter()
    for line in commits:
        m = _CONVENTIONAL_RE.match(line)
        if m:
            types[m.group(1).lower()] += 1
            if m.group(2):
                scopes[m.group(2)] += 1
    lines = []
    if types:
        lines.append("Commit types: " + ", ".join(f"{t}={n}" for t, n in types.most_common()))
    active = [s for s, n in scopes.most_common() if n >= 3]
    if active:
        lines.append("Active scopes: " + ", ".join(active))
    try:
        authors = _git(base, "shortlog", "-sn", "--all").strip().splitlines()[:5]
        if authors:
            lines.append("Top contributors: " + "; ".join(a.strip() for a in authors))
        first = _git(base, "log", "--reverse", "--format=%ad", "--date=short").split("\n", 1)[0]
        if first:
            lines.append(f"First commit: {first}")
    except GitUnavailableError:
        pass
    return "\n".join(lines) or "(none)"


def convert_git_response(data: Any) -> list[Finding]:
    if not isinstance(data, dict):
        return []
    out: list[Finding] = []
    for item in data.get("milestones") or []:
        if not isinstance(item, dict):
            continue
        f = make_finding(
            FindingType.DECISION, item,
            metadata={META_COMPONENT: str(item.get("scope") or "Project Evolution")},
            default_evidence_type=EvidenceType.GIT.value,
        )
        if f:
            out.append(f)
    return out


class GitAgent(Agent):
    def __init__(self, core: AgentCore | None = None, **kwargs: Any) -> None:
        self.core = core or AgentCore(
            name="git",
            description="Analyzes git history for project milestones",
            system_prompt=JSON_SYSTEM_PROMPT,
            **kwargs,
        )
        self.chain = DeterministicChain(self.core, convert_git_response)

    async def run(self, inp: AgentInput) -> AgentOutput:
        started = time.perf_counter()
        base = Path(inp.base_path).resolve()
        try:
            log_text = await self.in_thread(
                _git, base, "log", "--format=%h %ad %s", "--date=short", f"-{GIT_LOG_LIMIT}",
            )
        except GitUnavailableError as exc:
            out = self._make_output(started)
            out.set_error(GitUnavailableError("no git history available", details={"cause": exc.message}))
            return out

        commits = [c for c in log_text.splitlines() if c.strip()]
        if not commits:
            out = self._make_output(started)
            out.set_error(GitUnavailableError("no git history available"))
            return out

        chunks = [commits[i:i + CHUNK_SIZE] for i in range(0, len(commits), CHUNK_SIZE)][:MAX_CHUNKS]
        meta = await self.in_thread(project_meta, base, commits)
        prompts = [
            GIT_PROMPT.format(
                project_name=inp.project_name or base.name,
                chunk=i + 1,
                total_chunks=len(chunks),
                meta=meta,
                max_findings=max_findings_for_chunk(i),
                commits="\n".join(chunk),
            )
            for i, chunk in enumerate(chunks)
        ]
        results = await asyncio.gather(*(self.chain.run(p) for p in prompts))

        out = self._make_output(started)
        seen: set[str] = set()
        failures = 0
        for r in results:
            out.tokens_used += r.tokens_used
            out.raw_output += ("\n\n" if out.raw_output else "") + r.raw_output
            if r.error is not None:
                failures += 1
                continue
            for f in r.findings:
                key = f.title.strip().lower()
                if key not in seen:
                    seen.add(key)
                    out.findings.append(f)

        if failures == len(results):
            out.error = f"all {len(results)} chunks failed"
            out.error_code = results[0].error.code if results[0].error else "OperationFailed"
        elif failures:
            out.error = f"{failures} of {len(results)} chunks failed"
            out.error_code = "ParseFailure"
        out.duration = time.perf_counter() - started
        return out
