"""Documentation agent — features, constraints and workflows from markdown.

Bootstrap runs two tracks in parallel (markdown docs with a product
focus; key files and CI configs with a workflow focus) and merges them.
Watch mode reads only the changed markdown files.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any

from ..core.models import META_COMPONENT, META_SEVERITY, META_TYPE, Finding, FindingType
from .base import Agent, AgentCore, AgentInput, AgentMode, AgentOutput, DeterministicChain, make_finding
from .context import ContextGatherer
from .prompts import (
    DOC_FOCUS_CHANGED,
    DOC_FOCUS_FEATURES,
    DOC_FOCUS_WORKFLOWS,
    DOC_PROMPT,
    JSON_SYSTEM_PROMPT,
)

SEVERITY_SCORES = {"critical": 0.95, "high": 0.85, "medium": 0.7}


def convert_doc_response(data: Any) -> list[Finding]:
    if not isinstance(data, dict):
        return []
    findings: list[Finding] = []

    for item in data.get("features") or []:
        if isinstance(item, dict):
            f = make_finding(FindingType.FEATURE, item, title_key="name", default_evidence_type="doc")
            if f:
                findings.append(f)

    for item in data.get("constraints") or []:
        if not isinstance(item, dict):
            continue
        severity = str(item.get("severity") or "medium").lower()
        confidence = item.get("confidence")
        if confidence is None:
            confidence = SEVERITY_SCORES.get(severity, 0.7)
        f = make_finding(
            FindingType.CONSTRAINT, item, title_key="rule",
            description=str(item.get("reason") or ""),
            metadata={META_SEVERITY: severity},
            default_evidence_type="doc",
            confidence=confidence,
        )
        if f:
            f.why = str(item.get("reason") or "")
            findings.append(f)

    for item in data.get("workflows") or []:
        if not isinstance(item, dict):
            continue
        f = make_finding(
            FindingType.PATTERN, item, title_key="name",
            description=str(item.get("steps") or ""),
            metadata={META_TYPE: "workflow", "trigger": str(item.get("trigger") or ""),
                      META_COMPONENT: "Development Workflow"},
            default_evidence_type="doc",
        )
        if f:
            findings.append(f)
    return findings


class DocAgent(Agent):
    """Extracts product features, constraints and workflows from docs."""

    def __init__(self, core: AgentCore | None = None, **kwargs: Any) -> None:
        self.core = core or AgentCore(
            name="doc",
            description="Analyzes markdown documentation for features, constraints and workflows",
            system_prompt=JSON_SYSTEM_PROMPT,
            **kwargs,
        )
        self.chain = DeterministicChain(self.core, convert_doc_response)

    def _prompt(self, inp: AgentInput, focus: str, content: str) -> str:
        return DOC_PROMPT.format(
            project_name=inp.project_name or "project", focus=focus, content=content,
        )

    async def run(self, inp: AgentInput) -> AgentOutput:
        started = time.perf_counter()
        gatherer = ContextGatherer(inp.base_path)

        if inp.mode == AgentMode.WATCH:
            md_files = gatherer.list_markdown_files(inp.changed_files)
            content = await self.in_thread(gatherer.gather_specific_files, md_files) if md_files else ""
            if not content.strip():
                return self._make_output(started)
            result = await self.chain.run(self._prompt(inp, DOC_FOCUS_CHANGED, content))
            return self._from_chain(started, result)

        docs = await self.in_thread(gatherer.gather_markdown_docs)
        key_files = await self.in_thread(gatherer.gather_key_files)
        ci = await self.in_thread(gatherer.gather_ci_configs)
        workflow_content = "\n\n".join(p for p in (key_files, ci) if p.strip())

        tracks = []
        if docs.strip():
            tracks.append(self.chain.run(self._prompt(inp, DOC_FOCUS_FEATURES, docs)))
        if workflow_content.strip():
            tracks.append(self.chain.run(self._prompt(inp, DOC_FOCUS_WORKFLOWS, workflow_content)))
        if not tracks:
            return self._make_output(started)

        results = await asyncio.gather(*tracks)
        out = self._make_output(started)
        errors: list[str] = []
        for r in results:
            out.findings.extend(r.findings)
            out.tokens_used += r.tokens_used
            out.raw_output += ("\n\n" if out.raw_output else "") + r.raw_output
            if r.error is not None:
                errors.append(str(r.error))
                out.error_code = r.error.code
        if errors:
            out.error = "; ".join(errors)
        out.duration = time.perf_counter() - started
        return out
