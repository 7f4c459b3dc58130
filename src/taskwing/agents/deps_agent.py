"""Dependency agent — technology decisions from package manifests."""

from __future__ import annotations

import time
from typing import Any

from ..core.classifier import DEPS_FILES
from ..core.models import META_COMPONENT, Finding, FindingType
from .base import Agent, AgentCore, AgentInput, AgentMode, AgentOutput, DeterministicChain, make_finding
from .context import ContextGatherer
from .prompts import DEPS_PROMPT, JSON_SYSTEM_PROMPT


def convert_deps_response(data: Any) -> list[Finding]:
    if not isinstance(data, dict):
        return []
    out: list[Finding] = []
    for item in data.get("tech_decisions") or []:
        if not isinstance(item, dict):
            continue
        f = make_finding(
            FindingType.DECISION, item,
            description=str(item.get("what") or ""),
            metadata={
                META_COMPONENT: "Technology Stack",
                "category": str(item.get("category") or ""),
            },
        )
        if f:
            out.append(f)
    return out


class DepsAgent(Agent):
    def __init__(self, core: AgentCore | None = None, **kwargs: Any) -> None:
        self.core = core or AgentCore(
            name="deps",
            description="Analyzes dependency manifests for technology decisions",
            system_prompt=JSON_SYSTEM_PROMPT,
            **kwargs,
        )
        self.chain = DeterministicChain(self.core, convert_deps_response)

    async def run(self, inp: AgentInput) -> AgentOutput:
        started = time.perf_counter()
        gatherer = ContextGatherer(inp.base_path)
        if inp.mode == AgentMode.WATCH:
            only = [p for p in inp.changed_files if p.rsplit("/", 1)[-1] in DEPS_FILES]
            content = await self.in_thread(gatherer.gather_manifests, only) if only else ""
        else:
            content = await self.in_thread(gatherer.gather_manifests)

        if not content.strip():
            return self._make_output(started)

        result = await self.chain.run(
            DEPS_PROMPT.format(project_name=inp.project_name or "project", content=content)
        )
        return self._from_chain(started, result)
