"""Code agent — architectural decisions and patterns from source.

Watch mode reads exactly the changed files.  Bootstrap builds its
context from the directory tree, a prioritised source sample and the
internal import graph.
"""

from __future__ import annotations

import time
from typing import Any

from ..core.models import META_COMPONENT, Finding, FindingType
from .base import Agent, AgentCore, AgentInput, AgentMode, AgentOutput, DeterministicChain, make_finding
from .context import NO_SOURCE, ContextGatherer, build_import_graph, format_import_graph, git_summary
from .prompts import CODE_PROMPT, JSON_SYSTEM_PROMPT


def convert_code_response(data: Any) -> list[Finding]:
    if not isinstance(data, dict):
        return []
    findings: list[Finding] = []
    for item in data.get("decisions") or []:
        if not isinstance(item, dict):
            continue
        f = make_finding(
            FindingType.DECISION, item,
            description=str(item.get("what") or item.get("description") or ""),
            metadata={META_COMPONENT: str(item.get("component") or "")},
        )
        if f:
            findings.append(f)
    for item in data.get("patterns") or []:
        if not isinstance(item, dict):
            continue
        f = make_finding(
            FindingType.PATTERN, item, title_key="name",
            description=str(item.get("solution") or ""),
            metadata={
                "context": str(item.get("context") or ""),
                "solution": str(item.get("solution") or ""),
                "consequences": str(item.get("consequences") or ""),
            },
        )
        if f:
            findings.append(f)
    return findings


async def gather_bootstrap_context(agent: Agent, gatherer: ContextGatherer) -> str:
    tree = await agent.in_thread(gatherer.list_directory_tree, 3)
    source = await agent.in_thread(gatherer.gather_source_code)
    if source == NO_SOURCE:
        return ""
    graph = format_import_graph(await agent.in_thread(build_import_graph, gatherer.base))
    sections = [f"## DIRECTORY TREE\n{tree}", source]
    if graph:
        sections.append(graph)
    history = await agent.in_thread(git_summary, gatherer.base)
    if history:
        sections.append(history)
    return "\n\n".join(sections)


class CodeAgent(Agent):
    """Single-shot source analysis."""

    def __init__(self, core: AgentCore | None = None, **kwargs: Any) -> None:
        self.core = core or AgentCore(
            name="code",
            description="Analyzes source code for architectural decisions and patterns",
            system_prompt=JSON_SYSTEM_PROMPT,
            **kwargs,
        )
        self.chain = DeterministicChain(self.core, convert_code_response)

    async def run(self, inp: AgentInput) -> AgentOutput:
        started = time.perf_counter()
        gatherer = ContextGatherer(inp.base_path)

        if inp.mode == AgentMode.WATCH:
            content = await self.in_thread(gatherer.gather_specific_files, inp.changed_files)
            scope = "UPDATES to"
        else:
            content = await gather_bootstrap_context(self, gatherer)
            scope = "the source code of"

        if not content.strip():
            return self._make_output(started)

        prompt = CODE_PROMPT.format(
            scope=scope, project_name=inp.project_name or "project", content=content,
        )
        result = await self.chain.run(prompt)
        return self._from_chain(started, result)
