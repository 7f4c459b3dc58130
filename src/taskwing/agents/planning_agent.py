"""Goal refinement and planning agents.

``ClarifyingAgent`` turns a vague goal into questions plus an enriched
goal; ``PlanningAgent`` turns a (preferably enriched) goal into an
ordered task list.  Both are chained through ``existing_context``:

* ``goal`` — the user's goal (required by the clarifier)
* ``history`` — prior question/answer turns (optional)
* ``context`` — project knowledge to ground the answer (optional)
* ``enriched_goal`` — output of the clarifier, preferred by the planner
"""

from __future__ import annotations

import time
from typing import Any

from ..core.models import (
    META_ENRICHED_GOAL,
    META_GOAL_SUMMARY,
    META_IS_READY_TO_PLAN,
    META_QUESTIONS,
    META_TASKS,
    Finding,
    FindingType,
)
from ..errors import InvalidInputError
from .base import Agent, AgentCore, AgentInput, AgentOutput, DeterministicChain
from .prompts import CLARIFYING_PROMPT, JSON_SYSTEM_PROMPT, NO_CONTEXT, PLANNING_PROMPT

VALID_PRIORITIES = {"low", "medium", "high", "urgent"}


def _format_history(history: Any) -> str:
    if not history:
        return "(none)"
    if isinstance(history, str):
        return history
    lines = []
    for turn in history:
        if isinstance(turn, dict):
            q = turn.get("question") or turn.get("q") or ""
            a = turn.get("answer") or turn.get("a") or ""
            lines.append(f"Q: {q}\nA: {a}")
        else:
            lines.append(str(turn))
    return "\n".join(lines)


def convert_clarification(data: Any) -> list[Finding]:
    if not isinstance(data, dict):
        return []
    questions = [str(q) for q in data.get("questions") or [] if str(q).strip()]
    summary = str(data.get("goal_summary") or "")
    enriched = str(data.get("enriched_goal") or "")
    ready = bool(data.get("is_ready_to_plan", False))
    return [Finding(
        type=FindingType.REFINEMENT,
        title="Goal Clarification",
        description=summary or enriched,
        confidence_score=0.9 if ready else 0.6,
        metadata={
            META_QUESTIONS: questions,
            META_GOAL_SUMMARY: summary,
            META_ENRICHED_GOAL: enriched,
            META_IS_READY_TO_PLAN: ready,
        },
    )]


def normalise_plan_tasks(raw: Any) -> list[dict[str, Any]]:
    tasks: list[dict[str, Any]] = []
    for item in raw or []:
        if not isinstance(item, dict):
            continue
        title = str(item.get("title") or "").strip()
        if not title:
            continue
        criteria = item.get("acceptance_criteria") or []
        if isinstance(criteria, str):
            criteria = [criteria]
        priority = str(item.get("priority") or "medium").lower()
        tasks.append({
            "title": title,
            "description": str(item.get("description") or ""),
            "acceptance_criteria": [str(c) for c in criteria],
            "priority": priority if priority in VALID_PRIORITIES else "medium",
            "dependencies": [str(d) for d in item.get("dependencies") or []],
        })
    return tasks


def convert_plan(data: Any) -> list[Finding]:
    if not isinstance(data, dict):
        return []
    tasks = normalise_plan_tasks(data.get("tasks"))
    return [Finding(
        type=FindingType.PLAN,
        title="Implementation Plan",
        description=str(data.get("rationale") or ""),
        confidence_score=0.7,
        metadata={META_TASKS: tasks, "rationale": str(data.get("rationale") or "")},
    )]


class ClarifyingAgent(Agent):
    def __init__(self, core: AgentCore | None = None, **kwargs: Any) -> None:
        self.core = core or AgentCore(
            name="clarifying",
            description="Asks clarifying questions to refine a development goal",
            system_prompt=JSON_SYSTEM_PROMPT,
            **kwargs,
        )
        self.chain = DeterministicChain(self.core, convert_clarification)

    async def run(self, inp: AgentInput) -> AgentOutput:
        started = time.perf_counter()
        goal = str(inp.existing_context.get("goal") or "").strip()
        if not goal:
            out = self._make_output(started)
            out.set_error(InvalidInputError("missing 'goal' in input context"))
            return out
        prompt = CLARIFYING_PROMPT.format(
            project_name=inp.project_name or "project",
            goal=goal,
            history=_format_history(inp.existing_context.get("history")),
            context=inp.existing_context.get("context") or NO_CONTEXT,
        )
        return self._from_chain(started, await self.chain.run(prompt))


class PlanningAgent(Agent):
    def __init__(self, core: AgentCore | None = None, **kwargs: Any) -> None:
        self.core = core or AgentCore(
            name="planning",
            description="Breaks a refined goal into an ordered implementation plan",
            system_prompt=JSON_SYSTEM_PROMPT,
            **kwargs,
        )
        self.chain = DeterministicChain(self.core, convert_plan)

    async def run(self, inp: AgentInput) -> AgentOutput:
        started = time.perf_counter()
        ctx = inp.existing_context
        goal = str(ctx.get("enriched_goal") or ctx.get("goal") or "").strip()
        if not goal:
            out = self._make_output(started)
            out.set_error(InvalidInputError("missing 'enriched_goal' or 'goal' in input context"))
            return out
        prompt = PLANNING_PROMPT.format(
            project_name=inp.project_name or "project",
            goal=goal,
            context=ctx.get("context") or NO_CONTEXT,
        )
        return self._from_chain(started, await self.chain.run(prompt))
