"""Tests for the analyzer agents, the registry and the orchestrator.

These tests validate:
1. Doc and code agents in watch mode (findings, parse failures, empty input)
2. The tool-calling code agent (iteration cap, fallback, tool errors)
3. Duplicate, clarifying and planning agents
4. The verification and git agents
5. Registry lookup and orchestrator totality
"""

from __future__ import annotations

import json
import subprocess
from pathlib import Path
from unittest import mock

import pytest

from conftest import FakeChatModel, tool_call_reply
from taskwing.agents import (
    AgentInput,
    AgentMode,
    AgentOutput,
    BOOTSTRAP_AGENTS,
    create,
    create_many,
    register,
    registered_ids,
    run_agent,
    run_all,
)
from taskwing.agents.base import Agent, AgentCore
from taskwing.agents.code_agent import CodeAgent
from taskwing.agents.doc_agent import DocAgent
from taskwing.agents.duplicate_agent import DuplicateAgent, best_match
from taskwing.agents.git_agent import GitAgent, max_findings_for_chunk
from taskwing.agents.planning_agent import ClarifyingAgent, PlanningAgent
from taskwing.agents.react_code_agent import MAX_ITERATIONS_CAP, ReactCodeAgent, clamp_iterations
from taskwing.agents.verification_agent import VerificationAgent
from taskwing.core.models import Evidence, Finding, FindingType, VerificationStatus
from taskwing.errors import ToolBindingUnsupported, UnknownAgentError


# ===================================================================
# Fixtures
# ===================================================================

def _watch(repo: Path, *files: str) -> AgentInput:
    return AgentInput(base_path=str(repo), project_name="demo", mode=AgentMode.WATCH,
                      changed_files=list(files))


def _ctx(repo: Path, **context) -> AgentInput:
    return AgentInput(base_path=str(repo), project_name="demo", existing_context=context)


DOC_REPLY = json.dumps({
    "features": [{
        "name": "Auth: JWT",
        "description": "JWT auth",
        "evidence": [{"file_path": "README.md", "snippet": "Auth: JWT"}],
    }],
})

CODE_REPLY = json.dumps({
    "decisions": [{
        "title": "Handlers live in internal",
        "what": "HTTP handlers are internal",
        "component": "internal",
        "evidence": [{"file_path": "internal/x.go", "snippet": "func Handler() {}"}],
    }],
})


class BoomAgent(Agent):
    def __init__(self) -> None:
        self.core = AgentCore(name="boom", description="always raises")

    async def run(self, inp: AgentInput) -> AgentOutput:
        raise RuntimeError("kaboom")


# ===================================================================
# Doc agent
# ===================================================================

class TestDocAgent:
    """Markdown analysis in watch mode."""

    @pytest.mark.asyncio
    async def test_changed_readme_yields_feature(self, repo: Path):
        (repo / "README.md").write_text("v1\n## Auth: JWT", encoding="utf-8")
        model = FakeChatModel(DOC_REPLY)
        out = await DocAgent(model=model).run(_watch(repo, "README.md"))

        assert out.ok
        assert [f.title for f in out.findings] == ["Auth: JWT"]
        f = out.findings[0]
        assert f.type == FindingType.FEATURE
        assert f.source_agent == "doc"
        assert f.evidence[0].file_path == "README.md"
        assert f.source_files == ["README.md"]
        assert out.tokens_used == 10
        assert "Auth: JWT" in model.calls[0][-1].content

    @pytest.mark.asyncio
    async def test_non_markdown_changes_skip_model(self, repo: Path):
        model = FakeChatModel(DOC_REPLY)
        out = await DocAgent(model=model).run(_watch(repo, "internal/x.go"))
        assert out.findings == []
        assert model.calls == []

    @pytest.mark.asyncio
    async def test_unparseable_reply_sets_error(self, repo: Path):
        out = await DocAgent(model=FakeChatModel("sorry, I cannot help")).run(_watch(repo, "README.md"))
        assert out.error
        assert out.error_code == "ParseFailure"
        assert out.findings == []
        assert out.raw_output == "sorry, I cannot help"

    @pytest.mark.asyncio
    async def test_constraints_and_workflows(self, repo: Path):
        reply = json.dumps({
            "constraints": [{"rule": "No direct DB access", "reason": "layering", "severity": "critical"}],
            "workflows": [{"name": "Release", "steps": "tag then push", "trigger": "tag"}],
        })
        out = await DocAgent(model=FakeChatModel(reply)).run(_watch(repo, "docs/guide.md"))
        by_type = {f.type: f for f in out.findings}
        assert by_type[FindingType.CONSTRAINT].confidence_score == pytest.approx(0.95)
        assert by_type[FindingType.CONSTRAINT].why == "layering"
        assert by_type[FindingType.PATTERN].metadata["trigger"] == "tag"


# ===================================================================
# Code agent
# ===================================================================

class TestCodeAgent:
    @pytest.mark.asyncio
    async def test_changed_files_are_analysed(self, repo: Path):
        model = FakeChatModel(CODE_REPLY)
        out = await CodeAgent(model=model).run(_watch(repo, "internal/x.go"))
        assert [f.type for f in out.findings] == [FindingType.DECISION]
        assert out.findings[0].metadata["component"] == "internal"
        assert "func Handler" in model.calls[0][-1].content

    @pytest.mark.asyncio
    async def test_nothing_readable_is_empty_output(self, repo: Path):
        model = FakeChatModel(CODE_REPLY)
        out = await CodeAgent(model=model).run(_watch(repo, "missing.go"))
        assert out.ok and out.findings == []
        assert model.calls == []

    @pytest.mark.asyncio
    async def test_no_model_configured(self, repo: Path):
        out = await CodeAgent().run(_watch(repo, "internal/x.go"))
        assert out.error_code == "ModelUnavailable"


# ===================================================================
# Tool-calling code agent
# ===================================================================

class TestReactCodeAgent:
    """Bounded tool loop."""

    @pytest.mark.parametrize("given, expected", [(None, 10), (0, 10), (-3, 10), (5, 5), (99, MAX_ITERATIONS_CAP)])
    def test_clamp(self, given, expected):
        assert clamp_iterations(given) == expected

    @pytest.mark.asyncio
    async def test_iteration_cap_is_respected(self, repo: Path):
        model = FakeChatModel(tool_call_reply("list_dir", {"path": "."}))
        agent = ReactCodeAgent(max_iterations=3, model=model)
        out = await agent.run(_watch(repo, "internal/x.go"))

        assert agent.model_calls == 3
        assert agent.tool_rounds == 3
        assert len(model.calls) == 3
        assert out.findings == []
        assert out.tokens_used == 30

    @pytest.mark.asyncio
    async def test_tool_results_fed_back(self, repo: Path):
        model = FakeChatModel(
            tool_call_reply("read_file", {"path": "internal/x.go"}),
            "Here is my analysis:\n" + CODE_REPLY,
        )
        agent = ReactCodeAgent(model=model)
        out = await agent.run(_watch(repo, "internal/x.go"))

        assert agent.model_calls == 2 and agent.tool_rounds == 1
        tool_msg = model.calls[1][-1]
        assert tool_msg.role == "tool"
        assert "func Handler" in tool_msg.content
        assert [f.title for f in out.findings] == ["Handlers live in internal"]
        assert out.findings[0].source_agent == "react_code"

    @pytest.mark.asyncio
    async def test_tool_errors_become_messages(self, repo: Path):
        model = FakeChatModel(tool_call_reply("read_file", {"path": "../etc/passwd"}), CODE_REPLY)
        await ReactCodeAgent(model=model).run(_watch(repo))
        tool_msg = model.calls[1][-1]
        assert tool_msg.content.startswith("Error executing tools:")

    @pytest.mark.asyncio
    async def test_tools_are_bound(self, repo: Path):
        model = FakeChatModel(CODE_REPLY)
        await ReactCodeAgent(model=model).run(_watch(repo))
        names = {spec.name for spec in model.tool_args[0]}
        assert names == {"read_file", "grep_search", "list_dir", "exec_command"}

    @pytest.mark.asyncio
    async def test_falls_back_without_tool_support(self, repo: Path):
        model = FakeChatModel(ToolBindingUnsupported("tools not supported"), CODE_REPLY)
        agent = ReactCodeAgent(model=model)
        out = await agent.run(_watch(repo))
        assert out.ok
        assert [f.title for f in out.findings] == ["Handlers live in internal"]
        assert model.tool_args[1] is None
        assert "DIRECTORY TREE" in model.calls[1][-1].content


# ===================================================================
# Duplicate detection
# ===================================================================

class TestDuplicateAgent:
    FEATURES = [{"title": "Dark mode", "description": "Toggle a dark theme"}, "CSV export"]

    @pytest.mark.asyncio
    async def test_exact_match_needs_no_model(self, repo: Path):
        agent = DuplicateAgent(model=FakeChatModel("unused"))
        out = await agent.run(_ctx(repo, query="dark mode", features=self.FEATURES))
        assert agent.model_calls == 0
        assert len(out.findings) == 1
        f = out.findings[0]
        assert f.type == FindingType.RISK
        assert f.title == "Duplicate request: dark mode"
        assert f.metadata["duplicate_check"]["overlap_type"] == "exact"

    @pytest.mark.asyncio
    async def test_no_features_is_not_duplicate(self, repo: Path):
        agent = DuplicateAgent()
        out = await agent.run(_ctx(repo, query="anything", features=[]))
        assert out.ok and out.findings == []
        assert agent.model_calls == 0

    @pytest.mark.asyncio
    async def test_model_decides_partial_overlap(self, repo: Path):
        reply = json.dumps({
            "is_duplicate": True, "confidence": "high", "matching_feature": "CSV export",
            "overlap_type": "partial", "explanation": "both export data",
        })
        agent = DuplicateAgent(model=FakeChatModel(reply))
        out = await agent.run(_ctx(repo, query="export reports to excel", features=self.FEATURES))
        assert agent.model_calls == 1
        check = out.findings[0].metadata["duplicate_check"]
        assert check["confidence"] == pytest.approx(0.9)
        assert check["deterministic"] is False

    @pytest.mark.asyncio
    async def test_missing_query(self, repo: Path):
        out = await DuplicateAgent().run(_ctx(repo, features=self.FEATURES))
        assert out.error_code == "InvalidInput"

    def test_best_match(self):
        title, score = best_match("csv export", self.FEATURES)
        assert title == "CSV export" and score == 1.0


# ===================================================================
# Clarifying and planning
# ===================================================================

class TestPlanning:
    @pytest.mark.asyncio
    async def test_clarifier_requires_goal(self, repo: Path):
        out = await ClarifyingAgent(model=FakeChatModel("{}")).run(_ctx(repo))
        assert out.error_code == "InvalidInput"

    @pytest.mark.asyncio
    async def test_clarification_shape(self, repo: Path):
        reply = json.dumps({
            "questions": ["Which providers?", ""],
            "goal_summary": "Add OAuth",
            "enriched_goal": "Add GitHub OAuth login",
            "is_ready_to_plan": True,
        })
        out = await ClarifyingAgent(model=FakeChatModel(reply)).run(_ctx(repo, goal="add oauth"))
        f = out.findings[0]
        assert f.type == FindingType.REFINEMENT
        assert f.title == "Goal Clarification"
        assert f.metadata["questions"] == ["Which providers?"]
        assert f.metadata["is_ready_to_plan"] is True

    @pytest.mark.asyncio
    async def test_planner_prefers_enriched_goal(self, repo: Path):
        reply = json.dumps({
            "rationale": "small steps",
            "tasks": [
                {"title": "Add provider config", "acceptance_criteria": "config loads", "priority": "HIGH"},
                {"title": "Callback route", "priority": "someday", "dependencies": ["Add provider config"]},
                {"description": "no title"},
            ],
        })
        model = FakeChatModel(reply)
        out = await PlanningAgent(model=model).run(
            _ctx(repo, goal="oauth", enriched_goal="Add GitHub OAuth login"),
        )
        assert "Add GitHub OAuth login" in model.calls[0][-1].content
        plan = out.findings[0]
        assert plan.type == FindingType.PLAN
        tasks = plan.metadata["tasks"]
        assert [t["title"] for t in tasks] == ["Add provider config", "Callback route"]
        assert tasks[0]["acceptance_criteria"] == ["config loads"]
        assert tasks[0]["priority"] == "high"
        assert tasks[1]["priority"] == "medium"
        assert tasks[1]["dependencies"] == ["Add provider config"]

    @pytest.mark.asyncio
    async def test_planner_requires_goal(self, repo: Path):
        out = await PlanningAgent(model=FakeChatModel("{}")).run(_ctx(repo))
        assert out.error_code == "InvalidInput"


# ===================================================================
# Verification and git
# ===================================================================

class TestVerificationAgent:
    @pytest.mark.asyncio
    async def test_verifies_context_findings(self, repo: Path):
        f = Finding(type=FindingType.DECISION, title="Readme", confidence_score=0.7,
                    evidence=[Evidence(file_path="README.md", snippet="v1")])
        out = await VerificationAgent().run(_ctx(repo, findings=[f.model_dump()]))
        assert out.findings[0].verification_status == VerificationStatus.VERIFIED

    @pytest.mark.asyncio
    async def test_nothing_to_verify(self, repo: Path):
        out = await VerificationAgent().run(_ctx(repo))
        assert out.ok and out.findings == []


class TestGitAgent:
    LOG = "a1b2c3d 2024-01-02 feat(auth): add JWT\n9f8e7d6 2024-01-01 chore: init\n"

    @pytest.mark.asyncio
    async def test_git_unavailable(self, repo: Path):
        with mock.patch("taskwing.agents.git_agent.subprocess.run", side_effect=FileNotFoundError("git")):
            out = await GitAgent(model=FakeChatModel("{}")).run(_ctx(repo))
        assert out.error == "no git history available"
        assert out.error_code == "GitUnavailable"

    @pytest.mark.asyncio
    async def test_milestones_from_log(self, repo: Path):
        reply = json.dumps({"milestones": [
            {"title": "JWT auth introduced", "scope": "auth"},
            {"title": "jwt auth introduced"},
        ]})
        done = subprocess.CompletedProcess(["git"], 0, stdout=self.LOG, stderr="")
        model = FakeChatModel(reply)
        with mock.patch("taskwing.agents.git_agent.subprocess.run", return_value=done):
            out = await GitAgent(model=model).run(_ctx(repo))
        assert len(model.calls) == 1
        assert [f.title for f in out.findings] == ["JWT auth introduced"]
        assert out.findings[0].metadata["component"] == "auth"

    def test_findings_budget_decays(self):
        assert max_findings_for_chunk(0) == 8
        assert max_findings_for_chunk(5) == 2


# ===================================================================
# Registry and orchestrator
# ===================================================================

class TestRegistry:
    def test_builtins(self):
        ids = registered_ids()
        for agent_id in ("doc", "code", "react_code", "git", "deps", "clarifying",
                         "planning", "duplicate", "verification"):
            assert agent_id in ids
        assert set(BOOTSTRAP_AGENTS) <= set(ids)

    def test_unknown_agent(self, config):
        with pytest.raises(UnknownAgentError) as exc_info:
            create("nope", config)
        assert "doc" in exc_info.value.details["available"]

    def test_react_gets_configured_cap(self, config):
        agent = create("react_code", config)
        assert agent.max_iterations == config.react_max_iterations

    def test_create_many_fresh_instances(self, config):
        a, b = create_many(["doc", "doc"], config)
        assert a is not b

    def test_register_custom(self, config):
        register("boom", lambda cfg, model, stream: BoomAgent())
        assert isinstance(create("boom", config), BoomAgent)


class TestOrchestrator:
    @pytest.mark.asyncio
    async def test_raising_agent_becomes_error_output(self, repo: Path):
        out = await run_agent(BoomAgent(), _ctx(repo))
        assert out.agent_name == "boom"
        assert out.error == "RuntimeError: kaboom"
        assert out.error_code == "OperationFailed"

    @pytest.mark.asyncio
    async def test_run_all_collects_every_agent(self, repo: Path):
        (repo / "README.md").write_text("## Auth: JWT\n", encoding="utf-8")
        agents = [DocAgent(model=FakeChatModel(DOC_REPLY)), BoomAgent()]
        result = await run_all(agents, _watch(repo, "README.md"))
        assert [o.agent_name for o in result.outputs] == ["doc", "boom"]
        assert [f.title for f in result.findings] == ["Auth: JWT"]
        assert [o.agent_name for o in result.failed] == ["boom"]
        assert result.tokens_used == 10
        assert set(result.by_type) == {FindingType.FEATURE}
