"""Analyzer agents.

Modules
-------
base              — Agent interface, AgentCore model glue, single-shot chain
context           — bounded context gatherer and import graph
tools             — sandboxed repository tools for the tool-calling agent
prompts           — prompt templates
doc_agent         — product features, constraints and workflows from docs
code_agent        — architectural decisions and patterns from source
react_code_agent  — tool-calling variant of the code agent
git_agent         — milestones from commit history
deps_agent        — technology decisions from manifests
planning_agent    — goal clarification and planning
duplicate_agent   — duplicate feature detection
verification_agent — evidence verifier as an agent
registry          — agent id → factory table
orchestrator      — concurrent batch runner
dispatcher        — watch-mode routing of change batches
"""

from .base import Agent, AgentCore, AgentInput, AgentMode, AgentOutput, DeterministicChain
from .dispatcher import AgentDispatcher
from .orchestrator import OrchestrationResult, run_agent, run_all
from .registry import BOOTSTRAP_AGENTS, create, create_many, register, registered_ids

__all__ = [
    "Agent",
    "AgentCore",
    "AgentInput",
    "AgentMode",
    "AgentOutput",
    "DeterministicChain",
    "AgentDispatcher",
    "OrchestrationResult",
    "run_agent",
    "run_all",
    "BOOTSTRAP_AGENTS",
    "create",
    "create_many",
    "register",
    "registered_ids",
]
