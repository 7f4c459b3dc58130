"""Agent registry — ``agent_id → factory(config, model, stream) → Agent``.

The table is filled once at import time from ``BUILTIN_AGENTS``; extra
agents may be added with ``register()`` during startup.  Agents are
created fresh for every run and never shared.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional

from ..config import TaskWingConfig
from ..core.stream import StreamingOutput
from ..errors import UnknownAgentError
from ..llm.chat_model import ChatModel
from .base import Agent
from .code_agent import CodeAgent
from .deps_agent import DepsAgent
from .doc_agent import DocAgent
from .duplicate_agent import DuplicateAgent
from .git_agent import GitAgent
from .planning_agent import ClarifyingAgent, PlanningAgent
from .react_code_agent import ReactCodeAgent
from .verification_agent import VerificationAgent

logger = logging.getLogger(__name__)

AgentFactory = Callable[[TaskWingConfig, Optional[ChatModel], Optional[StreamingOutput]], Agent]


def _simple(cls: type) -> AgentFactory:
    def factory(config: TaskWingConfig, model: ChatModel | None, stream: StreamingOutput | None) -> Agent:
        return cls(model=model, stream=stream)
    return factory


def _react(config: TaskWingConfig, model: ChatModel | None, stream: StreamingOutput | None) -> Agent:
    return ReactCodeAgent(max_iterations=config.react_max_iterations, model=model, stream=stream)


def _verification(config: TaskWingConfig, model: ChatModel | None, stream: StreamingOutput | None) -> Agent:
    return VerificationAgent(stream=stream)


BUILTIN_AGENTS: dict[str, AgentFactory] = {
    "doc": _simple(DocAgent),
    "code": _simple(CodeAgent),
    "react_code": _react,
    "git": _simple(GitAgent),
    "deps": _simple(DepsAgent),
    "clarifying": _simple(ClarifyingAgent),
    "planning": _simple(PlanningAgent),
    "duplicate": _simple(DuplicateAgent),
    "verification": _verification,
}

# Agents run by ``taskwing bootstrap`` when none are named.
BOOTSTRAP_AGENTS = ("doc", "code", "git", "deps")

_registry: dict[str, AgentFactory] = dict(BUILTIN_AGENTS)


def register(agent_id: str, factory: AgentFactory) -> None:
    if agent_id in _registry:
        logger.warning("replacing registered agent %r", agent_id)
    _registry[agent_id] = factory


def registered_ids() -> list[str]:
    return sorted(_registry)


def create(
    agent_id: str,
    config: TaskWingConfig,
    *,
    model: ChatModel | None = None,
    stream: StreamingOutput | None = None,
) -> Agent:
    """Build a fresh agent for *agent_id*.

    Raises
    ------
    UnknownAgentError
        If no factory is registered under *agent_id*.
    """
    factory = _registry.get(agent_id)
    if factory is None:
        raise UnknownAgentError(
            f"unknown agent '{agent_id}'",
            details={"available": registered_ids()},
        )
    return factory(config, model, stream)


def create_many(
    agent_ids: list[str] | tuple[str, ...],
    config: TaskWingConfig,
    *,
    model: ChatModel | None = None,
    stream: StreamingOutput | None = None,
) -> list[Agent]:
    return [create(a, config, model=model, stream=stream) for a in agent_ids]
