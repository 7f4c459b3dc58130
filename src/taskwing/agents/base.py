"""Agent interface, shared model glue and the single-shot chain.

Every analyzer implements ``Agent``: a ``name``, a ``description`` and
an async ``run(AgentInput) -> AgentOutput``.  Model plumbing is not
inherited; each agent owns an ``AgentCore`` value (name, description,
model handle, system prompt, optional stream) and, for the single-shot
shape, a ``DeterministicChain`` that does

    render prompt → invoke model once → strip fences → parse JSON → findings

A parse failure is not an exception: the chain returns the raw response
with ``error`` set and no findings, so sibling agents carry on.
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from pydantic import BaseModel, Field

from ..core.jsonparse import parse_json_response
from ..core.models import (
    Evidence,
    Finding,
    FindingType,
    check_metadata,
    clean_source_files,
    parse_confidence,
)
from ..core.stream import StreamingCallbackHandler, StreamingOutput
from ..errors import ModelUnavailableError, ParseFailure, TaskWingError
from ..llm.chat_model import ChatMessage, ChatModel, ToolSpec

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Input / output
# ---------------------------------------------------------------------------

class AgentMode(str, Enum):
    BOOTSTRAP = "bootstrap"
    WATCH = "watch"


class AgentInput(BaseModel):
    """Everything an agent run needs to know about its job."""

    base_path: str
    project_name: str = ""
    mode: AgentMode = AgentMode.BOOTSTRAP
    changed_files: list[str] = Field(default_factory=list)   # watch mode only
    max_tokens: int = 4096
    verbose: bool = False
    existing_context: dict[str, Any] = Field(default_factory=dict)


class AgentOutput(BaseModel):
    """The outcome of one agent run."""

    agent_name: str = ""
    findings: list[Finding] = Field(default_factory=list)
    raw_output: str = ""
    tokens_used: int = 0
    duration: float = 0.0                  # seconds
    error: Optional[str] = None            # non-fatal
    error_code: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def set_error(self, exc: BaseException | str) -> None:
        self.error = str(exc.message if isinstance(exc, TaskWingError) else exc)
        self.error_code = exc.code if isinstance(exc, TaskWingError) else "OperationFailed"


# ---------------------------------------------------------------------------
# Composition: model glue
# ---------------------------------------------------------------------------

@dataclass
class AgentCore:
    """Name, description, model handle and prompt shared by an agent's run."""

    name: str
    description: str
    model: Optional[ChatModel] = None
    system_prompt: str = ""
    stream: Optional[StreamingOutput] = None
    stream_tokens: bool = False
    _callbacks: Optional[StreamingCallbackHandler] = field(default=None, init=False, repr=False)

    @property
    def callbacks(self) -> StreamingCallbackHandler:
        if self._callbacks is None:
            self._callbacks = StreamingCallbackHandler(self.stream, self.name)
        return self._callbacks

    def require_model(self) -> ChatModel:
        if self.model is None:
            raise ModelUnavailableError(f"agent '{self.name}' has no chat model configured")
        return self.model

    async def call_model(
        self,
        messages: list[ChatMessage],
        tools: list[ToolSpec] | None = None,
    ) -> ChatMessage:
        """Invoke the model once, reporting node lifecycle on the stream."""
        model = self.require_model()
        cb = self.callbacks
        cb.on_node_start("ChatModel", "ChatModel", model.model)
        if self.stream_tokens and not tools and self.stream is not None:
            chunks: list[str] = []
            async for chunk in model.stream(messages):
                chunks.append(chunk)
                cb.on_llm_chunk(chunk)
            reply = ChatMessage.assistant("".join(chunks))
        else:
            reply = await model.generate(messages, tools)
        cb.on_node_end("ChatModel", "ChatModel", reply.usage)
        return reply


@dataclass
class ChainResult:
    findings: list[Finding] = field(default_factory=list)
    raw_output: str = ""
    tokens_used: int = 0
    data: Any = None
    error: Optional[TaskWingError] = None


class DeterministicChain:
    """Single-shot prompt → model → JSON → findings pipeline."""

    def __init__(self, core: AgentCore, convert: Callable[[Any], list[Finding]]) -> None:
        self.core = core
        self.convert = convert

    async def run(self, user_prompt: str) -> ChainResult:
        cb = self.core.callbacks
        cb.on_node_start("prompt_template", "Lambda")
        messages = [ChatMessage.system(self.core.system_prompt), ChatMessage.user(user_prompt)]
        cb.on_node_end("prompt_template", "Lambda")

        result = ChainResult()
        try:
            reply = await self.core.call_model(messages)
        except TaskWingError as exc:
            result.error = exc
            return result

        result.raw_output = reply.content
        result.tokens_used = reply.total_tokens

        cb.on_node_start("json_parser", "Lambda")
        try:
            result.data = parse_json_response(reply.content)
        except ParseFailure as exc:
            logger.warning("%s: could not parse model output: %s", self.core.name, exc.message)
            result.error = exc
            cb.on_node_end("json_parser", "Lambda")
            return result
        cb.on_node_end("json_parser", "Lambda")

        result.findings = self.convert(result.data)
        for f in result.findings:
            f.source_agent = f.source_agent or self.core.name
        return result


# ---------------------------------------------------------------------------
# Agent interface
# ---------------------------------------------------------------------------

class Agent(ABC):
    """Base class for every analyzer.

    Subclasses set ``self.core`` and implement ``run()``.  Instances are
    not shared between concurrent runs.
    """

    core: AgentCore

    @property
    def name(self) -> str:
        return self.core.name

    @property
    def description(self) -> str:
        return self.core.description

    @abstractmethod
    async def run(self, inp: AgentInput) -> AgentOutput:
        """Execute this agent's analysis for *inp*."""
        ...

    def _make_output(self, started: float, **kwargs: Any) -> AgentOutput:
        return AgentOutput(
            agent_name=self.name,
            duration=time.perf_counter() - started,
            **kwargs,
        )

    def _from_chain(self, started: float, result: ChainResult) -> AgentOutput:
        out = self._make_output(
            started,
            findings=result.findings,
            raw_output=result.raw_output,
            tokens_used=result.tokens_used,
        )
        if result.error is not None:
            out.set_error(result.error)
        return out

    @staticmethod
    async def in_thread(func: Callable[..., Any], *args: Any) -> Any:
        return await asyncio.to_thread(func, *args)


# ---------------------------------------------------------------------------
# Conversion helpers shared by the single-shot agents
# ---------------------------------------------------------------------------

def parse_evidence(raw: Any, default_type: str = "code") -> list[Evidence]:
    """Turn the model's evidence list into ``Evidence`` objects."""
    out: list[Evidence] = []
    if isinstance(raw, dict):
        raw = [raw]
    for item in raw or []:
        if not isinstance(item, dict):
            continue
        data = dict(item)
        data.setdefault("evidence_type", default_type)
        path = str(data.get("file_path") or data.get("file") or "")
        if not path:
            continue
        data["file_path"] = path
        try:
            out.append(Evidence(**{k: v for k, v in data.items() if k in Evidence.model_fields}))
        except (TypeError, ValueError):
            continue
    return out


def make_finding(
    ftype: FindingType,
    item: dict[str, Any],
    *,
    title_key: str = "title",
    description: str = "",
    metadata: dict[str, Any] | None = None,
    default_evidence_type: str = "code",
    confidence: Any = None,
) -> Finding | None:
    """Build a finding from one JSON item; ``None`` if it has no title."""
    title = str(item.get(title_key) or "").strip()
    if not title:
        return None
    evidence = parse_evidence(item.get("evidence"), default_evidence_type)
    files = item.get("source_files") or [e.file_path for e in evidence if not e.is_git]
    score = parse_confidence(confidence if confidence is not None else item.get("confidence"))
    for problem in check_metadata(metadata or {}):
        logger.warning("%s finding %r: %s", ftype.value, title, problem)
    return Finding(
        type=ftype,
        title=title,
        description=description or str(item.get("description") or ""),
        why=str(item.get("why") or ""),
        tradeoffs=str(item.get("tradeoffs") or ""),
        confidence_score=score,
        source_files=clean_source_files(files if isinstance(files, list) else []),
        evidence=evidence,
        metadata=dict(metadata or {}),
    )
