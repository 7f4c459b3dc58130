"""Tool-calling code agent.

Runs a bounded loop: the model is invoked with the four repository
tools bound; if it requests tool calls they are executed and their
results appended to the conversation, otherwise its content is the
final answer.  Tool failures are fed back to the model as tool-result
messages instead of aborting the loop.

If the backend rejects tool binding on the first call, the agent falls
back once to the single-shot shape with a prepared context.
"""

from __future__ import annotations

import logging
import time
from typing import Any

from ..core.jsonparse import parse_json_response
from ..errors import ParseFailure, TaskWingError, ToolBindingUnsupported
from ..llm.chat_model import ChatMessage
from .base import Agent, AgentCore, AgentInput, AgentOutput, DeterministicChain
from .code_agent import convert_code_response
from .context import ContextGatherer
from .prompts import CODE_PROMPT, JSON_SYSTEM_PROMPT, REACT_CODE_START, REACT_CODE_SYSTEM_PROMPT
from .tools import build_toolset, execute_tool, tool_specs

logger = logging.getLogger(__name__)

DEFAULT_MAX_ITERATIONS = 10
MAX_ITERATIONS_CAP = 20


def clamp_iterations(n: int | None) -> int:
    if not n or n < 1:
        return DEFAULT_MAX_ITERATIONS
    return min(n, MAX_ITERATIONS_CAP)


def extract_json_object(text: str) -> str:
    start, end = text.find("{"), text.rfind("}")
    if start >= 0 and end > start:
        return text[start:end + 1]
    return text


class ReactCodeAgent(Agent):
    """Explores the repository with tools before reporting findings.

    Parameters
    ----------
    max_iterations : int
        Model invocations allowed per run (default 10, capped at 20).
    """

    def __init__(
        self,
        core: AgentCore | None = None,
        *,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        **kwargs: Any,
    ) -> None:
        self.core = core or AgentCore(
            name="react_code",
            description="Explores the codebase with tools to find decisions and patterns",
            **kwargs,
        )
        self.max_iterations = clamp_iterations(max_iterations)
        self.model_calls = 0
        self.tool_rounds = 0

    async def run(self, inp: AgentInput) -> AgentOutput:
        started = time.perf_counter()
        tools = build_toolset(inp.base_path)
        specs = tool_specs()
        cb = self.core.callbacks
        project = inp.project_name or "project"

        hint = ""
        if inp.changed_files:
            hint = "Focus on these changed files: " + ", ".join(inp.changed_files[:20])
        messages = [
            ChatMessage.system(REACT_CODE_SYSTEM_PROMPT.format(project_name=project)),
            ChatMessage.user(REACT_CODE_START.format(hint=hint).strip()),
        ]
        self.model_calls = 0
        self.tool_rounds = 0
        tokens = 0
        final: str | None = None
        last_content = ""

        for iteration in range(self.max_iterations):
            try:
                reply = await self.core.call_model(messages, specs)
            except ToolBindingUnsupported as exc:
                if iteration == 0:
                    logger.warning("%s: tool binding rejected, falling back: %s", self.name, exc)
                    return await self._fallback(inp, started)
                out = self._make_output(started, tokens_used=tokens, raw_output=last_content)
                out.set_error(exc)
                return out
            except TaskWingError as exc:
                out = self._make_output(started, tokens_used=tokens, raw_output=last_content)
                out.set_error(exc)
                return out

            self.model_calls += 1
            tokens += reply.total_tokens
            messages.append(reply)
            if reply.content:
                last_content = reply.content

            if not reply.tool_calls:
                final = reply.content
                break

            self.tool_rounds += 1
            cb.on_node_start("tools", "ToolsNode")
            for call in reply.tool_calls:
                cb.on_tool_call(call.name, call.arguments)
                try:
                    result = await execute_tool(tools, call.name, call.parsed_arguments())
                except TaskWingError as exc:
                    result = f"Error executing tools: {exc}"
                except OSError as exc:
                    result = f"Error executing tools: {exc}"
                cb.on_tool_result(call.name, result)
                messages.append(ChatMessage.tool(result, call.id, call.name))
            cb.on_node_end("tools", "ToolsNode")

        if final is None:
            logger.warning(
                "%s: no final answer after %d iteration(s); using last content",
                self.name, self.max_iterations,
            )
            final = last_content

        out = self._make_output(started, raw_output=final or "", tokens_used=tokens)
        if not final or not final.strip():
            return out
        try:
            data = parse_json_response(extract_json_object(final))
        except ParseFailure as exc:
            out.set_error(exc)
            return out
        out.findings = convert_code_response(data)
        for f in out.findings:
            f.source_agent = self.name
        return out

    async def _fallback(self, inp: AgentInput, started: float) -> AgentOutput:
        gatherer = ContextGatherer(inp.base_path)
        tree = await self.in_thread(gatherer.list_directory_tree, 2)
        key_files = await self.in_thread(gatherer.gather_key_files)
        content = f"## DIRECTORY TREE\n{tree}\n\n{key_files}".strip()

        core = AgentCore(
            name=self.name,
            description=self.description,
            model=self.core.model,
            system_prompt=JSON_SYSTEM_PROMPT,
            stream=self.core.stream,
        )
        chain = DeterministicChain(core, convert_code_response)
        result = await chain.run(CODE_PROMPT.format(
            scope="the structure of", project_name=inp.project_name or "project", content=content,
        ))
        self.model_calls += 1
        return self._from_chain(started, result)
