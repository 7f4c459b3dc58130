"""Watch-mode dispatcher — debounced batches to agents.

Routing by category:

============  ===================
category      agent
============  ===================
``code``      ``CodeAgent``
``docs``      ``DocAgent``
``deps``      ``DepsAgent``
anything else no-op
============  ===================

Each batch runs in a background task: agent, then the evidence
verifier (when enabled), then the findings handler.  Deleted paths are
never handed to an agent.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Callable, Optional

from ..config import TaskWingConfig
from ..core.activity_log import ActivityLog
from ..core.models import FileCategory, FileChangeEvent, FileOperation, Finding
from ..core.stream import StreamingOutput
from ..core.verifier import EvidenceVerifier
from ..llm.chat_model import ChatModel
from .base import Agent, AgentInput, AgentMode, AgentOutput
from .code_agent import CodeAgent
from .deps_agent import DepsAgent
from .doc_agent import DocAgent
from .orchestrator import run_agent

logger = logging.getLogger(__name__)

FindingsHandler = Callable[[list[Finding], str, float], Any]

_ROUTES: dict[FileCategory, type] = {
    FileCategory.CODE: CodeAgent,
    FileCategory.DOCS: DocAgent,
    FileCategory.DEPS: DepsAgent,
}


class AgentDispatcher:
    """Routes change batches to agents and forwards their findings.

    Parameters
    ----------
    config : TaskWingConfig
        Base path, project name and the ``verify_findings`` switch.
    handler : callable, optional
        ``handler(findings, agent_name, duration)``; may be a coroutine
        function.  Without one, findings are only logged.
    """

    def __init__(
        self,
        config: TaskWingConfig,
        *,
        model: Optional[ChatModel] = None,
        stream: Optional[StreamingOutput] = None,
        activity: Optional[ActivityLog] = None,
        handler: Optional[FindingsHandler] = None,
    ) -> None:
        self.config = config
        self.model = model
        self.stream = stream
        self.activity = activity
        self.handler = handler
        self.verifier = EvidenceVerifier(config.root) if config.verify_findings else None
        self._tasks: set[asyncio.Task] = set()

    def agent_for(self, category: FileCategory | str) -> Agent | None:
        cls = _ROUTES.get(FileCategory(category))
        if cls is None:
            return None
        return cls(model=self.model, stream=self.stream)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def dispatch(self, events: list[FileChangeEvent], category: FileCategory | str) -> asyncio.Task | None:
        """Start processing *events* in the background; ``None`` for a no-op."""
        agent = self.agent_for(category)
        if agent is None:
            logger.debug("no agent for category %s (%d event(s))", category, len(events))
            return None
        task = asyncio.create_task(self.run_batch(events, agent), name=f"dispatch-{agent.name}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def run_batch(self, events: list[FileChangeEvent], agent: Agent) -> AgentOutput | None:
        paths: list[str] = []
        for ev in events:
            if ev.operation == FileOperation.DELETE or ev.path in paths:
                continue
            paths.append(ev.path)
        if not paths:
            logger.debug("%s: batch held only deletions", agent.name)
            return None

        inp = AgentInput(
            base_path=str(self.config.root),
            project_name=self.config.project_name,
            mode=AgentMode.WATCH,
            changed_files=paths,
        )
        logger.info("%s: analysing %d changed file(s)", agent.name, len(paths))
        if self.activity:
            self.activity.log_agent_start(agent.name, len(paths))
        out = await run_agent(agent, inp, self.stream)

        if out.error:
            logger.warning("%s: %s", agent.name, out.error)
            if self.activity:
                self.activity.log_agent_run(agent.name, 0, out.duration, out.error)
            if not out.findings:
                return out

        if self.verifier is not None and out.findings:
            out.findings = await self.verifier.averify_findings(out.findings)

        if self.activity:
            if not out.error:
                self.activity.log_agent_run(agent.name, len(out.findings), out.duration)
            for f in out.findings:
                self.activity.log_finding(agent.name, f.type.value, f.title)
        if self.stream:
            for f in out.findings:
                self.stream.emit_finding(agent.name, f.title, {"type": f.type.value, "id": f.id})

        try:
            await self._forward(out)
        except Exception as exc:
            logger.exception("%s: findings handler failed", agent.name)
            out.error = f"findings handler failed: {exc}"
            if self.activity:
                self.activity.log_error(agent.name, out.error)
        return out

    async def _forward(self, out: AgentOutput) -> None:
        if not out.findings:
            return
        if self.handler is None:
            logger.warning("no findings handler configured - findings not persisted")
            for f in out.findings:
                logger.info("  [%s] %s", f.type.value, f.title)
            return
        result = self.handler(out.findings, out.agent_name, out.duration)
        if inspect.isawaitable(result):
            await result

    async def wait_idle(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def stop(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)
        self._tasks.clear()
