"""Agent orchestrator — run a batch of agents concurrently.

Each agent gets its own task.  The orchestrator waits for all of them,
stamps every output with the agent's name and measured duration, and
turns an agent that raised into an output with ``error`` set.  One
agent's failure never cancels its siblings or fails the batch.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

from rich.console import Console
from rich.table import Table

from ..core.models import Finding, FindingType, aggregate_findings, group_findings_by_type
from ..core.stream import StreamingCallbackHandler, StreamingOutput
from ..errors import TaskWingError
from .base import Agent, AgentInput, AgentOutput

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Orchestration result
# ---------------------------------------------------------------------------

class OrchestrationResult:
    """Outputs of one batch plus aggregation helpers."""

    def __init__(self, outputs: list[AgentOutput], total_duration: float = 0.0) -> None:
        self.outputs = outputs
        self.total_duration = total_duration

    @property
    def findings(self) -> list[Finding]:
        return aggregate_findings(self.outputs)

    @property
    def by_type(self) -> dict[FindingType, list[Finding]]:
        return group_findings_by_type(self.findings)

    @property
    def failed(self) -> list[AgentOutput]:
        return [o for o in self.outputs if o.error]

    @property
    def tokens_used(self) -> int:
        return sum(o.tokens_used for o in self.outputs)

    def summary(self) -> dict[str, Any]:
        return {
            "agents": len(self.outputs),
            "failed": [o.agent_name for o in self.failed],
            "findings": len(self.findings),
            "by_type": {t.value: len(fs) for t, fs in self.by_type.items()},
            "tokens_used": self.tokens_used,
            "duration_s": round(self.total_duration, 2),
        }

    def render(self, console: Console) -> None:
        table = Table(title="Agent Results", show_lines=False)
        table.add_column("Agent", style="bold cyan")
        table.add_column("Findings", justify="right")
        table.add_column("Tokens", justify="right")
        table.add_column("Time", justify="right")
        table.add_column("Status")
        for o in self.outputs:
            status = "[green]ok[/green]" if o.ok else f"[red]{o.error_code}: {o.error}[/red]"
            table.add_row(
                o.agent_name, str(len(o.findings)), str(o.tokens_used),
                f"{o.duration:.1f}s", status,
            )
        console.print(table)


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------

async def run_agent(agent: Agent, inp: AgentInput, stream: StreamingOutput | None = None) -> AgentOutput:
    """Run a single agent; never raises except on cancellation."""
    cb = StreamingCallbackHandler(stream, agent.name)
    cb.on_start()
    started = time.perf_counter()
    try:
        out = await agent.run(inp)
    except asyncio.CancelledError:
        raise
    except TaskWingError as exc:
        out = AgentOutput()
        out.set_error(exc)
    except Exception as exc:
        logger.exception("agent %s raised", agent.name)
        out = AgentOutput(error=f"{type(exc).__name__}: {exc}", error_code="OperationFailed")

    out.agent_name = agent.name
    out.duration = time.perf_counter() - started
    if out.error:
        cb.on_error(out.error)
    else:
        cb.on_end({"findings": len(out.findings), "tokens": out.tokens_used})
    return out


async def run_all(
    agents: list[Agent],
    inp: AgentInput,
    stream: StreamingOutput | None = None,
) -> OrchestrationResult:
    """Run *agents* concurrently against the same input."""
    t0 = time.perf_counter()
    outputs = await asyncio.gather(*(run_agent(a, inp, stream) for a in agents))
    result = OrchestrationResult(list(outputs), time.perf_counter() - t0)
    logger.info(
        "orchestrated %d agent(s): %d finding(s), %d failed",
        len(agents), len(result.findings), len(result.failed),
    )
    return result
