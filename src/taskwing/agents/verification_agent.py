"""The evidence verifier exposed as an agent (no model involved)."""

from __future__ import annotations

import time
from typing import Any

from ..core.models import Finding
from ..core.verifier import EvidenceVerifier
from .base import Agent, AgentCore, AgentInput, AgentOutput


class VerificationAgent(Agent):
    """Verifies ``existing_context["findings"]`` and returns them."""

    def __init__(self, core: AgentCore | None = None, **kwargs: Any) -> None:
        self.core = core or AgentCore(
            name="verification",
            description="Checks finding evidence against the working tree",
            **kwargs,
        )

    async def run(self, inp: AgentInput) -> AgentOutput:
        started = time.perf_counter()
        raw = inp.existing_context.get("findings") or []
        findings = [f if isinstance(f, Finding) else Finding.model_validate(f) for f in raw]
        if not findings:
            return self._make_output(started)

        verifier = EvidenceVerifier(inp.base_path)
        verified = await verifier.averify_findings(findings)
        return self._make_output(started, findings=verified)
