"""Duplicate detection — does a requested feature already exist?

A token-set similarity pass runs first.  A near-exact match (score at
least ``EXACT_THRESHOLD``) is decided on the spot, and so is an empty
feature list; only the remaining cases are sent to the model.

Inputs come through ``existing_context``:

* ``query`` — the requested feature (required)
* ``features`` — known features, as strings or ``{"title", "description"}`` dicts
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any

from pydantic import BaseModel, field_validator

from ..core.jsonparse import parse_json_response
from ..core.models import Finding, FindingType, parse_confidence
from ..core.similarity import jaccard_similarity
from ..errors import InvalidInputError, ParseFailure, TaskWingError
from ..llm.chat_model import ChatMessage
from .base import Agent, AgentCore, AgentInput, AgentOutput
from .prompts import DUPLICATE_PROMPT, JSON_SYSTEM_PROMPT

logger = logging.getLogger(__name__)

EXACT_THRESHOLD = 0.85
MAX_FEATURES_IN_PROMPT = 50

OVERLAP_TYPES = ("exact", "partial", "none")


class DuplicateCheckResult(BaseModel):
    """Verdict of one duplicate check."""

    is_duplicate: bool = False
    confidence: float = 0.0
    matching_feature: str = ""
    overlap_type: str = "none"
    explanation: str = ""
    recommendation: str = ""
    deterministic: bool = False

    @field_validator("overlap_type", mode="before")
    @classmethod
    def _known_overlap(cls, v: Any) -> str:
        v = str(v or "none").lower()
        return v if v in OVERLAP_TYPES else "none"

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp(cls, v: Any) -> float:
        return parse_confidence(v)

    def format_warning(self) -> str:
        """One-line human warning, empty when not a duplicate."""
        if not self.is_duplicate:
            return ""
        msg = f"Possible duplicate of '{self.matching_feature}' ({self.confidence:.0%} {self.overlap_type} overlap)"
        if self.recommendation:
            msg += f": {self.recommendation}"
        return msg


def _feature_text(feature: Any) -> tuple[str, str]:
    if isinstance(feature, dict):
        title = str(feature.get("title") or feature.get("name") or "")
        return title, f"{title} {feature.get('description') or ''}".strip()
    text = str(feature)
    return text, text


def best_match(query: str, features: list[Any]) -> tuple[str, float]:
    """Highest token-set similarity of *query* against title or full text."""
    best_title, best_score = "", 0.0
    for feature in features:
        title, full = _feature_text(feature)
        score = max(jaccard_similarity(query, title), jaccard_similarity(query, full))
        if score > best_score:
            best_title, best_score = title, score
    return best_title, best_score


def _format_features(features: list[Any]) -> str:
    lines = []
    for feature in features[:MAX_FEATURES_IN_PROMPT]:
        title, full = _feature_text(feature)
        lines.append(f"- {full}" if full != title else f"- {title}")
    return "\n".join(lines)


def result_to_finding(query: str, result: DuplicateCheckResult) -> Finding:
    return Finding(
        type=FindingType.RISK,
        title=f"Duplicate request: {query[:80]}",
        description=result.format_warning(),
        why=result.explanation,
        confidence_score=result.confidence or None,
        metadata={"duplicate_check": result.model_dump()},
    )


class DuplicateAgent(Agent):
    def __init__(self, core: AgentCore | None = None, **kwargs: Any) -> None:
        self.core = core or AgentCore(
            name="duplicate",
            description="Checks whether a requested feature already exists",
            system_prompt=JSON_SYSTEM_PROMPT,
            **kwargs,
        )
        self.model_calls = 0

    async def check(self, query: str, features: list[Any]) -> tuple[DuplicateCheckResult, int, str]:
        """Return ``(result, tokens_used, raw_output)`` for *query*."""
        if not features:
            return DuplicateCheckResult(
                explanation="no known features to compare against", deterministic=True,
            ), 0, ""

        title, score = best_match(query, features)
        if score >= EXACT_THRESHOLD:
            return DuplicateCheckResult(
                is_duplicate=True,
                confidence=score,
                matching_feature=title,
                overlap_type="exact",
                explanation=f"token overlap {score:.2f} with an existing feature",
                recommendation="extend the existing feature instead of adding a new one",
                deterministic=True,
            ), 0, ""

        self.model_calls += 1
        reply = await self.core.call_model([
            ChatMessage.system(self.core.system_prompt),
            ChatMessage.user(DUPLICATE_PROMPT.format(query=query, features=_format_features(features))),
        ])
        data = parse_json_response(reply.content)
        if not isinstance(data, dict):
            raise ParseFailure("duplicate check response is not an object")
        fields = {k: v for k, v in data.items() if k in DuplicateCheckResult.model_fields}
        return DuplicateCheckResult(**fields), reply.total_tokens, reply.content

    async def run(self, inp: AgentInput) -> AgentOutput:
        started = time.perf_counter()
        query = str(inp.existing_context.get("query") or "").strip()
        if not query:
            out = self._make_output(started)
            out.set_error(InvalidInputError("missing 'query' in input context"))
            return out
        features = list(inp.existing_context.get("features") or [])

        try:
            result, tokens, raw = await self.check(query, features)
        except TaskWingError as exc:
            out = self._make_output(started)
            out.set_error(exc)
            return out

        logger.debug("duplicate check for %r: %s", query, result.model_dump())
        out = self._make_output(
            started,
            tokens_used=tokens,
            raw_output=raw or json.dumps(result.model_dump()),
        )
        if result.is_duplicate:
            f = result_to_finding(query, result)
            f.source_agent = self.name
            out.findings.append(f)
        return out
