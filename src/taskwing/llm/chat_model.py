"""Chat-model abstraction used by every agent.

Agents talk to a ``ChatModel`` with two operations:

* ``generate(messages, tools=None)`` returns one assistant ``ChatMessage``
  (text content and/or tool calls, plus token usage).
* ``stream(messages)`` yields text chunks.

Backends wrap the official async SDKs (OpenAI, Anthropic).  Transient
failures are retried with exponential backoff and jitter; a backend
that rejects tool binding raises ``ToolBindingUnsupported`` at once so
the tool-calling agent can fall back to its single-shot shape.

Usage::

    from taskwing.llm.chat_model import ChatMessage, get_chat_model

    model = get_chat_model(cfg.llm)
    reply = await model.generate([
        ChatMessage.system("Return JSON."),
        ChatMessage.user("List 3 colors."),
    ])
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Optional

from pydantic import BaseModel, Field

from ..errors import ModelUnavailableError, ToolBindingUnsupported

logger = logging.getLogger("taskwing.llm.chat_model")

# ── Defaults ──────────────────────────────────────────────────────────────

DEFAULT_TEMPERATURE = 0.3
DEFAULT_MAX_TOKENS = 4096
DEFAULT_MAX_RETRIES = 4
DEFAULT_BASE_DELAY = 0.5
DEFAULT_MAX_DELAY = 30.0


# ══════════════════════════════════════════════════════════════════════════
# Messages
# ══════════════════════════════════════════════════════════════════════════


class ToolCall(BaseModel):
    """A tool invocation requested by the model."""

    id: str = ""
    name: str
    arguments: str = "{}"      # raw JSON text as produced by the model

    def parsed_arguments(self) -> dict[str, Any]:
        try:
            value = json.loads(self.arguments or "{}")
        except json.JSONDecodeError:
            return {}
        return value if isinstance(value, dict) else {}


class ToolSpec(BaseModel):
    """A tool schema bound to a model call."""

    name: str
    description: str = ""
    parameters: dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )

    def to_openai(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }

    def to_anthropic(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.parameters,
        }


class ChatMessage(BaseModel):
    role: str                                  # system | user | assistant | tool
    content: str = ""
    tool_calls: list[ToolCall] = Field(default_factory=list)
    tool_call_id: str = ""
    name: str = ""
    usage: dict[str, int] = Field(default_factory=dict)

    @classmethod
    def system(cls, content: str) -> "ChatMessage":
        return cls(role="system", content=content)

    @classmethod
    def user(cls, content: str) -> "ChatMessage":
        return cls(role="user", content=content)

    @classmethod
    def assistant(cls, content: str = "", tool_calls: list[ToolCall] | None = None) -> "ChatMessage":
        return cls(role="assistant", content=content, tool_calls=tool_calls or [])

    @classmethod
    def tool(cls, content: str, tool_call_id: str, name: str = "") -> "ChatMessage":
        return cls(role="tool", content=content, tool_call_id=tool_call_id, name=name)

    @property
    def total_tokens(self) -> int:
        return int(self.usage.get("total_tokens", 0))


# ══════════════════════════════════════════════════════════════════════════
# Base class
# ══════════════════════════════════════════════════════════════════════════


class ChatModel(ABC):
    """Abstract async chat model with retry."""

    def __init__(
        self,
        *,
        model: str = "",
        temperature: float = DEFAULT_TEMPERATURE,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        base_delay: float = DEFAULT_BASE_DELAY,
        max_delay: float = DEFAULT_MAX_DELAY,
    ) -> None:
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay

    # ── Public API ────────────────────────────────────────────────────

    async def generate(
        self,
        messages: list[ChatMessage],
        tools: list[ToolSpec] | None = None,
    ) -> ChatMessage:
        """One completion with retry.  Never retries a tool-binding refusal."""
        last_exc: Exception | None = None
        for attempt in range(self.max_retries + 1):
            try:
                return await self._generate(messages, tools)
            except (ToolBindingUnsupported, asyncio.CancelledError):
                raise
            except Exception as exc:
                last_exc = exc
                if attempt >= self.max_retries:
                    break
                wait = self.backoff(attempt)
                logger.warning(
                    "LLM request failed (attempt %d/%d): %s; retrying in %.1fs",
                    attempt + 1, self.max_retries + 1, exc, wait,
                )
                await asyncio.sleep(wait)
        raise ModelUnavailableError(
            f"LLM request failed after {self.max_retries + 1} attempts: {last_exc}",
            details={"model": self.model},
        )

    async def stream(self, messages: list[ChatMessage]) -> AsyncIterator[str]:
        """Yield text chunks.  Backends without streaming yield one chunk."""
        reply = await self.generate(messages)
        if reply.content:
            yield reply.content

    def backoff(self, attempt: int) -> float:
        delay = min(self.max_delay, self.base_delay * (2 ** attempt))
        return delay * (0.5 + random.random() / 2)

    @property
    def provider_name(self) -> str:
        return self.__class__.__name__.replace("ChatModel", "").lower()

    # ── Subclass hook ─────────────────────────────────────────────────

    @abstractmethod
    async def _generate(
        self,
        messages: list[ChatMessage],
        tools: list[ToolSpec] | None,
    ) -> ChatMessage:
        """Provider-specific completion."""


def _looks_like_tool_rejection(exc: Exception) -> bool:
    text = str(exc).lower()
    return "tool" in text and any(
        marker in text for marker in ("not support", "unsupported", "does not support", "invalid")
    )


# ══════════════════════════════════════════════════════════════════════════
# OpenAI
# ══════════════════════════════════════════════════════════════════════════


class OpenAIChatModel(ChatModel):
    """OpenAI chat completions (also any OpenAI-compatible server)."""

    def __init__(
        self,
        *,
        api_key: str = "",
        base_url: str = "",
        timeout: float = 120.0,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.model = self.model or "gpt-4o-mini"
        try:
            import httpx
            from openai import AsyncOpenAI
        except ImportError:
            raise ImportError(
                "OpenAI backend requires the 'openai' package. "
                "Install with: pip install openai"
            )
        if not api_key and not base_url:
            raise ModelUnavailableError(
                "No OpenAI API key found. Set OPENAI_API_KEY or llm.api_key."
            )
        ctor: dict[str, Any] = {
            "api_key": api_key or "not-needed",
            "max_retries": 0,
            "http_client": httpx.AsyncClient(timeout=timeout),
        }
        if base_url:
            ctor["base_url"] = base_url
        self._client = AsyncOpenAI(**ctor)

    @staticmethod
    def _to_wire(messages: list[ChatMessage]) -> list[dict[str, Any]]:
        wire: list[dict[str, Any]] = []
        for m in messages:
            if m.role == "tool":
                wire.append({"role": "tool", "tool_call_id": m.tool_call_id, "content": m.content})
            elif m.role == "assistant" and m.tool_calls:
                wire.append({
                    "role": "assistant",
                    "content": m.content or None,
                    "tool_calls": [
                        {
                            "id": tc.id,
                            "type": "function",
                            "function": {"name": tc.name, "arguments": tc.arguments},
                        }
                        for tc in m.tool_calls
                    ],
                })
            else:
                wire.append({"role": m.role, "content": m.content})
        return wire

    async def _generate(self, messages: list[ChatMessage], tools: list[ToolSpec] | None) -> ChatMessage:
        import openai

        kwargs: dict[str, Any] = {
            "model": self.model,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "messages": self._to_wire(messages),
        }
        if tools:
            kwargs["tools"] = [t.to_openai() for t in tools]
        try:
            resp = await self._client.chat.completions.create(**kwargs)
        except openai.BadRequestError as exc:
            if tools and _looks_like_tool_rejection(exc):
                raise ToolBindingUnsupported(f"model {self.model} rejected tools: {exc}") from exc
            raise

        choice = resp.choices[0].message
        calls = [
            ToolCall(id=tc.id, name=tc.function.name, arguments=tc.function.arguments or "{}")
            for tc in (choice.tool_calls or [])
        ]
        usage: dict[str, int] = {}
        if resp.usage is not None:
            usage = {
                "prompt_tokens": resp.usage.prompt_tokens,
                "completion_tokens": resp.usage.completion_tokens,
                "total_tokens": resp.usage.total_tokens,
            }
        return ChatMessage(role="assistant", content=choice.content or "", tool_calls=calls, usage=usage)

    async def stream(self, messages: list[ChatMessage]) -> AsyncIterator[str]:
        resp = await self._client.chat.completions.create(
            model=self.model,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            messages=self._to_wire(messages),
            stream=True,
        )
        async for chunk in resp:
            if chunk.choices and chunk.choices[0].delta.content:
                yield chunk.choices[0].delta.content


# ══════════════════════════════════════════════════════════════════════════
# Anthropic
# ══════════════════════════════════════════════════════════════════════════


class AnthropicChatModel(ChatModel):
    """Anthropic Messages API."""

    def __init__(
        self,
        *,
        api_key: str = "",
        base_url: str = "",
        timeout: float = 120.0,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.model = self.model or "claude-sonnet-4-20250514"
        try:
            from anthropic import AsyncAnthropic
        except ImportError:
            raise ImportError(
                "Anthropic backend requires the 'anthropic' package. "
                "Install with: pip install anthropic"
            )
        if not api_key:
            raise ModelUnavailableError(
                "No Anthropic API key found. Set ANTHROPIC_API_KEY or llm.api_key."
            )
        ctor: dict[str, Any] = {"api_key": api_key, "max_retries": 0, "timeout": timeout}
        if base_url:
            ctor["base_url"] = base_url
        self._client = AsyncAnthropic(**ctor)

    @staticmethod
    def _to_wire(messages: list[ChatMessage]) -> tuple[str, list[dict[str, Any]]]:
        system_parts: list[str] = []
        wire: list[dict[str, Any]] = []
        for m in messages:
            if m.role == "system":
                system_parts.append(m.content)
            elif m.role == "tool":
                wire.append({
                    "role": "user",
                    "content": [{
                        "type": "tool_result",
                        "tool_use_id": m.tool_call_id,
                        "content": m.content,
                    }],
                })
            elif m.role == "assistant" and m.tool_calls:
                blocks: list[dict[str, Any]] = []
                if m.content:
                    blocks.append({"type": "text", "text": m.content})
                for tc in m.tool_calls:
                    blocks.append({
                        "type": "tool_use",
                        "id": tc.id,
                        "name": tc.name,
                        "input": tc.parsed_arguments(),
                    })
                wire.append({"role": "assistant", "content": blocks})
            else:
                wire.append({"role": m.role, "content": m.content})
        return "\n\n".join(system_parts), wire

    async def _generate(self, messages: list[ChatMessage], tools: list[ToolSpec] | None) -> ChatMessage:
        import anthropic

        system, wire = self._to_wire(messages)
        kwargs: dict[str, Any] = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "messages": wire,
        }
        if system:
            kwargs["system"] = system
        if tools:
            kwargs["tools"] = [t.to_anthropic() for t in tools]
        try:
            resp = await self._client.messages.create(**kwargs)
        except anthropic.BadRequestError as exc:
            if tools and _looks_like_tool_rejection(exc):
                raise ToolBindingUnsupported(f"model {self.model} rejected tools: {exc}") from exc
            raise

        text_parts: list[str] = []
        calls: list[ToolCall] = []
        for block in resp.content:
            if block.type == "text":
                text_parts.append(block.text)
            elif block.type == "tool_use":
                calls.append(ToolCall(id=block.id, name=block.name, arguments=json.dumps(block.input)))
        usage = {
            "prompt_tokens": resp.usage.input_tokens,
            "completion_tokens": resp.usage.output_tokens,
            "total_tokens": resp.usage.input_tokens + resp.usage.output_tokens,
        }
        return ChatMessage(role="assistant", content="".join(text_parts), tool_calls=calls, usage=usage)

    async def stream(self, messages: list[ChatMessage]) -> AsyncIterator[str]:
        system, wire = self._to_wire(messages)
        kwargs: dict[str, Any] = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "messages": wire,
        }
        if system:
            kwargs["system"] = system
        async with self._client.messages.stream(**kwargs) as stream:
            async for text in stream.text_stream:
                yield text


# ══════════════════════════════════════════════════════════════════════════
# Factory
# ══════════════════════════════════════════════════════════════════════════

_BACKENDS: dict[str, type[ChatModel]] = {
    "openai": OpenAIChatModel,
    "anthropic": AnthropicChatModel,
    "claude": AnthropicChatModel,
}

SUPPORTED_PROVIDERS = sorted(_BACKENDS)


def get_chat_model(llm_config: Any, **overrides: Any) -> ChatModel:
    """Build a ``ChatModel`` from an ``LLMConfig``.

    Raises
    ------
    ModelUnavailableError
        Unknown provider or missing credentials.
    """
    name = llm_config.provider.lower().strip()
    cls = _BACKENDS.get(name)
    if cls is None:
        raise ModelUnavailableError(
            f"Unknown provider '{llm_config.provider}'. "
            f"Supported: {', '.join(SUPPORTED_PROVIDERS)}"
        )
    kwargs: dict[str, Any] = {
        "api_key": llm_config.resolved_api_key(),
        "base_url": llm_config.base_url,
        "timeout": llm_config.timeout,
        "model": llm_config.resolved_model(),
        "temperature": llm_config.temperature,
        "max_tokens": llm_config.max_tokens,
        "max_retries": llm_config.max_retries,
        "base_delay": llm_config.retry_base_delay,
        "max_delay": llm_config.retry_max_delay,
    }
    kwargs.update(overrides)
    logger.debug("Creating %s chat model (%s)", name, kwargs["model"])
    return cls(**kwargs)
