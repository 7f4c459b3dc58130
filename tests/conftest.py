"""Shared fixtures: a scripted chat model and small repositories on disk."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Callable, Union

import pytest

from taskwing.config import TaskWingConfig, load_config
from taskwing.llm.chat_model import ChatMessage, ChatModel, ToolCall, ToolSpec

Reply = Union[str, ChatMessage, Exception, Callable[[list[ChatMessage]], ChatMessage]]


class FakeChatModel(ChatModel):
    """Replays scripted replies in order; the last one repeats forever.

    A reply may be a string (assistant content), a full ``ChatMessage``,
    an exception to raise, or a callable receiving the messages.
    """

    def __init__(self, *replies: Reply, tokens: int = 10) -> None:
        super().__init__(model="fake-model", max_retries=0, base_delay=0.0)
        self.replies = list(replies) or [""]
        self.tokens = tokens
        self.calls: list[list[ChatMessage]] = []
        self.tool_args: list[list[ToolSpec] | None] = []

    async def _generate(self, messages: list[ChatMessage], tools: list[ToolSpec] | None) -> ChatMessage:
        self.calls.append(list(messages))
        self.tool_args.append(tools)
        index = min(len(self.calls) - 1, len(self.replies) - 1)
        reply = self.replies[index]
        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            msg = reply(messages)
        elif isinstance(reply, ChatMessage):
            msg = reply.model_copy(deep=True)
        else:
            msg = ChatMessage.assistant(reply)
        if not msg.usage:
            msg.usage = {"prompt_tokens": self.tokens, "completion_tokens": 0, "total_tokens": self.tokens}
        return msg


def tool_call_reply(name: str, arguments: dict[str, Any], call_id: str = "call_1") -> ChatMessage:
    return ChatMessage.assistant(
        "", [ToolCall(id=call_id, name=name, arguments=json.dumps(arguments))],
    )


@pytest.fixture
def fake_model_factory():
    return FakeChatModel


@pytest.fixture
def repo(tmp_path: Path) -> Path:
    """A tiny repository with docs, Go code and a manifest."""
    (tmp_path / "README.md").write_text("# Demo\n\nv1\n", encoding="utf-8")
    (tmp_path / "docs").mkdir()
    (tmp_path / "docs" / "guide.md").write_text("## Guide\n\nUse the CLI.\n", encoding="utf-8")
    (tmp_path / "internal").mkdir()
    (tmp_path / "internal" / "x.go").write_text(
        "package internal\n\n"
        + "".join(f"// line {i}\n" for i in range(3, 20))
        + "func Handler() {}\n",
        encoding="utf-8",
    )
    (tmp_path / "go.mod").write_text("module example.com/demo\n\ngo 1.22\n", encoding="utf-8")
    (tmp_path / "node_modules").mkdir()
    (tmp_path / "node_modules" / "pkg.js").write_text("module.exports = 1\n", encoding="utf-8")
    return tmp_path


@pytest.fixture
def config(repo: Path) -> TaskWingConfig:
    return load_config(repo)
