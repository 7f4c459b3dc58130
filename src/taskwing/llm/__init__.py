"""Model client layer."""

from .chat_model import (
    ChatMessage,
    ChatModel,
    ToolCall,
    ToolSpec,
    get_chat_model,
)

__all__ = ["ChatMessage", "ChatModel", "ToolCall", "ToolSpec", "get_chat_model"]
