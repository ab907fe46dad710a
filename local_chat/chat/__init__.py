"""
Chat Module

Streaming completion parsing and the tool-augmented conversation loop.
"""

from .listener import GenerationListener, NullListener
from .models import Message, Metrics, ToolCall, ToolConversationRequest, ToolDefinition
from .session import ChatSession
from .tool_loop import run_tool_conversation

__all__ = [
    "ChatSession",
    "GenerationListener",
    "Message",
    "Metrics",
    "NullListener",
    "ToolCall",
    "ToolConversationRequest",
    "ToolDefinition",
    "run_tool_conversation",
]
