"""
Chat Service Module

Streaming turn machinery: decoding, tool rounds and the orchestrator that
ties user actions to persisted messages.
"""

from .chat_orchestrator import ChatOrchestrator, ChatView
from .models import AbortSignal, McpServerConfig, ToolCall
from .stream_decoder import StreamCallbacks, StreamDecoder
from .streaming_handler import StreamingHandler
from .tool_executor import ToolExecutor

__all__ = [
    "AbortSignal",
    "ChatOrchestrator",
    "ChatView",
    "McpServerConfig",
    "StreamCallbacks",
    "StreamDecoder",
    "StreamingHandler",
    "ToolCall",
    "ToolExecutor",
]
