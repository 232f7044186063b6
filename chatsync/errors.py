"""
Error taxonomy for chat turns.

Caller-visible failures are limited to transport errors and the tool loop
limit. Tool invocation failures are folded back into the conversation as
tool messages, and an intentional stop is a TurnCancelled that callers
swallow.
"""

from __future__ import annotations

from mcp import McpError, types


class ChatTransportError(McpError):
    """Non-2xx response or network failure; message is the response body."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(types.ErrorData(code=types.INTERNAL_ERROR, message=message))
        self.status_code = status_code


class ToolLoopLimitError(McpError):
    def __init__(self, max_rounds: int) -> None:
        super().__init__(
            types.ErrorData(
                code=types.INTERNAL_ERROR,
                message=f"tool loop limit reached ({max_rounds})",
            )
        )
        self.max_rounds = max_rounds


class ToolInvocationError(McpError):
    """Every endpoint/auth attempt for a tools/call failed."""

    def __init__(self, tool_name: str, message: str) -> None:
        super().__init__(types.ErrorData(code=types.INTERNAL_ERROR, message=message))
        self.tool_name = tool_name


class TurnCancelled(Exception):
    """The caller aborted the turn on purpose."""
