"""
Tool Execution Handler

Handles the tool side of a streaming turn:
- Accumulating streamed tool-call fragments into complete calls
- Resolving which configured MCP server owns a tool
- Executing calls and turning every outcome into a tool message
- Enforcing the per-turn tool round limit

Tool failures never abort the turn: they are reported back to the model as
tool-role messages and the conversation continues.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from mcp import McpError

from chatsync.chat.logging_utils import (
    log_tool_arguments,
    log_tool_execution_error,
    log_tool_execution_start,
    log_tool_execution_success,
    log_tool_results,
)
from chatsync.chat.models import FunctionCall, McpServerConfig, ToolCall, ToolCallDelta
from chatsync.errors import ToolLoopLimitError

if TYPE_CHECKING:
    from chatsync.clients import MCPClient

logger = logging.getLogger(__name__)

ToolEventSink = Callable[[str], None]


class ToolCallAccumulator:
    """
    Builds complete tool calls from streamed deltas.

    Calls are keyed by id; a delta without an id gets a synthesized
    `tool_{n}` key. Names are replaced, argument fragments concatenated.
    """

    def __init__(self) -> None:
        self._calls: dict[str, dict[str, str]] = {}

    def __len__(self) -> int:
        return len(self._calls)

    def add(self, deltas: list[ToolCallDelta], on_event: ToolEventSink | None = None) -> None:
        for delta in deltas:
            call_id = delta.id or f"tool_{len(self._calls) + 1}"
            existing = self._calls.setdefault(
                call_id, {"id": call_id, "type": delta.type or "function", "name": "", "arguments": ""}
            )
            if delta.function.name:
                existing["name"] = delta.function.name
            if delta.function.arguments:
                existing["arguments"] += delta.function.arguments
            existing["type"] = delta.type or existing["type"]

            if on_event is not None:
                if existing["name"]:
                    on_event(f"Upstream tool_call: {existing['name']}")
                if delta.function.arguments:
                    on_event(f"args: {delta.function.arguments}")

    def calls(self) -> list[ToolCall]:
        """Accumulated calls in first-seen order."""
        return [
            ToolCall(id=c["id"], function=FunctionCall(name=c["name"], arguments=c["arguments"]))
            for c in self._calls.values()
        ]

    def clear(self) -> None:
        self._calls.clear()


def resolve_server_for_tool(servers: list[McpServerConfig], tool_name: str) -> McpServerConfig | None:
    """
    First enabled server that may run tool_name.

    A non-empty allow-list must contain the tool. A server with no synced
    catalog accepts any tool; otherwise its catalog must list it.
    """
    if not tool_name:
        return None
    for server in servers:
        if not server.enabled:
            continue
        if server.enabled_tool_names and tool_name not in server.enabled_tool_names:
            continue
        if not server.tools:
            return server
        if any(tool.name == tool_name for tool in server.tools):
            return server
    return None


def check_tool_loop_limit(rounds: int, max_rounds: int) -> None:
    """Raise once a turn has gone through more than max_rounds tool rounds."""
    if rounds > max_rounds:
        logger.warning("Maximum tool rounds (%d) reached, aborting turn", max_rounds)
        raise ToolLoopLimitError(max_rounds)


class ToolExecutor:
    """Runs accumulated tool calls and rebuilds the request for the next round."""

    def __init__(
        self,
        mcp_client: MCPClient,
        call_timeout: float | None = 60.0,
        arguments_truncate: int = 500,
    ):
        self.mcp_client = mcp_client
        self.call_timeout = call_timeout
        self.arguments_truncate = arguments_truncate

    async def execute_tool_call(self, server: McpServerConfig, call: ToolCall) -> str:
        name = call.function.name
        log_tool_arguments(name, call.function.arguments, self.arguments_truncate)
        coro = self.mcp_client.call_tool(server, name, call.function.arguments)
        if self.call_timeout is None:
            return await coro
        return await asyncio.wait_for(coro, timeout=self.call_timeout)

    async def build_continuation(
        self,
        base_messages: list[dict[str, Any]],
        calls: list[ToolCall],
        servers: list[McpServerConfig],
        on_event: ToolEventSink | None = None,
    ) -> list[dict[str, Any]]:
        """
        Execute calls sequentially and return the next request's messages.

        The result is base_messages plus one assistant message carrying the
        tool calls, followed by one tool message per call.
        """
        emit = on_event or (lambda _line: None)
        assistant_calls = [
            ToolCall(id=call.id or str(uuid.uuid4()), function=call.function) for call in calls
        ]
        tool_messages: list[dict[str, Any]] = []

        logger.info("→ MCP: executing %d tool calls", len(assistant_calls))
        for i, call in enumerate(assistant_calls):
            name = call.function.name
            if not name:
                tool_messages.append(
                    {"role": "tool", "content": "Tool name missing in call.", "tool_call_id": call.id}
                )
                continue

            server = resolve_server_for_tool(servers, name)
            if server is None:
                logger.warning("Tool %s is not enabled on any server", name)
                tool_messages.append(
                    {
                        "role": "tool",
                        "content": f"Tool {name} is not enabled in this session.",
                        "tool_call_id": call.id,
                        "name": name,
                    }
                )
                continue

            log_tool_execution_start(name, server.display_name, i, len(assistant_calls))
            try:
                output = await self.execute_tool_call(server, call)
            except asyncio.TimeoutError:
                message = f"timed out after {self.call_timeout}s"
                log_tool_execution_error(name, message)
                emit(f"tool error: {name}: {message}")
                tool_messages.append(self._failure(call, message))
                continue
            except (McpError, ValueError) as e:
                message = str(e)
                log_tool_execution_error(name, message)
                emit(f"tool error: {name}: {message}")
                tool_messages.append(self._failure(call, message))
                continue

            log_tool_execution_success(name, len(output))
            log_tool_results(name, output)
            emit(f"tool ok: {name}")
            tool_messages.append({"role": "tool", "content": output, "tool_call_id": call.id, "name": name})

        logger.info("← MCP: completed all tool executions")
        return [
            *base_messages,
            {"role": "assistant", "content": "", "tool_calls": [c.to_dict() for c in assistant_calls]},
            *tool_messages,
        ]

    @staticmethod
    def _failure(call: ToolCall, message: str) -> dict[str, Any]:
        name = call.function.name
        return {
            "role": "tool",
            "content": f"Tool {name} failed: {message}",
            "tool_call_id": call.id,
            "name": name,
        }
