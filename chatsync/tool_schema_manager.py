"""Tool Schema Manager

Keeps the session's configured MCP servers and produces OpenAI-compatible
tool definitions from their synced catalogs:
{"type": "function", "function": {name, description, parameters}}

No client-side schema conversion or parameter validation; servers validate
their own arguments.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from mcp import McpError

from chatsync.chat.models import McpServerConfig

if TYPE_CHECKING:
    from chatsync.clients import MCPClient

logger = logging.getLogger(__name__)


def build_tools_payload(servers: list[McpServerConfig]) -> list[dict[str, Any]]:
    """Tool definitions for every enabled server, filtered by its allow-list."""
    tools: list[dict[str, Any]] = []
    for server in servers:
        if not server.enabled or not server.tools:
            continue
        allowed = set(server.enabled_tool_names)
        for tool in server.tools:
            if not tool.name:
                continue
            if allowed and tool.name not in allowed:
                continue
            tools.append(
                {
                    "type": "function",
                    "function": {
                        "name": tool.name,
                        "description": tool.description,
                        "parameters": tool.input_schema or {},
                    },
                }
            )
    return tools


class ToolSchemaManager:
    """Owns the server list for one session and syncs catalogs on demand."""

    def __init__(self, mcp_client: MCPClient, servers: list[McpServerConfig] | None = None) -> None:
        self.mcp_client = mcp_client
        self.servers: list[McpServerConfig] = list(servers or [])

    def enabled_servers(self) -> list[McpServerConfig]:
        return [s for s in self.servers if s.enabled]

    def get_openai_tools(self) -> list[dict[str, Any]]:
        tools = build_tools_payload(self.servers)
        logger.debug("Built %d tool definitions from %d servers", len(tools), len(self.servers))
        return tools

    async def sync_server(self, server_id: str) -> int:
        """Re-sync one server's catalog; returns the number of tools listed."""
        for i, server in enumerate(self.servers):
            if server.id == server_id:
                updated, count = await self.mcp_client.sync_server_tools(server)
                self.servers[i] = updated
                logger.info(
                    "Synced %d tools from '%s' (%d enabled)",
                    count,
                    server.display_name,
                    len(updated.enabled_tool_names),
                )
                return count
        raise KeyError(f"Unknown MCP server '{server_id}'")

    async def sync_missing_catalogs(self) -> bool:
        """Sync enabled servers that have never been synced. Failures are logged and skipped."""
        changed = False
        for i, server in enumerate(self.servers):
            if not server.enabled or server.tools is not None:
                continue
            try:
                updated, count = await self.mcp_client.sync_server_tools(server)
            except McpError as e:
                logger.error("Error syncing tools from '%s': %s", server.display_name, e)
                continue
            self.servers[i] = updated
            changed = True
            logger.info("Registered %d tools from '%s'", count, server.display_name)
        return changed
