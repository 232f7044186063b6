"""Clients package containing LLM and MCP clients."""

from __future__ import annotations

from .llm_client import LLMClient
from .mcp_client import MCPClient

__all__ = ["LLMClient", "MCPClient"]
