"""
MCP client for remote tool servers over streamable HTTP.

Two phases per server:
1. Session establishment, once per process lifetime: an `initialize`
   JSON-RPC request, then a fire-and-forget `notifications/initialized`.
2. Use: `tools/list` and `tools/call`, carrying the protocol-version and
   session-id headers.

Servers answer with either application/json or text/event-stream; for an
event stream the last parseable `data:` line is the response.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import uuid
from typing import Any

import httpx
from mcp import McpError, types

from chatsync.chat.models import McpServerConfig, McpSessionState, McpTool
from chatsync.errors import ToolInvocationError

logger = logging.getLogger(__name__)

DEFAULT_PROTOCOL_VERSION = "2025-06-18"
CLIENT_CAPABILITIES: dict[str, Any] = {
    "sampling": {},
    "elicitation": {},
    "roots": {"listChanged": True},
}
BASE_HEADERS = {
    "Content-Type": "application/json",
    "Accept": "application/json, text/event-stream",
}


def _mcp_error(message: str, code: int = types.INTERNAL_ERROR) -> McpError:
    return McpError(error=types.ErrorData(code=code, message=message))


def read_json_or_sse(response: httpx.Response) -> Any | None:
    """Parse a response body that may be JSON or a server-sent event stream."""
    content_type = response.headers.get("content-type", "").lower()

    if "application/json" in content_type:
        try:
            return response.json()
        except ValueError:
            return None

    if "text/event-stream" in content_type:
        last: Any | None = None
        for line in response.text.splitlines():
            if not line.startswith("data:"):
                continue
            data = line[5:].strip()
            if not data or data == "[DONE]":
                continue
            try:
                last = json.loads(data)
            except json.JSONDecodeError:
                continue
        if last is not None:
            return last

    try:
        return response.json()
    except ValueError:
        return None


def normalize_tool_list(data: Any) -> list[McpTool] | None:
    """Accept `.result.tools`, `.tools` or a bare array; None if none matches."""
    raw: Any = None
    if isinstance(data, dict):
        result = data.get("result")
        if isinstance(result, dict) and isinstance(result.get("tools"), list):
            raw = result["tools"]
        elif isinstance(data.get("tools"), list):
            raw = data["tools"]
    elif isinstance(data, list):
        raw = data
    if raw is None:
        return None

    tools: list[McpTool] = []
    for item in raw:
        item = item if isinstance(item, dict) else {}
        schema = item.get("inputSchema") or item.get("parameters")
        tools.append(
            McpTool(
                name=item["name"] if isinstance(item.get("name"), str) else "unknown-tool",
                description=item["description"] if isinstance(item.get("description"), str) else "",
                input_schema=schema if isinstance(schema, dict) else {},
            )
        )
    return tools


def apply_tool_selection(previous: list[str], tool_names: list[str]) -> list[str]:
    """
    Enabled tool names after a sync.

    An empty previous selection enables everything. Otherwise only tools that
    were already selected stay enabled; newly appeared tools are not enabled.
    """
    prev = set(previous)
    if not prev:
        return list(tool_names)
    return [name for name in tool_names if name in prev]


def guess_tool_call_endpoints(base_url: str) -> list[str]:
    normalized = (base_url or "").rstrip("/")
    if not normalized:
        return []
    return list(dict.fromkeys([f"{normalized}/tools/call", f"{normalized}/call", normalized]))


def auth_header_candidates(api_key: str | None) -> list[str]:
    trimmed = (api_key or "").strip()
    if not trimmed:
        return []
    if re.match(r"^bearer\s+", trimmed, re.IGNORECASE):
        return [trimmed]
    return [trimmed, f"Bearer {trimmed}"]


def normalize_arguments(args: Any) -> dict[str, Any] | Any:
    if isinstance(args, str):
        try:
            return json.loads(args)
        except json.JSONDecodeError:
            return {"_raw": args}
    if isinstance(args, dict):
        return args
    return {}


def stringify_tool_result(data: Any) -> str:
    if data is None:
        return ""
    if isinstance(data, str):
        return data
    if isinstance(data, bool | int | float):
        return json.dumps(data)
    try:
        return json.dumps(data, ensure_ascii=False)
    except (TypeError, ValueError):
        return str(data)


def _result_text(result: Any) -> str:
    """Text of an MCP CallToolResult-shaped dict, else its JSON."""
    if isinstance(result, dict) and isinstance(result.get("content"), list):
        texts = [
            part["text"]
            for part in result["content"]
            if isinstance(part, dict) and part.get("type") == "text" and isinstance(part.get("text"), str)
        ]
        if texts:
            return "\n".join(texts)
    return stringify_tool_result(result)


class MCPClient:
    """HTTP JSON-RPC client shared by every configured tool server."""

    def __init__(
        self,
        mcp_config: dict[str, Any] | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        conf = mcp_config or {}
        self.protocol_version: str = conf.get("protocol_version") or DEFAULT_PROTOCOL_VERSION
        self.client_info = types.Implementation(
            name=conf.get("client_name", "chatsync"),
            version=conf.get("client_version", "0.1.0"),
        )
        self._timeout: float = conf.get("request_timeout_seconds", 30.0)
        self._client = http_client or httpx.AsyncClient(timeout=self._timeout)
        self._owns_client = http_client is None
        self._sessions: dict[str, McpSessionState] = {}
        self._session_locks: dict[str, asyncio.Lock] = {}
        self._request_ids = 0

    def _next_id(self) -> int:
        self._request_ids += 1
        return self._request_ids

    def session_for(self, server: McpServerConfig) -> McpSessionState | None:
        return self._sessions.get(server.id)

    def _session_headers(self, session: McpSessionState) -> dict[str, str]:
        return {
            "mcp-protocol-version": session.protocol_version,
            "mcp-session-id": session.session_id,
        }

    @staticmethod
    def _endpoint(server: McpServerConfig) -> str:
        return server.url if server.url.endswith("/") else f"{server.url}/"

    async def ensure_session(self, server: McpServerConfig) -> McpSessionState:
        """Run the initialize handshake once per server for this process."""
        existing = self._sessions.get(server.id)
        if existing and existing.initialized:
            return existing

        lock = self._session_locks.setdefault(server.id, asyncio.Lock())
        async with lock:
            existing = self._sessions.get(server.id)
            if existing and existing.initialized:
                return existing

            protocol_version = str(getattr(server, "mcp_protocol_version", "") or self.protocol_version).strip()
            session_id = str(getattr(server, "mcp_session_id", "") or "").strip()
            if not session_id:
                session_id = f"mcp-session-{uuid.uuid4()}"

            endpoint = self._endpoint(server)
            headers = {
                **BASE_HEADERS,
                "mcp-protocol-version": protocol_version,
                "mcp-session-id": session_id,
            }
            if server.api_key:
                headers["Authorization"] = server.api_key.strip()

            request = types.JSONRPCRequest(
                jsonrpc="2.0",
                id=0,
                method="initialize",
                params={
                    "protocolVersion": protocol_version,
                    "capabilities": CLIENT_CAPABILITIES,
                    "clientInfo": self.client_info.model_dump(exclude_none=True),
                },
            )

            logger.info("→ MCP[%s]: initialize %s", server.display_name, endpoint)
            try:
                response = await self._client.post(
                    endpoint, json=request.model_dump(by_alias=True, exclude_none=True), headers=headers
                )
            except httpx.HTTPError as e:
                raise _mcp_error(f"MCP initialize failed for {server.display_name}: {e}") from e

            if not response.is_success:
                raise _mcp_error(f"HTTP {response.status_code} during MCP init")

            data = read_json_or_sse(response)
            if isinstance(data, dict) and data.get("error"):
                error = data["error"]
                message = error.get("message") if isinstance(error, dict) else str(error)
                raise _mcp_error(message or "MCP initialize error")

            server_session_id = response.headers.get("mcp-session-id")
            if server_session_id:
                session_id = server_session_id.strip()
                headers["mcp-session-id"] = session_id

            session = McpSessionState(
                protocol_version=protocol_version,
                session_id=session_id,
                initialized=True,
            )
            self._sessions[server.id] = session
            logger.info("← MCP[%s]: session %s established", server.display_name, session_id)

            # Outcome ignored; only transport failures are logged.
            await self._notify_initialized(server, endpoint, headers)
            return session

    async def _notify_initialized(
        self, server: McpServerConfig, endpoint: str, headers: dict[str, str]
    ) -> None:
        notification = types.JSONRPCNotification(jsonrpc="2.0", method="notifications/initialized")
        try:
            await self._client.post(
                endpoint, json=notification.model_dump(by_alias=True, exclude_none=True), headers=headers
            )
        except httpx.HTTPError as e:
            logger.warning("MCP[%s]: notifications/initialized failed: %s", server.display_name, e)

    async def list_tools(self, server: McpServerConfig) -> list[McpTool]:
        session = await self.ensure_session(server)
        endpoint = self._endpoint(server)
        headers = {**BASE_HEADERS, **self._session_headers(session)}
        if server.api_key:
            headers["Authorization"] = server.api_key.strip()

        request = types.JSONRPCRequest(jsonrpc="2.0", id=self._next_id(), method="tools/list", params={})
        logger.info("→ MCP[%s]: tools/list", server.display_name)
        try:
            response = await self._client.post(
                endpoint, json=request.model_dump(by_alias=True, exclude_none=True), headers=headers
            )
        except httpx.HTTPError as e:
            raise _mcp_error(f"Error listing tools from {server.display_name}: {e}") from e

        if not response.is_success:
            raise _mcp_error(f"HTTP {response.status_code} fetching tools")

        data = read_json_or_sse(response)
        if data is None:
            raise _mcp_error("Invalid JSON-RPC response", types.PARSE_ERROR)
        if isinstance(data, dict) and data.get("error"):
            error = data["error"]
            raise _mcp_error((error.get("message") if isinstance(error, dict) else str(error)) or "MCP error")

        tools = normalize_tool_list(data)
        if tools is None:
            raise _mcp_error("Invalid tool list format", types.PARSE_ERROR)
        logger.info("← MCP[%s]: %d tools", server.display_name, len(tools))
        return tools

    async def sync_server_tools(self, server: McpServerConfig) -> tuple[McpServerConfig, int]:
        """Refresh a server's tool catalog and its enabled selection."""
        tools = await self.list_tools(server)
        enabled = apply_tool_selection(server.enabled_tool_names, [t.name for t in tools])
        updated = server.model_copy(update={"tools": tools, "enabled_tool_names": enabled})
        return updated, len(tools)

    async def call_tool(self, server: McpServerConfig, name: str, arguments: Any) -> str:
        """
        Invoke a tool, trying each guessed endpoint with each auth header form.

        The first 2xx response wins. If every attempt fails, the last failure is
        raised as a ToolInvocationError.
        """
        session = await self.ensure_session(server)
        endpoints = guess_tool_call_endpoints(server.url)
        auths = auth_header_candidates(server.api_key) or [""]
        request = types.JSONRPCRequest(
            jsonrpc="2.0",
            id=self._next_id(),
            method="tools/call",
            params={"name": name, "arguments": normalize_arguments(arguments)},
        )
        body = request.model_dump(by_alias=True, exclude_none=True)

        last_error: str | None = None
        for endpoint in endpoints:
            for auth in auths:
                headers = {**BASE_HEADERS, **self._session_headers(session)}
                if auth:
                    headers["Authorization"] = auth
                try:
                    response = await self._client.post(endpoint, json=body, headers=headers)
                except httpx.HTTPError as e:
                    last_error = str(e) or type(e).__name__
                    logger.debug("MCP[%s]: %s failed: %s", name, endpoint, last_error)
                    continue

                if not response.is_success:
                    last_error = f"HTTP {response.status_code}"
                    logger.debug("MCP[%s]: %s returned %s", name, endpoint, last_error)
                    continue

                content_type = response.headers.get("content-type", "").lower()
                if "application/json" not in content_type and "text/event-stream" not in content_type:
                    return response.text

                data = read_json_or_sse(response)
                if isinstance(data, dict):
                    if data.get("error"):
                        error = data["error"]
                        last_error = (error.get("message") if isinstance(error, dict) else str(error)) or "MCP error"
                        continue
                    result = data.get("result")
                    if isinstance(result, dict) and result.get("isError"):
                        raise ToolInvocationError(name, _result_text(result) or "tool reported an error")
                    if result:
                        return _result_text(result)
                    if data.get("content"):
                        return stringify_tool_result(data["content"])
                return stringify_tool_result(data)

        raise ToolInvocationError(name, last_error or "Failed to contact MCP server")

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
