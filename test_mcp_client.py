#!/usr/bin/env python3
"""
Tests for the MCP HTTP client against a mocked streamable-HTTP server.
"""

import asyncio
import json

import httpx
import pytest
from mcp import McpError

from chatsync.chat.models import McpServerConfig
from chatsync.clients.mcp_client import (
    MCPClient,
    apply_tool_selection,
    auth_header_candidates,
    guess_tool_call_endpoints,
    normalize_arguments,
    normalize_tool_list,
    read_json_or_sse,
)
from chatsync.errors import ToolInvocationError
from chatsync.tool_schema_manager import ToolSchemaManager

SERVER_URL = "http://mcp.test/mcp"


class FakeMcpServer:
    """Records requests and answers like a small calculator server."""

    def __init__(self, call_paths=("/mcp/tools/call",), required_auth=None, tool_result=None, tools=None):
        self.requests = []
        self.tools = tools
        self.call_paths = call_paths
        self.required_auth = required_auth
        self.tool_result = tool_result or {"content": [{"type": "text", "text": "4"}], "isError": False}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.requests.append((request.url.path, body.get("method"), dict(request.headers)))
        method = body.get("method")

        if method == "initialize":
            return httpx.Response(
                200,
                json={"jsonrpc": "2.0", "id": body["id"], "result": {"protocolVersion": "2025-06-18"}},
                headers={"mcp-session-id": "srv-session-1"},
            )
        if method == "notifications/initialized":
            return httpx.Response(202)
        if method == "tools/list":
            first = json.dumps({"jsonrpc": "2.0", "id": body["id"], "result": {"tools": []}})
            last = json.dumps({
                "jsonrpc": "2.0",
                "id": body["id"],
                "result": {"tools": self.tools if self.tools is not None else [
                    {"name": "calc", "description": "Evaluate arithmetic",
                     "inputSchema": {"type": "object", "properties": {"expression": {"type": "string"}}}},
                    {"name": "add"},
                ]},
            })
            text = f"event: message\ndata: {first}\n\ndata: not-json\n\ndata: {last}\n\n"
            return httpx.Response(200, text=text, headers={"content-type": "text/event-stream"})
        if method == "tools/call":
            if request.url.path not in self.call_paths:
                return httpx.Response(404, text="not here")
            if self.required_auth and request.headers.get("authorization") != self.required_auth:
                return httpx.Response(401, text="unauthorized")
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": self.tool_result})
        return httpx.Response(400, json={"error": {"message": f"unknown method {method}"}})

    def methods(self):
        return [method for _path, method, _headers in self.requests]


def make_client(server: FakeMcpServer) -> MCPClient:
    return MCPClient({}, http_client=httpx.AsyncClient(transport=httpx.MockTransport(server)))


def calc_server(**overrides) -> McpServerConfig:
    return McpServerConfig(id="calc", name="Calculator", url=SERVER_URL, **overrides)


def test_session_established_once_and_headers_carried():
    async def run():
        fake = FakeMcpServer()
        client = make_client(fake)
        server = calc_server()

        tools = await client.list_tools(server)
        result = await client.call_tool(server, "calc", '{"expression": "2+2"}')

        assert [t.name for t in tools] == ["calc", "add"]
        assert tools[0].input_schema["properties"]["expression"]["type"] == "string"
        assert result == "4"
        assert fake.methods() == ["initialize", "notifications/initialized", "tools/list", "tools/call"]

        init_path, _, init_headers = fake.requests[0]
        assert init_path == "/mcp/"
        assert init_headers["mcp-protocol-version"] == "2025-06-18"
        assert init_headers["mcp-session-id"].startswith("mcp-session-")

        for _path, _method, headers in fake.requests[1:]:
            assert headers["mcp-session-id"] == "srv-session-1"

        assert fake.requests[-1][0] == "/mcp/tools/call"

        session = client.session_for(server)
        assert session.initialized
        assert session.session_id == "srv-session-1"

    asyncio.run(run())


def test_configured_session_id_is_used_for_initialize():
    async def run():
        fake = FakeMcpServer()
        client = make_client(fake)
        server = calc_server(mcp_session_id="preset-id", mcp_protocol_version="2025-03-26")
        await client.ensure_session(server)
        headers = fake.requests[0][2]
        assert headers["mcp-session-id"] == "preset-id"
        assert headers["mcp-protocol-version"] == "2025-03-26"

    asyncio.run(run())


def test_call_tool_falls_back_through_endpoints_and_auth():
    async def run():
        fake = FakeMcpServer(call_paths=("/mcp",), required_auth="Bearer secret")
        client = make_client(fake)
        server = calc_server(api_key="secret")

        assert await client.call_tool(server, "calc", {"expression": "2+2"}) == "4"

        attempts = [(path, headers.get("authorization")) for path, method, headers in fake.requests
                    if method == "tools/call"]
        assert attempts == [
            ("/mcp/tools/call", "secret"),
            ("/mcp/tools/call", "Bearer secret"),
            ("/mcp/call", "secret"),
            ("/mcp/call", "Bearer secret"),
            ("/mcp", "secret"),
            ("/mcp", "Bearer secret"),
        ]

    asyncio.run(run())


def test_call_tool_raises_after_every_attempt_fails():
    async def run():
        client = make_client(FakeMcpServer(call_paths=()))
        with pytest.raises(ToolInvocationError) as exc_info:
            await client.call_tool(calc_server(), "calc", "{}")
        assert str(exc_info.value) == "HTTP 404"
        assert exc_info.value.tool_name == "calc"

    asyncio.run(run())


def test_tool_reported_error_raises():
    async def run():
        fake = FakeMcpServer(tool_result={"content": [{"type": "text", "text": "division by zero"}], "isError": True})
        with pytest.raises(ToolInvocationError) as exc_info:
            await make_client(fake).call_tool(calc_server(), "calc", '{"expression": "1/0"}')
        assert "division by zero" in str(exc_info.value)

    asyncio.run(run())


def test_initialize_http_error():
    async def run():
        def refuse(request):
            return httpx.Response(503, text="down")

        client = MCPClient({}, http_client=httpx.AsyncClient(transport=httpx.MockTransport(refuse)))
        with pytest.raises(McpError) as exc_info:
            await client.list_tools(calc_server())
        assert "HTTP 503 during MCP init" in str(exc_info.value)

    asyncio.run(run())


def test_sync_server_tools_keeps_previous_selection():
    async def run():
        client = make_client(FakeMcpServer())

        fresh, count = await client.sync_server_tools(calc_server())
        assert count == 2
        assert fresh.enabled_tool_names == ["calc", "add"]

        narrowed, _ = await client.sync_server_tools(calc_server(enabled_tool_names=["add", "gone"]))
        assert narrowed.enabled_tool_names == ["add"]
        assert [t.name for t in narrowed.tools] == ["calc", "add"]

    asyncio.run(run())


def test_empty_catalog_is_not_listed_again():
    async def run():
        fake = FakeMcpServer(tools=[])
        manager = ToolSchemaManager(make_client(fake), [calc_server()])

        assert await manager.sync_missing_catalogs() is True
        assert manager.servers[0].tools == []
        assert manager.get_openai_tools() == []

        # A server that listed zero tools has still been synced
        assert await manager.sync_missing_catalogs() is False
        assert fake.methods().count("tools/list") == 1

    asyncio.run(run())


def test_read_json_or_sse_uses_last_data_line():
    request = httpx.Request("POST", SERVER_URL)
    sse = httpx.Response(
        200,
        text='data: {"n": 1}\n\ndata: {"n": 2}\n\ndata: [DONE]\n\n',
        headers={"content-type": "text/event-stream"},
        request=request,
    )
    assert read_json_or_sse(sse) == {"n": 2}

    plain = httpx.Response(200, json={"ok": True}, request=request)
    assert read_json_or_sse(plain) == {"ok": True}

    garbage = httpx.Response(200, text="<html>", headers={"content-type": "text/html"}, request=request)
    assert read_json_or_sse(garbage) is None


def test_normalize_tool_list_shapes():
    assert [t.name for t in normalize_tool_list({"result": {"tools": [{"name": "a"}]}})] == ["a"]
    assert [t.name for t in normalize_tool_list({"tools": [{"name": "b"}]})] == ["b"]
    bare = normalize_tool_list([{"description": "nameless", "parameters": {"type": "object"}}, "junk"])
    assert [t.name for t in bare] == ["unknown-tool", "unknown-tool"]
    assert bare[0].input_schema == {"type": "object"}
    assert normalize_tool_list({"result": {}}) is None


def test_helpers():
    assert apply_tool_selection([], ["a", "b"]) == ["a", "b"]
    assert apply_tool_selection(["b", "z"], ["a", "b", "c"]) == ["b"]

    assert guess_tool_call_endpoints("http://x/mcp/") == ["http://x/mcp/tools/call", "http://x/mcp/call", "http://x/mcp"]
    assert guess_tool_call_endpoints("") == []

    assert auth_header_candidates("tok") == ["tok", "Bearer tok"]
    assert auth_header_candidates("bearer tok") == ["bearer tok"]
    assert auth_header_candidates(None) == []

    assert normalize_arguments('{"a": 1}') == {"a": 1}
    assert normalize_arguments("not json") == {"_raw": "not json"}
    assert normalize_arguments(None) == {}
