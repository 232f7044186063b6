"""
WebSocket Server for chatsync

Thin communication layer between a frontend and the chat orchestrator.
It parses websocket actions, relays every turn callback to the socket as a
`{request_id, status, chunk}` frame and exposes the replica sync endpoints.
All business logic lives in ChatOrchestrator and MergeEngine.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from typing import Any, Literal

import uvicorn
from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from mcp import McpError
from pydantic import BaseModel, Field, ValidationError

from chatsync.chat import ChatOrchestrator, ChatView
from chatsync.chat.models import ResponseInfo, ToolCallDelta
from chatsync.history import MergeEngine
from chatsync.history.models import ChatAttachment, ChatMessageData

logger = logging.getLogger(__name__)

STREAMING_ACTIONS = ("chat", "regenerate", "edit")


# Pydantic models for WebSocket message validation
class ActionPayload(BaseModel):
    """Payload for websocket actions."""

    text: str = ""
    chat_id: str | None = None
    attachments: list[ChatAttachment] = Field(default_factory=list)
    settings: dict[str, Any] = Field(default_factory=dict)


class WebSocketMessage(BaseModel):
    """WebSocket message structure with validation."""

    request_id: str
    action: Literal["chat", "regenerate", "edit", "stop", "delete", "clear", "load", "configure"]
    payload: ActionPayload = Field(default_factory=ActionPayload)


class WebSocketResponse(BaseModel):
    """WebSocket response structure."""

    request_id: str
    status: str  # "init", "message", "chunk", "processing", "completed", "error"
    chunk: dict[str, Any] = Field(default_factory=dict)


class WebSocketServer:
    """
    Pure WebSocket communication server.

    This class only handles:
    - WebSocket connections
    - Message parsing and routing
    - Relaying turn callbacks to the socket
    """

    def __init__(
        self,
        orchestrator: ChatOrchestrator,
        merge_engine: MergeEngine,
        websocket_config: dict[str, Any] | None = None,
    ):
        self.orchestrator = orchestrator
        self.merge_engine = merge_engine
        self.websocket_config = websocket_config or {}
        self.active_connections: list[WebSocket] = []
        self._tasks: dict[WebSocket, set[asyncio.Task[None]]] = {}
        self.app = self._create_app()

    def _create_app(self) -> FastAPI:
        """Create and configure FastAPI app."""
        app = FastAPI(title="chatsync WebSocket Chat Server")

        app.add_middleware(
            CORSMiddleware,
            allow_origins=self.websocket_config.get("allow_origins", ["*"]),
            allow_credentials=self.websocket_config.get("allow_credentials", True),
            allow_methods=["*"],
            allow_headers=["*"],
        )

        @app.websocket("/ws/chat")
        async def websocket_endpoint(websocket: WebSocket):  # type: ignore
            await self._handle_websocket_connection(websocket)

        @app.get("/")
        async def root():  # type: ignore
            return {"message": "chatsync WebSocket Chat Server"}

        @app.get("/health")
        async def health():  # type: ignore
            return {"status": "healthy", "active_connections": len(self.active_connections)}

        @app.get("/sync/export")
        async def sync_export() -> dict[str, Any]:  # type: ignore
            return await self.merge_engine.export_all()

        @app.post("/sync/import")
        async def sync_import(  # type: ignore
            snapshot: dict[str, Any],
            mode: str = "merge",
            session_id: str | None = None,
        ) -> dict[str, Any]:
            if mode not in ("merge", "download"):
                raise HTTPException(status_code=400, detail=f"Unknown merge mode: {mode}")
            await self.merge_engine.merge(snapshot, session_id=session_id, mode=mode)  # type: ignore[arg-type]
            return {"status": "ok", "mode": mode, "keys": len(snapshot)}

        return app

    # ---------- Connection handling ----------

    async def _handle_websocket_connection(self, websocket: WebSocket):
        await self._connect_websocket(websocket)

        try:
            while True:
                data = await websocket.receive_text()
                try:
                    message_data = json.loads(data)
                except json.JSONDecodeError as e:
                    await self._send_error_response(websocket, "unknown", f"Invalid JSON: {e}")
                    continue
                await self._dispatch(websocket, message_data)

        except WebSocketDisconnect:
            logger.info("WebSocket disconnected")
        finally:
            await self._disconnect_websocket(websocket)

    async def _connect_websocket(self, websocket: WebSocket):
        logger.info("WebSocket connection attempt from %s", websocket.client)
        await websocket.accept()
        self.active_connections.append(websocket)
        self._tasks[websocket] = set()

        messages = await self.orchestrator.load()
        await self._send(
            websocket,
            WebSocketResponse(
                request_id="init",
                status="init",
                chunk={"type": "history", "data": [m.to_store() for m in messages]},
            ),
        )
        logger.info(
            "WebSocket connection established. Total connections: %d", len(self.active_connections)
        )

    async def _disconnect_websocket(self, websocket: WebSocket):
        if websocket in self.active_connections:
            self.active_connections.remove(websocket)
        tasks = self._tasks.pop(websocket, set())
        if tasks:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("WebSocket connection closed. Total connections: %d", len(self.active_connections))

    # ---------- Routing ----------

    async def _dispatch(self, websocket: WebSocket, message_data: Any) -> None:
        request_id = message_data.get("request_id", "unknown") if isinstance(message_data, dict) else "unknown"
        try:
            message = WebSocketMessage.model_validate(message_data)
        except ValidationError as e:
            logger.warning("Unknown message format: %s", message_data)
            await self._send_error_response(websocket, request_id, f"Invalid message format: {e}")
            return

        if message.action in STREAMING_ACTIONS:
            # Streaming runs in the background so stop can arrive mid-turn.
            task = asyncio.create_task(self._run_streaming_action(websocket, message))
            tasks = self._tasks.setdefault(websocket, set())
            tasks.add(task)
            task.add_done_callback(tasks.discard)
            return

        await self._run_simple_action(websocket, message)

    async def _run_streaming_action(self, websocket: WebSocket, message: WebSocketMessage) -> None:
        request_id = message.request_id
        payload = message.payload
        view = self._make_view(websocket, request_id)

        await self._send(websocket, WebSocketResponse(request_id=request_id, status="processing"))
        try:
            if message.action == "chat":
                logger.info("Received chat message: %s...", payload.text[:50])
                final = await self.orchestrator.send_message(payload.text, payload.attachments, view)
            elif not payload.chat_id:
                await self._send_error_response(websocket, request_id, f"'{message.action}' requires chat_id")
                return
            elif message.action == "regenerate":
                final = await self.orchestrator.regenerate(payload.chat_id, view)
            else:
                final = await self.orchestrator.edit_and_retry(payload.chat_id, payload.text, view)
        except McpError as e:
            # Already relayed through the view's on_error.
            logger.error("Turn %s failed: %s", request_id, e)
            return

        chunk = {"type": "message", "data": final.to_store()} if final is not None else {}
        await self._send(websocket, WebSocketResponse(request_id=request_id, status="completed", chunk=chunk))

    async def _run_simple_action(self, websocket: WebSocket, message: WebSocketMessage) -> None:
        request_id = message.request_id
        chat_id = message.payload.chat_id

        if message.action == "stop":
            stopped = self.orchestrator.stop(chat_id)
            chunk: dict[str, Any] = {"type": "stopped", "data": stopped}
        elif message.action == "delete":
            if not chat_id:
                await self._send_error_response(websocket, request_id, "'delete' requires chat_id")
                return
            await self.orchestrator.delete_message(chat_id)
            chunk = {"type": "deleted", "data": chat_id}
        elif message.action == "clear":
            await self.orchestrator.clear_messages()
            chunk = {"type": "session_cleared"}
        elif message.action == "configure":
            try:
                session = await self.orchestrator.update_session(**message.payload.settings)
            except ValidationError as e:
                await self._send_error_response(websocket, request_id, f"Invalid session settings: {e}")
                return
            chunk = {"type": "session", "data": session}
        else:
            messages = await self.orchestrator.load()
            chunk = {"type": "history", "data": [m.to_store() for m in messages]}

        await self._send(websocket, WebSocketResponse(request_id=request_id, status="completed", chunk=chunk))

    # ---------- Outgoing frames ----------

    def _make_view(self, websocket: WebSocket, request_id: str) -> ChatView:
        async def send(status: str, chunk: dict[str, Any]) -> None:
            await self._send(websocket, WebSocketResponse(request_id=request_id, status=status, chunk=chunk))

        async def on_message(msg: ChatMessageData) -> None:
            await send("message", {"type": "message", "data": msg.to_store()})

        async def on_content(delta: str) -> None:
            await send("chunk", {"type": "text", "data": delta})

        async def on_reasoning(delta: str) -> None:
            await send("chunk", {"type": "reasoning", "data": delta})

        async def on_annotations(annotations: list[dict[str, Any]]) -> None:
            await send("chunk", {"type": "annotations", "data": annotations})

        async def on_tool_call_delta(deltas: list[ToolCallDelta]) -> None:
            await send("processing", {"type": "tool_call", "data": [d.model_dump() for d in deltas]})

        async def on_response_info(info: ResponseInfo) -> None:
            await send("chunk", {"type": "response_info", "data": info.model_dump()})

        async def on_finish(reason: str) -> None:
            await send("chunk", {"type": "finish", "data": reason})

        async def on_error(error: str, snapshot: ChatMessageData) -> None:
            await send("error", {"error": error, "data": snapshot.to_store()})

        return ChatView(
            on_content=on_content,
            on_reasoning=on_reasoning,
            on_annotations=on_annotations,
            on_tool_call_delta=on_tool_call_delta,
            on_response_info=on_response_info,
            on_finish=on_finish,
            on_error=on_error,
            on_message=on_message,
        )

    async def _send(self, websocket: WebSocket, response: WebSocketResponse) -> None:
        if websocket not in self.active_connections:
            return
        try:
            await websocket.send_text(response.model_dump_json())
        except (WebSocketDisconnect, RuntimeError) as e:
            logger.debug("Dropping frame for closed socket: %s", e)

    async def _send_error_response(self, websocket: WebSocket, request_id: str, error_message: str):
        await self._send(
            websocket, WebSocketResponse(request_id=request_id, status="error", chunk={"error": error_message})
        )

    # ---------- Lifecycle ----------

    async def start_server(self):
        await self.orchestrator.initialize()

        host = self.websocket_config.get("host", "localhost")
        port = self.websocket_config.get("port", 8000)
        logger.info("Starting WebSocket server on %s:%s", host, port)

        server_config = uvicorn.Config(self.app, host=host, port=port, log_level="info")
        server = uvicorn.Server(server_config)
        try:
            await server.serve()
        finally:
            logger.info("Shutting down WebSocket server")
            for tasks in self._tasks.values():
                for task in tasks:
                    task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await asyncio.gather(*(t for ts in self._tasks.values() for t in ts), return_exceptions=True)


async def run_websocket_server(
    orchestrator: ChatOrchestrator,
    merge_engine: MergeEngine,
    websocket_config: dict[str, Any] | None = None,
) -> None:
    server = WebSocketServer(orchestrator, merge_engine, websocket_config)
    await server.start_server()
