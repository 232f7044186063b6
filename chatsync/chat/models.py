"""
Chat Service Data Models

Streaming deltas, tool calls, MCP server configuration and the small runtime
types shared by the decoder, the tool executor and the orchestrator.
All strongly typed with Pydantic for validation.
"""

from __future__ import annotations

import asyncio
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

# ==============================================================================
# TOOL CALLS
# ==============================================================================


class FunctionCall(BaseModel):
    """Function call within a tool call."""

    name: str
    arguments: str = Field(default="")  # JSON string, as streamed


class ToolCall(BaseModel):
    """Complete tool call from LLM."""

    id: str
    type: Literal["function"] = "function"
    function: FunctionCall

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "function": {"name": self.function.name, "arguments": self.function.arguments},
        }


class FunctionCallDelta(BaseModel):
    """Partial function data; fragments arrive across frames."""

    name: str | None = None
    arguments: str | None = None


class ToolCallDelta(BaseModel):
    """Tool call fragment from one streamed frame."""

    model_config = ConfigDict(extra="ignore")

    index: int | None = None
    id: str | None = None
    type: str | None = None
    function: FunctionCallDelta = Field(default_factory=FunctionCallDelta)

    @field_validator("function", mode="before")
    @classmethod
    def default_function(cls, v: Any) -> Any:
        return v if v is not None else {}


# ==============================================================================
# STREAM METADATA
# ==============================================================================


class ResponseInfo(BaseModel):
    """Request id and model name reported by the provider."""

    id: str | None = None
    model: str | None = None


class UrlCitation(BaseModel):
    model_config = ConfigDict(extra="allow")

    url: str = ""
    title: str | None = None


class Annotation(BaseModel):
    """Provider annotation; only url_citation is interpreted, the rest is carried as-is."""

    model_config = ConfigDict(extra="allow")

    type: str = ""
    url_citation: UrlCitation | None = None


# ==============================================================================
# REQUEST CONTENT
# ==============================================================================


class ImageUrl(BaseModel):
    url: str


class ContentPart(BaseModel):
    """One typed part of a multi-part user message."""

    type: Literal["text", "image_url"]
    text: str | None = None
    image_url: ImageUrl | None = None

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


# ==============================================================================
# MCP SERVERS
# ==============================================================================


class McpTool(BaseModel):
    name: str
    description: str = ""
    input_schema: dict[str, Any] = Field(default_factory=dict)


class McpServerConfig(BaseModel):
    """A remote tool server as configured by the user."""

    model_config = ConfigDict(extra="allow")

    id: str
    name: str = ""
    url: str
    api_key: str | None = None
    enabled: bool = True
    tools: list[McpTool] | None = None
    enabled_tool_names: list[str] = Field(default_factory=list)

    @field_validator("url")
    @classmethod
    def strip_url(cls, v: str) -> str:
        return v.strip()

    @property
    def display_name(self) -> str:
        return self.name or self.id


class McpSessionState(BaseModel):
    """Per-process session established with one server."""

    protocol_version: str
    session_id: str
    initialized: bool = False


# ==============================================================================
# TURN CONTROL
# ==============================================================================


class AbortSignal:
    """Cooperative cancellation flag for one streaming turn."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def abort(self) -> None:
        self._event.set()

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()
