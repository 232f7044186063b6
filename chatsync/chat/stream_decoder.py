"""
Stream Decoder

Turns server-sent `data: <json>` lines of a chat completion stream into typed
callbacks: content, reasoning, annotations, tool-call deltas, response info,
finish reason and done.

Some providers have no dedicated reasoning channel and instead send the
literal tokens `<think>` and `</think>` as whole content deltas. The decoder
models this as an explicit two-state mode; while in REASONING mode every
content delta is routed to the reasoning callback.

A frame that fails to parse is logged and skipped; it never aborts the turn.
"""

from __future__ import annotations

import inspect
import json
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from pydantic import ValidationError

from chatsync.chat.models import AbortSignal, ResponseInfo, ToolCallDelta
from chatsync.errors import TurnCancelled

logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"
THINK_OPEN = "<think>"
THINK_CLOSE = "</think>"

Callback = Callable[..., Awaitable[None] | None]


class DecoderMode(Enum):
    PROSE = "prose"
    REASONING = "reasoning"


@dataclass
class StreamCallbacks:
    """Per-delta hooks; each may be a plain function or a coroutine function."""

    on_content: Callback | None = None
    on_reasoning: Callback | None = None
    on_annotations: Callback | None = None
    on_tool_call_delta: Callback | None = None
    on_response_info: Callback | None = None
    on_finish: Callback | None = None
    on_done: Callback | None = None
    on_error: Callback | None = None


async def fire_callback(callback: Callback | None, *args: Any) -> None:
    if callback is None:
        return
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


def _content_parts_text(parts: list[Any]) -> str:
    """Flatten typed content parts: text is concatenated, images become references."""
    out: list[str] = []
    for part in parts:
        if not isinstance(part, dict):
            continue
        part_type = part.get("type")
        if part_type == "text" and isinstance(part.get("text"), str):
            out.append(part["text"])
        elif part_type == "image_url":
            image = part.get("image_url")
            url = image.get("url") if isinstance(image, dict) else image
            if url:
                out.append(f"\n\n![image]({url})\n\n")
    return "".join(out)


class StreamDecoder:
    """Decodes one streamed response. Create a fresh decoder per request."""

    def __init__(self, callbacks: StreamCallbacks, abort: AbortSignal | None = None):
        self.callbacks = callbacks
        self.abort = abort
        self.mode = DecoderMode.PROSE
        self.annotations: list[dict[str, Any]] = []
        self.finish_reason: str | None = None
        self.frames = 0
        self.skipped_frames = 0
        self._done = False

    @property
    def done(self) -> bool:
        return self._done

    async def decode(self, lines: AsyncIterator[str]) -> str | None:
        """Consume lines until the [DONE] sentinel or end of stream; return the finish reason."""
        async for line in lines:
            self._check_abort()
            await self.feed_line(line)
            if self._done:
                break
        self._check_abort()
        await self.finish()
        return self.finish_reason

    async def finish(self) -> None:
        """Fire done exactly once."""
        if self._done:
            return
        self._done = True
        await fire_callback(self.callbacks.on_done)

    def _check_abort(self) -> None:
        if self.abort is not None and self.abort.aborted:
            raise TurnCancelled("turn aborted by caller")

    async def feed_line(self, line: str) -> None:
        """Process one SSE line. Non-data lines (comments, event names) are ignored."""
        if self._done:
            return
        line = line.strip()
        if not line.startswith("data:"):
            return

        data = line[5:].strip()
        if not data:
            return
        if data == DONE_SENTINEL:
            await self.finish()
            return

        try:
            frame = json.loads(data)
        except json.JSONDecodeError as e:
            self.skipped_frames += 1
            logger.warning("Skipping malformed stream frame: %s (%s)", data[:200], e)
            return
        if not isinstance(frame, dict):
            self.skipped_frames += 1
            logger.warning("Skipping non-object stream frame: %s", data[:200])
            return

        self.frames += 1
        await self._handle_frame(frame)

    async def _handle_frame(self, frame: dict[str, Any]) -> None:
        if frame.get("id") or frame.get("model"):
            info = ResponseInfo(
                id=frame.get("id") if isinstance(frame.get("id"), str) else None,
                model=frame.get("model") if isinstance(frame.get("model"), str) else None,
            )
            await fire_callback(self.callbacks.on_response_info, info)

        choices = frame.get("choices")
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            return
        choice = choices[0]
        delta = choice.get("delta") or {}
        if not isinstance(delta, dict):
            delta = {}

        content = delta.get("content")
        if isinstance(content, list):
            content = _content_parts_text(content)
        if isinstance(content, str) and content:
            await self._handle_content(content)

        reasoning = delta.get("reasoning_content") or delta.get("reasoning")
        if isinstance(reasoning, str) and reasoning:
            await fire_callback(self.callbacks.on_reasoning, reasoning)

        annotations = delta.get("annotations")
        if isinstance(annotations, list) and annotations:
            self.annotations.extend(a for a in annotations if isinstance(a, dict))
            await fire_callback(self.callbacks.on_annotations, list(self.annotations))

        tool_calls = delta.get("tool_calls")
        if isinstance(tool_calls, list) and tool_calls:
            deltas: list[ToolCallDelta] = []
            for raw in tool_calls:
                try:
                    deltas.append(ToolCallDelta.model_validate(raw))
                except ValidationError as e:
                    logger.warning("Skipping malformed tool call delta %r: %s", raw, e)
            if deltas:
                await fire_callback(self.callbacks.on_tool_call_delta, deltas)

        finish_reason = choice.get("finish_reason")
        if isinstance(finish_reason, str) and finish_reason:
            self.finish_reason = finish_reason
            await fire_callback(self.callbacks.on_finish, finish_reason)

    async def _handle_content(self, content: str) -> None:
        if content == THINK_OPEN:
            self.mode = DecoderMode.REASONING
            return
        if content == THINK_CLOSE:
            self.mode = DecoderMode.PROSE
            return

        if self.mode is DecoderMode.REASONING:
            await fire_callback(self.callbacks.on_reasoning, content)
        else:
            await fire_callback(self.callbacks.on_content, content)
