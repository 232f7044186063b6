"""
Streaming Response Handler

Drives one assistant reply from request to persisted message:
- Streams a completion through the LLM client into a live message
- Accumulates tool-call deltas and, on a "tool_calls" finish, runs the tools
  and reissues the request with their results
- Bounds the number of tool rounds
- Persists the final, version-stamped message exactly once

This is the most fragile part of the chat system, so every boundary logs
directionally (→ outgoing, ← incoming).

Error policy:
- TurnCancelled (user stop): swallowed, streamed content stays in the view,
  nothing is persisted.
- ChatTransportError / ToolLoopLimitError: reported through the view and
  re-raised to the caller.
- Any other McpError (e.g. tool calls requested while MCP is disabled):
  reported through the view, not re-raised.
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Any

from mcp import McpError, types
from pydantic import ValidationError

from chatsync.chat.logging_utils import log_llm_reply
from chatsync.chat.models import AbortSignal, Annotation, ResponseInfo, ToolCallDelta
from chatsync.chat.stream_decoder import StreamCallbacks, fire_callback
from chatsync.chat.tool_executor import ToolCallAccumulator, ToolExecutor, check_tool_loop_limit
from chatsync.errors import ChatTransportError, ToolLoopLimitError, TurnCancelled
from chatsync.history.models import ChatMessageData

if TYPE_CHECKING:
    from chatsync.clients import LLMClient
    from chatsync.history.chat_store import ChatStore
    from chatsync.tool_schema_manager import ToolSchemaManager

logger = logging.getLogger(__name__)


class TurnState:
    """Everything streamed so far for one assistant reply."""

    def __init__(self, chat_id: str, model: str | None) -> None:
        self.chat_id = chat_id
        self.content = ""
        self.reasoning = ""
        self.tool_events: list[str] = []
        self.annotations: list[dict[str, Any]] = []
        self.turn_annotations: list[dict[str, Any]] = []
        self.request_id = ""
        self.model = ""
        self.default_model = model
        self.finish_reason: str | None = None
        self.error: str | None = None

    @property
    def combined_reasoning(self) -> str:
        return "\n".join(part for part in [*self.tool_events, self.reasoning] if part)

    @property
    def combined_annotations(self) -> list[dict[str, Any]]:
        return [*self.annotations, *self.turn_annotations]

    def fold_turn_annotations(self) -> None:
        self.annotations = self.combined_annotations
        self.turn_annotations = []

    def snapshot(self) -> ChatMessageData:
        """The live assistant message as the view should show it now."""
        annotations = self.combined_annotations
        return ChatMessageData(
            chatID=self.chat_id,
            role="assistant",
            content=self.content,
            reasoningContent=self.combined_reasoning or None,
            annotations=annotations or None,
            references=extract_references(annotations) or None,
            model=self.model or self.default_model,
            requestid=self.request_id or None,
            error=self.error,
        )


def extract_references(annotations: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """URL citations from annotations, deduplicated by url."""
    refs: list[dict[str, Any]] = []
    seen: set[str] = set()
    for raw in annotations:
        try:
            annotation = Annotation.model_validate(raw)
        except ValidationError:
            continue
        citation = annotation.url_citation
        if annotation.type != "url_citation" or citation is None:
            continue
        if not citation.url or citation.url in seen:
            continue
        seen.add(citation.url)
        refs.append({"url": citation.url, "title": citation.title or citation.url})
    return refs


class StreamingHandler:
    """Handles streaming responses and tool call rounds for one session."""

    def __init__(
        self,
        llm_client: LLMClient,
        tool_executor: ToolExecutor,
        tool_mgr: ToolSchemaManager,
        chat_store: ChatStore,
        max_tool_rounds: int = 25,
        llm_reply_truncate: int = 500,
    ):
        self.llm_client = llm_client
        self.tool_executor = tool_executor
        self.tool_mgr = tool_mgr
        self.chat_store = chat_store
        self.max_tool_rounds = max_tool_rounds
        self.llm_reply_truncate = llm_reply_truncate

    async def stream_assistant_reply(
        self,
        chat_id: str,
        messages: list[dict[str, Any]],
        session: dict[str, Any],
        view: StreamCallbacks | None = None,
        abort: AbortSignal | None = None,
    ) -> ChatMessageData | None:
        """
        Stream the assistant reply for chat_id and persist it.

        Args:
            chat_id: Chat whose assistant slot is being filled
            messages: Request messages (system prompt, context, user message)
            session: Session settings (model, sampling, enable_mcp)
            view: UI callbacks; receive every delta plus on_error
            abort: Cooperative cancellation signal for this turn

        Returns:
            The persisted message, or None if the turn was cancelled or failed
            with a non-fatal error.

        Raises:
            ChatTransportError: the provider request failed
            ToolLoopLimitError: the model kept requesting tools past the limit
        """
        view = view or StreamCallbacks()
        state = TurnState(chat_id, session.get("selected_model") or self.llm_client.config.get("model"))
        accumulator = ToolCallAccumulator()
        enable_mcp = bool(session.get("enable_mcp", True))

        def on_tool_event(line: str) -> None:
            if line:
                state.tool_events.append(line)

        async def on_content(delta: str) -> None:
            state.content += delta
            await fire_callback(view.on_content, delta)

        async def on_reasoning(delta: str) -> None:
            state.reasoning += delta
            await fire_callback(view.on_reasoning, delta)

        async def on_annotations(annotations: list[dict[str, Any]]) -> None:
            state.turn_annotations = annotations
            await fire_callback(view.on_annotations, state.combined_annotations)

        async def on_tool_call_delta(deltas: list[ToolCallDelta]) -> None:
            accumulator.add(deltas, on_tool_event)
            await fire_callback(view.on_tool_call_delta, deltas)

        async def on_response_info(info: ResponseInfo) -> None:
            if info.id:
                state.request_id = info.id
            if info.model:
                state.model = info.model
            await fire_callback(view.on_response_info, info)

        async def on_finish(reason: str) -> None:
            state.finish_reason = reason
            await fire_callback(view.on_finish, reason)

        callbacks = StreamCallbacks(
            on_content=on_content,
            on_reasoning=on_reasoning,
            on_annotations=on_annotations,
            on_tool_call_delta=on_tool_call_delta,
            on_response_info=on_response_info,
            on_finish=on_finish,
            on_done=view.on_done,
        )

        logger.info("→ Frontend: starting streaming reply for chat %s", chat_id)
        try:
            working = messages
            rounds = 0
            while True:
                accumulator.clear()
                state.turn_annotations = []
                state.finish_reason = None

                if enable_mcp:
                    await self.tool_mgr.sync_missing_catalogs()
                tools = self.tool_mgr.get_openai_tools() if enable_mcp else []
                payload = self.llm_client.build_payload(working, tools, session)
                finish_reason = await self.llm_client.stream_chat(payload, callbacks, abort)

                if finish_reason != "tool_calls":
                    break

                if not enable_mcp:
                    raise McpError(
                        error=types.ErrorData(
                            code=types.INVALID_REQUEST,
                            message="Model requested MCP tools but they are disabled for this session.",
                        )
                    )
                if len(accumulator) == 0:
                    raise McpError(
                        error=types.ErrorData(
                            code=types.INVALID_REQUEST,
                            message="Model requested tool calls but none were parsed.",
                        )
                    )

                rounds += 1
                check_tool_loop_limit(rounds, self.max_tool_rounds)
                state.fold_turn_annotations()
                logger.info("Tool round %d for chat %s: %d calls", rounds, chat_id, len(accumulator))
                working = await self.tool_executor.build_continuation(
                    working,
                    accumulator.calls(),
                    self.tool_mgr.enabled_servers(),
                    on_tool_event,
                )

            state.fold_turn_annotations()

        except TurnCancelled:
            logger.info("← Frontend: reply for chat %s stopped by user", chat_id)
            return None
        except (ChatTransportError, ToolLoopLimitError) as e:
            await self._report_error(state, view, str(e))
            raise
        except McpError as e:
            await self._report_error(state, view, str(e))
            return None

        final = state.snapshot()
        final.timestamp = int(time.time() * 1000)
        final.edited_version = self.chat_store.clock.new_version()
        final.annotations = state.annotations or None
        if state.request_id:
            final.costUsd = await self.llm_client.fetch_cost(state.request_id)

        log_llm_reply(final.content, final.reasoningContent or "", final.model, rounds, self.llm_reply_truncate)
        logger.info("→ Repository: saving assistant reply for chat %s", chat_id)
        await self.chat_store.save_message(final)
        logger.info("← Frontend: streaming reply completed for chat %s", chat_id)
        return final

    async def _report_error(self, state: TurnState, view: StreamCallbacks, message: str) -> None:
        logger.error("Reply for chat %s failed: %s", state.chat_id, message)
        state.error = message
        await fire_callback(view.on_error, message, state.snapshot())
