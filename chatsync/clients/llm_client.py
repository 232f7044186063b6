"""
LLM HTTP client for streaming chat completions.

Posts an OpenAI-compatible request, checks the status and feeds the
`data:` lines of the event stream to a StreamDecoder. A non-2xx status or a
network failure becomes a ChatTransportError; an abort by the caller becomes
TurnCancelled and is never reported as a transport error.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import Any

import httpx

from chatsync.chat.models import AbortSignal
from chatsync.chat.stream_decoder import StreamCallbacks, StreamDecoder
from chatsync.config import Configuration
from chatsync.errors import ChatTransportError, TurnCancelled

logger = logging.getLogger(__name__)

# Session keys passed through to the provider when set
PASSTHROUGH_PARAMS = ("temperature", "presence_penalty", "frequency_penalty")


class LLMClient:
    """Thin async wrapper around the provider's /chat/completions endpoint."""

    def __init__(
        self,
        configuration: Configuration,
        http_client: httpx.AsyncClient | None = None,
        api_key: str | None = None,
    ) -> None:
        self.configuration: Configuration = configuration
        self.config: dict[str, Any] = configuration.get_llm_config()
        pool = configuration.get_connection_pool_config()

        if http_client is None:
            key = api_key if api_key is not None else configuration.llm_api_key
            http_client = httpx.AsyncClient(
                base_url=self.config["base_url"],
                headers={
                    "Authorization": f"Bearer {key}",
                    "Content-Type": "application/json",
                },
                timeout=pool["request_timeout_seconds"],
                limits=httpx.Limits(
                    max_connections=pool["max_connections"],
                    max_keepalive_connections=pool["max_keepalive_connections"],
                    keepalive_expiry=pool["keepalive_expiry_seconds"],
                ),
                trust_env=False,
            )
            logger.info("LLM client initialized for %s", self.config["base_url"])
        self.client: httpx.AsyncClient = http_client

    async def __aenter__(self) -> LLMClient:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    def build_payload(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        session: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Request body: model and sampling from the session, tools when any are enabled."""
        session = session or {}
        payload: dict[str, Any] = {
            "model": session.get("selected_model") or self.config["model"],
            "messages": messages,
            "stream": True,
            "max_tokens": session.get("max_tokens") or 4000,
        }
        for key in PASSTHROUGH_PARAMS:
            if session.get(key) is not None:
                payload[key] = session[key]
        if tools:
            payload["tools"] = tools
            payload["tool_choice"] = "auto"
        return payload

    async def stream_chat(
        self,
        payload: dict[str, Any],
        callbacks: StreamCallbacks,
        abort: AbortSignal | None = None,
    ) -> str | None:
        """
        Stream one completion into callbacks and return its finish reason.

        Raises:
            ChatTransportError: non-2xx status or network failure
            TurnCancelled: abort signalled by the caller
        """
        decoder = StreamDecoder(callbacks, abort)
        logger.info(
            "→ LLM: streaming request, model=%s, messages=%d, tools=%d",
            payload.get("model"),
            len(payload.get("messages", [])),
            len(payload.get("tools", []) or []),
        )

        request = self._run_stream(payload, decoder)
        if abort is None:
            return await request

        stream_task = asyncio.ensure_future(request)
        abort_task = asyncio.ensure_future(abort.wait())
        try:
            await asyncio.wait({stream_task, abort_task}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            # The caller's task was cancelled; take the HTTP stream down with it.
            stream_task.cancel()
            await asyncio.gather(stream_task, return_exceptions=True)
            raise
        finally:
            abort_task.cancel()

        if not stream_task.done():
            stream_task.cancel()
            try:
                await stream_task
            except (asyncio.CancelledError, TurnCancelled):
                pass
            raise TurnCancelled("turn aborted by caller")
        return stream_task.result()

    async def _run_stream(self, payload: dict[str, Any], decoder: StreamDecoder) -> str | None:
        try:
            async with self.client.stream(
                "POST",
                "/chat/completions",
                json=payload,
                headers={"Accept": "text/event-stream", "Accept-Encoding": "identity"},
            ) as response:
                if not response.is_success:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    logger.error("← LLM: HTTP %d: %s", response.status_code, body[:1000])
                    raise ChatTransportError(f"[{response.status_code}]: {body}", response.status_code)

                content_type = response.headers.get("content-type", "")
                if "text/event-stream" not in content_type:
                    logger.warning("Unexpected content-type: %s, proceeding anyway", content_type)

                finish_reason = await decoder.decode(_lines(response))
        except httpx.HTTPError as e:
            logger.error("HTTP error during streaming: %s (%s)", e, type(e).__name__)
            raise ChatTransportError(str(e) or type(e).__name__) from e

        logger.info(
            "← LLM: stream finished, frames=%d, skipped=%d, finish_reason=%s",
            decoder.frames,
            decoder.skipped_frames,
            finish_reason,
        )
        return finish_reason

    async def fetch_cost(self, request_id: str) -> float | None:
        """Look up the billed cost of a finished request; None if unavailable."""
        cost_url = self.config.get("cost_url")
        if not cost_url or not request_id:
            return None
        try:
            response = await self.client.get(f"{cost_url.rstrip('/')}/{request_id}")
            if not response.is_success:
                return None
            value = response.json().get("cost_usd")
            return float(value) if value is not None else None
        except (httpx.HTTPError, ValueError, TypeError, AttributeError) as e:
            logger.warning("Failed to fetch cost for %s: %s", request_id, e)
            return None

    async def close(self) -> None:
        await self.client.aclose()


async def _lines(response: httpx.Response) -> AsyncIterator[str]:
    async for line in response.aiter_lines():
        yield line
