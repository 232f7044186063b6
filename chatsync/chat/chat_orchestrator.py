"""
Chat Orchestrator

Coordination layer between a UI view and the chat machinery.
Each user action (send, regenerate, edit-and-retry, stop, delete, clear)
is translated into store writes plus at most one streaming turn.

Exactly one turn may be active per (chat_id, role) slot. Starting a new turn
for a busy slot aborts the old one first and waits for it to settle, so two
replies never race to persist into the same payload key. A per-slot lock is
held from that cancel until the new turn is registered.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from chatsync.history.chat_store import new_chat_id
from chatsync.history.models import ChatAttachment, ChatMessageData, SessionConfig

from .models import AbortSignal, ContentPart, ImageUrl
from .stream_decoder import Callback, StreamCallbacks, fire_callback

if TYPE_CHECKING:
    from chatsync.history.chat_store import ChatStore

    from .streaming_handler import StreamingHandler

logger = logging.getLogger(__name__)


@dataclass
class ChatView(StreamCallbacks):
    """Stream callbacks plus on_message, fired for each user message and placeholder shown."""

    on_message: Callback | None = None


@dataclass
class ActiveTurn:
    signal: AbortSignal
    task: asyncio.Task[ChatMessageData | None]


def build_user_content(
    text: str, attachments: list[ChatAttachment] | None = None
) -> tuple[str, str | list[dict[str, Any]]]:
    """
    Visible content and request content for a user message.

    Images are inlined as markdown and sent as image_url parts; other files
    become a short text note. The request content is a plain string unless
    attachments produced an image or extra parts.
    """
    visible = text.strip()
    parts: list[ContentPart] = [ContentPart(type="text", text=visible)] if visible else []
    notes: list[str] = []

    for attachment in attachments or []:
        source = attachment.url or attachment.contentB64
        if attachment.type == "image" and source:
            notes.append(f"![{attachment.filename}]({source})")
            parts.append(ContentPart(type="image_url", image_url=ImageUrl(url=source)))
        else:
            if attachment.cacheKey:
                note = f"[File uploaded: {attachment.filename} (key: {attachment.cacheKey})]"
            else:
                note = f"[File uploaded: {attachment.filename}]"
            notes.append(note)
            parts.append(ContentPart(type="text", text=f"\n\n{note}"))

    if notes:
        visible = f"{visible}\n\n" + "\n\n".join(notes)
        visible = visible.strip()
    if len(parts) > 1 or any(part.type == "image_url" for part in parts):
        return visible, [part.to_dict() for part in parts]
    return visible, visible


class ChatOrchestrator:
    """
    Conversation orchestrator for one session.

    1. Persists the user side of a turn
    2. Shows an empty assistant placeholder (never persisted)
    3. Builds the request from the system prompt and recent context
    4. Delegates the reply to the streaming handler
    """

    def __init__(
        self,
        chat_store: ChatStore,
        streaming_handler: StreamingHandler,
        session: dict[str, Any] | None = None,
    ):
        self.chat_store = chat_store
        self.streaming_handler = streaming_handler
        self.session: dict[str, Any] = dict(session or {})
        self._active: dict[tuple[str, str], ActiveTurn] = {}
        self._slot_locks: dict[tuple[str, str], asyncio.Lock] = {}

    @property
    def clock(self):
        return self.chat_store.clock

    async def initialize(self) -> None:
        """Layer the session's persisted settings over the configured defaults."""
        config = await self.chat_store.load_session_config(self.session)
        self.session = config.model_dump()
        logger.info("→ Orchestrator: session %s ready", self.chat_store.session_id)

    async def update_session(self, **changes: Any) -> dict[str, Any]:
        """Validate and persist new session settings; later turns use them."""
        config = SessionConfig.model_validate({**self.session, **changes, "id": self.chat_store.session_id})
        saved = await self.chat_store.save_session_config(config)
        self.session = saved.model_dump()
        return self.session

    def is_streaming(self, chat_id: str | None = None) -> bool:
        if chat_id is None:
            return bool(self._active)
        return (chat_id, "assistant") in self._active

    # ---------- Request building ----------

    async def _build_messages(
        self, chat_id: str, user_content: str | list[dict[str, Any]]
    ) -> list[dict[str, Any]]:
        messages: list[dict[str, Any]] = []
        system_prompt = self.session.get("system_prompt")
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})

        context = await self.chat_store.recent_context(
            int(self.session.get("n_contexts", 6)), before_chat_id=chat_id
        )
        messages.extend({"role": msg.role, "content": msg.content} for msg in context)
        messages.append({"role": "user", "content": user_content})
        return messages

    def _placeholder(self, chat_id: str) -> ChatMessageData:
        return ChatMessageData(
            chatID=chat_id,
            role="assistant",
            content="",
            model=self.session.get("selected_model") or None,
            timestamp=int(time.time() * 1000),
        )

    # ---------- Turn control ----------

    async def _cancel_slot(self, slot: tuple[str, str]) -> None:
        active = self._active.get(slot)
        if active is None:
            return
        logger.info("Cancelling in-flight reply for chat %s", slot[0])
        active.signal.abort()
        await asyncio.wait({active.task})

    def _slot_lock(self, slot: tuple[str, str]) -> asyncio.Lock:
        return self._slot_locks.setdefault(slot, asyncio.Lock())

    async def _start_turn(
        self,
        chat_id: str,
        messages: list[dict[str, Any]],
        view: ChatView,
    ) -> ActiveTurn:
        """Show the placeholder and register the streaming task. Caller holds the slot lock."""
        slot = (chat_id, "assistant")
        await self._cancel_slot(slot)

        await fire_callback(view.on_message, self._placeholder(chat_id))

        signal = AbortSignal()
        task = asyncio.ensure_future(
            self.streaming_handler.stream_assistant_reply(
                chat_id, messages, self.session, view, signal
            )
        )
        turn = ActiveTurn(signal, task)
        self._active[slot] = turn
        return turn

    async def _await_turn(self, chat_id: str, turn: ActiveTurn) -> ChatMessageData | None:
        slot = (chat_id, "assistant")
        try:
            return await turn.task
        finally:
            if self._active.get(slot) is turn:
                del self._active[slot]

    # ---------- Actions ----------

    async def send_message(
        self,
        text: str,
        attachments: list[ChatAttachment] | None = None,
        view: ChatView | None = None,
    ) -> ChatMessageData | None:
        """Start a new chat turn. Blank text without attachments is ignored."""
        if not text.strip() and not attachments:
            return None
        view = view or ChatView()

        chat_id = new_chat_id(self.clock)
        visible, request_content = build_user_content(text, attachments)
        user_message = ChatMessageData(
            chatID=chat_id,
            role="user",
            content=visible,
            attachments=attachments or None,
            timestamp=int(time.time() * 1000),
            edited_version=self.clock.new_version(),
        )
        logger.info("→ Repository: saving user message %s", chat_id)
        await self.chat_store.save_message(user_message)
        await fire_callback(view.on_message, user_message)

        messages = await self._build_messages(chat_id, request_content)
        async with self._slot_lock((chat_id, "assistant")):
            turn = await self._start_turn(chat_id, messages, view)
        return await self._await_turn(chat_id, turn)

    async def regenerate(self, chat_id: str, view: ChatView | None = None) -> ChatMessageData | None:
        """Replace the assistant reply of chat_id with a freshly streamed one."""
        view = view or ChatView()
        slot = (chat_id, "assistant")
        async with self._slot_lock(slot):
            user_message = await self.chat_store.get_message(chat_id, "user")
            if user_message is None:
                logger.warning("Cannot regenerate %s: user message not found", chat_id)
                return None

            await self._cancel_slot(slot)
            await self.chat_store.delete_payload(chat_id, "assistant")

            messages = await self._build_messages(chat_id, user_message.content)
            turn = await self._start_turn(chat_id, messages, view)
        return await self._await_turn(chat_id, turn)

    async def edit_and_retry(
        self, chat_id: str, new_text: str, view: ChatView | None = None
    ) -> ChatMessageData | None:
        """Rewrite the user message of chat_id, then regenerate its reply."""
        trimmed = new_text.strip()
        if not trimmed:
            return None
        view = view or ChatView()
        slot = (chat_id, "assistant")

        async with self._slot_lock(slot):
            user_message = await self.chat_store.get_message(chat_id, "user")
            if user_message is None:
                logger.warning("Cannot edit %s: user message not found", chat_id)
                return None

            await self._cancel_slot(slot)
            updated = user_message.model_copy(
                update={
                    "content": trimmed,
                    "timestamp": int(time.time() * 1000),
                    "edited_version": self.clock.new_version(),
                }
            )
            await self.chat_store.save_message(updated)
            await fire_callback(view.on_message, updated)
            await self.chat_store.delete_payload(chat_id, "assistant")

            messages = await self._build_messages(chat_id, trimmed)
            turn = await self._start_turn(chat_id, messages, view)
        return await self._await_turn(chat_id, turn)

    def stop(self, chat_id: str | None = None) -> int:
        """Abort the active turn for chat_id, or every active turn. Returns how many were signalled."""
        stopped = 0
        for (active_chat_id, _role), turn in list(self._active.items()):
            if chat_id is not None and active_chat_id != chat_id:
                continue
            if not turn.signal.aborted:
                turn.signal.abort()
                stopped += 1
        if stopped:
            logger.info("Stop requested for %d active turns", stopped)
        return stopped

    async def delete_message(self, chat_id: str) -> None:
        slot = (chat_id, "assistant")
        async with self._slot_lock(slot):
            await self._cancel_slot(slot)
            await self.chat_store.delete_message(chat_id)

    async def clear_messages(self) -> None:
        self.stop()
        for slot in list(self._active):
            async with self._slot_lock(slot):
                await self._cancel_slot(slot)
        await self.chat_store.clear_messages()

    async def load(self) -> list[ChatMessageData]:
        return await self.chat_store.load_messages()
