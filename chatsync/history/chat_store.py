#!/usr/bin/env python3
"""
Chat Store

Session-scoped persistence on top of a ReplicaStore.

Every message lives under its own payload key (chat_data_{role}_{chatID});
the session's history index is a compact ordered list used only for listing.
Both writes are idempotent upserts keyed by (chatID, role), so an interrupted
save can be redone safely. Deleting a message removes its payload and its
index rows together and records a deletion marker for other replicas.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

from pydantic import ValidationError

from .models import (
    ChatMessageData,
    HistoryIndexEntry,
    SessionConfig,
    StorageKeys,
    chat_data_key,
    session_config_key,
    session_history_key,
)
from .store import ReplicaStore
from .tombstones import (
    DEFAULT_MAX_MARKERS,
    deleted_id_set,
    normalize_deletion_markers,
    record_deleted_chat_id,
)
from .version_clock import VersionClock

logger = logging.getLogger(__name__)

CHAT_ROLES = ("user", "assistant")


def new_chat_id(clock: VersionClock | None = None) -> str:
    """Chat ids embed a version id so their creation order can be recovered."""
    clock = clock or VersionClock()
    return f"v2@{clock.new_version()}"


class ChatStore:
    """Persistence helpers for one chat session."""

    def __init__(
        self,
        store: ReplicaStore,
        session_id: str | int,
        clock: VersionClock | None = None,
        lock: asyncio.Lock | None = None,
        max_deleted_markers: int = DEFAULT_MAX_MARKERS,
    ):
        self.store = store
        self.session_id = str(session_id)
        self.clock = clock or VersionClock()
        # Shared with MergeEngine so a save never lands between a merge's
        # re-read and its write-back.
        self.lock = lock or asyncio.Lock()
        self.max_deleted_markers = max_deleted_markers

    @property
    def history_key(self) -> str:
        return session_history_key(self.session_id)

    @property
    def config_key(self) -> str:
        return session_config_key(self.session_id)

    async def load_session_config(self, defaults: dict[str, Any] | None = None) -> SessionConfig:
        """Stored session settings layered over defaults; invalid stored data falls back to defaults."""
        base = {**(defaults or {}), "id": self.session_id}
        stored = await self.store.get(self.config_key)
        if isinstance(stored, dict):
            try:
                return SessionConfig.model_validate({**base, **stored, "id": self.session_id})
            except ValidationError as e:
                logger.warning("Ignoring invalid stored config for session %s: %s", self.session_id, e)
        return SessionConfig.model_validate(base)

    async def save_session_config(self, config: SessionConfig) -> SessionConfig:
        """Persist settings stamped with updated_at, which merge uses to pick a side."""
        updated = config.model_copy(update={"id": self.session_id, "updated_at": int(time.time() * 1000)})
        async with self.lock:
            await self.store.set(self.config_key, updated.model_dump())
        return updated

    async def _load_history(self) -> list[dict[str, Any]]:
        history = await self.store.get(self.history_key)
        return history if isinstance(history, list) else []

    async def is_deleted(self, chat_id: str) -> bool:
        markers = normalize_deletion_markers(await self.store.get(StorageKeys.DELETED_CHAT_IDS))
        return chat_id in deleted_id_set(markers)

    async def save_message(self, message: ChatMessageData) -> bool:
        """
        Upsert the payload, then upsert its history row in place.

        Returns False without writing when the chat id carries a deletion
        marker, e.g. one merged in while its reply was still streaming.
        """
        if message.role not in CHAT_ROLES:
            raise ValueError(f"Only user/assistant messages are persisted, got {message.role}")

        async with self.lock:
            if await self.is_deleted(message.chatID):
                logger.warning("Not saving %s/%s: chat was deleted", message.chatID, message.role)
                return False

            await self.store.set(chat_data_key(message.chatID, message.role), message.to_store())

            history = await self._load_history()
            row = HistoryIndexEntry.from_message(message).model_dump(exclude_none=True)
            for i, item in enumerate(history):
                if item.get("chatID") == message.chatID and item.get("role") == message.role:
                    history[i] = row
                    break
            else:
                history.append(row)
            await self.store.set(self.history_key, history)

        logger.debug("← Repository: saved %s/%s", message.chatID, message.role)
        return True

    async def get_message(self, chat_id: str, role: str) -> ChatMessageData | None:
        raw = await self.store.get(chat_data_key(chat_id, role))
        if not isinstance(raw, dict):
            return None
        try:
            return ChatMessageData.model_validate(raw)
        except ValidationError as e:
            logger.warning("Skipping unreadable payload %s/%s: %d errors", chat_id, role, e.error_count())
            return None

    async def load_messages(self) -> list[ChatMessageData]:
        """Load every message in index order, user before assistant per chat."""
        history = await self._load_history()
        messages: list[ChatMessageData] = []
        seen: set[str] = set()

        for item in history:
            chat_id = item.get("chatID") if isinstance(item, dict) else None
            if not chat_id or chat_id in seen:
                continue
            seen.add(chat_id)
            for role in CHAT_ROLES:
                msg = await self.get_message(chat_id, role)
                if msg is not None:
                    messages.append(msg)

        logger.info("← Repository: loaded %d messages for session %s", len(messages), self.session_id)
        return messages

    async def recent_context(self, n_contexts: int, before_chat_id: str | None = None) -> list[ChatMessageData]:
        """
        The trailing n_contexts turns (user + assistant each) of the session.

        When before_chat_id is given, only messages preceding that chat are
        considered; used to rebuild context for regenerate and edit-and-retry.
        """
        messages = await self.load_messages()
        if before_chat_id is not None:
            for i, msg in enumerate(messages):
                if msg.chatID == before_chat_id:
                    messages = messages[:i]
                    break
        limit = max(0, n_contexts) * 2
        if limit == 0:
            return []
        return [m for m in messages[-limit:] if not m.error]

    async def delete_payload(self, chat_id: str, role: str) -> None:
        """Remove a single payload and its index row."""
        async with self.lock:
            await self.store.delete(chat_data_key(chat_id, role))
            history = await self._load_history()
            filtered = [
                h for h in history
                if not (h.get("chatID") == chat_id and h.get("role") == role)
            ]
            if len(filtered) != len(history):
                await self.store.set(self.history_key, filtered)

    async def delete_message(self, chat_id: str) -> None:
        """Delete a chat pair and tombstone its id."""
        async with self.lock:
            for role in CHAT_ROLES:
                await self.store.delete(chat_data_key(chat_id, role))

            history = await self._load_history()
            filtered = [h for h in history if h.get("chatID") != chat_id]
            if len(filtered) != len(history):
                await self.store.set(self.history_key, filtered)

            await record_deleted_chat_id(
                self.store, chat_id, self.clock, self.max_deleted_markers
            )

    async def clear_messages(self) -> None:
        """Delete every chat in the session and reset its index."""
        async with self.lock:
            history = await self._load_history()
            chat_ids = list(dict.fromkeys(h.get("chatID") for h in history if h.get("chatID")))
            for chat_id in chat_ids:
                for role in CHAT_ROLES:
                    await self.store.delete(chat_data_key(chat_id, role))
                await record_deleted_chat_id(
                    self.store, chat_id, self.clock, self.max_deleted_markers
                )
            await self.store.set(self.history_key, [])

        logger.info("→ Repository: cleared %d chats from session %s", len(chat_ids), self.session_id)
