#!/usr/bin/env python3
"""
Chat History Data Models

Pydantic models for persisted chat payloads, the per-session history index
and deletion markers, plus the storage key layout shared by every replica.
"""

from __future__ import annotations

import re
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from .version_clock import is_version_id, timestamp_ms

# ---------- Type definitions ----------

Role = Literal["system", "user", "assistant", "tool"]


# ---------- Storage keys ----------


class StorageKeys:
    CHAT_DATA_PREFIX = "chat_data_"
    SESSION_HISTORY_PREFIX = "chat_user_session_"
    SESSION_CONFIG_PREFIX = "chat_user_config_"
    SELECTED_SESSION = "config_selected_session"
    DELETED_CHAT_IDS = "deleted_chat_ids"
    MIGRATE_V1_COMPLETED = "migrate_v1_completed"


# Bookkeeping keys that never leave this replica
EXPORT_EXCLUDED_KEYS = frozenset({StorageKeys.MIGRATE_V1_COMPLETED})


def chat_data_key(chat_id: str, role: str) -> str:
    return f"{StorageKeys.CHAT_DATA_PREFIX}{role}_{chat_id}"


def session_history_key(session_id: str | int) -> str:
    return f"{StorageKeys.SESSION_HISTORY_PREFIX}{session_id}"


def session_config_key(session_id: str | int) -> str:
    return f"{StorageKeys.SESSION_CONFIG_PREFIX}{session_id}"


def parse_chat_data_key(key: str) -> tuple[str, str] | None:
    """Split a payload key into (role, chat_id); None for other keys."""
    if not key.startswith(StorageKeys.CHAT_DATA_PREFIX):
        return None
    suffix = key[len(StorageKeys.CHAT_DATA_PREFIX):]
    role, sep, chat_id = suffix.partition("_")
    if not sep or not role or not chat_id:
        return None
    if role not in ("user", "assistant"):
        return None
    return role, chat_id


_LEGACY_CHAT_ID = re.compile(r"^chat-(\d+)-")
_V2_CHAT_ID = re.compile(r"^v2@([0-9a-fA-F-]{36})$")


def infer_chat_timestamp_ms(chat_id: str) -> int:
    """Recover the creation time encoded in a chat id (0 if none)."""
    if not chat_id:
        return 0
    legacy = _LEGACY_CHAT_ID.match(chat_id)
    if legacy:
        return int(legacy.group(1))
    v2 = _V2_CHAT_ID.match(chat_id)
    if v2 and is_version_id(v2.group(1)):
        return timestamp_ms(v2.group(1))
    return 0


# ---------- Payload models ----------


class ChatAttachment(BaseModel):
    model_config = ConfigDict(extra="allow")

    filename: str
    type: Literal["image", "file"] = "file"
    url: str | None = None
    contentB64: str | None = None
    cacheKey: str | None = None


class ChatMessageData(BaseModel):
    """
    One persisted message payload, keyed by (chatID, role).

    Unknown fields are kept so a remote snapshot written by a newer client
    survives a merge round-trip unchanged.
    """

    model_config = ConfigDict(extra="allow")

    chatID: str
    role: Role
    content: str = ""
    reasoningContent: str | None = None
    attachments: list[ChatAttachment] | None = None
    annotations: list[dict[str, Any]] | None = None
    references: list[dict[str, Any]] | None = None
    model: str | None = None
    timestamp: int | None = None
    edited_version: str | None = None
    costUsd: float | None = None
    requestid: str | None = None
    error: str | None = None

    def to_store(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)

    @property
    def has_valid_version(self) -> bool:
        return is_version_id(self.edited_version)


class HistoryIndexEntry(BaseModel):
    """Listing/ordering row; never authoritative for content."""

    model_config = ConfigDict(extra="allow")

    chatID: str
    role: Literal["user", "assistant"]
    content: str = ""
    model: str | None = None
    timestamp: int | None = None

    @classmethod
    def from_message(cls, msg: ChatMessageData) -> HistoryIndexEntry:
        return cls(
            chatID=msg.chatID,
            role=msg.role,  # type: ignore[arg-type]
            content=(msg.content or "")[:100],
            model=msg.model,
            timestamp=msg.timestamp,
        )


class DeletionMarker(BaseModel):
    chat_id: str
    deleted_version: str = ""

    @property
    def has_valid_version(self) -> bool:
        return is_version_id(self.deleted_version)


class SessionConfig(BaseModel):
    """Per-session settings persisted under chat_user_config_{id}."""

    model_config = ConfigDict(extra="allow")

    id: str
    system_prompt: str = ""
    n_contexts: int = Field(default=6, ge=0)
    max_tokens: int = Field(default=4000, gt=0)
    temperature: float | None = None
    presence_penalty: float | None = None
    frequency_penalty: float | None = None
    selected_model: str | None = None
    enable_mcp: bool = True
    updated_at: int = 0
