#!/usr/bin/env python3
"""
Replica Merge Engine

Folds a remote snapshot into the local replica without a central arbiter.

Order of operations:
1. Deletion markers are merged and applied first. Every id with a surviving
   marker is purged from payloads and history indexes; the marker list is
   trimmed to its retention bound only afterwards.
2. Remote payloads are merged per (chatID, role) key, last-writer-wins on
   edited_version. Deleted ids are never reinstated, whatever their version.
3. History indexes are rebuilt from the winning payloads.
4. Non-chat keys (session configs, settings) are taken from remote.

Merging never raises on conflicting data; every conflict has a deterministic
winner.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
from typing import Any, Literal

from pydantic import ValidationError

from .models import (
    EXPORT_EXCLUDED_KEYS,
    ChatMessageData,
    HistoryIndexEntry,
    StorageKeys,
    chat_data_key,
    infer_chat_timestamp_ms,
    parse_chat_data_key,
)
from .store import ReplicaStore
from .tombstones import (
    DEFAULT_MAX_MARKERS,
    deleted_id_set,
    dump_markers,
    merge_deletion_markers,
    normalize_deletion_markers,
    trim_deletion_markers,
)
from .version_clock import compare_versions, is_version_id

logger = logging.getLogger(__name__)

MergeMode = Literal["merge", "download"]


async def export_all(store: ReplicaStore) -> dict[str, Any]:
    """Snapshot every key of the replica except local bookkeeping."""
    data: dict[str, Any] = {}
    for key in await store.list():
        if key in EXPORT_EXCLUDED_KEYS:
            continue
        value = await store.get(key)
        if value is not None:
            data[key] = value
    logger.info("← Repository: exported %d keys", len(data))
    return data


def _canonical(payload: dict[str, Any]) -> str:
    return json.dumps(payload, sort_keys=True, ensure_ascii=False, separators=(",", ":"))


def _finite(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, int | float) or not math.isfinite(value):
        return 0
    return value


def _timestamp(payload: dict[str, Any]) -> float:
    return _finite(payload.get("timestamp"))


def _version(payload: dict[str, Any]) -> str:
    value = payload.get("edited_version")
    return value.strip() if isinstance(value, str) else ""


def pick_newer_message(local: dict[str, Any], remote: dict[str, Any]) -> dict[str, Any]:
    """
    Choose between two payloads stored under the same key.

    Preference order:
    1) A valid edited_version beats none; the later version wins.
    2) The higher timestamp wins.
    3) The payload whose canonical JSON sorts higher wins, so the outcome does
       not depend on which side is local. Identical payloads keep local.
    """
    local_ver = _version(local)
    remote_ver = _version(remote)
    local_ok = is_version_id(local_ver)
    remote_ok = is_version_id(remote_ver)

    if local_ok and remote_ok:
        cmp = compare_versions(local_ver, remote_ver)
        if cmp < 0:
            return remote
        if cmp > 0:
            return local
    elif remote_ok:
        return remote
    elif local_ok:
        return local

    local_ts = _timestamp(local)
    remote_ts = _timestamp(remote)
    if remote_ts > local_ts:
        return remote
    if local_ts > remote_ts:
        return local

    return remote if _canonical(remote) > _canonical(local) else local


def _history_row(payload: dict[str, Any], chat_id: str, role: str) -> dict[str, Any]:
    # Built leniently: a malformed remote payload must not abort the merge.
    entry = HistoryIndexEntry(
        chatID=payload["chatID"] if isinstance(payload.get("chatID"), str) and payload["chatID"] else chat_id,
        role=role,  # type: ignore[arg-type]
        content=str(payload.get("content") or "")[:100],
        model=payload.get("model") if isinstance(payload.get("model"), str) else None,
        timestamp=int(_timestamp(payload)) or None,
    )
    return entry.model_dump(exclude_none=True)


def _sanitize_payload(value: dict[str, Any], chat_id: str, role: str) -> dict[str, Any] | None:
    """
    Remote payload fit to store under (chat_id, role), or None to skip it.

    A non-string version is dropped rather than compared; anything that
    would not load back as a ChatMessageData is rejected.
    """
    payload = {**value}
    payload["chatID"] = chat_id
    payload["role"] = role
    if not isinstance(payload.get("edited_version"), str):
        payload.pop("edited_version", None)
    try:
        ChatMessageData.model_validate(payload)
    except ValidationError as e:
        logger.warning("Skipping malformed remote payload %s/%s: %d errors", chat_id, role, e.error_count())
        return None
    return payload


def _history_chat_ids(history: Any) -> list[str]:
    if not isinstance(history, list):
        return []
    ids = []
    for item in history:
        if isinstance(item, dict) and isinstance(item.get("chatID"), str) and item["chatID"]:
            ids.append(item["chatID"])
    return ids


class MergeEngine:
    """Reconciles remote snapshots into one local ReplicaStore."""

    def __init__(
        self,
        store: ReplicaStore,
        lock: asyncio.Lock | None = None,
        max_deleted_markers: int = DEFAULT_MAX_MARKERS,
    ):
        self.store = store
        self.lock = lock or asyncio.Lock()
        self.max_deleted_markers = max_deleted_markers

    async def export_all(self) -> dict[str, Any]:
        return await export_all(self.store)

    async def merge(
        self,
        remote: dict[str, Any] | None,
        session_id: str | int | None = None,
        mode: MergeMode = "merge",
    ) -> None:
        """
        Merge a remote snapshot into the local replica.

        Args:
            remote: Key/value snapshot as produced by export_all on another replica
            session_id: If given, stored as the selected session afterwards
            mode: "merge" folds everything in incrementally; "download" overwrites
                all non-chat keys and rebuilds history only for sessions that
                exist on both sides
        """
        if mode not in ("merge", "download"):
            raise ValueError(f"Unknown merge mode: {mode}")
        incoming = {k: v for k, v in remote.items() if isinstance(k, str)} if isinstance(remote, dict) else {}
        logger.info("→ Repository: merging %d remote keys (mode=%s)", len(incoming), mode)

        async with self.lock:
            local_keys = await self.store.list()
            local_config_keys = {k for k in local_keys if k.startswith(StorageKeys.SESSION_CONFIG_PREFIX)}
            remote_config_keys = {k for k in incoming if k.startswith(StorageKeys.SESSION_CONFIG_PREFIX)}

            deleted = await self._merge_deletions(incoming)
            written = await self._merge_payloads(incoming, deleted)
            rebuilt = await self._rebuild_histories(
                incoming, local_keys, deleted, mode, local_config_keys, remote_config_keys
            )
            await self._merge_other_keys(incoming, mode)

            if session_id is not None:
                await self.store.set(StorageKeys.SELECTED_SESSION, session_id)

        logger.info(
            "← Repository: merge complete, %d deleted ids, %d payloads taken, %d histories rebuilt",
            len(deleted),
            written,
            rebuilt,
        )

    async def _merge_deletions(self, incoming: dict[str, Any]) -> set[str]:
        local_raw = await self.store.get(StorageKeys.DELETED_CHAT_IDS)
        local_markers = normalize_deletion_markers(local_raw)
        remote_markers = normalize_deletion_markers(incoming.get(StorageKeys.DELETED_CHAT_IDS))
        merged = merge_deletion_markers(local_markers, remote_markers)
        # Decide on the full merged set; trimming only limits what is kept around.
        deleted = deleted_id_set(merged)

        await self._apply_deletions(deleted)

        trimmed = trim_deletion_markers(merged, self.max_deleted_markers)
        if local_raw is None and not trimmed:
            return deleted
        await self.store.set(StorageKeys.DELETED_CHAT_IDS, dump_markers(trimmed))
        return deleted

    async def _apply_deletions(self, deleted: set[str]) -> None:
        if not deleted:
            return

        for chat_id in deleted:
            await self.store.delete(chat_data_key(chat_id, "user"))
            await self.store.delete(chat_data_key(chat_id, "assistant"))

        for key in await self.store.list():
            if not key.startswith(StorageKeys.SESSION_HISTORY_PREFIX):
                continue
            history = await self.store.get(key)
            if not isinstance(history, list):
                continue
            filtered = [h for h in history if not (isinstance(h, dict) and h.get("chatID") in deleted)]
            if len(filtered) != len(history):
                await self.store.set(key, filtered)

    async def _merge_payloads(self, incoming: dict[str, Any], deleted: set[str]) -> int:
        written = 0
        for key, value in incoming.items():
            parsed = parse_chat_data_key(key)
            if parsed is None:
                continue
            role, chat_id = parsed
            if chat_id in deleted:
                continue
            if not isinstance(value, dict):
                continue

            remote_msg = _sanitize_payload(value, chat_id, role)
            if remote_msg is None:
                continue

            # Freshest local state, read right before the write-back.
            local_msg = await self.store.get(key)
            if not isinstance(local_msg, dict):
                await self.store.set(key, remote_msg)
                written += 1
                continue

            if pick_newer_message(local_msg, remote_msg) is remote_msg:
                await self.store.set(key, remote_msg)
                written += 1
        return written

    async def _rebuild_histories(
        self,
        incoming: dict[str, Any],
        local_keys: list[str],
        deleted: set[str],
        mode: MergeMode,
        local_config_keys: set[str],
        remote_config_keys: set[str],
    ) -> int:
        history_keys = [k for k in local_keys if k.startswith(StorageKeys.SESSION_HISTORY_PREFIX)]
        for key in incoming:
            if key.startswith(StorageKeys.SESSION_HISTORY_PREFIX) and key not in history_keys:
                history_keys.append(key)

        rebuilt = 0
        for history_key in history_keys:
            session_suffix = history_key[len(StorageKeys.SESSION_HISTORY_PREFIX):]
            config_key = StorageKeys.SESSION_CONFIG_PREFIX + session_suffix

            if mode == "download" and not (
                config_key in local_config_keys and config_key in remote_config_keys
            ):
                continue

            chat_ids = _history_chat_ids(await self.store.get(history_key))
            chat_ids += _history_chat_ids(incoming.get(history_key))
            unique_ids = [cid for cid in dict.fromkeys(chat_ids) if cid not in deleted]

            await self.rebuild_session_history(history_key, unique_ids)
            rebuilt += 1
        return rebuilt

    async def rebuild_session_history(self, history_key: str, chat_ids: list[str]) -> list[dict[str, Any]]:
        """Rewrite one history index from the stored payloads of chat_ids."""
        chats: list[tuple[float, str, dict[str, Any] | None, dict[str, Any] | None]] = []
        for chat_id in chat_ids:
            user = await self.store.get(chat_data_key(chat_id, "user"))
            assistant = await self.store.get(chat_data_key(chat_id, "assistant"))
            user = user if isinstance(user, dict) else None
            assistant = assistant if isinstance(assistant, dict) else None

            ts = max(
                _timestamp(user) if user else 0,
                _timestamp(assistant) if assistant else 0,
            )
            if not ts:
                ts = infer_chat_timestamp_ms(chat_id)
            chats.append((ts, chat_id, user, assistant))

        chats.sort(key=lambda c: (c[0], c[1]))

        items: list[dict[str, Any]] = []
        for _ts, chat_id, user, assistant in chats:
            for role, payload in (("user", user), ("assistant", assistant)):
                if payload is not None:
                    items.append(_history_row(payload, chat_id, role))

        await self.store.set(history_key, items)
        return items

    async def _merge_other_keys(self, incoming: dict[str, Any], mode: MergeMode) -> None:
        for key, value in incoming.items():
            if key in (StorageKeys.DELETED_CHAT_IDS, StorageKeys.SELECTED_SESSION):
                continue
            if key in EXPORT_EXCLUDED_KEYS:
                continue
            if key.startswith(StorageKeys.CHAT_DATA_PREFIX) or key.startswith(StorageKeys.SESSION_HISTORY_PREFIX):
                continue

            if mode == "download":
                await self.store.set(key, value)
                continue

            local_value = await self.store.get(key)
            if isinstance(local_value, dict) and isinstance(value, dict):
                if _finite(value.get("updated_at")) >= _finite(local_value.get("updated_at")):
                    await self.store.set(key, value)
            else:
                await self.store.set(key, value)
