#!/usr/bin/env python3
"""
Deletion markers (tombstones).

A marker records that a chat id was deleted at a given version. Markers from
every replica are merged per chat id, newest valid version first, and trimmed
to a retention bound only after the merge has decided what is deleted.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any

from .models import DeletionMarker, StorageKeys
from .store import ReplicaStore
from .version_clock import VersionClock, compare_versions, is_version_id, new_version

logger = logging.getLogger(__name__)

DEFAULT_MAX_MARKERS = 1000


def normalize_deletion_markers(raw: Any) -> list[DeletionMarker]:
    """Coerce any persisted shape into a marker list; bare strings are legacy markers."""
    if not raw or not isinstance(raw, list):
        return []

    out: list[DeletionMarker] = []
    for item in raw:
        if isinstance(item, str):
            if item:
                out.append(DeletionMarker(chat_id=item))
            continue
        if isinstance(item, DeletionMarker):
            out.append(item)
            continue
        if not isinstance(item, dict):
            continue
        chat_id = item.get("chat_id")
        if not isinstance(chat_id, str) or not chat_id:
            continue
        version = item.get("deleted_version")
        out.append(
            DeletionMarker(
                chat_id=chat_id,
                deleted_version=version if isinstance(version, str) else "",
            )
        )
    return out


def merge_deletion_markers(
    a: Iterable[DeletionMarker], b: Iterable[DeletionMarker]
) -> list[DeletionMarker]:
    """Keep the newest marker per chat id; a valid version beats an invalid one."""
    merged: dict[str, DeletionMarker] = {}

    def upsert(entry: DeletionMarker) -> None:
        existing = merged.get(entry.chat_id)
        if existing is None:
            merged[entry.chat_id] = entry
            return
        existing_ok = existing.has_valid_version
        entry_ok = entry.has_valid_version
        if entry_ok and not existing_ok:
            merged[entry.chat_id] = entry
        elif existing_ok and entry_ok:
            if compare_versions(existing.deleted_version, entry.deleted_version) < 0:
                merged[entry.chat_id] = entry

    for entry in a:
        upsert(entry)
    for entry in b:
        upsert(entry)
    return list(merged.values())


def _marker_sort_key(entry: DeletionMarker) -> tuple[int, str, str]:
    version = entry.deleted_version.strip().lower()
    if is_version_id(version):
        return (1, version.replace("-", ""), entry.chat_id)
    return (0, "", entry.chat_id)


def trim_deletion_markers(
    markers: list[DeletionMarker], max_entries: int = DEFAULT_MAX_MARKERS
) -> list[DeletionMarker]:
    """Keep only the newest max_entries markers (oldest by version dropped first)."""
    if len(markers) <= max_entries:
        return markers
    ordered = sorted(markers, key=_marker_sort_key)
    return ordered[len(ordered) - max_entries:] if max_entries > 0 else []


def deleted_id_set(markers: Iterable[DeletionMarker]) -> set[str]:
    return {m.chat_id for m in markers}


def dump_markers(markers: Iterable[DeletionMarker]) -> list[dict[str, str]]:
    return [m.model_dump() for m in markers]


async def record_deleted_chat_id(
    store: ReplicaStore,
    chat_id: str,
    clock: VersionClock | None = None,
    max_entries: int = DEFAULT_MAX_MARKERS,
) -> DeletionMarker | None:
    """Stamp a fresh marker for chat_id and fold it into the stored list."""
    if not chat_id:
        return None

    version = clock.new_version() if clock else new_version()
    marker = DeletionMarker(chat_id=chat_id, deleted_version=version)
    local = normalize_deletion_markers(await store.get(StorageKeys.DELETED_CHAT_IDS))
    merged = merge_deletion_markers(local, [marker])
    await store.set(
        StorageKeys.DELETED_CHAT_IDS,
        dump_markers(trim_deletion_markers(merged, max_entries)),
    )
    logger.info("→ Repository: recorded deletion of %s at %s", chat_id, version)
    return marker
