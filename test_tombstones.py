#!/usr/bin/env python3
"""
Tests for deletion marker normalization, merging and retention.
"""

import asyncio

from chatsync.history.models import DeletionMarker, StorageKeys
from chatsync.history.store import InMemoryStore
from chatsync.history.tombstones import (
    deleted_id_set,
    merge_deletion_markers,
    normalize_deletion_markers,
    record_deleted_chat_id,
    trim_deletion_markers,
)
from chatsync.history.version_clock import VersionClock


def versions(*ms_values):
    clock = VersionClock(random_bits=lambda bits: 0)
    return [clock.new_version(ms) for ms in ms_values]


def test_normalize_accepts_legacy_and_drops_garbage():
    v1, = versions(1000)
    raw = [
        "legacy-id",
        {"chat_id": "b", "deleted_version": v1},
        {"chat_id": "c", "deleted_version": 42},
        {"chat_id": ""},
        {"other": 1},
        5,
        "",
    ]
    markers = normalize_deletion_markers(raw)
    assert [m.chat_id for m in markers] == ["legacy-id", "b", "c"]
    assert markers[0].deleted_version == ""
    assert markers[1].deleted_version == v1
    assert markers[2].deleted_version == ""


def test_normalize_non_list_is_empty():
    assert normalize_deletion_markers(None) == []
    assert normalize_deletion_markers({"chat_id": "x"}) == []
    assert normalize_deletion_markers("x") == []


def test_merge_prefers_valid_then_newer():
    old, new = versions(1000, 2000)
    local = [DeletionMarker(chat_id="a"), DeletionMarker(chat_id="b", deleted_version=new)]
    remote = [
        DeletionMarker(chat_id="a", deleted_version=old),
        DeletionMarker(chat_id="b", deleted_version=old),
        DeletionMarker(chat_id="c", deleted_version=new),
    ]
    merged = {m.chat_id: m.deleted_version for m in merge_deletion_markers(local, remote)}
    assert merged == {"a": old, "b": new, "c": new}


def test_merge_is_order_independent_as_a_set():
    v1, v2 = versions(1000, 3000)
    a = [DeletionMarker(chat_id="x", deleted_version=v1)]
    b = [DeletionMarker(chat_id="x", deleted_version=v2), DeletionMarker(chat_id="y")]
    ab = {(m.chat_id, m.deleted_version) for m in merge_deletion_markers(a, b)}
    ba = {(m.chat_id, m.deleted_version) for m in merge_deletion_markers(b, a)}
    assert ab == ba == {("x", v2), ("y", "")}


def test_trim_drops_invalid_then_oldest():
    clock = VersionClock()
    markers = [DeletionMarker(chat_id="legacy")]
    markers += [
        DeletionMarker(chat_id=f"chat-{i}", deleted_version=clock.new_version(10_000 + i))
        for i in range(5)
    ]
    trimmed = trim_deletion_markers(markers, 3)
    assert [m.chat_id for m in trimmed] == ["chat-2", "chat-3", "chat-4"]

    assert trim_deletion_markers(markers, 100) is markers
    assert trim_deletion_markers(markers, 0) == []


def test_trim_to_retention_bound():
    clock = VersionClock()
    markers = [
        DeletionMarker(chat_id=f"chat-{i}", deleted_version=clock.new_version(1_000 + i))
        for i in range(1001)
    ]
    trimmed = trim_deletion_markers(markers)
    assert len(trimmed) == 1000
    assert "chat-0" not in deleted_id_set(trimmed)
    assert "chat-1000" in deleted_id_set(trimmed)


def test_record_deleted_chat_id():
    async def run():
        store = InMemoryStore({StorageKeys.DELETED_CHAT_IDS: ["old-legacy"]})
        clock = VersionClock()
        marker = await record_deleted_chat_id(store, "chat-9", clock)
        assert marker is not None
        assert marker.has_valid_version

        stored = await store.get(StorageKeys.DELETED_CHAT_IDS)
        assert {"chat_id": "chat-9", "deleted_version": marker.deleted_version} in stored
        assert {"chat_id": "old-legacy", "deleted_version": ""} in stored

        assert await record_deleted_chat_id(store, "", clock) is None

    asyncio.run(run())
