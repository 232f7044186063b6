#!/usr/bin/env python3
"""
Chat History Module

Local-first replica of chat sessions: versioned payloads, history indexes,
deletion markers and the merge engine that reconciles replicas.
"""

from __future__ import annotations

from .chat_store import ChatStore, new_chat_id
from .factory import create_store
from .merge import MergeEngine, export_all, pick_newer_message
from .models import ChatMessageData, DeletionMarker, HistoryIndexEntry, StorageKeys
from .store import InMemoryStore, ReplicaStore
from .version_clock import VersionClock, compare_versions, is_version_id

__all__ = [
    "ChatMessageData",
    "ChatStore",
    "DeletionMarker",
    "HistoryIndexEntry",
    "InMemoryStore",
    "MergeEngine",
    "ReplicaStore",
    "StorageKeys",
    "VersionClock",
    "compare_versions",
    "create_store",
    "export_all",
    "is_version_id",
    "new_chat_id",
    "pick_newer_message",
]
