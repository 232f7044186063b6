#!/usr/bin/env python3
"""
Replica Store Factory

Factory function to create the replica store backend from configuration.
"""

from __future__ import annotations

import logging
from typing import Any

from .sqlite_store import SQLiteStore
from .store import InMemoryStore, ReplicaStore

logger = logging.getLogger(__name__)


def create_store(storage_config: dict[str, Any]) -> ReplicaStore:
    """Create the replica store selected by `storage.type` (memory | sqlite)."""
    store_type = storage_config.get("type", "sqlite")

    if store_type == "memory":
        logger.info("Using in-memory replica store (nothing survives a restart)")
        return InMemoryStore()

    if store_type == "sqlite":
        db_path = storage_config.get("path", "chatsync.db")
        logger.info("Using SQLite replica store at %s", db_path)
        return SQLiteStore(db_path)

    raise ValueError(f"Unknown storage type '{store_type}' (expected 'memory' or 'sqlite')")
