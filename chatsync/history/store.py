#!/usr/bin/env python3
"""
Replica Store Interface

The async key-value contract every replica backend satisfies, and an
in-memory backend for tests and ephemeral sessions.
"""

from __future__ import annotations

import copy
import logging
from collections.abc import Callable
from typing import Any, Protocol, runtime_checkable

logger = logging.getLogger(__name__)

# (key, op, old_value, new_value) with op in {"set", "delete"}
ChangeListener = Callable[[str, str, Any, Any], None]


@runtime_checkable
class ReplicaStore(Protocol):
    """Async KV store; last-write-wins per key, no cross-key transactions."""

    async def get(self, key: str) -> Any | None: ...

    async def set(self, key: str, value: Any) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def list(self) -> list[str]: ...


class ListenerMixin:
    """Change notification shared by the concrete stores."""

    def __init__(self) -> None:
        self._listeners: list[ChangeListener] = []

    def add_listener(self, callback: ChangeListener) -> None:
        self._listeners.append(callback)

    def remove_listener(self, callback: ChangeListener) -> None:
        if callback in self._listeners:
            self._listeners.remove(callback)

    def _notify(self, key: str, op: str, old: Any, new: Any) -> None:
        for callback in list(self._listeners):
            try:
                callback(key, op, old, new)
            except Exception as e:
                logger.error("Store listener failed for %s (%s): %s", key, op, e)


class InMemoryStore(ListenerMixin):
    """Dict-backed store. Values are deep-copied in both directions."""

    def __init__(self, initial: dict[str, Any] | None = None) -> None:
        super().__init__()
        self._data: dict[str, Any] = copy.deepcopy(initial) if initial else {}

    async def get(self, key: str) -> Any | None:
        value = self._data.get(key)
        return copy.deepcopy(value) if value is not None else None

    async def set(self, key: str, value: Any) -> None:
        old = self._data.get(key)
        self._data[key] = copy.deepcopy(value)
        self._notify(key, "set", old, value)

    async def delete(self, key: str) -> None:
        if key not in self._data:
            return
        old = self._data.pop(key)
        self._notify(key, "delete", old, None)

    async def list(self) -> list[str]:
        return list(self._data.keys())

    def snapshot(self) -> dict[str, Any]:
        return copy.deepcopy(self._data)
