"""In-memory key/value store with per-key TTL expiry."""
from __future__ import annotations

import asyncio
import fnmatch
import time
from typing import Any, Callable, Dict, List, Optional

import structlog

logger = structlog.get_logger(__name__)


class KeyValueStore:
    """Async key/value store whose keys can expire after a TTL.

    Every key owns at most one pending expiry timer. Overwriting or deleting a
    key cancels its timer, so a stale expiry can never remove a newer value.
    Expiry listeners are called with the key whenever a TTL removes it.
    """

    def __init__(self) -> None:
        self._data: Dict[str, Any] = {}
        self._deadlines: Dict[str, float] = {}
        self._timers: Dict[str, asyncio.TimerHandle] = {}
        self._lock = asyncio.Lock()
        self._expiry_listeners: List[Callable[[str], None]] = []

    def add_expiry_listener(self, listener: Callable[[str], None]) -> None:
        self._expiry_listeners.append(listener)

    async def get(self, key: str) -> Optional[Any]:
        async with self._lock:
            if self._expired(key):
                self._evict(key)
                self._notify_expired(key)
                return None
            return self._data.get(key)

    async def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        """Store ``value`` under ``key``; ``ttl`` is in seconds."""
        async with self._lock:
            self._cancel_timer(key)
            self._data[key] = value
            if ttl is not None and ttl > 0:
                loop = asyncio.get_running_loop()
                self._deadlines[key] = time.monotonic() + ttl
                self._timers[key] = loop.call_later(ttl, self._expire, key)

    async def delete(self, key: str) -> bool:
        async with self._lock:
            existed = key in self._data
            self._evict(key)
            return existed

    async def exists(self, key: str) -> bool:
        async with self._lock:
            return key in self._data and not self._expired(key)

    async def keys(self, pattern: Optional[str] = None) -> List[str]:
        """Return live keys in insertion order, optionally filtered by a glob pattern."""
        async with self._lock:
            live = [key for key in self._data if not self._expired(key)]
        if pattern is None:
            return live
        return [key for key in live if fnmatch.fnmatchcase(key, pattern)]

    async def clear(self) -> None:
        async with self._lock:
            for handle in self._timers.values():
                handle.cancel()
            self._timers.clear()
            self._deadlines.clear()
            self._data.clear()

    async def size(self) -> int:
        async with self._lock:
            return sum(1 for key in self._data if not self._expired(key))

    def _expire(self, key: str) -> None:
        # Timer callback; runs on the loop between awaits so no lock is needed.
        self._timers.pop(key, None)
        self._deadlines.pop(key, None)
        if key in self._data:
            del self._data[key]
            logger.debug("kv_key_expired", key=key)
            self._notify_expired(key)

    def _notify_expired(self, key: str) -> None:
        for listener in self._expiry_listeners:
            listener(key)

    def _expired(self, key: str) -> bool:
        deadline = self._deadlines.get(key)
        return deadline is not None and deadline <= time.monotonic()

    def _evict(self, key: str) -> None:
        self._cancel_timer(key)
        self._data.pop(key, None)

    def _cancel_timer(self, key: str) -> None:
        handle = self._timers.pop(key, None)
        if handle is not None:
            handle.cancel()
        self._deadlines.pop(key, None)
