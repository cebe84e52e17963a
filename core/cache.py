"""Keyed in-memory cache with TTL, glob invalidation and write-path hooks.

Services own one KeyedCache per lookup they memoize (for example
"user-by-email:<email>"). Write paths call `invalidate(...)` or fire a named
hook registered with `on_invalidate`, so there is exactly one place that
knows which keys a given write makes stale.
"""

from __future__ import annotations

import fnmatch
import logging
import time
from collections.abc import Callable
from typing import Any

from pydantic import BaseModel

logger = logging.getLogger(__name__)

_MISSING = object()


class CacheStats(BaseModel):
    hits: int = 0
    misses: int = 0
    size: int = 0
    invalidations: int = 0


class KeyedCache:
    """TTL cache keyed by strings; `None` is a cacheable value."""

    def __init__(self, name: str, default_ttl: float = 300.0, max_size: int = 5000) -> None:
        self.name = name
        self._entries: dict[str, tuple[Any, float]] = {}
        self._default_ttl = default_ttl
        self._max_size = max_size
        self._hooks: dict[str, list[Callable[..., list[str]]]] = {}
        self._stats = CacheStats()

    def get(self, key: str, default: Any = None) -> Any:
        entry = self._entries.get(key)
        if entry is None:
            self._stats.misses += 1
            return default
        value, expires_at = entry
        if time.monotonic() >= expires_at:
            del self._entries[key]
            self._stats.misses += 1
            return default
        self._stats.hits += 1
        return value

    def contains(self, key: str) -> bool:
        return self.get(key, _MISSING) is not _MISSING

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        if len(self._entries) >= self._max_size and key not in self._entries:
            # Oldest-expiring entry goes first
            victim = min(self._entries, key=lambda k: self._entries[k][1])
            del self._entries[victim]
        self._entries[key] = (value, time.monotonic() + (ttl if ttl is not None else self._default_ttl))

    def get_or_load(self, key: str, loader: Callable[[], Any], ttl: float | None = None) -> Any:
        """Return the cached value, loading and storing it on a miss."""
        value = self.get(key, _MISSING)
        if value is _MISSING:
            value = loader()
            self.set(key, value, ttl)
        return value

    def invalidate(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self._entries.pop(key, None) is not None:
                removed += 1
        self._stats.invalidations += removed
        return removed

    def invalidate_pattern(self, pattern: str) -> int:
        """Drop every key matching a glob pattern such as 'user-by-id:*'."""
        matched = [key for key in self._entries if fnmatch.fnmatch(key, pattern)]
        return self.invalidate(*matched)

    def clear(self) -> None:
        self._stats.invalidations += len(self._entries)
        self._entries.clear()

    # ------------------------------------------------------------------
    # Invalidation hooks
    # ------------------------------------------------------------------

    def on_invalidate(self, write_path: str, keys_for: Callable[..., list[str]]) -> None:
        """Register which keys a named write path makes stale.

        `keys_for` receives the keyword arguments passed to `fire(...)` and
        returns the keys to drop.
        """
        self._hooks.setdefault(write_path, []).append(keys_for)

    def fire(self, write_path: str, **details: Any) -> int:
        """Run the invalidation hooks registered for `write_path`."""
        hooks = self._hooks.get(write_path)
        if not hooks:
            logger.debug("Cache %s has no hooks for write path %s", self.name, write_path)
            return 0
        removed = 0
        for keys_for in hooks:
            removed += self.invalidate(*keys_for(**details))
        return removed

    def stats(self) -> CacheStats:
        return self._stats.model_copy(update={"size": len(self._entries)})
