"""
Caching layer for enrichment lookups
Read-through in-memory dicts over a persistent KeyValueStore, plus
per-key single-flight so concurrent requests share one upstream fetch
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from logging_config import get_logger
from .store import KeyValueStore

logger = get_logger(__name__)

T = TypeVar("T")

DAY_SECONDS = 24 * 3600

# Freshness windows, in seconds. Geocodes never expire.
CACHE_TTL = {
    'geocode': None,
    'place_ids': 30 * DAY_SECONDS,
    'reviews': 7 * DAY_SECONDS,
}


def is_fresh(entry: Optional[Dict[str, Any]], field: str, max_age_seconds: Optional[float],
             now: Optional[float] = None) -> bool:
    """
    True when ``entry[field]`` (epoch seconds) is within ``max_age_seconds`` of now.

    A ``None`` max age means the entry never expires.
    """
    if not entry:
        return False
    if max_age_seconds is None:
        return True
    stamp = entry.get(field)
    if not isinstance(stamp, (int, float)) or isinstance(stamp, bool):
        return False
    current = time.time() if now is None else now
    return (current - stamp) < max_age_seconds


class EnrichmentCache:
    """
    One namespace of cached enrichment payloads.

    Entries never expire here; callers decide freshness with ``is_fresh``.
    Store failures are logged and treated as misses so a broken backend
    degrades to memory-only caching.
    """

    def __init__(self, store: KeyValueStore, namespace: str):
        self.store = store
        self.namespace = namespace
        self._memory: Dict[str, Any] = {}
        self._loaded_all = False
        self.hits = 0
        self.misses = 0

    def get(self, key: str) -> Optional[Any]:
        if key in self._memory:
            self.hits += 1
            return self._memory[key]
        value = None
        if not self._loaded_all:
            try:
                value = self.store.get(self.namespace, key)
            except Exception as e:
                logger.warning(f"Cache store read error for {self.namespace}: {e}")
        if value is None:
            self.misses += 1
            return None
        self.hits += 1
        self._memory[key] = value
        return value

    def set(self, key: str, payload: Any) -> None:
        self._memory[key] = payload
        try:
            self.store.set(self.namespace, key, payload)
        except Exception as e:
            logger.warning(f"Cache store write error for {self.namespace}: {e}")

    async def aget(self, key: str) -> Optional[Any]:
        """``get`` for async callers; store reads run in a worker thread."""
        if key in self._memory:
            self.hits += 1
            return self._memory[key]
        return await asyncio.to_thread(self.get, key)

    async def aset(self, key: str, payload: Any) -> None:
        self._memory[key] = payload
        await asyncio.to_thread(self.set, key, payload)

    def all(self) -> Dict[str, Any]:
        if not self._loaded_all:
            try:
                persisted = self.store.all(self.namespace)
            except Exception as e:
                logger.warning(f"Cache store scan error for {self.namespace}: {e}")
                return dict(self._memory)
            persisted.update(self._memory)
            self._memory = persisted
            self._loaded_all = True
        return dict(self._memory)

    def clear(self) -> None:
        self._memory.clear()
        self._loaded_all = False
        try:
            self.store.clear(self.namespace)
        except Exception as e:
            logger.warning(f"Error clearing {self.namespace} cache: {e}")
        logger.info(f"Cleared {self.namespace} cache")

    def stats(self) -> Dict[str, Any]:
        try:
            persisted = self.store.count(self.namespace)
        except Exception as e:
            persisted = None
            logger.warning(f"Cache store count error for {self.namespace}: {e}")
        return {
            "namespace": self.namespace,
            "backend": getattr(self.store, "name", type(self.store).__name__),
            "memory_entries": len(self._memory),
            "persisted_entries": persisted,
            "hits": self.hits,
            "misses": self.misses,
        }


class SingleFlight:
    """
    At most one in-flight call per key; concurrent callers await the same result.

    The upstream call runs in a task owned here, and every caller awaits it
    through ``asyncio.shield``, so a caller that is cancelled or times out
    never cancels the fetch other callers are waiting on.
    """

    def __init__(self):
        self._inflight: Dict[str, asyncio.Future] = {}

    async def run(self, key: str, fn: Callable[[], Awaitable[T]]) -> T:
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(fn())
            self._inflight[key] = task
            task.add_done_callback(lambda done, key=key: self._finish(key, done))
        return await asyncio.shield(task)

    def _finish(self, key: str, task: asyncio.Future) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        # mark retrieved; a fetch whose callers all gave up has no waiter left
        if not task.cancelled():
            task.exception()


def get_cache_stats(caches: Dict[str, EnrichmentCache]) -> Dict[str, Any]:
    """Stats for every enrichment cache, keyed by namespace."""
    return {name: cache.stats() for name, cache in caches.items()}


def clear_cache(caches: Dict[str, EnrichmentCache], cache_type: Optional[str] = None) -> int:
    """
    Clear one namespace or all of them.

    Returns:
        Number of namespaces cleared
    """
    targets = [cache_type] if cache_type else list(caches)
    cleared = 0
    for name in targets:
        cache = caches.get(name)
        if cache is None:
            continue
        cache.clear()
        cleared += 1
    return cleared
