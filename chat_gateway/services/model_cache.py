"""TTL + LRU cache of constructed model handles."""

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from chat_gateway.constants import MODEL_CACHE_MAX_SIZE, MODEL_CACHE_TTL_SECONDS
from chat_gateway.providers.base import ModelHandle

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    key: str
    handle: ModelHandle
    created_at: float
    last_accessed_at: float
    access_count: int = 0


@dataclass
class _KeyLock:
    lock: threading.Lock
    users: int = 0


class ModelInstanceCache:
    """Shared handle cache.

    ``_lock`` guards the entry map. ``get_or_create`` additionally holds a
    per-key lock while the factory runs, so concurrent misses for one key
    build a single handle. A key lock lives until its last user releases it,
    whether the build succeeded or failed.
    """

    def __init__(
        self,
        ttl_seconds: float = MODEL_CACHE_TTL_SECONDS,
        max_size: int | None = MODEL_CACHE_MAX_SIZE,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl_seconds
        self._max_size = max_size
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._lock = threading.Lock()
        self._key_locks: dict[str, _KeyLock] = {}

    @staticmethod
    def make_key(provider_id: str, model_id: str, base_url: str | None = None) -> str:
        return f"{provider_id}:{model_id}:{base_url or 'default'}"

    def _expired(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.created_at > self._ttl

    def _get_locked(self, key: str) -> ModelHandle | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        now = self._clock()
        if self._expired(entry, now):
            del self._entries[key]
            logger.debug("Model cache entry expired", extra={"cache_key": key})
            return None
        entry.last_accessed_at = now
        entry.access_count += 1
        return entry.handle

    def _set_locked(self, key: str, handle: ModelHandle) -> None:
        if key not in self._entries and self._max_size and len(self._entries) >= self._max_size:
            self._evict_lru_locked()
        now = self._clock()
        self._entries[key] = CacheEntry(
            key=key, handle=handle, created_at=now, last_accessed_at=now
        )

    def _evict_lru_locked(self) -> None:
        if not self._entries:
            return
        oldest = min(self._entries.values(), key=lambda entry: entry.last_accessed_at)
        del self._entries[oldest.key]
        logger.info("Model cache evicted least recently used entry", extra={"cache_key": oldest.key})

    def get(self, key: str) -> ModelHandle | None:
        with self._lock:
            return self._get_locked(key)

    def set(self, key: str, handle: ModelHandle) -> None:
        with self._lock:
            self._set_locked(key, handle)

    def get_or_create(self, key: str, factory: Callable[[], ModelHandle]) -> ModelHandle:
        with self._lock:
            handle = self._get_locked(key)
            if handle is not None:
                return handle
            key_lock = self._key_locks.get(key)
            if key_lock is None:
                key_lock = self._key_locks[key] = _KeyLock(threading.Lock())
            key_lock.users += 1

        try:
            with key_lock.lock:
                # Another caller may have finished building while we waited.
                with self._lock:
                    handle = self._get_locked(key)
                if handle is not None:
                    return handle
                handle = factory()
                with self._lock:
                    self._set_locked(key, handle)
                logger.debug("Model cache entry created", extra={"cache_key": key})
                return handle
        finally:
            with self._lock:
                key_lock.users -= 1
                if not key_lock.users:
                    self._key_locks.pop(key, None)

    def invalidate(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def invalidate_prefix(self, prefix: str) -> int:
        with self._lock:
            keys = [key for key in self._entries if key.startswith(prefix)]
            for key in keys:
                del self._entries[key]
            return len(keys)

    def clear(self, close_handles: bool = False) -> None:
        with self._lock:
            entries = list(self._entries.values())
            self._entries.clear()
        if close_handles:
            for entry in entries:
                try:
                    entry.handle.close()
                except Exception:
                    logger.warning(
                        "Failed to close model handle", extra={"cache_key": entry.key}, exc_info=True
                    )

    def sweep(self) -> int:
        """Drop every expired entry and return how many were removed."""
        with self._lock:
            now = self._clock()
            expired = [key for key, entry in self._entries.items() if self._expired(entry, now)]
            for key in expired:
                del self._entries[key]
        if expired:
            logger.info("Model cache sweep removed expired entries", extra={"removed": len(expired)})
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._entries

    def stats(self) -> dict[str, Any]:
        with self._lock:
            now = self._clock()
            return {
                "size": len(self._entries),
                "total_access": sum(entry.access_count for entry in self._entries.values()),
                "expired_count": sum(
                    1 for entry in self._entries.values() if self._expired(entry, now)
                ),
                "max_size": self._max_size,
                "ttl_seconds": self._ttl,
            }
