"""
Element cache keyed by (origin, screenshot content hash).

Features:
- Pluggable async backend (anything with get/set/delete/keys, e.g. a Redis client).
- In-process TTL backend for single-process deployments and tests.
- Retention checked on read: an expired entry is evicted and reported as a miss.
- Backend absence or failure degrades to a miss, never an error.
"""
from __future__ import annotations

import fnmatch
import hashlib
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Protocol

from pydantic import ValidationError

from automation_broker.broker_config import CacheConfig
from automation_broker.error_handling import CacheUnavailableError
from automation_broker.models.element_models import ElementCacheEntry
from automation_broker.utils.event_logger import EventLogger, get_event_logger


def hash_screenshot(base64_data: str) -> str:
    """First 16 hex chars of the SHA-256 of the base64 screenshot string."""
    return hashlib.sha256((base64_data or "").encode("utf-8")).hexdigest()[:16]


class CacheBackend(Protocol):
    """Async key-value store with per-key TTL and glob-style key listing."""

    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def delete(self, *keys: str) -> int: ...

    async def keys(self, pattern: str) -> List[str]: ...


@dataclass
class _StoredValue:
    value: str
    created_at: float
    expires_at: Optional[float]


class InMemoryCacheBackend:
    """Simple in-process store with TTL expiration and oldest-first pruning."""

    def __init__(self, max_items: int = 5000, clock: Callable[[], float] = time.time):
        self._max = int(max_items)
        self._clock = clock
        self._store: Dict[str, _StoredValue] = {}

    # ----------------- maintenance -------------------
    def _purge_expired(self) -> None:
        now = self._clock()
        for key in list(self._store.keys()):
            item = self._store.get(key)
            if item and item.expires_at is not None and now >= item.expires_at:
                self._store.pop(key, None)

    def _prune_if_needed(self) -> None:
        if len(self._store) <= self._max:
            return
        # Drop oldest 10% by insertion time
        items = sorted(self._store.items(), key=lambda kv: kv[1].created_at)
        for key, _ in items[:max(1, int(len(items) * 0.1))]:
            self._store.pop(key, None)

    # ----------------- backend API -------------------
    async def get(self, key: str) -> Optional[str]:
        self._purge_expired()
        item = self._store.get(key)
        return item.value if item else None

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self._purge_expired()
        now = self._clock()
        expires = now + float(ttl_seconds) if ttl_seconds else None
        self._store[key] = _StoredValue(value=value, created_at=now, expires_at=expires)
        self._prune_if_needed()

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self._store.pop(key, None) is not None:
                removed += 1
        return removed

    async def keys(self, pattern: str) -> List[str]:
        self._purge_expired()
        return [key for key in self._store if fnmatch.fnmatchcase(key, pattern)]

    def __len__(self) -> int:
        return len(self._store)


class ElementCache:
    """Detection-pass cache: `{prefix}:{origin}:{hash}` -> ElementCacheEntry (JSON)."""

    def __init__(
        self,
        backend: Optional[CacheBackend] = None,
        config: Optional[CacheConfig] = None,
        clock: Callable[[], float] = time.time,
        logger: Optional[EventLogger] = None,
    ):
        self.backend = backend
        self.config = config or CacheConfig()
        self._clock = clock
        self._logger = logger

    @property
    def logger(self) -> EventLogger:
        return self._logger or get_event_logger()

    @property
    def available(self) -> bool:
        return self.config.enabled and self.backend is not None

    def cache_key(self, origin: str, screenshot_hash: str) -> str:
        return f"{self.config.key_prefix}:{origin or 'unknown'}:{screenshot_hash}"

    hash_screenshot = staticmethod(hash_screenshot)

    def _report(self, operation: str, exc: Exception, cache_key: str) -> None:
        error = CacheUnavailableError(f"Cache {operation} failed: {exc}", operation=operation, cache_key=cache_key)
        self.logger.cache_error(operation, error, cache_key=cache_key)

    async def get(self, origin: str, screenshot_hash: str) -> Optional[ElementCacheEntry]:
        """Return the entry if it is younger than the retention window, else None."""
        key = self.cache_key(origin, screenshot_hash)
        if not self.available:
            self.logger.cache_miss(key, reason="disabled")
            return None

        try:
            raw = await self.backend.get(key)
        except Exception as exc:
            self._report("read", exc, key)
            return None

        if raw is None:
            self.logger.cache_miss(key)
            return None

        try:
            entry = ElementCacheEntry.model_validate_json(raw)
        except ValidationError as exc:
            self._report("decode", exc, key)
            await self._delete(key)
            return None

        age = self._clock() - entry.timestamp
        if age > self.config.ttl_seconds:
            await self._delete(key)
            self.logger.cache_evict(key, reason="expired", age_seconds=round(age, 1))
            self.logger.cache_miss(key, reason="expired")
            return None

        self.logger.cache_hit(key, len(entry.elements), age)
        return entry

    async def put(self, origin: str, screenshot_hash: str, entry: ElementCacheEntry) -> bool:
        """Store ``entry``, overwriting any previous one. Returns False when not written."""
        key = self.cache_key(origin, screenshot_hash)
        if not self.available:
            return False
        try:
            await self.backend.set(key, entry.model_dump_json(), self.config.ttl_seconds)
        except Exception as exc:
            self._report("write", exc, key)
            return False
        self.logger.cache_write(key, len(entry.elements))
        return True

    async def invalidate(self, origin: str, screenshot_hash: Optional[str] = None) -> int:
        """Remove one entry, or every entry under ``origin`` when no hash is given."""
        if not self.available:
            return 0
        try:
            if screenshot_hash:
                keys = [self.cache_key(origin, screenshot_hash)]
            else:
                keys = await self.backend.keys(f"{self.config.key_prefix}:{origin}:*")
            if not keys:
                return 0
            removed = await self.backend.delete(*keys)
        except Exception as exc:
            self._report("invalidate", exc, f"{self.config.key_prefix}:{origin}")
            return 0
        for key in keys:
            self.logger.cache_evict(key, reason="invalidated")
        return int(removed or 0)

    async def _delete(self, key: str) -> None:
        try:
            await self.backend.delete(key)
        except Exception as exc:
            self._report("delete", exc, key)
