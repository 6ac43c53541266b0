"""
Caching System for the Practice Sync service.

This module provides the in-memory caches the sync core relies on. All of them
are process-local and ephemeral; nothing here survives a restart.

Key Components:
- CacheBackend (ABC): The standard async interface for cache implementations.
- MemoryCacheBackend: A dictionary-backed cache with per-entry TTL and Least
  Recently Used (LRU) eviction at a fixed capacity.
- SignedURLCache: Short-lived storage signed URLs keyed by `bucket|path`. An
  entry is served only while `now < expires_at`; an expired entry is evicted on
  read and reported as a miss.
- DecodedMediaCache: Decoded media keyed the same way, bounded by LRU eviction
  and never expiring on its own since a decoded object is immutable.
- IdentityCache: Directory identities keyed by user id. Writes always merge
  into the existing map and are never a wholesale replacement, so a slow stale
  response cannot erase a fresher concurrent write.

Architectural Design:
- Strategy Pattern: `CacheBackend` lets the signed-URL and media stores share one
  implementation while keeping independent lifetimes.
- Asynchronous by Design: Backend operations are `async` and guarded by an
  `asyncio.Lock`. The identity cache is synchronous on purpose: each
  read-merge-write completes without a suspension point.
"""

import asyncio
import fnmatch
import sys
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from core.logging_config import get_logger
from core.models import DirectoryIdentity

logger = get_logger(__name__)

Clock = Callable[[], float]


def storage_key(bucket: str, path: str) -> str:
    """Composite cache key for a storage object"""
    return f"{bucket}|{path}"


@dataclass
class CacheEntry:
    """Cache entry with metadata"""

    value: Any
    created_at: float
    expires_at: Optional[float] = None
    access_count: int = 0
    size_bytes: int = 0

    def __post_init__(self):
        if self.size_bytes == 0:
            if isinstance(self.value, (bytes, bytearray)):
                self.size_bytes = len(self.value)
            else:
                self.size_bytes = sys.getsizeof(self.value)

    def is_expired(self, now: float) -> bool:
        """An entry is live only while now < expires_at"""
        if self.expires_at is None:
            return False
        return now >= self.expires_at


class CacheBackend(ABC):
    """Abstract base class for cache backends"""

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        """Get cache entry value by key"""
        pass

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: Optional[float] = None) -> bool:
        """Set cache entry with optional TTL"""
        pass

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete cache entry"""
        pass

    @abstractmethod
    async def clear(self) -> bool:
        """Clear all cache entries"""
        pass

    @abstractmethod
    async def keys(self, pattern: str = "*") -> List[str]:
        """Get cache keys matching pattern"""
        pass

    @abstractmethod
    async def stats(self) -> Dict[str, Any]:
        """Get cache statistics"""
        pass


class MemoryCacheBackend(CacheBackend):
    """In-memory cache backend with TTL and LRU eviction"""

    def __init__(
        self,
        max_size: int = 1000,
        max_memory_mb: int = 100,
        name: str = "memory",
        clock: Clock = time.time,
    ):
        self.name = name
        self.max_size = max_size
        self.max_memory_bytes = max_memory_mb * 1024 * 1024
        self.clock = clock
        self.cache: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self.total_size_bytes = 0
        self.hits = 0
        self.misses = 0
        self.evictions = 0
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Optional[Any]:
        async with self._lock:
            entry = self.cache.get(key)
            if entry is None:
                self.misses += 1
                logger.debug(f"[{self.name}] cache miss for key: {key}")
                return None

            if entry.is_expired(self.clock()):
                self._remove_key(key)
                self.misses += 1
                logger.debug(f"[{self.name}] cache expired for key: {key}")
                return None

            entry.access_count += 1
            self.cache.move_to_end(key)
            self.hits += 1
            return entry.value

    async def set(self, key: str, value: Any, ttl: Optional[float] = None) -> bool:
        async with self._lock:
            now = self.clock()
            entry = CacheEntry(
                value=value,
                created_at=now,
                expires_at=None if ttl is None else now + ttl,
            )

            self._remove_key(key)
            self._ensure_capacity(entry.size_bytes)

            self.cache[key] = entry
            self.total_size_bytes += entry.size_bytes
            logger.debug(f"[{self.name}] cache set for key: {key}, TTL: {ttl}")
            return True

    async def delete(self, key: str) -> bool:
        async with self._lock:
            if key in self.cache:
                self._remove_key(key)
                return True
            return False

    async def clear(self) -> bool:
        async with self._lock:
            self.cache.clear()
            self.total_size_bytes = 0
            logger.info(f"[{self.name}] cache cleared")
            return True

    async def keys(self, pattern: str = "*") -> List[str]:
        async with self._lock:
            if pattern == "*":
                return list(self.cache.keys())
            return [key for key in self.cache.keys() if fnmatch.fnmatch(key, pattern)]

    async def exists(self, key: str) -> bool:
        """Check if a live entry exists without touching LRU order"""
        async with self._lock:
            entry = self.cache.get(key)
            if entry is None:
                return False
            if entry.is_expired(self.clock()):
                self._remove_key(key)
                return False
            return True

    async def stats(self) -> Dict[str, Any]:
        async with self._lock:
            total_requests = self.hits + self.misses
            return {
                "backend": self.name,
                "entries": len(self.cache),
                "max_size": self.max_size,
                "memory_usage_bytes": self.total_size_bytes,
                "max_memory_bytes": self.max_memory_bytes,
                "hits": self.hits,
                "misses": self.misses,
                "hit_rate": (self.hits / total_requests) if total_requests else 0.0,
                "evictions": self.evictions,
            }

    def _remove_key(self, key: str) -> None:
        entry = self.cache.pop(key, None)
        if entry is not None:
            self.total_size_bytes -= entry.size_bytes

    def _ensure_capacity(self, new_entry_size: int) -> None:
        while self.cache and (
            len(self.cache) >= self.max_size
            or self.total_size_bytes + new_entry_size > self.max_memory_bytes
        ):
            lru_key, entry = self.cache.popitem(last=False)
            self.total_size_bytes -= entry.size_bytes
            self.evictions += 1
            logger.debug(f"[{self.name}] evicted LRU key: {lru_key}")


class SignedURLCache:
    """Storage signed URLs with independent expiry per entry"""

    def __init__(self, max_size: int = 2048, clock: Clock = time.time):
        self.backend = MemoryCacheBackend(max_size=max_size, name="signed_url", clock=clock)

    async def get(self, key: str) -> Optional[str]:
        return await self.backend.get(key)

    async def set(self, key: str, url: str, ttl: float) -> None:
        await self.backend.set(key, url, ttl=max(ttl, 0))

    async def stats(self) -> Dict[str, Any]:
        return await self.backend.stats()


class DecodedMediaCache:
    """Decoded media bytes, bounded by LRU eviction"""

    def __init__(self, capacity: int = 256, max_memory_mb: int = 128):
        self.backend = MemoryCacheBackend(
            max_size=capacity, max_memory_mb=max_memory_mb, name="decoded_media"
        )

    async def get(self, key: str) -> Optional[Any]:
        return await self.backend.get(key)

    async def set(self, key: str, value: Any) -> None:
        await self.backend.set(key, value)

    async def stats(self) -> Dict[str, Any]:
        return await self.backend.stats()


class IdentityCache:
    """
    Process-wide directory identity cache.

    Entries are only ever merged in. There is deliberately no clear method:
    the cache lives for the whole process, across sign-out.
    """

    def __init__(self):
        self._entries: Dict[str, DirectoryIdentity] = {}
        self.hits = 0
        self.misses = 0

    def get(self, user_id: str) -> Optional[DirectoryIdentity]:
        identity = self._entries.get(user_id)
        if identity is None:
            self.misses += 1
        else:
            self.hits += 1
        return identity

    def get_many(self, user_ids: Iterable[str]) -> Dict[str, DirectoryIdentity]:
        found = {}
        for user_id in user_ids:
            identity = self.get(user_id)
            if identity is not None:
                found[user_id] = identity
        return found

    def merge(self, accounts: Mapping[str, DirectoryIdentity]) -> None:
        """Merge new records over existing ones, key by key"""
        if not accounts:
            return
        merged = dict(self._entries)
        merged.update(accounts)
        self._entries = merged
        logger.debug(f"Identity cache merged {len(accounts)} entries (total={len(merged)})")

    def snapshot(self) -> Dict[str, DirectoryIdentity]:
        return dict(self._entries)

    def __contains__(self, user_id: str) -> bool:
        return user_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def stats(self) -> Dict[str, Any]:
        total = self.hits + self.misses
        return {
            "backend": "identity",
            "entries": len(self._entries),
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": (self.hits / total) if total else 0.0,
        }
