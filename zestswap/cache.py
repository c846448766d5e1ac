import asyncio
import time
from dataclasses import dataclass
from typing import Callable, Dict, Generic, List, Optional, TypeVar

T = TypeVar("T")


@dataclass
class CacheEntry(Generic[T]):
    value: T
    timestamp: float
    ttl: float

    def is_expired(self, now: float) -> bool:
        return now - self.timestamp >= self.ttl


class TTLCache(Generic[T]):
    """In-memory TTL cache with a size cap and explicit sweeping.

    Entries are never served past ``timestamp + ttl``. When the cache is full,
    expired entries are swept first; if it is still full the oldest entry is
    dropped.
    """

    def __init__(
        self,
        default_ttl: float = 30,
        max_size: int = 1000,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.default_ttl = default_ttl
        self.max_size = max_size
        self._clock = clock
        self._cache: Dict[str, CacheEntry[T]] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Optional[T]:
        async with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                return None
            if entry.is_expired(self._clock()):
                del self._cache[key]
                return None
            return entry.value

    async def get_entry(self, key: str) -> Optional[CacheEntry[T]]:
        async with self._lock:
            entry = self._cache.get(key)
            if entry is None or entry.is_expired(self._clock()):
                return None
            return entry

    async def set(self, key: str, value: T, ttl: Optional[float] = None) -> None:
        async with self._lock:
            if key not in self._cache and len(self._cache) >= self.max_size:
                self._sweep_locked()
                while len(self._cache) >= self.max_size:
                    oldest = min(self._cache, key=lambda k: self._cache[k].timestamp)
                    del self._cache[oldest]

            self._cache[key] = CacheEntry(
                value=value,
                timestamp=self._clock(),
                ttl=self.default_ttl if ttl is None else ttl,
            )

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._cache.pop(key, None)

    async def sweep(self) -> int:
        """Remove expired entries; returns the number removed."""
        async with self._lock:
            return self._sweep_locked()

    async def prune_older_than(self, max_age: float) -> int:
        async with self._lock:
            cutoff = self._clock() - max_age
            stale = [k for k, e in self._cache.items() if e.timestamp < cutoff]
            for key in stale:
                del self._cache[key]
            return len(stale)

    async def clear(self) -> None:
        async with self._lock:
            self._cache.clear()

    def keys(self) -> List[str]:
        return list(self._cache.keys())

    def size(self) -> int:
        return len(self._cache)

    def _sweep_locked(self) -> int:
        now = self._clock()
        expired = [k for k, e in self._cache.items() if e.is_expired(now)]
        for key in expired:
            del self._cache[key]
        return len(expired)
