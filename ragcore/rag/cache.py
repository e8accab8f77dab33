"""Bounded in-process cache for chunk reconstruction.

An LRU cache with per-entry TTL keyed by vector point id. It only shadows the
payload table; a miss always falls back to the backing store.
"""
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Generic, Hashable, Optional, Tuple, TypeVar

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


@dataclass
class CacheStats:
    hits: int
    misses: int
    size: int
    capacity: int
    evictions: int


class LRUCache(Generic[K, V]):
    """
    LRU cache with TTL per entry.

    - OrderedDict for O(1) LRU ops
    - TTL eviction on get
    - Tracks hits/misses/evictions

    Methods never await, so they are atomic with respect to other coroutines.
    """

    def __init__(self, capacity: int = 1024, ttl_seconds: float = 3600) -> None:
        if capacity <= 0:
            raise ValueError(f"Cache capacity must be positive, got {capacity}")
        self._capacity = capacity
        self._ttl = ttl_seconds
        self._store: "OrderedDict[K, Tuple[float, V]]" = OrderedDict()
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def __len__(self) -> int:
        return len(self._store)

    def __contains__(self, key: K) -> bool:
        return key in self._store

    def get(self, key: K) -> Optional[V]:
        item = self._store.get(key)
        if item is None:
            self._misses += 1
            return None
        expires_at, value = item
        if expires_at < time.monotonic():
            del self._store[key]
            self._misses += 1
            return None
        self._store.move_to_end(key, last=True)
        self._hits += 1
        return value

    def set(self, key: K, value: V) -> None:
        expires_at = time.monotonic() + self._ttl
        if key in self._store:
            self._store[key] = (expires_at, value)
            self._store.move_to_end(key, last=True)
            return
        if len(self._store) >= self._capacity:
            self._store.popitem(last=False)
            self._evictions += 1
        self._store[key] = (expires_at, value)

    def delete(self, key: K) -> None:
        self._store.pop(key, None)

    def evict_where(self, predicate: Callable[[V], bool]) -> int:
        """Remove every entry whose value matches predicate."""
        keys = [k for k, (_, v) in self._store.items() if predicate(v)]
        for k in keys:
            del self._store[k]
        return len(keys)

    def clear(self) -> None:
        self._store.clear()

    def stats(self) -> CacheStats:
        return CacheStats(
            hits=self._hits,
            misses=self._misses,
            size=len(self._store),
            capacity=self._capacity,
            evictions=self._evictions,
        )
