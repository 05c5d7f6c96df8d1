"""
Bounded LRU hot cache for engine records.

Entries are ordered by recency of use; ``put`` beyond capacity evicts
the least recently used entry. ``trim`` shrinks the cache to the most
recently used entries once it grows past a soft size cap.
"""

from collections import OrderedDict
from typing import Dict, Generic, Iterator, List, Optional, Tuple, TypeVar

V = TypeVar("V")


class LRUCache(Generic[V]):
    """Key → record map with least-recently-used eviction."""

    def __init__(self, capacity: int = 500):
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = capacity
        self._data: "OrderedDict[str, V]" = OrderedDict()
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    def __len__(self) -> int:
        return len(self._data)

    def __contains__(self, key: str) -> bool:
        return key in self._data

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._data))

    def get(self, key: str) -> Optional[V]:
        """Return the cached value and mark it most recently used."""
        value = self._data.get(key)
        if value is None:
            self.misses += 1
            return None
        self.hits += 1
        self._data.move_to_end(key)
        return value

    def peek(self, key: str) -> Optional[V]:
        """Return the cached value without touching recency."""
        return self._data.get(key)

    def put(self, key: str, value: V) -> None:
        self._data[key] = value
        self._data.move_to_end(key)
        while len(self._data) > self.capacity:
            self._data.popitem(last=False)
            self.evictions += 1

    def pop(self, key: str) -> Optional[V]:
        return self._data.pop(key, None)

    def clear(self) -> None:
        self._data.clear()

    def items(self) -> List[Tuple[str, V]]:
        """Items from least to most recently used."""
        return list(self._data.items())

    def trim(self, size_cap: int, keep: int) -> int:
        """
        Keep only the ``keep`` most recently used entries if size exceeds ``size_cap``.

        Returns:
            Number of entries removed
        """
        if len(self._data) <= size_cap:
            return 0
        removed = 0
        while len(self._data) > keep:
            self._data.popitem(last=False)
            removed += 1
        self.evictions += removed
        return removed

    def stats(self) -> Dict[str, int]:
        return {
            "size": len(self._data),
            "capacity": self.capacity,
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
        }
